"""GitHub service – list repositories, import sources, open fix pull requests.

Uses PyGithub. Every method is blocking; async callers go through
``asyncio.to_thread``.
"""

from __future__ import annotations

import base64
import binascii
import logging
import time
from typing import Any, Callable

from github import Github, GithubException

from shared.errors import ConfigurationError, ProviderError
from workflow.context_scoper import file_marker, frame_file, is_relevant_source

logger = logging.getLogger(__name__)

IMPORT_BATCH_SIZE = 5


def build_branch_name(now: float | None = None) -> str:
    """``qa-fix-<epoch millis>``."""
    stamp = int((now if now is not None else time.time()) * 1000)
    return f"qa-fix-{stamp}"


def _is_existing_pr_error(exc: GithubException) -> bool:
    data = exc.data if isinstance(exc.data, dict) else {}
    for err in data.get("errors") or ():
        if isinstance(err, dict) and "A pull request already exists" in str(err.get("message", "")):
            return True
    return "A pull request already exists" in str(data.get("message", ""))


class GitHubService:
    """High-level helper around the source host."""

    name = "github"

    def __init__(self, token: str | None = None, max_files: int = 40, client: Github | None = None):
        self.token = token or ""
        self.max_files = max_files
        self._gh = client

    # -- PyGithub client (lazy) ----------------------------------------

    @property
    def gh(self) -> Github:
        if self._gh is None:
            if not self.token:
                raise ConfigurationError("GITHUB_TOKEN is not set", self.name)
            self._gh = Github(self.token)
        return self._gh

    def _wrap(self, action: str, exc: GithubException) -> ProviderError:
        if exc.status == 401:
            return ProviderError("Invalid GitHub access token", self.name, exc)
        return ProviderError(f"GitHub {action} failed (HTTP {exc.status})", self.name, exc)

    # -- Repositories ---------------------------------------------------

    def list_repositories(self, limit: int = 100) -> list[dict[str, Any]]:
        """The authenticated user's repositories, most recently updated first."""
        try:
            repos = []
            for repo in self.gh.get_user().get_repos(sort="updated"):
                repos.append({
                    "id": repo.id,
                    "name": repo.name,
                    "full_name": repo.full_name,
                    "private": repo.private,
                    "description": repo.description,
                    "updated_at": repo.updated_at.isoformat() if repo.updated_at else None,
                    "default_branch": repo.default_branch,
                })
                if len(repos) >= limit:
                    break
        except GithubException as exc:
            raise self._wrap("repository listing", exc) from exc
        logger.info("Listed %d repositories", len(repos))
        return repos

    def import_repository(
        self,
        full_name: str,
        on_progress: Callable[[str], None] | None = None,
    ) -> str:
        """Download the relevant files of *full_name* as one framed bundle.

        At most ``max_files`` files are fetched. A file that fails to load
        is framed as ``<path> (Load Error)`` with no content.
        """
        notify = on_progress or (lambda _msg: None)
        try:
            repo = self.gh.get_repo(full_name)
            notify("Fetching file tree...")
            tree = repo.get_git_tree(repo.default_branch or "main", recursive=True)
        except GithubException as exc:
            raise self._wrap(f"tree fetch for {full_name}", exc) from exc

        if getattr(tree, "raw_data", {}).get("truncated"):
            notify("Warning: repository is too large, some files were truncated.")

        targets = [
            node for node in tree.tree
            if node.type == "blob" and is_relevant_source(node.path)
        ][: self.max_files]

        parts: list[str] = []
        for start in range(0, len(targets), IMPORT_BATCH_SIZE):
            batch = targets[start:start + IMPORT_BATCH_SIZE]
            for node in batch:
                parts.append(self._load_file(repo, node.path, node.sha))
            notify(f"Downloaded {start + len(batch)}/{len(targets)} files...")

        logger.info("Imported %d file(s) from %s", len(targets), full_name)
        return "".join(parts)

    def _load_file(self, repo: Any, path: str, sha: str) -> str:
        try:
            blob = repo.get_git_blob(sha)
            content = base64.b64decode(blob.content).decode("utf-8", errors="replace")
        except (GithubException, binascii.Error, ValueError) as exc:
            logger.warning("Could not load %s: %s", path, exc)
            return f"{file_marker(f'{path} (Load Error)')}\n\n"
        return frame_file(path, content)

    # -- Pull Request ---------------------------------------------------

    def create_fix_pull_request(
        self,
        full_name: str,
        file_path: str,
        content: str,
        description: str,
    ) -> str:
        """Branch → commit one file → open a PR. Returns the PR URL.

        If GitHub reports that the pull request already exists, the
        repository's pulls page is returned instead.
        """
        branch = build_branch_name()
        try:
            repo = self.gh.get_repo(full_name)
            base = repo.default_branch or "main"
            base_sha = repo.get_git_ref(f"heads/{base}").object.sha
            repo.create_git_ref(ref=f"refs/heads/{branch}", sha=base_sha)
            logger.info("Created branch %s on %s from %s", branch, full_name, base)

            message = f"fix: {description} (AI-Generated)"
            try:
                existing = repo.get_contents(file_path, ref=branch)
            except GithubException as exc:
                if exc.status != 404:
                    raise
                repo.create_file(file_path, message, content, branch=branch)
            else:
                repo.update_file(file_path, message, content, existing.sha, branch=branch)
            logger.info("Committed %s on %s", file_path, branch)
        except GithubException as exc:
            raise self._wrap(f"fix commit on {full_name}", exc) from exc

        try:
            pr = repo.create_pull(
                title=f"[QA-Fix] {description}",
                body=(
                    "This PR was automatically generated by the QA agent.\n\n"
                    f"**Fixes:** {description}"
                ),
                head=branch,
                base=base,
            )
        except GithubException as exc:
            if _is_existing_pr_error(exc):
                logger.info("PR already exists for %s", full_name)
                return f"https://github.com/{full_name}/pulls"
            raise self._wrap(f"pull request on {full_name}", exc) from exc

        logger.info("Created PR #%d: %s", pr.number, pr.html_url)
        return pr.html_url
