"""Tests for the qa-cycle command-line runner."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from unittest.mock import patch

_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from shared.config import Settings
from workflow.cli import build_parser, load_directory, main
from workflow.test_cycle_machine import ScriptedReasoning, _tasks


def _settings(tmp_path: Path, **overrides) -> Settings:
    values = dict(
        STATE_DIR=str(tmp_path / "state"),
        ARCHIVE_DIR=str(tmp_path / "archive"),
        LOG_FILE="",
        CLOUDINARY_CLOUD_NAME="",
        CLOUDINARY_UPLOAD_PRESET="",
        GITHUB_TOKEN="",
        PERSIST_DEBOUNCE_S=0.0,
    )
    values.update(overrides)
    return Settings(**values)


def _project(tmp_path: Path) -> Path:
    root = tmp_path / "app"
    (root / "src").mkdir(parents=True)
    (root / "node_modules" / "lib").mkdir(parents=True)
    (root / "src" / "auth.ts").write_text("export const login = () => true;\n")
    (root / "src" / "logo.png").write_bytes(b"\x89PNG")
    (root / "node_modules" / "lib" / "index.js").write_text("module.exports = {};\n")
    return root


class TestLoadDirectory:

    def test_bundles_relevant_files_only(self, tmp_path):
        bundle = load_directory(_project(tmp_path))
        assert "// === FILE: src/auth.ts ===" in bundle
        assert "logo.png" not in bundle
        assert "node_modules" not in bundle


class TestMain:

    def test_run_all_passed_exits_zero(self, tmp_path, capsys):
        cfg = _settings(tmp_path)
        out_file = tmp_path / "result.json"
        reasoning = ScriptedReasoning(_tasks("t1", "t2"))

        with patch("workflow.cli.build_default_team", return_value=reasoning):
            code = main(
                ["run", "--path", str(_project(tmp_path)), "--name", "octo/app",
                 "--no-delay", "--output", str(out_file)],
                cfg=cfg,
            )

        assert code == 0
        assert "Outcome: ALL_PASSED" in capsys.readouterr().out
        result = json.loads(out_file.read_text())
        assert result["outcome"] == "ALL_PASSED"
        assert (tmp_path / "state" / "QA_APP_STATE_V1.json").is_file()

    def test_cycle_limit_exits_one(self, tmp_path):
        cfg = _settings(tmp_path)
        reasoning = ScriptedReasoning(_tasks("t1"), verdicts={"t1": [False]})

        with patch("workflow.cli.build_default_team", return_value=reasoning):
            code = main(
                ["run", "--path", str(_project(tmp_path)), "--max-cycles", "1", "--no-delay"],
                cfg=cfg,
            )

        assert code == 1

    def test_missing_api_key_exits_two(self, tmp_path, capsys):
        cfg = _settings(tmp_path)
        reasoning = ScriptedReasoning(_tasks("t1"), configured=False)

        with patch("workflow.cli.build_default_team", return_value=reasoning):
            code = main(["run", "--path", str(_project(tmp_path)), "--no-delay"], cfg=cfg)

        assert code == 2
        assert "GEMINI_API_KEY" in capsys.readouterr().err

    def test_view_and_catalog_after_run(self, tmp_path, capsys):
        cfg = _settings(tmp_path)
        reasoning = ScriptedReasoning(_tasks("t1"), verdicts={"t1": [False]})

        with patch("workflow.cli.build_default_team", return_value=reasoning):
            main(["run", "--path", str(_project(tmp_path)), "--name", "octo/app",
                  "--max-cycles", "0", "--no-delay"], cfg=cfg)
            capsys.readouterr()
            assert main(["view", "0"], cfg=cfg) == 0
            view_out = capsys.readouterr().out
            assert main(["catalog"], cfg=cfg) == 0
            catalog_out = capsys.readouterr().out

        assert "[FAILED] t1" in view_out
        assert "octo/app  Login App" in catalog_out

    def test_view_unknown_cycle_exits_one(self, tmp_path):
        cfg = _settings(tmp_path)
        with patch("workflow.cli.build_default_team", return_value=ScriptedReasoning([])):
            assert main(["view", "5"], cfg=cfg) == 1

    def test_parser_requires_command(self):
        args = build_parser().parse_args(["run", "--github", "octo/app", "--max-cycles", "2"])
        assert args.github == "octo/app"
        assert args.max_cycles == 2
