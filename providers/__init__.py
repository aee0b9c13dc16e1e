"""Adapters for the external blob storage and source host."""

from providers.cloudinary_service import CloudinaryStorage
from providers.github_service import GitHubService

__all__ = ["CloudinaryStorage", "GitHubService"]
