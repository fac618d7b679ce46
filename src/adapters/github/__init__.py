"""GitHub adapter (httpx + PyNaCl)."""

from adapters.github.provider import GitHubSourceControlProvider

__all__ = ["GitHubSourceControlProvider"]
