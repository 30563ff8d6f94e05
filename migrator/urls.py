"""Helpers for working with driver URLs."""

from __future__ import annotations

__all__ = ["URLError", "EmptyURLError", "NoSchemeError", "scheme_from_url"]


class URLError(ValueError):
    """Base class for malformed driver URLs."""


class EmptyURLError(URLError):
    """Raised when an empty URL is given."""

    def __init__(self) -> None:
        super().__init__("URL cannot be empty")


class NoSchemeError(URLError):
    """Raised when a URL has no scheme in front of its first colon."""

    def __init__(self) -> None:
        super().__init__("no scheme")


def scheme_from_url(url: str) -> str:
    """Return the scheme of a URL, the text before its first colon."""
    if not url:
        raise EmptyURLError()

    scheme, colon, _ = url.partition(":")
    # No colon at all, or the colon is the first character.
    if not colon or not scheme:
        raise NoSchemeError()
    return scheme