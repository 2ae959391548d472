# sso_portal/auth/utils.py
"""Shared URL helpers for the server routes and the client bootstrapper."""

from urllib.parse import quote, urlsplit, urlunsplit


def build_query_string(params: dict) -> str:
    """
    Build a URL query string from a dictionary of parameters.
    Values are fully percent-encoded; None values are skipped.
    """
    return "&".join(
        f"{k}={quote(str(v), safe='')}" for k, v in params.items() if v is not None
    )


def strip_query(url: str) -> str:
    """Drop the query string and fragment, keeping scheme, host and path."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def origin_of(url: str) -> str:
    """scheme://host[:port], lowercased."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}".lower()
