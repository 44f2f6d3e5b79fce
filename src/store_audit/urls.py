"""URL helpers for store submissions."""

from __future__ import annotations

from urllib.parse import urlparse


def normalize_url(url: str) -> str:
    """Prefix ``https://`` when *url* has no scheme.

    Already-prefixed URLs pass through unchanged, so the function is
    idempotent.
    """
    url = url.strip()
    if not url:
        raise ValueError("URL must not be empty")
    if url.startswith(("http://", "https://")):
        return url
    return f"https://{url}"


def store_domain(url: str) -> str:
    """Return the bare host of a store URL (``www.`` stripped)."""
    host = urlparse(normalize_url(url)).hostname or ""
    if host.startswith("www."):
        host = host[4:]
    return host
