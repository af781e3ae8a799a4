"""Gateway URL helpers: normalisation, scheme rewrites and default names."""

from __future__ import annotations

import re
from urllib.parse import urlsplit

_SCHEME_RE = re.compile(r"^([A-Za-z][A-Za-z0-9+.\-]*)://")

_LOCAL_HOSTS = {"localhost", "127.0.0.1"}


def normalize_url(url: str) -> str:
    """
    Canonical form used as the registry's dedupe key.

    Adds `http://` when no scheme is present, lower-cases the scheme and
    strips trailing slashes. Malformed input is returned in the same shape;
    it simply fails to connect later.
    """
    url = url.strip()
    match = _SCHEME_RE.match(url)
    if match:
        url = match.group(1).lower() + url[match.end(1):]
    else:
        url = "http://" + url
    return url.rstrip("/")


def to_ws_url(url: str) -> str:
    """http → ws, https → wss. ws/wss urls pass through."""
    if url.startswith("http"):
        return "ws" + url[len("http"):]
    return url


def to_http_url(url: str) -> str:
    """ws → http, wss → https. http/https urls pass through."""
    if url.startswith("ws"):
        return "http" + url[len("ws"):]
    return url


def derive_gateway_name(url: str) -> str:
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        port = parts.port
    except ValueError:
        return "Gateway"
    if not hostname:
        return "Gateway"
    if hostname in _LOCAL_HOSTS:
        return f"Local Gateway (:{port or 80})"
    return hostname
