"""
Web security helpers shared by route modules.

`_is_same_origin` backs the CSRF guard on the admin write routes: browser
requests must come from the portal's own origin.
"""
from __future__ import annotations

import os
from urllib.parse import urlparse

from fastapi import Request

Origin = tuple[str, str, int]


def _default_port(scheme: str) -> int:
    return 443 if scheme == "https" else 80


def _origin_of(url: str) -> Origin:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.hostname:
        raise ValueError("invalid_origin")
    scheme = parsed.scheme.lower()
    return scheme, parsed.hostname.lower(), int(parsed.port or _default_port(scheme))


def _first(value: str) -> str:
    return value.split(",")[0].strip()


def _server_origin(request: Request) -> Origin:
    """Origin the portal is served from; X-Forwarded-* only with PORTAL_TRUST_PROXY=true."""
    trust_proxy = (os.getenv("PORTAL_TRUST_PROXY", "false") or "").lower() == "true"
    if not trust_proxy:
        scheme = (request.url.scheme or "http").lower()
        port = int(request.url.port or _default_port(scheme))
        return scheme, (request.url.hostname or "").lower(), port

    scheme = (_first(request.headers.get("x-forwarded-proto") or "") or request.url.scheme or "http").lower()
    host = _first(request.headers.get("x-forwarded-host") or request.headers.get("host") or "")
    port = _default_port(scheme)
    if ":" in host:
        host, port_str = host.rsplit(":", 1)
        if port_str.isdigit():
            port = int(port_str)
    elif request.url.port and not request.headers.get("x-forwarded-host"):
        port = int(request.url.port)
    forwarded_port = _first(request.headers.get("x-forwarded-port") or "")
    if forwarded_port.isdigit():
        port = int(forwarded_port)
    return scheme, (host or request.url.hostname or "").lower(), port


def _is_same_origin(request: Request) -> bool:
    """Compare Origin (or Referer) with the server origin.

    Requests without either header are allowed so non-browser clients (CLI,
    server-to-server) keep working; the route decides whether to require one.
    """
    claimed = request.headers.get("origin") or request.headers.get("referer")
    if not claimed:
        return True
    try:
        return _origin_of(claimed) == _server_origin(request)
    except ValueError:
        return False
