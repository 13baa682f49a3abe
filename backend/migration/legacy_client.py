"""
Async HTTP client for the legacy Laravel Nova admin panel.

Why:
    The history import reads users, event applications and events through
    Nova's JSON API. Nova only answers to a logged-in browser session, so the
    client performs the form login once and then replays the session and
    XSRF cookies on every read.

Behavior:
    - `validate_base_url` rejects non-http(s) URLs and local/private hosts
      (SSRF guard) unless private hosts are explicitly allowed.
    - `NovaClient.connect` validates, logs in and returns a ready client; a
      rejected login raises `LegacyAuthError` and closes the HTTP client.
    - `request` returns a parsed `LegacyPage`. 401/419 raise
      `LegacyAuthError`; other failures raise `LegacyRequestError`.
    - No retries and no custom timeouts: httpx defaults apply.

Security:
    Credentials are never logged; only the masked login email appears.
"""
from __future__ import annotations

import ipaddress
import logging
import re
from typing import Any, Mapping, Optional
from urllib.parse import unquote, urlparse

import httpx

from .config import MigrationConfig, load_migration_config
from .models import LegacyCredentials
from .resources import LegacyPage, parse_page


logger = logging.getLogger("volunteer_portal.migration.nova")

_META_CSRF_RE = re.compile(r'<meta[^>]+name=["\']csrf-token["\'][^>]+content=["\']([^"\']+)["\']', re.I)
_INPUT_CSRF_RE = re.compile(r'<input[^>]+name=["\']_token["\'][^>]+value=["\']([^"\']+)["\']', re.I)


class LegacyAuthError(RuntimeError):
    """Nova rejected the login or the session expired."""


class LegacyRequestError(RuntimeError):
    """A Nova read failed (transport error, non-2xx status, invalid JSON)."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidBaseUrlError(ValueError):
    """The Nova base URL is malformed or points at a local/private host."""


def mask_email(email: Optional[str]) -> str:
    """Mask an email for logs: ``jane@x.com`` -> ``ja***@x.com``."""
    if not email or "@" not in email:
        return "***"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _host_restriction(hostname: str) -> Optional[str]:
    """Return "localhost" or "private" for hosts the import must not reach."""
    if hostname in ("localhost", "localhost.localdomain") or hostname.endswith(".localhost"):
        return "localhost"
    try:
        addr = ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        return None
    if addr.is_loopback or addr.is_unspecified:
        return "localhost"
    if addr.is_private or addr.is_link_local:
        return "private"
    return None


def validate_base_url(raw_url: Any, *, allow_private: bool = False) -> str:
    """Return the normalized base URL or raise `InvalidBaseUrlError`."""
    if not isinstance(raw_url, str) or not raw_url.strip():
        raise InvalidBaseUrlError("Nova baseUrl is not a valid URL")
    try:
        parsed = urlparse(raw_url.strip())
        hostname = (parsed.hostname or "").lower()
    except ValueError:
        raise InvalidBaseUrlError("Nova baseUrl is not a valid URL")
    if parsed.scheme not in ("http", "https"):
        raise InvalidBaseUrlError("Nova baseUrl must use http or https protocol")
    if not hostname:
        raise InvalidBaseUrlError("Nova baseUrl is not a valid URL")
    restriction = None if allow_private else _host_restriction(hostname)
    if restriction == "localhost":
        raise InvalidBaseUrlError("Nova baseUrl must not point to a localhost address")
    if restriction == "private":
        raise InvalidBaseUrlError("Nova baseUrl must not point to a private network address")
    return raw_url.strip().rstrip("/")


def _extract_csrf_token(html: str) -> Optional[str]:
    for pattern in (_META_CSRF_RE, _INPUT_CSRF_RE):
        match = pattern.search(html or "")
        if match:
            return match.group(1)
    return None


class NovaClient:
    """Session-authenticated reader for one Nova instance."""

    def __init__(
        self,
        base_url: str,
        *,
        config: Optional[MigrationConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or load_migration_config()
        self.base_url = validate_base_url(base_url, allow_private=self.config.allow_private_hosts)
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            transport=transport,
            follow_redirects=False,
            headers={"User-Agent": "volunteer-portal-migration/1.0"},
        )
        self._authenticated = False

    @classmethod
    async def connect(
        cls,
        credentials: LegacyCredentials,
        *,
        config: Optional[MigrationConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "NovaClient":
        client = cls(credentials.base_url, config=config, transport=transport)
        try:
            await client.authenticate(credentials.email, credentials.password)
        except BaseException:
            await client.aclose()
            raise
        return client

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    def _xsrf_headers(self) -> dict:
        token = self._http.cookies.get("XSRF-TOKEN")
        return {"X-XSRF-TOKEN": unquote(token)} if token else {}

    async def authenticate(self, email: str, password: str) -> None:
        login_path = self.config.login_path
        try:
            page = await self._http.get(login_path, headers={"Accept": "text/html"})
        except httpx.HTTPError as exc:
            raise LegacyAuthError(f"Nova login page unreachable: {exc.__class__.__name__}")
        if page.status_code >= 400:
            raise LegacyAuthError(f"Nova login page returned {page.status_code}")
        form = {"email": email, "password": password, "remember": "on"}
        token = _extract_csrf_token(page.text)
        if token:
            form["_token"] = token
        try:
            resp = await self._http.post(
                login_path,
                data=form,
                headers={"Accept": "text/html,application/json", **self._xsrf_headers()},
            )
        except httpx.HTTPError as exc:
            raise LegacyAuthError(f"Nova login failed: {exc.__class__.__name__}")
        if resp.status_code >= 400:
            raise LegacyAuthError(f"Nova login rejected ({resp.status_code})")
        location = resp.headers.get("location", "")
        if resp.is_redirect and location.rstrip("/").endswith(login_path.rstrip("/")):
            # Laravel bounces failed logins back to the form
            raise LegacyAuthError("Nova login rejected: invalid credentials")
        self._authenticated = True
        # Confirm the session actually opens the API
        try:
            await self.request("/users", {"perPage": 1})
        except LegacyRequestError as exc:
            self._authenticated = False
            raise LegacyAuthError(f"Nova API unavailable after login: {exc}")
        logger.info("Nova session established for %s", mask_email(email))

    async def request(self, path: str, params: Optional[Mapping[str, Any]] = None) -> LegacyPage:
        if not self._authenticated:
            raise LegacyAuthError("Nova client is not authenticated")
        url = self.config.api_prefix + "/" + path.lstrip("/")
        headers = {
            "Accept": "application/json",
            "X-Requested-With": "XMLHttpRequest",
            **self._xsrf_headers(),
        }
        try:
            resp = await self._http.get(url, params=dict(params or {}), headers=headers)
        except httpx.HTTPError as exc:
            raise LegacyRequestError(f"GET {path} failed: {exc.__class__.__name__}")
        if resp.status_code in (401, 419):
            self._authenticated = False
            raise LegacyAuthError(f"Nova session rejected ({resp.status_code})")
        if resp.is_redirect:
            self._authenticated = False
            raise LegacyAuthError("Nova redirected to login; session expired")
        if resp.status_code >= 400:
            raise LegacyRequestError(f"GET {path} returned {resp.status_code}", status_code=resp.status_code)
        try:
            payload = resp.json()
        except ValueError:
            raise LegacyRequestError(f"GET {path} returned invalid JSON", status_code=resp.status_code)
        page = parse_page(payload)
        if page.malformed:
            logger.warning("Skipped %d malformed resources from %s", page.malformed, path)
        return page

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "NovaClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


__all__ = [
    "NovaClient",
    "LegacyAuthError",
    "LegacyRequestError",
    "InvalidBaseUrlError",
    "validate_base_url",
    "mask_email",
]
