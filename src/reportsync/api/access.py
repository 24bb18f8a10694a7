"""Who may call the API, and on whose behalf.

Two layers: the shared API token gates every request in middleware, and
``require_caller`` resolves the end user forwarded by the upstream auth
layer for routes that act on a user's sites or credentials.
"""

from __future__ import annotations

import ipaddress
import secrets
from typing import NamedTuple

from fastapi import HTTPException, Request

_OPEN_PATHS = frozenset({"/api/health"})
_NO_TOKEN_DETAIL = (
    "Access denied. Configure REPORTSYNC_API_TOKEN or enable "
    "ALLOW_LOCALHOST_WITHOUT_TOKEN for local use."
)


class AccessDecision(NamedTuple):
    allowed: bool
    status_code: int = 200
    detail: str = ""


_ALLOW = AccessDecision(True)


def is_loopback_address(host: str) -> bool:
    if host.lower() == "localhost":
        return True
    try:
        addr = ipaddress.ip_address(host.partition("%")[0])
    except ValueError:
        return False
    mapped = getattr(addr, "ipv4_mapped", None)
    return (mapped or addr).is_loopback


def presented_token(request: Request) -> str:
    """Bearer token if one is sent, otherwise the ``X-API-Key`` value."""
    scheme, _, credentials = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer":
        return credentials.strip()
    return request.headers.get("x-api-key", "").strip()


def require_caller(request: Request) -> str:
    """Route dependency: the ``X-User-Id`` forwarded for the end user, or 401."""
    user_id = request.headers.get("x-user-id", "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return user_id


def authorize_request(
    request: Request,
    *,
    api_token: str,
    allow_localhost_without_token: bool = False,
    auth_disabled: bool = False,
) -> AccessDecision:
    if auth_disabled or request.method == "OPTIONS" or request.url.path in _OPEN_PATHS:
        return _ALLOW

    expected = api_token.strip()
    if expected:
        offered = presented_token(request)
        if offered and secrets.compare_digest(offered, expected):
            return _ALLOW
        return AccessDecision(False, 401, "Unauthorized")

    client_host = request.client.host if request.client else ""
    if allow_localhost_without_token and client_host and is_loopback_address(client_host):
        return _ALLOW
    return AccessDecision(False, 403, _NO_TOKEN_DETAIL)
