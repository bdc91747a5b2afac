"""API dependencies for the admin backend."""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from mailroom_admin.backend.core.config import get_web_settings
from mailroom_admin.backend.core.errors import E, api_error
from mailroom_admin.backend.core.ip_utils import resolve_client_ip
from mailroom_admin.backend.core.ip_whitelist import WhitelistCache, is_ip_whitelisted
from mailroom_admin.backend.core.security import decode_token
from mailroom_admin.backend.core.whitelist_guard import WhitelistGuard
from mailroom_admin.backend.core.whitelist_store import StoreError

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=False)


@dataclass
class AdminUser:
    """Authenticated caller."""

    user_id: str
    role: str = "user"


async def get_current_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AdminUser:
    """Dependency for verifying the caller's session token."""
    if credentials is None:
        raise api_error(
            status.HTTP_401_UNAUTHORIZED,
            E.INVALID_TOKEN,
            "Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials)
    if not payload or payload.get("type") != "access" or not payload.get("sub"):
        raise api_error(
            status.HTTP_401_UNAUTHORIZED,
            E.INVALID_TOKEN,
            headers={"WWW-Authenticate": "Bearer"},
        )

    return AdminUser(
        user_id=str(payload["sub"]),
        role=str(payload.get("role") or "user").lower(),
    )


def require_admin_role():
    """Dependency that admits only the configured admin roles (admin/owner)."""
    async def _check(admin: AdminUser = Depends(get_current_admin)) -> AdminUser:
        if admin.role not in get_web_settings().admin_roles:
            logger.warning("Forbidden: user %s with role %s", admin.user_id, admin.role)
            raise api_error(status.HTTP_403_FORBIDDEN, E.FORBIDDEN)
        return admin
    return _check


# ── Whitelist services (constructed once per app in main.create_app) ──

def get_whitelist_cache(request: Request) -> WhitelistCache:
    return request.app.state.whitelist_cache


def get_whitelist_guard(request: Request) -> WhitelistGuard:
    return request.app.state.whitelist_guard


# ── Client IP / admin IP gate ───────────────────────────────────

def get_client_ip(request: Request) -> Optional[str]:
    """Resolved client IP (proxy headers first, then the transport peer)."""
    peer = request.client.host if request.client else None
    return resolve_client_ip(request.headers, peer)


async def require_whitelisted_ip(
    request: Request,
    cache: WhitelistCache = Depends(get_whitelist_cache),
) -> Optional[str]:
    """Reject admin requests whose client IP matches no whitelist entry.

    An empty whitelist (fresh install) lets requests through so the first
    entry can be created.
    """
    client_ip = get_client_ip(request)
    if not get_web_settings().admin_ip_gate:
        return client_ip

    try:
        entries = await cache.list()
    except StoreError as e:
        logger.error("Admin IP gate could not load whitelist: %s", e)
        raise e.to_domain_error().to_http() from e

    if not entries:
        logger.warning("Admin IP whitelist is empty; allowing %s (path: %s)", client_ip, request.url.path)
        return client_ip

    if not is_ip_whitelisted(client_ip, entries):
        logger.warning("IP %s rejected by admin whitelist (path: %s)", client_ip, request.url.path)
        raise api_error(status.HTTP_403_FORBIDDEN, E.IP_NOT_WHITELISTED)

    return client_ip
