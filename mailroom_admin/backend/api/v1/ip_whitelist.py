"""Admin IP whitelist API endpoints.

Every route requires an admin/owner session and passes the admin IP gate.
Mutations go through the WhitelistGuard, which refuses changes that would
empty the list or lock the caller out.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from mailroom_admin.backend.api.deps import (
    AdminUser,
    get_client_ip,
    get_whitelist_guard,
    require_admin_role,
    require_whitelisted_ip,
)
from mailroom_admin.backend.core.errors import StoreUnavailableError, WhitelistError
from mailroom_admin.backend.core.ip_utils import find_matching_whitelist_ids
from mailroom_admin.backend.core.ip_whitelist import WhitelistEntry
from mailroom_admin.backend.core.whitelist_guard import WhitelistGuard
from mailroom_admin.backend.schemas.ip_whitelist import (
    IPWhitelistEntryEnvelope,
    IPWhitelistEntryRequest,
    IPWhitelistEntryResponse,
    IPWhitelistListResponse,
    OkResponse,
)

logger = logging.getLogger(__name__)

require_admin = require_admin_role()

router = APIRouter(dependencies=[Depends(require_admin), Depends(require_whitelisted_ip)])


def _entry_to_response(entry: WhitelistEntry) -> IPWhitelistEntryResponse:
    return IPWhitelistEntryResponse(
        id=entry.id,
        ip_cidr=entry.cidr,
        description=entry.description,
        created_at=entry.created_at,
        created_by=entry.created_by,
        updated_at=entry.updated_at,
        updated_by=entry.updated_by,
    )


def _to_http(error: WhitelistError, action: str) -> HTTPException:
    if isinstance(error, StoreUnavailableError):
        logger.error("API error %s IP whitelist: %r", action, error.__cause__ or error)
    return error.to_http()


@router.get("", response_model=IPWhitelistListResponse)
async def list_ip_whitelist(
    request: Request,
    admin: AdminUser = Depends(require_admin),
    guard: WhitelistGuard = Depends(get_whitelist_guard),
):
    """List entries plus which of them match the caller's IP."""
    try:
        entries = await guard.list()
    except WhitelistError as e:
        raise _to_http(e, "fetching") from e

    client_ip = get_client_ip(request)
    return IPWhitelistListResponse(
        entries=[_entry_to_response(entry) for entry in entries],
        total_count=len(entries),
        current_ip=client_ip,
        current_match_ids=find_matching_whitelist_ids(client_ip, entries) if client_ip else [],
    )


@router.post("", response_model=IPWhitelistEntryEnvelope, status_code=201)
async def create_ip_whitelist_entry(
    request: Request,
    data: IPWhitelistEntryRequest,
    admin: AdminUser = Depends(require_admin),
    guard: WhitelistGuard = Depends(get_whitelist_guard),
):
    """Add an IP or CIDR to the whitelist."""
    try:
        entry = await guard.create(
            data.ip_cidr,
            data.description,
            actor_id=admin.user_id,
            client_ip=get_client_ip(request),
        )
    except WhitelistError as e:
        raise _to_http(e, "creating") from e
    return IPWhitelistEntryEnvelope(entry=_entry_to_response(entry))


@router.put("/{entry_id}", response_model=IPWhitelistEntryEnvelope)
async def update_ip_whitelist_entry(
    entry_id: str,
    request: Request,
    data: IPWhitelistEntryRequest,
    admin: AdminUser = Depends(require_admin),
    guard: WhitelistGuard = Depends(get_whitelist_guard),
):
    """Replace an entry's CIDR and description."""
    try:
        entry = await guard.update(
            entry_id,
            data.ip_cidr,
            data.description,
            actor_id=admin.user_id,
            client_ip=get_client_ip(request),
        )
    except WhitelistError as e:
        raise _to_http(e, "updating") from e
    return IPWhitelistEntryEnvelope(entry=_entry_to_response(entry))


@router.delete("/{entry_id}", response_model=OkResponse)
async def delete_ip_whitelist_entry(
    entry_id: str,
    request: Request,
    admin: AdminUser = Depends(require_admin),
    guard: WhitelistGuard = Depends(get_whitelist_guard),
):
    """Remove an entry."""
    try:
        await guard.delete(entry_id, actor_id=admin.user_id, client_ip=get_client_ip(request))
    except WhitelistError as e:
        raise _to_http(e, "deleting") from e
    return OkResponse()
