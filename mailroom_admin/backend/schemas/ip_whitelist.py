"""Admin IP whitelist schemas."""
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel


class IPWhitelistEntryRequest(BaseModel):
    """Body for creating or replacing an entry.

    Both fields accept any JSON value. ``ip_cidr`` is validated by
    ``normalize_cidr`` (400 INVALID_INPUT / INVALID_ADDRESS); a non-text
    ``description`` is stored as null.
    """

    ip_cidr: Any = None
    description: Any = None


class IPWhitelistEntryResponse(BaseModel):
    id: str
    ip_cidr: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None


class IPWhitelistListResponse(BaseModel):
    entries: List[IPWhitelistEntryResponse]
    total_count: int
    current_ip: Optional[str] = None
    current_match_ids: List[str] = []


class IPWhitelistEntryEnvelope(BaseModel):
    entry: IPWhitelistEntryResponse


class OkResponse(BaseModel):
    ok: bool = True
