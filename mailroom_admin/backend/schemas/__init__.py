"""Schemas for the admin backend API."""
from mailroom_admin.backend.schemas.ip_whitelist import (
    IPWhitelistEntryRequest,
    IPWhitelistEntryResponse,
    IPWhitelistListResponse,
    IPWhitelistEntryEnvelope,
    OkResponse,
)

__all__ = [
    "IPWhitelistEntryRequest",
    "IPWhitelistEntryResponse",
    "IPWhitelistListResponse",
    "IPWhitelistEntryEnvelope",
    "OkResponse",
]
