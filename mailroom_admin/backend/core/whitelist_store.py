"""Store of record for admin IP whitelist rows (PostgreSQL via asyncpg).

Failures surface as ``StoreError`` with an explicit ``StoreErrorKind``;
callers never inspect error message text.

Rows reach the store in two shapes: the list query aggregates with
``json_agg`` and asyncpg hands the JSON back as text (``RawPayload``), while
``RETURNING`` queries give records (``ParsedPayload``). ``decode_entries`` is
the only place that turns either into ``WhitelistEntry`` objects.
"""
import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Mapping, Optional, Union

import asyncpg

from mailroom_admin.backend.core.database import DatabaseService
from mailroom_admin.backend.core.errors import (
    DuplicateEntryError,
    EntryNotFoundError,
    StoreUnavailableError,
    WhitelistError,
)
from mailroom_admin.backend.core.ip_whitelist import WhitelistEntry

logger = logging.getLogger(__name__)

_COLUMNS = "id, ip_cidr, description, created_at, created_by, updated_at, updated_by"


class StoreErrorKind(str, Enum):
    DUPLICATE = "duplicate"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


class StoreError(Exception):
    """Classified failure reported by the store of record."""

    def __init__(self, kind: StoreErrorKind, message: str = ""):
        self.kind = kind
        super().__init__(message or kind.value)

    def to_domain_error(self) -> WhitelistError:
        if self.kind == StoreErrorKind.DUPLICATE:
            return DuplicateEntryError()
        if self.kind == StoreErrorKind.NOT_FOUND:
            return EntryNotFoundError()
        return StoreUnavailableError()


# ── Payload decoding ────────────────────────────────────────────

@dataclass(frozen=True)
class RawPayload:
    """JSON text that still needs parsing."""

    text: Union[str, bytes]


@dataclass(frozen=True)
class ParsedPayload:
    """Already structured data: a mapping or a list of mappings."""

    data: Any


Payload = Union[RawPayload, ParsedPayload]


def as_payload(value: Any) -> Payload:
    """Tag a value returned by the driver."""
    if isinstance(value, (str, bytes, bytearray)):
        return RawPayload(bytes(value) if isinstance(value, bytearray) else value)
    return ParsedPayload(value)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _row_to_entry(row: Mapping[str, Any]) -> WhitelistEntry:
    return WhitelistEntry(
        id=str(row["id"]),
        cidr=row["ip_cidr"],
        description=row.get("description"),
        created_at=_parse_timestamp(row.get("created_at")),
        created_by=row.get("created_by"),
        updated_at=_parse_timestamp(row.get("updated_at")),
        updated_by=row.get("updated_by"),
    )


def decode_entries(payload: Payload) -> List[WhitelistEntry]:
    """Turn a store payload into entries.

    Malformed payloads raise ``StoreError(UNAVAILABLE)`` rather than
    degrading to an empty list.
    """
    if isinstance(payload, RawPayload):
        try:
            data = json.loads(payload.text)
        except (TypeError, ValueError) as e:
            raise StoreError(StoreErrorKind.UNAVAILABLE, "Malformed whitelist payload") from e
    else:
        data = payload.data

    if data is None:
        return []
    if isinstance(data, Mapping):
        data = [data]
    if not isinstance(data, list):
        raise StoreError(
            StoreErrorKind.UNAVAILABLE,
            f"Unexpected whitelist payload type: {type(data).__name__}",
        )
    try:
        return [_row_to_entry(dict(row)) for row in data]
    except (KeyError, TypeError, ValueError) as e:
        raise StoreError(StoreErrorKind.UNAVAILABLE, f"Malformed whitelist row: {e}") from e


def _parse_entry_id(entry_id: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(entry_id))
    except ValueError:
        raise StoreError(StoreErrorKind.NOT_FOUND, f"Entry {entry_id} not found") from None


# ── Store ───────────────────────────────────────────────────────

class WhitelistStore:
    """CRUD over ``admin_ip_whitelist``."""

    def __init__(self, db: DatabaseService):
        self._db = db

    @asynccontextmanager
    async def _connection(self):
        if not self._db.is_connected:
            raise StoreError(StoreErrorKind.UNAVAILABLE, "Database not connected")
        try:
            async with self._db.acquire() as conn:
                yield conn
        except StoreError:
            raise
        except asyncpg.UniqueViolationError as e:
            raise StoreError(StoreErrorKind.DUPLICATE, str(e)) from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            raise StoreError(StoreErrorKind.UNAVAILABLE, str(e)) from e

    async def list_entries(self) -> List[WhitelistEntry]:
        """All entries, newest first."""
        async with self._connection() as conn:
            raw = await conn.fetchval(
                f"""
                SELECT COALESCE(json_agg(w ORDER BY w.created_at DESC), '[]'::json)
                FROM (SELECT {_COLUMNS} FROM admin_ip_whitelist) AS w
                """
            )
        return decode_entries(as_payload(raw))

    async def insert_entry(
        self,
        cidr: str,
        description: Optional[str],
        created_by: Optional[str],
    ) -> WhitelistEntry:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO admin_ip_whitelist (ip_cidr, description, created_by)
                VALUES ($1, $2, $3)
                RETURNING {_COLUMNS}
                """,
                cidr, description, created_by,
            )
        return decode_entries(as_payload(dict(row)))[0]

    async def update_entry(
        self,
        entry_id: str,
        cidr: str,
        description: Optional[str],
        updated_by: Optional[str],
    ) -> WhitelistEntry:
        key = _parse_entry_id(entry_id)
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE admin_ip_whitelist
                SET ip_cidr = $2, description = $3, updated_at = NOW(), updated_by = $4
                WHERE id = $1
                RETURNING {_COLUMNS}
                """,
                key, cidr, description, updated_by,
            )
        if row is None:
            raise StoreError(StoreErrorKind.NOT_FOUND, f"Entry {entry_id} not found")
        return decode_entries(as_payload(dict(row)))[0]

    async def delete_entry(self, entry_id: str) -> None:
        key = _parse_entry_id(entry_id)
        async with self._connection() as conn:
            deleted = await conn.fetchval(
                "DELETE FROM admin_ip_whitelist WHERE id = $1 RETURNING id",
                key,
            )
        if deleted is None:
            raise StoreError(StoreErrorKind.NOT_FOUND, f"Entry {entry_id} not found")
