"""Safe create/update/delete of admin IP whitelist entries.

Every mutation is checked against the current whitelist before it is
written, and rejected if the resulting list would

* be empty (``LastEntryError``),
* contain the same canonical CIDR twice (``DuplicateEntryError``),
* no longer match the acting admin's own address (``SelfLockoutError``).

The lockout check only applies to admins whose address matches the list
right now; an admin coming in through a path the gate does not cover (or
whose address could not be resolved) is not relying on the entry they edit.

With ``revalidate`` on, the checks run a second time against rows freshly
loaded from the store immediately before the write. Mutations within one
process are additionally serialized by a lock.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from mailroom_admin.backend.core.errors import (
    DuplicateEntryError,
    EntryNotFoundError,
    LastEntryError,
    SelfLockoutError,
)
from mailroom_admin.backend.core.ip_utils import is_ip_in_cidr, normalize_cidr, parse_ip_list
from mailroom_admin.backend.core.ip_whitelist import WhitelistCache, WhitelistEntry, is_ip_whitelisted
from mailroom_admin.backend.core.whitelist_store import StoreError, StoreErrorKind

logger = logging.getLogger(__name__)

ENTITY_TYPE = "ADMIN_IP_WHITELIST"

UPDATE_LOCKOUT_MESSAGE = (
    "Update would remove your current IP from the whitelist. Add another entry first."
)
DELETE_LOCKOUT_MESSAGE = (
    "Delete would remove your current IP from the whitelist. Add another entry first."
)


def clean_description(description: Any) -> Optional[str]:
    """Trim; blank or non-text descriptions become None."""
    if not isinstance(description, str):
        return None
    return description.strip() or None


def _find_entry(entries: List[WhitelistEntry], entry_id: str) -> WhitelistEntry:
    for entry in entries:
        if entry.id == entry_id:
            return entry
    raise EntryNotFoundError()


def _would_lock_out(
    client_ip: Optional[str],
    entries: List[WhitelistEntry],
    remaining: List[WhitelistEntry],
    proposed_cidr: Optional[str] = None,
) -> bool:
    if not client_ip or not is_ip_whitelisted(client_ip, entries):
        return False
    if is_ip_whitelisted(client_ip, remaining):
        return False
    if proposed_cidr is not None and is_ip_in_cidr(client_ip, proposed_cidr):
        return False
    return True


class WhitelistGuard:
    """Mutation guard wrapping the whitelist store."""

    def __init__(self, store, cache: WhitelistCache, audit, revalidate: bool = True):
        self._store = store
        self._cache = cache
        self._audit = audit
        self._revalidate = revalidate
        self._lock = asyncio.Lock()

    # ── Public operations ─────────────────────────────────────

    async def list(self) -> List[WhitelistEntry]:
        return await self._load()

    async def create(
        self,
        cidr_input: Any,
        description: Any,
        actor_id: Optional[str],
        client_ip: Optional[str] = None,
    ) -> WhitelistEntry:
        """Add an entry. Adding can never narrow access, so only duplicates are rejected."""
        cidr = normalize_cidr(cidr_input)
        description = clean_description(description)

        async with self._lock:
            entries = await self._load()
            if any(entry.cidr == cidr for entry in entries):
                raise DuplicateEntryError()
            entry = await self._persist(self._store.insert_entry(cidr, description, actor_id))
            self._cache.invalidate()

        logger.info("IP whitelist entry %s created by %s: %s", entry.id, actor_id, entry.cidr)
        await self._record(
            actor_id, "CREATE", entry.id,
            {"ip_cidr": entry.cidr, "description": entry.description},
            client_ip,
        )
        return entry

    async def update(
        self,
        entry_id: str,
        cidr_input: Any,
        description: Any,
        actor_id: Optional[str],
        client_ip: Optional[str] = None,
    ) -> WhitelistEntry:
        cidr = normalize_cidr(cidr_input)
        description = clean_description(description)

        async with self._lock:
            entries = await self._load()
            existing = self._check_update(entries, entry_id, cidr, client_ip)
            if self._revalidate:
                entries = await self._load(fresh=True)
                existing = self._check_update(entries, entry_id, cidr, client_ip)
            entry = await self._persist(
                self._store.update_entry(entry_id, cidr, description, actor_id)
            )
            self._cache.invalidate()

        logger.info(
            "IP whitelist entry %s updated by %s: %s -> %s",
            entry_id, actor_id, existing.cidr, entry.cidr,
        )
        await self._record(
            actor_id, "UPDATE", entry.id,
            {
                "previous": {"ip_cidr": existing.cidr, "description": existing.description},
                "next": {"ip_cidr": entry.cidr, "description": entry.description},
            },
            client_ip,
        )
        return entry

    async def delete(
        self,
        entry_id: str,
        actor_id: Optional[str],
        client_ip: Optional[str] = None,
    ) -> WhitelistEntry:
        """Hard-delete an entry; returns the removed row."""
        async with self._lock:
            entries = await self._load()
            existing = self._check_delete(entries, entry_id, client_ip)
            if self._revalidate:
                entries = await self._load(fresh=True)
                existing = self._check_delete(entries, entry_id, client_ip)
            await self._persist(self._store.delete_entry(entry_id))
            self._cache.invalidate()

        logger.info("IP whitelist entry %s deleted by %s: %s", entry_id, actor_id, existing.cidr)
        await self._record(
            actor_id, "DELETE", existing.id,
            {"ip_cidr": existing.cidr, "description": existing.description},
            client_ip,
        )
        return existing

    async def bootstrap(self, raw: str, actor_id: str = "system") -> int:
        """Seed an empty whitelist from a comma-separated IP/CIDR list.

        Returns the number of entries inserted. Does nothing when the
        whitelist already has entries.
        """
        candidates = parse_ip_list(raw)
        if not candidates:
            return 0

        inserted = 0
        async with self._lock:
            if await self._load(fresh=True):
                return 0
            seen = set()
            for item in candidates:
                try:
                    cidr = normalize_cidr(item)
                except ValueError as e:
                    logger.warning("Skipping invalid bootstrap IP whitelist entry %r: %s", item, e)
                    continue
                if cidr in seen:
                    continue
                seen.add(cidr)
                await self._persist(self._store.insert_entry(cidr, "Bootstrap", actor_id))
                inserted += 1
            self._cache.invalidate()

        if inserted:
            logger.info("IP whitelist bootstrapped with %d entries", inserted)
        return inserted

    # ── Checks ────────────────────────────────────────────────

    @staticmethod
    def _check_update(
        entries: List[WhitelistEntry],
        entry_id: str,
        cidr: str,
        client_ip: Optional[str],
    ) -> WhitelistEntry:
        existing = _find_entry(entries, entry_id)
        if any(entry.cidr == cidr and entry.id != entry_id for entry in entries):
            raise DuplicateEntryError()
        remaining = [entry for entry in entries if entry.id != entry_id]
        if _would_lock_out(client_ip, entries, remaining, proposed_cidr=cidr):
            logger.info("IP whitelist update of %s rejected: would lock out %s", entry_id, client_ip)
            raise SelfLockoutError(UPDATE_LOCKOUT_MESSAGE)
        return existing

    @staticmethod
    def _check_delete(
        entries: List[WhitelistEntry],
        entry_id: str,
        client_ip: Optional[str],
    ) -> WhitelistEntry:
        existing = _find_entry(entries, entry_id)
        remaining = [entry for entry in entries if entry.id != entry_id]
        if not remaining:
            raise LastEntryError()
        if _would_lock_out(client_ip, entries, remaining):
            logger.info("IP whitelist delete of %s rejected: would lock out %s", entry_id, client_ip)
            raise SelfLockoutError(DELETE_LOCKOUT_MESSAGE)
        return existing

    # ── Helpers ───────────────────────────────────────────────

    async def _load(self, fresh: bool = False) -> List[WhitelistEntry]:
        try:
            if fresh:
                return await self._cache.refresh()
            return await self._cache.list()
        except StoreError as e:
            logger.error("Failed to load IP whitelist: %s", e)
            raise e.to_domain_error() from e

    async def _persist(self, operation):
        try:
            return await operation
        except StoreError as e:
            if e.kind == StoreErrorKind.UNAVAILABLE:
                logger.error("IP whitelist store write failed: %s", e)
            raise e.to_domain_error() from e

    async def _record(
        self,
        actor_id: Optional[str],
        action: str,
        entity_id: str,
        details: Dict[str, Any],
        client_ip: Optional[str],
    ) -> None:
        try:
            await self._audit.record(
                actor_id=actor_id,
                action=action,
                entity_type=ENTITY_TYPE,
                entity_id=entity_id,
                details=details,
                ip_address=client_ip,
            )
        except Exception as e:
            logger.warning("Audit log write failed for %s %s: %s", action, entity_id, e)
