"""Admin IP whitelist: entry model, membership check and process-wide cache.

The cache holds an immutable snapshot (a tuple) and replaces it wholesale, so
concurrent readers always see either the old or the new list, never a
partially updated one. There is no TTL: a snapshot lives until a mutation
calls ``invalidate()``.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional, Tuple

from mailroom_admin.backend.core.ip_utils import find_matching_whitelist_ids

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WhitelistEntry:
    """One allowed address range with provenance metadata."""

    id: str
    cidr: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None


def is_ip_whitelisted(ip: Optional[str], entries: Iterable[WhitelistEntry]) -> bool:
    """True if ``ip`` matches at least one entry."""
    if not ip:
        return False
    return bool(find_matching_whitelist_ids(ip, entries))


Loader = Callable[[], Awaitable[List[WhitelistEntry]]]


class WhitelistCache:
    """Read-through cache of the whitelist rows.

    ``loader`` fetches the full current set from the store of record; its
    errors propagate to the caller instead of yielding an empty list.
    """

    def __init__(self, loader: Loader):
        self._loader = loader
        self._snapshot: Optional[Tuple[WhitelistEntry, ...]] = None
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def is_warm(self) -> bool:
        return self._snapshot is not None

    async def list(self) -> List[WhitelistEntry]:
        """Current entries, loading from the store on a cold cache."""
        snapshot = self._snapshot
        if snapshot is not None:
            return list(snapshot)

        async with self._lock:
            # Another request may have loaded it while we waited
            snapshot = self._snapshot
            if snapshot is not None:
                return list(snapshot)
            return list(await self._load())

    async def refresh(self) -> List[WhitelistEntry]:
        """Bypass the snapshot: load fresh rows and swap them in."""
        async with self._lock:
            return list(await self._load())

    def invalidate(self) -> None:
        """Drop the snapshot; the next ``list()`` reloads from the store."""
        self._generation += 1
        self._snapshot = None
        logger.debug("IP whitelist cache invalidated (generation %d)", self._generation)

    async def _load(self) -> Tuple[WhitelistEntry, ...]:
        generation = self._generation
        entries = tuple(await self._loader())
        # An invalidate() that raced with this load wins; don't store stale rows
        if generation == self._generation:
            self._snapshot = entries
        logger.debug("IP whitelist loaded: %d entries", len(entries))
        return entries
