"""Shared test fixtures for backend tests.

Provides:
- In-memory fakes for the whitelist store and the audit sink
- Real WhitelistCache / WhitelistGuard wired to those fakes
- FastAPI test app with the fakes installed and auth overridden
- httpx AsyncClient for API testing, per role
"""
import os
import sys
import tempfile
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

import pytest
import pytest_asyncio

# Ensure project root is on path
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

# Set required environment variables BEFORE any app imports
os.environ.setdefault("WEB_SECRET_KEY", "test-secret-key-for-unit-tests-only")
os.environ.setdefault("WEB_DEBUG", "true")
os.environ.setdefault("WEB_ADMIN_IP_GATE", "true")
os.environ.setdefault("WEB_LOG_DIR", os.path.join(tempfile.gettempdir(), "mailroom-admin-test-logs"))
os.environ.pop("DATABASE_URL", None)

# Clear the lru_cache so test env vars take effect
from mailroom_admin.backend.core.config import get_web_settings
get_web_settings.cache_clear()

from httpx import ASGITransport, AsyncClient
from mailroom_admin.backend.api.deps import AdminUser, get_current_admin
from mailroom_admin.backend.core.ip_whitelist import WhitelistCache, WhitelistEntry
from mailroom_admin.backend.core.whitelist_guard import WhitelistGuard
from mailroom_admin.backend.core.whitelist_store import StoreError, StoreErrorKind
from mailroom_admin.backend.main import create_app


OFFICE_ENTRY_ID = "11111111-1111-1111-1111-111111111111"
OFFICE_CIDR = "203.0.113.0/24"


def make_entry(entry_id: str, cidr: str, description: Optional[str] = None) -> WhitelistEntry:
    return WhitelistEntry(
        id=entry_id,
        cidr=cidr,
        description=description,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        created_by="seed",
    )


def make_admin(role: str = "admin", user_id: str = "admin-1") -> AdminUser:
    """Create a test AdminUser with specified role."""
    return AdminUser(user_id=user_id, role=role)


# ── Fakes ─────────────────────────────────────────────────────

class FakeWhitelistStore:
    """In-memory store of record with the same error kinds as the real one."""

    def __init__(self, entries: Optional[List[WhitelistEntry]] = None):
        self.entries: List[WhitelistEntry] = list(entries or [])
        self.list_calls = 0
        self.writes = 0
        self.list_error: Optional[StoreError] = None
        self.write_error: Optional[StoreError] = None

    async def list_entries(self) -> List[WhitelistEntry]:
        self.list_calls += 1
        if self.list_error is not None:
            raise self.list_error
        return list(self.entries)

    def _check_write(self, cidr: Optional[str] = None, entry_id: Optional[str] = None) -> None:
        if self.write_error is not None:
            raise self.write_error
        if cidr and any(e.cidr == cidr and e.id != entry_id for e in self.entries):
            raise StoreError(StoreErrorKind.DUPLICATE, "duplicate key value")

    async def insert_entry(self, cidr, description, created_by) -> WhitelistEntry:
        self._check_write(cidr)
        entry = WhitelistEntry(
            id=str(uuid4()),
            cidr=cidr,
            description=description,
            created_at=datetime.now(timezone.utc),
            created_by=created_by,
        )
        self.entries.insert(0, entry)
        self.writes += 1
        return entry

    async def update_entry(self, entry_id, cidr, description, updated_by) -> WhitelistEntry:
        self._check_write(cidr, entry_id)
        for index, entry in enumerate(self.entries):
            if entry.id == entry_id:
                updated = replace(
                    entry,
                    cidr=cidr,
                    description=description,
                    updated_at=datetime.now(timezone.utc),
                    updated_by=updated_by,
                )
                self.entries[index] = updated
                self.writes += 1
                return updated
        raise StoreError(StoreErrorKind.NOT_FOUND, f"Entry {entry_id} not found")

    async def delete_entry(self, entry_id) -> None:
        self._check_write()
        for index, entry in enumerate(self.entries):
            if entry.id == entry_id:
                del self.entries[index]
                self.writes += 1
                return
        raise StoreError(StoreErrorKind.NOT_FOUND, f"Entry {entry_id} not found")


class FakeAuditSink:
    def __init__(self):
        self.records: List[dict] = []
        self.fail = False

    async def record(self, actor_id, action, entity_type=None, entity_id=None, details=None, ip_address=None):
        if self.fail:
            raise RuntimeError("audit table unavailable")
        self.records.append({
            "actor_id": actor_id,
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "details": details,
            "ip_address": ip_address,
        })


# ── Service fixtures ─────────────────────────────────────────

@pytest.fixture()
def store():
    """Store holding a single office range."""
    return FakeWhitelistStore([make_entry(OFFICE_ENTRY_ID, OFFICE_CIDR, "Office")])


@pytest.fixture()
def audit():
    return FakeAuditSink()


@pytest.fixture()
def cache(store):
    return WhitelistCache(store.list_entries)


@pytest.fixture()
def guard(store, cache, audit):
    return WhitelistGuard(store, cache, audit, revalidate=True)


# ── App and client fixtures ──────────────────────────────────

@pytest.fixture()
def app(cache, guard):
    """Create a fresh FastAPI app with the in-memory whitelist installed."""
    get_web_settings.cache_clear()
    _app = create_app()
    _app.state.whitelist_cache = cache
    _app.state.whitelist_guard = guard
    yield _app
    _app.dependency_overrides.clear()
    get_web_settings.cache_clear()


@pytest.fixture()
def admin():
    return make_admin("admin", "admin-1")


@pytest.fixture()
def owner():
    return make_admin("owner", "owner-1")


@pytest.fixture()
def regular_user():
    return make_admin("user", "user-1")


@pytest_asyncio.fixture()
async def client(app, admin):
    """Async HTTP client authenticated as admin."""
    app.dependency_overrides[get_current_admin] = lambda: admin
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture()
async def owner_client(app, owner):
    """Async HTTP client authenticated as owner."""
    app.dependency_overrides[get_current_admin] = lambda: owner
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture()
async def user_client(app, regular_user):
    """Async HTTP client authenticated as a non-admin user."""
    app.dependency_overrides[get_current_admin] = lambda: regular_user
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture()
async def anon_client(app):
    """Unauthenticated HTTP client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
