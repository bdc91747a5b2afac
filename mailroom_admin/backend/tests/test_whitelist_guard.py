"""Tests for mailroom_admin.backend.core.whitelist_guard — safe whitelist mutations."""
import pytest

from mailroom_admin.backend.core.errors import (
    DuplicateEntryError,
    EntryNotFoundError,
    InvalidAddressError,
    InvalidInputError,
    LastEntryError,
    SelfLockoutError,
    StoreUnavailableError,
)
from mailroom_admin.backend.core.ip_whitelist import WhitelistEntry
from mailroom_admin.backend.core.whitelist_guard import (
    ENTITY_TYPE,
    WhitelistGuard,
    clean_description,
)
from mailroom_admin.backend.core.whitelist_store import StoreError, StoreErrorKind


ADMIN_IP = "203.0.113.10"
OTHER_IP = "192.0.2.77"


def _office(store):
    return store.entries[0]


def _add_home(store):
    home = WhitelistEntry(id="22222222-2222-2222-2222-222222222222", cidr="198.51.100.5/32")
    store.entries.append(home)
    return home


class TestCleanDescription:

    def test_trims(self):
        assert clean_description("  Office VPN  ") == "Office VPN"

    def test_blank_becomes_none(self):
        assert clean_description("   ") is None
        assert clean_description("") is None
        assert clean_description(None) is None

    def test_non_text_becomes_none(self):
        assert clean_description(42) is None
        assert clean_description(["note"]) is None


class TestSingleEntryScenario:
    """One entry 203.0.113.0/24, admin at 203.0.113.10."""

    @pytest.mark.asyncio
    async def test_delete_last_entry_rejected(self, guard, store):
        with pytest.raises(LastEntryError):
            await guard.delete(_office(store).id, actor_id="admin-1", client_ip=ADMIN_IP)
        assert len(store.entries) == 1

    @pytest.mark.asyncio
    async def test_update_away_from_own_ip_rejected(self, guard, store):
        with pytest.raises(SelfLockoutError) as exc_info:
            await guard.update(
                _office(store).id, "198.51.100.0/24", None,
                actor_id="admin-1", client_ip=ADMIN_IP,
            )
        assert "Update would remove your current IP" in exc_info.value.message
        assert _office(store).cidr == "203.0.113.0/24"
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_narrowing_update_still_covering_own_ip(self, guard, store):
        entry = await guard.update(
            _office(store).id, "203.0.113.0/28", "Office",
            actor_id="admin-1", client_ip=ADMIN_IP,
        )
        assert entry.cidr == "203.0.113.0/28"
        assert entry.updated_by == "admin-1"
        assert _office(store).cidr == "203.0.113.0/28"

    @pytest.mark.asyncio
    async def test_missing_entry_reported_before_last_entry(self, guard):
        with pytest.raises(EntryNotFoundError):
            await guard.delete("33333333-3333-3333-3333-333333333333", actor_id="admin-1", client_ip=ADMIN_IP)


class TestTwoEntryScenario:
    """A=203.0.113.0/24 covers the admin, B=198.51.100.5/32 does not."""

    @pytest.mark.asyncio
    async def test_delete_unrelated_entry(self, guard, store, audit):
        home = _add_home(store)
        removed = await guard.delete(home.id, actor_id="admin-1", client_ip=ADMIN_IP)
        assert removed.id == home.id
        assert [e.cidr for e in store.entries] == ["203.0.113.0/24"]
        assert audit.records[-1]["action"] == "DELETE"

    @pytest.mark.asyncio
    async def test_delete_own_entry_rejected(self, guard, store):
        _add_home(store)
        with pytest.raises(SelfLockoutError) as exc_info:
            await guard.delete(_office(store).id, actor_id="admin-1", client_ip=ADMIN_IP)
        assert "Delete would remove your current IP" in exc_info.value.message
        assert len(store.entries) == 2

    @pytest.mark.asyncio
    async def test_delete_own_entry_when_another_still_covers(self, guard, store):
        store.entries.append(WhitelistEntry(id="44444444-4444-4444-4444-444444444444", cidr="203.0.113.10/32"))
        await guard.delete(_office(store).id, actor_id="admin-1", client_ip=ADMIN_IP)
        assert [e.cidr for e in store.entries] == ["203.0.113.10/32"]

    @pytest.mark.asyncio
    async def test_unmatched_admin_is_not_checked_for_lockout(self, guard, store):
        _add_home(store)
        await guard.delete(_office(store).id, actor_id="admin-1", client_ip=OTHER_IP)
        assert [e.cidr for e in store.entries] == ["198.51.100.5/32"]

    @pytest.mark.asyncio
    async def test_unknown_client_ip_is_not_checked_for_lockout(self, guard, store):
        entry = await guard.update(_office(store).id, "198.51.100.0/24", None, actor_id="admin-1", client_ip=None)
        assert entry.cidr == "198.51.100.0/24"


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_normalizes_and_records(self, guard, store, audit):
        entry = await guard.create("  2001:DB8::/48 ", "  Lab  ", actor_id="admin-1", client_ip=ADMIN_IP)
        assert entry.cidr == "2001:db8:0:0:0:0:0:0/48"
        assert entry.description == "Lab"
        assert entry.created_by == "admin-1"
        assert store.entries[0].id == entry.id

        record = audit.records[-1]
        assert record["action"] == "CREATE"
        assert record["entity_type"] == ENTITY_TYPE
        assert record["entity_id"] == entry.id
        assert record["actor_id"] == "admin-1"
        assert record["ip_address"] == ADMIN_IP
        assert record["details"] == {"ip_cidr": "2001:db8:0:0:0:0:0:0/48", "description": "Lab"}

    @pytest.mark.asyncio
    async def test_blank_description_stored_as_none(self, guard):
        entry = await guard.create("10.0.0.1", "   ", actor_id="admin-1")
        assert entry.cidr == "10.0.0.1/32"
        assert entry.description is None

    @pytest.mark.asyncio
    async def test_duplicate_after_normalization(self, guard, store):
        with pytest.raises(DuplicateEntryError):
            await guard.create(" 203.0.113.0/24 ", None, actor_id="admin-1")
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_duplicate_reported_by_store(self, guard, store, cache):
        await cache.list()
        # Row written by another process; the snapshot does not know it yet
        store.entries.append(WhitelistEntry(id="55555555-5555-5555-5555-555555555555", cidr="10.0.0.0/8"))
        with pytest.raises(DuplicateEntryError):
            await guard.create("10.0.0.0/8", None, actor_id="admin-1")

    @pytest.mark.asyncio
    async def test_invalid_input(self, guard, store):
        with pytest.raises(InvalidInputError):
            await guard.create("   ", None, actor_id="admin-1")
        with pytest.raises(InvalidAddressError):
            await guard.create("300.1.1.1", None, actor_id="admin-1")
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_create_invalidates_cache(self, guard, cache):
        await cache.list()
        entry = await guard.create("10.0.0.0/8", None, actor_id="admin-1")
        assert not cache.is_warm
        assert entry.id in [e.id for e in await cache.list()]

    @pytest.mark.asyncio
    async def test_create_never_checks_lockout(self, guard):
        entry = await guard.create("198.51.100.0/24", None, actor_id="admin-1", client_ip=OTHER_IP)
        assert entry.cidr == "198.51.100.0/24"


class TestUpdate:

    @pytest.mark.asyncio
    async def test_update_records_previous_and_next(self, guard, store, audit):
        office = _office(store)
        await guard.update(office.id, "203.0.113.0/25", " HQ ", actor_id="admin-2", client_ip=ADMIN_IP)
        record = audit.records[-1]
        assert record["action"] == "UPDATE"
        assert record["entity_id"] == office.id
        assert record["details"] == {
            "previous": {"ip_cidr": "203.0.113.0/24", "description": "Office"},
            "next": {"ip_cidr": "203.0.113.0/25", "description": "HQ"},
        }

    @pytest.mark.asyncio
    async def test_update_to_own_cidr_is_not_duplicate(self, guard, store):
        entry = await guard.update(_office(store).id, "203.0.113.0/24", "Renamed", actor_id="admin-1")
        assert entry.description == "Renamed"

    @pytest.mark.asyncio
    async def test_update_to_other_entries_cidr(self, guard, store):
        _add_home(store)
        with pytest.raises(DuplicateEntryError):
            await guard.update(_office(store).id, "198.51.100.5", None, actor_id="admin-1", client_ip=OTHER_IP)

    @pytest.mark.asyncio
    async def test_update_missing_entry(self, guard):
        with pytest.raises(EntryNotFoundError):
            await guard.update("33333333-3333-3333-3333-333333333333", "10.0.0.0/8", None, actor_id="admin-1")

    @pytest.mark.asyncio
    async def test_update_invalid_cidr(self, guard, store):
        with pytest.raises(InvalidAddressError):
            await guard.update(_office(store).id, "203.0.113.0/40", None, actor_id="admin-1")


class TestStoreFailures:

    @pytest.mark.asyncio
    async def test_list_unavailable(self, guard, store):
        store.list_error = StoreError(StoreErrorKind.UNAVAILABLE, "connection refused")
        with pytest.raises(StoreUnavailableError) as exc_info:
            await guard.list()
        assert isinstance(exc_info.value.__cause__, StoreError)

    @pytest.mark.asyncio
    async def test_write_unavailable(self, guard, store, cache):
        store.write_error = StoreError(StoreErrorKind.UNAVAILABLE, "connection reset")
        with pytest.raises(StoreUnavailableError):
            await guard.create("10.0.0.0/8", None, actor_id="admin-1")

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_fail_mutation(self, guard, store, audit):
        audit.fail = True
        entry = await guard.create("10.0.0.0/8", None, actor_id="admin-1")
        assert store.entries[0].id == entry.id
        assert audit.records == []


class TestRevalidation:
    """Checks re-run against fresh rows right before writing."""

    @pytest.mark.asyncio
    async def test_stale_snapshot_cannot_remove_last_entry(self, guard, store, cache):
        home = _add_home(store)
        await cache.list()
        # Another process removes B; this process's snapshot still has it
        store.entries.remove(home)
        with pytest.raises(LastEntryError):
            await guard.delete(_office(store).id, actor_id="admin-1", client_ip=OTHER_IP)
        assert len(store.entries) == 1

    @pytest.mark.asyncio
    async def test_without_revalidation_stale_snapshot_is_trusted(self, store, cache, audit):
        guard = WhitelistGuard(store, cache, audit, revalidate=False)
        home = _add_home(store)
        await cache.list()
        store.entries.remove(home)
        await guard.delete(_office(store).id, actor_id="admin-1", client_ip=OTHER_IP)
        assert store.entries == []

    @pytest.mark.asyncio
    async def test_stale_snapshot_cannot_lock_out(self, guard, store, cache):
        second = WhitelistEntry(id="44444444-4444-4444-4444-444444444444", cidr="203.0.113.10/32")
        store.entries.append(second)
        _add_home(store)
        await cache.list()
        store.entries.remove(second)
        with pytest.raises(SelfLockoutError):
            await guard.delete(_office(store).id, actor_id="admin-1", client_ip=ADMIN_IP)


class TestBootstrap:

    @pytest.mark.asyncio
    async def test_seeds_empty_whitelist(self, guard, store, cache):
        store.entries.clear()
        inserted = await guard.bootstrap("10.0.0.1, bad-entry, 10.0.0.1/32, 2001:db8::/32")
        assert inserted == 2
        assert sorted(e.cidr for e in store.entries) == ["10.0.0.1/32", "2001:db8:0:0:0:0:0:0/32"]
        assert all(e.description == "Bootstrap" for e in store.entries)
        assert all(e.created_by == "system" for e in store.entries)
        assert len(await cache.list()) == 2

    @pytest.mark.asyncio
    async def test_non_empty_whitelist_untouched(self, guard, store):
        assert await guard.bootstrap("10.0.0.1") == 0
        assert len(store.entries) == 1

    @pytest.mark.asyncio
    async def test_nothing_to_seed(self, guard, store):
        store.entries.clear()
        assert await guard.bootstrap(" , ") == 0
        assert store.entries == []
