"""Tests for find-or-create scans and the catalog operations."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from shelfscan.core.errors import (
    NotFoundError,
    RecordNotFoundError,
    StoreError,
    ValidationError,
)
from shelfscan.core.lookup import BookLookup
from shelfscan.core.models import BookSource, CatalogEntry
from shelfscan.core.reconciler import CatalogReconciler
from shelfscan.core.store import MemoryStore
from tests.fixtures.fakes import FakeProvider, fake_chain

USER = "user-1"
ROSE_ISBN = "9780156001311"


def run(coro):
    return asyncio.run(coro)


class TestScan:
    def test_new_book_inserted_with_quantity_one(
        self, reconciler: CatalogReconciler, store: MemoryStore
    ) -> None:
        entry = run(reconciler.scan(USER, ROSE_ISBN))

        assert entry.quantity == 1
        assert entry.isbn == ROSE_ISBN
        assert entry.title == "The Name of the Rose"
        assert entry.authors == ["Umberto Eco"]
        assert entry.source is BookSource.OPEN_LIBRARY
        assert entry.folder_id is None
        assert run(store.get_all(USER)) == [entry]

    def test_second_scan_increments(
        self, reconciler: CatalogReconciler, store: MemoryStore, providers: list[FakeProvider]
    ) -> None:
        first = run(reconciler.scan(USER, ROSE_ISBN))
        second = run(reconciler.scan(USER, ROSE_ISBN))

        assert second.id == first.id
        assert second.quantity == 2
        assert len(run(store.get_all(USER))) == 1
        # metadata is not fetched again for an existing book
        assert providers[0].calls == [ROSE_ISBN]

    def test_dashed_isbn_hits_same_entry(
        self, reconciler: CatalogReconciler, store: MemoryStore
    ) -> None:
        first = run(reconciler.scan(USER, "978-3-16-148410-0"))
        second = run(reconciler.scan(USER, "9783161484100"))

        assert first.isbn == "9783161484100"
        assert second.id == first.id
        assert second.quantity == 2
        assert len(run(store.get_all(USER))) == 1

    def test_not_found_creates_nothing(
        self, reconciler: CatalogReconciler, store: MemoryStore
    ) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            run(reconciler.scan(USER, "9780140449136"))

        assert exc_info.value.isbn == "9780140449136"
        assert run(store.get_all(USER)) == []

    def test_empty_isbn_rejected_before_lookup(
        self, reconciler: CatalogReconciler, providers: list[FakeProvider]
    ) -> None:
        with pytest.raises(ValidationError):
            run(reconciler.scan(USER, " - "))
        assert providers[0].calls == []

    def test_scan_into_folder(self, reconciler: CatalogReconciler) -> None:
        folder = run(reconciler.create_folder(USER, "To read"))
        entry = run(reconciler.scan(USER, ROSE_ISBN, folder.id))
        assert entry.folder_id == folder.id

    def test_rescan_keeps_existing_folder(self, reconciler: CatalogReconciler) -> None:
        folder = run(reconciler.create_folder(USER, "To read"))
        run(reconciler.scan(USER, ROSE_ISBN, folder.id))
        again = run(reconciler.scan(USER, ROSE_ISBN, None))
        assert again.folder_id == folder.id
        assert again.quantity == 2

    def test_users_have_separate_catalogs(
        self, reconciler: CatalogReconciler, store: MemoryStore
    ) -> None:
        mine = run(reconciler.scan(USER, ROSE_ISBN))
        theirs = run(reconciler.scan("user-2", ROSE_ISBN))

        assert mine.id != theirs.id
        assert theirs.quantity == 1
        assert len(run(store.get_all(USER))) == 1

    def test_concurrent_scans_make_one_entry(self, store: MemoryStore) -> None:
        slow = FakeProvider(
            "openlibrary",
            BookSource.OPEN_LIBRARY,
            {ROSE_ISBN: {"title": "The Name of the Rose"}},
            delay=0.01,
        )
        reconciler = CatalogReconciler(store, BookLookup([slow]))

        async def scan_twice():
            return await asyncio.gather(
                reconciler.scan(USER, ROSE_ISBN),
                reconciler.scan(USER, "978-0-15-600131-1"),
            )

        run(scan_twice())
        entries = run(store.get_all(USER))
        assert len(entries) == 1
        assert entries[0].quantity == 2
        assert slow.calls == [ROSE_ISBN]

    def test_scan_locks_released(self, store: MemoryStore) -> None:
        slow = FakeProvider(
            "openlibrary",
            BookSource.OPEN_LIBRARY,
            {ROSE_ISBN: {"title": "The Name of the Rose"}},
            delay=0.01,
        )
        reconciler = CatalogReconciler(store, BookLookup([slow]))

        async def scan_many():
            await asyncio.gather(
                reconciler.scan(USER, ROSE_ISBN),
                reconciler.scan(USER, ROSE_ISBN),
                reconciler.scan("user-2", ROSE_ISBN),
            )
            with pytest.raises(NotFoundError):
                await reconciler.scan(USER, "9780140449136")

        run(scan_many())

        assert reconciler._scan_locks == {}
        assert reconciler._scan_waiters == {}


class TestQuantity:
    def test_increment(self, reconciler: CatalogReconciler) -> None:
        entry = run(reconciler.scan(USER, ROSE_ISBN))
        assert run(reconciler.increment_quantity(entry.id)).quantity == 2

    def test_decrement(self, reconciler: CatalogReconciler) -> None:
        entry = run(reconciler.scan(USER, ROSE_ISBN))
        run(reconciler.increment_quantity(entry.id))
        run(reconciler.increment_quantity(entry.id))
        assert run(reconciler.decrement_quantity(entry.id)).quantity == 2

    def test_decrement_at_one_is_noop(
        self, reconciler: CatalogReconciler, store: MemoryStore
    ) -> None:
        entry = run(reconciler.scan(USER, ROSE_ISBN))
        result = run(reconciler.decrement_quantity(entry.id))

        assert result.quantity == 1
        assert run(store.get_entry(entry.id)).quantity == 1

    def test_unknown_entry(self, reconciler: CatalogReconciler) -> None:
        with pytest.raises(RecordNotFoundError):
            run(reconciler.increment_quantity("missing"))


class TestEntries:
    def test_move_and_unfile(self, reconciler: CatalogReconciler) -> None:
        folder = run(reconciler.create_folder(USER, "Shelf A"))
        entry = run(reconciler.scan(USER, ROSE_ISBN))

        assert run(reconciler.move_to_folder(entry.id, folder.id)).folder_id == folder.id
        assert run(reconciler.move_to_folder(entry.id, None)).folder_id is None

    def test_delete(self, reconciler: CatalogReconciler, store: MemoryStore) -> None:
        entry = run(reconciler.scan(USER, ROSE_ISBN))
        run(reconciler.delete(entry.id))

        assert run(store.get_all(USER)) == []
        with pytest.raises(RecordNotFoundError):
            run(store.get_entry(entry.id))

    def test_rescan_after_delete_creates_fresh_entry(self, reconciler: CatalogReconciler) -> None:
        entry = run(reconciler.scan(USER, ROSE_ISBN))
        run(reconciler.increment_quantity(entry.id))
        run(reconciler.delete(entry.id))

        fresh = run(reconciler.scan(USER, ROSE_ISBN))
        assert fresh.id != entry.id
        assert fresh.quantity == 1


class TestFolders:
    def test_create_defaults(self, reconciler: CatalogReconciler) -> None:
        folder = run(reconciler.create_folder(USER, "  Fiction  "))
        assert folder.name == "Fiction"
        assert folder.color == "#8B4513"
        assert folder.icon == "folder"

    def test_blank_name_rejected(self, reconciler: CatalogReconciler) -> None:
        with pytest.raises(ValidationError):
            run(reconciler.create_folder(USER, "   "))

    def test_non_string_name_rejected(
        self, store: MemoryStore, reconciler: CatalogReconciler
    ) -> None:
        with pytest.raises(ValidationError, match="must be a string"):
            run(reconciler.create_folder(USER, 5))

        folder = run(reconciler.create_folder(USER, "Fiction"))
        with pytest.raises(ValidationError, match="must be a string"):
            run(reconciler.update_folder(folder.id, name=["Novels"]))
        assert run(store.get_folder(folder.id)).name == "Fiction"

    def test_update(self, reconciler: CatalogReconciler) -> None:
        folder = run(reconciler.create_folder(USER, "Fiction"))
        updated = run(reconciler.update_folder(folder.id, name="Novels", color="#123456"))
        assert updated.name == "Novels"
        assert updated.color == "#123456"

    def test_update_unknown_field(self, reconciler: CatalogReconciler) -> None:
        folder = run(reconciler.create_folder(USER, "Fiction"))
        with pytest.raises(ValidationError):
            run(reconciler.update_folder(folder.id, user_id="someone-else"))

    def test_delete_folder_unfiles_entries(
        self, store: MemoryStore, reconciler: CatalogReconciler
    ) -> None:
        doomed = run(reconciler.create_folder(USER, "Doomed"))
        kept = run(reconciler.create_folder(USER, "Kept"))
        for i in range(3):
            run(store.insert(CatalogEntry(user_id=USER, isbn=f"isbn-{i}", folder_id=doomed.id)))
        other = run(store.insert(CatalogEntry(user_id=USER, isbn="isbn-k", folder_id=kept.id)))

        moved = run(reconciler.delete_folder(doomed.id))

        assert moved == 3
        entries = run(store.get_all(USER))
        assert not [e for e in entries if e.folder_id == doomed.id]
        assert len([e for e in entries if e.folder_id is None]) == 3
        assert run(store.get_entry(other.id)).folder_id == kept.id
        assert [f.name for f in run(store.get_folders(USER))] == ["Kept"]

    def test_delete_missing_folder(self, reconciler: CatalogReconciler) -> None:
        with pytest.raises(RecordNotFoundError):
            run(reconciler.delete_folder("missing"))


class TestLoad:
    def test_entries_newest_first_folders_by_name(
        self, store: MemoryStore, reconciler: CatalogReconciler
    ) -> None:
        now = datetime.now(timezone.utc)
        run(store.insert(CatalogEntry(user_id=USER, isbn="old", created_at=now - timedelta(days=1))))
        run(store.insert(CatalogEntry(user_id=USER, isbn="new", created_at=now)))
        run(reconciler.create_folder(USER, "Zebra"))
        run(reconciler.create_folder(USER, "Apple"))

        entries, folders = run(reconciler.load(USER))

        assert [e.isbn for e in entries] == ["new", "old"]
        assert [f.name for f in folders] == ["Apple", "Zebra"]


class BrokenStore(MemoryStore):
    async def insert(self, entry):
        raise StoreError("disk full")


def test_store_failure_propagates() -> None:
    store = BrokenStore()
    reconciler = CatalogReconciler(store, BookLookup(fake_chain(primary={ROSE_ISBN: {}})))
    with pytest.raises(StoreError, match="disk full"):
        run(reconciler.scan(USER, ROSE_ISBN))
    assert run(store.get_all(USER)) == []
