"""Find-or-create of catalog entries, plus the quantity and folder operations."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from .errors import ValidationError
from .isbn import normalize_isbn
from .lookup import BookLookup
from .models import DEFAULT_FOLDER_COLOR, DEFAULT_FOLDER_ICON, CatalogEntry, Folder
from .store import RecordStore

log = structlog.get_logger()


class CatalogReconciler:
    """Decide whether a scan adds a new book or bumps an existing one.

    Scans of the same (user, ISBN) are serialized within this process, so
    two overlapping scans end up as one entry with quantity 2. Other
    operations go straight to the store.
    """

    def __init__(self, store: RecordStore, lookup: BookLookup | None = None) -> None:
        self.store = store
        self.lookup = lookup or BookLookup()
        self._scan_locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._scan_waiters: dict[tuple[str, str], int] = {}

    @asynccontextmanager
    async def _scan_lock(self, user_id: str, isbn: str) -> AsyncIterator[None]:
        """Hold the lock for one (user, ISBN); the last holder removes it."""
        key = (user_id, isbn)
        lock = self._scan_locks.setdefault(key, asyncio.Lock())
        self._scan_waiters[key] = self._scan_waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._scan_waiters[key] -= 1
            if not self._scan_waiters[key]:
                del self._scan_waiters[key]
                del self._scan_locks[key]

    async def scan(
        self, user_id: str, isbn: str, folder_id: str | None = None
    ) -> CatalogEntry:
        """Add a scanned book to the user's catalog.

        An existing entry for the ISBN gets its quantity incremented and its
        metadata left alone. Otherwise the book is looked up and inserted with
        quantity 1 into ``folder_id`` (unfiled when None).

        Raises:
            ValidationError: If the ISBN is empty after normalization.
            NotFoundError: If no provider knows the ISBN; nothing is stored.
            StoreError: If the store fails.
        """
        normalized = normalize_isbn(isbn)
        if not normalized:
            raise ValidationError("ISBN is required")

        async with self._scan_lock(user_id, normalized):
            existing = await self.store.get_by_natural_key(user_id, normalized)
            if existing is not None:
                updated = await self.store.update_quantity(existing.id, existing.quantity + 1)
                log.info(
                    "quantity_incremented",
                    isbn=normalized,
                    title=updated.title,
                    quantity=updated.quantity,
                )
                return updated

            metadata = await self.lookup.fetch(normalized)
            entry = CatalogEntry.from_metadata(user_id, metadata, folder_id)
            entry.isbn = normalized
            created = await self.store.insert(entry)
            log.info(
                "entry_created",
                isbn=normalized,
                title=created.title,
                source=metadata.source.value,
                folder_id=folder_id,
            )
            return created

    async def load(self, user_id: str) -> tuple[list[CatalogEntry], list[Folder]]:
        """Read the user's entries and folders concurrently."""
        entries, folders = await asyncio.gather(
            self.store.get_all(user_id),
            self.store.get_folders(user_id),
        )
        return entries, folders

    async def increment_quantity(self, entry_id: str) -> CatalogEntry:
        entry = await self.store.get_entry(entry_id)
        updated = await self.store.update_quantity(entry_id, entry.quantity + 1)
        log.info("quantity_incremented", isbn=updated.isbn, quantity=updated.quantity)
        return updated

    async def decrement_quantity(self, entry_id: str) -> CatalogEntry:
        """Lower the quantity by one; an entry at quantity 1 is returned unchanged."""
        entry = await self.store.get_entry(entry_id)
        if entry.quantity <= 1:
            log.debug("quantity_at_floor", isbn=entry.isbn)
            return entry
        updated = await self.store.update_quantity(entry_id, entry.quantity - 1)
        log.info("quantity_decremented", isbn=updated.isbn, quantity=updated.quantity)
        return updated

    async def move_to_folder(self, entry_id: str, folder_id: str | None) -> CatalogEntry:
        updated = await self.store.update_folder(entry_id, folder_id)
        log.info("entry_moved", isbn=updated.isbn, folder_id=folder_id)
        return updated

    async def delete(self, entry_id: str) -> None:
        await self.store.delete(entry_id)
        log.info("entry_deleted", entry_id=entry_id)

    async def create_folder(
        self,
        user_id: str,
        name: str,
        color: str | None = None,
        icon: str | None = None,
        description: str | None = None,
    ) -> Folder:
        name = _folder_name(name)
        folder = await self.store.insert_folder(
            Folder(
                user_id=user_id,
                name=name,
                description=description,
                color=color or DEFAULT_FOLDER_COLOR,
                icon=icon or DEFAULT_FOLDER_ICON,
            )
        )
        log.info("folder_created", folder_id=folder.id, name=name)
        return folder

    async def update_folder(self, folder_id: str, **fields: str | None) -> Folder:
        if "name" in fields:
            fields["name"] = _folder_name(fields["name"])
        try:
            folder = await self.store.update_folder_details(folder_id, **fields)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        log.info("folder_updated", folder_id=folder_id, fields=sorted(fields))
        return folder

    async def delete_folder(self, folder_id: str) -> int:
        """Delete a folder and unfile its entries in one store operation.

        Returns the number of entries that were unfiled.
        """
        moved = await self.store.delete_folder(folder_id)
        log.info("folder_deleted", folder_id=folder_id, unfiled=moved)
        return moved


def _folder_name(name: object) -> str:
    if name is not None and not isinstance(name, str):
        raise ValidationError("Folder name must be a string")
    name = (name or "").strip()
    if not name:
        raise ValidationError("Folder name is required")
    return name
