"""In-memory view of one user's catalog, kept in step with the store."""

from __future__ import annotations

from dataclasses import replace

import structlog

from .models import CatalogEntry, Folder
from .reconciler import CatalogReconciler

log = structlog.get_logger()


class Library:
    """Owns the entry and folder lists for a single user.

    State changes only after the matching reconciler call succeeds; when a
    call raises, the lists keep their last known-good contents and the error
    is passed on to the caller.
    """

    def __init__(self, reconciler: CatalogReconciler, user_id: str) -> None:
        self.reconciler = reconciler
        self.user_id = user_id
        self.entries: list[CatalogEntry] = []
        self.folders: list[Folder] = []
        self._scans_in_flight = 0

    @property
    def scanning(self) -> bool:
        """True while any scan started through this library is still running."""
        return self._scans_in_flight > 0

    def _replace_entry(self, updated: CatalogEntry) -> None:
        self.entries = [updated if e.id == updated.id else e for e in self.entries]

    def get(self, entry_id: str) -> CatalogEntry | None:
        return next((e for e in self.entries if e.id == entry_id), None)

    def entries_in(self, folder_id: str | None) -> list[CatalogEntry]:
        """Entries filed under ``folder_id``; None selects unfiled entries."""
        return [e for e in self.entries if e.folder_id == folder_id]

    def total_quantity(self) -> int:
        return sum(e.quantity for e in self.entries)

    async def refresh(self) -> None:
        entries, folders = await self.reconciler.load(self.user_id)
        self.entries = entries
        self.folders = folders
        log.debug("library_loaded", user_id=self.user_id, books=len(entries), folders=len(folders))

    async def scan(self, isbn: str, folder_id: str | None = None) -> CatalogEntry:
        self._scans_in_flight += 1
        try:
            entry = await self.reconciler.scan(self.user_id, isbn, folder_id)
        finally:
            self._scans_in_flight -= 1

        if self.get(entry.id) is not None:
            self._replace_entry(entry)
        else:
            self.entries = [entry, *self.entries]
        return entry

    async def increment(self, entry_id: str) -> CatalogEntry:
        updated = await self.reconciler.increment_quantity(entry_id)
        self._replace_entry(updated)
        return updated

    async def decrement(self, entry_id: str) -> CatalogEntry:
        updated = await self.reconciler.decrement_quantity(entry_id)
        self._replace_entry(updated)
        return updated

    async def move(self, entry_id: str, folder_id: str | None) -> CatalogEntry:
        updated = await self.reconciler.move_to_folder(entry_id, folder_id)
        self._replace_entry(updated)
        return updated

    async def remove(self, entry_id: str) -> None:
        await self.reconciler.delete(entry_id)
        self.entries = [e for e in self.entries if e.id != entry_id]

    async def create_folder(self, name: str, color: str | None = None) -> Folder:
        folder = await self.reconciler.create_folder(self.user_id, name, color=color)
        self.folders = sorted([*self.folders, folder], key=lambda f: f.name)
        return folder

    async def remove_folder(self, folder_id: str) -> int:
        moved = await self.reconciler.delete_folder(folder_id)
        self.folders = [f for f in self.folders if f.id != folder_id]
        self.entries = [
            e if e.folder_id != folder_id else replace(e, folder_id=None) for e in self.entries
        ]
        return moved
