"""Record stores for catalog entries and folders."""

from __future__ import annotations

import json
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Iterator, Protocol, runtime_checkable

import structlog

from .errors import DuplicateEntryError, RecordNotFoundError, StoreError
from .models import BookSource, CatalogEntry, Folder, utcnow

log = structlog.get_logger()

FOLDER_FIELDS = frozenset({"name", "description", "color", "icon"})


@runtime_checkable
class RecordStore(Protocol):
    """Persistence collaborator used by the reconciler.

    Every method may raise ``StoreError``.
    """

    async def get_all(self, user_id: str) -> list[CatalogEntry]: ...

    async def get_entry(self, entry_id: str) -> CatalogEntry: ...

    async def get_by_natural_key(self, user_id: str, isbn: str) -> CatalogEntry | None: ...

    async def insert(self, entry: CatalogEntry) -> CatalogEntry: ...

    async def update_quantity(self, entry_id: str, quantity: int) -> CatalogEntry: ...

    async def update_folder(self, entry_id: str, folder_id: str | None) -> CatalogEntry: ...

    async def delete(self, entry_id: str) -> None: ...

    async def get_folders(self, user_id: str) -> list[Folder]: ...

    async def get_folder(self, folder_id: str) -> Folder: ...

    async def insert_folder(self, folder: Folder) -> Folder: ...

    async def update_folder_details(self, folder_id: str, **fields: str | None) -> Folder: ...

    async def delete_folder(self, folder_id: str) -> int: ...


def _check_folder_fields(fields: dict) -> None:
    unknown = set(fields) - FOLDER_FIELDS
    if unknown:
        raise ValueError(f"Unknown folder fields: {', '.join(sorted(unknown))}")


class MemoryStore:
    """Dict-backed store. Records are copied in and out so callers never share them."""

    def __init__(self) -> None:
        self._entries: dict[str, CatalogEntry] = {}
        self._folders: dict[str, Folder] = {}

    def _entry(self, entry_id: str) -> CatalogEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise RecordNotFoundError(f"Book {entry_id} not found")
        return entry

    def _folder(self, folder_id: str) -> Folder:
        folder = self._folders.get(folder_id)
        if folder is None:
            raise RecordNotFoundError(f"Folder {folder_id} not found")
        return folder

    async def get_all(self, user_id: str) -> list[CatalogEntry]:
        entries = [replace(e) for e in self._entries.values() if e.user_id == user_id]
        return sorted(entries, key=lambda e: e.created_at, reverse=True)

    async def get_entry(self, entry_id: str) -> CatalogEntry:
        return replace(self._entry(entry_id))

    async def get_by_natural_key(self, user_id: str, isbn: str) -> CatalogEntry | None:
        for entry in self._entries.values():
            if entry.user_id == user_id and entry.isbn == isbn:
                return replace(entry)
        return None

    async def insert(self, entry: CatalogEntry) -> CatalogEntry:
        if await self.get_by_natural_key(entry.user_id, entry.isbn) is not None:
            raise DuplicateEntryError(f"Book {entry.isbn} already in catalog")
        self._entries[entry.id] = replace(entry)
        return replace(entry)

    async def update_quantity(self, entry_id: str, quantity: int) -> CatalogEntry:
        if quantity < 1:
            raise StoreError(f"Quantity must be at least 1, got {quantity}")
        entry = self._entry(entry_id)
        entry.quantity = quantity
        entry.updated_at = utcnow()
        return replace(entry)

    async def update_folder(self, entry_id: str, folder_id: str | None) -> CatalogEntry:
        entry = self._entry(entry_id)
        entry.folder_id = folder_id
        entry.updated_at = utcnow()
        return replace(entry)

    async def delete(self, entry_id: str) -> None:
        self._entry(entry_id)
        del self._entries[entry_id]

    async def get_folders(self, user_id: str) -> list[Folder]:
        folders = [replace(f) for f in self._folders.values() if f.user_id == user_id]
        return sorted(folders, key=lambda f: f.name)

    async def get_folder(self, folder_id: str) -> Folder:
        return replace(self._folder(folder_id))

    async def insert_folder(self, folder: Folder) -> Folder:
        self._folders[folder.id] = replace(folder)
        return replace(folder)

    async def update_folder_details(self, folder_id: str, **fields: str | None) -> Folder:
        _check_folder_fields(fields)
        folder = self._folder(folder_id)
        for key, value in fields.items():
            setattr(folder, key, value)
        folder.updated_at = utcnow()
        return replace(folder)

    async def delete_folder(self, folder_id: str) -> int:
        self._folder(folder_id)
        now = utcnow()
        moved = 0
        for entry in self._entries.values():
            if entry.folder_id == folder_id:
                entry.folder_id = None
                entry.updated_at = now
                moved += 1
        del self._folders[folder_id]
        return moved


def _default_db_path() -> Path:
    if os.environ.get("CATALOG_DB"):
        return Path(os.environ["CATALOG_DB"])
    data_dir = Path(os.environ.get("DATA_DIR", ".data"))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "shelfscan.db"


_ENTRY_COLUMNS = (
    "id",
    "user_id",
    "folder_id",
    "isbn",
    "title",
    "authors",
    "publisher",
    "published_date",
    "description",
    "page_count",
    "cover_image",
    "language",
    "categories",
    "quantity",
    "source",
    "raw_data",
    "created_at",
    "updated_at",
)


def _entry_to_row(entry: CatalogEntry) -> tuple:
    return (
        entry.id,
        entry.user_id,
        entry.folder_id,
        entry.isbn,
        entry.title,
        json.dumps(entry.authors),
        entry.publisher,
        entry.published_date,
        entry.description,
        entry.page_count,
        entry.cover_image,
        entry.language,
        json.dumps(entry.categories),
        entry.quantity,
        entry.source.value if entry.source else None,
        json.dumps(entry.raw_data),
        entry.created_at.isoformat(),
        entry.updated_at.isoformat(),
    )


def _row_to_entry(row: sqlite3.Row) -> CatalogEntry:
    return CatalogEntry(
        id=row["id"],
        user_id=row["user_id"],
        folder_id=row["folder_id"],
        isbn=row["isbn"],
        title=row["title"],
        authors=json.loads(row["authors"] or "[]"),
        publisher=row["publisher"],
        published_date=row["published_date"],
        description=row["description"],
        page_count=row["page_count"],
        cover_image=row["cover_image"],
        language=row["language"],
        categories=json.loads(row["categories"] or "[]"),
        quantity=row["quantity"],
        source=BookSource(row["source"]) if row["source"] else None,
        raw_data=json.loads(row["raw_data"] or "{}"),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_folder(row: sqlite3.Row) -> Folder:
    return Folder(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        color=row["color"],
        icon=row["icon"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


class SqliteStore:
    """Catalog entries and folders in a local SQLite database."""

    def __init__(self, db_path: Path | None = None) -> None:
        if db_path is None:
            db_path = _default_db_path()

        self.db_path = db_path
        # The web app may touch the connection from a worker thread.
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(
            """CREATE TABLE IF NOT EXISTS folders (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                color TEXT NOT NULL,
                icon TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                folder_id TEXT,
                isbn TEXT NOT NULL,
                title TEXT NOT NULL,
                authors TEXT,
                publisher TEXT,
                published_date TEXT,
                description TEXT,
                page_count INTEGER,
                cover_image TEXT,
                language TEXT,
                categories TEXT,
                quantity INTEGER NOT NULL DEFAULT 1 CHECK (quantity >= 1),
                source TEXT,
                raw_data TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE UNIQUE INDEX IF NOT EXISTS books_user_isbn ON books (user_id, isbn);
            CREATE INDEX IF NOT EXISTS books_folder ON books (folder_id);"""
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Commit on success; roll back and raise ``StoreError`` on any sqlite failure."""
        try:
            yield self._conn
            self._conn.commit()
        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            log.error("store_error", operation=operation, error=str(e))
            if "UNIQUE constraint failed" in str(e):
                raise DuplicateEntryError("Book already in catalog") from e
            raise StoreError(f"{operation} failed: {e}") from e
        except sqlite3.Error as e:
            self._conn.rollback()
            log.error("store_error", operation=operation, error=str(e))
            raise StoreError(f"{operation} failed: {e}") from e
        except Exception:
            self._conn.rollback()
            raise

    def _fetch_entry(self, conn: sqlite3.Connection, entry_id: str) -> CatalogEntry:
        row = conn.execute("SELECT * FROM books WHERE id = ?", (entry_id,)).fetchone()
        if row is None:
            raise RecordNotFoundError(f"Book {entry_id} not found")
        return _row_to_entry(row)

    def _fetch_folder(self, conn: sqlite3.Connection, folder_id: str) -> Folder:
        row = conn.execute("SELECT * FROM folders WHERE id = ?", (folder_id,)).fetchone()
        if row is None:
            raise RecordNotFoundError(f"Folder {folder_id} not found")
        return _row_to_folder(row)

    async def get_all(self, user_id: str) -> list[CatalogEntry]:
        with self._transaction("get_all") as conn:
            rows = conn.execute(
                "SELECT * FROM books WHERE user_id = ? ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [_row_to_entry(row) for row in rows]

    async def get_entry(self, entry_id: str) -> CatalogEntry:
        with self._transaction("get_entry") as conn:
            return self._fetch_entry(conn, entry_id)

    async def get_by_natural_key(self, user_id: str, isbn: str) -> CatalogEntry | None:
        with self._transaction("get_by_natural_key") as conn:
            row = conn.execute(
                "SELECT * FROM books WHERE user_id = ? AND isbn = ?", (user_id, isbn)
            ).fetchone()
        return _row_to_entry(row) if row else None

    async def insert(self, entry: CatalogEntry) -> CatalogEntry:
        columns = ", ".join(_ENTRY_COLUMNS)
        placeholders = ", ".join("?" for _ in _ENTRY_COLUMNS)
        with self._transaction("insert") as conn:
            conn.execute(
                f"INSERT INTO books ({columns}) VALUES ({placeholders})",
                _entry_to_row(entry),
            )
            return self._fetch_entry(conn, entry.id)

    async def update_quantity(self, entry_id: str, quantity: int) -> CatalogEntry:
        with self._transaction("update_quantity") as conn:
            self._fetch_entry(conn, entry_id)
            conn.execute(
                "UPDATE books SET quantity = ?, updated_at = ? WHERE id = ?",
                (quantity, utcnow().isoformat(), entry_id),
            )
            return self._fetch_entry(conn, entry_id)

    async def update_folder(self, entry_id: str, folder_id: str | None) -> CatalogEntry:
        with self._transaction("update_folder") as conn:
            self._fetch_entry(conn, entry_id)
            conn.execute(
                "UPDATE books SET folder_id = ?, updated_at = ? WHERE id = ?",
                (folder_id, utcnow().isoformat(), entry_id),
            )
            return self._fetch_entry(conn, entry_id)

    async def delete(self, entry_id: str) -> None:
        with self._transaction("delete") as conn:
            self._fetch_entry(conn, entry_id)
            conn.execute("DELETE FROM books WHERE id = ?", (entry_id,))

    async def get_folders(self, user_id: str) -> list[Folder]:
        with self._transaction("get_folders") as conn:
            rows = conn.execute(
                "SELECT * FROM folders WHERE user_id = ? ORDER BY name", (user_id,)
            ).fetchall()
        return [_row_to_folder(row) for row in rows]

    async def get_folder(self, folder_id: str) -> Folder:
        with self._transaction("get_folder") as conn:
            return self._fetch_folder(conn, folder_id)

    async def insert_folder(self, folder: Folder) -> Folder:
        with self._transaction("insert_folder") as conn:
            conn.execute(
                "INSERT INTO folders (id, user_id, name, description, color, icon, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    folder.id,
                    folder.user_id,
                    folder.name,
                    folder.description,
                    folder.color,
                    folder.icon,
                    folder.created_at.isoformat(),
                    folder.updated_at.isoformat(),
                ),
            )
            return self._fetch_folder(conn, folder.id)

    async def update_folder_details(self, folder_id: str, **fields: str | None) -> Folder:
        _check_folder_fields(fields)
        with self._transaction("update_folder_details") as conn:
            self._fetch_folder(conn, folder_id)
            if fields:
                assignments = ", ".join(f"{key} = ?" for key in fields)
                conn.execute(
                    f"UPDATE folders SET {assignments}, updated_at = ? WHERE id = ?",
                    (*fields.values(), utcnow().isoformat(), folder_id),
                )
            return self._fetch_folder(conn, folder_id)

    async def delete_folder(self, folder_id: str) -> int:
        with self._transaction("delete_folder") as conn:
            self._fetch_folder(conn, folder_id)
            cursor = conn.execute(
                "UPDATE books SET folder_id = NULL, updated_at = ? WHERE folder_id = ?",
                (utcnow().isoformat(), folder_id),
            )
            conn.execute("DELETE FROM folders WHERE id = ?", (folder_id,))
        log.debug("folder_entries_unfiled", folder_id=folder_id, count=cursor.rowcount)
        return cursor.rowcount
