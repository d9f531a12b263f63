"""Data models for book metadata and the user's catalog."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

UNKNOWN_TITLE = "Unknown Title"
MAX_CATEGORIES = 5
DEFAULT_FOLDER_COLOR = "#8B4513"
DEFAULT_FOLDER_ICON = "folder"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class BookSource(str, Enum):
    """Catalog service that produced a metadata record, in fallback order."""

    OPEN_LIBRARY = "Open Library"
    GOOGLE_BOOKS = "Google Books"
    OPEN_LIBRARY_SEARCH = "Open Library Search"


@dataclass
class BookMetadata:
    isbn: str
    source: BookSource
    title: str = UNKNOWN_TITLE
    authors: list[str] = field(default_factory=list)
    publisher: str | None = None
    published_date: str | None = None
    description: str | None = None
    page_count: int | None = None
    cover_image: str | None = None
    language: str | None = None
    categories: list[str] = field(default_factory=list)
    raw_data: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.title:
            self.title = UNKNOWN_TITLE
        self.authors = list(self.authors or [])
        self.categories = list(self.categories or [])[:MAX_CATEGORIES]
        if self.page_count is not None and self.page_count < 0:
            self.page_count = None

    def to_dict(self) -> dict:
        """Wire shape returned by the lookup endpoint."""
        return {
            "isbn": self.isbn,
            "title": self.title,
            "authors": list(self.authors),
            "publisher": self.publisher,
            "publishedDate": self.published_date,
            "description": self.description,
            "pageCount": self.page_count,
            "coverImage": self.cover_image,
            "language": self.language,
            "categories": list(self.categories),
            "source": self.source.value,
            "rawData": self.raw_data,
        }


@dataclass(frozen=True)
class Found:
    metadata: BookMetadata


@dataclass(frozen=True)
class NotFound:
    reason: str = ""


LookupResult = Found | NotFound


@dataclass
class CatalogEntry:
    """A user's copy (or copies) of one book edition."""

    user_id: str
    isbn: str
    title: str = UNKNOWN_TITLE
    authors: list[str] = field(default_factory=list)
    publisher: str | None = None
    published_date: str | None = None
    description: str | None = None
    page_count: int | None = None
    cover_image: str | None = None
    language: str | None = None
    categories: list[str] = field(default_factory=list)
    source: BookSource | None = None
    raw_data: dict = field(default_factory=dict)
    folder_id: str | None = None
    quantity: int = 1
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_metadata(
        cls, user_id: str, metadata: BookMetadata, folder_id: str | None = None
    ) -> CatalogEntry:
        return cls(
            user_id=user_id,
            isbn=metadata.isbn,
            title=metadata.title,
            authors=list(metadata.authors),
            publisher=metadata.publisher,
            published_date=metadata.published_date,
            description=metadata.description,
            page_count=metadata.page_count,
            cover_image=metadata.cover_image,
            language=metadata.language,
            categories=list(metadata.categories),
            source=metadata.source,
            raw_data=metadata.raw_data,
            folder_id=folder_id,
            quantity=1,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "folder_id": self.folder_id,
            "isbn": self.isbn,
            "title": self.title,
            "authors": list(self.authors),
            "publisher": self.publisher,
            "published_date": self.published_date,
            "description": self.description,
            "page_count": self.page_count,
            "cover_image": self.cover_image,
            "language": self.language,
            "categories": list(self.categories),
            "quantity": self.quantity,
            "source": self.source.value if self.source else None,
            "raw_data": self.raw_data,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Folder:
    user_id: str
    name: str
    description: str | None = None
    color: str = DEFAULT_FOLDER_COLOR
    icon: str = DEFAULT_FOLDER_ICON
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "description": self.description,
            "color": self.color,
            "icon": self.icon,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
