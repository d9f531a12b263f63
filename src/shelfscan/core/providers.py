"""Adapters that turn one catalog service's response into BookMetadata."""

from __future__ import annotations

import asyncio
import math
import os
import time
from typing import Any

import httpx
import structlog

from .errors import ProviderError
from .models import BookMetadata, BookSource, Found, LookupResult, NotFound

log = structlog.get_logger()

# Open Library API compliance (https://openlibrary.org/developers/api)
# Identified requests get 3 req/s; unidentified get 1 req/s.
_OL_CONTACT = os.environ.get("OL_CONTACT_EMAIL", "")
_OL_USER_AGENT = f"ShelfScan/0.1.0 ({_OL_CONTACT})" if _OL_CONTACT else "ShelfScan/0.1.0"
_OL_MIN_INTERVAL = float(os.environ.get("OL_MIN_INTERVAL", "0.35"))

OPEN_LIBRARY_BOOKS_URL = "https://openlibrary.org/api/books"
OPEN_LIBRARY_SEARCH_URL = "https://openlibrary.org/search.json"
GOOGLE_BOOKS_URL = "https://www.googleapis.com/books/v1/volumes"
COVER_URL_TEMPLATE = "https://covers.openlibrary.org/b/id/{cover_id}-M.jpg"

_LANGUAGE_PREFIX = "/languages/"


def secure_url(url: str | None) -> str | None:
    """Rewrite an insecure image URL to https."""
    if not url:
        return None
    if url.startswith("http://"):
        return "https://" + url[len("http://"):]
    return url


def _text(value: Any) -> str | None:
    # Open Library text fields are either plain strings or {"type", "value"} objects
    if isinstance(value, dict):
        value = value.get("value")
    if value is None or value == "":
        return None
    return str(value)


def _count(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    value = int(value)
    return value if value > 0 else None


def _first(values: Any) -> Any:
    if isinstance(values, list) and values:
        return values[0]
    return None


def _strings(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    return [str(v) for v in values if v]


class RequestThrottle:
    """Enforce a minimum interval between requests to one host."""

    def __init__(self, min_interval: float = _OL_MIN_INTERVAL) -> None:
        self.min_interval = min_interval
        self._last_request: float = 0.0  # monotonic timestamp of last request

    async def wait(self) -> None:
        if self.min_interval <= 0:
            return
        elapsed = time.monotonic() - self._last_request
        if elapsed < self.min_interval:
            await asyncio.sleep(self.min_interval - elapsed)
        self._last_request = time.monotonic()


class Provider:
    """Base adapter.

    ``lookup`` never raises for a miss or for a recoverable upstream failure:
    both come back as ``NotFound`` so the fallback chain can move on.
    Subclasses implement ``fetch`` (the HTTP call) and ``parse`` (the mapping).
    """

    name = "provider"
    source: BookSource

    async def lookup(self, client: httpx.AsyncClient, isbn: str) -> LookupResult:
        try:
            data = await self.fetch(client, isbn)
            if data is None:
                log.debug(f"{self.name}_no_match", isbn=isbn)
                return NotFound("no match")
            try:
                result = self.parse(isbn, data)
            except (AttributeError, TypeError, KeyError, IndexError, ValueError, OverflowError) as e:
                raise ProviderError(self.name, f"unexpected response shape: {e}") from e
        except ProviderError as e:
            log.warning(f"{self.name}_error", isbn=isbn, error=str(e))
            return NotFound(str(e))

        if isinstance(result, Found):
            log.debug(f"{self.name}_hit", isbn=isbn, title=result.metadata.title)
        else:
            log.debug(f"{self.name}_no_match", isbn=isbn)
        return result

    async def fetch(self, client: httpx.AsyncClient, isbn: str) -> Any:
        raise NotImplementedError

    def parse(self, isbn: str, data: Any) -> LookupResult:
        raise NotImplementedError

    async def _get_json(
        self, client: httpx.AsyncClient, url: str, **kwargs: Any
    ) -> Any:
        """GET a JSON document; ``None`` on 404, ``ProviderError`` on any other failure."""
        kwargs.setdefault("timeout", 10)
        try:
            resp = await client.get(url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"request failed: {e}") from e

        if resp.status_code == 404:
            return None
        if not resp.is_success:
            raise ProviderError(self.name, f"HTTP {resp.status_code} from {url}")
        try:
            return resp.json()
        except ValueError as e:
            raise ProviderError(self.name, f"invalid JSON from {url}") from e


class _OpenLibraryProvider(Provider):
    """Shared request handling for the two Open Library endpoints."""

    def __init__(self, throttle: RequestThrottle | None = None) -> None:
        self.throttle = throttle or RequestThrottle()

    async def _ol_get(self, client: httpx.AsyncClient, url: str, **kwargs: Any) -> Any:
        """Rate-limited GET that sets the User-Agent Open Library asks for."""
        kwargs.setdefault("headers", {})
        kwargs["headers"]["User-Agent"] = _OL_USER_AGENT
        await self.throttle.wait()
        return await self._get_json(client, url, follow_redirects=True, **kwargs)


class OpenLibraryProvider(_OpenLibraryProvider):
    """Open Library Books API (``jscmd=data``), keyed by ISBN."""

    name = "openlibrary"
    source = BookSource.OPEN_LIBRARY

    async def fetch(self, client: httpx.AsyncClient, isbn: str) -> Any:
        return await self._ol_get(
            client,
            OPEN_LIBRARY_BOOKS_URL,
            params={"bibkeys": f"ISBN:{isbn}", "format": "json", "jscmd": "data"},
        )

    def parse(self, isbn: str, data: Any) -> LookupResult:
        record = data.get(f"ISBN:{isbn}")
        if not record:
            return NotFound("no record for key")

        # Cover image - prefer medium size
        cover = record.get("cover") or {}
        cover_image = cover.get("medium") or cover.get("large") or cover.get("small")

        authors = [a.get("name") for a in record.get("authors") or [] if a.get("name")]

        publisher = _first(record.get("publishers"))
        if isinstance(publisher, dict):
            publisher = publisher.get("name")

        description = _text(record.get("notes"))
        if description is None:
            excerpt = _first(record.get("excerpts"))
            if isinstance(excerpt, dict):
                description = _text(excerpt.get("text"))

        language = None
        first_language = _first(record.get("languages"))
        if isinstance(first_language, dict) and first_language.get("key"):
            language = first_language["key"].removeprefix(_LANGUAGE_PREFIX)

        categories = [s.get("name") for s in record.get("subjects") or [] if s.get("name")]

        return Found(
            BookMetadata(
                isbn=isbn,
                source=self.source,
                title=record.get("title") or "",
                authors=authors,
                publisher=publisher or None,
                published_date=_text(record.get("publish_date")),
                description=description,
                page_count=_count(record.get("number_of_pages")),
                cover_image=secure_url(cover_image),
                language=language,
                categories=categories,
                raw_data=record,
            )
        )


class GoogleBooksProvider(Provider):
    """Google Books volume search on ``isbn:``."""

    name = "googlebooks"
    source = BookSource.GOOGLE_BOOKS

    def __init__(self, api_key: str | None = None) -> None:
        self.api_key = api_key if api_key is not None else os.environ.get("GOOGLE_BOOKS_API_KEY", "")

    async def fetch(self, client: httpx.AsyncClient, isbn: str) -> Any:
        params = {"q": f"isbn:{isbn}"}
        if self.api_key:
            params["key"] = self.api_key
        return await self._get_json(client, GOOGLE_BOOKS_URL, params=params)

    def parse(self, isbn: str, data: Any) -> LookupResult:
        items = data.get("items") or []
        if not items:
            return NotFound("no items")

        info = items[0].get("volumeInfo") or {}
        image_links = info.get("imageLinks") or {}
        cover_image = image_links.get("thumbnail") or image_links.get("smallThumbnail")

        return Found(
            BookMetadata(
                isbn=isbn,
                source=self.source,
                title=info.get("title") or "",
                authors=_strings(info.get("authors")),
                publisher=_text(info.get("publisher")),
                published_date=_text(info.get("publishedDate")),
                description=_text(info.get("description")),
                page_count=_count(info.get("pageCount")),
                cover_image=secure_url(cover_image),
                language=_text(info.get("language")),
                categories=_strings(info.get("categories")),
                raw_data=info,
            )
        )


class OpenLibrarySearchProvider(_OpenLibraryProvider):
    """Open Library full-text search endpoint, used as the last resort."""

    name = "openlibrary_search"
    source = BookSource.OPEN_LIBRARY_SEARCH

    async def fetch(self, client: httpx.AsyncClient, isbn: str) -> Any:
        return await self._ol_get(
            client, OPEN_LIBRARY_SEARCH_URL, params={"isbn": isbn, "limit": "1"}
        )

    def parse(self, isbn: str, data: Any) -> LookupResult:
        docs = data.get("docs") or []
        if not docs:
            return NotFound("no docs")

        doc = docs[0]

        cover_image = None
        cover_id = doc.get("cover_i")
        if cover_id:
            cover_image = COVER_URL_TEMPLATE.format(cover_id=cover_id)

        year = doc.get("first_publish_year")
        first_sentence = doc.get("first_sentence")
        if isinstance(first_sentence, list):
            description = " ".join(str(s) for s in first_sentence) or None
        else:
            description = _text(first_sentence)

        return Found(
            BookMetadata(
                isbn=isbn,
                source=self.source,
                title=doc.get("title") or "",
                authors=_strings(doc.get("author_name")),
                publisher=_text(_first(doc.get("publisher"))),
                published_date=str(year) if year is not None else None,
                description=description,
                page_count=_count(doc.get("number_of_pages_median")),
                cover_image=cover_image,
                language=_text(_first(doc.get("language"))),
                categories=_strings(doc.get("subject")),
                raw_data=doc,
            )
        )


def default_providers(throttle: RequestThrottle | None = None) -> list[Provider]:
    """The fallback chain: Open Library → Google Books → Open Library Search.

    Both Open Library adapters share one throttle since they hit the same host.
    """
    throttle = throttle or RequestThrottle()
    return [
        OpenLibraryProvider(throttle),
        GoogleBooksProvider(),
        OpenLibrarySearchProvider(throttle),
    ]
