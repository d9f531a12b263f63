"""Resolve an ISBN to BookMetadata across the provider fallback chain."""

from __future__ import annotations

import os

import httpx
import structlog

from .errors import NotFoundError, ProviderError
from .models import BookMetadata, Found
from .providers import Provider, default_providers

log = structlog.get_logger()

_LOOKUP_TIMEOUT = float(os.environ.get("LOOKUP_TIMEOUT", "10"))


class BookLookup:
    """Query providers in priority order and return the first hit.

    Providers are called one at a time; once one answers, the rest are
    skipped. Results are not cached.
    """

    def __init__(
        self,
        providers: list[Provider] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = _LOOKUP_TIMEOUT,
    ) -> None:
        self.providers = providers if providers is not None else default_providers()
        self._transport = transport
        self._timeout = timeout

    def _client(self) -> httpx.AsyncClient:
        kwargs: dict = {"timeout": self._timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    async def fetch(self, isbn: str) -> BookMetadata:
        """Return metadata from the first provider with data.

        The ISBN is used as given; callers normalize it first.

        Raises:
            NotFoundError: If no provider has data for the ISBN.
        """
        async with self._client() as client:
            for provider in self.providers:
                try:
                    result = await provider.lookup(client, isbn)
                except ProviderError as e:
                    log.warning("provider_failed", provider=provider.name, isbn=isbn, error=str(e))
                    continue

                if isinstance(result, Found):
                    log.info(
                        "lookup_found",
                        isbn=isbn,
                        source=result.metadata.source.value,
                        title=result.metadata.title,
                    )
                    return result.metadata

                log.debug("lookup_fallback", provider=provider.name, isbn=isbn)

        log.info("lookup_not_found", isbn=isbn)
        raise NotFoundError(isbn)
