"""Error taxonomy for lookups and catalog operations."""

from __future__ import annotations


class ShelfscanError(Exception):
    """Base class for errors the caller is expected to report."""


class NotFoundError(ShelfscanError):
    """No catalog service had data for the ISBN."""

    def __init__(self, isbn: str) -> None:
        super().__init__("Book not found in any database")
        self.isbn = isbn


class ProviderError(ShelfscanError):
    """A single catalog service failed (network, status, or response shape)."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ValidationError(ShelfscanError):
    """Missing or malformed input at a boundary."""


class StoreError(ShelfscanError):
    """The record store failed to complete an operation."""


class RecordNotFoundError(StoreError):
    """No record exists with the requested id."""


class DuplicateEntryError(StoreError):
    """An entry for this user and ISBN already exists."""
