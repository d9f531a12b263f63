"""Shared pytest fixtures for ShelfScan tests."""

from __future__ import annotations

import pytest

from shelfscan.core.lookup import BookLookup
from shelfscan.core.reconciler import CatalogReconciler
from shelfscan.core.store import MemoryStore
from tests.fixtures.fakes import FakeProvider, fake_chain

ROSE = {
    "title": "The Name of the Rose",
    "authors": ["Umberto Eco"],
    "publisher": "Harcourt",
    "page_count": 512,
}
DUNE = {"title": "Dune", "authors": ["Frank Herbert"]}


@pytest.fixture
def providers() -> list[FakeProvider]:
    """Fallback chain where only the primary knows two books."""
    return fake_chain(
        primary={"9780156001311": ROSE, "9783161484100": DUNE},
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def reconciler(store: MemoryStore, providers: list[FakeProvider]) -> CatalogReconciler:
    return CatalogReconciler(store, BookLookup(providers))
