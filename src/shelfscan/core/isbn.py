"""ISBN string helpers shared by the lookup and catalog paths."""

from __future__ import annotations

import re

_SEPARATORS_RE = re.compile(r"[-\s]")


def normalize_isbn(raw: str) -> str:
    """Strip dashes and whitespace so every path keys books the same way.

    A lowercase ``x`` check digit is upper-cased.
    """
    return _SEPARATORS_RE.sub("", raw or "").upper()


def looks_like_isbn(raw: str) -> bool:
    """Length gate used before a scan is submitted (10 or 13 characters).

    This is not a checksum validation.
    """
    return len(normalize_isbn(raw)) in (10, 13)
