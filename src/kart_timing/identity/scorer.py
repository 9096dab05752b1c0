"""Name similarity scorers for historical fuzzy matching."""

from __future__ import annotations

import difflib
import re
import unicodedata
from typing import Protocol

_NON_ALNUM = re.compile(r"[^a-z0-9 ]+")


class NameScorer(Protocol):
    def score(self, candidate: str, known: str) -> float:
        """Similarity of *candidate* to *known* in ``[0.0, 1.0]``."""
        ...


def normalize_name(name: str) -> str:
    """Lower-case, strip accents and punctuation, collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", name)
    ascii_only = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    cleaned = _NON_ALNUM.sub(" ", ascii_only.lower())
    return " ".join(cleaned.split())


class SequenceMatcherScorer:
    """:class:`difflib.SequenceMatcher` ratio on normalized names.

    Token order is ignored: ``"Soto Diego"`` scores 1.0 against ``"Diego Soto"``.
    """

    def score(self, candidate: str, known: str) -> float:
        a = normalize_name(candidate)
        b = normalize_name(known)
        if not a or not b:
            return 0.0
        if a == b:
            return 1.0
        direct = difflib.SequenceMatcher(None, a, b).ratio()
        sorted_a = " ".join(sorted(a.split()))
        sorted_b = " ".join(sorted(b.split()))
        reordered = difflib.SequenceMatcher(None, sorted_a, sorted_b).ratio()
        return max(direct, reordered)
