"""Title-similarity matching between local products and competitor candidates."""

import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from rapidfuzz import fuzz

logger = logging.getLogger(__name__)

SKU_MATCH_SCORE = 90

_PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


@dataclass
class MatchCandidate:
    """Best competitor candidate for one local product."""

    product_id: Any
    competitor_product_id: str
    similarity: int  # 0-100
    candidate: Any = None


def normalize_title(title: Optional[str]) -> str:
    """
    Normalize a product title for comparison.

    Lowercases, strips diacritics, replaces punctuation with spaces and
    collapses whitespace.
    """
    if not title:
        return ""
    decomposed = unicodedata.normalize("NFD", title.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    stripped = _PUNCTUATION.sub(" ", stripped).replace("_", " ")
    return _WHITESPACE.sub(" ", stripped).strip()


def _sku(item: Any) -> str:
    value = getattr(item, "sku", None)
    return str(value).strip().lower() if value else ""


def similarity(local: Any, candidate: Any) -> int:
    """
    Score how likely two items are the same product.

    Args:
        local: Object with ``name`` and optional ``sku``
        candidate: Object with ``name`` and optional ``sku``

    Returns:
        Integer score 0-100; equal SKUs score at least 90
    """
    left = normalize_title(getattr(local, "name", None))
    right = normalize_title(getattr(candidate, "name", None))
    score = int(round(fuzz.token_sort_ratio(left, right))) if left and right else 0

    local_sku = _sku(local)
    if local_sku and local_sku == _sku(candidate):
        score = max(score, SKU_MATCH_SCORE)
    return score


def find_best_matches(
    local_items: Iterable[Any],
    candidate_items: Iterable[Any],
    min_score: int = 60,
) -> List[MatchCandidate]:
    """
    Pick the best candidate for every local item.

    Args:
        local_items: Local products (``id``, ``name``, optional ``sku``)
        candidate_items: Competitor products (``id``, ``name``, optional ``sku``)
        min_score: Minimum similarity to keep a match

    Returns:
        One MatchCandidate per local item whose best score reaches
        ``min_score``; ties go to the lexicographically smaller candidate id
    """
    candidates = list(candidate_items)
    matches: List[MatchCandidate] = []

    for local in local_items:
        best: Optional[MatchCandidate] = None
        for candidate in candidates:
            candidate_id = str(candidate.id)
            score = similarity(local, candidate)
            if best is None or score > best.similarity or (
                score == best.similarity and candidate_id < best.competitor_product_id
            ):
                best = MatchCandidate(
                    product_id=local.id,
                    competitor_product_id=candidate_id,
                    similarity=score,
                    candidate=candidate,
                )

        if best is not None and best.similarity >= min_score:
            matches.append(best)

    logger.debug(
        f"Matched {len(matches)} local items against {len(candidates)} candidates"
    )
    return matches
