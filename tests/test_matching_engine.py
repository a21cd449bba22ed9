"""Tests for title normalization and best-match selection."""

from dataclasses import dataclass
from typing import Optional

from pricesync.matching.engine import find_best_matches, normalize_title, similarity


@dataclass
class Item:
    id: object
    name: str
    sku: Optional[str] = None


def test_normalize_title():
    assert normalize_title("  Kávovar DeLonghi / Magnifica S!  ") == "kavovar delonghi magnifica s"
    assert normalize_title(None) == ""


def test_similarity_bounds():
    assert similarity(Item(1, "Apple iPhone 15 128GB"), Item("a", "apple iphone 15 128gb")) == 100
    assert similarity(Item(1, ""), Item("a", "anything")) == 0
    assert 0 <= similarity(Item(1, "Garden hose"), Item("a", "Laptop stand")) < 60


def test_sku_match_boosts_score():
    local = Item(1, "Running shoe", sku="NK-123")
    candidate = Item("a", "Completely different title", sku="nk-123")

    assert similarity(local, candidate) >= 90


def test_best_match_per_local_item():
    local = [Item(1, "Samsung Galaxy S24 Ultra 256GB"), Item(2, "Dyson V15 Detect vacuum")]
    candidates = [
        Item("c1", "Samsung Galaxy S24 Ultra 256GB Titanium Black"),
        Item("c2", "Samsung Galaxy Tab A9 tablet"),
        Item("c3", "Dyson V15 Detect Absolute cordless vacuum"),
    ]

    matches = {m.product_id: m for m in find_best_matches(local, candidates, min_score=60)}

    assert matches[1].competitor_product_id == "c1"
    assert matches[2].competitor_product_id == "c3"
    assert all(0 <= m.similarity <= 100 for m in matches.values())


def test_below_min_score_is_dropped():
    matches = find_best_matches([Item(1, "Garden hose 20m")], [Item("c1", "Xbox controller")], 60)

    assert matches == []


def test_ties_go_to_smaller_candidate_id():
    local = [Item(1, "Blue mug")]
    candidates = [Item("b-url", "Blue mug"), Item("a-url", "Blue mug")]

    matches = find_best_matches(local, candidates)

    assert matches[0].competitor_product_id == "a-url"
    assert matches[0].similarity == 100


def test_no_candidates():
    assert find_best_matches([Item(1, "Blue mug")], []) == []
