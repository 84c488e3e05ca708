#!/usr/bin/env python3
"""
Document store tests: keyed upsert, top-K ordering, dimensionality checks
and orphan cleanup.
"""

import pytest

from backoffice_ai.rag.document_store import (
    DimensionMismatchError,
    DocumentStore,
)
from conftest import FixedClock


@pytest.fixture
def clocked_store(tmp_path):
    return DocumentStore(str(tmp_path / "chroma"), clock=FixedClock())


def test_upsert_same_key_keeps_one_row_and_second_write_wins(clocked_store):
    clocked_store.upsert("book", "1", "first", [1.0, 0.0])
    clocked_store.upsert("book", "1", "second", [0.0, 1.0])

    assert clocked_store.count() == 1
    doc = clocked_store.get("book", "1")
    assert doc.content == "second"
    assert doc.embedding == (0.0, 1.0)


def test_upsert_advances_updated_at(clocked_store):
    first = clocked_store.upsert("order", "42", "text", [1.0, 0.0])
    second = clocked_store.upsert("order", "42", "text", [1.0, 0.0])
    assert second.updated_at > first.updated_at
    assert clocked_store.get("order", "42").updated_at == second.updated_at


def test_upsert_rejects_mismatched_dimensionality(clocked_store):
    clocked_store.upsert("book", "1", "a", [1.0, 0.0, 0.0])
    with pytest.raises(DimensionMismatchError):
        clocked_store.upsert("book", "2", "b", [1.0, 0.0])
    with pytest.raises(DimensionMismatchError):
        clocked_store.upsert("book", "3", "c", [])
    assert clocked_store.keys() == {("book", "1")}


def test_single_row_can_be_rewritten_with_new_dimensionality(clocked_store):
    clocked_store.upsert("book", "1", "a", [1.0, 0.0, 0.0])
    clocked_store.upsert("book", "1", "a", [1.0, 0.0])
    assert clocked_store.info()["dimensions"] == [2]


def test_top_k_orders_by_score_then_recency(clocked_store):
    clocked_store.upsert("book", "far", "far", [0.0, 1.0])
    clocked_store.upsert("book", "old-tie", "old", [1.0, 0.0])
    clocked_store.upsert("book", "mid", "mid", [1.0, 1.0])
    clocked_store.upsert("book", "new-tie", "new", [2.0, 0.0])

    results = clocked_store.top_k([1.0, 0.0], 10)

    assert [r.document.ref_id for r in results] == ["new-tie", "old-tie", "mid", "far"]
    scores = [r.score for r in results]
    assert scores == sorted(scores, reverse=True)
    assert results[0].score == pytest.approx(1.0)


def test_top_k_length_is_min_of_k_and_store_size(clocked_store):
    for i in range(5):
        clocked_store.upsert("book", str(i), f"doc {i}", [1.0, float(i)])
    assert len(clocked_store.top_k([1.0, 1.0], 3)) == 3
    assert len(clocked_store.top_k([1.0, 1.0], 50)) == 5
    assert clocked_store.top_k([1.0, 1.0], 0) == []
    assert clocked_store.top_k([], 3) == []


def test_top_k_filters_by_ref_type_and_min_similarity(clocked_store):
    clocked_store.upsert("book", "1", "book", [1.0, 0.0])
    clocked_store.upsert("order", "42", "order", [0.9, 0.1])
    clocked_store.upsert("order", "43", "unrelated order", [0.0, 1.0])

    orders = clocked_store.top_k([1.0, 0.0], 5, ref_types=["order"])
    assert [r.document.key for r in orders] == [("order", "42"), ("order", "43")]

    relevant = clocked_store.top_k([1.0, 0.0], 5, min_similarity=0.5)
    assert {r.document.key for r in relevant} == {("book", "1"), ("order", "42")}


def test_top_k_with_other_dimensionality_matches_nothing(clocked_store):
    clocked_store.upsert("book", "1", "ok", [1.0, 0.0])

    assert clocked_store.top_k([1.0, 0.0, 0.0], 5) == []
    assert [r.document.ref_id for r in clocked_store.top_k([1.0, 0.0], 5)] == ["1"]


def test_emptied_store_accepts_new_dimensionality(clocked_store):
    clocked_store.upsert("book", "1", "a", [1.0, 0.0, 0.0])
    clocked_store.upsert("book", "2", "b", [0.0, 1.0, 0.0])
    clocked_store.clear(["book"])

    clocked_store.upsert("book", "3", "c", [1.0, 0.0])

    assert clocked_store.info()["dimensions"] == [2]
    assert clocked_store.top_k([1.0, 0.0], 1)[0].document.ref_id == "3"


def test_top_k_scores_are_one_minus_cosine_distance(clocked_store):
    clocked_store.upsert("book", "same", "same", [1.0, 0.0])
    clocked_store.upsert("book", "orthogonal", "orthogonal", [0.0, 1.0])
    clocked_store.upsert("book", "opposite", "opposite", [-1.0, 0.0])

    scores = {r.document.ref_id: r.score for r in clocked_store.top_k([1.0, 0.0], 3)}

    assert scores["same"] == pytest.approx(1.0, abs=1e-5)
    assert scores["orthogonal"] == pytest.approx(0.0, abs=1e-5)
    assert scores["opposite"] == pytest.approx(-1.0, abs=1e-5)


def test_delete_orphans_removes_only_unlisted_keys(clocked_store):
    for ref_id in ("1", "2", "3"):
        clocked_store.upsert("book", ref_id, f"book {ref_id}", [1.0, 0.0])
    clocked_store.upsert("order", "42", "order", [1.0, 0.0])

    deleted = clocked_store.delete_orphans({("book", "1"), ("book", "3"), ("order", "42")})

    assert deleted == 1
    assert clocked_store.keys() == {("book", "1"), ("book", "3"), ("order", "42")}


def test_delete_orphans_scoped_to_ref_types(clocked_store):
    clocked_store.upsert("book", "1", "book", [1.0, 0.0])
    clocked_store.upsert("order", "42", "order", [1.0, 0.0])

    deleted = clocked_store.delete_orphans(set(), ref_types=["book"])

    assert deleted == 1
    assert clocked_store.keys() == {("order", "42")}


def test_clear_and_delete(clocked_store):
    clocked_store.upsert("book", "1", "book", [1.0, 0.0])
    clocked_store.upsert("order", "42", "order", [1.0, 0.0])
    clocked_store.upsert("invoice", "900", "invoice", [1.0, 0.0])

    assert clocked_store.delete("book", "1") is True
    assert clocked_store.delete("book", "1") is False
    assert clocked_store.clear(["order"]) == 1
    assert clocked_store.count() == 1
    assert clocked_store.count(["invoice"]) == 1


def test_store_persists_across_instances(tmp_path):
    path = str(tmp_path / "persist")
    DocumentStore(path).upsert("book", "1", "Dune", [0.5, 0.5])
    reopened = DocumentStore(path)
    assert reopened.get("book", "1").content == "Dune"
    assert reopened.info()["by_ref_type"] == {"book": 1}

