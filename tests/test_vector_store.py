from __future__ import annotations

import pytest

from gvr.infra.errors import DimensionMismatchError
from gvr.storage.models import VectorDocument
from gvr.storage.vector_store import InMemoryVectorStore
from gvr.storage.vector_store import create_vector_store


def _doc(doc_id: str, embedding: list[float], file_path: str = "a.ts", **metadata: str) -> VectorDocument:
    return VectorDocument(
        id=doc_id,
        chunkId=f"chunk-{doc_id}",
        embedding=embedding,
        content=f"content {doc_id}",
        filePath=file_path,
        startLine=1,
        endLine=10,
        metadata=metadata or None,
    )


def _three_docs_store() -> InMemoryVectorStore:
    store = InMemoryVectorStore(dimension=3)
    store.insert(
        [
            _doc("low", [0.0, 1.0, 0.0], file_path="a.ts"),
            _doc("high", [1.0, 0.0, 0.0], file_path="b.ts"),
            _doc("mid", [1.0, 1.0, 0.0], file_path="c.ts"),
        ]
    )
    return store


def test_search_returns_all_documents_sorted_descending() -> None:
    store = _three_docs_store()
    hits = store.search([1.0, 0.0, 0.0], top_k=5)
    assert [h.id for h in hits] == ["high", "mid", "low"]
    assert hits[0].score == pytest.approx(1.0)
    assert hits[1].score == pytest.approx(2**-0.5)
    assert hits[2].score == pytest.approx(0.0)
    assert hits[0].document.filePath == "b.ts"


def test_search_truncates_to_top_k() -> None:
    hits = _three_docs_store().search([1.0, 0.0, 0.0], top_k=1)
    assert [h.id for h in hits] == ["high"]


def test_search_empty_store_returns_empty() -> None:
    assert InMemoryVectorStore(dimension=3).search([1.0, 0.0, 0.0], top_k=5) == []


def test_search_dimension_mismatch_leaves_store_unchanged() -> None:
    store = _three_docs_store()
    with pytest.raises(DimensionMismatchError) as exc_info:
        store.search([1.0, 0.0], top_k=5)
    assert exc_info.value.expected == 3
    assert exc_info.value.actual == 2
    assert store.count() == 3
    assert [h.id for h in store.search([1.0, 0.0, 0.0], top_k=5)] == ["high", "mid", "low"]


def test_insert_dimension_mismatch_inserts_nothing() -> None:
    store = InMemoryVectorStore(dimension=3)
    with pytest.raises(DimensionMismatchError):
        store.insert([_doc("ok", [1.0, 0.0, 0.0]), _doc("bad", [1.0, 0.0])])
    assert store.count() == 0


def test_search_rejects_non_positive_top_k() -> None:
    with pytest.raises(ValueError):
        _three_docs_store().search([1.0, 0.0, 0.0], top_k=0)


def test_search_filters_by_file_path_and_metadata() -> None:
    store = InMemoryVectorStore(dimension=2)
    store.insert(
        [
            _doc("a1", [1.0, 0.0], file_path="a.ts", language="typescript"),
            _doc("b1", [1.0, 0.0], file_path="b.py", language="python"),
        ]
    )
    assert [h.id for h in store.search([1.0, 0.0], top_k=5, filters={"filePath": "b.py"})] == ["b1"]
    assert [h.id for h in store.search([1.0, 0.0], top_k=5, filters={"language": "typescript"})] == ["a1"]
    assert store.search([1.0, 0.0], top_k=5, filters={"language": "go"}) == []


def test_insert_upserts_by_id() -> None:
    store = InMemoryVectorStore(dimension=2)
    store.insert([_doc("x", [1.0, 0.0], file_path="old.ts")])
    store.insert([_doc("x", [0.0, 1.0], file_path="new.ts")])
    assert store.count() == 1
    assert store.delete_by_file("old.ts") == 0
    hit = store.search([0.0, 1.0], top_k=1)[0]
    assert hit.document.filePath == "new.ts"
    assert hit.score == pytest.approx(1.0)


def test_delete_by_file_and_replace_file() -> None:
    store = _three_docs_store()
    assert store.delete_by_file("a.ts") == 1
    assert store.count() == 2
    assert store.file_count() == 2

    store.replace_file("b.ts", [_doc("b-new", [0.0, 0.0, 1.0], file_path="b.ts")])
    ids = {h.id for h in store.search([0.0, 0.0, 1.0], top_k=10)}
    assert ids == {"b-new", "mid"}


def test_replace_file_rejects_foreign_documents() -> None:
    store = _three_docs_store()
    with pytest.raises(ValueError):
        store.replace_file("a.ts", [_doc("z", [1.0, 0.0, 0.0], file_path="z.ts")])
    assert store.count() == 3


def test_delete_by_ids() -> None:
    store = _three_docs_store()
    assert store.delete(["low", "missing"]) == 1
    assert store.count() == 2


def test_create_vector_store() -> None:
    store = create_vector_store("memory", dimension=4)
    assert store.dimension() == 4
    with pytest.raises(ValueError):
        create_vector_store("qdrant", dimension=4)
