"""
向量存储（cosine 相似度检索）。

当前只提供进程内实现 `InMemoryVectorStore`：
- 用 numpy 矩阵做暴力 cosine 检索，适合中小规模代码库
- 所有写操作在锁内完成，维度不匹配时 store 保持不变
- 后续可替换为 pgvector 等持久化实现（实现同一个 `VectorStore` Protocol 即可）
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping, Sequence
from typing import Protocol

import numpy as np

from gvr.graph.models import MetadataValue
from gvr.infra.errors import DimensionMismatchError
from gvr.storage.models import SearchHit, VectorDocument


class VectorStore(Protocol):
    def dimension(self) -> int: ...

    def insert(self, documents: Sequence[VectorDocument]) -> None: ...

    def replace_file(self, file_path: str, documents: Sequence[VectorDocument]) -> None: ...

    def search(
        self,
        query_embedding: Sequence[float],
        top_k: int,
        filters: Mapping[str, MetadataValue] | None = None,
    ) -> list[SearchHit]: ...

    def delete(self, ids: Iterable[str]) -> int: ...

    def delete_by_file(self, file_path: str) -> int: ...

    def count(self) -> int: ...

    def file_count(self) -> int: ...

    def clear(self) -> None: ...


class InMemoryVectorStore:
    def __init__(self, dimension: int) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be > 0")
        self._dimension = dimension
        self._lock = threading.Lock()
        self._documents: dict[str, VectorDocument] = {}
        self._ids_by_file: dict[str, set[str]] = {}
        # (ids, 归一化矩阵) 缓存；任何写操作都会把它置空
        self._matrix: tuple[list[str], np.ndarray] | None = None

    def dimension(self) -> int:
        return self._dimension

    def insert(self, documents: Sequence[VectorDocument]) -> None:
        self._check_documents(documents)
        with self._lock:
            for document in documents:
                self._put_locked(document)
            self._matrix = None

    def replace_file(self, file_path: str, documents: Sequence[VectorDocument]) -> None:
        """原子地用 documents 替换某个文件的全部向量。"""
        self._check_documents(documents)
        for document in documents:
            if document.filePath != file_path:
                raise ValueError(f"Document {document.id} belongs to {document.filePath}, not {file_path}")
        with self._lock:
            self._delete_file_locked(file_path)
            for document in documents:
                self._put_locked(document)
            self._matrix = None

    def search(
        self,
        query_embedding: Sequence[float],
        top_k: int,
        filters: Mapping[str, MetadataValue] | None = None,
    ) -> list[SearchHit]:
        if top_k <= 0:
            raise ValueError("top_k must be > 0")
        if len(query_embedding) != self._dimension:
            raise DimensionMismatchError(expected=self._dimension, actual=len(query_embedding))

        with self._lock:
            ids, matrix = self._matrix_locked()
            documents = [self._documents[doc_id] for doc_id in ids]
        if not ids:
            return []

        query = np.asarray(query_embedding, dtype=np.float64)
        query_norm = float(np.linalg.norm(query))
        if query_norm == 0.0:
            scores = np.zeros(len(ids), dtype=np.float64)
        else:
            scores = matrix @ (query / query_norm)

        mask = np.array([_matches(document, filters) for document in documents], dtype=bool)
        candidates = np.flatnonzero(mask)
        if candidates.size == 0:
            return []
        # stable 排序：分数相同按插入顺序
        order = candidates[np.argsort(-scores[candidates], kind="stable")][:top_k]
        return [SearchHit(id=ids[i], score=float(scores[i]), document=documents[i]) for i in order]

    def delete(self, ids: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for doc_id in ids:
                document = self._documents.pop(doc_id, None)
                if document is None:
                    continue
                removed += 1
                file_ids = self._ids_by_file.get(document.filePath)
                if file_ids is not None:
                    file_ids.discard(doc_id)
                    if not file_ids:
                        del self._ids_by_file[document.filePath]
            if removed:
                self._matrix = None
        return removed

    def delete_by_file(self, file_path: str) -> int:
        with self._lock:
            removed = self._delete_file_locked(file_path)
            if removed:
                self._matrix = None
        return removed

    def count(self) -> int:
        with self._lock:
            return len(self._documents)

    def file_count(self) -> int:
        with self._lock:
            return len(self._ids_by_file)

    def clear(self) -> None:
        with self._lock:
            self._documents.clear()
            self._ids_by_file.clear()
            self._matrix = None

    def _check_documents(self, documents: Sequence[VectorDocument]) -> None:
        for document in documents:
            if len(document.embedding) != self._dimension:
                raise DimensionMismatchError(expected=self._dimension, actual=len(document.embedding))

    def _put_locked(self, document: VectorDocument) -> None:
        previous = self._documents.get(document.id)
        if previous is not None and previous.filePath != document.filePath:
            stale = self._ids_by_file.get(previous.filePath)
            if stale is not None:
                stale.discard(document.id)
                if not stale:
                    del self._ids_by_file[previous.filePath]
        self._documents[document.id] = document
        self._ids_by_file.setdefault(document.filePath, set()).add(document.id)

    def _delete_file_locked(self, file_path: str) -> int:
        ids = self._ids_by_file.pop(file_path, set())
        for doc_id in ids:
            self._documents.pop(doc_id, None)
        return len(ids)

    def _matrix_locked(self) -> tuple[list[str], np.ndarray]:
        if self._matrix is None:
            ids = list(self._documents)
            if ids:
                matrix = np.asarray([self._documents[doc_id].embedding for doc_id in ids], dtype=np.float64)
                norms = np.linalg.norm(matrix, axis=1, keepdims=True)
                norms[norms == 0.0] = 1.0
                matrix = matrix / norms
            else:
                matrix = np.zeros((0, self._dimension), dtype=np.float64)
            self._matrix = (ids, matrix)
        return self._matrix


def _matches(document: VectorDocument, filters: Mapping[str, MetadataValue] | None) -> bool:
    if not filters:
        return True
    metadata = document.metadata or {}
    for key, expected in filters.items():
        if key == "filePath":
            if document.filePath != expected:
                return False
        elif metadata.get(key) != expected:
            return False
    return True


def create_vector_store(store_type: str, dimension: int) -> VectorStore:
    if store_type == "memory":
        return InMemoryVectorStore(dimension=dimension)
    raise ValueError(f"Unsupported vector store type: {store_type}")
