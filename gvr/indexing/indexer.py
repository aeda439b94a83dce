from __future__ import annotations

import logging
import os
import uuid
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from functools import partial

import anyio
import httpx
from openai import OpenAIError

from gvr.embedding.provider import EmbeddingProvider
from gvr.graph.models import MetadataValue
from gvr.indexing.chunker import Chunker
from gvr.indexing.file_scanner import infer_language_from_path
from gvr.indexing.file_scanner import read_source_file
from gvr.indexing.file_scanner import scan_source_files
from gvr.indexing.file_scanner import sha256_text
from gvr.infra.cache import Cache
from gvr.infra.cache import InMemoryCache
from gvr.infra.errors import BackendUnavailableError
from gvr.infra.errors import DimensionMismatchError
from gvr.storage.models import Chunk
from gvr.storage.models import SearchHit
from gvr.storage.models import VectorDirectoryResult
from gvr.storage.models import VectorDocument
from gvr.storage.models import VectorIndexResult
from gvr.storage.models import VectorStats
from gvr.storage.vector_store import VectorStore

logger = logging.getLogger(__name__)

EMBED_BATCH_SIZE = 32


@dataclass
class _FileLock:
    lock: anyio.Lock = field(default_factory=anyio.Lock)
    users: int = 0


class SemanticIndex:
    """
    语义索引：chunk -> embedding -> vector store。

    - 以文件为单位替换：重新索引某文件会先删掉它的旧向量
    - 内容 checksum 未变时不做任何事
    - 同一文件的并发索引请求串行执行
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: EmbeddingProvider,
        chunker: Chunker | None = None,
        checksums: Cache | None = None,
        store_type: str = "memory",
    ) -> None:
        if store.dimension() != embedder.dimensions():
            raise DimensionMismatchError(expected=store.dimension(), actual=embedder.dimensions())
        self._store = store
        self._embedder = embedder
        self._chunker = chunker or Chunker()
        self._checksums = checksums if checksums is not None else InMemoryCache()
        self._store_type = store_type
        self._file_locks: dict[str, _FileLock] = {}

    async def index_file(self, file_path: str, content: str) -> VectorIndexResult:
        async with self._file_lock(file_path):
            checksum = sha256_text(content)
            if self._checksums.get(file_path) == checksum:
                return VectorIndexResult(chunksCreated=0, updated=False)

            chunks = self._chunker.chunk_content(file_path=file_path, content=content)
            embeddings = await self._embed_chunks(chunks=[chunk.content for chunk in chunks])
            language = infer_language_from_path(file_path)
            documents = [
                _to_document(chunk=chunk, embedding=embedding, language=language)
                for chunk, embedding in zip(chunks, embeddings)
            ]
            await anyio.to_thread.run_sync(self._store.replace_file, file_path, documents)
            self._checksums.set(file_path, checksum)
            logger.debug(f"Indexed {len(documents)} chunks for {file_path}")
            return VectorIndexResult(chunksCreated=len(documents), updated=True)

    async def index_directory(
        self,
        root_dir: str,
        allowed_extensions: Iterable[str],
        max_bytes: int,
    ) -> VectorDirectoryResult:
        files = await anyio.to_thread.run_sync(
            partial(scan_source_files, root_dir=root_dir, allowed_extensions=list(allowed_extensions), max_bytes=max_bytes)
        )
        result = VectorDirectoryResult()
        for path in files:
            try:
                content = await anyio.to_thread.run_sync(read_source_file, path)
            except OSError as exc:
                logger.warning(f"Skipping unreadable file {path}: {exc}")
                result.filesSkipped += 1
                continue
            file_result = await self.index_file(file_path=path, content=content)
            if file_result.updated:
                result.filesIndexed += 1
                result.chunksCreated += file_result.chunksCreated
            else:
                result.filesUnchanged += 1
        logger.info(
            f"Vector index of {root_dir}: indexed={result.filesIndexed}, unchanged={result.filesUnchanged}, "
            f"skipped={result.filesSkipped}, chunks={result.chunksCreated}"
        )
        return result

    async def search(
        self,
        query: str,
        top_k: int,
        filters: Mapping[str, MetadataValue] | None = None,
    ) -> list[SearchHit]:
        if not query.strip():
            raise ValueError("query must be non-empty")
        try:
            embedding = await self._embedder.embed(query)
        except OpenAIError as exc:
            raise BackendUnavailableError(f"Embedding provider failed: {exc}") from exc
        except httpx.HTTPError as exc:
            raise BackendUnavailableError(f"Embedding provider unreachable: {exc}") from exc
        return await anyio.to_thread.run_sync(self._store.search, embedding, top_k, filters)

    async def delete_file(self, file_path: str) -> int:
        async with self._file_lock(file_path):
            removed = await anyio.to_thread.run_sync(self._store.delete_by_file, file_path)
            self._checksums.delete(file_path)
            return removed

    async def clear(self) -> None:
        await anyio.to_thread.run_sync(self._store.clear)
        self._checksums.clear()

    async def stats(self) -> VectorStats:
        return VectorStats(
            totalDocuments=self._store.count(),
            totalFiles=self._store.file_count(),
            embeddingDimensions=self._embedder.dimensions(),
            storeType=self._store_type,
        )

    @asynccontextmanager
    async def _file_lock(self, file_path: str) -> AsyncIterator[None]:
        # 等待者计数归零时删除，map 只保存正在使用的路径
        entry = self._file_locks.setdefault(file_path, _FileLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._file_locks[file_path]

    async def _embed_chunks(self, chunks: Sequence[str]) -> list[list[float]]:
        embeddings: list[list[float]] = []
        for i in range(0, len(chunks), EMBED_BATCH_SIZE):
            batch = chunks[i : i + EMBED_BATCH_SIZE]
            embeddings.extend(await self._embedder.embed_batch(batch))
        return embeddings


def _to_document(chunk: Chunk, embedding: list[float], language: str) -> VectorDocument:
    return VectorDocument(
        id=uuid.uuid4().hex,
        chunkId=chunk.id,
        embedding=embedding,
        content=chunk.content,
        filePath=chunk.filePath,
        startLine=chunk.startLine,
        endLine=chunk.endLine,
        metadata={"language": language, "checksum": chunk.checksum, "fileName": os.path.basename(chunk.filePath)},
    )
