from __future__ import annotations

import logging
from functools import partial
from typing import Protocol

import anyio
import httpx

from gvr.backends.http import ServiceClient
from gvr.graph.models import DependencyResult
from gvr.graph.models import GraphStats
from gvr.graph.models import IndexDirectoryResult
from gvr.graph.models import IndexFileResult
from gvr.graph.models import Node
from gvr.graph.store import GraphStore
from gvr.infra.errors import NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_INDEX_CONCURRENCY = 8


class GraphBackend(Protocol):
    """GVR 引擎依赖的 code knowledge graph 能力（进程内或远端服务）。"""

    async def index_file(self, file_path: str, content: str | None = None) -> IndexFileResult: ...

    async def index_directory(self, root_dir: str) -> IndexDirectoryResult: ...

    async def get_dependents(self, file_path: str, depth: int) -> list[DependencyResult]: ...

    async def get_dependencies(self, file_path: str, depth: int) -> list[DependencyResult]: ...

    async def get_nodes_for_file(self, file_path: str) -> list[Node]: ...

    async def search_nodes(self, query: str, limit: int = 20) -> list[Node]: ...

    async def get_stats(self) -> GraphStats: ...

    async def clear(self) -> None: ...


class LocalGraphBackend:
    """把同步、线程安全的 `GraphStore` 包装成 async backend。"""

    def __init__(self, store: GraphStore, concurrency: int = DEFAULT_INDEX_CONCURRENCY) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        self._store = store
        self._concurrency = concurrency

    @property
    def store(self) -> GraphStore:
        return self._store

    async def index_file(self, file_path: str, content: str | None = None) -> IndexFileResult:
        return await anyio.to_thread.run_sync(self._store.index_file, file_path, content)

    async def index_directory(self, root_dir: str) -> IndexDirectoryResult:
        """不同文件并发索引；同一文件的串行化由 GraphStore 的文件锁保证。"""
        files = await anyio.to_thread.run_sync(self._store.list_source_files, root_dir)
        limiter = anyio.CapacityLimiter(self._concurrency)
        result = IndexDirectoryResult()

        async def index_one(path: str) -> None:
            result.record(await anyio.to_thread.run_sync(self._store.try_index_file, path, limiter=limiter))

        async with anyio.create_task_group() as tg:
            for path in files:
                tg.start_soon(index_one, path)

        logger.info(
            f"Graph index of {root_dir}: indexed={result.filesIndexed} "
            f"unchanged={result.filesUnchanged} skipped={result.filesSkipped}"
        )
        return result

    async def get_dependents(self, file_path: str, depth: int) -> list[DependencyResult]:
        return await anyio.to_thread.run_sync(
            partial(self._store.get_dependents, file_path, depth), abandon_on_cancel=True
        )

    async def get_dependencies(self, file_path: str, depth: int) -> list[DependencyResult]:
        return await anyio.to_thread.run_sync(
            partial(self._store.get_dependencies, file_path, depth), abandon_on_cancel=True
        )

    async def get_nodes_for_file(self, file_path: str) -> list[Node]:
        return await anyio.to_thread.run_sync(self._store.get_nodes_for_file, file_path, abandon_on_cancel=True)

    async def search_nodes(self, query: str, limit: int = 20) -> list[Node]:
        return await anyio.to_thread.run_sync(self._store.search_nodes, query, limit, abandon_on_cancel=True)

    async def get_stats(self) -> GraphStats:
        return await anyio.to_thread.run_sync(self._store.get_stats)

    async def clear(self) -> None:
        await anyio.to_thread.run_sync(self._store.clear)


class HttpGraphBackend:
    """远端 CKG 服务（`/api/v1`）的客户端。"""

    def __init__(self, base_url: str, http_client: httpx.AsyncClient) -> None:
        self._client = ServiceClient(base_url=base_url, http_client=http_client, service_name="ckg-service")

    async def index_file(self, file_path: str, content: str | None = None) -> IndexFileResult:
        payload: dict[str, str] = {"path": file_path}
        if content is not None:
            payload["content"] = content
        data = await self._client.request("POST", "/index/file", payload=payload)
        return self._client.parse(IndexFileResult, data)

    async def index_directory(self, root_dir: str) -> IndexDirectoryResult:
        data = await self._client.request("POST", "/index", payload={"path": root_dir})
        return self._client.parse(IndexDirectoryResult, data)

    async def get_dependents(self, file_path: str, depth: int) -> list[DependencyResult]:
        return await self._dependency_query("/dependents", file_path=file_path, depth=depth)

    async def get_dependencies(self, file_path: str, depth: int) -> list[DependencyResult]:
        return await self._dependency_query("/dependencies", file_path=file_path, depth=depth)

    async def get_nodes_for_file(self, file_path: str) -> list[Node]:
        try:
            data = await self._client.request("GET", "/nodes", params={"filePath": file_path})
        except NotFoundError:
            return []
        return self._client.parse_list(Node, data)

    async def search_nodes(self, query: str, limit: int = 20) -> list[Node]:
        if limit <= 0:
            raise ValueError("limit must be > 0")
        data = await self._client.request("GET", "/search", params={"q": query, "limit": limit})
        return self._client.parse_list(Node, data)

    async def get_stats(self) -> GraphStats:
        data = await self._client.request("GET", "/stats")
        return self._client.parse(GraphStats, data)

    async def clear(self) -> None:
        await self._client.request("DELETE", "/clear")

    async def _dependency_query(self, path: str, file_path: str, depth: int) -> list[DependencyResult]:
        if depth < 1:
            raise ValueError("depth must be >= 1")
        try:
            data = await self._client.request("GET", path, params={"filePath": file_path, "depth": depth})
        except NotFoundError:
            # 未知文件：依赖查询返回空而不是报错
            return []
        return self._client.parse_list(DependencyResult, data)
