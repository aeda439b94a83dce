from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

import httpx

from gvr.backends.http import ServiceClient
from gvr.graph.models import MetadataValue
from gvr.infra.errors import NotFoundError
from gvr.storage.models import SearchHit
from gvr.storage.models import VectorIndexResult
from gvr.storage.models import VectorStats


class VectorBackend(Protocol):
    """语义检索能力。进程内实现是 `gvr.indexing.indexer.SemanticIndex`。"""

    async def index_file(self, file_path: str, content: str) -> VectorIndexResult: ...

    async def search(
        self,
        query: str,
        top_k: int,
        filters: Mapping[str, MetadataValue] | None = None,
    ) -> list[SearchHit]: ...

    async def delete_file(self, file_path: str) -> int: ...


class HttpVectorBackend:
    """远端 vector 服务（`/api/v1`）的客户端。"""

    def __init__(self, base_url: str, http_client: httpx.AsyncClient) -> None:
        self._client = ServiceClient(base_url=base_url, http_client=http_client, service_name="vector-service")

    async def index_file(self, file_path: str, content: str) -> VectorIndexResult:
        data = await self._client.request("POST", "/index", payload={"filePath": file_path, "content": content})
        return self._client.parse(VectorIndexResult, data or {})

    async def search(
        self,
        query: str,
        top_k: int,
        filters: Mapping[str, MetadataValue] | None = None,
    ) -> list[SearchHit]:
        if top_k <= 0:
            raise ValueError("top_k must be > 0")
        payload: dict[str, Any] = {"query": query, "topK": top_k}
        if filters:
            payload["filters"] = dict(filters)
        data = await self._client.request("POST", "/search", payload=payload)
        return self._client.parse_list(SearchHit, data)

    async def delete_file(self, file_path: str) -> int:
        """远端只返回 `{deleted: true}`，不报告删除条数；成功时返回 1。"""
        try:
            data = await self._client.request("DELETE", "/file", params={"path": file_path})
        except NotFoundError:
            return 0
        if isinstance(data, dict) and isinstance(data.get("deleted"), int) and not isinstance(data["deleted"], bool):
            return data["deleted"]
        return 1

    async def stats(self) -> VectorStats:
        data = await self._client.request("GET", "/stats")
        return self._client.parse(VectorStats, data)
