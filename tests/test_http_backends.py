from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from gvr.backends.graph import HttpGraphBackend
from gvr.backends.vector import HttpVectorBackend
from gvr.infra.errors import BackendError
from gvr.infra.errors import BackendUnavailableError
from gvr.infra.errors import DimensionMismatchError

Handler = Callable[[httpx.Request], httpx.Response]


def _client(handler: Handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _ok(data: object) -> httpx.Response:
    return httpx.Response(200, json={"success": True, "data": data})


def _fail(status: int, code: str, message: str) -> httpx.Response:
    return httpx.Response(status, json={"success": False, "error": {"code": code, "message": message}})


@pytest.mark.anyio
async def test_graph_dependents_request_and_parse() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _ok([{"file": "src/a.ts", "depth": 1, "relationship": "depends_on"}])

    async with _client(handler) as http_client:
        backend = HttpGraphBackend(base_url="http://ckg:3001/", http_client=http_client)
        dependents = await backend.get_dependents("src/b.ts", 2)

    assert [(d.file, d.depth) for d in dependents] == [("src/a.ts", 1)]
    assert seen[0].method == "GET"
    assert seen[0].url.path == "/api/v1/dependents"
    assert seen[0].url.params["filePath"] == "src/b.ts"
    assert seen[0].url.params["depth"] == "2"


@pytest.mark.anyio
async def test_graph_not_found_is_empty_result() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _fail(404, "NOT_FOUND", "unknown file")

    async with _client(handler) as http_client:
        backend = HttpGraphBackend(base_url="http://ckg:3001", http_client=http_client)
        assert await backend.get_dependents("missing.ts", 2) == []
        assert await backend.get_dependencies("missing.ts", 2) == []
        assert await backend.get_nodes_for_file("missing.ts") == []


@pytest.mark.anyio
async def test_graph_server_error_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="down")

    async with _client(handler) as http_client:
        backend = HttpGraphBackend(base_url="http://ckg:3001", http_client=http_client)
        with pytest.raises(BackendUnavailableError):
            await backend.get_dependents("src/b.ts", 2)


@pytest.mark.anyio
async def test_graph_transport_error_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as http_client:
        backend = HttpGraphBackend(base_url="http://ckg:3001", http_client=http_client)
        with pytest.raises(BackendUnavailableError):
            await backend.get_nodes_for_file("src/b.ts")


@pytest.mark.anyio
async def test_graph_rejected_request_is_backend_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _fail(400, "VALIDATION_ERROR", "path is required")

    async with _client(handler) as http_client:
        backend = HttpGraphBackend(base_url="http://ckg:3001", http_client=http_client)
        with pytest.raises(BackendError) as exc_info:
            await backend.index_directory("")
    assert not isinstance(exc_info.value, BackendUnavailableError)


@pytest.mark.anyio
async def test_graph_success_false_is_backend_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "error": {"code": "INDEX_ERROR", "message": "boom"}})

    async with _client(handler) as http_client:
        backend = HttpGraphBackend(base_url="http://ckg:3001", http_client=http_client)
        with pytest.raises(BackendError):
            await backend.index_file("src/a.ts")


@pytest.mark.anyio
async def test_graph_index_and_search_payloads() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("/index"):
            return _ok({"filesIndexed": 3, "nodesCreated": 10, "edgesCreated": 7})
        return _ok(
            [
                {
                    "id": "function_1",
                    "type": "function",
                    "name": "getUser",
                    "filePath": "src/users.ts",
                    "startLine": 1,
                    "endLine": 3,
                    "language": "typescript",
                }
            ]
        )

    async with _client(handler) as http_client:
        backend = HttpGraphBackend(base_url="http://ckg:3001", http_client=http_client)
        result = await backend.index_directory("/repo")
        nodes = await backend.search_nodes("user", limit=5)

    assert result.filesIndexed == 3
    assert result.edgesCreated == 7
    assert json.loads(seen[0].content) == {"path": "/repo"}
    assert nodes[0].name == "getUser"
    assert seen[1].url.params["q"] == "user"
    assert seen[1].url.params["limit"] == "5"


@pytest.mark.anyio
async def test_vector_search_payload_and_parse() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        document = {
            "id": "doc-1",
            "chunkId": "chunk-1",
            "embedding": [0.1, 0.2],
            "content": "export const a = 1;",
            "filePath": "src/a.ts",
            "startLine": 1,
            "endLine": 1,
        }
        return _ok([{"id": "doc-1", "score": 0.87, "document": document}])

    async with _client(handler) as http_client:
        backend = HttpVectorBackend(base_url="http://vector:3002", http_client=http_client)
        hits = await backend.search("constant a", 6, filters={"filePath": "src/a.ts"})

    assert seen[0].url.path == "/api/v1/search"
    assert json.loads(seen[0].content) == {"query": "constant a", "topK": 6, "filters": {"filePath": "src/a.ts"}}
    assert hits[0].score == pytest.approx(0.87)
    assert hits[0].document.filePath == "src/a.ts"


@pytest.mark.anyio
async def test_vector_dimension_mismatch_code_is_mapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _fail(400, "DIMENSION_MISMATCH", "Vector dimension mismatch: expected 384, got 1536")

    async with _client(handler) as http_client:
        backend = HttpVectorBackend(base_url="http://vector:3002", http_client=http_client)
        with pytest.raises(DimensionMismatchError) as exc_info:
            await backend.search("q", 5)
    assert exc_info.value.expected == 384
    assert exc_info.value.actual == 1536


@pytest.mark.anyio
async def test_vector_index_and_delete() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "DELETE":
            return _ok({"deleted": True})
        return _ok({"chunksCreated": 4})

    async with _client(handler) as http_client:
        backend = HttpVectorBackend(base_url="http://vector:3002", http_client=http_client)
        result = await backend.index_file("src/a.ts", "export const a = 1;")
        deleted = await backend.delete_file("src/a.ts")

    assert result.chunksCreated == 4
    assert json.loads(seen[0].content) == {"filePath": "src/a.ts", "content": "export const a = 1;"}
    assert deleted == 1
    assert seen[1].url.path == "/api/v1/file"
    assert seen[1].url.params["path"] == "src/a.ts"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "data",
    [
        [{"depth": "deep"}],
        {"file": "src/a.ts", "depth": 1},
        "src/a.ts",
    ],
)
async def test_graph_malformed_payload_is_backend_error(data: object) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _ok(data)

    async with _client(handler) as http_client:
        backend = HttpGraphBackend(base_url="http://ckg:3001", http_client=http_client)
        with pytest.raises(BackendError):
            await backend.get_dependents("src/b.ts", 2)
        with pytest.raises(BackendError):
            await backend.get_nodes_for_file("src/b.ts")


@pytest.mark.anyio
async def test_vector_malformed_payload_is_backend_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/stats"):
            return _ok({"totalDocuments": "many"})
        return _ok([{"id": "x", "score": "high"}])

    async with _client(handler) as http_client:
        backend = HttpVectorBackend(base_url="http://vector:3002", http_client=http_client)
        with pytest.raises(BackendError):
            await backend.search("helper", top_k=5)
        with pytest.raises(BackendError):
            await backend.stats()


@pytest.mark.anyio
async def test_empty_list_payload_is_empty_result() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _ok(None)

    async with _client(handler) as http_client:
        backend = HttpVectorBackend(base_url="http://vector:3002", http_client=http_client)
        assert await backend.search("helper", top_k=5) == []
