from __future__ import annotations

import json
import math

import httpx
import pytest

from gvr.config import EmbeddingConfig
from gvr.embedding.provider import MockEmbeddingProvider
from gvr.embedding.provider import OpenAICompatEmbeddingProvider
from gvr.embedding.provider import create_embedding_provider
from gvr.infra.errors import DimensionMismatchError


def _norm(vector: list[float]) -> float:
    return math.sqrt(sum(v * v for v in vector))


@pytest.mark.anyio
async def test_mock_embedding_contract() -> None:
    provider = MockEmbeddingProvider(dimensions=384)
    vector = await provider.embed("function add(a, b) { return a + b; }")
    assert len(vector) == provider.dimensions() == 384
    assert _norm(vector) == pytest.approx(1.0)
    assert vector == await provider.embed("function add(a, b) { return a + b; }")


@pytest.mark.anyio
async def test_mock_embedding_normalizes_case_and_whitespace() -> None:
    provider = MockEmbeddingProvider(dimensions=16)
    assert await provider.embed("  Hello World ") == await provider.embed("hello world")
    assert await provider.embed("hello world") != await provider.embed("goodbye world")


@pytest.mark.anyio
async def test_mock_embed_batch_matches_embed() -> None:
    provider = MockEmbeddingProvider(dimensions=32)
    texts = ["alpha", "beta", "gamma"]
    batch = await provider.embed_batch(texts)
    assert batch == [await provider.embed(t) for t in texts]


def test_mock_embedding_rejects_non_positive_dimensions() -> None:
    with pytest.raises(ValueError):
        MockEmbeddingProvider(dimensions=0)


def _embedding_transport(vectors: list[list[float]], seen: list[dict[str, object]]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/embeddings"
        seen.append(json.loads(request.content))
        payload = {
            "object": "list",
            "data": [{"object": "embedding", "index": i, "embedding": v} for i, v in enumerate(vectors)],
            "model": "m",
            "usage": {"prompt_tokens": 1, "total_tokens": 1},
        }
        return httpx.Response(200, json=payload)

    return httpx.MockTransport(handler)


@pytest.mark.anyio
async def test_openai_embedding_provider_normalizes_vectors() -> None:
    seen: list[dict[str, object]] = []
    async with httpx.AsyncClient(transport=_embedding_transport([[3.0, 4.0]], seen)) as http_client:
        provider = OpenAICompatEmbeddingProvider(
            api_key="k",
            base_url="https://llm.example.com",
            http_client=http_client,
            model="m",
            dimensions=2,
        )
        vector = await provider.embed("hello")
    assert vector == pytest.approx([0.6, 0.8])
    assert seen[0]["model"] == "m"
    assert seen[0]["input"] == ["hello"]


@pytest.mark.anyio
async def test_openai_embedding_provider_rejects_wrong_dimensions() -> None:
    async with httpx.AsyncClient(transport=_embedding_transport([[1.0, 0.0, 0.0]], [])) as http_client:
        provider = OpenAICompatEmbeddingProvider(
            api_key="k",
            base_url="https://llm.example.com/v1",
            http_client=http_client,
            model="m",
            dimensions=4,
        )
        with pytest.raises(DimensionMismatchError):
            await provider.embed("hello")


@pytest.mark.anyio
async def test_openai_embedding_provider_empty_batch_skips_request() -> None:
    seen: list[dict[str, object]] = []
    async with httpx.AsyncClient(transport=_embedding_transport([], seen)) as http_client:
        provider = OpenAICompatEmbeddingProvider(
            api_key="k",
            base_url="https://llm.example.com",
            http_client=http_client,
            model="m",
            dimensions=2,
        )
        assert await provider.embed_batch([]) == []
    assert seen == []


def test_create_embedding_provider_mock() -> None:
    provider = create_embedding_provider(EmbeddingConfig(provider="mock", dimensions=8))
    assert isinstance(provider, MockEmbeddingProvider)
    assert provider.dimensions() == 8


def test_create_embedding_provider_openai_requires_http_client() -> None:
    config = EmbeddingConfig(provider="openai", dimensions=8, base_url="https://llm.example.com", api_key="k", model="m")
    with pytest.raises(ValueError):
        create_embedding_provider(config)
