"""
Embedding Provider（文本 -> 固定维度向量）。

约定（所有实现一致）：
- 相同文本 => 相同向量
- 输出长度恒等于 `dimensions()`
- 向量做 L2 归一化（全零输入除外）

实现：
- `MockEmbeddingProvider`：确定性哈希 + 线性同余生成器，本地开发/测试用
- `OpenAICompatEmbeddingProvider`：OpenAI-compatible `/v1/embeddings`（可经 LiteLLM Proxy）
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

import httpx
import numpy as np
from openai import AsyncOpenAI, OpenAIError

from gvr.config import EmbeddingConfig
from gvr.infra.errors import BackendError
from gvr.infra.errors import DimensionMismatchError

logger = logging.getLogger(__name__)

_INT32_MASK = 0xFFFFFFFF
_LCG_MULTIPLIER = 48271


class EmbeddingProvider(Protocol):
    """Embedding 能力接口：mock 与真实模型可互换。"""

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]: ...

    def dimensions(self) -> int: ...


def _to_int32(value: int) -> int:
    value &= _INT32_MASK
    return value - (1 << 32) if value & 0x80000000 else value


def _text_seed(text: str) -> int:
    """对归一化文本做 32 位滚动哈希（hash * 31 + ch）。"""
    seed = 0
    for ch in text.lower().strip():
        seed = _to_int32((seed << 5) - seed + ord(ch))
    return seed


def _l2_normalize(values: Sequence[float]) -> list[float]:
    vector = np.asarray(values, dtype=np.float64)
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return [0.0] * len(vector)
    return (vector / norm).tolist()


class MockEmbeddingProvider:
    """确定性 mock：同一段文本永远得到同一个单位向量。"""

    def __init__(self, dimensions: int = 384) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be > 0")
        self._dimensions = dimensions

    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> list[float]:
        return self.embed_sync(text)

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        return [self.embed_sync(text) for text in texts]

    def embed_sync(self, text: str) -> list[float]:
        state = _text_seed(text)
        values: list[float] = []
        for _ in range(self._dimensions):
            state = _to_int32(_LCG_MULTIPLIER * state)
            values.append(((state & 0x7FFFFFFF) / 2147483648) * 2 - 1)
        return _l2_normalize(values)


class OpenAICompatEmbeddingProvider:
    """通过 OpenAI-compatible API 生成 embedding。出错直接抛异常，由上游决定降级。"""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        http_client: httpx.AsyncClient,
        model: str,
        dimensions: int,
    ) -> None:
        self._model = model
        self._dimensions = dimensions
        self._client = AsyncOpenAI(api_key=api_key, base_url=_normalize_base_url(base_url), http_client=http_client)

    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            logger.info(f"Embedding request: model={self._model}, texts={len(texts)}")
            response = await self._client.embeddings.create(
                model=self._model,
                input=list(texts),
                encoding_format="float",
            )
        except OpenAIError as exc:
            logger.error(f"Embedding API error: {exc}")
            raise
        except httpx.HTTPError as exc:
            logger.error(f"Embedding HTTP error: {exc}")
            raise

        ordered = sorted(response.data, key=lambda item: item.index)
        vectors: list[list[float]] = []
        for item in ordered:
            if len(item.embedding) != self._dimensions:
                raise DimensionMismatchError(expected=self._dimensions, actual=len(item.embedding))
            vectors.append(_l2_normalize(item.embedding))
        if len(vectors) != len(texts):
            raise BackendError(f"Embedding API returned {len(vectors)} vectors for {len(texts)} texts")
        return vectors


def _normalize_base_url(base_url: str) -> str:
    normalized = base_url.rstrip("/")
    if normalized.endswith("/v1"):
        return normalized
    return f"{normalized}/v1"


def create_embedding_provider(config: EmbeddingConfig, http_client: httpx.AsyncClient | None = None) -> EmbeddingProvider:
    """按配置创建 provider；openai 模式需要复用外部传入的 httpx.AsyncClient。"""
    if config.provider == "mock":
        return MockEmbeddingProvider(dimensions=config.dimensions)
    if http_client is None:
        raise ValueError("http_client is required for the openai embedding provider")
    if config.base_url is None or not config.api_key or not config.model:
        raise ValueError("openai embedding provider requires base_url, api_key and model")
    return OpenAICompatEmbeddingProvider(
        api_key=config.api_key,
        base_url=str(config.base_url),
        http_client=http_client,
        model=config.model,
        dimensions=config.dimensions,
    )
