"""
应用配置加载。

设计目标：
- **严格**：可选能力（例如 OpenAI embedding）一旦开启，相关环境变量必须成套出现
- **类型安全**：使用 Pydantic 校验 URL/权重/分块参数，减少运行时踩坑
- **可测试**：核心加载函数接收 `environ` 显式输入，便于单元测试
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Literal

from pydantic import BaseModel, Field, HttpUrl, model_validator

DEFAULT_EXTENSIONS: tuple[str, ...] = (".ts", ".tsx", ".js", ".jsx", ".py")


class ScoringWeights(BaseModel):
    """GVR 混合打分权重（互相独立，不要求和为 1）。"""

    semantic: float = Field(default=0.6, ge=0.0)
    graph: float = Field(default=0.3, ge=0.0)
    focus: float = Field(default=0.1, ge=0.0)


class ChunkingPolicy(BaseModel):
    """分块策略，单位都是估算 token（约 4 字符 / token）。"""

    max_chunk_size: int = Field(default=512, gt=0)
    chunk_overlap: int = Field(default=64, ge=0)
    min_chunk_size: int = Field(default=50, ge=0)

    @model_validator(mode="after")
    def _check_overlap(self) -> ChunkingPolicy:
        if self.chunk_overlap >= self.max_chunk_size:
            raise ValueError("chunk_overlap must be < max_chunk_size")
        return self


class EmbeddingConfig(BaseModel):
    provider: Literal["mock", "openai"] = "mock"
    dimensions: int = Field(default=384, gt=0)
    base_url: HttpUrl | None = None
    api_key: str | None = None
    model: str | None = None


class AppConfig(BaseModel):
    """GVR 运行所需配置。远端服务 URL 为空时使用进程内 store。"""

    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    chunking: ChunkingPolicy = Field(default_factory=ChunkingPolicy)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    ckg_service_url: HttpUrl | None = None
    vector_service_url: HttpUrl | None = None
    query_timeout_seconds: float = Field(default=5.0, gt=0.0)
    backend_http_timeout_seconds: float = Field(default=30.0, gt=0.0)
    supported_extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    max_file_bytes: int = Field(default=1024 * 1024, gt=0)


def load_config_from_env(environ: Mapping[str, str]) -> AppConfig:
    """
    从环境变量加载并校验配置。

    - **输入**：`environ`（例如 `os.environ`）
    - **输出**：`AppConfig`
    - **失败**：openai embedding 配置不完整、数值非法时抛 `ValueError`
    """

    weights = ScoringWeights(
        semantic=_float(environ, "GVR_SEMANTIC_WEIGHT", 0.6),
        graph=_float(environ, "GVR_GRAPH_WEIGHT", 0.3),
        focus=_float(environ, "GVR_FOCUS_WEIGHT", 0.1),
    )
    chunking = ChunkingPolicy(
        max_chunk_size=_int(environ, "CHUNK_MAX_SIZE", 512),
        chunk_overlap=_int(environ, "CHUNK_OVERLAP", 64),
        min_chunk_size=_int(environ, "CHUNK_MIN_SIZE", 50),
    )
    embedding = _load_embedding_config(environ=environ)

    return AppConfig(
        weights=weights,
        chunking=chunking,
        embedding=embedding,
        ckg_service_url=_optional(environ, "CKG_SERVICE_URL"),
        vector_service_url=_optional(environ, "VECTOR_SERVICE_URL"),
        query_timeout_seconds=_float(environ, "GVR_QUERY_TIMEOUT_SECONDS", 5.0),
        backend_http_timeout_seconds=_float(environ, "BACKEND_HTTP_TIMEOUT_SECONDS", 30.0),
        supported_extensions=_extensions(environ),
        max_file_bytes=_int(environ, "MAX_FILE_SIZE_KB", 1024) * 1024,
    )


def _load_embedding_config(environ: Mapping[str, str]) -> EmbeddingConfig:
    provider = environ.get("EMBEDDING_TYPE") or "mock"
    dimensions = _int(environ, "EMBEDDING_DIMENSIONS", 384)
    if provider == "mock":
        return EmbeddingConfig(provider="mock", dimensions=dimensions)
    if provider != "openai":
        raise ValueError(f"Unsupported EMBEDDING_TYPE: {provider}")

    # openai 模式：三个变量必须同时提供
    required_keys: tuple[str, ...] = ("EMBEDDING_BASE_URL", "EMBEDDING_API_KEY", "EMBEDDING_MODEL")
    missing: list[str] = [key for key in required_keys if not environ.get(key)]
    if missing:
        raise ValueError(f"Missing required env vars: {', '.join(missing)}")
    return EmbeddingConfig(
        provider="openai",
        dimensions=dimensions,
        base_url=environ["EMBEDDING_BASE_URL"],
        api_key=environ["EMBEDDING_API_KEY"],
        model=environ["EMBEDDING_MODEL"],
    )


def _optional(environ: Mapping[str, str], key: str) -> str | None:
    value = environ.get(key)
    return value if value else None


def _float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be a number, got {raw!r}") from exc


def _int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc


def _extensions(environ: Mapping[str, str]) -> tuple[str, ...]:
    raw = environ.get("SUPPORTED_EXTENSIONS")
    if not raw:
        return DEFAULT_EXTENSIONS
    items = [item.strip().lower() for item in raw.split(",") if item.strip()]
    if not items:
        raise ValueError("SUPPORTED_EXTENSIONS must list at least one extension")
    return tuple(item if item.startswith(".") else f".{item}" for item in items)
