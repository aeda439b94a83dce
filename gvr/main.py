"""
GVR 组装入口。

这里做三件事：
- 加载配置（严格校验环境变量）
- 组装 backend：配置了服务 URL 就走 HTTP，否则在进程内构建 store
- 返回 `GVREngine`，store 只构建一次并显式传入（不使用全局单例）

注意：
- 查询/打分流程不写在这里（由 `retrieval/engine.py` 负责）
- `httpx.AsyncClient` 会被复用（所有远端 backend 与 embedding 调用共用一个）
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

import httpx

from gvr.backends.graph import GraphBackend
from gvr.backends.graph import HttpGraphBackend
from gvr.backends.graph import LocalGraphBackend
from gvr.backends.vector import HttpVectorBackend
from gvr.backends.vector import VectorBackend
from gvr.config import AppConfig
from gvr.config import load_config_from_env
from gvr.embedding.provider import create_embedding_provider
from gvr.graph.store import GraphStore
from gvr.indexing.chunker import Chunker
from gvr.indexing.indexer import SemanticIndex
from gvr.retrieval.engine import GVREngine
from gvr.retrieval.engine import build_engine
from gvr.storage.vector_store import create_vector_store

logger = logging.getLogger(__name__)


def build_http_client(config: AppConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(config.backend_http_timeout_seconds))


def build_graph_backend(config: AppConfig, http_client: httpx.AsyncClient | None) -> GraphBackend:
    if config.ckg_service_url is not None:
        if http_client is None:
            raise ValueError("http_client is required when CKG_SERVICE_URL is set")
        logger.info(f"Using remote graph backend: {config.ckg_service_url}")
        return HttpGraphBackend(base_url=str(config.ckg_service_url), http_client=http_client)
    store = GraphStore(supported_extensions=config.supported_extensions, max_file_bytes=config.max_file_bytes)
    return LocalGraphBackend(store=store)


def build_vector_backend(config: AppConfig, http_client: httpx.AsyncClient | None) -> VectorBackend:
    if config.vector_service_url is not None:
        if http_client is None:
            raise ValueError("http_client is required when VECTOR_SERVICE_URL is set")
        logger.info(f"Using remote vector backend: {config.vector_service_url}")
        return HttpVectorBackend(base_url=str(config.vector_service_url), http_client=http_client)
    embedder = create_embedding_provider(config=config.embedding, http_client=http_client)
    store = create_vector_store("memory", dimension=embedder.dimensions())
    return SemanticIndex(store=store, embedder=embedder, chunker=Chunker(config.chunking))


def build_gvr_engine(config: AppConfig, http_client: httpx.AsyncClient | None = None) -> GVREngine:
    """按配置创建 engine（便于测试/复用）。"""
    return build_engine(
        graph=build_graph_backend(config=config, http_client=http_client),
        vectors=build_vector_backend(config=config, http_client=http_client),
        weights=config.weights,
        timeout_seconds=config.query_timeout_seconds,
    )


def build_gvr_engine_from_env(
    environ: Mapping[str, str] | None = None,
) -> tuple[GVREngine, httpx.AsyncClient]:
    """
    从环境变量组装 engine。

    返回的 `httpx.AsyncClient` 由调用方负责关闭（`await client.aclose()`）。
    """
    config = load_config_from_env(os.environ if environ is None else environ)
    http_client = build_http_client(config)
    return build_gvr_engine(config=config, http_client=http_client), http_client
