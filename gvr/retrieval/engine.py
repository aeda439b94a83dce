"""
GVR Engine（查询编排）。

一次查询的流程：
- Step 1: 并发拉取信号：向量检索（topK×2 过采样）+ focused files 的 dependents / nodes
- Step 2: 构建 graph context（impactedFiles / dependencyChain / modifiedSymbols）
- Step 3: 混合打分 + 排序 + 截断到 topK

失败语义：
- 单个信号超时或协作服务不可达 => 该信号降级（记在 metadata.degraded），查询继续
- graph 信号降级 => graphContext 为 null，所有命中 graphRelevance=0，focusBoost 照常
- 向量维度不一致 => 直接抛 `DimensionMismatchError`（不是降级）
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import anyio

from gvr.backends.graph import GraphBackend
from gvr.backends.vector import VectorBackend
from gvr.config import ScoringWeights
from gvr.graph.models import DependencyResult
from gvr.graph.models import Node
from gvr.infra.errors import BackendError
from gvr.infra.errors import DimensionMismatchError
from gvr.retrieval.models import GraphContext
from gvr.retrieval.models import GVRQuery
from gvr.retrieval.models import GVRResponse
from gvr.retrieval.models import IndexProjectResult
from gvr.retrieval.models import QueryMetadata
from gvr.retrieval.scoring import build_graph_context
from gvr.retrieval.scoring import rank
from gvr.retrieval.scoring import score_hits
from gvr.storage.models import SearchHit

logger = logging.getLogger(__name__)

OVERFETCH_FACTOR = 2
VECTOR_SIGNAL = "vector"
GRAPH_SIGNAL = "graph"


@dataclass(frozen=True)
class GVREngine:
    """GVR 运行时依赖集合：两个 backend + 打分权重 + 单信号超时。"""

    graph: GraphBackend
    vectors: VectorBackend
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    timeout_seconds: float = 5.0


def build_engine(
    graph: GraphBackend,
    vectors: VectorBackend,
    weights: ScoringWeights | None = None,
    timeout_seconds: float = 5.0,
) -> GVREngine:
    if timeout_seconds <= 0:
        raise ValueError("timeout_seconds must be > 0")
    return GVREngine(
        graph=graph,
        vectors=vectors,
        weights=weights or ScoringWeights(),
        timeout_seconds=timeout_seconds,
    )


@dataclass
class _Signals:
    hits: list[SearchHit] = field(default_factory=list)
    dependents: dict[str, list[DependencyResult]] = field(default_factory=dict)
    nodes: dict[str, list[Node]] = field(default_factory=dict)
    degraded: list[str] = field(default_factory=list)
    fatal: DimensionMismatchError | None = None

    def degrade(self, signal: str) -> None:
        if signal not in self.degraded:
            self.degraded.append(signal)


async def run_query(engine: GVREngine, request: GVRQuery) -> GVRResponse:
    """执行一次 GVR 查询。参数越界已由 `GVRQuery` 校验拒绝。"""
    started = anyio.current_time()
    focused_files = list(dict.fromkeys(request.focusedFiles))
    fetch_graph = request.includeGraphContext and bool(focused_files)
    signals = _Signals()

    async with anyio.create_task_group() as tg:
        tg.start_soon(_collect_vector_hits, engine, request, signals)
        if fetch_graph:
            tg.start_soon(_collect_graph_signals, engine, focused_files, request.graphDepth, signals)

    if signals.fatal is not None:
        raise signals.fatal

    graph_context: GraphContext | None = None
    if request.includeGraphContext and GRAPH_SIGNAL not in signals.degraded:
        graph_context = build_graph_context(
            focused_files=focused_files,
            dependents_by_file=signals.dependents,
            nodes_by_file=signals.nodes,
        )

    focused_nodes = [node for nodes in signals.nodes.values() for node in nodes]
    scored = score_hits(
        hits=signals.hits,
        weights=engine.weights,
        focused_files=focused_files,
        graph_context=graph_context,
        focused_nodes=focused_nodes,
    )
    results = rank(scored, top_k=request.topK)

    elapsed_ms = (anyio.current_time() - started) * 1000
    logger.info(
        f"GVR query done: hits={len(signals.hits)} results={len(results)} "
        f"focused={len(focused_files)} degraded={signals.degraded} took={elapsed_ms:.1f}ms"
    )
    return GVRResponse(
        results=results,
        graphContext=graph_context,
        metadata=QueryMetadata(
            queryTime=elapsed_ms,
            vectorHits=len(signals.hits),
            graphNodesVisited=len(graph_context.impactedFiles) if graph_context is not None else 0,
            degraded=signals.degraded,
        ),
    )


async def index_project(engine: GVREngine, project_path: str) -> IndexProjectResult:
    """
    只建立 graph 索引。

    语义索引是另一条调用路径（按同一 filePath 建索引），两个 store 最终一致而非事务一致。
    """
    try:
        result = await engine.graph.index_directory(project_path)
    except BackendError as exc:
        logger.error(f"Index project failed for {project_path}: {exc}")
        return IndexProjectResult(success=False, ckgResult=None, error=str(exc))
    return IndexProjectResult(success=True, ckgResult=result)


async def _collect_vector_hits(engine: GVREngine, request: GVRQuery, signals: _Signals) -> None:
    with anyio.move_on_after(engine.timeout_seconds) as scope:
        try:
            signals.hits = await engine.vectors.search(request.query, request.topK * OVERFETCH_FACTOR)
        except DimensionMismatchError as exc:
            signals.fatal = exc
        except BackendError as exc:
            logger.warning(f"Vector signal degraded: {exc}")
            signals.degrade(VECTOR_SIGNAL)
    if scope.cancelled_caught:
        logger.warning(f"Vector signal timed out after {engine.timeout_seconds}s")
        signals.hits = []
        signals.degrade(VECTOR_SIGNAL)


async def _collect_graph_signals(engine: GVREngine, focused_files: list[str], depth: int, signals: _Signals) -> None:
    dependents: dict[str, list[DependencyResult]] = {}
    nodes: dict[str, list[Node]] = {}
    failures: list[BackendError] = []

    async def fetch_dependents(file_path: str) -> None:
        try:
            dependents[file_path] = await engine.graph.get_dependents(file_path, depth)
        except BackendError as exc:
            failures.append(exc)

    async def fetch_nodes(file_path: str) -> None:
        try:
            nodes[file_path] = await engine.graph.get_nodes_for_file(file_path)
        except BackendError as exc:
            failures.append(exc)

    with anyio.move_on_after(engine.timeout_seconds) as scope:
        async with anyio.create_task_group() as tg:
            for file_path in focused_files:
                tg.start_soon(fetch_dependents, file_path)
                tg.start_soon(fetch_nodes, file_path)

    if scope.cancelled_caught:
        logger.warning(f"Graph signal timed out after {engine.timeout_seconds}s")
        signals.degrade(GRAPH_SIGNAL)
        return
    if failures:
        logger.warning(f"Graph signal degraded: {failures[0]}")
        signals.degrade(GRAPH_SIGNAL)
        return
    signals.dependents = dependents
    signals.nodes = nodes
