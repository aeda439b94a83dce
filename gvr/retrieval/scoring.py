"""
GVR 混合打分（纯函数，无 I/O）。

combined = w_semantic * semantic + w_graph * graphRelevance + w_focus * focusBoost

- semantic：向量检索的 cosine 分数
- graphRelevance：命中文件在 impactedFiles 中为 1.0，否则 0.0
- focusBoost：命中文件本身是 focused file 为 1.0，否则 0.0
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence

from gvr.config import ScoringWeights
from gvr.graph.models import DependencyResult
from gvr.graph.models import Node
from gvr.graph.models import NodeType
from gvr.retrieval.models import MAX_CONNECTED_FILES
from gvr.retrieval.models import GraphContext
from gvr.retrieval.models import GVRResult
from gvr.retrieval.models import ScoreBreakdown
from gvr.storage.models import SearchHit

SYMBOL_TYPES: frozenset[NodeType] = frozenset({"function", "class", "method"})
# nodeType 只从这些“有代码范围”的节点里选
_RANGED_TYPES: frozenset[NodeType] = frozenset({"function", "class", "method", "interface", "type", "enum", "variable"})


def build_graph_context(
    focused_files: Sequence[str],
    dependents_by_file: Mapping[str, Sequence[DependencyResult]],
    nodes_by_file: Mapping[str, Sequence[Node]],
) -> GraphContext:
    impacted: dict[str, None] = {}
    chain: list[DependencyResult] = []
    symbols: list[str] = []
    for file_path in focused_files:
        for dependent in dependents_by_file.get(file_path, ()):
            impacted.setdefault(dependent.file, None)
            chain.append(dependent)
        for node in nodes_by_file.get(file_path, ()):
            if node.type in SYMBOL_TYPES:
                symbols.append(node.name)
    for file_path in focused_files:
        impacted.setdefault(file_path, None)
    return GraphContext(impactedFiles=list(impacted), dependencyChain=chain, modifiedSymbols=symbols)


def score_hit(
    hit: SearchHit,
    impacted_files: set[str],
    focused_files: set[str],
) -> ScoreBreakdown:
    file_path = hit.document.filePath
    return ScoreBreakdown(
        semantic=hit.score,
        graphRelevance=1.0 if file_path in impacted_files else 0.0,
        focusBoost=1.0 if file_path in focused_files else 0.0,
    )


def combined_score(breakdown: ScoreBreakdown, weights: ScoringWeights) -> float:
    return (
        weights.semantic * breakdown.semantic
        + weights.graph * breakdown.graphRelevance
        + weights.focus * breakdown.focusBoost
    )


def score_hits(
    hits: Iterable[SearchHit],
    weights: ScoringWeights,
    focused_files: Sequence[str],
    graph_context: GraphContext | None,
    focused_nodes: Sequence[Node] = (),
) -> list[GVRResult]:
    """给每个向量命中打分并按 combined 分数降序排列（同分保持原顺序）。"""
    impacted = set(graph_context.impactedFiles) if graph_context is not None else set()
    focused = set(focused_files)
    chain = graph_context.dependencyChain if graph_context is not None else []

    results: list[GVRResult] = []
    for hit in hits:
        breakdown = score_hit(hit=hit, impacted_files=impacted, focused_files=focused)
        document = hit.document
        results.append(
            GVRResult(
                id=hit.id,
                content=document.content,
                filePath=document.filePath,
                startLine=document.startLine,
                endLine=document.endLine,
                score=combined_score(breakdown=breakdown, weights=weights),
                scoreBreakdown=breakdown,
                connectedFiles=connected_files(file_path=document.filePath, chain=chain),
                nodeType=resolve_node_type(
                    file_path=document.filePath,
                    start_line=document.startLine,
                    end_line=document.endLine,
                    nodes=focused_nodes,
                ),
            )
        )
    results.sort(key=lambda result: result.score, reverse=True)
    return results


def rank(results: Sequence[GVRResult], top_k: int) -> list[GVRResult]:
    if top_k <= 0:
        raise ValueError("top_k must be > 0")
    ordered = sorted(results, key=lambda result: result.score, reverse=True)
    return ordered[:top_k]


def connected_files(file_path: str, chain: Sequence[DependencyResult]) -> list[str]:
    """依赖链中最近的若干文件（按 depth 升序，去重，不含自身）。"""
    picked: dict[str, None] = {}
    for dependency in sorted(chain, key=lambda item: item.depth):
        if dependency.file == file_path:
            continue
        picked.setdefault(dependency.file, None)
        if len(picked) >= MAX_CONNECTED_FILES:
            break
    return list(picked)


def resolve_node_type(file_path: str, start_line: int, end_line: int, nodes: Sequence[Node]) -> NodeType | None:
    """
    命中片段对应的符号类型。

    优先选完整包住片段的最小符号；没有时选与片段重叠行数最多的符号。
    """
    enclosing: Node | None = None
    best_overlap: Node | None = None
    best_overlap_lines = 0
    for node in nodes:
        if node.filePath != file_path or node.type not in _RANGED_TYPES:
            continue
        span = node.endLine - node.startLine
        if node.startLine <= start_line and end_line <= node.endLine:
            if enclosing is None or span < enclosing.endLine - enclosing.startLine:
                enclosing = node
            continue
        overlap = min(end_line, node.endLine) - max(start_line, node.startLine) + 1
        if overlap > best_overlap_lines:
            best_overlap = node
            best_overlap_lines = overlap
    if enclosing is not None:
        return enclosing.type
    if best_overlap is not None:
        return best_overlap.type
    return None
