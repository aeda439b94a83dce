from __future__ import annotations

import pytest

from gvr.config import ScoringWeights
from gvr.graph.models import DependencyResult
from gvr.graph.models import Node
from gvr.retrieval.models import GraphContext
from gvr.retrieval.scoring import build_graph_context
from gvr.retrieval.scoring import connected_files
from gvr.retrieval.scoring import rank
from gvr.retrieval.scoring import resolve_node_type
from gvr.retrieval.scoring import score_hits
from gvr.storage.models import SearchHit
from gvr.storage.models import VectorDocument


def _hit(hit_id: str, file_path: str, score: float, start: int = 1, end: int = 10) -> SearchHit:
    document = VectorDocument(
        id=hit_id,
        chunkId=f"chunk-{hit_id}",
        embedding=[1.0],
        content=f"content of {hit_id}",
        filePath=file_path,
        startLine=start,
        endLine=end,
    )
    return SearchHit(id=hit_id, score=score, document=document)


def _node(name: str, node_type: str, file_path: str, start: int, end: int) -> Node:
    return Node(
        id=f"{node_type}-{name}",
        type=node_type,
        name=name,
        filePath=file_path,
        startLine=start,
        endLine=end,
        language="typescript",
    )


def test_build_graph_context_unions_dependents_and_focused_files() -> None:
    context = build_graph_context(
        focused_files=["a.ts"],
        dependents_by_file={"a.ts": [DependencyResult(file="c.ts", depth=1), DependencyResult(file="d.ts", depth=2)]},
        nodes_by_file={
            "a.ts": [
                _node("a.ts", "file", "a.ts", 1, 20),
                _node("run", "function", "a.ts", 1, 5),
                _node("Job", "class", "a.ts", 6, 15),
                _node("Job.start", "method", "a.ts", 7, 9),
                _node("Options", "interface", "a.ts", 16, 20),
            ]
        },
    )
    assert context.impactedFiles == ["c.ts", "d.ts", "a.ts"]
    assert [d.file for d in context.dependencyChain] == ["c.ts", "d.ts"]
    assert context.modifiedSymbols == ["run", "Job", "Job.start"]


def test_score_hits_combines_weighted_signals() -> None:
    weights = ScoringWeights(semantic=0.6, graph=0.3, focus=0.1)
    context = GraphContext(impactedFiles=["a.ts", "c.ts"])
    results = score_hits(
        hits=[_hit("x", "other.ts", 0.9), _hit("y", "c.ts", 0.5), _hit("z", "a.ts", 0.5)],
        weights=weights,
        focused_files=["a.ts"],
        graph_context=context,
    )
    by_id = {r.id: r for r in results}
    assert by_id["x"].score == pytest.approx(0.54)
    assert by_id["y"].score == pytest.approx(0.6)
    assert by_id["z"].score == pytest.approx(0.7)
    assert by_id["z"].scoreBreakdown.focusBoost == 1.0
    assert by_id["y"].scoreBreakdown.graphRelevance == 1.0
    assert by_id["y"].scoreBreakdown.focusBoost == 0.0
    assert [r.id for r in results] == ["z", "y", "x"]


def test_impacted_hit_never_scores_below_equal_semantic_hit() -> None:
    weights = ScoringWeights(semantic=0.6, graph=0.3, focus=0.0)
    results = score_hits(
        hits=[_hit("outside", "x.ts", 0.4), _hit("inside", "y.ts", 0.4)],
        weights=weights,
        focused_files=[],
        graph_context=GraphContext(impactedFiles=["y.ts"]),
    )
    by_id = {r.id: r for r in results}
    assert by_id["inside"].score >= by_id["outside"].score
    assert results[0].id == "inside"


def test_score_hits_without_graph_context_keeps_focus_boost() -> None:
    results = score_hits(
        hits=[_hit("a", "a.ts", 0.5)],
        weights=ScoringWeights(),
        focused_files=["a.ts"],
        graph_context=None,
    )
    assert results[0].scoreBreakdown.graphRelevance == 0.0
    assert results[0].scoreBreakdown.focusBoost == 1.0
    assert results[0].connectedFiles == []


def test_rank_truncates_and_keeps_order_for_ties() -> None:
    results = score_hits(
        hits=[_hit("first", "a.ts", 0.5), _hit("second", "b.ts", 0.5), _hit("third", "c.ts", 0.1)],
        weights=ScoringWeights(),
        focused_files=[],
        graph_context=None,
    )
    assert [r.id for r in rank(results, top_k=2)] == ["first", "second"]
    with pytest.raises(ValueError):
        rank(results, top_k=0)


def test_connected_files_nearest_first_without_self() -> None:
    chain = [DependencyResult(file=f"f{i}.ts", depth=3) for i in range(4)]
    chain += [DependencyResult(file="near.ts", depth=1), DependencyResult(file="self.ts", depth=1)]
    picked = connected_files(file_path="self.ts", chain=chain)
    assert picked[0] == "near.ts"
    assert "self.ts" not in picked
    assert len(picked) == 5


def test_resolve_node_type_prefers_smallest_enclosing_symbol() -> None:
    nodes = [
        _node("a.ts", "file", "a.ts", 1, 100),
        _node("Service", "class", "a.ts", 1, 50),
        _node("Service.run", "method", "a.ts", 10, 20),
        _node("helper", "function", "b.ts", 10, 20),
    ]
    assert resolve_node_type("a.ts", 12, 18, nodes) == "method"
    assert resolve_node_type("a.ts", 5, 30, nodes) == "class"
    assert resolve_node_type("a.ts", 45, 70, nodes) == "class"
    assert resolve_node_type("a.ts", 60, 70, nodes) is None
    assert resolve_node_type("c.ts", 1, 5, nodes) is None
