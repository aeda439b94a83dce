"""
GVR 查询契约（Pydantic）。

用途：
- 校验查询参数（topK / graphDepth 越界在执行前被拒绝，抛 `ValidationError`）
- 定义返回给编辑 agent 的结构化结果，字段名即 JSON 字段名
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from gvr.graph.models import DependencyResult
from gvr.graph.models import IndexDirectoryResult
from gvr.graph.models import NodeType

MAX_CONNECTED_FILES = 5


class GVRQuery(BaseModel):
    query: str = Field(min_length=1)
    focusedFiles: list[str] = Field(default_factory=list)
    topK: int = Field(default=10, ge=1, le=50)
    graphDepth: int = Field(default=2, ge=1, le=5)
    includeGraphContext: bool = True

    @field_validator("query")
    @classmethod
    def _check_query(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must be non-empty")
        return value


class ScoreBreakdown(BaseModel):
    semantic: float
    graphRelevance: float
    focusBoost: float


class GVRResult(BaseModel):
    id: str
    content: str
    filePath: str
    startLine: int
    endLine: int
    score: float
    scoreBreakdown: ScoreBreakdown
    connectedFiles: list[str] = Field(default_factory=list, max_length=MAX_CONNECTED_FILES)
    nodeType: NodeType | None = None


class GraphContext(BaseModel):
    """focused files 的依赖闭包：impactedFiles = focused files ∪ 它们的 dependents。"""

    impactedFiles: list[str] = Field(default_factory=list)
    dependencyChain: list[DependencyResult] = Field(default_factory=list)
    modifiedSymbols: list[str] = Field(default_factory=list)


class QueryMetadata(BaseModel):
    queryTime: float
    vectorHits: int
    graphNodesVisited: int
    # 本次查询被降级（超时/不可达）的信号，例如 ["graph"]
    degraded: list[str] = Field(default_factory=list)


class GVRResponse(BaseModel):
    results: list[GVRResult] = Field(default_factory=list)
    graphContext: GraphContext | None = None
    metadata: QueryMetadata


class IndexProjectResult(BaseModel):
    success: bool
    ckgResult: IndexDirectoryResult | None = None
    error: str | None = None
