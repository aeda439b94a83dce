"""
Code Knowledge Graph 数据模型（Pydantic）。

字段名与 graph backend 的 JSON 契约保持一致（camelCase），
本地 store 与 HTTP backend 共用同一套模型。
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

NodeType = Literal[
    "file",
    "class",
    "function",
    "method",
    "interface",
    "type",
    "variable",
    "import",
    "export",
    "enum",
]

EdgeType = Literal[
    "imports",
    "exports",
    "extends",
    "implements",
    "calls",
    "references",
    "contains",
    "depends_on",
]

Language = Literal["typescript", "javascript", "python"]

# metadata 只允许少量标量类型，不接受任意嵌套结构
MetadataValue = str | int | float | bool


class Node(BaseModel):
    """图中的一个语义节点。`id` 由 (filePath, type, name) 确定性生成。"""

    model_config = ConfigDict(frozen=True)

    id: str
    type: NodeType
    name: str
    filePath: str
    startLine: int
    endLine: int
    signature: str | None = None
    docstring: str | None = None
    language: Language
    metadata: dict[str, MetadataValue] | None = None


class Edge(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: EdgeType
    sourceId: str
    targetId: str
    metadata: dict[str, MetadataValue] | None = None


class ImportInfo(BaseModel):
    source: str
    specifiers: list[str] = Field(default_factory=list)
    isDefault: bool = False
    isNamespace: bool = False
    line: int


class ExportInfo(BaseModel):
    name: str
    isDefault: bool = False
    line: int


class FileAnalysis(BaseModel):
    """SourceAnalyzer 对单个文件的解析结果。"""

    filePath: str
    language: Language
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    imports: list[ImportInfo] = Field(default_factory=list)
    exports: list[ExportInfo] = Field(default_factory=list)
    checksum: str


class DependencyResult(BaseModel):
    file: str
    depth: int
    relationship: EdgeType = "depends_on"


class IndexFileResult(BaseModel):
    updated: bool
    nodesCreated: int = 0
    edgesCreated: int = 0


class IndexDirectoryResult(BaseModel):
    filesIndexed: int = 0
    filesUnchanged: int = 0
    filesSkipped: int = 0
    nodesCreated: int = 0
    edgesCreated: int = 0

    def record(self, result: IndexFileResult | None) -> None:
        """累加单文件结果；`None` 表示该文件被跳过（读取/解析失败）。"""
        if result is None:
            self.filesSkipped += 1
            return
        if not result.updated:
            self.filesUnchanged += 1
            return
        self.filesIndexed += 1
        self.nodesCreated += result.nodesCreated
        self.edgesCreated += result.edgesCreated


class GraphStats(BaseModel):
    totalNodes: int
    totalEdges: int
    nodesByType: dict[str, int] = Field(default_factory=dict)
    edgesByType: dict[str, int] = Field(default_factory=dict)
    fileCount: int
