from __future__ import annotations

from pydantic import BaseModel

from gvr.graph.models import MetadataValue


class Chunk(BaseModel):
    id: str
    content: str
    filePath: str
    startLine: int
    endLine: int
    checksum: str


class VectorDocument(BaseModel):
    id: str
    chunkId: str
    embedding: list[float]
    content: str
    filePath: str
    startLine: int
    endLine: int
    metadata: dict[str, MetadataValue] | None = None


class SearchHit(BaseModel):
    id: str
    score: float
    document: VectorDocument


class VectorIndexResult(BaseModel):
    chunksCreated: int = 0
    updated: bool = True


class VectorDirectoryResult(BaseModel):
    filesIndexed: int = 0
    filesUnchanged: int = 0
    filesSkipped: int = 0
    chunksCreated: int = 0


class VectorStats(BaseModel):
    totalDocuments: int
    totalFiles: int
    embeddingDimensions: int
    storeType: str
