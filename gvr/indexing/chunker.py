from __future__ import annotations

import hashlib
import math

from gvr.config import ChunkingPolicy
from gvr.indexing.file_scanner import sha256_text
from gvr.storage.models import Chunk

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class Chunker:
    """
    按行贪心累积的确定性分块器。

    相同 (policy, content) 永远得到相同的边界、checksum 与 chunk id。
    """

    def __init__(self, policy: ChunkingPolicy | None = None) -> None:
        self._policy = policy or ChunkingPolicy()

    def chunk_content(self, file_path: str, content: str) -> list[Chunk]:
        lines = content.split("\n")
        chunks: list[Chunk] = []

        current: list[str] = []
        current_tokens = 0
        start_line = 1

        for index, line in enumerate(lines):
            line_tokens = estimate_tokens(line)
            if current and current_tokens + line_tokens > self._policy.max_chunk_size:
                self._emit(chunks=chunks, file_path=file_path, lines=current, start_line=start_line)
                # 用上一块末尾若干行（不超过 overlap token）作为下一块的开头
                current = _overlap_lines(lines=current, target_tokens=self._policy.chunk_overlap)
                current_tokens = estimate_tokens("\n".join(current))
                start_line = index + 1 - len(current)
            current.append(line)
            current_tokens += line_tokens

        if current:
            self._emit(chunks=chunks, file_path=file_path, lines=current, start_line=start_line)
        return chunks

    def _emit(self, chunks: list[Chunk], file_path: str, lines: list[str], start_line: int) -> None:
        text = "\n".join(lines)
        if estimate_tokens(text) < self._policy.min_chunk_size:
            return
        chunks.append(_build_chunk(file_path=file_path, content=text, start_line=start_line, end_line=start_line + len(lines) - 1))


def _overlap_lines(lines: list[str], target_tokens: int) -> list[str]:
    kept: list[str] = []
    tokens = 0
    for line in reversed(lines):
        line_tokens = estimate_tokens(line)
        if tokens + line_tokens > target_tokens:
            break
        kept.append(line)
        tokens += line_tokens
    kept.reverse()
    return kept


def _build_chunk(file_path: str, content: str, start_line: int, end_line: int) -> Chunk:
    checksum = sha256_text(content)
    chunk_id = hashlib.sha256(f"{file_path}:{start_line}:{end_line}:{checksum}".encode("utf-8")).hexdigest()[:24]
    return Chunk(
        id=chunk_id,
        content=content,
        filePath=file_path,
        startLine=start_line,
        endLine=end_line,
        checksum=checksum,
    )
