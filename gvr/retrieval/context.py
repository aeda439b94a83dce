from __future__ import annotations

from gvr.retrieval.models import GVRResponse
from gvr.retrieval.models import GVRResult

MAX_CONTEXT_CHARS = 4000


def build_context_package(response: GVRResponse, max_chars: int = MAX_CONTEXT_CHARS) -> str:
    """
    把 GVR 结果渲染成给编辑 agent 的纯文本上下文。

    - 按排序后的顺序输出，每个片段单独截断到 max_chars
    - 附带受影响文件与被修改符号，便于 agent 判断改动范围
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be > 0")
    if not response.results:
        return ""
    parts: list[str] = ["相关上下文："]
    for result in response.results:
        parts.append(_format_header(result))
        parts.append(_truncate(text=result.content, max_chars=max_chars))

    graph_context = response.graphContext
    if graph_context is not None and graph_context.impactedFiles:
        parts.append("受影响文件：")
        parts.extend(f"- {path}" for path in graph_context.impactedFiles)
    if graph_context is not None and graph_context.modifiedSymbols:
        parts.append(f"相关符号：{', '.join(dict.fromkeys(graph_context.modifiedSymbols))}")
    return "\n".join(parts)


def _format_header(result: GVRResult) -> str:
    kind = f" [{result.nodeType}]" if result.nodeType else ""
    header = f"- {result.filePath} ({result.startLine}-{result.endLine}){kind} score={result.score:.3f}"
    if result.connectedFiles:
        header += f" connected: {', '.join(result.connectedFiles)}"
    return header


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "\n...TRUNCATED..."
