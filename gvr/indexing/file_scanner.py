from __future__ import annotations

import hashlib
import logging
import os
from collections.abc import Iterable

logger = logging.getLogger(__name__)

SKIPPED_DIRS = {"node_modules", "dist", "__pycache__"}


def scan_source_files(root_dir: str, allowed_extensions: Iterable[str], max_bytes: int) -> list[str]:
    """
    递归列出 root_dir 下可索引的源文件。

    - 跳过以 `.` 开头的目录/文件、`node_modules`、`dist`
    - 只保留扩展名在 allowed_extensions 里、且不超过 max_bytes 的文件
    - 结果按目录遍历顺序排序，保证多次运行顺序一致
    """
    if max_bytes <= 0:
        raise ValueError("max_bytes must be > 0")
    extensions = {ext.lower() for ext in allowed_extensions}
    files: list[str] = []
    for root, dirs, filenames in os.walk(root_dir):
        dirs[:] = sorted(d for d in dirs if not d.startswith(".") and d not in SKIPPED_DIRS)
        for name in sorted(filenames):
            if name.startswith("."):
                continue
            if os.path.splitext(name)[1].lower() not in extensions:
                continue
            path = os.path.join(root, name)
            try:
                size = os.path.getsize(path)
            except OSError:
                continue
            if size > max_bytes:
                logger.debug(f"Skipping oversized file: {path} ({size} bytes)")
                continue
            files.append(path)
    return files


def infer_language_from_path(path: str) -> str:
    """
    通过文件扩展名推断语言。

    必须确定性：graph 节点的 language 字段和 grammar 选择都依赖它。
    """
    lowered = path.lower()
    if lowered.endswith(".ts") or lowered.endswith(".tsx"):
        return "typescript"
    if lowered.endswith((".js", ".jsx", ".mjs", ".cjs")):
        return "javascript"
    if lowered.endswith(".py"):
        return "python"
    return "unknown"


def read_source_file(path: str) -> str:
    with open(path, "r", encoding="utf-8", errors="ignore") as handle:
        return handle.read()


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
