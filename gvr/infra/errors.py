from __future__ import annotations

"""
GVR 错误分类。

处理约定：
- `ParseError`：单文件解析失败，目录索引跳过该文件继续
- `DimensionMismatchError`：查询/存储向量维度不一致，本次调用直接失败，store 不变
- `NotFoundError`：依赖查询中的未知文件/ID，在 backend 边界转换为空结果
- `BackendUnavailableError`：协作服务不可达，GVR 查询降级该信号（记为 0）并继续
- 参数越界（topK/graphDepth）由 `GVRQuery` 的 Pydantic 校验抛 `ValidationError`
"""


class GVRError(Exception):
    """所有 GVR 领域错误的基类。"""


class ParseError(GVRError):
    """源文件无法解析（语法错误或不支持的语言）。"""

    def __init__(self, file_path: str, message: str) -> None:
        super().__init__(f"Failed to parse {file_path}: {message}")
        self.file_path = file_path


class DimensionMismatchError(GVRError, ValueError):
    """向量长度与 store/provider 声明的维度不一致。"""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"Vector dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class NotFoundError(GVRError, LookupError):
    pass


class BackendError(GVRError, RuntimeError):
    """协作服务拒绝了请求（4xx 或 success=false）。"""


class BackendUnavailableError(BackendError):
    """协作服务不可达：网络错误、超时或 5xx。"""
