"""
GraphStore：进程内 Code Knowledge Graph。

职责：
- 按文件整体写入/替换节点与边（先删后插，作为一个原子单元提交）
- 通过 checksum 比较实现幂等重建：内容不变则不做任何事
- 把相对 import 解析为文件之间的 `depends_on` 边
- 有界 BFS 查询依赖方/被依赖方

并发约定：
- store 级 `RLock` 保护所有读写，读方法只返回快照
- 同一路径的重建由 per-file lock 串行化；解析在 store 锁之外进行，不同文件可并发索引
"""

from __future__ import annotations

import logging
import os
import threading
from collections import Counter
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from gvr.config import DEFAULT_EXTENSIONS
from gvr.graph.analyzer import SourceAnalyzer
from gvr.graph.models import DependencyResult
from gvr.graph.models import Edge
from gvr.graph.models import FileAnalysis
from gvr.graph.models import GraphStats
from gvr.graph.models import IndexDirectoryResult
from gvr.graph.models import IndexFileResult
from gvr.graph.models import Language
from gvr.graph.models import Node
from gvr.indexing.file_scanner import read_source_file
from gvr.indexing.file_scanner import scan_source_files
from gvr.indexing.file_scanner import sha256_text
from gvr.infra.cache import Cache
from gvr.infra.cache import InMemoryCache
from gvr.infra.errors import ParseError

logger = logging.getLogger(__name__)

MAX_FILE_BYTES = 1024 * 1024

# 固定优先级：先 TS 约定，再原始路径；JS/Python 候选追加在最后
SCRIPT_IMPORT_SUFFIXES: tuple[str, ...] = (".ts", ".tsx", "/index.ts", "/index.tsx", "", ".js", ".jsx", "/index.js")
PYTHON_IMPORT_SUFFIXES: tuple[str, ...] = (".py", "/__init__.py")


@dataclass
class _FileLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


def import_candidates(importer_path: str, source: str, language: Language) -> list[str]:
    """相对 import 的候选目标路径（按优先级）；非相对 import 返回空列表。"""
    if not source.startswith("."):
        return []
    base_dir = os.path.dirname(importer_path)
    suffixes = PYTHON_IMPORT_SUFFIXES if language == "python" else SCRIPT_IMPORT_SUFFIXES
    return [os.path.normpath(os.path.join(base_dir, f"{source}{suffix}")) for suffix in suffixes]


class GraphStore:
    def __init__(
        self,
        analyzer: SourceAnalyzer | None = None,
        checksums: Cache | None = None,
        supported_extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        max_file_bytes: int = MAX_FILE_BYTES,
    ) -> None:
        self._analyzer = analyzer or SourceAnalyzer()
        self._checksums: Cache = checksums if checksums is not None else InMemoryCache()
        self._supported_extensions = tuple(supported_extensions)
        self._max_file_bytes = max_file_bytes

        self._lock = threading.RLock()
        # 只保存正在被持有或等待的文件锁，最后一个使用者退出时删除
        self._file_locks: dict[str, _FileLock] = {}

        self._nodes: dict[str, Node] = {}
        self._edges: dict[str, Edge] = {}
        # node id -> 关联边 id（有序，保证遍历顺序稳定）
        self._incident: dict[str, dict[str, None]] = {}
        self._node_ids_by_file: dict[str, dict[str, None]] = {}
        self._file_nodes: dict[str, str] = {}
        # importer -> 每条相对 import 的候选路径；candidate -> importers（反向索引）
        self._import_candidates: dict[str, list[list[str]]] = {}
        self._importers_by_candidate: dict[str, dict[str, None]] = {}

    # ------------------------------------------------------------------ writes

    def index_file(self, file_path: str, content: str | None = None) -> IndexFileResult:
        """
        索引单个文件。

        - content 为空时从磁盘读取（UTF-8）
        - checksum 与上次一致：返回 `updated=False`，图不变
        - 解析失败抛 `ParseError`，旧的节点/边保持不变
        """
        if content is None:
            content = read_source_file(file_path)
        checksum = sha256_text(content)

        with self._file_lock(file_path):
            if self._checksums.get(file_path) == checksum:
                return IndexFileResult(updated=False)

            analysis = self._analyzer.parse(file_path, content)
            with self._lock:
                self._replace_file_locked(analysis)
                self._checksums.set(file_path, checksum)

        logger.debug(f"Indexed {file_path}: nodes={len(analysis.nodes)} edges={len(analysis.edges)}")
        return IndexFileResult(updated=True, nodesCreated=len(analysis.nodes), edgesCreated=len(analysis.edges))

    def try_index_file(self, file_path: str) -> IndexFileResult | None:
        """目录索引用：读取/解析失败时记录日志并返回 None（该文件被跳过）。"""
        try:
            return self.index_file(file_path)
        except ParseError as exc:
            logger.warning(f"Skipping unparsable file: {exc}")
        except (OSError, UnicodeError) as exc:
            logger.warning(f"Skipping unreadable file {file_path}: {exc}")
        return None

    def list_source_files(self, root_dir: str) -> list[str]:
        return scan_source_files(
            root_dir=root_dir,
            allowed_extensions=self._supported_extensions,
            max_bytes=self._max_file_bytes,
        )

    def index_directory(self, root_dir: str) -> IndexDirectoryResult:
        """递归索引目录；单个文件失败只计入 filesSkipped，不中断整体。"""
        result = IndexDirectoryResult()
        for path in self.list_source_files(root_dir):
            result.record(self.try_index_file(path))
        logger.info(
            f"Indexed directory {root_dir}: indexed={result.filesIndexed} "
            f"unchanged={result.filesUnchanged} skipped={result.filesSkipped}"
        )
        return result

    def remove_file(self, file_path: str) -> bool:
        """删除文件对应的全部节点/边与 checksum。返回该文件之前是否已被索引。"""
        with self._file_lock(file_path):
            with self._lock:
                existed = file_path in self._node_ids_by_file or self._checksums.get(file_path) is not None
                self._remove_file_locked(file_path)
                self._checksums.delete(file_path)
                # 原来指向该文件的 importer 可能落到优先级更低的候选上
                for importer in list(self._importers_by_candidate.get(file_path, {})):
                    self._link_imports_locked(importer)
        return existed

    def clear(self) -> None:
        with self._lock:
            self._nodes.clear()
            self._edges.clear()
            self._incident.clear()
            self._node_ids_by_file.clear()
            self._file_nodes.clear()
            self._import_candidates.clear()
            self._importers_by_candidate.clear()
            self._checksums.clear()

    # ------------------------------------------------------------------- reads

    def get_node(self, node_id: str) -> Node | None:
        with self._lock:
            return self._nodes.get(node_id)

    def get_nodes_for_file(self, file_path: str) -> list[Node]:
        with self._lock:
            ids = self._node_ids_by_file.get(file_path, {})
            return [self._nodes[node_id] for node_id in ids if node_id in self._nodes]

    def nodes(self) -> list[Node]:
        with self._lock:
            return list(self._nodes.values())

    def edges(self) -> list[Edge]:
        with self._lock:
            return list(self._edges.values())

    def get_dependents(self, file_path: str, depth: int = 3) -> list[DependencyResult]:
        """依赖 file_path 的文件（沿 depends_on 入边 BFS）。"""
        return self._traverse(file_path=file_path, depth=depth, inbound=True)

    def get_dependencies(self, file_path: str, depth: int = 3) -> list[DependencyResult]:
        """file_path 依赖的文件（沿 depends_on 出边 BFS）。"""
        return self._traverse(file_path=file_path, depth=depth, inbound=False)

    def search_nodes(self, query: str, limit: int = 20) -> list[Node]:
        """名字大小写不敏感的子串匹配；按插入顺序返回，不做相关性排序。"""
        if limit <= 0:
            raise ValueError("limit must be > 0")
        lowered = query.lower()
        results: list[Node] = []
        with self._lock:
            for node in self._nodes.values():
                if lowered in node.name.lower():
                    results.append(node)
                    if len(results) >= limit:
                        break
        return results

    def get_stats(self) -> GraphStats:
        with self._lock:
            nodes_by_type = Counter(node.type for node in self._nodes.values())
            edges_by_type = Counter(edge.type for edge in self._edges.values())
            return GraphStats(
                totalNodes=len(self._nodes),
                totalEdges=len(self._edges),
                nodesByType=dict(nodes_by_type),
                edgesByType=dict(edges_by_type),
                fileCount=len({node.filePath for node in self._nodes.values()}),
            )

    # --------------------------------------------------------------- internals

    @contextmanager
    def _file_lock(self, file_path: str) -> Iterator[None]:
        with self._lock:
            entry = self._file_locks.setdefault(file_path, _FileLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._file_locks[file_path]

    def _traverse(self, file_path: str, depth: int, inbound: bool) -> list[DependencyResult]:
        if depth < 1:
            raise ValueError("depth must be >= 1")
        with self._lock:
            start = self._file_nodes.get(file_path)
            if start is None:
                return []

            # 每个文件只在最浅的一层出现一次
            visited: set[str] = {start}
            frontier: list[str] = [start]
            results: list[DependencyResult] = []
            for level in range(1, depth + 1):
                next_frontier: list[str] = []
                for node_id in frontier:
                    for neighbor_id in self._dependency_neighbors_locked(node_id=node_id, inbound=inbound):
                        if neighbor_id in visited:
                            continue
                        neighbor = self._nodes.get(neighbor_id)
                        if neighbor is None or neighbor.type != "file":
                            continue
                        visited.add(neighbor_id)
                        next_frontier.append(neighbor_id)
                        results.append(DependencyResult(file=neighbor.filePath, depth=level, relationship="depends_on"))
                if not next_frontier:
                    break
                frontier = next_frontier
            return results

    def _dependency_neighbors_locked(self, node_id: str, inbound: bool) -> list[str]:
        neighbors: list[str] = []
        for edge_id in self._incident.get(node_id, {}):
            edge = self._edges[edge_id]
            if edge.type != "depends_on":
                continue
            if inbound and edge.targetId == node_id:
                neighbors.append(edge.sourceId)
            elif not inbound and edge.sourceId == node_id:
                neighbors.append(edge.targetId)
        return neighbors

    def _replace_file_locked(self, analysis: FileAnalysis) -> None:
        file_path = analysis.filePath
        self._remove_file_locked(file_path)

        file_ids: dict[str, None] = {}
        for node in analysis.nodes:
            self._nodes[node.id] = node
            file_ids[node.id] = None
            if node.type == "file":
                self._file_nodes[file_path] = node.id
        self._node_ids_by_file[file_path] = file_ids
        for edge in analysis.edges:
            self._add_edge_locked(edge)

        candidates = [
            import_candidates(importer_path=file_path, source=info.source, language=analysis.language)
            for info in analysis.imports
        ]
        self._import_candidates[file_path] = [c for c in candidates if c]
        for candidate_list in self._import_candidates[file_path]:
            for candidate in candidate_list:
                self._importers_by_candidate.setdefault(candidate, {})[file_path] = None

        self._link_imports_locked(file_path)
        # 先于本文件被索引的 importer 现在可能可以解析到本文件
        for importer in list(self._importers_by_candidate.get(file_path, {})):
            if importer != file_path:
                self._link_imports_locked(importer)

    def _remove_file_locked(self, file_path: str) -> None:
        node_ids = self._node_ids_by_file.pop(file_path, {})
        for node_id in node_ids:
            for edge_id in list(self._incident.get(node_id, {})):
                self._drop_edge_locked(edge_id)
            self._incident.pop(node_id, None)
            self._nodes.pop(node_id, None)
        self._file_nodes.pop(file_path, None)

        for candidate_list in self._import_candidates.pop(file_path, []):
            for candidate in candidate_list:
                importers = self._importers_by_candidate.get(candidate)
                if importers is None:
                    continue
                importers.pop(file_path, None)
                if not importers:
                    del self._importers_by_candidate[candidate]

    def _link_imports_locked(self, importer: str) -> int:
        """重新计算 importer 的全部 depends_on 出边，返回新建边数。"""
        source_id = self._file_nodes.get(importer)
        if source_id is None:
            return 0
        for edge_id in list(self._incident.get(source_id, {})):
            edge = self._edges[edge_id]
            if edge.type == "depends_on" and edge.sourceId == source_id:
                self._drop_edge_locked(edge_id)

        created = 0
        for candidate_list in self._import_candidates.get(importer, []):
            for candidate in candidate_list:
                target_id = self._file_nodes.get(candidate)
                if target_id is None:
                    continue
                edge_id = f"dep_{source_id}_{target_id}"
                if edge_id not in self._edges:
                    self._add_edge_locked(Edge(id=edge_id, type="depends_on", sourceId=source_id, targetId=target_id))
                    created += 1
                break
        return created

    def _add_edge_locked(self, edge: Edge) -> None:
        if edge.id in self._edges:
            return
        self._edges[edge.id] = edge
        self._incident.setdefault(edge.sourceId, {})[edge.id] = None
        self._incident.setdefault(edge.targetId, {})[edge.id] = None

    def _drop_edge_locked(self, edge_id: str) -> None:
        edge = self._edges.pop(edge_id, None)
        if edge is None:
            return
        for endpoint in (edge.sourceId, edge.targetId):
            incident = self._incident.get(endpoint)
            if incident is None:
                continue
            incident.pop(edge_id, None)
            if not incident and endpoint not in self._nodes:
                del self._incident[endpoint]
