"""
SourceAnalyzer：把单个源文件解析为 CKG 节点与边。

实现要点：
- 语法树来自 tree-sitter（TypeScript / TSX / JavaScript / Python grammar）
- 节点种类按 `node.type` 做 `match` 分派，不做运行时类型判断
- 节点 id 由 (filePath, type, name) 确定性生成：同一个符号重复解析得到相同 id；
  同名重载会冲突（后解析的覆盖先解析的），这是已知限制
- 语法错误直接抛 `ParseError`，由调用方决定跳过该文件
"""

from __future__ import annotations

import hashlib
import os
import re
from dataclasses import dataclass, field

from tree_sitter import Node as SyntaxNode
from tree_sitter import Parser
from tree_sitter_language_pack import get_parser

from gvr.graph.models import Edge
from gvr.graph.models import EdgeType
from gvr.graph.models import ExportInfo
from gvr.graph.models import FileAnalysis
from gvr.graph.models import ImportInfo
from gvr.graph.models import Language
from gvr.graph.models import MetadataValue
from gvr.graph.models import Node
from gvr.graph.models import NodeType
from gvr.indexing.file_scanner import sha256_text
from gvr.infra.errors import ParseError

GRAMMAR_BY_EXTENSION: dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "tsx",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
}

_JSDOC_PREFIX = re.compile(r"^\s*/?\*+/?")
_JSDOC_SUFFIX = re.compile(r"\*+/\s*$")
_FUNCTION_VALUES = {"arrow_function", "function_expression", "function", "generator_function"}


def generate_node_id(file_path: str, node_type: str, name: str) -> str:
    digest = hashlib.md5(f"{file_path}:{node_type}:{name}".encode("utf-8")).hexdigest()[:16]
    return f"{node_type}_{digest}"


def generate_edge_id(edge_type: str, source_id: str, target_id: str) -> str:
    digest = hashlib.md5(f"{edge_type}:{source_id}:{target_id}".encode("utf-8")).hexdigest()[:16]
    return f"{edge_type}_{digest}"


def grammar_for_path(file_path: str) -> str | None:
    return GRAMMAR_BY_EXTENSION.get(os.path.splitext(file_path)[1].lower())


@dataclass
class _ParseState:
    file_path: str
    language: Language
    file_node_id: str
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    imports: list[ImportInfo] = field(default_factory=list)
    exports: list[ExportInfo] = field(default_factory=list)

    def add_node(
        self,
        node_type: NodeType,
        name: str,
        syntax: SyntaxNode,
        id_name: str | None = None,
        signature: str | None = None,
        docstring: str | None = None,
        metadata: dict[str, MetadataValue] | None = None,
    ) -> Node:
        node = Node(
            id=generate_node_id(self.file_path, node_type, id_name or name),
            type=node_type,
            name=name,
            filePath=self.file_path,
            startLine=_start_line(syntax),
            endLine=_end_line(syntax),
            signature=signature,
            docstring=docstring,
            language=self.language,
            metadata=metadata,
        )
        self.nodes.append(node)
        return node

    def add_edge(self, edge_type: EdgeType, source_id: str, target_id: str) -> None:
        self.edges.append(
            Edge(
                id=generate_edge_id(edge_type, source_id, target_id),
                type=edge_type,
                sourceId=source_id,
                targetId=target_id,
            )
        )

    def add_import(self, info: ImportInfo, syntax: SyntaxNode) -> None:
        self.imports.append(info)
        import_node = self.add_node(
            "import",
            info.source,
            syntax,
            metadata={"specifiers": ",".join(info.specifiers)},
        )
        self.add_edge("imports", self.file_node_id, import_node.id)

    def add_export(self, name: str, is_default: bool, line: int) -> None:
        self.exports.append(ExportInfo(name=name, isDefault=is_default, line=line))


class SourceAnalyzer:
    """无状态解析器：每次 parse 创建独立的 tree-sitter Parser，可在多线程中并发调用。"""

    def supports(self, file_path: str) -> bool:
        return grammar_for_path(file_path) is not None

    def parse(self, file_path: str, content: str) -> FileAnalysis:
        grammar = grammar_for_path(file_path)
        if grammar is None:
            raise ParseError(file_path, "unsupported file extension")
        parser = _try_get_parser(grammar)
        if parser is None:
            raise ParseError(file_path, f"tree-sitter grammar unavailable: {grammar}")

        tree = parser.parse(content.encode("utf-8"))
        root = tree.root_node
        if root.has_error:
            raise ParseError(file_path, f"syntax error near line {_first_error_line(root)}")

        language = _language_for_grammar(grammar)
        file_name = os.path.basename(file_path)
        file_node = Node(
            id=generate_node_id(file_path, "file", file_name),
            type="file",
            name=file_name,
            filePath=file_path,
            startLine=1,
            endLine=len(content.split("\n")),
            language=language,
        )
        state = _ParseState(file_path=file_path, language=language, file_node_id=file_node.id)
        state.nodes.append(file_node)

        if language == "python":
            _walk_python(root=root, state=state)
        else:
            _walk_script(root=root, state=state)

        return FileAnalysis(
            filePath=file_path,
            language=language,
            nodes=state.nodes,
            edges=state.edges,
            imports=state.imports,
            exports=state.exports,
            checksum=sha256_text(content),
        )


def _try_get_parser(grammar: str) -> Parser | None:
    try:
        return get_parser(grammar)
    except Exception:
        return None


def _language_for_grammar(grammar: str) -> Language:
    if grammar == "python":
        return "python"
    if grammar in {"typescript", "tsx"}:
        return "typescript"
    return "javascript"


def _first_error_line(root: SyntaxNode) -> int:
    stack: list[SyntaxNode] = [root]
    while stack:
        node = stack.pop()
        if node.type == "ERROR" or node.is_missing:
            return _start_line(node)
        stack.extend(reversed(node.children))
    return _start_line(root)


# ---------------------------------------------------------------------------
# TypeScript / JavaScript
# ---------------------------------------------------------------------------


def _walk_script(root: SyntaxNode, state: _ParseState) -> None:
    # (语法节点, 所属 class 节点)；进入函数体后 owner 重置
    stack: list[tuple[SyntaxNode, Node | None]] = [(root, None)]
    while stack:
        syntax, owner = stack.pop()
        child_owner = owner
        match syntax.type:
            case "import_statement":
                _visit_script_import(syntax=syntax, state=state)
            case "export_statement":
                _visit_export_statement(syntax=syntax, state=state)
            case "class_declaration" | "abstract_class_declaration":
                child_owner = _visit_script_class(syntax=syntax, state=state)
            case "method_definition" | "abstract_method_signature" if _is_class_member(syntax, owner):
                _visit_script_method(syntax=syntax, owner=owner, state=state)
                child_owner = None
            case "function_declaration" | "generator_function_declaration" | "function_signature":
                _visit_script_function(syntax=syntax, state=state)
                child_owner = None
            case "interface_declaration":
                _visit_named_declaration(syntax=syntax, node_type="interface", keyword="interface", state=state)
            case "type_alias_declaration":
                _visit_named_declaration(syntax=syntax, node_type="type", keyword="type", state=state)
            case "enum_declaration":
                _visit_named_declaration(syntax=syntax, node_type="enum", keyword="enum", state=state)
            case "variable_declarator" if _is_module_level_declarator(syntax):
                _visit_function_constant(syntax=syntax, state=state)
        stack.extend((child, child_owner) for child in reversed(syntax.children))


def _visit_script_import(syntax: SyntaxNode, state: _ParseState) -> None:
    source_node = syntax.child_by_field_name("source")
    if source_node is None:
        return
    specifiers: list[str] = []
    is_default = False
    is_namespace = False
    clause = _first_named_child(syntax, "import_clause")
    if clause is not None:
        for part in clause.named_children:
            match part.type:
                case "identifier":
                    is_default = True
                    specifiers.append(_text(part))
                case "namespace_import":
                    is_namespace = True
                    alias = _first_named_child(part, "identifier")
                    if alias is not None:
                        specifiers.append(_text(alias))
                case "named_imports":
                    for spec in part.named_children:
                        if spec.type != "import_specifier":
                            continue
                        local = spec.child_by_field_name("alias") or spec.child_by_field_name("name")
                        if local is not None:
                            specifiers.append(_text(local))
    info = ImportInfo(
        source=_string_value(source_node),
        specifiers=specifiers,
        isDefault=is_default,
        isNamespace=is_namespace,
        line=_start_line(syntax),
    )
    state.add_import(info=info, syntax=syntax)


def _visit_export_statement(syntax: SyntaxNode, state: _ParseState) -> None:
    # 带 declaration 的导出（export class/function ...）由 declaration 自己记录
    if syntax.child_by_field_name("declaration") is not None:
        return
    line = _start_line(syntax)
    names = _export_clause_names(syntax)
    source_node = syntax.child_by_field_name("source")
    if source_node is not None:
        # re-export：export { a } from './x' / export * from './x'
        info = ImportInfo(
            source=_string_value(source_node),
            specifiers=names,
            isNamespace=not names,
            line=line,
        )
        state.add_import(info=info, syntax=syntax)
    elif any(child.type == "default" for child in syntax.children):
        state.add_export(name="default", is_default=True, line=line)
    for name in names:
        state.add_export(name=name, is_default=False, line=line)


def _export_clause_names(syntax: SyntaxNode) -> list[str]:
    clause = _first_named_child(syntax, "export_clause")
    if clause is None:
        return []
    names: list[str] = []
    for spec in clause.named_children:
        if spec.type != "export_specifier":
            continue
        exported = spec.child_by_field_name("alias") or spec.child_by_field_name("name")
        if exported is not None:
            names.append(_text(exported))
    return names


def _visit_script_class(syntax: SyntaxNode, state: _ParseState) -> Node | None:
    name_node = syntax.child_by_field_name("name")
    if name_node is None:
        return None
    name = _text(name_node)
    extends, implements = _class_heritage(syntax)

    signature = f"class {name}"
    if extends:
        signature += " extends " + ", ".join(_text(t) for t in extends)
    if implements:
        signature += " implements " + ", ".join(_text(t) for t in implements)

    class_node = state.add_node("class", name, syntax, signature=signature, docstring=_jsdoc(syntax))
    state.add_edge("contains", state.file_node_id, class_node.id)
    _record_script_export(anchor=syntax, name=name, state=state)

    for base in extends:
        base_name = _simple_type_name(base)
        if base_name is not None:
            state.add_edge("extends", class_node.id, generate_node_id(state.file_path, "class", base_name))
    for iface in implements:
        iface_name = _simple_type_name(iface)
        if iface_name is not None:
            state.add_edge("implements", class_node.id, generate_node_id(state.file_path, "interface", iface_name))
    return class_node


def _class_heritage(syntax: SyntaxNode) -> tuple[list[SyntaxNode], list[SyntaxNode]]:
    heritage = _first_named_child(syntax, "class_heritage")
    if heritage is None:
        return [], []
    extends: list[SyntaxNode] = []
    implements: list[SyntaxNode] = []
    for part in heritage.named_children:
        match part.type:
            case "extends_clause":
                extends.extend(part.children_by_field_name("value"))
            case "implements_clause":
                implements.extend(part.named_children)
            case "comment":
                continue
            case _:
                # javascript grammar：class_heritage 直接包含父类表达式
                extends.append(part)
    return extends, implements


def _simple_type_name(syntax: SyntaxNode) -> str | None:
    match syntax.type:
        case "identifier" | "type_identifier":
            return _text(syntax)
        case "generic_type":
            name = syntax.child_by_field_name("name")
            if name is not None and name.type == "type_identifier":
                return _text(name)
    return None


def _is_class_member(syntax: SyntaxNode, owner: Node | None) -> bool:
    return owner is not None and syntax.parent is not None and syntax.parent.type == "class_body"


def _visit_script_method(syntax: SyntaxNode, owner: Node | None, state: _ParseState) -> None:
    name_node = syntax.child_by_field_name("name")
    if owner is None or name_node is None:
        return
    name = _text(name_node)
    method = state.add_node(
        "method",
        name,
        syntax,
        id_name=f"{owner.name}.{name}",
        signature=_script_call_signature(name=name, syntax=syntax),
        docstring=_jsdoc(syntax),
        metadata={"className": owner.name},
    )
    state.add_edge("contains", owner.id, method.id)


def _visit_script_function(syntax: SyntaxNode, state: _ParseState) -> None:
    name_node = syntax.child_by_field_name("name")
    if name_node is None:
        return
    name = _text(name_node)
    func = state.add_node(
        "function",
        name,
        syntax,
        signature=_script_call_signature(name=name, syntax=syntax),
        docstring=_jsdoc(syntax),
    )
    state.add_edge("contains", state.file_node_id, func.id)
    _record_script_export(anchor=syntax, name=name, state=state)


def _visit_named_declaration(syntax: SyntaxNode, node_type: NodeType, keyword: str, state: _ParseState) -> None:
    name_node = syntax.child_by_field_name("name")
    if name_node is None:
        return
    name = _text(name_node)
    node = state.add_node(node_type, name, syntax, signature=f"{keyword} {name}", docstring=_jsdoc(syntax))
    state.add_edge("contains", state.file_node_id, node.id)
    _record_script_export(anchor=syntax, name=name, state=state)


def _is_module_level_declarator(syntax: SyntaxNode) -> bool:
    declaration = syntax.parent
    if declaration is None or declaration.type not in {"lexical_declaration", "variable_declaration"}:
        return False
    scope = declaration.parent
    if scope is not None and scope.type == "export_statement":
        scope = scope.parent
    return scope is not None and scope.type == "program"


def _visit_function_constant(syntax: SyntaxNode, state: _ParseState) -> None:
    """`const handler = (x) => ...` 视为具名函数。"""
    name_node = syntax.child_by_field_name("name")
    value = syntax.child_by_field_name("value")
    if name_node is None or value is None or name_node.type != "identifier":
        return
    if value.type not in _FUNCTION_VALUES:
        return
    name = _text(name_node)
    declaration = syntax.parent
    func = state.add_node(
        "function",
        name,
        syntax,
        signature=_script_call_signature(name=name, syntax=value),
        docstring=_jsdoc(declaration) if declaration is not None else None,
        metadata={"declaredAs": "const"},
    )
    state.add_edge("contains", state.file_node_id, func.id)
    if declaration is not None:
        _record_script_export(anchor=declaration, name=name, state=state)


def _record_script_export(anchor: SyntaxNode, name: str, state: _ParseState) -> None:
    parent = anchor.parent
    if parent is None or parent.type != "export_statement":
        return
    is_default = any(child.type == "default" for child in parent.children)
    state.add_export(name=name, is_default=is_default, line=_start_line(parent))


def _script_call_signature(name: str, syntax: SyntaxNode) -> str:
    params = syntax.child_by_field_name("parameters") or syntax.child_by_field_name("parameter")
    return_type = syntax.child_by_field_name("return_type")
    params_text = _text(params) if params is not None else "()"
    if not params_text.startswith("("):
        params_text = f"({params_text})"
    return f"{name}{params_text}{_text(return_type) if return_type is not None else ''}"


def _jsdoc(syntax: SyntaxNode) -> str | None:
    anchor = syntax
    if anchor.parent is not None and anchor.parent.type == "export_statement":
        anchor = anchor.parent
    previous = anchor.prev_named_sibling
    if previous is None or previous.type != "comment":
        return None
    raw = _text(previous)
    if not raw.startswith("/**"):
        return None
    lines = [_JSDOC_SUFFIX.sub("", _JSDOC_PREFIX.sub("", line)).strip() for line in raw.split("\n")]
    cleaned = [line for line in lines if line]
    return "\n".join(cleaned) or None


# ---------------------------------------------------------------------------
# Python
# ---------------------------------------------------------------------------


def _walk_python(root: SyntaxNode, state: _ParseState) -> None:
    stack: list[tuple[SyntaxNode, Node | None]] = [(root, None)]
    while stack:
        syntax, owner = stack.pop()
        child_owner = owner
        match syntax.type:
            case "import_statement":
                _visit_python_import(syntax=syntax, state=state)
            case "import_from_statement":
                _visit_python_from_import(syntax=syntax, state=state)
            case "class_definition":
                child_owner = _visit_python_class(syntax=syntax, state=state)
            case "function_definition":
                _visit_python_function(syntax=syntax, owner=owner, state=state)
                child_owner = None
        stack.extend((child, child_owner) for child in reversed(syntax.children))


def _visit_python_import(syntax: SyntaxNode, state: _ParseState) -> None:
    for item in syntax.children_by_field_name("name"):
        module, alias = _python_import_name(item)
        info = ImportInfo(source=module, specifiers=[alias or module], isNamespace=True, line=_start_line(syntax))
        state.add_import(info=info, syntax=syntax)


def _visit_python_from_import(syntax: SyntaxNode, state: _ParseState) -> None:
    module_node = syntax.child_by_field_name("module_name")
    if module_node is None:
        return
    module = _text(module_node)
    names: list[str] = []
    for item in syntax.children_by_field_name("name"):
        name, alias = _python_import_name(item)
        names.append(alias or name)
    if _first_named_child(syntax, "wildcard_import") is not None:
        names.append("*")

    line = _start_line(syntax)
    if module.strip(".") == "":
        # from . import a, b：每个名字本身就是一个相对模块
        for item in syntax.children_by_field_name("name"):
            name, alias = _python_import_name(item)
            source = _python_relative_source(f"{module}{name}")
            state.add_import(ImportInfo(source=source, specifiers=[alias or name], line=line), syntax)
        return
    state.add_import(ImportInfo(source=_python_relative_source(module), specifiers=names, line=line), syntax)


def _python_import_name(item: SyntaxNode) -> tuple[str, str | None]:
    if item.type == "aliased_import":
        name = item.child_by_field_name("name")
        alias = item.child_by_field_name("alias")
        return (_text(name) if name is not None else ""), (_text(alias) if alias is not None else None)
    return _text(item), None


def _python_relative_source(module: str) -> str:
    """`.b` -> `./b`，`..pkg.mod` -> `../pkg/mod`；绝对模块原样返回。"""
    stripped = module.lstrip(".")
    dots = len(module) - len(stripped)
    if dots == 0:
        return module
    prefix = "./" if dots == 1 else "../" * (dots - 1)
    return prefix + stripped.replace(".", "/")


def _visit_python_class(syntax: SyntaxNode, state: _ParseState) -> Node | None:
    name_node = syntax.child_by_field_name("name")
    if name_node is None:
        return None
    name = _text(name_node)
    superclasses = syntax.child_by_field_name("superclasses")
    bases = [arg for arg in superclasses.named_children if arg.type in {"identifier", "attribute"}] if superclasses else []
    signature = f"class {name}"
    if bases:
        signature += "(" + ", ".join(_text(base) for base in bases) + ")"

    class_node = state.add_node("class", name, syntax, signature=signature, docstring=_python_docstring(syntax))
    state.add_edge("contains", state.file_node_id, class_node.id)
    _record_python_export(syntax=syntax, name=name, state=state)
    for base in bases:
        if base.type == "identifier":
            state.add_edge("extends", class_node.id, generate_node_id(state.file_path, "class", _text(base)))
    return class_node


def _visit_python_function(syntax: SyntaxNode, owner: Node | None, state: _ParseState) -> None:
    name_node = syntax.child_by_field_name("name")
    if name_node is None:
        return
    name = _text(name_node)
    params = syntax.child_by_field_name("parameters")
    return_type = syntax.child_by_field_name("return_type")
    signature = f"{name}{_text(params) if params is not None else '()'}"
    if return_type is not None:
        signature += f" -> {_text(return_type)}"

    if owner is not None:
        method = state.add_node(
            "method",
            name,
            syntax,
            id_name=f"{owner.name}.{name}",
            signature=signature,
            docstring=_python_docstring(syntax),
            metadata={"className": owner.name},
        )
        state.add_edge("contains", owner.id, method.id)
        return

    func = state.add_node("function", name, syntax, signature=signature, docstring=_python_docstring(syntax))
    state.add_edge("contains", state.file_node_id, func.id)
    _record_python_export(syntax=syntax, name=name, state=state)


def _record_python_export(syntax: SyntaxNode, name: str, state: _ParseState) -> None:
    # Python 没有 export 修饰符：模块顶层、非下划线开头即视为导出
    scope = syntax.parent
    if scope is not None and scope.type == "decorated_definition":
        scope = scope.parent
    if scope is None or scope.type != "module" or name.startswith("_"):
        return
    state.add_export(name=name, is_default=False, line=_start_line(syntax))


def _python_docstring(syntax: SyntaxNode) -> str | None:
    body = syntax.child_by_field_name("body")
    if body is None or not body.named_children:
        return None
    first = body.named_children[0]
    if first.type != "expression_statement" or not first.named_children:
        return None
    literal = first.named_children[0]
    if literal.type != "string":
        return None
    return _text(literal).lstrip("rRuUbB").strip("\"'").strip() or None


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _first_named_child(syntax: SyntaxNode, node_type: str) -> SyntaxNode | None:
    for child in syntax.named_children:
        if child.type == node_type:
            return child
    return None


def _text(syntax: SyntaxNode) -> str:
    if syntax.text is None:
        return ""
    return syntax.text.decode("utf-8", errors="replace")


def _string_value(syntax: SyntaxNode) -> str:
    raw = _text(syntax)
    if len(raw) >= 2 and raw[0] in "'\"`" and raw[-1] == raw[0]:
        return raw[1:-1]
    return raw


def _start_line(syntax: SyntaxNode) -> int:
    return syntax.start_point[0] + 1


def _end_line(syntax: SyntaxNode) -> int:
    return syntax.end_point[0] + 1
