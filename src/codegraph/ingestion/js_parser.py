import logging
from typing import List, Optional, Tuple

from tree_sitter import Node, Parser

from codegraph.ingestion.parser import (
    Dialect,
    build_code_blocks,
    has_child_type,
    iter_tree,
    node_text,
)
from codegraph.models import (
    CallFact,
    EndpointEntity,
    ExportFact,
    FunctionEntity,
    ImportFact,
    ImportSpecifier,
    SourceParseResult,
    VariableFact,
)

logger = logging.getLogger(__name__)

# Express-style route registration: app.get('/x', ...), router.use(...)
ROUTER_OBJECTS = {"app", "router"}
HTTP_METHODS = {"get", "post", "put", "delete", "patch", "options", "head", "all", "use"}

FUNCTION_VALUE_TYPES = {"arrow_function", "function_expression", "function", "generator_function"}
INLINE_HANDLER_TYPES = FUNCTION_VALUE_TYPES
TRACKED_VALUE_TYPES = {"object", "array", "new_expression"}


class JavaScriptParser:
    """Extracts functions, calls, imports, exports, variables and Express routes."""

    def __init__(self, parser: Parser):
        self.parser = parser

    def parse(self, code: str, file_path: str, line_offset: int = 0) -> SourceParseResult:
        """
        Parse JavaScript source.

        Args:
            code: Source text
            file_path: Path used for entity ids (may be a synthetic script path)
            line_offset: Added to every line number (inline scripts in markup)
        """
        source = bytes(code, "utf8")
        tree = self.parser.parse(source)
        if tree.root_node.has_error:
            logger.debug(f"Syntax errors in {file_path}, using recovered tree")

        visitor = _JavaScriptVisitor(source, file_path, line_offset)
        visitor.visit(tree.root_node)

        result = visitor.result
        result.code_blocks = build_code_blocks(result.functions, Dialect.JAVASCRIPT)
        return result


class _JavaScriptVisitor:
    def __init__(self, source: bytes, file_path: str, line_offset: int):
        self.source = source
        self.file_path = file_path
        self.line_offset = line_offset
        self.result = SourceParseResult()
        # (node id, function) for every enclosing extracted function
        self._function_stack: List[Tuple[int, FunctionEntity]] = []

    def visit(self, root: Node) -> None:
        for node, leaving in iter_tree(root):
            if leaving:
                if self._function_stack and self._function_stack[-1][0] == node.id:
                    self._function_stack.pop()
                continue
            handler = getattr(self, f"_visit_{node.type}", None)
            if handler is not None:
                handler(node)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _text(self, node: Optional[Node]) -> str:
        return node_text(node, self.source)

    def _line(self, node: Node) -> int:
        return node.start_point[0] + 1 + self.line_offset

    def _string_value(self, node: Node) -> str:
        return self._text(node)[1:-1]

    def _template_value(self, node: Node) -> str:
        """Template literal quasis joined by ``*`` (``/api/${id}/x`` -> ``/api/*/x``)."""
        pieces = []
        current = ""
        for child in node.children:
            if child.type in ("string_fragment", "escape_sequence"):
                current += self._text(child)
            elif child.type == "template_substitution":
                pieces.append(current)
                current = ""
        pieces.append(current)
        return "*".join(pieces)

    def _literal(self, node: Node) -> Optional[str]:
        if node.type == "string":
            return self._string_value(node)
        if node.type == "template_string":
            return self._template_value(node)
        return None

    def _arguments(self, node: Optional[Node]) -> List[Node]:
        if node is None or node.type != "arguments":
            return []
        return [child for child in node.named_children if child.type != "comment"]

    def _current_function(self) -> Optional[FunctionEntity]:
        return self._function_stack[-1][1] if self._function_stack else None

    def _under_export(self, node: Node) -> bool:
        parent = node.parent
        if parent is not None and parent.type in ("lexical_declaration", "variable_declaration"):
            parent = parent.parent
        return parent is not None and parent.type == "export_statement"

    def _parameter(self, node: Node) -> str:
        if node.type == "identifier":
            return self._text(node)
        if node.type == "assignment_pattern":
            return f"{self._text(node.child_by_field_name('left'))}=default"
        if node.type == "rest_pattern":
            inner = node.named_children[0] if node.named_children else None
            return f"...{self._text(inner)}"
        if node.type == "object_pattern":
            return "{...}"
        if node.type == "array_pattern":
            return "[...]"
        return "unknown"

    def _parameters(self, fn_node: Node) -> Tuple[str, ...]:
        params = fn_node.child_by_field_name("parameters")
        if params is None:
            # Arrow function with a single bare parameter: x => x * 2
            single = fn_node.child_by_field_name("parameter")
            return (self._text(single),) if single is not None else ()
        return tuple(
            self._parameter(child) for child in params.named_children if child.type != "comment"
        )

    def _add_function(self, node: Node, name: str, fn_node: Node, is_exported: bool) -> None:
        start = node.start_point[0] + 1
        end = node.end_point[0] + 1
        start_line = start + self.line_offset
        func = FunctionEntity(
            id=f"{self.file_path}:{name}:{start_line}",
            name=name,
            file=self.file_path,
            start_line=start_line,
            end_line=end + self.line_offset,
            is_async=has_child_type(fn_node, "async"),
            parameters=self._parameters(fn_node),
            is_exported=is_exported,
            is_generator=fn_node.type.startswith("generator") or has_child_type(fn_node, "*"),
            code=self._text(node),
        )
        self.result.functions.append(func)
        self._function_stack.append((node.id, func))

    # ------------------------------------------------------------------
    # functions
    # ------------------------------------------------------------------

    def _visit_function_declaration(self, node: Node) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is None:
            return
        self._add_function(node, self._text(name_node), node, self._under_export(node))

    _visit_generator_function_declaration = _visit_function_declaration

    def _visit_variable_declarator(self, node: Node) -> None:
        name_node = node.child_by_field_name("name")
        value = node.child_by_field_name("value")
        if name_node is None or value is None or name_node.type != "identifier":
            return
        name = self._text(name_node)

        if value.type in FUNCTION_VALUE_TYPES:
            self._add_function(node, name, value, self._under_export(node))
        elif value.type in TRACKED_VALUE_TYPES:
            self._add_variable(node, name, value)

    def _visit_method_definition(self, node: Node) -> None:
        name_node = node.child_by_field_name("name")
        if name_node is None:
            return
        method = self._text(name_node)
        if name_node.type == "string":
            method = method[1:-1]

        owner = None
        parent = node.parent
        if parent is not None and parent.type == "class_body":
            cls = parent.parent
            if cls is not None:
                owner = self._text(cls.child_by_field_name("name")) or None
        elif parent is not None and parent.type == "object":
            holder = parent.parent
            if holder is not None and holder.type == "variable_declarator":
                owner = self._text(holder.child_by_field_name("name")) or None

        name = f"{owner}.{method}" if owner else method
        self._add_function(node, name, node, False)

    # ------------------------------------------------------------------
    # variables
    # ------------------------------------------------------------------

    def _add_variable(self, node: Node, name: str, value: Node) -> None:
        declaration = node.parent
        kind = declaration.children[0].type if declaration is not None and declaration.children else "var"
        if value.type == "new_expression":
            summary = f"new {self._text(value.child_by_field_name('constructor'))}"
        else:
            summary = value.type
        line = self._line(node)
        self.result.variables.append(
            VariableFact(
                id=f"{self.file_path}:{name}:{line}",
                name=name,
                file=self.file_path,
                line=line,
                kind=kind,
                value=summary,
            )
        )

    # ------------------------------------------------------------------
    # calls & routes
    # ------------------------------------------------------------------

    def _callee_name(self, node: Optional[Node]) -> Optional[str]:
        """Dotted name for ``f``, ``a.b``, ``a.b.c`` and ``this.x`` callees."""
        if node is None:
            return None
        if node.type == "identifier":
            return self._text(node)
        if node.type != "member_expression":
            return None

        obj = node.child_by_field_name("object")
        prop = node.child_by_field_name("property")
        if obj is None or prop is None or prop.type not in ("property_identifier", "private_property_identifier"):
            return None
        prop_name = self._text(prop)

        if obj.type in ("identifier", "this"):
            return f"{self._text(obj)}.{prop_name}"
        if obj.type == "member_expression":
            inner_obj = obj.child_by_field_name("object")
            inner_prop = obj.child_by_field_name("property")
            if (
                inner_obj is not None
                and inner_prop is not None
                and inner_obj.type in ("identifier", "this")
                and inner_prop.type == "property_identifier"
            ):
                return f"{self._text(inner_obj)}.{self._text(inner_prop)}.{prop_name}"
        return None

    def _add_call(self, node: Node, callee: str, args: List[Node], is_constructor: bool) -> None:
        caller = self._current_function()
        self.result.calls.append(
            CallFact(
                callee=callee,
                file=self.file_path,
                line=self._line(node),
                caller=caller.name if caller else None,
                caller_id=caller.id if caller else None,
                argument_count=len(args),
                is_constructor=is_constructor,
                literal_argument=self._literal(args[0]) if args else None,
            )
        )

    def _visit_call_expression(self, node: Node) -> None:
        fn = node.child_by_field_name("function")
        args = self._arguments(node.child_by_field_name("arguments"))
        if fn is None:
            return

        if fn.type == "import":
            if args and args[0].type == "string":
                self.result.imports.append(
                    ImportFact(source=self._string_value(args[0]), file=self.file_path, line=self._line(node))
                )
            return

        callee = self._callee_name(fn)
        if callee is None:
            return

        if callee == "require" and args and args[0].type == "string":
            self._add_require(node, args[0])

        self._add_call(node, callee, args, is_constructor=False)

        if fn.type == "member_expression":
            self._maybe_add_endpoint(node, fn, args)

    def _visit_new_expression(self, node: Node) -> None:
        callee = self._callee_name(node.child_by_field_name("constructor"))
        if callee is None:
            return
        args = self._arguments(node.child_by_field_name("arguments"))
        self._add_call(node, callee, args, is_constructor=True)

    def _route_path(self, node: Node) -> str:
        if node.type == "string":
            return self._string_value(node)
        if node.type == "template_string":
            return self._template_value(node)
        if node.type == "identifier":
            return f"[{self._text(node)}]"
        if node.type == "regex":
            return "[regex]"
        return ""

    def _handler_name(self, node: Node, route_line: int) -> str:
        if node.type == "identifier":
            return self._text(node)
        if node.type in INLINE_HANDLER_TYPES:
            return f"inline@{route_line}"
        return "anonymous"

    def _maybe_add_endpoint(self, node: Node, fn: Node, args: List[Node]) -> None:
        obj = fn.child_by_field_name("object")
        prop = fn.child_by_field_name("property")
        if obj is None or prop is None or obj.type != "identifier" or not args:
            return
        if self._text(obj) not in ROUTER_OBJECTS:
            return
        method = self._text(prop)
        if method not in HTTP_METHODS:
            return

        path = self._route_path(args[0])
        middleware = tuple(
            self._text(arg) if arg.type == "identifier" else "anonymous" for arg in args[1:-1]
        )
        endpoint_method = method.upper()
        self.result.endpoints.append(
            EndpointEntity(
                id=f"{endpoint_method}:{path}",
                method=endpoint_method,
                path=path,
                handler=self._handler_name(args[-1], self._line(node)),
                file=self.file_path,
                line=self._line(node),
                middleware=middleware,
            )
        )

    # ------------------------------------------------------------------
    # imports & exports
    # ------------------------------------------------------------------

    def _visit_import_statement(self, node: Node) -> None:
        source = node.child_by_field_name("source")
        if source is None:
            return

        specifiers = []
        for clause in node.named_children:
            if clause.type != "import_clause":
                continue
            for child in clause.named_children:
                if child.type == "identifier":
                    specifiers.append(ImportSpecifier(self._text(child), "default", "default"))
                elif child.type == "namespace_import":
                    ident = next((c for c in child.named_children if c.type == "identifier"), None)
                    specifiers.append(ImportSpecifier(self._text(ident) or None, "*", "namespace"))
                elif child.type == "named_imports":
                    for spec in child.named_children:
                        if spec.type != "import_specifier":
                            continue
                        imported = self._text(spec.child_by_field_name("name"))
                        alias = spec.child_by_field_name("alias")
                        local = self._text(alias) if alias is not None else imported
                        specifiers.append(ImportSpecifier(local, imported, "named"))

        self.result.imports.append(
            ImportFact(
                source=self._string_value(source),
                file=self.file_path,
                line=self._line(node),
                specifiers=tuple(specifiers),
            )
        )

    def _add_require(self, call: Node, source: Node) -> None:
        specifiers = []
        holder = call.parent
        if holder is not None and holder.type == "variable_declarator":
            target = holder.child_by_field_name("name")
            if target is not None and target.type == "identifier":
                specifiers.append(ImportSpecifier(self._text(target), "default", "default"))
            elif target is not None and target.type == "object_pattern":
                for prop in target.named_children:
                    if prop.type == "shorthand_property_identifier_pattern":
                        name = self._text(prop)
                        specifiers.append(ImportSpecifier(name, name, "named"))
                    elif prop.type == "pair_pattern":
                        key = self._text(prop.child_by_field_name("key"))
                        value = self._text(prop.child_by_field_name("value"))
                        specifiers.append(ImportSpecifier(value, key, "named"))

        self.result.imports.append(
            ImportFact(
                source=self._string_value(source),
                file=self.file_path,
                line=self._line(call),
                specifiers=tuple(specifiers),
                is_require=True,
            )
        )

    def _visit_export_statement(self, node: Node) -> None:
        line = self._line(node)
        source = node.child_by_field_name("source")
        if source is not None:
            # export { x } from './y' also depends on './y'
            self.result.imports.append(
                ImportFact(source=self._string_value(source), file=self.file_path, line=line)
            )

        declaration = node.child_by_field_name("declaration")
        if has_child_type(node, "default"):
            value = node.child_by_field_name("value") or declaration
            kind = value.type if value is not None else "unknown"
            self.result.exports.append(ExportFact("default", kind, self.file_path, line))
            return

        if declaration is not None:
            if declaration.type in ("function_declaration", "generator_function_declaration"):
                name = self._text(declaration.child_by_field_name("name"))
                self.result.exports.append(ExportFact(name, "function", self.file_path, line))
            elif declaration.type == "class_declaration":
                name = self._text(declaration.child_by_field_name("name"))
                self.result.exports.append(ExportFact(name, "class", self.file_path, line))
            elif declaration.type in ("lexical_declaration", "variable_declaration"):
                for declarator in declaration.named_children:
                    if declarator.type != "variable_declarator":
                        continue
                    name = self._text(declarator.child_by_field_name("name"))
                    self.result.exports.append(ExportFact(name, "variable", self.file_path, line))

        for clause in node.named_children:
            if clause.type != "export_clause":
                continue
            for spec in clause.named_children:
                if spec.type != "export_specifier":
                    continue
                alias = spec.child_by_field_name("alias")
                name = self._text(alias if alias is not None else spec.child_by_field_name("name"))
                self.result.exports.append(ExportFact(name, "specifier", self.file_path, line))

    def _visit_assignment_expression(self, node: Node) -> None:
        left = node.child_by_field_name("left")
        if left is None or left.type != "member_expression":
            return
        target = self._callee_name(left)
        if target == "module.exports":
            self.result.exports.append(
                ExportFact("default", "module.exports", self.file_path, self._line(node))
            )
        elif target is not None and target.startswith("module.exports."):
            self.result.exports.append(
                ExportFact(target.split(".")[-1], "module.exports.property", self.file_path, self._line(node))
            )
