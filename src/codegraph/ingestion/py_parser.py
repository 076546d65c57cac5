import logging
import re
from typing import List, Optional, Tuple

from tree_sitter import Language, Node, Parser, Query, QueryCursor

from codegraph.ingestion.parser import (
    Dialect,
    build_code_blocks,
    has_child_type,
    iter_tree,
    node_text,
    source_lines,
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

# Flask / FastAPI style route decorators: @app.get("/x"), @bp.route("/x", methods=[...])
ROUTER_OBJECTS = {"app", "router", "bp", "blueprint", "api"}
ROUTE_METHODS = {"get", "post", "put", "delete", "patch", "options", "head", "route", "api_route"}
MULTI_METHOD_DECORATORS = {"route", "api_route"}

TRACKED_VALUE_TYPES = {"dictionary", "list", "call"}
SCOPE_TYPES = {"function_definition", "lambda", "class_definition"}

ROUTE_QUERY = """
(decorated_definition
    (decorator
        (call
            function: (attribute
                object: (identifier) @router
                attribute: (identifier) @method)
            arguments: (argument_list) @args)) @decorator
    definition: (function_definition
        name: (identifier) @handler)) @route
"""

_DOTTED_NAME = re.compile(r"^[A-Za-z_]\w*(\.[A-Za-z_]\w*)*$")


class PythonParser:
    """Extracts the same entity set as the JavaScript parser from Python modules."""

    def __init__(self, parser: Parser, language: Language):
        self.parser = parser
        self.language = language
        self.route_query = Query(self.language, ROUTE_QUERY)

    def parse(self, code: str, file_path: str, line_offset: int = 0) -> SourceParseResult:
        source = bytes(code, "utf8")
        tree = self.parser.parse(source)
        if tree.root_node.has_error:
            logger.debug(f"Syntax errors in {file_path}, using recovered tree")

        visitor = _PythonVisitor(source, code, file_path, line_offset)
        visitor.visit(tree.root_node)
        visitor.collect_module_names(tree.root_node)

        result = visitor.result
        result.endpoints.extend(self._extract_routes(tree.root_node, visitor))
        result.code_blocks = build_code_blocks(result.functions, Dialect.PYTHON)
        return result

    def _extract_routes(self, root: Node, visitor: "_PythonVisitor") -> List[EndpointEntity]:
        endpoints = []
        cursor = QueryCursor(self.route_query)
        matches = cursor.matches(root)

        for match_id, match_map in matches:
            if "router" not in match_map or "method" not in match_map:
                continue
            router = visitor.text(match_map["router"][0])
            decorator_method = visitor.text(match_map["method"][0])
            if router not in ROUTER_OBJECTS or decorator_method not in ROUTE_METHODS:
                continue

            decorator = match_map["decorator"][0]
            args = match_map["args"][0]
            handler = visitor.text(match_map["handler"][0])
            route = match_map["route"][0]

            path = visitor.route_path(args)
            middleware = tuple(
                visitor.decorator_name(d)
                for d in route.named_children
                if d.type == "decorator" and d.id != decorator.id
            )
            if decorator_method in MULTI_METHOD_DECORATORS:
                methods = visitor.route_methods(args) or ["GET"]
            else:
                methods = [decorator_method.upper()]

            for method in methods:
                endpoints.append(
                    EndpointEntity(
                        id=f"{method}:{path}",
                        method=method,
                        path=path,
                        handler=handler,
                        file=visitor.file_path,
                        line=visitor.line(decorator),
                        middleware=middleware,
                    )
                )

        endpoints.sort(key=lambda e: e.line)
        return endpoints


class _PythonVisitor:
    def __init__(self, source: bytes, code: str, file_path: str, line_offset: int):
        self.source = source
        self.code = code
        self.file_path = file_path
        self.line_offset = line_offset
        self.result = SourceParseResult()
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

    def text(self, node: Optional[Node]) -> str:
        return node_text(node, self.source)

    def line(self, node: Node) -> int:
        return node.start_point[0] + 1 + self.line_offset

    def string_value(self, node: Node) -> Optional[str]:
        """Contents of a string literal; f-string interpolations become ``*``."""
        if node.type != "string":
            return None
        value = ""
        for child in node.children:
            if child.type in ("string_content", "escape_sequence"):
                value += self.text(child)
            elif child.type == "interpolation":
                value += "*"
        return value

    # ------------------------------------------------------------------
    # functions
    # ------------------------------------------------------------------

    def _owner_class(self, node: Node) -> Optional[str]:
        parent = node.parent
        if parent is not None and parent.type == "decorated_definition":
            parent = parent.parent
        if parent is not None and parent.type == "block":
            cls = parent.parent
            if cls is not None and cls.type == "class_definition":
                return self.text(cls.child_by_field_name("name")) or None
        return None

    def _is_top_level(self, node: Node) -> bool:
        parent = node.parent
        if parent is not None and parent.type == "decorated_definition":
            parent = parent.parent
        return parent is not None and parent.type == "module"

    def _parameter(self, node: Node) -> Optional[str]:
        if node.type == "identifier":
            return self.text(node)
        if node.type in ("default_parameter", "typed_default_parameter"):
            return f"{self.text(node.child_by_field_name('name'))}=default"
        if node.type == "typed_parameter":
            inner = node.named_children[0] if node.named_children else None
            return self.text(inner)
        if node.type in ("list_splat_pattern", "dictionary_splat_pattern"):
            return self.text(node)
        if node.type in ("keyword_separator", "positional_separator", "comment"):
            return None
        return "unknown"

    def _contains_yield(self, body: Optional[Node]) -> bool:
        if body is None:
            return False
        stack = list(body.children)
        while stack:
            node = stack.pop()
            if node.type == "yield":
                return True
            if node.type in SCOPE_TYPES:
                continue
            stack.extend(node.children)
        return False

    def _visit_function_definition(self, node: Node) -> None:
        name = self.text(node.child_by_field_name("name"))
        if not name:
            return
        owner = self._owner_class(node)
        qualified = f"{owner}.{name}" if owner else name

        params_node = node.child_by_field_name("parameters")
        parameters = ()
        if params_node is not None:
            parameters = tuple(
                p for p in (self._parameter(child) for child in params_node.named_children) if p is not None
            )

        start = node.start_point[0] + 1
        end = node.end_point[0] + 1
        start_line = start + self.line_offset
        func = FunctionEntity(
            id=f"{self.file_path}:{qualified}:{start_line}",
            name=qualified,
            file=self.file_path,
            start_line=start_line,
            end_line=end + self.line_offset,
            is_async=has_child_type(node, "async"),
            parameters=parameters,
            is_exported=self._is_top_level(node) and not name.startswith("_"),
            is_generator=self._contains_yield(node.child_by_field_name("body")),
            code=source_lines(self.code, start, end),
        )
        self.result.functions.append(func)
        self._function_stack.append((node.id, func))

    # ------------------------------------------------------------------
    # calls
    # ------------------------------------------------------------------

    def _visit_call(self, node: Node) -> None:
        fn = node.child_by_field_name("function")
        if fn is None or fn.type not in ("identifier", "attribute"):
            return
        callee = self.text(fn)
        if not _DOTTED_NAME.match(callee):
            return

        args_node = node.child_by_field_name("arguments")
        args = []
        if args_node is not None and args_node.type == "argument_list":
            args = [a for a in args_node.named_children if a.type != "comment"]

        caller = self._function_stack[-1][1] if self._function_stack else None
        self.result.calls.append(
            CallFact(
                callee=callee,
                file=self.file_path,
                line=self.line(node),
                caller=caller.name if caller else None,
                caller_id=caller.id if caller else None,
                argument_count=len(args),
                literal_argument=self.string_value(args[0]) if args else None,
            )
        )

    # ------------------------------------------------------------------
    # imports
    # ------------------------------------------------------------------

    def _specifier(self, node: Node, kind: str) -> ImportSpecifier:
        if node.type == "aliased_import":
            imported = self.text(node.child_by_field_name("name"))
            return ImportSpecifier(self.text(node.child_by_field_name("alias")), imported, kind)
        name = self.text(node)
        return ImportSpecifier(name, name, kind)

    def _visit_import_statement(self, node: Node) -> None:
        for child in node.children_by_field_name("name"):
            spec = self._specifier(child, "module")
            self.result.imports.append(
                ImportFact(source=spec.imported, file=self.file_path, line=self.line(node), specifiers=(spec,))
            )

    def _visit_import_from_statement(self, node: Node) -> None:
        module = self.text(node.child_by_field_name("module_name"))
        if not module:
            return
        specifiers = [self._specifier(child, "named") for child in node.children_by_field_name("name")]
        if has_child_type(node, "wildcard_import"):
            specifiers.append(ImportSpecifier("*", "*", "namespace"))
        self.result.imports.append(
            ImportFact(source=module, file=self.file_path, line=self.line(node), specifiers=tuple(specifiers))
        )

    # ------------------------------------------------------------------
    # module-level names
    # ------------------------------------------------------------------

    def collect_module_names(self, root: Node) -> None:
        """Public top-level definitions become exports; container assignments become variables."""
        for child in root.named_children:
            definition = child
            if child.type == "decorated_definition":
                definition = child.child_by_field_name("definition") or child
            line = self.line(child)

            if definition.type in ("function_definition", "class_definition"):
                name = self.text(definition.child_by_field_name("name"))
                if name and not name.startswith("_"):
                    kind = "function" if definition.type == "function_definition" else "class"
                    self.result.exports.append(ExportFact(name, kind, self.file_path, line))
                continue

            if child.type != "expression_statement" or not child.named_children:
                continue
            assignment = child.named_children[0]
            if assignment.type != "assignment":
                continue
            left = assignment.child_by_field_name("left")
            right = assignment.child_by_field_name("right")
            if left is None or left.type != "identifier":
                continue
            name = self.text(left)
            if not name.startswith("_"):
                self.result.exports.append(ExportFact(name, "variable", self.file_path, line))
            if right is not None and right.type in TRACKED_VALUE_TYPES:
                summary = right.type
                if right.type == "call":
                    summary = f"{self.text(right.child_by_field_name('function'))}()"
                self.result.variables.append(
                    VariableFact(
                        id=f"{self.file_path}:{name}:{line}",
                        name=name,
                        file=self.file_path,
                        line=line,
                        kind="assignment",
                        value=summary,
                    )
                )

    # ------------------------------------------------------------------
    # route decorator helpers
    # ------------------------------------------------------------------

    def route_path(self, args: Node) -> str:
        for arg in args.named_children:
            if arg.type == "string":
                return self.string_value(arg) or ""
            if arg.type == "keyword_argument":
                if self.text(arg.child_by_field_name("name")) == "path":
                    value = arg.child_by_field_name("value")
                    if value is not None and value.type == "string":
                        return self.string_value(value) or ""
                continue
            if arg.type == "identifier":
                return f"[{self.text(arg)}]"
            break
        return ""

    def route_methods(self, args: Node) -> List[str]:
        for arg in args.named_children:
            if arg.type != "keyword_argument" or self.text(arg.child_by_field_name("name")) != "methods":
                continue
            value = arg.child_by_field_name("value")
            if value is None:
                return []
            methods = []
            for item in value.named_children:
                literal = self.string_value(item)
                if literal:
                    methods.append(literal.upper())
            return methods
        return []

    def decorator_name(self, decorator: Node) -> str:
        expr = decorator.named_children[0] if decorator.named_children else None
        if expr is not None and expr.type == "call":
            expr = expr.child_by_field_name("function")
        if expr is not None and expr.type in ("identifier", "attribute"):
            return self.text(expr)
        return "anonymous"
