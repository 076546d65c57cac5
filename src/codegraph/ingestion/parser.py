import hashlib
import logging
import re
from enum import Enum
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Union

import tree_sitter_html
import tree_sitter_javascript
import tree_sitter_python
from tree_sitter import Language, Node, Parser

from codegraph.errors import ParseError
from codegraph.models import CodeBlock, FunctionEntity, MarkupParseResult, SourceParseResult

logger = logging.getLogger(__name__)


class Dialect(str, Enum):
    """Closed set of source dialects the builder understands."""

    JAVASCRIPT = "javascript"
    PYTHON = "python"
    HTML = "html"

    @property
    def is_markup(self) -> bool:
        return self is Dialect.HTML


EXTENSION_DIALECTS: Dict[str, Dialect] = {
    ".js": Dialect.JAVASCRIPT,
    ".jsx": Dialect.JAVASCRIPT,
    ".mjs": Dialect.JAVASCRIPT,
    ".cjs": Dialect.JAVASCRIPT,
    ".py": Dialect.PYTHON,
    ".html": Dialect.HTML,
    ".htm": Dialect.HTML,
}

ParseResult = Union[SourceParseResult, MarkupParseResult]


def dialect_for_path(file_path: str) -> Optional[Dialect]:
    """Pick the dialect for a file by its extension (None if unsupported)."""
    return EXTENSION_DIALECTS.get(PurePosixPath(file_path.replace("\\", "/")).suffix.lower())


# =========================================================================
# TREE-SITTER HELPERS
# =========================================================================


def node_text(node: Optional[Node], source: bytes) -> str:
    if node is None:
        return ""
    return source[node.start_byte:node.end_byte].decode("utf8", errors="replace")


def node_line(node: Node, line_offset: int = 0) -> int:
    return node.start_point[0] + 1 + line_offset


def node_end_line(node: Node, line_offset: int = 0) -> int:
    return node.end_point[0] + 1 + line_offset


def has_child_type(node: Node, child_type: str) -> bool:
    return any(child.type == child_type for child in node.children)


def iter_tree(root: Node):
    """Yield ``(node, leaving)`` pairs in document order without recursion."""
    stack = [(root, False)]
    while stack:
        node, leaving = stack.pop()
        yield node, leaving
        if leaving:
            continue
        stack.append((node, True))
        for child in reversed(node.children):
            stack.append((child, False))


def source_lines(code: str, start_line: int, end_line: int) -> str:
    """Return the full source lines ``start_line..end_line`` (1-based, inclusive)."""
    lines = code.split("\n")
    start = max(0, start_line - 1)
    end = min(len(lines), end_line)
    return "\n".join(lines[start:end])


# =========================================================================
# NORMALIZATION & CODE BLOCKS
# =========================================================================

_LINE_COMMENT = re.compile(r"//.*$", re.MULTILINE)
_BLOCK_COMMENT = re.compile(r"/\*[\s\S]*?\*/")
_HASH_COMMENT = re.compile(r"#.*$", re.MULTILINE)
_WHITESPACE = re.compile(r"\s+")
_SINGLE_QUOTED = re.compile(r"'[^']*'")
_DOUBLE_QUOTED = re.compile(r'"[^"]*"')
_BACKTICK_QUOTED = re.compile(r"`[^`]*`")


def normalize_code(code: str, dialect: Dialect = Dialect.JAVASCRIPT) -> str:
    """
    Normalize code for similarity comparison.

    Removes comments, collapses whitespace runs to single spaces and replaces
    string contents with a placeholder.
    """
    if not code:
        return ""
    if dialect is Dialect.PYTHON:
        code = _HASH_COMMENT.sub("", code)
    else:
        code = _LINE_COMMENT.sub("", code)
        code = _BLOCK_COMMENT.sub("", code)
    code = _WHITESPACE.sub(" ", code)
    code = _SINGLE_QUOTED.sub("'STR'", code)
    code = _DOUBLE_QUOTED.sub('"STR"', code)
    code = _BACKTICK_QUOTED.sub("`STR`", code)
    return code.strip()


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf8")).hexdigest()[:16]


def block_hash(normalized_code: str) -> str:
    """Hash of normalized code that ignores spacing entirely (``a + b`` == ``a+b``)."""
    return content_hash(_WHITESPACE.sub("", normalized_code))


def build_code_blocks(functions: List[FunctionEntity], dialect: Dialect) -> List[CodeBlock]:
    blocks = []
    for func in functions:
        normalized = normalize_code(func.code, dialect)
        blocks.append(
            CodeBlock(
                hash=block_hash(normalized),
                function_id=func.id,
                function_name=func.name,
                file=func.file,
                start_line=func.start_line,
                end_line=func.end_line,
                normalized_code=normalized,
                line_count=func.end_line - func.start_line + 1,
            )
        )
    return blocks


# =========================================================================
# DISPATCH
# =========================================================================


class CodeParser:
    """Dispatches a file to the parser for its dialect."""

    def __init__(self):
        self.languages: Dict[Dialect, Language] = {}
        self.parsers: Dict[Dialect, Parser] = {}
        self._init_parsers()

        # Imported here to avoid a cycle: the dialect parsers use the helpers above.
        from codegraph.ingestion.html_parser import HtmlParser
        from codegraph.ingestion.js_parser import JavaScriptParser
        from codegraph.ingestion.py_parser import PythonParser

        self.javascript = JavaScriptParser(self.parsers[Dialect.JAVASCRIPT])
        self.python = PythonParser(self.parsers[Dialect.PYTHON], self.languages[Dialect.PYTHON])
        self.html = HtmlParser(self.parsers[Dialect.HTML], self.javascript)

    def _init_parsers(self) -> None:
        """Initializes Tree-sitter parsers for every supported dialect."""
        grammars = {
            Dialect.JAVASCRIPT: tree_sitter_javascript.language(),
            Dialect.PYTHON: tree_sitter_python.language(),
            Dialect.HTML: tree_sitter_html.language(),
        }
        for dialect, grammar in grammars.items():
            lang = Language(grammar)
            self.languages[dialect] = lang
            self.parsers[dialect] = Parser(lang)

    def parse(self, content: str, file_path: str) -> ParseResult:
        """
        Parse one file into its entities.

        Raises:
            ParseError: if the extension is unsupported or extraction fails.
        """
        dialect = dialect_for_path(file_path)
        if dialect is None:
            raise ParseError(file_path, "unsupported file extension")

        try:
            if dialect.is_markup:
                return self.parse_markup(content, file_path)
            return self.parse_source(content, file_path, dialect)
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(file_path, str(e)) from e

    def parse_source(
        self,
        content: str,
        file_path: str,
        dialect: Dialect = Dialect.JAVASCRIPT,
        line_offset: int = 0,
    ) -> SourceParseResult:
        if dialect is Dialect.PYTHON:
            return self.python.parse(content, file_path, line_offset=line_offset)
        if dialect is Dialect.JAVASCRIPT:
            return self.javascript.parse(content, file_path, line_offset=line_offset)
        raise ParseError(file_path, f"{dialect.value} is not a program-source dialect")

    def parse_markup(self, content: str, file_path: str) -> MarkupParseResult:
        return self.html.parse(content, file_path)
