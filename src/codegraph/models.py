"""Entity and fact types produced by the parsers and consumed by the loader."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class FileRecord:
    """A discovered source file."""

    path: str
    language: str
    line_count: int
    content_hash: str


@dataclass(frozen=True)
class FunctionEntity:
    """A named function, method or function-valued variable."""

    id: str
    name: str
    file: str
    start_line: int
    end_line: int
    is_async: bool = False
    parameters: tuple[str, ...] = ()
    is_exported: bool = False
    is_generator: bool = False
    code: str = ""


@dataclass(frozen=True)
class CallFact:
    """A call site. Only becomes a CALLS edge when both ends resolve."""

    callee: str
    file: str
    line: int
    caller: Optional[str] = None
    caller_id: Optional[str] = None
    argument_count: int = 0
    is_constructor: bool = False
    # First argument when it is a string or template literal
    literal_argument: Optional[str] = None

    @property
    def callee_simple_name(self) -> str:
        return self.callee.split(".")[-1]


@dataclass(frozen=True)
class ImportSpecifier:
    local: Optional[str]
    imported: Optional[str]
    kind: str


@dataclass(frozen=True)
class ImportFact:
    source: str
    file: str
    line: int
    specifiers: tuple[ImportSpecifier, ...] = ()
    is_require: bool = False


@dataclass(frozen=True)
class ExportFact:
    name: str
    kind: str
    file: str
    line: int


@dataclass(frozen=True)
class VariableFact:
    id: str
    name: str
    file: str
    line: int
    kind: str
    value: Optional[str]


@dataclass(frozen=True)
class EndpointEntity:
    """An HTTP route registration. ``id`` is ``METHOD:PATH``."""

    id: str
    method: str
    path: str
    handler: str
    file: str
    line: int
    middleware: tuple[str, ...] = ()

    @property
    def has_named_handler(self) -> bool:
        return self.handler != "anonymous" and not self.handler.startswith("inline@")


@dataclass(frozen=True)
class CodeBlock:
    """Similarity input: one per extracted function."""

    hash: str
    function_id: str
    function_name: str
    file: str
    start_line: int
    end_line: int
    normalized_code: str
    line_count: int


@dataclass(frozen=True)
class UIComponent:
    id: str
    name: str
    type: str
    file: str
    html_id: Optional[str]
    class_name: Optional[str]
    line: int = 0
    inner_text: str = ""


@dataclass(frozen=True)
class EmbeddedScript:
    type: str
    file: str
    index: Optional[int] = None
    src: Optional[str] = None
    length: int = 0


@dataclass(frozen=True)
class ApiCall:
    type: str
    file: str
    line: int = 0
    caller: Optional[str] = None
    path: Optional[str] = None
    method: str = "GET"
    element_id: Optional[str] = None


@dataclass(frozen=True)
class EventHandler:
    element: str
    element_id: Optional[str]
    event: str
    handler: str
    file: str


@dataclass(frozen=True)
class FormInput:
    name: Optional[str]
    type: str
    id: Optional[str]


@dataclass(frozen=True)
class Form:
    id: str
    file: str
    form_id: Optional[str]
    action: Optional[str]
    method: str
    inputs: tuple[FormInput, ...] = ()


@dataclass(frozen=True)
class Concept:
    """A business-domain label proposed by the language model."""

    name: str
    description: str = ""
    category: str = ""
    implemented_by: tuple[str, ...] = ()
    related_endpoints: tuple[str, ...] = ()
    related_files: tuple[str, ...] = ()


@dataclass(frozen=True)
class SimilarityEdge:
    source_id: str
    target_id: str
    similarity: float
    type: str
    source_file: str = ""
    target_file: str = ""


@dataclass(frozen=True)
class Pattern:
    id: str
    signature: str
    function_ids: tuple[str, ...]
    count: int
    description: str
    type: str = "structural-similarity"


@dataclass
class SourceParseResult:
    """Output of a program-source parser for a single file."""

    functions: list[FunctionEntity] = field(default_factory=list)
    calls: list[CallFact] = field(default_factory=list)
    imports: list[ImportFact] = field(default_factory=list)
    exports: list[ExportFact] = field(default_factory=list)
    variables: list[VariableFact] = field(default_factory=list)
    endpoints: list[EndpointEntity] = field(default_factory=list)
    code_blocks: list[CodeBlock] = field(default_factory=list)

    def merge(self, other: "SourceParseResult") -> None:
        self.functions.extend(other.functions)
        self.calls.extend(other.calls)
        self.imports.extend(other.imports)
        self.exports.extend(other.exports)
        self.variables.extend(other.variables)
        self.endpoints.extend(other.endpoints)
        self.code_blocks.extend(other.code_blocks)


@dataclass
class MarkupParseResult(SourceParseResult):
    """Output of the markup parser; source fields come from inline scripts."""

    ui_components: list[UIComponent] = field(default_factory=list)
    embedded_scripts: list[EmbeddedScript] = field(default_factory=list)
    api_calls: list[ApiCall] = field(default_factory=list)
    event_handlers: list[EventHandler] = field(default_factory=list)
    forms: list[Form] = field(default_factory=list)


@dataclass
class CodebaseSnapshot:
    """Everything parsed from one ingestion run, accumulated across files."""

    files: list[FileRecord] = field(default_factory=list)
    functions: list[FunctionEntity] = field(default_factory=list)
    calls: list[CallFact] = field(default_factory=list)
    imports: list[ImportFact] = field(default_factory=list)
    exports: list[ExportFact] = field(default_factory=list)
    variables: list[VariableFact] = field(default_factory=list)
    endpoints: list[EndpointEntity] = field(default_factory=list)
    code_blocks: list[CodeBlock] = field(default_factory=list)
    ui_components: list[UIComponent] = field(default_factory=list)
    api_calls: list[ApiCall] = field(default_factory=list)
    event_handlers: list[EventHandler] = field(default_factory=list)
    forms: list[Form] = field(default_factory=list)

    def add(self, result: SourceParseResult) -> None:
        self.functions.extend(result.functions)
        self.calls.extend(result.calls)
        self.imports.extend(result.imports)
        self.exports.extend(result.exports)
        self.variables.extend(result.variables)
        self.endpoints.extend(result.endpoints)
        self.code_blocks.extend(result.code_blocks)
        if isinstance(result, MarkupParseResult):
            self.ui_components.extend(result.ui_components)
            self.api_calls.extend(result.api_calls)
            self.event_handlers.extend(result.event_handlers)
            self.forms.extend(result.forms)

    def counts(self) -> dict[str, int]:
        return {
            "files": len(self.files),
            "functions": len(self.functions),
            "calls": len(self.calls),
            "endpoints": len(self.endpoints),
            "imports": len(self.imports),
            "ui_components": len(self.ui_components),
            "api_calls": len(self.api_calls),
            "code_blocks": len(self.code_blocks),
        }
