"""Exception types for the knowledge graph builder."""


class CodeGraphError(Exception):
    """Base class for all codegraph errors."""


class SetupError(CodeGraphError):
    """Store credentials are missing/invalid or the store is unreachable. Fatal."""


class ParseError(CodeGraphError):
    """A single file could not be parsed; its contribution is dropped."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Failed to parse {path}: {reason}")
        self.path = path
        self.reason = reason


class AnnotationError(CodeGraphError):
    """An optional LLM stage failed; ingestion continues without it."""


class QueryError(CodeGraphError):
    """An ad hoc or generated query failed to execute."""


class LLMError(CodeGraphError):
    """The language model call failed after all retries."""
