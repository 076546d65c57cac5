"""
Query engine: templates, raw Cypher and natural-language questions.

Natural-language questions use a two-turn protocol. The first turn sees a
graph context snapshot and may answer directly or emit a ```cypher block;
when it does, the block is executed and a second turn interprets the rows.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from codegraph.errors import LLMError, QueryError
from codegraph.ingestion.graph import GraphStore
from codegraph.llm.base import LLMAdapter
from codegraph.query.templates import TEMPLATES, CypherQuery

logger = logging.getLogger(__name__)

CYPHER_BLOCK = re.compile(r"```cypher\s*\n(.*?)\n?```", re.DOTALL)

SYSTEM_PROMPT = """You are a code analysis assistant with access to a Neo4j knowledge graph of a codebase.

The graph contains:
- File: source files (path, language, lineCount)
- Function: name, file, startLine, endLine, params, isAsync, purpose
- Endpoint: HTTP routes with method, path, handler
- UIComponent: frontend sections (name, type, file)
- Concept: business domains (name, description, category)
- ExternalDep: imported packages that are not part of the codebase
- Relationships: CONTAINS, DEFINES, CALLS, IMPORTS, ROUTES_TO, IMPLEMENTS, SIMILAR_TO, READS_DATA

Here's the current graph context:
{context}

When answering questions:
1. Reference specific files and line numbers when possible
2. Explain the relationships and data flow
3. If asked about changes/refactoring, list all affected components
4. Generate Cypher queries when more specific data is needed

Format line references as: `filename:lineNumber`"""

QUESTION_PROMPT = """Question about the codebase: {question}

If you need to run a Cypher query to answer this, output it in a code block with ```cypher and I'll run it for you. Otherwise, answer directly based on the context provided."""

FOLLOW_UP_PROMPT = """Original question: {question}

I ran this Cypher query:
```cypher
{query}
```

Results:
{results}

Please provide a clear, helpful answer based on these results. Reference specific files and line numbers."""

# Context slice -> template name
CONTEXT_SLICES = {
    "overview": "overview",
    "endpoints": "all_endpoints",
    "concepts": "concepts",
    "similarities": "similar_code",
    "ui_connections": "ui_to_api",
}


@dataclass
class Answer:
    """Result of a natural-language question."""

    text: str
    query: Optional[str] = None
    results: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None


def extract_cypher(text: str) -> Optional[str]:
    """Return the first ```cypher block in a model reply, if any."""
    match = CYPHER_BLOCK.search(text)
    if not match:
        return None
    query = match.group(1).strip()
    return query or None


class QueryEngine:
    """Runs queries against a GraphStore; ``llm`` is only needed for ``ask``."""

    def __init__(self, store: GraphStore, llm: Optional[LLMAdapter] = None):
        self.store = store
        self.llm = llm

    def run_cypher(self, text: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Run a Cypher query.

        Raises:
            QueryError: if the store rejects or fails the query.
        """
        try:
            return self.store.run_query(text, params or {})
        except QueryError:
            raise
        except Exception as e:
            raise QueryError(str(e)) from e

    def run_template(self, name: str, **params: Any) -> List[Dict[str, Any]]:
        """
        Run a named template.

        Raises:
            QueryError: if the template is unknown, its parameters do not fit
                or the query fails.
        """
        template = TEMPLATES.get(name)
        if template is None:
            raise QueryError(f"Unknown template: {name}. Available: {', '.join(sorted(TEMPLATES))}")
        try:
            query = template(**params)
        except (TypeError, ValueError) as e:
            raise QueryError(f"Invalid parameters for template {name}: {e}") from e
        return self.run_query(query)

    def run_query(self, query: CypherQuery) -> List[Dict[str, Any]]:
        return self.run_cypher(query.text, query.params)

    def build_context(self) -> Dict[str, List[Dict[str, Any]]]:
        """Graph snapshot for the first turn; a failing slice is empty."""
        context = {}
        for name, template_name in CONTEXT_SLICES.items():
            try:
                context[name] = self.run_template(template_name)
            except QueryError as e:
                logger.debug(f"Context slice {name} unavailable: {e}")
                context[name] = []
        return context

    def ask(self, question: str) -> Answer:
        """
        Answer a natural-language question.

        Raises:
            LLMError: if no language model is configured or a model call fails.
        """
        if self.llm is None:
            raise LLMError("A language model is required for natural-language queries")

        context = self.build_context()
        system_prompt = SYSTEM_PROMPT.format(context=json.dumps(context, indent=2, default=str))
        first = self.llm.generate_text(
            QUESTION_PROMPT.format(question=question), system_prompt=system_prompt
        )

        query = extract_cypher(first)
        if query is None:
            return Answer(text=first)

        logger.info("🔎 Running generated Cypher query...")
        try:
            results = self.run_cypher(query)
        except QueryError as e:
            return Answer(
                text=f"{first}\n\n(Note: Failed to run query: {e})",
                query=query,
                error=str(e),
            )

        second = self.llm.generate_text(
            FOLLOW_UP_PROMPT.format(
                question=question,
                query=query,
                results=json.dumps(results, indent=2, default=str),
            )
        )
        return Answer(text=second, query=query, results=results)
