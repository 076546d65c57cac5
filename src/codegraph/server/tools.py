from typing import Any, List, Optional
import logging

from codegraph.errors import LLMError, QueryError
from codegraph.query.engine import QueryEngine

logger = logging.getLogger(__name__)


def _join(values: Optional[List[Any]]) -> str:
    values = [v for v in values or [] if v]
    return ", ".join(f"`{v}`" for v in values) if values else "None"


class Toolkit:
    """
    Markdown views over the query engine.
    Separated from the Server so it can be tested or used in CLI/Scripts directly.
    """
    def __init__(self, engine: QueryEngine):
        self.engine = engine

    def find_function(self, name: str) -> str:
        try:
            results = self.engine.run_template("find_function", name=name)
        except QueryError as e:
            logger.error(f"find_function failed: {e}")
            return f"❌ Failed to find function: {e}"

        if not results:
            return f"No functions matching `{name}` found in the graph."

        report = f"### Found {len(results)} function(s) matching '{name}':\n\n"
        for r in results:
            report += f"#### ⚡ {r['name']}\n"
            report += f"**Location:** `{r['file']}:{r['startLine']}-{r['endLine']}`\n"
            if r.get("purpose"):
                report += f"**Purpose:** {r['purpose']}\n"
            report += "\n"
        return report.strip()

    def find_callers(self, name: str) -> str:
        try:
            results = self.engine.run_template("find_callers", name=name)
        except QueryError as e:
            logger.error(f"find_callers failed: {e}")
            return f"❌ Failed to find callers: {e}"

        if not results:
            return f"No callers of `{name}` found in the graph."

        report = f"### Callers of `{name}` ({len(results)})\n"
        for r in results:
            report += f"- `{r['caller']}` → `{r['callee']}` at `{r['file']}:{r['line']}`\n"
        return report.strip()

    def list_endpoints(self) -> str:
        try:
            results = self.engine.run_template("all_endpoints")
        except QueryError as e:
            logger.error(f"list_endpoints failed: {e}")
            return f"❌ Failed to list endpoints: {e}"

        if not results:
            return "No endpoints found in the graph."

        report = f"### 🌐 Endpoints ({len(results)})\n"
        for r in results:
            handler = f" → `{r['handler']}`" if r.get("handler") else ""
            report += f"- **{r['method']}** `{r['path']}`{handler} (`{r['file']}:{r['line']}`)\n"
        return report.strip()

    def impact_analysis(self, function_name: str) -> str:
        """What depends on the named function: callers, endpoints and UI components."""
        try:
            results = self.engine.run_template("impact_analysis", function_name=function_name)
        except QueryError as e:
            logger.error(f"impact_analysis failed: {e}")
            return f"❌ Failed to analyze impact: {e}"

        if not results:
            return f"No functions matching `{function_name}` found in the graph."

        report = f"## Impact Analysis for `{function_name}`\n\n"
        for r in results:
            report += f"### ⚡ {r['name']} (`{r['file']}`)\n"
            report += f"**Called by:** {_join(r.get('calledBy'))}\n"
            report += f"**Endpoints:** {_join(r.get('endpoints'))}\n"
            report += f"**UI dependents:** {_join(r.get('uiDependents'))}\n\n"
        return report.strip()

    def similar_code(self, min_similarity: float = 0.7, limit: int = 20) -> str:
        try:
            results = self.engine.run_template(
                "similar_code", min_similarity=min_similarity, limit=limit
            )
        except QueryError as e:
            logger.error(f"similar_code failed: {e}")
            return f"❌ Failed to find similar code: {e}"

        if not results:
            return f"No similar code pairs at or above {min_similarity:.2f}."

        report = f"### 🔁 Similar code ({len(results)} pairs)\n"
        for r in results:
            report += (
                f"- `{r['function1']}` (`{r['file1']}`) ↔ `{r['function2']}` (`{r['file2']}`)"
                f" - {r['similarity']:.2f} {r['type']}\n"
            )
        return report.strip()

    def ask_codebase(self, question: str) -> str:
        try:
            answer = self.engine.ask(question)
        except LLMError as e:
            logger.error(f"ask_codebase failed: {e}")
            return f"❌ Failed to answer question: {e}"

        if answer.query:
            return f"{answer.text}\n\n---\n*Query used:*\n```cypher\n{answer.query}\n```"
        return answer.text
