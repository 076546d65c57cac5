"""
LLM-backed concept extraction and function annotation.

Both stages are optional: a failing model call raises AnnotationError,
which the pipeline downgrades to a warning.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from codegraph.errors import AnnotationError, LLMError
from codegraph.llm.base import LLMAdapter
from codegraph.models import CodebaseSnapshot, Concept, FunctionEntity

logger = logging.getLogger(__name__)

MIN_ANNOTATION_SPAN = 5
CONCEPT_CATEGORIES = {"core-feature", "infrastructure", "integration", "utility"}

_JSON_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

CONCEPT_PROMPT = """You are analyzing a codebase to extract high-level business concepts and domains.

Here's a summary of the codebase:

{summary}

Please identify:

1. **Core Concepts/Domains**: The main business domains this code handles (e.g., "User Authentication", "Image Processing", "Job Queue Management")

2. **For each concept, provide**:
   - A clear name
   - A brief description
   - Category (one of: core-feature, infrastructure, integration, utility)
   - Which functions implement this concept (by function name)

3. **Data Flow Patterns**: How data moves through the system (e.g., "Upload → Compression → Storage → Analysis → Response")

Respond in JSON format:
{{
  "concepts": [
    {{
      "name": "Concept Name",
      "description": "What this concept represents",
      "category": "core-feature|infrastructure|integration|utility",
      "implementedBy": ["functionName1", "functionName2"],
      "relatedEndpoints": ["/api/path"],
      "relatedFiles": ["path/to/file.js"]
    }}
  ],
  "dataFlows": [
    {{
      "name": "Flow Name",
      "description": "Description of data flow",
      "steps": ["step1", "step2", "step3"],
      "involvedFunctions": ["func1", "func2"]
    }}
  ]
}}"""

ANNOTATION_PROMPT = """Analyze this function and provide semantic annotations:

Function: {name}
File: {file}
Lines: {start_line}-{end_line}
Parameters: {parameters}
Async: {is_async}

Code:
```{language}
{code}
```

Context (other functions in same file):
{siblings}

Provide a JSON response:
{{
  "purpose": "One sentence description of what this function does",
  "businessDomain": "The high-level domain this belongs to",
  "inputDescription": "What the inputs represent",
  "outputDescription": "What the function returns/produces",
  "sideEffects": ["List of side effects like DB writes, API calls, etc."],
  "complexity": "low|medium|high"
}}"""


@dataclass
class ConceptExtraction:
    concepts: List[Concept] = field(default_factory=list)
    data_flows: List[Dict[str, Any]] = field(default_factory=list)


def parse_json_response(text: str) -> Any:
    """Parse JSON from a model reply, preferring a fenced ```json block."""
    match = _JSON_BLOCK.search(text)
    payload = match.group(1) if match and match.group(1).strip() else text
    return json.loads(payload.strip())


def build_codebase_summary(snapshot: CodebaseSnapshot, max_variables: int = 20) -> str:
    lines = ["## Files"]
    for f in snapshot.files:
        lines.append(f"- {f.path} ({f.language}, {f.line_count} lines)")

    lines.append("")
    lines.append("## API Endpoints")
    for e in snapshot.endpoints:
        lines.append(f"- {e.method} {e.path} → {e.handler} ({e.file}:{e.line})")

    lines.append("")
    lines.append("## Functions")
    by_file: Dict[str, List[FunctionEntity]] = {}
    for func in snapshot.functions:
        by_file.setdefault(func.file, []).append(func)
    for file_path, funcs in by_file.items():
        lines.append("")
        lines.append(f"### {file_path}")
        for func in funcs:
            prefix = "async " if func.is_async else ""
            lines.append(
                f"- {prefix}{func.name}({', '.join(func.parameters)}) "
                f"[lines {func.start_line}-{func.end_line}]"
            )

    lines.append("")
    lines.append("## Key Variables")
    for v in snapshot.variables[:max_variables]:
        lines.append(f"- {v.name}: {v.value} ({v.file}:{v.line})")

    lines.append("")
    lines.append("## External Dependencies")
    seen = set()
    for imp in snapshot.imports:
        if imp.source.startswith(".") or imp.source in seen:
            continue
        seen.add(imp.source)
        lines.append(f"- {imp.source}")

    return "\n".join(lines) + "\n"


def _as_tuple(value: Any) -> tuple:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)):
        return tuple(str(v) for v in value if v)
    return ()


def _concept_from_dict(raw: Dict[str, Any]) -> Optional[Concept]:
    name = str(raw.get("name") or "").strip()
    if not name:
        return None
    category = str(raw.get("category") or "").strip()
    if category not in CONCEPT_CATEGORIES:
        logger.debug(f"Concept {name!r} has unknown category {category!r}")
    return Concept(
        name=name,
        description=str(raw.get("description") or ""),
        category=category,
        implemented_by=_as_tuple(raw.get("implementedBy")),
        related_endpoints=_as_tuple(raw.get("relatedEndpoints")),
        related_files=_as_tuple(raw.get("relatedFiles")),
    )


def extract_concepts(snapshot: CodebaseSnapshot, llm: LLMAdapter) -> ConceptExtraction:
    """
    Ask the model for business concepts and data flows.

    Raises:
        AnnotationError: if the model call fails or the reply is not valid JSON.
    """
    logger.info("🧠 Extracting business concepts...")
    prompt = CONCEPT_PROMPT.format(summary=build_codebase_summary(snapshot))

    try:
        text = llm.generate_text(prompt)
    except LLMError as e:
        raise AnnotationError(f"Concept extraction failed: {e}") from e

    try:
        payload = parse_json_response(text)
    except json.JSONDecodeError as e:
        raise AnnotationError(f"Concept extraction returned invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise AnnotationError("Concept extraction returned a non-object JSON payload")

    concepts = []
    seen = set()
    for raw in payload.get("concepts") or []:
        if not isinstance(raw, dict):
            continue
        concept = _concept_from_dict(raw)
        if concept is not None and concept.name not in seen:
            seen.add(concept.name)
            concepts.append(concept)

    data_flows = [flow for flow in payload.get("dataFlows") or [] if isinstance(flow, dict)]
    logger.info(f"✅ Found {len(concepts)} concepts and {len(data_flows)} data flows")
    return ConceptExtraction(concepts=concepts, data_flows=data_flows)


def annotation_targets(functions: Sequence[FunctionEntity], limit: int) -> List[FunctionEntity]:
    """Functions spanning at least five lines, capped at ``limit``."""
    eligible = [f for f in functions if f.end_line - f.start_line >= MIN_ANNOTATION_SPAN]
    return eligible[:max(0, limit)]


def annotate_function(
    func: FunctionEntity, llm: LLMAdapter, siblings: Sequence[FunctionEntity] = ()
) -> Dict[str, Any]:
    """
    Annotate one function.

    Raises:
        LLMError: if the model call fails.
        ValueError: if the reply is not a JSON object.
    """
    language = "python" if func.file.endswith(".py") else "javascript"
    prompt = ANNOTATION_PROMPT.format(
        name=func.name,
        file=func.file,
        start_line=func.start_line,
        end_line=func.end_line,
        parameters=", ".join(func.parameters) or "none",
        is_async=str(func.is_async).lower(),
        language=language,
        code=func.code,
        siblings="\n".join(f"- {s.name}" for s in siblings) or "none",
    )
    annotation = parse_json_response(llm.generate_text(prompt))
    if not isinstance(annotation, dict):
        raise ValueError("annotation is not a JSON object")
    return annotation


def annotate_functions(
    functions: Sequence[FunctionEntity], llm: LLMAdapter, limit: int = 20
) -> Dict[str, Dict[str, Any]]:
    """
    Annotate eligible functions sequentially, keyed by function id.

    A reply that cannot be parsed skips that function; a failing model call
    aborts the stage.

    Raises:
        AnnotationError: if a model call fails.
    """
    targets = annotation_targets(functions, limit)
    logger.info(f"📝 Annotating {len(targets)} functions...")

    annotations = {}
    for func in targets:
        siblings = [f for f in functions if f.file == func.file and f.name != func.name]
        try:
            annotations[func.id] = annotate_function(func, llm, siblings)
        except LLMError as e:
            raise AnnotationError(f"Annotation failed at {func.id}: {e}") from e
        except ValueError as e:
            logger.warning(f"⚠️  Could not parse annotation for {func.id}: {e}")

    return annotations
