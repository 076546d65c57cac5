"""
Graph model and store adapter.

Maps parsed entities onto the Neo4j property-graph schema. Every load is a
MERGE-by-key upsert and every relationship re-resolves both endpoints at
load time, so re-running ingestion on unchanged source is idempotent.
"""

import logging
import posixpath
import time
from typing import Any, Collection, Dict, Iterable, List, Optional, Protocol, Sequence
from urllib.parse import urlsplit

import neo4j

from codegraph.errors import QueryError, SetupError
from codegraph.ingestion.parser import Dialect, dialect_for_path
from codegraph.models import (
    ApiCall,
    CallFact,
    Concept,
    EndpointEntity,
    FileRecord,
    FunctionEntity,
    ImportFact,
    SimilarityEdge,
    UIComponent,
)

logger = logging.getLogger(__name__)


class GraphStore(Protocol):
    """The narrow interface the core needs from a graph datastore."""

    def run_statement(self, text: str) -> None:
        ...

    def run_query(self, text: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        ...

    def close(self) -> None:
        ...


class CircuitBreaker:
    """
    Circuit breaker for repeated Neo4j connection failures.

    After a threshold of failures, the circuit opens and subsequent calls
    fail fast until a timeout period passes.
    """

    def __init__(self, failure_threshold=5, recovery_timeout=30):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time = None
        self.state = "CLOSED"  # CLOSED, OPEN, HALF_OPEN

    def call(self, func, *args, **kwargs):
        """Execute function with circuit breaker protection."""
        if self.state == "OPEN":
            if time.time() - self.last_failure_time > self.recovery_timeout:
                self.state = "HALF_OPEN"
                logger.info("Circuit breaker entering HALF_OPEN state")
            else:
                raise neo4j.exceptions.ServiceUnavailable(
                    "Circuit breaker is OPEN - Neo4j connection temporarily disabled"
                )

        try:
            result = func(*args, **kwargs)
            if self.state == "HALF_OPEN":
                self.state = "CLOSED"
                self.failure_count = 0
                logger.info("Circuit breaker reset to CLOSED")
            return result
        except neo4j.exceptions.ServiceUnavailable:
            self._record_failure()
            raise

    def _record_failure(self):
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.failure_count >= self.failure_threshold and self.state != "OPEN":
            self.state = "OPEN"
            logger.error(f"Circuit breaker OPENED after {self.failure_count} failures")


class Neo4jStore:
    """
    GraphStore backed by the official Neo4j driver.

    Use as a context manager so the driver is closed on every exit path:

        with Neo4jStore.connect(uri, user, password) as store:
            store.run_query("MATCH (n) RETURN count(n) AS n")
    """

    def __init__(self, driver: neo4j.Driver):
        self.driver = driver
        self.circuit_breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=30)

    @classmethod
    def connect(cls, uri: str, user: str, password: str) -> "Neo4jStore":
        """
        Open a driver and verify the server is reachable.

        Raises:
            SetupError: if the URI is invalid, credentials are rejected or the
                server cannot be reached.
        """
        driver = None
        try:
            driver = neo4j.GraphDatabase.driver(uri, auth=(user, password))
            driver.verify_connectivity()
        except (neo4j.exceptions.Neo4jError, neo4j.exceptions.DriverError, ValueError) as e:
            if driver is not None:
                driver.close()
            raise SetupError(f"Cannot connect to Neo4j at {uri}: {e}") from e
        logger.info(f"🔌 Connected to Neo4j at {uri}")
        return cls(driver)

    def run_statement(self, text: str) -> None:
        """
        Run a schema statement; "already exists" is ignored, other server errors are warnings.

        Raises:
            QueryError: if the driver loses the connection.
        """
        try:
            with self.driver.session() as session:
                session.run(text).consume()
        except neo4j.exceptions.Neo4jError as e:
            if "already exists" in str(e):
                logger.debug(f"Schema statement skipped: {e}")
            else:
                logger.warning(f"⚠️  Schema statement warning: {e}")
        except neo4j.exceptions.DriverError as e:
            raise QueryError(f"Schema statement failed: {e}") from e

    def run_query(self, text: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Run a query and return flat records.

        Raises:
            QueryError: wrapping any driver or server error.
        """
        def _execute():
            with self.driver.session() as session:
                result = session.run(text, params or {})
                return [record.data() for record in result]

        try:
            return self.circuit_breaker.call(_execute)
        except (neo4j.exceptions.Neo4jError, neo4j.exceptions.DriverError) as e:
            raise QueryError(str(e)) from e

    def close(self) -> None:
        """Closes database connection."""
        self.driver.close()

    def __enter__(self) -> "Neo4jStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


# =========================================================================
# RESOLUTION HELPERS
# =========================================================================

JS_RESOLVE_SUFFIXES = ["", ".js", ".jsx", ".mjs", ".cjs", "/index.js"]


def resolve_import_candidates(from_file: str, source: str) -> List[str]:
    """
    Candidate repo-relative paths an import may refer to.

    Bare JavaScript package names have no candidates. Python absolute
    imports yield module paths that may sit under a source directory.
    """
    if dialect_for_path(from_file) is Dialect.PYTHON:
        if source.startswith("."):
            dots = len(source) - len(source.lstrip("."))
            base = posixpath.dirname(from_file)
            for _ in range(dots - 1):
                base = posixpath.dirname(base)
            module = source[dots:].replace(".", "/")
            stem = posixpath.join(base, module) if module else base
        else:
            stem = source.replace(".", "/")
        if not stem:
            return []
        return [f"{stem}.py", f"{stem}/__init__.py"]

    if source.startswith("."):
        path = posixpath.normpath(posixpath.join(posixpath.dirname(from_file), source))
    elif source.startswith("/"):
        path = posixpath.normpath(source.lstrip("/"))
    else:
        return []
    if posixpath.splitext(path)[1] in (".js", ".jsx", ".mjs", ".cjs", ".json"):
        return [path]
    return [path + suffix for suffix in JS_RESOLVE_SUFFIXES]


def resolve_import(from_file: str, source: str, file_paths: Collection[str]) -> Optional[str]:
    """Resolve an import to a discovered file, or None for external dependencies."""
    candidates = resolve_import_candidates(from_file, source)
    for candidate in candidates:
        if candidate in file_paths:
            return candidate

    if dialect_for_path(from_file) is Dialect.PYTHON and not source.startswith("."):
        for candidate in candidates:
            for path in sorted(file_paths):
                if path.endswith("/" + candidate):
                    return path
    return None


def _path_segments(path: str) -> List[str]:
    path = urlsplit(path).path if "://" in path else path.split("?")[0].split("#")[0]
    return [segment for segment in path.split("/") if segment]


def _is_wildcard_segment(segment: str) -> bool:
    return segment.startswith(":") or "*" in segment or (segment.startswith("[") and segment.endswith("]"))


def path_matches_endpoint(call_path: str, endpoint_path: str) -> bool:
    """
    Match a client-side API path against a route path segment by segment.

    ``:param``, ``*`` and ``[name]`` segments on either side match any segment.
    """
    call_segments = _path_segments(call_path)
    endpoint_segments = _path_segments(endpoint_path)
    if not call_segments or len(call_segments) != len(endpoint_segments):
        return False
    for call_segment, endpoint_segment in zip(call_segments, endpoint_segments):
        if _is_wildcard_segment(call_segment) or _is_wildcard_segment(endpoint_segment):
            continue
        if call_segment != endpoint_segment:
            return False
    return True


# =========================================================================
# LOADER
# =========================================================================

SCHEMA_STATEMENTS = [
    # Uniqueness constraints (also back MERGE lookups)
    "CREATE CONSTRAINT file_path_unique IF NOT EXISTS FOR (f:File) REQUIRE f.path IS UNIQUE",
    "CREATE CONSTRAINT function_id_unique IF NOT EXISTS FOR (fn:Function) REQUIRE fn.id IS UNIQUE",
    "CREATE CONSTRAINT endpoint_id_unique IF NOT EXISTS FOR (e:Endpoint) REQUIRE e.id IS UNIQUE",
    "CREATE CONSTRAINT concept_name_unique IF NOT EXISTS FOR (c:Concept) REQUIRE c.name IS UNIQUE",
    "CREATE CONSTRAINT ui_component_id_unique IF NOT EXISTS FOR (ui:UIComponent) REQUIRE ui.id IS UNIQUE",
    "CREATE CONSTRAINT external_dep_name_unique IF NOT EXISTS FOR (d:ExternalDep) REQUIRE d.name IS UNIQUE",
    # Secondary indexes
    "CREATE INDEX function_name IF NOT EXISTS FOR (fn:Function) ON (fn.name)",
    "CREATE INDEX file_language IF NOT EXISTS FOR (f:File) ON (f.language)",
    "CREATE INDEX endpoint_method IF NOT EXISTS FOR (e:Endpoint) ON (e.method)",
    "CREATE INDEX endpoint_path IF NOT EXISTS FOR (e:Endpoint) ON (e.path)",
    "CREATE INDEX concept_category IF NOT EXISTS FOR (c:Concept) ON (c.category)",
    # Fulltext indexes for keyword search
    """
    CREATE FULLTEXT INDEX function_text IF NOT EXISTS
    FOR (fn:Function) ON EACH [fn.name, fn.description]
    """,
    """
    CREATE FULLTEXT INDEX concept_text IF NOT EXISTS
    FOR (c:Concept) ON EACH [c.name, c.description]
    """,
]

# A function "has" a simple name when its name is the name or ends in ".name"
FUNCTION_NAME_MATCH = "({var}.name = ${param} OR {var}.name ENDS WITH '.' + ${param})"


class GraphLoader:
    """Loads entity batches into a GraphStore, one round-trip per entity."""

    def __init__(self, store: GraphStore):
        self.store = store

    # =========================================================================
    # SCHEMA
    # =========================================================================

    def setup_schema(self) -> None:
        """Creates constraints and indexes; safe to re-run."""
        logger.info("🚀 Configuring database constraints & indexes...")
        for statement in SCHEMA_STATEMENTS:
            self.store.run_statement(statement)
        logger.info("✅ Database configured.")

    def clear_database(self) -> None:
        """Destructive delete-all; the only way stale nodes are removed."""
        logger.info("🧹 Clearing existing graph...")
        self.store.run_query("MATCH (n) DETACH DELETE n")

    # =========================================================================
    # NODES
    # =========================================================================

    def load_files(self, files: Sequence[FileRecord]) -> int:
        logger.info(f"📂 Loading {len(files)} files...")
        for file in files:
            self.store.run_query(
                """
                MERGE (f:File {path: $path})
                SET f.name = $name,
                    f.language = $language,
                    f.lineCount = $lineCount,
                    f.contentHash = $contentHash
                """,
                {
                    "path": file.path,
                    "name": posixpath.basename(file.path),
                    "language": file.language,
                    "lineCount": file.line_count,
                    "contentHash": file.content_hash,
                },
            )
        return len(files)

    def load_functions(self, functions: Sequence[FunctionEntity]) -> int:
        logger.info(f"🔧 Loading {len(functions)} functions...")
        for func in functions:
            self.store.run_query(
                """
                MERGE (fn:Function {id: $id})
                SET fn.name = $name,
                    fn.file = $file,
                    fn.startLine = $startLine,
                    fn.endLine = $endLine,
                    fn.isAsync = $isAsync,
                    fn.params = $params,
                    fn.isExported = $isExported,
                    fn.isGenerator = $isGenerator,
                    fn.description = coalesce(fn.description, '')
                WITH fn
                MATCH (f:File {path: $file})
                MERGE (f)-[:CONTAINS]->(fn)
                """,
                {
                    "id": func.id,
                    "name": func.name,
                    "file": func.file,
                    "startLine": func.start_line,
                    "endLine": func.end_line,
                    "isAsync": func.is_async,
                    "params": list(func.parameters),
                    "isExported": func.is_exported,
                    "isGenerator": func.is_generator,
                },
            )
        return len(functions)

    def load_endpoints(self, endpoints: Sequence[EndpointEntity]) -> int:
        """Endpoints keyed by METHOD:PATH; a repeated id keeps the last definition."""
        logger.info(f"🌐 Loading {len(endpoints)} endpoints...")
        for endpoint in endpoints:
            self.store.run_query(
                """
                MERGE (e:Endpoint {id: $id})
                SET e.method = $method,
                    e.path = $path,
                    e.handler = $handler,
                    e.file = $file,
                    e.line = $line,
                    e.middleware = $middleware
                WITH e
                MATCH (f:File {path: $file})
                MERGE (f)-[:DEFINES]->(e)
                """,
                {
                    "id": endpoint.id,
                    "method": endpoint.method,
                    "path": endpoint.path,
                    "handler": endpoint.handler,
                    "file": endpoint.file,
                    "line": endpoint.line,
                    "middleware": list(endpoint.middleware),
                },
            )

            if endpoint.has_named_handler:
                self.store.run_query(
                    f"""
                    MATCH (e:Endpoint {{id: $endpointId}})
                    MATCH (fn:Function)
                    WHERE {FUNCTION_NAME_MATCH.format(var="fn", param="handler")}
                    MERGE (e)-[:ROUTES_TO]->(fn)
                    """,
                    {"endpointId": endpoint.id, "handler": endpoint.handler},
                )
        return len(endpoints)

    def load_ui_components(self, components: Sequence[UIComponent]) -> int:
        logger.info(f"🖼️  Loading {len(components)} UI components...")
        for component in components:
            self.store.run_query(
                """
                MERGE (ui:UIComponent {id: $id})
                SET ui.name = $name,
                    ui.type = $type,
                    ui.file = $file,
                    ui.htmlId = $htmlId,
                    ui.className = $className,
                    ui.line = $line,
                    ui.innerText = $innerText
                WITH ui
                MATCH (f:File {path: $file})
                MERGE (f)-[:CONTAINS]->(ui)
                """,
                {
                    "id": component.id,
                    "name": component.name,
                    "type": component.type,
                    "file": component.file,
                    "htmlId": component.html_id or "",
                    "className": component.class_name or "",
                    "line": component.line,
                    "innerText": component.inner_text,
                },
            )
        return len(components)

    def load_concepts(self, concepts: Sequence[Concept]) -> int:
        logger.info(f"💡 Loading {len(concepts)} concepts...")
        for concept in concepts:
            self.store.run_query(
                """
                MERGE (c:Concept {name: $name})
                SET c.description = $description,
                    c.category = $category,
                    c.relatedFiles = $relatedFiles
                """,
                {
                    "name": concept.name,
                    "description": concept.description,
                    "category": concept.category,
                    "relatedFiles": list(concept.related_files),
                },
            )

            for func_name in concept.implemented_by:
                if not func_name:
                    continue
                self.store.run_query(
                    f"""
                    MATCH (c:Concept {{name: $conceptName}})
                    MATCH (fn:Function)
                    WHERE {FUNCTION_NAME_MATCH.format(var="fn", param="funcName")}
                    MERGE (fn)-[:IMPLEMENTS]->(c)
                    """,
                    {"conceptName": concept.name, "funcName": func_name},
                )

            for path in concept.related_endpoints:
                if not path:
                    continue
                self.store.run_query(
                    """
                    MATCH (c:Concept {name: $conceptName})
                    MATCH (e:Endpoint) WHERE e.path CONTAINS $path
                    MERGE (e)-[:IMPLEMENTS]->(c)
                    """,
                    {"conceptName": concept.name, "path": path},
                )
        return len(concepts)

    def load_function_annotations(self, annotations: Dict[str, Dict[str, Any]]) -> int:
        """Annotation fields keyed by function id; ``purpose`` also feeds the fulltext index."""
        logger.info(f"📝 Loading {len(annotations)} function annotations...")
        for func_id, annotation in annotations.items():
            side_effects = annotation.get("sideEffects") or []
            if isinstance(side_effects, str):
                side_effects = [side_effects]
            self.store.run_query(
                """
                MATCH (fn:Function {id: $funcId})
                SET fn.purpose = $purpose,
                    fn.description = $purpose,
                    fn.businessDomain = $businessDomain,
                    fn.inputDescription = $inputDescription,
                    fn.outputDescription = $outputDescription,
                    fn.complexity = $complexity,
                    fn.sideEffects = $sideEffects
                """,
                {
                    "funcId": func_id,
                    "purpose": annotation.get("purpose") or "",
                    "businessDomain": annotation.get("businessDomain") or "",
                    "inputDescription": annotation.get("inputDescription") or "",
                    "outputDescription": annotation.get("outputDescription") or "",
                    "complexity": annotation.get("complexity") or "",
                    "sideEffects": [str(s) for s in side_effects],
                },
            )
        return len(annotations)

    # =========================================================================
    # RELATIONSHIPS
    # =========================================================================

    def load_calls(self, calls: Sequence[CallFact]) -> int:
        """
        Best-effort CALLS edges.

        The caller resolves by name and file, the callee by simple name
        anywhere in the graph. Calls that do not resolve create nothing.
        """
        submitted = [call for call in calls if call.caller]
        logger.info(f"📞 Linking {len(submitted)} calls...")
        for call in submitted:
            self.store.run_query(
                f"""
                MATCH (caller:Function {{name: $callerName, file: $callerFile}})
                MATCH (callee:Function)
                WHERE {FUNCTION_NAME_MATCH.format(var="callee", param="calleeName")}
                MERGE (caller)-[r:CALLS]->(callee)
                SET r.line = $line,
                    r.file = $file
                """,
                {
                    "callerName": call.caller,
                    "callerFile": call.file,
                    "calleeName": call.callee_simple_name,
                    "line": call.line,
                    "file": call.file,
                },
            )
        return len(submitted)

    def load_imports(self, imports: Sequence[ImportFact], file_paths: Collection[str]) -> int:
        """IMPORTS edges to discovered files, or to ExternalDep nodes when unresolved."""
        logger.info(f"📦 Linking {len(imports)} imports...")
        known = set(file_paths)
        for imp in imports:
            specifiers = [s.local for s in imp.specifiers if s.local]
            target = resolve_import(imp.file, imp.source, known)
            if target is not None:
                self.store.run_query(
                    """
                    MATCH (f1:File {path: $file})
                    MATCH (f2:File {path: $target})
                    MERGE (f1)-[r:IMPORTS]->(f2)
                    SET r.line = $line,
                        r.specifiers = $specifiers
                    """,
                    {"file": imp.file, "target": target, "line": imp.line, "specifiers": specifiers},
                )
            else:
                self.store.run_query(
                    """
                    MERGE (d:ExternalDep {name: $name})
                    WITH d
                    MATCH (f:File {path: $file})
                    MERGE (f)-[r:IMPORTS]->(d)
                    SET r.line = $line,
                        r.specifiers = $specifiers
                    """,
                    {"name": imp.source, "file": imp.file, "line": imp.line, "specifiers": specifiers},
                )
        return len(imports)

    def load_similarities(self, similarities: Sequence[SimilarityEdge]) -> int:
        logger.info(f"🔁 Linking {len(similarities)} similar code pairs...")
        for sim in similarities:
            self.store.run_query(
                """
                MATCH (fn1:Function {id: $func1Id})
                MATCH (fn2:Function {id: $func2Id})
                MERGE (fn1)-[r:SIMILAR_TO]-(fn2)
                SET r.similarity = $similarity,
                    r.type = $type
                """,
                {
                    "func1Id": sim.source_id,
                    "func2Id": sim.target_id,
                    "similarity": sim.similarity,
                    "type": sim.type,
                },
            )
        return len(similarities)

    def load_api_call_relationships(
        self,
        api_calls: Sequence[ApiCall],
        endpoints: Iterable[EndpointEntity],
        ui_components: Iterable[UIComponent],
    ) -> int:
        """
        READS_DATA edges from every UI component in a calling file to each
        endpoint whose path matches the call's path.
        """
        endpoints = list(endpoints)
        files_with_ui = {component.file for component in ui_components}
        submitted = 0

        for call in api_calls:
            if not call.path or call.file not in files_with_ui:
                continue
            endpoint_ids = sorted({e.id for e in endpoints if path_matches_endpoint(call.path, e.path)})
            if not endpoint_ids:
                continue
            submitted += 1
            self.store.run_query(
                """
                MATCH (ui:UIComponent {file: $file})
                MATCH (e:Endpoint) WHERE e.id IN $endpointIds
                MERGE (ui)-[r:READS_DATA]->(e)
                SET r.method = $method,
                    r.line = $line,
                    r.type = $type
                """,
                {
                    "file": call.file,
                    "endpointIds": endpoint_ids,
                    "method": call.method or "GET",
                    "line": call.line or 0,
                    "type": call.type,
                },
            )

        logger.info(f"🔗 Linked {submitted} API calls to endpoints")
        return submitted
