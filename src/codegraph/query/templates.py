"""
Cypher templates for common questions about the graph.

Every template is a pure function returning a ``CypherQuery``; user values
travel as driver parameters, never interpolated into the query text.
"""

from typing import Any, Callable, Dict, NamedTuple


class CypherQuery(NamedTuple):
    text: str
    params: Dict[str, Any]


def find_function(name: str) -> CypherQuery:
    return CypherQuery(
        """
        MATCH (fn:Function)
        WHERE fn.name CONTAINS $name
        RETURN fn.name AS name, fn.file AS file, fn.startLine AS startLine,
               fn.endLine AS endLine, fn.purpose AS purpose
        ORDER BY fn.file, fn.startLine
        LIMIT 10
        """,
        {"name": name},
    )


def find_callers(name: str) -> CypherQuery:
    return CypherQuery(
        """
        MATCH (caller:Function)-[r:CALLS]->(fn:Function)
        WHERE fn.name CONTAINS $name
        RETURN caller.name AS caller, caller.file AS file, r.line AS line, fn.name AS callee
        ORDER BY file, line
        """,
        {"name": name},
    )


def find_callees(name: str) -> CypherQuery:
    return CypherQuery(
        """
        MATCH (fn:Function)-[r:CALLS]->(callee:Function)
        WHERE fn.name CONTAINS $name
        RETURN fn.name AS caller, callee.name AS callee, callee.file AS file, r.line AS line
        ORDER BY line
        """,
        {"name": name},
    )


def all_endpoints() -> CypherQuery:
    return CypherQuery(
        """
        MATCH (e:Endpoint)
        OPTIONAL MATCH (e)-[:ROUTES_TO]->(fn:Function)
        RETURN e.method AS method, e.path AS path, e.file AS file, e.line AS line,
               fn.name AS handler
        ORDER BY e.path
        """,
        {},
    )


def endpoint_dependencies(path: str) -> CypherQuery:
    """Handler of each matching endpoint and everything it reaches within three calls."""
    return CypherQuery(
        """
        MATCH (e:Endpoint)-[:ROUTES_TO]->(fn:Function)
        WHERE e.path CONTAINS $path
        OPTIONAL MATCH (fn)-[:CALLS*1..3]->(dep:Function)
        RETURN e.method AS method, e.path AS path, fn.name AS handler,
               collect(DISTINCT dep.name) AS dependencies
        """,
        {"path": path},
    )


def ui_to_api() -> CypherQuery:
    return CypherQuery(
        """
        MATCH (ui:UIComponent)-[:READS_DATA]->(e:Endpoint)
        RETURN ui.name AS component, ui.file AS file, e.method AS method, e.path AS path
        """,
        {},
    )


def similar_code(min_similarity: float = 0.7, limit: int = 20) -> CypherQuery:
    # Undirected match sees each pair twice; keep one orientation
    return CypherQuery(
        """
        MATCH (fn1:Function)-[r:SIMILAR_TO]-(fn2:Function)
        WHERE r.similarity >= $minSimilarity AND fn1.id < fn2.id
        RETURN fn1.name AS function1, fn1.file AS file1, fn2.name AS function2,
               fn2.file AS file2, r.similarity AS similarity, r.type AS type
        ORDER BY r.similarity DESC
        LIMIT $limit
        """,
        {"minSimilarity": float(min_similarity), "limit": int(limit)},
    )


def concepts() -> CypherQuery:
    return CypherQuery(
        """
        MATCH (c:Concept)
        OPTIONAL MATCH (fn:Function)-[:IMPLEMENTS]->(c)
        RETURN c.name AS name, c.description AS description, c.category AS category,
               collect(fn.name) AS implementedBy
        """,
        {},
    )


def data_flow(concept: str) -> CypherQuery:
    return CypherQuery(
        """
        MATCH (c:Concept {name: $concept})
        MATCH (fn:Function)-[:IMPLEMENTS]->(c)
        OPTIONAL MATCH (fn)-[:CALLS]->(called:Function)
        RETURN c.name AS concept, fn.name AS function, fn.file AS file,
               collect(called.name) AS calls
        """,
        {"concept": concept},
    )


def impact_analysis(function_name: str) -> CypherQuery:
    """Callers, routing endpoints and the UI components reading those endpoints."""
    return CypherQuery(
        """
        MATCH (fn:Function)
        WHERE fn.name CONTAINS $functionName
        OPTIONAL MATCH (caller:Function)-[:CALLS]->(fn)
        OPTIONAL MATCH (ui:UIComponent)-[:READS_DATA]->(:Endpoint)-[:ROUTES_TO]->(fn)
        OPTIONAL MATCH (e:Endpoint)-[:ROUTES_TO]->(fn)
        RETURN fn.name AS name, fn.file AS file,
               collect(DISTINCT caller.name) AS calledBy,
               collect(DISTINCT ui.name) AS uiDependents,
               collect(DISTINCT e.path) AS endpoints
        """,
        {"functionName": function_name},
    )


def overview() -> CypherQuery:
    return CypherQuery(
        """
        MATCH (n)
        RETURN labels(n)[0] AS type, count(*) AS count
        ORDER BY count DESC
        """,
        {},
    )


TEMPLATES: Dict[str, Callable[..., CypherQuery]] = {
    "find_function": find_function,
    "find_callers": find_callers,
    "find_callees": find_callees,
    "all_endpoints": all_endpoints,
    "endpoint_dependencies": endpoint_dependencies,
    "ui_to_api": ui_to_api,
    "similar_code": similar_code,
    "concepts": concepts,
    "data_flow": data_flow,
    "impact_analysis": impact_analysis,
    "overview": overview,
}
