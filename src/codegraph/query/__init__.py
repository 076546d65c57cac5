"""Query module exports."""

from codegraph.query.engine import Answer, QueryEngine, extract_cypher
from codegraph.query.templates import TEMPLATES, CypherQuery

__all__ = [
    "Answer",
    "CypherQuery",
    "QueryEngine",
    "TEMPLATES",
    "extract_cypher",
]
