"""Ingestion module exports."""

from codegraph.ingestion.graph import GraphLoader, GraphStore, Neo4jStore
from codegraph.ingestion.parser import CodeParser, Dialect
from codegraph.ingestion.pipeline import IngestionPipeline, IngestionSettings, PipelineReport

__all__ = [
    "CodeParser",
    "Dialect",
    "GraphLoader",
    "GraphStore",
    "IngestionPipeline",
    "IngestionSettings",
    "Neo4jStore",
    "PipelineReport",
]
