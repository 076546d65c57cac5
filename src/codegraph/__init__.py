"""codegraph: code knowledge graph builder for Neo4j."""

__version__ = "0.1.0"
