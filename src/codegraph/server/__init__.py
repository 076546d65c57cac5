"""MCP server exposing graph queries to AI agents."""
