"""
MCP Server for the code knowledge graph.

Exposes graph queries to AI agents via the Model Context Protocol. The
server owns one store, opened at start and closed when the server exits.
"""

import logging
import time
from datetime import datetime, timedelta
from functools import wraps
from pathlib import Path
from typing import Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from codegraph.config import Config, find_repo_root
from codegraph.errors import LLMError
from codegraph.ingestion.graph import Neo4jStore
from codegraph.llm import get_adapter
from codegraph.query.engine import QueryEngine
from codegraph.server.tools import Toolkit

logger = logging.getLogger(__name__)

# Rate limiting configuration
RATE_LIMIT_REQUESTS = 100  # Max requests per window
RATE_LIMIT_WINDOW = 60     # Window in seconds


def rate_limit(request_log: Dict[str, List[datetime]]):
    """Rate limiting decorator for MCP tools, counting calls per tool name."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            key = func.__name__
            now = datetime.now()

            # Remove requests outside the window
            window_start = now - timedelta(seconds=RATE_LIMIT_WINDOW)
            request_log[key] = [t for t in request_log.get(key, []) if t > window_start]

            if len(request_log[key]) >= RATE_LIMIT_REQUESTS:
                logger.warning(f"Rate limit exceeded for {key}")
                return "❌ Rate limit exceeded. Please try again later."

            request_log[key].append(now)
            return func(*args, **kwargs)
        return wrapper
    return decorator


def log_tool_call(func):
    """Decorator to log tool calls for debugging."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.time()
        tool_name = func.__name__

        logger.info(f"🔧 Tool called: {tool_name}")
        logger.debug(f"   Args: {args}, Kwargs: {kwargs}")

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            logger.error(f"❌ Tool {tool_name} failed after {time.time() - start_time:.2f}s: {e}")
            raise
        logger.info(f"✅ Tool {tool_name} completed in {time.time() - start_time:.2f}s")
        return result
    return wrapper


def validate_tool_output(output: str, max_length: int = 8000) -> str:
    """
    Validate and truncate tool output to ensure LLM-readable format.

    Args:
        output: The raw output string
        max_length: Maximum length for LLM consumption

    Returns:
        Validated and potentially truncated output
    """
    if not output or not isinstance(output, str):
        return "❌ Tool returned invalid output"

    if len(output) > max_length:
        truncated = output[:max_length]
        truncated += f"\n\n... [Output truncated: {len(output) - max_length} chars omitted]"
        return truncated

    return output


def create_server(toolkit: Toolkit, name: str = "codegraph") -> FastMCP:
    """Build a FastMCP server whose tools delegate to ``toolkit``."""
    mcp = FastMCP(name)
    request_log: Dict[str, List[datetime]] = {}
    limited = rate_limit(request_log)

    @mcp.tool()
    @limited
    @log_tool_call
    def find_function(name: str) -> str:
        """
        Find functions whose name contains the given text.

        Args:
            name: Full or partial function name (e.g. "upload")

        Returns:
            Matching functions with file, line range and purpose when annotated
        """
        return validate_tool_output(toolkit.find_function(name))

    @mcp.tool()
    @limited
    @log_tool_call
    def find_callers(name: str) -> str:
        """
        List the functions that call a function.

        Args:
            name: Full or partial name of the called function

        Returns:
            Caller names with the file and line of each call
        """
        return validate_tool_output(toolkit.find_callers(name))

    @mcp.tool()
    @limited
    @log_tool_call
    def list_endpoints() -> str:
        """List every HTTP endpoint with its handler and definition site."""
        return validate_tool_output(toolkit.list_endpoints())

    @mcp.tool()
    @limited
    @log_tool_call
    def impact_analysis(function_name: str) -> str:
        """
        Identify what would be affected by changing a function.

        Returns the function's callers, the endpoints routed to it and the UI
        components reading those endpoints.

        Args:
            function_name: Full or partial function name
        """
        return validate_tool_output(toolkit.impact_analysis(function_name))

    @mcp.tool()
    @limited
    @log_tool_call
    def similar_code(min_similarity: float = 0.7, limit: int = 20) -> str:
        """
        List pairs of duplicated or similar functions.

        Args:
            min_similarity: Lowest similarity score to include (default: 0.7)
            limit: Maximum number of pairs (default: 20)
        """
        return validate_tool_output(toolkit.similar_code(min_similarity, max(1, int(limit))))

    @mcp.tool()
    @limited
    @log_tool_call
    def ask_codebase(question: str) -> str:
        """
        Answer a natural-language question about the codebase.

        The model may generate and run a Cypher query against the graph to
        answer it. Requires an LLM API key.

        Args:
            question: e.g. "What happens when an image is uploaded?"
        """
        return validate_tool_output(toolkit.ask_codebase(question))

    return mcp


def run_server(repo_root: Optional[Path] = None):
    """
    Start the MCP server over stdio.

    Args:
        repo_root: Optional explicit repository root for config resolution

    Raises:
        SetupError: if Neo4j cannot be reached.
    """
    repo_root = repo_root.resolve() if repo_root else find_repo_root()
    config = Config(repo_root)
    if config.exists():
        logger.info(f"📂 Using config from: {config.config_file}")
    else:
        logger.info("🔧 Using defaults and environment variables for configuration")

    llm = None
    llm_cfg = config.get_llm_config()
    if llm_cfg.get("api_key"):
        try:
            llm = get_adapter(
                llm_cfg["provider"],
                api_key=llm_cfg["api_key"],
                model=llm_cfg["model"],
                max_tokens=llm_cfg["max_tokens"],
            )
        except LLMError as e:
            logger.warning(f"⚠️ {e}")
    if llm is None:
        logger.warning("⚠️ No LLM API key configured - ask_codebase will not work")

    neo4j_cfg = config.get_neo4j_config()
    with Neo4jStore.connect(neo4j_cfg["uri"], neo4j_cfg["user"], neo4j_cfg["password"]) as store:
        server = create_server(Toolkit(QueryEngine(store, llm)))
        logger.info("🚀 Starting codegraph MCP server")
        server.run()
