# Load .env BEFORE any other imports that might need environment variables
from dotenv import load_dotenv
load_dotenv()

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from codegraph.config import Config, find_repo_root, DEFAULT_CONFIG
from codegraph.errors import LLMError, QueryError, SetupError
from codegraph.ingestion.graph import Neo4jStore
from codegraph.ingestion.pipeline import IngestionPipeline, IngestionSettings, PipelineReport
from codegraph.llm import get_adapter
from codegraph.llm.base import LLMAdapter
from codegraph.query.engine import QueryEngine
from codegraph.query.templates import TEMPLATES

logger = logging.getLogger(__name__)

SEPARATOR = "━" * 63


def print_banner():
    """Print the codegraph banner."""
    print(r"""
    ╔═══════════════════════════════════════════════════════════╗
    ║                                                           ║
    ║   codegraph                                               ║
    ║   Code Knowledge Graph with Neo4j & LLM annotations       ║
    ║                                                           ║
    ╚═══════════════════════════════════════════════════════════╝
    """)


# ============================================================
# Output helpers
# ============================================================


def _emit_json(ok: bool, data: Any = None, error: Optional[str] = None, metrics: Optional[Dict] = None):
    """Print the standard JSON envelope to stdout."""
    payload = {"ok": ok, "data": data, "error": error, "metrics": metrics or {}}
    print(json.dumps(payload, indent=2, default=str))


def _fail(args, message: str, hint: Optional[str] = None):
    """Report an error in the requested format and exit non-zero."""
    if getattr(args, "json", False):
        _emit_json(False, error=message)
    else:
        print(f"❌ {message}")
        if hint:
            print(f"   {hint}")
    sys.exit(1)


def _print_rows(rows: List[Dict[str, Any]]):
    if not rows:
        print("No results found.")
        return
    print(f"Results ({len(rows)}):")
    for i, row in enumerate(rows, 1):
        fields = ", ".join(f"{key}: {value}" for key, value in row.items())
        print(f"  {i}. {fields}")


def _connect(args, config: Config) -> Neo4jStore:
    neo4j_cfg = config.get_neo4j_config()
    try:
        return Neo4jStore.connect(neo4j_cfg["uri"], neo4j_cfg["user"], neo4j_cfg["password"])
    except SetupError as e:
        _fail(args, str(e), "Make sure Neo4j is running and check your config.")


def _build_llm(config: Config) -> Optional[LLMAdapter]:
    """Create the configured LLM adapter, or None when no API key is available."""
    llm_cfg = config.get_llm_config()
    if not llm_cfg.get("api_key"):
        return None
    return get_adapter(
        llm_cfg["provider"],
        api_key=llm_cfg["api_key"],
        model=llm_cfg["model"],
        max_tokens=llm_cfg["max_tokens"],
    )


def _parse_params(pairs: Optional[List[str]]) -> Dict[str, str]:
    params = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid --param {pair!r}, expected key=value")
        params[key.strip()] = value
    return params


# ============================================================
# Commands
# ============================================================


def cmd_init(args):
    """Write .codegraph/config.json with default settings."""
    repo_root = Path.cwd()
    config = Config(repo_root)

    if config.exists():
        print(f"⚠️  This repository is already initialized.")
        print(f"    Config location: {config.config_file}")
        print(f"\n   To reconfigure, edit the config file or delete .codegraph/ and run init again.")
        return

    print_banner()
    print(f"🚀 Initializing codegraph in: {repo_root}\n")

    config.save(DEFAULT_CONFIG)

    print(SEPARATOR)
    print(f"✅ Configuration saved to: {config.config_file}")
    print(SEPARATOR)
    print(f"\nNeo4j:  {DEFAULT_CONFIG['neo4j']['uri']} (override with NEO4J_URI, NEO4J_USER, NEO4J_PASSWORD)")
    print(f"LLM:    {DEFAULT_CONFIG['llm']['provider']} / {DEFAULT_CONFIG['llm']['model']} (key from OPENAI_API_KEY)")
    print(f"\nNext steps:")
    print(f"  • codegraph rebuild    - Build the knowledge graph")
    print(f"  • codegraph status     - Show graph statistics")
    print(f"  • codegraph query      - Ask questions about the code")
    print(f"  • codegraph serve      - Start MCP server for AI agents")
    print()


def _print_report(root: Path, report: PipelineReport):
    print("\n" + SEPARATOR)
    print("📊 INGESTION SUMMARY")
    print(SEPARATOR)
    print(f"📂 Root:          {root}")
    print(f"📄 Files:         {report.counts.get('files', 0)} parsed / {report.files_discovered} discovered")
    print(f"🔧 Functions:     {report.counts.get('functions', 0)}")
    print(f"📞 Calls:         {report.counts.get('calls', 0)}")
    print(f"🌐 Endpoints:     {report.counts.get('endpoints', 0)}")
    print(f"📦 Imports:       {report.counts.get('imports', 0)}")
    print(f"🖼️  UI components: {report.counts.get('ui_components', 0)}")
    print(f"🔗 API calls:     {report.counts.get('api_calls', 0)}")
    similar = ", ".join(f"{k}: {v}" for k, v in sorted(report.similarities.items())) or "none"
    print(f"🔁 Similarities:  {similar}")
    print(f"🧩 Patterns:      {report.patterns}")
    print(f"💡 Concepts:      {report.concepts}")
    print(f"📝 Annotations:   {report.annotations}")

    if report.parse_failures:
        print(f"\n⚠️  {len(report.parse_failures)} file(s) could not be parsed:")
        for path in report.parse_failures:
            print(f"   - {path}")
    if report.failed_batches:
        print(f"\n⚠️  Failed to load: {', '.join(report.failed_batches)}")
    if report.skipped_stages:
        print(f"\n⏭️  Skipped stages: {', '.join(report.skipped_stages)}")

    if report.refactoring_opportunities:
        print(f"\n🛠️  Refactoring opportunities:")
        for opportunity in report.refactoring_opportunities:
            print(f"   [{opportunity['priority']}] {opportunity['description']}")
            print(f"       → {opportunity['suggestion']}")

    print(f"\n⏱️  Total Time: {report.elapsed_seconds:.2f} seconds")
    if report.token_usage.get("calls"):
        print(
            f"🔢 LLM calls: {report.token_usage['calls']:,} "
            f"({report.token_usage['prompt_tokens']:,} prompt / "
            f"{report.token_usage['completion_tokens']:,} completion tokens)"
        )
    print(SEPARATOR)
    if report.dry_run:
        print("🧪 Dry run: the graph was not modified.")
    else:
        print("✅ Knowledge graph is ready.")
    print(SEPARATOR)


def cmd_rebuild(args):
    """Rebuild the knowledge graph from scratch."""
    repo_root = find_repo_root()
    config = Config(repo_root)

    try:
        settings = IngestionSettings.from_config(config, root=Path(args.root) if args.root else None)
    except RuntimeError as e:
        _fail(args, str(e))
    if not settings.root.is_dir():
        _fail(args, f"Root directory does not exist: {settings.root}")

    llm = None
    if not args.skip_llm:
        try:
            llm = _build_llm(config)
        except LLMError as e:
            logger.warning(f"⚠️  {e}")
        if llm is None:
            logger.warning("⚠️  No LLM API key configured - concept extraction and annotations will be skipped")

    neo4j_cfg = config.get_neo4j_config()
    pipeline = IngestionPipeline(
        settings,
        llm=llm,
        store_factory=lambda: Neo4jStore.connect(neo4j_cfg["uri"], neo4j_cfg["user"], neo4j_cfg["password"]),
    )

    if not args.json:
        print(f"📂 Rebuilding knowledge graph for: {settings.root}")

    try:
        report = pipeline.run(
            skip_llm=args.skip_llm,
            skip_annotations=args.skip_annotations,
            dry_run=args.dry_run,
        )
    except SetupError as e:
        _fail(args, str(e), "Make sure Neo4j is running and check your config.")
    except QueryError as e:
        _fail(args, f"Failed to prepare the graph: {e}")

    if args.json:
        _emit_json(
            True,
            data={
                "repository": str(settings.root),
                "counts": report.counts,
                "loaded": report.loaded,
                "similarities": report.similarities,
                "parse_failures": report.parse_failures,
                "failed_batches": report.failed_batches,
                "skipped_stages": report.skipped_stages,
                "refactoring_opportunities": report.refactoring_opportunities,
                "dry_run": report.dry_run,
            },
            metrics={
                "elapsed_seconds": report.elapsed_seconds,
                "files_discovered": report.files_discovered,
                "patterns": report.patterns,
                "concepts": report.concepts,
                "annotations": report.annotations,
                "token_usage": report.token_usage,
            },
        )
        return

    _print_report(settings.root, report)


def _interactive(engine: QueryEngine):
    """Read-eval loop: natural-language questions or /cypher <query>."""
    print("\n🔍 Code Knowledge Graph - Interactive Mode")
    print("Ask questions about your codebase in natural language.")
    print("Use /cypher <query> for direct Cypher queries.")
    print('Type "exit" or Ctrl+C to quit.\n')

    while True:
        try:
            line = input("> ").strip()
        except (EOFError, KeyboardInterrupt):
            line = "exit"

        if not line or line in ("exit", "quit"):
            print("\nGoodbye!")
            return

        try:
            if line.startswith("/cypher "):
                print("\nRunning Cypher query...")
                _print_rows(engine.run_cypher(line[len("/cypher "):]))
            elif engine.llm is None:
                print("❌ Natural-language questions need an LLM API key. Use /cypher <query>.")
            else:
                print("\nThinking...")
                print("\n" + engine.ask(line).text)
        except (QueryError, LLMError) as e:
            print(f"\n❌ Error: {e}")
        print()


def cmd_query(args):
    """Query the graph with a template, raw Cypher or a natural-language question."""
    repo_root = find_repo_root()
    config = Config(repo_root)

    question = " ".join(args.question or []).strip()
    try:
        params = _parse_params(args.param)
    except ValueError as e:
        _fail(args, str(e))

    if args.template and args.template not in TEMPLATES:
        _fail(args, f"Unknown template: {args.template}", f"Available: {', '.join(sorted(TEMPLATES))}")

    llm = None
    needs_llm = not (args.cypher or args.template)
    if needs_llm:
        if not args.interactive and not question:
            _fail(args, "No query provided", "Pass a question, --cypher, --template or --interactive.")
        try:
            llm = _build_llm(config)
        except LLMError as e:
            _fail(args, str(e))
        if llm is None and not args.interactive:
            _fail(
                args,
                "LLM API key required for natural language queries.",
                "Set OPENAI_API_KEY in your environment or use --cypher for direct queries.",
            )

    store = _connect(args, config)
    with store:
        engine = QueryEngine(store, llm)
        try:
            if args.interactive:
                _interactive(engine)
                return

            if args.cypher:
                results = engine.run_cypher(args.cypher)
                if args.json:
                    _emit_json(True, data={"query": args.cypher, "results": results},
                               metrics={"result_count": len(results)})
                else:
                    _print_rows(results)
                return

            if args.template:
                results = engine.run_template(args.template, **params)
                if args.json:
                    _emit_json(
                        True,
                        data={"template": args.template, "params": params, "results": results},
                        metrics={"result_count": len(results)},
                    )
                else:
                    _print_rows(results)
                return

            if not args.json:
                print("Analyzing your question...\n")
            answer = engine.ask(question)
            if args.json:
                _emit_json(
                    True,
                    data={
                        "question": question,
                        "answer": answer.text,
                        "query": answer.query,
                        "results": answer.results,
                        "query_error": answer.error,
                    },
                    metrics={"result_count": len(answer.results), **llm.token_usage},
                )
            else:
                print(answer.text)
        except (QueryError, LLMError) as e:
            _fail(args, str(e))


def cmd_status(args):
    """Show node counts for the current graph."""
    repo_root = find_repo_root()
    config = Config(repo_root)

    store = _connect(args, config)
    with store:
        try:
            rows = QueryEngine(store).run_template("overview")
        except QueryError as e:
            _fail(args, f"Could not read graph statistics: {e}")

    stats = {row["type"]: row["count"] for row in rows}
    total = sum(stats.values())

    if args.json:
        _emit_json(
            True,
            data={
                "repository": str(repo_root),
                "config": str(config.config_file) if config.exists() else None,
                "stats": stats,
            },
            metrics={"total_nodes": total},
        )
        return

    print(f"📊 codegraph Status")
    print(SEPARATOR)
    print(f"Repository: {repo_root}")
    print(f"Config:     {config.config_file if config.exists() else 'defaults (no .codegraph/config.json)'}")
    print(f"\n📈 Graph Statistics:")
    if not stats:
        print("   The graph is empty. Run 'codegraph rebuild' first.")
    for node_type, count in stats.items():
        print(f"   {node_type + ':':<14}{count:,}")
    print(f"   {'Total:':<14}{total:,}")


def cmd_serve(args):
    """Start the MCP server."""
    from codegraph.server.app import run_server

    repo_root = None
    if args.repo:
        repo_root = Path(args.repo).expanduser().resolve()
        if not repo_root.is_dir():
            print(f"❌ Repository path does not exist: {repo_root}")
            sys.exit(1)

    if args.env_file:
        load_dotenv(args.env_file)
    elif repo_root and (repo_root / ".env").exists():
        load_dotenv(repo_root / ".env")

    config = Config(repo_root or find_repo_root())
    if not config.exists():
        print(f"⚠️  No local config found, using defaults and environment variables", file=sys.stderr)

    # stdout carries the MCP stdio protocol
    print(f"🧠 Starting MCP Interface", file=sys.stderr)
    try:
        run_server(repo_root=repo_root)
    except SetupError as e:
        _fail(args, str(e), "Make sure Neo4j is running and check your config.")


def main():
    parser = argparse.ArgumentParser(
        description="codegraph: Code Knowledge Graph with Neo4j",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Quick Start:
  codegraph init                          # Write .codegraph/config.json
  codegraph rebuild                       # Build the graph

Commands:
  codegraph status                        # Node counts
  codegraph query "What calls upload?"    # Natural-language question
  codegraph query --cypher "MATCH (e:Endpoint) RETURN e.method, e.path"
  codegraph query --template find_callers --param name=upload
  codegraph query -i                      # Interactive mode
  codegraph serve                         # Start MCP server
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Command: init
    subparsers.add_parser("init", help="Write default configuration for the current repository")

    # Command: rebuild
    rebuild_parser = subparsers.add_parser("rebuild", help="Rebuild the knowledge graph from scratch")
    rebuild_parser.add_argument("--root", help="Directory to scan (default: indexing.root from config)")
    rebuild_parser.add_argument("--skip-llm", action="store_true", help="Skip concept extraction and annotations")
    rebuild_parser.add_argument("--skip-annotations", action="store_true", help="Skip per-function annotations")
    rebuild_parser.add_argument("--dry-run", action="store_true", help="Parse and analyze without writing to Neo4j")
    rebuild_parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    rebuild_parser.add_argument("--json", action="store_true", help="Emit a JSON envelope")

    # Command: query
    query_parser = subparsers.add_parser("query", help="Query the knowledge graph")
    query_parser.add_argument("question", nargs="*", help="Natural-language question")
    query_parser.add_argument("--cypher", help="Run a Cypher query directly")
    query_parser.add_argument("--template", help=f"Run a named template ({', '.join(TEMPLATES)})")
    query_parser.add_argument("--param", action="append", metavar="KEY=VALUE", help="Template parameter")
    query_parser.add_argument("--interactive", "-i", action="store_true", help="Interactive mode")
    query_parser.add_argument("--json", action="store_true", help="Emit a JSON envelope")

    # Command: status
    status_parser = subparsers.add_parser("status", help="Show graph statistics")
    status_parser.add_argument("--json", action="store_true", help="Emit a JSON envelope")

    # Command: serve (MCP server)
    serve_parser = subparsers.add_parser("serve", help="Start the MCP server")
    serve_parser.add_argument("--repo", help="Repository root for config resolution")
    serve_parser.add_argument("--env-file", help="Load environment variables from this file")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    # Dispatch to command handlers
    if args.command == "init":
        cmd_init(args)
    elif args.command == "rebuild":
        cmd_rebuild(args)
    elif args.command == "query":
        cmd_query(args)
    elif args.command == "status":
        cmd_status(args)
    elif args.command == "serve":
        cmd_serve(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
