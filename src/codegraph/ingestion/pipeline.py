"""
End-to-end ingestion: discover → parse → analyze → concepts → annotations → load.

Each run rebuilds the graph from scratch. Per-file parse failures, LLM stage
failures and failing load batches are logged and skipped; only an
unreachable store aborts the run.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from codegraph.config import Config
from codegraph.errors import AnnotationError, ParseError, QueryError, SetupError
from codegraph.ingestion.concepts import ConceptExtraction, annotate_functions, extract_concepts
from codegraph.ingestion.discovery import discover_files
from codegraph.ingestion.graph import GraphLoader, GraphStore
from codegraph.ingestion.parser import CodeParser, content_hash, dialect_for_path
from codegraph.ingestion.similarity import (
    detect_patterns,
    detect_similarities,
    find_refactoring_opportunities,
)
from codegraph.llm.base import LLMAdapter
from codegraph.models import CodebaseSnapshot, FileRecord, Pattern, SimilarityEdge

logger = logging.getLogger(__name__)

StoreFactory = Callable[[], GraphStore]


@dataclass
class IngestionSettings:
    """What to scan and how much LLM work to do."""

    root: Path
    include_patterns: List[str]
    exclude_patterns: List[str]
    annotation_limit: int = 20

    @classmethod
    def from_config(cls, config: Config, root: Optional[Path] = None) -> "IngestionSettings":
        indexing = config.get_indexing_config()
        llm = config.get_llm_config()
        return cls(
            root=Path(root).resolve() if root else indexing["root"],
            include_patterns=list(indexing["include_patterns"]),
            exclude_patterns=list(indexing["exclude_patterns"]),
            annotation_limit=int(llm.get("annotation_limit", 20)),
        )


@dataclass
class Analysis:
    similarities: List[SimilarityEdge] = field(default_factory=list)
    patterns: List[Pattern] = field(default_factory=list)
    refactoring_opportunities: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class PipelineReport:
    """Summary of one ingestion run."""

    files_discovered: int = 0
    counts: Dict[str, int] = field(default_factory=dict)
    similarities: Dict[str, int] = field(default_factory=dict)
    patterns: int = 0
    concepts: int = 0
    annotations: int = 0
    loaded: Dict[str, int] = field(default_factory=dict)
    failed_batches: List[str] = field(default_factory=list)
    parse_failures: List[str] = field(default_factory=list)
    skipped_stages: List[str] = field(default_factory=list)
    refactoring_opportunities: List[Dict[str, Any]] = field(default_factory=list)
    dry_run: bool = False
    elapsed_seconds: float = 0.0
    token_usage: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class IngestionPipeline:
    """
    Runs the ingestion stages in a fixed order.

    Args:
        settings: Root directory and include/exclude patterns
        llm: Language model adapter; None disables the concept and
            annotation stages
        store_factory: Opens the graph store for the load stage. Not called
            on a dry run.
    """

    def __init__(
        self,
        settings: IngestionSettings,
        llm: Optional[LLMAdapter] = None,
        store_factory: Optional[StoreFactory] = None,
        parser: Optional[CodeParser] = None,
    ):
        self.settings = settings
        self.llm = llm
        self.store_factory = store_factory
        self.parser = parser or CodeParser()

    # =========================================================================
    # STAGES
    # =========================================================================

    def discover(self) -> List[str]:
        logger.info(f"🔍 Discovering files under {self.settings.root}...")
        files = discover_files(
            self.settings.root, self.settings.include_patterns, self.settings.exclude_patterns
        )
        logger.info(f"✅ Found {len(files)} files")
        return files

    def parse(self, paths: List[str], report: Optional[PipelineReport] = None) -> CodebaseSnapshot:
        """Parse every file; a file that fails to read or parse is left out."""
        snapshot = CodebaseSnapshot()
        logger.info(f"🧠 Parsing {len(paths)} files...")

        for rel_path in paths:
            try:
                content = (self.settings.root / rel_path).read_text(encoding="utf-8", errors="replace")
                result = self.parser.parse(content, rel_path)
            except ParseError as e:
                logger.warning(f"⚠️  {e}")
                if report is not None:
                    report.parse_failures.append(rel_path)
                continue
            except OSError as e:
                logger.warning(f"⚠️  Could not read {rel_path}: {e}")
                if report is not None:
                    report.parse_failures.append(rel_path)
                continue

            dialect = dialect_for_path(rel_path)
            snapshot.files.append(
                FileRecord(
                    path=rel_path,
                    language=dialect.value,
                    line_count=len(content.split("\n")),
                    content_hash=content_hash(content),
                )
            )
            snapshot.add(result)

        counts = snapshot.counts()
        logger.info(
            f"✅ Parsed {counts['files']} files: {counts['functions']} functions, "
            f"{counts['endpoints']} endpoints, {counts['ui_components']} UI components"
        )
        return snapshot

    def analyze(self, snapshot: CodebaseSnapshot) -> Analysis:
        logger.info("🔁 Detecting code similarities...")
        similarities = detect_similarities(snapshot.code_blocks)
        patterns = detect_patterns(snapshot.functions)
        opportunities = find_refactoring_opportunities(similarities, patterns)
        logger.info(
            f"✅ Found {len(similarities)} similar pairs, {len(patterns)} patterns, "
            f"{len(opportunities)} refactoring opportunities"
        )
        return Analysis(similarities, patterns, opportunities)

    def load(
        self,
        store: GraphStore,
        snapshot: CodebaseSnapshot,
        analysis: Analysis,
        concepts: Optional[ConceptExtraction] = None,
        annotations: Optional[Dict[str, Dict[str, Any]]] = None,
        report: Optional[PipelineReport] = None,
    ) -> Dict[str, int]:
        """
        Clear the store, apply the schema and load every batch in order.

        A failing batch is logged and the remaining batches still load.
        """
        loader = GraphLoader(store)
        loader.clear_database()
        loader.setup_schema()

        file_paths = [f.path for f in snapshot.files]
        batches = [
            ("files", lambda: loader.load_files(snapshot.files)),
            ("functions", lambda: loader.load_functions(snapshot.functions)),
            ("calls", lambda: loader.load_calls(snapshot.calls)),
            ("endpoints", lambda: loader.load_endpoints(snapshot.endpoints)),
            ("imports", lambda: loader.load_imports(snapshot.imports, file_paths)),
            ("ui_components", lambda: loader.load_ui_components(snapshot.ui_components)),
            ("similarities", lambda: loader.load_similarities(analysis.similarities)),
            (
                "api_calls",
                lambda: loader.load_api_call_relationships(
                    snapshot.api_calls, snapshot.endpoints, snapshot.ui_components
                ),
            ),
            ("concepts", lambda: loader.load_concepts(concepts.concepts if concepts else [])),
            ("annotations", lambda: loader.load_function_annotations(annotations or {})),
        ]

        loaded = {}
        for name, load_batch in batches:
            try:
                loaded[name] = load_batch()
            except QueryError as e:
                logger.warning(f"⚠️  Failed to load {name}: {e}")
                if report is not None:
                    report.failed_batches.append(name)
        return loaded

    # =========================================================================
    # RUN
    # =========================================================================

    def run(
        self,
        skip_llm: bool = False,
        skip_annotations: bool = False,
        dry_run: bool = False,
    ) -> PipelineReport:
        """
        Executes the full pipeline.

        Raises:
            SetupError: if the graph store cannot be opened.
        """
        start_time = time.time()
        report = PipelineReport(dry_run=dry_run)

        paths = self.discover()
        report.files_discovered = len(paths)

        snapshot = self.parse(paths, report)
        report.counts = snapshot.counts()

        analysis = self.analyze(snapshot)
        report.patterns = len(analysis.patterns)
        report.refactoring_opportunities = analysis.refactoring_opportunities
        for sim in analysis.similarities:
            report.similarities[sim.type] = report.similarities.get(sim.type, 0) + 1

        llm_enabled = self.llm is not None and not skip_llm

        concepts = None
        if llm_enabled:
            try:
                concepts = extract_concepts(snapshot, self.llm)
                report.concepts = len(concepts.concepts)
            except AnnotationError as e:
                logger.warning(f"⚠️  Skipping concepts: {e}")
                report.skipped_stages.append("concepts")
        else:
            report.skipped_stages.append("concepts")

        annotations = None
        if llm_enabled and not skip_annotations:
            try:
                annotations = annotate_functions(
                    snapshot.functions, self.llm, limit=self.settings.annotation_limit
                )
                report.annotations = len(annotations)
            except AnnotationError as e:
                logger.warning(f"⚠️  Skipping annotations: {e}")
                report.skipped_stages.append("annotations")
        else:
            report.skipped_stages.append("annotations")

        if dry_run:
            logger.info("🧪 Dry run: nothing written to the graph")
            report.skipped_stages.append("load")
        else:
            if self.store_factory is None:
                raise SetupError("No graph store configured")
            store = self.store_factory()
            try:
                report.loaded = self.load(store, snapshot, analysis, concepts, annotations, report)
            finally:
                store.close()

        if self.llm is not None:
            report.token_usage = dict(self.llm.token_usage)
        report.elapsed_seconds = time.time() - start_time
        logger.info(f"✅ Ingestion finished in {report.elapsed_seconds:.2f}s")
        return report
