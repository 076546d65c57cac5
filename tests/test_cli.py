"""Tests for CLI command behavior and JSON output contracts."""

import argparse
import json
import os
import sys
import types
from pathlib import Path
from unittest.mock import Mock

import pytest

from codegraph import cli
from codegraph.errors import QueryError, SetupError
from codegraph.ingestion.pipeline import PipelineReport
from codegraph.query.engine import Answer

pytestmark = [pytest.mark.unit]


def _parse_json_stdout(capsys):
    """Parse JSON output from stdout."""
    stdout = capsys.readouterr().out.strip()
    assert stdout, "expected JSON on stdout"
    return json.loads(stdout)


def _mock_config(*, exists=True, api_key="test-openai-key", root=None):
    """Create a mock Config object for CLI tests."""
    config = Mock()
    config.exists.return_value = exists
    config.config_file = Path("/tmp/repo/.codegraph/config.json")
    config.get_neo4j_config.return_value = {
        "uri": "bolt://localhost:7687",
        "user": "neo4j",
        "password": "password",
    }
    config.get_llm_config.return_value = {
        "provider": "openai",
        "model": "gpt-4o-mini",
        "api_key": api_key,
        "max_tokens": 2048,
        "annotation_limit": 20,
    }
    config.get_indexing_config.return_value = {
        "root": root or Path("/tmp/repo"),
        "include_patterns": ["**/*.js"],
        "exclude_patterns": ["node_modules"],
    }
    return config


def _mock_store(rows=None):
    """Create a mock store usable as a context manager."""
    store = Mock()
    store.__enter__ = Mock(return_value=store)
    store.__exit__ = Mock(return_value=False)
    store.run_query.return_value = rows or []
    return store


def _patch_store(monkeypatch, store):
    neo4j_store = Mock()
    neo4j_store.connect.return_value = store
    monkeypatch.setattr(cli, "Neo4jStore", neo4j_store)
    return neo4j_store


def _setup(monkeypatch, tmp_path, **config_kwargs):
    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    mock_cfg = _mock_config(root=repo_root, **config_kwargs)
    monkeypatch.setattr(cli, "find_repo_root", Mock(return_value=repo_root))
    monkeypatch.setattr(cli, "Config", Mock(return_value=mock_cfg))
    return repo_root, mock_cfg


def _query_args(**overrides):
    values = dict(question=[], cypher=None, template=None, param=None, interactive=False, json=True)
    values.update(overrides)
    return argparse.Namespace(**values)


def _rebuild_args(**overrides):
    values = dict(root=None, skip_llm=True, skip_annotations=False, dry_run=True, verbose=False, json=True)
    values.update(overrides)
    return argparse.Namespace(**values)


def _report(**overrides):
    values = dict(
        files_discovered=3,
        counts={"files": 3, "functions": 7},
        similarities={"exact-duplicate": 1},
        patterns=2,
        skipped_stages=["concepts", "annotations", "load"],
        dry_run=True,
        elapsed_seconds=0.5,
    )
    values.update(overrides)
    return PipelineReport(**values)


# ============================================================
# init
# ============================================================


def test_init_writes_default_config(monkeypatch, capsys, tmp_path):
    """Init writes .codegraph/config.json without an API key."""
    monkeypatch.chdir(tmp_path)

    cli.cmd_init(argparse.Namespace())

    config_file = tmp_path / ".codegraph" / "config.json"
    saved = json.loads(config_file.read_text())
    assert saved["neo4j"]["uri"] == "bolt://localhost:7687"
    assert saved["llm"]["api_key"] is None
    assert "**/*.py" in saved["indexing"]["include_patterns"]
    assert "Configuration saved" in capsys.readouterr().out


def test_init_existing_config_is_left_alone(monkeypatch, capsys, tmp_path):
    monkeypatch.chdir(tmp_path)
    config_dir = tmp_path / ".codegraph"
    config_dir.mkdir()
    (config_dir / "config.json").write_text('{"neo4j": {"uri": "bolt://custom:7687"}}')

    cli.cmd_init(argparse.Namespace())

    assert "already initialized" in capsys.readouterr().out
    assert "custom" in (config_dir / "config.json").read_text()


# ============================================================
# rebuild
# ============================================================


def test_rebuild_json_success_envelope(monkeypatch, capsys, tmp_path):
    """Rebuild emits counts in data and timings in metrics."""
    repo_root, _ = _setup(monkeypatch, tmp_path)
    pipeline = Mock()
    pipeline.run.return_value = _report()
    pipeline_cls = Mock(return_value=pipeline)
    monkeypatch.setattr(cli, "IngestionPipeline", pipeline_cls)

    cli.cmd_rebuild(_rebuild_args())

    payload = _parse_json_stdout(capsys)
    assert payload["ok"] is True
    assert payload["error"] is None
    assert payload["data"]["repository"] == str(repo_root)
    assert payload["data"]["counts"] == {"files": 3, "functions": 7}
    assert payload["data"]["similarities"] == {"exact-duplicate": 1}
    assert payload["data"]["dry_run"] is True
    assert payload["metrics"]["files_discovered"] == 3
    assert payload["metrics"]["patterns"] == 2
    assert payload["metrics"]["elapsed_seconds"] == 0.5

    pipeline.run.assert_called_once_with(skip_llm=True, skip_annotations=False, dry_run=True)
    settings = pipeline_cls.call_args.args[0]
    assert settings.root == repo_root
    assert pipeline_cls.call_args.kwargs["llm"] is None


def test_rebuild_store_factory_uses_neo4j_config(monkeypatch, capsys, tmp_path):
    _setup(monkeypatch, tmp_path)
    pipeline_cls = Mock(return_value=Mock(run=Mock(return_value=_report(dry_run=False))))
    monkeypatch.setattr(cli, "IngestionPipeline", pipeline_cls)
    neo4j_store = _patch_store(monkeypatch, _mock_store())

    cli.cmd_rebuild(_rebuild_args(dry_run=False))

    store_factory = pipeline_cls.call_args.kwargs["store_factory"]
    neo4j_store.connect.assert_not_called()
    store_factory()
    neo4j_store.connect.assert_called_once_with("bolt://localhost:7687", "neo4j", "password")


def test_rebuild_builds_llm_when_key_present(monkeypatch, capsys, tmp_path):
    _setup(monkeypatch, tmp_path)
    llm = Mock()
    get_adapter = Mock(return_value=llm)
    pipeline_cls = Mock(return_value=Mock(run=Mock(return_value=_report())))
    monkeypatch.setattr(cli, "get_adapter", get_adapter)
    monkeypatch.setattr(cli, "IngestionPipeline", pipeline_cls)

    cli.cmd_rebuild(_rebuild_args(skip_llm=False))

    get_adapter.assert_called_once_with(
        "openai", api_key="test-openai-key", model="gpt-4o-mini", max_tokens=2048
    )
    assert pipeline_cls.call_args.kwargs["llm"] is llm


def test_rebuild_missing_root_exits_nonzero(monkeypatch, capsys, tmp_path):
    _setup(monkeypatch, tmp_path)
    pipeline_cls = Mock()
    monkeypatch.setattr(cli, "IngestionPipeline", pipeline_cls)

    with pytest.raises(SystemExit) as exc:
        cli.cmd_rebuild(_rebuild_args(root=str(tmp_path / "missing")))

    assert exc.value.code == 1
    payload = _parse_json_stdout(capsys)
    assert payload["ok"] is False
    assert "Root directory does not exist" in payload["error"]
    pipeline_cls.assert_not_called()


def test_rebuild_unreachable_store_exits_nonzero(monkeypatch, capsys, tmp_path):
    """Rebuild reports SetupError in the envelope and exits 1."""
    _setup(monkeypatch, tmp_path)
    pipeline = Mock()
    pipeline.run.side_effect = SetupError("Cannot connect to Neo4j at bolt://localhost:7687: refused")
    monkeypatch.setattr(cli, "IngestionPipeline", Mock(return_value=pipeline))

    with pytest.raises(SystemExit) as exc:
        cli.cmd_rebuild(_rebuild_args(dry_run=False))

    assert exc.value.code == 1
    payload = _parse_json_stdout(capsys)
    assert payload == {
        "ok": False,
        "data": None,
        "error": "Cannot connect to Neo4j at bolt://localhost:7687: refused",
        "metrics": {},
    }


def test_rebuild_text_summary(monkeypatch, capsys, tmp_path):
    _setup(monkeypatch, tmp_path)
    report = _report(
        parse_failures=["broken.js"],
        refactoring_opportunities=[
            {"priority": "high", "description": "Found 1 exact duplicate", "suggestion": "Extract it"}
        ],
    )
    monkeypatch.setattr(cli, "IngestionPipeline", Mock(return_value=Mock(run=Mock(return_value=report))))

    cli.cmd_rebuild(_rebuild_args(json=False))

    out = capsys.readouterr().out
    assert "INGESTION SUMMARY" in out
    assert "broken.js" in out
    assert "[high] Found 1 exact duplicate" in out
    assert "Dry run" in out


# ============================================================
# query
# ============================================================


def test_query_cypher_json_success_envelope(monkeypatch, capsys, tmp_path):
    _setup(monkeypatch, tmp_path)
    store = _mock_store([{"n": 5}])
    _patch_store(monkeypatch, store)

    cli.cmd_query(_query_args(cypher="MATCH (n) RETURN count(n) AS n"))

    payload = _parse_json_stdout(capsys)
    assert payload["ok"] is True
    assert payload["data"] == {"query": "MATCH (n) RETURN count(n) AS n", "results": [{"n": 5}]}
    assert payload["metrics"] == {"result_count": 1}
    store.__exit__.assert_called_once()


def test_query_template_with_params(monkeypatch, capsys, tmp_path):
    _setup(monkeypatch, tmp_path)
    store = _mock_store([{"caller": "handleUpload", "file": "server.js", "line": 12, "callee": "upload"}])
    _patch_store(monkeypatch, store)

    cli.cmd_query(_query_args(template="find_callers", param=["name=upload"]))

    payload = _parse_json_stdout(capsys)
    assert payload["data"]["template"] == "find_callers"
    assert payload["data"]["params"] == {"name": "upload"}
    assert payload["data"]["results"][0]["caller"] == "handleUpload"
    assert store.run_query.call_args.args[1] == {"name": "upload"}


def test_query_unknown_template_exits_before_connecting(monkeypatch, capsys, tmp_path):
    _setup(monkeypatch, tmp_path)
    neo4j_store = _patch_store(monkeypatch, _mock_store())

    with pytest.raises(SystemExit) as exc:
        cli.cmd_query(_query_args(template="nope"))

    assert exc.value.code == 1
    payload = _parse_json_stdout(capsys)
    assert payload["error"] == "Unknown template: nope"
    neo4j_store.connect.assert_not_called()


def test_query_invalid_param_exits_nonzero(monkeypatch, capsys, tmp_path):
    _setup(monkeypatch, tmp_path)

    with pytest.raises(SystemExit) as exc:
        cli.cmd_query(_query_args(template="find_callers", param=["upload"]))

    assert exc.value.code == 1
    assert "Invalid --param" in _parse_json_stdout(capsys)["error"]


def test_query_without_input_exits_nonzero(monkeypatch, capsys, tmp_path):
    _setup(monkeypatch, tmp_path)

    with pytest.raises(SystemExit) as exc:
        cli.cmd_query(_query_args())

    assert exc.value.code == 1
    assert _parse_json_stdout(capsys)["error"] == "No query provided"


def test_query_question_without_api_key_exits_nonzero(monkeypatch, capsys, tmp_path):
    """Natural-language queries need an LLM key; Cypher does not."""
    _setup(monkeypatch, tmp_path, api_key=None)
    neo4j_store = _patch_store(monkeypatch, _mock_store())

    with pytest.raises(SystemExit) as exc:
        cli.cmd_query(_query_args(question=["What", "calls", "upload?"]))

    assert exc.value.code == 1
    payload = _parse_json_stdout(capsys)
    assert payload["ok"] is False
    assert payload["data"] is None
    assert payload["error"] == "LLM API key required for natural language queries."
    neo4j_store.connect.assert_not_called()


def test_query_question_json_success_envelope(monkeypatch, capsys, tmp_path):
    _setup(monkeypatch, tmp_path)
    store = _mock_store()
    _patch_store(monkeypatch, store)
    llm = Mock(token_usage={"prompt_tokens": 10, "completion_tokens": 3, "calls": 2})
    monkeypatch.setattr(cli, "get_adapter", Mock(return_value=llm))
    engine = Mock()
    engine.ask.return_value = Answer(
        text="upload is called by handleUpload (server.js:12).",
        query="MATCH (c)-[:CALLS]->(f {name: 'upload'}) RETURN c.name AS caller",
        results=[{"caller": "handleUpload"}],
    )
    engine_cls = Mock(return_value=engine)
    monkeypatch.setattr(cli, "QueryEngine", engine_cls)

    cli.cmd_query(_query_args(question=["What", "calls", "upload?"]))

    payload = _parse_json_stdout(capsys)
    assert payload["ok"] is True
    assert payload["data"]["question"] == "What calls upload?"
    assert payload["data"]["answer"] == "upload is called by handleUpload (server.js:12)."
    assert payload["data"]["results"] == [{"caller": "handleUpload"}]
    assert payload["data"]["query_error"] is None
    assert payload["metrics"] == {"result_count": 1, "prompt_tokens": 10, "completion_tokens": 3, "calls": 2}
    engine_cls.assert_called_once_with(store, llm)
    engine.ask.assert_called_once_with("What calls upload?")


def test_query_failure_exits_nonzero(monkeypatch, capsys, tmp_path):
    _setup(monkeypatch, tmp_path)
    store = _mock_store()
    store.run_query.side_effect = QueryError("Invalid input 'RETRUN'")
    _patch_store(monkeypatch, store)

    with pytest.raises(SystemExit) as exc:
        cli.cmd_query(_query_args(cypher="MATCH (n) RETRUN n"))

    assert exc.value.code == 1
    assert _parse_json_stdout(capsys)["error"] == "Invalid input 'RETRUN'"
    store.__exit__.assert_called_once()


def test_interactive_mode(monkeypatch, capsys):
    engine = Mock()
    engine.run_cypher.return_value = [{"n": 1}]
    engine.ask.side_effect = QueryError("boom")
    inputs = iter(["/cypher MATCH (n) RETURN count(n) AS n", "what is this?", "exit"])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(inputs))

    cli._interactive(engine)

    out = capsys.readouterr().out
    engine.run_cypher.assert_called_once_with("MATCH (n) RETURN count(n) AS n")
    assert "1. n: 1" in out
    assert "❌ Error: boom" in out
    assert "Goodbye!" in out


# ============================================================
# status
# ============================================================


def test_status_json_success_envelope(monkeypatch, capsys, tmp_path):
    """Status command emits node counts per label."""
    repo_root, _ = _setup(monkeypatch, tmp_path)
    _patch_store(monkeypatch, _mock_store([{"type": "Function", "count": 7}, {"type": "File", "count": 3}]))

    cli.cmd_status(argparse.Namespace(json=True))

    payload = _parse_json_stdout(capsys)
    assert payload["ok"] is True
    assert payload["error"] is None
    assert payload["data"]["repository"] == str(repo_root)
    assert payload["data"]["config"] == str(Path("/tmp/repo/.codegraph/config.json"))
    assert payload["data"]["stats"] == {"Function": 7, "File": 3}
    assert payload["metrics"] == {"total_nodes": 10}


def test_status_json_unreachable_store_exits_nonzero(monkeypatch, capsys, tmp_path):
    _setup(monkeypatch, tmp_path)
    neo4j_store = _patch_store(monkeypatch, _mock_store())
    neo4j_store.connect.side_effect = SetupError("Cannot connect to Neo4j at bolt://localhost:7687")

    with pytest.raises(SystemExit) as exc:
        cli.cmd_status(argparse.Namespace(json=True))

    assert exc.value.code == 1
    payload = _parse_json_stdout(capsys)
    assert payload["ok"] is False
    assert payload["metrics"] == {}
    assert "Cannot connect" in payload["error"]


# ============================================================
# serve
# ============================================================


def _patch_server_module(monkeypatch):
    """Inject a fake codegraph.server.app module with a mock run_server."""
    run_server = Mock()
    fake_module = types.SimpleNamespace(run_server=run_server)
    monkeypatch.setitem(sys.modules, "codegraph.server.app", fake_module)
    return run_server


def test_serve_repo_path_resolution(monkeypatch, tmp_path):
    """Serve resolves and forwards explicit --repo path to run_server."""
    repo_root = tmp_path / "repo"
    repo_root.mkdir()

    run_server = _patch_server_module(monkeypatch)
    monkeypatch.setattr(cli, "Config", Mock(return_value=_mock_config(exists=True)))

    cli.cmd_serve(argparse.Namespace(repo=str(repo_root / "."), env_file=None))

    run_server.assert_called_once_with(repo_root=repo_root.resolve())


def test_serve_without_repo_uses_discovery(monkeypatch, tmp_path):
    run_server = _patch_server_module(monkeypatch)
    find_repo_root = Mock(return_value=tmp_path)
    monkeypatch.setattr(cli, "find_repo_root", find_repo_root)
    monkeypatch.setattr(cli, "Config", Mock(return_value=_mock_config(exists=False)))

    cli.cmd_serve(argparse.Namespace(repo=None, env_file=None))

    find_repo_root.assert_called_once()
    run_server.assert_called_once_with(repo_root=None)


def test_serve_invalid_repo_exits_nonzero(monkeypatch, tmp_path):
    """Serve exits non-zero when --repo does not exist."""
    run_server = _patch_server_module(monkeypatch)

    with pytest.raises(SystemExit) as exc:
        cli.cmd_serve(argparse.Namespace(repo=str(tmp_path / "does-not-exist"), env_file=None))

    assert exc.value.code == 1
    run_server.assert_not_called()


def test_serve_loads_explicit_env_file(monkeypatch, tmp_path):
    """Serve loads variables from --env-file before server start."""
    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    env_file = tmp_path / "custom.env"
    env_file.write_text("CODEGRAPH_SERVE_TEST=from-explicit-env\n", encoding="utf-8")

    run_server = _patch_server_module(monkeypatch)
    monkeypatch.setattr(cli, "Config", Mock(return_value=_mock_config(exists=True)))
    monkeypatch.delenv("CODEGRAPH_SERVE_TEST", raising=False)

    try:
        cli.cmd_serve(argparse.Namespace(repo=str(repo_root), env_file=str(env_file)))
        assert os.environ.get("CODEGRAPH_SERVE_TEST") == "from-explicit-env"
    finally:
        os.environ.pop("CODEGRAPH_SERVE_TEST", None)
    run_server.assert_called_once_with(repo_root=repo_root.resolve())


def test_serve_loads_repo_dotenv(monkeypatch, tmp_path):
    """Serve defaults to <repo>/.env when --repo is provided and --env-file is omitted."""
    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    (repo_root / ".env").write_text("CODEGRAPH_SERVE_TEST=from-repo-dotenv\n", encoding="utf-8")

    _patch_server_module(monkeypatch)
    monkeypatch.setattr(cli, "Config", Mock(return_value=_mock_config(exists=True)))
    monkeypatch.delenv("CODEGRAPH_SERVE_TEST", raising=False)

    try:
        cli.cmd_serve(argparse.Namespace(repo=str(repo_root), env_file=None))
        assert os.environ.get("CODEGRAPH_SERVE_TEST") == "from-repo-dotenv"
    finally:
        os.environ.pop("CODEGRAPH_SERVE_TEST", None)


def test_serve_unreachable_store_exits_nonzero(monkeypatch, capsys, tmp_path):
    run_server = _patch_server_module(monkeypatch)
    run_server.side_effect = SetupError("Cannot connect to Neo4j at bolt://localhost:7687")
    monkeypatch.setattr(cli, "Config", Mock(return_value=_mock_config(exists=True)))

    with pytest.raises(SystemExit) as exc:
        cli.cmd_serve(argparse.Namespace(repo=str(tmp_path), env_file=None))

    assert exc.value.code == 1
    assert "Cannot connect" in capsys.readouterr().out


# ============================================================
# main
# ============================================================


def test_main_dispatches_subcommand(monkeypatch):
    cmd_status = Mock()
    monkeypatch.setattr(cli, "cmd_status", cmd_status)
    monkeypatch.setattr(sys, "argv", ["codegraph", "status", "--json"])

    cli.main()

    cmd_status.assert_called_once()
    assert cmd_status.call_args.args[0].json is True


def test_main_parses_rebuild_flags(monkeypatch):
    cmd_rebuild = Mock()
    monkeypatch.setattr(cli, "cmd_rebuild", cmd_rebuild)
    monkeypatch.setattr(
        sys, "argv", ["codegraph", "rebuild", "--root", "src", "--skip-llm", "--dry-run", "--json"]
    )

    cli.main()

    args = cmd_rebuild.call_args.args[0]
    assert args.root == "src"
    assert args.skip_llm is True
    assert args.skip_annotations is False
    assert args.dry_run is True
