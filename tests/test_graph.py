"""Tests for the graph loader, resolution helpers and the Neo4j store."""

import os

import neo4j
import pytest
from unittest.mock import Mock, patch

from codegraph.errors import QueryError, SetupError
from codegraph.ingestion.graph import (
    SCHEMA_STATEMENTS,
    CircuitBreaker,
    GraphLoader,
    Neo4jStore,
    path_matches_endpoint,
    resolve_import,
    resolve_import_candidates,
)
from codegraph.models import (
    ApiCall,
    CallFact,
    Concept,
    EndpointEntity,
    FileRecord,
    FunctionEntity,
    ImportFact,
    ImportSpecifier,
    SimilarityEdge,
    UIComponent,
)

pytestmark = [
    pytest.mark.unit,
]


def _endpoint(method, path, handler="getUser", file="server.js"):
    return EndpointEntity(
        id=f"{method}:{path}", method=method, path=path, handler=handler, file=file, line=3
    )


def _component(file="public/index.html", ordinal=0):
    return UIComponent(
        id=f"{file}:main:section:{ordinal}",
        name="main",
        type="section",
        file=file,
        html_id="main",
        class_name=None,
    )


@pytest.fixture
def store():
    store = Mock()
    store.run_query.return_value = []
    return store


@pytest.fixture
def loader(store):
    return GraphLoader(store)


def _params(store):
    """Parameter dicts of every run_query call, in order."""
    return [c.args[1] for c in store.run_query.call_args_list]


class TestGraphLoader:
    """Test suite for GraphLoader."""

    def test_setup_schema(self, loader, store):
        loader.setup_schema()

        assert store.run_statement.call_count == len(SCHEMA_STATEMENTS)
        statements = " ".join(c.args[0] for c in store.run_statement.call_args_list)
        assert "file_path_unique" in statements
        assert "function_id_unique" in statements
        assert "FULLTEXT INDEX function_text" in statements

    def test_clear_database(self, loader, store):
        loader.clear_database()

        store.run_query.assert_called_once_with("MATCH (n) DETACH DELETE n")

    def test_load_files(self, loader, store):
        count = loader.load_files([FileRecord("src/app.js", "javascript", 12, "abc123")])

        assert count == 1
        assert _params(store) == [
            {
                "path": "src/app.js",
                "name": "app.js",
                "language": "javascript",
                "lineCount": 12,
                "contentHash": "abc123",
            }
        ]

    def test_load_functions(self, loader, store):
        func = FunctionEntity(
            id="app.js:add:1",
            name="add",
            file="app.js",
            start_line=1,
            end_line=3,
            parameters=("a", "b=default"),
            is_exported=True,
        )

        assert loader.load_functions([func]) == 1

        query, params = store.run_query.call_args.args
        assert "MERGE (fn:Function {id: $id})" in query
        assert "MERGE (f)-[:CONTAINS]->(fn)" in query
        assert params["params"] == ["a", "b=default"]
        assert params["isExported"] is True
        assert params["isAsync"] is False

    def test_load_endpoints_routes_named_handlers(self, loader, store):
        endpoints = [
            _endpoint("GET", "/api/users/:id"),
            _endpoint("POST", "/api/upload", handler="inline@7"),
        ]

        assert loader.load_endpoints(endpoints) == 2

        queries = [c.args[0] for c in store.run_query.call_args_list]
        assert len(queries) == 3
        assert "ROUTES_TO" in queries[1]
        assert _params(store)[1] == {"endpointId": "GET:/api/users/:id", "handler": "getUser"}
        assert "ROUTES_TO" not in queries[2]

    def test_load_endpoints_repeated_id_keeps_last_definition(self, loader, store):
        endpoints = [
            _endpoint("GET", "/api/jobs", handler="listJobs", file="routes/v1.js"),
            _endpoint("GET", "/api/jobs", handler="listJobsV2", file="routes/v2.js"),
        ]

        assert loader.load_endpoints(endpoints) == 2

        calls = [c.args for c in store.run_query.call_args_list]
        merges = [(q, p) for q, p in calls if "MERGE (e:Endpoint" in q]
        assert len(merges) == 2
        assert all("MERGE (e:Endpoint {id: $id})" in q for q, _ in merges)
        assert [p["id"] for _, p in merges] == ["GET:/api/jobs", "GET:/api/jobs"]
        assert merges[-1][1]["file"] == "routes/v2.js"
        assert merges[-1][1]["handler"] == "listJobsV2"

    def test_load_calls_skips_top_level_calls(self, loader, store):
        calls = [
            CallFact(callee="db.users.find", file="app.js", line=4, caller="getUser"),
            CallFact(callee="setup", file="app.js", line=10),
        ]

        assert loader.load_calls(calls) == 1

        query, params = store.run_query.call_args.args
        assert "MERGE (caller)-[r:CALLS]->(callee)" in query
        assert "ENDS WITH '.' + $calleeName" in query
        assert params == {
            "callerName": "getUser",
            "callerFile": "app.js",
            "calleeName": "find",
            "line": 4,
            "file": "app.js",
        }

    def test_load_imports(self, loader, store):
        imports = [
            ImportFact(
                source="./db",
                file="src/app.js",
                line=1,
                specifiers=(ImportSpecifier("db", "default", "default"),),
            ),
            ImportFact(source="express", file="src/app.js", line=2, is_require=True),
        ]

        assert loader.load_imports(imports, ["src/app.js", "src/db.js"]) == 2

        internal, external = store.run_query.call_args_list
        assert "MATCH (f2:File {path: $target})" in internal.args[0]
        assert internal.args[1]["target"] == "src/db.js"
        assert internal.args[1]["specifiers"] == ["db"]
        assert "ExternalDep" in external.args[0]
        assert external.args[1]["name"] == "express"

    def test_load_concepts(self, loader, store):
        concept = Concept(
            name="Image Upload",
            description="Accepts images",
            category="core-feature",
            implemented_by=("handleUpload", ""),
            related_endpoints=("/api/upload",),
        )

        assert loader.load_concepts([concept]) == 1

        params = _params(store)
        assert len(params) == 3
        assert params[0]["name"] == "Image Upload"
        assert params[1] == {"conceptName": "Image Upload", "funcName": "handleUpload"}
        assert params[2] == {"conceptName": "Image Upload", "path": "/api/upload"}

    def test_load_function_annotations(self, loader, store):
        annotations = {
            "app.js:upload:3": {
                "purpose": "Stores an uploaded image",
                "sideEffects": "writes to disk",
                "complexity": "low",
            }
        }

        assert loader.load_function_annotations(annotations) == 1

        params = _params(store)[0]
        assert params["funcId"] == "app.js:upload:3"
        assert params["purpose"] == "Stores an uploaded image"
        assert params["sideEffects"] == ["writes to disk"]
        assert params["businessDomain"] == ""

    def test_load_similarities(self, loader, store):
        edge = SimilarityEdge("a.js:f:1", "b.js:f:1", 1.0, "exact-duplicate")

        assert loader.load_similarities([edge]) == 1

        query, params = store.run_query.call_args.args
        assert "MERGE (fn1)-[r:SIMILAR_TO]-(fn2)" in query
        assert params == {
            "func1Id": "a.js:f:1",
            "func2Id": "b.js:f:1",
            "similarity": 1.0,
            "type": "exact-duplicate",
        }

    def test_load_api_call_relationships(self, loader, store):
        endpoints = [
            _endpoint("GET", "/api/job/:id"),
            _endpoint("DELETE", "/api/job/:id"),
            _endpoint("GET", "/api/status"),
        ]
        api_calls = [
            ApiCall("fetch-template", "public/index.html", 20, path="/api/job/*"),
            ApiCall("fetch", "public/index.html", 24, path="/api/missing"),
            ApiCall("fetch", "public/index.html", 25, path=None),
            ApiCall("fetch", "public/other.html", 5, path="/api/status"),
        ]

        count = loader.load_api_call_relationships(api_calls, endpoints, [_component()])

        assert count == 1
        params = _params(store)[0]
        assert params["file"] == "public/index.html"
        assert params["endpointIds"] == ["DELETE:/api/job/:id", "GET:/api/job/:id"]
        assert params["type"] == "fetch-template"


class TestPathMatching:

    @pytest.mark.parametrize(
        "call_path, endpoint_path",
        [
            ("/api/users", "/api/users"),
            ("/api/users/42", "/api/users/:id"),
            ("/api/job/*", "/api/job/:id"),
            ("/api/items/[id]", "/api/items/7"),
            ("/api/users?page=2", "/api/users"),
            ("http://localhost:3000/api/users", "/api/users"),
        ],
    )
    def test_matches(self, call_path, endpoint_path):
        assert path_matches_endpoint(call_path, endpoint_path)

    @pytest.mark.parametrize(
        "call_path, endpoint_path",
        [
            ("/api/users", "/api/user"),
            ("/api/users/42/posts", "/api/users/:id"),
            ("/", "/"),
            ("", "/api/users"),
        ],
    )
    def test_does_not_match(self, call_path, endpoint_path):
        assert not path_matches_endpoint(call_path, endpoint_path)


class TestImportResolution:

    def test_relative_javascript_candidates(self):
        candidates = resolve_import_candidates("src/routes/users.js", "../db")

        assert candidates == [
            "src/db",
            "src/db.js",
            "src/db.jsx",
            "src/db.mjs",
            "src/db.cjs",
            "src/db/index.js",
        ]

    def test_javascript_with_extension(self):
        assert resolve_import_candidates("src/app.js", "./util.js") == ["src/util.js"]

    def test_bare_package_has_no_candidates(self):
        assert resolve_import_candidates("src/app.js", "express") == []

    def test_python_relative(self):
        assert resolve_import_candidates("pkg/api/views.py", "..models") == [
            "pkg/models.py",
            "pkg/models/__init__.py",
        ]
        assert resolve_import_candidates("pkg/api/views.py", ".") == ["pkg/api.py", "pkg/api/__init__.py"]

    def test_python_absolute(self):
        assert resolve_import_candidates("app.py", "pkg.models") == ["pkg/models.py", "pkg/models/__init__.py"]

    def test_resolve_import(self):
        files = {"src/db/index.js", "src/pkg/models.py", "app.py"}

        assert resolve_import("src/app.js", "./db", files) == "src/db/index.js"
        assert resolve_import("app.py", "pkg.models", files) == "src/pkg/models.py"
        assert resolve_import("app.py", "os", files) is None
        assert resolve_import("src/app.js", "express", files) is None


class TestNeo4jStore:
    """Test suite for the Neo4j-backed store."""

    @pytest.fixture
    def mock_driver(self):
        """Create a mock Neo4j driver."""
        driver = Mock()
        session = Mock()
        driver.session.return_value.__enter__ = Mock(return_value=session)
        driver.session.return_value.__exit__ = Mock(return_value=False)
        return driver, session

    def test_connect(self, mock_driver):
        driver, _ = mock_driver
        with patch("neo4j.GraphDatabase.driver", return_value=driver) as factory:
            store = Neo4jStore.connect("bolt://localhost:7687", "neo4j", "secret")

        factory.assert_called_once_with("bolt://localhost:7687", auth=("neo4j", "secret"))
        driver.verify_connectivity.assert_called_once()
        assert store.driver is driver

    def test_connect_unreachable_raises_setup_error(self, mock_driver):
        driver, _ = mock_driver
        driver.verify_connectivity.side_effect = neo4j.exceptions.ServiceUnavailable("down")

        with patch("neo4j.GraphDatabase.driver", return_value=driver):
            with pytest.raises(SetupError, match="bolt://localhost:7687"):
                Neo4jStore.connect("bolt://localhost:7687", "neo4j", "secret")

        driver.close.assert_called_once()

    def test_run_query_returns_records(self, mock_driver):
        driver, session = mock_driver
        session.run.return_value = [Mock(data=Mock(return_value={"n": 1}))]
        store = Neo4jStore(driver)

        assert store.run_query("RETURN $n AS n", {"n": 1}) == [{"n": 1}]
        session.run.assert_called_once_with("RETURN $n AS n", {"n": 1})

    def test_run_query_wraps_driver_errors(self, mock_driver):
        driver, session = mock_driver
        session.run.side_effect = neo4j.exceptions.ServiceUnavailable("connection lost")
        store = Neo4jStore(driver)

        with pytest.raises(QueryError, match="connection lost"):
            store.run_query("MATCH (n) RETURN n")

    def test_run_statement_ignores_existing_schema(self, mock_driver):
        driver, session = mock_driver
        session.run.side_effect = neo4j.exceptions.ClientError("Equivalent constraint already exists")
        store = Neo4jStore(driver)

        store.run_statement(SCHEMA_STATEMENTS[0])

    def test_run_statement_logs_other_server_errors(self, mock_driver, caplog):
        driver, session = mock_driver
        session.run.side_effect = neo4j.exceptions.TransientError("lock timeout")
        store = Neo4jStore(driver)

        with caplog.at_level("WARNING", logger="codegraph.ingestion.graph"):
            store.run_statement(SCHEMA_STATEMENTS[0])

        assert any("Schema statement warning" in r.getMessage() for r in caplog.records)

    def test_run_statement_wraps_connection_loss(self, mock_driver):
        driver, session = mock_driver
        session.run.side_effect = neo4j.exceptions.ServiceUnavailable("gone")
        store = Neo4jStore(driver)

        with pytest.raises(QueryError, match="gone"):
            store.run_statement(SCHEMA_STATEMENTS[0])

    def test_context_manager_closes_driver(self, mock_driver):
        driver, _ = mock_driver

        with Neo4jStore(driver):
            pass

        driver.close.assert_called_once()


class TestCircuitBreaker:

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30)
        failing = Mock(side_effect=neo4j.exceptions.ServiceUnavailable("down"))

        for _ in range(2):
            with pytest.raises(neo4j.exceptions.ServiceUnavailable):
                breaker.call(failing)

        assert breaker.state == "OPEN"
        with pytest.raises(neo4j.exceptions.ServiceUnavailable, match="Circuit breaker is OPEN"):
            breaker.call(failing)
        assert failing.call_count == 2

    def test_half_open_success_closes(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        with pytest.raises(neo4j.exceptions.ServiceUnavailable):
            breaker.call(Mock(side_effect=neo4j.exceptions.ServiceUnavailable("down")))
        breaker.last_failure_time -= 1

        assert breaker.call(Mock(return_value="ok")) == "ok"
        assert breaker.state == "CLOSED"
        assert breaker.failure_count == 0


@pytest.mark.integration
class TestGraphIntegration:
    """Integration tests requiring actual Neo4j instance. Wipes the target database."""

    @pytest.fixture(scope="class")
    def neo4j_store(self):
        uri = os.getenv("NEO4J_URI")
        if not uri:
            pytest.skip("NEO4J_URI not set")
        try:
            store = Neo4jStore.connect(
                uri, os.getenv("NEO4J_USER", "neo4j"), os.getenv("NEO4J_PASSWORD", "password")
            )
        except SetupError as e:
            pytest.skip(f"Neo4j not available: {e}")
        yield store
        store.close()

    def test_reload_is_idempotent(self, neo4j_store):
        loader = GraphLoader(neo4j_store)
        loader.clear_database()
        loader.setup_schema()

        files = [FileRecord("app.js", "javascript", 3, "h")]
        functions = [FunctionEntity("app.js:add:1", "add", "app.js", 1, 3)]
        for _ in range(2):
            loader.load_files(files)
            loader.load_functions(functions)

        rows = neo4j_store.run_query("MATCH (f:File)-[:CONTAINS]->(fn:Function) RETURN count(fn) AS n")
        assert rows == [{"n": 1}]

    def test_repeated_endpoint_id_is_one_node(self, neo4j_store):
        loader = GraphLoader(neo4j_store)
        loader.clear_database()
        loader.setup_schema()

        loader.load_files(
            [FileRecord("routes/v1.js", "javascript", 5, "a"), FileRecord("routes/v2.js", "javascript", 5, "b")]
        )
        loader.load_endpoints(
            [
                _endpoint("GET", "/api/jobs", handler="listJobs", file="routes/v1.js"),
                _endpoint("GET", "/api/jobs", handler="listJobsV2", file="routes/v2.js"),
            ]
        )

        rows = neo4j_store.run_query(
            "MATCH (e:Endpoint {id: 'GET:/api/jobs'}) RETURN e.file AS file, e.handler AS handler"
        )
        assert rows == [{"file": "routes/v2.js", "handler": "listJobsV2"}]
