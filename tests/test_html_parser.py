"""Tests for markup extraction and inline script handling."""

import pytest

from codegraph.ingestion.html_parser import HtmlParser
from codegraph.ingestion.parser import CodeParser
from codegraph.models import CallFact, FormInput

pytestmark = [pytest.mark.unit]

PAGE = """<!DOCTYPE html>
<html>
<head>
  <script src="/static/app.js"></script>
</head>
<body>
  <header id="top" class="site-header">Welcome</header>
  <section id="upload" class="section card">
    <form id="upload-form" action="/api/upload" method="post">
      <input name="file" type="file" id="file-input">
      <textarea name="note"></textarea>
      <button onclick="submitForm()">Send</button>
    </form>
  </section>
  <div class="state-loading">Loading</div>
  <div data-api="/api/status" id="status"></div>
  <a href="/api/export">Export</a>
  <script>
    async function loadJob(id) {
      const res = await fetch(`/api/job/${id}`);
      return res.json();
    }
    const source = new EventSource('/api/stream');
    fetch('/api/health');
  </script>
</body>
</html>
"""


@pytest.fixture(scope="module")
def result():
    return CodeParser().parse(PAGE, "web/index.html")


def test_ui_components(result):
    ids = [c.id for c in result.ui_components]

    assert ids == [
        "web/index.html:upload:section:0",
        "web/index.html:top:header:0",
        "web/index.html:upload-form:form:0",
        "web/index.html:state-loading:state:0",
        "web/index.html:upload:section:0",
    ]

    header = result.ui_components[1]
    assert header.name == "top"
    assert header.type == "header"
    assert header.html_id == "top"
    assert header.class_name == "site-header"
    assert header.inner_text == "Welcome"
    assert header.line == 7

    state = result.ui_components[3]
    assert state.name == "state-loading"
    assert state.html_id is None


def test_element_without_id_or_class_is_not_a_component():
    result = CodeParser().parse("<main><p>hi</p></main>\n", "bare.html")

    assert result.ui_components == []


def test_embedded_scripts(result):
    scripts = result.embedded_scripts

    assert [s.type for s in scripts] == ["external", "inline"]
    assert scripts[0].src == "/static/app.js"
    assert scripts[1].index == 1
    assert scripts[1].length > 0


def test_inline_script_entities_use_host_file_and_lines(result):
    func = next(f for f in result.functions if f.name == "loadJob")

    assert func.file == "web/index.html"
    assert func.start_line == 19
    assert func.id == "web/index.html:script:1:loadJob:19"
    assert func.is_async is True
    assert all(c.file == "web/index.html" for c in result.calls)


def test_api_calls(result):
    found = {(c.type, c.path, c.line) for c in result.api_calls}

    assert ("fetch", "/api/health", 24) in found
    assert ("sse", "/api/stream", 23) in found
    assert ("fetch-template", "/api/job/*", 20) in found
    assert ("data-attribute", "/api/status", 16) in found
    assert ("link", "/api/export", 17) in found

    data_attr = next(c for c in result.api_calls if c.type == "data-attribute")
    assert data_attr.element_id == "status"


def test_forms(result):
    assert len(result.forms) == 1
    form = result.forms[0]

    assert form.id == "web/index.html:form:0"
    assert form.form_id == "upload-form"
    assert form.action == "/api/upload"
    assert form.method == "POST"
    assert form.inputs == (
        FormInput(name="file", type="file", id="file-input"),
        FormInput(name="note", type="text", id=None),
    )


def test_event_handlers(result):
    assert len(result.event_handlers) == 1
    handler = result.event_handlers[0]

    assert handler.element == "button"
    assert handler.event == "click"
    assert handler.handler == "submitForm()"


def test_extract_fetch_patterns():
    content = "x\nfetch('/api/a');\nfetch(`/api/b/${id}/c`);\nnew EventSource(\"/api/events\");\n"

    patterns = HtmlParser.extract_fetch_patterns(content, "page.html")

    assert [(p.type, p.path, p.line) for p in patterns] == [
        ("fetch", "/api/a", 2),
        ("sse", "/api/events", 4),
        ("fetch-template", "/api/b/*/c", 3),
    ]


def test_api_calls_from_calls():
    calls = [
        CallFact(callee="fetch", file="p.html", line=3, caller="load", literal_argument="/api/x"),
        CallFact(callee="xhr.open", file="p.html", line=4),
        CallFact(callee="EventSource", file="p.html", line=5, is_constructor=True, literal_argument="/api/s"),
        CallFact(callee="render", file="p.html", line=6),
    ]

    api_calls = HtmlParser.api_calls_from_calls(calls, "p.html")

    assert [(c.type, c.path, c.caller) for c in api_calls] == [
        ("fetch", "/api/x", "load"),
        ("xhr", None, None),
        ("sse", "/api/s", None),
    ]
