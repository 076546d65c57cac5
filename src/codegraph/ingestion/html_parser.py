"""
Markup parser.

Extracts UI components, embedded scripts, API call references, forms and
inline event handlers from HTML files. Inline scripts are handed to the
JavaScript parser and their entities merged into the result.
"""

import html
import logging
import re
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from tree_sitter import Node, Parser

from codegraph.ingestion.js_parser import JavaScriptParser
from codegraph.ingestion.parser import iter_tree, node_text
from codegraph.models import (
    ApiCall,
    CallFact,
    EmbeddedScript,
    EventHandler,
    Form,
    FormInput,
    MarkupParseResult,
    SourceParseResult,
    UIComponent,
)

logger = logging.getLogger(__name__)

# Ordered selector rules: ("tag", name) matches the element name,
# ("class", text) matches a class attribute containing the text.
COMPONENT_RULES = [
    ("tag", "section", "section"),
    ("tag", "header", "header"),
    ("tag", "footer", "footer"),
    ("tag", "main", "main"),
    ("tag", "nav", "nav"),
    ("tag", "article", "article"),
    ("tag", "aside", "aside"),
    ("tag", "form", "form"),
    ("class", "state", "state"),
    ("class", "container", "container"),
    ("class", "section", "section"),
]

EVENT_ATTRIBUTES = [
    "onclick", "onsubmit", "onchange", "oninput", "onload",
    "onfocus", "onblur", "onkeyup", "onkeydown", "onmouseover",
]

DATA_API_ATTRIBUTES = ["data-api", "data-endpoint", "data-url"]
FORM_INPUT_TAGS = {"input", "select", "textarea"}
ELEMENT_TYPES = {"element", "script_element", "style_element"}

_FETCH_QUOTED = re.compile(r"""fetch\s*\(\s*['"]([^'"`]+)['"]""")
_FETCH_TEMPLATE = re.compile(r"fetch\s*\(\s*`([^`]+)`")
_EVENT_SOURCE = re.compile(r"""new\s+EventSource\s*\(\s*['"`]([^'"`]+)['"`]""")
_INTERPOLATION = re.compile(r"\$\{[^}]+\}")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class _Element:
    tag: str
    attrs: Dict[str, str]
    node: Node
    line: int

    def attr(self, name: str) -> Optional[str]:
        """Attribute value, or None when absent or empty."""
        return self.attrs.get(name) or None

    def contains(self, other: "_Element") -> bool:
        return (
            other.node.id != self.node.id
            and other.node.start_byte >= self.node.start_byte
            and other.node.end_byte <= self.node.end_byte
        )


class HtmlParser:
    def __init__(self, parser: Parser, javascript: JavaScriptParser):
        self.parser = parser
        self.javascript = javascript

    def parse(self, content: str, file_path: str) -> MarkupParseResult:
        source = bytes(content, "utf8")
        tree = self.parser.parse(source)
        elements = self._collect_elements(tree.root_node, source)

        result = MarkupParseResult()

        # ===== UI COMPONENTS =====
        for kind, value, component_type in COMPONENT_RULES:
            if kind == "tag":
                matched = [e for e in elements if e.tag == value]
            else:
                matched = [e for e in elements if value in e.attrs.get("class", "")]
            for i, element in enumerate(matched):
                component = self._component(element, component_type, i, file_path, source)
                if component is not None:
                    result.ui_components.append(component)

        # ===== EMBEDDED SCRIPTS =====
        scripts = [e for e in elements if e.tag == "script"]
        for i, element in enumerate(scripts):
            self._handle_script(element, i, file_path, source, result)

        # ===== RAW-TEXT API CALLS =====
        result.api_calls.extend(self.extract_fetch_patterns(content, file_path))

        # ===== FORMS =====
        forms = [e for e in elements if e.tag == "form"]
        for i, element in enumerate(forms):
            inputs = tuple(
                FormInput(name=e.attr("name"), type=e.attr("type") or "text", id=e.attr("id"))
                for e in elements
                if e.tag in FORM_INPUT_TAGS and element.contains(e)
            )
            result.forms.append(
                Form(
                    id=f"{file_path}:form:{i}",
                    file=file_path,
                    form_id=element.attr("id"),
                    action=element.attr("action"),
                    method=(element.attr("method") or "GET").upper(),
                    inputs=inputs,
                )
            )

        # ===== INLINE EVENT HANDLERS =====
        for element in elements:
            for attribute in EVENT_ATTRIBUTES:
                handler = element.attr(attribute)
                if handler:
                    result.event_handlers.append(
                        EventHandler(
                            element=element.tag,
                            element_id=element.attr("id"),
                            event=attribute[2:],
                            handler=handler[:100],
                            file=file_path,
                        )
                    )

        # ===== API REFERENCES IN ATTRIBUTES =====
        for element in elements:
            path = next((element.attr(a) for a in DATA_API_ATTRIBUTES if element.attr(a)), None)
            if path:
                result.api_calls.append(
                    ApiCall(
                        type="data-attribute",
                        file=file_path,
                        line=element.line,
                        path=path,
                        element_id=element.attr("id"),
                    )
                )
        for element in elements:
            href = element.attr("href")
            if element.tag == "a" and href and href.startswith("/api"):
                result.api_calls.append(
                    ApiCall(type="link", file=file_path, line=element.line, path=href, method="GET")
                )

        return result

    def _collect_elements(self, root: Node, source: bytes) -> List[_Element]:
        elements = []
        for node, leaving in iter_tree(root):
            if leaving or node.type not in ELEMENT_TYPES:
                continue
            tag_node = next(
                (c for c in node.children if c.type in ("start_tag", "self_closing_tag")), None
            )
            if tag_node is None:
                continue
            tag_name = next((c for c in tag_node.children if c.type == "tag_name"), None)
            if tag_name is None:
                continue
            elements.append(
                _Element(
                    tag=node_text(tag_name, source).lower(),
                    attrs=self._attributes(tag_node, source),
                    node=node,
                    line=node.start_point[0] + 1,
                )
            )
        return elements

    def _attributes(self, tag_node: Node, source: bytes) -> Dict[str, str]:
        attrs: Dict[str, str] = {}
        for attribute in tag_node.named_children:
            if attribute.type != "attribute":
                continue
            name = ""
            value = ""
            for child in attribute.named_children:
                if child.type == "attribute_name":
                    name = node_text(child, source).lower()
                elif child.type == "attribute_value":
                    value = node_text(child, source)
                elif child.type == "quoted_attribute_value":
                    inner = next((c for c in child.named_children if c.type == "attribute_value"), None)
                    value = node_text(inner, source)
            if name:
                # First occurrence wins, as in browsers
                attrs.setdefault(name, html.unescape(value))
        return attrs

    def _text_content(self, node: Node, source: bytes) -> str:
        parts = [
            node_text(n, source)
            for n, leaving in iter_tree(node)
            if not leaving and n.type == "text"
        ]
        return _WHITESPACE.sub(" ", html.unescape(" ".join(parts))).strip()

    def _component(
        self, element: _Element, component_type: str, ordinal: int, file_path: str, source: bytes
    ) -> Optional[UIComponent]:
        html_id = element.attr("id")
        class_name = element.attr("class")
        if not html_id and not class_name:
            return None

        name = html_id
        if not name:
            tokens = class_name.split()
            name = tokens[0] if tokens else f"{component_type}-{ordinal}"

        return UIComponent(
            id=f"{file_path}:{html_id or class_name}:{component_type}:{ordinal}",
            name=name,
            type=component_type,
            file=file_path,
            html_id=html_id,
            class_name=class_name,
            line=element.line,
            inner_text=self._text_content(element.node, source)[:100],
        )

    def _handle_script(
        self, element: _Element, index: int, file_path: str, source: bytes, result: MarkupParseResult
    ) -> None:
        src = element.attr("src")
        if src:
            result.embedded_scripts.append(EmbeddedScript(type="external", file=file_path, src=src))
            return

        raw = next((c for c in element.node.children if c.type == "raw_text"), None)
        script = node_text(raw, source)
        if not script.strip():
            return

        result.embedded_scripts.append(
            EmbeddedScript(type="inline", file=file_path, index=index, length=len(script))
        )

        script_path = f"{file_path}:script:{index}"
        try:
            parsed = self.javascript.parse(script, script_path, line_offset=raw.start_point[0])
        except Exception as e:
            logger.warning(f"⚠️  Failed to parse embedded script {script_path}: {e}")
            return

        parsed = self._relocate(parsed, file_path)
        result.merge(parsed)
        result.api_calls.extend(self.api_calls_from_calls(parsed.calls, file_path))

    @staticmethod
    def _relocate(parsed: SourceParseResult, file_path: str) -> SourceParseResult:
        """Point script entities at the host file; ids keep the synthetic script path."""
        return SourceParseResult(
            functions=[replace(f, file=file_path) for f in parsed.functions],
            calls=[replace(c, file=file_path) for c in parsed.calls],
            imports=[replace(i, file=file_path) for i in parsed.imports],
            exports=[replace(e, file=file_path) for e in parsed.exports],
            variables=[replace(v, file=file_path) for v in parsed.variables],
            endpoints=[replace(e, file=file_path) for e in parsed.endpoints],
            code_blocks=[replace(b, file=file_path) for b in parsed.code_blocks],
        )

    @staticmethod
    def api_calls_from_calls(calls: List[CallFact], file_path: str) -> List[ApiCall]:
        """fetch(), XMLHttpRequest / ``.open`` and EventSource call sites."""
        api_calls = []
        for call in calls:
            if call.callee == "fetch":
                api_calls.append(
                    ApiCall("fetch", file_path, call.line, call.caller, path=call.literal_argument)
                )
            if call.callee == "XMLHttpRequest" or ".open" in call.callee:
                api_calls.append(ApiCall("xhr", file_path, call.line, call.caller))
            if call.callee == "EventSource":
                api_calls.append(
                    ApiCall("sse", file_path, call.line, call.caller, path=call.literal_argument)
                )
        return api_calls

    @staticmethod
    def extract_fetch_patterns(content: str, file_path: str) -> List[ApiCall]:
        """Rescan raw text for fetch/EventSource call sites the syntax tree may miss."""

        def line_at(position: int) -> int:
            return content.count("\n", 0, position) + 1

        patterns = []
        for match in _FETCH_QUOTED.finditer(content):
            patterns.append(ApiCall("fetch", file_path, line_at(match.start()), path=match.group(1)))
        for match in _EVENT_SOURCE.finditer(content):
            patterns.append(ApiCall("sse", file_path, line_at(match.start()), path=match.group(1)))
        for match in _FETCH_TEMPLATE.finditer(content):
            path = _INTERPOLATION.sub("*", match.group(1))
            patterns.append(ApiCall("fetch-template", file_path, line_at(match.start()), path=path))
        return patterns
