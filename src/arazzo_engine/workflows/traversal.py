"""Helpers for walking structured values.

JSON and XML payloads are both turned into the same plain dict/list/str tree so
that one traversal serves both formats.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable

from jsonpath_ng.ext import parse as parse_jsonpath
from lxml import etree

from arazzo_engine.workflows.errors import ExpressionError

EXPRESSION_MARKER = "$"

_IDENTIFIER = re.compile(r"[A-Za-z_@][A-Za-z0-9_@\-]*")
_RESERVED_JSONPATH_WORDS = frozenset({"where", "wherenot", "sorted", "len", "keys", "str", "split", "sub"})

Expander = Callable[[str, list[str]], Any]


def split_path(path: str) -> list[str]:
    """Split a dotted path into its non-empty segments."""
    return [segment for segment in path.split(".") if segment]


def looks_like_expression(value: Any) -> bool:
    """Whether a value is text carrying an embedded runtime expression."""
    return isinstance(value, str) and EXPRESSION_MARKER in value


def get_nested(data: Any, segments: list[str], expand: Expander | None = None) -> Any | None:
    """Walk `segments` through nested dicts and lists.

    When `expand` is given, an intermediate string that looks like an expression
    is handed to it together with the segments walked so far, and the walk
    continues inside whatever structure it returns.

    Returns:
        The value found, or None when any segment is absent.
    """
    current = data
    for index, segment in enumerate(segments):
        if expand is not None and looks_like_expression(current):
            current = expand(current, segments[:index])
        if isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, list):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return None
        else:
            return None
    return current


def parse_xml(text: str) -> etree._Element:
    """Parse XML text without resolving entities or touching the network.

    Raises:
        ValueError: If the text is not well-formed XML.
    """
    parser = etree.XMLParser(resolve_entities=False, no_network=True)
    try:
        return etree.fromstring(text.strip().encode("utf-8"), parser=parser)
    except etree.XMLSyntaxError as exc:
        raise ValueError(f"Invalid XML: {exc}") from exc


def xml_to_tree(element: etree._Element) -> Any:
    """Convert an element's content into a dict/list/str tree.

    Repeated child tags become lists; leaves become their stripped text.
    """
    children = [child for child in element if isinstance(child.tag, str)]
    if not children:
        return (element.text or "").strip()
    tree: dict[str, Any] = {}
    for child in children:
        tag = etree.QName(child).localname
        value = xml_to_tree(child)
        if tag not in tree:
            tree[tag] = value
        elif isinstance(tree[tag], list):
            tree[tag].append(value)
        else:
            tree[tag] = [tree[tag], value]
    return tree


def parse_structured(text: str) -> Any:
    """Parse JSON object/array text, or XML text, into a plain tree.

    The XML root element itself is dropped. Text that is neither is returned
    unchanged.

    Raises:
        ValueError: If the text looks like JSON or XML but does not parse.
    """
    stripped = text.strip()
    if stripped.startswith(("{", "[")):
        return json.loads(stripped)
    if stripped.startswith("<"):
        return xml_to_tree(parse_xml(stripped))
    return text


def is_json_content(content_type: str | None, body: str | None = None) -> bool:
    if content_type:
        return "json" in content_type.lower()
    return body is not None and body.strip().startswith(("{", "["))


def is_xml_content(content_type: str | None, body: str | None = None) -> bool:
    if content_type:
        return "xml" in content_type.lower()
    return body is not None and body.strip().startswith("<")


def _jsonpath_segment(segment: str) -> str:
    if segment.isdigit():
        return f"[{segment}]"
    if _IDENTIFIER.fullmatch(segment) and segment not in _RESERVED_JSONPATH_WORDS:
        return f".{segment}"
    escaped = segment.replace("'", "\\'")
    return f".'{escaped}'"


def dotted_to_jsonpath(path: str) -> str:
    """Translate `items.0.id` into `$.items[0].id`."""
    return "$" + "".join(_jsonpath_segment(segment) for segment in split_path(path))


def pointer_to_jsonpath(pointer: str) -> str:
    """Translate a JSON pointer (`/items/0/id`, optionally `#`-prefixed) into JSONPath."""
    pointer = pointer.lstrip("#")
    if not pointer:
        return "$"
    if not pointer.startswith("/"):
        raise ExpressionError(pointer, "JSON pointer must start with '/'")
    segments = [part.replace("~1", "/").replace("~0", "~") for part in pointer[1:].split("/")]
    return "$" + "".join(_jsonpath_segment(segment) for segment in segments)


def segments_to_xpath(segments: list[str]) -> str:
    """Build an absolute XPath; a numeric segment selects a position (0-based) of the previous step."""
    steps: list[str] = []
    for segment in segments:
        if segment.isdigit() and steps:
            steps[-1] += f"[{int(segment) + 1}]"
        else:
            steps.append(segment)
    return "/" + "/".join(steps)


def xpath_text(root: etree._Element, xpath: str) -> str | None:
    """Evaluate an XPath and return the text content of its first result."""
    try:
        result = root.xpath(xpath)
    except etree.XPathError as exc:
        raise ExpressionError(xpath, f"Invalid XPath: {exc}") from exc
    if isinstance(result, list):
        if not result:
            return None
        result = result[0]
        if isinstance(result, etree._Element):
            return "".join(result.itertext())
        return str(result)
    if isinstance(result, float) and result.is_integer():
        return str(int(result))
    return to_text(result) if isinstance(result, bool) else str(result)


def compile_jsonpath(path: str) -> Any:
    try:
        return parse_jsonpath(path)
    except Exception as exc:
        raise ExpressionError(path, f"Invalid JSONPath: {exc}") from exc


def find_jsonpath(data: Any, path: str) -> list[Any]:
    """Return every value matched by a JSONPath query."""
    return [match.value for match in compile_jsonpath(path).find(data)]


def to_text(value: Any) -> str | None:
    """Stringify a value the way it would appear in a JSON document."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    return json.dumps(value, separators=(",", ":"))
