"""Runtime expression resolution.

Handles Arazzo runtime expressions:
- Document references: $inputs.x, $outputs.x, $sourceDescriptions.<name>.x,
  $workflows.<id>.x, $steps.<id>.x
- Transaction references: $statusCode, $url, $method, $request.header.X,
  $request.query.X, $request.path.X, $request.body, $response.header.X,
  $response.body with a dotted path (`.items.0.id`) or a JSON pointer (`#/items/0/id`)
- Templates interpolating `{$...}` placeholders into text
"""

from __future__ import annotations

import json
import logging
from typing import Any

from arazzo_engine.workflows.cache import ExpressionCache
from arazzo_engine.workflows.errors import ComponentReferenceError, ExpressionError
from arazzo_engine.workflows.models import TransactionSnapshot, WorkflowDocument
from arazzo_engine.workflows.traversal import (
    EXPRESSION_MARKER,
    Expander,
    dotted_to_jsonpath,
    find_jsonpath,
    get_nested,
    is_json_content,
    is_xml_content,
    looks_like_expression,
    parse_structured,
    parse_xml,
    pointer_to_jsonpath,
    segments_to_xpath,
    split_path,
    to_text,
    xpath_text,
)

logger = logging.getLogger(__name__)

INPUTS_PREFIX = "$inputs."
OUTPUTS_PREFIX = "$outputs."
SOURCE_DESCRIPTIONS_PREFIX = "$sourceDescriptions."
WORKFLOWS_PREFIX = "$workflows."
STEPS_PREFIX = "$steps."
COMPONENT_PREFIXES = ("$components.", "#/components")

STATUS_CODE = "$statusCode"
URL = "$url"
METHOD = "$method"
RESPONSE_HEADER_PREFIX = "$response.header."
REQUEST_HEADER_PREFIX = "$request.header."
REQUEST_QUERY_PREFIX = "$request.query."
REQUEST_PATH_PREFIX = "$request.path."
RESPONSE_BODY = "$response.body"
REQUEST_BODY = "$request.body"

TEMPLATE_OPEN = "{" + EXPRESSION_MARKER
TEMPLATE_CLOSE = "}"


class ExpressionResolver:
    """Resolves runtime expressions against a document graph and a transaction snapshot.

    Document references are memoized in the shared cache. Values read from the
    transaction snapshot change with every step and are never memoized, and
    `$inputs.`/`$outputs.` are relative to the current run, so they are
    not memoized either.
    """

    def __init__(
        self,
        document: WorkflowDocument,
        inputs: dict[str, Any] | None = None,
        cache: ExpressionCache | None = None,
        outputs: dict[str, Any] | None = None,
        workflow_id: str | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            document: The linked document graph.
            inputs: Inputs of the workflow run.
            cache: Cache shared by every resolver of the same top-level run.
            outputs: Outputs accumulated by the current workflow run.
            workflow_id: Workflow being executed; its steps shadow same-named steps of other workflows.
        """
        self.document = document
        self.inputs = inputs if inputs is not None else {}
        self.cache = cache if cache is not None else ExpressionCache()
        self.outputs = outputs if outputs is not None else {}
        self.workflow_id = workflow_id
        self._source_descriptions = {
            source.name: source.model_dump(mode="json", by_alias=True, exclude_none=True)
            for source in document.source_descriptions
        }
        self._workflows: dict[str, dict[str, Any]] = {}
        self._steps: dict[str, dict[str, Any]] = {}
        for workflow in document.workflows:
            dumped = workflow.model_dump(mode="json", by_alias=True, exclude_none=True)
            self._workflows[workflow.workflow_id] = dumped
            own = workflow.workflow_id == workflow_id
            for step in dumped["steps"]:
                if own:
                    self._steps[step["stepId"]] = step
                else:
                    self._steps.setdefault(step["stepId"], step)

    def resolve(self, expression: str, snapshot: TransactionSnapshot | None = None) -> Any:
        """Resolve a single runtime expression.

        Args:
            expression: The expression text, e.g. `$steps.login.outputs.token`.
            snapshot: The transaction of the step being evaluated, if any.

        Returns:
            The resolved value, or None when a document path is absent.

        Raises:
            ExpressionError: If the expression cannot be resolved.
        """
        cached = self.cache.lookup(expression)
        if cached is not None:
            logger.debug("Cache hit for %s", expression)
            return cached

        if expression.startswith(INPUTS_PREFIX):
            return get_nested(self.inputs, split_path(expression[len(INPUTS_PREFIX) :]))
        if expression.startswith(OUTPUTS_PREFIX):
            return get_nested(self.outputs, split_path(expression[len(OUTPUTS_PREFIX) :]))
        if expression.startswith(SOURCE_DESCRIPTIONS_PREFIX):
            value = self._resolve_node(expression, SOURCE_DESCRIPTIONS_PREFIX, self._source_descriptions)
        elif expression.startswith(WORKFLOWS_PREFIX):
            value = self._resolve_node(expression, WORKFLOWS_PREFIX, self._workflows, snapshot, reresolve=True)
        elif expression.startswith(STEPS_PREFIX):
            value = self._resolve_node(expression, STEPS_PREFIX, self._steps, snapshot, reresolve=True)
        elif expression.startswith(COMPONENT_PREFIXES):
            raise ComponentReferenceError(expression)
        else:
            return self.resolve_transaction(expression, snapshot)

        if value is not None and to_text(value) != expression:
            self.cache.add(expression, value)
            logger.debug("Cached %s", expression)
        return value

    def _resolve_node(
        self,
        expression: str,
        prefix: str,
        nodes: dict[str, dict[str, Any]],
        snapshot: TransactionSnapshot | None = None,
        reresolve: bool = False,
    ) -> Any:
        name, _, path = expression[len(prefix) :].partition(".")
        node = nodes.get(name)
        if node is None:
            return None
        value = get_nested(node, split_path(path), self._expander(f"{prefix}{name}"))
        if reresolve and looks_like_expression(value) and value != expression:
            return self.resolve_template(value, snapshot)
        return value

    def _expander(self, base: str) -> Expander:
        def expand(text: str, walked: list[str]) -> Any:
            key = ".".join([base, *walked])
            value = self.cache.lookup(key)
            if value is None:
                value = self.cache.lookup(text)
            if not isinstance(value, str):
                return value
            try:
                return parse_structured(value)
            except ValueError as exc:
                raise ExpressionError(key, f"Cannot parse stored value: {exc}", self.workflow_id) from exc

        return expand

    def resolve_transaction(self, expression: str, snapshot: TransactionSnapshot | None) -> Any:
        """Resolve an expression against the latest request/response.

        Text that is not an expression is returned unchanged.
        """
        if not expression.startswith(EXPRESSION_MARKER):
            return expression
        if snapshot is None:
            raise ExpressionError(expression, "No transaction is available", self.workflow_id)

        if expression == STATUS_CODE:
            return None if snapshot.status_code is None else str(snapshot.status_code)
        if expression == URL:
            return snapshot.url
        if expression == METHOD:
            return snapshot.method
        if expression.startswith(RESPONSE_HEADER_PREFIX):
            return snapshot.response_header(expression[len(RESPONSE_HEADER_PREFIX) :])
        if expression.startswith(REQUEST_HEADER_PREFIX):
            return snapshot.request_header(expression[len(REQUEST_HEADER_PREFIX) :])
        if expression.startswith(REQUEST_QUERY_PREFIX):
            return to_text(snapshot.query_parameters.get(expression[len(REQUEST_QUERY_PREFIX) :]))
        if expression.startswith(REQUEST_PATH_PREFIX):
            return to_text(snapshot.path_parameters.get(expression[len(REQUEST_PATH_PREFIX) :]))
        if expression.startswith(RESPONSE_BODY):
            return self._resolve_body(
                expression, expression[len(RESPONSE_BODY) :], snapshot.response_body, snapshot.content_type
            )
        if expression.startswith(REQUEST_BODY):
            return self._resolve_body(
                expression,
                expression[len(REQUEST_BODY) :],
                snapshot.request_body,
                snapshot.request_header("Content-Type"),
            )
        raise ExpressionError(expression, "Unknown runtime expression", self.workflow_id)

    def _resolve_body(self, expression: str, path: str, body: str | None, content_type: str | None) -> Any:
        if body is None or not body.strip():
            return None
        if not path:
            return body
        if path.startswith("#"):
            jsonpath = pointer_to_jsonpath(path)
            segments = [part.replace("~1", "/").replace("~0", "~") for part in path[2:].split("/") if part]
        elif path.startswith("."):
            jsonpath = dotted_to_jsonpath(path)
            segments = split_path(path)
        else:
            raise ExpressionError(expression, "Unknown runtime expression", self.workflow_id)

        if is_json_content(content_type, body):
            try:
                data = json.loads(body)
            except ValueError as exc:
                raise ExpressionError(expression, f"Body is not valid JSON: {exc}", self.workflow_id) from exc
            matches = find_jsonpath(data, jsonpath)
            if not matches:
                raise ExpressionError(expression, f"No value at '{jsonpath}'", self.workflow_id)
            return to_text(matches[0] if len(matches) == 1 else matches)

        if is_xml_content(content_type, body):
            try:
                root = parse_xml(body)
            except ValueError as exc:
                raise ExpressionError(expression, f"Body is not valid XML: {exc}", self.workflow_id) from exc
            xpath = segments_to_xpath(segments)
            value = xpath_text(root, xpath)
            if value is None:
                raise ExpressionError(expression, f"No node at '{xpath}'", self.workflow_id)
            return value

        raise ExpressionError(expression, f"Cannot query a body of type '{content_type}'", self.workflow_id)

    def resolve_template(self, text: str, snapshot: TransactionSnapshot | None = None) -> Any:
        """Interpolate every `{$...}` placeholder of `text`.

        Text without placeholders is resolved as one whole expression, and text
        that is exactly one placeholder keeps the resolved value's type.

        Raises:
            ExpressionError: On an unmatched `{` or a placeholder without a value.
        """
        if TEMPLATE_OPEN not in text:
            value = self.resolve(text, snapshot)
            if value is None:
                raise ExpressionError(text, "Resolved to no value", self.workflow_id)
            return value

        parts: list[str] = []
        position = 0
        while True:
            start = text.find(TEMPLATE_OPEN, position)
            if start < 0:
                parts.append(text[position:])
                break
            end = text.find(TEMPLATE_CLOSE, start)
            if end < 0:
                raise ExpressionError(text, "Unmatched '{' in template", self.workflow_id)
            placeholder = text[start + 1 : end]
            value = self.resolve(placeholder, snapshot)
            if value is None:
                raise ExpressionError(placeholder, "Placeholder resolved to no value", self.workflow_id)
            if start == 0 and end == len(text) - 1:
                return value
            parts.append(text[position:start])
            parts.append(to_text(value))
            position = end + 1
        return "".join(parts)

    def resolve_payload(self, value: Any, snapshot: TransactionSnapshot | None = None) -> Any:
        """Resolve expressions anywhere inside a nested payload."""
        if isinstance(value, str):
            return self.resolve_template(value, snapshot) if looks_like_expression(value) else value
        if isinstance(value, dict):
            return {key: self.resolve_payload(item, snapshot) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve_payload(item, snapshot) for item in value]
        return value

    def publish(self, name: str, value: Any) -> None:
        """Store an output value under `name` for later references."""
        self.cache.publish(name, value)
        logger.debug("Published %s", name)

    def lookup(self, name: str) -> Any | None:
        return self.cache.lookup(name)
