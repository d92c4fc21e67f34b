"""Step executors: perform a step's remote operation and judge its outcome.

`StepExecutor` holds the transport independent part of running a step:
success criteria, step-level action selection, the retry delay hint and
step outputs. Subclasses only implement `perform`, which makes the remote
call and captures it as a `TransactionSnapshot`.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable
from urllib.parse import quote, unquote, urljoin, urlsplit, urlunsplit

import httpx
from lxml import etree

from arazzo_engine.config import EngineConfig
from arazzo_engine.workflows.criteria import CriterionEvaluator
from arazzo_engine.workflows.errors import (
    ActionCriteriaError,
    StepExecutionError,
    TransportError,
    WorkflowLookupError,
)
from arazzo_engine.workflows.expressions import ExpressionResolver
from arazzo_engine.workflows.models import (
    SOURCE_DESCRIPTIONS_PREFIX,
    EndAction,
    ExecutionOutcome,
    GotoAction,
    Parameter,
    ParameterLocation,
    PayloadReplacement,
    RetryAction,
    SourceDescription,
    Step,
    TransactionSnapshot,
    Workflow,
    WorkflowDocument,
)
from arazzo_engine.workflows.traversal import (
    compile_jsonpath,
    is_xml_content,
    parse_xml,
    pointer_to_jsonpath,
    to_text,
)

logger = logging.getLogger(__name__)

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")
DEFAULT_CONTENT_TYPE = "application/json"
PATH_TEMPLATE = re.compile(r"\{([^}]+)\}")

Action = GotoAction | EndAction | RetryAction
StepExecutorFactory = Callable[[WorkflowDocument, ExpressionResolver, CriterionEvaluator], "StepExecutor"]


def parse_retry_after(value: str | None) -> float | None:
    """Parse a `Retry-After` header given as delta seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed Retry-After header: %r", value)
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class StepExecutor(ABC):
    """Runs one step and reports its `ExecutionOutcome`."""

    def __init__(
        self,
        document: WorkflowDocument,
        resolver: ExpressionResolver,
        evaluator: CriterionEvaluator,
        config: EngineConfig | None = None,
    ) -> None:
        self.document = document
        self.resolver = resolver
        self.evaluator = evaluator
        self.config = config or EngineConfig()

    @abstractmethod
    def perform(self, workflow: Workflow, step: Step) -> TransactionSnapshot:
        """Perform the step's remote operation and capture the transaction."""

    def execute(self, workflow: Workflow, step: Step) -> ExecutionOutcome:
        """Execute a step.

        Args:
            workflow: The workflow owning the step.
            step: The step to execute.

        Returns:
            Whether all success criteria held, and the step-level action chosen for that outcome.

        Raises:
            ActionCriteriaError: If the step declares actions for the outcome but none applies.
        """
        snapshot = self.perform(workflow, step)
        successful = self.evaluator.evaluate_all(step.success_criteria, snapshot)
        logger.info(
            "Step '%s' of workflow '%s' %s (status %s)",
            step.step_id,
            workflow.workflow_id,
            "succeeded" if successful else "failed",
            snapshot.status_code,
        )
        if successful:
            action = self.select_action(step.on_success, snapshot, workflow, step, "success")
        else:
            action = self.select_action(step.on_failure, snapshot, workflow, step, "failure")

        retry_after = None
        if isinstance(action, RetryAction) and self.config.retry.honor_retry_after:
            retry_after = parse_retry_after(snapshot.response_header("Retry-After"))

        if successful:
            self.publish_outputs(workflow, step, snapshot)
        return ExecutionOutcome(successful=successful, action=action, snapshot=snapshot, retry_after=retry_after)

    def select_action(
        self,
        actions: list[Any],
        snapshot: TransactionSnapshot,
        workflow: Workflow,
        step: Step,
        kind: str,
    ) -> Action | None:
        """Pick the first action whose criteria all hold; no declared actions means no action."""
        if not actions:
            return None
        for action in actions:
            if self.evaluator.evaluate_all(action.criteria, snapshot):
                logger.info("Step '%s' selected %s action '%s' (%s)", step.step_id, kind, action.name, action.type)
                return action
        logger.error("No %s action of step '%s' has satisfied criteria", kind, step.step_id)
        raise ActionCriteriaError(kind, workflow.workflow_id, step.step_id)

    def publish_outputs(self, workflow: Workflow, step: Step, snapshot: TransactionSnapshot) -> None:
        for name, expression in step.outputs.items():
            if isinstance(expression, str):
                value = self.resolver.resolve_template(expression, snapshot)
            else:
                value = self.resolver.resolve_payload(expression, snapshot)
            if value is None:
                raise StepExecutionError(f"Output '{name}' resolved to no value", workflow.workflow_id, step.step_id)
            self.resolver.publish(f"$steps.{step.step_id}.outputs.{name}", value)


class HttpxStepExecutor(StepExecutor):
    """Performs operation steps over HTTP with httpx."""

    def __init__(
        self,
        document: WorkflowDocument,
        resolver: ExpressionResolver,
        evaluator: CriterionEvaluator,
        config: EngineConfig | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(document, resolver, evaluator, config)
        self.transport = transport

    @classmethod
    def factory(
        cls, config: EngineConfig | None = None, transport: httpx.BaseTransport | None = None
    ) -> StepExecutorFactory:
        """Build a factory creating executors that share the configuration and transport."""

        def create(
            document: WorkflowDocument, resolver: ExpressionResolver, evaluator: CriterionEvaluator
        ) -> HttpxStepExecutor:
            return cls(document, resolver, evaluator, config=config, transport=transport)

        return create

    def perform(self, workflow: Workflow, step: Step) -> TransactionSnapshot:
        source, path, method, path_item, operation = self.find_operation(workflow, step)
        server = self.server_url(source, path_item, operation, workflow, step)

        path_parameters: dict[str, str] = {}
        query: dict[str, str] = {}
        headers: dict[str, str] = dict(self.config.http.headers)
        cookies: dict[str, str] = {}
        targets = {
            ParameterLocation.PATH: path_parameters,
            ParameterLocation.QUERY: query,
            ParameterLocation.HEADER: headers,
            ParameterLocation.COOKIE: cookies,
        }
        for parameter in self._merge_parameters(workflow.parameters, step.parameters):
            target = targets.get(parameter.location or ParameterLocation.QUERY)
            if target is None:
                continue
            value = self.resolver.resolve_payload(parameter.value)
            if value is not None:
                target[parameter.name] = to_text(value)

        body = None
        if step.request_body is not None:
            content_type = step.request_body.content_type or DEFAULT_CONTENT_TYPE
            body = self.build_body(step.request_body.payload, step.request_body.replacements, content_type)
            headers["Content-Type"] = content_type

        url = server.rstrip("/") + self._expand_path(path, path_parameters, workflow, step)
        logger.info("%s %s", method.upper(), url)
        try:
            with httpx.Client(
                timeout=self.config.http.timeout,
                verify=self.config.http.verify_ssl,
                cookies=cookies,
                transport=self.transport,
            ) as client:
                response = client.request(method.upper(), url, params=query, headers=headers, content=body)
        except httpx.HTTPError as exc:
            logger.error("Request of step '%s' failed: %s", step.step_id, exc)
            raise TransportError(
                f"{method.upper()} {url} failed", workflow.workflow_id, step.step_id, cause=exc
            ) from exc

        return TransactionSnapshot(
            url=str(response.url),
            method=method.upper(),
            status_code=response.status_code,
            content_type=response.headers.get("content-type"),
            request_headers=dict(response.request.headers),
            request_body=body,
            response_headers=dict(response.headers),
            response_body=response.text,
            path_parameters=path_parameters,
            query_parameters=query,
        )

    @staticmethod
    def _merge_parameters(defaults: list[Parameter], overrides: list[Parameter]) -> list[Parameter]:
        # A step parameter replaces a workflow parameter with the same name and location
        merged = {(parameter.name, parameter.location): parameter for parameter in defaults}
        merged.update({(parameter.name, parameter.location): parameter for parameter in overrides})
        return list(merged.values())

    def _expand_path(self, path: str, values: dict[str, str], workflow: Workflow, step: Step) -> str:
        def replace(match: re.Match[str]) -> str:
            name = match.group(1)
            if name not in values:
                raise StepExecutionError(f"Missing path parameter '{name}'", workflow.workflow_id, step.step_id)
            return quote(values[name], safe="")

        return PATH_TEMPLATE.sub(replace, path)

    def find_operation(
        self, workflow: Workflow, step: Step
    ) -> tuple[SourceDescription, str, str, dict[str, Any], dict[str, Any]]:
        """Locate the OpenAPI operation referenced by `operationId` or `operationPath`.

        Returns:
            The source description, the path template, the method, the path item and the operation.
        """
        if step.operation_id is not None:
            operation_id = step.operation_id
            if operation_id.startswith(SOURCE_DESCRIPTIONS_PREFIX):
                source = self.document.find_source_description(operation_id)
                operation_id = operation_id[len(SOURCE_DESCRIPTIONS_PREFIX) + len(source.name) + 1 :]
                sources = [source]
            else:
                sources = [source for source in self.document.source_descriptions if source.openapi is not None]
            for source in sources:
                for path, path_item in ((source.openapi or {}).get("paths") or {}).items():
                    for method in HTTP_METHODS:
                        operation = path_item.get(method)
                        if isinstance(operation, dict) and operation.get("operationId") == operation_id:
                            return source, path, method, path_item, operation
            raise WorkflowLookupError("Operation", operation_id, workflow.workflow_id, step.step_id)

        reference = step.operation_path or ""
        source = self.document.find_source_description(reference)
        if source.openapi is None:
            raise WorkflowLookupError("OpenAPI description", source.name, workflow.workflow_id, step.step_id)
        paths = source.openapi.get("paths") or {}
        fragment = unquote(reference.partition("#")[2])
        segments = fragment.strip("/").split("/")
        if len(segments) != 3 or segments[0] != "paths":
            raise WorkflowLookupError("Operation", reference, workflow.workflow_id, step.step_id)
        path = segments[1].replace("~1", "/").replace("~0", "~")
        method = segments[2].lower()
        path_item = paths.get(path) or {}
        operation = path_item.get(method)
        if not isinstance(operation, dict):
            raise WorkflowLookupError("Operation", reference, workflow.workflow_id, step.step_id)
        return source, path, method, path_item, operation

    def server_url(
        self,
        source: SourceDescription,
        path_item: dict[str, Any],
        operation: dict[str, Any],
        workflow: Workflow,
        step: Step,
    ) -> str:
        """Pick the first server of the operation, its path item or the description."""
        if self.config.http.base_url:
            return self.config.http.base_url
        servers = operation.get("servers") or path_item.get("servers") or (source.openapi or {}).get("servers")
        if not servers:
            raise WorkflowLookupError("Server URL", source.name, workflow.workflow_id, step.step_id)
        server = servers[0]
        url = server["url"]
        for name, variable in (server.get("variables") or {}).items():
            url = url.replace(f"{{{name}}}", str(variable.get("default", "")))
        if not urlsplit(url).scheme and urlsplit(source.url).scheme in ("http", "https"):
            url = urljoin(source.url, url)
        parts = urlsplit(url)
        if parts.hostname == "localhost" and parts.port is None:
            url = urlunsplit(parts._replace(netloc=f"{parts.netloc}:{self.config.http.fallback_port}"))
        return url

    def build_body(self, payload: Any, replacements: list[PayloadReplacement], content_type: str) -> str | None:
        """Resolve a request body and apply its replacements."""
        if payload is None:
            return None
        payload = self.resolver.resolve_payload(payload)
        if is_xml_content(content_type, payload if isinstance(payload, str) else None):
            text = to_text(payload)
            if not replacements:
                return text
            root = parse_xml(text)
            for replacement in replacements:
                value = to_text(self.resolver.resolve_payload(replacement.value))
                for node in root.xpath(replacement.target):
                    node.text = value
            return etree.tostring(root, encoding="unicode")

        if isinstance(payload, str):
            if not replacements:
                return payload
            payload = json.loads(payload)
        for replacement in replacements:
            target = replacement.target
            if target.startswith(("/", "#/")):
                target = pointer_to_jsonpath(target)
            payload = compile_jsonpath(target).update(payload, self.resolver.resolve_payload(replacement.value))
        return json.dumps(payload)
