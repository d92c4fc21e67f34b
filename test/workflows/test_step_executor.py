"""Tests for arazzo_engine.workflows.step_executor module."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

from arazzo_engine.config import EngineConfig, HttpConfig
from arazzo_engine.workflows.criteria import CriterionEvaluator
from arazzo_engine.workflows.errors import StepExecutionError, TransportError, WorkflowLookupError
from arazzo_engine.workflows.expressions import ExpressionResolver
from arazzo_engine.workflows.models import PayloadReplacement, RetryAction, WorkflowDocument
from arazzo_engine.workflows.step_executor import HttpxStepExecutor, parse_retry_after

OPENAPI = {
    "openapi": "3.0.3",
    "info": {"title": "Pets", "version": "1.0"},
    "servers": [{"url": "http://localhost/v1"}],
    "paths": {
        "/pets/{petId}": {
            "get": {"operationId": "getPet"},
            "delete": {"operationId": "deletePet"},
        },
        "/pets": {
            "post": {
                "operationId": "createPet",
                "servers": [
                    {"url": "https://{region}.example.com", "variables": {"region": {"default": "eu"}}}
                ],
            }
        },
    },
}


class Recorder:
    """Mock transport handler recording every request."""

    def __init__(self, status: int = 200, body: dict | None = None, headers: dict | None = None) -> None:
        self.status = status
        self.body = body if body is not None else {"id": 1, "name": "Rex"}
        self.headers = headers or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body, headers=self.headers)


def build_document(steps: list[dict], openapi: dict | None = None, **workflow) -> WorkflowDocument:
    return WorkflowDocument.model_validate(
        {
            "arazzo": "1.0.0",
            "info": {"title": "Pets", "version": "1.0"},
            "sourceDescriptions": [
                {"name": "api", "url": "https://specs.example.com/pets.yaml", "openapi": openapi or OPENAPI}
            ],
            "workflows": [{"workflowId": "w", "steps": steps, **workflow}],
        }
    )


def build_executor(document, handler, inputs=None, config=None):
    resolver = ExpressionResolver(document, inputs or {}, workflow_id="w")
    evaluator = CriterionEvaluator(resolver)
    return HttpxStepExecutor(document, resolver, evaluator, config=config, transport=httpx.MockTransport(handler))


def run(document, handler, step_id="s", **kwargs):
    executor = build_executor(document, handler, **kwargs)
    workflow = document.get_workflow("w")
    return executor, executor.execute(workflow, workflow.get_step(step_id))


class TestRequests:
    """Tests for building and sending the HTTP request of a step."""

    def test_parameters_and_localhost_fallback_port(self):
        document = build_document(
            [
                {
                    "stepId": "s",
                    "operationId": "getPet",
                    "parameters": [
                        {"name": "petId", "in": "path", "value": "$inputs.id"},
                        {"name": "verbose", "in": "query", "value": True},
                        {"name": "X-Trace", "in": "header", "value": "trace-{$inputs.id}"},
                    ],
                    "successCriteria": [{"condition": "$statusCode == 200"}],
                }
            ]
        )
        handler = Recorder()

        _, outcome = run(document, handler, inputs={"id": "a b"})

        request = handler.requests[0]
        assert request.method == "GET"
        assert str(request.url) == "http://localhost:8080/v1/pets/a%20b?verbose=true"
        assert request.headers["X-Trace"] == "trace-a b"
        assert outcome.successful
        assert outcome.action is None
        assert outcome.snapshot.path_parameters == {"petId": "a b"}
        assert outcome.snapshot.query_parameters == {"verbose": "true"}
        assert outcome.snapshot.response_header("content-type") == "application/json"

    def test_parameter_without_location_is_a_query_parameter(self):
        document = build_document(
            [
                {
                    "stepId": "s",
                    "operationId": "getPet",
                    "parameters": [{"name": "petId", "in": "path", "value": 1}, {"name": "page", "value": 2}],
                }
            ]
        )
        handler = Recorder()
        run(document, handler)
        assert handler.requests[0].url.params["page"] == "2"

    def test_step_parameters_override_workflow_parameters(self):
        document = build_document(
            [
                {
                    "stepId": "s",
                    "operationId": "getPet",
                    "parameters": [
                        {"name": "petId", "in": "path", "value": 1},
                        {"name": "limit", "in": "query", "value": 5},
                    ],
                }
            ],
            parameters=[
                {"name": "limit", "in": "query", "value": 10},
                {"name": "X-Tenant", "in": "header", "value": "acme"},
            ],
        )
        handler = Recorder()
        run(document, handler)
        request = handler.requests[0]
        assert request.url.params["limit"] == "5"
        assert request.headers["X-Tenant"] == "acme"

    def test_configured_headers_are_sent(self):
        document = build_document(
            [{"stepId": "s", "operationId": "getPet", "parameters": [{"name": "petId", "in": "path", "value": 1}]}]
        )
        handler = Recorder()
        run(document, handler, config=EngineConfig(http=HttpConfig(headers={"Authorization": "Bearer t"})))
        assert handler.requests[0].headers["Authorization"] == "Bearer t"

    def test_missing_path_parameter(self):
        document = build_document([{"stepId": "s", "operationId": "getPet"}])
        with pytest.raises(StepExecutionError, match="Missing path parameter 'petId'"):
            run(document, Recorder())

    def test_operation_server_with_variables_and_json_body(self):
        document = build_document(
            [
                {
                    "stepId": "s",
                    "operationId": "createPet",
                    "requestBody": {
                        "payload": {"name": "$inputs.name", "tag": "cat"},
                        "replacements": [{"target": "/tag", "value": "dog"}],
                    },
                    "successCriteria": [{"condition": "$statusCode == 201"}],
                }
            ]
        )
        handler = Recorder(status=201)

        _, outcome = run(document, handler, inputs={"name": "Rex"})

        request = handler.requests[0]
        assert str(request.url) == "https://eu.example.com/pets"
        assert request.headers["Content-Type"] == "application/json"
        assert json.loads(request.content) == {"name": "Rex", "tag": "dog"}
        assert outcome.successful
        assert json.loads(outcome.snapshot.request_body) == {"name": "Rex", "tag": "dog"}

    def test_relative_server_is_joined_with_source_url(self):
        openapi = {**OPENAPI, "servers": [{"url": "/v2"}]}
        document = build_document(
            [{"stepId": "s", "operationId": "getPet", "parameters": [{"name": "petId", "in": "path", "value": 1}]}],
            openapi=openapi,
        )
        handler = Recorder()
        run(document, handler)
        assert str(handler.requests[0].url) == "https://specs.example.com/v2/pets/1"

    def test_base_url_override(self):
        document = build_document(
            [{"stepId": "s", "operationId": "getPet", "parameters": [{"name": "petId", "in": "path", "value": 1}]}]
        )
        handler = Recorder()
        run(document, handler, config=EngineConfig(http=HttpConfig(base_url="http://api.test/")))
        assert str(handler.requests[0].url) == "http://api.test/pets/1"

    def test_missing_server(self):
        openapi = {key: value for key, value in OPENAPI.items() if key != "servers"}
        document = build_document(
            [{"stepId": "s", "operationId": "getPet", "parameters": [{"name": "petId", "in": "path", "value": 1}]}],
            openapi=openapi,
        )
        with pytest.raises(WorkflowLookupError, match="Server URL not found"):
            run(document, Recorder())

    def test_transport_error(self):
        document = build_document(
            [{"stepId": "s", "operationId": "getPet", "parameters": [{"name": "petId", "in": "path", "value": 1}]}]
        )

        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        with pytest.raises(TransportError) as exc_info:
            run(document, handler)
        assert isinstance(exc_info.value.cause, httpx.ConnectError)
        assert "GET http://localhost:8080/v1/pets/1 failed" in str(exc_info.value)


class TestOperationLookup:
    """Tests for locating the operation of a step."""

    def test_qualified_operation_id(self):
        document = build_document(
            [
                {
                    "stepId": "s",
                    "operationId": "$sourceDescriptions.api.deletePet",
                    "parameters": [{"name": "petId", "in": "path", "value": 3}],
                }
            ]
        )
        handler = Recorder()
        run(document, handler)
        assert handler.requests[0].method == "DELETE"

    def test_operation_path(self):
        document = build_document(
            [
                {
                    "stepId": "s",
                    "operationPath": "{$sourceDescriptions.api.url}#/paths/~1pets~1{petId}/get",
                    "parameters": [{"name": "petId", "in": "path", "value": 3}],
                }
            ]
        )
        handler = Recorder()
        run(document, handler)
        assert str(handler.requests[0].url) == "http://localhost:8080/v1/pets/3"

    def test_operation_path_with_escaped_slash(self):
        document = build_document(
            [
                {
                    "stepId": "s",
                    "operationPath": "{$sourceDescriptions.api.url}#/paths/~1pets/post",
                    "requestBody": {"payload": {"name": "Rex"}},
                }
            ]
        )
        executor = build_executor(document, Recorder())
        workflow = document.get_workflow("w")
        _, path, method, _, operation = executor.find_operation(workflow, workflow.get_step("s"))
        assert (path, method, operation["operationId"]) == ("/pets", "post", "createPet")

    @pytest.mark.parametrize(
        "target",
        [
            {"operationId": "unknownOperation"},
            {"operationPath": "{$sourceDescriptions.api.url}#/paths/~1cats/get"},
            {"operationPath": "{$sourceDescriptions.api.url}#/components/schemas"},
        ],
    )
    def test_unknown_operation(self, target):
        document = build_document([{"stepId": "s", **target}])
        with pytest.raises(WorkflowLookupError, match="Operation not found"):
            run(document, Recorder())


class TestOutcome:
    """Tests for judging a performed step."""

    def test_outputs_are_published(self):
        document = build_document(
            [
                {
                    "stepId": "s",
                    "operationId": "getPet",
                    "parameters": [{"name": "petId", "in": "path", "value": 1}],
                    "successCriteria": [{"condition": "$statusCode == 200"}],
                    "outputs": {"name": "$response.body.name", "pet": "$response.body"},
                }
            ]
        )
        executor, _ = run(document, Recorder())
        assert executor.resolver.lookup("$steps.s.outputs.name") == "Rex"
        assert json.loads(executor.resolver.lookup("$steps.s.outputs.pet")) == {"id": 1, "name": "Rex"}

    def test_outputs_are_not_published_on_failure(self):
        document = build_document(
            [
                {
                    "stepId": "s",
                    "operationId": "getPet",
                    "parameters": [{"name": "petId", "in": "path", "value": 1}],
                    "successCriteria": [{"condition": "$statusCode == 200"}],
                    "onFailure": [{"name": "stop", "type": "end"}],
                    "outputs": {"name": "$response.body.name"},
                }
            ]
        )
        executor, outcome = run(document, Recorder(status=404))
        assert not outcome.successful
        assert outcome.action.name == "stop"
        assert executor.resolver.lookup("$steps.s.outputs.name") is None

    def test_retry_after_hint(self):
        document = build_document(
            [
                {
                    "stepId": "s",
                    "operationId": "getPet",
                    "parameters": [{"name": "petId", "in": "path", "value": 1}],
                    "successCriteria": [{"condition": "$statusCode == 200"}],
                    "onFailure": [{"name": "wait", "type": "retry", "retryAfter": 1, "retryLimit": 3}],
                }
            ]
        )
        _, outcome = run(document, Recorder(status=429, headers={"Retry-After": "7"}))
        assert isinstance(outcome.action, RetryAction)
        assert outcome.retry_after == 7.0

    def test_no_hint_without_retry_action(self):
        document = build_document(
            [
                {
                    "stepId": "s",
                    "operationId": "getPet",
                    "parameters": [{"name": "petId", "in": "path", "value": 1}],
                    "successCriteria": [{"condition": "$statusCode == 200"}],
                    "onFailure": [{"name": "stop", "type": "end"}],
                }
            ]
        )
        _, outcome = run(document, Recorder(status=429, headers={"Retry-After": "7"}))
        assert outcome.retry_after is None


class TestXmlBody:
    def test_replacements_use_xpath(self):
        document = build_document([{"stepId": "s", "operationId": "createPet"}])
        executor = build_executor(document, Recorder(), inputs={"name": "Rex"})
        body = executor.build_body(
            "<pet><name>old</name><tag>cat</tag></pet>",
            [PayloadReplacement(target="/pet/name", value="$inputs.name")],
            "application/xml",
        )
        assert body == "<pet><name>Rex</name><tag>cat</tag></pet>"

    def test_without_replacements(self):
        document = build_document([{"stepId": "s", "operationId": "createPet"}])
        executor = build_executor(document, Recorder())
        assert executor.build_body("<pet/>", [], "application/xml") == "<pet/>"


class TestParseRetryAfter:
    @pytest.mark.parametrize("value, expected", [("120", 120.0), (" 0 ", 0.0), (None, None), ("", None)])
    def test_seconds(self, value, expected):
        assert parse_retry_after(value) == expected

    def test_http_date(self):
        when = datetime.now(timezone.utc) + timedelta(seconds=60)
        delay = parse_retry_after(format_datetime(when, usegmt=True))
        assert 50 <= delay <= 60

    def test_past_date(self):
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0

    def test_garbage(self):
        assert parse_retry_after("soon") is None
