from __future__ import annotations

import json
from typing import Any

import pytest

from arazzo_engine.workflows.criteria import CriterionEvaluator
from arazzo_engine.workflows.expressions import ExpressionResolver
from arazzo_engine.workflows.models import Step, TransactionSnapshot, Workflow, WorkflowDocument
from arazzo_engine.workflows.step_executor import StepExecutor


class ScriptedStepExecutor(StepExecutor):
    """Step executor replaying canned transactions instead of calling an API."""

    def __init__(self, document, resolver, evaluator, script: Script) -> None:
        super().__init__(document, resolver, evaluator, script.config)
        self.script = script

    def perform(self, workflow: Workflow, step: Step) -> TransactionSnapshot:
        self.script.calls.append(step.step_id)
        responses = self.script.responses[step.step_id]
        # The last canned transaction is repeated once the others are used up
        return responses.pop(0) if len(responses) > 1 else responses[0]


class Script:
    def __init__(self) -> None:
        self.responses: dict[str, list[TransactionSnapshot]] = {}
        self.calls: list[str] = []
        self.config = None

    def respond(self, step_id: str, *snapshots: TransactionSnapshot) -> None:
        self.responses[step_id] = list(snapshots)

    def factory(
        self, document: WorkflowDocument, resolver: ExpressionResolver, evaluator: CriterionEvaluator
    ) -> ScriptedStepExecutor:
        return ScriptedStepExecutor(document, resolver, evaluator, self)


def _snapshot(status: int = 200, body: Any = None, headers: dict[str, str] | None = None) -> TransactionSnapshot:
    return TransactionSnapshot(
        url="http://127.0.0.1/api",
        method="GET",
        status_code=status,
        content_type="application/json",
        response_headers={"Content-Type": "application/json", **(headers or {})},
        response_body=json.dumps(body) if body is not None else "",
    )


@pytest.fixture
def script():
    return Script()


@pytest.fixture
def snapshot():
    """Build a JSON transaction snapshot: `snapshot(status, body, headers)`."""
    return _snapshot


@pytest.fixture
def make_document():
    def make(*workflows: dict[str, Any], **extra: Any) -> WorkflowDocument:
        data = {
            "arazzo": "1.0.0",
            "info": {"title": "Test", "version": "1.0.0"},
            "sourceDescriptions": [{"name": "api", "url": "./openapi.yaml", "type": "openapi"}],
            "workflows": list(workflows),
            **extra,
        }
        return WorkflowDocument.model_validate(data)

    return make


@pytest.fixture
def ok_criteria():
    return [{"condition": "$statusCode == 200"}]
