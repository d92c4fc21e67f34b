"""Data models for Arazzo workflow documents.

The pydantic models represent the already-parsed, linked document graph the
interpreter walks. The dataclasses at the bottom are transient records
produced while a workflow runs.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from arazzo_engine.workflows.errors import WorkflowLookupError

SOURCE_DESCRIPTIONS_PREFIX = "$sourceDescriptions."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CriterionType(str, Enum):
    """Condition grammar of a criterion."""

    SIMPLE = "simple"
    REGEX = "regex"
    JSONPATH = "jsonpath"
    XPATH = "xpath"


class ActionType(str, Enum):
    """Kind of a success or failure action."""

    GOTO = "goto"
    END = "end"
    RETRY = "retry"


class ParameterLocation(str, Enum):
    """Where a step parameter is placed in the request."""

    PATH = "path"
    QUERY = "query"
    HEADER = "header"
    COOKIE = "cookie"
    BODY = "body"


class SourceDescriptionType(str, Enum):
    OPENAPI = "openapi"
    ARAZZO = "arazzo"


class StepStatus(str, Enum):
    """Status of a workflow or step execution."""

    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ERRORED = "errored"


class Criterion(BaseModel):
    """A typed condition evaluated against a resolved value."""

    context: str | None = None
    condition: str
    type: CriterionType = CriterionType.SIMPLE

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("type", mode="before")
    @classmethod
    def _unwrap_expression_type(cls, value: Any) -> Any:
        # Arazzo allows `type: {type: jsonpath, version: ...}` as well as a plain string
        if value is None:
            return CriterionType.SIMPLE
        if isinstance(value, dict):
            value = value.get("type", CriterionType.SIMPLE)
        if isinstance(value, str):
            return value.lower()
        return value

    @model_validator(mode="after")
    def _require_context(self) -> Criterion:
        if self.type != CriterionType.SIMPLE and not self.context:
            raise ValueError(f"criterion of type '{self.type.value}' requires a 'context'")
        return self


class _Action(BaseModel):
    name: str
    criteria: list[Criterion] = Field(default_factory=list)
    step_id: str | None = Field(default=None, alias="stepId")
    workflow_id: str | None = Field(default=None, alias="workflowId")
    retry_after: float | None = Field(default=None, alias="retryAfter")
    retry_limit: int | None = Field(default=None, alias="retryLimit")

    model_config = {"extra": "allow", "populate_by_name": True}

    @property
    def target_count(self) -> int:
        return sum(1 for target in (self.step_id, self.workflow_id) if target is not None)

    @model_validator(mode="after")
    def _check_retry_fields(self) -> _Action:
        if getattr(self, "type", None) != ActionType.RETRY:
            if self.retry_after is not None or self.retry_limit is not None:
                raise ValueError(f"action '{self.name}': 'retryAfter' and 'retryLimit' are allowed on 'retry' only")
        return self


class GotoAction(_Action):
    """Move to another step of the workflow or transfer to another workflow."""

    type: Literal["goto"] = "goto"

    @model_validator(mode="after")
    def _check_target(self) -> GotoAction:
        if self.target_count != 1:
            raise ValueError(f"action '{self.name}': 'goto' requires exactly one of 'stepId' or 'workflowId'")
        return self


class EndAction(_Action):
    """End the current workflow run."""

    type: Literal["end"] = "end"

    @model_validator(mode="after")
    def _check_target(self) -> EndAction:
        if self.target_count:
            raise ValueError(f"action '{self.name}': 'end' must not have 'stepId' nor 'workflowId'")
        return self


class RetryAction(_Action):
    """Retry the failed step, optionally running a step or workflow first."""

    type: Literal["retry"] = "retry"
    retry_after: float = Field(default=0.0, alias="retryAfter", ge=0)
    retry_limit: int = Field(default=1, alias="retryLimit", ge=0)

    @model_validator(mode="after")
    def _check_target(self) -> RetryAction:
        if self.target_count > 1:
            raise ValueError(f"action '{self.name}': 'retry' mutually excludes 'stepId' and 'workflowId'")
        return self


SuccessAction = Annotated[Union[GotoAction, EndAction], Field(discriminator="type")]
FailureAction = Annotated[Union[GotoAction, EndAction, RetryAction], Field(discriminator="type")]


class Parameter(BaseModel):
    name: str
    location: ParameterLocation | None = Field(default=None, alias="in")
    value: Any = None

    model_config = {"extra": "allow", "populate_by_name": True}


class PayloadReplacement(BaseModel):
    target: str
    value: Any = None

    model_config = {"extra": "allow"}


class RequestBody(BaseModel):
    content_type: str | None = Field(default=None, alias="contentType")
    payload: Any = None
    replacements: list[PayloadReplacement] = Field(default_factory=list)

    model_config = {"extra": "allow", "populate_by_name": True}


class Step(BaseModel):
    """A single step in a workflow."""

    step_id: str = Field(alias="stepId")
    description: str | None = None
    operation_id: str | None = Field(default=None, alias="operationId")
    operation_path: str | None = Field(default=None, alias="operationPath")
    workflow_id: str | None = Field(default=None, alias="workflowId")
    parameters: list[Parameter] = Field(default_factory=list)
    request_body: RequestBody | None = Field(default=None, alias="requestBody")
    success_criteria: list[Criterion] = Field(default_factory=list, alias="successCriteria")
    on_success: list[SuccessAction] = Field(default_factory=list, alias="onSuccess")
    on_failure: list[FailureAction] = Field(default_factory=list, alias="onFailure")
    outputs: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="after")
    def _check_target(self) -> Step:
        targets = [t for t in (self.operation_id, self.operation_path, self.workflow_id) if t is not None]
        if len(targets) != 1:
            raise ValueError(
                f"step '{self.step_id}' requires exactly one of 'operationId', 'operationPath' or 'workflowId'"
            )
        return self

    @property
    def is_delegation(self) -> bool:
        """Whether the step runs another workflow instead of a remote operation."""
        return self.workflow_id is not None


class Workflow(BaseModel):
    """A named, ordered sequence of steps."""

    workflow_id: str = Field(alias="workflowId")
    summary: str | None = None
    description: str | None = None
    inputs: dict[str, Any] | None = None
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    steps: list[Step] = Field(default_factory=list)
    success_actions: list[SuccessAction] = Field(default_factory=list, alias="successActions")
    failure_actions: list[FailureAction] = Field(default_factory=list, alias="failureActions")
    outputs: dict[str, Any] = Field(default_factory=dict)
    parameters: list[Parameter] = Field(default_factory=list)

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="after")
    def _check_unique_steps(self) -> Workflow:
        seen: set[str] = set()
        for step in self.steps:
            if step.step_id in seen:
                raise ValueError(f"workflow '{self.workflow_id}' declares step '{step.step_id}' more than once")
            seen.add(step.step_id)
        return self

    def find_step_index(self, step_id: str) -> int:
        for index, step in enumerate(self.steps):
            if step.step_id == step_id:
                return index
        raise WorkflowLookupError("Step", step_id, self.workflow_id)

    def get_step(self, step_id: str) -> Step:
        return self.steps[self.find_step_index(step_id)]


class SourceDescription(BaseModel):
    """A named reference to an API description or another Arazzo document.

    `openapi` and `document` are filled by the document provider when it links
    the source; they are never part of the serialized node.
    """

    name: str
    url: str
    type: SourceDescriptionType = SourceDescriptionType.OPENAPI
    openapi: dict[str, Any] | None = Field(default=None, exclude=True)
    document: WorkflowDocument | None = Field(default=None, exclude=True)

    model_config = {"extra": "allow"}


class WorkflowDocument(BaseModel):
    """Root of an Arazzo document graph."""

    arazzo: str = "1.0.0"
    info: dict[str, Any] = Field(default_factory=dict)
    source_descriptions: list[SourceDescription] = Field(default_factory=list, alias="sourceDescriptions")
    workflows: list[Workflow] = Field(default_factory=list)
    components: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="after")
    def _check_unique_workflows(self) -> WorkflowDocument:
        seen: set[str] = set()
        for workflow in self.workflows:
            if workflow.workflow_id in seen:
                raise ValueError(f"workflow '{workflow.workflow_id}' is declared more than once")
            seen.add(workflow.workflow_id)
        return self

    def get_workflow(self, workflow_id: str) -> Workflow:
        for workflow in self.workflows:
            if workflow.workflow_id == workflow_id:
                return workflow
        raise WorkflowLookupError("Workflow", workflow_id)

    def get_source_description(self, name: str) -> SourceDescription:
        for source in self.source_descriptions:
            if source.name == name:
                return source
        raise WorkflowLookupError("Source description", name)

    def find_source_description(self, identifier: str) -> SourceDescription:
        """Pick the source description an operation identifier belongs to.

        With a single source description it is always the one; otherwise the
        identifier has to mention the source by name.
        """
        if not self.source_descriptions:
            raise WorkflowLookupError("Source description", identifier)
        if len(self.source_descriptions) == 1:
            return self.source_descriptions[0]
        for source in self.source_descriptions:
            if f"{SOURCE_DESCRIPTIONS_PREFIX}{source.name}." in identifier:
                return source
        raise WorkflowLookupError("Source description", identifier)

    def find_workflow_reference(self, identifier: str) -> tuple[WorkflowDocument, Workflow]:
        """Locate a workflow by plain id or by `$sourceDescriptions.<name>.<id>`."""
        if identifier.startswith(SOURCE_DESCRIPTIONS_PREFIX):
            name, _, workflow_id = identifier[len(SOURCE_DESCRIPTIONS_PREFIX) :].partition(".")
            source = self.get_source_description(name)
            if source.document is None:
                raise WorkflowLookupError("Linked Arazzo document", name)
            return source.document, source.document.get_workflow(workflow_id)
        return self, self.get_workflow(identifier)


SourceDescription.model_rebuild()


@dataclass
class TransactionSnapshot:
    """Captured request/response state of the latest remote operation."""

    url: str | None = None
    method: str | None = None
    status_code: int | None = None
    content_type: str | None = None
    request_headers: dict[str, str] = field(default_factory=dict)
    request_body: str | None = None
    response_headers: dict[str, str] = field(default_factory=dict)
    response_body: str | None = None
    path_parameters: dict[str, Any] = field(default_factory=dict)
    query_parameters: dict[str, Any] = field(default_factory=dict)

    def response_header(self, name: str) -> str | None:
        return _find_header(self.response_headers, name)

    def request_header(self, name: str) -> str | None:
        return _find_header(self.request_headers, name)


def _find_header(headers: dict[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


@dataclass
class ExecutionOutcome:
    """Result of executing one step, as returned by a step executor."""

    successful: bool
    action: GotoAction | EndAction | RetryAction | None = None
    snapshot: TransactionSnapshot | None = None
    # Delay hint supplied by the transport, e.g. a `Retry-After` header
    retry_after: float | None = None

    def __post_init__(self) -> None:
        if self.successful and isinstance(self.action, RetryAction):
            raise ValueError("A successful outcome cannot carry a retry action")


@dataclass
class StepResult:
    """Trace record of a single step execution."""

    workflow_id: str
    step_id: str
    status: StepStatus
    start_time: datetime = field(default_factory=_utcnow)
    end_time: datetime | None = None
    duration_ms: float = 0.0
    method: str | None = None
    url: str | None = None
    status_code: int | None = None
    action_name: str | None = None
    action_type: str | None = None

    def finish(self, status: StepStatus) -> None:
        """Mark the step as finished."""
        self.end_time = _utcnow()
        self.status = status
        self.duration_ms = (self.end_time - self.start_time).total_seconds() * 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": round(self.duration_ms, 2),
            "request": {"method": self.method, "url": self.url},
            "status_code": self.status_code,
            "action": {"name": self.action_name, "type": self.action_type} if self.action_name else None,
        }


@dataclass
class WorkflowResult:
    """Result of running a complete workflow through the driver."""

    workflow_id: str
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: StepStatus = StepStatus.PENDING
    start_time: datetime = field(default_factory=_utcnow)
    end_time: datetime | None = None
    duration_seconds: float = 0.0
    step_results: list[StepResult] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None

    @property
    def total_steps(self) -> int:
        return len(self.step_results)

    @property
    def passed_steps(self) -> int:
        return sum(1 for r in self.step_results if r.status == StepStatus.PASSED)

    @property
    def failed_steps(self) -> int:
        return sum(1 for r in self.step_results if r.status == StepStatus.FAILED)

    def add_step_result(self, result: StepResult) -> None:
        self.step_results.append(result)

    def finish(self, status: StepStatus, error_message: str | None = None) -> None:
        """Mark the workflow as finished."""
        self.end_time = _utcnow()
        self.status = status
        self.error_message = error_message
        self.duration_seconds = (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "workflow_id": self.workflow_id,
            "run_id": self.run_id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": round(self.duration_seconds, 2),
            "total_steps": self.total_steps,
            "passed_steps": self.passed_steps,
            "failed_steps": self.failed_steps,
            "step_results": [r.to_dict() for r in self.step_results],
            "outputs": self.outputs,
            "error_message": self.error_message,
        }
