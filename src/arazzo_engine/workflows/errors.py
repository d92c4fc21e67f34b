"""Error classes for the workflow interpreter."""

from __future__ import annotations


class WorkflowError(Exception):
    """Base exception for workflow errors."""

    def __init__(self, message: str, workflow_id: str | None = None) -> None:
        self.message = message
        self.workflow_id = workflow_id
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.workflow_id:
            return f"[{self.workflow_id}] {self.message}"
        return self.message


class DocumentLoadError(WorkflowError):
    """Raised when a workflow document or an inputs file cannot be loaded."""

    def __init__(self, message: str, location: str | None = None) -> None:
        self.location = location
        super().__init__(message)

    def _format_message(self) -> str:
        if self.location:
            return f"{self.location}: {self.message}"
        return self.message


class WorkflowLookupError(WorkflowError):
    """Raised when an identifier does not name a known node of the document."""

    def __init__(
        self,
        kind: str,
        identifier: str,
        workflow_id: str | None = None,
        step_id: str | None = None,
    ) -> None:
        self.kind = kind
        self.identifier = identifier
        self.step_id = step_id
        super().__init__(f"{kind} not found: '{identifier}'", workflow_id)

    def _format_message(self) -> str:
        parts = []
        if self.workflow_id:
            parts.append(f"workflow '{self.workflow_id}'")
        if self.step_id:
            parts.append(f"step '{self.step_id}'")
        parts.append(self.message)
        return ": ".join(parts)


class CircularDependencyError(WorkflowError):
    """Raised when circular dependencies are detected between workflows."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        message = f"Circular dependency detected: {' -> '.join(cycle)}"
        super().__init__(message, cycle[0] if cycle else None)


class DependencyNotFoundError(WorkflowError):
    """Raised when a workflow depends on an unknown workflow."""

    def __init__(self, workflow_id: str, dependency_id: str) -> None:
        self.dependency_id = dependency_id
        message = f"Workflow '{workflow_id}' depends on unknown workflow '{dependency_id}'"
        super().__init__(message, workflow_id)

    def _format_message(self) -> str:
        return self.message


class ExpressionError(WorkflowError):
    """Raised when a runtime expression cannot be resolved."""

    def __init__(self, expression: str, message: str, workflow_id: str | None = None) -> None:
        self.expression = expression
        super().__init__(f"Expression '{expression}': {message}", workflow_id)


class ComponentReferenceError(ExpressionError):
    """Raised for component references, which are resolved outside the resolver."""

    def __init__(self, expression: str) -> None:
        super().__init__(expression, "component references must be resolved by the component-reference resolver")


class CriterionError(WorkflowError):
    """Raised when a criterion is malformed or cannot be evaluated."""

    def __init__(self, condition: str, message: str) -> None:
        self.condition = condition
        super().__init__(f"Criterion '{condition}': {message}")


class WorkflowExecutionError(WorkflowError):
    """Raised when workflow execution fails."""

    def __init__(
        self,
        message: str,
        workflow_id: str | None = None,
        step_id: str | None = None,
    ) -> None:
        self.step_id = step_id
        super().__init__(message, workflow_id)

    def _format_message(self) -> str:
        parts = []
        if self.workflow_id:
            parts.append(f"workflow '{self.workflow_id}'")
        if self.step_id:
            parts.append(f"step '{self.step_id}'")
        parts.append(self.message)
        return ": ".join(parts)


class NoFailureActionError(WorkflowExecutionError):
    """Raised when a step fails and neither the step nor the workflow handles it."""

    def __init__(self, workflow_id: str, step_id: str) -> None:
        super().__init__("No failure action handles the unsuccessful step", workflow_id, step_id)


class ActionCriteriaError(WorkflowExecutionError):
    """Raised when none of a step's declared actions has satisfied criteria."""

    def __init__(self, kind: str, workflow_id: str, step_id: str) -> None:
        self.kind = kind
        super().__init__(f"{kind.capitalize()} action criteria not satisfied", workflow_id, step_id)


class RetryLimitExceededError(WorkflowExecutionError):
    """Raised when a retry action would exceed its retry limit."""

    def __init__(self, action_name: str, retry_limit: int, workflow_id: str, step_id: str) -> None:
        self.action_name = action_name
        self.retry_limit = retry_limit
        super().__init__(
            f"Reached retry limit of failure action '{action_name}' ({retry_limit})", workflow_id, step_id
        )


class UnsupportedActionError(WorkflowExecutionError):
    """Raised for an action variant the engine does not dispatch."""


class WorkflowInterruptedError(WorkflowExecutionError):
    """Raised when the retry wait is interrupted."""


class StepExecutionError(WorkflowError):
    """Raised when a workflow step fails to execute."""

    def __init__(
        self,
        message: str,
        workflow_id: str | None = None,
        step_id: str | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.step_id = step_id
        self.cause = cause
        super().__init__(message, workflow_id)

    def _format_message(self) -> str:
        parts = []
        if self.workflow_id:
            parts.append(f"workflow '{self.workflow_id}'")
        if self.step_id:
            parts.append(f"step '{self.step_id}'")
        parts.append(self.message)
        if self.cause:
            parts.append(f"caused by: {self.cause}")
        return ": ".join(parts)


class TransportError(StepExecutionError):
    """Raised when the remote call of a step cannot be performed."""
