"""Arazzo workflow interpreter.

Runs the workflows of an Arazzo document step by step, resolving runtime
expressions and evaluating criteria against each step's transaction.
"""

from arazzo_engine.workflows.cache import ExpressionCache
from arazzo_engine.workflows.criteria import CriterionEvaluator
from arazzo_engine.workflows.dependency_graph import DependencyGraph, sort_by_dependencies
from arazzo_engine.workflows.errors import (
    ActionCriteriaError,
    CircularDependencyError,
    ComponentReferenceError,
    CriterionError,
    DependencyNotFoundError,
    DocumentLoadError,
    ExpressionError,
    NoFailureActionError,
    RetryLimitExceededError,
    StepExecutionError,
    TransportError,
    UnsupportedActionError,
    WorkflowError,
    WorkflowExecutionError,
    WorkflowInterruptedError,
    WorkflowLookupError,
)
from arazzo_engine.workflows.executor import WorkflowExecutor, run_workflows
from arazzo_engine.workflows.expressions import ExpressionResolver
from arazzo_engine.workflows.loaders import DocumentLoader, load_document, load_inputs, select_inputs
from arazzo_engine.workflows.models import (
    ActionType,
    Criterion,
    CriterionType,
    EndAction,
    ExecutionOutcome,
    GotoAction,
    RetryAction,
    SourceDescription,
    Step,
    StepResult,
    StepStatus,
    TransactionSnapshot,
    Workflow,
    WorkflowDocument,
    WorkflowResult,
)
from arazzo_engine.workflows.step_executor import HttpxStepExecutor, StepExecutor, StepExecutorFactory

__all__ = [
    # Models
    "ActionType",
    "Criterion",
    "CriterionType",
    "EndAction",
    "ExecutionOutcome",
    "GotoAction",
    "RetryAction",
    "SourceDescription",
    "Step",
    "StepResult",
    "StepStatus",
    "TransactionSnapshot",
    "Workflow",
    "WorkflowDocument",
    "WorkflowResult",
    # Interpreter
    "CriterionEvaluator",
    "DependencyGraph",
    "ExpressionCache",
    "ExpressionResolver",
    "HttpxStepExecutor",
    "StepExecutor",
    "StepExecutorFactory",
    "WorkflowExecutor",
    "run_workflows",
    "sort_by_dependencies",
    # Loading
    "DocumentLoader",
    "load_document",
    "load_inputs",
    "select_inputs",
    # Errors
    "ActionCriteriaError",
    "CircularDependencyError",
    "ComponentReferenceError",
    "CriterionError",
    "DependencyNotFoundError",
    "DocumentLoadError",
    "ExpressionError",
    "NoFailureActionError",
    "RetryLimitExceededError",
    "StepExecutionError",
    "TransportError",
    "UnsupportedActionError",
    "WorkflowError",
    "WorkflowExecutionError",
    "WorkflowInterruptedError",
    "WorkflowLookupError",
]
