"""Workflow executor for running Arazzo workflows.

Walks the steps of a workflow with a cursor, applies success and failure
actions (goto, end, retry) and publishes workflow outputs.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from arazzo_engine.config import EngineConfig
from arazzo_engine.workflows.cache import ExpressionCache
from arazzo_engine.workflows.criteria import CriterionEvaluator
from arazzo_engine.workflows.dependency_graph import DependencyGraph, sort_by_dependencies
from arazzo_engine.workflows.errors import (
    NoFailureActionError,
    RetryLimitExceededError,
    UnsupportedActionError,
    WorkflowError,
    WorkflowInterruptedError,
)
from arazzo_engine.workflows.expressions import ExpressionResolver
from arazzo_engine.workflows.loaders import select_inputs
from arazzo_engine.workflows.models import (
    EndAction,
    ExecutionOutcome,
    GotoAction,
    RetryAction,
    Step,
    StepResult,
    StepStatus,
    Workflow,
    WorkflowDocument,
    WorkflowResult,
)
from arazzo_engine.workflows.step_executor import HttpxStepExecutor, StepExecutor, StepExecutorFactory

logger = logging.getLogger(__name__)


class _RunState:
    """Per-invocation state of `WorkflowExecutor.execute_workflow`."""

    __slots__ = ("workflow", "resolver", "evaluator", "step_executor", "retries")

    def __init__(
        self,
        workflow: Workflow,
        resolver: ExpressionResolver,
        evaluator: CriterionEvaluator,
        step_executor: StepExecutor,
    ) -> None:
        self.workflow = workflow
        self.resolver = resolver
        self.evaluator = evaluator
        self.step_executor = step_executor
        # step id -> retries performed so far
        self.retries: dict[str, int] = {}


class WorkflowExecutor:
    """Executes the workflows of one document."""

    def __init__(
        self,
        document: WorkflowDocument,
        inputs: dict[str, Any] | None,
        step_executor_factory: StepExecutorFactory,
        cache: ExpressionCache | None = None,
        config: EngineConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_step_complete: Callable[[StepResult], None] | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            document: The linked document graph.
            inputs: Inputs of the workflow run.
            step_executor_factory: Creates the step executor of each workflow run.
            cache: Cache shared with every nested run; a fresh one when omitted.
            config: Engine configuration.
            sleep: Called with the delay before a retry.
            on_step_complete: Callback called after each operation step completes.
        """
        self.document = document
        self.inputs = inputs or {}
        self.step_executor_factory = step_executor_factory
        self.cache = cache if cache is not None else ExpressionCache()
        self.config = config or EngineConfig()
        self.sleep = sleep
        self.on_step_complete = on_step_complete

    def execute_workflow(self, workflow: Workflow | str) -> dict[str, Any]:
        """Execute a workflow until its last step or an `end` action.

        Args:
            workflow: The workflow, or its id.

        Returns:
            The resolved outputs of the workflow.

        Raises:
            WorkflowError: On any lookup, resolution, evaluation, policy or transport error.
        """
        if isinstance(workflow, str):
            workflow = self.document.get_workflow(workflow)
        outputs: dict[str, Any] = {}
        resolver = ExpressionResolver(self.document, self.inputs, self.cache, outputs, workflow.workflow_id)
        evaluator = CriterionEvaluator(resolver)
        state = _RunState(workflow, resolver, evaluator, self.step_executor_factory(self.document, resolver, evaluator))
        logger.info("Executing workflow '%s'", workflow.workflow_id)

        cursor: int | None = 0
        while cursor is not None and cursor < len(workflow.steps):
            step = workflow.steps[cursor]
            if step.is_delegation:
                self._delegate(step.workflow_id, state, step)
                cursor += 1
                continue
            outcome = self._execute_step(state, step)
            if outcome.successful:
                cursor = self._on_success(state, step, cursor, outcome)
            else:
                cursor = self._on_failure(state, step, cursor, outcome)

        self._publish_outputs(state, outputs)
        logger.info("Workflow '%s' completed", workflow.workflow_id)
        return outputs

    def _execute_step(self, state: _RunState, step: Step) -> ExecutionOutcome:
        result = StepResult(workflow_id=state.workflow.workflow_id, step_id=step.step_id, status=StepStatus.RUNNING)
        try:
            outcome = state.step_executor.execute(state.workflow, step)
        except WorkflowError:
            result.finish(StepStatus.ERRORED)
            self._notify(result)
            raise
        if outcome.snapshot is not None:
            result.method = outcome.snapshot.method
            result.url = outcome.snapshot.url
            result.status_code = outcome.snapshot.status_code
        if outcome.action is not None:
            result.action_name = outcome.action.name
            result.action_type = outcome.action.type
        result.finish(StepStatus.PASSED if outcome.successful else StepStatus.FAILED)
        self._notify(result)
        return outcome

    def _notify(self, result: StepResult) -> None:
        if self.on_step_complete:
            self.on_step_complete(result)

    def _candidates(self, state: _RunState, defaults: list[Any], outcome: ExecutionOutcome) -> list[Any]:
        # Workflow-level actions come first, followed by the action chosen by the step
        candidates = [
            action for action in defaults if state.evaluator.evaluate_all(action.criteria, outcome.snapshot)
        ]
        if outcome.action is not None:
            candidates.append(outcome.action)
        return candidates

    def _on_success(self, state: _RunState, step: Step, cursor: int, outcome: ExecutionOutcome) -> int | None:
        candidates = self._candidates(state, state.workflow.success_actions, outcome)
        if not candidates:
            return cursor + 1
        return self._dispatch(state, step, cursor, outcome, candidates[0])

    def _on_failure(self, state: _RunState, step: Step, cursor: int, outcome: ExecutionOutcome) -> int | None:
        candidates = self._candidates(state, state.workflow.failure_actions, outcome)
        if not candidates:
            logger.error("Step '%s' failed and no failure action handles it", step.step_id)
            raise NoFailureActionError(state.workflow.workflow_id, step.step_id)
        return self._dispatch(state, step, cursor, outcome, candidates[0])

    def _dispatch(
        self, state: _RunState, step: Step, cursor: int, outcome: ExecutionOutcome, action: Any
    ) -> int | None:
        """Apply an action and return the next cursor, or None to end the run."""
        if isinstance(action, GotoAction):
            if action.step_id is not None:
                logger.info("Action '%s': going to step '%s'", action.name, action.step_id)
                return state.workflow.find_step_index(action.step_id)
            logger.info("Action '%s': transferring to workflow '%s'", action.name, action.workflow_id)
            self._delegate(action.workflow_id, state)
            return None
        if isinstance(action, EndAction):
            logger.info("Action '%s': ending workflow '%s'", action.name, state.workflow.workflow_id)
            return None
        if isinstance(action, RetryAction):
            self._retry(state, step, outcome, action)
            return cursor
        raise UnsupportedActionError(
            f"Unsupported action '{getattr(action, 'name', action)}'", state.workflow.workflow_id, step.step_id
        )

    def _retry(self, state: _RunState, step: Step, outcome: ExecutionOutcome, action: RetryAction) -> None:
        count = state.retries.get(step.step_id, 0)
        if count >= action.retry_limit:
            logger.error("Step '%s' reached the retry limit of action '%s'", step.step_id, action.name)
            raise RetryLimitExceededError(action.name, action.retry_limit, state.workflow.workflow_id, step.step_id)
        state.retries[step.step_id] = count + 1

        if action.workflow_id is not None:
            self._delegate(action.workflow_id, state)
            logger.warning("Pre-retry workflow '%s' finished; retrying step '%s'", action.workflow_id, step.step_id)
        elif action.step_id is not None:
            self._run_pre_retry_step(state, action.step_id, step)

        delay = outcome.retry_after if outcome.retry_after is not None else action.retry_after
        delay = self.config.retry.delay_for(delay)
        logger.info(
            "Retrying step '%s' (attempt %d of %d) in %.2fs", step.step_id, count + 1, action.retry_limit, delay
        )
        if delay > 0:
            try:
                self.sleep(delay)
            except InterruptedError as exc:
                raise WorkflowInterruptedError(
                    "Interrupted while waiting to retry", state.workflow.workflow_id, step.step_id
                ) from exc

    def _run_pre_retry_step(self, state: _RunState, step_id: str, failed_step: Step) -> None:
        pre_step = state.workflow.get_step(step_id)
        if pre_step.is_delegation:
            self._delegate(pre_step.workflow_id, state, pre_step)
            return
        outcome = self._execute_step(state, pre_step)
        if outcome.action is not None:
            logger.warning(
                "Discarding %s action '%s' of pre-retry step '%s'; retrying step '%s'",
                outcome.action.type,
                outcome.action.name,
                pre_step.step_id,
                failed_step.step_id,
            )

    def _delegate(self, identifier: str | None, state: _RunState, step: Step | None = None) -> dict[str, Any]:
        """Run another workflow to completion with its own outputs and retry table."""
        document, target = self.document.find_workflow_reference(identifier or "")
        inputs = dict(self.inputs)
        if step is not None:
            # Parameters of a delegating step are the inputs of the delegated workflow
            for parameter in step.parameters:
                inputs[parameter.name] = state.resolver.resolve_payload(parameter.value)
        logger.info("Delegating from workflow '%s' to '%s'", state.workflow.workflow_id, target.workflow_id)
        nested = WorkflowExecutor(
            document,
            inputs,
            self.step_executor_factory,
            cache=self.cache,
            config=self.config,
            sleep=self.sleep,
            on_step_complete=self.on_step_complete,
        )
        return nested.execute_workflow(target)

    def _publish_outputs(self, state: _RunState, outputs: dict[str, Any]) -> None:
        for name, expression in state.workflow.outputs.items():
            if isinstance(expression, str):
                value = state.resolver.resolve_template(expression)
            else:
                value = state.resolver.resolve_payload(expression)
            outputs[name] = value
            state.resolver.publish(f"$workflows.{state.workflow.workflow_id}.outputs.{name}", value)


def run_workflows(
    document: WorkflowDocument,
    inputs: dict[str, Any] | None = None,
    step_executor_factory: StepExecutorFactory | None = None,
    workflow_ids: list[str] | None = None,
    config: EngineConfig | None = None,
    cache: ExpressionCache | None = None,
    on_step_complete: Callable[[StepResult], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> list[WorkflowResult]:
    """Run the workflows of a document in dependency order.

    All workflows share one expression cache. After the first failed workflow
    the remaining ones are skipped.

    Args:
        document: The linked document graph.
        inputs: Inputs; each workflow receives those declared by its input schema.
        step_executor_factory: Creates step executors; HTTP over httpx by default.
        workflow_ids: Run only these workflows and their dependencies.
        config: Engine configuration.
        cache: Cache to use, e.g. one exported by a previous run.
        on_step_complete: Callback called after each operation step completes.
        sleep: Called with the delay before a retry.

    Returns:
        One result per workflow, in execution order.
    """
    config = config or EngineConfig()
    if step_executor_factory is None:
        step_executor_factory = HttpxStepExecutor.factory(config)
    cache = cache if cache is not None else ExpressionCache()

    ordered = sort_by_dependencies(document)
    workflows = ordered.workflows
    if workflow_ids:
        graph = DependencyGraph()
        graph.add_workflows(ordered.workflows)
        wanted: set[str] = set()
        for workflow_id in workflow_ids:
            ordered.get_workflow(workflow_id)
            wanted.add(workflow_id)
            wanted |= graph.get_all_dependencies(workflow_id)
        workflows = [workflow for workflow in workflows if workflow.workflow_id in wanted]

    results: list[WorkflowResult] = []
    failed: str | None = None
    for workflow in workflows:
        result = WorkflowResult(workflow_id=workflow.workflow_id, status=StepStatus.RUNNING)
        results.append(result)
        if failed is not None:
            result.finish(StepStatus.SKIPPED, f"Skipped because workflow '{failed}' failed")
            continue

        def record(step_result: StepResult, result: WorkflowResult = result) -> None:
            result.add_step_result(step_result)
            if on_step_complete:
                on_step_complete(step_result)

        executor = WorkflowExecutor(
            ordered,
            select_inputs(ordered, workflow, inputs or {}),
            step_executor_factory,
            cache=cache,
            config=config,
            sleep=sleep,
            on_step_complete=record,
        )
        try:
            result.outputs = executor.execute_workflow(workflow)
        except WorkflowError as exc:
            logger.error("Workflow '%s' failed: %s", workflow.workflow_id, exc)
            result.finish(StepStatus.FAILED, str(exc))
            failed = workflow.workflow_id
        else:
            result.finish(StepStatus.PASSED)
    return results
