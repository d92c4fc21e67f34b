"""Dependency graph for workflow ordering.

Orders the workflows of a document so that every workflow runs after the
workflows named in its `dependsOn`.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from arazzo_engine.workflows.errors import CircularDependencyError, DependencyNotFoundError
from arazzo_engine.workflows.models import SOURCE_DESCRIPTIONS_PREFIX, Workflow, WorkflowDocument

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Manages workflow dependencies and execution order."""

    def __init__(self) -> None:
        self._nodes: dict[str, Workflow] = {}
        self._edges: dict[str, list[str]] = defaultdict(list)  # workflow -> dependencies

    def add_workflow(self, workflow: Workflow) -> None:
        """Add a workflow to the graph.

        Dependencies on workflows of other documents (`$sourceDescriptions.<name>.<id>`)
        are not ordered here; they run when referenced.
        """
        self._nodes[workflow.workflow_id] = workflow
        for dep in workflow.depends_on:
            if dep.startswith(SOURCE_DESCRIPTIONS_PREFIX):
                continue
            if dep not in self._edges[workflow.workflow_id]:
                self._edges[workflow.workflow_id].append(dep)

    def add_workflows(self, workflows: list[Workflow]) -> None:
        for workflow in workflows:
            self.add_workflow(workflow)

    def get_execution_order(self) -> list[str]:
        """Get the execution order of all workflows.

        Workflows are visited in insertion order; each one is placed right
        after the last of its (transitive) dependencies.

        Returns:
            List of workflow ids in execution order.

        Raises:
            DependencyNotFoundError: If a dependency references an unknown workflow.
            CircularDependencyError: If circular dependencies are detected.
        """
        visited: set[str] = set()
        path: list[str] = []
        on_path: set[str] = set()
        order: list[str] = []

        def visit(node: str) -> None:
            path.append(node)
            on_path.add(node)
            for dep in self._edges.get(node, []):
                if dep not in self._nodes:
                    raise DependencyNotFoundError(node, dep)
                if dep in on_path:
                    cycle_start = path.index(dep)
                    raise CircularDependencyError(path[cycle_start:] + [dep])
                if dep not in visited:
                    visit(dep)
            path.pop()
            on_path.discard(node)
            visited.add(node)
            order.append(node)

        for node in self._nodes:
            if node not in visited:
                visit(node)
        return order

    def get_dependencies(self, workflow_id: str) -> list[str]:
        """Get direct dependencies of a workflow."""
        return list(self._edges.get(workflow_id, []))

    def get_all_dependencies(self, workflow_id: str) -> set[str]:
        """Get all transitive dependencies of a workflow.

        Args:
            workflow_id: Id of the workflow.

        Returns:
            Set of all workflow ids that this workflow depends on (directly or indirectly).
        """
        result: set[str] = set()
        queue = list(self._edges.get(workflow_id, []))

        while queue:
            dep = queue.pop(0)
            if dep not in result and dep in self._nodes:
                result.add(dep)
                queue.extend(self._edges.get(dep, []))

        return result

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, workflow_id: str) -> bool:
        return workflow_id in self._nodes


def sort_by_dependencies(document: WorkflowDocument) -> WorkflowDocument:
    """Return a copy of the document with its workflows in execution order."""
    graph = DependencyGraph()
    graph.add_workflows(document.workflows)
    order = graph.get_execution_order()
    logger.info("Workflow execution order: %s", ", ".join(order))
    by_id = {workflow.workflow_id: workflow for workflow in document.workflows}
    return document.model_copy(update={"workflows": [by_id[workflow_id] for workflow_id in order]})
