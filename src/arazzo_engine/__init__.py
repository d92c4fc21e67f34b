from __future__ import annotations

from arazzo_engine import workflows
from arazzo_engine.config import EngineConfig as Config
from arazzo_engine.core.version import ARAZZO_ENGINE_VERSION
from arazzo_engine.workflows import (
    ExpressionCache,
    WorkflowDocument,
    WorkflowExecutor,
    load_document,
    load_inputs,
    run_workflows,
)

__version__ = ARAZZO_ENGINE_VERSION

__all__ = [
    "__version__",
    "Config",
    "ExpressionCache",
    "WorkflowDocument",
    "WorkflowExecutor",
    "load_document",
    "load_inputs",
    "run_workflows",
    "workflows",
]
