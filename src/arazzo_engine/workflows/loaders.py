"""Loading of Arazzo documents and workflow inputs.

Reads YAML or JSON documents into `WorkflowDocument` models and links their
source descriptions: OpenAPI descriptions are attached as plain dicts and
Arazzo sources as nested documents.
"""

from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any
from urllib.parse import urljoin, urlsplit

import httpx
import yaml
from pydantic import ValidationError

from arazzo_engine.workflows.errors import DocumentLoadError, WorkflowLookupError
from arazzo_engine.workflows.models import SourceDescriptionType, Workflow, WorkflowDocument

logger = logging.getLogger(__name__)

COMPONENT_REF_PREFIX = "#/components/"
COMPONENT_EXPRESSION_PREFIX = "$components."
REUSABLE_REFERENCE_KEY = "reference"

# Lists that may hold reusable objects
_WORKFLOW_REUSABLE_LISTS = ("parameters", "successActions", "failureActions")
_STEP_REUSABLE_LISTS = ("parameters", "onSuccess", "onFailure")


def _is_remote(location: str) -> bool:
    return urlsplit(location).scheme in ("http", "https")


class DocumentLoader:
    """Loads Arazzo documents and the sources they reference."""

    def __init__(self, timeout: float = 30.0, verify_ssl: bool = True) -> None:
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self._loading: set[str] = set()

    def read(self, location: str) -> str:
        """Read a local file or an http(s) URL.

        Raises:
            DocumentLoadError: If the content cannot be read.
        """
        if _is_remote(location):
            try:
                response = httpx.get(location, timeout=self.timeout, verify=self.verify_ssl, follow_redirects=True)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                raise DocumentLoadError(f"Cannot fetch document: {exc}", location) from exc
            return response.text
        path = Path(location)
        if not path.exists():
            raise DocumentLoadError("File not found", location)
        return path.read_text(encoding="utf-8")

    def parse(self, content: str, location: str | None = None) -> Any:
        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as exc:
            raise DocumentLoadError(f"Invalid YAML or JSON: {exc}", location) from exc

    def load(self, location: str | Path) -> WorkflowDocument:
        """Load and link an Arazzo document.

        Args:
            location: Path or http(s) URL of the document.

        Returns:
            The validated document with its source descriptions linked.

        Raises:
            DocumentLoadError: If the document or one of its sources cannot be loaded.
        """
        location = str(location)
        data = self.parse(self.read(location), location)
        return self.load_dict(data, location)

    def load_dict(self, data: Any, location: str | None = None) -> WorkflowDocument:
        if not isinstance(data, dict):
            raise DocumentLoadError("Document must be a mapping", location)
        expanded = expand_reusable_objects(data, location)
        try:
            document = WorkflowDocument.model_validate(expanded)
        except ValidationError as exc:
            raise DocumentLoadError(f"Invalid Arazzo document: {exc}", location) from exc
        key = location or str(id(data))
        self._loading.add(key)
        try:
            self._link_sources(document, location)
        finally:
            self._loading.discard(key)
        return document

    def _link_sources(self, document: WorkflowDocument, location: str | None) -> None:
        for source in document.source_descriptions:
            source_location = self._locate(source.url, location)
            if source_location in self._loading:
                raise DocumentLoadError(f"Source description '{source.name}' references itself", source_location)
            logger.debug("Loading source description '%s' from %s", source.name, source_location)
            if source.type == SourceDescriptionType.ARAZZO:
                source.document = self.load(source_location)
            else:
                data = self.parse(self.read(source_location), source_location)
                if not isinstance(data, dict):
                    raise DocumentLoadError("OpenAPI description must be a mapping", source_location)
                source.openapi = data

    @staticmethod
    def _locate(url: str, base: str | None) -> str:
        if _is_remote(url) or base is None:
            return url
        if _is_remote(base):
            return urljoin(base, url)
        path = Path(url)
        if path.is_absolute():
            return str(path)
        return str(Path(base).parent / path)


def load_document(location: str | Path, timeout: float = 30.0, verify_ssl: bool = True) -> WorkflowDocument:
    """Load and link the Arazzo document at `location`."""
    return DocumentLoader(timeout=timeout, verify_ssl=verify_ssl).load(location)


def load_inputs(path: str | Path) -> dict[str, Any]:
    """Read a JSON or YAML inputs file.

    Raises:
        DocumentLoadError: If the file is missing or is not a mapping.
    """
    loader = DocumentLoader()
    data = loader.parse(loader.read(str(path)), str(path))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise DocumentLoadError("Inputs must be a mapping", str(path))
    return data


def expand_reusable_objects(data: dict[str, Any], location: str | None = None) -> dict[str, Any]:
    """Replace reusable objects with a copy of the component they reference.

    A reusable object is an entry `{reference: <component>, value?}` of a
    workflow's `parameters`, `successActions` or `failureActions`, or of a
    step's `parameters`, `onSuccess` or `onFailure`. For parameters, `value`
    overrides the value of the referenced component. `data` is left untouched.

    Raises:
        DocumentLoadError: If a reference does not name a component mapping.
    """
    expanded = copy.deepcopy(data)
    components = expanded.get("components")
    if not isinstance(components, dict):
        components = {}
    workflows = expanded.get("workflows")
    if not isinstance(workflows, list):
        return expanded
    for workflow in workflows:
        if not isinstance(workflow, dict):
            continue
        _expand_lists(workflow, _WORKFLOW_REUSABLE_LISTS, components, location)
        steps = workflow.get("steps")
        if isinstance(steps, list):
            for step in steps:
                if isinstance(step, dict):
                    _expand_lists(step, _STEP_REUSABLE_LISTS, components, location)
    return expanded


def _expand_lists(
    node: dict[str, Any], keys: tuple[str, ...], components: dict[str, Any], location: str | None
) -> None:
    for key in keys:
        items = node.get(key)
        if isinstance(items, list):
            node[key] = [_expand_item(item, key, components, location) for item in items]


def _expand_item(item: Any, key: str, components: dict[str, Any], location: str | None) -> Any:
    if not isinstance(item, dict) or REUSABLE_REFERENCE_KEY not in item:
        return item
    reference = str(item[REUSABLE_REFERENCE_KEY])
    try:
        component = _lookup_component(components, reference)
    except WorkflowLookupError as exc:
        raise DocumentLoadError(f"Cannot resolve reusable object in '{key}': {exc}", location) from exc
    if not isinstance(component, dict):
        raise DocumentLoadError(f"Reusable object '{reference}' does not reference a mapping", location)
    resolved = copy.deepcopy(component)
    if key == "parameters" and "value" in item:
        resolved["value"] = item["value"]
    logger.debug("Expanded reusable object %s", reference)
    return resolved


def resolve_component(document: WorkflowDocument, reference: str) -> Any:
    """Resolve `#/components/<kind>/<name>` or `$components.<kind>.<name>`."""
    return _lookup_component(document.components, reference)


def _lookup_component(components: dict[str, Any], reference: str) -> Any:
    if reference.startswith(COMPONENT_REF_PREFIX):
        segments = reference[len(COMPONENT_REF_PREFIX) :].split("/")
    elif reference.startswith(COMPONENT_EXPRESSION_PREFIX):
        segments = reference[len(COMPONENT_EXPRESSION_PREFIX) :].split(".")
    else:
        raise WorkflowLookupError("Component", reference)
    current: Any = components
    for segment in segments:
        segment = segment.replace("~1", "/").replace("~0", "~")
        if not isinstance(current, dict) or segment not in current:
            raise WorkflowLookupError("Component", reference)
        current = current[segment]
    return current


def select_inputs(document: WorkflowDocument, workflow: Workflow, inputs: dict[str, Any]) -> dict[str, Any]:
    """Keep the inputs declared by the workflow's input schema.

    Workflows without an input schema, or whose schema declares no properties,
    receive all inputs. Values are not validated against the schema.
    """
    schema = workflow.inputs
    if not schema:
        return dict(inputs)
    if "$ref" in schema:
        schema = resolve_component(document, schema["$ref"])
    properties = schema.get("properties") if isinstance(schema, dict) else None
    if not properties:
        return dict(inputs)
    return {name: inputs[name] for name in properties if name in inputs}
