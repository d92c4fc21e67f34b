"""Criterion evaluation for success criteria and action guards."""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Callable

from lxml import etree

from arazzo_engine.workflows.errors import CriterionError, ExpressionError
from arazzo_engine.workflows.expressions import ExpressionResolver
from arazzo_engine.workflows.models import Criterion, CriterionType, TransactionSnapshot
from arazzo_engine.workflows.traversal import find_jsonpath, parse_xml, pointer_to_jsonpath, to_text

logger = logging.getLogger(__name__)

OPERATOR_PATTERN = re.compile(r"==|!=|<=|>=|<|>")
NUMBER_PATTERN = re.compile(r"[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")
POINTER_CONDITION = re.compile(r"#(?P<pointer>/[^\s=!<>]*)\s*(?P<operator>==|!=|<=|>=|<|>)\s*(?P<expected>.+)")
QUERY_CONDITION = re.compile(r"(?P<query>\$\S+)\s*(?P<operator>==|!=|<=|>=|<|>)\s*(?P<expected>.+)")

_COMPARISONS: dict[str, Callable[[int], bool]] = {
    "==": lambda result: result == 0,
    "!=": lambda result: result != 0,
    "<=": lambda result: result <= 0,
    ">=": lambda result: result >= 0,
    "<": lambda result: result < 0,
    ">": lambda result: result > 0,
}


def _coerce(value: Any) -> Any:
    if isinstance(value, bool):
        return to_text(value)
    if isinstance(value, (int, float)) or value is None:
        return value
    if isinstance(value, str):
        text = value.strip()
        if NUMBER_PATTERN.fullmatch(text):
            return float(text) if any(char in text for char in ".eE") else int(text)
        return value
    return to_text(value)


def _unquote(text: str) -> str | None:
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    return None


def _xpath_boolean(result: Any) -> bool:
    if isinstance(result, bool):
        return result
    if isinstance(result, float):
        return result != 0 and not math.isnan(result)
    if isinstance(result, (str, list)):
        return len(result) > 0
    return bool(result)


class CriterionEvaluator:
    """Evaluates typed criteria against the latest transaction."""

    def __init__(self, resolver: ExpressionResolver) -> None:
        self.resolver = resolver
        self._handlers: dict[CriterionType, Callable[[Criterion, TransactionSnapshot | None], bool]] = {
            CriterionType.SIMPLE: lambda criterion, snapshot: self.evaluate_simple(criterion.condition, snapshot),
            CriterionType.REGEX: self._evaluate_regex,
            CriterionType.JSONPATH: self._evaluate_jsonpath,
            CriterionType.XPATH: self._evaluate_xpath,
        }

    def evaluate(self, criterion: Criterion, snapshot: TransactionSnapshot | None = None) -> bool:
        """Evaluate a single criterion.

        Raises:
            CriterionError: If the condition is malformed or its operands cannot be compared.
            ExpressionError: If an operand cannot be resolved.
        """
        handler = self._handlers.get(criterion.type or CriterionType.SIMPLE)
        if handler is None:
            raise CriterionError(criterion.condition, f"Unsupported criterion type '{criterion.type}'")
        result = handler(criterion, snapshot)
        logger.debug("Criterion %r (%s) evaluated to %s", criterion.condition, criterion.type.value, result)
        return result

    def evaluate_all(self, criteria: list[Criterion], snapshot: TransactionSnapshot | None = None) -> bool:
        """Whether every criterion holds; an empty list always holds."""
        for criterion in criteria:
            if not self.evaluate(criterion, snapshot):
                logger.info("Criterion not satisfied: %s", criterion.condition)
                return False
        return True

    def evaluate_simple(self, condition: str, snapshot: TransactionSnapshot | None = None) -> bool:
        """Evaluate `<left> <operator> <right>` with both sides resolved as expressions."""
        operators = OPERATOR_PATTERN.findall(condition)
        if len(operators) != 1:
            raise CriterionError(condition, "Expected exactly one of ==, !=, <=, >=, <, > between two operands")
        left, right = (part.strip() for part in OPERATOR_PATTERN.split(condition))
        if not left or not right:
            raise CriterionError(condition, "Expected an operand on both sides of the operator")
        return self.compare(
            self._operand(left, snapshot), operators[0], self._operand(right, snapshot), condition
        )

    def compare(self, left: Any, operator: str, right: Any, condition: str) -> bool:
        left, right = _coerce(left), _coerce(right)
        if left is None or right is None:
            if left in (None, "null") and right in (None, "null"):
                result = 0
            else:
                raise CriterionError(condition, "Incomparable types: one operand has no value")
        elif isinstance(left, (int, float)) and isinstance(right, (int, float)):
            result = (left > right) - (left < right)
        elif isinstance(left, str) and isinstance(right, str):
            left, right = left.lower(), right.lower()
            result = (left > right) - (left < right)
        else:
            raise CriterionError(
                condition, f"Incomparable types: {type(left).__name__} and {type(right).__name__}"
            )
        return _COMPARISONS[operator](result)

    def _operand(self, text: str, snapshot: TransactionSnapshot | None, template: bool = False) -> Any:
        literal = _unquote(text)
        if literal is not None:
            return literal
        if template:
            return self.resolver.resolve_template(text, snapshot)
        return self.resolver.resolve(text, snapshot)

    def _context(self, criterion: Criterion, snapshot: TransactionSnapshot | None) -> Any:
        value = self.resolver.resolve(criterion.context or "", snapshot)
        if value is None:
            raise CriterionError(criterion.condition, f"Context '{criterion.context}' resolved to no value")
        return value

    def _evaluate_regex(self, criterion: Criterion, snapshot: TransactionSnapshot | None) -> bool:
        value = to_text(self._context(criterion, snapshot))
        try:
            return re.fullmatch(criterion.condition, value) is not None
        except re.error as exc:
            raise CriterionError(criterion.condition, f"Invalid regular expression: {exc}") from exc

    def _evaluate_jsonpath(self, criterion: Criterion, snapshot: TransactionSnapshot | None) -> bool:
        condition = criterion.condition.strip()
        context = self._context(criterion, snapshot)
        if isinstance(context, str):
            try:
                context = json.loads(context)
            except ValueError as exc:
                raise CriterionError(condition, f"Context is not valid JSON: {exc}") from exc

        if condition.startswith("#/"):
            match = POINTER_CONDITION.fullmatch(condition)
            if match is None:
                raise CriterionError(condition, "Expected '#<pointer> <operator> <expected>'")
            query = pointer_to_jsonpath(match["pointer"])
        else:
            match = QUERY_CONDITION.fullmatch(condition)
            if match is None:
                raise CriterionError(condition, "Expected '$<query> <operator> <expected>'")
            query = match["query"]

        try:
            found = find_jsonpath(context, query)
        except ExpressionError as exc:
            raise CriterionError(condition, exc.message) from exc
        if not found:
            raise CriterionError(condition, f"No value at '{query}'")
        actual = found[0] if len(found) == 1 else found
        expected = self._operand(match["expected"].strip(), snapshot, template=True)
        return self.compare(actual, match["operator"], expected, condition)

    def _evaluate_xpath(self, criterion: Criterion, snapshot: TransactionSnapshot | None) -> bool:
        try:
            root = parse_xml(to_text(self._context(criterion, snapshot)))
        except ValueError as exc:
            raise CriterionError(criterion.condition, str(exc)) from exc
        try:
            result = root.xpath(criterion.condition)
        except etree.XPathError as exc:
            raise CriterionError(criterion.condition, f"Invalid XPath: {exc}") from exc
        return _xpath_boolean(result)
