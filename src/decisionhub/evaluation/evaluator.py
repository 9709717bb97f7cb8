"""
Condition evaluation for rule graph branch nodes.

This module evaluates the fixed rule expression language:
- Comparisons (==, !=, >, >=, <, <=) yielding booleans
- Arithmetic (+, -, *, /, %) yielding numbers that thread into the next expression
- Temporal special functions (date_diff, time_diff) as left operands
- Condition blocks folded left to right
- Block connectors (&&, ||) merging a block with the next one
- Node quantifiers (All, Any) over the merged block results

Operands are numbers. Missing or unparseable values become ``nan``, which
compares false (except ``!=``) and propagates through arithmetic, so a bad
record never raises.
"""

import logging
import math
import operator
import re
from decimal import Decimal
from typing import Any, Iterable, List, NamedTuple, Optional, Union

from decisionhub.core.config import EngineConfig
from decisionhub.core.context import EvaluationContext
from decisionhub.core.graph import (
    AttributeRef,
    ConditionBlock,
    Connector,
    Expression,
    PreviousResult,
    Quantifier,
    SpecialFunction,
)
from decisionhub.evaluation.temporal import TemporalResolver

logger = logging.getLogger(__name__)

NAN = float("nan")

Number = Union[int, float]

_INT_PREFIX = re.compile(r"\s*([+-]?\d+)")


class Fallback:
    """Falsy result of a permissive fallback.

    Distinguishes "fell back" from "computed false" while behaving like
    ``False`` in boolean context and like ``0`` in arithmetic threading.
    """

    __slots__ = ("reason",)

    def __init__(self, reason: str):
        self.reason = reason

    def __bool__(self) -> bool:
        return False

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, Fallback) and other.reason == self.reason

    def __hash__(self) -> int:
        return hash(("Fallback", self.reason))

    def __repr__(self) -> str:
        return f"Fallback({self.reason!r})"


class Aggregation(NamedTuple):
    """Result of evaluating a branch node's condition blocks.

    Attributes:
        decision: Quantifier decision.
        block_results: Raw per-block results.
        merged_results: Results after connector merges.
    """

    decision: bool
    block_results: List[Any]
    merged_results: List[Any]


def parse_number(text: str) -> Number:
    """Parse a numeric literal; ``nan`` when it is not one."""
    text = text.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return NAN


def to_number(value: Any) -> Number:
    """Coerce an operand value to a number."""
    if isinstance(value, Fallback):
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        return parse_number(value)
    return NAN


def parse_int(value: Any) -> Number:
    """Integer view of a right operand.

    Strings keep their leading integer prefix (``"12.9"`` and ``"12abc"`` are
    12); numbers are truncated toward zero. Anything else is ``nan``.
    """
    if isinstance(value, str):
        match = _INT_PREFIX.match(value)
        return int(match.group(1)) if match else NAN
    number = to_number(value)
    if math.isnan(number) or math.isinf(number):
        return NAN
    return int(number)


def truthy(value: Any) -> bool:
    """Boolean view of a block result. ``nan`` counts as false."""
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def _divide(left: Number, right: Number) -> Number:
    if right == 0:
        if left == 0 or math.isnan(left):
            return NAN
        return math.copysign(math.inf, left) * math.copysign(1.0, right)
    return left / right


def _remainder(left: Number, right: Number) -> Number:
    if right == 0 or math.isnan(right) or math.isnan(left) or math.isinf(left):
        return NAN
    if isinstance(left, int) and isinstance(right, int):
        # sign follows the dividend
        result = abs(left) % abs(right)
        return -result if left < 0 else result
    return math.fmod(left, right)


class ExpressionEvaluator:
    """
    Evaluator for expressions, condition blocks and branch quantifiers.

    Examples:
        >>> evaluator = ExpressionEvaluator()
        >>> block = ConditionBlock.from_dict({
        ...     "expression": [
        ...         {"inputAttribute": "annual_income", "operator": "/", "value": "12"},
        ...         {"inputAttribute": None, "operator": ">=", "value": "100000"},
        ...     ]
        ... })
        >>> evaluator.evaluate_block(block, EvaluationContext({"annual_income": 1200000}))
        True
    """

    def __init__(self, config: Optional[EngineConfig] = None, temporal: Optional[TemporalResolver] = None):
        """Initialize the evaluator with operator mappings."""
        self.config = config or EngineConfig()
        self.temporal = temporal or TemporalResolver(self.config)

        self.comparisons = {
            "==": operator.eq,
            "!=": operator.ne,
            ">": operator.gt,
            ">=": operator.ge,
            "<": operator.lt,
            "<=": operator.le,
        }

        self.arithmetic = {
            "+": operator.add,
            "-": operator.sub,
            "*": operator.mul,
            "/": _divide,
            "%": _remainder,
        }

        logger.debug("ExpressionEvaluator initialized")

    def resolve_left(self, operand: Any, running: Any, context: EvaluationContext) -> Number:
        """Resolve a left operand to a number.

        Args:
            operand: AttributeRef, SpecialFunction or PREVIOUS.
            running: Result of the previous expression in the block, or None.
            context: Evaluation context.
        """
        if isinstance(operand, SpecialFunction):
            magnitude = self.temporal.resolve(operand, context)
            return NAN if magnitude is None else magnitude

        if isinstance(operand, PreviousResult):
            if running is None:
                context.add_diagnostic(
                    "missing_previous_result",
                    "Expression refers to a previous result but is first in its block",
                )
                return NAN
            return to_number(running)

        if isinstance(operand, AttributeRef):
            value = context.lookup(operand.name)
            return NAN if value is None else to_number(value)

        return NAN

    def resolve_right(self, token: Any, context: EvaluationContext) -> Number:
        """Resolve a right operand.

        A token naming a record attribute with a value takes precedence over
        parsing the token itself as a literal. Either way the value is
        truncated to an integer; the left operand is not.
        """
        if token is None:
            return NAN
        if isinstance(token, str):
            value = context.record.get(token)
            if value is not None:
                return parse_int(value)
        return parse_int(token)

    def evaluate_expression(self, expression: Expression, running: Any, context: EvaluationContext) -> Any:
        """Evaluate one expression.

        Returns:
            A bool for comparisons, a number for arithmetic, or a Fallback
            for unknown operators.
        """
        left = self.resolve_left(expression.left, running, context)
        right = self.resolve_right(expression.right, context)
        op = expression.operator

        if op in self.comparisons:
            return self.comparisons[op](left, right)

        if op in self.arithmetic:
            return self.arithmetic[op](left, right)

        context.add_diagnostic("unknown_operator", f"Unknown operator {op!r}, evaluating as false")
        return Fallback("unknown_operator")

    def fold_block(self, block: ConditionBlock, context: EvaluationContext) -> List[Any]:
        """Evaluate a block's expressions left to right, threading each result.

        Returns:
            Every intermediate result; the last one is the block result.
        """
        results: List[Any] = []
        running = None
        for expression in block.expressions:
            running = self.evaluate_expression(expression, running, context)
            results.append(running)
        return results

    def evaluate_block(self, block: ConditionBlock, context: EvaluationContext) -> Any:
        """Evaluate a condition block to the result of its last expression."""
        results = self.fold_block(block, context)
        if not results:
            context.add_diagnostic("empty_block", "Condition block has no expressions")
            return Fallback("empty_block")
        return results[-1]

    def merge(self, left: Any, connector: Union[Connector, str], right: Any, context: EvaluationContext) -> Any:
        """Combine two block results with a connector, keeping operand values."""
        if connector is Connector.AND:
            return right if truthy(left) else left
        if connector is Connector.OR:
            return left if truthy(left) else right

        context.add_diagnostic("unknown_connector", f"Unknown block connector {connector!r}, merging as false")
        return Fallback("unknown_connector")

    def aggregate(
        self,
        quantifier: Quantifier,
        blocks: Iterable[ConditionBlock],
        context: EvaluationContext,
    ) -> Aggregation:
        """Evaluate every block and apply the node quantifier.

        A block's connector merges the running merged entry with the next
        block's raw result; the merged entry keeps accepting merges while
        connectors continue. All blocks are evaluated, no short-circuit.

        Args:
            quantifier: ALL or ANY.
            blocks: Condition blocks in stored order.
            context: Evaluation context.

        Returns:
            Aggregation with the decision and both result lists.
        """
        block_results: List[Any] = []
        merged: List[Any] = []
        pending: Union[Connector, str, None] = None

        for block in blocks:
            result = self.evaluate_block(block, context)
            block_results.append(result)

            if pending is not None:
                merged[-1] = self.merge(merged[-1], pending, result, context)
                pending = None
            else:
                merged.append(result)

            if block.connector is not None:
                pending = block.connector

        if quantifier is Quantifier.ANY:
            decision = any(truthy(r) for r in merged)
        else:
            decision = all(truthy(r) for r in merged)

        logger.debug(
            "Aggregated condition blocks",
            extra={
                "node_id": context.current_node_id,
                "quantifier": quantifier.value,
                "block_results": block_results,
                "decision": decision,
            },
        )

        return Aggregation(decision=decision, block_results=block_results, merged_results=merged)
