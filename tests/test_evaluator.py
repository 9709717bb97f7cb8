"""Tests for expression evaluation in decisionhub.

Tests cover:
- Comparison operators (==, !=, >, <, >=, <=)
- Arithmetic operators (+, -, *, /, %) and their edge cases
- Right operand precedence (record attribute over literal)
- Missing attributes and unknown operators
- Condition block folding with the previous-result operand
- Block connectors and ALL/ANY quantifiers
"""

import math

import pytest

from decisionhub.core.graph import (
    PREVIOUS,
    AttributeRef,
    ConditionBlock,
    Connector,
    Expression,
    Quantifier,
)
from decisionhub.evaluation.evaluator import (
    Fallback,
    parse_int,
    parse_number,
    to_number,
    truthy,
)


def expr(left, operator, right):
    return Expression(left=AttributeRef(left) if isinstance(left, str) else left, operator=operator, right=right)


def block(*expressions, connector=None):
    return ConditionBlock(expressions=tuple(expressions), connector=connector)


def constant(value: bool) -> ConditionBlock:
    """Block that evaluates to ``value`` against a record with flag == 1."""
    return block(expr("flag", "==" if value else "!=", "1"))


class TestComparisonOperators:
    """Tests for comparison operators."""

    @pytest.mark.parametrize(
        "operator,right,expected",
        [
            (">", "750", True),
            (">", "800", False),
            ("<", "900", True),
            (">=", "800", True),
            ("<=", "799", False),
            ("==", "800", True),
            ("!=", "800", False),
        ],
    )
    def test_comparisons(self, evaluator, make_context, operator, right, expected):
        """Test each comparison against credit_score = 800."""
        context = make_context({"credit_score": 800})

        result = evaluator.evaluate_expression(expr("credit_score", operator, right), None, context)

        assert result is expected

    def test_string_record_values_are_numeric(self, evaluator, make_context):
        """Test that numeric strings in the record compare as numbers."""
        context = make_context({"credit_score": "800"})

        assert evaluator.evaluate_expression(expr("credit_score", ">", "750"), None, context) is True

    def test_fractional_literal_is_truncated(self, evaluator, make_context):
        """Test that "0.5" on the right compares as 0 while the left keeps its fraction."""
        context = make_context({"ratio": 0.3})

        assert evaluator.evaluate_expression(expr("ratio", ">", "0.5"), None, context) is True
        assert evaluator.evaluate_expression(expr("ratio", "==", "0.3"), None, context) is False


class TestRightOperand:
    """Tests for right operand resolution."""

    def test_attribute_takes_precedence_over_literal(self, evaluator, make_context):
        """Test that a right operand naming an attribute uses the record value."""
        context = make_context({"loan_duration": 12, "credit_score": 800})

        result = evaluator.evaluate_expression(expr("loan_duration", "<", "credit_score"), None, context)

        assert result is True

    def test_numeric_attribute_name_prefers_record(self, evaluator, make_context):
        """Test that a record key spelled like a number still wins."""
        context = make_context({"score": 10, "5": 20})

        assert evaluator.resolve_right("5", context) == 20

    def test_literal_when_attribute_missing(self, evaluator, make_context):
        """Test literal parsing when no attribute matches."""
        assert evaluator.resolve_right("42", make_context({})) == 42

    def test_non_numeric_literal_is_nan(self, evaluator, make_context):
        """Test that an unknown name that is not a number resolves to nan."""
        assert math.isnan(evaluator.resolve_right("credit_score", make_context({})))

    def test_attribute_value_is_truncated(self, evaluator, make_context):
        """Test that a record value used on the right is truncated, 12 >= 12.9."""
        context = make_context({"a": 12, "limit": 12.9})

        assert evaluator.resolve_right("limit", context) == 12
        assert evaluator.evaluate_expression(expr("a", ">=", "limit"), None, context) is True

    def test_literal_integer_prefix(self, evaluator, make_context):
        """Test that a literal keeps only its leading integer."""
        context = make_context({"count": 12})

        assert evaluator.resolve_right("12abc", context) == 12
        assert evaluator.evaluate_expression(expr("count", "==", "12abc"), None, context) is True


class TestArithmeticOperators:
    """Tests for arithmetic operators."""

    @pytest.mark.parametrize(
        "operator,expected",
        [("+", 14), ("-", 10), ("*", 24), ("/", 6), ("%", 0)],
    )
    def test_arithmetic(self, evaluator, make_context, operator, expected):
        """Test each arithmetic operator on 12 and 2."""
        context = make_context({"value": 12})

        assert evaluator.evaluate_expression(expr("value", operator, "2"), None, context) == expected

    def test_division_by_zero(self, evaluator, make_context):
        """Test that division by zero yields infinity instead of raising."""
        context = make_context({"value": 5, "zero": 0})

        assert evaluator.evaluate_expression(expr("value", "/", "0"), None, context) == math.inf
        assert math.isnan(evaluator.evaluate_expression(expr("zero", "/", "0"), None, context))

    def test_remainder_sign_follows_dividend(self, evaluator, make_context):
        """Test that remainder keeps the sign of the dividend."""
        context = make_context({"value": -7})

        assert evaluator.evaluate_expression(expr("value", "%", "3"), None, context) == -1

    def test_remainder_by_zero(self, evaluator, make_context):
        """Test that remainder by zero yields nan."""
        context = make_context({"value": 7})

        assert math.isnan(evaluator.evaluate_expression(expr("value", "%", "0"), None, context))


class TestPermissiveFallbacks:
    """Tests for non-fatal fallbacks."""

    def test_missing_attribute_compares_false(self, evaluator, make_context):
        """Test that a missing attribute makes comparisons false."""
        context = make_context({})

        assert evaluator.evaluate_expression(expr("credit_score", ">", "750"), None, context) is False
        assert evaluator.evaluate_expression(expr("credit_score", "<=", "750"), None, context) is False
        assert [d.kind for d in context.diagnostics] == ["missing_attribute", "missing_attribute"]

    def test_missing_attribute_arithmetic_is_nan(self, evaluator, make_context):
        """Test that arithmetic on a missing attribute yields nan."""
        result = evaluator.evaluate_expression(expr("annual_income", "/", "12"), None, make_context({}))

        assert math.isnan(result)

    def test_unknown_operator_falls_back(self, evaluator, make_context):
        """Test that an unknown operator yields a falsy Fallback and a diagnostic."""
        context = make_context({"credit_score": 800})

        result = evaluator.evaluate_expression(expr("credit_score", "=~", "800"), None, context)

        assert result == Fallback("unknown_operator")
        assert not result
        assert result is not False
        assert context.diagnostics[0].kind == "unknown_operator"

    def test_previous_without_running_value(self, evaluator, make_context):
        """Test a PREVIOUS operand at the start of a block."""
        context = make_context({})

        result = evaluator.evaluate_expression(expr(PREVIOUS, ">", "1"), None, context)

        assert result is False
        assert context.diagnostics[0].kind == "missing_previous_result"

    def test_unknown_special_function_is_zero(self, evaluator, make_context):
        """Test that an unknown special function resolves to magnitude 0."""
        context = make_context({})
        expression = Expression.from_dict({"inputAttribute": "week_diff,a,b", "operator": "==", "value": "0"})

        assert evaluator.evaluate_expression(expression, None, context) is True
        assert context.diagnostics[0].kind == "unknown_special_function"


class TestConditionBlock:
    """Tests for condition block folding."""

    def test_threaded_block(self, evaluator, make_context):
        """Test monthly income threading: 1200000 / 12 = 100000, then >= 1000000."""
        context = make_context({"annual_income": 1200000})
        threaded = block(
            expr("annual_income", "/", "12"),
            expr(PREVIOUS, ">=", "1000000"),
        )

        steps = evaluator.fold_block(threaded, context)

        assert steps[0] == 100000
        assert steps[1] is False
        assert evaluator.evaluate_block(threaded, context) is False

    def test_threaded_block_true(self, evaluator, make_context):
        """Test threading that ends in a true comparison."""
        context = make_context({"annual_income": 1200000})
        threaded = block(expr("annual_income", "/", "12"), expr(PREVIOUS, ">=", "100000"))

        assert evaluator.evaluate_block(threaded, context) is True

    def test_chained_arithmetic(self, evaluator, make_context):
        """Test several arithmetic steps before the comparison."""
        context = make_context({"price": 10, "quantity": 3})
        chained = block(
            expr("price", "*", "quantity"),
            expr(PREVIOUS, "+", "5"),
            expr(PREVIOUS, "==", "35"),
        )

        assert evaluator.fold_block(chained, context) == [30, 35, True]

    def test_arithmetic_last_expression(self, evaluator, make_context):
        """Test that a block ending in arithmetic yields the number."""
        context = make_context({"value": 4})

        assert evaluator.evaluate_block(block(expr("value", "*", "2")), context) == 8

    def test_empty_block(self, evaluator, make_context):
        """Test that an empty block falls back to false."""
        context = make_context({})

        result = evaluator.evaluate_block(block(), context)

        assert result == Fallback("empty_block")


class TestAggregation:
    """Tests for connectors and quantifiers."""

    def test_any_retains_raw_results(self, evaluator, make_context):
        """Test ANY over [false, true] decides true and keeps raw results."""
        context = make_context({"flag": 1})

        aggregation = evaluator.aggregate(Quantifier.ANY, [constant(False), constant(True)], context)

        assert aggregation.decision is True
        assert aggregation.block_results == [False, True]

    def test_all_with_false_block(self, evaluator, make_context):
        """Test ALL over [true, false] decides false."""
        context = make_context({"flag": 1})

        aggregation = evaluator.aggregate(Quantifier.ALL, [constant(True), constant(False)], context)

        assert aggregation.decision is False
        assert aggregation.block_results == [True, False]

    def test_all_evaluates_every_block(self, evaluator, make_context):
        """Test that ALL does not short-circuit after a false block."""
        context = make_context({"flag": 1})
        blocks = [constant(False), block(expr("missing", ">", "1"))]

        aggregation = evaluator.aggregate(Quantifier.ALL, blocks, context)

        assert len(aggregation.block_results) == 2
        assert any(d.kind == "missing_attribute" for d in context.diagnostics)

    def test_connector_merges_with_next_block(self, evaluator, make_context):
        """Test that an AND connector merges a block with the following one."""
        context = make_context({"flag": 1})
        blocks = [
            block(*constant(True).expressions, connector=Connector.AND),
            constant(False),
            constant(True),
        ]

        aggregation = evaluator.aggregate(Quantifier.ANY, blocks, context)

        assert aggregation.block_results == [True, False, True]
        assert aggregation.merged_results == [False, True]
        assert aggregation.decision is True

    def test_connector_chain_keeps_merging(self, evaluator, make_context):
        """Test (false OR true) AND false with two connectors in a row."""
        context = make_context({"flag": 1})
        blocks = [
            block(*constant(False).expressions, connector=Connector.OR),
            block(*constant(True).expressions, connector=Connector.AND),
            constant(False),
        ]

        aggregation = evaluator.aggregate(Quantifier.ANY, blocks, context)

        assert aggregation.merged_results == [False]
        assert aggregation.decision is False

    def test_or_connector_under_all(self, evaluator, make_context):
        """Test that OR rescues a false block under ALL."""
        context = make_context({"flag": 1})
        blocks = [block(*constant(False).expressions, connector=Connector.OR), constant(True)]

        assert evaluator.aggregate(Quantifier.ALL, blocks, context).decision is True

    def test_trailing_connector_is_ignored(self, evaluator, make_context):
        """Test a connector on the last block."""
        context = make_context({"flag": 1})
        blocks = [block(*constant(True).expressions, connector=Connector.AND)]

        aggregation = evaluator.aggregate(Quantifier.ALL, blocks, context)

        assert aggregation.merged_results == [True]
        assert aggregation.decision is True

    def test_unknown_connector_falls_back(self, evaluator, make_context):
        """Test that an unknown connector merges to a Fallback."""
        context = make_context({"flag": 1})
        blocks = [block(*constant(True).expressions, connector="^^"), constant(True)]

        aggregation = evaluator.aggregate(Quantifier.ALL, blocks, context)

        assert aggregation.merged_results == [Fallback("unknown_connector")]
        assert aggregation.decision is False

    def test_false_connector_means_none(self, evaluator, make_context):
        """Test that a stored ``boolean: false`` leaves blocks unmerged."""
        context = make_context({"flag": 1})
        wire = {"expression": [{"inputAttribute": "flag", "operator": "==", "value": "1"}], "boolean": False}
        blocks = [ConditionBlock.from_dict(wire), constant(True)]

        aggregation = evaluator.aggregate(Quantifier.ALL, blocks, context)

        assert aggregation.merged_results == [True, True]
        assert aggregation.decision is True
        assert context.diagnostics == []

    def test_numeric_block_results_use_truthiness(self, evaluator, make_context):
        """Test that arithmetic block results are coerced by truthiness."""
        context = make_context({"value": 4, "zero": 0})

        assert evaluator.aggregate(Quantifier.ALL, [block(expr("value", "*", "2"))], context).decision is True
        assert evaluator.aggregate(Quantifier.ALL, [block(expr("zero", "*", "2"))], context).decision is False

    def test_empty_node(self, evaluator, make_context):
        """Test quantifiers over no blocks."""
        context = make_context({})

        assert evaluator.aggregate(Quantifier.ALL, [], context).decision is True
        assert evaluator.aggregate(Quantifier.ANY, [], context).decision is False


class TestNumberHelpers:
    """Tests for numeric coercion helpers."""

    def test_parse_number(self):
        """Test literal parsing."""
        assert parse_number("12") == 12
        assert isinstance(parse_number("12"), int)
        assert parse_number(" 12.5 ") == 12.5
        assert math.isnan(parse_number("twelve"))

    def test_parse_int(self):
        """Test right operand truncation."""
        assert parse_int("12.9") == 12
        assert parse_int("-7.5") == -7
        assert parse_int(" 7") == 7
        assert parse_int(12.9) == 12
        assert parse_int(-3.7) == -3
        assert math.isnan(parse_int("abc"))
        assert math.isnan(parse_int(math.inf))

    def test_to_number(self):
        """Test operand coercion."""
        assert to_number(True) == 1
        assert to_number(Fallback("unknown_operator")) == 0
        assert math.isnan(to_number(None))
        assert math.isnan(to_number([1, 2]))

    def test_truthy(self):
        """Test block result truthiness."""
        assert truthy(True)
        assert truthy(3)
        assert not truthy(0)
        assert not truthy(float("nan"))
        assert not truthy(Fallback("empty_block"))
