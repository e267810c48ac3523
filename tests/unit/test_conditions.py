"""Tests for sopwalk.engine.conditions: parser, comparison rules and three-valued evaluation."""

from __future__ import annotations

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from sopwalk.engine.conditions import (
    BoolOp,
    Comparison,
    Verdict,
    compare,
    parse_condition,
)
from sopwalk.engine.context import ContextStore
from sopwalk.exceptions import ConditionSyntaxError, ProcedureError


class TestParsing:
    def test_simple_comparison(self):
        """Test a single comparison parses into one node."""
        cond = parse_condition("context.orderStatus.minutesLate > 20")
        assert isinstance(cond.root, Comparison)
        assert cond.root.path.segments == ("orderStatus", "minutesLate")
        assert cond.root.op == ">"
        assert cond.root.literal.value == 20

    def test_strict_equality_aliases(self):
        """Test === and !== parse as == and !=."""
        assert parse_condition("context.a === true").root.op == "=="
        assert parse_condition("context.a !== 'x'").root.op == "!="

    def test_literals(self):
        """Test every literal form."""
        assert parse_condition("context.a == -5").root.literal.value == -5
        assert parse_condition("context.a >= 50.5").root.literal.value == 50.5
        assert parse_condition("context.a == false").root.literal.value is False
        assert parse_condition("context.a == 'in_transit'").root.literal.value == "in_transit"
        assert parse_condition('context.a == "say \\"hi\\""').root.literal.value == 'say "hi"'

    def test_string_escapes(self):
        """Test standard escapes decode and other escaped characters stand for themselves."""
        assert parse_condition(r'context.a == "line\nnext"').root.literal.value == "line\nnext"
        assert parse_condition(r"context.a == 'tab\there'").root.literal.value == "tab\there"
        assert parse_condition(r'context.a == "back\\slash"').root.literal.value == "back\\slash"
        assert parse_condition(r"context.a == 'it\'s'").root.literal.value == "it's"
        assert parse_condition(r'context.a == "\q"').root.literal.value == "q"

    def test_and_binds_tighter_than_or(self):
        """Test && groups before ||."""
        cond = parse_condition("context.a == 1 || context.b == 2 && context.c == 3")
        assert isinstance(cond.root, BoolOp)
        assert cond.root.op == "||"
        assert isinstance(cond.root.operands[1], BoolOp)
        assert cond.root.operands[1].op == "&&"

    def test_parentheses(self):
        """Test parentheses override precedence."""
        cond = parse_condition("(context.a == 1 || context.b == 2) && context.c == 3")
        assert cond.root.op == "&&"

    def test_source_kept_as_written(self):
        """Test the source keeps its whitespace and str() trims it."""
        cond = parse_condition("  context.a > 1  ")
        assert cond.source == "  context.a > 1  "
        assert str(cond) == "context.a > 1"

    def test_parse_is_cached(self):
        """Test identical sources share one parsed condition."""
        assert parse_condition("context.x > 1") is parse_condition("context.x > 1")

    def test_paths_deduplicated_in_order(self):
        """Test referenced paths are unique and in source order."""
        cond = parse_condition("context.a > 1 && context.a < 5 || context.b.c == true")
        assert [p.dotted for p in cond.paths] == ["context.a", "context.b.c"]
        assert cond.context_keys == ("a", "b")

    @pytest.mark.parametrize(
        "source",
        [
            "",
            "   ",
            "context.a >",
            "context.a > 1 &&",
            "orderStatus.minutesLate > 20",
            "context.a > foo",
            "(context.a > 1",
            "context.a > 1 context.b > 2",
            "context.a > 1; import os",
            "__import__('os').system('true')",
            "context.a + 1 > 2",
            "!context.a",
        ],
    )
    def test_rejects_invalid(self, source):
        """Test malformed or non-grammar input is rejected."""
        with pytest.raises(ConditionSyntaxError):
            parse_condition(source)

    def test_error_position(self):
        """Test syntax errors report the failing offset."""
        with pytest.raises(ConditionSyntaxError) as exc_info:
            parse_condition("context.a > 1; x")
        assert exc_info.value.position == 13
        assert exc_info.value.expression == "context.a > 1; x"
        assert isinstance(exc_info.value, ProcedureError)
        assert exc_info.value.error_code == "condition_syntax_error"


class TestCompare:
    def test_numeric(self):
        """Test numeric comparisons."""
        assert compare(25, ">", 20)
        assert not compare(5, ">", 20)
        assert compare(20, ">=", 20)
        assert compare(19.5, "<", 20)
        assert compare(20, "==", 20.0)

    def test_numeric_strings_coerced(self):
        """Test numeric-looking strings compare as numbers."""
        assert compare("25", ">", 20)
        assert compare("12345", "==", 12345)
        assert not compare("abc", ">", 20)

    def test_booleans_only_equal_booleans(self):
        """Test booleans never equal other types."""
        assert compare(True, "==", True)
        assert not compare(1, "==", True)
        assert not compare("true", "==", True)
        assert compare("true", "!=", True)
        assert not compare(True, ">", False)

    def test_strings(self):
        """Test strings support equality only."""
        assert compare("in_transit", "==", "in_transit")
        assert compare("in_transit", "!=", "delivered")
        assert not compare("b", ">", "a")

    def test_incompatible_types(self):
        """Test incompatible operands are unequal and unordered."""
        assert not compare({"x": 1}, "==", 1)
        assert compare({"x": 1}, "!=", 1)
        assert not compare([1], ">", 0)


class TestEvaluation:
    def test_true_branch(self):
        """Test a satisfied condition is TRUE."""
        cond = parse_condition("context.minutesLate > 20")
        assert cond.evaluate({"minutesLate": 25}) is Verdict.TRUE

    def test_false_branch(self):
        """Test an unsatisfied condition is FALSE."""
        cond = parse_condition("context.minutesLate > 20")
        assert cond.evaluate({"minutesLate": 5}) is Verdict.FALSE

    def test_absent_key_is_unevaluable(self):
        """Test a missing key is neither true nor false."""
        cond = parse_condition("context.minutesLate > 20")
        assert cond.evaluate({}) is Verdict.UNEVALUABLE
        assert cond.missing_paths({}) == ["context.minutesLate"]

    def test_none_is_unevaluable(self):
        """Test None values count as missing."""
        cond = parse_condition("context.customerWantsCancellation === true")
        assert cond.evaluate({"customerWantsCancellation": None}) is Verdict.UNEVALUABLE

    def test_any_missing_path_under_or(self):
        """Test || does not short-circuit past missing data."""
        cond = parse_condition("context.a == 1 || context.b == 2")
        assert cond.evaluate({"a": 1}) is Verdict.UNEVALUABLE
        assert cond.evaluate({"a": 1, "b": 0}) is Verdict.TRUE

    def test_precedence_in_evaluation(self):
        """Test a || b && c evaluates as a || (b && c)."""
        cond = parse_condition("context.a == 1 || context.b == 2 && context.c == 3")
        assert cond.evaluate({"a": 1, "b": 0, "c": 0}) is Verdict.TRUE
        assert cond.evaluate({"a": 0, "b": 2, "c": 0}) is Verdict.FALSE
        grouped = parse_condition("(context.a == 1 || context.b == 2) && context.c == 3")
        assert grouped.evaluate({"a": 1, "b": 0, "c": 0}) is Verdict.FALSE

    def test_evaluates_against_context_store(self):
        """Test a ContextStore works as the evaluation context."""
        cond = parse_condition("context.orderStatus.minutesLate > 20")
        store = ContextStore({"orderStatus": {"minutesLate": 25}})
        assert cond.evaluate(store) is Verdict.TRUE

    def test_list_segments(self):
        """Test numeric path segments index lists."""
        cond = parse_condition("context.items.0.qty >= 2")
        assert cond.evaluate({"items": [{"qty": 3}]}) is Verdict.TRUE
        assert cond.evaluate({"items": []}) is Verdict.UNEVALUABLE

    def test_str_is_source(self):
        """Test str() returns the expression text."""
        assert str(parse_condition("context.a > 1")) == "context.a > 1"


class TestPropertyBased:
    @given(st.integers(min_value=-10_000, max_value=10_000), st.integers(min_value=-10_000, max_value=10_000))
    @settings(max_examples=200)
    def test_numeric_matches_python(self, value, threshold):
        """Test numeric comparisons agree with Python's operators."""
        cond = parse_condition(f"context.x > {threshold}")
        expected = Verdict.TRUE if value > threshold else Verdict.FALSE
        assert cond.evaluate({"x": value}) is expected

    @given(st.text(alphabet="context.abxyz01 ><=!&|()'\"_;+-", max_size=40))
    @settings(max_examples=300)
    def test_parser_never_crashes(self, source):
        """Test arbitrary input either parses or raises ConditionSyntaxError."""
        try:
            cond = parse_condition(source)
        except ConditionSyntaxError:
            return
        assert cond.paths
        assert cond.evaluate({}) is Verdict.UNEVALUABLE
