"""Tests for the condition evaluator."""

from datetime import datetime

import pytest

from formflow.core.condition_evaluator import (
    ConditionEvaluator,
    _as_number,
    get_nested_value,
    is_empty_value,
    normalize_array,
)
from formflow.models.conditions import ComparisonOperator, ConditionEvaluationContext, ConditionOutcome

from conftest import FIXED_NOW


@pytest.fixture
def evaluator():
    return ConditionEvaluator(clock=lambda: FIXED_NOW)


def simple(path, operator, value, namespace="form"):
    return {
        "leftOperand": {"type": namespace, "path": path},
        "operator": operator,
        "rightOperand": {"type": "static", "value": value},
    }


def if_config(condition):
    return {"type": "if", "condition": condition, "truePath": "true", "falsePath": "false"}


def field_item(field_id, operator, value, next_operator=None):
    item = {
        "systemType": "field_level",
        "fieldLevelCondition": {"fieldId": field_id, "operator": operator, "value": value},
    }
    if next_operator:
        item["logicalOperatorWithNext"] = next_operator
    return item


class TestHelpers:

    @pytest.mark.parametrize("value", [None, "", "  ", "N/A", "null", "undefined", []])
    def test_empty_values(self, value):
        assert is_empty_value(value) is True

    @pytest.mark.parametrize("value", [0, False, "0", "no", [""]])
    def test_non_empty_values(self, value):
        assert is_empty_value(value) is False

    def test_get_nested_value_with_list_index(self):
        data = {"order": {"items": [{"sku": "A1"}, {"sku": "B2"}]}}
        assert get_nested_value(data, "order.items.1.sku") == "B2"
        assert get_nested_value(data, "order.items.5.sku") is None
        assert get_nested_value(data, "order.missing.sku") is None

    def test_normalize_array_flattens_options_and_access_lists(self):
        assert normalize_array([{"value": "A"}, "b", "a"]) == ["a", "b"]
        assert normalize_array({"users": ["U1"], "groups": ["G1"]}) == ["u1", "g1"]


class TestCompare:

    def test_equality_is_case_insensitive_and_type_lenient(self, evaluator):
        assert evaluator.compare("Approved", "approved", "==") is True
        assert evaluator.compare(5, "5", "==") is True
        assert evaluator.compare(True, "true", "==") is True
        assert evaluator.compare("a", "b", "!=") is True

    def test_numeric_ordering(self, evaluator):
        assert evaluator.compare("150", 100, ">") is True
        assert evaluator.compare(99.5, "100", "<") is True
        assert evaluator.compare(100, 100, ">=") is True

    def test_booleans_are_not_numbers(self, evaluator):
        assert evaluator.compare(True, 1, "==") is False
        assert evaluator.compare(False, 0, "!=") is True

    @pytest.mark.parametrize("text", ["1_000", "nan", "inf", "0x10"])
    def test_non_decimal_text_is_not_numeric(self, text):
        assert _as_number(text) is None

    def test_decimal_notation_is_numeric(self, evaluator):
        assert _as_number(" -12.5 ") == -12.5
        assert evaluator.compare("1e3", 999, ">") is True
        assert evaluator.compare("1_000", 999, ">") is False

    def test_time_of_day_ordering(self, evaluator):
        assert evaluator.compare("9:05", "10:00", "<") is True
        assert evaluator.compare("17:30:00", "17:30", "<=") is True

    def test_string_operators(self, evaluator):
        assert evaluator.compare("Hello World", "WORLD", "contains") is True
        assert evaluator.compare("Hello", "xyz", "not_contains") is True
        assert evaluator.compare("Invoice-42", "invoice", "starts_with") is True
        assert evaluator.compare("report.pdf", ".PDF", "ends_with") is True

    def test_membership_against_comma_separated_list(self, evaluator):
        assert evaluator.compare("Sales", "sales, support", "in") is True
        assert evaluator.compare("hr", "sales,support", "not_in") is True

    def test_exists(self, evaluator):
        assert evaluator.compare("x", None, "exists") is True
        assert evaluator.compare("", None, "exists") is False
        assert evaluator.compare(None, None, "not_exists") is True

    def test_missing_left_operand_only_matches_not_exists(self, evaluator):
        assert evaluator.compare(None, "x", "==") is False
        assert evaluator.compare(None, "x", "!=") is False

    def test_missing_right_operand(self, evaluator):
        assert evaluator.compare("x", None, "==") is False
        assert evaluator.compare("x", None, "!=") is True

    def test_array_equality_is_order_insensitive(self, evaluator):
        assert evaluator.compare(["b", "a"], ["A", "B"], "==") is True
        assert evaluator.compare(["a"], "A", "==") is True
        assert evaluator.compare(["a", "b"], "a", "==") is False

    def test_array_contains_and_in(self, evaluator):
        assert evaluator.compare(["red", "green"], "green", "contains") is True
        assert evaluator.compare(["red", "green"], ["green", "blue"], "contains") is False
        assert evaluator.compare(["red", "green"], "blue,green", "in") is True
        assert evaluator.compare({"users": ["u1"], "groups": []}, "u2", "not_in") is True

    def test_unknown_operator_is_false(self, evaluator):
        assert evaluator.compare("a", "a", "resembles") is False

    def test_date_comparisons_against_whole_day(self, evaluator):
        assert evaluator.compare("2024-06-12T23:59:00Z", "2024-06-12", "on_or_before") is True
        assert evaluator.compare("2024-06-13T00:00:00", "2024-06-12", "after") is True
        assert evaluator.compare("2024-06-12T10:00:00", "2024-06-12", "after") is False
        assert evaluator.compare("2024-06-11", "2024-06-12", "before") is True

    def test_between_is_inclusive(self, evaluator):
        assert evaluator.compare("2024-06-30", ["2024-06-01", "2024-06-30"], "between") is True
        assert evaluator.compare(15, "10,20", "between") is True
        assert evaluator.compare(25, {"start": 10, "end": 20}, "between") is False


class TestRelativeDates:
    """FIXED_NOW is Wednesday 2024-06-12 09:30 UTC."""

    @pytest.mark.parametrize("value,operator,expected", [
        ("2024-06-12T00:00:00", "is_today", True),
        ("2024-06-11T23:59:59", "is_today", False),
        ("2024-06-11", "is_yesterday", True),
        ("2024-06-13", "is_tomorrow", True),
        ("2024-06-10", "is_this_week", True),
        ("2024-06-09", "is_this_week", False),
        ("2024-06-09", "is_last_week", True),
        ("2024-06-17", "is_next_week", True),
        ("2024-06-01", "is_this_month", True),
        ("2024-05-31", "is_last_month", True),
        ("2024-07-01", "is_next_month", True),
        ("2024-01-01", "is_this_year", True),
        ("2023-12-31", "is_last_year", True),
        ("2025-03-01", "is_next_year", True),
    ])
    def test_buckets(self, evaluator, value, operator, expected):
        assert evaluator.compare(value, None, operator) is expected

    def test_last_and_next_n_days(self, evaluator):
        assert evaluator.compare("2024-06-06", 7, "last_n_days") is True
        assert evaluator.compare("2024-06-05", 7, "last_n_days") is False
        assert evaluator.compare("2024-06-18", "7", "next_n_days") is True
        assert evaluator.compare("2024-06-19", 7, "next_n_days") is False

    def test_last_n_days_without_count_is_false(self, evaluator):
        assert evaluator.compare("2024-06-12", None, "last_n_days") is False

    def test_huge_day_counts_are_clamped(self, evaluator):
        assert evaluator.compare("1990-01-01", 10 ** 12, "last_n_days") is True
        assert evaluator.compare("2999-01-01", 1e300, "next_n_days") is True
        start, end = evaluator.bucket_range(ComparisonOperator.LAST_N_DAYS, 10 ** 12)
        assert start == datetime.min
        assert end == datetime(2024, 6, 13)

        result = evaluator.evaluate(
            if_config(simple("due", "next_n_days", 10 ** 12)), {"formData": {"due": "2024-05-01"}}
        )
        assert result.success is True
        assert result.result is False

    def test_january_last_month_wraps_year(self):
        evaluator = ConditionEvaluator(clock=lambda: datetime(2024, 1, 15))
        assert evaluator.bucket_range(ComparisonOperator.IS_LAST_MONTH) == (
            datetime(2023, 12, 1), datetime(2024, 1, 1)
        )


class TestIfConditions:

    def test_simple_condition_true(self, evaluator):
        result = evaluator.evaluate(if_config(simple("amount", ">", 100)), {"formData": {"amount": 150}})
        assert result.success is True
        assert result.result is True
        assert result.outcome is ConditionOutcome.TRUE

    def test_empty_form_field_waits(self, evaluator):
        result = evaluator.evaluate(if_config(simple("amount", ">", 100)), {"formData": {"amount": ""}})
        assert result.success is True
        assert result.result is False
        assert result.waiting_for_value is True
        assert result.waiting_fields == ["amount"]

    def test_exists_never_waits(self, evaluator):
        result = evaluator.evaluate(if_config(simple("amount", "not_exists", None)), {"formData": {}})
        assert result.waiting_for_value is False
        assert result.result is True

    def test_user_namespace_does_not_wait(self, evaluator):
        result = evaluator.evaluate(
            if_config(simple("role", "==", "admin", namespace="user")),
            ConditionEvaluationContext(user_properties={})
        )
        assert result.waiting_for_value is False
        assert result.result is False

    def test_right_operand_field_path(self, evaluator):
        condition = {
            "leftOperand": {"type": "form", "path": "spent"},
            "operator": "<=",
            "rightOperand": {"type": "form", "path": "budget"},
        }
        result = evaluator.evaluate(if_config(condition), {"formData": {"spent": 40, "budget": 50}})
        assert result.result is True

    def test_logical_group_reports_all_waiting_fields(self, evaluator):
        group = {
            "operator": "OR",
            "conditions": [
                simple("approved", "==", True),
                simple("manager", "==", "x"),
                simple("director", "==", "y"),
            ],
        }
        result = evaluator.evaluate(if_config(group), {"formData": {"approved": True}})
        # A true child does not hide the empty fields of its siblings
        assert result.waiting_for_value is True
        assert result.waiting_fields == ["manager", "director"]

    def test_nested_logical_groups(self, evaluator):
        group = {
            "operator": "AND",
            "conditions": [
                simple("country", "==", "DE"),
                {"operator": "OR", "conditions": [simple("amount", ">", 1000), simple("vip", "==", True)]},
            ],
        }
        context = {"formData": {"country": "de", "amount": 10, "vip": "true"}}
        assert evaluator.evaluate(if_config(group), context).result is True

    def test_unknown_condition_type_fails(self, evaluator):
        result = evaluator.evaluate({"type": "loop"}, {})
        assert result.success is False
        assert result.error == "Unknown condition type: loop"

    def test_malformed_condition_fails(self, evaluator):
        result = evaluator.evaluate({"type": "if", "condition": "amount > 3"}, {})
        assert result.success is False
        assert result.error


class TestEnhancedConditions:

    def test_sequential_combination(self, evaluator):
        enhanced = {
            "systemType": "field_level",
            "conditions": [
                field_item("a", "==", "1", "OR"),
                field_item("b", "==", "2", "AND"),
                field_item("c", "==", "3"),
            ],
        }
        # (a OR b) AND c evaluated left to right
        context = {"formData": {"a": "1", "b": "0", "c": "0"}}
        assert evaluator.evaluate(if_config(enhanced), context).result is False
        context["formData"]["c"] = "3"
        assert evaluator.evaluate(if_config(enhanced), context).result is True

    def test_manual_expression(self, evaluator):
        enhanced = {
            "systemType": "field_level",
            "useManualExpression": True,
            "manualExpression": "1 OR (2 AND 3)",
            "conditions": [
                field_item("a", "==", "1", "AND"),
                field_item("b", "==", "2", "AND"),
                field_item("c", "==", "3"),
            ],
        }
        context = {"formData": {"a": "0", "b": "2", "c": "3"}}
        assert evaluator.evaluate(if_config(enhanced), context).result is True

    def test_invalid_manual_expression_falls_back_to_sequential(self, evaluator):
        enhanced = {
            "systemType": "field_level",
            "useManualExpression": True,
            "manualExpression": "1 OR 9",
            "conditions": [field_item("a", "==", "1", "AND"), field_item("b", "==", "2")],
        }
        context = {"formData": {"a": "1", "b": "0"}}
        assert evaluator.evaluate(if_config(enhanced), context).result is False

    def test_empty_field_waits(self, evaluator):
        enhanced = {
            "systemType": "field_level",
            "conditions": [field_item("a", "==", "1", "OR"), field_item("b", "==", "2")],
        }
        result = evaluator.evaluate(if_config(enhanced), {"formData": {"a": "1"}})
        assert result.waiting_for_value is True
        assert result.waiting_fields == ["b"]

    def test_form_level_conditions_read_system_data(self, evaluator):
        enhanced = {
            "systemType": "form_level",
            "formLevelCondition": {"conditionType": "form_submission", "operator": "==", "value": "submitted"},
        }
        context = {"systemData": {"submissionStatus": "Submitted"}}
        assert evaluator.evaluate(if_config(enhanced), context).result is True

        enhanced["formLevelCondition"] = {"conditionType": "user_property", "operator": "==", "value": "admin"}
        context = {"userProperties": {"role": "user"}}
        result = evaluator.evaluate(if_config(enhanced), context)
        assert result.result is False
        assert result.waiting_for_value is False


EMPTY_VALUES = ["", "N/A", []]
WAITING_OPERATORS = [op for op in ComparisonOperator
                     if op not in (ComparisonOperator.EXISTS, ComparisonOperator.NOT_EXISTS)]


def field_level(operator, value=5):
    return {
        "systemType": "field_level",
        "fieldLevelCondition": {"fieldId": "amount", "operator": operator, "value": value},
    }


class TestEmptyValuesWait:

    @pytest.mark.parametrize("empty", EMPTY_VALUES)
    @pytest.mark.parametrize("operator", WAITING_OPERATORS)
    def test_simple_condition_waits(self, evaluator, operator, empty):
        result = evaluator.evaluate(if_config(simple("amount", operator.value, 5)), {"formData": {"amount": empty}})
        assert result.outcome is ConditionOutcome.WAITING
        assert result.waiting_fields == ["amount"]

    @pytest.mark.parametrize("empty", EMPTY_VALUES)
    @pytest.mark.parametrize("operator", WAITING_OPERATORS)
    def test_field_level_condition_waits(self, evaluator, operator, empty):
        result = evaluator.evaluate(if_config(field_level(operator.value)), {"formData": {"amount": empty}})
        assert result.outcome is ConditionOutcome.WAITING
        assert result.waiting_fields == ["amount"]

    # "N/A" is a placeholder for waiting, but it is still a value for exists
    @pytest.mark.parametrize("empty, exists", [("", False), ("N/A", True), ([], False)])
    def test_exists_operators_decide(self, evaluator, empty, exists):
        context = {"formData": {"amount": empty}}
        for config in (if_config(simple("amount", "exists", None)), if_config(field_level("exists"))):
            result = evaluator.evaluate(config, context)
            assert result.waiting_for_value is False
            assert result.result is exists
        for config in (if_config(simple("amount", "not_exists", None)), if_config(field_level("not_exists"))):
            result = evaluator.evaluate(config, context)
            assert result.waiting_for_value is False
            assert result.result is not exists


class TestSwitchConditions:

    def switch_config(self):
        return {
            "type": "switch",
            "field": {"type": "form", "path": "tier"},
            "cases": [{"value": "gold", "path": "gold_path"}, {"value": "silver", "path": "silver_path"}],
            "defaultPath": "standard",
        }

    def test_first_matching_case(self, evaluator):
        result = evaluator.evaluate(self.switch_config(), {"formData": {"tier": "Silver"}})
        assert result.success is True
        assert result.result == "silver_path"
        assert result.evaluated_conditions["matchedCase"] == "silver"

    def test_default_path(self, evaluator):
        result = evaluator.evaluate(self.switch_config(), {"formData": {"tier": "bronze"}})
        assert result.result == "standard"

    def test_missing_default_path_falls_back_to_default_label(self, evaluator):
        config = self.switch_config()
        del config["defaultPath"]
        result = evaluator.evaluate(config, {"formData": {}})
        assert result.result == "default"
