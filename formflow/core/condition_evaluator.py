"""Condition evaluation for condition nodes.

A condition is evaluated against three namespaces (form data, user properties
and system data). Boolean conditions produce a tri-state outcome: a leaf whose
form value is still empty reports WAITING instead of FALSE, and any waiting
leaf makes the whole expression wait, regardless of short-circuiting.
"""

import math
import re
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Tuple, Union

from ..models.conditions import (
    ComparisonOperator,
    ConditionEvaluationContext,
    ConditionEvaluationResult,
    ConditionItem,
    ConditionOutcome,
    EnhancedCondition,
    FieldLevelCondition,
    FieldPath,
    FormLevelCondition,
    IfConditionConfig,
    LogicalGroup,
    LogicalOperator,
    SimpleCondition,
    StaticOperand,
    SwitchConditionConfig,
    parse_condition_config,
)
from .date_utils import (
    add_months,
    day_bounds,
    normalize_time_string,
    parse_datetime,
    start_of_day,
    start_of_month,
    start_of_week,
    start_of_year,
    utc_now,
)
from .exceptions import ExpressionError
from .expression import evaluate_expression
from .logging import get_logger

logger = get_logger(__name__)


EMPTY_MARKERS = ("", "n/a", "na", "null", "undefined")

# Plain decimal notation only; "nan", "inf" and "1_000" are text
DECIMAL_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

BYPASS_WAITING_OPERATORS = (ComparisonOperator.EXISTS, ComparisonOperator.NOT_EXISTS)

ORDERING_OPERATORS = (
    ComparisonOperator.LESS_THAN,
    ComparisonOperator.GREATER_THAN,
    ComparisonOperator.LESS_OR_EQUAL,
    ComparisonOperator.GREATER_OR_EQUAL,
)

DATE_OPERATORS = (
    ComparisonOperator.AFTER,
    ComparisonOperator.BEFORE,
    ComparisonOperator.ON_OR_AFTER,
    ComparisonOperator.ON_OR_BEFORE,
    ComparisonOperator.BETWEEN,
)

# Operators that only look at the left operand (plus an optional day count).
BUCKET_OPERATORS = (
    ComparisonOperator.IS_TODAY,
    ComparisonOperator.IS_YESTERDAY,
    ComparisonOperator.IS_TOMORROW,
    ComparisonOperator.IS_THIS_WEEK,
    ComparisonOperator.IS_LAST_WEEK,
    ComparisonOperator.IS_NEXT_WEEK,
    ComparisonOperator.IS_THIS_MONTH,
    ComparisonOperator.IS_LAST_MONTH,
    ComparisonOperator.IS_NEXT_MONTH,
    ComparisonOperator.IS_THIS_YEAR,
    ComparisonOperator.IS_LAST_YEAR,
    ComparisonOperator.IS_NEXT_YEAR,
    ComparisonOperator.LAST_N_DAYS,
    ComparisonOperator.NEXT_N_DAYS,
)

InternalResult = Tuple[ConditionOutcome, List[str]]


def is_empty_value(value: Any) -> bool:
    """True for values that mean "not filled in yet"."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in EMPTY_MARKERS
    if isinstance(value, (list, tuple)) and len(value) == 0:
        return True
    return False


def get_nested_value(data: Any, path: Optional[str]) -> Any:
    """Resolve a dot separated path; list segments may be numeric indices."""
    if data is None or not path:
        return None
    current = data
    for key in path.split('.'):
        if current is None:
            return None
        if isinstance(current, dict):
            current = current.get(key)
        elif isinstance(current, (list, tuple)) and key.isdigit():
            index = int(key)
            current = current[index] if index < len(current) else None
        else:
            return None
    return current


def _as_text(value: Any) -> str:
    """Lower-cased string form used for case-insensitive comparisons."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip().lower()


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and DECIMAL_PATTERN.match(value.strip()):
        number = float(value.strip())
    else:
        return None
    return number if math.isfinite(number) else None


def _same_value(left: Any, right: Any) -> bool:
    # True == 1 in Python, but a checkbox is not a count
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _unwrap(value: Any) -> Any:
    """Reduce option objects such as ``{"value": "a", "label": "A"}`` to their value."""
    if isinstance(value, dict):
        for key in ("value", "id", "email"):
            if key in value:
                return value[key]
    return value


def is_array_like(value: Any) -> bool:
    if isinstance(value, (list, tuple, set)):
        return True
    return isinstance(value, dict) and ("users" in value or "groups" in value)


def normalize_array(value: Any) -> List[str]:
    """
    Flatten a multi-value operand into distinct lower-cased strings.

    Handles plain lists, lists of option objects and the access-control shape
    ``{"users": [...], "groups": [...]}``.
    """
    if isinstance(value, dict) and ("users" in value or "groups" in value):
        items = list(value.get("users") or []) + list(value.get("groups") or [])
    elif isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        items = [value]

    normalized: List[str] = []
    for item in items:
        item = _unwrap(item)
        if item is None:
            continue
        text = _as_text(item)
        if text and text not in normalized:
            normalized.append(text)
    return normalized


def _split_members(value: Any) -> List[str]:
    """Membership set for ``in``/``not_in``: an array or a comma separated string."""
    if is_array_like(value):
        return normalize_array(value)
    return [part.strip().lower() for part in str(value).split(',')]


class ConditionEvaluator:
    """Evaluates If and Switch condition configs against an evaluation context."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            clock: Callable returning the current naive UTC instant; used by the
                relative date operators. Defaults to the system clock.
        """
        self._clock = clock or utc_now

    def evaluate(
        self,
        config: Any,
        context: Union[ConditionEvaluationContext, dict]
    ) -> ConditionEvaluationResult:
        """
        Evaluate a condition config.

        Args:
            config: An If/Switch config model or its raw dict form
            context: Evaluation namespaces

        Returns:
            ConditionEvaluationResult: ``result`` is a bool for If configs and a
            branch label for Switch configs. Malformed configs yield
            ``success=False`` with an error message.
        """
        try:
            if isinstance(config, dict):
                condition_type = config.get('type')
                if condition_type not in ('if', 'switch'):
                    return ConditionEvaluationResult(
                        success=False,
                        result=False,
                        error=f"Unknown condition type: {condition_type}"
                    )
            parsed = parse_condition_config(config)
            if not isinstance(context, ConditionEvaluationContext):
                context = ConditionEvaluationContext.model_validate(context or {})

            if isinstance(parsed, SwitchConditionConfig):
                return self._evaluate_switch(parsed, context)
            return self._evaluate_if(parsed, context)

        except Exception as e:
            logger.warning(f"Condition evaluation failed: {str(e)}")
            return ConditionEvaluationResult(success=False, result=False, error=str(e))

    def _evaluate_if(self, config: IfConditionConfig, context: ConditionEvaluationContext) -> ConditionEvaluationResult:
        outcome, waiting_fields = self.evaluate_expression(config.condition, context)

        if outcome is ConditionOutcome.WAITING:
            logger.info(f"Condition is waiting for values of: {', '.join(waiting_fields)}")
            return ConditionEvaluationResult(
                success=True,
                result=False,
                outcome=outcome,
                evaluated_conditions={"conditionResult": False},
                waiting_for_value=True,
                waiting_fields=waiting_fields
            )

        value = outcome is ConditionOutcome.TRUE
        return ConditionEvaluationResult(
            success=True,
            result=value,
            outcome=outcome,
            evaluated_conditions={"conditionResult": value}
        )

    def _evaluate_switch(self, config: SwitchConditionConfig, context: ConditionEvaluationContext) -> ConditionEvaluationResult:
        field_value = self.resolve_field_path(config.field, context)

        matched = None
        for case in config.cases:
            if self.compare(field_value, case.value, ComparisonOperator.EQUALS.value):
                matched = case
                break

        result_path = matched.path if matched else config.default_path
        return ConditionEvaluationResult(
            success=True,
            result=result_path or "default",
            evaluated_conditions={
                "fieldValue": field_value,
                "matchedCase": matched.value if matched else None,
                "resultPath": result_path,
            }
        )

    def evaluate_expression(self, expression: Any, context: ConditionEvaluationContext) -> InternalResult:
        """Evaluate any boolean expression node to an outcome and its waiting fields."""
        if isinstance(expression, SimpleCondition):
            return self._evaluate_simple(expression, context)
        if isinstance(expression, LogicalGroup):
            return self._evaluate_group(expression, context)
        if isinstance(expression, EnhancedCondition):
            return self._evaluate_enhanced(expression, context)
        return ConditionOutcome.FALSE, []

    def _evaluate_group(self, group: LogicalGroup, context: ConditionEvaluationContext) -> InternalResult:
        # Every child is evaluated so that waiting fields are never hidden by short-circuiting.
        results = [self.evaluate_expression(child, context) for child in group.conditions]

        waiting = _collect_waiting(results)
        if waiting is not None:
            return waiting

        values = [outcome is ConditionOutcome.TRUE for outcome, _ in results]
        if group.operator is LogicalOperator.AND:
            return _outcome(all(values)), []
        return _outcome(any(values)), []

    def _evaluate_enhanced(self, condition: EnhancedCondition, context: ConditionEvaluationContext) -> InternalResult:
        if not condition.conditions:
            # Single condition stored without a list
            return self._evaluate_item(condition, context)

        results = [self._evaluate_item(item, context) for item in condition.conditions]

        waiting = _collect_waiting(results)
        if waiting is not None:
            return waiting

        values = {str(index + 1): outcome is ConditionOutcome.TRUE for index, (outcome, _) in enumerate(results)}

        if condition.use_manual_expression and condition.manual_expression:
            try:
                return _outcome(evaluate_expression(condition.manual_expression, values)), []
            except ExpressionError as e:
                logger.warning(f"{e.message}; falling back to sequential evaluation")

        result = values["1"]
        for index in range(1, len(condition.conditions)):
            operator = condition.conditions[index - 1].logical_operator_with_next or LogicalOperator.AND
            current = values[str(index + 1)]
            if operator is LogicalOperator.AND:
                result = result and current
            else:
                result = result or current
        return _outcome(result), []

    def _evaluate_item(self, item: Union[ConditionItem, EnhancedCondition], context: ConditionEvaluationContext) -> InternalResult:
        if item.system_type == "form_level" and item.form_level_condition:
            return self._evaluate_form_level(item.form_level_condition, context)
        if item.system_type == "field_level" and item.field_level_condition:
            return self._evaluate_field_level(item.field_level_condition, context)
        return ConditionOutcome.FALSE, []

    def _evaluate_form_level(self, condition: FormLevelCondition, context: ConditionEvaluationContext) -> InternalResult:
        if condition.condition_type == "form_status":
            actual = context.system_data.get("formStatus")
        elif condition.condition_type == "form_submission":
            actual = context.system_data.get("submissionStatus")
        elif condition.condition_type == "user_property":
            actual = context.user_properties.get("role") or context.user_properties.get("user_role")
        else:
            return ConditionOutcome.FALSE, []

        # System-level checks never wait for data.
        return _outcome(self.compare(actual, condition.value, condition.operator)), []

    def _evaluate_field_level(self, condition: FieldLevelCondition, context: ConditionEvaluationContext) -> InternalResult:
        value = context.form_data.get(condition.field_id)

        if not _bypasses_waiting(condition.operator) and is_empty_value(value):
            logger.debug(f"Field '{condition.field_id}' is empty, waiting for a value")
            return ConditionOutcome.WAITING, [condition.field_id]

        return _outcome(self.compare(value, condition.value, condition.operator)), []

    def _evaluate_simple(self, condition: SimpleCondition, context: ConditionEvaluationContext) -> InternalResult:
        left = self.resolve_field_path(condition.left_operand, context)

        if (condition.left_operand.type == "form"
                and is_empty_value(left)
                and not _bypasses_waiting(condition.operator)):
            logger.debug(f"Field '{condition.left_operand.path}' is empty, waiting for a value")
            return ConditionOutcome.WAITING, [condition.left_operand.path]

        operand = condition.right_operand
        if isinstance(operand, StaticOperand):
            right = operand.value
        else:
            right = self.resolve_field_path(operand, context)

        return _outcome(self.compare(left, right, condition.operator)), []

    def resolve_field_path(self, field_path: FieldPath, context: ConditionEvaluationContext) -> Any:
        if field_path.type == "form":
            return get_nested_value(context.form_data, field_path.path)
        if field_path.type == "user":
            return get_nested_value(context.user_properties, field_path.path)
        if field_path.type == "system":
            return get_nested_value(context.system_data, field_path.path)
        # For static paths the path is the value itself.
        return field_path.path

    def compare(self, left: Any, right: Any, operator: str) -> bool:
        """
        Compare two operand values.

        Args:
            left: Resolved left operand
            right: Resolved right operand (a day count for last/next_n_days)
            operator: One of the ComparisonOperator values

        Returns:
            bool: Comparison result; unknown operators compare False
        """
        try:
            op = ComparisonOperator(operator)
        except ValueError:
            logger.warning(f"Unknown comparison operator: {operator}")
            return False

        left = _unwrap(left)
        if not is_array_like(right):
            right = _unwrap(right)

        if left is None:
            return op is ComparisonOperator.NOT_EXISTS

        if op is ComparisonOperator.EXISTS:
            return not _is_blank(left)
        if op is ComparisonOperator.NOT_EXISTS:
            return _is_blank(left)

        if op in BUCKET_OPERATORS:
            return self._compare_bucket(left, right, op)

        if right is None:
            if op is ComparisonOperator.EQUALS:
                return False
            if op is ComparisonOperator.NOT_EQUALS:
                return True
            return False

        if is_array_like(left) or (is_array_like(right) and op in (
                ComparisonOperator.EQUALS, ComparisonOperator.NOT_EQUALS)):
            return self._compare_arrays(left, right, op)

        if op in DATE_OPERATORS:
            return self._compare_dates(left, right, op)

        return self._compare_scalars(left, right, op)

    def _compare_scalars(self, left: Any, right: Any, op: ComparisonOperator) -> bool:
        left_text = _as_text(left)
        right_text = _as_text(right)

        if op is ComparisonOperator.EQUALS:
            return _same_value(left, right) or left_text == right_text
        if op is ComparisonOperator.NOT_EQUALS:
            return not (_same_value(left, right) or left_text == right_text)

        if op in ORDERING_OPERATORS:
            left_time = normalize_time_string(left)
            right_time = normalize_time_string(right)
            if left_time and right_time:
                return _ordered(left_time, right_time, op)
            left_number = _as_number(left)
            right_number = _as_number(right)
            if left_number is not None and right_number is not None:
                return _ordered(left_number, right_number, op)
            return _ordered(left_text, right_text, op)

        if op is ComparisonOperator.CONTAINS:
            return right_text in left_text
        if op is ComparisonOperator.NOT_CONTAINS:
            return right_text not in left_text
        if op is ComparisonOperator.STARTS_WITH:
            return left_text.startswith(right_text)
        if op is ComparisonOperator.ENDS_WITH:
            return left_text.endswith(right_text)
        if op is ComparisonOperator.IN:
            return left_text in _split_members(right)
        if op is ComparisonOperator.NOT_IN:
            return left_text not in _split_members(right)
        return False

    def _compare_arrays(self, left: Any, right: Any, op: ComparisonOperator) -> bool:
        """Comparisons where at least one side holds multiple values."""
        if not is_array_like(left):
            # Scalar against an array: only equality is defined symmetrically.
            left, right = right, left

        values = normalize_array(left)

        if op in (ComparisonOperator.EQUALS, ComparisonOperator.NOT_EQUALS):
            if is_array_like(right):
                equal = sorted(values) == sorted(normalize_array(right))
            else:
                # Strict: the array must hold exactly the one scalar value.
                equal = len(values) == 1 and values[0] == _as_text(right)
            return equal if op is ComparisonOperator.EQUALS else not equal

        if op in (ComparisonOperator.CONTAINS, ComparisonOperator.NOT_CONTAINS):
            wanted = normalize_array(right)
            contained = bool(wanted) and all(item in values for item in wanted)
            return contained if op is ComparisonOperator.CONTAINS else not contained

        if op in (ComparisonOperator.IN, ComparisonOperator.NOT_IN):
            members = _split_members(right)
            overlap = any(item in members for item in values)
            return overlap if op is ComparisonOperator.IN else not overlap

        # Remaining operators apply to single-valued arrays only.
        if len(values) != 1:
            return False
        return self.compare(values[0], right, op.value)

    def _compare_dates(self, left: Any, right: Any, op: ComparisonOperator) -> bool:
        if op is ComparisonOperator.BETWEEN:
            return self._compare_between(left, right)

        left_time = normalize_time_string(left)
        right_time = normalize_time_string(right)
        if left_time and right_time:
            return {
                ComparisonOperator.AFTER: left_time > right_time,
                ComparisonOperator.BEFORE: left_time < right_time,
                ComparisonOperator.ON_OR_AFTER: left_time >= right_time,
                ComparisonOperator.ON_OR_BEFORE: left_time <= right_time,
            }[op]

        instant = parse_datetime(left)
        bounds = day_bounds(right)
        if instant is None or bounds is None:
            return False
        start, end = bounds

        if start == end:
            # Right operand is an exact instant
            return {
                ComparisonOperator.AFTER: instant > start,
                ComparisonOperator.BEFORE: instant < start,
                ComparisonOperator.ON_OR_AFTER: instant >= start,
                ComparisonOperator.ON_OR_BEFORE: instant <= start,
            }[op]

        # Right operand is a whole day [start, end)
        return {
            ComparisonOperator.AFTER: instant >= end,
            ComparisonOperator.BEFORE: instant < start,
            ComparisonOperator.ON_OR_AFTER: instant >= start,
            ComparisonOperator.ON_OR_BEFORE: instant < end,
        }[op]

    def _compare_between(self, left: Any, right: Any) -> bool:
        """Inclusive range check; the range is a pair, a start/end dict or an "a,b" string."""
        if isinstance(right, dict):
            low, high = right.get("start", right.get("from")), right.get("end", right.get("to"))
        elif isinstance(right, (list, tuple)) and len(right) == 2:
            low, high = right[0], right[1]
        elif isinstance(right, str) and right.count(',') == 1:
            low, high = [part.strip() for part in right.split(',')]
        else:
            return False

        left_time = normalize_time_string(left)
        low_time = normalize_time_string(low)
        high_time = normalize_time_string(high)
        if left_time and low_time and high_time:
            return low_time <= left_time <= high_time

        instant = parse_datetime(left)
        low_bounds = day_bounds(low)
        high_bounds = day_bounds(high)
        if instant is None or low_bounds is None or high_bounds is None:
            left_number, low_number, high_number = _as_number(left), _as_number(low), _as_number(high)
            if None in (left_number, low_number, high_number):
                return False
            return low_number <= left_number <= high_number

        high_start, high_end = high_bounds
        if high_start == high_end:
            return low_bounds[0] <= instant <= high_start
        return low_bounds[0] <= instant < high_end

    def _compare_bucket(self, left: Any, right: Any, op: ComparisonOperator) -> bool:
        instant = parse_datetime(left)
        if instant is None:
            return False
        bucket = self.bucket_range(op, right)
        if bucket is None:
            return False
        start, end = bucket
        return start <= instant < end

    def bucket_range(self, op: ComparisonOperator, days: Any = None) -> Optional[Tuple[datetime, datetime]]:
        """
        Half-open ``[start, end)`` range for a relative date operator.

        Weeks start on Monday. ``last_n_days`` and ``next_n_days`` span ``days``
        calendar days ending or starting today (today included).
        """
        now = self._clock()
        today = start_of_day(now)
        one_day = timedelta(days=1)
        one_week = timedelta(days=7)

        if op is ComparisonOperator.IS_TODAY:
            return today, today + one_day
        if op is ComparisonOperator.IS_YESTERDAY:
            return today - one_day, today
        if op is ComparisonOperator.IS_TOMORROW:
            return today + one_day, today + 2 * one_day

        week = start_of_week(now)
        if op is ComparisonOperator.IS_THIS_WEEK:
            return week, week + one_week
        if op is ComparisonOperator.IS_LAST_WEEK:
            return week - one_week, week
        if op is ComparisonOperator.IS_NEXT_WEEK:
            return week + one_week, week + 2 * one_week

        month = start_of_month(now)
        if op is ComparisonOperator.IS_THIS_MONTH:
            return month, add_months(month, 1)
        if op is ComparisonOperator.IS_LAST_MONTH:
            return add_months(month, -1), month
        if op is ComparisonOperator.IS_NEXT_MONTH:
            return add_months(month, 1), add_months(month, 2)

        year = start_of_year(now)
        if op is ComparisonOperator.IS_THIS_YEAR:
            return year, year.replace(year=year.year + 1)
        if op is ComparisonOperator.IS_LAST_YEAR:
            return year.replace(year=year.year - 1), year
        if op is ComparisonOperator.IS_NEXT_YEAR:
            return year.replace(year=year.year + 1), year.replace(year=year.year + 2)

        count = _as_number(days)
        if count is None or count < 1:
            return None
        # Spans past the ends of the calendar are clamped to them
        if op is ComparisonOperator.LAST_N_DAYS:
            end = today + one_day
            back = min(int(count), (end - datetime.min).days)
            return end - timedelta(days=back), end
        if op is ComparisonOperator.NEXT_N_DAYS:
            ahead = min(int(count), (datetime.max - today).days)
            return today, today + timedelta(days=ahead)
        return None


def _outcome(value: bool) -> ConditionOutcome:
    return ConditionOutcome.TRUE if value else ConditionOutcome.FALSE


def _bypasses_waiting(operator: str) -> bool:
    return operator in (op.value for op in BYPASS_WAITING_OPERATORS)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if is_array_like(value):
        return len(normalize_array(value)) == 0
    return False


def _collect_waiting(results: List[InternalResult]) -> Optional[InternalResult]:
    """Merge waiting children into a single waiting result, or None if nothing waits."""
    fields: List[str] = []
    waiting = False
    for outcome, waiting_fields in results:
        if outcome is ConditionOutcome.WAITING:
            waiting = True
            for field in waiting_fields:
                if field not in fields:
                    fields.append(field)
    if not waiting:
        return None
    return ConditionOutcome.WAITING, fields


def _ordered(left: Any, right: Any, op: ComparisonOperator) -> bool:
    if op is ComparisonOperator.LESS_THAN:
        return left < right
    if op is ComparisonOperator.GREATER_THAN:
        return left > right
    if op is ComparisonOperator.LESS_OR_EQUAL:
        return left <= right
    return left >= right
