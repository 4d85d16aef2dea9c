"""Pydantic models for condition node configuration and evaluation.

Condition configs are authored by the workflow editor in camelCase; every model
accepts both the camelCase aliases and the snake_case field names.
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


class ComparisonOperator(str, Enum):
    """Operators understood by the condition evaluator."""
    EQUALS = "=="
    NOT_EQUALS = "!="
    LESS_THAN = "<"
    GREATER_THAN = ">"
    LESS_OR_EQUAL = "<="
    GREATER_OR_EQUAL = ">="
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    AFTER = "after"
    BEFORE = "before"
    ON_OR_AFTER = "on_or_after"
    ON_OR_BEFORE = "on_or_before"
    BETWEEN = "between"
    IS_TODAY = "is_today"
    IS_YESTERDAY = "is_yesterday"
    IS_TOMORROW = "is_tomorrow"
    IS_THIS_WEEK = "is_this_week"
    IS_LAST_WEEK = "is_last_week"
    IS_NEXT_WEEK = "is_next_week"
    IS_THIS_MONTH = "is_this_month"
    IS_LAST_MONTH = "is_last_month"
    IS_NEXT_MONTH = "is_next_month"
    IS_THIS_YEAR = "is_this_year"
    IS_LAST_YEAR = "is_last_year"
    IS_NEXT_YEAR = "is_next_year"
    LAST_N_DAYS = "last_n_days"
    NEXT_N_DAYS = "next_n_days"


class LogicalOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ConditionOutcome(str, Enum):
    """Tri-state result of a boolean condition."""
    TRUE = "true"
    FALSE = "false"
    WAITING = "waiting"


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FieldPath(CamelModel):
    """Reference into one of the evaluation namespaces."""
    type: Literal["form", "user", "system", "static"] = Field(..., description="Namespace")
    path: str = Field(..., description="Dot separated path; the literal value for static paths")


class StaticOperand(CamelModel):
    """Literal right-hand operand."""
    type: Literal["static"] = "static"
    value: Any = Field(..., description="Literal value")


class SimpleCondition(CamelModel):
    id: Optional[str] = None
    left_operand: FieldPath = Field(..., alias="leftOperand")
    operator: str = Field(..., description="Comparison operator")
    right_operand: Union[StaticOperand, FieldPath] = Field(
        default_factory=lambda: StaticOperand(value=None), alias="rightOperand"
    )

    @field_validator('right_operand', mode='before')
    @classmethod
    def coerce_right_operand(cls, value):
        """A dict carrying ``value`` is a literal, other dicts are field paths, scalars are literals."""
        if isinstance(value, BaseModel):
            return value
        if isinstance(value, dict):
            if 'value' in value:
                return StaticOperand(value=value['value'])
            return FieldPath.model_validate(value)
        return StaticOperand(value=value)


class FormLevelCondition(CamelModel):
    id: Optional[str] = None
    condition_type: str = Field(..., alias="conditionType")
    form_id: Optional[str] = Field(None, alias="formId")
    operator: str
    value: Any = None


class FieldLevelCondition(CamelModel):
    id: Optional[str] = None
    form_id: Optional[str] = Field(None, alias="formId")
    field_id: str = Field(..., alias="fieldId")
    field_type: Optional[str] = Field(None, alias="fieldType")
    operator: str
    value: Any = None


class ConditionItem(CamelModel):
    """One entry of an enhanced condition list."""
    id: Optional[str] = None
    system_type: Literal["form_level", "field_level"] = Field(..., alias="systemType")
    form_level_condition: Optional[FormLevelCondition] = Field(None, alias="formLevelCondition")
    field_level_condition: Optional[FieldLevelCondition] = Field(None, alias="fieldLevelCondition")
    logical_operator_with_next: Optional[LogicalOperator] = Field(None, alias="logicalOperatorWithNext")


class EnhancedCondition(CamelModel):
    id: Optional[str] = None
    system_type: Literal["form_level", "field_level"] = Field(..., alias="systemType")
    form_level_condition: Optional[FormLevelCondition] = Field(None, alias="formLevelCondition")
    field_level_condition: Optional[FieldLevelCondition] = Field(None, alias="fieldLevelCondition")
    logical_operator: Optional[LogicalOperator] = Field(None, alias="logicalOperator")
    conditions: List[ConditionItem] = Field(default_factory=list)
    use_manual_expression: bool = Field(default=False, alias="useManualExpression")
    manual_expression: Optional[str] = Field(None, alias="manualExpression")


class LogicalGroup(CamelModel):
    id: Optional[str] = None
    operator: LogicalOperator
    conditions: List[Union[SimpleCondition, "LogicalGroup", EnhancedCondition]] = Field(default_factory=list)

    @field_validator('conditions', mode='before')
    @classmethod
    def coerce_conditions(cls, value):
        if not isinstance(value, list):
            raise ValueError("Logical group conditions must be a list")
        return [parse_condition_expression(item) for item in value]


LogicalGroup.model_rebuild()

ConditionExpression = Union[SimpleCondition, LogicalGroup, EnhancedCondition]


def parse_condition_expression(data: Any) -> ConditionExpression:
    """
    Build the right expression model from raw editor data.

    Raises:
        ValueError: If the shape matches no known expression
    """
    if isinstance(data, (SimpleCondition, LogicalGroup, EnhancedCondition)):
        return data
    if not isinstance(data, dict):
        raise ValueError(f"Condition expression must be an object, got {type(data).__name__}")
    if 'systemType' in data or 'system_type' in data:
        return EnhancedCondition.model_validate(data)
    if 'leftOperand' in data or 'left_operand' in data:
        return SimpleCondition.model_validate(data)
    if 'conditions' in data and 'operator' in data:
        return LogicalGroup.model_validate(data)
    raise ValueError("Unrecognized condition expression")


class IfConditionConfig(CamelModel):
    type: Literal["if"] = "if"
    condition: ConditionExpression
    true_path: Optional[str] = Field(None, alias="truePath")
    false_path: Optional[str] = Field(None, alias="falsePath")

    @field_validator('condition', mode='before')
    @classmethod
    def coerce_condition(cls, value):
        return parse_condition_expression(value)


class SwitchCase(CamelModel):
    value: Any = None
    path: str


class SwitchConditionConfig(CamelModel):
    type: Literal["switch"] = "switch"
    field: FieldPath
    cases: List[SwitchCase] = Field(default_factory=list)
    default_path: Optional[str] = Field(None, alias="defaultPath")


ConditionConfig = Annotated[
    Union[IfConditionConfig, SwitchConditionConfig],
    Field(discriminator="type"),
]

_condition_config_adapter = TypeAdapter(ConditionConfig)


def parse_condition_config(data: Any) -> Union[IfConditionConfig, SwitchConditionConfig]:
    """Validate raw config data into an If or Switch config."""
    if isinstance(data, (IfConditionConfig, SwitchConditionConfig)):
        return data
    return _condition_config_adapter.validate_python(data)


class ConditionEvaluationContext(CamelModel):
    """Read-only namespaces a condition is evaluated against."""
    form_data: Dict[str, Any] = Field(default_factory=dict, alias="formData")
    user_properties: Dict[str, Any] = Field(default_factory=dict, alias="userProperties")
    system_data: Dict[str, Any] = Field(default_factory=dict, alias="systemData")


class ConditionEvaluationResult(CamelModel):
    success: bool
    result: Union[bool, str] = False
    outcome: Optional[ConditionOutcome] = None
    error: Optional[str] = None
    evaluated_conditions: Dict[str, Any] = Field(default_factory=dict, alias="evaluatedConditions")
    waiting_for_value: bool = Field(default=False, alias="waitingForValue")
    waiting_fields: List[str] = Field(default_factory=list, alias="waitingFields")
