# services/criteria.py

import enum
import logging
from dataclasses import dataclass
from decimal import Decimal
from numbers import Number
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CriteriaType(str, enum.Enum):
    ORDER_COUNT = "ORDER_COUNT"
    MONTHLY_ORDER_VALUE = "MONTHLY_ORDER_VALUE"
    USER_COHORT = "USER_COHORT"


INVALID_VALUE_TYPE = "Invalid value type"
UNSUPPORTED = "UNSUPPORTED"
ERROR = "ERROR"


@dataclass(frozen=True)
class EvaluationContext:
    """Point-in-time metrics for one user. Built fresh for every evaluation."""
    user_id: int
    total_order_count: int = 0
    monthly_order_value: Optional[Decimal] = Decimal("0")
    cohort: Optional[str] = None


@dataclass(frozen=True)
class EvaluationResult:
    passed: bool
    criteria_type: str
    expected_value: Any
    actual_value: Any
    message: str

    @classmethod
    def success(cls, criteria_type, expected_value, actual_value):
        return cls(True, criteria_type, expected_value, actual_value, "Criteria passed")

    @classmethod
    def failure(cls, criteria_type, expected_value, actual_value, details):
        return cls(False, criteria_type, expected_value, actual_value, f"Criteria failed: {details}")

    def to_dict(self):
        def plain(v):
            return str(v) if isinstance(v, Decimal) else v

        return {
            "passed": self.passed,
            "criteria_type": self.criteria_type,
            "expected_value": plain(self.expected_value),
            "actual_value": plain(self.actual_value),
            "message": self.message,
        }


@dataclass(frozen=True)
class CriteriaDefinition:
    criteria_type: str
    value: Any
    # stored and exposed, but evaluation is always AND
    logical_condition: str = "AND"

    @classmethod
    def from_dict(cls, data):
        return cls(
            criteria_type=data["criteria_type"],
            value=data.get("value"),
            logical_condition=data.get("logical_condition", "AND"),
        )

    def to_dict(self):
        return {
            "criteria_type": self.criteria_type,
            "value": self.value,
            "logical_condition": self.logical_condition,
        }


def _is_number(value):
    # bool is a Number subclass, a True threshold is a config mistake
    return isinstance(value, Number) and not isinstance(value, bool)


def _check_order_count(context, threshold):
    if not _is_number(threshold):
        return EvaluationResult.failure(
            CriteriaType.ORDER_COUNT.value, threshold, INVALID_VALUE_TYPE,
            "Criteria value must be a number",
        )

    expected = int(threshold)
    actual = context.total_order_count or 0
    if actual >= expected:
        return EvaluationResult.success(CriteriaType.ORDER_COUNT.value, expected, actual)
    return EvaluationResult.failure(
        CriteriaType.ORDER_COUNT.value, expected, actual,
        f"Required: {expected}, Actual: {actual}",
    )


def _check_monthly_order_value(context, threshold):
    if not _is_number(threshold):
        return EvaluationResult.failure(
            CriteriaType.MONTHLY_ORDER_VALUE.value, threshold, INVALID_VALUE_TYPE,
            "Criteria value must be a number",
        )

    expected = Decimal(str(threshold))
    actual = context.monthly_order_value
    if actual is None:
        actual = Decimal("0")
    actual = Decimal(actual)

    if actual >= expected:
        return EvaluationResult.success(CriteriaType.MONTHLY_ORDER_VALUE.value, expected, actual)
    return EvaluationResult.failure(
        CriteriaType.MONTHLY_ORDER_VALUE.value, expected, actual,
        f"Required: {expected}, Actual: {actual}",
    )


def _check_user_cohort(context, threshold):
    if not isinstance(threshold, str):
        return EvaluationResult.failure(
            CriteriaType.USER_COHORT.value, threshold, INVALID_VALUE_TYPE,
            "Criteria value must be a string",
        )

    actual = context.cohort
    if actual is None:
        return EvaluationResult.failure(
            CriteriaType.USER_COHORT.value, threshold, None, "User cohort is not set",
        )
    if actual == threshold:
        return EvaluationResult.success(CriteriaType.USER_COHORT.value, threshold, actual)
    return EvaluationResult.failure(
        CriteriaType.USER_COHORT.value, threshold, actual,
        f"Expected: {threshold}, Actual: {actual}",
    )


@dataclass(frozen=True)
class CriteriaEvaluator:
    criteria_type: CriteriaType
    check: Callable[[EvaluationContext, Any], EvaluationResult]

    def can_handle(self, criteria_type) -> bool:
        return criteria_type == self.criteria_type.value

    def evaluate(self, context: EvaluationContext, threshold) -> EvaluationResult:
        return self.check(context, threshold)


# type tag -> evaluator. A new criterion is a new CriteriaType member plus an entry here.
EVALUATORS: Dict[str, CriteriaEvaluator] = {
    CriteriaType.ORDER_COUNT.value: CriteriaEvaluator(CriteriaType.ORDER_COUNT, _check_order_count),
    CriteriaType.MONTHLY_ORDER_VALUE.value: CriteriaEvaluator(
        CriteriaType.MONTHLY_ORDER_VALUE, _check_monthly_order_value
    ),
    CriteriaType.USER_COHORT.value: CriteriaEvaluator(CriteriaType.USER_COHORT, _check_user_cohort),
}


def get_evaluator(criteria_type) -> Optional[CriteriaEvaluator]:
    if isinstance(criteria_type, CriteriaType):
        criteria_type = criteria_type.value
    return EVALUATORS.get(criteria_type)


def evaluate_criteria(criteria: CriteriaDefinition, context: EvaluationContext) -> EvaluationResult:
    """
    Evaluate one criterion. Never raises: a missing evaluator or a broken
    threshold comes back as a failed result so one bad rule can't stop a batch.
    """
    evaluator = get_evaluator(criteria.criteria_type)
    if evaluator is None:
        return EvaluationResult.failure(
            str(criteria.criteria_type), criteria.value, UNSUPPORTED,
            f"No evaluator found for criteria type: {criteria.criteria_type} (unsupported criteria)",
        )

    try:
        return evaluator.evaluate(context, criteria.value)
    except Exception as e:
        logger.error(f"[Rules] Error evaluating criteria {criteria.criteria_type}: {e}")
        return EvaluationResult.failure(
            evaluator.criteria_type.value, criteria.value, ERROR, f"Evaluation error: {e}",
        )
