"""
Conflict models for duplicate reconciliation.

A ConflictRecord describes one field on which two candidate duplicates
disagree. Records are ephemeral: produced during a sync cycle, logged for
audit, never persisted long-term.
"""

import operator
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class ConflictType(str, Enum):
    """Campos en los que dos duplicados pueden discrepar."""

    STATUS = "status"
    AMOUNT = "amount"
    CUSTOMER_NAME = "customer.name"
    CUSTOMER_EMAIL = "customer.email"
    CUSTOMER_PHONE = "customer.phone"
    DATE = "date"


class ConflictSeverity(str, Enum):
    """Qué tan automáticamente puede resolverse una discrepancia."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ResolutionAction(str, Enum):
    """Acción tomada al resolver un conflicto."""

    USE_ADVANCED_STATUS = "use_advanced_status"
    USE_HIGHER_AMOUNT = "use_higher_amount"
    USE_PRIMARY_OR_FALLBACK = "use_primary_or_fallback"
    USE_EARLIER_DATE = "use_earlier_date"
    MANUAL_REVIEW = "manual_review"


class ConditionField(str, Enum):
    """Métrica que evalúa una regla de severidad."""

    PERCENT_DIFFERENCE = "percent_difference"
    ABSOLUTE_DIFFERENCE = "absolute_difference"
    SIMILARITY = "similarity"


class ComparisonOperator(str, Enum):
    """Operadores permitidos en reglas de severidad."""

    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EQ = "eq"

    def compare(self, left: Decimal, right: Decimal) -> bool:
        return _OPERATOR_FUNCTIONS[self](left, right)


_OPERATOR_FUNCTIONS = {
    ComparisonOperator.GT: operator.gt,
    ComparisonOperator.GTE: operator.ge,
    ComparisonOperator.LT: operator.lt,
    ComparisonOperator.LTE: operator.le,
    ComparisonOperator.EQ: operator.eq,
}


@dataclass(frozen=True)
class SeverityRule:
    """
    Condición explícita: si `field operator value`, la severidad es `severity`.

    Las reglas se evalúan en orden; gana la primera que coincide.
    """

    field: ConditionField
    operator: ComparisonOperator
    value: Decimal
    severity: ConflictSeverity

    def matches(self, metrics: dict[ConditionField, Decimal]) -> bool:
        metric = metrics.get(self.field)
        if metric is None:
            return False
        return self.operator.compare(Decimal(metric), Decimal(self.value))


def evaluate_severity(
    rules: list[SeverityRule],
    metrics: dict[ConditionField, Decimal],
    default: ConflictSeverity = ConflictSeverity.LOW,
) -> ConflictSeverity:
    """Severidad de la primera regla que coincide, o `default`."""
    for rule in rules:
        if rule.matches(metrics):
            return rule.severity
    return default


@dataclass
class ConflictRecord:
    """
    One field-level disagreement between a primary and a secondary order.

    Attributes:
        conflict_type: Field in conflict
        primary_value: Value on the primary order
        secondary_value: Value on the secondary order
        severity: Computed severity
        metrics: Measurements used to grade severity (difference, similarity...)
        resolved_value: Value chosen by the resolver (after resolution)
        action: Resolution action taken (after resolution)
        resolved: Whether the conflict was resolved automatically
        reason: Human readable explanation of the resolution
    """

    conflict_type: ConflictType
    primary_value: Any
    secondary_value: Any
    severity: ConflictSeverity
    metrics: dict[str, Any] = field(default_factory=dict)
    resolved_value: Any = None
    action: ResolutionAction | None = None
    resolved: bool = False
    reason: str = ""

    @property
    def requires_manual_review(self) -> bool:
        return self.action == ResolutionAction.MANUAL_REVIEW

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.conflict_type.value,
            "primary_value": _serialize(self.primary_value),
            "secondary_value": _serialize(self.secondary_value),
            "severity": self.severity.value,
            "metrics": {k: _serialize(v) for k, v in self.metrics.items()},
            "resolved_value": _serialize(self.resolved_value),
            "action": self.action.value if self.action else None,
            "resolved": self.resolved,
            "reason": self.reason,
        }


@dataclass
class ResolutionResult:
    """Outcome of resolving every conflict between one pair of orders."""

    success: bool
    resolutions: dict[ConflictType, ConflictRecord] = field(default_factory=dict)

    @property
    def manual_review(self) -> list[ConflictRecord]:
        return [r for r in self.resolutions.values() if r.requires_manual_review]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "resolutions": {t.value: r.to_dict() for t, r in self.resolutions.items()},
        }


def _serialize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value
