"""
Conflict detection and resolution between duplicate orders.

Given a primary order and one of its suspected duplicates, detect_conflicts
lists every field on which they disagree and grades each disagreement;
resolve_conflicts decides a value per field or flags it for manual review.
Severity thresholds are explicit SeverityRule lists evaluated in order.
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Optional, Union

from marketsync.domain.models import CanonicalOrder, OrderStatus
from marketsync.domain.models.conflict import (
    ComparisonOperator,
    ConditionField,
    ConflictRecord,
    ConflictSeverity,
    ConflictType,
    ResolutionAction,
    ResolutionResult,
    SeverityRule,
    evaluate_severity,
)
from marketsync.utils.text_normalization import digits_only, similarity

logger = logging.getLogger(__name__)

# Estados heredados que algunas plataformas (o versiones viejas de la API) reportan
STATUS_ALIASES = {
    "pending_payment": OrderStatus.PENDING,
    "awaiting_payment": OrderStatus.PENDING,
    "unpaid": OrderStatus.PENDING,
    "paid": OrderStatus.CONFIRMED,
    "ready_to_ship": OrderStatus.PROCESSING,
    "packed": OrderStatus.PROCESSING,
    "in_transit": OrderStatus.SHIPPED,
    "completed": OrderStatus.DELIVERED,
    "canceled": OrderStatus.CANCELLED,
    "returned": OrderStatus.REFUNDED,
}

STATUS_PROGRESSION = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)

# Pares mutuamente excluyentes: nunca se resuelven automáticamente
HIGH_SEVERITY_STATUS_PAIRS = frozenset(
    {
        frozenset({OrderStatus.CANCELLED, OrderStatus.DELIVERED}),
        frozenset({OrderStatus.REFUNDED, OrderStatus.DELIVERED}),
        frozenset({OrderStatus.CANCELLED, OrderStatus.SHIPPED}),
    }
)

AMOUNT_RELATIVE_THRESHOLD = Decimal("0.05")
AMOUNT_ABSOLUTE_FLOOR = Decimal("1")
NAME_SIMILARITY_THRESHOLD = Decimal("0.8")
DATE_CONFLICT_WINDOW = timedelta(hours=24)

AMOUNT_SEVERITY_RULES = [
    SeverityRule(ConditionField.PERCENT_DIFFERENCE, ComparisonOperator.GT, Decimal("20"), ConflictSeverity.HIGH),
    SeverityRule(ConditionField.ABSOLUTE_DIFFERENCE, ComparisonOperator.GT, Decimal("100"), ConflictSeverity.HIGH),
    SeverityRule(ConditionField.PERCENT_DIFFERENCE, ComparisonOperator.GT, Decimal("10"), ConflictSeverity.MEDIUM),
    SeverityRule(ConditionField.ABSOLUTE_DIFFERENCE, ComparisonOperator.GT, Decimal("50"), ConflictSeverity.MEDIUM),
]

NAME_SEVERITY_RULES = [
    SeverityRule(ConditionField.SIMILARITY, ComparisonOperator.LT, NAME_SIMILARITY_THRESHOLD, ConflictSeverity.MEDIUM),
]

CUSTOMER_FIELDS = {
    ConflictType.CUSTOMER_NAME: "customer_name",
    ConflictType.CUSTOMER_EMAIL: "customer_email",
    ConflictType.CUSTOMER_PHONE: "customer_phone",
}


def normalize_status(status: Union[OrderStatus, str, None]) -> Optional[OrderStatus]:
    """
    Convierte un estado (canónico o heredado) a OrderStatus.

    Returns:
        OrderStatus o None si el estado es desconocido
    """
    if status is None:
        return None
    if isinstance(status, OrderStatus):
        return status
    value = str(status).strip().lower()
    if value in STATUS_ALIASES:
        return STATUS_ALIASES[value]
    try:
        return OrderStatus(value)
    except ValueError:
        return None


def is_status_progression(first: OrderStatus, second: OrderStatus) -> bool:
    """True si ambos estados están en la cadena de progreso normal."""
    return first in STATUS_PROGRESSION and second in STATUS_PROGRESSION


class ConflictResolver:
    """Detecta y resuelve discrepancias entre un pedido primario y un duplicado."""

    def detect_conflicts(
        self, primary: CanonicalOrder, secondary: CanonicalOrder
    ) -> Dict[ConflictType, ConflictRecord]:
        """
        Lista los campos en los que dos pedidos discrepan.

        Args:
            primary: Pedido primario del grupo
            secondary: Pedido candidato a duplicado

        Returns:
            Dict: Un ConflictRecord por campo en conflicto
        """
        conflicts: Dict[ConflictType, ConflictRecord] = {}

        status_conflict = self._detect_status_conflict(primary.status, secondary.status)
        if status_conflict:
            conflicts[ConflictType.STATUS] = status_conflict

        if self._amounts_conflict(primary.total_amount, secondary.total_amount):
            conflicts[ConflictType.AMOUNT] = self.assess_amount(primary.total_amount, secondary.total_amount)

        conflicts.update(self._detect_customer_conflicts(primary, secondary))

        gap = abs(primary.order_date - secondary.order_date)
        if gap > DATE_CONFLICT_WINDOW:
            conflicts[ConflictType.DATE] = ConflictRecord(
                conflict_type=ConflictType.DATE,
                primary_value=primary.order_date,
                secondary_value=secondary.order_date,
                severity=ConflictSeverity.LOW,
                metrics={"hours_apart": round(gap.total_seconds() / 3600, 2)},
            )

        if conflicts:
            logger.debug(
                f"Conflicts between {primary.platform_order_id} and {secondary.platform_order_id}: "
                f"{', '.join(c.value for c in conflicts)}"
            )
        return conflicts

    def assess_amount(self, primary_amount: Decimal, secondary_amount: Decimal) -> ConflictRecord:
        """
        Califica la diferencia entre dos importes, esté o no sobre el umbral.

        Args:
            primary_amount: Importe del pedido primario
            secondary_amount: Importe del duplicado

        Returns:
            ConflictRecord: Registro con severidad y métricas de la diferencia
        """
        primary_amount = Decimal(str(primary_amount))
        secondary_amount = Decimal(str(secondary_amount))
        difference = abs(primary_amount - secondary_amount)
        largest = max(primary_amount, secondary_amount)
        percent = (difference / largest * 100) if largest > 0 else Decimal("0")

        metrics = {
            ConditionField.ABSOLUTE_DIFFERENCE: difference,
            ConditionField.PERCENT_DIFFERENCE: percent,
        }
        return ConflictRecord(
            conflict_type=ConflictType.AMOUNT,
            primary_value=primary_amount,
            secondary_value=secondary_amount,
            severity=evaluate_severity(AMOUNT_SEVERITY_RULES, metrics),
            metrics={k.value: v.quantize(Decimal("0.01")) for k, v in metrics.items()},
        )

    def resolve_conflicts(
        self,
        primary: CanonicalOrder,
        secondary: CanonicalOrder,
        conflicts: Dict[ConflictType, ConflictRecord],
    ) -> ResolutionResult:
        """
        Decide un valor por conflicto o lo marca para revisión manual.

        Returns:
            ResolutionResult: success es False si algún campo requiere revisión manual
        """
        for conflict_type, record in conflicts.items():
            if record.severity == ConflictSeverity.HIGH and conflict_type != ConflictType.DATE:
                self._require_manual_review(record)
            elif conflict_type == ConflictType.STATUS:
                self._resolve_status(record)
            elif conflict_type == ConflictType.AMOUNT:
                self._resolve(
                    record,
                    ResolutionAction.USE_HIGHER_AMOUNT,
                    max(record.primary_value, record.secondary_value),
                    "Higher amount kept, assumed to include fees",
                )
            elif conflict_type == ConflictType.DATE:
                self._resolve(
                    record,
                    ResolutionAction.USE_EARLIER_DATE,
                    min(record.primary_value, record.secondary_value),
                    "Earlier date kept as the original order time",
                )
            else:
                self._resolve(
                    record,
                    ResolutionAction.USE_PRIMARY_OR_FALLBACK,
                    record.primary_value or record.secondary_value,
                    "Primary value kept, secondary used as fallback",
                )

        result = ResolutionResult(
            success=all(not r.requires_manual_review for r in conflicts.values()),
            resolutions=dict(conflicts),
        )
        if not result.success:
            logger.warning(
                f"Manual review required for {secondary.platform_type.value}:{secondary.platform_order_id} "
                f"against {primary.platform_type.value}:{primary.platform_order_id} "
                f"({', '.join(r.conflict_type.value for r in result.manual_review)})"
            )
        return result

    def apply_resolutions(self, order: CanonicalOrder, result: ResolutionResult) -> CanonicalOrder:
        """
        Escribe los valores resueltos sobre el pedido (normalmente el primario).

        Los conflictos pendientes de revisión manual no modifican el pedido.
        """
        for conflict_type, record in result.resolutions.items():
            if not record.resolved:
                continue
            if conflict_type == ConflictType.STATUS:
                order.status = record.resolved_value
            elif conflict_type == ConflictType.AMOUNT:
                order.total_amount = record.resolved_value
            elif conflict_type == ConflictType.DATE:
                order.order_date = record.resolved_value
            else:
                setattr(order, CUSTOMER_FIELDS[conflict_type], record.resolved_value)
        return order

    # === DETECCIÓN ===

    def _detect_status_conflict(
        self, primary_status: Union[OrderStatus, str], secondary_status: Union[OrderStatus, str]
    ) -> Optional[ConflictRecord]:
        primary = normalize_status(primary_status)
        secondary = normalize_status(secondary_status)
        if primary is None or secondary is None or primary == secondary:
            return None
        if is_status_progression(primary, secondary):
            return None

        severity = (
            ConflictSeverity.HIGH
            if frozenset({primary, secondary}) in HIGH_SEVERITY_STATUS_PAIRS
            else ConflictSeverity.MEDIUM
        )
        return ConflictRecord(
            conflict_type=ConflictType.STATUS,
            primary_value=primary,
            secondary_value=secondary,
            severity=severity,
        )

    def _amounts_conflict(self, primary_amount: Decimal, secondary_amount: Decimal) -> bool:
        difference = abs(primary_amount - secondary_amount)
        largest = max(primary_amount, secondary_amount)
        return difference > largest * AMOUNT_RELATIVE_THRESHOLD and difference > AMOUNT_ABSOLUTE_FLOOR

    def _detect_customer_conflicts(
        self, primary: CanonicalOrder, secondary: CanonicalOrder
    ) -> Dict[ConflictType, ConflictRecord]:
        conflicts: Dict[ConflictType, ConflictRecord] = {}

        if primary.customer_name and secondary.customer_name:
            score = Decimal(str(round(similarity(primary.customer_name, secondary.customer_name), 4)))
            metrics = {ConditionField.SIMILARITY: score}
            severity = evaluate_severity(NAME_SEVERITY_RULES, metrics, default=None)
            if severity is not None:
                conflicts[ConflictType.CUSTOMER_NAME] = ConflictRecord(
                    conflict_type=ConflictType.CUSTOMER_NAME,
                    primary_value=primary.customer_name,
                    secondary_value=secondary.customer_name,
                    severity=severity,
                    metrics={ConditionField.SIMILARITY.value: score},
                )

        if primary.customer_email and secondary.customer_email:
            if primary.customer_email.strip().lower() != secondary.customer_email.strip().lower():
                conflicts[ConflictType.CUSTOMER_EMAIL] = ConflictRecord(
                    conflict_type=ConflictType.CUSTOMER_EMAIL,
                    primary_value=primary.customer_email,
                    secondary_value=secondary.customer_email,
                    severity=ConflictSeverity.HIGH,
                )

        if primary.customer_phone and secondary.customer_phone:
            if digits_only(primary.customer_phone) != digits_only(secondary.customer_phone):
                conflicts[ConflictType.CUSTOMER_PHONE] = ConflictRecord(
                    conflict_type=ConflictType.CUSTOMER_PHONE,
                    primary_value=primary.customer_phone,
                    secondary_value=secondary.customer_phone,
                    severity=ConflictSeverity.MEDIUM,
                )

        return conflicts

    # === RESOLUCIÓN ===

    def _resolve_status(self, record: ConflictRecord) -> None:
        primary, secondary = record.primary_value, record.secondary_value
        winner = primary if primary.rank >= secondary.rank else secondary
        self._resolve(record, ResolutionAction.USE_ADVANCED_STATUS, winner, "More advanced lifecycle status kept")

    @staticmethod
    def _resolve(record: ConflictRecord, action: ResolutionAction, value, reason: str) -> None:
        record.action = action
        record.resolved_value = value
        record.resolved = True
        record.reason = reason

    @staticmethod
    def _require_manual_review(record: ConflictRecord) -> None:
        record.action = ResolutionAction.MANUAL_REVIEW
        record.resolved_value = None
        record.resolved = False
        record.reason = f"High severity {record.conflict_type.value} conflict"
