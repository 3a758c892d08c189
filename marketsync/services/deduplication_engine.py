"""
Duplicate detection across and within platforms.

Candidate groups come from three keying strategies (email, phone,
name + address) merged with union-find: a pair matched by any strategy
belongs to the same group. Marking a duplicate only changes sync_status
and appends a back-reference note; no order is ever deleted.
"""

import copy
import hashlib
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from marketsync.core.config import Settings, get_settings
from marketsync.domain.models import CanonicalOrder, ResolutionResult, SyncStatus
from marketsync.services.conflict_resolver import ConflictResolver
from marketsync.utils.error_handler import log_error
from marketsync.utils.text_normalization import normalize_address, normalize_name, normalize_phone

logger = logging.getLogger(__name__)

CHAIN_WINDOW = timedelta(minutes=60)
DUPLICATE_NOTE = "Duplicate of order: {order_id} ({platform})"


@dataclass
class DeduplicationReport:
    """Counters of one detect_and_resolve run."""

    total_orders: int = 0
    candidates: int = 0
    duplicate_groups_found: int = 0
    resolved: int = 0
    conflicts_detected: int = 0
    duplicates_marked: int = 0
    pending_review: int = 0
    cross_platform_groups: int = 0
    same_platform_groups: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_orders": self.total_orders,
            "candidates": self.candidates,
            "duplicate_groups_found": self.duplicate_groups_found,
            "resolved": self.resolved,
            "conflicts_detected": self.conflicts_detected,
            "duplicates_marked": self.duplicates_marked,
            "pending_review": self.pending_review,
            "cross_platform_groups": self.cross_platform_groups,
            "same_platform_groups": self.same_platform_groups,
            "errors": list(self.errors),
        }


class _DisjointSet:
    """Union-find over order indices."""

    def __init__(self, size: int):
        self.parent = list(range(size))

    def find(self, item: int) -> int:
        while self.parent[item] != item:
            self.parent[item] = self.parent[self.parent[item]]
            item = self.parent[item]
        return item

    def union(self, first: int, second: int) -> None:
        root_first, root_second = self.find(first), self.find(second)
        if root_first != root_second:
            self.parent[max(root_first, root_second)] = min(root_first, root_second)


def group_id(group: Iterable[CanonicalOrder]) -> str:
    """Identificador estable de un grupo (md5 de las claves ordenadas)."""
    keys = sorted(f"{o.platform_type.value}:{o.platform_order_id}" for o in group)
    return hashlib.md5("|".join(keys).encode("utf-8")).hexdigest()


class DeduplicationEngine:
    """
    Detecta grupos de pedidos duplicados y los resuelve.

    Args:
        conflict_resolver: Resolver de conflictos entre primario y duplicados
        settings: Configuración (DEDUP_AUDIT_SAME_PLATFORM)
        clock: Reloj para registrar la última ejecución
    """

    def __init__(
        self,
        conflict_resolver: Optional[ConflictResolver] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.conflict_resolver = conflict_resolver or ConflictResolver()
        self.settings = settings or get_settings()
        self.clock = clock
        self.last_run: Optional[datetime] = None

    def detect_and_resolve(self, orders: List[CanonicalOrder]) -> DeduplicationReport:
        """
        Agrupa duplicados y marca los pedidos perdedores.

        Los pedidos se modifican en el lugar (sync_status y notes).

        Args:
            orders: Pedidos canónicos a analizar

        Returns:
            DeduplicationReport: Contadores de la ejecución
        """
        report = DeduplicationReport(total_orders=len(orders))
        candidates = [o for o in orders if o.is_dedup_candidate]
        report.candidates = len(candidates)
        logger.info(f"🔄 Starting duplicate detection over {len(candidates)} of {len(orders)} orders")

        for group in self.find_candidate_groups(candidates):
            report.duplicate_groups_found += 1
            try:
                if len({o.platform_type for o in group}) > 1:
                    report.cross_platform_groups += 1
                    resolved, had_conflicts = self._resolve_cross_platform(group, report)
                else:
                    report.same_platform_groups += 1
                    resolved, had_conflicts = self._resolve_same_platform(group, report)
            except Exception as e:
                report.errors.append({"group_id": group_id(group), "error": str(e)})
                log_error(e, {"operation": "dedup", "orders": [o.platform_order_id for o in group]})
                continue

            if resolved:
                report.resolved += 1
            if had_conflicts:
                report.conflicts_detected += 1

        self.last_run = self.clock()
        logger.info(
            f"✅ Duplicate detection completed: {report.duplicate_groups_found} groups, "
            f"{report.resolved} resolved, {report.conflicts_detected} with conflicts, "
            f"{len(report.errors)} errors"
        )
        return report

    def find_candidate_groups(self, orders: List[CanonicalOrder]) -> List[List[CanonicalOrder]]:
        """
        Agrupa pedidos candidatos a duplicado.

        Returns:
            List: Grupos con más de un pedido, en orden de aparición
        """
        orders = [o for o in orders if o.is_dedup_candidate]
        disjoint = _DisjointSet(len(orders))

        email_buckets: Dict[tuple, List[int]] = defaultdict(list)
        phone_buckets: Dict[tuple, List[int]] = defaultdict(list)
        address_buckets: Dict[tuple, List[int]] = defaultdict(list)

        for index, order in enumerate(orders):
            email = (order.customer_email or "").strip().lower()
            if email:
                email_buckets[(email, order.total_amount)].append(index)

            phone = normalize_phone(order.customer_phone)
            if phone:
                phone_buckets[(phone, order.total_amount)].append(index)

            name = normalize_name(order.customer_name)
            address = normalize_address(order.shipping_address)
            if name and address:
                address_buckets[(name, address, order.total_amount)].append(index)

        for bucket in list(email_buckets.values()) + list(phone_buckets.values()):
            self._chain_by_time(orders, bucket, disjoint)
        for bucket in address_buckets.values():
            for index in bucket[1:]:
                disjoint.union(bucket[0], index)

        grouped: Dict[int, List[CanonicalOrder]] = defaultdict(list)
        for index, order in enumerate(orders):
            grouped[disjoint.find(index)].append(order)
        return [group for group in grouped.values() if len(group) > 1]

    def get_statistics(self, orders: List[CanonicalOrder]) -> Dict[str, Any]:
        """Resumen del estado de deduplicación de un conjunto de pedidos."""
        total = len(orders)
        duplicates = [o for o in orders if o.sync_status == SyncStatus.DUPLICATE]
        by_platform: Dict[str, int] = defaultdict(int)
        for order in duplicates:
            by_platform[order.platform_type.value] += 1

        return {
            "total_orders": total,
            "duplicate_orders": len(duplicates),
            "pending_review_orders": sum(1 for o in orders if o.sync_status == SyncStatus.PENDING_REVIEW),
            "duplicate_percentage": round(len(duplicates) / total * 100, 2) if total else 0,
            "duplicates_by_platform": dict(by_platform),
            "last_deduplication_run": self.last_run.isoformat() if self.last_run else None,
        }

    # === AGRUPACIÓN ===

    @staticmethod
    def _chain_by_time(orders: List[CanonicalOrder], bucket: List[int], disjoint: _DisjointSet) -> None:
        # Windows are anchored at their first order; a later order starts a new window
        ordered = sorted(bucket, key=lambda i: orders[i].order_date)
        anchor = ordered[0]
        for current in ordered[1:]:
            if orders[current].order_date - orders[anchor].order_date <= CHAIN_WINDOW:
                disjoint.union(anchor, current)
            else:
                anchor = current

    # === RESOLUCIÓN ===

    def _resolve_cross_platform(self, group: List[CanonicalOrder], report: DeduplicationReport) -> tuple[bool, bool]:
        primary = self.select_primary(group)
        # Every secondary is compared with the primary as it was fetched
        snapshot = copy.copy(primary)
        resolved_all = True
        had_conflicts = False
        accepted: List[ResolutionResult] = []

        for secondary in sorted(group, key=lambda o: (o.platform_type.value, o.platform_order_id)):
            if secondary is primary:
                continue
            conflicts = self.conflict_resolver.detect_conflicts(snapshot, secondary)
            if conflicts:
                had_conflicts = True
            result = self.conflict_resolver.resolve_conflicts(snapshot, secondary, conflicts)

            if result.success:
                accepted.append(result)
                self._mark(secondary, primary, SyncStatus.DUPLICATE)
                report.duplicates_marked += 1
            else:
                resolved_all = False
                self._mark(secondary, primary, SyncStatus.PENDING_REVIEW)
                report.pending_review += 1

        for result in accepted:
            self.conflict_resolver.apply_resolutions(primary, result)
        return resolved_all, had_conflicts

    def _resolve_same_platform(self, group: List[CanonicalOrder], report: DeduplicationReport) -> tuple[bool, bool]:
        primary = max(group, key=lambda o: o.order_date)
        for duplicate in group:
            if duplicate is primary:
                continue
            if self.settings.DEDUP_AUDIT_SAME_PLATFORM:
                self._audit_same_platform(primary, duplicate)
            self._mark(duplicate, primary, SyncStatus.DUPLICATE)
            report.duplicates_marked += 1
        return True, False

    @staticmethod
    def select_primary(group: List[CanonicalOrder]) -> CanonicalOrder:
        """Mayor prioridad de plataforma; a igualdad, el pedido más antiguo."""
        return min(group, key=lambda o: (-o.platform_type.priority, o.order_date, o.platform_order_id))

    def _audit_same_platform(self, primary: CanonicalOrder, duplicate: CanonicalOrder) -> None:
        conflicts = self.conflict_resolver.detect_conflicts(primary, duplicate)
        if conflicts:
            logger.warning(
                f"Same-platform duplicate {duplicate.platform_type.value}:{duplicate.platform_order_id} "
                f"disagrees with {primary.platform_order_id} on {', '.join(c.value for c in conflicts)}"
            )

    @staticmethod
    def _mark(order: CanonicalOrder, primary: CanonicalOrder, status: SyncStatus) -> None:
        order.sync_status = status
        order.append_note(DUPLICATE_NOTE.format(order_id=primary.platform_order_id, platform=primary.platform_type.value))
        logger.debug(
            f"Marked {order.platform_type.value}:{order.platform_order_id} as {status.value} "
            f"of {primary.platform_type.value}:{primary.platform_order_id}"
        )
