"""Installment grouper - clusters unmatched installment records into payment plans"""

import logging
import uuid
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from recon_gateway.config import settings
from recon_gateway.domain.installments import expected_installment_amounts, tolerance_for
from recon_gateway.domain.models import ExternalRecord, GroupStatus, InstallmentGroup, RecordKind

logger = logging.getLogger(__name__)


def order_members(records: Iterable[ExternalRecord]) -> List[ExternalRecord]:
    """By installment_index ascending; records without one follow, by due date"""
    return sorted(
        records,
        key=lambda r: (
            r.installment_index is None,
            r.installment_index or 0,
            r.reference_date,
            r.external_id,
        ),
    )


def is_groupable(record: ExternalRecord) -> bool:
    return record.kind == RecordKind.INSTALLMENT and bool(record.plan_id)


class InstallmentGrouper:
    def __init__(self, tolerance_pct: Decimal | None = None, min_unit: Decimal | None = None):
        self.tolerance_pct = settings.group_tolerance_pct if tolerance_pct is None else tolerance_pct
        self.min_unit = settings.min_currency_unit if min_unit is None else min_unit

    def clusters(self, records: Iterable[ExternalRecord]) -> Dict[str, List[ExternalRecord]]:
        """Groupable records by plan_id, singletons included"""
        by_plan: Dict[str, List[ExternalRecord]] = defaultdict(list)
        for record in records:
            if is_groupable(record):
                by_plan[record.plan_id].append(record)
        return {plan_id: order_members(members) for plan_id, members in sorted(by_plan.items())}

    def group(
        self,
        records: Iterable[ExternalRecord],
        plan_totals: Optional[Mapping[str, Decimal]] = None,
    ) -> List[InstallmentGroup]:
        """
        Form groups from unmatched records.

        Only clusters of two or more records sharing a plan_id become groups.
        plan_totals overrides the plan total carried on the records.
        """
        plan_totals = plan_totals or {}
        groups = []
        for plan_id, members in self.clusters(records).items():
            if len(members) < 2:
                continue
            groups.append(self.build(plan_id, members, plan_totals.get(plan_id)))
        return groups

    def build(
        self,
        plan_id: str,
        members: List[ExternalRecord],
        plan_total: Optional[Decimal] = None,
        group_id: Optional[str] = None,
    ) -> InstallmentGroup:
        ordered = order_members(members)
        status, issues = self.assess(ordered, plan_total)
        group = InstallmentGroup(
            group_id=group_id or str(uuid.uuid4()),
            plan_id=plan_id,
            members=ordered,
            total_amount=sum((m.amount for m in ordered), Decimal("0")),
            status=status,
            issues=issues,
        )
        if status == GroupStatus.INCONSISTENT:
            logger.warning(
                "Inconsistent installment group",
                extra={"plan_id": plan_id, "group_id": group.group_id, "issues": issues},
            )
        return group

    def extend(
        self,
        existing: InstallmentGroup,
        new_members: List[ExternalRecord],
        plan_total: Optional[Decimal] = None,
    ) -> InstallmentGroup:
        """Add members to a stored group and re-evaluate its status"""
        return self.build(
            existing.plan_id,
            list(existing.members) + list(new_members),
            plan_total,
            group_id=existing.group_id,
        )

    def assess(
        self,
        members: List[ExternalRecord],
        plan_total: Optional[Decimal] = None,
    ) -> Tuple[GroupStatus, List[str]]:
        """
        Decide a cluster's status.

        INCONSISTENT problems never resolve by waiting for more records:
        a repeated installment_index, more members than declared, disagreeing
        declared counts, installments off the expected split, or a full
        cluster whose total misses the plan total.
        """
        issues: List[str] = []
        total = sum((m.amount for m in members), Decimal("0"))

        indexes = [m.installment_index for m in members if m.installment_index is not None]
        duplicates = sorted({i for i in indexes if indexes.count(i) > 1})
        if duplicates:
            issues.append(f"duplicate installment_index {duplicates}")

        declared = sorted({m.installment_count for m in members if m.installment_count})
        if len(declared) > 1:
            issues.append(f"conflicting installment_count {declared}")
        count = declared[0] if len(declared) == 1 else None

        if count is not None and len(members) > count:
            issues.append(f"{len(members)} members exceed installment_count {count}")

        if plan_total is None:
            plan_total = next((m.plan_total for m in members if m.plan_total is not None), None)

        if plan_total is not None and count is not None and not issues:
            expected = expected_installment_amounts(plan_total, count)
            for m in members:
                if m.installment_index is None or m.installment_index > len(expected):
                    continue
                want = expected[m.installment_index - 1]
                if abs(m.amount - want) > tolerance_for(want, self.tolerance_pct, self.min_unit):
                    issues.append(
                        f"installment {m.installment_index} amount {m.amount} differs from expected {want}"
                    )

            if len(members) == count:
                if abs(total - plan_total) > tolerance_for(plan_total, self.tolerance_pct, self.min_unit):
                    issues.append(f"total {total} differs from plan total {plan_total}")

        if plan_total is not None and count is None and not issues:
            # Without a declared count the plan total alone decides completeness
            tolerance = tolerance_for(plan_total, self.tolerance_pct, self.min_unit)
            if total - plan_total > tolerance:
                issues.append(f"total {total} exceeds plan total {plan_total}")
            elif abs(total - plan_total) <= tolerance:
                return GroupStatus.COMPLETE, issues

        if issues:
            return GroupStatus.INCONSISTENT, issues
        if count is not None and len(members) == count:
            return GroupStatus.COMPLETE, issues
        return GroupStatus.OPEN, issues
