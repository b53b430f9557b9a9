"""Domain models - pure Python dataclasses representing reconciliation entities"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple


class RecordKind(str, Enum):
    SALE = "SALE"
    PAYMENT = "PAYMENT"
    INSTALLMENT = "INSTALLMENT"


class Direction(str, Enum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class GroupStatus(str, Enum):
    OPEN = "OPEN"
    COMPLETE = "COMPLETE"
    INCONSISTENT = "INCONSISTENT"
    ABANDONED = "ABANDONED"


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class RunStage(str, Enum):
    FETCHING = "FETCHING"
    NORMALIZING = "NORMALIZING"
    DEDUPING = "DEDUPING"
    MATCHING = "MATCHING"
    PERSISTING = "PERSISTING"
    FINALIZING = "FINALIZING"


@dataclass(frozen=True)
class ExternalRecord:
    """Canonical record from the external bookkeeping source"""

    external_id: str
    kind: RecordKind
    amount: Decimal
    occurred_date: date
    due_date: Optional[date] = None
    counterparty_name: Optional[str] = None
    description: Optional[str] = None
    plan_id: Optional[str] = None
    installment_index: Optional[int] = None
    installment_count: Optional[int] = None
    plan_total: Optional[Decimal] = None
    direction: Direction = Direction.INCOME
    payment_method: Optional[str] = None
    raw_shape_hints: Tuple[str, ...] = ()

    @property
    def reference_date(self) -> date:
        """Date used for matching windows: due date when known, else occurrence"""
        return self.due_date or self.occurred_date

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.direction == Direction.INCOME else -self.amount


@dataclass
class LedgerTransaction:
    """Persisted financial movement in the internal ledger"""

    id: str
    wallet_id: str
    amount: Decimal  # signed: positive = income, negative = expense
    date: date
    description: str = ""
    external_ref: Optional[str] = None
    group_id: Optional[str] = None


@dataclass(frozen=True)
class FeatureBreakdown:
    """Normalized feature similarities contributing to a match score"""

    amount: float
    date: float
    text: float
    days_apart: int
    amount_delta: Decimal

    def as_dict(self) -> dict:
        return {"amount": self.amount, "date": self.date, "text": self.text}


@dataclass(frozen=True)
class MatchCandidate:
    """Scored pairing of an external record with a ledger transaction (never persisted)"""

    record: ExternalRecord
    transaction: LedgerTransaction
    score: float
    breakdown: FeatureBreakdown


@dataclass
class InstallmentGroup:
    """Set of installment records belonging to the same payment plan"""

    group_id: str
    plan_id: str
    members: List[ExternalRecord]
    total_amount: Decimal
    status: GroupStatus
    issues: List[str] = field(default_factory=list)


@dataclass
class RunCounts:
    fetched: int = 0
    imported: int = 0
    skipped_duplicate: int = 0
    matched: int = 0
    grouped: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return {
            "fetched": self.fetched,
            "imported": self.imported,
            "skipped_duplicate": self.skipped_duplicate,
            "matched": self.matched,
            "grouped": self.grouped,
            "failed": self.failed,
        }


@dataclass(frozen=True)
class RunLogEntry:
    """Single audit entry in an import run's error log"""

    external_id: Optional[str]
    reason: str
    level: str = "error"  # "error" | "review" | "audit"


@dataclass
class ImportRun:
    """Audit record of one import execution"""

    run_id: str
    source: str
    account_id: str
    wallet_id: str
    trigger: str
    started_at: datetime
    status: RunStatus = RunStatus.RUNNING
    stage: Optional[RunStage] = None
    finished_at: Optional[datetime] = None
    counts: RunCounts = field(default_factory=RunCounts)
    error_log: List[RunLogEntry] = field(default_factory=list)


@dataclass
class ImportRunSummary:
    """Outcome of a run as exposed to UI/reporting collaborators"""

    run_id: str
    status: RunStatus
    fetched: int
    imported: int
    matched: int
    grouped: int
    skipped_duplicate: int
    failed: int
    errors: List[dict] = field(default_factory=list)

    @classmethod
    def from_run(cls, run: ImportRun) -> "ImportRunSummary":
        return cls(
            run_id=run.run_id,
            status=run.status,
            fetched=run.counts.fetched,
            imported=run.counts.imported,
            matched=run.counts.matched,
            grouped=run.counts.grouped,
            skipped_duplicate=run.counts.skipped_duplicate,
            failed=run.counts.failed,
            errors=[
                {"external_id": e.external_id, "reason": e.reason}
                for e in run.error_log
                if e.level in ("error", "review")
            ],
        )
