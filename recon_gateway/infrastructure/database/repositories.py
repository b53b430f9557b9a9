"""Data access layer: SQL implementation of the ledger gateway and run history"""

import logging
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from recon_gateway.domain.exceptions import PersistenceError, RunFinalizedError, RunNotFoundError
from recon_gateway.domain.gateway import LedgerGateway
from recon_gateway.domain.models import (
    Direction,
    ExternalRecord,
    GroupStatus,
    ImportRun,
    InstallmentGroup,
    LedgerTransaction,
    RecordKind,
    RunCounts,
    RunLogEntry,
    RunStage,
    RunStatus,
)
from recon_gateway.infrastructure.database.models import (
    DedupKeyRow,
    GroupMemberRow,
    ImportRunLogRow,
    ImportRunRow,
    InstallmentGroupRow,
    LedgerTransactionRow,
    LedgerWallet,
)
from recon_gateway.utils.money import from_cents, to_cents

logger = logging.getLogger(__name__)

SYSTEMIC_ERRORS = (OperationalError, InterfaceError, DisconnectionError)


def _to_transaction(row: LedgerTransactionRow) -> LedgerTransaction:
    return LedgerTransaction(
        id=row.id,
        wallet_id=row.wallet_id,
        amount=from_cents(row.amount_cents),
        date=row.date,
        description=row.description or "",
        external_ref=row.external_ref,
        group_id=row.group_id,
    )


def _to_record(row: GroupMemberRow, plan_id: str) -> ExternalRecord:
    return ExternalRecord(
        external_id=row.external_id,
        kind=RecordKind.INSTALLMENT,
        amount=from_cents(row.amount_cents),
        occurred_date=row.occurred_date,
        due_date=row.due_date,
        counterparty_name=row.counterparty_name,
        description=row.description,
        plan_id=plan_id,
        installment_index=row.installment_index,
        installment_count=row.installment_count,
        plan_total=from_cents(row.plan_total_cents) if row.plan_total_cents is not None else None,
        direction=Direction(row.direction),
    )


def _to_group(row: InstallmentGroupRow) -> InstallmentGroup:
    return InstallmentGroup(
        group_id=row.id,
        plan_id=row.plan_id,
        members=[_to_record(m, row.plan_id) for m in row.members],
        total_amount=from_cents(row.total_cents),
        status=GroupStatus(row.status),
        issues=list(row.issues or []),
    )


def _counts(row: ImportRunRow) -> RunCounts:
    return RunCounts(
        fetched=row.fetched,
        imported=row.imported,
        skipped_duplicate=row.skipped_duplicate,
        matched=row.matched,
        grouped=row.grouped,
        failed=row.failed,
    )


def _to_run(row: ImportRunRow) -> ImportRun:
    return ImportRun(
        run_id=row.id,
        source=row.source,
        account_id=row.account_id,
        wallet_id=row.wallet_id,
        trigger=row.trigger,
        started_at=row.started_at,
        status=RunStatus(row.status),
        stage=RunStage(row.stage) if row.stage else None,
        finished_at=row.finished_at,
        counts=_counts(row),
        error_log=[
            RunLogEntry(external_id=e.external_id, reason=e.reason, level=e.level)
            for e in row.log_entries
        ],
    )


class SqlLedgerGateway(LedgerGateway):
    """Ledger gateway over a SQLAlchemy session"""

    def __init__(self, db: Session):
        self.db = db
        self._depth = 0

    @contextmanager
    def atomic(self):
        """Commit everything written inside the block, or nothing"""
        self._depth += 1
        try:
            yield self
            if self._depth == 1:
                self.db.commit()
        except SYSTEMIC_ERRORS as e:
            self.db.rollback()
            raise PersistenceError(str(e), systemic=True) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(str(e)) from e
        except Exception:
            self.db.rollback()
            raise
        finally:
            self._depth -= 1

    def _commit(self) -> None:
        """Commit standalone writes; inside atomic() the block commits"""
        if self._depth:
            self.db.flush()
            return
        try:
            self.db.commit()
        except SYSTEMIC_ERRORS as e:
            self.db.rollback()
            raise PersistenceError(str(e), systemic=True) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(str(e)) from e

    # Transactions

    def find_candidates(self, wallet_id: Optional[str], start: date, end: date) -> List[LedgerTransaction]:
        query = self.db.query(LedgerTransactionRow).filter(
            LedgerTransactionRow.external_ref.is_(None),
            LedgerTransactionRow.date >= start,
            LedgerTransactionRow.date <= end,
        )
        if wallet_id is not None:
            query = query.filter(LedgerTransactionRow.wallet_id == wallet_id)
        rows = query.order_by(LedgerTransactionRow.date, LedgerTransactionRow.id).all()
        return [_to_transaction(r) for r in rows]

    def ensure_wallet(self, wallet_id: str) -> None:
        if self.db.get(LedgerWallet, wallet_id) is None:
            self.db.add(LedgerWallet(id=wallet_id, name=wallet_id))
            self.db.flush()

    def create_transaction(
        self,
        wallet_id: str,
        amount: Decimal,
        txn_date: date,
        description: str,
        external_ref: Optional[str],
    ) -> LedgerTransaction:
        self.ensure_wallet(wallet_id)
        row = LedgerTransactionRow(
            wallet_id=wallet_id,
            amount_cents=to_cents(amount),
            date=txn_date,
            description=description or "",
            external_ref=external_ref,
        )
        self.db.add(row)
        self.db.flush()
        return _to_transaction(row)

    def claim_transaction(self, transaction_id: str, external_ref: str, features: Dict[str, float]) -> None:
        row = self.db.get(LedgerTransactionRow, transaction_id)
        if row is None:
            raise PersistenceError(f"transaction {transaction_id} not found")
        if row.external_ref is not None:
            raise PersistenceError(f"transaction {transaction_id} already claimed by {row.external_ref}")
        row.external_ref = external_ref
        row.match_score = features.get("score")
        row.match_features = {k: v for k, v in features.items() if k != "score"}
        self.db.flush()

    def link_to_group(self, transaction_ids: Iterable[str], group_id: Optional[str]) -> None:
        ids = list(transaction_ids)
        if not ids:
            return
        (
            self.db.query(LedgerTransactionRow)
            .filter(LedgerTransactionRow.id.in_(ids))
            .update({LedgerTransactionRow.group_id: group_id}, synchronize_session="fetch")
        )
        self.db.flush()

    def recent_match_breakdowns(self, limit: int = 500) -> List[Dict[str, float]]:
        rows = (
            self.db.query(LedgerTransactionRow.match_features)
            .filter(LedgerTransactionRow.match_features.isnot(None))
            .order_by(LedgerTransactionRow.created_at.desc())
            .limit(limit)
            .all()
        )
        return [r[0] for r in rows if r[0]]

    # Dedup keys

    def is_key_seen(self, key: str) -> bool:
        return self.db.get(DedupKeyRow, key) is not None

    def mark_key_seen(self, key: str, run_id: str) -> None:
        self.db.add(DedupKeyRow(key=key, run_id=run_id))
        self.db.flush()

    # Installment groups

    def find_open_group(self, plan_id: str) -> Optional[InstallmentGroup]:
        row = (
            self.db.query(InstallmentGroupRow)
            .filter(
                InstallmentGroupRow.plan_id == plan_id,
                InstallmentGroupRow.status == GroupStatus.OPEN.value,
            )
            .order_by(InstallmentGroupRow.created_at.desc())
            .first()
        )
        return _to_group(row) if row else None

    def save_group(self, group: InstallmentGroup, member_keys: Dict[str, str]) -> None:
        row = self.db.get(InstallmentGroupRow, group.group_id)
        if row is None:
            row = InstallmentGroupRow(id=group.group_id, plan_id=group.plan_id)
            self.db.add(row)

        row.total_cents = to_cents(group.total_amount)
        row.status = group.status.value
        row.issues = list(group.issues)

        stored = {m.external_id for m in row.members}
        for record in group.members:
            if record.external_id in stored:
                continue
            row.members.append(
                GroupMemberRow(
                    external_id=record.external_id,
                    dedup_key=member_keys.get(record.external_id),
                    installment_index=record.installment_index,
                    installment_count=record.installment_count,
                    amount_cents=to_cents(record.amount),
                    occurred_date=record.occurred_date,
                    due_date=record.due_date,
                    description=record.description,
                    counterparty_name=record.counterparty_name,
                    plan_total_cents=to_cents(record.plan_total) if record.plan_total is not None else None,
                    direction=record.direction.value,
                )
            )
        self.db.flush()

    def group_transaction_ids(self, group_id: str) -> List[str]:
        rows = (
            self.db.query(LedgerTransactionRow.id)
            .filter(LedgerTransactionRow.group_id == group_id)
            .order_by(LedgerTransactionRow.date, LedgerTransactionRow.id)
            .all()
        )
        return [r[0] for r in rows]

    def set_group_status(self, group_id: str, status: GroupStatus) -> None:
        row = self.db.get(InstallmentGroupRow, group_id)
        if row is None:
            raise PersistenceError(f"installment group {group_id} not found")
        row.status = status.value
        self.db.flush()

    # Import runs

    def create_run(self, run: ImportRun) -> ImportRun:
        existing = self.db.get(ImportRunRow, run.run_id)
        if existing is not None:
            return _to_run(existing)

        self.db.add(
            ImportRunRow(
                id=run.run_id,
                source=run.source,
                account_id=run.account_id,
                wallet_id=run.wallet_id,
                trigger=run.trigger,
                status=run.status.value,
                stage=run.stage.value if run.stage else None,
                started_at=run.started_at,
            )
        )
        self._commit()
        logger.info("Import run created", extra={"run_id": run.run_id, "account_id": run.account_id})
        return run

    def _run_row(self, run_id: str) -> ImportRunRow:
        row = self.db.get(ImportRunRow, run_id)
        if row is None:
            raise RunNotFoundError(f"import run {run_id} not found")
        return row

    def get_run(self, run_id: str) -> Optional[ImportRun]:
        row = self.db.get(ImportRunRow, run_id)
        return _to_run(row) if row else None

    def append_run_log(self, run_id: str, entry: RunLogEntry) -> None:
        row = self._run_row(run_id)
        if row.status != RunStatus.RUNNING.value:
            raise RunFinalizedError(f"import run {run_id} is {row.status}")
        seq = (
            self.db.query(func.count(ImportRunLogRow.id))
            .filter(ImportRunLogRow.run_id == run_id)
            .scalar()
        )
        self.db.add(
            ImportRunLogRow(
                run_id=run_id,
                seq=seq + 1,
                external_id=entry.external_id,
                reason=entry.reason,
                level=entry.level,
            )
        )
        self._commit()

    def _apply_counts(self, row: ImportRunRow, counts: RunCounts) -> None:
        row.fetched = counts.fetched
        row.imported = counts.imported
        row.skipped_duplicate = counts.skipped_duplicate
        row.matched = counts.matched
        row.grouped = counts.grouped
        row.failed = counts.failed

    def update_run_progress(self, run_id: str, stage: RunStage, counts: RunCounts) -> None:
        row = self._run_row(run_id)
        if row.status != RunStatus.RUNNING.value:
            raise RunFinalizedError(f"import run {run_id} is {row.status}")
        row.stage = stage.value
        self._apply_counts(row, counts)
        self._commit()

    def finalize_run(self, run_id: str, status: RunStatus, counts: RunCounts) -> ImportRun:
        row = self._run_row(run_id)
        if row.status != RunStatus.RUNNING.value:
            raise RunFinalizedError(f"import run {run_id} is {row.status}")
        row.status = status.value
        row.stage = RunStage.FINALIZING.value
        row.finished_at = datetime.now(timezone.utc)
        self._apply_counts(row, counts)
        self._commit()
        self.db.refresh(row)
        return _to_run(row)

    def list_runs(
        self,
        account_id: Optional[str] = None,
        source: Optional[str] = None,
        statuses: Optional[List[RunStatus]] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[List[ImportRun], int]:
        """Runs newest first, with the total matching the filters"""
        query = self.db.query(ImportRunRow)
        if account_id:
            query = query.filter(ImportRunRow.account_id == account_id)
        if source:
            query = query.filter(ImportRunRow.source == source)
        if statuses:
            query = query.filter(ImportRunRow.status.in_([s.value for s in statuses]))

        total = query.count()
        rows = query.order_by(ImportRunRow.started_at.desc()).offset(offset).limit(limit).all()
        return [_to_run(r) for r in rows], total

    def run_status_counts(self, account_id: Optional[str] = None) -> Dict[str, int]:
        query = self.db.query(ImportRunRow.status, func.count(ImportRunRow.id))
        if account_id:
            query = query.filter(ImportRunRow.account_id == account_id)
        counts = {s.value: 0 for s in RunStatus}
        for status, count in query.group_by(ImportRunRow.status).all():
            counts[status] = count
        return counts
