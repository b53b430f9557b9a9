"""SQLAlchemy ORM models for the ledger, installment groups and import history"""

import uuid
from sqlalchemy import Column, String, BigInteger, Float, DateTime, Date, Integer, ForeignKey, Text, JSON, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class LedgerWallet(Base):
    """Wallet owning a set of ledger transactions"""

    __tablename__ = "ledger_wallet"

    id = Column(Text, primary_key=True)
    name = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    transactions = relationship("LedgerTransactionRow", back_populates="wallet")


class LedgerTransactionRow(Base):
    """Financial movement; amount is signed (negative = expense)"""

    __tablename__ = "ledger_transaction"

    id = Column(Text, primary_key=True, default=_uuid)
    wallet_id = Column(Text, ForeignKey("ledger_wallet.id"), nullable=False, index=True)
    amount_cents = Column(BigInteger, nullable=False)
    date = Column(Date, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    external_ref = Column(Text, nullable=True, index=True)
    group_id = Column(Text, ForeignKey("installment_group.id"), nullable=True, index=True)
    match_score = Column(Float, nullable=True)
    match_features = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    wallet = relationship("LedgerWallet", back_populates="transactions")


class InstallmentGroupRow(Base):
    """Installment plan detected across external records"""

    __tablename__ = "installment_group"

    id = Column(Text, primary_key=True, default=_uuid)
    plan_id = Column(Text, nullable=False, index=True)
    total_cents = Column(BigInteger, nullable=False, default=0)
    status = Column(String(16), nullable=False, default="OPEN")
    issues = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    members = relationship(
        "GroupMemberRow",
        back_populates="group",
        cascade="all, delete-orphan",
        order_by="GroupMemberRow.installment_index",
    )


class GroupMemberRow(Base):
    """External record linked to an installment group"""

    __tablename__ = "group_member"
    __table_args__ = (UniqueConstraint("group_id", "external_id", name="uq_group_member"),)

    id = Column(Text, primary_key=True, default=_uuid)
    group_id = Column(Text, ForeignKey("installment_group.id", ondelete="CASCADE"), nullable=False)
    external_id = Column(Text, nullable=False)
    dedup_key = Column(Text, nullable=True)
    installment_index = Column(Integer, nullable=True)
    installment_count = Column(Integer, nullable=True)
    amount_cents = Column(BigInteger, nullable=False)
    occurred_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=True)
    description = Column(Text, nullable=True)
    counterparty_name = Column(Text, nullable=True)
    plan_total_cents = Column(BigInteger, nullable=True)
    direction = Column(String(16), nullable=False, default="INCOME")

    group = relationship("InstallmentGroupRow", back_populates="members")


class ImportRunRow(Base):
    """Audit record of one import execution"""

    __tablename__ = "import_run"

    id = Column(Text, primary_key=True)
    source = Column(Text, nullable=False, index=True)
    account_id = Column(Text, nullable=False, index=True)
    wallet_id = Column(Text, nullable=False)
    trigger = Column(String(32), nullable=False, default="manual")
    status = Column(String(16), nullable=False, default="RUNNING", index=True)
    stage = Column(String(16), nullable=True)
    fetched = Column(Integer, nullable=False, default=0)
    imported = Column(Integer, nullable=False, default=0)
    skipped_duplicate = Column(Integer, nullable=False, default=0)
    matched = Column(Integer, nullable=False, default=0)
    grouped = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    log_entries = relationship(
        "ImportRunLogRow",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="ImportRunLogRow.seq",
    )


class ImportRunLogRow(Base):
    """Ordered, append-only entry in a run's error log"""

    __tablename__ = "import_run_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Text, ForeignKey("import_run.id", ondelete="CASCADE"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)
    external_id = Column(Text, nullable=True)
    reason = Column(Text, nullable=False)
    level = Column(String(16), nullable=False, default="error")
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    run = relationship("ImportRunRow", back_populates="log_entries")


class DedupKeyRow(Base):
    """External identity already processed; the primary key makes re-runs idempotent"""

    __tablename__ = "dedup_key"

    key = Column(String(64), primary_key=True)
    run_id = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class StateEntryRow(Base):
    """Key/value state with optional expiry"""

    __tablename__ = "state_entry"

    key = Column(Text, primary_key=True)
    value = Column(Text, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
