"""Ledger Gateway contract: the only path to persisted ledger state"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from recon_gateway.domain.models import (
    GroupStatus,
    ImportRun,
    InstallmentGroup,
    LedgerTransaction,
    RunCounts,
    RunLogEntry,
    RunStage,
    RunStatus,
)


class LedgerGateway(ABC):
    """
    Persistence contract consumed by the import engine.

    Writes performed inside one ``atomic()`` block commit or roll back
    together; the orchestrator opens one block per persisted item so that an
    outcome and its dedup key are never written separately.
    """

    @abstractmethod
    def atomic(self) -> AbstractContextManager:
        """Unit of work; raises PersistenceError on failure"""

    # Transactions
    @abstractmethod
    def find_candidates(self, wallet_id: Optional[str], start: date, end: date) -> List[LedgerTransaction]:
        """Unclaimed transactions dated within [start, end], optionally in one wallet"""

    @abstractmethod
    def create_transaction(
        self,
        wallet_id: str,
        amount: Decimal,
        txn_date: date,
        description: str,
        external_ref: Optional[str],
    ) -> LedgerTransaction: ...

    @abstractmethod
    def claim_transaction(self, transaction_id: str, external_ref: str, features: Dict[str, float]) -> None:
        """Link an existing transaction to a matched record"""

    @abstractmethod
    def link_to_group(self, transaction_ids: Iterable[str], group_id: Optional[str]) -> None:
        """Set (or clear, with None) the group of the given transactions"""

    @abstractmethod
    def recent_match_breakdowns(self, limit: int = 500) -> List[Dict[str, float]]:
        """Feature breakdowns stored with previously confirmed matches"""

    # Dedup keys
    @abstractmethod
    def is_key_seen(self, key: str) -> bool: ...

    @abstractmethod
    def mark_key_seen(self, key: str, run_id: str) -> None: ...

    # Installment groups
    @abstractmethod
    def find_open_group(self, plan_id: str) -> Optional[InstallmentGroup]: ...

    @abstractmethod
    def save_group(self, group: InstallmentGroup, member_keys: Dict[str, str]) -> None:
        """Create or update a group; members not yet stored are added"""

    @abstractmethod
    def group_transaction_ids(self, group_id: str) -> List[str]: ...

    @abstractmethod
    def set_group_status(self, group_id: str, status: GroupStatus) -> None: ...

    # Import runs
    @abstractmethod
    def create_run(self, run: ImportRun) -> ImportRun:
        """Persist a RUNNING run; returns the stored run if the id already exists"""

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[ImportRun]: ...

    @abstractmethod
    def append_run_log(self, run_id: str, entry: RunLogEntry) -> None: ...

    @abstractmethod
    def update_run_progress(self, run_id: str, stage: RunStage, counts: RunCounts) -> None: ...

    @abstractmethod
    def finalize_run(self, run_id: str, status: RunStatus, counts: RunCounts) -> ImportRun: ...

    @abstractmethod
    def list_runs(
        self,
        account_id: Optional[str] = None,
        source: Optional[str] = None,
        statuses: Optional[List[RunStatus]] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[List[ImportRun], int]: ...

    @abstractmethod
    def run_status_counts(self, account_id: Optional[str] = None) -> Dict[str, int]: ...
