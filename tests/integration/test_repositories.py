"""Integration tests for the SQL ledger gateway"""

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from recon_gateway.domain.exceptions import PersistenceError, RunFinalizedError, RunNotFoundError
from recon_gateway.domain.models import (
    ExternalRecord,
    GroupStatus,
    ImportRun,
    InstallmentGroup,
    RecordKind,
    RunCounts,
    RunLogEntry,
    RunStage,
    RunStatus,
)


def make_run(run_id, account_id="acc-1", source="gestao_click", minutes_ago=0) -> ImportRun:
    return ImportRun(
        run_id=run_id,
        source=source,
        account_id=account_id,
        wallet_id="default",
        trigger="manual",
        started_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )


def member(index):
    return ExternalRecord(
        external_id=f"P1-{index}",
        kind=RecordKind.INSTALLMENT,
        amount=Decimal("50.00"),
        occurred_date=date(2024, index, 5),
        due_date=date(2024, index, 5),
        plan_id="P1",
        installment_index=index,
        installment_count=3,
    )


def test_find_candidates_excludes_claimed_and_out_of_window(gateway, seed_transaction):
    inside = seed_transaction("10.00", date(2024, 5, 10))
    claimed = seed_transaction("20.00", date(2024, 5, 11))
    seed_transaction("30.00", date(2024, 7, 1))
    seed_transaction("40.00", date(2024, 5, 12), wallet_id="other")
    with gateway.atomic():
        gateway.claim_transaction(claimed.id, "gestao_click:V-1", {"amount": 1.0, "score": 0.9})

    found = gateway.find_candidates("default", date(2024, 5, 1), date(2024, 5, 31))

    assert [t.id for t in found] == [inside.id]
    assert len(gateway.find_candidates(None, date(2024, 5, 1), date(2024, 5, 31))) == 2


def test_create_transaction_round_trips_amount(gateway):
    with gateway.atomic():
        txn = gateway.create_transaction("w-1", Decimal("-89.90"), date(2024, 5, 15), "Energia", "src:PG-77")

    assert txn.amount == Decimal("-89.90")
    assert txn.wallet_id == "w-1"
    assert txn.external_ref == "src:PG-77"


def test_claim_transaction_twice_fails(gateway, seed_transaction):
    txn = seed_transaction("10.00", date(2024, 5, 10))
    with gateway.atomic():
        gateway.claim_transaction(txn.id, "src:A", {"score": 0.8})

    with pytest.raises(PersistenceError, match="already claimed"):
        with gateway.atomic():
            gateway.claim_transaction(txn.id, "src:B", {"score": 0.8})


def test_atomic_rolls_back_all_writes(gateway):
    """Test a failure inside the unit discards every write made in it"""
    with pytest.raises(RuntimeError):
        with gateway.atomic():
            gateway.create_transaction("default", Decimal("1"), date(2024, 1, 1), "", "src:X")
            gateway.mark_key_seen("key-x", "run-1")
            raise RuntimeError("boom")

    assert not gateway.is_key_seen("key-x")
    assert gateway.find_candidates(None, date(2023, 12, 1), date(2024, 2, 1)) == []


def test_duplicate_key_raises_persistence_error(gateway):
    with gateway.atomic():
        gateway.mark_key_seen("key-1", "run-1")

    with pytest.raises(PersistenceError) as exc:
        with gateway.atomic():
            gateway.mark_key_seen("key-1", "run-2")

    assert exc.value.systemic is False
    assert gateway.is_key_seen("key-1")


def test_group_save_extend_and_abandon(gateway):
    group = InstallmentGroup(
        group_id="g-1",
        plan_id="P1",
        members=[member(1), member(2)],
        total_amount=Decimal("100.00"),
        status=GroupStatus.OPEN,
    )
    with gateway.atomic():
        gateway.save_group(group, {"P1-1": "k1", "P1-2": "k2"})
        txn = gateway.create_transaction("default", Decimal("50"), date(2024, 1, 5), "", "group:g-1")
        gateway.link_to_group([txn.id], "g-1")

    stored = gateway.find_open_group("P1")
    assert stored.group_id == "g-1"
    assert [m.external_id for m in stored.members] == ["P1-1", "P1-2"]
    assert stored.members[0].installment_count == 3
    assert gateway.group_transaction_ids("g-1") == [txn.id]

    group.members.append(member(3))
    group.status = GroupStatus.COMPLETE
    with gateway.atomic():
        gateway.save_group(group, {"P1-3": "k3"})
    assert gateway.find_open_group("P1") is None

    with gateway.atomic():
        gateway.set_group_status("g-1", GroupStatus.ABANDONED)
        gateway.link_to_group(gateway.group_transaction_ids("g-1"), None)
    assert gateway.group_transaction_ids("g-1") == []


def test_run_lifecycle(gateway):
    gateway.create_run(make_run("run-1"))
    gateway.update_run_progress("run-1", RunStage.MATCHING, RunCounts(fetched=5))
    gateway.append_run_log("run-1", RunLogEntry(external_id="V-1", reason="bad amount"))
    gateway.append_run_log("run-1", RunLogEntry(external_id=None, reason="ambiguous", level="audit"))

    final = gateway.finalize_run("run-1", RunStatus.PARTIAL, RunCounts(fetched=5, imported=4, failed=1))

    assert final.status == RunStatus.PARTIAL
    assert final.finished_at is not None
    assert final.counts.imported == 4
    assert [e.reason for e in final.error_log] == ["bad amount", "ambiguous"]


def test_finalized_run_is_immutable(gateway):
    gateway.create_run(make_run("run-1"))
    gateway.finalize_run("run-1", RunStatus.SUCCESS, RunCounts())

    with pytest.raises(RunFinalizedError):
        gateway.finalize_run("run-1", RunStatus.FAILED, RunCounts())
    with pytest.raises(RunFinalizedError):
        gateway.append_run_log("run-1", RunLogEntry(external_id=None, reason="late"))
    with pytest.raises(RunFinalizedError):
        gateway.update_run_progress("run-1", RunStage.PERSISTING, RunCounts())


def test_unknown_run(gateway):
    assert gateway.get_run("missing") is None
    with pytest.raises(RunNotFoundError):
        gateway.finalize_run("missing", RunStatus.SUCCESS, RunCounts())


def test_create_run_is_idempotent(gateway):
    gateway.create_run(make_run("run-1"))

    again = gateway.create_run(make_run("run-1", account_id="acc-2"))

    assert again.account_id == "acc-1"


def test_list_runs_filters_and_pages(gateway):
    gateway.create_run(make_run("old", minutes_ago=30))
    gateway.create_run(make_run("mid", minutes_ago=20))
    gateway.create_run(make_run("new", minutes_ago=10))
    gateway.create_run(make_run("other", account_id="acc-2"))
    gateway.create_run(make_run("other-src", source="erp"))
    gateway.finalize_run("old", RunStatus.FAILED, RunCounts())
    gateway.finalize_run("mid", RunStatus.SUCCESS, RunCounts())

    runs, total = gateway.list_runs(account_id="acc-1", source="gestao_click", limit=2)
    assert total == 3
    assert [r.run_id for r in runs] == ["new", "mid"]

    runs, total = gateway.list_runs(account_id="acc-1", source="gestao_click", limit=2, offset=2)
    assert [r.run_id for r in runs] == ["old"]

    runs, total = gateway.list_runs(statuses=[RunStatus.FAILED, RunStatus.SUCCESS])
    assert total == 2


def test_run_status_counts(gateway):
    gateway.create_run(make_run("a"))
    gateway.create_run(make_run("b"))
    gateway.create_run(make_run("c", account_id="acc-2"))
    gateway.finalize_run("a", RunStatus.SUCCESS, RunCounts())

    assert gateway.run_status_counts("acc-1") == {"RUNNING": 1, "SUCCESS": 1, "PARTIAL": 0, "FAILED": 0}
    assert gateway.run_status_counts()["RUNNING"] == 2


def test_recent_match_breakdowns(gateway, seed_transaction):
    txn = seed_transaction("10.00", date(2024, 5, 10))
    with gateway.atomic():
        gateway.claim_transaction(txn.id, "src:A", {"amount": 1.0, "date": 0.5, "text": 0.2, "score": 0.8})

    assert gateway.recent_match_breakdowns() == [{"amount": 1.0, "date": 0.5, "text": 0.2}]
