"""Unit tests for the scoring matcher"""

import pytest
from datetime import date
from decimal import Decimal
from recon_gateway.domain.exceptions import MatchAmbiguityWarning
from recon_gateway.domain.matcher import (
    FeatureWeights,
    ScoringMatcher,
    amount_similarity,
    calibrate_weights,
    date_similarity,
    score_pair,
)
from recon_gateway.domain.models import Direction, ExternalRecord, LedgerTransaction, RecordKind


def record(external_id="V-1", amount="100.00", on=date(2024, 5, 10), direction=Direction.INCOME):
    return ExternalRecord(
        external_id=external_id,
        kind=RecordKind.SALE,
        amount=Decimal(amount),
        occurred_date=on,
        counterparty_name="Mercado Bom",
        description="Compra",
        direction=direction,
    )


def txn(txn_id, amount="100.00", on=date(2024, 5, 10), description="Mercado Bom Compra"):
    return LedgerTransaction(id=txn_id, wallet_id="default", amount=Decimal(amount), date=on, description=description)


@pytest.fixture
def matcher():
    return ScoringMatcher(window_days=15, threshold=0.70, weights=FeatureWeights())


def test_amount_similarity():
    assert amount_similarity(Decimal("100"), Decimal("95")) == pytest.approx(0.95)
    assert amount_similarity(Decimal("-100"), Decimal("100")) == 1.0
    assert amount_similarity(Decimal("0"), Decimal("500")) == 0.0


def test_date_similarity():
    assert date_similarity(0, 15) == 1.0
    assert date_similarity(15, 15) == 0.0
    assert date_similarity(30, 15) == 0.0


def test_score_pair_exact_match():
    candidate = score_pair(record(), txn("t-1"), 15, FeatureWeights())

    assert candidate.score == 1.0
    assert candidate.breakdown.days_apart == 0
    assert candidate.breakdown.amount_delta == Decimal("0")


def test_score_pair_weights_features():
    """Test each feature contributes its weight"""
    candidate = score_pair(record(), txn("t-1", on=date(2024, 5, 13), description="outro"), 15, FeatureWeights())

    # amount 1.0 * .45 + date 0.8 * .30 + text 0 * .25
    assert candidate.score == pytest.approx(0.69)


def test_match_below_threshold(matcher):
    far = txn("t-1", on=date(2024, 5, 24), description="nada a ver")

    assert matcher.match(record(), [far]) is None


def test_match_skips_other_direction(matcher):
    expense = record(direction=Direction.EXPENSE)

    assert matcher.match(expense, [txn("t-1")]) is None
    assert matcher.match(expense, [txn("t-2", amount="-100.00")]).transaction.id == "t-2"


def test_match_skips_outside_window(matcher):
    assert matcher.match(record(), [txn("t-1", on=date(2024, 5, 26))]) is None


def test_match_claims_winner(matcher):
    """Test a matched transaction is not offered to later records"""
    pool = [txn("t-1")]

    assert matcher.match(record("V-1"), pool).transaction.id == "t-1"
    assert matcher.match(record("V-2"), pool) is None


def test_match_prefers_higher_score_over_closer_date(matcher):
    """Test a same-day candidate with a worse amount loses to a better-scoring one"""
    pool = [txn("t-a", amount="800.00"), txn("t-b", amount="1000.00", on=date(2024, 5, 11))]

    with pytest.warns(MatchAmbiguityWarning, match="chose t-b"):
        best = matcher.match(record(amount="1000.00"), pool)

    # 0.98 against 0.91
    assert best.transaction.id == "t-b"


def test_tie_break_prefers_closer_date():
    """Test equal scores resolve to the smaller date distance"""
    even = ScoringMatcher(window_days=15, threshold=0.70, weights=FeatureWeights(amount=0.5, date=0.5, text=0.0))
    pool = [txn("t-a", on=date(2024, 5, 13)), txn("t-b", amount="80.00")]

    ranked = even.rank(record(), pool)
    assert ranked[0].score == ranked[1].score == 0.9

    with pytest.warns(MatchAmbiguityWarning):
        best = even.match(record(), pool)

    assert best.transaction.id == "t-b"


def test_match_prefers_smaller_amount_delta(matcher):
    pool = [txn("t-a", amount="101.00"), txn("t-b", amount="100.00")]

    with pytest.warns(MatchAmbiguityWarning):
        best = matcher.match(record(), pool)

    assert best.transaction.id == "t-b"


def test_tie_break_falls_back_to_transaction_id(matcher):
    """Test identical candidates resolve the same way regardless of pool order"""
    for pool in ([txn("t-b"), txn("t-a")], [txn("t-a"), txn("t-b")]):
        fresh = ScoringMatcher(window_days=15, threshold=0.70, weights=FeatureWeights())
        with pytest.warns(MatchAmbiguityWarning, match="chose t-a"):
            best = fresh.match(record(), pool)
        assert best.transaction.id == "t-a"


def test_rank_orders_qualifying_candidates(matcher):
    pool = [txn("t-c", on=date(2024, 5, 13)), txn("t-b", amount="100.50"), txn("t-a")]

    assert [c.transaction.id for c in matcher.rank(record(), pool)] == ["t-a", "t-b", "t-c"]


def test_window_for_spans_all_records(matcher):
    records = [record("V-1", on=date(2024, 6, 1)), record("V-2", on=date(2024, 5, 10))]

    assert matcher.window_for(records) == (date(2024, 4, 25), date(2024, 6, 16))


def test_calibrate_weights_from_confirmed_matches():
    samples = [{"amount": 1.0, "date": 0.5, "text": 0.5}] * 30

    weights = calibrate_weights(samples)

    assert weights == FeatureWeights(amount=0.5, date=0.25, text=0.25)


def test_calibrate_weights_needs_enough_samples():
    samples = [{"amount": 1.0, "date": 0.5, "text": 0.5}] * 29

    assert calibrate_weights(samples) == FeatureWeights()


def test_calibrate_weights_ignores_incomplete_samples():
    samples = [{"amount": 1.0}] * 40

    assert calibrate_weights(samples) == FeatureWeights()
