"""
Scoring matcher - pairs external records with existing ledger transactions.

Assignment is greedy and single-pass: records are processed in a fixed
order, each takes its best qualifying candidate, and a claimed transaction
leaves the pool for the rest of the run. This is not a globally optimal
(bipartite) assignment. Changing it changes reconciliation outcomes, so any
replacement must come with updated matcher tests.
"""

import logging
import warnings
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from recon_gateway.config import settings
from recon_gateway.domain.exceptions import MatchAmbiguityWarning
from recon_gateway.domain.models import (
    ExternalRecord,
    FeatureBreakdown,
    LedgerTransaction,
    MatchCandidate,
)
from recon_gateway.utils.date_utils import date_window, days_between
from recon_gateway.utils.text_utils import jaccard, tokenize

logger = logging.getLogger(__name__)

FEATURES = ("amount", "date", "text")


@dataclass(frozen=True)
class FeatureWeights:
    amount: float = 0.45
    date: float = 0.30
    text: float = 0.25

    @classmethod
    def from_settings(cls) -> "FeatureWeights":
        return cls(
            amount=settings.match_weight_amount,
            date=settings.match_weight_date,
            text=settings.match_weight_text,
        )


def amount_similarity(a: Decimal, b: Decimal) -> float:
    """1 - min(1, |a - b| / max(a, b, 1)) over magnitudes"""
    a, b = abs(a), abs(b)
    scale = max(a, b, Decimal(1))
    return 1.0 - min(1.0, float(abs(a - b) / scale))


def date_similarity(days_apart: int, window_days: int) -> float:
    if window_days <= 0:
        return 1.0 if days_apart == 0 else 0.0
    return 1.0 - min(1.0, days_apart / window_days)


def score_pair(
    record: ExternalRecord,
    transaction: LedgerTransaction,
    window_days: int,
    weights: FeatureWeights,
) -> MatchCandidate:
    """Weighted sum of amount, date and text similarities, each in [0, 1]"""
    days_apart = days_between(record.reference_date, transaction.date)
    amount_delta = abs(abs(record.amount) - abs(transaction.amount))

    breakdown = FeatureBreakdown(
        amount=amount_similarity(record.amount, transaction.amount),
        date=date_similarity(days_apart, window_days),
        text=jaccard(
            tokenize(record.counterparty_name, record.description),
            tokenize(transaction.description),
        ),
        days_apart=days_apart,
        amount_delta=amount_delta,
    )
    score = (
        weights.amount * breakdown.amount
        + weights.date * breakdown.date
        + weights.text * breakdown.text
    )
    return MatchCandidate(record=record, transaction=transaction, score=round(score, 4), breakdown=breakdown)


def calibrate_weights(
    samples: Sequence[Dict[str, float]],
    min_samples: int = 30,
    default: FeatureWeights = FeatureWeights(),
) -> FeatureWeights:
    """
    Derive feature weights from confirmed matches.

    Each sample is the feature breakdown of a previously accepted match.
    Features that were consistently high on confirmed matches are the ones
    that discriminate, so each weight is proportional to the mean similarity
    of its feature. Below min_samples the defaults are returned unchanged.
    """
    usable = [s for s in samples if all(f in s for f in FEATURES)]
    if len(usable) < min_samples:
        return default

    means = {f: sum(float(s[f]) for s in usable) / len(usable) for f in FEATURES}
    total = sum(means.values())
    if total <= 0:
        return default
    return FeatureWeights(**{f: round(means[f] / total, 4) for f in FEATURES})


class ScoringMatcher:
    """Greedy claim-and-remove matcher over one run's candidate pool"""

    def __init__(
        self,
        window_days: int | None = None,
        threshold: float | None = None,
        weights: FeatureWeights | None = None,
    ):
        self.window_days = settings.match_window_days if window_days is None else window_days
        self.threshold = settings.match_threshold if threshold is None else threshold
        self.weights = weights or FeatureWeights.from_settings()
        self._claimed: set[str] = set()

    def eligible(self, record: ExternalRecord, transaction: LedgerTransaction) -> bool:
        """Same direction, within the date window, not yet claimed this run"""
        if transaction.id in self._claimed:
            return False
        if (transaction.amount >= 0) != (record.signed_amount >= 0):
            return False
        return days_between(record.reference_date, transaction.date) <= self.window_days

    def rank(self, record: ExternalRecord, candidates: Iterable[LedgerTransaction]) -> List[MatchCandidate]:
        """
        Candidates clearing the threshold, best first.

        Higher score wins; equal scores fall back to smaller date distance,
        then smaller amount delta, then lexicographically smaller transaction id.
        """
        qualifying = []
        for txn in candidates:
            if not self.eligible(record, txn):
                continue
            candidate = score_pair(record, txn, self.window_days, self.weights)
            if candidate.score >= self.threshold:
                qualifying.append(candidate)

        qualifying.sort(
            key=lambda c: (-c.score, c.breakdown.days_apart, c.breakdown.amount_delta, c.transaction.id)
        )
        return qualifying

    def match(self, record: ExternalRecord, candidates: Iterable[LedgerTransaction]) -> Optional[MatchCandidate]:
        """
        Best qualifying candidate for a record, or None.

        The winner is claimed: it will not be offered to later records of the
        same run. Emits MatchAmbiguityWarning when the tie-break had to choose
        among several qualifying candidates.
        """
        ranked = self.rank(record, candidates)
        if not ranked:
            return None

        best = ranked[0]
        if len(ranked) > 1:
            warnings.warn(
                MatchAmbiguityWarning(
                    f"{len(ranked)} candidates cleared threshold for {record.external_id}; "
                    f"chose {best.transaction.id} (score {best.score})"
                ),
                stacklevel=2,
            )
        self._claimed.add(best.transaction.id)
        return best

    def window_for(self, records: Sequence[ExternalRecord]):
        """Date span covering every record's matching window"""
        dates = [r.reference_date for r in records]
        start, _ = date_window(min(dates), self.window_days)
        _, end = date_window(max(dates), self.window_days)
        return start, end
