"""
Import orchestrator - drives one import run end to end.

Stages: FETCHING → NORMALIZING → DEDUPING → MATCHING → PERSISTING → FINALIZING.

Pages are fetched concurrently (bounded by fetch_concurrency) when the
source reports totalPages, otherwise sequentially by nextPage. All pages are
merged before a single matching pass so that the matcher's claimed pool is
consistent across the whole run. Persistence is sequential: one atomic unit
per matched or created record and one per installment group, each committing
its dedup keys together with its ledger writes.
"""

import asyncio
import logging
import time
import uuid
import warnings
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from recon_gateway.config import settings
from recon_gateway.domain.dedup import Deduplicator
from recon_gateway.domain.exceptions import (
    DuplicateError,
    FetchError,
    MatchAmbiguityWarning,
    NormalizationError,
    PersistenceError,
    RunCancelledError,
    RunLockedError,
)
from recon_gateway.domain.gateway import LedgerGateway
from recon_gateway.domain.grouper import InstallmentGrouper, is_groupable
from recon_gateway.domain.matcher import FeatureWeights, ScoringMatcher, calibrate_weights
from recon_gateway.domain.models import (
    ExternalRecord,
    GroupStatus,
    ImportRun,
    ImportRunSummary,
    InstallmentGroup,
    MatchCandidate,
    RecordKind,
    RunCounts,
    RunLogEntry,
    RunStage,
    RunStatus,
)
from recon_gateway.domain.normalizer import nested_installments, normalize, raw_external_id
from recon_gateway.domain.state import StateStore, cursor_key, disabled_key
from recon_gateway.infrastructure.clients.source import SourceClient, SourcePage
from recon_gateway.infrastructure.observability.logging import log_run_outcome
from recon_gateway.infrastructure.observability.metrics import (
    group_status_counter,
    match_score_histogram,
    record_run,
    runs_in_progress_gauge,
)
from recon_gateway.services.run_control import CancellationToken, RunRegistry
from recon_gateway.utils.date_utils import parse_date

logger = logging.getLogger(__name__)

REASON_CANCELLED = "cancelled"
REASON_LOCKED = "another run in progress"
REASON_DISABLED = "imports disabled"


@dataclass
class ImportRequest:
    """Parameters of one import run"""

    account_id: str
    since: Optional[date] = None
    until: Optional[date] = None
    wallet_id: Optional[str] = None
    source: Optional[str] = None
    run_id: Optional[str] = None
    trigger: str = "manual"
    # Payloads delivered with the trigger (webhooks); fetching is skipped
    records: Optional[List[Dict[str, Any]]] = None
    kind: Optional[RecordKind] = None


@dataclass
class _RunContext:
    run_id: str
    account_id: str
    wallet_id: str
    source: str
    dedup: Optional[Deduplicator] = None
    counts: RunCounts = field(default_factory=RunCounts)
    outcomes: Dict[str, int] = field(
        default_factory=lambda: {"matched": 0, "created": 0, "grouped": 0, "skipped_duplicate": 0, "failed": 0}
    )


def identity(record: ExternalRecord) -> Tuple[str, RecordKind]:
    return record.external_id, record.kind


def external_ref(source: str, record: ExternalRecord) -> str:
    return f"{source}:{record.external_id}"


def group_ref(group_id: str) -> str:
    return f"group:{group_id}"


def new_run_id() -> str:
    return str(uuid.uuid4())


class ImportOrchestrator:
    """Runs imports against an injected gateway, source client and state store"""

    def __init__(
        self,
        gateway: LedgerGateway,
        client: SourceClient,
        state: StateStore,
        registry: Optional[RunRegistry] = None,
        matcher_factory: Optional[Callable[[], ScoringMatcher]] = None,
        grouper: Optional[InstallmentGrouper] = None,
        page_size: int | None = None,
        max_pages: int | None = None,
        concurrency: int | None = None,
    ):
        self.gateway = gateway
        self.client = client
        self.state = state
        self.registry = registry or RunRegistry(state)
        self.matcher_factory = matcher_factory or self._default_matcher
        self.grouper = grouper or InstallmentGrouper()
        self.page_size = page_size or settings.page_size
        self.max_pages = max_pages or settings.max_pages
        self.concurrency = concurrency or settings.fetch_concurrency

    def _default_matcher(self) -> ScoringMatcher:
        weights = FeatureWeights.from_settings()
        if settings.match_use_calibrated_weights:
            weights = calibrate_weights(
                self.gateway.recent_match_breakdowns(),
                min_samples=settings.calibration_min_samples,
                default=weights,
            )
            logger.info("Using calibrated match weights", extra={"weights": weights.__dict__})
        return ScoringMatcher(weights=weights)

    # Run lifecycle

    def start(self, request: ImportRequest) -> Tuple[ImportRun, bool]:
        """
        Create the run record in RUNNING state.

        Returns the stored run and whether it was newly created. An existing
        run id is never executed twice.
        """
        run_id = request.run_id or new_run_id()
        existing = self.gateway.get_run(run_id)
        if existing is not None:
            return existing, False

        run = ImportRun(
            run_id=run_id,
            source=request.source or settings.source_name,
            account_id=request.account_id,
            wallet_id=request.wallet_id or settings.default_wallet_id,
            trigger=request.trigger,
            started_at=datetime.now(timezone.utc),
        )
        stored = self.gateway.create_run(run)
        # Cancellable from the moment it exists, including while queued
        self.registry.token_for(run_id)
        return stored, True

    async def run(self, request: ImportRequest) -> ImportRunSummary:
        """Start and execute a run; replays of a known run id return its summary"""
        run, created = self.start(request)
        if not created:
            logger.info("Run already exists", extra={"run_id": run.run_id, "run_status": run.status.value})
            return ImportRunSummary.from_run(run)
        return await self.execute(run, request)

    async def execute(self, run: ImportRun, request: ImportRequest) -> ImportRunSummary:
        ctx = _RunContext(
            run_id=run.run_id,
            account_id=run.account_id,
            wallet_id=run.wallet_id,
            source=run.source,
        )
        started = time.perf_counter()
        token = self.registry.token_for(run.run_id)

        if self.state.get(disabled_key(ctx.account_id)):
            self.registry.release(ctx.run_id)
            return self._fail(ctx, REASON_DISABLED, started)

        runs_in_progress_gauge.inc()
        try:
            async with self.registry.account_lock(ctx.account_id, ctx.run_id):
                until = request.until or date.today()
                since = request.since or self._last_sync(ctx)
                status = await self._pipeline(ctx, request, since, until, token)
                summary = self._finalize(ctx, status, started)
                # A PARTIAL run leaves the cursor so its failed records are fetched again
                if request.records is None and status == RunStatus.SUCCESS:
                    self.state.set(cursor_key(ctx.source, ctx.account_id), until.isoformat())
                return summary
        except RunLockedError:
            return self._fail(ctx, REASON_LOCKED, started)
        except RunCancelledError:
            return self._fail(ctx, REASON_CANCELLED, started)
        except FetchError as e:
            return self._fail(ctx, str(e), started)
        except PersistenceError as e:
            logger.error(
                "Persistence failure", extra={"run_id": ctx.run_id, "error": str(e), "systemic": e.systemic}
            )
            return self._fail(ctx, f"persistence failure: {e}", started)
        except Exception as e:
            logger.exception("Unexpected import failure", extra={"run_id": ctx.run_id})
            return self._fail(ctx, f"unexpected error: {e}", started)
        finally:
            runs_in_progress_gauge.dec()

    def _last_sync(self, ctx: _RunContext) -> Optional[date]:
        stored = self.state.get(cursor_key(ctx.source, ctx.account_id))
        return parse_date(stored) if stored else None

    def _log(self, ctx: _RunContext, external_id: Optional[str], reason: str, level: str = "error") -> None:
        self.gateway.append_run_log(ctx.run_id, RunLogEntry(external_id=external_id, reason=reason, level=level))

    def _stage(self, ctx: _RunContext, stage: RunStage) -> None:
        self.gateway.update_run_progress(ctx.run_id, stage, ctx.counts)
        logger.debug("Run stage", extra={"run_id": ctx.run_id, "stage": stage.value, **ctx.counts.as_dict()})

    def _finalize(self, ctx: _RunContext, status: RunStatus, started: float) -> ImportRunSummary:
        final = self.gateway.finalize_run(ctx.run_id, status, ctx.counts)
        record_run(status.value, ctx.outcomes)
        log_run_outcome(
            run_id=ctx.run_id,
            account_id=ctx.account_id,
            status=status.value,
            counts=ctx.counts.as_dict(),
            duration_ms=(time.perf_counter() - started) * 1000,
        )
        return ImportRunSummary.from_run(final)

    def _fail(self, ctx: _RunContext, reason: str, started: float) -> ImportRunSummary:
        logger.warning("Import run failed", extra={"run_id": ctx.run_id, "reason": reason})
        self._log(ctx, None, reason)
        return self._finalize(ctx, RunStatus.FAILED, started)

    # Pipeline

    async def _pipeline(
        self,
        ctx: _RunContext,
        request: ImportRequest,
        since: Optional[date],
        until: date,
        token: CancellationToken,
    ) -> RunStatus:
        self._stage(ctx, RunStage.FETCHING)
        if request.records is not None:
            raw_records = list(request.records)
        else:
            raw_records = await self.fetch_all(ctx, since, until, token)
        ctx.counts.fetched = len(raw_records)

        self._stage(ctx, RunStage.NORMALIZING)
        records = self._normalize(ctx, raw_records, request.kind)

        self._stage(ctx, RunStage.DEDUPING)
        dedup = ctx.dedup = Deduplicator(self.gateway, ctx.source)
        fresh: List[Tuple[ExternalRecord, str]] = []
        for record in records:
            key = dedup.key_for(record)
            try:
                dedup.check(key)
            except DuplicateError:
                ctx.counts.skipped_duplicate += 1
                ctx.outcomes["skipped_duplicate"] += 1
                continue
            fresh.append((record, key))

        self._stage(ctx, RunStage.MATCHING)
        matches, unmatched = self._match(ctx, fresh)
        keys = {identity(r): k for r, k in fresh}
        plan_totals = {
            r.plan_id: r.plan_total
            for r in records
            if r.kind == RecordKind.SALE and r.plan_id and r.plan_total is not None
        }
        groups, singles = self._group([r for r, _ in unmatched], plan_totals)

        if token.cancelled:
            raise RunCancelledError(ctx.run_id)

        self._stage(ctx, RunStage.PERSISTING)
        for candidate in matches:
            self._persist_match(ctx, candidate, keys[identity(candidate.record)])
        for group, new_members in groups:
            self._persist_group(ctx, group, new_members, keys)
        for record in singles:
            self._persist_new(ctx, record, keys[identity(record)])

        self._stage(ctx, RunStage.FINALIZING)
        return RunStatus.PARTIAL if ctx.counts.failed else RunStatus.SUCCESS

    async def fetch_all(
        self,
        ctx: _RunContext,
        since: Optional[date],
        until: Optional[date],
        token: CancellationToken,
    ) -> List[Dict[str, Any]]:
        """Fetch every page of the run's window, bounded by max_pages"""

        async def fetch(page: int) -> SourcePage:
            if token.cancelled:
                raise RunCancelledError(ctx.run_id)
            return await self.client.fetch_page(since, until, page, self.page_size)

        first = await fetch(1)
        pages = [first]

        if not first.is_last and first.total_pages:
            last = min(first.total_pages, self.max_pages)
            semaphore = asyncio.Semaphore(self.concurrency)

            async def bounded(page: int) -> SourcePage:
                async with semaphore:
                    return await fetch(page)

            # Pages already in flight complete; later ones see the cancelled token
            results = await asyncio.gather(*(bounded(n) for n in range(2, last + 1)), return_exceptions=True)
            errors = [r for r in results if isinstance(r, BaseException)]
            if errors:
                raise next((e for e in errors if isinstance(e, RunCancelledError)), errors[0])
            pages.extend(results)
            truncated = first.total_pages > self.max_pages
        else:
            page = first
            while not page.is_last and len(pages) < self.max_pages:
                page = await fetch(page.next_page)
                pages.append(page)
            truncated = not page.is_last

        if truncated:
            logger.warning("Page cap reached", extra={"run_id": ctx.run_id, "max_pages": self.max_pages})
            self._log(ctx, None, f"stopped at max_pages={self.max_pages}", level="audit")

        return [raw for p in pages for raw in p.records]

    def _normalize(
        self,
        ctx: _RunContext,
        raw_records: List[Dict[str, Any]],
        kind: Optional[RecordKind],
    ) -> List[ExternalRecord]:
        records = []
        for raw in raw_records:
            record = self._normalize_one(ctx, raw, kind)
            if record is None:
                continue
            records.append(record)
            # Installments embedded in a sale become records of their own
            for child in nested_installments(raw, record):
                installment = self._normalize_one(ctx, child, RecordKind.INSTALLMENT)
                if installment is not None:
                    records.append(installment)
        return records

    def _normalize_one(
        self,
        ctx: _RunContext,
        raw: Dict[str, Any],
        kind: Optional[RecordKind],
    ) -> Optional[ExternalRecord]:
        try:
            return normalize(raw, kind)
        except NormalizationError as e:
            reason = f"normalization failed: {e}"
        except (ArithmeticError, ValueError, TypeError) as e:
            reason = f"normalization failed: {type(e).__name__}: {e}"
        self._item_failed(ctx, raw_external_id(raw), reason)
        return None

    def _match(
        self,
        ctx: _RunContext,
        fresh: List[Tuple[ExternalRecord, str]],
    ) -> Tuple[List[MatchCandidate], List[Tuple[ExternalRecord, str]]]:
        if not fresh:
            return [], []

        matcher = self.matcher_factory()
        start, end = matcher.window_for([r for r, _ in fresh])
        pool = self.gateway.find_candidates(ctx.wallet_id, start, end)

        matches, unmatched = [], []
        for record, key in fresh:
            with warnings.catch_warnings(record=True) as caught:
                warnings.simplefilter("always", MatchAmbiguityWarning)
                candidate = matcher.match(record, pool)
            for w in caught:
                if issubclass(w.category, MatchAmbiguityWarning):
                    self._log(ctx, record.external_id, f"ambiguous match: {w.message}", level="audit")

            if candidate is None:
                unmatched.append((record, key))
            else:
                matches.append(candidate)
        return matches, unmatched

    def _group(
        self,
        unmatched: List[ExternalRecord],
        plan_totals: Dict[str, Decimal],
    ) -> Tuple[List[Tuple[InstallmentGroup, List[ExternalRecord]]], List[ExternalRecord]]:
        """
        Split unmatched records into installment groups and standalone records.

        A plan's records join the plan's OPEN group when one is stored;
        otherwise two or more of them form a new group. Everything else
        becomes a new ledger transaction.
        """
        groups = []
        extended = set()
        for plan_id, members in self.grouper.clusters(unmatched).items():
            existing = self.gateway.find_open_group(plan_id)
            if existing is not None:
                groups.append((self.grouper.extend(existing, members, plan_totals.get(plan_id)), members))
                extended.add(plan_id)

        remaining = [r for r in unmatched if not (is_groupable(r) and r.plan_id in extended)]
        groups.extend((group, group.members) for group in self.grouper.group(remaining, plan_totals))
        grouped_ids = {identity(m) for _, members in groups for m in members}

        singles = [r for r in unmatched if identity(r) not in grouped_ids]
        return groups, singles

    # Persistence

    def _item_failed(self, ctx: _RunContext, external_id: Optional[str], reason: str, count: int = 1) -> None:
        ctx.counts.failed += count
        ctx.outcomes["failed"] += count
        logger.warning("Import item failed", extra={"run_id": ctx.run_id, "external_id": external_id, "reason": reason})
        self._log(ctx, external_id, reason)

    def _persisted(self, ctx: _RunContext, outcome: str, count: int = 1) -> None:
        ctx.counts.imported += count
        ctx.outcomes[outcome] += count
        if outcome == "matched":
            ctx.counts.matched += count
        elif outcome == "grouped":
            ctx.counts.grouped += count

    def _persist_match(self, ctx: _RunContext, candidate: MatchCandidate, key: str) -> None:
        record = candidate.record
        abandoned = None
        try:
            with self.gateway.atomic():
                self.gateway.claim_transaction(
                    candidate.transaction.id,
                    external_ref(ctx.source, record),
                    {**candidate.breakdown.as_dict(), "score": candidate.score},
                )
                ctx.dedup.mark_seen(key, ctx.run_id)
                if is_groupable(record):
                    abandoned = self._abandon_open_group(record.plan_id)
        except PersistenceError as e:
            if e.systemic:
                raise
            self._item_failed(ctx, record.external_id, f"persistence failed: {e}")
            return

        self._persisted(ctx, "matched")
        match_score_histogram.observe(candidate.score)
        if abandoned:
            group_status_counter.labels(status=GroupStatus.ABANDONED.value).inc()
            self._log(
                ctx,
                record.external_id,
                f"installment group {abandoned} abandoned: plan {record.plan_id} matched individually",
                level="audit",
            )

    def _abandon_open_group(self, plan_id: str) -> Optional[str]:
        group = self.gateway.find_open_group(plan_id)
        if group is None:
            return None
        self.gateway.link_to_group(self.gateway.group_transaction_ids(group.group_id), None)
        self.gateway.set_group_status(group.group_id, GroupStatus.ABANDONED)
        return group.group_id

    def _persist_new(self, ctx: _RunContext, record: ExternalRecord, key: str) -> None:
        try:
            with self.gateway.atomic():
                self.gateway.create_transaction(
                    ctx.wallet_id,
                    record.signed_amount,
                    record.reference_date,
                    record.description or record.counterparty_name or "",
                    external_ref(ctx.source, record),
                )
                ctx.dedup.mark_seen(key, ctx.run_id)
        except PersistenceError as e:
            if e.systemic:
                raise
            self._item_failed(ctx, record.external_id, f"persistence failed: {e}")
            return
        self._persisted(ctx, "created")

    def _persist_group(
        self,
        ctx: _RunContext,
        group: InstallmentGroup,
        new_members: List[ExternalRecord],
        keys: Dict[Tuple[str, RecordKind], str],
    ) -> None:
        member_keys = {m.external_id: keys[identity(m)] for m in new_members}
        try:
            with self.gateway.atomic():
                self.gateway.save_group(group, member_keys)
                transaction_ids = [
                    self.gateway.create_transaction(
                        ctx.wallet_id,
                        m.signed_amount,
                        m.reference_date,
                        m.description or m.counterparty_name or "",
                        group_ref(group.group_id),
                    ).id
                    for m in new_members
                ]
                self.gateway.link_to_group(transaction_ids, group.group_id)
                for m in new_members:
                    ctx.dedup.mark_seen(member_keys[m.external_id], ctx.run_id)
        except PersistenceError as e:
            if e.systemic:
                raise
            for m in new_members:
                self._item_failed(ctx, m.external_id, f"persistence failed: {e}")
            return

        self._persisted(ctx, "grouped", len(new_members))
        group_status_counter.labels(status=group.status.value).inc()
        if group.status == GroupStatus.INCONSISTENT:
            self._log(
                ctx,
                group.plan_id,
                f"installment group {group.group_id} inconsistent: {'; '.join(group.issues)}",
                level="review",
            )
