"""Import runs: start, inspect, cancel and history"""

import logging
from typing import Callable, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response
from sqlalchemy.orm import Session

from recon_gateway.api.dependencies import (
    get_gateway,
    get_orchestrator,
    get_request_id,
    get_run_registry,
    get_session_factory,
    get_state_store,
)
from recon_gateway.api.v1.schemas import (
    CancelResponse,
    HistoryResponse,
    HistorySummaryResponse,
    ImportCreateRequest,
    ImportRunResponse,
    ImportSummaryResponse,
)
from recon_gateway.config import settings
from recon_gateway.domain.exceptions import PersistenceError
from recon_gateway.domain.models import ImportRunSummary, RunStatus
from recon_gateway.domain.state import StateStore, cursor_key
from recon_gateway.infrastructure.clients.source import SourceClient
from recon_gateway.infrastructure.database.repositories import SqlLedgerGateway
from recon_gateway.services.import_orchestrator import ImportOrchestrator, ImportRequest
from recon_gateway.services.run_control import RunRegistry
from recon_gateway.utils.date_utils import parse_date

router = APIRouter()
logger = logging.getLogger(__name__)


async def execute_in_background(
    session_factory: Callable[[], Session],
    client: SourceClient,
    state: StateStore,
    registry: RunRegistry,
    run_id: str,
    import_request: ImportRequest,
) -> None:
    """Execute a started run with its own session; the request's session is closed by now"""
    db = session_factory()
    try:
        orchestrator = ImportOrchestrator(SqlLedgerGateway(db), client, state, registry)
        run = orchestrator.gateway.get_run(run_id)
        await orchestrator.execute(run, import_request)
    finally:
        db.close()


@router.post("/imports", response_model=ImportSummaryResponse, status_code=202)
async def create_import(
    body: ImportCreateRequest,
    background_tasks: BackgroundTasks,
    request: Request,
    response: Response,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """
    Start an import run for an account.

    Flow:
    1. Persist the run in RUNNING state
    2. Execute it in the background (or inline with wait=true)
    3. Return the run summary; poll GET /v1/imports/{run_id} for progress
    """
    request_id = get_request_id(request)
    import_request = ImportRequest(
        account_id=body.account_id,
        since=body.since,
        until=body.until,
        wallet_id=body.wallet_id,
        trigger="manual",
    )

    try:
        run, _ = orchestrator.start(import_request)
        logger.info("Import run started", extra={"request_id": request_id, "run_id": run.run_id, "account_id": body.account_id})

        if body.wait:
            summary = await orchestrator.execute(run, import_request)
            response.status_code = 200
            return ImportSummaryResponse.from_summary(summary)

    except PersistenceError as e:
        orchestrator.gateway.db.rollback()
        logger.error("Ledger storage error", extra={"request_id": request_id, "error": str(e)})
        raise HTTPException(status_code=503, detail="Ledger storage unavailable")

    except Exception as e:
        orchestrator.gateway.db.rollback()
        logger.error(f"Unexpected error: {e}", extra={"request_id": request_id})
        raise HTTPException(status_code=500, detail="Internal server error")

    background_tasks.add_task(
        execute_in_background,
        session_factory,
        orchestrator.client,
        orchestrator.state,
        orchestrator.registry,
        run.run_id,
        import_request,
    )
    return ImportSummaryResponse.from_summary(ImportRunSummary.from_run(run))


@router.get("/imports/history", response_model=HistoryResponse)
def get_import_history(
    account_id: Optional[str] = Query(None, description="Account identifier"),
    source: Optional[str] = Query(None, description="Source system"),
    status: Optional[List[RunStatus]] = Query(None, description="Filter by run status"),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    gateway: SqlLedgerGateway = Depends(get_gateway),
):
    """
    Retrieve import runs, newest first.

    Returns:
        Page of runs with their counts and logs, plus the total matching the filters
    """
    runs, total = gateway.list_runs(
        account_id=account_id,
        source=source,
        statuses=status,
        limit=limit,
        offset=offset,
    )
    return HistoryResponse(
        total=total,
        limit=limit,
        offset=offset,
        runs=[ImportRunResponse.from_run(r) for r in runs],
    )


@router.get("/imports/history/summary", response_model=HistorySummaryResponse)
def get_import_history_summary(
    account_id: Optional[str] = Query(None, description="Account identifier"),
    gateway: SqlLedgerGateway = Depends(get_gateway),
    state: StateStore = Depends(get_state_store),
):
    """Run counts by status and the account's last successful sync date"""
    by_status = gateway.run_status_counts(account_id)
    last_sync = None
    if account_id:
        stored = state.get(cursor_key(settings.source_name, account_id))
        last_sync = parse_date(stored) if stored else None

    return HistorySummaryResponse(
        account_id=account_id,
        total=sum(by_status.values()),
        by_status=by_status,
        last_sync=last_sync,
    )


@router.get("/imports/{run_id}", response_model=ImportRunResponse)
def get_import(run_id: str, gateway: SqlLedgerGateway = Depends(get_gateway)):
    """Fetch one run with its stage, counts and full log"""
    run = gateway.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Import run not found")
    return ImportRunResponse.from_run(run)


@router.post("/imports/{run_id}/cancel", response_model=CancelResponse, status_code=202)
def cancel_import(
    run_id: str,
    gateway: SqlLedgerGateway = Depends(get_gateway),
    registry: RunRegistry = Depends(get_run_registry),
):
    """
    Request cooperative cancellation.

    The run stops before its next page fetch and finishes FAILED with
    reason "cancelled". Records already persisted stay persisted.
    """
    run = gateway.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Import run not found")
    if run.status != RunStatus.RUNNING:
        raise HTTPException(status_code=409, detail=f"Import run is {run.status.value}")
    if not registry.cancel(run_id):
        raise HTTPException(status_code=409, detail="Import run is not executing on this instance")
    return CancelResponse(run_id=run_id, cancel_requested=True)
