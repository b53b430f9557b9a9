"""Dependency injection for FastAPI endpoints"""

from typing import Callable

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from recon_gateway.domain.state import StateStore
from recon_gateway.infrastructure.clients.source import SourceClient
from recon_gateway.infrastructure.database.repositories import SqlLedgerGateway
from recon_gateway.infrastructure.database.session import SessionLocal, get_db
from recon_gateway.infrastructure.database.state_store import SqlStateStore
from recon_gateway.services.import_orchestrator import ImportOrchestrator
from recon_gateway.services.run_control import RunRegistry
from recon_gateway.services.webhook_ingestion import WebhookIngestion


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_session_factory() -> Callable[[], Session]:
    """Session factory for work that outlives the request (background runs)"""
    return SessionLocal


def get_state_store(request: Request) -> StateStore:
    """App-wide state store shared by all requests"""
    store = getattr(request.app.state, "state_store", None)
    if store is None:
        store = request.app.state.state_store = SqlStateStore(SessionLocal)
    return store


def get_run_registry(request: Request, state: StateStore = Depends(get_state_store)) -> RunRegistry:
    """App-wide registry of in-flight runs (locks and cancellation tokens)"""
    registry = getattr(request.app.state, "run_registry", None)
    if registry is None:
        registry = request.app.state.run_registry = RunRegistry(state)
    return registry


def get_source_client() -> SourceClient:
    """Provide bookkeeping source API client instance"""
    return SourceClient()


def get_gateway(db: Session = Depends(get_db)) -> SqlLedgerGateway:
    return SqlLedgerGateway(db)


def get_orchestrator(
    gateway: SqlLedgerGateway = Depends(get_gateway),
    client: SourceClient = Depends(get_source_client),
    state: StateStore = Depends(get_state_store),
    registry: RunRegistry = Depends(get_run_registry),
) -> ImportOrchestrator:
    return ImportOrchestrator(gateway, client, state, registry)


def get_webhook_ingestion(orchestrator: ImportOrchestrator = Depends(get_orchestrator)) -> WebhookIngestion:
    return WebhookIngestion(orchestrator)
