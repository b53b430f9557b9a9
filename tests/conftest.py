"""Pytest fixtures for testing"""

import math
import os

# Tests never touch the configured database
os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

import httpx
import pytest
from datetime import date
from decimal import Decimal
from typing import Callable, Generator
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from recon_gateway.api.main import create_app
from recon_gateway.api.dependencies import get_session_factory, get_source_client, get_state_store
from recon_gateway.domain.models import LedgerTransaction
from recon_gateway.domain.state import InMemoryStateStore
from recon_gateway.infrastructure.clients.source import SourceClient
from recon_gateway.infrastructure.database.models import Base
from recon_gateway.infrastructure.database.repositories import SqlLedgerGateway
from recon_gateway.infrastructure.database.session import get_db
from recon_gateway.services.import_orchestrator import ImportOrchestrator
from recon_gateway.services.run_control import RunRegistry


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

SOURCE_BASE = "http://source.test"


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory() -> sessionmaker:
    return TestingSessionLocal


@pytest.fixture
def gateway(db: Session) -> SqlLedgerGateway:
    return SqlLedgerGateway(db)


@pytest.fixture
def state() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def make_transport() -> Callable[..., httpx.MockTransport]:
    """
    Factory for an httpx transport serving records like the source API.

    failures maps a page number to status codes returned (in order) before
    the page is served; with_total_pages=False omits meta.totalPages.
    """

    def factory(records, failures=None, with_total_pages=True):
        pending = {page: list(codes) for page, codes in (failures or {}).items()}
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            page = int(request.url.params.get("page", 1))
            size = int(request.url.params.get("pageSize", 100))
            calls.append(page)
            if pending.get(page):
                return httpx.Response(pending[page].pop(0), json={"error": "unavailable"})

            pages = max(1, math.ceil(len(records) / size))
            meta = {"nextPage": page + 1 if page < pages else None}
            if with_total_pages:
                meta["totalPages"] = pages
            return httpx.Response(200, json={"data": records[(page - 1) * size:page * size], "meta": meta})

        transport = httpx.MockTransport(handler)
        transport.calls = calls
        return transport

    return factory


@pytest.fixture
def make_orchestrator(gateway: SqlLedgerGateway, state: InMemoryStateStore, make_transport):
    """Orchestrator over the test database, reading records from a mock source"""

    def factory(records=(), failures=None, with_total_pages=True, **kwargs):
        transport = make_transport(list(records), failures, with_total_pages)
        client = SourceClient(
            base_url=SOURCE_BASE,
            access_token="token",
            secret_token="secret",
            backoff_base=0,
            transport=transport,
        )
        orchestrator = ImportOrchestrator(gateway, client, state, RunRegistry(state), **kwargs)
        orchestrator.transport = transport
        return orchestrator

    return factory


@pytest.fixture
def source_records() -> list[dict]:
    """Source payloads in the shapes the bookkeeping platform sends"""
    return [
        {
            "id": "V-1001",
            "data": "2024-05-02",
            "valor_total": "1.250,00",
            "nome_cliente": "Mercado Bom Preço",
            "produtos": [{"produto": {"nome_produto": "Cesta básica", "quantidade": "10", "valor_venda": "125,00"}}],
        },
        {"id": "PG-77", "tipo": "despesa", "data": "15/05/2024", "valor": "R$ 89,90", "descricao": "Conta de energia"},
        {"id": "V-1002", "data": "2024-05-20", "valor_total": 300, "cliente": {"nome": "João Lima"}},
    ]


@pytest.fixture
def installment_records() -> list[dict]:
    """Plan P9: four installments of 250.00"""
    return [
        {
            "id": f"P9-{i}",
            "venda_id": "P9",
            "numero_parcela": i,
            "quantidade_parcelas": 4,
            "valor": "250.00",
            "data_vencimento": f"2024-0{5 + i}-10",
            "nome_cliente": "Ana Souza",
        }
        for i in range(1, 5)
    ]


@pytest.fixture
def seed_transaction(gateway: SqlLedgerGateway) -> Callable[..., LedgerTransaction]:
    """Insert an unclaimed ledger transaction"""

    def factory(amount, txn_date: date, description: str = "", wallet_id: str = "default") -> LedgerTransaction:
        with gateway.atomic():
            return gateway.create_transaction(wallet_id, Decimal(str(amount)), txn_date, description, None)

    return factory


@pytest.fixture
def api_records() -> list[dict]:
    """Records the API client's mock source serves; tests extend it"""
    return []


@pytest.fixture
def client(db: Session, state: InMemoryStateStore, make_transport, api_records: list[dict]) -> TestClient:
    """Create FastAPI test client with test database, in-memory state and mock source"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_state_store] = lambda: state
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    app.dependency_overrides[get_source_client] = lambda: SourceClient(
        base_url=SOURCE_BASE, backoff_base=0, transport=make_transport(api_records)
    )
    return TestClient(app)
