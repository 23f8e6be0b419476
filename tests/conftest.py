"""Fixtures compartidos: base SQLite temporal, catálogo de prueba y cliente HTTP"""
import os

# Antes de importar settings: sin Redis, sin backoff y credenciales de prueba
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_123")
os.environ.setdefault("PAGOTIC_CLIENT_ID", "pagotic-client-id")
os.environ.setdefault("PAGOTIC_CLIENT_SECRET", "pagotic-client-secret")
os.environ.setdefault("PROVIDER_BACKOFF_SECONDS", "0")
os.environ.setdefault("QR_SECRET", "test-qr-secret")

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import List
import uuid

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from shared.database.connection import Base, get_db
from shared.database.models import Event, EventSession, Seat, SeatStatus, TicketCategory, User
from shared.utils.clock import utcnow
from services.ticket_purchase.services.pagotic_service import reset_token_cache
from services.ticket_purchase.services.reconciliation_service import ReconciliationService
from services.ticket_purchase.services.ticket_assets import TicketAssetStore
from services.ticket_purchase.services.ticket_issuance_service import TicketIssuanceService

from factories import RetryRecorder


@dataclass
class Catalog:
    user: User
    other_user: User
    scanner: User
    event: Event
    session: EventSession
    general: TicketCategory  # sin numerar, precio 100
    platea: TicketCategory  # numerada, precio 450
    seats: List[Seat] = field(default_factory=list)


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ticketera.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture(autouse=True)
def clean_token_cache():
    reset_token_cache()
    yield
    reset_token_cache()


@pytest.fixture
async def catalog(db) -> Catalog:
    now = utcnow()
    user = User(id=uuid.uuid4(), email="comprador@example.com", full_name="Ana Compradora", role="user", created_at=now)
    other_user = User(id=uuid.uuid4(), email="otro@example.com", role="user", created_at=now)
    scanner = User(id=uuid.uuid4(), email="puerta@example.com", role="scanner", created_at=now)
    event = Event(id=uuid.uuid4(), name="Festival de Primavera", venue_name="Estadio Central", created_at=now)
    session = EventSession(
        id=uuid.uuid4(), event_id=event.id, starts_at=now + timedelta(days=30), created_at=now
    )
    general = TicketCategory(
        id=uuid.uuid4(), session_id=session.id, name="General", price=Decimal("100.00"),
        is_seated=False, capacity_total=10, capacity_available=10, capacity_held=0, capacity_sold=0,
        created_at=now,
    )
    platea = TicketCategory(
        id=uuid.uuid4(), session_id=session.id, name="Platea", price=Decimal("450.00"),
        is_seated=True, created_at=now,
    )
    seats = [
        Seat(
            id=uuid.uuid4(), session_id=session.id, category_id=platea.id, label=f"Fila A - {n}",
            status=SeatStatus.AVAILABLE.value, updated_at=now,
        )
        for n in range(1, 4)
    ]
    db.add_all([user, other_user, scanner, event, session, general, platea, *seats])
    await db.commit()
    # Desligados de la sesión: un rollback dentro de un servicio no los expira
    db.expunge_all()
    return Catalog(
        user=user, other_user=other_user, scanner=scanner, event=event, session=session,
        general=general, platea=platea, seats=seats,
    )


@pytest.fixture
def asset_store(tmp_path):
    return TicketAssetStore(base_dir=str(tmp_path / "tickets"), base_url="/tickets")


@pytest.fixture
def retries():
    return RetryRecorder()


@pytest.fixture
def issuance_service(asset_store):
    return TicketIssuanceService(asset_store=asset_store)


@pytest.fixture
def reconciliation(issuance_service, retries):
    return ReconciliationService(
        issuance_service=issuance_service,
        issuance_retry=retries.issuance,
        asset_retry=retries.asset,
    )


@pytest.fixture
async def client(session_maker, reconciliation, monkeypatch):
    from main import app
    from shared.utils.rate_limiter import limiter
    from services.ticket_purchase.routes.webhooks import get_reconciliation_service

    monkeypatch.setattr(limiter, "enabled", False)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_reconciliation_service] = lambda: reconciliation

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http_client:
        yield http_client

    app.dependency_overrides.clear()
