import os
import sys
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("TESTING", "true")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.domain.billing.db_models import BillableEntity
from app.domain.billing.repository import BillingRepository
from app.domain.billing.service import BillingIdempotencyService
from app.infra.db import Base

OPERATION_KEY_SECRET = "test-operation-key-secret"
PROVIDER_KEY_SECRET = "test-provider-idempotency-key-secret"
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class RecordingGuardrails:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def record(self, code: str, context: dict | None = None) -> None:
        self.events.append((code, dict(context or {})))

    @property
    def codes(self) -> list[str]:
        return [code for code, _ in self.events]


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def session_factory(tmp_path, anyio_backend):
    db_path = tmp_path / "billing.db"
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        session.add_all([BillableEntity(id=entity_id) for entity_id in (7, 41, 42)])
        await session.commit()
    yield factory
    await engine.dispose()


@pytest.fixture
def repository(session_factory):
    return BillingRepository(session_factory)


@pytest.fixture
def guardrails():
    return RecordingGuardrails()


@pytest.fixture
def idempotency_service(repository, guardrails):
    return BillingIdempotencyService(
        repository,
        operation_key_secret=OPERATION_KEY_SECRET,
        provider_idempotency_key_secret=PROVIDER_KEY_SECRET,
        pending_lease_seconds=120,
        checkout_session_grace_seconds=90,
        guardrails=guardrails,
    )
