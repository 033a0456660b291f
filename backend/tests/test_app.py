import httpx
import pytest

from app.domain.billing.constants import CHECKOUT_PROVIDER_ERROR, REQUEST_IN_PROGRESS
from app.domain.errors import BillingError
from app.infra.metrics import configure_metrics
from app.main import create_app
from app.services import AppServices, resolve_services
from app.settings import Settings, settings

pytestmark = pytest.mark.anyio


@pytest.fixture(autouse=True)
def _reset_metrics():
    yield
    configure_metrics(False)


@pytest.fixture
def app(session_factory):
    return create_app(settings, session_factory=session_factory)


async def _client(app):
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    return httpx.AsyncClient(transport=transport, base_url="http://testserver")


async def test_health_and_readiness(app):
    async with await _client(app) as client:
        health = await client.get("/healthz")
        ready = await client.get("/readyz", headers={"X-Request-ID": "req-ready"})

    assert health.status_code == 200
    assert health.json() == {"status": "ok"}
    assert ready.status_code == 200
    assert ready.json() == {"status": "ok", "database": "ok"}
    assert ready.headers["X-Request-ID"] == "req-ready"


async def test_services_are_wired_on_app_state(app, session_factory):
    services = resolve_services(app)

    assert isinstance(services, AppServices)
    assert services.idempotency.repository is services.repository
    assert services.operation_runner.service is services.idempotency
    assert services.provider_adapter.provider == "stripe"
    assert app.state.db_session_factory is session_factory


@pytest.mark.parametrize(
    "error,status",
    [
        (BillingError(detail="Billing request is already in progress.", status=409, code=REQUEST_IN_PROGRESS), 409),
        (BillingError(detail="Billing provider rejected the request.", status=502, code=CHECKOUT_PROVIDER_ERROR), 502),
    ],
)
async def test_billing_errors_render_problem_details(app, error, status):
    async def _raise_billing_error():
        raise error

    app.router.add_api_route("/billing-error", _raise_billing_error, methods=["POST"])

    async with await _client(app) as client:
        response = await client.post("/billing-error", headers={"X-Request-ID": "req-billing"})

    assert response.status_code == status
    assert response.headers["content-type"].startswith("application/problem+json")
    body = response.json()
    assert body["code"] == error.code
    assert body["status"] == status
    assert body["request_id"] == "req-billing"
    assert body["errors"] == [{"code": error.code}]


async def test_unhandled_exception_is_server_problem(app):
    async def _boom():
        raise RuntimeError("boom")

    app.router.add_api_route("/boom", _boom, methods=["GET"])

    async with await _client(app) as client:
        response = await client.get("/boom", headers={"X-Request-ID": "req-boom"})

    assert response.status_code == 500
    assert response.json()["request_id"] == "req-boom"
    assert response.json()["detail"] == "Unexpected error"


async def test_metrics_endpoint_exposes_billing_series(session_factory):
    metrics_settings = Settings(app_env="dev", metrics_enabled=True, _env_file=None)
    app = create_app(metrics_settings, session_factory=session_factory)
    services = resolve_services(app)
    services.metrics.record_billing_guardrail("BILLING_IDEMPOTENCY_LEASE_FENCED")

    async with await _client(app) as client:
        response = await client.get("/metrics")

    assert response.status_code == 200
    assert 'billing_guardrail_events_total{code="BILLING_IDEMPOTENCY_LEASE_FENCED"} 1.0' in response.text


async def test_metrics_route_absent_when_disabled(app):
    async with await _client(app) as client:
        response = await client.get("/metrics")
    assert response.status_code == 404
