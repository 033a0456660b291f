import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.billing_guardrails = None
            self.billing_provider_outcomes = None
            self.billing_idempotency_claims = None
            self.billing_stale_expired = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_runner_up = None
            self.job_errors = None
            return

        self.billing_guardrails = Counter(
            "billing_guardrail_events_total",
            "Billing guardrail signals by code.",
            ["code"],
            registry=self.registry,
        )
        self.billing_provider_outcomes = Counter(
            "billing_provider_outcomes_total",
            "Provider error classifications by operation family and action.",
            ["family", "action"],
            registry=self.registry,
        )
        self.billing_idempotency_claims = Counter(
            "billing_idempotency_claims_total",
            "Idempotency claim dispositions by action.",
            ["action", "result"],
            registry=self.registry,
        )
        self.billing_stale_expired = Counter(
            "billing_idempotency_stale_resolved_total",
            "Stale pending idempotency rows resolved by the sweep.",
            registry=self.registry,
        )
        self.job_heartbeat = Gauge(
            "job_heartbeat_timestamp",
            "Last heartbeat timestamp per job.",
            ["job"],
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Last successful run timestamp per job.",
            ["job"],
            registry=self.registry,
        )
        self.job_runner_up = Gauge(
            "job_runner_up",
            "Job runner liveness per job.",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Job failures by job and reason.",
            ["job", "reason"],
            registry=self.registry,
        )

    def record_billing_guardrail(self, code: str) -> None:
        if not self.enabled or self.billing_guardrails is None:
            return
        self.billing_guardrails.labels(code=code or "unknown").inc()

    def record_provider_outcome(self, family: str, action: str) -> None:
        if not self.enabled or self.billing_provider_outcomes is None:
            return
        self.billing_provider_outcomes.labels(family=family or "unknown", action=action or "unknown").inc()

    def record_idempotency_claim(self, action: str, result: str) -> None:
        if not self.enabled or self.billing_idempotency_claims is None:
            return
        self.billing_idempotency_claims.labels(action=action or "unknown", result=result or "unknown").inc()

    def record_stale_resolved(self, count: int) -> None:
        if not self.enabled or self.billing_stale_expired is None:
            return
        if count <= 0:
            return
        self.billing_stale_expired.inc(count)

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None or self.job_runner_up is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_heartbeat.labels(job=job).set(ts)
        self.job_runner_up.labels(job=job).set(1)

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_last_success.labels(job=job).set(ts)

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        safe_reason = reason or "unknown"
        self.job_errors.labels(job=job, reason=safe_reason).inc()

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
