from __future__ import annotations

import logging
from typing import Any

from app.infra.metrics import metrics

logger = logging.getLogger(__name__)


class GuardrailRecorder:
    """Sink for named billing guardrail signals.

    Guardrails are correctness signals (lease fencing, provenance drift,
    un-normalized provider errors), not business outcomes. They go to the
    structured log and to the ``billing_guardrail_events_total`` counter.
    """

    def record(self, code: str, context: dict[str, Any] | None = None) -> None:
        payload = {"code": code, **(context or {})}
        logger.warning("billing_guardrail", extra={"extra": payload})
        metrics.record_billing_guardrail(code)


default_guardrail_recorder = GuardrailRecorder()
