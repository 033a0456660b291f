import json
import logging

from app.infra.logging import clear_log_context, configure_logging, redact_secrets, update_log_context


def _last_payload(capsys):
    captured = capsys.readouterr()
    stream = (captured.out or captured.err).strip().splitlines()
    assert stream
    return json.loads(stream[-1])


def test_idempotency_keys_and_secrets_are_redacted(capsys):
    configure_logging()
    logger = logging.getLogger("billing-redaction-test")

    logger.warning(
        "billing_provider_call_failed",
        extra={
            "extra": {
                "client_idempotency_key": "idem-abc",
                "provider_idempotency_key": "f" * 64,
                "operation_key": "a" * 64,
                "detail": "Invalid API Key provided: sk_test_1234567890abcdef",
            }
        },
    )

    payload = _last_payload(capsys)
    assert payload["client_idempotency_key"] == "[REDACTED]"
    assert payload["provider_idempotency_key"] == "[REDACTED]"
    assert payload["operation_key"] == "a" * 64
    assert "sk_test_1234567890abcdef" not in payload["detail"]
    assert payload["level"] == "WARNING"


def test_log_context_is_merged_and_cleared(capsys):
    configure_logging()
    logger = logging.getLogger("billing-context-test")

    update_log_context(request_id="req-1", path="/healthz", ignored=None)
    logger.info("request")
    payload = _last_payload(capsys)
    assert payload["request_id"] == "req-1"
    assert "ignored" not in payload

    clear_log_context()
    logger.info("request")
    assert "request_id" not in _last_payload(capsys)


def test_redact_secrets_masks_tokens_and_emails():
    redacted = redact_secrets("retry with Bearer abc.def for owner@example.com")
    assert "abc.def" not in redacted
    assert "owner@example.com" not in redacted
