import pytest
from pydantic import ValidationError

from app.settings import Settings


def test_dev_defaults_are_accepted():
    dev = Settings(app_env="dev", _env_file=None)

    assert dev.billing_pending_lease_seconds == 120
    assert dev.billing_checkout_session_grace_seconds == 90
    assert dev.billing_provider_replay_window_seconds == 23 * 60 * 60
    assert dev.billing_operation_key_secret != dev.billing_provider_idempotency_key_secret


def test_equal_key_secrets_are_rejected():
    with pytest.raises(ValidationError, match="must differ"):
        Settings(
            app_env="dev",
            billing_operation_key_secret="shared",
            billing_provider_idempotency_key_secret=" shared ",
            _env_file=None,
        )


def test_prod_rejects_placeholder_secrets():
    with pytest.raises(ValidationError, match="BILLING_OPERATION_KEY_SECRET"):
        Settings(app_env="prod", testing=False, _env_file=None)


def test_prod_requires_metrics_token_when_metrics_enabled():
    with pytest.raises(ValidationError, match="METRICS_TOKEN"):
        Settings(
            app_env="prod",
            testing=False,
            billing_operation_key_secret="op-secret",
            billing_provider_idempotency_key_secret="provider-secret",
            metrics_enabled=True,
            _env_file=None,
        )


def test_prod_with_real_secrets():
    prod = Settings(
        app_env="prod",
        testing=False,
        billing_operation_key_secret="op-secret",
        billing_provider_idempotency_key_secret="provider-secret",
        _env_file=None,
    )
    assert prod.app_env == "prod"


@pytest.mark.parametrize(
    "field,value",
    [
        ("billing_pending_lease_seconds", 5),
        ("billing_checkout_session_grace_seconds", -1),
        ("billing_provider_replay_window_seconds", 0),
    ],
)
def test_window_bounds(field, value):
    with pytest.raises(ValidationError):
        Settings(app_env="dev", _env_file=None, **{field: value})
