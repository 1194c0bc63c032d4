from decimal import Decimal

from dca_engine.config import OPENOCEAN_EXCHANGE, Settings


def test_cron_secret_legacy_alias(monkeypatch):
    """Cron secret should load from the legacy CRON_SECRET variable when present."""

    monkeypatch.delenv("CRON_SECRET_KEY", raising=False)
    monkeypatch.setenv("CRON_SECRET", "alias-from-legacy")

    settings = Settings()

    assert settings.cron_secret_key == "alias-from-legacy"
    assert settings.has_cron_secret


def test_cron_secret_direct_env(monkeypatch):
    """Environment-provided CRON_SECRET_KEY remains the primary source."""

    monkeypatch.setenv("CRON_SECRET_KEY", "primary-key")
    monkeypatch.setenv("CRON_SECRET", "alias-from-legacy")

    settings = Settings()

    assert settings.cron_secret_key == "primary-key"


def test_defaults(monkeypatch):
    for name in ("CRON_SECRET_KEY", "CRON_SECRET", "REDIS_URL", "QUOTE_SLIPPAGE_BPS"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.has_cron_secret is False
    assert settings.has_redis is False
    assert settings.quote_slippage_pct == Decimal("1.5")
    assert settings.platform_fee_percentage == Decimal("0.1")
    assert OPENOCEAN_EXCHANGE in settings.allowed_contracts


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("QUOTE_SLIPPAGE_BPS", "50")
    monkeypatch.setenv("ENABLE_MANUAL_TRIGGER", "false")

    settings = Settings(_env_file=None)

    assert settings.has_redis
    assert settings.quote_slippage_pct == Decimal("0.5")
    assert settings.enable_manual_trigger is False
