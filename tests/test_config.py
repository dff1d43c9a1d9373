"""Unit tests for marketplace/config.py computed properties."""

from decimal import Decimal

from marketplace.config import Settings


def test_simulation_mode_without_secret_key() -> None:
    assert Settings(paymongo_secret_key="").simulation_mode is True
    assert Settings(paymongo_secret_key="sk_test_abc").simulation_mode is False


def test_is_production() -> None:
    assert Settings(env="production").is_production is True
    assert Settings(env="development").is_production is False


def test_default_commission_rate() -> None:
    assert Settings().commission_rate == Decimal("0.10")


def test_default_sweep_thresholds() -> None:
    s = Settings()
    assert s.stale_job_days == 30
    assert s.stale_escrow_days == 7
    assert s.stale_quote_days == 7
    assert s.stale_payout_days == 30
    assert s.reminder_unfunded_hours == 24
    assert s.reminder_dispute_days == 5


def test_commission_rate_from_env(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setenv("COMMISSION_RATE", "0.12")
    assert Settings().commission_rate == Decimal("0.12")
