"""Configuration for the payment reconciliation engine."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class EngineConfig:
    """Runtime settings shared by the webhook, retry and payout components."""

    stripe_secret_key: str
    stripe_webhook_secret: str
    currency: str
    max_retries: int
    retry_interval_days: int
    service_weeks: int
    processor_fee_rate: Decimal
    processor_fixed_fee: Decimal
    worker_revenue_share: Decimal
    referral_commission: Decimal
    processor_timeout_seconds: float
    pending_timeout_minutes: int
    payout_max_workers: int
    retry_job_enabled: bool
    retry_job_interval_seconds: float
    cron_secret: str


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_decimal(value: Optional[str], *, default: str) -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"Expected decimal value, got {value!r}") from exc


def load_engine_config(env: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """Load :class:`EngineConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    max_retries = max(0, _to_int(env_mapping.get("PAYMENT_MAX_RETRIES"), default=3))
    retry_interval_days = max(1, _to_int(env_mapping.get("PAYMENT_RETRY_INTERVAL_DAYS"), default=3))
    service_weeks = max(1, _to_int(env_mapping.get("SERVICE_WEEKS_PER_PERIOD"), default=4))

    return EngineConfig(
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY", ""),
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET", ""),
        currency=(env_mapping.get("PAYMENT_CURRENCY") or "usd").strip().lower(),
        max_retries=max_retries,
        retry_interval_days=retry_interval_days,
        service_weeks=service_weeks,
        processor_fee_rate=_to_decimal(env_mapping.get("PROCESSOR_FEE_RATE"), default="0.029"),
        processor_fixed_fee=_to_decimal(env_mapping.get("PROCESSOR_FIXED_FEE"), default="0.30"),
        worker_revenue_share=_to_decimal(env_mapping.get("WORKER_REVENUE_SHARE"), default="0.75"),
        referral_commission=_to_decimal(env_mapping.get("REFERRAL_COMMISSION"), default="5.00"),
        processor_timeout_seconds=max(1.0, _to_float(env_mapping.get("PROCESSOR_TIMEOUT_SECONDS"), default=20.0)),
        pending_timeout_minutes=max(1, _to_int(env_mapping.get("PENDING_TIMEOUT_MINUTES"), default=30)),
        payout_max_workers=max(1, _to_int(env_mapping.get("PAYOUT_MAX_WORKERS"), default=1)),
        retry_job_enabled=_to_bool(env_mapping.get("RETRY_JOB_ENABLED"), default=False),
        retry_job_interval_seconds=max(60.0, _to_float(env_mapping.get("RETRY_JOB_INTERVAL_SECONDS"), default=3600.0)),
        cron_secret=env_mapping.get("CRON_SECRET", ""),
    )


__all__ = ["EngineConfig", "load_engine_config"]
