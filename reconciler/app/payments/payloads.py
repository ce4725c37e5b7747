"""Accessors for processor object payloads.

Processor API versions move a few fields around (invoice subscription ids and
subscription period bounds in particular); these helpers read both shapes.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, Mapping, Optional


def timestamp(value: Any) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def day(value: Any) -> Optional[date]:
    parsed = timestamp(value)
    return parsed.date() if parsed else None


def text(value: Any) -> Optional[str]:
    """Identifier of a possibly expanded processor reference."""

    if value is None:
        return None
    if isinstance(value, Mapping):
        value = value.get("id")
        if value is None:
            return None
    value = str(value).strip()
    return value or None


def _first_item(obj: Mapping[str, Any], key: str) -> Dict[str, Any]:
    container = obj.get(key)
    if isinstance(container, Mapping):
        data = container.get("data")
        if isinstance(data, list) and data and isinstance(data[0], Mapping):
            return dict(data[0])
    return {}


def invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    direct = text(invoice.get("subscription"))
    if direct:
        return direct
    parent = invoice.get("parent")
    if isinstance(parent, Mapping):
        details = parent.get("subscription_details")
        if isinstance(details, Mapping):
            return text(details.get("subscription"))
    return None


def invoice_period(invoice: Mapping[str, Any]) -> tuple[Optional[datetime], Optional[datetime]]:
    """Service period of the first invoice line, falling back to the invoice."""

    line = _first_item(invoice, "lines")
    period = line.get("period") if isinstance(line.get("period"), Mapping) else {}
    start = timestamp(period.get("start")) or timestamp(invoice.get("period_start"))
    end = timestamp(period.get("end")) or timestamp(invoice.get("period_end"))
    return start, end


def invoice_next_billing(invoice: Mapping[str, Any]) -> Optional[datetime]:
    """Next attempt the processor reports; paid invoices fall back to the period end."""

    next_attempt = timestamp(invoice.get("next_payment_attempt"))
    if next_attempt is not None:
        return next_attempt
    _, period_end = invoice_period(invoice)
    return period_end


def subscription_period(subscription: Mapping[str, Any]) -> tuple[Optional[datetime], Optional[datetime]]:
    item = _first_item(subscription, "items")
    start = timestamp(subscription.get("current_period_start")) or timestamp(item.get("current_period_start"))
    end = timestamp(subscription.get("current_period_end")) or timestamp(item.get("current_period_end"))
    return start, end


def subscription_unit_amount(subscription: Mapping[str, Any]) -> Optional[int]:
    item = _first_item(subscription, "items")
    price = item.get("price")
    if isinstance(price, Mapping) and price.get("unit_amount") is not None:
        return int(price["unit_amount"])
    plan = subscription.get("plan")
    if isinstance(plan, Mapping) and plan.get("amount") is not None:
        return int(plan["amount"])
    return None


__all__ = [
    "day",
    "invoice_next_billing",
    "invoice_period",
    "invoice_subscription_id",
    "subscription_period",
    "subscription_unit_amount",
    "text",
    "timestamp",
]
