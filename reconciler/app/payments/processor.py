"""Payment processor integration returning tagged settlement results.

Processor exceptions stop here: callers branch on :class:`SettlementKind`
instead of catching SDK errors.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from .interfaces import PayoutRail, SettlementClient
from .models import (
    BatchPayment,
    Customer,
    PayoutMethod,
    PayoutRecipient,
    PayoutType,
    SettlementKind,
    SettlementResult,
)
from .money import to_minor_units

logger = logging.getLogger(__name__)

_ACTION_REQUIRED_CODES = {"authentication_required", "requires_action"}


class StripeConfigurationError(RuntimeError):
    """Raised when mandatory Stripe configuration is missing."""


def build_stripe_client(secret_key: str, *, timeout_seconds: float) -> stripe.StripeClient:
    if not secret_key:
        raise StripeConfigurationError("STRIPE_SECRET_KEY is not configured.")
    return stripe.StripeClient(
        secret_key,
        http_client=stripe.new_default_http_client(timeout=timeout_seconds),
        max_network_retries=0,
    )


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _from_stripe_error(exc: stripe.StripeError) -> SettlementResult:
    code = getattr(exc, "code", None)
    message = getattr(exc, "user_message", None) or str(exc) or type(exc).__name__
    if isinstance(exc, stripe.CardError):
        if code in _ACTION_REQUIRED_CODES:
            return SettlementResult(kind=SettlementKind.REQUIRES_ACTION, detail=message)
        decline_code = getattr(exc, "error", None) and _field(exc.error, "decline_code")
        return SettlementResult(kind=SettlementKind.DECLINED, detail=decline_code or code or message)
    if isinstance(exc, stripe.APIConnectionError):
        return SettlementResult(kind=SettlementKind.TRANSIENT_ERROR, detail=f"timeout or connection error: {message}")
    return SettlementResult(kind=SettlementKind.TRANSIENT_ERROR, detail=message)


class StripeSettlementClient(SettlementClient):
    """Off-session charges against the customer's saved payment method."""

    def __init__(self, client: stripe.StripeClient, *, currency: str = "usd") -> None:
        self._client = client
        self._currency = currency

    def charge_off_session(
        self,
        *,
        customer: Customer,
        amount: Decimal,
        description: str,
        idempotency_key: str,
    ) -> SettlementResult:
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": self._currency,
            "customer": customer.processor_customer_id,
            "payment_method": customer.payment_method_id,
            "off_session": True,
            "confirm": True,
            "description": description,
        }
        try:
            intent = self._client.payment_intents.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as exc:
            logger.warning("Off-session charge for customer %s failed: %s", customer.customer_id, exc)
            result = _from_stripe_error(exc)
            intent_id = _field(getattr(exc, "error", None), "payment_intent")
            if intent_id is not None:
                result = result.model_copy(update={"reference": _field(intent_id, "id")})
            return result

        status = _field(intent, "status")
        intent_id = _field(intent, "id")
        if status == "succeeded":
            return SettlementResult(kind=SettlementKind.SUCCESS, reference=intent_id)
        if status == "requires_action":
            return SettlementResult(
                kind=SettlementKind.REQUIRES_ACTION,
                detail="Payment requires customer action",
                reference=intent_id,
            )
        return SettlementResult(
            kind=SettlementKind.DECLINED,
            detail=f"Payment failed with status: {status}",
            reference=intent_id,
        )


class StripeTransferRail(PayoutRail):
    """Direct transfers to connected accounts; refunds go back to the original intent."""

    method = PayoutMethod.DIRECT_TRANSFER

    def __init__(self, client: stripe.StripeClient, *, currency: str = "usd") -> None:
        self._client = client
        self._currency = currency

    def settle(
        self,
        payout: BatchPayment,
        recipient: Optional[PayoutRecipient],
        *,
        idempotency_key: str,
    ) -> SettlementResult:
        options = {"idempotency_key": idempotency_key}
        try:
            if payout.type == PayoutType.REFUND:
                if not payout.reference:
                    return SettlementResult(kind=SettlementKind.DECLINED, detail="Refund has no payment intent reference")
                refund = self._client.refunds.create(
                    params={"payment_intent": payout.reference, "amount": to_minor_units(payout.amount)},
                    options=options,
                )
                return SettlementResult(kind=SettlementKind.SUCCESS, reference=_field(refund, "id"))

            if recipient is None or not recipient.processor_account_id:
                return SettlementResult(
                    kind=SettlementKind.DECLINED,
                    detail="Recipient does not have a connected processor account",
                )
            transfer = self._client.transfers.create(
                params={
                    "amount": to_minor_units(payout.amount),
                    "currency": self._currency,
                    "destination": recipient.processor_account_id,
                    "transfer_group": f"{payout.type.value.lower()}-{payout.payout_id}",
                },
                options=options,
            )
        except stripe.StripeError as exc:
            logger.warning("Payout %s via %s failed: %s", payout.payout_id, self.method.value, exc)
            return _from_stripe_error(exc)
        return SettlementResult(kind=SettlementKind.SUCCESS, reference=_field(transfer, "id"))


class ManualPayoutRail(PayoutRail):
    """Rails settled outside the processor; the operator confirms by processing."""

    def __init__(self, method: PayoutMethod, *, requires_handle: bool = False) -> None:
        self.method = method
        self._requires_handle = requires_handle

    def settle(
        self,
        payout: BatchPayment,
        recipient: Optional[PayoutRecipient],
        *,
        idempotency_key: str,
    ) -> SettlementResult:
        if self._requires_handle and (recipient is None or not recipient.peer_app_handle):
            return SettlementResult(
                kind=SettlementKind.DECLINED,
                detail="Recipient does not have a peer payment app handle",
            )
        handle = recipient.peer_app_handle if recipient and self._requires_handle else None
        return SettlementResult(
            kind=SettlementKind.SUCCESS,
            detail=f"Paid via {self.method.value}. Manually marked as paid.",
            reference=handle or f"manual-{payout.payout_id}",
        )


def default_payout_rails(client: Optional[stripe.StripeClient], *, currency: str = "usd") -> Dict[PayoutMethod, PayoutRail]:
    rails: Dict[PayoutMethod, PayoutRail] = {
        PayoutMethod.PEER_APP: ManualPayoutRail(PayoutMethod.PEER_APP, requires_handle=True),
        PayoutMethod.CASH: ManualPayoutRail(PayoutMethod.CASH),
        PayoutMethod.CHECK: ManualPayoutRail(PayoutMethod.CHECK),
    }
    if client is not None:
        rails[PayoutMethod.DIRECT_TRANSFER] = StripeTransferRail(client, currency=currency)
    return rails


__all__ = [
    "ManualPayoutRail",
    "StripeConfigurationError",
    "StripeSettlementClient",
    "StripeTransferRail",
    "build_stripe_client",
    "default_payout_rails",
]
