"""Error taxonomy for the payment reconciliation engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class PaymentEngineError(Exception):
    """Base error carrying a machine readable code and an HTTP mapping."""

    code: str
    message: str
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class SecurityViolation(PaymentEngineError):
    """Webhook signature could not be verified. Always audited, never retried."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            code="invalid_signature",
            message=reason,
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class DuplicateEvent(PaymentEngineError):
    """The processor event was already applied to the ledger."""

    def __init__(self, event_id: str) -> None:
        super().__init__(
            code="duplicate_event",
            message=f"Event {event_id} already applied",
            status_code=status.HTTP_200_OK,
            detail={"event_id": event_id},
        )


class UnknownEntity(PaymentEngineError):
    """An event references a subscription or customer unknown to the ledger."""

    def __init__(self, entity: str, reference: Optional[str]) -> None:
        super().__init__(
            code="unknown_entity",
            message=f"No local {entity} for {reference!r}",
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"entity": entity, "reference": reference},
        )


class TransientProcessorError(PaymentEngineError):
    """Network or timeout failure talking to the payment processor."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code="processor_unavailable",
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
        )


class PermanentSettlementFailure(PaymentEngineError):
    """Settlement was refused for a reason blind retrying cannot fix."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code="settlement_refused",
            message=message,
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
        )


class StateConflict(PaymentEngineError):
    """The target row is not in a state that allows the requested operation."""

    def __init__(self, message: str, *, current_status: Optional[str] = None) -> None:
        super().__init__(
            code="state_conflict",
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            detail={"current_status": current_status} if current_status else None,
        )


__all__ = [
    "DuplicateEvent",
    "PaymentEngineError",
    "PermanentSettlementFailure",
    "SecurityViolation",
    "StateConflict",
    "TransientProcessorError",
    "UnknownEntity",
]
