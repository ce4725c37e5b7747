"""Authenticity and replay checks for inbound processor webhooks."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

import stripe

from .exceptions import DuplicateEvent, SecurityViolation
from .interfaces import AuditLogger, LedgerRepository
from .models import ProcessorEvent, SecurityAuditRecord

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300


@dataclass
class EventVerifier:
    """Validates webhook signatures and short-circuits already applied events."""

    repository: LedgerRepository
    signing_secret: str
    audit_logger: AuditLogger
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS

    def verify(
        self,
        payload: Union[bytes, str],
        signature: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ProcessorEvent:
        """Return the verified event or raise.

        Raises :class:`SecurityViolation` when the delivery cannot be trusted
        and :class:`DuplicateEvent` when it was already applied.
        """

        try:
            body = self._decode(payload)
            self._check_signature(body, signature)
            event = self._parse(body)
        except SecurityViolation as exc:
            self.audit_logger.security_violation(
                SecurityAuditRecord(
                    reason=exc.message,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            )
            raise

        if self.repository.is_event_applied(event.event_id):
            logger.info("Processor event %s (%s) already applied", event.event_id, event.kind)
            raise DuplicateEvent(event.event_id)
        return event

    def _decode(self, payload: Union[bytes, str]) -> str:
        if not isinstance(payload, bytes):
            return payload
        try:
            return payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SecurityViolation("malformed event payload") from exc

    def _check_signature(self, body: str, signature: Optional[str]) -> None:
        if not signature:
            raise SecurityViolation("signature header is missing")
        if not self.signing_secret:
            raise SecurityViolation("webhook signing secret is not configured")
        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self.signing_secret,
                tolerance=self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            raise SecurityViolation(f"signature verification failed: {exc}") from exc

    def _parse(self, body: str) -> ProcessorEvent:
        try:
            envelope = json.loads(body)
        except ValueError as exc:
            raise SecurityViolation("malformed event payload") from exc
        if not isinstance(envelope, dict):
            raise SecurityViolation("malformed event payload")

        data = envelope.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        event_id = envelope.get("id")
        kind = envelope.get("type")
        if not event_id or not kind or not isinstance(obj, dict):
            raise SecurityViolation("event envelope is missing id, type or data.object")

        created = envelope.get("created")
        try:
            created_at = datetime.fromtimestamp(int(created), tz=timezone.utc) if created else None
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise SecurityViolation("malformed event payload") from exc
        return ProcessorEvent(
            event_id=str(event_id),
            kind=str(kind),
            payload=obj,
            created_at=created_at,
        )


__all__ = ["EventVerifier"]
