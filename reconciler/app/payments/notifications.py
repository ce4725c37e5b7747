"""Fire-and-forget customer notifications and audit logging."""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Optional

import psycopg2.extras

from .interfaces import AuditLogger, NotificationGateway
from .models import NotificationKind, SecurityAuditRecord

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("payments.audit")

_TITLES: Dict[NotificationKind, str] = {
    NotificationKind.INVOICE_PAYMENT_FAILED: "Your subscription payment failed",
    NotificationKind.PAYMENT_ACTION_REQUIRED: "Your payment needs your attention",
    NotificationKind.ONE_TIME_PAYMENT_FAILED: "Your payment could not be completed",
    NotificationKind.RETRIES_EXHAUSTED: "We could not collect your subscription payment",
}


def notify_safely(
    gateway: NotificationGateway,
    customer_id: str,
    kind: NotificationKind,
    metadata: Optional[Dict[str, str]] = None,
) -> None:
    """Send a notification without letting its failure reach the payment flow."""

    try:
        gateway.notify(customer_id, kind, dict(metadata or {}))
    except Exception:
        logger.exception(
            "Notification %s for customer %s failed",
            kind.value,
            customer_id,
        )


class PostgresNotificationGateway(NotificationGateway):
    """Writes system notifications for the customer's user account."""

    def __init__(self, get_conn: Callable[[], object]) -> None:
        self._get_conn = get_conn

    def notify(self, customer_id: str, kind: NotificationKind, metadata: Dict[str, str]) -> None:
        body = ", ".join(f"{key}={value}" for key, value in sorted(metadata.items())) or None
        connection = self._get_conn()
        try:
            with connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(
                    """
                    INSERT INTO notifications (user_id, type, title, body)
                    SELECT user_id, 'system', %s, %s
                    FROM customers
                    WHERE id = %s AND user_id IS NOT NULL
                    """,
                    (_TITLES.get(kind, kind.value), body, customer_id),
                )
                if cur.rowcount == 0:
                    logger.info("Customer %s has no user account to notify", customer_id)
            connection.commit()
        except Exception:
            connection.rollback()
            raise
        finally:
            connection.close()


class BackgroundNotificationGateway(NotificationGateway):
    """Hands notifications to a worker thread so callers never wait on delivery."""

    def __init__(self, delegate: NotificationGateway, *, max_workers: int = 2) -> None:
        self._delegate = delegate
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="payment-notify")

    def notify(self, customer_id: str, kind: NotificationKind, metadata: Dict[str, str]) -> None:
        future = self._executor.submit(self._delegate.notify, customer_id, kind, metadata)
        future.add_done_callback(lambda done: self._log_failure(done, customer_id, kind))

    @staticmethod
    def _log_failure(future: Future, customer_id: str, kind: NotificationKind) -> None:
        error = future.exception()
        if error is not None:
            logger.error(
                "Background notification %s for customer %s failed: %s",
                kind.value,
                customer_id,
                error,
            )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class LoggingAuditLogger(AuditLogger):
    """Forwards security and handler failures to the ``payments.audit`` logger."""

    def security_violation(self, record: SecurityAuditRecord) -> None:
        audit_logger.warning(
            "Rejected webhook delivery: %s",
            record.reason,
            extra={
                "ip_address": record.ip_address,
                "user_agent": record.user_agent,
                "occurred_at": record.occurred_at.isoformat(),
            },
        )

    def handler_failed(self, event_id: str, kind: str, error: BaseException) -> None:
        audit_logger.error(
            "Webhook handler failed for event %s (%s): %s",
            event_id,
            kind,
            error,
            extra={"event_id": event_id, "event_kind": kind},
            exc_info=(type(error), error, error.__traceback__),
        )


__all__ = [
    "BackgroundNotificationGateway",
    "LoggingAuditLogger",
    "PostgresNotificationGateway",
    "notify_safely",
]
