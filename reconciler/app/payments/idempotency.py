"""Exactly-once execution keyed by a unique ``(scope, key)`` ledger row."""
from __future__ import annotations

from typing import Callable, Optional, Tuple, TypeVar

from .interfaces import LedgerRepository

T = TypeVar("T")

PROCESSOR_EVENT_SCOPE = "processor-event"
SERVICE_WEEK_SCOPE = "service-week"
REFERRAL_COMMISSION_SCOPE = "referral-commission"


def ensure_once(
    repository: LedgerRepository,
    scope: str,
    key: str,
    fn: Callable[[LedgerRepository], T],
) -> Tuple[Optional[T], bool]:
    """Run ``fn`` only if ``(scope, key)`` has never been claimed.

    The claim and everything ``fn`` writes share one transaction: if ``fn``
    raises, the claim is rolled back with the rest and a later call may try
    again. Returns ``(result, True)`` when ``fn`` ran, ``(None, False)`` when
    the key was already claimed.
    """

    with repository.transaction() as tx:
        if not tx.claim_idempotency_key(scope, key):
            return None, False
        return fn(tx), True


__all__ = [
    "PROCESSOR_EVENT_SCOPE",
    "REFERRAL_COMMISSION_SCOPE",
    "SERVICE_WEEK_SCOPE",
    "ensure_once",
]
