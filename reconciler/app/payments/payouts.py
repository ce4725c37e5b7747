"""Operator payout batches settled through a selectable payout rail."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import uuid4

from .exceptions import StateConflict
from .interfaces import LedgerRepository, PayoutRail
from .models import (
    BatchPayment,
    BatchStatus,
    BatchSummary,
    PaymentBatch,
    PayoutMethod,
    PayoutStatus,
    PayoutType,
    SettlementKind,
    SettlementResult,
)
from .money import round_cents

logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "processing interrupted"

_RESOLVED = {PayoutStatus.SUCCEEDED, PayoutStatus.FAILED}


def payout_idempotency_key(payout_id: str, attempt: int) -> str:
    """Processor key for one processing attempt; reprocessing a batch starts a new attempt."""

    return f"payout-{payout_id}-{attempt}"


def aggregate_batch_status(items: Sequence[BatchPayment]) -> BatchStatus:
    """Batch status derived from its items after processing.

    COMPLETED when every item succeeded, FAILED when every item failed (or
    there is nothing to settle), PARTIAL otherwise.
    """

    if not items:
        return BatchStatus.FAILED
    statuses = {item.status for item in items}
    if statuses == {PayoutStatus.SUCCEEDED}:
        return BatchStatus.COMPLETED
    if statuses == {PayoutStatus.FAILED}:
        return BatchStatus.FAILED
    return BatchStatus.PARTIAL


def summarize(items: Iterable[BatchPayment]) -> BatchSummary:
    total = success = failed = 0
    for item in items:
        total += 1
        if item.status == PayoutStatus.SUCCEEDED:
            success += 1
        elif item.status == PayoutStatus.FAILED:
            failed += 1
    return BatchSummary(total_payments=total, success_count=success, failed_count=failed)


@dataclass
class BatchPayoutProcessor:
    """Creates, settles and recovers payout batches.

    Items are settled independently; one item's failure is recorded on that
    item and never stops the others. The batch status is only derived once
    every persisted item has resolved; a batch whose item outcome could not be
    written stays PROCESSING until the stale-claim watchdog recovers it.
    """

    repository: LedgerRepository
    rails: Dict[PayoutMethod, PayoutRail]
    max_workers: int = 1

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create_payout(
        self,
        payout_type: PayoutType,
        recipient_id: str,
        amount: Decimal,
        *,
        reference: Optional[str] = None,
        repository: Optional[LedgerRepository] = None,
    ) -> BatchPayment:
        """Queue a PENDING payout, inside the caller's transaction when ``repository`` is given."""

        if not recipient_id:
            raise ValueError("recipient_id is required")
        amount = round_cents(Decimal(amount))
        if amount <= 0:
            raise ValueError("Payout amount must be positive")
        if payout_type == PayoutType.REFUND and not reference:
            raise ValueError("Refunds must reference the original payment intent")

        payout = (repository or self.repository).create_batch_payment(
            BatchPayment(
                payout_id=f"po_{uuid4().hex}",
                type=payout_type,
                recipient_id=recipient_id,
                amount=amount,
                status=PayoutStatus.PENDING,
                reference=reference,
            )
        )
        logger.info("Queued %s payout %s of %s for %s", payout_type.value, payout.payout_id, amount, recipient_id)
        return payout

    def create_batch(
        self,
        name: str,
        created_by: str,
        *,
        description: Optional[str] = None,
        payout_ids: Sequence[str] = (),
    ) -> Tuple[PaymentBatch, List[BatchPayment]]:
        name = (name or "").strip()
        if not name:
            raise ValueError("Batch name is required")

        requested = list(dict.fromkeys(payout_ids))
        now = self._now()
        with self.repository.transaction() as tx:
            batch = tx.create_batch(
                PaymentBatch(
                    batch_id=f"bat_{uuid4().hex}",
                    name=name,
                    description=description,
                    status=BatchStatus.DRAFT,
                    created_by=created_by,
                    summary=BatchSummary(total_payments=len(requested)),
                    notes=[f"{now.isoformat()} created by {created_by}"],
                    created_at=now,
                    updated_at=now,
                )
            )
            if requested:
                assigned = tx.assign_to_batch(batch.batch_id, requested)
                if assigned != len(requested):
                    raise StateConflict(
                        f"{len(requested) - assigned} of {len(requested)} payouts are not in the pending pool"
                    )
            items = list(tx.list_batch_payments(batch.batch_id))

        logger.info("Created payout batch %s with %s items", batch.batch_id, len(items))
        return batch, items

    def get_batch(self, batch_id: str) -> Tuple[PaymentBatch, List[BatchPayment]]:
        batch = self.repository.get_batch(batch_id)
        if batch is None:
            raise LookupError(f"Payment batch {batch_id} not found")
        return batch, list(self.repository.list_batch_payments(batch_id))

    def delete_batch(self, batch_id: str) -> None:
        batch = self.repository.get_batch(batch_id)
        if batch is None:
            raise LookupError(f"Payment batch {batch_id} not found")
        if batch.status != BatchStatus.DRAFT:
            raise StateConflict("Only draft batches can be deleted", current_status=batch.status.value)
        if not self.repository.delete_batch(batch_id):
            current = self.repository.get_batch(batch_id)
            raise StateConflict(
                "Batch changed while deleting",
                current_status=current.status.value if current else None,
            )
        logger.info("Deleted draft payout batch %s", batch_id)

    def process_batch(self, batch_id: str, payout_method: PayoutMethod) -> PaymentBatch:
        rail = self.rails.get(payout_method)
        if rail is None:
            raise ValueError(f"Payout method {payout_method.value} is not available")

        batch = self.repository.get_batch(batch_id)
        if batch is None:
            raise LookupError(f"Payment batch {batch_id} not found")
        if not batch.is_processable:
            raise StateConflict(
                f"Batch cannot be processed while {batch.status.value}",
                current_status=batch.status.value,
            )
        items = list(self.repository.list_batch_payments(batch_id))
        if not items:
            raise StateConflict("Batch has no payments to process", current_status=batch.status.value)

        now = self._now()
        claimed = self.repository.claim_batch(batch_id, payout_method=payout_method, started_at=now)
        if claimed is None:
            current = self.repository.get_batch(batch_id)
            raise StateConflict(
                "Batch is already being processed",
                current_status=current.status.value if current else None,
            )
        logger.info("Processing payout batch %s via %s", batch_id, payout_method.value)

        attempt = int(now.timestamp())
        self._settle_all([item for item in items if not item.is_settled], rail, attempt)

        resolved = list(self.repository.list_batch_payments(batch_id))
        unrecorded = [item.payout_id for item in resolved if item.status not in _RESOLVED]
        if unrecorded:
            logger.error(
                "Payout batch %s left PROCESSING: outcome of %s not recorded",
                batch_id,
                ", ".join(unrecorded),
            )
            return claimed
        return self._finalize(claimed, resolved, f"processed via {payout_method.value}")

    def add_to_batch(self, batch_id: str, payout_ids: Sequence[str]) -> Tuple[PaymentBatch, List[BatchPayment]]:
        requested = list(dict.fromkeys(payout_ids))
        if not requested:
            raise ValueError("No payout ids provided")
        with self.repository.transaction() as tx:
            batch = self._lock_draft(tx, batch_id)
            assigned = tx.assign_to_batch(batch_id, requested)
            if assigned != len(requested):
                raise StateConflict(
                    f"{len(requested) - assigned} of {len(requested)} payouts are not in the pending pool"
                )
            batch, items = self._refresh_total(tx, batch)
        logger.info("Added %s payouts to batch %s", assigned, batch_id)
        return batch, items

    def remove_from_batch(self, batch_id: str, payout_ids: Sequence[str]) -> Tuple[PaymentBatch, List[BatchPayment]]:
        requested = list(dict.fromkeys(payout_ids))
        if not requested:
            raise ValueError("No payout ids provided")
        with self.repository.transaction() as tx:
            batch = self._lock_draft(tx, batch_id)
            released = tx.release_from_batch(batch_id, requested)
            batch, items = self._refresh_total(tx, batch)
        logger.info("Returned %s payouts from batch %s to the pool", released, batch_id)
        return batch, items

    def recover_stale_batches(self, started_before: datetime) -> int:
        """Fail unfinished items of batches stuck in PROCESSING and recompute them."""

        recovered = 0
        for batch in self.repository.list_stale_batches(started_before):
            try:
                resolved = []
                for item in self.repository.list_batch_payments(batch.batch_id):
                    if item.status not in _RESOLVED:
                        item = self.repository.save_batch_payment(
                            item.model_copy(update={"status": PayoutStatus.FAILED, "error_detail": INTERRUPTED_REASON})
                        )
                    resolved.append(item)
                self._finalize(batch, resolved, "recovered after interrupted processing")
                recovered += 1
            except Exception:
                logger.exception("Failed to recover stale payout batch %s", batch.batch_id)
        return recovered

    def _lock_draft(self, tx: LedgerRepository, batch_id: str) -> PaymentBatch:
        batch = tx.lock_batch(batch_id)
        if batch is None:
            raise LookupError(f"Payment batch {batch_id} not found")
        if batch.status != BatchStatus.DRAFT:
            raise StateConflict("Only draft batches can change their payouts", current_status=batch.status.value)
        return batch

    def _refresh_total(self, tx: LedgerRepository, batch: PaymentBatch) -> Tuple[PaymentBatch, List[BatchPayment]]:
        items = list(tx.list_batch_payments(batch.batch_id))
        saved = tx.save_batch(
            batch.model_copy(
                update={
                    "summary": BatchSummary(total_payments=len(items)),
                    "updated_at": self._now(),
                }
            )
        )
        return saved, items

    def _settle_all(self, items: List[BatchPayment], rail: PayoutRail, attempt: int) -> None:
        if not items:
            return
        if self.max_workers <= 1 or len(items) == 1:
            for item in items:
                self._settle_one(item, rail, attempt)
            return

        workers = min(self.max_workers, len(items))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="payout") as executor:
            futures = [executor.submit(self._settle_one, item, rail, attempt) for item in items]
            for future in futures:
                future.result()

    def _settle_one(self, payout: BatchPayment, rail: PayoutRail, attempt: int) -> None:
        try:
            recipient = self.repository.get_payout_recipient(payout.recipient_id)
            result = rail.settle(
                payout,
                recipient,
                idempotency_key=payout_idempotency_key(payout.payout_id, attempt),
            )
        except Exception as exc:
            logger.exception("Payout %s raised while settling", payout.payout_id)
            result = SettlementResult(kind=SettlementKind.TRANSIENT_ERROR, detail=str(exc) or type(exc).__name__)

        if result.succeeded:
            updated = payout.model_copy(
                update={
                    "status": PayoutStatus.SUCCEEDED,
                    "reference": result.reference or payout.reference,
                    "error_detail": None,
                    "paid_at": self._now(),
                }
            )
        else:
            updated = payout.model_copy(
                update={
                    "status": PayoutStatus.FAILED,
                    "error_detail": result.detail or result.kind.value,
                }
            )
            logger.warning("Payout %s failed: %s", payout.payout_id, updated.error_detail)

        try:
            self.repository.save_batch_payment(updated)
        except Exception:
            logger.exception("Could not record outcome of payout %s", payout.payout_id)

    def _finalize(self, batch: PaymentBatch, items: List[BatchPayment], action: str) -> PaymentBatch:
        now = self._now()
        status = aggregate_batch_status(items)
        summary = summarize(items)
        note = (
            f"{now.isoformat()} {action}: {summary.success_count}/{summary.total_payments} succeeded, "
            f"{summary.failed_count} failed"
        )
        saved = self.repository.save_batch(
            batch.model_copy(
                update={
                    "status": status,
                    "summary": summary,
                    "notes": [*batch.notes, note],
                    "completed_at": now,
                    "updated_at": now,
                }
            )
        )
        logger.info(
            "Payout batch %s finished as %s (%s succeeded, %s failed)",
            batch.batch_id,
            status.value,
            summary.success_count,
            summary.failed_count,
        )
        return saved


__all__ = [
    "BatchPayoutProcessor",
    "INTERRUPTED_REASON",
    "aggregate_batch_status",
    "payout_idempotency_key",
    "summarize",
]
