"""
Overdue Sweeper Module

Periodic re-evaluation of open payments so that stored statuses follow the
clock even when nobody touches a payment. Only payments whose derived status
or installment statuses actually changed are written back.
"""

import asyncio
from datetime import datetime
from typing import Dict, List, Optional

from .audit import AuditEventType
from .clock import Clock
from .errors import ConcurrencyError
from .logging_config import get_logger, log_action
from .payments import Payment, PaymentManager, SWEEPABLE_STATUSES, refresh_payment


logger = get_logger("institute_payments.sweeper")


class OverdueSweeper:
    """
    Re-derives pending and partial payments against the current time
    """

    def __init__(self, payment_manager: PaymentManager, clock: Optional[Clock] = None):
        self.payment_manager = payment_manager
        self.storage = payment_manager.storage
        self.audit_trail = payment_manager.audit_trail
        self.clock = clock or payment_manager.clock

    def _load_candidates(self) -> List[Payment]:
        table = self.payment_manager.payments_table
        rows: List[Dict] = []
        for status in SWEEPABLE_STATUSES:
            rows += self.storage.find(table, {"status": status.value})
        return [Payment.from_dict(row) for row in rows]

    def sweep_overdue(self, now: Optional[datetime] = None) -> int:
        """
        Re-evaluate every pending or partial payment.

        Payments already overdue or completed are not touched. A payment that
        was modified concurrently is skipped and picked up by the next sweep.

        Returns:
            Number of payments whose stored state was updated
        """
        now = now or self.clock.now()
        updated = 0

        with self.storage.atomic():
            for payment in self._load_candidates():
                previous_status = payment.status
                if not refresh_payment(payment, now):
                    continue

                expected_version = payment.version
                payment.updated_at = now
                try:
                    self.payment_manager._save_payment(payment, expected_version)
                except ConcurrencyError as e:
                    logger.warning(f"Sweep skipped payment {payment.id}: {e.message}")
                    continue

                updated += 1
                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_STATUS_SWEPT,
                    entity_type="payment",
                    entity_id=payment.id,
                    metadata={
                        "previous_status": previous_status.value,
                        "status": payment.status.value
                    }
                )

        if updated:
            log_action(logger, "info", f"Overdue sweep updated {updated} payment(s)",
                       action="overdue_sweep", extra={"updated": updated})
        else:
            logger.debug("Overdue sweep found nothing to update")
        return updated

    async def run_periodically(
        self,
        interval_seconds: float,
        stop_event: Optional[asyncio.Event] = None
    ) -> None:
        """Sweep every interval until stop_event is set or the task is cancelled"""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Overdue sweeper started (interval {interval_seconds}s)")

        while not stop_event.is_set():
            # Runs on the loop thread: SQLiteStorage shares one transaction flag across callers
            try:
                self.sweep_overdue()
            except Exception as e:
                log_action(logger, "error", f"Overdue sweep failed: {e}",
                           action="overdue_sweep", exc_info=True)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info("Overdue sweeper stopped")
