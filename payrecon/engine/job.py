"""Batch reconciliation pass over pending payments."""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, Iterable, Optional, Set

from payrecon.engine.errors import NotFound, ReconciliationError
from payrecon.engine.models import ItemOutcome, ManualStatus, PassReport, Payment, PaymentStatus
from payrecon.engine.status import RESCORABLE_STATUSES

logger = logging.getLogger(__name__)


class ReconciliationJob:
    """
    Re-score every unmatched and needs-review payment.

    Scoring runs in a thread pool; each payment's decision commits on its own
    under the per-payment lock. ``cancel()`` stops submitting new payments,
    while payments already submitted run to completion.
    """

    def __init__(self, engine, max_workers: Optional[int] = None):
        self.engine = engine
        self.max_workers = max_workers or engine.config.max_workers
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self, payment_ids: Optional[Iterable[str]] = None) -> PassReport:
        """
        Run the pass.

        Args:
            payment_ids: Restrict the pass to these payments; all pending ones otherwise.

        Returns:
            PassReport with status counts and per-payment outcomes.
        """
        report = PassReport()
        pending = self._pending(payment_ids, report)
        report.total = len(pending) + report.ignored + report.failed

        queue = iter(pending)
        in_flight: Dict[Future, str] = {}
        window = self.max_workers * 2

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            exhausted = False
            while True:
                while not exhausted and len(in_flight) < window:
                    if self.cancelled:
                        break
                    payment = next(queue, None)
                    if payment is None:
                        exhausted = True
                        break
                    in_flight[pool.submit(self.engine.reconcile_with_decision, payment.id)] = payment.id

                if not in_flight:
                    break

                done: Set[Future]
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    self._collect(report, in_flight.pop(future), future)

        if self.cancelled and not exhausted:
            report.cancelled = True
            logger.warning("Reconciliation pass cancelled before all payments were submitted")

        logger.info(
            "Pass finished: %d total, %d matched, %d needs review, %d unmatched, %d ignored, %d failed",
            report.total, report.matched, report.needs_review, report.unmatched,
            report.ignored, report.failed,
        )
        return report

    def _pending(self, payment_ids: Optional[Iterable[str]], report: PassReport):
        if payment_ids is not None:
            candidates = []
            for pid in payment_ids:
                try:
                    candidates.append(self.engine.payments.get(pid))
                except NotFound as e:
                    logger.warning("Payment %s skipped: %s", pid, e)
                    report.failed += 1
                    report.items.append(ItemOutcome(pid, ok=False, detail=str(e), error_code=e.code))
        else:
            candidates = self.engine.payments.list(statuses=RESCORABLE_STATUSES)

        pending = []
        for payment in candidates:
            if payment.manual_status != ManualStatus.NONE or payment.status not in RESCORABLE_STATUSES:
                continue
            if not payment.is_matchable:
                report.ignored += 1
                report.items.append(ItemOutcome(payment.id, ok=True, detail="ignored"))
                continue
            pending.append(payment)
        return pending

    def _collect(self, report: PassReport, payment_id: str, future: Future) -> None:
        try:
            payment, decision = future.result()
        except ReconciliationError as e:
            logger.warning("Payment %s failed: %s", payment_id, e)
            report.failed += 1
            report.items.append(ItemOutcome(payment_id, ok=False, detail=str(e), error_code=e.code))
            return
        except Exception as e:
            logger.exception("Unexpected error while reconciling payment %s", payment_id)
            report.failed += 1
            report.items.append(ItemOutcome(payment_id, ok=False, detail=str(e), error_code="internal_error"))
            return

        self._count(report, payment)
        if decision is not None:
            report.decisions[payment_id] = decision
        report.items.append(ItemOutcome(payment_id, ok=True, detail=payment.status.value))

    def _count(self, report: PassReport, payment: Payment) -> None:
        if payment.status == PaymentStatus.MATCHED:
            report.matched += 1
        elif payment.status == PaymentStatus.NEEDS_REVIEW:
            report.needs_review += 1
        elif payment.status == PaymentStatus.UNMATCHED:
            report.unmatched += 1
        else:
            report.ignored += 1
