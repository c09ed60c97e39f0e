"""Decision engine: automatic matching policy and the manual reconciliation workflow."""

import logging
from decimal import Decimal
from typing import Callable, List, Optional, Tuple, TypeVar

from payrecon.engine.binding import BindingTransaction
from payrecon.engine.candidates import CandidateGenerator, sort_candidates
from payrecon.engine.config import MatchingConfig
from payrecon.engine.duplicates import DuplicateDetector
from payrecon.engine.errors import (
    ConcurrentModification,
    InvalidBinding,
    NoAutoMatch,
    NotFound,
    ReconciliationError,
)
from payrecon.engine.job import ReconciliationJob
from payrecon.engine.models import (
    BatchReport,
    Candidate,
    Decision,
    Direction,
    DuplicateGroup,
    ItemOutcome,
    ManualStatus,
    MatchOrigin,
    MutationResult,
    Payment,
    PassReport,
    PaymentDetails,
    PaymentStatus,
    Proforma,
    ProformaStatus,
)
from payrecon.engine.normalize import normalize_fullnumber
from payrecon.engine.scorer import Scorer
from payrecon.engine.status import AUTOMATIC_STATUSES, Trigger, check_transition, is_rescorable

logger = logging.getLogger(__name__)

T = TypeVar("T")

MANUAL_CONFIRMED = "manual_confirmed"


class ReconciliationEngine:
    """
    Reconcile incoming payments against open proformas.

    Matching Strategy:
    1. Candidates: open proformas linked by invoice number, CRM deal, buyer
       name or issue date (see CandidateGenerator).
    2. Scoring: weighted amount, name and date signals (see Scorer).
    3. Decision: the best candidate is auto-matched when it reaches the
       auto-approval threshold and no other candidate is within the tie
       margin; anything else with candidates needs review.

    Auto-matches are proposals. Proforma balances only change when a payment
    is bound through approve, assign, unmatch, reset or delete, and every
    such change commits together with the payment or not at all.
    """

    def __init__(
        self,
        payments,
        proformas,
        config: Optional[MatchingConfig] = None,
        crm_resolver=None,
    ):
        """
        Initialize the engine.

        Args:
            payments: Payment repository (get/list/save/delete, override log, locks).
            proformas: Proforma store (find_open_proformas/get/apply_payment, locks).
            config: Matching configuration; defaults when omitted.
            crm_resolver: Optional CRM linkage resolver.
        """
        self.payments = payments
        self.proformas = proformas
        self.config = config or MatchingConfig()
        self.scorer = Scorer(self.config)
        self.generator = CandidateGenerator(
            proformas, self.config, scorer=self.scorer, crm_resolver=crm_resolver
        )
        self.detector = DuplicateDetector(self.config)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_payments(
        self,
        direction: Optional[Direction] = None,
        status: Optional[PaymentStatus] = None,
    ) -> List[Payment]:
        return self.payments.list(direction=direction, statuses=[status] if status else None)

    def get_payment_details(self, payment_id: str) -> PaymentDetails:
        """Payment with freshly scored candidates; a bound proforma is listed first."""
        payment = self.payments.get(payment_id)
        candidates = self.generator.generate(payment)

        if payment.manual_status == ManualStatus.APPROVED and payment.matched_proforma:
            bound = self.proformas.get(payment.matched_proforma)
            candidates = [Candidate(
                proforma_fullnumber=bound.fullnumber,
                score=100.0,
                reasons=[MANUAL_CONFIRMED],
                amount_diff=Decimal("0"),
                remaining_at_evaluation=bound.remaining,
            )] + [c for c in candidates if c.proforma_fullnumber != bound.fullnumber]

        return PaymentDetails(
            payment=payment,
            candidates=candidates,
            overrides=self.payments.overrides(payment_id),
        )

    def list_duplicate_groups(self, direction: Optional[Direction] = None) -> List[DuplicateGroup]:
        return self.detector.find_groups(self.payments.list(direction=direction))

    # ------------------------------------------------------------------
    # Automatic matching
    # ------------------------------------------------------------------

    def decide(self, candidates: List[Candidate]) -> Decision:
        """Apply the auto-approval policy to scored candidates."""
        if not candidates:
            return Decision(
                status=PaymentStatus.UNMATCHED,
                confidence=None,
                auto_proforma_fullnumber=None,
                reason="No matching proforma found",
            )

        ranked = sort_candidates(candidates)
        top = ranked[0]
        runner_up = ranked[1] if len(ranked) > 1 else None
        unambiguous = runner_up is None or top.score - runner_up.score > self.config.tie_margin

        if top.score >= self.config.auto_approve_threshold and unambiguous:
            return Decision(
                status=PaymentStatus.MATCHED,
                confidence=top.score,
                auto_proforma_fullnumber=top.proforma_fullnumber,
                reason=", ".join(top.reasons),
                candidates=ranked,
            )

        # A strictly best candidate is kept as the suggestion; exact ties suggest nothing
        strictly_best = runner_up is None or top.score > runner_up.score
        if runner_up is not None and not unambiguous:
            reason = (
                f"Ambiguous: {top.proforma_fullnumber} ({top.score:g}) vs "
                f"{runner_up.proforma_fullnumber} ({runner_up.score:g})"
            )
        else:
            reason = f"Below auto-approval threshold: {', '.join(top.reasons)}"

        return Decision(
            status=PaymentStatus.NEEDS_REVIEW,
            confidence=top.score,
            auto_proforma_fullnumber=top.proforma_fullnumber if strictly_best else None,
            reason=reason,
            candidates=ranked,
        )

    def evaluate(self, payment: Payment) -> Decision:
        """Generate, score and decide for one payment without mutating anything."""
        return self.decide(self.generator.generate(payment))

    def reconcile_payment(self, payment_id: str) -> Payment:
        """Re-score one payment and store the automatic decision."""
        payment, _ = self.reconcile_with_decision(payment_id)
        return payment

    def reconcile_with_decision(self, payment_id: str) -> Tuple[Payment, Optional[Decision]]:
        """
        Re-score one payment; approved, rejected and already matched payments are left as is.

        Scoring runs on a snapshot outside the payment lock; the decision is
        committed only if the payment has not changed since, otherwise it is
        re-evaluated once from a fresh read.
        """
        def attempt() -> Tuple[Payment, Optional[Decision]]:
            snapshot = self.payments.get(payment_id)
            if not is_rescorable(snapshot):
                return snapshot, None

            decision = self.evaluate(snapshot)

            with self.payments.locks.hold(payment_id):
                payment = self.payments.get(payment_id)
                if payment.version != snapshot.version:
                    raise ConcurrentModification(
                        f"Payment {payment_id} changed while scoring", entity_id=payment_id
                    )
                self._apply_decision(payment, decision)
                saved = self.payments.save(payment)

            logger.info(
                "Payment %s -> %s (confidence=%s, proforma=%s)",
                payment_id, saved.status.value, saved.confidence, saved.auto_proforma_fullnumber,
            )
            return saved, decision

        return self._with_retry("reconcile", payment_id, attempt)

    def run_pass(
        self,
        payment_ids: Optional[List[str]] = None,
        job: Optional[ReconciliationJob] = None,
    ) -> PassReport:
        """Re-score all pending payments (or the given ones) in a batch job."""
        job = job or ReconciliationJob(self)
        return job.run(payment_ids)

    def _apply_decision(self, payment: Payment, decision: Decision) -> None:
        check_transition(payment, decision.status, Trigger.AUTO)
        payment.status = decision.status
        payment.auto_status = decision.status
        payment.confidence = decision.confidence
        payment.auto_proforma_fullnumber = decision.auto_proforma_fullnumber
        payment.match_reason = decision.reason
        payment.origin = MatchOrigin.AUTO

    # ------------------------------------------------------------------
    # Manual workflow
    # ------------------------------------------------------------------

    def assign(
        self,
        payment_id: str,
        fullnumber: str,
        comment: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> MutationResult:
        """
        Bind a payment to an explicit proforma regardless of score.

        A previous binding to another proforma is released in the same
        transaction.

        Raises:
            NotFound: Unknown payment.
            InvalidBinding: Unknown or cancelled proforma, or no conversion rate.
        """
        number = normalize_fullnumber(fullnumber)
        if not number:
            raise InvalidBinding("A proforma number is required", entity_id=payment_id)

        def attempt() -> MutationResult:
            with self.payments.locks.hold(payment_id):
                payment = self.payments.get(payment_id)
                target = self._binding_target(number, payment_id)

                if (
                    payment.manual_status == ManualStatus.APPROVED
                    and payment.matched_proforma == target.fullnumber
                ):
                    return MutationResult(payment, {target.fullnumber: target.remaining}, changed=False)

                check_transition(payment, PaymentStatus.APPROVED, Trigger.ASSIGN)
                amount = self._bound_amount(payment, target)
                release = (payment.matched_proforma, payment.bound_amount)

                payment.matched_proforma = target.fullnumber
                payment.bound_amount = amount
                payment.manual_status = ManualStatus.APPROVED
                payment.status = PaymentStatus.APPROVED
                payment.origin = MatchOrigin.MANUAL

                saved, remaining = self._commit_binding(payment, release, (target.fullnumber, amount))

            self.payments.append_override(
                payment_id, "assign", fullnumber=target.fullnumber, comment=comment, actor_context=actor
            )
            logger.info("Payment %s assigned to %s by %s", payment_id, target.fullnumber, actor or "unknown")
            return MutationResult(saved, remaining)

        return self._with_retry("assign", payment_id, attempt)

    def unmatch(
        self,
        payment_id: str,
        comment: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> MutationResult:
        """
        Release any binding and return to the automatic classification.

        ``auto_proforma_fullnumber`` and ``confidence`` are kept.
        """
        def attempt() -> MutationResult:
            with self.payments.locks.hold(payment_id):
                payment = self.payments.get(payment_id)

                if (
                    not payment.is_bound
                    and payment.manual_status == ManualStatus.NONE
                    and payment.status in AUTOMATIC_STATUSES
                ):
                    return MutationResult(payment, changed=False)

                check_transition(payment, payment.auto_status, Trigger.UNMATCH)
                release = (payment.matched_proforma, payment.bound_amount)

                payment.matched_proforma = None
                payment.bound_amount = None
                payment.manual_status = ManualStatus.NONE
                payment.status = payment.auto_status
                payment.origin = MatchOrigin.AUTO

                saved, remaining = self._commit_binding(payment, release, (None, None))

            self.payments.append_override(
                payment_id, "unmatch", fullnumber=release[0], comment=comment, actor_context=actor
            )
            logger.info("Payment %s unmatched (released %s)", payment_id, release[0])
            return MutationResult(saved, remaining)

        return self._with_retry("unmatch", payment_id, attempt)

    def approve(self, payment_id: str, actor: Optional[str] = None) -> MutationResult:
        """
        Commit the automatic match to the proforma's books.

        Raises:
            NotFound: Unknown payment.
            NoAutoMatch: The payment has no automatic candidate.
            InvalidTransition: The payment was rejected.
        """
        def attempt() -> MutationResult:
            with self.payments.locks.hold(payment_id):
                payment = self.payments.get(payment_id)

                if payment.status == PaymentStatus.APPROVED:
                    return MutationResult(payment, changed=False)
                if not payment.auto_proforma_fullnumber:
                    raise NoAutoMatch(
                        f"Payment {payment_id} has no automatic match to approve",
                        entity_id=payment_id,
                    )

                check_transition(payment, PaymentStatus.APPROVED, Trigger.APPROVE)
                target = self._binding_target(payment.auto_proforma_fullnumber, payment_id)
                amount = self._bound_amount(payment, target)
                release = (payment.matched_proforma, payment.bound_amount)

                payment.matched_proforma = target.fullnumber
                payment.bound_amount = amount
                payment.manual_status = ManualStatus.APPROVED
                payment.status = PaymentStatus.APPROVED

                saved, remaining = self._commit_binding(payment, release, (target.fullnumber, amount))

            self.payments.append_override(
                payment_id, "approve", fullnumber=target.fullnumber,
                comment=saved.match_reason or None, actor_context=actor,
            )
            logger.info("Payment %s approved for %s", payment_id, target.fullnumber)
            return MutationResult(saved, remaining)

        return self._with_retry("approve", payment_id, attempt)

    def reject(
        self,
        payment_id: str,
        comment: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> MutationResult:
        """Exclude a payment from automatic matching until it is unmatched."""
        def attempt() -> MutationResult:
            with self.payments.locks.hold(payment_id):
                payment = self.payments.get(payment_id)

                if payment.status == PaymentStatus.REJECTED:
                    return MutationResult(payment, changed=False)

                check_transition(payment, PaymentStatus.REJECTED, Trigger.REJECT)
                release = (payment.matched_proforma, payment.bound_amount)

                payment.matched_proforma = None
                payment.bound_amount = None
                payment.manual_status = ManualStatus.REJECTED
                payment.status = PaymentStatus.REJECTED
                payment.origin = MatchOrigin.MANUAL

                saved, remaining = self._commit_binding(payment, release, (None, None))

            self.payments.append_override(
                payment_id, "reject", comment=comment, actor_context=actor
            )
            logger.info("Payment %s rejected", payment_id)
            return MutationResult(saved, remaining)

        return self._with_retry("reject", payment_id, attempt)

    def bulk_approve(self, actor: Optional[str] = None) -> BatchReport:
        """Approve every automatic match that has no manual decision yet."""
        report = BatchReport()
        for payment in self.payments.list(statuses=[PaymentStatus.MATCHED]):
            if payment.manual_status != ManualStatus.NONE:
                continue
            self._run_item(
                report, payment.id, "approved",
                lambda pid=payment.id: self.approve(pid, actor=actor or "bulk-auto"),
            )

        logger.info(
            "Bulk approve: %d processed, %d skipped, %d failed",
            report.processed, report.skipped, report.failed,
        )
        return report

    def reset(self) -> BatchReport:
        """Revert automatic matches to unmatched; manual decisions are kept."""
        report = BatchReport()
        pending = self.payments.list(statuses=[PaymentStatus.MATCHED, PaymentStatus.NEEDS_REVIEW])
        for payment in pending:
            if payment.manual_status != ManualStatus.NONE:
                continue
            self._run_item(report, payment.id, "reset", lambda pid=payment.id: self._reset_one(pid))

        logger.info("Reset %d automatic matches (%d failed)", report.processed, report.failed)
        return report

    def _reset_one(self, payment_id: str) -> MutationResult:
        def attempt() -> MutationResult:
            with self.payments.locks.hold(payment_id):
                payment = self.payments.get(payment_id)
                if payment.manual_status != ManualStatus.NONE or payment.status not in (
                    PaymentStatus.MATCHED, PaymentStatus.NEEDS_REVIEW,
                ):
                    return MutationResult(payment, changed=False)

                check_transition(payment, PaymentStatus.UNMATCHED, Trigger.RESET)
                release = (payment.matched_proforma, payment.bound_amount)

                payment.matched_proforma = None
                payment.bound_amount = None
                payment.status = PaymentStatus.UNMATCHED
                payment.auto_status = PaymentStatus.UNMATCHED
                payment.confidence = None
                payment.auto_proforma_fullnumber = None
                payment.match_reason = "reset by user"
                payment.origin = MatchOrigin.AUTO

                saved, remaining = self._commit_binding(payment, release, (None, None))
            return MutationResult(saved, remaining)

        return self._with_retry("reset", payment_id, attempt)

    # ------------------------------------------------------------------
    # Deletion (duplicate cleanup)
    # ------------------------------------------------------------------

    def delete_duplicate(self, payment_id: str) -> MutationResult:
        """Delete a payment and release any proforma binding it held."""
        def attempt() -> MutationResult:
            with self.payments.locks.hold(payment_id):
                payment = self.payments.get(payment_id)
                release = (payment.matched_proforma, payment.bound_amount)
                _, remaining = self._commit_binding(payment, release, (None, None), delete=True)

            logger.info("Payment %s deleted (released %s)", payment_id, release[0])
            return MutationResult(None, remaining)

        return self._with_retry("delete", payment_id, attempt)

    def delete_all_except_first(self, group: DuplicateGroup) -> BatchReport:
        """
        Delete every member of a duplicate group except the oldest.

        Members are processed independently; the report lists which deletions
        succeeded and which failed.
        """
        report = BatchReport()
        for payment in group.payments[1:]:
            self._run_item(report, payment.id, "deleted", lambda pid=payment.id: self.delete_duplicate(pid))
        logger.info(
            "Duplicate group %s: kept %s, deleted %d, failed %d",
            group.key, group.first.id, report.processed, report.failed,
        )
        return report

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _binding_target(self, fullnumber: str, payment_id: str) -> Proforma:
        try:
            target = self.proformas.get(fullnumber)
        except NotFound as e:
            raise InvalidBinding(f"Proforma {fullnumber} does not exist", entity_id=payment_id) from e
        if target.status == ProformaStatus.CANCELLED:
            raise InvalidBinding(f"Proforma {fullnumber} is cancelled", entity_id=payment_id)
        return target

    def _bound_amount(self, payment: Payment, target: Proforma) -> Decimal:
        amount, _ = self.scorer.converted_amount(payment, target)
        if amount is None:
            raise InvalidBinding(
                f"No exchange rate {payment.currency}->{target.currency} to bind payment "
                f"{payment.id} to {target.fullnumber}",
                entity_id=payment.id,
            )
        return amount

    def _commit_binding(
        self,
        payment: Payment,
        release: Tuple[Optional[str], Optional[Decimal]],
        bind: Tuple[Optional[str], Optional[Decimal]],
        delete: bool = False,
    ) -> Tuple[Payment, dict]:
        """
        Apply proforma deltas and persist the payment as one unit.

        Proforma locks are held for the whole commit so at most one binding
        mutation per proforma is in flight.
        """
        old_number, old_amount = release
        new_number, new_amount = bind
        if old_number == new_number and old_amount == new_amount:
            old_number = new_number = None

        with self.proformas.locks.hold(old_number, new_number):
            txn = BindingTransaction(self.proformas)
            try:
                if old_number and old_amount:
                    txn.apply(old_number, -old_amount)
                if new_number and new_amount:
                    txn.apply(new_number, new_amount)
                if delete:
                    self.payments.delete(payment)
                    saved = payment
                else:
                    saved = self.payments.save(payment)
            except Exception:
                txn.rollback()
                raise
        return saved, dict(txn.remaining)

    def _with_retry(self, operation: str, payment_id: str, fn: Callable[[], T]) -> T:
        """Run fn, retrying once with a fresh read on a concurrent modification."""
        try:
            return fn()
        except ConcurrentModification:
            logger.warning("Concurrent modification during %s of payment %s; retrying", operation, payment_id)
            return fn()

    def _run_item(self, report: BatchReport, payment_id: str, label: str, fn: Callable[[], MutationResult]) -> None:
        try:
            result = fn()
        except ReconciliationError as e:
            logger.warning("%s failed for payment %s: %s", label, payment_id, e)
            report.record(ItemOutcome(payment_id, ok=False, detail=str(e), error_code=e.code))
            return
        except Exception as e:
            logger.exception("Unexpected error while processing payment %s", payment_id)
            report.record(ItemOutcome(payment_id, ok=False, detail=str(e), error_code="internal_error"))
            return

        if result.changed:
            report.record(ItemOutcome(payment_id, ok=True, detail=label))
        else:
            report.record(ItemOutcome(payment_id, ok=True, detail="unchanged"), skipped=True)
