"""Confidence scoring of a payment against one proforma."""

from datetime import date
from decimal import Decimal
from typing import List, Optional, Tuple

from payrecon.engine.config import MatchingConfig
from payrecon.engine.models import Payment, Proforma, ScoreResult
from payrecon.engine.normalize import (
    name_in_text,
    name_similarity,
    normalize_name,
    references_fullnumber,
)

# Reason codes
EXPLICIT_REFERENCE = "explicit_reference"
AMOUNT_EXACT = "amount_exact"
AMOUNT_PARTIAL = "amount_partial"
AMOUNT_OVERPAID = "amount_overpaid"
POSSIBLE_PREPAYMENT = "possible_prepayment_50"
NAME_MATCH = "name_match"
NAME_SIMILAR = "name_similar"
NAME_MISMATCH = "name_mismatch"
DATE_CLOSE = "date_close"
DATE_FAR = "date_far"
DATE_UNKNOWN = "date_unknown"
CURRENCY_CONVERTED = "currency_converted"


class Scorer:
    """
    Combine independent weighted signals into a 0-100 confidence score.

    Signals:
    1. Amount: full weight within epsilon of the remaining balance, otherwise
       a share that shrinks as the difference grows.
    2. Name: normalized payer/buyer similarity above a floor.
    3. Date: linear decay over the configured window from the closest of the
       proforma issue and due dates.

    An invoice number quoted in the payment description overrides the sum.
    """

    def __init__(self, config: Optional[MatchingConfig] = None):
        self.config = config or MatchingConfig()

    def score(self, payment: Payment, proforma: Proforma) -> ScoreResult:
        """
        Score one payment against one proforma.

        Args:
            payment: Incoming payment.
            proforma: Candidate invoice.

        Returns:
            ScoreResult with score in [0, 100], reason codes and
            ``amount_diff = payment amount - proforma remaining``.
        """
        reasons: List[str] = []

        amount, converted = self.converted_amount(payment, proforma)
        if amount is None:
            return ScoreResult(score=0.0, reasons=["currency_mismatch"], amount_diff=Decimal("0"))
        if converted:
            reasons.append(f"{CURRENCY_CONVERTED}:{payment.currency.upper()}->{proforma.currency.upper()}")

        remaining = proforma.remaining
        amount_diff = amount - remaining

        amount_score = self._amount_score(amount_diff, remaining, reasons)
        self._prepayment_hint(amount, proforma, reasons)
        name_score = self._name_score(payment, proforma, reasons)
        date_score = self._date_score(payment.date, proforma, reasons)

        total = amount_score + name_score + date_score

        if references_fullnumber(payment.description, proforma.fullnumber):
            reasons.insert(0, EXPLICIT_REFERENCE)
            total = self.config.explicit_reference_score

        return ScoreResult(
            score=round(max(0.0, min(100.0, total)), 2),
            reasons=reasons,
            amount_diff=amount_diff,
        )

    def converted_amount(self, payment: Payment, proforma: Proforma) -> Tuple[Optional[Decimal], bool]:
        """Payment amount in the proforma currency, and whether a conversion happened."""
        rate = self.config.rate(payment.currency, proforma.currency)
        if rate is None:
            return None, False
        if rate == 1 and payment.currency.upper() == proforma.currency.upper():
            return abs(payment.amount), False
        return (abs(payment.amount) * rate).quantize(Decimal("0.01")), True

    def _amount_score(self, amount_diff: Decimal, remaining: Decimal, reasons: List[str]) -> float:
        weight = self.config.amount_weight
        magnitude = abs(amount_diff)

        if magnitude <= self.config.amount_epsilon:
            reasons.append(AMOUNT_EXACT)
            return weight

        code = AMOUNT_OVERPAID if amount_diff > 0 else AMOUNT_PARTIAL
        reasons.append(f"{code}:amount_diff={amount_diff:.2f}")

        if remaining <= 0:
            return 0.0

        # Symmetric in the sign of the difference so the score only depends on |diff|
        ratio = float(remaining / (remaining + magnitude))
        return weight * self.config.partial_amount_factor * ratio

    def _prepayment_hint(self, amount: Decimal, proforma: Proforma, reasons: List[str]) -> None:
        if proforma.total <= 0:
            return
        if abs(amount - proforma.total / 2) <= self.config.amount_epsilon:
            reasons.append(POSSIBLE_PREPAYMENT)

    def _name_score(self, payment: Payment, proforma: Proforma, reasons: List[str]) -> float:
        buyer = proforma.buyer_normalized or normalize_name(proforma.buyer_name)
        payer = payment.payer_normalized or normalize_name(payment.payer)

        similarity = max(
            name_similarity(payer, buyer),
            name_in_text(buyer, normalize_name(payment.description)),
        )

        if similarity < self.config.name_similarity_floor:
            reasons.append(NAME_MISMATCH)
            return 0.0

        if similarity >= 0.999:
            reasons.append(NAME_MATCH)
        else:
            reasons.append(f"{NAME_SIMILAR}:{similarity:.2f}")
        return self.config.name_weight * similarity

    def _date_score(self, payment_date: date, proforma: Proforma, reasons: List[str]) -> float:
        reference_dates = [d for d in (proforma.issue_date, proforma.due_date) if d is not None]
        if not reference_dates:
            reasons.append(DATE_UNKNOWN)
            return 0.0

        distance = min(abs((payment_date - d).days) for d in reference_dates)
        window = self.config.date_window_days
        if window == 0 or distance >= window:
            if distance == 0:
                reasons.append(f"{DATE_CLOSE}:0d")
                return self.config.date_weight
            reasons.append(f"{DATE_FAR}:{distance}d")
            return 0.0

        reasons.append(f"{DATE_CLOSE}:{distance}d")
        return self.config.date_weight * (1 - distance / window)
