"""Candidate generation: the bounded set of open proformas plausibly related to a payment."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional, Set

from payrecon.engine.config import MatchingConfig
from payrecon.engine.models import Candidate, Payment, Proforma, ProformaFilter
from payrecon.engine.normalize import (
    name_in_text,
    name_similarity,
    normalize_name,
    references_fullnumber,
)
from payrecon.engine.scorer import Scorer

logger = logging.getLogger(__name__)


@dataclass
class _Linkage:
    proforma: Proforma
    referenced: bool
    crm_linked: bool
    name_overlap: float
    date_distance: Optional[int]
    amount_gap: Decimal

    def prefilter_key(self):
        # Lower sorts first
        return (
            not self.referenced,
            not self.crm_linked,
            -self.name_overlap,
            self.amount_gap,
            self.date_distance if self.date_distance is not None else 10**6,
            self.proforma.fullnumber,
        )


class CandidateGenerator:
    """
    Select and score open proformas for an incoming payment.

    A proforma qualifies when it has a positive remaining balance, its currency
    equals the payment's (or a conversion rate is configured), and at least one
    linkage holds: the description quotes its number, the CRM resolver links
    it, the buyer name overlaps the payer/description, or it was issued within
    the date window around the payment.

    Collaborators:
        proforma_store: object with ``find_open_proformas(ProformaFilter)``.
        crm_resolver: optional object with ``resolve(payment) -> Iterable[str]``
            returning linked proforma fullnumbers.
    """

    def __init__(
        self,
        proforma_store,
        config: Optional[MatchingConfig] = None,
        scorer: Optional[Scorer] = None,
        crm_resolver=None,
    ):
        self.proforma_store = proforma_store
        self.config = config or MatchingConfig()
        self.scorer = scorer or Scorer(self.config)
        self.crm_resolver = crm_resolver

    def generate(self, payment: Payment) -> List[Candidate]:
        """
        Return scored candidates for a payment, best first.

        An empty list is a valid outcome, not an error. Refunds and outgoing
        payments never get candidates.
        """
        if not payment.is_matchable:
            return []

        linkages = self._linkages(payment)
        linkages.sort(key=_Linkage.prefilter_key)
        shortlisted = linkages[: self.config.max_candidates]

        candidates: List[Candidate] = []
        for link in shortlisted:
            result = self.scorer.score(payment, link.proforma)
            candidates.append(Candidate(
                proforma_fullnumber=link.proforma.fullnumber,
                score=result.score,
                reasons=result.reasons,
                amount_diff=result.amount_diff,
                remaining_at_evaluation=link.proforma.remaining,
            ))

        return sort_candidates(candidates)

    def _currencies(self, payment: Payment) -> List[str]:
        currencies = {payment.currency.upper()}
        for src, dst in self.config.exchange_rates:
            if src == payment.currency.upper():
                currencies.add(dst)
            if dst == payment.currency.upper():
                currencies.add(src)
        return sorted(currencies)

    def _crm_links(self, payment: Payment) -> Set[str]:
        if self.crm_resolver is None:
            return set()
        return set(self.crm_resolver.resolve(payment) or ())

    def _linkages(self, payment: Payment) -> List[_Linkage]:
        proformas: Iterable[Proforma] = self.proforma_store.find_open_proformas(
            ProformaFilter(currencies=self._currencies(payment))
        )
        crm_links = self._crm_links(payment)
        payer = payment.payer_normalized or normalize_name(payment.payer)
        description = normalize_name(payment.description)

        result: List[_Linkage] = []
        for proforma in proformas:
            if proforma.remaining <= 0:
                continue

            amount, _ = self.scorer.converted_amount(payment, proforma)
            if amount is None:
                continue

            buyer = proforma.buyer_normalized or normalize_name(proforma.buyer_name)
            name_overlap = max(
                name_similarity(payer, buyer),
                name_in_text(buyer, description),
                1.0 if buyer and payer and (buyer in payer or payer in buyer) else 0.0,
            )
            referenced = (
                payment.reference_fullnumber == proforma.fullnumber
                or references_fullnumber(payment.description, proforma.fullnumber)
            )
            crm_linked = proforma.fullnumber in crm_links or (
                payment.deal_id is not None and payment.deal_id == proforma.deal_id
            )

            dates = [d for d in (proforma.issue_date, proforma.due_date) if d is not None]
            date_distance = min((abs((payment.date - d).days) for d in dates), default=None)
            in_window = date_distance is not None and date_distance <= self.config.date_window_days

            if not (referenced or crm_linked or name_overlap >= self.config.name_similarity_floor or in_window):
                continue

            result.append(_Linkage(
                proforma=proforma,
                referenced=referenced,
                crm_linked=crm_linked,
                name_overlap=name_overlap,
                date_distance=date_distance,
                amount_gap=abs(amount - proforma.remaining),
            ))

        logger.debug("Payment %s: %d linked proformas", payment.id, len(result))
        return result


def sort_candidates(candidates: List[Candidate]) -> List[Candidate]:
    """Order candidates by score descending; fullnumber breaks ties deterministically."""
    return sorted(candidates, key=lambda c: (-c.score, c.proforma_fullnumber))
