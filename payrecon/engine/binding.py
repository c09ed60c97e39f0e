"""All-or-nothing application of payment deltas to proforma balances."""

import logging
from decimal import Decimal
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)


class BindingTransaction:
    """
    Record proforma deltas as they are applied so they can be undone.

    The proforma store only offers ``apply_payment(fullnumber, delta)``, so a
    binding that touches two proformas (release old, bind new) or that fails
    while saving the payment is rolled back by applying the inverse deltas.
    """

    def __init__(self, proforma_store):
        self.proforma_store = proforma_store
        self.applied: List[Tuple[str, Decimal]] = []
        self.remaining: Dict[str, Decimal] = {}

    def apply(self, fullnumber: str, delta: Decimal) -> None:
        proforma = self.proforma_store.apply_payment(fullnumber, delta)
        self.applied.append((proforma.fullnumber, delta))
        self.remaining[proforma.fullnumber] = proforma.remaining

    def rollback(self) -> None:
        """Undo applied deltas in reverse order."""
        while self.applied:
            fullnumber, delta = self.applied.pop()
            try:
                proforma = self.proforma_store.apply_payment(fullnumber, -delta)
            except Exception:
                logger.exception(
                    "Could not roll back delta %s on proforma %s; balance needs repair",
                    delta, fullnumber,
                )
                raise
            self.remaining[fullnumber] = proforma.remaining
