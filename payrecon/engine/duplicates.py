"""Detection of payments submitted more than once."""

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from payrecon.engine.config import MatchingConfig
from payrecon.engine.models import DuplicateGroup, Payment
from payrecon.engine.normalize import normalize_name


class DuplicateDetector:
    """
    Group payments sharing direction, payer, amount and currency within a period.

    The period is the reporting month by default (``duplicate_window`` may
    narrow it to the ISO week or the day). Payers are compared in normalized
    form; a payment without a payer falls back to its normalized description.
    """

    def __init__(self, config: Optional[MatchingConfig] = None):
        self.config = config or MatchingConfig()

    def find_groups(self, payments: Iterable[Payment]) -> List[DuplicateGroup]:
        """
        Return groups of two or more payments, members ordered oldest first.

        Groups are ordered by the date of their first member.
        """
        buckets: Dict[str, List[Payment]] = defaultdict(list)
        for payment in payments:
            buckets[self.group_key(payment)].append(payment)

        groups = [
            DuplicateGroup(key=key, payments=sorted(members, key=lambda p: (p.date, p.id)))
            for key, members in buckets.items()
            if len(members) > 1
        ]
        return sorted(groups, key=lambda g: (g.first.date, g.key))

    def group_key(self, payment: Payment) -> str:
        identity = (
            payment.payer_normalized
            or normalize_name(payment.payer)
            or normalize_name(payment.description)
        )
        amount = abs(payment.amount).quantize(Decimal("0.01"))
        return "|".join([
            payment.direction.value,
            identity,
            str(amount),
            payment.currency.upper(),
            self._period(payment.date),
        ])

    def _period(self, value: date) -> str:
        window = self.config.duplicate_window
        if window == "day":
            return value.isoformat()
        if window == "week":
            year, week, _ = value.isocalendar()
            return f"{year}-W{week:02d}"
        return f"{value.year}-{value.month:02d}"
