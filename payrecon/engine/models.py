"""Data models for the payment reconciliation engine."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class PaymentSource(Enum):
    """Where a payment record came from."""
    BANK = "bank"
    PROCESSOR = "processor"
    CASH = "cash"
    RECEIPT = "receipt"


class Direction(Enum):
    """Money flow direction."""
    IN = "in"
    OUT = "out"


class PaymentStatus(Enum):
    """Lifecycle status of a payment."""
    UNMATCHED = "unmatched"
    NEEDS_REVIEW = "needs_review"
    MATCHED = "matched"
    APPROVED = "approved"
    REJECTED = "rejected"


class ManualStatus(Enum):
    """Manual override applied by a human."""
    NONE = "none"
    APPROVED = "approved"
    REJECTED = "rejected"


class MatchOrigin(Enum):
    """Who produced the current match."""
    AUTO = "auto"
    MANUAL = "manual"


class ProformaStatus(Enum):
    """Status of an invoice awaiting payment."""
    OPEN = "open"
    PAID = "paid"
    CANCELLED = "cancelled"


@dataclass
class Payment:
    """A single financial movement to reconcile."""
    id: str
    source: PaymentSource
    direction: Direction
    amount: Decimal
    currency: str
    payer: str
    description: str
    date: date
    status: PaymentStatus = PaymentStatus.UNMATCHED
    manual_status: ManualStatus = ManualStatus.NONE
    matched_proforma: Optional[str] = None
    auto_proforma_fullnumber: Optional[str] = None
    confidence: Optional[float] = None
    origin: MatchOrigin = MatchOrigin.AUTO
    is_refund: bool = False
    payer_normalized: str = ""
    reference_fullnumber: Optional[str] = None
    deal_id: Optional[str] = None
    match_reason: str = ""
    # Amount applied to the bound proforma, in its currency
    bound_amount: Optional[Decimal] = None
    # Last automatic classification, restored by unmatch
    auto_status: PaymentStatus = PaymentStatus.UNMATCHED
    version: int = 0
    raw_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_bound(self) -> bool:
        """Check if the payment is committed to a proforma's books."""
        return self.matched_proforma is not None

    @property
    def is_matchable(self) -> bool:
        """Check if the payment can take part in incoming-payment matching."""
        return self.direction == Direction.IN and not self.is_refund

    def __repr__(self) -> str:
        return (
            f"Payment(id={self.id!r}, date={self.date.isoformat()}, "
            f"amount={self.amount} {self.currency}, status={self.status.value}, "
            f"payer={self.payer[:30]!r})"
        )


@dataclass
class Proforma:
    """An invoice to be paid, with a running balance."""
    fullnumber: str
    total: Decimal
    currency: str
    payments_total: Decimal = Decimal("0")
    buyer_name: str = ""
    buyer_email: str = ""
    buyer_normalized: str = ""
    issue_date: Optional[date] = None
    due_date: Optional[date] = None
    deal_id: Optional[str] = None
    status: ProformaStatus = ProformaStatus.OPEN
    version: int = 0

    @property
    def remaining(self) -> Decimal:
        """Outstanding balance; negative when overpaid."""
        return self.total - self.payments_total


@dataclass
class Candidate:
    """A proposed proforma match for a payment. Never persisted."""
    proforma_fullnumber: str
    score: float
    reasons: List[str] = field(default_factory=list)
    amount_diff: Decimal = Decimal("0")
    remaining_at_evaluation: Decimal = Decimal("0")


@dataclass
class ScoreResult:
    """Output of scoring one payment against one proforma."""
    score: float
    reasons: List[str]
    amount_diff: Decimal


@dataclass(frozen=True)
class ManualOverride:
    """Append-only audit record of a human decision."""
    payment_id: str
    fullnumber: Optional[str]
    action: str
    comment: Optional[str]
    actor_context: Optional[str]
    timestamp: datetime


@dataclass
class Decision:
    """Automatic classification of a payment after scoring its candidates."""
    status: PaymentStatus
    confidence: Optional[float]
    auto_proforma_fullnumber: Optional[str]
    reason: str
    candidates: List[Candidate] = field(default_factory=list)


@dataclass
class DuplicateGroup:
    """Payments inferred to be the same transaction submitted more than once."""
    key: str
    payments: List[Payment]

    @property
    def first(self) -> Payment:
        return self.payments[0]

    def __len__(self) -> int:
        return len(self.payments)


@dataclass
class ItemOutcome:
    """Result of processing one member of a batch operation."""
    payment_id: str
    ok: bool
    detail: str = ""
    error_code: Optional[str] = None


@dataclass
class BatchReport:
    """Per-item outcomes of a batch operation."""
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    items: List[ItemOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.items)

    def record(self, outcome: ItemOutcome, skipped: bool = False) -> None:
        self.items.append(outcome)
        if not outcome.ok:
            self.failed += 1
        elif skipped:
            self.skipped += 1
        else:
            self.processed += 1


@dataclass
class PassReport:
    """Summary of one reconciliation pass over pending payments."""
    total: int = 0
    matched: int = 0
    needs_review: int = 0
    unmatched: int = 0
    ignored: int = 0
    failed: int = 0
    cancelled: bool = False
    items: List[ItemOutcome] = field(default_factory=list)
    decisions: Dict[str, Decision] = field(default_factory=dict)

    @property
    def match_rate(self) -> float:
        """Calculate match rate as percentage of scored payments."""
        scored = self.matched + self.needs_review + self.unmatched
        if scored == 0:
            return 0.0
        return (self.matched / scored) * 100


@dataclass
class ProformaFilter:
    """Query for open proformas passed to the proforma store."""
    currencies: Optional[List[str]] = None
    only_outstanding: bool = True


@dataclass
class MutationResult:
    """Updated payment plus remaining balances of the proformas a mutation touched."""
    payment: Optional[Payment]
    remaining: Dict[str, Decimal] = field(default_factory=dict)
    changed: bool = True


@dataclass
class PaymentDetails:
    """A payment with its current candidates and override history."""
    payment: Payment
    candidates: List[Candidate]
    overrides: List[ManualOverride] = field(default_factory=list)
