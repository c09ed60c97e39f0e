"""
In-memory stores implementing the collaborator contracts the engine depends on.

Entities are handed out as copies; writes go through compare-and-set on the
``version`` field, and per-entity re-entrant locks serialize conflicting
mutations without a global lock.
"""

import copy
import logging
import threading
from collections import defaultdict
from contextlib import ExitStack, contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional, Set

from payrecon.engine.errors import ConcurrentModification, ExternalUnavailable, NotFound
from payrecon.engine.models import (
    Direction,
    ManualOverride,
    Payment,
    PaymentStatus,
    Proforma,
    ProformaFilter,
    ProformaStatus,
)
from payrecon.engine.normalize import normalize_fullnumber, normalize_name

logger = logging.getLogger(__name__)


class LockRegistry:
    """Re-entrant lock per entity key, kept only while some thread uses it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def _use(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]

    @contextmanager
    def hold(self, *keys: Optional[str]) -> Iterator[None]:
        """Acquire locks for several keys in sorted order to avoid deadlocks."""
        with ExitStack() as stack:
            for key in sorted({k for k in keys if k}):
                stack.enter_context(self._use(key))
            yield


class InMemoryPaymentRepository:
    """Persisted payments plus the append-only manual override log."""

    def __init__(self, payments: Iterable[Payment] = ()):
        self._payments: Dict[str, Payment] = {}
        self._overrides: Dict[str, List[ManualOverride]] = defaultdict(list)
        self._data_lock = threading.Lock()
        self.locks = LockRegistry()
        for payment in payments:
            self.add(payment)

    def add(self, payment: Payment) -> Payment:
        """Insert a new payment; ingestion never re-creates an existing id."""
        with self._data_lock:
            if payment.id in self._payments:
                raise ValueError(f"Payment {payment.id} already exists")
            self._payments[payment.id] = copy.copy(payment)
        return copy.copy(payment)

    def add_many(self, payments: Iterable[Payment]) -> int:
        """Insert payments, skipping ids already present. Returns number added."""
        added = 0
        for payment in payments:
            try:
                self.add(payment)
                added += 1
            except ValueError:
                logger.warning("Skipping already ingested payment %s", payment.id)
        return added

    def get(self, payment_id: str) -> Payment:
        with self._data_lock:
            payment = self._payments.get(payment_id)
            if payment is None:
                raise NotFound(f"Payment {payment_id} not found", entity_id=payment_id)
            return copy.copy(payment)

    def exists(self, payment_id: str) -> bool:
        with self._data_lock:
            return payment_id in self._payments

    def list(
        self,
        direction: Optional[Direction] = None,
        statuses: Optional[Iterable[PaymentStatus]] = None,
    ) -> List[Payment]:
        """List payments ordered by date then id, optionally filtered."""
        wanted: Optional[Set[PaymentStatus]] = set(statuses) if statuses is not None else None
        with self._data_lock:
            items = [
                copy.copy(p) for p in self._payments.values()
                if (direction is None or p.direction == direction)
                and (wanted is None or p.status in wanted)
            ]
        return sorted(items, key=lambda p: (p.date, p.id))

    def save(self, payment: Payment) -> Payment:
        """
        Write a payment read earlier, bumping its version.

        Raises:
            NotFound: If the payment was deleted meanwhile.
            ConcurrentModification: If another write happened since the read.
        """
        with self._data_lock:
            current = self._payments.get(payment.id)
            if current is None:
                raise NotFound(f"Payment {payment.id} not found", entity_id=payment.id)
            if current.version != payment.version:
                raise ConcurrentModification(
                    f"Payment {payment.id} changed (version {current.version}, "
                    f"expected {payment.version})",
                    entity_id=payment.id,
                )
            stored = copy.copy(payment)
            stored.version += 1
            self._payments[payment.id] = stored
        return copy.copy(stored)

    def delete(self, payment: Payment) -> None:
        """Remove a payment read earlier, checking its version."""
        with self._data_lock:
            current = self._payments.get(payment.id)
            if current is None:
                raise NotFound(f"Payment {payment.id} not found", entity_id=payment.id)
            if current.version != payment.version:
                raise ConcurrentModification(
                    f"Payment {payment.id} changed before delete", entity_id=payment.id
                )
            del self._payments[payment.id]

    def append_override(
        self,
        payment_id: str,
        action: str,
        fullnumber: Optional[str] = None,
        comment: Optional[str] = None,
        actor_context: Optional[str] = None,
    ) -> ManualOverride:
        record = ManualOverride(
            payment_id=payment_id,
            fullnumber=fullnumber,
            action=action,
            comment=comment,
            actor_context=actor_context,
            timestamp=datetime.now(),
        )
        with self._data_lock:
            self._overrides[payment_id].append(record)
        return record

    def overrides(self, payment_id: str) -> List[ManualOverride]:
        with self._data_lock:
            return list(self._overrides.get(payment_id, []))

    def latest_override(self, payment_id: str) -> Optional[ManualOverride]:
        history = self.overrides(payment_id)
        return history[-1] if history else None


class InMemoryProformaStore:
    """
    Proforma store with running balances.

    ``available`` simulates the accounting backend being reachable; when False
    every call raises ExternalUnavailable.
    """

    def __init__(self, proformas: Iterable[Proforma] = ()):
        self._proformas: Dict[str, Proforma] = {}
        self._data_lock = threading.Lock()
        self.locks = LockRegistry()
        self.available = True
        for proforma in proformas:
            self.add(proforma)

    def _check_available(self) -> None:
        if not self.available:
            raise ExternalUnavailable("Proforma store is unavailable")

    def add(self, proforma: Proforma) -> Proforma:
        stored = copy.copy(proforma)
        stored.fullnumber = normalize_fullnumber(stored.fullnumber) or stored.fullnumber
        if not stored.buyer_normalized:
            stored.buyer_normalized = normalize_name(stored.buyer_name)
        with self._data_lock:
            self._proformas[stored.fullnumber] = stored
        return copy.copy(stored)

    def get(self, fullnumber: str) -> Proforma:
        self._check_available()
        key = normalize_fullnumber(fullnumber) or ""
        with self._data_lock:
            proforma = self._proformas.get(key)
            if proforma is None:
                raise NotFound(f"Proforma {fullnumber} not found", entity_id=fullnumber)
            return copy.copy(proforma)

    def get_remaining(self, fullnumber: str) -> Decimal:
        return self.get(fullnumber).remaining

    def find_open_proformas(self, filters: Optional[ProformaFilter] = None) -> List[Proforma]:
        """Open proformas matching the filter, ordered by fullnumber."""
        self._check_available()
        filters = filters or ProformaFilter()
        currencies = {c.upper() for c in filters.currencies} if filters.currencies else None

        with self._data_lock:
            items = [copy.copy(p) for p in self._proformas.values()]

        result = []
        for p in items:
            if p.status == ProformaStatus.CANCELLED:
                continue
            if filters.only_outstanding and (p.status != ProformaStatus.OPEN or p.remaining <= 0):
                continue
            if currencies is not None and p.currency.upper() not in currencies:
                continue
            result.append(p)

        return sorted(result, key=lambda p: p.fullnumber)

    def apply_payment(self, fullnumber: str, delta: Decimal) -> Proforma:
        """
        Add ``delta`` to a proforma's payments total and refresh its status.

        Remaining may go negative on overpayment; it is never clamped.
        """
        self._check_available()
        key = normalize_fullnumber(fullnumber) or ""
        with self.locks.hold(key):
            with self._data_lock:
                proforma = self._proformas.get(key)
                if proforma is None:
                    raise NotFound(f"Proforma {fullnumber} not found", entity_id=fullnumber)
                updated = copy.copy(proforma)
                updated.payments_total = proforma.payments_total + Decimal(delta)
                if updated.status != ProformaStatus.CANCELLED:
                    updated.status = (
                        ProformaStatus.PAID if updated.remaining <= 0 else ProformaStatus.OPEN
                    )
                updated.version += 1
                self._proformas[key] = updated
        logger.debug("Proforma %s payments_total %s (delta %s)", key, updated.payments_total, delta)
        return copy.copy(updated)


class InMemoryCrmResolver:
    """Maps CRM deals and known payers to linked proforma numbers."""

    def __init__(
        self,
        deal_proformas: Optional[Dict[str, Iterable[str]]] = None,
        payer_deals: Optional[Dict[str, Iterable[str]]] = None,
    ):
        self.deal_proformas = {
            deal: {normalize_fullnumber(n) for n in numbers}
            for deal, numbers in (deal_proformas or {}).items()
        }
        self.payer_deals = {
            normalize_name(payer): set(deals) for payer, deals in (payer_deals or {}).items()
        }

    def resolve(self, payment: Payment) -> Set[str]:
        deals: Set[str] = set()
        if payment.deal_id:
            deals.add(payment.deal_id)
        payer = payment.payer_normalized or normalize_name(payment.payer)
        deals |= self.payer_deals.get(payer, set())

        numbers: Set[str] = set()
        for deal in deals:
            numbers |= self.deal_proformas.get(deal, set())
        return numbers
