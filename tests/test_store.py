"""Tests for the in-memory payment repository and proforma store."""

import threading
from datetime import date
from decimal import Decimal

import pytest

from payrecon.engine.errors import ConcurrentModification, ExternalUnavailable, NotFound
from payrecon.engine.models import (
    Direction,
    Payment,
    PaymentSource,
    PaymentStatus,
    Proforma,
    ProformaFilter,
    ProformaStatus,
)
from payrecon.store.memory import (
    InMemoryCrmResolver,
    InMemoryPaymentRepository,
    InMemoryProformaStore,
    LockRegistry,
)


def make_payment(id: str, when: str = "2025-09-13", direction: Direction = Direction.IN) -> Payment:
    """Helper to create test payments."""
    return Payment(
        id=id,
        source=PaymentSource.BANK,
        direction=direction,
        amount=Decimal("100.00"),
        currency="PLN",
        payer="Jan Kowalski",
        description="",
        date=date.fromisoformat(when),
    )


def make_proforma(fullnumber: str, total: str = "1000.00", **kwargs) -> Proforma:
    """Helper to create test proformas."""
    return Proforma(fullnumber=fullnumber, total=Decimal(total), currency="PLN", **kwargs)


class TestPaymentRepository:
    """Test payment persistence."""

    def test_get_returns_copy(self):
        repo = InMemoryPaymentRepository([make_payment("P1")])

        payment = repo.get("P1")
        payment.status = PaymentStatus.MATCHED

        assert repo.get("P1").status == PaymentStatus.UNMATCHED

    def test_add_existing_id_rejected(self):
        repo = InMemoryPaymentRepository([make_payment("P1")])

        with pytest.raises(ValueError):
            repo.add(make_payment("P1"))
        assert repo.add_many([make_payment("P1"), make_payment("P2")]) == 1

    def test_save_bumps_version(self):
        repo = InMemoryPaymentRepository([make_payment("P1")])

        saved = repo.save(repo.get("P1"))

        assert saved.version == 1
        assert repo.get("P1").version == 1

    def test_stale_save_rejected(self):
        repo = InMemoryPaymentRepository([make_payment("P1")])
        first = repo.get("P1")
        second = repo.get("P1")
        repo.save(first)

        with pytest.raises(ConcurrentModification):
            repo.save(second)

    def test_stale_delete_rejected(self):
        repo = InMemoryPaymentRepository([make_payment("P1")])
        stale = repo.get("P1")
        repo.save(repo.get("P1"))

        with pytest.raises(ConcurrentModification):
            repo.delete(stale)
        assert repo.exists("P1")

    def test_missing_payment(self):
        repo = InMemoryPaymentRepository()

        with pytest.raises(NotFound):
            repo.get("P404")

    def test_list_filters_and_orders(self):
        repo = InMemoryPaymentRepository([
            make_payment("P2", "2025-09-14"),
            make_payment("P1", "2025-09-14"),
            make_payment("P0", "2025-09-01", direction=Direction.OUT),
        ])

        assert [p.id for p in repo.list()] == ["P0", "P1", "P2"]
        assert [p.id for p in repo.list(direction=Direction.IN)] == ["P1", "P2"]
        assert repo.list(statuses=[PaymentStatus.MATCHED]) == []

    def test_override_log_is_append_only(self):
        repo = InMemoryPaymentRepository([make_payment("P1")])
        repo.append_override("P1", "assign", fullnumber="CO-PROF 1/2025", actor_context="anna")
        repo.append_override("P1", "unmatch")

        history = repo.overrides("P1")
        history.clear()

        assert [o.action for o in repo.overrides("P1")] == ["assign", "unmatch"]
        assert repo.latest_override("P1").action == "unmatch"
        assert repo.latest_override("P2") is None


class TestProformaStore:
    """Test proforma queries and balance updates."""

    def test_number_lookup_is_normalized(self):
        store = InMemoryProformaStore([make_proforma("co prof 1 / 2025")])

        assert store.get("CO-PROF 1/2025").fullnumber == "CO-PROF 1/2025"

    def test_apply_payment_updates_status(self):
        store = InMemoryProformaStore([make_proforma("CO-PROF 1/2025")])

        paid = store.apply_payment("CO-PROF 1/2025", Decimal("1000.00"))
        assert paid.status == ProformaStatus.PAID
        assert paid.remaining == Decimal("0.00")

        reopened = store.apply_payment("CO-PROF 1/2025", Decimal("-400.00"))
        assert reopened.status == ProformaStatus.OPEN
        assert reopened.remaining == Decimal("400.00")

    def test_overpayment_is_not_clamped(self):
        store = InMemoryProformaStore([make_proforma("CO-PROF 1/2025")])

        proforma = store.apply_payment("CO-PROF 1/2025", Decimal("1200.00"))

        assert proforma.remaining == Decimal("-200.00")

    def test_find_open_proformas_filters(self):
        store = InMemoryProformaStore([
            make_proforma("CO-PROF 1/2025", buyer_name="Jan Kowalski", issue_date=date(2025, 9, 1)),
            make_proforma("CO-PROF 2/2025", payments_total=Decimal("1000.00")),
            make_proforma("CO-PROF 3/2025", status=ProformaStatus.CANCELLED),
            make_proforma("CO-PROF 4/2025", deal_id="D-1", issue_date=date(2025, 7, 1)),
        ])

        def found(**filters):
            return [p.fullnumber for p in store.find_open_proformas(ProformaFilter(**filters))]

        assert found() == ["CO-PROF 1/2025", "CO-PROF 4/2025"]
        assert found(only_outstanding=False) == ["CO-PROF 1/2025", "CO-PROF 2/2025", "CO-PROF 4/2025"]
        assert found(currencies=["EUR"]) == []
        assert found(currencies=["pln"]) == ["CO-PROF 1/2025", "CO-PROF 4/2025"]

    def test_unavailable_store(self):
        store = InMemoryProformaStore([make_proforma("CO-PROF 1/2025")])
        store.available = False

        with pytest.raises(ExternalUnavailable) as exc_info:
            store.apply_payment("CO-PROF 1/2025", Decimal("1"))
        assert exc_info.value.retryable

    def test_unknown_proforma(self):
        with pytest.raises(NotFound):
            InMemoryProformaStore().apply_payment("CO-PROF 1/2025", Decimal("1"))


class TestHelpers:
    """Test locks and CRM resolution."""

    def test_lock_registry_is_reentrant(self):
        locks = LockRegistry()

        with locks.hold("B", None, "A", "B"):
            with locks.hold("A"):
                assert len(locks) == 2

    def test_lock_registry_drops_released_keys(self):
        locks = LockRegistry()

        for key in ("P1", "P2", "P3"):
            with locks.hold(key):
                pass

        assert len(locks) == 0

    def test_lock_registry_serializes_same_key(self):
        locks = LockRegistry()
        entered = threading.Event()
        release = threading.Event()
        order = []

        def first():
            with locks.hold("P1"):
                entered.set()
                release.wait(5)
                order.append("first")

        def second():
            entered.wait(5)
            with locks.hold("P1"):
                order.append("second")

        threads = [threading.Thread(target=first), threading.Thread(target=second)]
        for t in threads:
            t.start()
        entered.wait(5)
        release.set()
        for t in threads:
            t.join(5)

        assert order == ["first", "second"]
        assert len(locks) == 0

    def test_crm_resolver(self):
        resolver = InMemoryCrmResolver(
            deal_proformas={"D-1": ["co prof 1/2025"], "D-2": ["CO-PROF 2/2025"]},
            payer_deals={"Jan Kowalski": ["D-2"]},
        )
        payment = make_payment("P1")
        payment.deal_id = "D-1"

        assert resolver.resolve(payment) == {"CO-PROF 1/2025", "CO-PROF 2/2025"}
