"""
Tests for the Payment aggregate and PaymentManager

Covers creation, installment and complete payment transitions, due date edits,
status derivation (including the overdue-over-partial rule), optimistic
concurrency, alert side effects and read-side projections.
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from institute_payments.storage import InMemoryStorage
from institute_payments.audit import AuditTrail, AuditEventType
from institute_payments.alerts import AlertEmitter, AlertType
from institute_payments.clock import FixedClock
from institute_payments.errors import (
    ConcurrencyError, InvalidOperationError, NotFoundError, ValidationError
)
from institute_payments.ledger import InstallmentStatus
from institute_payments.payments import (
    Payment, PaymentManager, PaymentStatus, PaymentType,
    derive_payment_status, get_summary
)
from institute_payments.sweeper import OverdueSweeper


NOW = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def clock():
    return FixedClock(NOW)


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def alert_emitter(storage, audit_trail, clock):
    return AlertEmitter(storage, audit_trail, clock)


@pytest.fixture
def manager(storage, alert_emitter, audit_trail, clock):
    return PaymentManager(storage, alert_emitter, audit_trail, clock)


def schedule(*amounts, start=NOW, step_days=1):
    """Installments due one step apart, starting one step after start"""
    return [
        {"amount": amount, "due_date": (start + timedelta(days=step_days * (n + 1))).isoformat()}
        for n, amount in enumerate(amounts)
    ]


def create_installment_payment(manager, amounts=("300", "300", "300"), total="900", user_id="student-1"):
    return manager.create_payment(
        user_id=user_id,
        formation_id="formation-1",
        total_amount=total,
        payment_type="installment",
        installments=schedule(*amounts),
        created_by="reception-1"
    )


class TestPaymentCreation:
    """Payment creation and validation"""

    def test_complete_payment_defaults_due_date_to_now(self, manager, alert_emitter):
        """Complete payment without a due date is due at creation time"""
        payment = manager.create_payment(
            user_id="student-1",
            formation_id="formation-1",
            total_amount=1000,
            payment_type="complete"
        )

        assert payment.payment_type == PaymentType.COMPLETE
        assert payment.due_date == NOW
        assert payment.status == PaymentStatus.PENDING
        assert payment.total_amount == Decimal("1000")
        assert payment.version == 0
        assert payment.installments == []

        # Creation does not alert
        assert alert_emitter.get_alerts_for_user("student-1") == []

    def test_installment_payment_created_pending(self, manager):
        payment = create_installment_payment(manager)

        assert payment.status == PaymentStatus.PENDING
        assert len(payment.installments) == 3
        assert [i.installment_number for i in payment.installments] == [1, 2, 3]
        assert all(i.status == InstallmentStatus.PENDING for i in payment.installments)

    def test_installment_sum_mismatch_rejected(self, manager, storage):
        with pytest.raises(ValidationError, match="Sum of installment amounts"):
            create_installment_payment(manager, amounts=("300", "300", "290"), total="900")
        assert storage.count(manager.payments_table) == 0

    def test_installment_type_requires_schedule(self, manager):
        with pytest.raises(ValidationError, match="Installments are required"):
            manager.create_payment("student-1", "formation-1", 900, "installment", installments=[])

    def test_missing_fields_rejected(self, manager):
        with pytest.raises(ValidationError, match="Missing required fields"):
            manager.create_payment("", "formation-1", 900, "complete")

    def test_unknown_payment_type_rejected(self, manager):
        with pytest.raises(ValidationError, match="payment_type"):
            manager.create_payment("student-1", "formation-1", 900, "monthly")

    def test_non_positive_total_rejected(self, manager):
        with pytest.raises(ValidationError, match="positive"):
            manager.create_payment("student-1", "formation-1", "-10", "complete")

    def test_complete_payment_with_past_due_date_is_overdue(self, manager):
        payment = manager.create_payment(
            "student-1", "formation-1", 500, "complete",
            due_date=(NOW - timedelta(days=3)).isoformat()
        )
        assert payment.status == PaymentStatus.OVERDUE

    def test_creation_is_audited(self, manager, audit_trail):
        payment = create_installment_payment(manager)
        events = audit_trail.get_events_for_entity("payment", payment.id)
        assert [e.event_type for e in events] == [AuditEventType.PAYMENT_CREATED]
        assert events[0].user_id == "reception-1"
        assert events[0].metadata["installments"] == 3


class TestCompletePayment:
    """Complete payment lifecycle"""

    def test_mark_paid_completes_and_alerts(self, manager, alert_emitter, clock):
        payment = manager.create_payment("student-1", "formation-1", 1000, "complete")
        clock.advance(hours=2)

        updated, summary = manager.mark_complete_payment_paid(payment.id, "reception-1")

        assert updated.status == PaymentStatus.COMPLETED
        assert updated.paid_at == clock.now()
        assert updated.version == 1
        assert summary.paid_amount == Decimal("1000")
        assert summary.remaining_amount == Decimal("0")
        assert summary.next_due_date is None

        alerts = alert_emitter.get_alerts_for_user("student-1")
        assert len(alerts) == 1
        assert alerts[0].alert_type == AlertType.PAYMENT_RECEIVED
        assert alerts[0].message == "Complete payment received"
        assert alerts[0].payment_id == payment.id
        assert alerts[0].sent_by == "reception-1"

    def test_mark_paid_twice_rejected(self, manager):
        payment = manager.create_payment("student-1", "formation-1", 1000, "complete")
        manager.mark_complete_payment_paid(payment.id, "reception-1")

        with pytest.raises(InvalidOperationError, match="already completed"):
            manager.mark_complete_payment_paid(payment.id, "reception-1")

    def test_overdue_complete_payment_can_still_be_paid(self, manager, clock):
        payment = manager.create_payment("student-1", "formation-1", 1000, "complete")
        clock.advance(days=10)
        assert manager.get_payment(payment.id).status == PaymentStatus.OVERDUE

        updated, _ = manager.mark_complete_payment_paid(payment.id, "reception-1")
        assert updated.status == PaymentStatus.COMPLETED

    def test_complete_endpoint_rejects_installment_payment(self, manager):
        payment = create_installment_payment(manager)
        with pytest.raises(InvalidOperationError, match="only for complete payments"):
            manager.mark_complete_payment_paid(payment.id, "reception-1")


class TestInstallmentPayment:
    """Installment payment lifecycle"""

    def test_first_installment_makes_partial(self, manager, alert_emitter):
        payment = create_installment_payment(manager)

        updated, summary = manager.mark_installment_paid(payment.id, 0, "reception-1")

        assert updated.status == PaymentStatus.PARTIAL
        assert updated.installments[0].paid_at == NOW
        assert updated.installments[0].status == InstallmentStatus.PAID
        assert summary.paid_amount == Decimal("300")
        assert summary.remaining_amount == Decimal("600")
        assert summary.total_installments == 3
        assert summary.paid_installments == 1
        assert summary.next_due_date == payment.installments[1].due_date

        alerts = alert_emitter.get_alerts_for_user("student-1")
        assert [a.message for a in alerts] == ["Payment received for installment 1 of 3"]

    def test_paying_all_installments_completes_without_drift(self, manager):
        payment = create_installment_payment(
            manager, amounts=("333.33", "333.33", "333.34"), total="1000"
        )
        for index in (2, 0, 1):
            payment, summary = manager.mark_installment_paid(payment.id, index, "reception-1")

        assert payment.status == PaymentStatus.COMPLETED
        assert summary.paid_amount == Decimal("1000.00")
        assert summary.remaining_amount == Decimal("0")
        assert summary.next_due_date is None
        assert payment.version == 3

    def test_marking_same_installment_twice_rejected(self, manager):
        payment = create_installment_payment(manager)
        manager.mark_installment_paid(payment.id, 0, "reception-1")

        with pytest.raises(InvalidOperationError, match="This installment is already paid"):
            manager.mark_installment_paid(payment.id, 0, "reception-1")

    def test_paid_at_never_changes_after_later_payments(self, manager, clock):
        payment = create_installment_payment(manager)
        manager.mark_installment_paid(payment.id, 0, "reception-1")
        first_paid_at = clock.now()

        clock.advance(hours=5)
        updated, _ = manager.mark_installment_paid(payment.id, 1, "reception-1")

        assert updated.installments[0].paid_at == first_paid_at
        assert updated.installments[1].paid_at == clock.now()

    def test_index_out_of_range_rejected(self, manager):
        payment = create_installment_payment(manager)
        with pytest.raises(InvalidOperationError, match="Invalid installment index"):
            manager.mark_installment_paid(payment.id, 3, "reception-1")
        with pytest.raises(InvalidOperationError, match="Invalid installment index"):
            manager.mark_installment_paid(payment.id, -1, "reception-1")

    def test_missing_index_rejected(self, manager):
        payment = create_installment_payment(manager)
        with pytest.raises(ValidationError):
            manager.mark_installment_paid(payment.id, None, "reception-1")

    def test_unknown_payment(self, manager):
        with pytest.raises(NotFoundError, match="Payment not found"):
            manager.mark_installment_paid("missing", 0, "reception-1")

    def test_installment_endpoint_rejects_complete_payment(self, manager):
        payment = manager.create_payment("student-1", "formation-1", 1000, "complete")
        with pytest.raises(InvalidOperationError, match="only for installment payments"):
            manager.mark_installment_paid(payment.id, 0, "reception-1")

    def test_overdue_wins_over_partial(self, manager, clock):
        """One paid installment and one overdue installment derive to overdue"""
        payment = create_installment_payment(manager)
        manager.mark_installment_paid(payment.id, 0, "reception-1")
        clock.advance(days=2, hours=1)

        updated, _ = manager.mark_installment_paid(payment.id, 2, "reception-1")

        assert updated.installments[1].status == InstallmentStatus.OVERDUE
        assert updated.status == PaymentStatus.OVERDUE

    def test_paying_overdue_installment_returns_to_partial(self, manager, clock):
        payment = create_installment_payment(manager)
        clock.advance(days=1, hours=1)
        assert manager.get_payment(payment.id).status == PaymentStatus.OVERDUE

        updated, _ = manager.mark_installment_paid(payment.id, 0, "reception-1")
        assert updated.status == PaymentStatus.PARTIAL

    def test_alert_failure_does_not_undo_payment(self, manager, monkeypatch):
        payment = create_installment_payment(manager)

        def broken_emit(**kwargs):
            raise RuntimeError("alert store unavailable")

        monkeypatch.setattr(manager.alert_emitter, "emit", broken_emit)
        updated, _ = manager.mark_installment_paid(payment.id, 0, "reception-1")

        assert updated.status == PaymentStatus.PARTIAL
        assert manager.get_payment(payment.id).installments[0].paid_at == NOW


class TestDueDateUpdate:
    """Editing installment due dates"""

    def test_update_unpaid_due_date_keeps_amount(self, manager, clock):
        payment = create_installment_payment(manager)
        new_due = NOW + timedelta(days=30)

        updated = manager.update_installment_due_date(payment.id, 1, new_due.isoformat(), "reception-1")

        assert updated.installments[1].due_date == new_due
        assert updated.installments[1].amount == Decimal("300")
        assert updated.version == 1

    def test_update_paid_installment_rejected(self, manager):
        payment = create_installment_payment(manager)
        manager.mark_installment_paid(payment.id, 0, "reception-1")

        with pytest.raises(InvalidOperationError, match="Cannot update due date for a paid installment"):
            manager.update_installment_due_date(payment.id, 0, NOW + timedelta(days=9))

    def test_moving_overdue_date_forward_clears_overdue(self, manager, clock):
        payment = create_installment_payment(manager)
        clock.advance(days=1, hours=1)

        updated = manager.update_installment_due_date(payment.id, 0, clock.now() + timedelta(days=7))
        assert updated.status == PaymentStatus.PENDING

    def test_moving_date_into_past_makes_overdue(self, manager):
        payment = create_installment_payment(manager)
        updated = manager.update_installment_due_date(payment.id, 2, NOW - timedelta(days=1))
        assert updated.installments[2].status == InstallmentStatus.OVERDUE
        assert updated.status == PaymentStatus.OVERDUE

    def test_invalid_date_rejected(self, manager):
        payment = create_installment_payment(manager)
        with pytest.raises(ValidationError):
            manager.update_installment_due_date(payment.id, 0, "not-a-date")


class TestConcurrency:
    """Optimistic versioning on payment writes"""

    def test_stale_write_rejected(self, manager):
        payment = create_installment_payment(manager)
        stale = manager.require_payment(payment.id)

        manager.mark_installment_paid(payment.id, 0, "reception-1")

        stale.installments[1].paid_at = NOW
        with pytest.raises(ConcurrencyError):
            manager._save_payment(stale, stale.version)

        # The winning write is intact
        stored = manager.require_payment(payment.id)
        assert stored.installments[0].is_paid
        assert not stored.installments[1].is_paid


class TestDerivation:
    """Pure status derivation and summary"""

    def test_reads_rederive_without_writing(self, manager, storage, clock):
        payment = create_installment_payment(manager)
        clock.advance(days=5)
        writes = storage.write_count

        loaded = manager.get_payment(payment.id)

        assert loaded.status == PaymentStatus.OVERDUE
        assert storage.load(manager.payments_table, payment.id)["status"] == "pending"
        assert storage.write_count == writes

    def test_derivation_matches_stored_status_after_mutation(self, manager, clock):
        payment = create_installment_payment(manager)
        updated, _ = manager.mark_installment_paid(payment.id, 1, "reception-1")
        assert derive_payment_status(updated, clock.now()) == updated.status

    def test_summary_for_unpaid_complete_payment(self, manager):
        payment = manager.create_payment("student-1", "formation-1", "250.50", "complete")
        summary = get_summary(payment)
        assert summary.paid_amount == Decimal("0")
        assert summary.remaining_amount == Decimal("250.50")
        assert summary.next_due_date == NOW
        assert "total_installments" not in summary.to_dict()

    def test_payment_round_trip(self, manager):
        payment = create_installment_payment(manager)
        restored = Payment.from_dict(payment.to_dict())
        assert restored == payment


class TestQueries:
    """Listings, lookups, deletion and statistics"""

    def test_list_newest_first_with_filters(self, manager, clock):
        first = manager.create_payment("student-1", "formation-1", 1000, "complete",
                                       due_date=NOW + timedelta(days=10))
        clock.advance(minutes=5)
        second = create_installment_payment(manager, user_id="student-2")

        assert [p.id for p in manager.list_payments()] == [second.id, first.id]
        assert [p.id for p in manager.list_payments(payment_type="complete")] == [first.id]
        assert manager.list_payments(status="completed") == []

        with pytest.raises(ValidationError):
            manager.list_payments(status="cancelled")

    def test_overdue_filter_uses_stored_status(self, manager, clock):
        payment = create_installment_payment(manager)
        clock.advance(days=2)
        assert manager.list_payments(overdue=True) == []

        OverdueSweeper(manager).sweep_overdue()
        assert [p.id for p in manager.list_payments(overdue=True)] == [payment.id]
        assert [p.id for p in manager.get_overdue_payments()] == [payment.id]

    def test_status_filter_excludes_lapsed_payments(self, manager, clock):
        payment = create_installment_payment(manager)
        assert [p.id for p in manager.list_payments(status="pending")] == [payment.id]

        # Stored status is still pending, but the first installment has lapsed
        clock.advance(days=2)
        assert manager.list_payments(status="pending") == []
        assert [p.status for p in manager.list_payments()] == [PaymentStatus.OVERDUE]

    def test_payments_by_user(self, manager):
        mine = create_installment_payment(manager, user_id="student-1")
        create_installment_payment(manager, user_id="student-2")
        assert [p.id for p in manager.get_payments_by_user("student-1")] == [mine.id]

    def test_find_open_payment_skips_completed(self, manager, clock):
        done = manager.create_payment("student-1", "formation-1", 1000, "complete")
        manager.mark_complete_payment_paid(done.id, "reception-1")
        assert manager.find_open_payment("student-1", "formation-1") is None

        clock.advance(minutes=1)
        open_payment = create_installment_payment(manager)
        assert manager.find_open_payment("student-1", "formation-1").id == open_payment.id

    def test_send_payment_alert_targets_open_payment(self, manager):
        payment = create_installment_payment(manager)
        alert = manager.send_payment_alert(
            "student-1", "formation-1", "Please pay", "payment_reminder", "reception-1"
        )
        assert alert.payment_id == payment.id
        assert alert.due_date == payment.installments[0].due_date
        assert alert.title == "Rappel de paiement"

    def test_send_payment_alert_without_open_payment(self, manager):
        with pytest.raises(NotFoundError, match="No pending payment"):
            manager.send_payment_alert("student-9", "formation-1", "Hi", "general", "reception-1")

    def test_delete_cascades_alerts(self, manager, alert_emitter, audit_trail):
        payment = manager.create_payment("student-1", "formation-1", 1000, "complete")
        manager.mark_complete_payment_paid(payment.id, "reception-1")
        unrelated = alert_emitter.emit("general", "student-1", "Welcome", "admin-1")

        assert manager.delete_payment(payment.id, "admin-1") == 1
        assert manager.get_payment(payment.id) is None
        assert [a.id for a in alert_emitter.get_alerts_for_user("student-1")] == [unrelated.id]
        assert audit_trail.get_events_by_type(AuditEventType.PAYMENT_DELETED)[0].entity_id == payment.id

        with pytest.raises(NotFoundError):
            manager.delete_payment(payment.id)

    def test_statistics(self, manager):
        done = manager.create_payment("student-1", "formation-1", 1000, "complete")
        manager.mark_complete_payment_paid(done.id, "reception-1")
        manager.create_payment("student-2", "formation-1", 500, "complete",
                               due_date=NOW + timedelta(days=3))
        partial = create_installment_payment(manager, user_id="student-3")
        manager.mark_installment_paid(partial.id, 0, "reception-1")

        stats = manager.get_statistics()

        assert stats["total"] == 3
        assert stats["total_revenue"] == Decimal("1000")
        assert stats["partial"] == 1
        assert stats["overdue"] == 0
        assert stats["by_status"]["pending"] == {"count": 1, "total_amount": Decimal("500")}
