"""
Tests for the installment ledger: status rule, aggregates and schedule validation
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from institute_payments.errors import ValidationError
from institute_payments.ledger import (
    Installment,
    InstallmentStatus,
    build_installments,
    derive_installment_status,
    next_due_installment,
    paid_amount,
    paid_count,
    refresh_installment_statuses,
    remaining_amount,
    to_amount,
    validate_installment_sum
)


NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_installment(number, amount, days, paid=False):
    return Installment(
        installment_number=number,
        amount=Decimal(amount),
        due_date=NOW + timedelta(days=days),
        paid_at=NOW if paid else None
    )


class TestInstallmentStatus:
    """Per-installment derivation rule"""

    def test_paid_wins_over_past_due_date(self):
        installment = make_installment(1, "100", -5, paid=True)
        assert derive_installment_status(installment, NOW) == InstallmentStatus.PAID

    def test_overdue_once_due_date_passed(self):
        installment = make_installment(1, "100", -1)
        assert derive_installment_status(installment, NOW) == InstallmentStatus.OVERDUE

    def test_pending_on_due_date_itself(self):
        """Due date equal to now is not yet overdue"""
        installment = Installment(1, Decimal("100"), due_date=NOW)
        assert derive_installment_status(installment, NOW) == InstallmentStatus.PENDING

    def test_refresh_reports_changes(self):
        installments = [make_installment(1, "100", 1), make_installment(2, "100", 2)]
        assert refresh_installment_statuses(installments, NOW) is False

        later = NOW + timedelta(days=1, hours=1)
        assert refresh_installment_statuses(installments, later) is True
        assert installments[0].status == InstallmentStatus.OVERDUE
        assert installments[1].status == InstallmentStatus.PENDING

        # Nothing new to rewrite at the same instant
        assert refresh_installment_statuses(installments, later) is False


class TestAggregates:
    """Paid / remaining / next due"""

    def test_paid_and_remaining(self):
        installments = [
            make_installment(1, "300", 1, paid=True),
            make_installment(2, "300", 2),
            make_installment(3, "300", 3, paid=True)
        ]
        assert paid_amount(installments) == Decimal("600")
        assert remaining_amount(installments, Decimal("900")) == Decimal("300")
        assert paid_count(installments) == 2

    def test_next_due_is_earliest_unpaid(self):
        installments = [
            make_installment(1, "300", 1, paid=True),
            make_installment(2, "300", 5),
            make_installment(3, "300", 3)
        ]
        assert next_due_installment(installments).installment_number == 3

    def test_next_due_ties_broken_by_number(self):
        installments = [make_installment(2, "300", 4), make_installment(1, "300", 4)]
        assert next_due_installment(installments).installment_number == 1

    def test_next_due_none_when_all_paid(self):
        installments = [make_installment(1, "300", 1, paid=True)]
        assert next_due_installment(installments) is None

    def test_serialization_keeps_decimal_precision(self):
        installment = make_installment(1, "333.33", 1)
        restored = Installment.from_dict(installment.to_dict())
        assert restored.amount == Decimal("333.33")
        assert restored.due_date == installment.due_date
        assert restored.paid_at is None


class TestScheduleValidation:
    """Creation-time schedule checks"""

    def test_build_numbers_from_one(self):
        raw = [
            {"amount": "300", "due_date": "2025-03-02"},
            {"amount": 300, "due_date": "2025-03-03T00:00:00Z"},
            {"amount": 300.0, "due_date": NOW + timedelta(days=3)}
        ]
        installments = build_installments(raw, Decimal("900"), NOW)
        assert [i.installment_number for i in installments] == [1, 2, 3]
        assert all(i.status == InstallmentStatus.PENDING for i in installments)
        assert installments[1].due_date == datetime(2025, 3, 3, tzinfo=timezone.utc)

    def test_empty_schedule_rejected(self):
        with pytest.raises(ValidationError, match="Installments are required"):
            build_installments([], Decimal("900"), NOW)

    def test_sum_mismatch_rejected(self):
        raw = [{"amount": "300", "due_date": "2025-03-02"}, {"amount": "590", "due_date": "2025-03-03"}]
        with pytest.raises(ValidationError, match="Sum of installment amounts"):
            build_installments(raw, Decimal("900"), NOW)

    def test_sum_within_tolerance_accepted(self):
        installments = [make_installment(n, "333.33", n) for n in (1, 2, 3)]
        validate_installment_sum(installments, Decimal("1000"))

    def test_non_positive_amount_rejected(self):
        raw = [{"amount": "0", "due_date": "2025-03-02"}, {"amount": "900", "due_date": "2025-03-03"}]
        with pytest.raises(ValidationError, match="must be positive"):
            build_installments(raw, Decimal("900"), NOW)

    def test_bad_due_date_rejected(self):
        raw = [{"amount": "900", "due_date": "next tuesday"}]
        with pytest.raises(ValidationError, match="due_date"):
            build_installments(raw, Decimal("900"), NOW)

    def test_float_amounts_parse_exactly(self):
        assert to_amount(0.1) == Decimal("0.1")
        with pytest.raises(ValidationError):
            to_amount("abc")
        with pytest.raises(ValidationError):
            to_amount(-5)
