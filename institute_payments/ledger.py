"""
Installment Ledger Module

Per-payment schedule of installments. Owns the per-installment status rule
and the read aggregates (paid, remaining, next due) used by the payment
aggregate and by its summary.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional
from enum import Enum

from .clock import parse_datetime
from .errors import ValidationError


DEFAULT_TOLERANCE = Decimal('0.01')


class InstallmentStatus(Enum):
    """Derived status of a single installment"""
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


@dataclass
class Installment:
    """One scheduled partial payment within an installment-type payment"""
    installment_number: int      # 1-based, fixed at creation
    amount: Decimal
    due_date: datetime
    paid_at: Optional[datetime] = None  # Set once, never cleared
    status: InstallmentStatus = InstallmentStatus.PENDING

    @property
    def is_paid(self) -> bool:
        return self.paid_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'amount': str(self.amount),
            'due_date': self.due_date.isoformat(),
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
            'status': self.status.value
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Installment':
        return cls(
            installment_number=data['installment_number'],
            amount=Decimal(data['amount']),
            due_date=datetime.fromisoformat(data['due_date']),
            paid_at=datetime.fromisoformat(data['paid_at']) if data.get('paid_at') else None,
            status=InstallmentStatus(data.get('status', InstallmentStatus.PENDING.value))
        )


def to_amount(value: Any, field_name: str = "amount") -> Decimal:
    """Parse a strictly positive decimal amount"""
    if value is None or value == "":
        raise ValidationError(f"{field_name} is required")
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field_name} must be a number, got {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"{field_name} must be positive")
    return amount


def derive_installment_status(installment: Installment, now: datetime) -> InstallmentStatus:
    """Paid if paid_at is set, else overdue once due_date has passed, else pending"""
    if installment.paid_at is not None:
        return InstallmentStatus.PAID
    if installment.due_date < now:
        return InstallmentStatus.OVERDUE
    return InstallmentStatus.PENDING


def refresh_installment_statuses(installments: List[Installment], now: datetime) -> bool:
    """
    Rewrite every installment's stored status from the derivation rule.

    Returns:
        True if any stored status changed
    """
    changed = False
    for installment in installments:
        status = derive_installment_status(installment, now)
        if installment.status != status:
            installment.status = status
            changed = True
    return changed


def paid_amount(installments: Iterable[Installment]) -> Decimal:
    return sum((i.amount for i in installments if i.is_paid), Decimal('0'))


def remaining_amount(installments: Iterable[Installment], total_amount: Decimal) -> Decimal:
    return total_amount - paid_amount(installments)


def paid_count(installments: Iterable[Installment]) -> int:
    return sum(1 for i in installments if i.is_paid)


def next_due_installment(installments: Iterable[Installment]) -> Optional[Installment]:
    """Unpaid installment with the earliest due date (lowest number on ties)"""
    unpaid = [i for i in installments if not i.is_paid]
    if not unpaid:
        return None
    return min(unpaid, key=lambda i: (i.due_date, i.installment_number))


def validate_installment_sum(
    installments: List[Installment],
    total_amount: Decimal,
    tolerance: Decimal = DEFAULT_TOLERANCE
) -> None:
    """
    Check the creation-time invariant sum(amount) == total_amount.

    Raises:
        ValidationError: sum differs by more than tolerance
    """
    total = sum((i.amount for i in installments), Decimal('0'))
    if abs(total - total_amount) > tolerance:
        raise ValidationError(
            f"Sum of installment amounts ({total}) must equal total amount ({total_amount})"
        )


def build_installments(
    raw_installments: Optional[List[Mapping[str, Any]]],
    total_amount: Decimal,
    now: datetime,
    tolerance: Decimal = DEFAULT_TOLERANCE
) -> List[Installment]:
    """
    Build a validated installment schedule from raw input.

    Each raw entry needs ``amount`` and ``due_date``. Installments are numbered
    in input order starting at 1.

    Raises:
        ValidationError: empty schedule, bad amount or date, or sum mismatch
    """
    if not raw_installments:
        raise ValidationError("Installments are required for installment payment type")

    installments = []
    for index, raw in enumerate(raw_installments):
        number = index + 1
        installment = Installment(
            installment_number=number,
            amount=to_amount(raw.get('amount'), f"installments[{index}].amount"),
            due_date=parse_datetime(raw.get('due_date'), f"installments[{index}].due_date")
        )
        installment.status = derive_installment_status(installment, now)
        installments.append(installment)

    validate_installment_sum(installments, total_amount, tolerance)
    return installments
