"""
Payment Module

Payment aggregate and its lifecycle: creation with optional installment
schedule, marking installments or complete payments as paid, due date edits,
deletion and read-side projections (summary, listings, statistics).

A payment's status is never set by hand. It is always the output of
``derive_payment_status`` for the payment's stored facts and the current time,
and every load and mutation path goes through ``refresh_payment``.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple
from enum import Enum
import uuid

from .alerts import AlertEmitter, AlertType, PaymentAlert
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock, parse_datetime
from .errors import InvalidOperationError, NotFoundError, ValidationError
from .ledger import (
    DEFAULT_TOLERANCE, Installment, InstallmentStatus, build_installments,
    derive_installment_status, next_due_installment, paid_amount, paid_count,
    refresh_installment_statuses, remaining_amount, to_amount
)
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("institute_payments.payments")


class PaymentType(Enum):
    """How a payment is settled"""
    COMPLETE = "complete"         # Single due date, single pay event
    INSTALLMENT = "installment"   # Ordered schedule of installments


class PaymentStatus(Enum):
    """Derived payment lifecycle states"""
    PENDING = "pending"
    PARTIAL = "partial"
    COMPLETED = "completed"       # Terminal
    OVERDUE = "overdue"


# Statuses the overdue sweeper re-evaluates
SWEEPABLE_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PARTIAL)

# Statuses a manual alert can be sent against
OPEN_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PARTIAL, PaymentStatus.OVERDUE)


@dataclass
class Payment(StorageRecord):
    """Payment owed by a student for a formation"""
    user_id: str
    formation_id: str
    total_amount: Decimal
    payment_type: PaymentType
    description: Optional[str] = None

    # Complete payments
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None

    # Installment payments
    installments: List[Installment] = field(default_factory=list)

    status: PaymentStatus = PaymentStatus.PENDING
    version: int = 0
    created_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['payment_type'] = self.payment_type.value
        result['status'] = self.status.value
        result['due_date'] = self.due_date.isoformat() if self.due_date else None
        result['paid_at'] = self.paid_at.isoformat() if self.paid_at else None
        result['installments'] = [i.to_dict() for i in self.installments]
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Payment':
        def get_datetime(key: str) -> Optional[datetime]:
            if data.get(key):
                return datetime.fromisoformat(data[key])
            return None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            formation_id=data['formation_id'],
            total_amount=Decimal(data['total_amount']),
            payment_type=PaymentType(data['payment_type']),
            description=data.get('description'),
            due_date=get_datetime('due_date'),
            paid_at=get_datetime('paid_at'),
            installments=[Installment.from_dict(i) for i in data.get('installments') or []],
            status=PaymentStatus(data['status']),
            version=data.get('version', 0),
            created_by=data.get('created_by')
        )


@dataclass
class PaymentSummary:
    """Amounts and schedule progress derived from a payment"""
    total_amount: Decimal
    paid_amount: Decimal
    remaining_amount: Decimal
    next_due_date: Optional[datetime]
    total_installments: Optional[int] = None
    paid_installments: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "total_amount": str(self.total_amount),
            "paid_amount": str(self.paid_amount),
            "remaining_amount": str(self.remaining_amount),
            "next_due_date": self.next_due_date.isoformat() if self.next_due_date else None
        }
        if self.total_installments is not None:
            result["total_installments"] = self.total_installments
            result["paid_installments"] = self.paid_installments
        return result


def derive_payment_status(payment: Payment, now: datetime) -> PaymentStatus:
    """
    Compute a payment's status from its facts and the current time.

    Complete payments: completed once paid, overdue past the due date,
    otherwise pending. Installment payments: completed when every installment
    is paid, else overdue if any installment is overdue, else partial if any
    is paid, else pending. Overdue wins over partial.
    """
    if payment.payment_type == PaymentType.COMPLETE:
        if payment.paid_at is not None:
            return PaymentStatus.COMPLETED
        if payment.due_date is not None and payment.due_date < now:
            return PaymentStatus.OVERDUE
        return PaymentStatus.PENDING

    statuses = [derive_installment_status(i, now) for i in payment.installments]
    if statuses and all(s == InstallmentStatus.PAID for s in statuses):
        return PaymentStatus.COMPLETED
    if any(s == InstallmentStatus.OVERDUE for s in statuses):
        return PaymentStatus.OVERDUE
    if any(s == InstallmentStatus.PAID for s in statuses):
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


def refresh_payment(payment: Payment, now: datetime) -> bool:
    """
    Re-derive installment statuses and the payment status in place.

    Returns:
        True if any stored status changed
    """
    changed = refresh_installment_statuses(payment.installments, now)
    status = derive_payment_status(payment, now)
    if payment.status != status:
        payment.status = status
        changed = True
    return changed


def get_summary(payment: Payment) -> PaymentSummary:
    """Pure projection of paid / remaining amounts and the next due date"""
    if payment.payment_type == PaymentType.COMPLETE:
        paid = payment.paid_at is not None
        return PaymentSummary(
            total_amount=payment.total_amount,
            paid_amount=payment.total_amount if paid else Decimal('0'),
            remaining_amount=Decimal('0') if paid else payment.total_amount,
            next_due_date=None if paid else payment.due_date
        )

    paid_total = paid_amount(payment.installments)
    next_installment = next_due_installment(payment.installments)
    return PaymentSummary(
        total_amount=payment.total_amount,
        paid_amount=paid_total,
        remaining_amount=remaining_amount(payment.installments, payment.total_amount),
        next_due_date=next_installment.due_date if next_installment else None,
        total_installments=len(payment.installments),
        paid_installments=paid_count(payment.installments)
    )


def _coerce_payment_type(payment_type: Any) -> PaymentType:
    if isinstance(payment_type, PaymentType):
        return payment_type
    if not payment_type:
        raise ValidationError("payment_type is required")
    try:
        return PaymentType(payment_type)
    except ValueError:
        raise ValidationError(
            f"payment_type must be 'complete' or 'installment', got {payment_type!r}"
        )


def _coerce_status(status: Any) -> PaymentStatus:
    try:
        return PaymentStatus(status)
    except ValueError:
        raise ValidationError(f"Unknown payment status {status!r}")


class PaymentManager:
    """
    Manages the payment aggregate from creation through completion
    """

    def __init__(
        self,
        storage: StorageInterface,
        alert_emitter: Optional[AlertEmitter] = None,
        audit_trail: Optional[AuditTrail] = None,
        clock: Optional[Clock] = None,
        amount_tolerance: Decimal = DEFAULT_TOLERANCE
    ):
        self.storage = storage
        self.audit_trail = audit_trail or AuditTrail(storage)
        self.clock = clock or SystemClock()
        self.alert_emitter = alert_emitter or AlertEmitter(storage, self.audit_trail, self.clock)
        self.amount_tolerance = amount_tolerance

        self.payments_table = "payments"

    # Commands

    def create_payment(
        self,
        user_id: str,
        formation_id: str,
        total_amount: Any,
        payment_type: Any,
        due_date: Optional[Any] = None,
        installments: Optional[List[Mapping[str, Any]]] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Payment:
        """
        Create a complete or installment payment

        Args:
            user_id: Student who owes the payment
            formation_id: Formation being paid for
            total_amount: Positive amount
            payment_type: "complete" or "installment"
            due_date: Complete payments only; defaults to creation time
            installments: Installment payments only; entries with amount and due_date
            description: Optional free text
            created_by: Acting staff user

        Returns:
            Persisted Payment with its initial derived status
        """
        if not user_id or not formation_id or total_amount in (None, "") or not payment_type:
            raise ValidationError(
                "Missing required fields: user_id, formation_id, total_amount, payment_type"
            )

        now = now or self.clock.now()
        kind = _coerce_payment_type(payment_type)
        amount = to_amount(total_amount, "total_amount")

        payment = Payment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=str(user_id),
            formation_id=str(formation_id),
            total_amount=amount,
            payment_type=kind,
            description=description,
            created_by=created_by
        )

        if kind == PaymentType.COMPLETE:
            payment.due_date = parse_datetime(due_date, "due_date") if due_date else now
        else:
            payment.installments = build_installments(
                installments, amount, now, self.amount_tolerance
            )

        refresh_payment(payment, now)
        self._save_payment(payment, expected_version=None)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_CREATED,
            entity_type="payment",
            entity_id=payment.id,
            user_id=created_by,
            metadata={
                "user_id": payment.user_id,
                "formation_id": payment.formation_id,
                "total_amount": payment.total_amount,
                "payment_type": kind.value,
                "installments": len(payment.installments),
                "status": payment.status.value
            }
        )
        log_action(logger, "info", "Payment created", user_id=created_by,
                   action="payment_created", resource=payment.id,
                   extra={"payment_type": kind.value, "status": payment.status.value})
        return payment

    def mark_installment_paid(
        self,
        payment_id: str,
        installment_index: Any,
        acting_user_id: str,
        now: Optional[datetime] = None
    ) -> Tuple[Payment, PaymentSummary]:
        """
        Record payment of one installment (0-based index)

        Returns:
            Updated payment and its summary
        """
        now = now or self.clock.now()
        payment = self.require_payment(payment_id, now)
        index = self._check_installment_index(payment, installment_index)

        installment = payment.installments[index]
        if installment.is_paid:
            raise InvalidOperationError("This installment is already paid")

        expected_version = payment.version
        previous_status = payment.status
        installment.paid_at = now
        payment.updated_at = now
        refresh_payment(payment, now)
        self._save_payment(payment, expected_version)

        total = len(payment.installments)
        self.audit_trail.log_event(
            event_type=AuditEventType.INSTALLMENT_PAID,
            entity_type="payment",
            entity_id=payment.id,
            user_id=acting_user_id,
            metadata={
                "installment_number": installment.installment_number,
                "amount": installment.amount,
                "previous_status": previous_status.value,
                "status": payment.status.value
            }
        )
        log_action(logger, "info", f"Installment {index + 1} of {total} marked as paid",
                   user_id=acting_user_id, action="installment_paid", resource=payment.id,
                   extra={"status": payment.status.value})

        self._emit_received_alert(
            payment,
            f"Payment received for installment {index + 1} of {total}",
            acting_user_id
        )
        return payment, get_summary(payment)

    def mark_complete_payment_paid(
        self,
        payment_id: str,
        acting_user_id: str,
        now: Optional[datetime] = None
    ) -> Tuple[Payment, PaymentSummary]:
        """
        Record payment of a complete-type payment

        Returns:
            Updated payment and its summary
        """
        now = now or self.clock.now()
        payment = self.require_payment(payment_id, now)

        if payment.payment_type != PaymentType.COMPLETE:
            raise InvalidOperationError("This endpoint is only for complete payments")
        if payment.paid_at is not None:
            raise InvalidOperationError("This payment is already completed")

        expected_version = payment.version
        previous_status = payment.status
        payment.paid_at = now
        payment.updated_at = now
        refresh_payment(payment, now)
        self._save_payment(payment, expected_version)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_COMPLETED,
            entity_type="payment",
            entity_id=payment.id,
            user_id=acting_user_id,
            metadata={
                "amount": payment.total_amount,
                "previous_status": previous_status.value
            }
        )
        log_action(logger, "info", "Complete payment marked as paid",
                   user_id=acting_user_id, action="payment_completed", resource=payment.id)

        self._emit_received_alert(payment, "Complete payment received", acting_user_id)
        return payment, get_summary(payment)

    def update_installment_due_date(
        self,
        payment_id: str,
        installment_index: Any,
        new_due_date: Any,
        acting_user_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Payment:
        """Move an unpaid installment's due date; amounts are left untouched"""
        now = now or self.clock.now()
        due_date = parse_datetime(new_due_date, "new_due_date")
        payment = self.require_payment(payment_id, now)
        index = self._check_installment_index(payment, installment_index)

        installment = payment.installments[index]
        if installment.is_paid:
            raise InvalidOperationError("Cannot update due date for a paid installment")

        expected_version = payment.version
        previous_due_date = installment.due_date
        installment.due_date = due_date
        payment.updated_at = now
        refresh_payment(payment, now)
        self._save_payment(payment, expected_version)

        self.audit_trail.log_event(
            event_type=AuditEventType.INSTALLMENT_DUE_DATE_CHANGED,
            entity_type="payment",
            entity_id=payment.id,
            user_id=acting_user_id,
            metadata={
                "installment_number": installment.installment_number,
                "previous_due_date": previous_due_date,
                "due_date": due_date,
                "status": payment.status.value
            }
        )
        log_action(logger, "info", f"Installment {index + 1} due date updated",
                   user_id=acting_user_id, action="installment_due_date_changed",
                   resource=payment.id)
        return payment

    def delete_payment(self, payment_id: str, acting_user_id: Optional[str] = None) -> int:
        """
        Delete a payment and every alert referencing it

        Returns:
            Number of alerts deleted with the payment
        """
        if not self.storage.delete(self.payments_table, payment_id):
            raise NotFoundError("Payment not found")
        alerts_deleted = self.alert_emitter.delete_alerts_for_payment(payment_id)

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_DELETED,
            entity_type="payment",
            entity_id=payment_id,
            user_id=acting_user_id,
            metadata={"alerts_deleted": alerts_deleted}
        )
        log_action(logger, "info", "Payment deleted", user_id=acting_user_id,
                   action="payment_deleted", resource=payment_id,
                   extra={"alerts_deleted": alerts_deleted})
        return alerts_deleted

    def send_payment_alert(
        self,
        user_id: str,
        formation_id: str,
        message: str,
        alert_type: Any,
        sent_by: str
    ) -> PaymentAlert:
        """Manually alert a student about their open payment for a formation"""
        payment = self.find_open_payment(user_id, formation_id)
        if not payment:
            raise NotFoundError("No pending payment found for this user and formation")

        return self.alert_emitter.emit(
            alert_type=alert_type,
            user_id=payment.user_id,
            message=message,
            sent_by=sent_by,
            formation_id=payment.formation_id,
            payment_id=payment.id,
            due_date=get_summary(payment).next_due_date
        )

    # Queries

    def get_payment(self, payment_id: str, now: Optional[datetime] = None) -> Optional[Payment]:
        """Load a payment with its status re-derived for now"""
        data = self.storage.load(self.payments_table, payment_id)
        if not data:
            return None
        payment = Payment.from_dict(data)
        refresh_payment(payment, now or self.clock.now())
        return payment

    def require_payment(self, payment_id: str, now: Optional[datetime] = None) -> Payment:
        payment = self.get_payment(payment_id, now)
        if not payment:
            raise NotFoundError("Payment not found")
        return payment

    def list_payments(
        self,
        status: Optional[Any] = None,
        payment_type: Optional[Any] = None,
        overdue: bool = False,
        now: Optional[datetime] = None
    ) -> List[Payment]:
        """
        List payments filtered by status and type, newest first

        The status filter is applied to the stored status and again after
        re-deriving, so a payment that lapsed since the last sweep is left
        out rather than returned with a status other than the one asked for.
        """
        filters = {}
        if status:
            filters['status'] = _coerce_status(status).value
        if payment_type:
            filters['payment_type'] = _coerce_payment_type(payment_type).value
        if overdue:
            filters['status'] = PaymentStatus.OVERDUE.value
        payments = self._load_many(filters, now)
        if 'status' in filters:
            payments = [p for p in payments if p.status.value == filters['status']]
        return payments

    def get_payments_by_user(self, user_id: str, now: Optional[datetime] = None) -> List[Payment]:
        return self._load_many({'user_id': str(user_id)}, now)

    def get_overdue_payments(self, now: Optional[datetime] = None) -> List[Payment]:
        payments = self._load_many({'status': PaymentStatus.OVERDUE.value}, now)
        payments.sort(key=lambda p: p.updated_at, reverse=True)
        return payments

    def find_open_payment(self, user_id: str, formation_id: str) -> Optional[Payment]:
        """Oldest pending, partial or overdue payment for a user and formation"""
        candidates = [
            p for p in self._load_many({'user_id': str(user_id), 'formation_id': str(formation_id)})
            if p.status in OPEN_STATUSES
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda p: p.created_at)

    def get_statistics(self) -> Dict[str, Any]:
        """Counts and amount totals grouped by status"""
        payments = [Payment.from_dict(d) for d in self.storage.load_all(self.payments_table)]

        by_status = {
            status.value: {"count": 0, "total_amount": Decimal('0')}
            for status in PaymentStatus
        }
        for payment in payments:
            bucket = by_status[payment.status.value]
            bucket["count"] += 1
            bucket["total_amount"] += payment.total_amount

        return {
            "total": len(payments),
            "by_status": by_status,
            "total_revenue": by_status[PaymentStatus.COMPLETED.value]["total_amount"],
            "overdue": by_status[PaymentStatus.OVERDUE.value]["count"],
            "partial": by_status[PaymentStatus.PARTIAL.value]["count"]
        }

    # Internals

    def _load_many(self, filters: Dict[str, Any], now: Optional[datetime] = None) -> List[Payment]:
        now = now or self.clock.now()
        payments = []
        for data in self.storage.find(self.payments_table, filters):
            payment = Payment.from_dict(data)
            refresh_payment(payment, now)
            payments.append(payment)
        payments.sort(key=lambda p: p.created_at, reverse=True)
        return payments

    def _check_installment_index(self, payment: Payment, installment_index: Any) -> int:
        if payment.payment_type != PaymentType.INSTALLMENT:
            raise InvalidOperationError("This endpoint is only for installment payments")
        if installment_index is None:
            raise ValidationError("installment_index is required")
        if isinstance(installment_index, bool) or not isinstance(installment_index, int):
            raise ValidationError("installment_index must be an integer")
        if installment_index < 0 or installment_index >= len(payment.installments):
            raise InvalidOperationError("Invalid installment index")
        return installment_index

    def _save_payment(self, payment: Payment, expected_version: Optional[int]) -> None:
        """Versioned write; bumps the payment's version on success"""
        new_version = 0 if expected_version is None else expected_version + 1
        data = payment.to_dict()
        data['version'] = new_version
        self.storage.save_versioned(self.payments_table, payment.id, data, expected_version)
        payment.version = new_version

    def _emit_received_alert(self, payment: Payment, message: str, acting_user_id: str) -> None:
        """Alert the student; a failure here never undoes the payment transition"""
        try:
            self.alert_emitter.emit(
                alert_type=AlertType.PAYMENT_RECEIVED,
                user_id=payment.user_id,
                message=message,
                sent_by=acting_user_id,
                formation_id=payment.formation_id,
                payment_id=payment.id
            )
        except Exception as e:
            log_action(logger, "error", f"Payment alert emission failed: {e}",
                       user_id=acting_user_id, action="alert_emit_failed",
                       resource=payment.id, exc_info=True)
