"""
Payment Alert Module

Notification records telling a student about a payment event: installment
received, payment overdue, reminders. Alerts are created as a side effect of
payment transitions or sent manually by staff, and are only ever mutated to
flip their read status.
"""

from datetime import datetime
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock, parse_datetime
from .errors import NotFoundError, PermissionDeniedError, ValidationError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("institute_payments.alerts")


class AlertType(Enum):
    """Kinds of payment alerts"""
    PAYMENT_REMINDER = "payment_reminder"
    PAYMENT_OVERDUE = "payment_overdue"
    PAYMENT_DUE_SOON = "payment_due_soon"
    PAYMENT_RECEIVED = "payment_received"
    GENERAL = "general"


class AlertStatus(Enum):
    """Read state of an alert"""
    UNREAD = "unread"
    READ = "read"


DEFAULT_TITLES = {
    AlertType.PAYMENT_REMINDER: "Rappel de paiement",
    AlertType.PAYMENT_OVERDUE: "Paiement en retard",
    AlertType.PAYMENT_DUE_SOON: "Échéance de paiement proche",
}
FALLBACK_TITLE = "Alerte de paiement"


@dataclass
class PaymentAlert(StorageRecord):
    """Notification addressed to one user"""
    user_id: str
    sent_by: str
    message: str
    alert_type: AlertType
    title: str
    formation_id: Optional[str] = None
    payment_id: Optional[str] = None
    due_date: Optional[datetime] = None
    status: AlertStatus = AlertStatus.UNREAD
    read_at: Optional[datetime] = None

    @property
    def is_read(self) -> bool:
        """Boolean view of status for readers that predate the status field"""
        return self.status == AlertStatus.READ

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['alert_type'] = self.alert_type.value
        result['status'] = self.status.value
        result['due_date'] = self.due_date.isoformat() if self.due_date else None
        result['read_at'] = self.read_at.isoformat() if self.read_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentAlert':
        data = dict(data)
        data['alert_type'] = AlertType(data['alert_type'])
        data['status'] = AlertStatus(data['status'])
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        for key in ('due_date', 'read_at'):
            if data.get(key):
                data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


@dataclass
class BulkEmitResult:
    """Outcome of a bulk send: one independent insert per user"""
    created: List[PaymentAlert] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


def _coerce_alert_type(alert_type: Any) -> AlertType:
    if isinstance(alert_type, AlertType):
        return alert_type
    if not alert_type:
        raise ValidationError("Alert type is required")
    try:
        return AlertType(alert_type)
    except ValueError:
        allowed = ", ".join(t.value for t in AlertType)
        raise ValidationError(f"Unknown alert type {alert_type!r}; expected one of: {allowed}")


class AlertEmitter:
    """
    Creates and manages payment alerts
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        clock: Optional[Clock] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail or AuditTrail(storage)
        self.clock = clock or SystemClock()
        self.alerts_table = "payment_alerts"

    def emit(
        self,
        alert_type: Any,
        user_id: str,
        message: str,
        sent_by: str,
        formation_id: Optional[str] = None,
        payment_id: Optional[str] = None,
        due_date: Optional[Any] = None,
        title: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PaymentAlert:
        """
        Create and persist an unread alert

        Args:
            alert_type: AlertType or its string value
            user_id: Recipient
            message: Alert body
            sent_by: Acting user
            formation_id: Optional formation reference
            payment_id: Optional payment reference
            due_date: Optional due date shown for context
            title: Optional title; derived from the type when omitted

        Returns:
            Created PaymentAlert
        """
        kind = _coerce_alert_type(alert_type)
        if not message or not str(message).strip():
            raise ValidationError("Alert message is required")
        if not user_id:
            raise ValidationError("Alert recipient user_id is required")
        if not sent_by:
            raise ValidationError("Alert sender is required")

        now = now or self.clock.now()
        alert = PaymentAlert(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=str(user_id),
            sent_by=str(sent_by),
            message=str(message),
            alert_type=kind,
            title=title or DEFAULT_TITLES.get(kind, FALLBACK_TITLE),
            formation_id=formation_id,
            payment_id=payment_id,
            due_date=parse_datetime(due_date, "due_date") if due_date else None
        )
        self.storage.save(self.alerts_table, alert.id, alert.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.ALERT_SENT,
            entity_type="alert",
            entity_id=alert.id,
            user_id=alert.sent_by,
            metadata={
                "recipient": alert.user_id,
                "alert_type": kind.value,
                "payment_id": payment_id
            }
        )
        log_action(logger, "info", "Payment alert sent", user_id=alert.sent_by,
                   action="alert_sent", resource=alert.id,
                   extra={"recipient": alert.user_id, "alert_type": kind.value})
        return alert

    def emit_bulk(
        self,
        user_ids: List[str],
        message: str,
        sent_by: str,
        alert_type: Any = AlertType.GENERAL,
        formation_id: Optional[str] = None
    ) -> BulkEmitResult:
        """
        Send the same alert to many users. Each insert is independent: a bad
        recipient is recorded in ``failed`` and the rest are still sent.
        """
        if not user_ids:
            raise ValidationError("User IDs are required")
        kind = _coerce_alert_type(alert_type or AlertType.GENERAL)
        if not message or not str(message).strip():
            raise ValidationError("Alert message is required")

        result = BulkEmitResult()
        for user_id in user_ids:
            try:
                alert = self.emit(
                    alert_type=kind,
                    user_id=user_id,
                    message=message,
                    sent_by=sent_by,
                    formation_id=formation_id
                )
                result.created.append(alert)
            except Exception as e:
                result.failed[str(user_id)] = str(e)
                log_action(logger, "error", f"Bulk alert to {user_id!r} failed: {e}",
                           user_id=sent_by, action="alert_bulk_send", exc_info=True)
        return result

    def get_alert(self, alert_id: str) -> Optional[PaymentAlert]:
        data = self.storage.load(self.alerts_table, alert_id)
        if data:
            return PaymentAlert.from_dict(data)
        return None

    def mark_read(
        self,
        alert_id: str,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PaymentAlert:
        """
        Flip an alert to read. Marking an already-read alert is a no-op.

        Args:
            alert_id: Alert to update
            user_id: When given, the caller must be the alert's recipient
        """
        alert = self.get_alert(alert_id)
        if not alert:
            raise NotFoundError("Alert not found")
        if user_id is not None and alert.user_id != str(user_id):
            raise PermissionDeniedError("Access denied")

        if alert.status == AlertStatus.READ:
            return alert

        now = now or self.clock.now()
        alert.status = AlertStatus.READ
        alert.read_at = now
        alert.updated_at = now
        self.storage.save(self.alerts_table, alert.id, alert.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.ALERT_READ,
            entity_type="alert",
            entity_id=alert.id,
            user_id=user_id
        )
        return alert

    def get_alerts(
        self,
        status: Optional[Any] = None,
        alert_type: Optional[Any] = None,
        user_id: Optional[str] = None
    ) -> List[PaymentAlert]:
        """List alerts matching the filters, newest first"""
        filters = {}
        if status:
            try:
                filters['status'] = AlertStatus(status).value
            except ValueError:
                raise ValidationError(f"Unknown alert status {status!r}")
        if alert_type:
            filters['alert_type'] = _coerce_alert_type(alert_type).value
        if user_id:
            filters['user_id'] = str(user_id)

        alerts = [PaymentAlert.from_dict(d) for d in self.storage.find(self.alerts_table, filters)]
        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return alerts

    def get_alerts_for_user(self, user_id: str) -> List[PaymentAlert]:
        return self.get_alerts(user_id=user_id)

    def get_unread_count(self, user_id: str) -> int:
        return len(self.storage.find(self.alerts_table, {
            'user_id': str(user_id),
            'status': AlertStatus.UNREAD.value
        }))

    def delete_alert(self, alert_id: str, acting_user_id: Optional[str] = None) -> None:
        if not self.storage.delete(self.alerts_table, alert_id):
            raise NotFoundError("Alert not found")
        self.audit_trail.log_event(
            event_type=AuditEventType.ALERT_DELETED,
            entity_type="alert",
            entity_id=alert_id,
            user_id=acting_user_id
        )

    def delete_alerts_for_payment(self, payment_id: str) -> int:
        """Cascade delete every alert referencing a payment"""
        deleted = 0
        for data in self.storage.find(self.alerts_table, {'payment_id': payment_id}):
            if self.storage.delete(self.alerts_table, data['id']):
                deleted += 1
        return deleted

    def get_statistics(self) -> Dict[str, Any]:
        """Totals, read/unread split, counts by type and the five most recent alerts"""
        alerts = [PaymentAlert.from_dict(d) for d in self.storage.load_all(self.alerts_table)]

        by_type = {t.value: 0 for t in AlertType}
        unread = 0
        for alert in alerts:
            by_type[alert.alert_type.value] += 1
            if alert.status == AlertStatus.UNREAD:
                unread += 1

        alerts.sort(key=lambda a: a.created_at, reverse=True)
        return {
            "total_alerts": len(alerts),
            "unread_alerts": unread,
            "read_alerts": len(alerts) - unread,
            "alerts_by_type": by_type,
            "recent_alerts": alerts[:5]
        }
