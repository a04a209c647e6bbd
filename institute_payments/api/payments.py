"""
Payment endpoints
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, HTTPException, status

from .auth import (
    PaymentSystem, CurrentUser, get_payment_system, get_current_user,
    require_roles, STAFF_ROLES
)
from .alerts import alert_response
from .schemas import (
    CreatePaymentRequest, MarkInstallmentPaidRequest, TranchePaymentRequest,
    UpdateDueDateRequest, SendPaymentAlertRequest
)
from ..payments import Payment, get_summary


router = APIRouter()

staff_only = require_roles(*STAFF_ROLES)
student_only = require_roles("student")


def payment_response(payment: Payment, system: PaymentSystem) -> Dict[str, Any]:
    """Payment document with user and formation display fields"""
    result = payment.to_dict()
    user = system.directory.get_user(payment.user_id)
    formation = system.directory.get_formation(payment.formation_id)
    result["user"] = user.to_dict() if user else None
    result["formation"] = formation.to_dict() if formation else None
    return result


def _sweep_before_read(system: PaymentSystem) -> None:
    if system.config.sweep_on_read:
        system.sweeper.sweep_overdue()


@router.post("/create", status_code=status.HTTP_201_CREATED)
async def create_payment(
    request: CreatePaymentRequest,
    user: CurrentUser = Depends(staff_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Create a complete or installment payment"""
    installments = None
    if request.installments is not None:
        installments = [i.dict() for i in request.installments]

    payment = system.payment_manager.create_payment(
        user_id=request.user_id,
        formation_id=request.formation_id,
        total_amount=request.total_amount,
        payment_type=request.payment_type,
        due_date=request.due_date,
        installments=installments,
        description=request.description,
        created_by=user.user_id
    )
    return {
        "success": True,
        "message": "Payment created successfully",
        "payment": payment_response(payment, system)
    }


@router.get("")
async def list_payments(
    status: Optional[str] = None,
    payment_type: Optional[str] = None,
    overdue: bool = False,
    user: CurrentUser = Depends(staff_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """List payments, newest first"""
    _sweep_before_read(system)
    payments = system.payment_manager.list_payments(
        status=status, payment_type=payment_type, overdue=overdue
    )
    return {"success": True, "payments": [payment_response(p, system) for p in payments]}


@router.get("/statistics")
async def get_payment_statistics(
    user: CurrentUser = Depends(staff_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Payment counts and amounts grouped by status"""
    stats = system.payment_manager.get_statistics()
    return {
        "success": True,
        "statistics": {
            "total": stats["total"],
            "by_status": {
                name: {"count": bucket["count"], "total_amount": str(bucket["total_amount"])}
                for name, bucket in stats["by_status"].items()
            },
            "total_revenue": str(stats["total_revenue"]),
            "overdue": stats["overdue"],
            "partial": stats["partial"]
        }
    }


@router.get("/overdue")
async def get_overdue_payments(
    user: CurrentUser = Depends(staff_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Sweep, then list overdue payments"""
    _sweep_before_read(system)
    payments = system.payment_manager.get_overdue_payments()
    return {"success": True, "payments": [payment_response(p, system) for p in payments]}


@router.get("/my-payments")
async def get_my_payments(
    user: CurrentUser = Depends(student_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Payments owed by the calling student"""
    payments = system.payment_manager.get_payments_by_user(user.user_id)
    return {"success": True, "payments": [payment_response(p, system) for p in payments]}


@router.get("/my-alerts")
async def get_my_alerts(
    user: CurrentUser = Depends(student_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Alerts addressed to the calling student"""
    alerts = system.alert_emitter.get_alerts_for_user(user.user_id)
    return {
        "success": True,
        "alerts": [alert_response(a) for a in alerts],
        "unread": system.alert_emitter.get_unread_count(user.user_id)
    }


@router.put("/alerts/{alert_id}/read")
async def mark_alert_read(
    alert_id: str,
    user: CurrentUser = Depends(student_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Mark one of the caller's alerts as read"""
    alert = system.alert_emitter.mark_read(alert_id, user_id=user.user_id)
    return {"success": True, "message": "Alert marked as read", "alert": alert_response(alert)}


@router.get("/user/{user_id}")
async def get_payments_by_user(
    user_id: str,
    user: CurrentUser = Depends(staff_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Payments owed by one user"""
    payments = system.payment_manager.get_payments_by_user(user_id)
    return {"success": True, "payments": [payment_response(p, system) for p in payments]}


@router.post("/send-alert", status_code=status.HTTP_201_CREATED)
async def send_payment_alert(
    request: SendPaymentAlertRequest,
    user: CurrentUser = Depends(staff_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Alert a student about their open payment for a formation"""
    alert = system.payment_manager.send_payment_alert(
        user_id=request.user_id,
        formation_id=request.formation_id,
        message=request.message,
        alert_type=request.alert_type,
        sent_by=user.user_id
    )
    return {"success": True, "message": "Alert sent successfully", "alert": alert_response(alert)}


@router.put("/{payment_id}/installment/pay")
async def mark_installment_paid(
    payment_id: str,
    request: MarkInstallmentPaidRequest,
    user: CurrentUser = Depends(staff_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Mark one installment as paid"""
    payment, summary = system.payment_manager.mark_installment_paid(
        payment_id, request.installment_index, acting_user_id=user.user_id
    )
    return {
        "success": True,
        "message": f"Installment {request.installment_index + 1} marked as paid",
        "payment": payment_response(payment, system),
        "summary": summary.to_dict()
    }


@router.put("/{payment_id}/installment/due-date")
async def update_installment_due_date(
    payment_id: str,
    request: UpdateDueDateRequest,
    user: CurrentUser = Depends(staff_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Move the due date of an unpaid installment"""
    payment = system.payment_manager.update_installment_due_date(
        payment_id, request.installment_index, request.new_due_date,
        acting_user_id=user.user_id
    )
    return {
        "success": True,
        "message": "Due date updated successfully",
        "payment": payment_response(payment, system)
    }


@router.put("/{payment_id}/complete/pay")
async def mark_complete_payment_paid(
    payment_id: str,
    user: CurrentUser = Depends(staff_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Mark a complete payment as paid"""
    payment, summary = system.payment_manager.mark_complete_payment_paid(
        payment_id, acting_user_id=user.user_id
    )
    return {
        "success": True,
        "message": "Payment marked as completed",
        "payment": payment_response(payment, system),
        "summary": summary.to_dict()
    }


@router.put("/{payment_id}/tranche")
async def update_tranche_payment(
    payment_id: str,
    request: TranchePaymentRequest,
    user: CurrentUser = Depends(staff_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Older clients call installments tranches"""
    payment, summary = system.payment_manager.mark_installment_paid(
        payment_id, request.tranche_index, acting_user_id=user.user_id
    )
    return {
        "success": True,
        "message": f"Installment {request.tranche_index + 1} marked as paid",
        "payment": payment_response(payment, system),
        "summary": summary.to_dict()
    }


@router.delete("/{payment_id}")
async def delete_payment(
    payment_id: str,
    user: CurrentUser = Depends(staff_only),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Delete a payment and its alerts"""
    alerts_deleted = system.payment_manager.delete_payment(payment_id, acting_user_id=user.user_id)
    return {
        "success": True,
        "message": "Payment deleted successfully",
        "alerts_deleted": alerts_deleted
    }


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    user: CurrentUser = Depends(get_current_user),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Payment details with its summary"""
    payment = system.payment_manager.require_payment(payment_id)
    if user.role == "student" and payment.user_id != user.user_id:
        raise HTTPException(status_code=403, detail="Access denied")
    return {
        "success": True,
        "payment": payment_response(payment, system),
        "summary": get_summary(payment).to_dict()
    }
