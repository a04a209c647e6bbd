"""
Payment alert endpoints
"""

from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, status

from .auth import PaymentSystem, CurrentUser, get_payment_system, require_roles, STAFF_ROLES
from .schemas import CreateAlertRequest, BulkAlertRequest
from ..alerts import PaymentAlert


router = APIRouter()


def alert_response(alert: PaymentAlert) -> Dict[str, Any]:
    result = alert.to_dict()
    result["is_read"] = alert.is_read
    return result


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_alert(
    request: CreateAlertRequest,
    user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Create a payment alert for one user"""
    alert = system.alert_emitter.emit(
        alert_type=request.alert_type,
        user_id=request.user_id,
        message=request.message,
        sent_by=user.user_id,
        formation_id=request.formation_id,
        payment_id=request.payment_id,
        due_date=request.due_date,
        title=request.title
    )
    return {"success": True, "alert": alert_response(alert)}


@router.get("")
async def list_alerts(
    status: Optional[str] = None,
    alert_type: Optional[str] = None,
    user_id: Optional[str] = None,
    user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
    system: PaymentSystem = Depends(get_payment_system)
):
    """List alerts, newest first"""
    alerts = system.alert_emitter.get_alerts(status=status, alert_type=alert_type, user_id=user_id)
    return {"success": True, "alerts": [alert_response(a) for a in alerts]}


@router.post("/bulk-send")
async def bulk_send_alerts(
    request: BulkAlertRequest,
    user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Send the same alert to several users"""
    result = system.alert_emitter.emit_bulk(
        user_ids=request.user_ids,
        message=request.message,
        sent_by=user.user_id,
        alert_type=request.alert_type,
        formation_id=request.formation_id
    )
    return {
        "success": True,
        "message": f"{len(result.created)} alerts sent successfully",
        "alerts": len(result.created),
        "failed": result.failed
    }


@router.get("/statistics")
async def get_alert_statistics(
    user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Alert totals, read split, counts by type and the most recent alerts"""
    stats = system.alert_emitter.get_statistics()
    stats["recent_alerts"] = [alert_response(a) for a in stats["recent_alerts"]]
    return {"success": True, "statistics": stats}


@router.delete("/{alert_id}")
async def delete_alert(
    alert_id: str,
    user: CurrentUser = Depends(require_roles(*STAFF_ROLES)),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Delete an alert"""
    system.alert_emitter.delete_alert(alert_id, acting_user_id=user.user_id)
    return {"success": True, "message": "Alert deleted successfully"}
