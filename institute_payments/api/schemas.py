"""
Pydantic schemas for API requests
"""

from typing import List, Optional, Union
from pydantic import BaseModel, Field


Amount = Union[str, int, float]


# Payment schemas
class InstallmentModel(BaseModel):
    amount: Amount = Field(..., description="Positive decimal amount")
    due_date: str = Field(..., description="ISO-8601 date or datetime")


class CreatePaymentRequest(BaseModel):
    user_id: str
    formation_id: str
    total_amount: Amount
    payment_type: str = Field(..., description="complete or installment")
    due_date: Optional[str] = None  # Complete payments; defaults to now
    installments: Optional[List[InstallmentModel]] = None
    description: Optional[str] = None


class MarkInstallmentPaidRequest(BaseModel):
    installment_index: int = Field(..., description="0-based installment position")


class TranchePaymentRequest(BaseModel):
    tranche_index: int


class UpdateDueDateRequest(BaseModel):
    installment_index: int
    new_due_date: str


class SendPaymentAlertRequest(BaseModel):
    user_id: str
    formation_id: str
    message: str
    alert_type: str = "payment_reminder"


# Alert schemas
class CreateAlertRequest(BaseModel):
    user_id: str
    message: str
    alert_type: str = "general"
    formation_id: Optional[str] = None
    payment_id: Optional[str] = None
    due_date: Optional[str] = None
    title: Optional[str] = None


class BulkAlertRequest(BaseModel):
    user_ids: List[str]
    message: str
    alert_type: str = "general"
    formation_id: Optional[str] = None
