from pydantic import BaseModel, ConfigDict, Field, field_serializer
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum


class Platform(str, Enum):
    ios = "ios"
    android = "android"


# *** SUBSCRIPTION REQUEST SCHEMAS ***
class ValidateReceiptRequest(BaseModel):
    platform: Platform
    productId: str = Field(min_length=1)
    receipt: str = Field(min_length=1)
    transactionId: str = Field(min_length=1)

class RestorePurchasesRequest(BaseModel):
    receipts: List[ValidateReceiptRequest] = Field(min_length=1)


# *** SUBSCRIPTION RESPONSE SCHEMAS ***
class ApiResponse(BaseModel):
    success: bool
    data: Any = None

class SubscriptionSummary(BaseModel):
    id: str
    plan: str
    status: str
    startDate: Optional[datetime] = None
    endDate: Optional[datetime] = None
    currentPeriodEnd: Optional[datetime] = None
    autoRenewing: bool
    provider: Optional[str] = None
    productId: Optional[str] = None
    cancelledAt: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("startDate", "endDate", "currentPeriodEnd", "cancelledAt")
    def _serialize_utc(self, value: Optional[datetime]) -> Optional[str]:
        # Columns hold naive UTC
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()

    @classmethod
    def from_record(cls, subscription) -> "SubscriptionSummary":
        return cls(
            id=subscription.id,
            plan=subscription.plan,
            status=subscription.status,
            startDate=subscription.start_date,
            endDate=subscription.end_date,
            currentPeriodEnd=subscription.current_period_end,
            autoRenewing=not subscription.cancel_at_period_end,
            provider=subscription.provider,
            productId=(subscription.extra_data or {}).get("productId"),
            cancelledAt=subscription.cancelled_at,
        )

class SubscriptionStatusData(BaseModel):
    subscription: Optional[SubscriptionSummary] = None
    isActive: bool
    plan: str

class RestorePurchasesData(BaseModel):
    restored: int
    currentSubscription: Optional[SubscriptionSummary] = None
    isActive: bool
    plan: str

class ErrorDetail(BaseModel):
    code: str
    message: str

class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    details: Optional[Dict[str, Any]] = None
