"""
subscriptions.py
Subscription endpoints consumed by the mobile app: receipt validation, status,
history, restore and cancellation
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
import logging
import math

from db import get_db
from models import User
from schemas import (
    ApiResponse, ValidateReceiptRequest, RestorePurchasesRequest,
    SubscriptionSummary, SubscriptionStatusData, RestorePurchasesData
)
from auth import get_current_user
from services.rate_limiter import receipt_throttle
from services.audit_service import AuditService
from services.subscription_service import SubscriptionService
from utils.errors import ApiError

router = APIRouter(prefix="/api/v1/subscriptions", tags=["Subscriptions"])

logger = logging.getLogger(__name__)


def _enforce_rate_limit(db: Session, request: Request, user: User, action: str) -> None:
    retry_after = receipt_throttle.check((user.id, action))
    if retry_after:
        AuditService.record(db, user.id, action, "rate_limited", request)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many receipt verifications",
            headers={"Retry-After": str(math.ceil(retry_after))},
        )


@router.post("/validate-receipt", response_model=ApiResponse)
async def validate_receipt(
    request: Request,
    body: ValidateReceiptRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Validate a store receipt and activate the matching subscription"""
    _enforce_rate_limit(db, request, current_user, "validate_receipt")
    platform = body.platform.value

    try:
        subscription = await SubscriptionService.validate_receipt(
            db,
            current_user.id,
            platform,
            body.productId,
            body.receipt,
            body.transactionId
        )
    except ApiError as e:
        db.rollback()
        AuditService.receipt_attempt(
            db, current_user.id, request, platform, body.productId, "failed", error_code=e.code
        )
        raise

    AuditService.receipt_attempt(
        db, current_user.id, request, platform, body.productId, "success",
        subscription_status=subscription.status
    )

    summary = SubscriptionSummary.from_record(subscription)
    return ApiResponse(success=True, data={
        "subscription": summary.model_dump(
            mode="json", include={"id", "plan", "status", "startDate", "currentPeriodEnd", "autoRenewing"}
        )
    })


@router.get("/status", response_model=ApiResponse)
async def get_subscription_status(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get the user's current subscription status"""
    result = SubscriptionService.get_subscription_status(db, current_user.id)
    subscription = result["subscription"]

    data = SubscriptionStatusData(
        subscription=SubscriptionSummary.from_record(subscription) if subscription else None,
        isActive=result["is_active"],
        plan=result["plan"],
    )
    return ApiResponse(success=True, data=data.model_dump(mode="json"))


@router.get("/history", response_model=ApiResponse)
async def get_subscription_history(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get every subscription the user has had, newest first"""
    history = SubscriptionService.get_subscription_history(db, current_user.id)
    return ApiResponse(success=True, data=[
        SubscriptionSummary.from_record(sub).model_dump(mode="json") for sub in history
    ])


@router.post("/restore", response_model=ApiResponse)
async def restore_purchases(
    request: Request,
    body: RestorePurchasesRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Re-validate a batch of receipts, e.g. after a reinstall"""
    _enforce_rate_limit(db, request, current_user, "restore_purchases")

    result = await SubscriptionService.restore_purchases(
        db,
        current_user.id,
        [receipt.model_dump(mode="json") for receipt in body.receipts]
    )
    subscription = result["subscription"]

    AuditService.record(
        db, current_user.id, "restore_purchases", "success", request,
        submitted=len(body.receipts), restored=result["restored"]
    )

    data = RestorePurchasesData(
        restored=result["restored"],
        currentSubscription=SubscriptionSummary.from_record(subscription) if subscription else None,
        isActive=result["is_active"],
        plan=result["plan"],
    )
    return ApiResponse(success=True, data=data.model_dump(mode="json"))


@router.post("/{subscription_id}/cancel", response_model=ApiResponse)
async def cancel_subscription(
    request: Request,
    subscription_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Cancel a subscription at the end of its current period"""
    subscription = SubscriptionService.cancel_subscription(db, current_user.id, subscription_id)

    AuditService.record(
        db, current_user.id, "cancel_subscription", "success", request, subscriptionId=subscription_id
    )

    summary = SubscriptionSummary.from_record(subscription)
    return ApiResponse(success=True, data={
        "subscription": summary.model_dump(
            mode="json", include={"id", "plan", "status", "cancelledAt", "currentPeriodEnd", "autoRenewing"}
        ),
        "message": "Subscription will be cancelled at the end of the current period",
    })
