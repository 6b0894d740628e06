"""
subscription_service.py
Subscription business logic: receipt validation, status, history, cancellation,
restore and store webhook handling
"""

from sqlalchemy.orm import Session
from sqlalchemy import and_, or_
from typing import Dict, Any, Optional, List
from datetime import datetime
import logging

from models import User, Subscription, SubscriptionPlan, SubscriptionStatus, SubscriptionProvider
from services.receipt_verifier import ReceiptVerifier, receipt_verifier, parse_rfc3339
from utils.errors import ApiError

logger = logging.getLogger(__name__)


# Store product id -> plan and billing period
PRODUCT_MAPPINGS = {
    # iOS products
    "com.ideaspark.app.pro_monthly": {"plan": SubscriptionPlan.PRO.value, "period": "MONTHLY"},
    "com.ideaspark.app.pro_yearly": {"plan": SubscriptionPlan.PRO.value, "period": "YEARLY"},
    # Android products
    "pro_monthly_subscription": {"plan": SubscriptionPlan.PRO.value, "period": "MONTHLY"},
    "pro_yearly_subscription": {"plan": SubscriptionPlan.PRO.value, "period": "YEARLY"},
}

# Apple App Store Server Notifications
APPLE_CANCEL_NOTIFICATIONS = {"CANCEL", "REFUND", "REVOKE"}
APPLE_RENEW_NOTIFICATIONS = {"DID_RENEW"}
APPLE_EXPIRE_NOTIFICATIONS = {"DID_FAIL_TO_RENEW", "EXPIRED"}

# Google Real-time developer notifications (SubscriptionNotification.notificationType)
GOOGLE_RECOVERED = 1
GOOGLE_RENEWED = 2
GOOGLE_CANCELED = 3
GOOGLE_REVOKED = 12
GOOGLE_EXPIRED = 13


class SubscriptionService:
    """Service class for store subscription management"""

    @staticmethod
    async def validate_receipt(db: Session, user_id: int, platform: str, product_id: str,
                               receipt: str, transaction_id: str,
                               verifier: ReceiptVerifier = receipt_verifier) -> Subscription:
        """Verify a store receipt and create or update the user's subscription row"""
        logger.info(f"Validating receipt for user {user_id}: platform={platform}, "
                    f"product={product_id}, transaction={transaction_id}")

        product_mapping = PRODUCT_MAPPINGS.get(product_id)
        if not product_mapping:
            raise ApiError(400, "Invalid product ID", "INVALID_PRODUCT")

        verified, info = await verifier.verify(platform, receipt, product_id, transaction_id)
        if not verified:
            logger.warning(f"Receipt verification failed for user {user_id}: {info.get('error')}")
            raise ApiError(400, "Receipt validation failed", "VALIDATION_FAILED")

        now = datetime.utcnow()
        expiry_date: Optional[datetime] = info.get("expiresAt")
        original_transaction_id = info.get("originalTransactionId") or transaction_id
        status = (
            SubscriptionStatus.ACTIVE.value
            if expiry_date is None or expiry_date > now
            else SubscriptionStatus.EXPIRED.value
        )

        subscription = db.query(Subscription).filter(
            or_(
                Subscription.external_id == original_transaction_id,
                and_(Subscription.user_id == user_id, Subscription.status == SubscriptionStatus.ACTIVE.value),
            )
        ).order_by(Subscription.created_at.desc()).first()

        if subscription and subscription.user_id != user_id:
            logger.warning(f"Receipt {original_transaction_id} already linked to user {subscription.user_id}")
            raise ApiError(400, "Receipt validation failed", "VALIDATION_FAILED")

        extra = {
            "platform": platform,
            "productId": product_id,
            "billingPeriod": product_mapping["period"],
            "originalTransactionId": original_transaction_id,
            "lastValidatedAt": now.isoformat(),
        }

        if subscription:
            subscription.status = status
            subscription.plan = product_mapping["plan"]
            subscription.current_period_end = expiry_date
            subscription.external_id = original_transaction_id
            subscription.extra_data = {**(subscription.extra_data or {}), **extra}
            subscription.updated_at = now
        else:
            subscription = Subscription(
                user_id=user_id,
                plan=product_mapping["plan"],
                status=status,
                start_date=now,
                current_period_end=expiry_date,
                provider=SubscriptionProvider.APPLE.value if platform == "ios" else SubscriptionProvider.GOOGLE.value,
                external_id=original_transaction_id,
                extra_data=extra,
            )
            db.add(subscription)

        if platform == "android":
            subscription.purchase_token = receipt
        if info.get("autoRenewing") is not None:
            subscription.cancel_at_period_end = not info["autoRenewing"]

        db.flush()
        SubscriptionService.sync_user_plan(db, user_id)
        db.commit()
        db.refresh(subscription)

        logger.info(f"Receipt validated for user {user_id}: subscription {subscription.id} is {subscription.status}")
        return subscription

    @staticmethod
    def get_subscription_status(db: Session, user_id: int) -> Dict[str, Any]:
        """Get the user's current active subscription, expiring it if the period has ended"""
        subscription = db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value
        ).order_by(Subscription.created_at.desc()).first()

        if subscription and subscription.current_period_end and subscription.current_period_end < datetime.utcnow():
            subscription.status = SubscriptionStatus.EXPIRED.value
            subscription.updated_at = datetime.utcnow()
            db.flush()
            SubscriptionService.sync_user_plan(db, user_id)
            db.commit()
            logger.info(f"Subscription {subscription.id} expired for user {user_id}")
            return {"subscription": None, "is_active": False, "plan": SubscriptionPlan.FREE.value}

        return {
            "subscription": subscription,
            "is_active": subscription is not None,
            "plan": subscription.plan if subscription else SubscriptionPlan.FREE.value,
        }

    @staticmethod
    def get_subscription_history(db: Session, user_id: int) -> List[Subscription]:
        return db.query(Subscription).filter(
            Subscription.user_id == user_id
        ).order_by(Subscription.created_at.desc()).all()

    @staticmethod
    def cancel_subscription(db: Session, user_id: int, subscription_id: str) -> Subscription:
        """
        Stop renewal. The subscription stays ACTIVE until current_period_end, after
        which expire-on-read or the expiry job moves it to EXPIRED.
        """
        subscription = db.query(Subscription).filter(
            Subscription.id == subscription_id,
            Subscription.user_id == user_id
        ).first()

        if not subscription:
            raise ApiError(404, "Subscription not found", "SUBSCRIPTION_NOT_FOUND")

        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise ApiError(400, "Subscription is not active", "SUBSCRIPTION_NOT_ACTIVE")

        subscription.cancelled_at = subscription.cancelled_at or datetime.utcnow()
        subscription.cancel_at_period_end = True
        db.commit()
        db.refresh(subscription)

        logger.info(f"Subscription {subscription_id} cancelled for user {user_id}")
        return subscription

    @staticmethod
    async def restore_purchases(db: Session, user_id: int, receipts: List[Dict[str, Any]],
                                verifier: ReceiptVerifier = receipt_verifier) -> Dict[str, Any]:
        """Validate every receipt, skipping the ones that fail, and report the resulting status"""
        restored = 0
        for receipt_data in receipts:
            try:
                await SubscriptionService.validate_receipt(
                    db,
                    user_id,
                    receipt_data["platform"],
                    receipt_data["productId"],
                    receipt_data["receipt"],
                    receipt_data["transactionId"],
                    verifier=verifier,
                )
                restored += 1
            except ApiError as e:
                db.rollback()
                logger.warning(f"Failed to restore receipt {receipt_data.get('transactionId')} "
                               f"for user {user_id}: {e.code}")

        status = SubscriptionService.get_subscription_status(db, user_id)
        return {"restored": restored, **status}

    @staticmethod
    def sync_user_plan(db: Session, user_id: int) -> None:
        """Set the user's plan from their active subscription, FREE when there is none"""
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            return
        active = db.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value
        ).first()
        user.subscription_plan = active.plan if active else SubscriptionPlan.FREE.value

    @staticmethod
    async def handle_webhook(db: Session, platform: str, data: Dict[str, Any],
                             verifier: ReceiptVerifier = receipt_verifier) -> None:
        logger.info(f"Processing subscription webhook from {platform}")
        if platform == "ios":
            SubscriptionService._handle_apple_webhook(db, data)
        else:
            await SubscriptionService._handle_google_webhook(db, data, verifier)

    @staticmethod
    def _handle_apple_webhook(db: Session, data: Dict[str, Any]) -> None:
        notification_type = data.get("notification_type")
        original_transaction_id = data.get("original_transaction_id")

        subscription = db.query(Subscription).filter(
            Subscription.external_id == original_transaction_id
        ).first()
        if not subscription:
            logger.warning(f"Subscription not found for Apple webhook: {original_transaction_id}")
            return

        now = datetime.utcnow()
        if notification_type in APPLE_CANCEL_NOTIFICATIONS:
            subscription.status = SubscriptionStatus.CANCELLED.value
            subscription.cancelled_at = now
        elif notification_type in APPLE_RENEW_NOTIFICATIONS:
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.renewed_at = now
        elif notification_type in APPLE_EXPIRE_NOTIFICATIONS:
            subscription.status = SubscriptionStatus.EXPIRED.value
        else:
            logger.info(f"Ignoring Apple notification type {notification_type}")
            return

        db.flush()
        SubscriptionService.sync_user_plan(db, subscription.user_id)
        db.commit()
        logger.info(f"Apple {notification_type} applied to subscription {subscription.id}")

    @staticmethod
    async def _handle_google_webhook(db: Session, data: Dict[str, Any], verifier: ReceiptVerifier) -> None:
        notification = data.get("subscriptionNotification") or {}
        purchase_token = notification.get("purchaseToken")
        notification_type = notification.get("notificationType")

        subscription = db.query(Subscription).filter(
            Subscription.purchase_token == purchase_token
        ).first()
        if not subscription:
            logger.warning("Subscription not found for Google webhook")
            return

        now = datetime.utcnow()
        if notification_type in (GOOGLE_RECOVERED, GOOGLE_RENEWED):
            play_data = await verifier.fetch_google_subscription(purchase_token)
            line_item = (play_data.get("lineItems") or [{}])[0]
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.renewed_at = now
            subscription.current_period_end = parse_rfc3339(line_item.get("expiryTime")) or subscription.current_period_end
        elif notification_type in (GOOGLE_CANCELED, GOOGLE_REVOKED):
            subscription.status = SubscriptionStatus.CANCELLED.value
            subscription.cancelled_at = now
        elif notification_type == GOOGLE_EXPIRED:
            subscription.status = SubscriptionStatus.EXPIRED.value
        else:
            logger.info(f"Ignoring Google notification type {notification_type}")
            return

        db.flush()
        SubscriptionService.sync_user_plan(db, subscription.user_id)
        db.commit()
        logger.info(f"Google notification {notification_type} applied to subscription {subscription.id}")
