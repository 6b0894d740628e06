"""
subscription_expiry.py
Periodic expiry processing for subscriptions whose period has ended.

ACTIVE rows past current_period_end are marked EXPIRED. The user keeps their plan
until the grace period has passed, then is downgraded to FREE.
"""

from sqlalchemy.orm import Session
from typing import Dict, Optional
from datetime import datetime, timedelta

from models import User, Subscription, SubscriptionStatus
from config import SubscriptionLifecycle, get_logger
from services.subscription_service import SubscriptionService

logger = get_logger(__name__)


class SubscriptionExpiryService:
    @staticmethod
    def process_expired_subscriptions(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.utcnow()
        grace = timedelta(days=SubscriptionLifecycle.GRACE_PERIOD_DAYS)

        expired = db.query(Subscription).filter(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.current_period_end < now
        ).all()
        logger.info(f"Found {len(expired)} expired subscriptions to process")

        processed = 0
        for subscription in expired:
            grace_period_end = subscription.current_period_end + grace
            subscription.status = SubscriptionStatus.EXPIRED.value
            subscription.extra_data = {
                **(subscription.extra_data or {}),
                "expiredAt": now.isoformat(),
                "gracePeriodEnd": grace_period_end.isoformat(),
            }
            processed += 1
            if grace_period_end >= now:
                logger.info(f"Subscription {subscription.id} in grace period until {grace_period_end.isoformat()}")
        db.flush()

        # Downgrade users whose grace period is over, including ones expired on an earlier pass
        lapsed_user_ids = {
            user_id for (user_id,) in db.query(Subscription.user_id).filter(
                Subscription.status == SubscriptionStatus.EXPIRED.value,
                Subscription.current_period_end < now - grace
            ).distinct()
        }
        downgraded = 0
        for user_id in lapsed_user_ids:
            user = db.query(User).filter(User.id == user_id).first()
            previous_plan = user.subscription_plan if user else None
            SubscriptionService.sync_user_plan(db, user_id)
            if user and user.subscription_plan != previous_plan:
                downgraded += 1
                logger.info(f"User {user_id} downgraded to {user.subscription_plan}")

        db.commit()
        logger.info(f"Subscription expiry processing completed: processed={processed}, downgraded={downgraded}")
        return {"processed": processed, "downgraded": downgraded}
