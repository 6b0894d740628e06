"""
expire_subscriptions.py
Run the subscription expiry pass once. Schedule it hourly (cron, k8s CronJob, etc.)

Usage: python scripts/expire_subscriptions.py
"""

import sys
from pathlib import Path

sys.path.append(str(Path(__file__).parent.parent))

from db import SessionLocal
from config import get_logger
from services.subscription_expiry import SubscriptionExpiryService

logger = get_logger(__name__)


def main():
    db = SessionLocal()
    try:
        result = SubscriptionExpiryService.process_expired_subscriptions(db)
        logger.info(f"Expiry run finished: {result}")
    except Exception as e:
        db.rollback()
        logger.error(f"Expiry run failed: {str(e)}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
