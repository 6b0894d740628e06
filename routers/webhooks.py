"""
webhooks.py
Store server notification endpoints (App Store Server Notifications, Google Play
real-time developer notifications). No user auth: the stores call these directly.

Both endpoints answer 200 even when processing fails so the stores do not retry forever.
"""

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session
import base64
import json

from db import get_db
from config import get_logger
from services.subscription_service import SubscriptionService

router = APIRouter(prefix="/api/v1/subscriptions/webhooks", tags=["Webhooks"])

logger = get_logger(__name__)


@router.post("/apple")
async def handle_apple_webhook(request: Request, db: Session = Depends(get_db)):
    try:
        data = await request.json()
        logger.info(f"Received Apple webhook: {data.get('notification_type')}")
        await SubscriptionService.handle_webhook(db, "ios", data)
    except Exception as e:
        db.rollback()
        logger.error(f"Apple webhook processing failed: {str(e)}")
    return Response(status_code=200)


@router.post("/google")
async def handle_google_webhook(request: Request, db: Session = Depends(get_db)):
    try:
        body = await request.json()
        message = body.get("message")
        if not message or not message.get("data"):
            raise ValueError("Invalid webhook format")

        data = json.loads(base64.b64decode(message["data"]).decode("utf-8"))
        logger.info(f"Received Google webhook for package {data.get('packageName')}")
        await SubscriptionService.handle_webhook(db, "android", data)
    except Exception as e:
        db.rollback()
        logger.error(f"Google webhook processing failed: {str(e)}")
    return Response(status_code=200)
