"""
audit_service.py
Audit trail for purchase-related requests. One row per receipt validation,
restore or cancellation attempt, including the ones that were throttled or failed.
"""

from typing import Any, Dict, Optional
from fastapi import Request
from sqlalchemy.orm import Session

from models import AuditLog
from config import get_logger

logger = get_logger(__name__)


def _request_context(request: Optional[Request]) -> Dict[str, Optional[str]]:
    if request is None:
        return {"endpoint": "", "method": "", "ip_address": None, "user_agent": None}
    return {
        "endpoint": request.url.path,
        "method": request.method,
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("User-Agent"),
    }


class AuditService:
    @staticmethod
    def record(
        db: Session,
        user_id: Optional[int],
        action: str,
        outcome: str,
        request: Optional[Request] = None,
        **details: Any,
    ) -> AuditLog:
        entry = AuditLog(
            user_id=user_id,
            action=action,
            status=outcome,
            details={k: v for k, v in details.items() if v is not None},
            **_request_context(request),
        )
        db.add(entry)
        db.commit()
        if outcome != "success":
            logger.warning(f"{action} for user {user_id}: {outcome}")
        return entry

    @staticmethod
    def receipt_attempt(db: Session, user_id: int, request: Request, platform: str, product_id: str,
                        outcome: str, error_code: Optional[str] = None,
                        subscription_status: Optional[str] = None) -> AuditLog:
        return AuditService.record(
            db, user_id, "validate_receipt", outcome, request,
            platform=platform, productId=product_id, error=error_code, status=subscription_status,
        )
