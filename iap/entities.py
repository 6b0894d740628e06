"""
entities.py
Client-side purchase and entitlement types
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from iap.products import BillingPeriod, Platform


class SubscriptionOffer(BaseModel):
    offer_token: str
    base_plan_id: Optional[str] = None
    offer_id: Optional[str] = None


class StoreProduct(BaseModel):
    product_id: str
    title: Optional[str] = None
    price: Optional[str] = None
    currency: Optional[str] = None
    # Android subscriptions come with one or more base plan / offer tokens
    offers: List[SubscriptionOffer] = Field(default_factory=list)


class PurchaseTransaction(BaseModel):
    transaction_id: str
    product_id: str
    # Milliseconds since epoch, as reported by the store
    transaction_date: Optional[int] = None
    purchase_token: Optional[str] = None
    transaction_receipt: Optional[str] = None

    def receipt_for(self, platform: Platform) -> Optional[str]:
        if Platform(platform) == Platform.IOS:
            return self.transaction_receipt
        return self.purchase_token


class PurchaseStatus(BaseModel):
    """What the user is entitled to. expiry_date None means unknown, not 'never expires'."""

    is_active: bool
    product_id: Optional[str] = None
    expiry_date: Optional[datetime] = None
    billing_period: Optional[BillingPeriod] = None
    auto_renewing: Optional[bool] = None

    @field_validator("expiry_date")
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # The backend stores UTC; older responses carry no offset
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class TransactionState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATING = "VALIDATING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"
    FINISHED = "FINISHED"


@dataclass
class StoreEvent:
    """One item on the store client's event queue: a transaction update or a checkout error."""

    transaction: Optional[PurchaseTransaction] = None
    error: Optional[BaseException] = None

    @property
    def is_update(self) -> bool:
        return self.transaction is not None
