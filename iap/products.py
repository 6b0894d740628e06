"""
products.py
Store product ids for the App Store and Google Play, plus the plan tiers they unlock.
Product ids must match exactly what is configured in App Store Connect and the Play Console.
"""

from enum import Enum
from typing import Dict, List, Optional


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class BillingPeriod(str, Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


PRO_MONTHLY = "PRO_MONTHLY"
PRO_YEARLY = "PRO_YEARLY"

IAP_PRODUCTS: Dict[Platform, Dict[str, str]] = {
    Platform.IOS: {
        PRO_MONTHLY: "com.ideaspark.app.pro_monthly",
        PRO_YEARLY: "com.ideaspark.app.pro_yearly",
    },
    Platform.ANDROID: {
        PRO_MONTHLY: "pro_monthly_subscription",
        PRO_YEARLY: "pro_yearly_subscription",
    },
}

_PERIOD_BY_KEY = {
    PRO_MONTHLY: BillingPeriod.MONTHLY,
    PRO_YEARLY: BillingPeriod.YEARLY,
}

# Subscription tiers; None means unlimited
SUBSCRIPTION_TIERS = {
    "FREE": {
        "name": "Free",
        "idea_limit": 3,
        "messages_per_session": 5,
    },
    "PRO": {
        "name": "Pro",
        "idea_limit": None,
        "messages_per_session": None,
    },
}

# Display only, actual prices come from the stores
PRICING_DISPLAY = {
    PRO_MONTHLY: {"display_name": "Pro Monthly", "display_price": "$9.99/month", "savings": None},
    PRO_YEARLY: {"display_name": "Pro Yearly", "display_price": "$99.99/year", "savings": "Save 17%"},
}


def get_product_ids(platform: Platform) -> List[str]:
    return list(IAP_PRODUCTS[Platform(platform)].values())


def get_product_id(platform: Platform, key: str) -> str:
    return IAP_PRODUCTS[Platform(platform)][key]


def map_product_to_billing_period(product_id: Optional[str]) -> Optional[BillingPeriod]:
    for products in IAP_PRODUCTS.values():
        for key, sku in products.items():
            if sku == product_id:
                return _PERIOD_BY_KEY[key]
    return None


def map_product_to_subscription_type(product_id: Optional[str]) -> Optional[str]:
    if map_product_to_billing_period(product_id) is not None:
        return "PRO"
    return None
