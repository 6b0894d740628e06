"""
entitlements.py
Quota gating by plan tier. FREE users get a fixed number of idea sessions and AI
replies per session; PRO is unlimited once the backend has confirmed it.
"""

from typing import Optional

from iap.products import SUBSCRIPTION_TIERS, map_product_to_subscription_type
from iap.reconciler import Reconciler


class EntitlementGate:
    def __init__(self, reconciler: Reconciler) -> None:
        self.reconciler = reconciler

    @property
    def tier(self) -> str:
        if not self.reconciler.is_pro:
            return "FREE"
        status = self.reconciler.current_status
        # Backend confirmed access for a product this build does not know
        return map_product_to_subscription_type(status.product_id) or "PRO"

    @property
    def idea_limit(self) -> Optional[int]:
        return SUBSCRIPTION_TIERS[self.tier]["idea_limit"]

    @property
    def message_limit(self) -> Optional[int]:
        return SUBSCRIPTION_TIERS[self.tier]["messages_per_session"]

    def can_create_idea(self, ideas_created: int) -> bool:
        limit = self.idea_limit
        return limit is None or ideas_created < limit

    def can_send_message(self, messages_sent: int) -> bool:
        """messages_sent counts AI replies in the current idea session."""
        limit = self.message_limit
        return limit is None or messages_sent < limit

    def remaining_ideas(self, ideas_created: int) -> Optional[int]:
        limit = self.idea_limit
        return None if limit is None else max(0, limit - ideas_created)

    def remaining_messages(self, messages_sent: int) -> Optional[int]:
        limit = self.message_limit
        return None if limit is None else max(0, limit - messages_sent)
