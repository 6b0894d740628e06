"""
paywall.py
Upgrade screen controller.

    async with PaywallSession(reconciler, notifier=show_toast) as paywall:
        products = await paywall.load_products()
        await paywall.subscribe(PRO_YEARLY)

Entering the session opens the store connection and starts the reconciler loop.
Leaving it stops the loop and closes the connection however the block exits.
"""

import asyncio
from typing import Any, Dict, List, Optional

from config import get_logger
from iap.entities import PurchaseStatus, StoreProduct
from iap.errors import IAPError, IAPErrorType, user_message
from iap.products import PRICING_DISPLAY, get_product_id, get_product_ids
from iap.reconciler import (
    NOTHING_TO_RESTORE_COPY, PURCHASE_SUCCESS_COPY, RESTORE_SUCCESS_COPY, Notifier, Reconciler
)
from iap.store_client import StoreConnection

logger = get_logger(__name__)


class PaywallSession:
    def __init__(self, reconciler: Reconciler, notifier: Optional[Notifier] = None) -> None:
        self.reconciler = reconciler
        self.notifier = notifier
        self.is_loading = False
        self.products: List[StoreProduct] = []
        self._connection = StoreConnection(reconciler.store)
        self._loop_task: Optional["asyncio.Task[None]"] = None

    async def __aenter__(self) -> "PaywallSession":
        await self._connection.__aenter__()
        self._loop_task = asyncio.ensure_future(self.reconciler.run())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if self._loop_task is not None:
                self._loop_task.cancel()
                try:
                    await self._loop_task
                except asyncio.CancelledError:
                    pass
        finally:
            self._loop_task = None
            await self._connection.__aexit__(exc_type, exc, tb)

    def _notify(self, title: str, message: str) -> None:
        if self.notifier:
            self.notifier(title, message)

    def _report(self, error: BaseException) -> None:
        if not isinstance(error, IAPError) or error.type == IAPErrorType.UNKNOWN:
            logger.error(f"Unexpected paywall error: {str(error)}")
        copy = user_message(error)
        if copy is not None:
            self._notify(*copy)

    async def load_products(self) -> List[StoreProduct]:
        platform = self.reconciler.platform
        try:
            self.products = await self.reconciler.store.list_subscriptions(get_product_ids(platform))
        except IAPError as e:
            logger.error(f"Failed to load subscription products: {e.message}")
            self._report(e)
            self.products = []
        return self.products

    def plan_options(self) -> List[Dict[str, Any]]:
        """Rows for the plan picker. Store prices win over the built-in display prices once loaded."""
        loaded = {product.product_id: product for product in self.products}
        options = []
        for plan_key, display in PRICING_DISPLAY.items():
            product_id = get_product_id(self.reconciler.platform, plan_key)
            product = loaded.get(product_id)
            options.append({
                "plan": plan_key,
                "product_id": product_id,
                "name": display["display_name"],
                "price": product.price if product and product.price else display["display_price"],
                "currency": product.currency if product else None,
                "savings": display["savings"],
            })
        return options

    async def subscribe(self, plan_key: str, offer_token: Optional[str] = None) -> Optional[PurchaseStatus]:
        """Buy the plan (PRO_MONTHLY / PRO_YEARLY). Returns None when nothing was purchased."""
        if self.is_loading:
            logger.info("Purchase already in progress, ignoring")
            return None

        self.is_loading = True
        try:
            product_id = get_product_id(self.reconciler.platform, plan_key)
            status = await self.reconciler.purchase_subscription(product_id, offer_token)
            self._notify(*PURCHASE_SUCCESS_COPY)
            return status
        except Exception as e:
            self._report(e)
            return None
        finally:
            self.is_loading = False

    async def restore(self) -> Optional[PurchaseStatus]:
        if self.is_loading:
            logger.info("Restore already in progress, ignoring")
            return None

        self.is_loading = True
        try:
            status = await self.reconciler.restore_purchases()
            if status.is_active:
                self._notify(*RESTORE_SUCCESS_COPY)
            else:
                self._notify(*NOTHING_TO_RESTORE_COPY)
            return status
        except Exception as e:
            self._report(e)
            return None
        finally:
            self.is_loading = False
