"""
store_client.py
Entitlement store client: one capability set over the App Store and Google Play
purchase APIs.

The native SDK sits behind a StoreBridge. Transaction updates and checkout errors
reported by the bridge are pushed onto a single asyncio queue that the reconciler
drains, so purchase outcomes arrive asynchronously and never as the return value
of purchase().
"""

import asyncio
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Dict, List, Optional, Protocol, Set

from config import get_logger
from iap.entities import PurchaseTransaction, StoreEvent, StoreProduct
from iap.errors import IAPError, IAPErrorType, classify_store_error
from iap.products import Platform

logger = get_logger(__name__)


class StoreBridge(Protocol):
    """Binding to the platform purchase SDK (StoreKit / Play Billing)."""

    def set_listeners(self, on_update: Callable[[PurchaseTransaction], None],
                      on_error: Callable[[BaseException], None]) -> None: ...

    def remove_listeners(self) -> None: ...

    async def init_connection(self) -> bool: ...

    async def end_connection(self) -> None: ...

    async def get_products(self, skus: List[str]) -> List[StoreProduct]: ...

    async def get_subscriptions(self, skus: List[str]) -> List[StoreProduct]: ...

    async def request_subscription(self, sku: str, offer_token: Optional[str] = None) -> None: ...

    async def get_available_purchases(self) -> List[PurchaseTransaction]: ...

    async def finish_transaction(self, transaction: PurchaseTransaction) -> None: ...

    async def acknowledge_purchase(self, purchase_token: str) -> None: ...


class StoreClient(ABC):
    platform: Platform

    def __init__(self, bridge: StoreBridge) -> None:
        self.bridge = bridge
        self.is_connected = False
        self._events: "asyncio.Queue[StoreEvent]" = asyncio.Queue()
        self._finished: Set[str] = set()
        self._subscriptions: Dict[str, StoreProduct] = {}
        self._in_use = False

    async def connect(self) -> None:
        """Open the store session. Calling it while connected is a no-op."""
        if self.is_connected:
            return
        try:
            self.bridge.set_listeners(self.emit_update, self.emit_error)
            await self.bridge.init_connection()
        except Exception as e:
            self.bridge.remove_listeners()
            logger.error(f"Failed to connect to the {self.platform.value} store: {str(e)}")
            raise IAPError(IAPErrorType.CONNECTION_FAILED, "Failed to connect to the app store", e)
        self.is_connected = True
        logger.info(f"Connected to the {self.platform.value} store")

    async def disconnect(self) -> None:
        if not self.is_connected:
            return
        self.bridge.remove_listeners()
        self.is_connected = False
        try:
            await self.bridge.end_connection()
            logger.info(f"Disconnected from the {self.platform.value} store")
        except Exception as e:
            logger.error(f"Failed to end store connection: {str(e)}")

    async def list_products(self, product_ids: List[str]) -> List[StoreProduct]:
        return list(await self.bridge.get_products(product_ids))

    async def list_subscriptions(self, product_ids: List[str]) -> List[StoreProduct]:
        subscriptions = list(await self.bridge.get_subscriptions(product_ids))
        if not subscriptions:
            raise IAPError(IAPErrorType.PRODUCTS_NOT_FOUND, "No products found in the store")
        for product in subscriptions:
            self._subscriptions[product.product_id] = product
        return subscriptions

    def get_product(self, product_id: str) -> Optional[StoreProduct]:
        return self._subscriptions.get(product_id)

    @abstractmethod
    async def purchase(self, product_id: str, offer_token: Optional[str] = None) -> None:
        """Open the platform checkout. The outcome arrives on events()."""

    async def restore(self) -> List[PurchaseTransaction]:
        """Every owned, unconsumed purchase; empty when the account never bought anything."""
        return list(await self.bridge.get_available_purchases())

    async def finish_transaction(self, transaction: PurchaseTransaction) -> bool:
        """Finish/acknowledge once per transaction id. Returns False for repeat calls."""
        if transaction.transaction_id in self._finished:
            logger.debug(f"Transaction {transaction.transaction_id} already finished")
            return False
        self._finished.add(transaction.transaction_id)
        try:
            await self._finish(transaction)
        except Exception:
            self._finished.discard(transaction.transaction_id)
            raise
        logger.info(f"Transaction {transaction.transaction_id} finished")
        return True

    @abstractmethod
    async def _finish(self, transaction: PurchaseTransaction) -> None: ...

    # Listener callbacks handed to the bridge
    def emit_update(self, transaction: PurchaseTransaction) -> None:
        self._events.put_nowait(StoreEvent(transaction=transaction))

    def emit_error(self, error: BaseException) -> None:
        self._events.put_nowait(StoreEvent(error=error))

    async def next_event(self) -> StoreEvent:
        return await self._events.get()

    async def events(self) -> AsyncIterator[StoreEvent]:
        """Transaction updates and checkout errors in arrival order."""
        while True:
            yield await self._events.get()


class AppleStoreClient(StoreClient):
    platform = Platform.IOS

    async def purchase(self, product_id: str, offer_token: Optional[str] = None) -> None:
        try:
            await self.bridge.request_subscription(product_id)
        except Exception as e:
            logger.error(f"Purchase request failed: {str(e)}")
            raise classify_store_error(e)

    async def _finish(self, transaction: PurchaseTransaction) -> None:
        await self.bridge.finish_transaction(transaction)


class GoogleStoreClient(StoreClient):
    platform = Platform.ANDROID

    async def purchase(self, product_id: str, offer_token: Optional[str] = None) -> None:
        product = self.get_product(product_id)
        if product is None:
            try:
                product = (await self.list_subscriptions([product_id]))[0]
            except IAPError as e:
                raise IAPError(IAPErrorType.PURCHASE_FAILED, "No subscription offers available", e)

        # Play Billing requires an offer token; default to the first offer
        if not product.offers:
            raise IAPError(IAPErrorType.PURCHASE_FAILED, "No subscription offers available")
        selected_offer_token = offer_token or product.offers[0].offer_token

        try:
            await self.bridge.request_subscription(product_id, selected_offer_token)
        except Exception as e:
            logger.error(f"Purchase request failed: {str(e)}")
            raise classify_store_error(e)

    async def _finish(self, transaction: PurchaseTransaction) -> None:
        if not transaction.purchase_token:
            raise IAPError(IAPErrorType.PURCHASE_FAILED, "Missing purchase token")
        await self.bridge.acknowledge_purchase(transaction.purchase_token)


def create_store_client(platform: Platform, bridge: StoreBridge) -> StoreClient:
    """Pick the platform adapter once, at startup."""
    if Platform(platform) == Platform.IOS:
        return AppleStoreClient(bridge)
    return GoogleStoreClient(bridge)


class StoreConnection:
    """
    Scoped store session: connects on enter, always disconnects on exit.
    Only one StoreConnection may hold a client at a time.
    """

    def __init__(self, client: StoreClient) -> None:
        self.client = client

    async def __aenter__(self) -> StoreClient:
        if self.client._in_use:
            raise IAPError(IAPErrorType.CONNECTION_FAILED, "Store connection already in use")
        self.client._in_use = True
        try:
            await self.client.connect()
        except BaseException:
            self.client._in_use = False
            raise
        return self.client

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await self.client.disconnect()
        finally:
            self.client._in_use = False
