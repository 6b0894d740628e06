"""
reconciler.py
Receipt validation and entitlement reconciliation.

Every transaction the store reports goes through
    RECEIVED -> VALIDATING -> CONFIRMED | REJECTED -> FINISHED
The backend decides whether a receipt grants access; the store transaction is
finished exactly once whatever the backend says, so the store stops redelivering it.

A single loop (run) drains the store client's event queue. Purchases started with
purchase_subscription wait on a future that the loop resolves when the matching
transaction has been validated.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from config import IAPClient, get_logger, log_debug
from iap.backend_api import BackendApiError, SubscriptionApi
from iap.entities import PurchaseStatus, PurchaseTransaction, TransactionState
from iap.errors import IAPError, IAPErrorType, classify_store_error, is_cancellation, user_message
from iap.local_cache import LocalCache
from iap.products import map_product_to_billing_period
from iap.store_client import StoreClient

logger = get_logger(__name__)

Notifier = Callable[[str, str], None]

PURCHASE_SUCCESS_COPY = ("Success!", "Your subscription is now active. Enjoy unlimited ideas and messages!")
RESTORE_SUCCESS_COPY = ("Purchases Restored", "Your subscription has been restored.")
NOTHING_TO_RESTORE_COPY = ("No Purchases Found", "We couldn't find any previous purchases to restore.")

ACTIVE = "ACTIVE"


def _is_expired(expiry: Optional[datetime]) -> bool:
    if expiry is None:
        return False
    return expiry <= datetime.now(timezone.utc)


def _backend_unreachable(error: BaseException) -> bool:
    """True when validation never got a verdict: network failure, retries exhausted, or an unexpected error."""
    if not isinstance(error, IAPError):
        return True
    cause = error.original_error
    return isinstance(cause, BackendApiError) and cause.is_retryable


def _status_from_subscription(product_id: Optional[str], subscription: Dict[str, Any]) -> PurchaseStatus:
    return PurchaseStatus(
        is_active=True,
        product_id=product_id,
        expiry_date=subscription.get("currentPeriodEnd"),
        billing_period=map_product_to_billing_period(product_id),
        auto_renewing=subscription.get("autoRenewing"),
    )


@dataclass
class PendingPurchase:
    product_id: str
    future: "asyncio.Future[PurchaseStatus]"
    transaction_id: Optional[str] = None

    def accepts(self, transaction: PurchaseTransaction) -> bool:
        if self.transaction_id is not None or self.future.done():
            return False
        return transaction.product_id == self.product_id


class Reconciler:
    def __init__(
        self,
        store: StoreClient,
        api: SubscriptionApi,
        cache: LocalCache,
        notifier: Optional[Notifier] = None,
        purchase_timeout: Optional[float] = None,
    ) -> None:
        self.store = store
        self.api = api
        self.cache = cache
        self.notifier = notifier
        self.purchase_timeout = purchase_timeout if purchase_timeout is not None else IAPClient.PURCHASE_TIMEOUT_SECONDS
        self.platform = store.platform

        self.states: Dict[str, TransactionState] = {}
        self.session_confirmed = False
        self._status: Optional[PurchaseStatus] = None
        self._in_flight: Dict[str, "asyncio.Future[PurchaseStatus]"] = {}
        self._pending: List[PendingPurchase] = []
        self._tasks: Set["asyncio.Task[Any]"] = set()

    # **** ENTITLEMENT ****

    @property
    def current_status(self) -> Optional[PurchaseStatus]:
        return self._status

    @property
    def is_pro(self) -> bool:
        """True only after the backend confirmed an active subscription this session."""
        status = self._status
        return (
            self.session_confirmed
            and status is not None
            and status.is_active
            and not _is_expired(status.expiry_date)
        )

    def optimistic_status(self) -> PurchaseStatus:
        """What to display before the first status check returns. Never used for gating."""
        if self.session_confirmed and self._status is not None:
            return self._status
        return self.cache.get_active_subscription() or PurchaseStatus(is_active=False)

    def _confirm(self, status: PurchaseStatus) -> None:
        self._status = status
        self.session_confirmed = True

    async def check_subscription_status(self) -> PurchaseStatus:
        """Ask the backend for the current entitlement. Fails closed and never raises."""
        cached = self.cache.get_active_subscription()
        try:
            response = await self.api.get_status()
        except BackendApiError as e:
            logger.error(f"Failed to check subscription status: {e.message}")
            return PurchaseStatus(is_active=False)

        data = response.get("data") or {}
        subscription = data.get("subscription")
        if response.get("success") and data.get("isActive") and subscription and subscription.get("status") == ACTIVE:
            product_id = subscription.get("productId") or (cached.product_id if cached else None)
            status = _status_from_subscription(product_id, subscription)
            self.cache.save_active_subscription(status)
            self._confirm(status)
            return status

        # Server wins: drop whatever the device believed
        if cached is not None:
            logger.info("Backend reports no active subscription, invalidating cached entitlement")
            self.cache.invalidate_active_subscription()
        status = PurchaseStatus(is_active=False)
        if response.get("success"):
            self._confirm(status)
        return status

    # **** TRANSACTIONS ****

    async def _finish(self, transaction: PurchaseTransaction) -> None:
        try:
            await self.store.finish_transaction(transaction)
            self.states[transaction.transaction_id] = TransactionState.FINISHED
        except Exception as e:
            logger.error(f"Failed to finish transaction {transaction.transaction_id}: {str(e)}")

    async def _validate(self, transaction: PurchaseTransaction) -> PurchaseStatus:
        receipt = transaction.receipt_for(self.platform)
        if not receipt:
            raise IAPError(IAPErrorType.VALIDATION_FAILED, "No receipt available for transaction")

        try:
            response = await self.api.validate_receipt(
                self.platform, transaction.product_id, receipt, transaction.transaction_id
            )
        except BackendApiError as e:
            raise IAPError(IAPErrorType.VALIDATION_FAILED, e.message, e)

        subscription = (response.get("data") or {}).get("subscription") or {}
        if not response.get("success") or subscription.get("status") != ACTIVE:
            raise IAPError(
                IAPErrorType.VALIDATION_FAILED,
                f"Backend did not confirm the purchase (status={subscription.get('status')})",
            )
        return _status_from_subscription(transaction.product_id, subscription)

    async def _reconcile(self, transaction: PurchaseTransaction) -> PurchaseStatus:
        transaction_id = transaction.transaction_id
        self.states[transaction_id] = TransactionState.VALIDATING
        log_debug(logger, f"Validating transaction {transaction_id} for {transaction.product_id}")
        try:
            status = await self._validate(transaction)
        except IAPError:
            self.states[transaction_id] = TransactionState.REJECTED
            logger.warning(f"Transaction {transaction_id} rejected by backend")
            raise
        else:
            self.states[transaction_id] = TransactionState.CONFIRMED
            self.cache.save_confirmed_purchase(transaction, status, self.platform)
            self._confirm(status)
            logger.info(f"Transaction {transaction_id} confirmed, {transaction.product_id} active")
            return status
        finally:
            await self._finish(transaction)

    def reconcile(self, transaction: PurchaseTransaction) -> "asyncio.Future[PurchaseStatus]":
        """Validate and finish a transaction, sharing the outcome with any validation already running for it."""
        transaction_id = transaction.transaction_id
        existing = self._in_flight.get(transaction_id)
        if existing is not None:
            return existing

        self.states[transaction_id] = TransactionState.RECEIVED
        task = asyncio.ensure_future(self._reconcile(transaction))
        self._in_flight[transaction_id] = task
        task.add_done_callback(lambda _: self._in_flight.pop(transaction_id, None))
        return task

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _notify(self, copy: Optional[Tuple[str, str]]) -> None:
        if copy and self.notifier:
            self.notifier(*copy)

    # **** STORE EVENTS ****

    def handle_update(self, transaction: PurchaseTransaction) -> None:
        transaction_id = transaction.transaction_id
        if transaction_id in self._in_flight:
            logger.info(f"Transaction {transaction_id} is already being validated, ignoring update")
            return

        if self.cache.is_confirmed(transaction_id):
            logger.info(f"Transaction {transaction_id} was already confirmed, finishing it")
            self._spawn(self._finish(transaction))
            return

        pending = next((p for p in self._pending if p.accepts(transaction)), None)
        if pending is not None:
            pending.transaction_id = transaction_id
        else:
            logger.info(f"Processing replayed transaction {transaction_id}")

        self._spawn(self._deliver(self.reconcile(transaction), pending))

    async def _deliver(self, outcome: "asyncio.Future[PurchaseStatus]", pending: Optional[PendingPurchase]) -> None:
        try:
            status = await outcome
        except IAPError as e:
            self._resolve(pending, error=e)
        except Exception as e:
            logger.error(f"Unexpected error while reconciling transaction: {str(e)}")
            self._resolve(pending, error=IAPError(IAPErrorType.UNKNOWN, "Unexpected error while processing purchase", e))
        else:
            self._resolve(pending, status=status)

    def _resolve(self, pending: Optional[PendingPurchase], status: Optional[PurchaseStatus] = None,
                 error: Optional[IAPError] = None) -> None:
        # The caller awaiting the purchase reports the outcome; replays are reported here
        if pending is not None and not pending.future.done():
            if error is not None:
                pending.future.set_exception(error)
            else:
                pending.future.set_result(status)
        elif error is not None:
            self._notify(user_message(error))
        else:
            self._notify(PURCHASE_SUCCESS_COPY)

    def handle_error(self, error: BaseException) -> None:
        iap_error = classify_store_error(error)
        pending = next((p for p in self._pending if p.transaction_id is None and not p.future.done()), None)
        if pending is not None:
            pending.future.set_exception(iap_error)
            return
        if is_cancellation(iap_error):
            logger.info("Purchase cancelled by user")
            return
        logger.error(f"Store reported an error: {iap_error.message}")
        self._notify(user_message(iap_error))

    async def run(self) -> None:
        """Consume store events until cancelled."""
        logger.info("Reconciler listening for store events")
        try:
            async for event in self.store.events():
                if event.is_update:
                    self.handle_update(event.transaction)
                else:
                    self.handle_error(event.error)
        finally:
            for task in list(self._tasks):
                task.cancel()

    async def drain(self) -> None:
        """Wait for every spawned validation and finish to complete."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # **** PURCHASE / RESTORE ****

    async def purchase_subscription(self, product_id: str, offer_token: Optional[str] = None) -> PurchaseStatus:
        """
        Start a store checkout for product_id and wait for the backend verdict.

        Raises IAPError with PURCHASE_CANCELLED when the user dismisses the sheet,
        PURCHASE_FAILED when the store fails, and VALIDATION_FAILED when the backend
        rejects the receipt. Requires run() to be consuming store events.
        """
        await self.store.connect()

        pending = PendingPurchase(
            product_id=product_id,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending.append(pending)
        try:
            await self.store.purchase(product_id, offer_token)
            if self.purchase_timeout:
                return await asyncio.wait_for(pending.future, self.purchase_timeout)
            return await pending.future
        except asyncio.TimeoutError:
            raise IAPError(IAPErrorType.PURCHASE_FAILED, "Timed out waiting for the store")
        finally:
            self._pending.remove(pending)

    async def restore_purchases(self) -> PurchaseStatus:
        await self.store.connect()
        try:
            purchases = await self.store.restore()
        except Exception as e:
            logger.error(f"Failed to query purchases for restore: {str(e)}")
            raise IAPError(IAPErrorType.RESTORE_FAILED, "Failed to restore purchases", e)

        if not purchases:
            logger.info("No purchases to restore")
            return PurchaseStatus(is_active=False)

        results = await asyncio.gather(*(self.reconcile(tx) for tx in purchases), return_exceptions=True)

        confirmed = []
        unreachable = None
        for transaction, result in zip(purchases, results):
            if isinstance(result, PurchaseStatus):
                confirmed.append((transaction, result))
            elif _backend_unreachable(result):
                unreachable = result
                logger.warning(f"Could not validate transaction {transaction.transaction_id}: {str(result)}")
            else:
                logger.warning(f"Skipping unrestorable transaction {transaction.transaction_id}: {str(result)}")

        if not confirmed:
            if unreachable is not None:
                raise IAPError(IAPErrorType.RESTORE_FAILED, "Failed to restore purchases", unreachable)
            return PurchaseStatus(is_active=False)

        # Most recent purchase wins
        transaction, status = max(confirmed, key=lambda pair: pair[0].transaction_date or 0)
        restored = PurchaseStatus(
            is_active=True,
            product_id=transaction.product_id,
            expiry_date=status.expiry_date,
            billing_period=map_product_to_billing_period(transaction.product_id),
            auto_renewing=status.auto_renewing,
        )
        self.cache.save_active_subscription(restored)
        self._confirm(restored)
        logger.info(f"Restored {len(confirmed)} of {len(purchases)} purchases, active: {transaction.product_id}")
        return restored
