"""
Tests for the paywall session: purchase and restore flows as the upgrade screen drives them
"""
import pytest

from iap.backend_api import BackendApiError
from iap.entitlements import EntitlementGate
from iap.errors import ERROR_COPY, IAPErrorType, StoreError
from iap.paywall import PaywallSession
from iap.products import BillingPeriod, Platform, get_product_id, PRO_MONTHLY, PRO_YEARLY
from iap.reconciler import NOTHING_TO_RESTORE_COPY, PURCHASE_SUCCESS_COPY, RESTORE_SUCCESS_COPY

IOS_MONTHLY = get_product_id(Platform.IOS, PRO_MONTHLY)
IOS_YEARLY = get_product_id(Platform.IOS, PRO_YEARLY)


@pytest.mark.asyncio
async def test_yearly_purchase_end_to_end(reconciler, api, bridge, cache, notifier, make_transaction, settle):
    """Free user buys the yearly plan: validated, cached, finished once, quotas lifted"""
    gate = EntitlementGate(reconciler)
    assert not gate.can_create_idea(3)

    bridge.on_purchase = lambda sku, token: bridge.deliver(make_transaction("tx-yearly", product_id=sku))

    async with PaywallSession(reconciler, notifier=notifier) as paywall:
        status = await paywall.subscribe(PRO_YEARLY)
        await reconciler.drain()
        # A late redelivery of the same transaction must not finish it again
        bridge.deliver(make_transaction("tx-yearly", product_id=IOS_YEARLY))
        await settle(reconciler)

    assert status.is_active
    assert status.billing_period == BillingPeriod.YEARLY
    assert [call[1] for call in api.validate_calls] == [IOS_YEARLY]
    assert bridge.finished == ["tx-yearly"]
    assert cache.is_confirmed("tx-yearly")
    assert cache.get_receipt() == "receipt-tx-yearly"
    notifier.assert_called_once_with(*PURCHASE_SUCCESS_COPY)
    assert gate.can_create_idea(100)
    assert gate.remaining_messages(50) is None
    assert bridge.end_calls == 1


@pytest.mark.asyncio
async def test_cancelled_purchase_is_silent(reconciler, bridge, notifier):
    bridge.on_purchase = lambda sku, token: bridge.fail(StoreError("E_USER_CANCELLED"))

    async with PaywallSession(reconciler, notifier=notifier) as paywall:
        status = await paywall.subscribe(PRO_MONTHLY)

    assert status is None
    assert not paywall.is_loading
    notifier.assert_not_called()


@pytest.mark.asyncio
async def test_rejected_purchase_shows_support_message_once(reconciler, api, bridge, notifier, make_transaction):
    api.reject("tx-1")
    bridge.on_purchase = lambda sku, token: bridge.deliver(make_transaction("tx-1", product_id=sku))

    async with PaywallSession(reconciler, notifier=notifier) as paywall:
        status = await paywall.subscribe(PRO_YEARLY)
        await reconciler.drain()

    assert status is None
    notifier.assert_called_once_with(*ERROR_COPY[IAPErrorType.VALIDATION_FAILED])
    assert bridge.finished == ["tx-1"]


@pytest.mark.asyncio
async def test_store_failure_shows_retry_message(reconciler, bridge, notifier):
    bridge.on_purchase = lambda sku, token: bridge.fail(StoreError("E_SERVICE_ERROR", "billing unavailable"))

    async with PaywallSession(reconciler, notifier=notifier) as paywall:
        await paywall.subscribe(PRO_YEARLY)

    notifier.assert_called_once_with(*ERROR_COPY[IAPErrorType.PURCHASE_FAILED])


@pytest.mark.asyncio
async def test_subscribe_ignored_while_loading(reconciler, bridge, notifier):
    async with PaywallSession(reconciler, notifier=notifier) as paywall:
        paywall.is_loading = True
        status = await paywall.subscribe(PRO_YEARLY)

    assert status is None
    assert bridge.requested == []


@pytest.mark.asyncio
async def test_empty_restore_reports_nothing_found(reconciler, notifier):
    async with PaywallSession(reconciler, notifier=notifier) as paywall:
        status = await paywall.restore()

    assert status is not None and not status.is_active
    notifier.assert_called_once_with(*NOTHING_TO_RESTORE_COPY)


@pytest.mark.asyncio
async def test_restore_reports_success(reconciler, bridge, notifier, make_transaction):
    bridge.available = [make_transaction("tx-old", product_id=IOS_MONTHLY, transaction_date=1000)]

    async with PaywallSession(reconciler, notifier=notifier) as paywall:
        status = await paywall.restore()

    assert status.product_id == IOS_MONTHLY
    notifier.assert_called_once_with(*RESTORE_SUCCESS_COPY)


@pytest.mark.asyncio
async def test_restore_failure_shows_restore_message(reconciler, bridge, notifier):
    bridge.restore_error = RuntimeError("store unavailable")

    async with PaywallSession(reconciler, notifier=notifier) as paywall:
        status = await paywall.restore()

    assert status is None
    notifier.assert_called_once_with(*ERROR_COPY[IAPErrorType.RESTORE_FAILED])


@pytest.mark.asyncio
async def test_restore_with_backend_down_is_not_reported_as_nothing_found(reconciler, api, bridge, notifier, make_transaction):
    api.outcomes["tx-old"] = BackendApiError("Network error")
    bridge.available = [make_transaction("tx-old")]

    async with PaywallSession(reconciler, notifier=notifier) as paywall:
        status = await paywall.restore()

    assert status is None
    notifier.assert_called_once_with(*ERROR_COPY[IAPErrorType.RESTORE_FAILED])


@pytest.mark.asyncio
async def test_load_products_without_store_products(reconciler, bridge, notifier):
    bridge.products = []

    async with PaywallSession(reconciler, notifier=notifier) as paywall:
        products = await paywall.load_products()

    assert products == []
    notifier.assert_called_once_with(*ERROR_COPY[IAPErrorType.PRODUCTS_NOT_FOUND])


@pytest.mark.asyncio
async def test_session_disconnects_when_block_raises(reconciler, bridge):
    with pytest.raises(RuntimeError):
        async with PaywallSession(reconciler):
            raise RuntimeError("screen dismissed")

    assert not reconciler.store.is_connected
    assert bridge.end_calls == 1


@pytest.mark.asyncio
async def test_plan_options_use_display_prices_until_products_load(reconciler, bridge):
    bridge.products = [p for p in bridge.products if p.product_id == IOS_YEARLY]

    async with PaywallSession(reconciler) as paywall:
        before = paywall.plan_options()
        await paywall.load_products()
        after = {option["plan"]: option for option in paywall.plan_options()}

    assert [option["price"] for option in before] == ["$9.99/month", "$99.99/year"]
    assert after[PRO_YEARLY]["product_id"] == IOS_YEARLY
    assert after[PRO_YEARLY]["price"] == "9.99"
    assert after[PRO_YEARLY]["currency"] == "USD"
    assert after[PRO_YEARLY]["savings"] == "Save 17%"
    assert after[PRO_MONTHLY]["price"] == "$9.99/month"
