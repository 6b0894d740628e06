"""
Test configuration file for pytest
Contains fixtures and setup for testing: a fresh SQLite database per test, an
authenticated API client, and fakes for the store bridge and the subscription API
"""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from unittest.mock import Mock
from datetime import datetime, timedelta
import asyncio
import time
import os
import sys

# Add the parent directory to sys.path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from db import Base, get_db
from models import User
from main import app
from auth import create_access_token
from services.rate_limiter import receipt_throttle
from iap.backend_api import BackendApiError
from iap.entities import PurchaseTransaction, StoreProduct, SubscriptionOffer
from iap.local_cache import JsonKeyValueStore, LocalCache
from iap.products import Platform
from iap.reconciler import Reconciler
from iap.store_client import create_store_client

# In-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite://"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

IOS_MONTHLY = "com.ideaspark.app.pro_monthly"
IOS_YEARLY = "com.ideaspark.app.pro_yearly"
ANDROID_MONTHLY = "pro_monthly_subscription"
ANDROID_YEARLY = "pro_yearly_subscription"


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)

@pytest.fixture(scope="function")
def client(db):
    """Test client with a fresh database."""
    def _get_test_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = _get_test_db

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()

@pytest.fixture(autouse=True)
def reset_rate_limiter():
    receipt_throttle.reset()
    yield
    receipt_throttle.reset()

def _make_user(db, email):
    user = User(first_name="Test", last_name="User", email=email)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user

@pytest.fixture(scope="function")
def test_user(db):
    """Create a test user."""
    return _make_user(db, "test@example.com")

@pytest.fixture(scope="function")
def other_user(db):
    return _make_user(db, "other@example.com")

@pytest.fixture(scope="function")
def auth_headers(test_user):
    """Create authorization headers for the test user."""
    token = create_access_token({"sub": test_user.email, "user_id": test_user.id})
    return {"Authorization": f"Bearer {token}"}

@pytest.fixture
def verified_receipt():
    """Verifier result for a receipt that is valid for another 30 days."""
    def _verified(original_transaction_id="orig-1", days=30, auto_renewing=True):
        return True, {
            "expiresAt": datetime.utcnow() + timedelta(days=days),
            "originalTransactionId": original_transaction_id,
            "autoRenewing": auto_renewing,
            "raw": {},
        }
    return _verified


# *** IN-APP PURCHASE CLIENT FAKES ***

class FakeStoreBridge:
    """In-memory stand-in for the native purchase SDK."""

    def __init__(self):
        self.on_update = None
        self.on_error = None
        self.init_calls = 0
        self.end_calls = 0
        self.init_error = None
        self.restore_error = None
        self.products = [
            StoreProduct(product_id=sku, price="9.99", currency="USD",
                         offers=[SubscriptionOffer(offer_token=f"{sku}-offer-1"),
                                 SubscriptionOffer(offer_token=f"{sku}-offer-2")])
            for sku in (IOS_MONTHLY, IOS_YEARLY, ANDROID_MONTHLY, ANDROID_YEARLY)
        ]
        self.available = []
        self.requested = []
        self.finished = []
        self.acknowledged = []
        # Called from request_subscription to simulate what the store reports back
        self.on_purchase = None

    def set_listeners(self, on_update, on_error):
        self.on_update = on_update
        self.on_error = on_error

    def remove_listeners(self):
        self.on_update = None
        self.on_error = None

    async def init_connection(self):
        self.init_calls += 1
        if self.init_error:
            raise self.init_error
        return True

    async def end_connection(self):
        self.end_calls += 1

    async def get_products(self, skus):
        return [p for p in self.products if p.product_id in skus]

    async def get_subscriptions(self, skus):
        return [p for p in self.products if p.product_id in skus]

    async def request_subscription(self, sku, offer_token=None):
        self.requested.append((sku, offer_token))
        if self.on_purchase:
            self.on_purchase(sku, offer_token)

    async def get_available_purchases(self):
        if self.restore_error:
            raise self.restore_error
        return list(self.available)

    async def finish_transaction(self, transaction):
        self.finished.append(transaction.transaction_id)

    async def acknowledge_purchase(self, purchase_token):
        self.acknowledged.append(purchase_token)

    def deliver(self, transaction):
        self.on_update(transaction)

    def fail(self, error):
        self.on_error(error)


def subscription_response(status="ACTIVE", days=30, auto_renewing=True, product_id=None):
    end = (datetime.utcnow() + timedelta(days=days)).isoformat()
    return {
        "success": True,
        "data": {
            "subscription": {
                "id": "sub-1",
                "plan": "PRO",
                "status": status,
                "startDate": datetime.utcnow().isoformat(),
                "currentPeriodEnd": end,
                "autoRenewing": auto_renewing,
                "productId": product_id,
            }
        },
    }


class FakeSubscriptionApi:
    """Backend stand-in: confirms every receipt unless told otherwise."""

    def __init__(self):
        self.outcomes = {}
        self.validate_calls = []
        self.status_calls = 0
        self.status_response = {"success": True, "data": {"subscription": None, "isActive": False, "plan": "FREE"}}
        self.status_error = None
        # Set to an asyncio.Event to hold validations until the test releases them
        self.gate = None

    def confirm(self, transaction_id, **kwargs):
        self.outcomes[transaction_id] = subscription_response(**kwargs)

    def reject(self, transaction_id, status_code=400, code="VALIDATION_FAILED"):
        self.outcomes[transaction_id] = BackendApiError("Receipt validation failed", status_code, code)

    def set_active_status(self, product_id=None, days=30):
        response = subscription_response(days=days, product_id=product_id)
        response["data"].update({"isActive": True, "plan": "PRO"})
        self.status_response = response

    async def validate_receipt(self, platform, product_id, receipt, transaction_id):
        self.validate_calls.append((Platform(platform).value, product_id, receipt, transaction_id))
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.get(transaction_id) or subscription_response()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def get_status(self):
        self.status_calls += 1
        if self.status_error:
            raise self.status_error
        return self.status_response


@pytest.fixture
def bridge():
    return FakeStoreBridge()

@pytest.fixture
def api():
    return FakeSubscriptionApi()

@pytest.fixture
def cache(tmp_path):
    return LocalCache(JsonKeyValueStore(tmp_path / "iap_cache.json"))

@pytest.fixture
def notifier():
    return Mock()

@pytest.fixture
def ios_store(bridge):
    return create_store_client(Platform.IOS, bridge)

@pytest.fixture
def android_store(bridge):
    return create_store_client(Platform.ANDROID, bridge)

@pytest.fixture
def reconciler(ios_store, api, cache, notifier):
    return Reconciler(ios_store, api, cache, notifier=notifier, purchase_timeout=5)

@pytest.fixture
def make_transaction():
    """Build a store transaction. transaction_date defaults to now, in milliseconds."""
    def _make(transaction_id, product_id=IOS_YEARLY, transaction_date=None):
        if transaction_date is None:
            transaction_date = int(time.time() * 1000) + 1000
        return PurchaseTransaction(
            transaction_id=transaction_id,
            product_id=product_id,
            transaction_date=transaction_date,
            transaction_receipt=f"receipt-{transaction_id}",
            purchase_token=f"token-{transaction_id}",
        )
    return _make

@pytest.fixture
def settle():
    """Let queued store events be consumed and spawned validations finish."""
    async def _settle(reconciler):
        for _ in range(5):
            await asyncio.sleep(0)
        await reconciler.drain()
    return _settle
