"""
receipt_verifier.py
Server-side receipt verification for Apple App Store and Google Play.

For Apple: StoreKit 2 signed transactions (JWS) are verified against Apple's published keys,
legacy base64 receipts go through verifyReceipt with the sandbox fallback.
For Google: Android Publisher subscriptionsv2 lookup with a service account access token.
"""

import re
from typing import Dict, Any, Optional, Tuple
from datetime import datetime, timedelta, timezone
import httpx
from jose import jwt, JWTError

from config import AppStore, GooglePlay, ReceiptVerification, get_logger, log_debug, log_debug_error

logger = get_logger(__name__)

# verifyReceipt status meaning "this is a sandbox receipt, ask the sandbox endpoint"
APPLE_SANDBOX_RECEIPT_STATUS = 21007

_FRACTION_RE = re.compile(r"\.(\d+)")


def ms_to_datetime(ms) -> Optional[datetime]:
    if not ms:
        return None
    return datetime.utcfromtimestamp(int(ms) / 1000)


def parse_rfc3339(value: Optional[str]) -> Optional[datetime]:
    """Parse Google's RFC 3339 timestamps (nanosecond precision, Z suffix) into naive UTC."""
    if not value:
        return None
    value = value.replace("Z", "+00:00")
    match = _FRACTION_RE.search(value)
    if match:
        value = value[:match.start()] + "." + match.group(1)[:6].ljust(6, "0") + value[match.end():]
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class ReceiptVerifier:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.test_mode = ReceiptVerification.TEST_MODE
        self.timeout = ReceiptVerification.TIMEOUT_SECONDS
        self._transport = transport
        self._apple_keys = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def verify(self, platform: str, receipt_data: str, product_id: str, transaction_id: str) -> Tuple[bool, Dict[str, Any]]:
        if self.test_mode:
            # Simulated verification for development/testing
            return True, {
                "subscriptionStatus": "active",
                "expiresAt": datetime.utcnow() + timedelta(days=30),
                "originalTransactionId": transaction_id,
                "autoRenewing": True,
                "raw": {"testMode": True}
            }

        try:
            if platform == "ios":
                if "." in receipt_data:
                    return await self._verify_apple_signed_transaction(receipt_data, product_id, transaction_id)
                return await self._verify_apple_receipt(receipt_data, product_id, transaction_id)
            elif platform == "android":
                return await self._verify_google(receipt_data, product_id, transaction_id)
            else:
                return False, {"error": "Unsupported platform"}
        except httpx.HTTPError as e:
            logger.error(f"Store API request failed during {platform} verification: {str(e)}")
            return False, {"error": f"Store API request failed: {str(e)}"}

    async def _verify_apple_receipt(self, receipt_data: str, product_id: str, transaction_id: str,
                                    production: Optional[bool] = None) -> Tuple[bool, Dict[str, Any]]:
        if production is None:
            production = AppStore.IS_PRODUCTION
        endpoint = AppStore.PRODUCTION_VERIFY_URL if production else AppStore.SANDBOX_VERIFY_URL

        async with self._client() as client:
            response = await client.post(endpoint, json={
                "receipt-data": receipt_data,
                "password": AppStore.SHARED_SECRET,
                "exclude-old-transactions": True,
            })
            response.raise_for_status()
            body = response.json()

        apple_status = body.get("status")
        if apple_status == APPLE_SANDBOX_RECEIPT_STATUS and production:
            logger.info("Receipt is sandbox, retrying with sandbox endpoint")
            return await self._verify_apple_receipt(receipt_data, product_id, transaction_id, production=False)
        if apple_status != 0:
            log_debug_error(logger, f"Apple receipt validation failed with status: {apple_status}")
            return False, {"error": f"Apple receipt validation failed with status: {apple_status}"}

        entries = [
            entry for entry in body.get("latest_receipt_info") or []
            if entry.get("product_id") == product_id
        ]
        if not entries:
            return False, {"error": "No valid receipt found in Apple response"}
        latest = max(entries, key=lambda entry: int(entry.get("expires_date_ms") or 0))

        auto_renewing = None
        for renewal in body.get("pending_renewal_info") or []:
            if renewal.get("original_transaction_id") == latest.get("original_transaction_id"):
                auto_renewing = renewal.get("auto_renew_status") == "1"

        return True, {
            "expiresAt": ms_to_datetime(latest.get("expires_date_ms")),
            "originalTransactionId": latest.get("original_transaction_id") or transaction_id,
            "autoRenewing": auto_renewing,
            "raw": latest,
        }

    async def _get_apple_public_keys(self):
        if self._apple_keys is None:
            async with self._client() as client:
                response = await client.get(AppStore.PUBLIC_KEYS_URL)
                response.raise_for_status()
                self._apple_keys = response.json()["keys"]
        return self._apple_keys

    async def _verify_apple_signed_transaction(self, signed_transaction: str, product_id: str,
                                               transaction_id: str) -> Tuple[bool, Dict[str, Any]]:
        try:
            header = jwt.get_unverified_header(signed_transaction)
        except JWTError as e:
            return False, {"error": f"Invalid JWT format: {str(e)}"}

        keys = await self._get_apple_public_keys()
        key = next((k for k in keys if k.get("kid") == header.get("kid")), None)
        if not key:
            return False, {"error": "Public key not found for JWT verification"}

        try:
            payload = jwt.decode(
                signed_transaction,
                key,
                algorithms=["ES256"],
                options={"verify_aud": False},
            )
        except JWTError as e:
            log_debug_error(logger, f"Apple StoreKit 2 JWT validation failed: {str(e)}")
            return False, {"error": f"Apple signed transaction rejected: {str(e)}"}

        if payload.get("bundleId") != AppStore.BUNDLE_ID:
            return False, {"error": "Invalid bundle ID"}
        if payload.get("productId") != product_id:
            return False, {"error": "Product ID mismatch in Apple transaction"}

        log_debug(logger, f"Apple signed transaction verified: {payload.get('transactionId')}")
        return True, {
            "expiresAt": ms_to_datetime(payload.get("expiresDate")),
            "originalTransactionId": payload.get("originalTransactionId") or transaction_id,
            "autoRenewing": None,
            "raw": payload,
        }

    async def fetch_google_subscription(self, purchase_token: str) -> Dict[str, Any]:
        """Look up a purchase token with the Play Developer API. Raises on HTTP errors."""
        url = (
            f"{GooglePlay.API_BASE}/applications/{GooglePlay.PACKAGE_NAME}"
            f"/purchases/subscriptionsv2/tokens/{purchase_token}"
        )
        async with self._client() as client:
            response = await client.get(url, headers={"Authorization": f"Bearer {GooglePlay.ACCESS_TOKEN}"})
            response.raise_for_status()
            return response.json()

    async def _verify_google(self, purchase_token: str, product_id: str, transaction_id: str) -> Tuple[bool, Dict[str, Any]]:
        if not GooglePlay.ACCESS_TOKEN:
            return False, {"error": "Google credentials not configured"}

        data = await self.fetch_google_subscription(purchase_token)
        line_item = (data.get("lineItems") or [{}])[0]
        if line_item.get("productId") != product_id:
            return False, {"error": "Product ID mismatch in Google receipt"}

        return True, {
            "expiresAt": parse_rfc3339(line_item.get("expiryTime")),
            "originalTransactionId": data.get("latestOrderId") or transaction_id,
            "autoRenewing": (line_item.get("autoRenewingPlan") or {}).get("autoRenewEnabled"),
            "raw": data,
        }


# Singleton instance
receipt_verifier = ReceiptVerifier()
