"""
backend_api.py
HTTP client for the subscription endpoints, used by the reconciler.

Network errors, 429 and 5xx responses are retried with exponential backoff.
Other 4xx responses are final.
"""

import asyncio
from typing import Any, Dict, List, Optional

import httpx

from config import IAPClient, get_logger, log_debug
from iap.products import Platform

logger = get_logger(__name__)

SUBSCRIPTIONS_PATH = "/api/v1/subscriptions"


class BackendApiError(Exception):
    """Raised when a subscription endpoint fails. status_code is None for network failures."""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code

    @property
    def is_retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


def _error_from_response(response: httpx.Response) -> BackendApiError:
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return BackendApiError(error.get("message") or "Request failed", response.status_code, error.get("code"))
    detail = payload.get("detail") if isinstance(payload, dict) else None
    return BackendApiError(str(detail or f"HTTP {response.status_code}"), response.status_code)


class SubscriptionApi:
    def __init__(
        self,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or IAPClient.API_BASE_URL).rstrip("/")
        self.access_token = access_token
        self.timeout = timeout if timeout is not None else IAPClient.API_TIMEOUT_SECONDS
        self.max_retries = max(1, max_retries if max_retries is not None else IAPClient.API_MAX_RETRIES)
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else IAPClient.API_BACKOFF_SECONDS
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    async def _send(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{SUBSCRIPTIONS_PATH}{path}"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.request(method, url, headers=self._headers(), json=json)
            except httpx.HTTPError as e:
                raise BackendApiError(f"Network error: {str(e)}") from e
        if response.status_code >= 400:
            raise _error_from_response(response)
        try:
            return response.json()
        except ValueError as e:
            raise BackendApiError("Invalid JSON response", response.status_code) from e

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        retry_delay = self.backoff_seconds
        for attempt in range(self.max_retries):
            try:
                return await self._send(method, path, json)
            except BackendApiError as e:
                if not e.is_retryable or attempt == self.max_retries - 1:
                    logger.error(f"{method} {path} failed: {e.message} (status={e.status_code}, code={e.code})")
                    raise
                logger.warning(
                    f"{method} {path} failed (attempt {attempt + 1}/{self.max_retries}). "
                    f"Retrying in {retry_delay} seconds..."
                )
                await asyncio.sleep(retry_delay)
                retry_delay *= 2
        raise BackendApiError(f"{method} {path} failed")

    async def validate_receipt(self, platform: Platform, product_id: str, receipt: str,
                               transaction_id: str) -> Dict[str, Any]:
        log_debug(logger, f"Validating receipt for transaction {transaction_id} ({product_id})")
        return await self._request("POST", "/validate-receipt", json={
            "platform": Platform(platform).value,
            "productId": product_id,
            "receipt": receipt,
            "transactionId": transaction_id,
        })

    async def get_status(self) -> Dict[str, Any]:
        return await self._request("GET", "/status")

    async def get_history(self) -> Dict[str, Any]:
        return await self._request("GET", "/history")

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/{subscription_id}/cancel")

    async def restore(self, receipts: List[Dict[str, str]]) -> Dict[str, Any]:
        """receipts: validate-receipt bodies ({platform, productId, receipt, transactionId})."""
        return await self._request("POST", "/restore", json={"receipts": receipts})
