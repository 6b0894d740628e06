"""
Tests for the subscription API client: request shape, retries and error mapping
"""
import json

import httpx
import pytest

from iap.backend_api import BackendApiError, SubscriptionApi
from iap.products import Platform


def _api(handler, **kwargs):
    kwargs.setdefault("backoff_seconds", 0)
    return SubscriptionApi(
        base_url="http://backend.test",
        access_token="token-123",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_validate_receipt_posts_expected_body():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"subscription": {"status": "ACTIVE"}}})

    response = await _api(handler).validate_receipt(Platform.IOS, "com.ideaspark.app.pro_yearly", "receipt", "tx-1")

    assert response["success"] is True
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/api/v1/subscriptions/validate-receipt"
    assert request.headers["Authorization"] == "Bearer token-123"
    assert json.loads(request.content) == {
        "platform": "ios",
        "productId": "com.ideaspark.app.pro_yearly",
        "receipt": "receipt",
        "transactionId": "tx-1",
    }


@pytest.mark.asyncio
async def test_server_errors_are_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, json={"detail": "unavailable"})
        return httpx.Response(200, json={"success": True, "data": {"isActive": False}})

    response = await _api(handler, max_retries=3).get_status()

    assert len(calls) == 3
    assert response["data"]["isActive"] is False


@pytest.mark.asyncio
async def test_rate_limit_is_retried_then_raised():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(429, json={"detail": "Too many receipt verifications"})

    with pytest.raises(BackendApiError) as exc_info:
        await _api(handler, max_retries=2).get_status()

    assert len(calls) == 2
    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={
            "success": False,
            "error": {"code": "VALIDATION_FAILED", "message": "Receipt validation failed"},
        })

    with pytest.raises(BackendApiError) as exc_info:
        await _api(handler).validate_receipt(Platform.ANDROID, "pro_monthly_subscription", "token", "gpa-1")

    assert len(calls) == 1
    assert exc_info.value.status_code == 400
    assert exc_info.value.code == "VALIDATION_FAILED"
    assert exc_info.value.message == "Receipt validation failed"


@pytest.mark.asyncio
async def test_network_errors_raise_without_status():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(BackendApiError) as exc_info:
        await _api(handler, max_retries=3).get_history()

    assert len(calls) == 3
    assert exc_info.value.status_code is None
    assert exc_info.value.is_retryable


@pytest.mark.asyncio
async def test_restore_and_cancel_paths():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path))
        return httpx.Response(200, json={"success": True, "data": {}})

    api = _api(handler)
    await api.restore([{"platform": "ios", "productId": "p", "receipt": "r", "transactionId": "t"}])
    await api.cancel_subscription("sub-1")

    assert seen == [
        ("POST", "/api/v1/subscriptions/restore"),
        ("POST", "/api/v1/subscriptions/sub-1/cancel"),
    ]


@pytest.mark.asyncio
async def test_get_history_returns_subscriptions_newest_first():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": [
            {"id": "sub-2", "plan": "PRO", "status": "ACTIVE", "productId": "com.ideaspark.app.pro_yearly"},
            {"id": "sub-1", "plan": "PRO", "status": "EXPIRED", "productId": "com.ideaspark.app.pro_monthly"},
        ]})

    response = await _api(handler).get_history()

    assert seen[0].method == "GET"
    assert seen[0].url.path == "/api/v1/subscriptions/history"
    assert [item["id"] for item in response["data"]] == ["sub-2", "sub-1"]
    assert response["data"][1]["status"] == "EXPIRED"
