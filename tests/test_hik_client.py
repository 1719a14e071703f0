# tests/test_hik_client.py
"""Unit tests for the vendor API client, using httpx.MockTransport."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import json
import httpx
import pytest
from app.exceptions import DeviceApiError, TokenRejectedError
from app.services.hik_client import HikCloudClient

BASE_URL = "https://hik.example.com/"


def client_for(handler):
    return HikCloudClient(timeout=2, transport=httpx.MockTransport(handler))


class TestHikCloudClient:
    @pytest.mark.asyncio
    async def test_token_exchange_posts_credentials(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"code": "0", "msg": "ok",
                                             "data": {"accessToken": "abc", "expiresIn": 604800}})

        body = await client_for(handler).exchange_token(BASE_URL, "key-1", "secret-1")

        assert seen["url"] == "https://hik.example.com/api/hpcgw/v1/token/get"
        assert seen["body"] == {"appKey": "key-1", "secretKey": "secret-1"}
        assert body == {"accessToken": "abc", "expiresIn": 604800}

    @pytest.mark.asyncio
    async def test_flat_response_is_returned_as_is(self):
        handler = lambda request: httpx.Response(200, json={"accessToken": "abc"})  # noqa: E731
        assert await client_for(handler).exchange_token(BASE_URL, "k", "s") == {"accessToken": "abc"}

    @pytest.mark.asyncio
    async def test_bearer_token_sent_on_device_calls(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"code": "0", "data": {}})

        await client_for(handler).configure_privileges(BASE_URL, "tok-1", "P-1", [])

        assert seen["auth"] == "Bearer tok-1"
        assert seen["body"]["personId"] == "P-1"
        assert seen["body"]["doorIndexCodes"] == []

    @pytest.mark.asyncio
    async def test_http_401_is_token_rejection(self):
        handler = lambda request: httpx.Response(401, json={"msg": "unauthorized"})  # noqa: E731
        with pytest.raises(TokenRejectedError) as exc:
            await client_for(handler).add_person(BASE_URL, "tok", {"personId": "P-1"})
        assert exc.value.status_code == 401

    @pytest.mark.asyncio
    async def test_token_error_code_in_envelope_is_token_rejection(self):
        handler = lambda request: httpx.Response(200, json={"code": "TOKEN_EXPIRED", "msg": "expired"})  # noqa: E731
        with pytest.raises(TokenRejectedError):
            await client_for(handler).update_person(BASE_URL, "tok", {"personId": "P-1"})

    @pytest.mark.asyncio
    async def test_vendor_error_code_raises(self):
        handler = lambda request: httpx.Response(200, json={"code": "OPEN000001", "msg": "bad appKey"})  # noqa: E731
        with pytest.raises(DeviceApiError) as exc:
            await client_for(handler).exchange_token(BASE_URL, "k", "s")
        assert exc.value.code == "OPEN000001"
        assert not isinstance(exc.value, TokenRejectedError)

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        handler = lambda request: httpx.Response(503, text="unavailable")  # noqa: E731
        with pytest.raises(DeviceApiError) as exc:
            await client_for(handler).exchange_token(BASE_URL, "k", "s")
        assert exc.value.status_code == 503

    @pytest.mark.asyncio
    async def test_html_body_raises(self):
        handler = lambda request: httpx.Response(200, text="<html>login</html>")  # noqa: E731
        with pytest.raises(DeviceApiError):
            await client_for(handler).exchange_token(BASE_URL, "k", "s")

    @pytest.mark.asyncio
    async def test_timeout_raises_without_leaking_secret(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(DeviceApiError) as exc:
            await client_for(handler).exchange_token(BASE_URL, "key-1", "super-secret")
        assert exc.value.status_code is None
        assert "super-secret" not in str(exc.value)

    @pytest.mark.asyncio
    async def test_connection_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(DeviceApiError):
            await client_for(handler).exchange_token(BASE_URL, "k", "s")

    @pytest.mark.asyncio
    async def test_fetch_events_posts_window_and_page(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"code": "0", "data": {"list": [{"eventId": "ev-1"}], "total": 1}})

        page = await client_for(handler).fetch_events(BASE_URL, "tok-1", "2026-03-01T08:00:00",
                                                      "2026-03-01T09:00:00", page_no=2, page_size=50)

        assert seen["url"] == "https://hik.example.com/api/hpcgw/v1/acs/event/list"
        assert seen["body"] == {"startTime": "2026-03-01T08:00:00", "endTime": "2026-03-01T09:00:00",
                                "pageNo": 2, "pageSize": 50}
        assert page["list"] == [{"eventId": "ev-1"}]
