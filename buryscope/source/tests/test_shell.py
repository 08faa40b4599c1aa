"""
Tests for Remote Analytics Source Shell Functions
"""

import json
from datetime import date

import httpx
import pytest

from buryscope.source.contracts import (
    AuthFailure,
    NetworkFailure,
    SearchRequest,
    SourceApplicationError,
)
from buryscope.source.shell import BuryPointSourceClient


REQUEST = SearchRequest(project_id="event1021", tracking_point_id=42, day=date(2024, 3, 5), page_size=2)


def client_for(handler, token="secret-token"):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BuryPointSourceClient("https://probe.example.com", token, http_client=http_client)


class TestSearchPage:
    """Test search_page error mapping."""

    @pytest.mark.asyncio
    async def test_success_sends_token_and_body(self):
        seen = {}

        def handler(request):
            seen["token"] = request.headers["access-token"]
            seen["body"] = json.loads(request.content)
            seen["path"] = request.url.path
            return httpx.Response(200, json={"code": 200, "data": {"dataList": [{"id": 1}, {"id": 2}], "total": 5}})

        page = await client_for(handler).search_page(REQUEST)

        assert seen["token"] == "secret-token"
        assert seen["path"] == "/tracker/buryPointTest/search"
        assert seen["body"]["selectedPointId"] == 42
        assert len(page.records) == 2
        assert page.total == 5
        assert not page.is_last

    @pytest.mark.asyncio
    async def test_missing_token_is_auth_failure(self):
        with pytest.raises(AuthFailure):
            await client_for(lambda r: httpx.Response(200), token=None).search_page(REQUEST)

    @pytest.mark.asyncio
    async def test_http_401_is_auth_failure(self):
        with pytest.raises(AuthFailure):
            await client_for(lambda r: httpx.Response(401, json={"code": 401})).search_page(REQUEST)

    @pytest.mark.asyncio
    async def test_vendor_auth_code_is_auth_failure(self):
        with pytest.raises(AuthFailure):
            await client_for(lambda r: httpx.Response(200, json={"code": 403, "msg": "expired"})).search_page(REQUEST)

    @pytest.mark.asyncio
    async def test_vendor_error_code(self):
        with pytest.raises(SourceApplicationError) as exc_info:
            await client_for(lambda r: httpx.Response(200, json={"code": 500, "msg": "busy"})).search_page(REQUEST)

        assert exc_info.value.code == 500

    @pytest.mark.asyncio
    async def test_malformed_envelope(self):
        with pytest.raises(SourceApplicationError):
            await client_for(lambda r: httpx.Response(200, text="<html>")).search_page(REQUEST)

    @pytest.mark.asyncio
    async def test_server_error_is_network_failure(self):
        with pytest.raises(NetworkFailure):
            await client_for(lambda r: httpx.Response(502)).search_page(REQUEST)

    @pytest.mark.asyncio
    async def test_transport_error_is_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NetworkFailure):
            await client_for(handler).search_page(REQUEST)

    @pytest.mark.asyncio
    async def test_timeout_is_network_failure(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(NetworkFailure):
            await client_for(handler).search_page(REQUEST)
