"""Tests for the PostgREST client, driven through an httpx mock transport."""

import json

import httpx
import pytest

from deals_assistant.clients.supabase_client import SupabaseClient, _parse_count
from deals_assistant.utils.errors import ExternalServiceError


def client_for(settings, handler):
    http_client = httpx.AsyncClient(
        base_url="http://test/rest/v1", transport=httpx.MockTransport(handler)
    )
    return SupabaseClient(settings, http_client=http_client)


class TestReads:
    """Test select and count."""

    @pytest.mark.asyncio
    async def test_select_passes_repeated_filters(self, settings):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = request.url.params.multi_items()
            return httpx.Response(200, json=[{"id": 1}, {"id": 2}])

        client = client_for(settings, handler)
        rows = await client.select(
            "deals",
            [("status", "eq.approved"), ("or", "(a.eq.1)"), ("or", "(b.eq.2)"), ("limit", 5)],
        )

        assert rows == [{"id": 1}, {"id": 2}]
        assert seen["path"] == "/rest/v1/deals"
        assert seen["params"] == [
            ("status", "eq.approved"),
            ("or", "(a.eq.1)"),
            ("or", "(b.eq.2)"),
            ("limit", "5"),
        ]

    @pytest.mark.asyncio
    async def test_select_single(self, settings):
        client = client_for(settings, lambda request: httpx.Response(200, json=[{"id": 7}]))
        assert await client.select("companies", single=True) == {"id": 7}

    @pytest.mark.asyncio
    async def test_select_single_without_rows(self, settings):
        client = client_for(settings, lambda request: httpx.Response(200, json=[]))
        assert await client.select("companies", single=True) is None

    @pytest.mark.asyncio
    async def test_count_reads_content_range(self, settings):
        seen = {}

        def handler(request):
            seen["prefer"] = request.headers.get("prefer")
            seen["params"] = request.url.params.multi_items()
            return httpx.Response(200, json=[{"id": 1}], headers={"content-range": "0-0/42"})

        client = client_for(settings, handler)
        assert await client.count("deals", {"status": "eq.approved"}) == 42
        assert seen["prefer"] == "count=exact"
        assert ("status", "eq.approved") in seen["params"]

    @pytest.mark.parametrize(
        "header, expected", [("0-9/42", 42), ("*/0", 0), ("0-9/*", 0), (None, 0)]
    )
    def test_parse_count(self, header, expected):
        assert _parse_count(header) == expected


class TestWrites:
    """Test insert, update and delete."""

    @pytest.mark.asyncio
    async def test_insert_returns_stored_row(self, settings):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["body"] = json.loads(request.content)
            seen["prefer"] = request.headers.get("prefer")
            return httpx.Response(201, json=[{"id": "conv-1", **seen["body"]}])

        client = client_for(settings, handler)
        row = await client.insert("ai_conversations", {"user_id": "u1", "title": "hi"})

        assert row == {"id": "conv-1", "user_id": "u1", "title": "hi"}
        assert seen["method"] == "POST"
        assert seen["prefer"] == "return=representation"

    @pytest.mark.asyncio
    async def test_update_patches_matching_rows(self, settings):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["params"] = request.url.params.multi_items()
            return httpx.Response(200, json=[{"id": "m1"}])

        client = client_for(settings, handler)
        rows = await client.update("ai_messages", [("id", "eq.m1")], {"metadata": {}})

        assert rows == [{"id": "m1"}]
        assert seen["method"] == "PATCH"
        assert seen["params"] == [("id", "eq.m1")]

    @pytest.mark.asyncio
    async def test_delete_returns_removed_count(self, settings):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["params"] = request.url.params.multi_items()
            seen["prefer"] = request.headers.get("prefer")
            return httpx.Response(204, headers={"content-range": "*/7"})

        client = client_for(settings, handler)
        removed = await client.delete("ai_messages", [("created_at", "lt.2026-01-01T00:00:00+00:00")])

        assert removed == 7
        assert seen["method"] == "DELETE"
        assert seen["params"] == [("created_at", "lt.2026-01-01T00:00:00+00:00")]
        assert seen["prefer"] == "return=minimal,count=exact"


class TestErrors:
    """Test transport and status error mapping."""

    @pytest.mark.asyncio
    async def test_status_error(self, settings):
        client = client_for(settings, lambda request: httpx.Response(404, text="relation missing"))

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.select("price_history")

        assert exc_info.value.status_code == 502
        assert exc_info.value.message == "Data store returned 404"
        assert exc_info.value.details["table"] == "price_history"

    @pytest.mark.asyncio
    async def test_timeout(self, settings):
        def handler(request):
            raise httpx.ReadTimeout("too slow", request=request)

        client = client_for(settings, handler)
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.select("deals")
        assert exc_info.value.status_code == 504

    @pytest.mark.asyncio
    async def test_unreachable(self, settings):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = client_for(settings, handler)
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.select("deals")
        assert exc_info.value.status_code == 503
        assert exc_info.value.details["service"] == "supabase"
