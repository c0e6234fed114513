"""
Tests for the display's HTTP client: read failures, mutation retries and
error message extraction.
"""

import httpx
import pytest

from services.errors import CommandError, ConnectivityError
from services.kds_api_client import MUTATION_ATTEMPTS, KDSApiClient, backoff_delay, error_detail


def client_for(handler, delays=None) -> KDSApiClient:
    async def record_sleep(seconds):
        if delays is not None:
            delays.append(seconds)

    return KDSApiClient("http://kds", transport=httpx.MockTransport(handler), sleep=record_sleep)


class TestErrorDetail:
    def test_string_detail(self):
        response = httpx.Response(404, json={"detail": "Order 9 not found"})
        assert error_detail(response) == "Order 9 not found"

    def test_database_detail(self):
        response = httpx.Response(503, json={"detail": {"message": "Login timeout expired", "state": "HYT00"}})
        assert error_detail(response) == "Login timeout expired"

    def test_validation_errors(self):
        response = httpx.Response(422, json={"detail": [{"msg": "field required"}, {"msg": "not an int"}]})
        assert error_detail(response) == "field required; not an int"

    def test_plain_text(self):
        assert error_detail(httpx.Response(502, text="Bad Gateway")) == "Bad Gateway"
        assert error_detail(httpx.Response(500)) == "HTTP 500"


class TestBackoff:
    def test_grows_with_attempts(self):
        assert 0.5 <= backoff_delay(1) <= 1.0
        assert 1.0 <= backoff_delay(2) <= 1.5
        assert 2.0 <= backoff_delay(3) <= 2.5


class TestReads:
    @pytest.mark.asyncio
    async def test_get_orders_parses_tickets(self):
        seen = []

        def handler(request):
            seen.append(request.url.params["categories"])
            return httpx.Response(200, json={
                "orders": [{
                    "order_number": 101,
                    "groups": [{
                        "order_number": 101,
                        "main": {"order_number": 101, "item_code": "BURGER", "line_type": "MAIN",
                                 "time_to_finish_minutes": 15, "order_time": "2026-03-01T12:00:00"},
                        "modifiers": [{"order_number": 101, "item_code": "CHEESE", "line_type": "MODIFIER"}],
                    }],
                }],
                "count": 1,
                "fetched_at": "2026-03-01T12:05:00",
            })

        tickets = await client_for(handler).get_orders([1, 2])

        assert seen == ["1,2"]
        assert tickets[0].order_number == 101
        assert tickets[0].lead.item_code == "BURGER"
        assert tickets[0].groups[0].modifiers[0].item_code == "CHEESE"

    @pytest.mark.asyncio
    async def test_server_error_is_connectivity(self):
        def handler(request):
            return httpx.Response(503, json={"detail": {"message": "Login timeout expired"}})

        with pytest.raises(ConnectivityError, match="Login timeout expired"):
            await client_for(handler).get_orders([1])

    @pytest.mark.asyncio
    async def test_network_failure_is_connectivity(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(ConnectivityError):
            await client_for(handler).get_categories()

    @pytest.mark.asyncio
    async def test_reads_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused")

        with pytest.raises(ConnectivityError):
            await client_for(handler).check_audio("neworder.mp3")
        assert len(calls) == 1


class TestMutations:
    @pytest.mark.asyncio
    async def test_retries_server_errors_then_succeeds(self):
        responses = [
            httpx.Response(503, json={"detail": {"message": "busy"}}),
            httpx.Response(200, json={"success": True, "order_number": 101}),
        ]
        delays = []

        result = await client_for(lambda request: responses.pop(0), delays).finish_order(101)

        assert result["success"]
        assert len(delays) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        calls = []
        delays = []

        def handler(request):
            calls.append(request)
            raise httpx.ReadTimeout("slow")

        with pytest.raises(ConnectivityError, match="Timed out"):
            await client_for(handler, delays).finish_order(101)

        assert len(calls) == MUTATION_ATTEMPTS
        assert len(delays) == MUTATION_ATTEMPTS - 1
        assert delays == sorted(delays)

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, json={"detail": "Order 101 not found"})

        with pytest.raises(CommandError) as exc_info:
            await client_for(handler).finish_order(101)

        assert len(calls) == 1
        assert exc_info.value.message == "Order 101 not found"
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_token_is_sent(self):
        headers = []

        def handler(request):
            headers.append(request.headers.get("authorization"))
            return httpx.Response(200, json={"success": True})

        api = client_for(handler)
        api.token = "abc"
        await api.reconnect({"server": "pos01"})

        assert headers == ["Bearer abc"]


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_stores_token(self):
        def handler(request):
            return httpx.Response(200, json={
                "access_token": "token-1",
                "token_type": "bearer",
                "user": {"id": "1234", "name": "Chef Sam", "is_emergency": False},
            })

        api = client_for(handler)
        await api.login("1234")

        assert api.token == "token-1"

    @pytest.mark.asyncio
    async def test_rejected_login(self):
        def handler(request):
            return httpx.Response(401, json={"detail": "Invalid cashier key"})

        with pytest.raises(CommandError, match="Invalid cashier key"):
            await client_for(handler).login("0000")


class TestEventStream:
    @pytest.mark.asyncio
    async def test_yields_data_lines(self):
        body = (
            ": keepalive\n\n"
            'data: {"type": "ORDER_FINISHED", "order_number": 101}\n\n'
            "data: not json\n\n"
        )

        def handler(request):
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        events = [event async for event in client_for(handler).stream_events()]

        assert events == [{"type": "ORDER_FINISHED", "order_number": 101}]
