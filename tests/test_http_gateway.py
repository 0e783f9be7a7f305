"""Tests for the HTTP execution bridge adapter."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from autotrade.execution import HttpGateway
from autotrade.models import OrderRequest

BASE_URL = "http://bridge.test"


def _gateway(handler, api_key="secret") -> HttpGateway:
    return HttpGateway(BASE_URL, api_key=api_key, transport=httpx.MockTransport(handler))


def _order(**kwargs) -> OrderRequest:
    return OrderRequest(instrument="BTC-PERP", side="LONG", amount_usd=100.0, **kwargs)


class TestExecute:
    def test_posts_order_with_headers(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True, "order_id": "x1", "executed_price": 100.5, "quantity": 1})

        order = _order(metadata={"signal_ids": ["a"]})
        result = asyncio.run(_gateway(handler).execute(order))

        assert result.ok
        assert result.order_id == "x1"
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/orders"
        assert request.headers["Idempotency-Key"] == order.idempotency_key
        assert request.headers["Authorization"] == "Bearer secret"
        body = json.loads(request.content)
        assert body["instrument"] == "BTC-PERP"
        assert body["amount_usd"] == 100.0
        assert "metadata" not in body

    def test_no_auth_header_without_key(self):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        asyncio.run(_gateway(handler, api_key=None).execute(_order()))
        assert "Authorization" not in seen[0].headers

    def test_http_error_becomes_result(self):
        def handler(request):
            return httpx.Response(400, json={"error": "Insufficient balance"})

        result = asyncio.run(_gateway(handler).execute(_order()))
        assert not result.ok
        assert result.error == "HTTP 400: Insufficient balance"

    def test_non_json_error_body(self):
        def handler(request):
            return httpx.Response(502, text="bad gateway")

        result = asyncio.run(_gateway(handler).execute(_order()))
        assert result.error == "HTTP 502: bad gateway"

    def test_transport_error_becomes_result(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = asyncio.run(_gateway(handler).execute(_order()))
        assert not result.ok
        assert result.error.startswith("transport error:")


class TestClose:
    def test_close_path_and_key(self):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True, "executed_price": 99.0, "quantity": 1})

        result = asyncio.run(_gateway(handler).close("BTC-PERP", "close-key"))
        assert result.ok
        assert seen[0].url.path == "/positions/BTC-PERP/close"
        assert seen[0].headers["Idempotency-Key"] == "close-key"


class TestAccount:
    def test_positions_and_balance(self):
        def handler(request):
            if request.url.path == "/positions":
                return httpx.Response(200, json=[{
                    "instrument": "ETH", "side": "SHORT", "size": 2, "entry_price": 3000,
                    "current_price": 2950, "unrealized_pnl": 100,
                }])
            return httpx.Response(200, json={"total": 10100, "available": 9000})

        gateway = _gateway(handler)

        async def scenario():
            positions = await gateway.get_positions()
            balance = await gateway.get_balance()
            await gateway.close_client()
            return positions, balance

        positions, balance = asyncio.run(scenario())
        assert positions[0].instrument == "ETH"
        assert positions[0].unrealized_pnl == 100
        assert balance.total == 10100

    def test_read_errors_raise(self):
        def handler(request):
            return httpx.Response(500)

        with pytest.raises(httpx.HTTPStatusError):
            asyncio.run(_gateway(handler).get_balance())
