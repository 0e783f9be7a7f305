"""Execution gateway contract and the HTTP bridge adapter."""

from __future__ import annotations

from typing import Any, Protocol
from urllib.parse import quote

import httpx
import structlog

from autotrade.models import Balance, GatewayResult, OrderRequest, Position

log = structlog.get_logger("gateway")


class ExecutionGateway(Protocol):
    """Narrow contract to one exchange account. Every call is retryable
    given the same idempotency key."""

    async def execute(self, order: OrderRequest) -> GatewayResult: ...

    async def get_positions(self) -> list[Position]: ...

    async def get_balance(self) -> Balance: ...

    async def close(self, instrument: str, idempotency_key: str | None = None) -> GatewayResult: ...


class HttpGateway:
    """Async client for a REST execution bridge.

    Endpoints:
        POST /orders                        -> GatewayResult
        GET  /positions                     -> [Position, ...]
        GET  /balance                       -> Balance
        POST /positions/{instrument}/close  -> GatewayResult

    Order and close calls carry an ``Idempotency-Key`` header. Transport and
    HTTP errors on order/close calls come back as ``GatewayResult(ok=False)``;
    read calls raise so the caller's refresh can log and keep its cache.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_s: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_s,
                headers=headers,
                transport=self._transport,
            )
        return self._http

    async def close_client(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    # --- Orders ---

    async def _post_result(self, path: str, payload: dict[str, Any], idempotency_key: str | None) -> GatewayResult:
        http = await self._get_http()
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        try:
            resp = await http.post(path, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            log.warning("gateway_transport_error", path=path, error=str(exc))
            return GatewayResult(ok=False, error=f"transport error: {exc}")

        if resp.status_code >= 400:
            try:
                body = resp.json()
                error = body.get("error") or body.get("message") or resp.text
            except ValueError:
                error = resp.text
            log.warning("gateway_http_error", path=path, status=resp.status_code, error=error)
            return GatewayResult(ok=False, error=f"HTTP {resp.status_code}: {error}")

        return GatewayResult.model_validate(resp.json())

    async def execute(self, order: OrderRequest) -> GatewayResult:
        payload = order.model_dump(mode="json", exclude={"metadata"})
        return await self._post_result("/orders", payload, order.idempotency_key)

    async def close(self, instrument: str, idempotency_key: str | None = None) -> GatewayResult:
        path = f"/positions/{quote(instrument, safe='')}/close"
        return await self._post_result(path, {"instrument": instrument}, idempotency_key)

    # --- Account ---

    async def get_positions(self) -> list[Position]:
        http = await self._get_http()
        resp = await http.get("/positions")
        resp.raise_for_status()
        return [Position.model_validate(p) for p in resp.json()]

    async def get_balance(self) -> Balance:
        http = await self._get_http()
        resp = await http.get("/balance")
        resp.raise_for_status()
        return Balance.model_validate(resp.json())
