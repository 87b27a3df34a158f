"""Async Biscoint REST client: trade history and fresh offers."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any

import httpx
import structlog

from arbcheck.config.settings import Settings
from arbcheck.errors import GatewayError, RejectedQuoteError, TransientIOError
from arbcheck.models import ExecutionRecord, Offer, Side, parse_timestamp

RETRYABLE_STATUS = {408, 418, 429, 500, 502, 503, 504}


def parse_offer(data: dict[str, Any]) -> Offer:
    """Build an Offer from an exchange offer payload."""
    return Offer(
        offer_id=str(data["offerId"]),
        base=data["base"],
        quote=data.get("quote", "BRL"),
        side=data["op"],
        base_amount=float(data["baseAmount"]),
        quote_amount=float(data["quoteAmount"]),
        ef_price=float(data["efPrice"]),
        created_at=parse_timestamp(data["createdAt"]),
        expires_at=parse_timestamp(data["expiresAt"]),
        is_quote=bool(data.get("isQuote", False)),
        api_key_id=data.get("apiKeyId"),
    )


def parse_execution(data: dict[str, Any]) -> ExecutionRecord | None:
    offer_id = data.get("offerId")
    executed_at = parse_timestamp(data.get("date"))
    if not offer_id or executed_at is None:
        return None
    return ExecutionRecord(
        exchange_offer_id=str(offer_id),
        executed_at=executed_at,
        extra={k: data[k] for k in ("id", "op", "base", "efPrice") if k in data},
    )


def format_amount(amount: float) -> str:
    return f"{amount:.8f}".rstrip("0").rstrip(".")


class ExchangeRestClient:
    """Biscoint REST client implementing the exchange gateway contract."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.api_key = settings.exchange_api_key
        self.api_secret = settings.exchange_api_secret
        self.http = httpx.AsyncClient(
            base_url=settings.exchange.api_url,
            timeout=settings.exchange.timeout_ms / 1000,
            transport=transport,
        )
        self.log = structlog.get_logger(__name__)

    async def close(self) -> None:
        await self.http.aclose()

    async def recent_trades(self, limit: int) -> list[ExecutionRecord]:
        """Most recent fills, newest first."""
        data = await self._request("recent_trades", "GET", "v1/trades", {"length": limit})
        records = []
        for item in data or []:
            record = parse_execution(item)
            if record is None:
                self.log.warning("execution_record_invalid", record=item)
                continue
            records.append(record)
        return records

    async def quote(self, base: str, amount: float, side: Side) -> Offer:
        """Request an executable offer for ``amount`` of ``base``; not a commitment."""
        params = {
            "base": base,
            "amount": format_amount(amount),
            "op": side,
            "isQuote": "false",
        }
        data = await self._request("quote", "GET", "v1/offer", params)
        try:
            return parse_offer(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise RejectedQuoteError("quote", f"malformed offer payload: {exc}") from exc

    def _sign(self, path: str, nonce: str, body: dict[str, Any]) -> str:
        payload = base64.b64encode(
            json.dumps(body, separators=(",", ":")).encode("utf-8")
        ).decode("ascii")
        message = f"{path}{nonce}{payload}".encode("utf-8")
        return hmac.new(self.api_secret.encode("utf-8"), message, hashlib.sha384).hexdigest()

    async def _request(
        self,
        op: str,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        params = params or {}
        nonce = str(time.time_ns() // 1000)
        headers = {
            "BSCNT-NONCE": nonce,
            "BSCNT-APIKEY": self.api_key,
            "BSCNT-SIGN": self._sign(path, nonce, params),
        }
        start = time.perf_counter()
        try:
            response = await self.http.request(method, path, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientIOError(op, f"timeout: {exc}") from exc
        except httpx.RequestError as exc:
            raise TransientIOError(op, str(exc)) from exc
        latency_ms = (time.perf_counter() - start) * 1000

        if response.status_code in RETRYABLE_STATUS:
            self.log.warning(
                "rest_http_error_retrying",
                op=op,
                path=path,
                status_code=response.status_code,
                latency_ms=round(latency_ms, 2),
            )
            raise TransientIOError(op, response.text[:500], response.status_code)
        if response.status_code >= 400:
            self.log.error(
                "rest_http_error",
                op=op,
                path=path,
                status_code=response.status_code,
                error=response.text[:500],
            )
            if op == "quote":
                raise RejectedQuoteError(op, f"{response.status_code}: {response.text[:500]}")
            raise GatewayError(op, f"{response.status_code}: {response.text[:500]}")

        self.log.debug(
            "rest_response",
            op=op,
            path=path,
            status_code=response.status_code,
            latency_ms=round(latency_ms, 2),
        )
        body = response.json()
        if isinstance(body, dict) and "data" in body:
            return body["data"]
        return body
