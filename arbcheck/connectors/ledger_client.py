"""Trade ledger backed by a Hasura GraphQL endpoint."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from arbcheck.config.settings import Settings
from arbcheck.errors import GatewayError, InconsistentStateError, TransientIOError
from arbcheck.models import (
    PENDING_STATUSES,
    Offer,
    Trade,
    TradeStatus,
    format_timestamp,
    parse_timestamp,
)

OFFER_FIELDS = """
      apiKeyId
      base
      baseAmount
      confirmedAt
      createdAt
      efPrice
      expiresAt
      id
      isQuote
      offerId
      op
      quote
      quoteAmount
"""

FIND_PENDING_TRADES = (
    """
query findPendingTrades($type: String!, $statuses: [String!]!) {
  biscoint_trade(where: { type: { _eq: $type }, status: { _in: $statuses } }, order_by: { id: asc }) {
    id
    checkedAt
    status
    hasSiblings
    openOffer {"""
    + OFFER_FIELDS
    + """    }
    closeOffer {"""
    + OFFER_FIELDS
    + """    }
  }
}
"""
)

UPDATE_TRADE = """
mutation updateTrade(
  $id: Int!
  $checkedAt: timestamptz
  $status: String
  $hasSiblings: Boolean
  $closeOfferId: Int
) {
  update_biscoint_trade_by_pk(
    pk_columns: { id: $id }
    _set: {
      checkedAt: $checkedAt
      status: $status
      hasSiblings: $hasSiblings
      closeOfferId: $closeOfferId
    }
  ) {
    id
  }
}
"""

UPDATE_OFFER = """
mutation updateOffer(
  $id: Int!
  $apiKeyId: String
  $confirmedAt: timestamptz
  $createdAt: timestamptz
  $efPrice: String
  $expiresAt: timestamptz
  $offerId: String
  $baseAmount: String
  $quoteAmount: String
) {
  update_biscoint_offer_by_pk(
    pk_columns: { id: $id }
    _set: {
      apiKeyId: $apiKeyId
      confirmedAt: $confirmedAt
      createdAt: $createdAt
      efPrice: $efPrice
      expiresAt: $expiresAt
      offerId: $offerId
      baseAmount: $baseAmount
      quoteAmount: $quoteAmount
    }
  ) {
    id
  }
}
"""

REMOVE_TRADE = """
mutation removeTrade($tradeId: Int!, $offerIds: [Int!]!) {
  delete_biscoint_trade_by_pk(id: $tradeId) {
    id
  }
  delete_biscoint_offer(where: { id: { _in: $offerIds } }) {
    affected_rows
  }
}
"""

CREATE_OFFER = """
mutation createOffer($input: biscoint_offer_insert_input!) {
  insert_biscoint_offer_one(object: $input) {
    id
  }
}
"""


def parse_offer_row(row: dict[str, Any]) -> Offer:
    return Offer(
        id=row.get("id"),
        offer_id=str(row["offerId"]),
        base=row["base"],
        quote=row.get("quote") or "BRL",
        side=row["op"],
        base_amount=float(row["baseAmount"]),
        quote_amount=float(row["quoteAmount"]),
        ef_price=float(row["efPrice"]),
        created_at=parse_timestamp(row["createdAt"]),
        expires_at=parse_timestamp(row["expiresAt"]),
        is_quote=bool(row.get("isQuote", False)),
        api_key_id=row.get("apiKeyId"),
        confirmed_at=parse_timestamp(row.get("confirmedAt")),
    )


def parse_trade_row(row: dict[str, Any]) -> Trade:
    """Build a Trade from a ledger row.

    Raises:
        InconsistentStateError: missing open offer or malformed offer fields.
    """
    trade_id = row.get("id")
    if trade_id is None:
        raise InconsistentStateError("trade row without id")
    if not row.get("openOffer"):
        raise InconsistentStateError("trade has no open offer", trade_id=trade_id)
    try:
        open_offer = parse_offer_row(row["openOffer"])
        close_offer = parse_offer_row(row["closeOffer"]) if row.get("closeOffer") else None
        status = TradeStatus(row.get("status") or TradeStatus.OPEN.value)
    except (KeyError, TypeError, ValueError) as exc:
        raise InconsistentStateError(f"malformed trade row: {exc}", trade_id=trade_id) from exc
    return Trade(
        id=trade_id,
        open_offer=open_offer,
        close_offer=close_offer,
        status=status,
        checked_at=parse_timestamp(row.get("checkedAt")),
        has_siblings=bool(row.get("hasSiblings")),
    )


def offer_insert_input(offer: Offer) -> dict[str, Any]:
    return {
        "offerId": offer.offer_id,
        "base": offer.base,
        "quote": offer.quote,
        "op": offer.side,
        "isQuote": offer.is_quote,
        "apiKeyId": offer.api_key_id,
        "baseAmount": str(offer.base_amount),
        "quoteAmount": str(offer.quote_amount),
        "efPrice": str(offer.ef_price),
        "createdAt": format_timestamp(offer.created_at),
        "expiresAt": format_timestamp(offer.expires_at),
        "confirmedAt": format_timestamp(offer.confirmed_at),
    }


class GraphQLLedgerClient:
    """Ledger gateway over Hasura. All writes are keyed by primary key."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.trade_type = settings.ledger.trade_type
        self.http = httpx.AsyncClient(
            timeout=settings.ledger.timeout_ms / 1000,
            headers={"x-hasura-admin-secret": settings.ledger_admin_secret},
            transport=transport,
        )
        self.endpoint = settings.ledger.api_endpoint
        self.log = structlog.get_logger(__name__)

    async def close(self) -> None:
        await self.http.aclose()

    async def list_pending_trades(self) -> list[Trade]:
        data = await self._execute(
            "findPendingTrades",
            FIND_PENDING_TRADES,
            {"type": self.trade_type, "statuses": [s.value for s in PENDING_STATUSES]},
        )
        trades = []
        for row in data.get("biscoint_trade") or []:
            try:
                trades.append(parse_trade_row(row))
            except InconsistentStateError as exc:
                self.log.error(
                    "trade_inconsistent",
                    trade_id=exc.trade_id,
                    error=str(exc),
                    action="skipped; requires manual review",
                )
        return trades

    async def update_trade(self, trade: Trade) -> None:
        await self._execute(
            "updateTrade",
            UPDATE_TRADE,
            {
                "id": trade.id,
                "checkedAt": format_timestamp(trade.checked_at),
                "status": trade.status.value,
                "hasSiblings": trade.has_siblings,
                "closeOfferId": trade.close_offer.id if trade.close_offer else None,
            },
        )

    async def update_offer(self, offer: Offer) -> None:
        if offer.id is None:
            raise InconsistentStateError(f"offer {offer.offer_id} has no ledger id")
        await self._execute(
            "updateOffer",
            UPDATE_OFFER,
            {
                "id": offer.id,
                "apiKeyId": offer.api_key_id,
                "confirmedAt": format_timestamp(offer.confirmed_at),
                "createdAt": format_timestamp(offer.created_at),
                "efPrice": str(offer.ef_price),
                "expiresAt": format_timestamp(offer.expires_at),
                "offerId": offer.offer_id,
                "baseAmount": str(offer.base_amount),
                "quoteAmount": str(offer.quote_amount),
            },
        )

    async def remove_trade(self, trade: Trade) -> None:
        offer_ids = [o.id for o in (trade.open_offer, trade.close_offer) if o and o.id is not None]
        await self._execute("removeTrade", REMOVE_TRADE, {"tradeId": trade.id, "offerIds": offer_ids})

    async def create_offer(self, offer: Offer) -> int:
        data = await self._execute("createOffer", CREATE_OFFER, {"input": offer_insert_input(offer)})
        inserted = data.get("insert_biscoint_offer_one") or {}
        if inserted.get("id") is None:
            raise GatewayError("createOffer", "insert returned no id")
        return int(inserted["id"])

    async def _execute(self, op: str, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        payload = {"query": query, "variables": variables, "operationName": op}
        try:
            response = await self.http.post(self.endpoint, json=payload)
        except httpx.TimeoutException as exc:
            raise TransientIOError(op, f"timeout: {exc}") from exc
        except httpx.RequestError as exc:
            raise TransientIOError(op, str(exc)) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientIOError(op, response.text[:500], response.status_code)
        if response.status_code >= 400:
            raise GatewayError(op, f"{response.status_code}: {response.text[:500]}")

        body = response.json()
        errors = body.get("errors")
        if errors:
            messages = [e.get("message", str(e)) for e in errors]
            self.log.error("graphql_errors", op=op, errors=messages)
            raise GatewayError(op, "; ".join(messages))
        return body.get("data") or {}
