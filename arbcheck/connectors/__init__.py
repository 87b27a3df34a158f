"""Exchange and ledger connectors."""

from arbcheck.connectors.exchange_client import ExchangeRestClient
from arbcheck.connectors.ledger_client import GraphQLLedgerClient

__all__ = ["ExchangeRestClient", "GraphQLLedgerClient"]
