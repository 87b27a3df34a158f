"""Trade reconciliation service for two-leg arbitrage positions."""

__version__ = "0.1.0"
