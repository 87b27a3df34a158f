"""Operator HTTP API."""

from arbcheck.api.operator import create_app

__all__ = ["create_app"]
