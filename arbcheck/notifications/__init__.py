"""Notification publishers for downstream alerting and bookkeeping."""

from arbcheck.notifications.publisher import FanoutPublisher, JsonlOutboxPublisher
from arbcheck.notifications.webhooks import WebhookPublisher

__all__ = ["FanoutPublisher", "JsonlOutboxPublisher", "WebhookPublisher"]
