"""Webhook delivery for trade notifications."""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp
import structlog

from arbcheck.models import format_timestamp, utc_now


def _summary(topic: str, payload: dict[str, Any]) -> tuple[str, str]:
    """Title and one-line description for chat-style webhooks."""
    if "event" in payload:
        trade = payload.get("payload") or {}
        open_offer = trade.get("openOffer") or {}
        return (
            str(payload["event"]),
            f"trade {trade.get('id')} {open_offer.get('base', '?')} "
            f"status={trade.get('status')} open@{open_offer.get('efPrice')}",
        )
    offers = payload.get("offers") or []
    desc = ", ".join(
        f"{o.get('op')} {o.get('baseAmount')} {o.get('base')} @ {o.get('efPrice')}" for o in offers
    )
    return topic, desc or "no offers"


class WebhookPublisher:
    """POST every published message to the configured webhook URLs.

    Slack and Discord URLs get a formatted message; anything else receives the
    raw ``{topic, payload, published_at}`` envelope. Delivery failures are
    logged and dropped. One session is opened on first publish and kept until
    ``close()``.
    """

    def __init__(self, webhook_urls: list[str], timeout_sec: int = 10) -> None:
        self.webhook_urls = webhook_urls
        self.timeout_sec = timeout_sec
        self._session: aiohttp.ClientSession | None = None
        self._log = structlog.get_logger(__name__)

    def _envelope(self, topic: str, payload: dict[str, Any]) -> dict[str, Any]:
        return {
            "topic": topic,
            "payload": payload,
            "published_at": format_timestamp(utc_now()),
        }

    def _format_slack(self, topic: str, payload: dict[str, Any]) -> dict[str, Any]:
        title, desc = _summary(topic, payload)
        emoji = ":rotating_light:" if title == "trade-broken" else ":white_check_mark:"
        return {"text": f"{emoji} *{title}*\n{desc}"}

    def _format_discord(self, topic: str, payload: dict[str, Any]) -> dict[str, Any]:
        title, desc = _summary(topic, payload)
        color = 0xFFA500 if title == "trade-broken" else 0x2ECC71
        return {"embeds": [{"title": title, "description": desc, "color": color}]}

    def _body_for(self, url: str, topic: str, payload: dict[str, Any]) -> dict[str, Any]:
        lowered = url.lower()
        if "slack" in lowered:
            return self._format_slack(topic, payload)
        if "discord" in lowered:
            return self._format_discord(topic, payload)
        return self._envelope(topic, payload)

    async def _send_webhook(self, session: aiohttp.ClientSession, url: str, body: dict[str, Any]) -> None:
        try:
            async with session.post(
                url,
                json=body,
                timeout=aiohttp.ClientTimeout(total=self.timeout_sec),
            ) as response:
                if response.status >= 400:
                    text = await response.text()
                    self._log.error(
                        "webhook_failed",
                        url=url,
                        status=response.status,
                        response_body=text[:500],
                    )
                else:
                    self._log.debug("webhook_sent", url=url)
        except asyncio.TimeoutError:
            self._log.error("webhook_timeout", url=url)
        except aiohttp.ClientError as exc:
            self._log.error("webhook_error", url=url, error=str(exc))

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if not self.webhook_urls:
            return
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        session = self._session
        await asyncio.gather(
            *(
                self._send_webhook(session, url, self._body_for(url, topic, payload))
                for url in self.webhook_urls
            )
        )

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await session.close()
