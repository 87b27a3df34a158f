"""Local outbox and fan-out publishers."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Iterable, Iterator

import orjson
import structlog

from arbcheck.gateways.base import NotificationPublisher
from arbcheck.models import format_timestamp, utc_now


class JsonlOutboxPublisher:
    """Append every message to ``outbox.jsonl`` for downstream replay."""

    def __init__(self, outbox_path: str | Path) -> None:
        self.outbox_path = Path(outbox_path)
        self.outbox_path.mkdir(parents=True, exist_ok=True)
        self.outbox_file = self.outbox_path / "outbox.jsonl"
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        line = orjson.dumps(
            {"topic": topic, "published_at": format_timestamp(utc_now()), "payload": payload}
        )
        async with self._lock:
            with open(self.outbox_file, "ab") as handle:
                handle.write(line + b"\n")

    def iter_messages(self) -> Iterator[dict[str, Any]]:
        if not self.outbox_file.exists():
            return
        with open(self.outbox_file, "rb") as handle:
            for raw in handle:
                raw = raw.strip()
                if raw:
                    yield orjson.loads(raw)


class FanoutPublisher:
    """Publish to every child; one child failing does not stop the others."""

    def __init__(self, publishers: Iterable[NotificationPublisher]) -> None:
        self.publishers = list(publishers)
        self._log = structlog.get_logger(__name__)

    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        results = await asyncio.gather(
            *(p.publish(topic, payload) for p in self.publishers),
            return_exceptions=True,
        )
        for publisher, result in zip(self.publishers, results):
            if isinstance(result, Exception):
                self._log.error(
                    "publisher_failed",
                    publisher=type(publisher).__name__,
                    topic=topic,
                    error=str(result),
                )

    async def close(self) -> None:
        for publisher in self.publishers:
            close = getattr(publisher, "close", None)
            if close is not None:
                await close()
