"""Process host: wire settings, gateways, engine, scheduler and operator API."""

from __future__ import annotations

import asyncio
import signal
import sys
from dataclasses import dataclass

import structlog
import uvicorn

from arbcheck.api.operator import create_app
from arbcheck.config.settings import Settings, load_settings
from arbcheck.connectors import ExchangeRestClient, GraphQLLedgerClient
from arbcheck.errors import ConfigurationError
from arbcheck.gateways import (
    GatewayGuard,
    NotificationPublisher,
    RateLimiter,
    ResilientExchange,
    ResilientLedger,
    RetryPolicy,
)
from arbcheck.monitoring import Metrics, configure_logging
from arbcheck.notifications import FanoutPublisher, JsonlOutboxPublisher, WebhookPublisher
from arbcheck.reconcile import ReconciliationEngine, RuntimeControl, Scheduler

log = structlog.get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    control: RuntimeControl
    engine: ReconciliationEngine
    scheduler: Scheduler
    exchange_client: ExchangeRestClient
    ledger_client: GraphQLLedgerClient
    publisher: FanoutPublisher

    async def close(self) -> None:
        await self.exchange_client.close()
        await self.ledger_client.close()
        await self.publisher.close()


def build_publisher(settings: Settings) -> FanoutPublisher:
    publishers: list[NotificationPublisher] = []
    if settings.notifications.outbox_path:
        publishers.append(JsonlOutboxPublisher(settings.notifications.outbox_path))
    if settings.notifications.webhook_urls:
        publishers.append(
            WebhookPublisher(
                settings.notifications.webhook_urls,
                timeout_sec=settings.notifications.webhook_timeout_sec,
            )
        )
    return FanoutPublisher(publishers)


def build_runtime(settings: Settings, metrics: Metrics | None = None) -> Runtime:
    """Construct every dependency once; failures here are fatal."""
    policy = RetryPolicy.from_config(settings.retry)
    ledger_guard = GatewayGuard(
        "ledger",
        RateLimiter(
            max_concurrent=settings.ledger.limiter.max_concurrent,
            min_interval_ms=settings.ledger.limiter.min_interval_ms,
            name="ledger",
        ),
        policy,
    )
    exchange_guard = GatewayGuard(
        "exchange",
        RateLimiter(
            max_concurrent=settings.exchange.limiter.max_concurrent,
            min_interval_ms=settings.exchange.limiter.min_interval_ms,
            name="exchange",
        ),
        policy,
    )
    exchange_client = ExchangeRestClient(settings)
    ledger_client = GraphQLLedgerClient(settings)

    publisher = build_publisher(settings)
    control = RuntimeControl(enabled=settings.app.enabled)
    engine = ReconciliationEngine(
        ledger=ResilientLedger(ledger_client, ledger_guard),
        exchange=ResilientExchange(exchange_client, exchange_guard),
        publisher=publisher,
        config=settings.app,
        notify_topic=settings.notifications.notify_topic,
        confirm_topic=settings.notifications.confirm_topic,
    )
    scheduler = Scheduler(
        engine,
        control,
        check_interval_ms=settings.app.check_interval_ms,
        disabled_poll_ms=settings.app.disabled_poll_ms,
    )
    if metrics is not None:
        ledger_guard.set_metrics(metrics)
        exchange_guard.set_metrics(metrics)
        engine.set_metrics(metrics)
        scheduler.set_metrics(metrics)
    return Runtime(
        settings, control, engine, scheduler, exchange_client, ledger_client, publisher
    )


async def main_async(config_path: str | None = None) -> int:
    try:
        settings = load_settings(config_path)
    except ConfigurationError as exc:
        configure_logging()
        log.error("settings_invalid", errors=exc.errors)
        return 2
    configure_logging(
        settings.monitoring.log_level,
        settings.monitoring.logs_path,
        settings.monitoring,
        service=settings.app.name,
    )
    errors = settings.validate_for_run()
    if errors:
        log.error("settings_validation_failed", errors=errors)
        return 2

    metrics = Metrics()
    if settings.monitoring.metrics_enabled:
        try:
            metrics.start(settings.monitoring.metrics_port)
        except OSError as exc:
            log.warning("metrics_start_failed", error=str(exc))

    runtime = build_runtime(settings, metrics)
    log.info(
        "runtime_config",
        name=settings.app.name,
        enabled=settings.app.enabled,
        check_interval_ms=settings.app.check_interval_ms,
        history_size=settings.app.history_size,
        take_profit=settings.app.take_profit,
        stop_loss=settings.app.stop_loss,
    )

    server: uvicorn.Server | None = None
    if settings.monitoring.api_enabled:
        server = uvicorn.Server(
            uvicorn.Config(
                create_app(settings, runtime.control, runtime.scheduler),
                host=settings.monitoring.api_host,
                port=settings.monitoring.api_port,
                log_level="warning",
            )
        )

    def _shutdown() -> None:
        log.info("shutdown_requested")
        runtime.scheduler.stop()
        if server is not None:
            server.should_exit = True

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _shutdown)
        except NotImplementedError:
            pass

    async def api_server() -> None:
        if server is None:
            return
        try:
            await server.serve()
        except (Exception, SystemExit) as exc:
            # uvicorn exits the process on bind failure; keep reconciling without the API.
            log.warning("api_server_failed", error=str(exc))
            return
        # uvicorn captures SIGINT/SIGTERM while serving; a clean exit means shutdown.
        runtime.scheduler.stop()

    try:
        await asyncio.gather(runtime.scheduler.run_forever(), api_server())
    finally:
        await runtime.close()
    return 0


def main() -> None:
    config_path = sys.argv[1] if len(sys.argv) > 1 else None
    sys.exit(asyncio.run(main_async(config_path)))


if __name__ == "__main__":
    main()
