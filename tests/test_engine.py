from datetime import timedelta

import pytest

from arbcheck.config.settings import AppConfig
from arbcheck.errors import GatewayError, RejectedQuoteError, TransientIOError
from arbcheck.gateways import GatewayGuard, RateLimiter, ResilientLedger, RetryPolicy
from arbcheck.models import TradeStatus
from arbcheck.monitoring.metrics import Metrics
from arbcheck.reconcile.engine import ReconciliationEngine, group_siblings

from helpers import (
    NOW,
    T0,
    FakeExchange,
    FakeLedger,
    RecordingPublisher,
    executed,
    make_trade,
    no_sleep,
)


def build_engine(ledger, exchange, publisher=None, **config) -> ReconciliationEngine:
    return ReconciliationEngine(
        ledger=ledger,
        exchange=exchange,
        publisher=publisher or RecordingPublisher(),
        config=AppConfig(**config),
        clock=lambda: NOW,
    )


def pending_trade(trade_id: int, **kwargs):
    return make_trade(trade_id, open_expires_at=NOW + timedelta(seconds=5), **kwargs)


class FailingPublisher:
    async def publish(self, topic, payload) -> None:
        raise ConnectionError("webhook down")


@pytest.mark.asyncio
async def test_closed_trade_confirms_both_offers_and_notifies() -> None:
    open_at = T0 + timedelta(seconds=3)
    close_at = T0 + timedelta(seconds=8)
    ledger = FakeLedger([make_trade(1)])
    exchange = FakeExchange([executed("close-1", close_at), executed("open-1", open_at)])
    publisher = RecordingPublisher()

    report = await build_engine(ledger, exchange, publisher).run_cycle()

    assert report.outcomes == {"closed": 1}
    assert [o.confirmed_at for o in ledger.offer_updates] == [open_at, close_at]
    [update] = ledger.updates_for(1)
    assert update.status == TradeStatus.CLOSED
    assert update.checked_at == NOW
    assert publisher.events() == [("trade-closed", 1)]
    assert exchange.quote_calls == []


@pytest.mark.asyncio
async def test_missed_trade_is_removed_without_notification() -> None:
    trade = make_trade(1, open_expires_at=NOW - timedelta(seconds=60) - timedelta(milliseconds=1))
    ledger = FakeLedger([trade])
    publisher = RecordingPublisher()

    report = await build_engine(ledger, FakeExchange(), publisher).run_cycle()

    assert report.outcomes == {"missed": 1}
    assert ledger.removed == [1]
    assert ledger.trade_updates == []
    assert publisher.messages == []


@pytest.mark.asyncio
async def test_trade_inside_remove_window_is_only_touched() -> None:
    trade = make_trade(1, open_expires_at=NOW - timedelta(seconds=60) + timedelta(milliseconds=1))
    ledger = FakeLedger([trade])

    report = await build_engine(ledger, FakeExchange()).run_cycle()

    assert report.outcomes == {"pending": 1}
    assert ledger.removed == []
    [update] = ledger.updates_for(1)
    assert update.status == TradeStatus.OPEN
    assert update.checked_at == NOW


@pytest.mark.asyncio
async def test_broken_trade_is_marked_notified_and_requoted() -> None:
    ledger = FakeLedger([make_trade(1)])
    exchange = FakeExchange([executed("open-1")], quote_price=101.0)
    publisher = RecordingPublisher()

    report = await build_engine(ledger, exchange, publisher).run_cycle()

    assert report.outcomes == {"broken": 1}
    assert report.close_requests == 1
    assert exchange.quote_calls == [("BTC", 1.0, "sell")]
    first, last = ledger.updates_for(1)
    assert first.status == TradeStatus.BROKEN
    assert last.close_offer.offer_id == "quote-1"
    assert last.close_offer.id == 12
    assert last.has_siblings is False
    open_update, close_update = ledger.offer_updates
    assert open_update.offer_id == "open-1"
    assert open_update.confirmed_at == T0 + timedelta(seconds=5)
    assert close_update.offer_id == "quote-1"
    assert publisher.events() == [("trade-broken", 1)]
    [confirm] = publisher.confirms()
    assert [o["offerId"] for o in confirm["offers"]] == ["quote-1"]


@pytest.mark.asyncio
async def test_already_broken_trade_is_not_notified_again() -> None:
    ledger = FakeLedger([make_trade(1, status=TradeStatus.BROKEN)])
    exchange = FakeExchange([executed("open-1")])
    publisher = RecordingPublisher()

    await build_engine(ledger, exchange, publisher).run_cycle()

    assert publisher.events() == []
    assert len(exchange.quote_calls) == 1
    [update] = ledger.updates_for(1)
    assert update.status == TradeStatus.BROKEN
    assert update.close_offer.offer_id == "quote-1"


@pytest.mark.asyncio
async def test_broken_trade_with_live_replacement_is_left_alone() -> None:
    trade = make_trade(1, status=TradeStatus.BROKEN, close_expires_at=NOW + timedelta(seconds=10))
    ledger = FakeLedger([trade])
    exchange = FakeExchange([executed("open-1")])

    report = await build_engine(ledger, exchange).run_cycle()

    assert report.outcomes == {"pending": 1}
    assert exchange.quote_calls == []


@pytest.mark.asyncio
async def test_siblings_share_one_aggregated_quote() -> None:
    ledger = FakeLedger(
        [
            make_trade(1, base_amount=3.0, quote_amount=300.0),
            make_trade(2, base_amount=7.0, quote_amount=700.0),
        ]
    )
    exchange = FakeExchange([executed("open-1"), executed("open-2")], quote_price=100.0)
    publisher = RecordingPublisher()

    report = await build_engine(ledger, exchange, publisher).run_cycle()

    assert report.close_requests == 1
    assert exchange.quote_calls == [("BTC", 10.0, "sell")]
    for trade_id in (1, 2):
        last = ledger.updates_for(trade_id)[-1]
        assert last.has_siblings is True
        assert last.close_offer.offer_id == "quote-1"
        assert last.close_offer.base_amount == 10.0
    assert len(publisher.confirms()) == 1
    assert sorted(publisher.events()) == [("trade-broken", 1), ("trade-broken", 2)]


def test_sibling_break_even_is_weighted() -> None:
    [group] = group_siblings(
        [
            make_trade(1, base_amount=3.0, quote_amount=300.0),
            make_trade(2, base_amount=7.0, quote_amount=700.0),
        ]
    )

    assert group.total_base_amount == 10.0
    assert group.break_even_price == pytest.approx(100.0)


def test_siblings_grouped_by_base_and_close_side() -> None:
    groups = group_siblings(
        [
            make_trade(1, base="BTC"),
            make_trade(2, base="ETH"),
            make_trade(3, base="BTC", open_side="sell"),
            make_trade(4, base="BTC"),
        ]
    )

    assert [(g.base, g.close_side, [t.id for t in g.trades]) for g in groups] == [
        ("BTC", "sell", [1, 4]),
        ("ETH", "sell", [2]),
        ("BTC", "buy", [3]),
    ]


@pytest.mark.asyncio
async def test_unfavorable_quote_defers_close() -> None:
    ledger = FakeLedger([make_trade(1)])
    exchange = FakeExchange([executed("open-1")], quote_price=99.0)
    publisher = RecordingPublisher()

    report = await build_engine(ledger, exchange, publisher).run_cycle()

    assert report.close_requests == 1
    assert report.failures == 0
    assert [o.offer_id for o in ledger.offer_updates] == ["open-1"]
    assert [u.status for u in ledger.updates_for(1)] == [TradeStatus.BROKEN]
    assert publisher.confirms() == []


@pytest.mark.asyncio
async def test_stop_loss_accepts_bounded_loss() -> None:
    ledger = FakeLedger([make_trade(1)])
    exchange = FakeExchange([executed("open-1")], quote_price=99.0)

    await build_engine(ledger, exchange, stop_loss=2.0).run_cycle()

    assert [o.offer_id for o in ledger.offer_updates] == ["open-1", "quote-1"]


@pytest.mark.asyncio
async def test_buy_close_accepts_lower_price() -> None:
    ledger = FakeLedger([make_trade(1, open_side="sell")])
    exchange = FakeExchange([executed("open-1")], quote_price=99.0)

    await build_engine(ledger, exchange).run_cycle()

    assert exchange.quote_calls == [("BTC", 1.0, "buy")]
    assert ledger.updates_for(1)[-1].close_offer.offer_id == "quote-1"


@pytest.mark.asyncio
async def test_missing_close_offer_is_created() -> None:
    ledger = FakeLedger([make_trade(1, with_close=False)])
    exchange = FakeExchange([executed("open-1")])

    await build_engine(ledger, exchange).run_cycle()

    [created] = ledger.created_offers
    assert created.offer_id == "quote-1"
    last = ledger.updates_for(1)[-1]
    assert last.close_offer.id == created.id


@pytest.mark.asyncio
async def test_rejected_quote_is_not_a_failure() -> None:
    ledger = FakeLedger([make_trade(1)])
    exchange = FakeExchange(
        [executed("open-1")], quote_error=RejectedQuoteError("quote", "amount too small")
    )

    report = await build_engine(ledger, exchange).run_cycle()

    assert report.failures == 0
    assert report.close_requests == 0
    assert [u.status for u in ledger.updates_for(1)] == [TradeStatus.BROKEN]


@pytest.mark.asyncio
async def test_failing_trade_does_not_block_others() -> None:
    inner = FakeLedger([pending_trade(1), pending_trade(2)])
    inner.fail("update_trade", 1)
    guard = GatewayGuard(
        "ledger",
        RateLimiter(),
        RetryPolicy(max_attempts=3, base_delay_ms=0, max_delay_ms=0),
        sleep=no_sleep,
    )

    report = await build_engine(ResilientLedger(inner, guard), FakeExchange()).run_cycle()

    assert report.failures == 1
    assert inner.calls.count("update_trade") == 4
    assert guard.retries == 2
    assert [t.id for t in inner.trade_updates] == [2]


@pytest.mark.asyncio
async def test_ledger_outage_aborts_cycle() -> None:
    ledger = FakeLedger()
    ledger.list_error = GatewayError("list_pending_trades", "HTTP 400")
    exchange = FakeExchange()

    report = await build_engine(ledger, exchange).run_cycle()

    assert report.aborted == "list_pending_trades"
    assert exchange.history_limits == []


@pytest.mark.asyncio
async def test_history_outage_aborts_cycle() -> None:
    ledger = FakeLedger([pending_trade(1)])
    exchange = FakeExchange()
    exchange.history_error = TransientIOError("recent_trades", "timeout")

    report = await build_engine(ledger, exchange).run_cycle()

    assert report.aborted == "recent_trades"
    assert ledger.trade_updates == []


@pytest.mark.asyncio
async def test_no_pending_trades_skips_history() -> None:
    exchange = FakeExchange()

    report = await build_engine(FakeLedger(), exchange).run_cycle()

    assert report.processed == 0
    assert report.aborted is None
    assert exchange.history_limits == []


@pytest.mark.asyncio
async def test_history_size_is_requested() -> None:
    exchange = FakeExchange()

    await build_engine(FakeLedger([pending_trade(1)]), exchange, history_size=25).run_cycle()

    assert exchange.history_limits == [25]


@pytest.mark.asyncio
async def test_publisher_failure_does_not_undo_close() -> None:
    ledger = FakeLedger([make_trade(1)])
    exchange = FakeExchange([executed("open-1"), executed("close-1")])

    report = await build_engine(ledger, exchange, FailingPublisher()).run_cycle()

    assert report.failures == 0
    assert ledger.updates_for(1)[-1].status == TradeStatus.CLOSED


@pytest.mark.asyncio
async def test_cycle_metrics_recorded() -> None:
    metrics = Metrics()
    ledger = FakeLedger([make_trade(1), pending_trade(2)])
    engine = build_engine(ledger, FakeExchange([executed("open-1"), executed("close-1")]))
    engine.set_metrics(metrics)

    await engine.run_cycle()

    def sample(name, **labels):
        return metrics.registry.get_sample_value(name, labels)

    assert sample("reconciliation_pending_trades") == 2
    assert sample("reconciliation_trade_outcomes_total", outcome="closed") == 1
    assert sample("reconciliation_trade_outcomes_total", outcome="pending") == 1
    assert sample("reconciliation_cycle_latency_ms_count") == 1


@pytest.mark.asyncio
async def test_broken_trade_outside_history_is_kept_and_requoted() -> None:
    trade = make_trade(1, status=TradeStatus.BROKEN)
    ledger = FakeLedger([trade])
    exchange = FakeExchange([])

    report = await build_engine(ledger, exchange).run_cycle()

    assert report.outcomes == {"broken": 1}
    assert ledger.removed == []
    assert exchange.quote_calls == [("BTC", 1.0, "sell")]
    assert ledger.updates_for(1)[-1].status == TradeStatus.BROKEN


@pytest.mark.asyncio
async def test_broken_trade_closes_from_close_fill_alone() -> None:
    close_at = NOW - timedelta(seconds=1)
    trade = make_trade(1, status=TradeStatus.BROKEN)
    trade.open_offer.confirmed_at = T0 + timedelta(seconds=2)
    ledger = FakeLedger([trade])
    exchange = FakeExchange([executed("close-1", close_at)])
    publisher = RecordingPublisher()

    report = await build_engine(ledger, exchange, publisher).run_cycle()

    assert report.outcomes == {"closed": 1}
    [close_update] = ledger.offer_updates
    assert close_update.offer_id == "close-1"
    assert close_update.confirmed_at == close_at
    [update] = ledger.updates_for(1)
    assert update.status == TradeStatus.CLOSED
    assert update.open_offer.confirmed_at == T0 + timedelta(seconds=2)
    assert publisher.events() == [("trade-closed", 1)]


@pytest.mark.asyncio
async def test_status_only_moves_forward_across_cycles() -> None:
    ledger = FakeLedger([make_trade(1)])
    exchange = FakeExchange([executed("open-1")])
    engine = build_engine(ledger, exchange)

    first = await engine.run_cycle()
    ledger.trades = [ledger.updates_for(1)[-1]]
    exchange.history = []
    second = await engine.run_cycle()
    ledger.trades = [ledger.updates_for(1)[-1]]
    exchange.history = [executed("quote-1", NOW)]
    third = await engine.run_cycle()

    assert first.outcomes == {"broken": 1}
    assert second.outcomes == {"pending": 1}
    assert third.outcomes == {"closed": 1}
    assert ledger.removed == []
    assert [u.status for u in ledger.updates_for(1)] == [
        TradeStatus.BROKEN,
        TradeStatus.BROKEN,
        TradeStatus.BROKEN,
        TradeStatus.CLOSED,
    ]
