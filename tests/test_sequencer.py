from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from hl_toolkit.exec.pricing import PricingEngine
from hl_toolkit.exec.sequencer import ExecutionSequencer
from hl_toolkit.journal.store import JournalStore
from hl_toolkit.market.registry import SPOT_INDEX_OFFSET
from hl_toolkit.types import (
    AccountBalance,
    BookLevel,
    CancelRequest,
    CloseIntent,
    Grouping,
    LimitSpec,
    Market,
    OpenOrder,
    OrderBook,
    OrderIntent,
    Position,
    TimeInForce,
    TriggerRole,
    TriggerSpec,
)


def _btc_position(size: float = 2.0, side: str = "long", pnl: float = 12.5) -> Position:
    return Position(
        coin="BTC",
        side=side,  # type: ignore[arg-type]
        size=size,
        entry_price=100.0,
        current_price=100.5,
        leverage=5.0,
        unrealized_pnl=pnl,
    )


@pytest.mark.asyncio
async def test_perp_open_places_entry_then_stop_then_target(gateway, sequencer) -> None:
    intent = OrderIntent(
        symbol="btc",
        side="long",
        size_usd=201,
        leverage=5,
        stop_loss_percent=2,
        take_profit_price=110,
    )
    result = await sequencer.open_position(intent)

    assert result.success
    assert result.state == "complete"
    assert result.warnings == []
    assert gateway.names() == [
        "get_positions",
        "get_account_balance",
        "get_universe_metadata",
        "get_top_of_book",
        "set_leverage",
        "submit_order",
        "submit_order",
        "submit_order",
    ]
    assert gateway.calls[4] == ("set_leverage", (0, 5, True))

    entry, stop, target = gateway.orders()
    assert entry == (0, True, "102.01", "2", False, LimitSpec(tif=TimeInForce.IOC), Grouping.NONE)
    assert stop == (
        0,
        False,
        "98.49",
        "2",
        True,
        TriggerSpec(trigger_price="98.49", is_market=True, role=TriggerRole.STOP_LOSS),
        Grouping.POSITION_LINKED,
    )
    assert target[2] == "110"
    assert target[5].role == TriggerRole.TAKE_PROFIT
    assert [leg.leg for leg in result.legs] == ["entry", "stop_loss", "take_profit"]
    assert result.order_id == result.legs[0].outcome.order_id
    assert not result.partial


@pytest.mark.asyncio
async def test_short_percent_triggers_mirror_long(gateway, sequencer) -> None:
    intent = OrderIntent(
        symbol="BTC",
        side="short",
        size_coin=1,
        leverage=2,
        stop_loss_percent=10,
        take_profit_percent=10,
    )
    result = await sequencer.open_position(intent)
    assert result.success
    entry, stop, target = gateway.orders()
    assert entry[1] is False
    assert entry[2] == "99"
    # reference is the mid, 100.5
    assert stop[2] == "110.55"
    assert target[2] == "90.45"
    assert stop[1] is True and target[1] is True


@pytest.mark.asyncio
async def test_limit_order_uses_limit_price_without_book(gateway, sequencer) -> None:
    gateway.order_responses.append(gateway.resting(42))
    intent = OrderIntent(
        symbol="ETH",
        side="short",
        size_coin=0.5,
        order_type="limit",
        limit_price=2600.5,
    )
    result = await sequencer.open_position(intent)

    assert result.success
    assert result.order_id == 42
    assert result.data["status"] == "resting"
    assert "get_top_of_book" not in gateway.names()
    (entry,) = gateway.orders()
    assert entry[:5] == (1, False, "2600.5", "0.5", False)
    assert entry[5] == LimitSpec(tif=TimeInForce.GTC)
    assert gateway.calls[-2] == ("set_leverage", (1, 1, True))


@pytest.mark.asyncio
async def test_spot_skips_leverage_risk_and_triggers(gateway, sequencer) -> None:
    intent = OrderIntent(
        symbol="PURR/USDC",
        side="buy",
        market=Market.SPOT,
        size_coin=10.7,
        leverage=3,
        stop_loss_percent=5,
    )
    result = await sequencer.open_position(intent)

    assert result.success
    assert result.warnings == [
        "Stop-loss/take-profit not supported for spot orders",
        "Leverage not supported for spot orders",
    ]
    assert gateway.names() == ["get_universe_metadata", "get_top_of_book", "submit_order"]
    (entry,) = gateway.orders()
    assert entry[0] == SPOT_INDEX_OFFSET
    assert entry[3] == "10"


@pytest.mark.asyncio
async def test_failed_stop_leg_returns_partial_success(gateway, sequencer) -> None:
    gateway.order_responses.extend(
        [gateway.filled(7), gateway.error("Invalid TP/SL price")]
    )
    intent = OrderIntent(
        symbol="BTC",
        side="long",
        size_usd=201,
        leverage=5,
        stop_loss_price=95,
        take_profit_price=110,
    )
    result = await sequencer.open_position(intent)

    assert result.success
    assert result.partial
    assert result.order_id == 7
    assert result.state == "entry_submitted"
    assert len(gateway.orders()) == 2
    assert result.warnings == [
        "Entry order 7 accepted but stop-loss placement failed: "
        "Invalid TP/SL price. Position is not protected"
    ]


@pytest.mark.asyncio
async def test_rejected_entry_is_failure(gateway, sequencer) -> None:
    gateway.order_responses.append(gateway.error("Insufficient margin to place order."))
    result = await sequencer.open_position(
        OrderIntent(symbol="BTC", side="long", size_usd=201, leverage=2, stop_loss_percent=1)
    )
    assert not result.success
    assert result.error == "Order failed: Insufficient margin to place order."
    assert result.error_code == "order_rejected"
    assert result.data["failed_at"] == "entry_submitted"
    assert len(gateway.orders()) == 1


@pytest.mark.asyncio
async def test_risk_denial_makes_no_order_side_calls(gateway, sequencer) -> None:
    result = await sequencer.open_position(
        OrderIntent(symbol="BTC", side="long", size_usd=201, leverage=20)
    )
    assert not result.success
    assert result.error_code == "risk_denied"
    assert result.error == "Risk check failed: Leverage 20x exceeds maximum 10x"
    assert result.data["failed_at"] == "validated"
    # a USD-sized request is denied before the instrument is resolved
    assert gateway.names() == ["get_positions", "get_account_balance"]


@pytest.mark.asyncio
async def test_fractional_leverage_is_rejected(gateway, sequencer) -> None:
    gateway.balance = AccountBalance(
        account_value=1_000.0, available_balance=1_000.0, margin_used=0.0, withdrawable=1_000.0
    )
    result = await sequencer.open_position(
        OrderIntent(symbol="BTC", side="long", size_usd=1_700, leverage=1.9)
    )
    assert not result.success
    assert result.error_code == "invalid_amount"
    assert "whole number" in (result.error or "")
    assert gateway.names() == []


@pytest.mark.asyncio
async def test_whole_float_leverage_is_sent_as_int(gateway, sequencer) -> None:
    result = await sequencer.open_position(
        OrderIntent(symbol="BTC", side="long", size_usd=201, leverage=3.0)
    )
    assert result.success
    (call,) = [args for name, args in gateway.calls if name == "set_leverage"]
    assert call == (0, 3, True)
    assert isinstance(call[1], int)


@pytest.mark.asyncio
async def test_preview_walks_depth_without_order_side_calls(gateway, sequencer) -> None:
    gateway.depth["BTC"] = OrderBook(
        coin="BTC",
        bids=[BookLevel(price=Decimal("100"), size=Decimal("5"))],
        asks=[
            BookLevel(price=Decimal("101"), size=Decimal("1")),
            BookLevel(price=Decimal("102"), size=Decimal("10")),
        ],
    )
    result = await sequencer.preview_open(
        OrderIntent(symbol="BTC", side="long", size_usd=305, leverage=5)
    )

    assert result.success
    assert result.data["executed"] is False
    simulation = result.data["simulation"]
    # 101 from the first level, 204 (2 coins) from the second
    assert simulation["levels_consumed"] == 2
    assert simulation["size"] == pytest.approx(3.0)
    assert simulation["estimated_fill_price"] == pytest.approx(305 / 3)
    assert simulation["estimated_fees"] == pytest.approx(305 * 0.0005)
    assert simulation["estimated_liquidation_price"] == pytest.approx(305 / 3 * (1 - 0.2 - 0.03))
    for name in ("set_leverage", "submit_order"):
        assert name not in gateway.names()


@pytest.mark.asyncio
async def test_preview_reports_risk_denial(gateway, sequencer) -> None:
    result = await sequencer.preview_open(
        OrderIntent(symbol="BTC", side="long", size_usd=20_000, leverage=2)
    )
    assert not result.success
    assert result.error_code == "risk_denied"
    assert "get_order_book" not in gateway.names()


@pytest.mark.asyncio
async def test_coin_size_is_priced_for_risk(gateway, sequencer) -> None:
    result = await sequencer.open_position(
        OrderIntent(symbol="BTC", side="long", size_coin=200, leverage=2)
    )
    assert result.error == (
        "Risk check failed: Position size $20100.00 exceeds maximum $10000.00"
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("overrides", "code"),
    [
        ({"side": "up"}, "invalid_intent"),
        ({"size_usd": None}, "invalid_intent"),
        ({"size_coin": 1.0}, "invalid_intent"),
        ({"order_type": "limit"}, "invalid_intent"),
        ({"market": "options"}, "invalid_intent"),
        ({"size_usd": -5}, "invalid_amount"),
        ({"leverage": 0.5}, "invalid_amount"),
        ({"stop_loss_percent": 100}, "invalid_amount"),
        ({"slippage_percent": 150}, "invalid_amount"),
        ({"symbol": "DOGE"}, "unknown_instrument"),
        ({"size_usd": None, "size_coin": 0.0004}, "size_too_small"),
    ],
)
async def test_invalid_requests_fail_without_orders(gateway, sequencer, overrides, code) -> None:
    fields = {"symbol": "BTC", "side": "long", "size_usd": 201.0, **overrides}
    result = await sequencer.open_position(OrderIntent(**fields))
    assert not result.success
    assert result.error_code == code
    assert result.state == "failed"
    assert "submit_order" not in gateway.names()


@pytest.mark.asyncio
async def test_gateway_exception_becomes_failure(gateway, sequencer) -> None:
    gateway.order_responses.append(RuntimeError("socket closed"))
    result = await sequencer.open_position(
        OrderIntent(symbol="BTC", side="long", size_usd=201, leverage=2)
    )
    assert not result.success
    assert result.error_code == "gateway_failure"
    assert result.error == "submit_order failed: socket closed"


@pytest.mark.asyncio
async def test_full_close_records_realized_pnl(gateway, sequencer, risk_gate) -> None:
    gateway.positions = [_btc_position()]
    result = await sequencer.close_position(CloseIntent(symbol="btc"))

    assert result.success
    (order,) = gateway.orders()
    assert order[:5] == (0, False, "99", "2", True)
    assert order[5] == LimitSpec(tif=TimeInForce.IOC)
    assert result.data["realized_pnl"] == 12.5
    assert risk_gate.get_daily_pnl() == 12.5


@pytest.mark.asyncio
async def test_partial_close_rounds_down_and_skips_pnl(gateway, sequencer, risk_gate) -> None:
    gateway.positions = [_btc_position(size=0.005, side="short")]
    result = await sequencer.close_position(CloseIntent(symbol="BTC", percent=50))

    assert result.success
    (order,) = gateway.orders()
    assert order[1] is True
    assert order[3] == "0.002"
    assert result.data["realized_pnl"] is None
    assert risk_gate.get_daily_pnl() == 0


@pytest.mark.asyncio
async def test_close_without_position(gateway, sequencer) -> None:
    result = await sequencer.close_position(CloseIntent(symbol="ETH"))
    assert not result.success
    assert result.error_code == "no_open_position"
    assert result.error == "No open position found for ETH"


@pytest.mark.asyncio
async def test_close_percent_validated(gateway, sequencer) -> None:
    result = await sequencer.close_position(CloseIntent(symbol="BTC", percent=0))
    assert result.error_code == "invalid_amount"
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_cancel_filters_by_coin(gateway, sequencer) -> None:
    gateway.open_orders = [
        OpenOrder(coin="BTC", order_id=11),
        OpenOrder(coin="PURR/USDC", order_id=12),
        OpenOrder(coin="ETH", order_id=13),
    ]
    result = await sequencer.cancel_orders("btc")
    assert result.success
    assert result.data == {"cancelled": 1}
    assert gateway.calls[-1] == ("cancel_orders", ([CancelRequest(asset_index=0, order_id=11)],))

    result = await sequencer.cancel_orders()
    assert result.data == {"cancelled": 3}
    requests = gateway.calls[-1][1][0]
    assert [r.asset_index for r in requests] == [0, SPOT_INDEX_OFFSET, 1]


@pytest.mark.asyncio
async def test_cancel_with_nothing_open(gateway, sequencer) -> None:
    result = await sequencer.cancel_orders()
    assert result.success
    assert result.data == {"cancelled": 0}
    assert "cancel_orders" not in gateway.names()


@pytest.mark.asyncio
async def test_same_instrument_runs_are_serialized(gateway, registry) -> None:
    sequencer = ExecutionSequencer(gateway, registry, PricingEngine(gateway))
    intent = OrderIntent(symbol="BTC", side="long", size_usd=201, leverage=2)

    first, second = await asyncio.gather(
        sequencer.open_position(intent),
        sequencer.open_position(intent),
    )

    assert first.success and second.success
    assert gateway.names() == [
        "get_universe_metadata",
        "get_top_of_book",
        "set_leverage",
        "submit_order",
        "get_top_of_book",
        "set_leverage",
        "submit_order",
    ]


@pytest.mark.asyncio
async def test_runs_are_journaled(gateway, registry, risk_gate, tmp_path) -> None:
    journal = JournalStore(tmp_path)
    sequencer = ExecutionSequencer(
        gateway, registry, PricingEngine(gateway), risk_gate=risk_gate, journal=journal
    )
    await sequencer.open_position(OrderIntent(symbol="BTC", side="long", size_usd=201, leverage=2))
    await sequencer.close_position(CloseIntent(symbol="ETH"))

    events = [row["event_type"] for row in journal.load_recent(10)]
    assert events == ["risk_check", "open", "error"]
    assert journal.load_recent(1, event_type="open")[0]["payload"]["success"] is True
