"""Multi-leg order sequencing for opening and closing positions.

One open request walks an explicit state machine::

    VALIDATED -> RESOLVED -> RISK_CHECKED -> LEVERAGE_SET (perp)
      -> ENTRY_SUBMITTED -> STOP_PLACED? -> TAKE_PROFIT_PLACED? -> COMPLETE

The first failure stops the run. Legs already accepted by the exchange are
not rolled back: when the entry went through but a stop-loss or take-profit
leg did not, the result is a success carrying a warning and the failed leg
so the caller can protect the position by hand.
"""

from __future__ import annotations

import asyncio
import math
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum

from hl_toolkit.errors import (
    InvalidAmount,
    InvalidIntent,
    NoOpenPosition,
    RiskDenied,
    ToolkitError,
)
from hl_toolkit.exec.normalizer import ResponseNormalizer
from hl_toolkit.exec.preview import PositionSimulator
from hl_toolkit.exec.pricing import PricingEngine, format_price, truncate_significant
from hl_toolkit.exec.sizing import OrderSizer, Rounding, SizeBasis, to_decimal
from hl_toolkit.gateway.base import ExchangeGateway, guarded
from hl_toolkit.journal.store import JournalStore
from hl_toolkit.market.registry import AssetRegistry
from hl_toolkit.risk.rules import RiskGate
from hl_toolkit.types import (
    AssetInfo,
    CancelRequest,
    CloseIntent,
    ExecutionOutcome,
    Grouping,
    InstrumentRef,
    LegResult,
    LimitSpec,
    Market,
    OrderIntent,
    Position,
    ResolvedOrder,
    TimeInForce,
    TopOfBook,
    TradeResult,
    TriggerRole,
    TriggerSpec,
)
from hl_toolkit.utils.logging import get_logger, log_order_execution

_VALID_SIDES = {"long", "short", "buy", "sell"}


class ExecutionState(str, Enum):
    VALIDATED = "validated"
    RESOLVED = "resolved"
    RISK_CHECKED = "risk_checked"
    LEVERAGE_SET = "leverage_set"
    ENTRY_SUBMITTED = "entry_submitted"
    STOP_PLACED = "stop_placed"
    TAKE_PROFIT_PLACED = "take_profit_placed"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(slots=True)
class _Run:
    """Mutable bookkeeping for one sequencer run."""

    action: str
    symbol: str
    state: ExecutionState = ExecutionState.VALIDATED
    warnings: list[str] = field(default_factory=list)
    legs: list[LegResult] = field(default_factory=list)

    def advance(self, state: ExecutionState) -> None:
        self.state = state


class ExecutionSequencer:
    """Turns open/close intents into ordered exchange calls.

    Runs for the same instrument are serialized by an advisory lock; runs for
    different instruments proceed concurrently.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        registry: AssetRegistry,
        pricing: PricingEngine,
        *,
        risk_gate: RiskGate | None = None,
        journal: JournalStore | None = None,
        sizer: OrderSizer | None = None,
        normalizer: ResponseNormalizer | None = None,
        simulator: PositionSimulator | None = None,
    ) -> None:
        self._gateway = gateway
        self._registry = registry
        self._pricing = pricing
        self._risk_gate = risk_gate
        self._journal = journal
        self._sizer = sizer or OrderSizer()
        self._normalizer = normalizer or ResponseNormalizer()
        self._simulator = simulator or PositionSimulator(gateway)
        self._locks: defaultdict[InstrumentRef, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._logger = get_logger("hl_toolkit.exec.sequencer")

    @property
    def gateway(self) -> ExchangeGateway:
        return self._gateway

    @property
    def risk_gate(self) -> RiskGate | None:
        return self._risk_gate

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    async def open_position(self, intent: OrderIntent) -> TradeResult:
        """Open a position with optional stop-loss and take-profit legs."""
        run = _Run(action="open", symbol=intent.symbol.strip().upper())
        try:
            instrument = intent.instrument
        except ValueError:
            instrument = None

        if instrument is None:
            result = self._failure(run, InvalidIntent(f"Invalid market: {intent.market!r}"))
        else:
            async with self._locks[instrument]:
                try:
                    result = await self._open(intent, instrument, run)
                except ToolkitError as exc:
                    result = self._failure(run, exc)

        self._record("open", result)
        return result

    async def preview_open(self, intent: OrderIntent) -> TradeResult:
        """Validate, risk-check and simulate an open without submitting anything.

        Nothing is journaled and no leverage or order call is made. A request
        the gate would deny fails here the same way ``open_position`` would.
        """
        run = _Run(action="preview", symbol=intent.symbol.strip().upper())
        try:
            instrument = intent.instrument
        except ValueError:
            return self._failure(run, InvalidIntent(f"Invalid market: {intent.market!r}"))

        try:
            asset, _, _, size = await self._prepare_open(
                intent, instrument, run, journal_risk=False
            )
            preview = await self._simulator.simulate(
                asset.pair_name,
                intent.is_buy,
                size_usd=intent.size_usd,
                size_coin=size if intent.size_usd is None else None,
                leverage=int(intent.leverage or 1) if instrument.market == Market.PERP else 1,
                market=instrument.market,
            )
        except ToolkitError as exc:
            return self._failure(run, exc)

        return self._success(
            run,
            None,
            {
                "symbol": run.symbol,
                "market": instrument.market.value,
                "size": size,
                "simulation": asdict(preview),
                "executed": False,
            },
        )

    async def _open(
        self, intent: OrderIntent, instrument: InstrumentRef, run: _Run
    ) -> TradeResult:
        asset, book, reference_price, size = await self._prepare_open(intent, instrument, run)
        is_buy = intent.is_buy

        if instrument.market == Market.PERP:
            leverage = int(intent.leverage or 1)
            await guarded(
                "set_leverage",
                self._gateway.set_leverage(asset.index, leverage, True),
            )
            run.advance(ExecutionState.LEVERAGE_SET)

        price = await self._pricing.quote(
            asset.pair_name,
            is_buy,
            "limit" if intent.is_limit else "market",
            slippage_percent=intent.slippage_percent,
            limit_price=intent.limit_price,
            book=book,
        )
        entry = ResolvedOrder(
            asset_index=asset.index,
            is_buy=is_buy,
            price=format_price(price),
            size=size,
            reduce_only=False,
            spec=LimitSpec(tif=TimeInForce.GTC if intent.is_limit else TimeInForce.IOC),
        )
        entry_leg = await self._submit(entry, "entry", run.symbol)
        run.legs.append(entry_leg)
        run.advance(ExecutionState.ENTRY_SUBMITTED)
        if not entry_leg.outcome.success:
            return self._rejected(run, entry_leg.outcome)

        order_id = entry_leg.outcome.order_id
        data = {
            "symbol": run.symbol,
            "market": instrument.market.value,
            "asset_index": asset.index,
            "side": "buy" if is_buy else "sell",
            "size": size,
            "price": entry.price,
            "status": entry_leg.outcome.status,
        }

        if instrument.market == Market.PERP:
            for role in (TriggerRole.STOP_LOSS, TriggerRole.TAKE_PROFIT):
                trigger = self._trigger_price(intent, role, reference_price)
                if trigger is None:
                    continue
                leg = await self._place_protective_leg(asset, is_buy, size, trigger, role, run)
                run.legs.append(leg)
                if not leg.outcome.success:
                    label = "stop-loss" if role == TriggerRole.STOP_LOSS else "take-profit"
                    warning = (
                        f"Entry order {order_id} accepted but {label} placement failed: "
                        f"{leg.outcome.error}. Position is not protected"
                    )
                    run.warnings.append(warning)
                    self._logger.warning(
                        "protective_leg_failed",
                        symbol=run.symbol,
                        leg=leg.leg,
                        error=leg.outcome.error,
                    )
                    return self._success(run, order_id, data)
                run.advance(
                    ExecutionState.STOP_PLACED
                    if role == TriggerRole.STOP_LOSS
                    else ExecutionState.TAKE_PROFIT_PLACED
                )

        run.advance(ExecutionState.COMPLETE)
        return self._success(run, order_id, data)

    async def _prepare_open(
        self,
        intent: OrderIntent,
        instrument: InstrumentRef,
        run: _Run,
        *,
        journal_risk: bool = True,
    ) -> tuple[AssetInfo, TopOfBook | None, Decimal, str]:
        """Validate, resolve, price and risk-check an open request.

        A USD-sized perp request is risk-checked before the instrument is
        resolved, so a denial costs only the account reads. A coin-sized one
        needs the reference price first.
        """
        self._validate_open(intent, instrument, run)
        run.advance(ExecutionState.VALIDATED)

        gated = self._risk_gate is not None and instrument.market == Market.PERP
        if gated and intent.size_usd is not None:
            await self._check_risk(intent, float(intent.size_usd), run, journal=journal_risk)

        asset = await self._registry.resolve(instrument.symbol, instrument.market)
        run.advance(ExecutionState.RESOLVED)

        book: TopOfBook | None = None
        if intent.is_limit:
            reference_price = to_decimal(intent.limit_price, what="limit price")
        else:
            book = await self._pricing.top_of_book(asset.pair_name)
            reference_price = self._pricing.mid_price(book)

        if intent.size_usd is not None:
            size = self._sizer.size(
                intent.size_usd,
                asset.size_decimals,
                SizeBasis.NOTIONAL,
                Rounding.UP,
                reference_price,
            )
        else:
            notional = to_decimal(intent.size_coin, what="size_coin") * reference_price
            size = self._sizer.size(
                intent.size_coin, asset.size_decimals, SizeBasis.BASE, Rounding.DOWN
            )
            if gated:
                await self._check_risk(intent, float(notional), run, journal=journal_risk)
        run.advance(ExecutionState.RISK_CHECKED)
        return asset, book, reference_price, size

    def _validate_open(self, intent: OrderIntent, instrument: InstrumentRef, run: _Run) -> None:
        if not instrument.symbol:
            raise InvalidIntent("symbol is required")
        if intent.side.lower() not in _VALID_SIDES:
            raise InvalidIntent(f"Invalid side: {intent.side!r}")
        if intent.order_type not in ("market", "limit"):
            raise InvalidIntent(f"Invalid order type: {intent.order_type!r}")
        if intent.order_type == "limit" and intent.limit_price is None:
            raise InvalidIntent("limit orders require limit_price")
        if intent.size_usd is None and intent.size_coin is None:
            raise InvalidIntent("Either size_usd or size_coin must be specified")
        if intent.size_usd is not None and intent.size_coin is not None:
            raise InvalidIntent("Specify only one of size_usd or size_coin")
        to_decimal(intent.size_usd if intent.size_usd is not None else intent.size_coin)
        if intent.limit_price is not None:
            to_decimal(intent.limit_price, what="limit price")
        for name in ("stop_loss_price", "take_profit_price"):
            value = getattr(intent, name)
            if value is not None:
                to_decimal(value, what=name)
        # percents that move the trigger below entry must stay under 100
        below_entry = {
            "stop_loss_percent": intent.is_buy,
            "take_profit_percent": not intent.is_buy,
        }
        for name, bounded in below_entry.items():
            value = getattr(intent, name)
            if value is None:
                continue
            if not math.isfinite(value) or value <= 0 or (bounded and value >= 100):
                raise InvalidAmount(f"{name} out of range: {value!r}")
        slippage = intent.slippage_percent
        if slippage is not None and not (math.isfinite(slippage) and 0 <= slippage < 100):
            raise InvalidAmount(f"slippage_percent must be within [0, 100), got {slippage!r}")

        if instrument.market == Market.SPOT:
            if intent.has_stop_loss or intent.has_take_profit:
                run.warnings.append("Stop-loss/take-profit not supported for spot orders")
            if intent.leverage and intent.leverage != 1:
                run.warnings.append("Leverage not supported for spot orders")
        elif intent.leverage is not None:
            if not math.isfinite(intent.leverage) or intent.leverage < 1:
                raise InvalidAmount(f"leverage must be at least 1, got {intent.leverage!r}")
            # the exchange only takes whole leverage; the margin check must see that value
            if intent.leverage != int(intent.leverage):
                raise InvalidAmount(f"leverage must be a whole number, got {intent.leverage!r}")

    async def _check_risk(
        self, intent: OrderIntent, notional: float, run: _Run, *, journal: bool = True
    ) -> None:
        positions = await guarded("get_positions", self._gateway.get_positions())
        balance = await guarded("get_account_balance", self._gateway.get_account_balance())
        check = self._risk_gate.check_open(
            intent, positions, balance.available_balance, notional=notional
        )
        run.warnings.extend(check.warnings)
        if journal and self._journal is not None:
            self._journal.append(
                "risk_check",
                {
                    "symbol": run.symbol,
                    "allowed": check.allowed,
                    "reason": check.reason,
                    "warnings": check.warnings,
                },
            )
        if not check.allowed:
            raise RiskDenied(check.reason or "denied", check.warnings)

    def _trigger_price(
        self, intent: OrderIntent, role: TriggerRole, reference_price: Decimal
    ) -> Decimal | None:
        if role == TriggerRole.STOP_LOSS:
            absolute, percent = intent.stop_loss_price, intent.stop_loss_percent
            # stops sit against the position, targets with it
            sign = -1 if intent.is_buy else 1
        else:
            absolute, percent = intent.take_profit_price, intent.take_profit_percent
            sign = 1 if intent.is_buy else -1
        if absolute:
            return truncate_significant(to_decimal(absolute, what="trigger price"))
        if percent:
            offset = Decimal(str(percent)) / 100
            return truncate_significant(reference_price * (1 + sign * offset))
        return None

    async def _place_protective_leg(
        self,
        asset: AssetInfo,
        entry_is_buy: bool,
        size: str,
        trigger: Decimal,
        role: TriggerRole,
        run: _Run,
    ) -> LegResult:
        trigger_text = format_price(trigger)
        order = ResolvedOrder(
            asset_index=asset.index,
            is_buy=not entry_is_buy,
            price=trigger_text,
            size=size,
            reduce_only=True,
            spec=TriggerSpec(trigger_price=trigger_text, is_market=True, role=role),
            grouping=Grouping.POSITION_LINKED,
        )
        leg_name = "stop_loss" if role == TriggerRole.STOP_LOSS else "take_profit"
        try:
            return await self._submit(order, leg_name, run.symbol)
        except ToolkitError as exc:
            return LegResult(
                leg=leg_name,
                outcome=ExecutionOutcome(success=False, status="error", error=str(exc)),
                price=order.price,
                size=order.size,
            )

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    async def close_position(self, intent: CloseIntent) -> TradeResult:
        """Close ``percent`` of an open perp position with a reduce-only IOC order."""
        instrument = InstrumentRef.of(intent.symbol, Market.PERP)
        run = _Run(action="close", symbol=instrument.symbol)
        async with self._locks[instrument]:
            try:
                result = await self._close(intent, instrument, run)
            except ToolkitError as exc:
                result = self._failure(run, exc)
        self._record("close", result)
        return result

    async def _close(self, intent: CloseIntent, instrument: InstrumentRef, run: _Run) -> TradeResult:
        percent = intent.percent
        if percent is None or not math.isfinite(percent) or not (0 < percent <= 100):
            raise InvalidAmount(f"close percent must be within (0, 100], got {percent!r}")
        run.advance(ExecutionState.VALIDATED)

        positions = await guarded("get_positions", self._gateway.get_positions())
        position = _find_position(positions, instrument.symbol)
        if position is None:
            raise NoOpenPosition(f"No open position found for {instrument.symbol}")

        asset = await self._registry.resolve(instrument.symbol, Market.PERP)
        run.advance(ExecutionState.RESOLVED)

        close_quantity = Decimal(str(position.size)) * Decimal(str(percent)) / 100
        size = self._sizer.size(
            close_quantity, asset.size_decimals, SizeBasis.BASE, Rounding.DOWN
        )
        is_buy = position.side == "short"
        price = await self._pricing.quote(
            asset.pair_name,
            is_buy,
            "market",
            slippage_percent=intent.slippage_percent,
        )
        order = ResolvedOrder(
            asset_index=asset.index,
            is_buy=is_buy,
            price=format_price(price),
            size=size,
            reduce_only=True,
            spec=LimitSpec(tif=TimeInForce.IOC),
        )
        leg = await self._submit(order, "close", run.symbol)
        run.legs.append(leg)
        run.advance(ExecutionState.ENTRY_SUBMITTED)
        if not leg.outcome.success:
            return self._rejected(run, leg.outcome)

        full_close = percent == 100
        if full_close and self._risk_gate is not None:
            self._risk_gate.record_trade(position.unrealized_pnl)

        run.advance(ExecutionState.COMPLETE)
        return self._success(
            run,
            leg.outcome.order_id,
            {
                "symbol": run.symbol,
                "side": "buy" if is_buy else "sell",
                "size": size,
                "price": order.price,
                "percent": percent,
                "full_close": full_close,
                "realized_pnl": position.unrealized_pnl if full_close else None,
                "status": leg.outcome.status,
            },
        )

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel_orders(self, symbol: str | None = None) -> TradeResult:
        """Cancel open orders for one coin, or all of them."""
        run = _Run(action="cancel", symbol=(symbol or "*").strip().upper())
        try:
            orders = await guarded("get_open_orders", self._gateway.get_open_orders())
            coin_filter = symbol.strip().upper() if symbol else None
            requests: list[CancelRequest] = []
            for order in orders:
                coin = order.coin.upper()
                if coin_filter and coin != coin_filter and coin.split("/")[0] != coin_filter:
                    continue
                index = await self._registry.resolve_order_asset_index(order.coin)
                requests.append(CancelRequest(asset_index=index, order_id=order.order_id))

            if requests:
                await guarded("cancel_orders", self._gateway.cancel_orders(requests))
            run.advance(ExecutionState.COMPLETE)
            result = self._success(run, None, {"cancelled": len(requests)})
        except ToolkitError as exc:
            result = self._failure(run, exc)
        self._record("cancel", result)
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _submit(self, order: ResolvedOrder, leg: str, symbol: str) -> LegResult:
        raw = await guarded(
            "submit_order",
            self._gateway.submit_order(
                order.asset_index,
                order.is_buy,
                order.price,
                order.size,
                order.reduce_only,
                order.spec,
                order.grouping,
            ),
        )
        outcome = self._normalizer.normalize(raw)
        log_order_execution(
            self._logger,
            symbol=symbol,
            side="buy" if order.is_buy else "sell",
            quantity=order.size,
            price=order.price,
            order_id=outcome.order_id,
            status=outcome.status,
            leg=leg,
            reduce_only=order.reduce_only,
            error=outcome.error,
        )
        return LegResult(leg=leg, outcome=outcome, price=order.price, size=order.size)

    def _success(self, run: _Run, order_id: int | None, data: dict[str, object]) -> TradeResult:
        return TradeResult(
            success=True,
            state=run.state.value,
            order_id=order_id,
            warnings=run.warnings,
            legs=run.legs,
            data=data,
        )

    def _rejected(self, run: _Run, outcome: ExecutionOutcome) -> TradeResult:
        failed_at = run.state
        run.advance(ExecutionState.FAILED)
        return TradeResult(
            success=False,
            state=run.state.value,
            error=f"Order failed: {outcome.error}",
            error_code="order_rejected",
            warnings=run.warnings,
            legs=run.legs,
            data={"failed_at": failed_at.value},
        )

    def _failure(self, run: _Run, exc: ToolkitError) -> TradeResult:
        failed_at = run.state
        run.advance(ExecutionState.FAILED)
        warnings = list(run.warnings)
        if isinstance(exc, RiskDenied):
            warnings.extend(w for w in exc.warnings if w not in warnings)
        self._logger.warning(
            "execution_failed",
            action=run.action,
            symbol=run.symbol,
            failed_at=failed_at.value,
            error_code=exc.code,
            error=str(exc),
        )
        return TradeResult(
            success=False,
            state=run.state.value,
            error=str(exc),
            error_code=exc.code,
            warnings=warnings,
            legs=run.legs,
            data={"failed_at": failed_at.value},
        )

    def _record(self, event_type: str, result: TradeResult) -> None:
        if self._journal is None:
            return
        payload = asdict(result)
        self._journal.append(event_type if result.success else "error", payload)


def _find_position(positions: list[Position], symbol: str) -> Position | None:
    for position in positions:
        if position.coin.upper() == symbol and position.size:
            return position
    return None
