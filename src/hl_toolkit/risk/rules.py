"""Stateful pre-trade risk gate."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Any, Callable, Iterable

from hl_toolkit.risk.config import RiskConfig
from hl_toolkit.types import OrderIntent, Position, RiskCheckResult, TradeRecord
from hl_toolkit.utils.logging import get_logger, log_risk_event

DAY_SECONDS = 24 * 60 * 60
TRADE_HISTORY_LIMIT = 1000

_DRAWDOWN_WARN_RATIO = 0.8
_MARGIN_DENY_RATIO = 0.9
_MARGIN_WARN_RATIO = 0.7


class RiskGate:
    """Rule-based pre-trade approval with rolling daily P&L.

    All state lives behind one lock; reads only mutate it through the lazy
    24h rollover of the daily window.
    """

    def __init__(
        self,
        config: RiskConfig | dict[str, Any],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if isinstance(config, dict):
            config = RiskConfig.parse_strict(config)
        self._config = config
        self._clock = clock
        self._lock = threading.Lock()
        self._daily_pnl = 0.0
        self._window_started_at = clock()
        self._trades: deque[TradeRecord] = deque(maxlen=TRADE_HISTORY_LIMIT)
        self._logger = get_logger("hl_toolkit.risk.rules")

    def check_open(
        self,
        intent: OrderIntent,
        open_positions: list[Position],
        account_balance: float,
        *,
        notional: float | None = None,
    ) -> RiskCheckResult:
        """Check whether opening ``intent`` is allowed.

        Checks run in a fixed order and the first failing one decides the
        denial reason. Warnings from checks that passed are kept.
        """
        config = self._config
        warnings: list[str] = []
        size_usd = float(notional if notional is not None else intent.size_usd or 0.0)

        if intent.leverage and intent.leverage > config.max_leverage:
            return self._deny(
                f"Leverage {intent.leverage:g}x exceeds maximum {config.max_leverage:g}x",
                warnings,
                intent,
            )

        if size_usd > config.max_position_size_usd:
            return self._deny(
                f"Position size ${size_usd:.2f} exceeds maximum "
                f"${config.max_position_size_usd:.2f}",
                warnings,
                intent,
            )

        if config.max_open_positions:
            symbol = intent.symbol.upper()
            held = {p.coin.upper() for p in open_positions}
            effective = len(held) if symbol in held else len(held) + 1
            if effective > config.max_open_positions:
                return self._deny(
                    f"Already at maximum {config.max_open_positions} open positions",
                    warnings,
                    intent,
                )

        if config.max_daily_loss:
            with self._lock:
                self._roll_window_if_needed()
                daily_loss = abs(self._daily_pnl)
            if daily_loss >= config.max_daily_loss:
                return self._deny(
                    f"Daily loss limit reached: ${daily_loss:.2f} / ${config.max_daily_loss:g}",
                    warnings,
                    intent,
                )
            projected = size_usd * config.daily_loss_projection_pct / 100.0
            if daily_loss + projected >= config.max_daily_loss:
                warnings.append(
                    f"Close to daily loss limit: ${daily_loss:.2f} / ${config.max_daily_loss:g}"
                )

        if config.max_drawdown_percent:
            unrealized = sum(p.unrealized_pnl for p in open_positions)
            drawdown_pct = _drawdown_percent(unrealized, account_balance)
            if drawdown_pct >= config.max_drawdown_percent:
                return self._deny(
                    f"Drawdown {drawdown_pct:.1f}% exceeds maximum {config.max_drawdown_percent:g}%",
                    warnings,
                    intent,
                )
            if drawdown_pct >= config.max_drawdown_percent * _DRAWDOWN_WARN_RATIO:
                warnings.append(
                    f"Close to drawdown limit: {drawdown_pct:.1f}% / {config.max_drawdown_percent:g}%"
                )

        if config.require_stop_loss and not intent.has_stop_loss:
            return self._deny("Stop-loss is required but not provided", warnings, intent)

        margin_required = size_usd / (intent.leverage or 1.0)
        if margin_required > account_balance * _MARGIN_DENY_RATIO:
            return self._deny(
                f"Insufficient margin: required ${margin_required:.2f}, "
                f"available ${account_balance:.2f}",
                warnings,
                intent,
            )
        if account_balance > 0 and margin_required > account_balance * _MARGIN_WARN_RATIO:
            warnings.append(
                f"High margin usage: {margin_required / account_balance * 100:.1f}%"
            )

        if warnings:
            log_risk_event(
                self._logger,
                event_type="open_check",
                action="allow_with_warnings",
                symbol=intent.symbol,
                warnings=warnings,
            )
        return RiskCheckResult(allowed=True, warnings=warnings)

    def record_trade(self, pnl: float) -> None:
        """Record a realized trade in the daily window and the history."""
        with self._lock:
            self._roll_window_if_needed()
            self._daily_pnl += pnl
            self._trades.append(TradeRecord(timestamp=self._clock(), pnl=float(pnl)))
        self._logger.info("trade_recorded", pnl=round(pnl, 6))

    def restore(self, records: Iterable[TradeRecord]) -> int:
        """Replay trades realized by earlier processes, keeping their timestamps.

        Only trades from the last 24h count. The daily window is rewound to
        the oldest of them so it rolls over when it would have originally.
        Returns the number of trades restored.
        """
        with self._lock:
            now = self._clock()
            recent = sorted(
                (r for r in records if 0 <= now - r.timestamp < DAY_SECONDS),
                key=lambda r: r.timestamp,
            )
            for record in recent:
                self._daily_pnl += record.pnl
                self._trades.append(record)
            if recent:
                self._window_started_at = min(self._window_started_at, recent[0].timestamp)
        if recent:
            self._logger.info(
                "trades_restored", count=len(recent), daily_pnl=round(self._daily_pnl, 6)
            )
        return len(recent)

    def get_daily_pnl(self) -> float:
        with self._lock:
            self._roll_window_if_needed()
            return self._daily_pnl

    def get_stats(self) -> dict[str, float | int]:
        """Daily P&L plus win rate and average P&L over the last 24h of trades."""
        with self._lock:
            self._roll_window_if_needed()
            now = self._clock()
            recent = [t for t in self._trades if now - t.timestamp < DAY_SECONDS]
            daily_pnl = self._daily_pnl
            history_size = len(self._trades)

        total = sum(t.pnl for t in recent)
        wins = sum(1 for t in recent if t.pnl > 0)
        count = len(recent)
        return {
            "daily_pnl": daily_pnl,
            "total_trades": count,
            "avg_pnl": total / count if count else 0.0,
            "win_rate": wins / count * 100 if count else 0.0,
            "history_size": history_size,
        }

    def trade_history(self) -> list[TradeRecord]:
        with self._lock:
            return list(self._trades)

    def get_config(self) -> RiskConfig:
        return self._config

    def update_config(self, **changes: Any) -> RiskConfig:
        """Apply changes; raises InvalidRiskConfig and keeps the prior config."""
        new_config = self._config.merged(**changes)
        self._config = new_config
        self._logger.info("risk_config_updated", changes=sorted(changes))
        return new_config

    def calculate_position_risk(self, position: Position) -> dict[str, float | None]:
        """Risk and reward amounts implied by a position's stop and target."""
        size = abs(position.size)
        position_value = abs(position.size * position.current_price)
        risk_amount = 0.0
        reward_amount = 0.0
        if position.stop_loss:
            risk_amount = size * abs(position.current_price - position.stop_loss)
        if position.take_profit:
            reward_amount = size * abs(position.take_profit - position.current_price)

        risk_percent = risk_amount / position_value * 100 if position_value > 0 else 0.0
        reward_ratio = (
            reward_amount / risk_amount if risk_amount > 0 and reward_amount > 0 else None
        )
        return {
            "risk_amount": risk_amount,
            "risk_percent": risk_percent,
            "reward_ratio": reward_ratio,
        }

    def _roll_window_if_needed(self) -> None:
        now = self._clock()
        if now - self._window_started_at >= DAY_SECONDS:
            self._daily_pnl = 0.0
            self._window_started_at = now

    def _deny(
        self, reason: str, warnings: list[str], intent: OrderIntent
    ) -> RiskCheckResult:
        log_risk_event(
            self._logger,
            event_type="open_check",
            action="deny",
            symbol=intent.symbol,
            reason=reason,
        )
        return RiskCheckResult(allowed=False, reason=reason, warnings=warnings)


def _drawdown_percent(unrealized_pnl: float, account_balance: float) -> float:
    if account_balance <= 0:
        return 0.0 if unrealized_pnl == 0 else float("inf")
    return abs(unrealized_pnl) / account_balance * 100
