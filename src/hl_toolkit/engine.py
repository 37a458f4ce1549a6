"""Wiring of gateway, registry, pricing, risk gate and journal."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from hl_toolkit.config import Settings
from hl_toolkit.exec.preview import PositionSimulator
from hl_toolkit.exec.pricing import PricingEngine
from hl_toolkit.exec.sequencer import ExecutionSequencer
from hl_toolkit.gateway.base import ExchangeGateway
from hl_toolkit.gateway.hyperliquid import HyperliquidGateway
from hl_toolkit.gateway.paper import PaperGateway
from hl_toolkit.journal.store import JournalStore
from hl_toolkit.market.registry import AssetRegistry
from hl_toolkit.risk.rules import DAY_SECONDS, RiskGate
from hl_toolkit.types import TradeRecord
from hl_toolkit.utils.logging import get_logger


def build_gateway(settings: Settings) -> ExchangeGateway:
    """Live gateway in live mode; paper fills over live market data otherwise."""
    live = HyperliquidGateway(settings)
    if settings.is_live_mode:
        return live
    return PaperGateway(
        live,
        settings.journal_dir,
        initial_equity=settings.paper_initial_equity,
    )


def realized_trades(journal: JournalStore, since: datetime) -> list[TradeRecord]:
    """Full closes journaled since ``since`` as trade records."""
    records: list[TradeRecord] = []
    for row in journal.load_since(since, event_type="close"):
        payload = row.get("payload") or {}
        data = payload.get("data") or {}
        pnl = data.get("realized_pnl")
        if not payload.get("success") or pnl is None:
            continue
        timestamp = datetime.fromisoformat(row["timestamp"]).timestamp()
        records.append(TradeRecord(timestamp=timestamp, pnl=float(pnl)))
    return records


def build_risk_gate(settings: Settings, journal: JournalStore) -> RiskGate:
    """Risk gate primed with the trades realized in the last 24h."""
    risk_gate = RiskGate(settings.risk_config())
    since = datetime.now(timezone.utc) - timedelta(seconds=DAY_SECONDS)
    risk_gate.restore(realized_trades(journal, since))
    return risk_gate


def build_engine(settings: Settings) -> ExecutionSequencer:
    """Build a sequencer for the configured mode and network."""
    logger = get_logger("hl_toolkit.engine")
    settings.ensure_directories()

    gateway = build_gateway(settings)
    registry = AssetRegistry(gateway, ttl_seconds=settings.metadata_ttl_seconds)
    pricing = PricingEngine(gateway, default_slippage_pct=settings.default_slippage_pct)
    journal = JournalStore(settings.journal_dir)
    risk_gate = build_risk_gate(settings, journal)
    simulator = PositionSimulator(
        gateway,
        taker_fee_rate=settings.taker_fee_rate,
        maintenance_margin_rate=settings.maintenance_margin_rate,
    )

    logger.info(
        "engine_built",
        mode=settings.mode.value,
        network=settings.network.value,
        gateway=type(gateway).__name__,
    )
    return ExecutionSequencer(
        gateway,
        registry,
        pricing,
        risk_gate=risk_gate,
        journal=journal,
        simulator=simulator,
    )
