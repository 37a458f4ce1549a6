import asyncio
from decimal import Decimal

from click.testing import CliRunner

from hl_toolkit.config import Settings
from hl_toolkit.exec.pricing import PricingEngine
from hl_toolkit.exec.sequencer import ExecutionSequencer
from hl_toolkit.gateway.paper import PaperGateway
from hl_toolkit.main import cli
from hl_toolkit.market.registry import AssetRegistry
from hl_toolkit.types import Position, TopOfBook


def _patch_engine(monkeypatch: object, gateway, registry, risk_gate) -> None:
    engine = ExecutionSequencer(gateway, registry, PricingEngine(gateway), risk_gate=risk_gate)
    monkeypatch.setattr("hl_toolkit.main.build_engine", lambda settings: engine)


def _patch_paper_engine(monkeypatch: object, gateway, risk_gate, tmp_path) -> PaperGateway:
    paper = PaperGateway(gateway, tmp_path)
    engine = ExecutionSequencer(
        paper, AssetRegistry(paper), PricingEngine(paper), risk_gate=risk_gate
    )
    monkeypatch.setattr("hl_toolkit.main.build_engine", lambda settings: engine)
    return paper


def test_cli_open_smoke(monkeypatch: object, gateway, registry, risk_gate) -> None:
    _patch_engine(monkeypatch, gateway, registry, risk_gate)
    runner = CliRunner()
    result = runner.invoke(
        cli, ["open", "BTC", "long", "--usd", "201", "--leverage", "5", "--sl-pct", "2"]
    )
    assert result.exit_code == 0
    assert '"success": true' in result.output
    assert len(gateway.orders()) == 2


def test_cli_open_dry_run_places_nothing(monkeypatch: object, gateway, registry, risk_gate) -> None:
    _patch_engine(monkeypatch, gateway, registry, risk_gate)
    result = CliRunner().invoke(
        cli, ["open", "BTC", "long", "--usd", "201", "--leverage", "5", "--dry-run"]
    )
    assert result.exit_code == 0
    assert '"executed": false' in result.output
    assert '"estimated_liquidation_price"' in result.output
    assert gateway.orders() == []
    assert "set_leverage" not in gateway.names()


def test_cli_close_without_position_exits_nonzero(
    monkeypatch: object, gateway, registry, risk_gate
) -> None:
    _patch_engine(monkeypatch, gateway, registry, risk_gate)
    result = CliRunner().invoke(cli, ["close", "ETH"])
    assert result.exit_code == 1
    assert "no_open_position" in result.output


def test_cli_cancel_and_positions(monkeypatch: object, gateway, registry, risk_gate) -> None:
    _patch_engine(monkeypatch, gateway, registry, risk_gate)
    runner = CliRunner()
    assert runner.invoke(cli, ["cancel"]).exit_code == 0
    positions = runner.invoke(cli, ["positions"])
    assert positions.exit_code == 0
    assert '"account_value": 10000.0' in positions.output


def test_cli_book_and_market(monkeypatch: object, gateway, registry, risk_gate) -> None:
    _patch_engine(monkeypatch, gateway, registry, risk_gate)
    runner = CliRunner()
    book = runner.invoke(cli, ["book", "btc", "--depth", "1"])
    assert book.exit_code == 0
    assert '"coin": "BTC"' in book.output
    market = runner.invoke(cli, ["market", "ETH"])
    assert market.exit_code == 0
    assert '"price": 2500.5' in market.output
    assert '"BTC"' not in market.output


def test_cli_daily_loss_survives_between_commands(monkeypatch: object, gateway, tmp_path) -> None:
    settings = Settings(journal_dir=tmp_path, max_daily_loss=50, max_position_size_usd=10_000)
    monkeypatch.setattr("hl_toolkit.main.get_settings", lambda: settings)
    monkeypatch.setattr("hl_toolkit.engine.build_gateway", lambda s: gateway)
    gateway.positions = [
        Position(
            coin="BTC",
            side="long",
            size=1.0,
            entry_price=130.0,
            current_price=100.0,
            leverage=2.0,
            unrealized_pnl=-30.0,
        )
    ]
    runner = CliRunner()

    assert runner.invoke(cli, ["close", "BTC"]).exit_code == 0
    assert runner.invoke(cli, ["close", "BTC"]).exit_code == 0

    denied = runner.invoke(cli, ["open", "ETH", "long", "--usd", "100"])
    assert denied.exit_code == 1
    assert "Daily loss limit reached: $60.00 / $50" in denied.output
    assert [args[0] for args in gateway.orders()] == [0, 0]

    status = runner.invoke(cli, ["status"])
    assert "Daily P&L: -60.00" in status.output
    assert "Trades (24h): 2" in status.output


def test_cli_sync_fills_resting_paper_orders(
    monkeypatch: object, gateway, risk_gate, tmp_path
) -> None:
    paper = _patch_paper_engine(monkeypatch, gateway, risk_gate, tmp_path)
    runner = CliRunner()

    opened = runner.invoke(
        cli, ["open", "BTC", "long", "--coin", "1", "--type", "limit", "--limit-price", "95"]
    )
    assert opened.exit_code == 0
    assert '"status": "resting"' in opened.output

    gateway.books["BTC"] = TopOfBook(best_bid=Decimal("94"), best_ask=Decimal("95"))
    synced = runner.invoke(cli, ["sync"])
    assert synced.exit_code == 0
    assert '"filled"' in synced.output

    assert asyncio.run(paper.get_open_orders()) == []
    (position,) = asyncio.run(paper.get_positions())
    assert position.entry_price == 95.0


def test_cli_positions_settles_triggered_stop(
    monkeypatch: object, gateway, risk_gate, tmp_path
) -> None:
    _patch_paper_engine(monkeypatch, gateway, risk_gate, tmp_path)
    runner = CliRunner()

    opened = runner.invoke(cli, ["open", "BTC", "long", "--usd", "100", "--sl-pct", "2"])
    assert opened.exit_code == 0

    gateway.books["BTC"] = TopOfBook(best_bid=Decimal("97"), best_ask=Decimal("98"))
    positions = runner.invoke(cli, ["positions"])
    assert positions.exit_code == 0
    assert '"positions": []' in positions.output


def test_cli_status_and_version() -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["status"]).exit_code == 0
    version = runner.invoke(cli, ["--version"])
    assert "hl-toolkit version" in version.output
