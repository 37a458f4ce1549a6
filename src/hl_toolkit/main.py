"""CLI 入口模块 - Hyperliquid 交易执行工具命令行接口。"""

import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import click

from hl_toolkit import __version__
from hl_toolkit.config import Settings, get_settings
from hl_toolkit.engine import build_engine, build_risk_gate
from hl_toolkit.exec.sequencer import ExecutionSequencer
from hl_toolkit.gateway.paper import PaperGateway
from hl_toolkit.journal.store import JournalStore
from hl_toolkit.types import CloseIntent, OrderIntent, TradeResult
from hl_toolkit.utils.logging import get_logger, setup_logging

T = TypeVar("T")


@click.group(invoke_without_command=True)
@click.option("--version", "-v", is_flag=True, help="显示版本号")
@click.pass_context
def cli(ctx: click.Context, version: bool) -> None:
    """HL Toolkit - Hyperliquid 下单与风控执行层。

    将开仓/平仓意图转换为交易所订单，附带止损、止盈与风控检查。
    """
    if version:
        click.echo(f"hl-toolkit version {__version__}")
        return

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


def _load_engine() -> ExecutionSequencer:
    """初始化日志与配置，构建执行引擎。"""
    setup_logging()
    logger = get_logger("hl_toolkit.main")
    settings = get_settings()

    # 验证配置
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            logger.error(
                "missing_required_config",
                missing_keys=missing,
                hint="请在 .env 文件中配置必要的私钥",
            )
            sys.exit(1)

    return build_engine(settings)


def _emit(result: TradeResult) -> None:
    """输出 JSON 结果；失败时以非零状态退出。"""
    click.echo(json.dumps(asdict(result), indent=2, default=str))
    if not result.success:
        sys.exit(1)


async def _settle_paper_orders(engine: ExecutionSequencer) -> list[dict[str, Any]]:
    """纸交易模式下，先按当前盘口撮合挂单与止损/止盈触发单。"""
    gateway = engine.gateway
    if not isinstance(gateway, PaperGateway):
        return []
    return await gateway.evaluate_resting_orders()


def _run(engine: ExecutionSequencer, operation: Callable[[], Awaitable[T]]) -> T:
    """在同一事件循环中先结算纸交易挂单，再执行操作。"""

    async def _main() -> T:
        await _settle_paper_orders(engine)
        return await operation()

    return asyncio.run(_main())


@cli.command("open")
@click.argument("symbol")
@click.argument("side", type=click.Choice(["long", "short", "buy", "sell"]))
@click.option("--usd", "size_usd", type=float, default=None, help="名义价值（USD）")
@click.option("--coin", "size_coin", type=float, default=None, help="数量（币）")
@click.option(
    "--market",
    type=click.Choice(["perp", "spot"]),
    default="perp",
    show_default=True,
    help="市场类型",
)
@click.option("--leverage", "-l", type=float, default=None, help="杠杆倍数（仅永续）")
@click.option(
    "--type",
    "order_type",
    type=click.Choice(["market", "limit"]),
    default="market",
    show_default=True,
    help="订单类型",
)
@click.option("--limit-price", type=float, default=None, help="限价")
@click.option("--sl", "stop_loss_price", type=float, default=None, help="止损价")
@click.option("--sl-pct", "stop_loss_percent", type=float, default=None, help="止损百分比")
@click.option("--tp", "take_profit_price", type=float, default=None, help="止盈价")
@click.option("--tp-pct", "take_profit_percent", type=float, default=None, help="止盈百分比")
@click.option("--slippage", "slippage_percent", type=float, default=None, help="滑点（百分比）")
@click.option("--dry-run", is_flag=True, help="只做风控检查与成交模拟，不下单")
def open_cmd(symbol: str, side: str, dry_run: bool, **options: Any) -> None:
    """开仓，可附带止损与止盈。"""
    engine = _load_engine()
    intent = OrderIntent(symbol=symbol, side=side, **options)
    if dry_run:
        _emit(asyncio.run(engine.preview_open(intent)))
        return
    _emit(_run(engine, lambda: engine.open_position(intent)))


@cli.command("close")
@click.argument("symbol")
@click.option(
    "--percent",
    "-p",
    type=float,
    default=100.0,
    show_default=True,
    help="平仓比例（百分比）",
)
@click.option("--slippage", "slippage_percent", type=float, default=None, help="滑点（百分比）")
def close_cmd(symbol: str, percent: float, slippage_percent: float | None) -> None:
    """按比例平掉永续持仓。"""
    engine = _load_engine()
    intent = CloseIntent(symbol=symbol, percent=percent, slippage_percent=slippage_percent)
    _emit(_run(engine, lambda: engine.close_position(intent)))


@cli.command("cancel")
@click.argument("symbol", required=False)
def cancel_cmd(symbol: str | None) -> None:
    """撤销挂单；不指定币种时撤销全部。"""
    engine = _load_engine()
    _emit(_run(engine, lambda: engine.cancel_orders(symbol)))


@cli.command()
def sync() -> None:
    """纸交易：按当前盘口撮合挂单与触发单。"""
    engine = _load_engine()
    if not isinstance(engine.gateway, PaperGateway):
        click.echo("[INFO] sync only applies to paper mode")
        return
    fills = asyncio.run(_settle_paper_orders(engine))
    click.echo(json.dumps({"fills": fills}, indent=2, default=str))


@cli.command()
@click.argument("coin")
@click.option("--depth", "-d", type=click.IntRange(min=1), default=10, show_default=True)
def book(coin: str, depth: int) -> None:
    """显示 L2 盘口。"""
    engine = _load_engine()
    logger = get_logger("hl_toolkit.main")
    try:
        snapshot = asyncio.run(engine.gateway.get_order_book(coin.strip().upper(), depth))
    except Exception as e:
        logger.exception("book_failed", coin=coin, error=str(e))
        sys.exit(1)
    click.echo(json.dumps(asdict(snapshot), indent=2, default=str))


@cli.command()
@click.argument("coins", nargs=-1)
def market(coins: tuple[str, ...]) -> None:
    """显示永续合约的价格、成交额、资金费率与持仓量。"""
    engine = _load_engine()
    logger = get_logger("hl_toolkit.main")
    try:
        snapshots = asyncio.run(engine.gateway.get_market_data(list(coins) or None))
    except Exception as e:
        logger.exception("market_data_failed", error=str(e))
        sys.exit(1)
    click.echo(json.dumps([asdict(s) for s in snapshots], indent=2, default=str))


@cli.command()
def positions() -> None:
    """显示当前持仓与账户余额。"""
    engine = _load_engine()
    logger = get_logger("hl_toolkit.main")

    async def _snapshot() -> dict[str, Any]:
        gateway = engine.gateway
        held = await gateway.get_positions()
        balance = await gateway.get_account_balance()
        return {
            "positions": [asdict(p) for p in held],
            "balance": asdict(balance),
        }

    try:
        snapshot = _run(engine, _snapshot)
    except Exception as e:
        logger.exception("positions_failed", error=str(e))
        sys.exit(1)

    click.echo(json.dumps(snapshot, indent=2, default=str))


@cli.command()
def status() -> None:
    """显示系统状态和配置摘要。"""
    setup_logging()
    settings = get_settings()

    click.echo("=" * 50)
    click.echo("HL Toolkit - Status")
    click.echo("=" * 50)
    click.echo()

    # 运行模式
    mode_marker = "[PAPER]" if settings.is_paper_mode else "[LIVE]"
    mode_text = "Paper Trading" if settings.is_paper_mode else "Live Trading"
    click.echo(f"{mode_marker} Mode: {mode_text}")
    click.echo(f"   Network: {settings.network.value}")
    click.echo()

    # API 配置状态
    click.echo("[API Configuration]")
    key_status = "[OK] Configured" if settings.hl_private_key else "[--] Not configured"
    click.echo(f"   Signing key: {key_status}")
    click.echo(f"   Account address: {settings.hl_account_address or '(derived from key)'}")
    click.echo(f"   Timeout: {settings.hl_timeout}s")
    click.echo()

    _echo_risk(settings)
    _echo_daily_stats(settings)

    # 日志配置
    click.echo("[Logging]")
    click.echo(f"   Log level: {settings.log_level}")
    click.echo(f"   Log format: {settings.log_format.value}")
    click.echo(f"   Journal dir: {settings.journal_dir}")
    click.echo()

    # 验证状态
    if settings.is_live_mode:
        missing = settings.validate_for_live()
        if missing:
            click.echo("[ERROR] Live mode configuration incomplete, missing:")
            for key in missing:
                click.echo(f"   - {key}")
        else:
            click.echo("[OK] Live mode configuration complete")
    else:
        click.echo("[INFO] Paper mode does not require a signing key")

    click.echo()
    click.echo("=" * 50)


def _echo_risk(settings: Settings) -> None:
    """输出风控参数。"""

    def _limit(value: object) -> str:
        return "disabled" if value is None else str(value)

    click.echo("[Risk Parameters]")
    click.echo(f"   Max leverage: {settings.max_leverage}x")
    click.echo(f"   Max position size: ${settings.max_position_size_usd}")
    click.echo(f"   Max daily loss: {_limit(settings.max_daily_loss)}")
    click.echo(f"   Max drawdown: {_limit(settings.max_drawdown_pct)}")
    click.echo(f"   Max open positions: {_limit(settings.max_open_positions)}")
    click.echo(f"   Require stop-loss: {'Yes' if settings.require_stop_loss else 'No'}")
    click.echo(f"   Default slippage: {settings.default_slippage_pct}%")
    click.echo()


def _echo_daily_stats(settings: Settings) -> None:
    """输出由交易日志恢复的近 24 小时盈亏统计。"""
    click.echo("[Daily Stats]")
    if not settings.journal_dir.exists():
        click.echo("   No journal yet")
        click.echo()
        return

    stats = build_risk_gate(settings, JournalStore(settings.journal_dir)).get_stats()
    click.echo(f"   Daily P&L: {stats['daily_pnl']:.2f}")
    click.echo(f"   Trades (24h): {stats['total_trades']}")
    click.echo(f"   Win rate: {stats['win_rate']:.1f}%")
    click.echo(f"   Avg P&L: {stats['avg_pnl']:.2f}")
    click.echo()


@cli.command()
def check() -> None:
    """检查系统依赖和配置。"""
    setup_logging()
    logger = get_logger("hl_toolkit.main")

    click.echo("Checking system dependencies...")
    click.echo()

    all_ok = True

    # 检查必要的包
    packages = [
        ("pydantic", "Configuration validation"),
        ("pydantic_settings", "Environment settings"),
        ("httpx", "HTTP client"),
        ("structlog", "Structured logging"),
        ("click", "CLI framework"),
        ("tenacity", "Retry mechanism"),
        ("hyperliquid", "Hyperliquid SDK"),
        ("eth_account", "Request signing"),
    ]

    for pkg_name, desc in packages:
        try:
            __import__(pkg_name)
            click.echo(f"  [OK] {pkg_name} - {desc}")
        except ImportError:
            click.echo(f"  [MISSING] {pkg_name} - {desc}")
            all_ok = False

    click.echo()

    # 检查配置文件
    env_file = Path(".env")
    if env_file.exists():
        click.echo("  [OK] .env configuration file exists")
    else:
        click.echo("  [WARN] .env file not found (using defaults)")

    click.echo()

    if all_ok:
        click.echo("[OK] All dependency checks passed")
    else:
        click.echo("[ERROR] Some dependencies missing. Run: pip install -e .")

    logger.info("dependency_check_completed", all_ok=all_ok)


# 支持 python -m hl_toolkit.main 调用
if __name__ == "__main__":
    cli()
