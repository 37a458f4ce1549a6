"""Live Hyperliquid gateway.

Read-only ``/info`` queries go over httpx with retries; signed actions go
through the official SDK, whose blocking calls run in a worker thread.
Order-side calls are never retried.
"""

from __future__ import annotations

import asyncio
import time
from decimal import Decimal
from typing import Any

import httpx
from eth_account import Account
from hyperliquid.exchange import Exchange
from hyperliquid.utils.constants import MAINNET_API_URL, TESTNET_API_URL
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from hl_toolkit.config import Settings
from hl_toolkit.errors import NoLiquidity
from hl_toolkit.gateway.base import UniverseAsset, UniverseMetadata
from hl_toolkit.types import (
    AccountBalance,
    BookLevel,
    CancelRequest,
    Grouping,
    LimitSpec,
    Market,
    MarketSnapshot,
    OpenOrder,
    OrderBook,
    OrderSpec,
    Position,
    TopOfBook,
)
from hl_toolkit.utils.logging import get_logger, log_gateway_call


class HyperliquidError(Exception):
    """Base Hyperliquid gateway error."""


class HyperliquidAPIError(HyperliquidError):
    """Raised when an info request fails in transport."""


class HyperliquidActionError(HyperliquidError):
    """Raised when a signed action is rejected."""


class HyperliquidGateway:
    """ExchangeGateway backed by the Hyperliquid API."""

    def __init__(self, settings: Settings, *, exchange: Exchange | None = None) -> None:
        self._settings = settings
        self._base_url = TESTNET_API_URL if settings.is_testnet else MAINNET_API_URL
        self._timeout = settings.hl_timeout
        self._address = settings.hl_account_address or None
        if self._address is None and settings.hl_private_key:
            self._address = Account.from_key(settings.hl_private_key).address
        self._exchange = exchange
        self._exchange_lock = asyncio.Lock()
        self._asset_names: dict[int, str] | None = None
        self._logger = get_logger("hl_toolkit.gateway.hyperliquid")

    @property
    def address(self) -> str | None:
        return self._address

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------

    async def get_top_of_book(self, coin: str) -> TopOfBook:
        book = await self.get_order_book(coin, depth=1)
        best_bid = book.bids[0].price if book.bids else Decimal(0)
        best_ask = book.asks[0].price if book.asks else Decimal(0)
        if best_bid <= 0 or best_ask <= 0:
            raise NoLiquidity(f"No liquidity available for {coin}")
        return TopOfBook(best_bid=best_bid, best_ask=best_ask)

    async def get_order_book(self, coin: str, depth: int = 10) -> OrderBook:
        book = await self._info({"type": "l2Book", "coin": coin, "nSigFigs": 5})
        if not isinstance(book, dict) or not book.get("levels"):
            raise NoLiquidity(f"No order book available for {coin}")
        levels = book["levels"]
        sides = [
            [
                BookLevel(price=Decimal(str(level["px"])), size=Decimal(str(level["sz"])))
                for level in (levels[i] if len(levels) > i else [])[:depth]
            ]
            for i in (0, 1)
        ]
        return OrderBook(coin=coin, bids=sides[0], asks=sides[1])

    async def get_market_data(self, coins: list[str] | None = None) -> list[MarketSnapshot]:
        meta, ctxs = await self._info({"type": "metaAndAssetCtxs"})
        mids = await self._info({"type": "allMids"})
        wanted = {c.strip().upper() for c in coins} if coins else None
        snapshots: list[MarketSnapshot] = []
        for entry, ctx in zip(meta.get("universe", []), ctxs):
            name = str(entry["name"])
            if wanted is not None and name.upper() not in wanted:
                continue
            snapshots.append(
                MarketSnapshot(
                    coin=name,
                    price=float(mids.get(name) or ctx.get("midPx") or 0),
                    volume_24h=float(ctx.get("dayNtlVlm") or 0),
                    # hourly rate as a percent
                    funding_rate=float(ctx.get("funding") or 0) * 100,
                    open_interest=float(ctx.get("openInterest") or 0),
                )
            )
        return snapshots

    async def get_universe_metadata(self, market: Market) -> UniverseMetadata:
        if market == Market.PERP:
            meta = await self._info({"type": "meta"})
            assets = [
                UniverseAsset(
                    name=str(entry["name"]),
                    index=index,
                    size_decimals=int(entry["szDecimals"]),
                )
                for index, entry in enumerate(meta.get("universe", []))
            ]
            return UniverseMetadata(market=market, assets=assets)

        spot_meta = await self._info({"type": "spotMeta"})
        tokens = {int(token["index"]): token for token in spot_meta.get("tokens", [])}
        assets = []
        for pair in spot_meta.get("universe", []):
            pair_tokens = pair.get("tokens") or []
            base = tokens.get(int(pair_tokens[0])) if pair_tokens else None
            if base is None:
                continue
            assets.append(
                UniverseAsset(
                    name=str(pair["name"]),
                    index=int(pair["index"]),
                    size_decimals=int(base["szDecimals"]),
                    base_token=str(base["name"]),
                )
            )
        return UniverseMetadata(market=market, assets=assets)

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def get_positions(self) -> list[Position]:
        state = await self._info({"type": "clearinghouseState", "user": self._require_address()})
        mids = await self._info({"type": "allMids"})
        positions: list[Position] = []
        for item in state.get("assetPositions", []):
            raw = item.get("position", {})
            size = float(raw.get("szi") or 0)
            if size == 0:
                continue
            coin = str(raw.get("coin"))
            entry_price = float(raw.get("entryPx") or 0)
            unrealized = float(raw.get("unrealizedPnl") or 0)
            leverage = raw.get("leverage") or {}
            liquidation = float(raw.get("liquidationPx") or 0)
            notional = abs(size) * entry_price
            positions.append(
                Position(
                    coin=coin,
                    side="long" if size > 0 else "short",
                    size=abs(size),
                    entry_price=entry_price,
                    current_price=float(mids.get(coin) or 0),
                    leverage=float(leverage.get("value") or 1),
                    unrealized_pnl=unrealized,
                    unrealized_pnl_percent=unrealized / notional * 100 if notional else 0.0,
                    liquidation_price=liquidation or None,
                )
            )
        return positions

    async def get_account_balance(self) -> AccountBalance:
        state = await self._info({"type": "clearinghouseState", "user": self._require_address()})
        margin = state.get("marginSummary") or {}
        cross = state.get("crossMarginSummary") or {}
        return AccountBalance(
            account_value=float(margin.get("accountValue") or 0),
            available_balance=float(cross.get("accountValue") or 0),
            margin_used=float(margin.get("totalMarginUsed") or 0),
            withdrawable=float(state.get("withdrawable") or 0),
        )

    async def get_open_orders(self, user: str | None = None) -> list[OpenOrder]:
        rows = await self._info({"type": "openOrders", "user": user or self._require_address()})
        return [OpenOrder(coin=str(row["coin"]), order_id=int(row["oid"])) for row in rows]

    # ------------------------------------------------------------------
    # Signed actions
    # ------------------------------------------------------------------

    async def set_leverage(self, asset_index: int, leverage: int, cross_margin: bool) -> None:
        exchange = await self._get_exchange()
        name = self._asset_name(exchange, asset_index)
        response = await self._act(
            "update_leverage", exchange.update_leverage, leverage, name, cross_margin
        )
        _raise_for_action_error("update_leverage", response)

    async def submit_order(
        self,
        asset_index: int,
        is_buy: bool,
        price: str,
        size: str,
        reduce_only: bool,
        order_spec: OrderSpec,
        grouping: Grouping = Grouping.NONE,
    ) -> Any:
        exchange = await self._get_exchange()
        request = {
            "coin": self._asset_name(exchange, asset_index),
            "is_buy": is_buy,
            "sz": float(size),
            "limit_px": float(price),
            "order_type": _order_type_wire(order_spec),
            "reduce_only": reduce_only,
        }
        return await self._act(
            "bulk_orders", exchange.bulk_orders, [request], grouping=grouping.value
        )

    async def cancel_orders(self, requests: list[CancelRequest]) -> None:
        if not requests:
            return
        exchange = await self._get_exchange()
        cancels = [
            {"coin": self._asset_name(exchange, r.asset_index), "oid": r.order_id}
            for r in requests
        ]
        response = await self._act("bulk_cancel", exchange.bulk_cancel, cancels)
        _raise_for_action_error("bulk_cancel", response)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @retry(
        retry=retry_if_exception_type(HyperliquidAPIError),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _info(self, payload: dict[str, Any]) -> Any:
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout) as client:
                response = await client.post("/info", json=payload)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            log_gateway_call(
                self._logger,
                operation=str(payload.get("type")),
                success=False,
                latency_ms=(time.perf_counter() - started) * 1000,
                error=str(exc),
            )
            raise HyperliquidAPIError(str(exc)) from exc

        log_gateway_call(
            self._logger,
            operation=str(payload.get("type")),
            success=True,
            latency_ms=(time.perf_counter() - started) * 1000,
        )
        return response.json()

    async def _act(self, operation: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        started = time.perf_counter()
        try:
            response = await asyncio.to_thread(func, *args, **kwargs)
        except Exception:
            log_gateway_call(
                self._logger,
                operation=operation,
                success=False,
                latency_ms=(time.perf_counter() - started) * 1000,
            )
            raise
        log_gateway_call(
            self._logger,
            operation=operation,
            success=True,
            latency_ms=(time.perf_counter() - started) * 1000,
        )
        return response

    async def _get_exchange(self) -> Exchange:
        if self._exchange is not None:
            return self._exchange
        async with self._exchange_lock:
            if self._exchange is None:
                if not self._settings.hl_private_key:
                    raise HyperliquidActionError("missing_hl_private_key")
                wallet = Account.from_key(self._settings.hl_private_key)
                # the SDK fetches exchange metadata while constructing
                self._exchange = await asyncio.to_thread(
                    Exchange,
                    wallet,
                    self._base_url,
                    account_address=self._settings.hl_account_address or None,
                    timeout=self._timeout,
                )
        return self._exchange

    def _asset_name(self, exchange: Exchange, asset_index: int) -> str:
        if self._asset_names is None:
            names: dict[int, str] = {}
            for name, index in exchange.info.coin_to_asset.items():
                names.setdefault(int(index), name)
            self._asset_names = names
        try:
            return self._asset_names[asset_index]
        except KeyError as exc:
            raise HyperliquidActionError(f"unknown_asset_index: {asset_index}") from exc

    def _require_address(self) -> str:
        if not self._address:
            raise HyperliquidActionError("missing_hl_account_address")
        return self._address


def _order_type_wire(spec: OrderSpec) -> dict[str, Any]:
    if isinstance(spec, LimitSpec):
        return {"limit": {"tif": spec.tif.value}}
    return {
        "trigger": {
            "triggerPx": float(spec.trigger_price),
            "isMarket": spec.is_market,
            "tpsl": spec.role.value,
        }
    }


def _raise_for_action_error(operation: str, response: Any) -> None:
    if isinstance(response, dict) and response.get("status") == "err":
        raise HyperliquidActionError(f"{operation}: {response.get('response')}")
