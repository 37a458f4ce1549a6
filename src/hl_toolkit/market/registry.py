"""Symbol to exchange asset index / precision resolution."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable

from hl_toolkit.errors import UnknownInstrument
from hl_toolkit.gateway.base import ExchangeGateway, UniverseMetadata, guarded
from hl_toolkit.types import AssetInfo, InstrumentRef, Market
from hl_toolkit.utils.logging import get_logger

SPOT_INDEX_OFFSET = 10_000


@dataclass(slots=True)
class _MarketTable:
    by_name: dict[str, AssetInfo] = field(default_factory=dict)
    # spot only: base token -> first-seen pair
    by_token: dict[str, AssetInfo] = field(default_factory=dict)
    fetched_at: float = 0.0

    def lookup(self, name: str) -> AssetInfo | None:
        return self.by_name.get(name) or self.by_token.get(name)

    def available(self, limit: int = 20) -> list[str]:
        names = list(self.by_token) or list(self.by_name)
        return names[:limit]


class AssetRegistry:
    """Caches exchange universe metadata and resolves instruments.

    Metadata is fetched once per market and shared by every resolution of
    that market; concurrent first calls wait on one fetch. Entries live until
    ``reset`` or, when ``ttl_seconds`` is set, until the table expires.
    """

    def __init__(
        self,
        gateway: ExchangeGateway,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._gateway = gateway
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._tables: dict[Market, _MarketTable] = {}
        self._resolved: dict[InstrumentRef, AssetInfo] = {}
        self._locks = {market: asyncio.Lock() for market in Market}
        self._logger = get_logger("hl_toolkit.market.registry")

    async def resolve(self, symbol: str, market: Market | str = Market.PERP) -> AssetInfo:
        """Resolve a symbol; raises UnknownInstrument if it is not listed."""
        ref = InstrumentRef.of(symbol, market)
        table = await self._table(ref.market)
        cached = self._resolved.get(ref)
        if cached is not None:
            return cached

        info = table.lookup(ref.symbol)
        if info is None:
            raise UnknownInstrument(
                f"Unknown {ref.market.value} asset: {symbol}. "
                f"Available: {', '.join(table.available())}..."
            )
        self._resolved[ref] = info
        return info

    async def resolve_order_asset_index(self, coin: str) -> int:
        """Asset index for a coin name as reported by open orders."""
        if "/" in coin:
            return (await self.resolve(coin, Market.SPOT)).index
        try:
            return (await self.resolve(coin, Market.PERP)).index
        except UnknownInstrument:
            return (await self.resolve(coin, Market.SPOT)).index

    def reset(self, market: Market | None = None) -> None:
        """Drop cached metadata for one market or all of them."""
        markets = [market] if market is not None else list(Market)
        for item in markets:
            self._tables.pop(item, None)
        self._resolved = {
            ref: info for ref, info in self._resolved.items() if ref.market not in markets
        }
        self._logger.info("asset_registry_reset", markets=[m.value for m in markets])

    async def _table(self, market: Market) -> _MarketTable:
        table = self._tables.get(market)
        if table is not None and not self._expired(table):
            return table

        async with self._locks[market]:
            table = self._tables.get(market)
            if table is not None and not self._expired(table):
                return table
            if table is not None:
                self.reset(market)

            metadata = await guarded(
                "get_universe_metadata", self._gateway.get_universe_metadata(market)
            )
            table = self._build_table(metadata)
            self._tables[market] = table
            self._logger.info(
                "universe_metadata_loaded",
                market=market.value,
                assets=len(table.by_name),
            )
            return table

    def _expired(self, table: _MarketTable) -> bool:
        if self._ttl_seconds is None:
            return False
        return self._clock() - table.fetched_at >= self._ttl_seconds

    def _build_table(self, metadata: UniverseMetadata) -> _MarketTable:
        table = _MarketTable(fetched_at=self._clock())
        if metadata.market == Market.PERP:
            for asset in metadata.assets:
                table.by_name[asset.name.upper()] = AssetInfo(
                    index=asset.index,
                    size_decimals=asset.size_decimals,
                    pair_name=asset.name,
                )
            return table

        for pair in metadata.assets:
            info = AssetInfo(
                index=SPOT_INDEX_OFFSET + pair.index,
                size_decimals=pair.size_decimals,
                pair_name=pair.name,
            )
            table.by_name[pair.name.upper()] = info
            if pair.base_token:
                table.by_token.setdefault(pair.base_token.upper(), info)
        return table
