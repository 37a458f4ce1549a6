"""Validated risk limits."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hl_toolkit.errors import InvalidRiskConfig


class RiskConfig(BaseModel):
    """Pre-trade risk limits. Frozen; use ``merged`` to derive a new one."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_leverage: float = Field(gt=0, le=50)
    max_position_size_usd: float = Field(gt=0)
    max_daily_loss: float | None = Field(default=None, gt=0)
    max_drawdown_percent: float | None = Field(default=None, gt=0, le=100)
    max_open_positions: int | None = Field(default=None, gt=0)
    require_stop_loss: bool = False
    # share of notional assumed at risk when projecting the daily loss
    daily_loss_projection_pct: float = Field(default=10.0, gt=0, le=100)

    @classmethod
    def parse_strict(cls, payload: dict[str, Any]) -> "RiskConfig":
        """Validate a raw dict, mapping any violation to InvalidRiskConfig."""
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first["loc"])
            raise InvalidRiskConfig(f"{field}: {first['msg']}") from exc

    def merged(self, **changes: Any) -> "RiskConfig":
        """Return a re-validated copy with ``changes`` applied."""
        return self.parse_strict({**self.model_dump(), **changes})
