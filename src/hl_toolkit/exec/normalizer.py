"""Decoding of raw order responses into uniform outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from hl_toolkit.errors import MalformedResponse
from hl_toolkit.types import ExecutionOutcome


class _OrderData(BaseModel):
    model_config = ConfigDict(extra="allow")

    statuses: list[Any] = Field(min_length=1)


class _OrderResponse(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str | None = None
    data: _OrderData


class OrderEnvelope(BaseModel):
    """Top-level ``{"status": "ok", "response": {...}}`` order payload."""

    model_config = ConfigDict(extra="allow")

    status: Literal["ok"]
    response: _OrderResponse


@dataclass(frozen=True, slots=True)
class Filled:
    oid: int
    total_size: str | None = None
    avg_price: str | None = None


@dataclass(frozen=True, slots=True)
class Resting:
    oid: int


@dataclass(frozen=True, slots=True)
class Error:
    message: str


@dataclass(frozen=True, slots=True)
class Unknown:
    """Accepted without an order id yet, e.g. ``waitingForTrigger``."""

    raw: Any


OrderStatus = Filled | Resting | Error | Unknown


def decode_status(raw: Any) -> OrderStatus:
    """Decode one element of the ``statuses`` array."""
    if isinstance(raw, dict):
        if "error" in raw:
            return Error(message=str(raw["error"]))
        resting = raw.get("resting")
        if isinstance(resting, dict):
            oid = _parse_oid(resting.get("oid"))
            if oid is not None:
                return Resting(oid=oid)
        filled = raw.get("filled")
        if isinstance(filled, dict):
            oid = _parse_oid(filled.get("oid"))
            if oid is not None:
                return Filled(
                    oid=oid,
                    total_size=_opt_str(filled.get("totalSz")),
                    avg_price=_opt_str(filled.get("avgPx")),
                )
    return Unknown(raw=raw)


def first_status(raw_response: Any) -> Any:
    """Return the first raw status of an order response.

    Raises MalformedResponse when the status array is missing or empty.
    """
    try:
        envelope = OrderEnvelope.model_validate(raw_response)
    except ValidationError as exc:
        raise MalformedResponse(
            f"Order response is missing statuses: {exc.errors()[0]['msg']}"
        ) from exc
    return envelope.response.data.statuses[0]


class ResponseNormalizer:
    """Maps raw exchange order responses to ExecutionOutcome."""

    def normalize(self, raw_response: Any) -> ExecutionOutcome:
        if isinstance(raw_response, dict) and raw_response.get("status") == "err":
            return ExecutionOutcome(
                success=False,
                status="error",
                error=str(raw_response.get("response") or "unknown error"),
            )
        return self.from_status(decode_status(first_status(raw_response)))

    @staticmethod
    def from_status(status: OrderStatus) -> ExecutionOutcome:
        if isinstance(status, Error):
            return ExecutionOutcome(success=False, status="error", error=status.message)
        if isinstance(status, Resting):
            return ExecutionOutcome(success=True, status="resting", order_id=status.oid)
        if isinstance(status, Filled):
            return ExecutionOutcome(success=True, status="filled", order_id=status.oid)
        # no id yet; callers must not read this as filled or resting
        return ExecutionOutcome(success=True, status="pending", order_id=0)


def _parse_oid(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)
