"""Error taxonomy for the execution engine.

Components raise these; the sequencer converts them into tagged failure
results so callers never see an uncaught exception.
"""

from __future__ import annotations


class ToolkitError(Exception):
    """Base toolkit error."""

    code = "toolkit_error"


class UnknownInstrument(ToolkitError):
    """Raised when a symbol is absent from the exchange universe."""

    code = "unknown_instrument"


class InvalidAmount(ToolkitError):
    """Raised for negative, zero, NaN or infinite amounts."""

    code = "invalid_amount"


class InvalidIntent(ToolkitError):
    """Raised when a trade request is incomplete or contradictory."""

    code = "invalid_intent"


class SizeTooSmall(ToolkitError):
    """Raised when a quantity rounds to zero at the instrument precision."""

    code = "size_too_small"


class NoLiquidity(ToolkitError):
    """Raised when one side of the book is empty."""

    code = "no_liquidity"


class MalformedResponse(ToolkitError):
    """Raised when an order response has no usable status array."""

    code = "malformed_response"


class RiskDenied(ToolkitError):
    """Raised when the risk gate rejects a request."""

    code = "risk_denied"

    def __init__(self, reason: str, warnings: list[str] | None = None) -> None:
        super().__init__(f"Risk check failed: {reason}")
        self.reason = reason
        self.warnings = list(warnings or [])


class GatewayFailure(ToolkitError):
    """Raised when an exchange call fails."""

    code = "gateway_failure"

    def __init__(self, operation: str, cause: BaseException | str) -> None:
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


class NoOpenPosition(ToolkitError):
    """Raised when closing an instrument with no open position."""

    code = "no_open_position"


class InvalidRiskConfig(ToolkitError):
    """Raised when a risk configuration fails validation."""

    code = "invalid_risk_config"
