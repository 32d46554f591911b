# PATH: core/exceptions.py
"""
Typed exceptions for POLYARB.

Transient venue errors and degraded-dependency errors are caught close to
where they happen. Config and signer errors are fatal and stop the process.
"""

from typing import Optional

from core.constants import ErrorCode


class PolyArbError(Exception):
    """Base exception for POLYARB."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN,
        details: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def __str__(self):
        return f"[{self.code.value}] {self.message}"

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# INFRASTRUCTURE
# =============================================================================

class InfraError(PolyArbError):
    """Infrastructure-related errors (RPC, timeouts, unsupported methods)."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INFRA_RPC_ERROR,
        details: Optional[dict] = None,
    ):
        super().__init__(message, code, details)


class RPCError(InfraError):
    """RPC call failed on every endpoint."""
    pass


class RPCTimeoutError(InfraError):
    """RPC call timed out."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, ErrorCode.INFRA_TIMEOUT, details)


# =============================================================================
# VENUES
# =============================================================================

class QuoteError(PolyArbError):
    """
    Quote-related errors raised by venue adapters.

    Always transient: the aggregator excludes the venue from the batch.
    """

    def __init__(
        self,
        message: str = "",
        code: ErrorCode = ErrorCode.QUOTE_REVERT,
        details: Optional[dict] = None,
        venue: Optional[str] = None,
    ):
        super().__init__(message, code, details)
        self.venue = venue


# =============================================================================
# DEGRADED DEPENDENCIES
# =============================================================================

class GasOracleError(PolyArbError):
    """Gas station unreachable or returned garbage."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, ErrorCode.GAS_ORACLE_UNAVAILABLE, details)


class PriceFeedError(PolyArbError):
    """USD price feed unreachable or returned garbage."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, ErrorCode.PRICE_FEED_UNAVAILABLE, details)


# =============================================================================
# EXECUTION
# =============================================================================

class ExecutionError(PolyArbError):
    """Submission or confirmation of a protected transaction failed."""
    pass


# =============================================================================
# FATAL
# =============================================================================

class ConfigError(PolyArbError):
    """Invalid or missing configuration. Fatal."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message, ErrorCode.CONFIG_INVALID, details)


class SignerError(PolyArbError):
    """Missing or unauthorized signing key. Fatal."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.SIGNER_MISSING,
        details: Optional[dict] = None,
    ):
        super().__init__(message, code, details)
