"""Shared exception hierarchy for rewardledger services."""

# ── Chain ─────────────────────────────────────────────────────────────────────


class ChainClientError(Exception):
    """Base exception for chain client errors."""


class RPCError(ChainClientError):
    """RPC call failed."""


class NotFoundError(ChainClientError):
    """Requested resource not found."""


class TxNotFoundError(NotFoundError):
    """Requested transaction not found."""


class ChainConnectionError(ChainClientError):
    """Cannot connect to LCD endpoint."""


# ── Amounts ───────────────────────────────────────────────────────────────────


class AmountError(ArithmeticError):
    """Base exception for decimal amount arithmetic."""


class AmountDivisionError(AmountError):
    """Division by zero."""


class InvalidAmountError(AmountError):
    """Value is not a decimal amount string."""


# ── Tax ───────────────────────────────────────────────────────────────────────


class TaxResolutionError(Exception):
    """Base exception for per-transaction tax resolution errors."""


class TaxFieldNotFound(TaxResolutionError):
    """A known message type did not carry its taxable coin list."""


class AnnotationLengthMismatch(TaxResolutionError):
    """Execution log count differs from message count."""


# ── Ingestion ─────────────────────────────────────────────────────────────────


class IngestionError(Exception):
    """Base exception for ingestion errors."""


class ImpossibleState(IngestionError):
    """Protected transaction bookkeeping is inconsistent."""


# ── Aggregation ───────────────────────────────────────────────────────────────


class AggregationError(Exception):
    """Base exception for aggregation errors."""
