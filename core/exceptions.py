"""Shared exception types for the copy-trading core."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class OracleUnavailable(CriticalDataUnavailable):
    """Price quote for an asset could not be obtained."""


class LedgerUnavailable(CriticalDataUnavailable):
    """On-chain balance or signature status could not be read."""


class ExecutionFailed(RuntimeError):
    """Execution service rejected or failed a buy/sell intent."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InsufficientBalance(ExecutionFailed):
    """Sell rejected because the wallet holds less than the requested amount."""


class ConfirmationTimeout(ExecutionFailed):
    """Buy transaction was not confirmed within the bounded wait."""

    def __init__(self, tx_ref: str, timeout_seconds: float):
        super().__init__(f"Transaction {tx_ref} not confirmed within {timeout_seconds:.0f}s")
        self.tx_ref = tx_ref
        self.timeout_seconds = timeout_seconds


class FeedDisconnected(ConnectionError):
    """Trade feed transport dropped; the feed reconnects after a fixed backoff."""


class RepositoryError(RuntimeError):
    """Position repository could not be read or written."""


class RepositoryInconsistency(RuntimeError):
    """A position id the registry handed out is missing from durable storage."""

    def __init__(self, position_id: str, operation: str):
        super().__init__(f"Position {position_id} not found during {operation}")
        self.position_id = position_id
        self.operation = operation
