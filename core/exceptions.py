"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class OrderPlacementError(RuntimeError):
    """Raised when the venue rejects an order or the submission fails."""

    def __init__(self, symbol: str, message: str, response: Optional[dict] = None):
        super().__init__(f"{symbol}: {message}")
        self.symbol = symbol
        self.response = response


class DelegateUnavailable(RuntimeError):
    """Raised when the decision delegate cannot produce a usable answer."""

    def __init__(self, kind: str, detail: str = ""):
        super().__init__(f"{kind}: {detail}" if detail else kind)
        self.kind = kind
        self.detail = detail


class TransferError(RuntimeError):
    """Raised when a collateral transfer between accounts fails."""

    def __init__(self, message: str, response: Optional[dict] = None):
        super().__init__(message)
        self.response = response
