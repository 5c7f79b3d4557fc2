from typing import Optional


class FunnelError(Exception):
    """Base error for the deal funnel."""


class ValidationError(FunnelError):
    """Malformed visitor input. Recoverable and shown to the visitor."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field


class DataFetchError(FunnelError):
    """Items or postal-code metadata could not be fetched."""

    def __init__(self, message: str, source: Optional[str] = None):
        super().__init__(message)
        self.source = source


class RelayError(FunnelError):
    """Webhook dispatch failed. Only ever logged."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
