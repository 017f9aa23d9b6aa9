from __future__ import annotations


class FlowscanError(Exception):
    """Base class for engine errors."""


class MalformedInputError(FlowscanError):
    """
    Raised when an inbound event is missing required fields or carries
    values the engine cannot use (non-finite or negative price, empty ticker).
    The engine drops the event and keeps going.
    """
    def __init__(self, reason: str, payload: object | None = None):
        super().__init__(reason)
        self.reason = reason
        self.payload = payload


class DetectorFault(FlowscanError):
    """An unexpected exception raised inside a single detector."""
    def __init__(self, detector: str, ticker: str, cause: BaseException):
        super().__init__(f"{detector} failed for {ticker}: {cause!r}")
        self.detector = detector
        self.ticker = ticker
        self.cause = cause


class ContextRefreshError(FlowscanError):
    """Market context snapshot could not be fetched or parsed."""
