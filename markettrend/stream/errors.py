"""
Custom exceptions for the market stream client.

Exception hierarchy:
- MarketStreamError (base)
  - TransportUninitialized: connect() called before a transport is bound
  - StreamError: a streaming call ended with a non-cancellation failure
  - UserCancelled: the controller itself stopped the call (never surfaced)
  - AnomalousMessage: a batch with a non-success code or no payload
  - MessageParseError: a frame or payload could not be decoded
  - StreamSessionError: a session was used incorrectly
  - ConfigurationError: invalid parameters or settings
"""

from __future__ import annotations

from typing import Any, Optional


class MarketStreamError(Exception):
    """Base exception for all market stream errors."""

    def __init__(
        self,
        message: str,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.component = component
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.component:
            parts.append(f"[component={self.component}]")
        if self.details:
            parts.append(f"[details={self.details}]")
        return " ".join(parts)


class TransportUninitialized(MarketStreamError):
    """Raised when connect() is invoked before the transport is ready."""


class StreamError(MarketStreamError):
    """Raised when a streaming call fails (network, server or protocol fault)."""

    def __init__(
        self,
        message: str,
        *,
        grpc_status: Optional[int] = None,
        http_status: Optional[int] = None,
        url: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.grpc_status = grpc_status
        self.http_status = http_status
        self.url = url
        details = details or {}
        if grpc_status is not None:
            details["grpc_status"] = grpc_status
        if http_status is not None:
            details["http_status"] = http_status
        if url:
            details["url"] = url
        super().__init__(message, component=component, details=details)


class UserCancelled(MarketStreamError):
    """Cause recorded when a session was cancelled at the controller's request."""

    def __init__(
        self,
        message: str = "Stream cancelled by user",
        *,
        reason: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.reason = reason
        details = details or {}
        if reason:
            details["reason"] = reason
        super().__init__(message, component=component, details=details)


class AnomalousMessage(MarketStreamError):
    """A received batch that cannot be displayed. Not fatal."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        response_message: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.code = code
        self.response_message = response_message
        details = details or {}
        if code is not None:
            details["code"] = code
        if response_message:
            details["response_message"] = response_message
        super().__init__(message, component=component, details=details)


class MessageParseError(MarketStreamError):
    """Raised when a frame or message payload cannot be parsed."""

    def __init__(
        self,
        message: str,
        *,
        raw_data: Optional[bytes] = None,
        expected_type: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.raw_data = raw_data
        self.expected_type = expected_type
        details = details or {}
        if expected_type:
            details["expected_type"] = expected_type
        # Don't include raw_data in details to avoid log spam
        super().__init__(message, component=component, details=details)


class StreamSessionError(MarketStreamError):
    """Raised when a StreamSession is misused."""


class ConfigurationError(MarketStreamError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.field = field
        self.value = value
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, component=component, details=details)


def describe_error(error: BaseException) -> str:
    """Human-readable message for an error, without component/details noise."""
    if isinstance(error, MarketStreamError):
        text = error.message
    else:
        text = str(error)
    return text or "An error occurred during streaming"
