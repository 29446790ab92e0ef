"""
Standardized error classification for hazard data collection.

Every error carries the provider it came from and whether a retry makes
sense. How each type propagates:

- NetworkError: transient, retried then gated by the circuit breaker
- ParseError: per record it is logged and skipped; for a whole body it
  fails the call without a retry
- CircuitOpenError: internal signal that triggers the cached fallback
- StoreConflict: natural key already stored, treated as a successful no-op
- PublishError: logged by the publish callback, never affects stored state
"""

from typing import Optional, Dict, Any


class HazardError(Exception):
    """
    Base exception for all collection errors.

    Attributes:
        message: Human-readable error description
        source: Provider or component name (e.g., 'usgs_earthquake')
        status_code: HTTP status code if applicable
        response_data: Raw response data for debugging
        retryable: Whether this error should trigger a retry
    """

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
        response_data: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.source = source
        self.status_code = status_code
        self.response_data = response_data
        self.retryable = retryable

    def __str__(self) -> str:
        parts = [self.message]
        if self.source:
            parts.insert(0, f"[{self.source}]")
        if self.status_code:
            parts.append(f"(HTTP {self.status_code})")
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "source": self.source,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "response_data": self.response_data,
        }


class NetworkError(HazardError):
    """
    Transient upstream failure.

    Examples:
    - Any non-2xx HTTP status
    - Connection refused / reset
    - Read or connect timeouts
    """

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            source=source,
            status_code=status_code,
            response_data=response_data,
            retryable=True,
        )


class ParseError(HazardError):
    """
    Upstream data could not be understood.

    Raised for a single element (caught and skipped inside the adapter)
    or for a whole response body that is not the documented structure.
    """

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        element: Optional[Any] = None,
    ):
        super().__init__(message=message, source=source, retryable=False)
        self.element = element


class CircuitOpenError(HazardError):
    """Raised when a source's circuit breaker rejects a call."""

    def __init__(self, source: str, retry_in: Optional[float] = None):
        message = "Circuit breaker is open"
        if retry_in is not None:
            message = f"{message} (retry in {retry_in:.1f}s)"
        super().__init__(message=message, source=source, retryable=False)
        self.retry_in = retry_in


class StoreConflict(HazardError):
    """An observation with the same natural key is already stored."""

    def __init__(self, natural_key: str, source: Optional[str] = None):
        super().__init__(
            message=f"Observation already stored: {natural_key}",
            source=source,
            retryable=False,
        )
        self.natural_key = natural_key


class PublishError(HazardError):
    """Publishing an event to an outbound channel failed."""

    def __init__(
        self,
        message: str,
        channel: str,
        partition_key: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(
            message=message,
            source=channel,
            status_code=status_code,
            retryable=False,
        )
        self.channel = channel
        self.partition_key = partition_key


def classify_http_error(
    status_code: int, response_text: str = "", source: Optional[str] = None
) -> NetworkError:
    """
    Classify a non-2xx HTTP response.

    Every non-success status counts as a network failure for retry and
    breaker purposes; the message keeps the distinction for the logs.

    Args:
        status_code: HTTP status code
        response_text: Response body text
        source: Provider name

    Returns:
        NetworkError describing the response
    """
    if status_code == 429:
        label = "Rate limited"
    elif status_code in (401, 403):
        label = "Access denied"
    elif status_code == 404:
        label = "Not found"
    elif status_code == 400:
        label = "Bad request"
    elif 500 <= status_code < 600:
        label = "Server error"
    else:
        label = f"HTTP error {status_code}"

    return NetworkError(
        message=f"{label}: {response_text[:200]}",
        source=source,
        status_code=status_code,
    )
