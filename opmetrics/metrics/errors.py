"""
Metrics Error Taxonomy

- NoOperationFound: no resolvable operation; answered with empty metrics
- TransientStoreFailure: order/cost store unreachable; retryable, never cached
- DegradedExternalFetch: ad-network or rate provider failed; component zeroed
- OptimizedQueryFailure: aggregated cost join failed; row-by-row fallback
"""

from typing import Optional


class MetricsError(Exception):
    """Base class for metrics service errors"""


class NoOperationFound(MetricsError):
    """The request context does not resolve to an operation."""

    def __init__(self, operation_id: Optional[str] = None):
        self.operation_id = operation_id
        super().__init__(f"No operation found for id={operation_id!r}")


class TransientStoreFailure(MetricsError):
    """An aggregation query against the order store failed."""

    def __init__(self, stage: str, cause: Optional[BaseException] = None):
        self.stage = stage
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Order store unavailable during {stage}{detail}")


class DegradedExternalFetch(MetricsError):
    """An external collaborator failed; the caller zeroes its contribution."""

    def __init__(self, component: str, reason: str):
        self.component = component
        self.reason = reason
        super().__init__(f"{component} fetch degraded: {reason}")


class OptimizedQueryFailure(MetricsError):
    """The single aggregated cost join could not be used."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Aggregated cost query failed: {reason}")


class UnknownCurrencyError(MetricsError, ValueError):
    """A conversion referenced a currency missing from the rate set."""

    def __init__(self, currency: str, rate_date=None):
        self.currency = currency
        self.rate_date = rate_date
        super().__init__(f"No exchange rate for {currency} (rates of {rate_date})")


class InvalidPeriodError(MetricsError, ValueError):
    """Unknown period tag or inverted explicit range."""
