"""
Dashboard Metrics Module
"""
from .errors import (
    MetricsError,
    NoOperationFound,
    TransientStoreFailure,
    DegradedExternalFetch,
    OptimizedQueryFailure,
    UnknownCurrencyError,
    InvalidPeriodError,
)
from .periods import PeriodTag, PeriodResolver, DateRange
from .query import ByPeriod, ByRange, build_request

__all__ = [
    "MetricsError",
    "NoOperationFound",
    "TransientStoreFailure",
    "DegradedExternalFetch",
    "OptimizedQueryFailure",
    "UnknownCurrencyError",
    "InvalidPeriodError",
    "PeriodTag",
    "PeriodResolver",
    "DateRange",
    "ByPeriod",
    "ByRange",
    "build_request",
]
