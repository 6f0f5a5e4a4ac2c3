"""
External Collaborators
"""
from .ads import AdSpend, GraphAdsClient
from .exchange_rates import CurrencyApiProvider

__all__ = [
    "AdSpend",
    "GraphAdsClient",
    "CurrencyApiProvider",
]
