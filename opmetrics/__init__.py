"""
Operation Metrics Service

Dashboard metrics (orders, revenue, costs, profitability) per merchant
operation, cached per period.
"""

__version__ = "1.0.0"
