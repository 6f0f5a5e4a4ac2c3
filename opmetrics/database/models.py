"""
Database Models

This module defines the relational store the metrics service reads from and
the snapshot table it writes to:

Source Tables (written by ingestion and admin flows, read-only here):
- Operation: merchant sales/fulfillment context (currency, time zone)
- Order / OrderItem: orders with fulfillment status and SKU line items
- LinkedProductCost: per-SKU cost price, shipping cost and handling fee
- AdSpendEntry: manually recorded marketing spend
- AdCampaign: ad-network campaigns linked to an operation

Reference Tables:
- ExchangeRateSet: immutable per-day currency multipliers

Cache Tables:
- MetricsSnapshot: last composed metrics per (operation, period, provider)

All timestamps are stored as naive UTC.
"""

from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Optional, List
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _uuid() -> str:
    return str(uuid.uuid4())


# =============================================================================
# ENUMERATIONS
# =============================================================================

class OrderStatus(str, Enum):
    """Raw fulfillment statuses written by ingestion"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PACKED = "packed"
    SHIPPED = "shipped"
    IN_TRANSIT = "in transit"
    DELIVERED = "delivered"
    RETURNED = "returned"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment status enumeration"""
    PAID = "paid"
    UNPAID = "unpaid"
    REFUNDED = "refunded"


# =============================================================================
# SOURCE TABLES
# =============================================================================

class Operation(Base):
    """
    Operation Table

    A merchant's configured sales/fulfillment context. Scopes every metric.
    """
    __tablename__ = "operations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    store_id: Mapped[str] = mapped_column(String(36), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    country: Mapped[Optional[str]] = mapped_column(String(2))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    timezone: Mapped[Optional[str]] = mapped_column(String(64))  # IANA name
    status: Mapped[str] = mapped_column(String(20), default="active")

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_operations_store", "store_id"),
    )


class Order(Base):
    """
    Order Table

    One row per order, unified across sales channels. Mutated only by
    status-update events; never deleted by the metrics service.
    """
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)
    operation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("operations.id"), nullable=False
    )
    store_id: Mapped[str] = mapped_column(String(36), nullable=False)

    # Status
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=OrderStatus.PENDING.value)
    payment_status: Mapped[Optional[str]] = mapped_column(String(20))

    # Financial (operation base currency)
    total: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3), default="EUR")

    # Customer
    customer_id: Mapped[Optional[str]] = mapped_column(String(100))
    customer_email: Mapped[Optional[str]] = mapped_column(String(200))

    # Sales channel and carrier
    provider: Mapped[str] = mapped_column(String(50), nullable=False, default="shopify")
    carrier_imported: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    carrier_confirmation: Mapped[Optional[str]] = mapped_column(String(50))
    carrier_matched_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100))

    # Real dates from the channel/carrier history
    order_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_status_update: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )

    items: Mapped[List["OrderItem"]] = relationship(back_populates="order")

    __table_args__ = (
        Index("ix_orders_operation_date", "operation_id", "order_date"),
        Index("ix_orders_status", "status"),
        Index("ix_orders_provider", "provider"),
    )


class OrderItem(Base):
    """
    Order Line Item Table

    Grain: one SKU per order. Links orders to LinkedProductCost by SKU.
    """
    __tablename__ = "order_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.id"), nullable=False
    )
    sku: Mapped[Optional[str]] = mapped_column(String(100))
    product_id: Mapped[Optional[str]] = mapped_column(String(36))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))

    order: Mapped["Order"] = relationship(back_populates="items")

    __table_args__ = (
        Index("ix_order_items_order", "order_id"),
        Index("ix_order_items_sku", "sku"),
        Index("ix_order_items_product", "product_id"),
    )


class LinkedProductCost(Base):
    """
    Linked Product Cost Table

    Per-unit costs a store attached to a SKU, in the operation base currency.
    """
    __tablename__ = "linked_product_costs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    operation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("operations.id"), nullable=False
    )
    store_id: Mapped[str] = mapped_column(String(36), nullable=False)
    product_id: Mapped[Optional[str]] = mapped_column(String(36))
    sku: Mapped[str] = mapped_column(String(100), nullable=False)

    cost_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    handling_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    linked_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("operation_id", "sku", name="uq_linked_cost_operation_sku"),
        Index("ix_linked_costs_sku", "sku"),
    )


class AdSpendEntry(Base):
    """
    Manual Ad Spend Table

    Marketing spend recorded by hand, in any currency.
    """
    __tablename__ = "ad_spend_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    operation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("operations.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="BRL")
    platform: Mapped[str] = mapped_column(String(50), nullable=False)  # facebook, google, tiktok, influencer, ...
    spend_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        Index("ix_ad_spend_operation_date", "operation_id", "spend_date"),
    )


class AdCampaign(Base):
    """
    Ad Campaign Table

    Campaigns synced from an ad network. Only `is_selected` campaigns count
    toward an operation's marketing cost.
    """
    __tablename__ = "ad_campaigns"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    operation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("operations.id"), nullable=False
    )
    network: Mapped[str] = mapped_column(String(30), nullable=False, default="facebook")
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    campaign_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(200))
    is_selected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("operation_id", "campaign_id", name="uq_ad_campaign_operation"),
        Index("ix_ad_campaigns_account", "account_id"),
    )


# =============================================================================
# REFERENCE TABLES
# =============================================================================

class ExchangeRateSet(Base):
    """
    Exchange Rate Set Table

    One immutable row per calendar day: currency -> reference multipliers
    (1 unit of currency = rate units of the reference currency).
    """
    __tablename__ = "exchange_rate_sets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    rate_date: Mapped[date] = mapped_column(Date, nullable=False)
    reference_currency: Mapped[str] = mapped_column(String(3), nullable=False)
    rates: Mapped[dict] = mapped_column(JSON, nullable=False)  # {"EUR": "6.37", ...}
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="currencyapi")

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("rate_date", "reference_currency", name="uq_rate_set_date"),
    )


# =============================================================================
# CACHE TABLES
# =============================================================================

class MetricsSnapshot(Base):
    """
    Metrics Snapshot Table

    Cached dashboard metrics. At most one row per (operation, period,
    provider_key); `provider_key` is "*" when no provider filter applies.
    Monetary columns are in the operation base currency.
    """
    __tablename__ = "metrics_snapshots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    operation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("operations.id"), nullable=False
    )
    period: Mapped[str] = mapped_column(String(20), nullable=False)
    provider_key: Mapped[str] = mapped_column(String(50), nullable=False, default="*")
    base_currency: Mapped[str] = mapped_column(String(3), nullable=False)

    # Order counts
    total_orders: Mapped[int] = mapped_column(Integer, default=0)
    pending_orders: Mapped[int] = mapped_column(Integer, default=0)
    confirmed_orders: Mapped[int] = mapped_column(Integer, default=0)
    shipped_orders: Mapped[int] = mapped_column(Integer, default=0)
    delivered_orders: Mapped[int] = mapped_column(Integer, default=0)
    returned_orders: Mapped[int] = mapped_column(Integer, default=0)
    cancelled_orders: Mapped[int] = mapped_column(Integer, default=0)
    paid_orders: Mapped[int] = mapped_column(Integer, default=0)
    carrier_orders: Mapped[int] = mapped_column(Integer, default=0)
    carrier_delivered_orders: Mapped[int] = mapped_column(Integer, default=0)

    # Revenue
    total_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    delivered_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    paid_revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    average_order_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)

    # Costs
    product_costs: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    shipping_costs: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    combined_costs: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    marketing_costs: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    return_handling_costs: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    total_costs: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)

    # Profitability
    profit: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=0)
    profit_margin: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    roi: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0)
    cpa_per_delivered: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    cpa_per_lead: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=0)
    delivery_rate: Mapped[Decimal] = mapped_column(Numeric(8, 2), default=0)

    # Customer analytics
    unique_customers: Mapped[int] = mapped_column(Integer, default=0)
    avg_delivery_time_days: Mapped[Decimal] = mapped_column(Numeric(8, 2), default=0)
    unlinked_items: Mapped[int] = mapped_column(Integer, default=0)

    # Period-over-period
    revenue_growth: Mapped[Optional[float]] = mapped_column(Float)
    orders_growth: Mapped[Optional[float]] = mapped_column(Float)

    # Chart series and diagnostics
    revenue_series: Mapped[Optional[list]] = mapped_column(JSON)
    degraded_components: Mapped[Optional[list]] = mapped_column(JSON)

    range_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    range_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("operation_id", "period", "provider_key", name="uq_metrics_snapshot_key"),
        Index("ix_metrics_snapshots_operation", "operation_id"),
    )
