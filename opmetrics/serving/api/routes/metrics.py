"""
Dashboard Metrics Endpoints

REST API over the metrics service. Monetary values are rendered as floats;
`metrics` is in the operation's base currency, `display` in the requested
display currency.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
import structlog

from opmetrics.metrics.composer import metric_values
from opmetrics.metrics.query import build_request
from opmetrics.metrics.service import MetricsResult, MetricsService

router = APIRouter()
logger = structlog.get_logger(__name__)


# =============================================================================
# Response models
# =============================================================================

class MetricsBody(BaseModel):
    """Composed metrics in base currency"""
    base_currency: str
    total_orders: int
    pending_orders: int
    confirmed_orders: int
    shipped_orders: int
    delivered_orders: int
    returned_orders: int
    cancelled_orders: int
    paid_orders: int
    carrier_orders: int
    carrier_delivered_orders: int
    total_revenue: float
    delivered_revenue: float
    paid_revenue: float
    average_order_value: float
    product_costs: float
    shipping_costs: float
    combined_costs: float
    marketing_costs: float
    return_handling_costs: float
    total_costs: float
    profit: float
    profit_margin: float
    roi: float
    cpa_per_delivered: float
    cpa_per_lead: float
    delivery_rate: float
    unique_customers: int
    avg_delivery_time_days: float
    unlinked_items: int
    revenue_growth: Optional[float]
    orders_growth: Optional[float]


class RevenuePoint(BaseModel):
    """One local day of revenue"""
    day: date
    revenue: float
    order_count: int
    delivered_count: int


class MetricsResponse(BaseModel):
    """Dashboard metrics response"""
    operation_id: Optional[str]
    period: Optional[str]
    range_start: Optional[datetime]
    range_end: Optional[datetime]
    timezone: Optional[str]
    cache_status: str
    calculated_at: Optional[datetime]
    valid_until: Optional[datetime]
    display_currency: str
    metrics: MetricsBody
    display: Dict[str, float]
    reference_currency: str
    reference_costs: Dict[str, float]
    exchange_rates: Dict[str, float]
    revenue_series: List[RevenuePoint]
    degraded_components: List[str]


class RevenueSeriesResponse(BaseModel):
    operation_id: Optional[str]
    timezone: Optional[str]
    data: List[RevenuePoint]


class StatusShareResponse(BaseModel):
    status: str
    count: int
    percentage: float


class ProviderStatsResponse(BaseModel):
    provider: str
    total_orders: int
    delivered_orders: int
    total_revenue: float
    success_rate: float


class InvalidationResponse(BaseModel):
    removed: int


# =============================================================================
# Dependencies
# =============================================================================

def get_metrics_service(request: Request) -> MetricsService:
    return request.app.state.metrics_service


def metrics_request(
    period: Optional[str] = Query(None, description="1d, 7d, 30d, 90d or current_month"),
    start: Optional[date] = Query(None, alias="from"),
    end: Optional[date] = Query(None, alias="to"),
    provider: Optional[str] = None,
    product_id: Optional[str] = None,
):
    """Collapse query parameters into a ByPeriod or ByRange request."""
    return build_request(period=period, start=start, end=end, provider=provider, product_id=product_id)


def _point(bucket) -> RevenuePoint:
    return RevenuePoint(
        day=bucket.day,
        revenue=float(bucket.revenue),
        order_count=bucket.order_count,
        delivered_count=bucket.delivered_count,
    )


def _as_response(result: MetricsResult) -> MetricsResponse:
    values = {
        name: float(value) if isinstance(value, Decimal) else value
        for name, value in metric_values(result.metrics).items()
    }
    return MetricsResponse(
        operation_id=result.operation_id,
        period=result.period,
        range_start=result.range.start if result.range else None,
        range_end=result.range.end if result.range else None,
        timezone=result.range.timezone if result.range else None,
        cache_status=result.cache_status,
        calculated_at=result.calculated_at,
        valid_until=result.valid_until,
        display_currency=result.display_currency,
        metrics=MetricsBody(**values),
        display={name: float(value) for name, value in result.display.items()},
        reference_currency=result.rates.reference,
        reference_costs={name: float(value) for name, value in result.reference_costs.items()},
        exchange_rates=result.rates.as_display(),
        revenue_series=[_point(bucket) for bucket in result.metrics.revenue_series],
        degraded_components=result.metrics.degraded_components,
    )


# =============================================================================
# Routes
# =============================================================================

@router.get("/operations/{operation_id}/metrics", response_model=MetricsResponse)
async def get_operation_metrics(
    operation_id: str,
    currency: Optional[str] = Query(None, min_length=3, max_length=3, description="Display currency"),
    metrics_req=Depends(metrics_request),
    service: MetricsService = Depends(get_metrics_service),
) -> MetricsResponse:
    """
    Dashboard metrics for one operation.

    Period requests use the snapshot cache; explicit `from`/`to` ranges and
    product filters are always computed.
    """
    result = await service.get_metrics(operation_id, metrics_req, display_currency=currency)
    return _as_response(result)


@router.get("/operations/{operation_id}/revenue-series", response_model=RevenueSeriesResponse)
async def get_revenue_series(
    operation_id: str,
    metrics_req=Depends(metrics_request),
    service: MetricsService = Depends(get_metrics_service),
) -> RevenueSeriesResponse:
    """Delivered revenue per local day."""
    result = await service.revenue_over_time(operation_id, metrics_req)
    return RevenueSeriesResponse(
        operation_id=result.operation_id,
        timezone=result.range.timezone if result.range else None,
        data=[_point(bucket) for bucket in result.series],
    )


@router.get("/operations/{operation_id}/orders-by-status", response_model=List[StatusShareResponse])
async def get_orders_by_status(
    operation_id: str,
    metrics_req=Depends(metrics_request),
    service: MetricsService = Depends(get_metrics_service),
) -> List[StatusShareResponse]:
    shares = await service.orders_by_status(operation_id, metrics_req)
    return [
        StatusShareResponse(status=s.status, count=s.count, percentage=s.percentage)
        for s in shares
    ]


@router.get("/operations/{operation_id}/providers", response_model=List[ProviderStatsResponse])
async def get_provider_comparison(
    operation_id: str,
    service: MetricsService = Depends(get_metrics_service),
) -> List[ProviderStatsResponse]:
    stats = await service.provider_comparison(operation_id)
    return [
        ProviderStatsResponse(
            provider=s.provider,
            total_orders=s.total_orders,
            delivered_orders=s.delivered_orders,
            total_revenue=float(s.total_revenue),
            success_rate=s.success_rate,
        )
        for s in stats
    ]


@router.post("/operations/{operation_id}/metrics/invalidate", response_model=InvalidationResponse)
async def invalidate_operation_metrics(
    operation_id: str,
    service: MetricsService = Depends(get_metrics_service),
) -> InvalidationResponse:
    removed = await service.invalidate(operation_id)
    logger.info("Operation snapshots invalidated", operation_id=operation_id, removed=removed)
    return InvalidationResponse(removed=removed)


@router.post("/metrics/invalidate", response_model=InvalidationResponse)
async def invalidate_all_metrics(
    service: MetricsService = Depends(get_metrics_service),
) -> InvalidationResponse:
    removed = await service.invalidate()
    return InvalidationResponse(removed=removed)
