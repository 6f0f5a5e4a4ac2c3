"""
FastAPI Production Application

Main entry point for the Operation Metrics API.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
import structlog

from opmetrics.config import get_settings
from opmetrics.config.logging import configure_logging
from opmetrics.database.connection import close_database, get_session_factory, init_database
from opmetrics.integrations import CurrencyApiProvider, GraphAdsClient
from opmetrics.metrics.service import create_metrics_service
from opmetrics.serving.api.main import create_api_app
from opmetrics.serving.cache import close_redis, init_redis, rates_cache

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()
    configure_logging()

    logger.info("Starting Operation Metrics API", environment=settings.app_env)

    # The order store is required; startup fails without it
    await init_database()

    shared_cache = None
    try:
        await init_redis()
        shared_cache = rates_cache
    except Exception as e:
        logger.warning("Redis unavailable, live rates cached per process only", error=str(e))

    rate_provider = CurrencyApiProvider(
        api_key=settings.currency.api_key.get_secret_value() if settings.currency.api_key else None,
        reference=settings.currency.reference_currency,
        currencies=settings.currency.currencies,
        base_url=settings.currency.api_url,
        timeout_seconds=settings.currency.request_timeout_seconds,
    )
    ads_client = GraphAdsClient(
        access_token=settings.ads.access_token.get_secret_value() if settings.ads.access_token else None,
        base_url=settings.ads.api_url,
        api_version=settings.ads.api_version,
        timeout_seconds=settings.ads.fetch_timeout_seconds,
    )

    app.state.metrics_service = create_metrics_service(
        settings,
        get_session_factory(),
        rate_provider=rate_provider,
        ads_client=ads_client,
        shared_cache=shared_cache,
    )

    yield

    logger.info("Shutting down...")
    await rate_provider.close()
    await ads_client.close()
    await close_redis()
    await close_database()


app = create_api_app(lifespan=lifespan)


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
