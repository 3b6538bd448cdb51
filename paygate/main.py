# paygate/main.py
import logging

from fastapi import FastAPI

from paygate.core.config import settings
from paygate.x402.facilitator import facilitator_config_from_settings
from paygate.x402.middleware import X402Middleware
from paygate.x402.types import PaymentConfig, RouteConfig

# Configure basic logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def paywall_config_from_settings() -> dict:
    """Paywall branding taken from settings, unset values left out."""
    branding = {
        "app_name": settings.X402_PAYWALL_APP_NAME,
        "app_logo": settings.X402_PAYWALL_APP_LOGO,
        "cdp_client_key": settings.X402_PAYWALL_CDP_CLIENT_KEY,
    }
    return {key: value for key, value in branding.items() if value}


def create_app() -> FastAPI:
    app = FastAPI(title=settings.PROJECT_NAME)

    @app.get("/", summary="Health Check", tags=["default"])
    def read_root():
        """ Basic health check endpoint. """
        logger.info("Root endpoint '/' accessed.")
        return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}

    @app.get("/weather", summary="Paid weather report", tags=["weather"])
    def get_weather():
        return {"report": {"weather": "sunny", "temperature": 70}}

    if settings.X402_ENABLED:
        if not settings.X402_PAY_TO_ADDRESS:
            raise RuntimeError("X402_PAY_TO_ADDRESS must be set when X402_ENABLED is true")

        app.add_middleware(
            X402Middleware,
            pay_to=settings.X402_PAY_TO_ADDRESS,
            routes={
                "GET /weather": RouteConfig(
                    price=settings.X402_PRICE,
                    network=settings.X402_NETWORK,
                    config=PaymentConfig(description="Access to weather data"),
                ),
            },
            facilitator_config=facilitator_config_from_settings(),
            paywall_config=paywall_config_from_settings() or None,
        )
        logger.info(f"x402: Protecting /weather at {settings.X402_PRICE} on {settings.X402_NETWORK}")
    else:
        logger.warning("x402: X402_ENABLED is false, serving all routes for free")

    return app


app = create_app()
