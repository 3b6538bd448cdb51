# paygate/x402/facilitator.py
"""
Facilitator access for payment verification and settlement.

The engine depends on a facilitator only through two coroutines, verify and
settle. The x402 SDK's FacilitatorClient is the default implementation;
anything with the same two coroutines can be injected instead.
"""
import logging
from typing import Callable, Dict, Optional, Protocol

from x402.facilitator import FacilitatorClient, FacilitatorConfig
from x402.types import PaymentPayload, PaymentRequirements, SettleResponse, VerifyResponse

from paygate.core.config import settings

logger = logging.getLogger(__name__)


class Facilitator(Protocol):
    """Remote service that verifies payment payloads and settles them on-chain."""

    async def verify(
        self, payment: PaymentPayload, payment_requirements: PaymentRequirements
    ) -> VerifyResponse:
        ...

    async def settle(
        self, payment: PaymentPayload, payment_requirements: PaymentRequirements
    ) -> SettleResponse:
        ...


FacilitatorFactory = Callable[[Optional[FacilitatorConfig]], Facilitator]


def use_facilitator(config: Optional[FacilitatorConfig] = None) -> Facilitator:
    """Create the default HTTP facilitator client."""
    url = config["url"] if config else "default facilitator"
    logger.info(f"x402: Using facilitator at {url}")
    return FacilitatorClient(config)


def facilitator_config_from_settings() -> FacilitatorConfig:
    """
    Build the facilitator configuration from application settings.

    When X402_FACILITATOR_API_KEY is set it is sent as a bearer token on
    both verify and settle calls.
    """
    config: FacilitatorConfig = {"url": str(settings.X402_FACILITATOR_URL).rstrip("/")}

    api_key = settings.X402_FACILITATOR_API_KEY
    if api_key:
        async def create_headers() -> Dict[str, Dict[str, str]]:
            auth = {"Authorization": f"Bearer {api_key}"}
            return {"verify": auth, "settle": auth}

        config["create_headers"] = create_headers

    return config
