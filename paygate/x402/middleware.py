# paygate/x402/middleware.py
"""
FastAPI/Starlette middleware for x402 payment enforcement.

This module binds the payment engine to Starlette requests and responses:
1. Matches the request against the protected routes
2. Returns 402 Payment Required (JSON, or an HTML paywall for browsers)
   when no valid payment is attached
3. Verifies the X-PAYMENT header via the facilitator
4. Runs the protected handler
5. Settles the payment only if the handler succeeded, and reports the
   settlement in the X-PAYMENT-RESPONSE header
"""
import json
import logging
from typing import Callable, List, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import HTMLResponse, JSONResponse
from x402.encoding import safe_base64_decode, safe_base64_encode
from x402.facilitator import FacilitatorConfig
from x402.paywall import get_paywall_html
from x402.types import PaymentPayload, PaymentRequirements, PaywallConfig

from paygate.x402.engine import PaymentMiddleware
from paygate.x402.errors import X402Error
from paygate.x402.facilitator import FacilitatorFactory, use_facilitator
from paygate.x402.types import RoutesConfig, Settlement

logger = logging.getLogger(__name__)

# x402 protocol constants
X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"
PAYMENT_REQUIRED_STATUS = 402


def decode_payment_header(header_value: str) -> PaymentPayload:
    """
    Decode the X-PAYMENT header into a PaymentPayload.

    Args:
        header_value: Base64-encoded JSON payment payload

    Raises:
        ValueError: If the header is not valid base64, JSON or payload
    """
    try:
        decoded_str = safe_base64_decode(header_value)
    except Exception as e:
        raise ValueError(f"Invalid X-PAYMENT header format: {e}") from e
    if not decoded_str:
        raise ValueError("Invalid X-PAYMENT header format: empty payload")

    # json.JSONDecodeError and pydantic.ValidationError are ValueErrors
    return PaymentPayload.model_validate(json.loads(decoded_str))


def payment_from_request(request: Request) -> Optional[PaymentPayload]:
    """Extract the payment payload from a request, None if it carries none."""
    payment_header = request.headers.get(X_PAYMENT_HEADER)
    if not payment_header:
        return None
    return decode_payment_header(payment_header)


def can_render_paywall(request: Request) -> bool:
    """Browsers get an HTML paywall instead of a JSON 402 body."""
    user_agent = request.headers.get("User-Agent", "")
    accept = request.headers.get("Accept", "")
    return "text/html" in accept and "Mozilla" in user_agent


def resource_from_request(request: Request) -> str:
    """Use the requested URL as the paid resource."""
    return str(request.url)


def encode_payment_response(settlement: Settlement) -> str:
    """
    Encode a settlement for the X-PAYMENT-RESPONSE header.

    Returns:
        Base64-encoded JSON string
    """
    response_json = json.dumps(settlement.model_dump(by_alias=True))
    return safe_base64_encode(response_json.encode("utf-8"))


def create_402_response(error: X402Error) -> JSONResponse:
    """Create an HTTP 402 Payment Required response from a payment error."""
    return JSONResponse(
        status_code=PAYMENT_REQUIRED_STATUS,
        content=error.to_dict(),
        headers={"Content-Type": "application/json"},
    )


def create_paywall_response(
    middleware: PaymentMiddleware,
    payment_requirements: List[PaymentRequirements],
) -> HTMLResponse:
    """Create an HTTP 402 response carrying the HTML paywall."""
    route_config = middleware.config.config
    html = route_config.custom_paywall_html if route_config else None
    if not html:
        html = get_paywall_html(
            "X-PAYMENT header is required",
            payment_requirements,
            middleware.paywall_config,
        )
    return HTMLResponse(content=html, status_code=PAYMENT_REQUIRED_STATUS)


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment enforcement middleware for FastAPI.

    Args:
        app: The ASGI application
        pay_to: Address receiving payments
        routes: Routes table, e.g. {"GET /weather/*": RouteConfig(...)}
        facilitator_config: Facilitator URL and auth headers
        paywall_config: Branding for the HTML paywall
        facilitator_factory: Creates the facilitator from facilitator_config

    Example:
        app.add_middleware(
            X402Middleware,
            pay_to="0x...",
            routes={"/weather": RouteConfig(price="$0.001", network="base-sepolia")},
        )
    """

    def __init__(
        self,
        app,
        pay_to: str,
        routes: RoutesConfig,
        facilitator_config: Optional[FacilitatorConfig] = None,
        paywall_config: Optional[PaywallConfig] = None,
        facilitator_factory: FacilitatorFactory = use_facilitator,
    ):
        super().__init__(app)
        self.routes_map = PaymentMiddleware.for_routes(
            pay_to,
            routes,
            payment_from_request,
            can_render_paywall,
            facilitator_config=facilitator_config,
            paywall_config=paywall_config,
            facilitator_factory=facilitator_factory,
            resource_from_request=resource_from_request,
        )

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        """
        Process the request through x402 payment enforcement.

        Flow:
        1. Skip unprotected routes
        2. Acquire and verify the payment (or show the paywall)
        3. Run the protected handler
        4. Settle only when the handler responded with a status below 400
        """
        middleware = self.routes_map.match(request.url.path, request.method)
        if middleware is None:
            return await call_next(request)

        logger.info(f"x402: Processing protected request: {request.method} {request.url.path}")

        try:
            payment_requirements = middleware.payment_requirements(request)
            payment = await middleware.acquire_payment(request, payment_requirements)
            if payment is None:
                logger.info(f"x402: No X-PAYMENT header, returning paywall for {request.url.path}")
                return create_paywall_response(middleware, payment_requirements)

            response = await call_next(request)

            # Never charge for a failed request
            if response.status_code >= 400:
                logger.info(
                    f"x402: Handler returned {response.status_code}, skipping settlement"
                )
                return response

            settlement = await payment.settle()
            response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(settlement)
            return response

        except X402Error as e:
            logger.info(f"x402: Returning 402 for {request.method} {request.url.path}: {e}")
            return create_402_response(e)
