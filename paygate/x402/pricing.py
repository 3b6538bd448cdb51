# paygate/x402/pricing.py
"""
Payment requirement construction for protected routes.

Each protected route gets one PaymentRequirements template, built when the
middleware is created:
1. Convert the route price to an atomic amount of the payment asset
2. Checksum the pay-to and asset addresses
3. Fill in defaults for description, MIME type and timeout

Only the resource URL may change per request; it is merged into a copy of
the template. Nothing here performs network I/O.
"""
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from eth_utils import to_checksum_address
from x402.common import process_price_to_atomic_amount
from x402.types import PaymentRequirements, TokenAmount

from paygate.x402.errors import PaymentMiddlewareConfigError
from paygate.x402.types import Price, RouteConfig

logger = logging.getLogger(__name__)

PAYMENT_SCHEME = "exact"
DEFAULT_MIME_TYPE = "application/json"
DEFAULT_MAX_TIMEOUT_SECONDS = 300

# (price, network) -> (max_amount_required, asset_address, eip712_domain)
PriceToAtomicAmount = Callable[[Price, str], Tuple[str, str, Dict[str, Any]]]


def to_atomic_amount(
    price: Price,
    network: str,
    process_price_fn: PriceToAtomicAmount = process_price_to_atomic_amount,
) -> Tuple[str, str, Dict[str, Any]]:
    """
    Convert a route price into an atomic amount of the payment asset.

    Money prices ("$0.01") are converted to USDC on the given network;
    TokenAmount prices are passed through with their own asset.

    Float prices are converted through their decimal string, since the
    converter only parses strings and integers.

    Raises:
        PaymentMiddlewareConfigError: If the price or network is not supported,
            or the price converts to zero or a negative amount
    """
    money = not isinstance(price, TokenAmount)
    if isinstance(price, float):
        price = format(Decimal(str(price)), "f")

    try:
        amount, asset, eip712 = process_price_fn(price, network)
    except ArithmeticError as e:
        logger.error(f"x402: Unable to parse price {price!r}: {e!r}")
        raise PaymentMiddlewareConfigError(f"Invalid price: {price!r}") from e
    except ValueError as e:
        logger.error(f"x402: Unable to convert price {price!r} on {network}: {e}")
        raise PaymentMiddlewareConfigError(str(e)) from e

    # amounts below one atomic unit truncate to zero
    if money and int(amount) <= 0:
        raise PaymentMiddlewareConfigError(
            f"Invalid price: {price!r} must be a positive amount"
        )
    return str(amount), asset, eip712


def build_output_schema(
    config_output: Optional[Any],
    input_schema: Optional[Dict[str, Any]],
    discoverable: Optional[bool],
    method: Optional[str],
) -> Optional[Any]:
    """Advertise the HTTP input of a route alongside its output schema."""
    if input_schema is None and discoverable is None:
        return config_output

    http_input: Dict[str, Any] = {"type": "http"}
    if method:
        http_input["method"] = method
    http_input["discoverable"] = True if discoverable is None else discoverable
    http_input.update(input_schema or {})
    return {"input": http_input, "output": config_output}


def build_payment_requirements(
    pay_to: str,
    route: RouteConfig,
    resource: str = "",
    method: Optional[str] = None,
    process_price_fn: PriceToAtomicAmount = process_price_to_atomic_amount,
) -> PaymentRequirements:
    """
    Build the payment requirements template for a route.

    Args:
        pay_to: Address receiving the payment
        route: Price, network and optional settings of the route
        resource: Static resource URL, or "" when derived per request
        method: HTTP method of the route, if it is restricted to one
        process_price_fn: Price converter (the x402 SDK's by default)

    Returns:
        PaymentRequirements for the "exact" scheme

    Raises:
        PaymentMiddlewareConfigError: If the price cannot be converted
        ValueError: If pay_to or the asset is not a valid address
    """
    config = route.config
    amount, asset, eip712 = to_atomic_amount(route.price, route.network, process_price_fn)

    description = config.description if config and config.description is not None else ""
    mime_type = config.mime_type if config and config.mime_type else DEFAULT_MIME_TYPE
    max_timeout_seconds = (
        config.max_timeout_seconds
        if config and config.max_timeout_seconds is not None
        else DEFAULT_MAX_TIMEOUT_SECONDS
    )
    output_schema = None
    if config:
        output_schema = build_output_schema(
            config.output_schema, config.input_schema, config.discoverable, method
        )

    return PaymentRequirements(
        scheme=PAYMENT_SCHEME,
        network=route.network,
        max_amount_required=amount,
        resource=resource,
        description=description,
        mime_type=mime_type,
        pay_to=to_checksum_address(pay_to),
        max_timeout_seconds=max_timeout_seconds,
        asset=to_checksum_address(asset),
        output_schema=output_schema,
        extra=eip712,
    )
