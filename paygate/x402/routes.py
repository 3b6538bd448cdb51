# paygate/x402/routes.py
"""
Route pattern compilation and matching.

A routes table maps "[VERB ]/path/glob" keys to route configs:

    {
        "GET /weather/*": RouteConfig(price="$0.001", network="base"),
        "/premium/[id]": "$0.10",
    }

Glob syntax:
- "*" matches any run of characters, "/" included
- "[name]" matches exactly one path segment
- everything else matches literally (case-insensitive)

Patterns are tried in declaration order and the first match wins.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from paygate.x402.errors import PaymentMiddlewareConfigError
from paygate.x402.types import DEFAULT_NETWORK, RouteConfig, RoutePattern, RoutesConfig

logger = logging.getLogger(__name__)

ANY_VERB = "*"

_GLOB_TOKEN = re.compile(r"(\*|\[[^\]]+\])")


def glob_to_regex(path: str) -> re.Pattern:
    """Compile a route glob into a case-insensitive regex, used with fullmatch."""
    parts = []
    for token in _GLOB_TOKEN.split(path):
        if token == "*":
            parts.append(".*?")
        elif token.startswith("[") and token.endswith("]"):
            parts.append("[^/]+")
        else:
            parts.append(re.escape(token))
    return re.compile("".join(parts), re.IGNORECASE)


def normalize_route_config(key: str, value: Any) -> RouteConfig:
    """Turn a routes table value into a RouteConfig."""
    if isinstance(value, RouteConfig):
        return value
    # A bare price is shorthand for a testnet USDC payment
    if isinstance(value, (str, int, float)):
        value = {"price": value, "network": DEFAULT_NETWORK}
    try:
        return RouteConfig.model_validate(value)
    except ValidationError as e:
        raise PaymentMiddlewareConfigError(f"Invalid route config for {key!r}: {e}") from e


def normalize_routes(routes: RoutesConfig) -> Dict[str, RouteConfig]:
    """Expand a single route config into a catch-all routes table."""
    if isinstance(routes, RouteConfig):
        return {ANY_VERB: routes}
    if "price" in routes:
        return {ANY_VERB: normalize_route_config(ANY_VERB, routes)}
    return {key: normalize_route_config(key, value) for key, value in routes.items()}


def compute_route_patterns(routes: RoutesConfig) -> List[RoutePattern]:
    """
    Compile a routes table into an ordered list of route patterns.

    Args:
        routes: Routes table or a single RouteConfig

    Returns:
        Route patterns in declaration order (empty for an empty table)

    Raises:
        PaymentMiddlewareConfigError: If a key or value is malformed
    """
    patterns = []
    for key, config in normalize_routes(routes).items():
        parts = re.split(r"\s+", key, maxsplit=1)
        if len(parts) == 2:
            verb, path = parts
        else:
            verb, path = ANY_VERB, key
        if not path:
            raise PaymentMiddlewareConfigError(f"Invalid route pattern: {key}")

        patterns.append(
            RoutePattern(pattern=glob_to_regex(path), verb=verb.upper(), config=config)
        )

    logger.debug(f"x402: Compiled {len(patterns)} route pattern(s)")
    return patterns


def find_matching_route(
    route_patterns: List[RoutePattern], path: str, method: str
) -> Optional[RoutePattern]:
    """
    Find the first route pattern matching the request path and method.

    Returns:
        The matching RoutePattern, or None if the route is not protected
    """
    method = method.upper()
    for route in route_patterns:
        if route.verb != ANY_VERB and route.verb != method:
            continue
        if route.pattern.fullmatch(path):
            return route
    return None
