# paygate/x402/types.py
"""
Type definitions for route protection.

RouteConfig and PaymentConfig describe what a route costs. They follow the
x402 SDK's models: snake_case attributes with camelCase aliases, so a routes
table can be written in either style.
"""
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from x402.types import PaymentPayload, SupportedNetworks, TokenAmount

# USD amount, e.g. "$0.01", "0.01", 1
Money = Union[str, int, float]
Price = Union[TokenAmount, Money]

# Absolute URL or path identifying the paid resource
Resource = str

DEFAULT_NETWORK = "base-sepolia"


class PaymentConfig(BaseModel):
    """Optional per-route settings advertised in the payment requirements."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="allow",
    )

    resource: Optional[Resource] = None
    description: Optional[str] = None
    mime_type: Optional[str] = None
    max_timeout_seconds: Optional[int] = None
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Any] = None
    discoverable: Optional[bool] = None
    custom_paywall_html: Optional[str] = None


class RouteConfig(BaseModel):
    """Price and network for a protected route."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    price: Price
    network: SupportedNetworks = DEFAULT_NETWORK
    config: Optional[PaymentConfig] = Field(default=None)


# Keys are "[VERB ]/path/glob"; a single RouteConfig protects every route
RoutesConfig = Union[RouteConfig, Dict[str, Union[RouteConfig, Dict[str, Any], Money]]]


@dataclass(frozen=True, eq=False)
class RoutePattern:
    """A compiled routes table entry."""

    pattern: re.Pattern
    verb: str
    config: RouteConfig


class Settlement(BaseModel):
    """The result of a successful settlement."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    success: Literal[True] = True
    transaction: str
    network: str
    payer: Optional[str] = None


# Collaborators supplied by framework adapters
PaymentFromRequest = Callable[[Any], Optional[PaymentPayload]]
CanRenderPaywall = Callable[[Any], bool]
ResourceFromRequest = Callable[[Any], Resource]
