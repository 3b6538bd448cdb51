# paygate/x402/engine.py
"""
Framework-agnostic x402 payment enforcement.

PaymentMiddleware.for_routes() compiles a routes table into a
MiddlewareRoutesMap. Framework adapters use it per request:

    middleware = routes_map.match(path, method)
    if middleware is None:
        ...  # route is not protected, pass through
    requirements = middleware.payment_requirements(request)
    payment = await middleware.acquire_payment(request, requirements)
    if payment is None:
        ...  # no payment, render the paywall
    ...      # run the protected handler
    settlement = await payment.settle()  # only if the handler succeeded

Payment problems raise X402Error, which adapters turn into a 402 response.
"""
import logging
from typing import Any, Callable, List, Optional, Sequence

from x402.common import find_matching_payment_requirements, process_price_to_atomic_amount
from x402.facilitator import FacilitatorConfig
from x402.types import PaymentPayload, PaymentRequirements, PaywallConfig

from paygate.x402.errors import PaymentMiddlewareConfigError, X402Error
from paygate.x402.facilitator import Facilitator, FacilitatorFactory, use_facilitator
from paygate.x402.pricing import PriceToAtomicAmount, build_payment_requirements
from paygate.x402.routes import ANY_VERB, compute_route_patterns, find_matching_route
from paygate.x402.types import (
    CanRenderPaywall,
    PaymentFromRequest,
    RouteConfig,
    ResourceFromRequest,
    RoutesConfig,
    Settlement,
)

logger = logging.getLogger(__name__)

RequirementsMatcher = Callable[
    [List[PaymentRequirements], PaymentPayload], Optional[PaymentRequirements]
]


class AcquiredPayment:
    """
    A verified payment that can be settled after serving a response.

    settle() must be called at most once, and only after the protected
    handler has succeeded.
    """

    def __init__(
        self,
        payload: PaymentPayload,
        selected: PaymentRequirements,
        requirements: Sequence[PaymentRequirements],
        settle: Callable[..., Any],
    ):
        self.payload = payload
        self.selected = selected
        self.requirements = list(requirements)
        self._settle = settle

    async def settle(self) -> Settlement:
        """
        Settle the payment through the facilitator.

        Returns:
            Settlement with the transaction hash, network and payer

        Raises:
            X402Error: If the facilitator call fails or reports a failed settlement
        """
        try:
            settle_response = await self._settle(self.payload, self.selected)
        except Exception as e:
            logger.error(f"x402: Payment settlement failed: {e}")
            raise X402Error(e, self.requirements) from e

        if not settle_response.success:
            logger.warning(f"x402: Settlement failed: {settle_response.error_reason}")
            raise X402Error(
                f"Settlement failed: {settle_response.error_reason}",
                self.requirements,
                settle_response.payer,
            )

        logger.info(f"x402: Payment settled in transaction {settle_response.transaction}")
        return Settlement(
            success=True,
            transaction=settle_response.transaction,
            network=settle_response.network,
            payer=settle_response.payer,
        )


class PaymentMiddleware:
    """
    Payment validation and settlement for a single protected route.

    Args:
        pay_to: Address receiving payments
        route: Price, network and settings of the route
        payment_from_request: Extracts the decoded payment payload from a
            request, or returns None when the request carries no payment
        can_render_paywall: Whether an HTML paywall can be shown instead of
            a 402 error when the request carries no payment
        resource_from_request: Derives the resource URL from a request; used
            when the route config has no static resource
        facilitator: Object providing verify() and settle() coroutines
        facilitator_config: Used to create the default facilitator when none
            is given
        paywall_config: Branding for the HTML paywall
        method: HTTP method the route is restricted to, if any
        process_price_fn: Price to atomic amount converter
        find_matching_fn: Selects the requirement matching a payload

    Raises:
        PaymentMiddlewareConfigError: If neither a static resource nor
            resource_from_request is given, or the price is invalid
    """

    def __init__(
        self,
        pay_to: str,
        route: RouteConfig,
        payment_from_request: PaymentFromRequest,
        can_render_paywall: Optional[CanRenderPaywall] = None,
        resource_from_request: Optional[ResourceFromRequest] = None,
        facilitator: Optional[Facilitator] = None,
        facilitator_config: Optional[FacilitatorConfig] = None,
        paywall_config: Optional[PaywallConfig] = None,
        method: Optional[str] = None,
        process_price_fn: PriceToAtomicAmount = process_price_to_atomic_amount,
        find_matching_fn: RequirementsMatcher = find_matching_payment_requirements,
    ):
        self.config = route
        self.paywall_config = paywall_config
        self._facilitator = facilitator or use_facilitator(facilitator_config)
        self._payment_from_request = payment_from_request
        self._can_render_paywall = can_render_paywall
        self._find_matching = find_matching_fn

        static_resource = route.config.resource if route.config else None
        if not static_resource and resource_from_request is None:
            raise PaymentMiddlewareConfigError(
                "Either config.resource or resourceFromRequest must be provided"
            )
        self._resource = static_resource or resource_from_request

        self._payment_requirements = build_payment_requirements(
            pay_to,
            route,
            resource=static_resource or "",
            method=method,
            process_price_fn=process_price_fn,
        )

    @classmethod
    def for_routes(
        cls,
        pay_to: str,
        routes: RoutesConfig,
        payment_from_request: PaymentFromRequest,
        can_render_paywall: Optional[CanRenderPaywall] = None,
        facilitator_config: Optional[FacilitatorConfig] = None,
        paywall_config: Optional[PaywallConfig] = None,
        facilitator_factory: FacilitatorFactory = use_facilitator,
        resource_from_request: Optional[ResourceFromRequest] = None,
    ) -> "MiddlewareRoutesMap":
        """
        Build a PaymentMiddleware for every route of a routes table.

        All routes share one facilitator created by facilitator_factory.

        Returns:
            MiddlewareRoutesMap associating route patterns with middlewares
        """
        facilitator = facilitator_factory(facilitator_config)
        entries = []
        for route_pattern in compute_route_patterns(routes):
            middleware = cls(
                pay_to=pay_to,
                route=route_pattern.config,
                payment_from_request=payment_from_request,
                can_render_paywall=can_render_paywall,
                resource_from_request=resource_from_request,
                facilitator=facilitator,
                paywall_config=paywall_config,
                method=None if route_pattern.verb == ANY_VERB else route_pattern.verb,
            )
            entries.append((route_pattern, middleware))
        return MiddlewareRoutesMap(entries)

    def payment_requirements(self, request: Any) -> List[PaymentRequirements]:
        """
        Build the list of acceptable payment requirements for a request.

        The route's template is reused; only the resource is request specific.
        """
        if callable(self._resource):
            resource = self._resource(request)
        else:
            resource = self._resource
        return [self._payment_requirements.model_copy(update={"resource": resource})]

    async def acquire_payment(
        self,
        request: Any,
        payment_requirements: List[PaymentRequirements],
    ) -> Optional[AcquiredPayment]:
        """
        Extract and verify the payment carried by a request.

        Args:
            request: The incoming request
            payment_requirements: Requirements this route accepts

        Returns:
            AcquiredPayment ready to be settled, or None if the request has no
            payment and a paywall should be shown instead

        Raises:
            X402Error: If the payment is missing, malformed, unmatched or invalid
        """
        try:
            payment = self._payment_from_request(request)
        except Exception as e:
            logger.warning(f"x402: Invalid X-PAYMENT header: {e}")
            raise X402Error(e, payment_requirements) from e

        if payment is None:
            if self._can_render_paywall is not None and self._can_render_paywall(request):
                return None
            raise X402Error("X-PAYMENT header is required", payment_requirements)

        selected = self._find_matching(payment_requirements, payment)
        if selected is None:
            raise X402Error("Unable to find matching payment requirements", payment_requirements)

        verification = await self._facilitator.verify(payment, selected)
        if not verification.is_valid:
            logger.warning(f"x402: Payment verification failed: {verification.invalid_reason}")
            raise X402Error(
                verification.invalid_reason or "Payment verification failed",
                payment_requirements,
                verification.payer,
            )

        logger.info(f"x402: Payment verified for payer {verification.payer}")
        return AcquiredPayment(payment, selected, payment_requirements, self._facilitator.settle)


class MiddlewareRoutesMap(dict):
    """
    Route patterns mapped to their PaymentMiddleware, in declaration order.

    Example:
        routes_map = PaymentMiddleware.for_routes(pay_to, routes, payment_from_request)
        middleware = routes_map.match("/weather", "GET")
    """

    def __init__(self, entries=()):
        super().__init__(entries)
        self._route_patterns = list(self.keys())

    def match(self, path: str, method: str) -> Optional[PaymentMiddleware]:
        """
        Find the middleware protecting a request path and method.

        Returns:
            The PaymentMiddleware of the first matching route, or None if the
            route is not protected
        """
        route = find_matching_route(self._route_patterns, path, method)
        if route is None:
            return None
        return self[route]
