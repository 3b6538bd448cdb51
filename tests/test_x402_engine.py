# tests/test_x402_engine.py
"""
Unit tests for the payment engine: PaymentMiddleware, AcquiredPayment and
MiddlewareRoutesMap.

Facilitator calls are mocked; coroutines are driven with asyncio.run.
"""
import asyncio
import pytest
from unittest.mock import patch, MagicMock, AsyncMock

from x402.types import PaymentPayload, SettleResponse, VerifyResponse

from paygate.x402.engine import AcquiredPayment, MiddlewareRoutesMap, PaymentMiddleware
from paygate.x402.errors import PaymentMiddlewareConfigError, X402Error
from paygate.x402.types import PaymentConfig, RouteConfig, Settlement

PAY_TO = "0xBAc675C310721717Cd4A37F6cbeA1F081b1C2a07"
PAYER = "0x857b06519E91e3A54538791bDbb0E22373e36b66"


def make_payload(network: str = "base") -> PaymentPayload:
    """Create a signed-looking exact EVM payment payload."""
    return PaymentPayload.model_validate({
        "x402Version": 1,
        "scheme": "exact",
        "network": network,
        "payload": {
            "signature": "0x" + "ab" * 65,
            "authorization": {
                "from": PAYER,
                "to": PAY_TO,
                "value": "10000",
                "validAfter": "0",
                "validBefore": "9999999999",
                "nonce": "0x" + "00" * 32,
            },
        },
    })


def make_facilitator(verify_response=None, settle_response=None) -> MagicMock:
    """Create a facilitator whose verify/settle coroutines are mocked."""
    facilitator = MagicMock()
    facilitator.verify = AsyncMock(
        return_value=verify_response or VerifyResponse(is_valid=True, invalid_reason=None, payer=PAYER)
    )
    facilitator.settle = AsyncMock(
        return_value=settle_response or SettleResponse(
            success=True, transaction="0x123", network="base", payer=PAYER
        )
    )
    return facilitator


def make_middleware(**overrides) -> PaymentMiddleware:
    kwargs = dict(
        pay_to=PAY_TO,
        route=RouteConfig(
            price="$0.01", network="base", config=PaymentConfig(resource="res://test")
        ),
        payment_from_request=lambda request: None,
        facilitator=make_facilitator(),
    )
    kwargs.update(overrides)
    return PaymentMiddleware(**kwargs)


class TestPaymentMiddlewareConstructor:
    """Test construction-time validation."""

    def test_requires_resource(self):
        """Either a static resource or resource_from_request is required."""
        with pytest.raises(PaymentMiddlewareConfigError) as exc_info:
            make_middleware(route=RouteConfig(price="$0.01", network="base"))
        assert str(exc_info.value) == "Either config.resource or resourceFromRequest must be provided"

    def test_invalid_price(self):
        """Invalid prices fail construction."""
        with pytest.raises(PaymentMiddlewareConfigError):
            make_middleware(
                route=RouteConfig(
                    price="💩", network="base", config=PaymentConfig(resource="res://test")
                )
            )

    def test_converter_error(self):
        """Errors reported by the price converter fail construction."""
        with pytest.raises(PaymentMiddlewareConfigError, match="Oops"):
            make_middleware(process_price_fn=MagicMock(side_effect=ValueError("Oops")))

    def test_no_network_io_at_construction(self):
        """Building requirements never calls the facilitator."""
        facilitator = make_facilitator()
        make_middleware(facilitator=facilitator)
        facilitator.verify.assert_not_called()
        facilitator.settle.assert_not_called()

    @patch("paygate.x402.engine.use_facilitator")
    def test_default_facilitator_from_config(self, created):
        """Without a facilitator one is created from facilitator_config."""
        created.return_value = make_facilitator()

        make_middleware(facilitator=None, facilitator_config={"url": "https://facilitator.example"})

        created.assert_called_once_with({"url": "https://facilitator.example"})


class TestPaymentRequirements:
    """Test per-request payment requirements."""

    def test_static_resource(self):
        """The static resource is used for every request."""
        middleware = make_middleware()
        requirements = middleware.payment_requirements(object())

        assert len(requirements) == 1
        req = requirements[0]
        assert req.resource == "res://test"
        assert req.network == "base"
        assert req.max_amount_required == "10000"
        assert req.pay_to.lower() == PAY_TO.lower()
        assert req.asset.lower() == "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"

    def test_resource_from_request(self):
        """The resource is derived from the request when not static."""
        resource_from_request = MagicMock(side_effect=lambda request: f"/dynamic/{request['slug']}")
        middleware = make_middleware(
            route=RouteConfig(price="$0.01", network="base"),
            resource_from_request=resource_from_request,
        )
        fake_request = {"slug": "abc123"}

        requirements = middleware.payment_requirements(fake_request)

        assert requirements[0].resource == "/dynamic/abc123"
        resource_from_request.assert_called_once_with(fake_request)

    def test_template_not_mutated(self):
        """Per-request resources do not leak between requests."""
        middleware = make_middleware(
            route=RouteConfig(price="$0.01", network="base"),
            resource_from_request=lambda request: request,
        )
        first = middleware.payment_requirements("/one")[0]
        second = middleware.payment_requirements("/two")[0]

        assert first.resource == "/one"
        assert second.resource == "/two"
        assert first.max_amount_required == second.max_amount_required == "10000"


class TestAcquirePayment:
    """Test the payment acquisition state machine."""

    def test_valid_payment(self):
        """A verified payload yields an AcquiredPayment."""
        payload = make_payload()
        facilitator = make_facilitator()
        middleware = make_middleware(
            payment_from_request=lambda request: payload, facilitator=facilitator
        )
        requirements = middleware.payment_requirements({})

        payment = asyncio.run(middleware.acquire_payment({}, requirements))

        assert isinstance(payment, AcquiredPayment)
        assert payment.payload is payload
        assert payment.selected == requirements[0]
        assert payment.requirements == requirements
        facilitator.verify.assert_awaited_once_with(payload, requirements[0])
        facilitator.settle.assert_not_called()

    def test_no_payment_paywall(self):
        """No payload and a renderable paywall returns None."""
        middleware = make_middleware(can_render_paywall=lambda request: True)
        assert asyncio.run(middleware.acquire_payment({}, [])) is None

    def test_no_payment_no_paywall(self):
        """No payload and no paywall is a 402 error."""
        middleware = make_middleware(can_render_paywall=lambda request: False)
        requirements = middleware.payment_requirements({})

        with pytest.raises(X402Error) as exc_info:
            asyncio.run(middleware.acquire_payment({}, requirements))

        assert "X-PAYMENT header is required" in str(exc_info.value)
        assert exc_info.value.accepts == requirements
        assert exc_info.value.payer is None

    def test_no_payment_without_predicate(self):
        """Without a paywall predicate a missing payment is an error."""
        middleware = make_middleware()
        with pytest.raises(X402Error, match="X-PAYMENT header is required"):
            asyncio.run(middleware.acquire_payment({}, []))

    def test_extractor_failure(self):
        """Extractor exceptions become 402 errors carrying all requirements."""
        facilitator = make_facilitator()
        middleware = make_middleware(
            payment_from_request=MagicMock(side_effect=ValueError("bad header")),
            facilitator=facilitator,
        )
        requirements = middleware.payment_requirements({})

        with pytest.raises(X402Error) as exc_info:
            asyncio.run(middleware.acquire_payment({}, requirements))

        assert str(exc_info.value) == "bad header"
        assert isinstance(exc_info.value.__cause__, ValueError)
        assert exc_info.value.accepts == requirements
        facilitator.verify.assert_not_called()

    def test_no_matching_requirements(self):
        """A payload for another network matches nothing."""
        facilitator = make_facilitator()
        middleware = make_middleware(
            payment_from_request=lambda request: make_payload(network="base-sepolia"),
            facilitator=facilitator,
        )
        requirements = middleware.payment_requirements({})

        with pytest.raises(X402Error, match="Unable to find matching payment requirements"):
            asyncio.run(middleware.acquire_payment({}, requirements))
        facilitator.verify.assert_not_called()

    def test_no_requirements_at_all(self):
        """An empty requirement list matches nothing."""
        middleware = make_middleware(payment_from_request=lambda request: make_payload())
        with pytest.raises(X402Error, match="Unable to find matching payment requirements"):
            asyncio.run(middleware.acquire_payment({}, []))

    def test_verification_invalid(self):
        """Invalid payments raise with the facilitator's reason and payer."""
        facilitator = make_facilitator(
            verify_response=VerifyResponse(
                is_valid=False, invalid_reason="insufficient_funds", payer="0xdef"
            )
        )
        middleware = make_middleware(
            payment_from_request=lambda request: make_payload(), facilitator=facilitator
        )
        requirements = middleware.payment_requirements({})

        with pytest.raises(X402Error) as exc_info:
            asyncio.run(middleware.acquire_payment({}, requirements))

        assert "insufficient_funds" in str(exc_info.value)
        assert exc_info.value.payer == "0xdef"
        facilitator.settle.assert_not_called()

    def test_verification_invalid_without_reason(self):
        """A missing reason falls back to a generic message."""
        facilitator = make_facilitator(
            verify_response=VerifyResponse(is_valid=False, invalid_reason=None, payer=None)
        )
        middleware = make_middleware(
            payment_from_request=lambda request: make_payload(), facilitator=facilitator
        )
        requirements = middleware.payment_requirements({})

        with pytest.raises(X402Error, match="Payment verification failed"):
            asyncio.run(middleware.acquire_payment({}, requirements))

    def test_verifier_exception_propagates(self):
        """Errors raised by the verifier itself are not swallowed."""
        facilitator = make_facilitator()
        facilitator.verify.side_effect = ConnectionError("facilitator down")
        middleware = make_middleware(
            payment_from_request=lambda request: make_payload(), facilitator=facilitator
        )
        requirements = middleware.payment_requirements({})

        with pytest.raises(ConnectionError):
            asyncio.run(middleware.acquire_payment({}, requirements))

    def test_custom_matcher(self):
        """The requirement matcher can be injected."""
        matcher = MagicMock(return_value=None)
        payload = make_payload()
        middleware = make_middleware(
            payment_from_request=lambda request: payload, find_matching_fn=matcher
        )
        requirements = middleware.payment_requirements({})

        with pytest.raises(X402Error):
            asyncio.run(middleware.acquire_payment({}, requirements))
        matcher.assert_called_once_with(requirements, payload)


class TestAcquiredPayment:
    """Test the settlement capability."""

    def make_payment(self, settle):
        requirements = make_middleware().payment_requirements({})
        return AcquiredPayment(make_payload(), requirements[0], requirements, settle)

    def test_settle_success(self):
        """Successful settlement returns the settler's result."""
        settle = AsyncMock(return_value=SettleResponse(
            success=True, transaction="0x123", network="base", payer="0xabc"
        ))
        payment = self.make_payment(settle)

        result = asyncio.run(payment.settle())

        assert result == Settlement(success=True, transaction="0x123", network="base", payer="0xabc")
        settle.assert_awaited_once_with(payment.payload, payment.selected)

    def test_settle_failure(self):
        """A failed settlement raises with the error reason and payer."""
        settle = AsyncMock(return_value=SettleResponse(
            success=False,
            error_reason="insufficient_funds",
            transaction="0x123",
            network="base",
            payer="0xabc",
        ))
        payment = self.make_payment(settle)

        with pytest.raises(X402Error) as exc_info:
            asyncio.run(payment.settle())

        assert str(exc_info.value) == "Settlement failed: insufficient_funds"
        assert exc_info.value.payer == "0xabc"
        assert exc_info.value.accepts == payment.requirements

    def test_settle_exception(self):
        """Settler exceptions become 402 errors without a payer."""
        settle = AsyncMock(side_effect=RuntimeError("network unreachable"))
        payment = self.make_payment(settle)

        with pytest.raises(X402Error) as exc_info:
            asyncio.run(payment.settle())

        assert str(exc_info.value) == "network unreachable"
        assert exc_info.value.payer is None
        assert isinstance(exc_info.value.__cause__, RuntimeError)


class TestForRoutes:
    """Test building middlewares for a routes table."""

    def test_match_returns_route_middleware(self):
        """Each route gets its own middleware, found by match()."""
        facilitator = make_facilitator()
        factory = MagicMock(return_value=facilitator)

        routes_map = PaymentMiddleware.for_routes(
            PAY_TO,
            {
                "GET /weather/*": RouteConfig(price="$0.01", network="base"),
                "/premium": RouteConfig(price="$1.00", network="base"),
            },
            payment_from_request=lambda request: None,
            facilitator_config={"url": "https://facilitator.example"},
            facilitator_factory=factory,
            resource_from_request=lambda request: "https://api.example/resource",
        )

        assert isinstance(routes_map, MiddlewareRoutesMap)
        assert len(routes_map) == 2
        factory.assert_called_once_with({"url": "https://facilitator.example"})

        weather = routes_map.match("/weather/today", "GET")
        premium = routes_map.match("/premium", "POST")
        assert weather.payment_requirements({})[0].max_amount_required == "10000"
        assert premium.payment_requirements({})[0].max_amount_required == "1000000"

    def test_no_match(self):
        """Unprotected requests match nothing."""
        routes_map = PaymentMiddleware.for_routes(
            PAY_TO,
            {"GET /weather": RouteConfig(price="$0.01", network="base")},
            payment_from_request=lambda request: None,
            facilitator_factory=lambda config: make_facilitator(),
            resource_from_request=lambda request: "/weather",
        )
        assert routes_map.match("/weather", "POST") is None
        assert routes_map.match("/news", "GET") is None

    def test_empty_routes(self):
        """An empty routes table protects nothing."""
        routes_map = PaymentMiddleware.for_routes(
            PAY_TO,
            {},
            payment_from_request=lambda request: None,
            facilitator_factory=lambda config: make_facilitator(),
        )
        assert len(routes_map) == 0
        assert routes_map.match("/weather", "GET") is None

    def test_missing_resource_fails(self):
        """Routes without any resource source fail at setup."""
        with pytest.raises(PaymentMiddlewareConfigError):
            PaymentMiddleware.for_routes(
                PAY_TO,
                {"/weather": RouteConfig(price="$0.01", network="base")},
                payment_from_request=lambda request: None,
                facilitator_factory=lambda config: make_facilitator(),
            )
