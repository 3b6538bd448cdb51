# paygate/x402/__init__.py
"""
x402 Payment Protocol enforcement.

Key components:
- routes: route pattern compilation and matching
- pricing: payment requirement construction
- engine: payment acquisition, verification and settlement
- facilitator: verify/settle strategy backed by the x402 SDK
- middleware: FastAPI middleware binding the engine to HTTP

Configuration is loaded from environment variables via paygate.core.config.
"""
from paygate.x402.engine import AcquiredPayment, MiddlewareRoutesMap, PaymentMiddleware
from paygate.x402.errors import PaymentMiddlewareConfigError, X402Error
from paygate.x402.types import PaymentConfig, RouteConfig, Settlement

__version__ = "0.1.0"

__all__ = [
    "AcquiredPayment",
    "MiddlewareRoutesMap",
    "PaymentConfig",
    "PaymentMiddleware",
    "PaymentMiddlewareConfigError",
    "RouteConfig",
    "Settlement",
    "X402Error",
]
