# paygate/x402/errors.py
"""
Errors raised by the x402 payment engine.

There are two kinds:
- PaymentMiddlewareConfigError: raised while routes are being set up, never
  shown to a client.
- X402Error: raised while handling a request. Serializes to the JSON body of
  a 402 Payment Required response, including every acceptable payment
  requirement so the client can retry with a corrected payment.
"""
from typing import Any, Dict, List, Optional, Sequence, Union

from x402.common import x402_VERSION
from x402.types import PaymentRequirements


class PaymentMiddlewareConfigError(Exception):
    """Thrown when the middleware is misconfigured or encounters an invalid setup."""

    name = "PaymentMiddlewareConfigError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class X402Error(Exception):
    """
    Error raised during the x402 payment flow.

    Args:
        error: An exception or a message describing the issue
        accepts: List of acceptable payment requirements
        payer: Address of the payer, if known
    """

    name = "X402Error"
    x402_version = x402_VERSION

    def __init__(
        self,
        error: Union[BaseException, str],
        accepts: Sequence[PaymentRequirements],
        payer: Optional[str] = None,
    ):
        super().__init__(str(error))
        self.error = error
        self.accepts: List[PaymentRequirements] = list(accepts)
        self.payer = payer

    @property
    def message(self) -> str:
        return str(self.error)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the error into the x402 JSON body for a 402 response.

        Requirement fields and the payer are left out when unset so the
        body matches what clients of other x402 servers receive.
        """
        body: Dict[str, Any] = {
            "x402Version": self.x402_version,
            "error": self.message,
            "accepts": [
                requirement.model_dump(by_alias=True, exclude_none=True)
                for requirement in self.accepts
            ],
        }
        if self.payer is not None:
            body["payer"] = self.payer
        return body
