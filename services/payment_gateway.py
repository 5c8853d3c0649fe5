#   Copyright 2026 UCP Authors
#
#   Licensed under the Apache License, Version 2.0 (the "License");
#   you may not use this file except in compliance with the License.
#   You may obtain a copy of the License at
#
#       http://www.apache.org/licenses/LICENSE-2.0
#
#   Unless required by applicable law or agreed to in writing, software
#   distributed under the License is distributed on an "AS IS" BASIS,
#   WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#   See the License for the specific language governing permissions and
#   limitations under the License.

"""Payment gateway adapter.

`PaymentGateway` is the contract the checkout service talks to. It bounds
every charge by a timeout and turns timeouts and gateway exceptions into
failed `PaymentResult`s, so callers never see an exception from a charge.
`MockPaymentGateway` simulates a processor with latency and random declines;
replace it with a real processor integration for production.
"""

import asyncio
import logging
import random
import time
from typing import Optional
import uuid

from enums import PaymentMethod
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class PaymentRequest(BaseModel):
  amount: float
  method: str
  idempotency_key: str
  customer_id: str
  metadata: Optional[dict] = None


class PaymentResult(BaseModel):
  success: bool
  gateway_ref: Optional[str] = None
  error_code: Optional[str] = None
  error_message: Optional[str] = None


class PaymentGateway:
  """Base class for payment processors."""

  def validate_payment_method(self, method: Optional[str]) -> bool:
    """Checks the method against the supported set, ignoring case."""
    if not method:
      return False
    return method.upper() in self.get_available_methods()

  def get_available_methods(self) -> list[str]:
    return [m.value for m in PaymentMethod]

  async def process_payment(
      self,
      request: PaymentRequest,
      timeout: float = DEFAULT_TIMEOUT_SECONDS,
  ) -> PaymentResult:
    """Charges the customer, giving up after `timeout` seconds.

    Args:
      request: The charge to make.
      timeout: Maximum number of seconds to wait for the processor.

    Returns:
      The processor's answer. A timeout yields a failed result with code
      GATEWAY_TIMEOUT and any processor error one with code GATEWAY_ERROR.
    """
    start = time.monotonic()
    try:
      result = await asyncio.wait_for(self._charge(request), timeout=timeout)
    except asyncio.TimeoutError:
      logger.error(
          "Payment gateway timed out after %.1fs (key %s)",
          timeout,
          request.idempotency_key,
      )
      return PaymentResult(
          success=False,
          error_code="GATEWAY_TIMEOUT",
          error_message="Payment gateway timeout",
      )
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.error("Payment gateway error: %s", e)
      return PaymentResult(
          success=False,
          error_code="GATEWAY_ERROR",
          error_message=str(e) or "Unknown payment error",
      )

    logger.info(
        "Payment processed in %dms | Success: %s",
        (time.monotonic() - start) * 1000,
        result.success,
    )
    return result

  async def refund_payment(
      self, gateway_ref: str, amount: float
  ) -> PaymentResult:
    """Refunds a previous charge."""
    raise NotImplementedError

  async def _charge(self, request: PaymentRequest) -> PaymentResult:
    raise NotImplementedError


_CARD_FAILURES = (
    ("CARD_DECLINED", "Card declined"),
    ("INSUFFICIENT_FUNDS", "Insufficient funds"),
    ("CARD_EXPIRED", "Card expired"),
    ("INVALID_CARD", "Invalid card number"),
)
_WALLET_FAILURES = (
    ("INSUFFICIENT_BALANCE", "Wallet balance insufficient"),
    ("ACCOUNT_LOCKED", "Wallet account locked"),
)


class MockPaymentGateway(PaymentGateway):
  """Simulates a payment processor with configurable delay and failure rate.

  Cash on delivery always succeeds. Card and wallet payments are declined
  with probability `failure_rate`, using a method-specific error.
  """

  def __init__(
      self,
      failure_rate: float = 0.1,
      min_delay: float = 0.5,
      max_delay: float = 2.0,
      rng: Optional[random.Random] = None,
  ):
    self.failure_rate = failure_rate
    self.min_delay = min_delay
    self.max_delay = max_delay
    self.rng = rng or random.Random()

  async def _charge(self, request: PaymentRequest) -> PaymentResult:
    await self._simulate_latency()
    method = request.method.upper()

    if method == PaymentMethod.COD.value:
      return PaymentResult(success=True, gateway_ref=_make_ref("COD"))

    if self.rng.random() < self.failure_rate:
      failures = _WALLET_FAILURES if "WALLET" in method else _CARD_FAILURES
      code, message = self.rng.choice(failures)
      return PaymentResult(success=False, error_code=code, error_message=message)

    return PaymentResult(success=True, gateway_ref=_make_ref("MOCK"))

  async def refund_payment(
      self, gateway_ref: str, amount: float
  ) -> PaymentResult:
    await self._simulate_latency()
    logger.info("Refunded %.2f for %s", amount, gateway_ref)
    return PaymentResult(success=True, gateway_ref=f"REFUND_{gateway_ref}")

  async def _simulate_latency(self) -> None:
    if self.max_delay <= 0:
      return
    await asyncio.sleep(self.rng.uniform(self.min_delay, self.max_delay))


def _make_ref(prefix: str) -> str:
  return f"{prefix}_{uuid.uuid4().hex[:8].upper()}"
