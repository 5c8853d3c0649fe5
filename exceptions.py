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

"""Custom exceptions for the checkout server."""

from typing import Any, Dict, Optional


class CheckoutError(Exception):
  """Base class for all checkout exceptions.

  `details` is merged into the JSON error body next to `error` and `message`.
  """

  def __init__(
      self,
      message: str,
      code: str = "INTERNAL_ERROR",
      status_code: int = 500,
      details: Optional[Dict[str, Any]] = None,
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    self.details = details or {}
    super().__init__(self.message)


class InvalidRequestError(CheckoutError):
  """Raised when the request is invalid (e.g. missing fields)."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_REQUEST", status_code=400)


class EmptyCartError(CheckoutError):
  """Raised when none of the selected items are in the customer's cart."""

  def __init__(self, message: str = "No selected items found in cart."):
    super().__init__(message, code="EMPTY_CART", status_code=400)


class InsufficientStockError(CheckoutError):
  """Raised at initiation when a line asks for more than is in stock."""

  def __init__(self, issues: list[Dict[str, Any]]):
    super().__init__(
        "Some items have insufficient stock.",
        code="INSUFFICIENT_STOCK",
        status_code=400,
        details={"details": issues},
    )


class IdempotencyConflictError(CheckoutError):
  """Raised when an idempotency key is reused with different parameters."""

  def __init__(self, message: str):
    super().__init__(message, code="IDEMPOTENCY_CONFLICT", status_code=409)


class SessionNotFoundError(CheckoutError):

  def __init__(self, message: str = "Checkout session not found."):
    super().__init__(message, code="SESSION_NOT_FOUND", status_code=404)


class SessionExpiredError(CheckoutError):

  def __init__(self):
    super().__init__(
        "Checkout session has expired. Please start a new checkout.",
        code="SESSION_EXPIRED",
        status_code=410,
    )


class SessionCompletedError(CheckoutError):

  def __init__(self):
    super().__init__(
        "This checkout has already been completed.",
        code="SESSION_COMPLETED",
        status_code=400,
    )


class AlreadyCompletedError(CheckoutError):

  def __init__(self):
    super().__init__(
        "This checkout has already been completed.",
        code="ALREADY_COMPLETED",
        status_code=400,
    )


class InvalidSessionStateError(CheckoutError):
  """Raised when an operation is not allowed in the session's status."""

  def __init__(self, message: str):
    super().__init__(message, code="INVALID_SESSION_STATE", status_code=400)


class StockValidationFailedError(CheckoutError):
  """Raised when re-validation finds a locked line that is no longer in stock."""

  def __init__(self, issues: list[Dict[str, Any]]):
    super().__init__(
        "Some items are no longer available.",
        code="STOCK_VALIDATION_FAILED",
        status_code=400,
        details={"stockIssues": issues},
    )


class InvalidPaymentMethodError(CheckoutError):

  def __init__(self, available: list[str]):
    super().__init__(
        "Invalid payment method. Available methods: " + ", ".join(available),
        code="INVALID_PAYMENT_METHOD",
        status_code=400,
    )


class PaymentFailedError(CheckoutError):
  """Raised when the gateway declines or fails to answer in time."""

  def __init__(
      self,
      message: str,
      code: str = "PAYMENT_FAILED",
      payment_id: Optional[str] = None,
  ):
    super().__init__(
        message,
        code=code,
        status_code=400,
        details={"paymentId": payment_id},
    )


class PaymentNotFoundError(CheckoutError):

  def __init__(self):
    super().__init__(
        "No successful payment found for this checkout.",
        code="PAYMENT_NOT_FOUND",
        status_code=404,
    )


class OutOfStockError(CheckoutError):
  """Raised when a guarded stock decrement loses the race at completion."""

  def __init__(self, product_name: str, variant_name: Optional[str] = None):
    label = f"{product_name} ({variant_name})" if variant_name else product_name
    super().__init__(
        f"Insufficient stock for {label}. Please start a new checkout.",
        code="OUT_OF_STOCK",
        status_code=409,
        details={"productName": product_name, "variantName": variant_name},
    )


class CannotCancelError(CheckoutError):

  def __init__(self):
    super().__init__(
        "Cannot cancel a completed checkout.",
        code="CANNOT_CANCEL",
        status_code=400,
    )
