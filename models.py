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

"""Request and response models for the checkout server.

Wire names are camelCase (`customerId`, `lockedPrices`, ...); Python code uses
the snake_case field names. Responses are dumped with `by_alias=True`.
"""

import datetime
from typing import Optional

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
  """Base model exposing camelCase aliases on the wire."""

  model_config = ConfigDict(
      alias_generator=to_camel,
      populate_by_name=True,
      coerce_numbers_to_str=True,
  )


class LockedPriceItem(CamelModel):
  """Price snapshot of one cart line, taken when the checkout starts."""

  item_id: str
  product_id: str
  variant_id: Optional[str] = None
  quantity: int
  unit_price: float
  discount_percentage: float
  final_price: float
  product_name: str
  variant_name: Optional[str] = None
  image: Optional[str] = None


class StockIssue(CamelModel):
  product_name: str
  variant_name: Optional[str] = None
  available: int
  requested: int


class PriceChange(CamelModel):
  product_name: str
  variant_name: Optional[str] = None
  old_price: float
  new_price: float


# --- Requests ---


class InitiateCheckoutRequest(CamelModel):
  customer_id: str = Field(..., min_length=1)
  selected_item_ids: list[str] = Field(..., min_length=1)
  idempotency_key: str = Field(..., min_length=1)


class ProcessPaymentRequest(CamelModel):
  payment_method: str = Field(..., min_length=1)
  idempotency_key: str = Field(..., min_length=1)


class CompleteCheckoutRequest(CamelModel):
  payment_id: Optional[str] = None
  idempotency_key: Optional[str] = None


# --- Results ---


class PaymentView(CamelModel):
  id: str
  amount: float
  method: str
  status: str
  gateway_ref: Optional[str] = None
  error_code: Optional[str] = None
  error_message: Optional[str] = None
  attempts: int = 0
  order_id: Optional[str] = None


class CheckoutSessionView(CamelModel):
  id: str
  customer_id: str
  status: str
  locked_prices: list[LockedPriceItem]
  total_amount: float
  expires_at: datetime.datetime
  payments: list[PaymentView] = []


class InitiateCheckoutResult(CamelModel):
  session_id: str
  status: str
  locked_prices: list[LockedPriceItem]
  total_amount: float
  expires_at: datetime.datetime
  is_existing: bool = False


class ValidationResult(CamelModel):
  price_changes: Optional[list[PriceChange]] = None
  note: Optional[str] = None


class PaymentOutcome(CamelModel):
  payment_id: str
  status: str
  gateway_ref: Optional[str] = None
  error_code: Optional[str] = None
  error_message: Optional[str] = None
  is_existing: bool = False


class CompletionResult(CamelModel):
  order_id: str
  is_existing: bool = False


class CancellationResult(CamelModel):
  session_id: str
  status: str
  is_existing: bool = False
