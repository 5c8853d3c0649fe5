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

"""Effective price resolution for cart lines.

A variant's price overrides the product's base price, and a variant's discount
overrides the product's discount. The final unit price is
`unit_price * (1 - discount / 100)`; no rounding is applied here.
"""

from typing import NamedTuple, Optional

import db
from models import LockedPriceItem

# Two prices closer than this are considered the same.
PRICE_TOLERANCE = 0.01


class PriceCalculation(NamedTuple):
  unit_price: float
  discount_percentage: float
  final_price: float


def calculate_item_price(
    product: db.Product, variant: Optional[db.ProductVariant] = None
) -> PriceCalculation:
  """Resolves the effective unit price of a product or one of its variants.

  Args:
    product: The catalog product.
    variant: The selected variant, if the line has one.

  Returns:
    The unit price before discount, the discount percentage that applies and
    the final unit price.
  """
  if variant is not None and variant.price is not None:
    unit_price = float(variant.price)
  else:
    unit_price = float(product.base_price)

  discount = None
  if variant is not None:
    discount = variant.discount_percentage
  if discount is None:
    discount = product.discount_percentage
  discount = float(discount or 0)

  final_price = unit_price * (1 - discount / 100) if discount > 0 else unit_price
  return PriceCalculation(unit_price, discount, final_price)


def has_price_changed(locked_price: float, current_price: float) -> bool:
  return abs(current_price - locked_price) > PRICE_TOLERANCE


def line_total(item: LockedPriceItem) -> float:
  return item.final_price * item.quantity


def order_total(items: list[LockedPriceItem]) -> float:
  return sum(line_total(item) for item in items)
