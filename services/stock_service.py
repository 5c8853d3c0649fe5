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

"""Stock service for checking requested quantities against live inventory.

Only lines that reference a variant are stock-tracked. A variant without an
inventory row is treated as having no stock.
"""

from typing import List

import db
from models import LockedPriceItem
from models import StockIssue
from sqlalchemy.ext.asyncio import AsyncSession


class StockService:
  """Service for handling stock availability checks."""

  async def find_shortfalls(
      self,
      session: AsyncSession,
      lines: List[LockedPriceItem],
  ) -> List[StockIssue]:
    """Reports every line whose requested quantity exceeds current stock.

    Args:
      session: The transactions database session holding the inventory.
      lines: The lines to check.

    Returns:
      One StockIssue per short line, in the order of `lines`. Empty when
      everything is available.
    """
    tracked = [line for line in lines if line.variant_id]
    stock_levels = await db.get_stock_levels(
        session, [line.variant_id for line in tracked]
    )

    issues = []
    for line in tracked:
      available = stock_levels.get(line.variant_id, 0)
      if available < line.quantity:
        issues.append(
            StockIssue(
                product_name=line.product_name,
                variant_name=line.variant_name,
                available=available,
                requested=line.quantity,
            )
        )
    return issues
