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

"""Audit trail for checkout, payment and order events.

Entries go to the `audit` logger and to the `audit_logs` table. Each write
uses its own session so that audit rows neither join nor roll back with the
caller's transaction, and a failing write is logged and dropped.
"""

import json
import logging
from typing import Any, Callable, Dict, Optional

import db
from enums import AuditEntity
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")


class AuditService:
  """Write-only sink for state transitions."""

  def __init__(
      self, session_factory: Optional[Callable[[], AsyncSession]] = None
  ):
    self.session_factory = session_factory

  async def log(
      self,
      action: str,
      entity_type: AuditEntity,
      entity_id: str,
      customer_id: Optional[str] = None,
      data: Optional[Dict[str, Any]] = None,
      error: Optional[str] = None,
  ) -> None:
    """Records one event."""
    audit_logger.info(
        "%s | %s:%s | customer:%s%s",
        action,
        entity_type.value,
        entity_id,
        customer_id,
        f" | {json.dumps(data, default=str)}" if data else "",
    )
    if error:
      audit_logger.error(
          "%s | %s:%s | %s", action, entity_type.value, entity_id, error
      )

    if self.session_factory is None:
      return
    try:
      async with self.session_factory() as session:
        await db.log_audit_event(
            session,
            action=action,
            entity_type=entity_type.value,
            entity_id=entity_id,
            customer_id=customer_id,
            data=data,
            error_message=error,
        )
        await session.commit()
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.error("Failed to persist audit event %s: %s", action, e)

  async def log_checkout(
      self,
      action: str,
      session_id: str,
      customer_id: str,
      data: Optional[Dict[str, Any]] = None,
      error: Optional[str] = None,
  ) -> None:
    await self.log(
        action, AuditEntity.CHECKOUT, session_id, customer_id, data, error
    )

  async def log_payment(
      self,
      action: str,
      payment_id: str,
      customer_id: str,
      data: Optional[Dict[str, Any]] = None,
      error: Optional[str] = None,
  ) -> None:
    await self.log(
        action, AuditEntity.PAYMENT, payment_id, customer_id, data, error
    )

  async def log_order(
      self,
      action: str,
      order_id: str,
      customer_id: str,
      data: Optional[Dict[str, Any]] = None,
      error: Optional[str] = None,
  ) -> None:
    await self.log(
        action, AuditEntity.ORDER, order_id, customer_id, data, error
    )
