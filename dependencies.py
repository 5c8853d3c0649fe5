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

"""FastAPI dependencies for the checkout server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- Database session management (Products and Transactions DBs).
- Service instantiation (payment gateway, audit, stock and checkout services).

Tests replace any of these through `app.dependency_overrides`.
"""

from typing import AsyncGenerator

import config
import db
from fastapi import Depends
from services.audit_service import AuditService
from services.checkout_service import CheckoutService
from services.payment_gateway import MockPaymentGateway
from services.payment_gateway import PaymentGateway
from services.stock_service import StockService
from sqlalchemy.ext.asyncio import AsyncSession


async def get_products_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for Products DB session."""
  async with db.manager.products_session_factory() as session:
    yield session


async def get_transactions_db() -> AsyncGenerator[AsyncSession, None]:
  """Dependency provider for Transactions DB session."""
  async with db.manager.transactions_session_factory() as session:
    yield session


def get_payment_gateway() -> PaymentGateway:
  """Dependency provider for the payment gateway."""
  return MockPaymentGateway(failure_rate=config.get_gateway_failure_rate())


def get_audit_service() -> AuditService:
  """Dependency provider for AuditService."""
  return AuditService(db.manager.transactions_session_factory)


def get_stock_service() -> StockService:
  return StockService()


def get_checkout_service(
    products_session: AsyncSession = Depends(get_products_db),
    transactions_session: AsyncSession = Depends(get_transactions_db),
    payment_gateway: PaymentGateway = Depends(get_payment_gateway),
    stock_service: StockService = Depends(get_stock_service),
    audit_service: AuditService = Depends(get_audit_service),
) -> CheckoutService:
  """Dependency provider for CheckoutService."""
  return CheckoutService(
      products_session,
      transactions_session,
      payment_gateway,
      stock_service,
      audit_service,
      settings=config.get_checkout_settings(),
  )
