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

"""Database management and persistence layer for the checkout server.

This module provides the schema definitions, database session management, and
asynchronous data access helpers used by the server. It utilizes SQLAlchemy with
SQLite (via aiosqlite) and implements a multi-database architecture separating
product catalog data from transactional checkout and order data.

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and session
factory
  setup for both 'Products' and 'Transactions' databases.
- WAL Mode: Automatically enables SQLite Write-Ahead Logging so that
concurrent
  checkouts can read while another one commits.
- Declarative Models: Defines tables for products, variants, inventory, cart
  items, checkout sessions, payments, orders and the audit trail.
- Data Access Helpers: A suite of asynchronous functions for the operations the
  checkout state machine needs, including the guarded stock decrement.
"""

import datetime
import logging
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

from enums import CheckoutStatus
from enums import PaymentStatus
from sqlalchemy import Column
from sqlalchemy import DateTime
from sqlalchemy import delete
from sqlalchemy import Float
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import text
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

ProductBase = declarative_base()
TransactionBase = declarative_base()


def utcnow() -> datetime.datetime:
  """Returns the current UTC time as a naive datetime, as SQLite stores it."""
  return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class DatabaseManager:
  """Manages database engines and sessions without using global variables."""

  def __init__(self) -> None:
    self.products_engine: Optional[AsyncEngine] = None
    self.transactions_engine: Optional[AsyncEngine] = None
    self.products_session_factory: Optional[sessionmaker] = None
    self.transactions_session_factory: Optional[sessionmaker] = None

  async def init_dbs(self, products_path: str, transactions_path: str) -> None:
    """Initializes database engines and creates tables."""
    # Products DB Setup
    prod_url = f"sqlite+aiosqlite:///{products_path}"
    self.products_engine = create_async_engine(prod_url, echo=False)

    # Enable WAL mode for Products DB
    async with self.products_engine.connect() as conn:
      await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.products_session_factory = sessionmaker(
        self.products_engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.products_engine.begin() as conn:
      await conn.run_sync(ProductBase.metadata.create_all)

    # Transactions DB Setup (includes Inventory)
    trans_url = f"sqlite+aiosqlite:///{transactions_path}"
    self.transactions_engine = create_async_engine(trans_url, echo=False)

    # Enable WAL mode for Transactions DB
    async with self.transactions_engine.connect() as conn:
      await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.transactions_session_factory = sessionmaker(
        self.transactions_engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.transactions_engine.begin() as conn:
      await conn.run_sync(TransactionBase.metadata.create_all)

  async def close(self) -> None:
    """Closes all database engines."""
    if self.products_engine:
      await self.products_engine.dispose()
    if self.transactions_engine:
      await self.transactions_engine.dispose()


# Global manager instance (to be initialized via lifespan)
manager = DatabaseManager()


class Product(ProductBase):
  __tablename__ = "products"

  id = Column(String, primary_key=True)
  name = Column(String)
  image = Column(String, nullable=True)
  base_price = Column(Float)
  discount_percentage = Column(Float, nullable=True)


class ProductVariant(ProductBase):
  __tablename__ = "product_variants"

  id = Column(String, primary_key=True)
  product_id = Column(String, ForeignKey("products.id"), index=True)
  name = Column(String)
  # Overrides Product.base_price / discount_percentage when set
  price = Column(Float, nullable=True)
  discount_percentage = Column(Float, nullable=True)
  image = Column(String, nullable=True)


class Inventory(TransactionBase):
  __tablename__ = "inventory"

  variant_id = Column(String, primary_key=True)
  stock = Column(Integer, default=0)


class CartItem(TransactionBase):
  __tablename__ = "cart_items"

  id = Column(String, primary_key=True)
  customer_id = Column(String, index=True)
  product_id = Column(String)
  variant_id = Column(String, nullable=True)
  quantity = Column(Integer)


class CheckoutSession(TransactionBase):
  __tablename__ = "checkout_sessions"

  id = Column(String, primary_key=True)
  idempotency_key = Column(String, unique=True, nullable=False)
  request_hash = Column(String)
  customer_id = Column(String, index=True)
  # SQLAlchemy JSON type handles serialization automatically
  cart_snapshot = Column(JSON)
  locked_prices = Column(JSON)
  total_amount = Column(Float)
  status = Column(String)
  expires_at = Column(DateTime)
  created_at = Column(DateTime)
  updated_at = Column(DateTime)


class Payment(TransactionBase):
  __tablename__ = "payments"

  id = Column(String, primary_key=True)
  idempotency_key = Column(String, unique=True, nullable=False)
  checkout_session_id = Column(
      String, ForeignKey("checkout_sessions.id"), index=True
  )
  amount = Column(Float)
  method = Column(String)
  status = Column(String)
  gateway_ref = Column(String, nullable=True)
  error_code = Column(String, nullable=True)
  error_message = Column(String, nullable=True)
  attempts = Column(Integer, default=0)
  order_id = Column(String, nullable=True)
  created_at = Column(DateTime)
  updated_at = Column(DateTime)


class Order(TransactionBase):
  __tablename__ = "orders"

  id = Column(String, primary_key=True)
  checkout_session_id = Column(String, unique=True, nullable=False)
  idempotency_key = Column(String, unique=True)
  customer_id = Column(String, index=True)
  products = Column(JSON)
  total = Column(Float)
  discount = Column(Float, default=0)
  status = Column(String)
  created_at = Column(DateTime)


class AuditLog(TransactionBase):
  __tablename__ = "audit_logs"

  id = Column(Integer, primary_key=True, autoincrement=True)
  timestamp = Column(String)
  action = Column(String)
  entity_type = Column(String)
  entity_id = Column(String)
  customer_id = Column(String, nullable=True)
  data = Column(JSON, nullable=True)
  error_message = Column(String, nullable=True)


# --- Data Access Helpers ---


async def get_product(
    session: AsyncSession, product_id: str
) -> Optional[Product]:
  """Retrieves a product by ID."""
  return await session.get(Product, product_id)


async def get_variant(
    session: AsyncSession, variant_id: str
) -> Optional[ProductVariant]:
  """Retrieves a product variant by ID."""
  return await session.get(ProductVariant, variant_id)


async def get_inventory(
    session: AsyncSession, variant_id: str
) -> Optional[int]:
  """Retrieves the stock count for a variant."""
  result = await session.execute(
      select(Inventory.stock).where(Inventory.variant_id == variant_id)
  )
  return result.scalar_one_or_none()


async def get_stock_levels(
    session: AsyncSession, variant_ids: Iterable[str]
) -> Dict[str, int]:
  """Retrieves stock counts for several variants in a single query.

  Args:
    session: The transactions database session.
    variant_ids: The variant IDs to look up.

  Returns:
    A mapping of variant ID to stock. Variants without an inventory row are
    absent from the mapping.
  """
  ids = list(set(variant_ids))
  if not ids:
    return {}
  result = await session.execute(
      select(Inventory.variant_id, Inventory.stock).where(
          Inventory.variant_id.in_(ids)
      )
  )
  return {variant_id: stock for variant_id, stock in result.all()}


async def reserve_stock(
    session: AsyncSession, variant_id: str, quantity: int
) -> bool:
  """Atomically decrements stock if sufficient stock exists."""
  stmt = (
      update(Inventory)
      .where(Inventory.variant_id == variant_id)
      .where(Inventory.stock >= quantity)
      .values(stock=Inventory.stock - quantity)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def get_cart_items(
    session: AsyncSession, customer_id: str, item_ids: List[str]
) -> List[CartItem]:
  """Retrieves the customer's cart lines restricted to the given IDs."""
  result = await session.execute(
      select(CartItem)
      .where(CartItem.customer_id == customer_id)
      .where(CartItem.id.in_(item_ids))
      .order_by(CartItem.id)
  )
  return list(result.scalars().all())


async def delete_cart_items(
    session: AsyncSession, item_ids: List[str]
) -> None:
  """Removes purchased lines from the cart."""
  await session.execute(delete(CartItem).where(CartItem.id.in_(item_ids)))


async def get_checkout_session(
    session: AsyncSession, session_id: str
) -> Optional[CheckoutSession]:
  """Retrieves a checkout session by ID."""
  return await session.get(CheckoutSession, session_id)


async def get_checkout_session_by_key(
    session: AsyncSession, idempotency_key: str
) -> Optional[CheckoutSession]:
  """Retrieves a checkout session by its idempotency key."""
  result = await session.execute(
      select(CheckoutSession).where(
          CheckoutSession.idempotency_key == idempotency_key
      )
  )
  return result.scalar_one_or_none()


async def save_checkout_session(
    session: AsyncSession, checkout_session: CheckoutSession
) -> None:
  """Inserts a new checkout session.

  The flush makes a unique-key violation surface here as an IntegrityError.
  """
  session.add(checkout_session)
  await session.flush()


async def set_checkout_status(
    session: AsyncSession,
    checkout_session: CheckoutSession,
    status: CheckoutStatus,
) -> None:
  """Updates the status of a checkout session."""
  checkout_session.status = status.value
  checkout_session.updated_at = utcnow()
  await session.flush()


async def claim_for_payment(
    session: AsyncSession, checkout_session_id: str
) -> bool:
  """Atomically moves an AWAITING_PAYMENT session to PROCESSING_PAYMENT."""
  stmt = (
      update(CheckoutSession)
      .where(CheckoutSession.id == checkout_session_id)
      .where(CheckoutSession.status == CheckoutStatus.AWAITING_PAYMENT.value)
      .values(
          status=CheckoutStatus.PROCESSING_PAYMENT.value, updated_at=utcnow()
      )
      .execution_options(synchronize_session=False)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def get_payment(
    session: AsyncSession, payment_id: str
) -> Optional[Payment]:
  """Retrieves a payment by ID."""
  return await session.get(Payment, payment_id)


async def get_payment_by_key(
    session: AsyncSession, idempotency_key: str
) -> Optional[Payment]:
  """Retrieves a payment by its idempotency key."""
  result = await session.execute(
      select(Payment).where(Payment.idempotency_key == idempotency_key)
  )
  return result.scalar_one_or_none()


async def get_payments_for_session(
    session: AsyncSession, session_id: str
) -> List[Payment]:
  """Retrieves all payment attempts of a checkout session, oldest first."""
  result = await session.execute(
      select(Payment)
      .where(Payment.checkout_session_id == session_id)
      .order_by(Payment.created_at)
  )
  return list(result.scalars().all())


async def get_successful_payment(
    session: AsyncSession, session_id: str
) -> Optional[Payment]:
  """Retrieves the succeeded payment of a checkout session, if any."""
  result = await session.execute(
      select(Payment)
      .where(Payment.checkout_session_id == session_id)
      .where(Payment.status == PaymentStatus.SUCCEEDED.value)
      .limit(1)
  )
  return result.scalar_one_or_none()


async def save_payment(session: AsyncSession, payment: Payment) -> None:
  """Inserts a new payment, surfacing unique-key violations on flush."""
  session.add(payment)
  await session.flush()


async def link_payment_to_order(
    session: AsyncSession, payment_id: str, order_id: str
) -> None:
  """Points a payment at the order it paid for."""
  await session.execute(
      update(Payment)
      .where(Payment.id == payment_id)
      .values(order_id=order_id, updated_at=utcnow())
  )


async def create_order(session: AsyncSession, order: Order) -> None:
  """Inserts a new order, surfacing unique-key violations on flush."""
  session.add(order)
  await session.flush()


async def get_order(session: AsyncSession, order_id: str) -> Optional[Order]:
  """Retrieves an order by ID."""
  return await session.get(Order, order_id)


async def get_order_for_session(
    session: AsyncSession, session_id: str
) -> Optional[Order]:
  """Retrieves the order created by a checkout session, if any."""
  result = await session.execute(
      select(Order).where(Order.checkout_session_id == session_id)
  )
  return result.scalar_one_or_none()


async def log_audit_event(
    session: AsyncSession,
    action: str,
    entity_type: str,
    entity_id: str,
    customer_id: Optional[str] = None,
    data: Optional[Dict[str, Any]] = None,
    error_message: Optional[str] = None,
) -> None:
  """Appends an entry to the audit trail."""
  entry = AuditLog(
      timestamp=datetime.datetime.now(datetime.timezone.utc).isoformat(),
      action=action,
      entity_type=entity_type,
      entity_id=entity_id,
      customer_id=customer_id,
      data=data,
      error_message=error_message,
  )
  session.add(entry)
