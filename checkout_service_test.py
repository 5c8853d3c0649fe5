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

"""Tests for the checkout state machine against temporary SQLite databases."""

import asyncio
import datetime
import inspect
import os
import shutil
import tempfile

from absl.testing import absltest
import config
import db
from enums import CheckoutStatus
from enums import PaymentStatus
from exceptions import CannotCancelError
from exceptions import EmptyCartError
from exceptions import IdempotencyConflictError
from exceptions import InsufficientStockError
from exceptions import InvalidPaymentMethodError
from exceptions import InvalidRequestError
from exceptions import InvalidSessionStateError
from exceptions import OutOfStockError
from exceptions import PaymentFailedError
from exceptions import PaymentNotFoundError
from exceptions import SessionCompletedError
from exceptions import SessionExpiredError
from exceptions import SessionNotFoundError
from exceptions import StockValidationFailedError
from models import CompletionResult
from models import PaymentOutcome
from services.audit_service import AuditService
from services.checkout_service import CheckoutService
from services.payment_gateway import MockPaymentGateway
from services.payment_gateway import PaymentGateway
from services.payment_gateway import PaymentResult
from services.stock_service import StockService
from sqlalchemy import func
from sqlalchemy import select
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

START = datetime.datetime(2026, 3, 1, 12, 0, 0)


class CountingGateway(MockPaymentGateway):
  """Always-approving gateway that counts charges."""

  def __init__(self):
    super().__init__(failure_rate=0, max_delay=0)
    self.charges = 0
    self.refunds = 0

  async def _charge(self, request):
    self.charges += 1
    return await super()._charge(request)

  async def refund_payment(self, gateway_ref, amount):
    self.refunds += 1
    return await super().refund_payment(gateway_ref, amount)


class ScriptedGateway(CountingGateway):
  """Returns the queued results in order, then approves."""

  def __init__(self, *results):
    super().__init__()
    self.results = list(results)

  async def _charge(self, request):
    self.charges += 1
    if self.results:
      return self.results.pop(0)
    return PaymentResult(success=True, gateway_ref="MOCK_SCRIPTED")


class DelayedGateway(CountingGateway):
  """Approves every charge after a fixed delay."""

  def __init__(self, delay):
    super().__init__()
    self.delay = delay

  async def _charge(self, request):
    await asyncio.sleep(self.delay)
    return await super()._charge(request)


class SlowGateway(PaymentGateway):

  async def _charge(self, request):
    await asyncio.sleep(5)
    return PaymentResult(success=True, gateway_ref="MOCK_SLOW")


class CheckoutServiceTest(absltest.TestCase):
  """Drives CheckoutService end to end without the HTTP layer."""

  def setUp(self):
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.products_engine = create_async_engine(
        f"sqlite+aiosqlite:///{os.path.join(self.test_dir, 'products.db')}",
        poolclass=NullPool,
    )
    self.transactions_engine = create_async_engine(
        "sqlite+aiosqlite:///"
        f"{os.path.join(self.test_dir, 'transactions.db')}",
        poolclass=NullPool,
    )
    self.products_session_factory = sessionmaker(
        self.products_engine, expire_on_commit=False, class_=AsyncSession
    )
    self.transactions_session_factory = sessionmaker(
        self.transactions_engine, expire_on_commit=False, class_=AsyncSession
    )
    self.now = START
    self.gateway = CountingGateway()
    self.settings = config.CheckoutSettings()
    asyncio.run(self._init_and_seed())

  def tearDown(self):
    async def dispose_engines():
      await self.products_engine.dispose()
      await self.transactions_engine.dispose()

    asyncio.run(dispose_engines())
    shutil.rmtree(self.test_dir)
    super().tearDown()

  async def _init_and_seed(self):
    async with self.products_engine.begin() as conn:
      await conn.run_sync(db.ProductBase.metadata.create_all)
    async with self.transactions_engine.begin() as conn:
      await conn.run_sync(db.TransactionBase.metadata.create_all)

    async with self.products_session_factory() as session:
      session.add_all([
          db.Product(id="p_tee", name="Tee", base_price=20.0),
          db.Product(
              id="p_mug", name="Mug", base_price=10.0, discount_percentage=10
          ),
          db.ProductVariant(id="v_tee_m", product_id="p_tee", name="M"),
          db.ProductVariant(
              id="v_tee_l", product_id="p_tee", name="L", price=22.0
          ),
      ])
      await session.commit()

    async with self.transactions_session_factory() as session:
      session.add_all([
          db.Inventory(variant_id="v_tee_m", stock=5),
          db.Inventory(variant_id="v_tee_l", stock=1),
          db.CartItem(
              id="item1",
              customer_id="c1",
              product_id="p_tee",
              variant_id="v_tee_m",
              quantity=2,
          ),
          db.CartItem(
              id="item2", customer_id="c1", product_id="p_mug", quantity=1
          ),
          db.CartItem(
              id="item3",
              customer_id="c2",
              product_id="p_tee",
              variant_id="v_tee_l",
              quantity=1,
          ),
          db.CartItem(
              id="item4",
              customer_id="c3",
              product_id="p_tee",
              variant_id="v_tee_l",
              quantity=1,
          ),
      ])
      await session.commit()

  # --- Helpers ---

  async def _acall(self, method, *args, gateway=None, settings=None):
    async with self.products_session_factory() as products_session:
      async with self.transactions_session_factory() as transactions_session:
        service = CheckoutService(
            products_session,
            transactions_session,
            gateway or self.gateway,
            StockService(),
            AuditService(self.transactions_session_factory),
            settings=settings or self.settings,
            clock=lambda: self.now,
        )
        result = getattr(service, method)(*args)
        if inspect.isawaitable(result):
          result = await result
        return result

  def call(self, method, *args, **kwargs):
    return asyncio.run(self._acall(method, *args, **kwargs))

  def _fetch(self, coro_fn):
    async def run():
      async with self.transactions_session_factory() as session:
        return await coro_fn(session)

    return asyncio.run(run())

  def _session_row(self, session_id):
    return self._fetch(lambda s: db.get_checkout_session(s, session_id))

  def _payment_row(self, payment_id):
    return self._fetch(lambda s: db.get_payment(s, payment_id))

  def _stock(self, variant_id):
    return self._fetch(lambda s: db.get_inventory(s, variant_id))

  def _count(self, model):
    async def count(session):
      result = await session.execute(select(func.count()).select_from(model))
      return result.scalar_one()

    return self._fetch(count)

  def _audit_actions(self, entity_id):
    async def actions(session):
      result = await session.execute(
          select(db.AuditLog.action)
          .where(db.AuditLog.entity_id == entity_id)
          .order_by(db.AuditLog.id)
      )
      return list(result.scalars().all())

    return self._fetch(actions)

  def _set_stock(self, variant_id, stock):
    async def set_stock(session):
      await session.execute(
          update(db.Inventory)
          .where(db.Inventory.variant_id == variant_id)
          .values(stock=stock)
      )
      await session.commit()

    self._fetch(set_stock)

  def _set_variant_price(self, variant_id, price):
    async def run():
      async with self.products_session_factory() as session:
        await session.execute(
            update(db.ProductVariant)
            .where(db.ProductVariant.id == variant_id)
            .values(price=price)
        )
        await session.commit()

    asyncio.run(run())

  def _initiate(self, customer="c1", items=("item1", "item2"), key="init-1"):
    return self.call("initiate_checkout", customer, list(items), key)

  def _paid_session(self, customer="c1", items=("item1", "item2"), key="k1"):
    result = self._initiate(customer, items, f"init-{key}")
    self.call("validate_checkout", result.session_id)
    outcome = self.call(
        "process_payment", result.session_id, "MOCK_CARD", f"pay-{key}"
    )
    return result.session_id, outcome.payment_id

  # --- Initiate ---

  def test_initiate_creates_session_with_locked_prices(self):
    result = self._initiate()

    self.assertFalse(result.is_existing)
    self.assertEqual(result.status, CheckoutStatus.INITIATED.value)
    # 2 x 20.00 tee + 1 x 9.00 mug (10% off 10.00)
    self.assertAlmostEqual(result.total_amount, 49.0)
    self.assertEqual(result.expires_at, START + datetime.timedelta(minutes=15))
    by_item = {item.item_id: item for item in result.locked_prices}
    self.assertEqual(by_item["item1"].variant_id, "v_tee_m")
    self.assertEqual(by_item["item1"].final_price, 20.0)
    self.assertAlmostEqual(by_item["item2"].final_price, 9.0)
    self.assertEqual(by_item["item2"].discount_percentage, 10.0)
    self.assertEqual(
        self._audit_actions(result.session_id), ["CHECKOUT_INITIATED"]
    )

  def test_initiate_same_key_returns_existing_session(self):
    first = self._initiate()
    second = self._initiate(items=("item2", "item1"))

    self.assertEqual(first.session_id, second.session_id)
    self.assertTrue(second.is_existing)
    self.assertEqual(self._count(db.CheckoutSession), 1)

  def test_initiate_same_key_different_items_conflicts(self):
    self._initiate()
    with self.assertRaises(IdempotencyConflictError):
      self._initiate(items=("item1",))

  def test_concurrent_initiate_with_same_key_creates_one_session(self):
    async def both():
      return await asyncio.gather(
          self._acall("initiate_checkout", "c1", ["item1", "item2"], "dup"),
          self._acall("initiate_checkout", "c1", ["item1", "item2"], "dup"),
      )

    first, second = asyncio.run(both())

    self.assertEqual(first.session_id, second.session_id)
    self.assertEqual(
        sorted([first.is_existing, second.is_existing]), [False, True]
    )
    self.assertEqual(self._count(db.CheckoutSession), 1)

  def test_initiate_requires_key(self):
    with self.assertRaises(InvalidRequestError):
      self._initiate(key="")

  def test_initiate_with_unknown_items_is_empty_cart(self):
    with self.assertRaises(EmptyCartError):
      self._initiate(items=("nope",))
    # Another customer's line is not part of this cart.
    with self.assertRaises(EmptyCartError):
      self._initiate(items=("item3",), key="init-2")

  def test_initiate_with_insufficient_stock(self):
    self._set_stock("v_tee_m", 1)

    with self.assertRaises(InsufficientStockError) as cm:
      self._initiate()

    self.assertEqual(
        cm.exception.details["details"],
        [{
            "productName": "Tee",
            "variantName": "M",
            "available": 1,
            "requested": 2,
        }],
    )
    self.assertEqual(self._count(db.CheckoutSession), 0)

  # --- Read and expiry ---

  def test_get_session(self):
    result = self._initiate()
    view = self.call("get_session", result.session_id)
    self.assertEqual(view.status, CheckoutStatus.INITIATED.value)
    self.assertEqual(view.customer_id, "c1")
    self.assertEmpty(view.payments)

  def test_get_unknown_session(self):
    with self.assertRaises(SessionNotFoundError):
      self.call("get_session", "missing")

  def test_session_expires_lazily(self):
    result = self._initiate()
    self.now = START + datetime.timedelta(minutes=16)

    with self.assertRaises(SessionExpiredError):
      self.call("get_session", result.session_id)
    self.assertEqual(
        self._session_row(result.session_id).status,
        CheckoutStatus.EXPIRED.value,
    )
    with self.assertRaises(SessionExpiredError):
      self.call("validate_checkout", result.session_id)
    self.assertEqual(
        self._audit_actions(result.session_id),
        ["CHECKOUT_INITIATED", "CHECKOUT_EXPIRED"],
    )

  def test_expiry_refunds_payment_without_order(self):
    session_id, payment_id = self._paid_session()
    self.now = START + datetime.timedelta(hours=1)

    with self.assertRaises(SessionExpiredError):
      self.call("get_session", session_id)

    self.assertEqual(
        self._payment_row(payment_id).status, PaymentStatus.REFUNDED.value
    )
    self.assertEqual(self.gateway.refunds, 1)

  # --- Validate ---

  def test_validate_reports_price_changes_without_repricing(self):
    result = self._initiate()
    self._set_variant_price("v_tee_m", 25.0)

    validation = self.call("validate_checkout", result.session_id)

    self.assertLen(validation.price_changes, 1)
    change = validation.price_changes[0]
    self.assertEqual(change.product_name, "Tee")
    self.assertEqual(change.old_price, 20.0)
    self.assertEqual(change.new_price, 25.0)
    self.assertIsNotNone(validation.note)

    view = self.call("get_session", result.session_id)
    self.assertEqual(view.status, CheckoutStatus.AWAITING_PAYMENT.value)
    self.assertAlmostEqual(view.total_amount, 49.0)

    outcome = self.call(
        "process_payment", result.session_id, "MOCK_CARD", "pay-1"
    )
    self.assertAlmostEqual(self._payment_row(outcome.payment_id).amount, 49.0)

  def test_locked_prices_survive_product_price_changes(self):
    result = self._initiate()
    locked = [item.model_dump() for item in result.locked_prices]

    async def reprice():
      async with self.products_session_factory() as session:
        await session.execute(
            update(db.Product)
            .where(db.Product.id == "p_mug")
            .values(base_price=30.0, discount_percentage=50)
        )
        await session.commit()

    asyncio.run(reprice())

    view = self.call("get_session", result.session_id)
    self.assertEqual([item.model_dump() for item in view.locked_prices], locked)
    self.assertAlmostEqual(view.total_amount, 49.0)

    validation = self.call("validate_checkout", result.session_id)
    self.assertEqual(validation.price_changes[0].old_price, 9.0)
    self.assertEqual(validation.price_changes[0].new_price, 15.0)
    view = self.call("get_session", result.session_id)
    self.assertEqual([item.model_dump() for item in view.locked_prices], locked)
    self.assertAlmostEqual(view.total_amount, 49.0)

  def test_validate_without_price_changes(self):
    result = self._initiate()
    validation = self.call("validate_checkout", result.session_id)
    self.assertIsNone(validation.price_changes)
    self.assertIsNone(validation.note)

  def test_stock_validation_failure_blocks_payment(self):
    result = self._initiate()
    self._set_stock("v_tee_m", 1)

    with self.assertRaises(StockValidationFailedError) as cm:
      self.call("validate_checkout", result.session_id)
    self.assertEqual(cm.exception.details["stockIssues"][0]["available"], 1)
    self.assertEqual(
        self._session_row(result.session_id).status,
        CheckoutStatus.FAILED.value,
    )

    with self.assertRaises(InvalidSessionStateError):
      self.call("process_payment", result.session_id, "MOCK_CARD", "pay-1")
    self.assertEqual(self.gateway.charges, 0)

  def test_validate_completed_session(self):
    session_id, _ = self._paid_session()
    self.call("complete_checkout", session_id)
    with self.assertRaises(SessionCompletedError):
      self.call("validate_checkout", session_id)

  # --- Pay ---

  def test_pay_requires_validation(self):
    result = self._initiate()
    with self.assertRaises(InvalidSessionStateError):
      self.call("process_payment", result.session_id, "MOCK_CARD", "pay-1")

  def test_pay_with_unsupported_method(self):
    result = self._initiate()
    self.call("validate_checkout", result.session_id)

    with self.assertRaises(InvalidPaymentMethodError):
      self.call("process_payment", result.session_id, "BITCOIN", "pay-1")
    self.assertEqual(self._count(db.Payment), 0)

  def test_pay_replay_calls_gateway_once(self):
    result = self._initiate()
    self.call("validate_checkout", result.session_id)

    first = self.call(
        "process_payment", result.session_id, "mock_card", "pay-1"
    )
    second = self.call(
        "process_payment", result.session_id, "MOCK_CARD", "pay-1"
    )

    self.assertFalse(first.is_existing)
    self.assertTrue(second.is_existing)
    self.assertEqual(first.payment_id, second.payment_id)
    self.assertEqual(first.status, PaymentStatus.SUCCEEDED.value)
    self.assertEqual(self.gateway.charges, 1)
    payment = self._payment_row(first.payment_id)
    self.assertEqual(payment.method, "MOCK_CARD")
    self.assertEqual(payment.gateway_ref, first.gateway_ref)
    self.assertEqual(
        self._session_row(result.session_id).status,
        CheckoutStatus.PROCESSING_PAYMENT.value,
    )

  def test_failed_payment_can_be_retried_with_new_key(self):
    self.gateway = ScriptedGateway(
        PaymentResult(
            success=False, error_code="CARD_DECLINED", error_message="Declined"
        )
    )
    result = self._initiate()
    self.call("validate_checkout", result.session_id)

    with self.assertRaises(PaymentFailedError) as cm:
      self.call("process_payment", result.session_id, "MOCK_CARD", "pay-1")
    self.assertEqual(cm.exception.code, "CARD_DECLINED")
    failed_id = cm.exception.details["paymentId"]
    failed = self._payment_row(failed_id)
    self.assertEqual(failed.status, PaymentStatus.FAILED.value)
    self.assertEqual(failed.attempts, 1)
    self.assertEqual(failed.error_message, "Declined")
    self.assertEqual(
        self._session_row(result.session_id).status,
        CheckoutStatus.AWAITING_PAYMENT.value,
    )

    # Replaying the failed key returns the stored failure without a charge.
    replay = self.call(
        "process_payment", result.session_id, "MOCK_CARD", "pay-1"
    )
    self.assertTrue(replay.is_existing)
    self.assertEqual(replay.payment_id, failed_id)
    self.assertEqual(replay.status, PaymentStatus.FAILED.value)
    self.assertEqual(replay.error_code, "CARD_DECLINED")
    self.assertEqual(replay.error_message, "Declined")
    self.assertEqual(self.gateway.charges, 1)

    outcome = self.call(
        "process_payment", result.session_id, "MOCK_CARD", "pay-2"
    )
    self.assertEqual(outcome.status, PaymentStatus.SUCCEEDED.value)
    self.assertNotEqual(outcome.payment_id, failed_id)
    self.assertEqual(self.gateway.charges, 2)

  def test_gateway_timeout_fails_payment(self):
    self.gateway = SlowGateway()
    settings = config.CheckoutSettings(payment_timeout=0.05)
    result = self._initiate()
    self.call("validate_checkout", result.session_id)

    with self.assertRaises(PaymentFailedError) as cm:
      self.call(
          "process_payment",
          result.session_id,
          "MOCK_CARD",
          "pay-1",
          settings=settings,
      )
    self.assertEqual(cm.exception.code, "GATEWAY_TIMEOUT")
    self.assertEqual(
        self._session_row(result.session_id).status,
        CheckoutStatus.AWAITING_PAYMENT.value,
    )

  def test_payment_key_reused_for_other_session(self):
    session_id, _ = self._paid_session(customer="c2", items=("item3",))
    other = self._initiate(customer="c3", items=("item4",), key="init-other")
    self.call("validate_checkout", other.session_id)

    with self.assertRaises(IdempotencyConflictError):
      self.call("process_payment", other.session_id, "MOCK_CARD", "pay-k1")
    self.assertNotEqual(session_id, other.session_id)

  def test_concurrent_payments_with_different_keys_charge_once(self):
    result = self._initiate()
    self.call("validate_checkout", result.session_id)

    async def both():
      return await asyncio.gather(
          self._acall("process_payment", result.session_id, "MOCK_CARD", "a"),
          self._acall("process_payment", result.session_id, "MOCK_CARD", "b"),
          return_exceptions=True,
      )

    results = asyncio.run(both())

    outcomes = [r for r in results if isinstance(r, PaymentOutcome)]
    self.assertLen(outcomes, 1)
    self.assertEqual(outcomes[0].status, PaymentStatus.SUCCEEDED.value)
    self.assertEqual(self.gateway.charges, 1)
    self.assertEqual(self._count(db.Payment), 1)

  def test_charge_finishing_after_cancel_is_refunded(self):
    self.gateway = DelayedGateway(0.3)
    result = self._initiate()
    self.call("validate_checkout", result.session_id)

    async def cancel_soon():
      await asyncio.sleep(0.1)
      return await self._acall("cancel_checkout", result.session_id)

    async def both():
      return await asyncio.gather(
          self._acall("process_payment", result.session_id, "MOCK_CARD", "p"),
          cancel_soon(),
          return_exceptions=True,
      )

    paid, cancelled = asyncio.run(both())

    self.assertIsInstance(paid, InvalidSessionStateError)
    self.assertEqual(cancelled.status, CheckoutStatus.CANCELLED.value)
    payment = self._fetch(lambda s: db.get_payment_by_key(s, "p"))
    self.assertEqual(payment.status, PaymentStatus.REFUNDED.value)
    self.assertIsNone(payment.order_id)
    self.assertEqual(self.gateway.refunds, 1)
    self.assertEqual(
        self._session_row(result.session_id).status,
        CheckoutStatus.CANCELLED.value,
    )

  # --- Complete ---

  def test_complete_creates_order(self):
    session_id, payment_id = self._paid_session()

    result = self.call("complete_checkout", session_id, payment_id)

    self.assertFalse(result.is_existing)
    self.assertEqual(self._stock("v_tee_m"), 3)
    self.assertEqual(
        self._session_row(session_id).status, CheckoutStatus.COMPLETED.value
    )
    self.assertEqual(self._payment_row(payment_id).order_id, result.order_id)
    order = self._fetch(lambda s: db.get_order(s, result.order_id))
    self.assertAlmostEqual(order.total, 49.0)
    self.assertEqual(order.idempotency_key, "init-k1")
    self.assertLen(order.products, 2)
    self.assertEqual(self._count(db.CartItem), 2)
    self.assertEqual(
        self._audit_actions(result.order_id), ["ORDER_CREATED"]
    )
    self.assertEqual(self._audit_actions(session_id)[-1], "CHECKOUT_COMPLETED")

  def test_complete_is_idempotent(self):
    session_id, _ = self._paid_session()

    first = self.call("complete_checkout", session_id)
    second = self.call("complete_checkout", session_id)

    self.assertEqual(first.order_id, second.order_id)
    self.assertTrue(second.is_existing)
    self.assertEqual(self._count(db.Order), 1)
    self.assertEqual(self._stock("v_tee_m"), 3)

  def test_complete_without_payment(self):
    result = self._initiate()
    self.call("validate_checkout", result.session_id)
    with self.assertRaises(PaymentNotFoundError):
      self.call("complete_checkout", result.session_id)

  def test_complete_rejects_payment_of_another_session(self):
    session_id, _ = self._paid_session(customer="c2", items=("item3",))
    _, foreign_payment_id = self._paid_session(
        customer="c1", items=("item1",), key="k2"
    )

    with self.assertRaises(PaymentNotFoundError):
      self.call("complete_checkout", session_id, foreign_payment_id)
    self.assertEqual(self._count(db.Order), 0)

  def test_oversell_refunds_and_fails_session(self):
    first_id, _ = self._paid_session(customer="c2", items=("item3",))
    second_id, second_payment = self._paid_session(
        customer="c3", items=("item4",), key="k2"
    )

    self.call("complete_checkout", first_id)
    with self.assertRaises(OutOfStockError) as cm:
      self.call("complete_checkout", second_id)

    self.assertEqual(cm.exception.details["productName"], "Tee")
    self.assertEqual(self._stock("v_tee_l"), 0)
    self.assertEqual(self._count(db.Order), 1)
    self.assertEqual(
        self._session_row(second_id).status, CheckoutStatus.FAILED.value
    )
    self.assertEqual(
        self._payment_row(second_payment).status, PaymentStatus.REFUNDED.value
    )
    self.assertEqual(self.gateway.refunds, 1)

  def test_concurrent_completions_never_oversell(self):
    first_id, _ = self._paid_session(customer="c2", items=("item3",))
    second_id, _ = self._paid_session(
        customer="c3", items=("item4",), key="k2"
    )

    async def both():
      return await asyncio.gather(
          self._acall("complete_checkout", first_id),
          self._acall("complete_checkout", second_id),
          return_exceptions=True,
      )

    results = asyncio.run(both())

    successes = [r for r in results if isinstance(r, CompletionResult)]
    failures = [r for r in results if isinstance(r, Exception)]
    self.assertLen(successes, 1)
    self.assertLen(failures, 1)
    self.assertEqual(self._stock("v_tee_l"), 0)
    self.assertEqual(self._count(db.Order), 1)

  # --- Cancel ---

  def test_cancel_is_idempotent(self):
    result = self._initiate()
    self.call("validate_checkout", result.session_id)

    first = self.call("cancel_checkout", result.session_id)
    second = self.call("cancel_checkout", result.session_id)

    self.assertEqual(first.status, CheckoutStatus.CANCELLED.value)
    self.assertFalse(first.is_existing)
    self.assertTrue(second.is_existing)
    self.assertEqual(self._stock("v_tee_m"), 5)

  def test_cancel_refunds_unlinked_payment(self):
    session_id, payment_id = self._paid_session()

    self.call("cancel_checkout", session_id)

    self.assertEqual(
        self._payment_row(payment_id).status, PaymentStatus.REFUNDED.value
    )
    with self.assertRaises(PaymentNotFoundError):
      self.call("complete_checkout", session_id)

  def test_cannot_cancel_completed_checkout(self):
    session_id, _ = self._paid_session()
    self.call("complete_checkout", session_id)
    with self.assertRaises(CannotCancelError):
      self.call("cancel_checkout", session_id)

  def test_available_methods(self):
    self.assertEqual(
        self.call("get_available_methods"),
        ["MOCK_CARD", "MOCK_WALLET", "COD"],
    )


if __name__ == "__main__":
  absltest.main()
