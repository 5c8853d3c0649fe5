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

"""Checkout service for managing the lifecycle of checkout sessions.

This module provides the `CheckoutService` class, which drives a checkout
through its state machine:

  INITIATED -> VALIDATING -> AWAITING_PAYMENT -> PROCESSING_PAYMENT -> COMPLETED

with the side states FAILED, CANCELLED and EXPIRED.

Key responsibilities include:
- Creating checkout sessions with idempotency support and locked prices.
- Lazily expiring sessions whenever they are read.
- Re-validating stock before payment and reporting informational price
changes.
- Charging through the payment gateway with idempotency and a bounded timeout.
- Committing the order, the stock decrements and the payment link in one
transaction, and refunding the charge when that transaction loses an
oversell race.
"""

import datetime
import hashlib
import json
import logging
from typing import Any, Callable, Dict, List, Optional
import uuid

import config
import db
from enums import CheckoutStatus
from enums import OrderStatus
from enums import PaymentStatus
from exceptions import AlreadyCompletedError
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
from models import CancellationResult
from models import CheckoutSessionView
from models import CompletionResult
from models import InitiateCheckoutResult
from models import LockedPriceItem
from models import PaymentOutcome
from models import PaymentView
from models import PriceChange
from models import ValidationResult
from services import pricing
from services.audit_service import AuditService
from services.payment_gateway import PaymentGateway
from services.payment_gateway import PaymentRequest
from services.stock_service import StockService
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

PRICE_CHANGE_NOTE = (
    "Some prices have changed since checkout started. You will be charged the"
    " original locked prices."
)

_ALLOWED_TRANSITIONS = {
    CheckoutStatus.INITIATED: {
        CheckoutStatus.VALIDATING,
        CheckoutStatus.CANCELLED,
        CheckoutStatus.EXPIRED,
    },
    CheckoutStatus.VALIDATING: {
        CheckoutStatus.AWAITING_PAYMENT,
        CheckoutStatus.FAILED,
        CheckoutStatus.CANCELLED,
        CheckoutStatus.EXPIRED,
    },
    CheckoutStatus.AWAITING_PAYMENT: {
        CheckoutStatus.VALIDATING,
        CheckoutStatus.PROCESSING_PAYMENT,
        CheckoutStatus.COMPLETED,
        CheckoutStatus.CANCELLED,
        CheckoutStatus.EXPIRED,
    },
    CheckoutStatus.PROCESSING_PAYMENT: {
        CheckoutStatus.AWAITING_PAYMENT,
        CheckoutStatus.COMPLETED,
        CheckoutStatus.FAILED,
        CheckoutStatus.CANCELLED,
        CheckoutStatus.EXPIRED,
    },
    CheckoutStatus.FAILED: {CheckoutStatus.CANCELLED, CheckoutStatus.EXPIRED},
    CheckoutStatus.CANCELLED: {CheckoutStatus.EXPIRED},
    CheckoutStatus.EXPIRED: {CheckoutStatus.CANCELLED},
    CheckoutStatus.COMPLETED: set(),
}


class CheckoutService:
  """Service for driving checkout sessions from initiation to order."""

  def __init__(
      self,
      products_session: AsyncSession,
      transactions_session: AsyncSession,
      payment_gateway: PaymentGateway,
      stock_service: StockService,
      audit_service: AuditService,
      settings: Optional[config.CheckoutSettings] = None,
      clock: Callable[[], datetime.datetime] = db.utcnow,
  ):
    self.products_session = products_session
    self.transactions_session = transactions_session
    self.payment_gateway = payment_gateway
    self.stock_service = stock_service
    self.audit_service = audit_service
    self.settings = settings or config.CheckoutSettings()
    self.clock = clock

  def _compute_hash(self, data: Any) -> str:
    """Computes SHA256 hash of the JSON-serialized data."""
    # sort_keys=True ensures deterministic hashing for dicts
    json_str = json.dumps(data, sort_keys=True)
    return hashlib.sha256(json_str.encode("utf-8")).hexdigest()

  # --- Initiate ---

  async def initiate_checkout(
      self,
      customer_id: str,
      selected_item_ids: List[str],
      idempotency_key: str,
  ) -> InitiateCheckoutResult:
    """Creates a checkout session with locked prices.

    Args:
      customer_id: The customer whose cart is checked out.
      selected_item_ids: The cart lines to buy.
      idempotency_key: Client token; a repeated key returns the first session.

    Returns:
      The new session, or the existing one for a replayed key.

    Raises:
      InvalidRequestError: A required argument is missing.
      IdempotencyConflictError: The key was used for a different selection.
      EmptyCartError: None of the selected lines are in the cart.
      InsufficientStockError: A line asks for more than is in stock.
    """
    logger.info("Initiating checkout for customer %s", customer_id)

    if not customer_id or not selected_item_ids:
      raise InvalidRequestError("Customer ID and selected items are required.")
    if not idempotency_key:
      raise InvalidRequestError(
          "Idempotency key is required to prevent duplicate checkouts."
      )

    item_ids = sorted(set(selected_item_ids))
    request_hash = self._compute_hash(
        {"customer_id": customer_id, "selected_item_ids": item_ids}
    )

    existing = await db.get_checkout_session_by_key(
        self.transactions_session, idempotency_key
    )
    if existing:
      return self._replay_initiation(existing, request_hash)

    cart_items = await db.get_cart_items(
        self.transactions_session, customer_id, item_ids
    )
    if not cart_items:
      raise EmptyCartError()

    locked_prices, cart_snapshot = await self._lock_prices(cart_items)

    stock_issues = await self.stock_service.find_shortfalls(
        self.transactions_session, locked_prices
    )
    if stock_issues:
      logger.warning(
          "Checkout for customer %s blocked: %d line(s) short of stock",
          customer_id,
          len(stock_issues),
      )
      raise InsufficientStockError(
          [issue.model_dump(mode="json", by_alias=True) for issue in stock_issues]
      )

    total_amount = pricing.order_total(locked_prices)
    now = self.clock()
    checkout_session = db.CheckoutSession(
        id=str(uuid.uuid4()),
        idempotency_key=idempotency_key,
        request_hash=request_hash,
        customer_id=customer_id,
        cart_snapshot=cart_snapshot,
        locked_prices=[item.model_dump(mode="json") for item in locked_prices],
        total_amount=total_amount,
        status=CheckoutStatus.INITIATED.value,
        expires_at=now + self.settings.session_ttl,
        created_at=now,
        updated_at=now,
    )

    try:
      await db.save_checkout_session(self.transactions_session, checkout_session)
      await self.transactions_session.commit()
    except IntegrityError:
      # A concurrent request with the same key won the insert.
      await self.transactions_session.rollback()
      winner = await db.get_checkout_session_by_key(
          self.transactions_session, idempotency_key
      )
      if winner is None:
        raise
      logger.info(
          "Concurrent initiation for key %s resolved to session %s",
          idempotency_key,
          winner.id,
      )
      return self._replay_initiation(winner, request_hash)

    await self.audit_service.log_checkout(
        "CHECKOUT_INITIATED",
        checkout_session.id,
        customer_id,
        {"itemCount": len(locked_prices), "totalAmount": total_amount},
    )
    return self._initiation_result(checkout_session)

  def _replay_initiation(
      self, checkout_session: db.CheckoutSession, request_hash: str
  ) -> InitiateCheckoutResult:
    if checkout_session.request_hash != request_hash:
      raise IdempotencyConflictError(
          "Idempotency key reused with different parameters"
      )
    logger.info("Returning existing checkout session %s", checkout_session.id)
    return self._initiation_result(checkout_session, is_existing=True)

  def _initiation_result(
      self, checkout_session: db.CheckoutSession, is_existing: bool = False
  ) -> InitiateCheckoutResult:
    return InitiateCheckoutResult(
        session_id=checkout_session.id,
        status=checkout_session.status,
        locked_prices=self._locked_items(checkout_session),
        total_amount=checkout_session.total_amount,
        expires_at=checkout_session.expires_at,
        is_existing=is_existing,
    )

  async def _lock_prices(
      self, cart_items: List[db.CartItem]
  ) -> tuple[List[LockedPriceItem], List[Dict[str, Any]]]:
    """Prices every cart line from the live catalog and snapshots the lines."""
    locked_prices = []
    cart_snapshot = []
    for item in cart_items:
      product = await db.get_product(self.products_session, item.product_id)
      if not product:
        raise InvalidRequestError(f"Product {item.product_id} not found")

      variant = None
      if item.variant_id:
        variant = await db.get_variant(self.products_session, item.variant_id)
        if not variant:
          raise InvalidRequestError(f"Variant {item.variant_id} not found")

      price = pricing.calculate_item_price(product, variant)
      locked_prices.append(
          LockedPriceItem(
              item_id=item.id,
              product_id=product.id,
              variant_id=variant.id if variant else None,
              quantity=item.quantity,
              unit_price=price.unit_price,
              discount_percentage=price.discount_percentage,
              final_price=price.final_price,
              product_name=product.name,
              variant_name=variant.name if variant else None,
              image=(variant.image if variant else None) or product.image,
          )
      )
      cart_snapshot.append({
          "id": item.id,
          "quantity": item.quantity,
          "productId": item.product_id,
          "productVariantId": item.variant_id,
          "product": {
              "id": product.id,
              "name": product.name,
              "image": product.image,
              "basePrice": product.base_price,
              "discountPercentage": product.discount_percentage,
          },
          "productVariant": {
              "id": variant.id,
              "name": variant.name,
              "price": variant.price,
              "discountPercentage": variant.discount_percentage,
              "image": variant.image,
          } if variant else None,
      })
    return locked_prices, cart_snapshot

  # --- Read ---

  async def get_session(self, session_id: str) -> CheckoutSessionView:
    """Retrieves a checkout session, expiring it if its TTL has passed."""
    checkout_session = await self._get_and_validate_session(session_id)
    await self._check_expiry(checkout_session)

    payments = await db.get_payments_for_session(
        self.transactions_session, checkout_session.id
    )
    return CheckoutSessionView(
        id=checkout_session.id,
        customer_id=checkout_session.customer_id,
        status=checkout_session.status,
        locked_prices=self._locked_items(checkout_session),
        total_amount=checkout_session.total_amount,
        expires_at=checkout_session.expires_at,
        payments=[_payment_view(p) for p in payments],
    )

  # --- Validate ---

  async def validate_checkout(self, session_id: str) -> ValidationResult:
    """Re-checks live stock for the locked lines before payment.

    Price changes since initiation are reported but never applied; the
    session is always charged its locked total.

    Raises:
      SessionNotFoundError, SessionExpiredError, SessionCompletedError:
        The session cannot be validated.
      StockValidationFailedError: A locked line is no longer in stock. The
        session is FAILED and a new checkout must be initiated.
    """
    logger.info("Validating checkout session %s", session_id)
    checkout_session = await self._get_and_validate_session(session_id)
    await self._check_expiry(checkout_session)
    if checkout_session.status == CheckoutStatus.COMPLETED.value:
      raise SessionCompletedError()

    await self._transition(checkout_session, CheckoutStatus.VALIDATING)
    await self.transactions_session.commit()

    locked_prices = self._locked_items(checkout_session)
    stock_issues = await self.stock_service.find_shortfalls(
        self.transactions_session, locked_prices
    )
    price_changes = await self._find_price_changes(locked_prices)

    if stock_issues:
      issues = [
          issue.model_dump(mode="json", by_alias=True) for issue in stock_issues
      ]
      await self._transition(checkout_session, CheckoutStatus.FAILED)
      await self.transactions_session.commit()
      logger.warning("Checkout session %s failed stock validation", session_id)
      await self.audit_service.log_checkout(
          "CHECKOUT_VALIDATION_FAILED",
          checkout_session.id,
          checkout_session.customer_id,
          {"stockIssues": issues},
      )
      raise StockValidationFailedError(issues)

    await self._transition(checkout_session, CheckoutStatus.AWAITING_PAYMENT)
    await self.transactions_session.commit()

    changes = (
        [c.model_dump(mode="json", by_alias=True) for c in price_changes]
        if price_changes
        else None
    )
    await self.audit_service.log_checkout(
        "CHECKOUT_VALIDATED",
        checkout_session.id,
        checkout_session.customer_id,
        {"priceChanges": changes} if changes else None,
    )
    return ValidationResult(
        price_changes=price_changes or None,
        note=PRICE_CHANGE_NOTE if price_changes else None,
    )

  async def _find_price_changes(
      self, locked_prices: List[LockedPriceItem]
  ) -> List[PriceChange]:
    changes = []
    for item in locked_prices:
      product = await db.get_product(self.products_session, item.product_id)
      variant = None
      if item.variant_id:
        variant = await db.get_variant(self.products_session, item.variant_id)
        if variant is None:
          continue
      if product is None:
        continue
      current = pricing.calculate_item_price(product, variant).final_price
      if pricing.has_price_changed(item.final_price, current):
        changes.append(
            PriceChange(
                product_name=item.product_name,
                variant_name=item.variant_name,
                old_price=item.final_price,
                new_price=current,
            )
        )
    return changes

  # --- Pay ---

  async def process_payment(
      self,
      session_id: str,
      payment_method: str,
      idempotency_key: str,
  ) -> PaymentOutcome:
    """Charges the session's locked total through the payment gateway.

    A repeated idempotency key replays the stored outcome, whatever its
    status, without calling the gateway again. A failed charge puts the
    session back into AWAITING_PAYMENT so the client can retry with a fresh
    key. A charge that succeeds after the session was cancelled or expired
    is refunded.

    Raises:
      InvalidRequestError, InvalidPaymentMethodError: Bad input.
      SessionNotFoundError, AlreadyCompletedError, SessionExpiredError,
        InvalidSessionStateError: The session cannot be paid for.
      IdempotencyConflictError: The key belongs to another session.
      PaymentFailedError: The gateway declined or timed out.
    """
    logger.info("Processing payment for checkout session %s", session_id)

    if not payment_method or not idempotency_key:
      raise InvalidRequestError(
          "Payment method and idempotency key are required."
      )
    if not self.payment_gateway.validate_payment_method(payment_method):
      raise InvalidPaymentMethodError(
          self.payment_gateway.get_available_methods()
      )

    checkout_session = await self._get_and_validate_session(session_id)
    if checkout_session.status == CheckoutStatus.COMPLETED.value:
      raise AlreadyCompletedError()
    await self._check_expiry(checkout_session)

    existing = await db.get_payment_by_key(
        self.transactions_session, idempotency_key
    )
    if existing:
      return self._replay_payment(existing, session_id)

    if checkout_session.status != CheckoutStatus.AWAITING_PAYMENT.value:
      raise InvalidSessionStateError(
          f"Cannot pay for checkout in state '{checkout_session.status}'."
          " Validate the checkout first."
      )

    customer_id = checkout_session.customer_id
    amount = checkout_session.total_amount
    method = payment_method.upper()
    now = self.clock()
    payment = db.Payment(
        id=str(uuid.uuid4()),
        idempotency_key=idempotency_key,
        checkout_session_id=session_id,
        amount=amount,
        method=method,
        status=PaymentStatus.PROCESSING.value,
        attempts=0,
        created_at=now,
        updated_at=now,
    )

    try:
      claimed = await db.claim_for_payment(
          self.transactions_session, session_id
      )
      if not claimed:
        await self.transactions_session.rollback()
        existing = await db.get_payment_by_key(
            self.transactions_session, idempotency_key
        )
        if existing:
          return self._replay_payment(existing, session_id)
        raise InvalidSessionStateError(
            "Another payment for this checkout is already in progress."
        )
      await db.save_payment(self.transactions_session, payment)
      await self.transactions_session.commit()
    except IntegrityError:
      # A concurrent request with the same key created the payment first.
      await self.transactions_session.rollback()
      existing = await db.get_payment_by_key(
          self.transactions_session, idempotency_key
      )
      if existing is None:
        raise
      return self._replay_payment(existing, session_id)

    await self.audit_service.log_payment(
        "PAYMENT_INITIATED",
        payment.id,
        customer_id,
        {"amount": amount, "method": method},
    )

    result = await self.payment_gateway.process_payment(
        PaymentRequest(
            amount=amount,
            method=method,
            idempotency_key=idempotency_key,
            customer_id=customer_id,
        ),
        timeout=self.settings.payment_timeout,
    )

    if result.success:
      payment.status = PaymentStatus.SUCCEEDED.value
      payment.gateway_ref = result.gateway_ref
      payment.updated_at = self.clock()
      await self.transactions_session.commit()
      await self.audit_service.log_payment(
          "PAYMENT_SUCCEEDED",
          payment.id,
          customer_id,
          {"gatewayRef": result.gateway_ref},
      )
      await self.transactions_session.refresh(checkout_session)
      if checkout_session.status != CheckoutStatus.PROCESSING_PAYMENT.value:
        # Cancelled or expired while the charge was in flight.
        await self._release_payment(checkout_session)
        await self.transactions_session.commit()
        raise InvalidSessionStateError(
            f"Checkout became '{checkout_session.status}' while the payment"
            " was processing. The charge has been refunded."
        )
      return PaymentOutcome(
          payment_id=payment.id,
          status=payment.status,
          gateway_ref=payment.gateway_ref,
      )

    error_code = result.error_code or "PAYMENT_FAILED"
    error_message = result.error_message or (
        "Payment failed. Please try again or use a different payment method."
    )
    payment.status = PaymentStatus.FAILED.value
    payment.error_code = error_code
    payment.error_message = error_message
    payment.attempts = (payment.attempts or 0) + 1
    payment.updated_at = self.clock()

    # The session may have been cancelled while the gateway was busy.
    await self.transactions_session.refresh(checkout_session)
    if checkout_session.status == CheckoutStatus.PROCESSING_PAYMENT.value:
      await self._transition(checkout_session, CheckoutStatus.AWAITING_PAYMENT)
    await self.transactions_session.commit()

    logger.warning(
        "Payment %s for session %s failed: %s", payment.id, session_id,
        error_code
    )
    await self.audit_service.log_payment(
        "PAYMENT_FAILED", payment.id, customer_id, None, error_message
    )
    raise PaymentFailedError(error_message, code=error_code,
                             payment_id=payment.id)

  def _replay_payment(
      self, payment: db.Payment, session_id: str
  ) -> PaymentOutcome:
    """Returns the stored outcome of an earlier attempt with the same key."""
    if payment.checkout_session_id != session_id:
      raise IdempotencyConflictError(
          "Idempotency key already used for a different checkout session"
      )
    logger.info(
        "Returning existing payment %s (%s)", payment.id, payment.status
    )
    return PaymentOutcome(
        payment_id=payment.id,
        status=payment.status,
        gateway_ref=payment.gateway_ref,
        error_code=payment.error_code,
        error_message=payment.error_message,
        is_existing=True,
    )

  # --- Complete ---

  async def complete_checkout(
      self,
      session_id: str,
      payment_id: Optional[str] = None,
      idempotency_key: Optional[str] = None,
  ) -> CompletionResult:
    """Turns a paid checkout session into an order.

    Stock decrements, order creation and the payment link are committed in a
    single transaction. Marking the session COMPLETED and clearing the cart
    happen afterwards on a best-effort basis.

    Args:
      session_id: The checkout session.
      payment_id: Optional client-supplied payment ID; it must be the
        session's succeeded payment.
      idempotency_key: Optional order idempotency key; defaults to the
        session's key.

    Returns:
      The order ID. Completing an already completed session returns the
      existing order.

    Raises:
      SessionNotFoundError: Unknown session.
      PaymentNotFoundError: The session has no matching succeeded payment.
      InvalidSessionStateError: The session is not waiting for completion.
      OutOfStockError: Another checkout bought the last units first. The
        charge is refunded and the session is FAILED.
    """
    logger.info("Completing checkout session %s", session_id)
    checkout_session = await self._get_and_validate_session(session_id)

    if checkout_session.status == CheckoutStatus.COMPLETED.value:
      order = await db.get_order_for_session(
          self.transactions_session, session_id
      )
      if order is None:
        raise InvalidSessionStateError(
            "Checkout is completed but has no order."
        )
      return CompletionResult(order_id=order.id, is_existing=True)

    payment = await db.get_successful_payment(
        self.transactions_session, session_id
    )
    if payment is None or (payment_id and payment.id != payment_id):
      raise PaymentNotFoundError()

    locked_prices = self._locked_items(checkout_session)

    order = await db.get_order_for_session(
        self.transactions_session, session_id
    )
    if order is not None:
      # An earlier attempt committed the order but not the follow-up steps.
      await self._finalize_completion(checkout_session, order.id, locked_prices)
      return CompletionResult(order_id=order.id, is_existing=True)

    if checkout_session.status not in (
        CheckoutStatus.AWAITING_PAYMENT.value,
        CheckoutStatus.PROCESSING_PAYMENT.value,
    ):
      raise InvalidSessionStateError(
          f"Cannot complete checkout in state '{checkout_session.status}'"
      )

    customer_id = checkout_session.customer_id
    total_amount = checkout_session.total_amount
    order_key = idempotency_key or checkout_session.idempotency_key
    paid_payment_id = payment.id
    order_id = str(uuid.uuid4())

    try:
      for item in locked_prices:
        if item.variant_id:
          reserved = await db.reserve_stock(
              self.transactions_session, item.variant_id, item.quantity
          )
          if not reserved:
            raise OutOfStockError(item.product_name, item.variant_name)

      await db.create_order(
          self.transactions_session,
          db.Order(
              id=order_id,
              checkout_session_id=session_id,
              idempotency_key=order_key,
              customer_id=customer_id,
              products=[_ordered_product(item) for item in locked_prices],
              total=total_amount,
              discount=0,
              status=OrderStatus.CONFIRMED.value,
              created_at=self.clock(),
          ),
      )
      await db.link_payment_to_order(
          self.transactions_session, paid_payment_id, order_id
      )

      # Commit stock updates, the order and the payment link atomically
      await self.transactions_session.commit()

    except OutOfStockError as e:
      await self.transactions_session.rollback()
      logger.warning("Checkout session %s oversold: %s", session_id, e.message)
      await self._abort_oversold_checkout(session_id, e.message)
      raise
    except IntegrityError:
      await self.transactions_session.rollback()
      existing = await db.get_order_for_session(
          self.transactions_session, session_id
      )
      if existing is None:
        raise IdempotencyConflictError(
            "Order idempotency key already used by another order"
        )
      return CompletionResult(order_id=existing.id, is_existing=True)
    except Exception:
      await self.transactions_session.rollback()
      raise

    await self.audit_service.log_order(
        "ORDER_CREATED",
        order_id,
        customer_id,
        {"total": total_amount, "itemCount": len(locked_prices)},
    )
    await self._finalize_completion(checkout_session, order_id, locked_prices)
    return CompletionResult(order_id=order_id)

  async def _finalize_completion(
      self,
      checkout_session: db.CheckoutSession,
      order_id: str,
      locked_prices: List[LockedPriceItem],
  ) -> None:
    """Marks the session COMPLETED and clears the purchased cart lines."""
    try:
      await self._transition(checkout_session, CheckoutStatus.COMPLETED)
      await db.delete_cart_items(
          self.transactions_session, [item.item_id for item in locked_prices]
      )
      await self.transactions_session.commit()
    except Exception as e:  # pylint: disable=broad-exception-caught
      await self.transactions_session.rollback()
      logger.error(
          "Order %s created but finalizing session %s failed: %s",
          order_id,
          checkout_session.id,
          e,
      )
      return

    await self.audit_service.log_checkout(
        "CHECKOUT_COMPLETED",
        checkout_session.id,
        checkout_session.customer_id,
        {"orderId": order_id},
    )

  async def _abort_oversold_checkout(self, session_id: str, reason: str) -> None:
    """Fails a paid session whose stock was taken by a concurrent checkout."""
    checkout_session = await db.get_checkout_session(
        self.transactions_session, session_id
    )
    await self.transactions_session.refresh(checkout_session)
    await self._release_payment(checkout_session)
    await self._transition(checkout_session, CheckoutStatus.FAILED)
    await self.transactions_session.commit()
    await self.audit_service.log_checkout(
        "CHECKOUT_FAILED",
        session_id,
        checkout_session.customer_id,
        None,
        reason,
    )

  # --- Cancel ---

  async def cancel_checkout(self, session_id: str) -> CancellationResult:
    """Cancels a checkout session that has not been completed.

    Nothing is reserved before completion, so cancelling has no inventory
    effect. A succeeded charge that never became an order is refunded.
    """
    logger.info("Cancelling checkout session %s", session_id)
    checkout_session = await self._get_and_validate_session(session_id)

    if checkout_session.status == CheckoutStatus.COMPLETED.value:
      raise CannotCancelError()
    if checkout_session.status == CheckoutStatus.CANCELLED.value:
      return CancellationResult(
          session_id=session_id,
          status=checkout_session.status,
          is_existing=True,
      )

    await self._release_payment(checkout_session)
    await self._transition(checkout_session, CheckoutStatus.CANCELLED)
    await self.transactions_session.commit()

    await self.audit_service.log_checkout(
        "CHECKOUT_CANCELLED", session_id, checkout_session.customer_id
    )
    return CancellationResult(
        session_id=session_id, status=checkout_session.status
    )

  # --- Payment methods ---

  def get_available_methods(self) -> List[str]:
    return self.payment_gateway.get_available_methods()

  # --- Helpers ---

  async def _get_and_validate_session(
      self, session_id: str
  ) -> db.CheckoutSession:
    """Retrieves a checkout session and validates its existence."""
    checkout_session = await db.get_checkout_session(
        self.transactions_session, session_id
    )
    if not checkout_session:
      raise SessionNotFoundError()
    return checkout_session

  async def _check_expiry(self, checkout_session: db.CheckoutSession) -> None:
    """Expires the session if its TTL has passed, unless it is COMPLETED.

    Raises:
      SessionExpiredError: The session is (now) expired.
    """
    if checkout_session.status == CheckoutStatus.COMPLETED.value:
      return
    if checkout_session.expires_at > self.clock():
      return

    if checkout_session.status != CheckoutStatus.EXPIRED.value:
      await self._release_payment(checkout_session)
      await self._transition(checkout_session, CheckoutStatus.EXPIRED)
      await self.transactions_session.commit()
      logger.info("Checkout session %s expired", checkout_session.id)
      await self.audit_service.log_checkout(
          "CHECKOUT_EXPIRED", checkout_session.id, checkout_session.customer_id
      )
    raise SessionExpiredError()

  async def _transition(
      self, checkout_session: db.CheckoutSession, status: CheckoutStatus
  ) -> None:
    """Moves the session to `status`, enforcing the state machine."""
    current = CheckoutStatus(checkout_session.status)
    if current == status:
      return
    if status not in _ALLOWED_TRANSITIONS[current]:
      raise InvalidSessionStateError(
          f"Cannot move checkout from '{current.value}' to '{status.value}'"
      )
    await db.set_checkout_status(
        self.transactions_session, checkout_session, status
    )

  async def _release_payment(
      self, checkout_session: db.CheckoutSession
  ) -> None:
    """Refunds a succeeded charge of the session that has no order.

    The refund happens before any local write so that no database lock is
    held during the gateway call. The caller commits.
    """
    payment = await db.get_successful_payment(
        self.transactions_session, checkout_session.id
    )
    if payment is None or payment.order_id:
      return

    try:
      result = await self.payment_gateway.refund_payment(
          payment.gateway_ref, payment.amount
      )
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.error("Refund of payment %s raised: %s", payment.id, e)
      return
    if not result.success:
      logger.error(
          "Refund of payment %s failed: %s", payment.id, result.error_message
      )
      return

    payment.status = PaymentStatus.REFUNDED.value
    payment.updated_at = self.clock()
    await self.audit_service.log_payment(
        "PAYMENT_REFUNDED",
        payment.id,
        checkout_session.customer_id,
        {"refundRef": result.gateway_ref, "amount": payment.amount},
    )

  def _locked_items(
      self, checkout_session: db.CheckoutSession
  ) -> List[LockedPriceItem]:
    return [
        LockedPriceItem.model_validate(item)
        for item in checkout_session.locked_prices
    ]


def _payment_view(payment: db.Payment) -> PaymentView:
  return PaymentView(
      id=payment.id,
      amount=payment.amount,
      method=payment.method,
      status=payment.status,
      gateway_ref=payment.gateway_ref,
      error_code=payment.error_code,
      error_message=payment.error_message,
      attempts=payment.attempts or 0,
      order_id=payment.order_id,
  )


def _ordered_product(item: LockedPriceItem) -> Dict[str, Any]:
  """Order line built from the locked snapshot, not the live catalog."""
  return {
      "product": {
          "id": item.product_id,
          "name": item.product_name,
          "image": item.image,
      },
      "quantity": item.quantity,
      "unitPrice": item.unit_price,
      "finalPrice": item.final_price,
      "discountPercentage": item.discount_percentage,
      "variant": {
          "id": item.variant_id,
          "name": item.variant_name,
      } if item.variant_id else None,
  }
