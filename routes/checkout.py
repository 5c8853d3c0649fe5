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

"""Checkout routes for the storefront server.

Every success body is `{"success": true, "message": ..., ...}` with camelCase
keys. Errors are raised by `CheckoutService` and rendered by the exception
handlers in `server.py`.
"""

from typing import Any, Optional

import dependencies
from enums import PaymentStatus
from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from fastapi import Response
from fastapi import status
from models import CamelModel
from models import CompleteCheckoutRequest
from models import InitiateCheckoutRequest
from models import ProcessPaymentRequest
from services.checkout_service import CheckoutService

router = APIRouter(prefix="/checkout", tags=["checkout"])


def _envelope(
    message: str, result: Optional[CamelModel] = None
) -> dict[str, Any]:
  body = {"success": True, "message": message}
  if result is not None:
    body.update(
        result.model_dump(mode="json", by_alias=True, exclude_none=True)
    )
  return body


@router.post(
    "/initiate",
    response_model=dict[str, Any],
    status_code=status.HTTP_201_CREATED,
    operation_id="initiate_checkout",
)
async def initiate_checkout(
    response: Response,
    request: InitiateCheckoutRequest = Body(...),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> dict[str, Any]:
  """Start a checkout session for selected cart items."""
  result = await checkout_service.initiate_checkout(
      request.customer_id,
      request.selected_item_ids,
      request.idempotency_key,
  )
  if result.is_existing:
    response.status_code = status.HTTP_200_OK
    return _envelope("Checkout session already exists", result)
  return _envelope("Checkout session created", result)


# Registered before "/{id}" so that "methods" is not taken for a session ID.
@router.get(
    "/methods/available",
    response_model=dict[str, Any],
    operation_id="get_payment_methods",
)
async def get_payment_methods(
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> dict[str, Any]:
  """List supported payment methods."""
  return {
      "success": True,
      "methods": checkout_service.get_available_methods(),
  }


@router.get(
    "/{id}",
    response_model=dict[str, Any],
    operation_id="get_checkout_session",
)
async def get_checkout_session(
    session_id: str = Path(..., alias="id"),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> dict[str, Any]:
  """Get a checkout session."""
  session = await checkout_service.get_session(session_id)
  return {
      "success": True,
      "session": session.model_dump(mode="json", by_alias=True),
  }


@router.post(
    "/{id}/validate",
    response_model=dict[str, Any],
    operation_id="validate_checkout",
)
async def validate_checkout(
    session_id: str = Path(..., alias="id"),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> dict[str, Any]:
  """Re-check stock before payment."""
  result = await checkout_service.validate_checkout(session_id)
  return _envelope("Checkout validated", result)


@router.post(
    "/{id}/pay",
    response_model=dict[str, Any],
    operation_id="process_payment",
)
async def process_payment(
    session_id: str = Path(..., alias="id"),
    request: ProcessPaymentRequest = Body(...),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> dict[str, Any]:
  """Charge the checkout session."""
  result = await checkout_service.process_payment(
      session_id, request.payment_method, request.idempotency_key
  )
  if not result.is_existing:
    return _envelope("Payment processed successfully", result)
  body = _envelope("Payment already processed", result)
  body["success"] = result.status == PaymentStatus.SUCCEEDED.value
  return body


@router.post(
    "/{id}/complete",
    response_model=dict[str, Any],
    status_code=status.HTTP_201_CREATED,
    operation_id="complete_checkout",
)
async def complete_checkout(
    response: Response,
    session_id: str = Path(..., alias="id"),
    request: Optional[CompleteCheckoutRequest] = Body(None),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> dict[str, Any]:
  """Turn a paid checkout session into an order."""
  request = request or CompleteCheckoutRequest()
  result = await checkout_service.complete_checkout(
      session_id, request.payment_id, request.idempotency_key
  )
  if result.is_existing:
    response.status_code = status.HTTP_200_OK
    return _envelope("Order already created", result)
  return _envelope("Order created successfully", result)


@router.delete(
    "/{id}",
    response_model=dict[str, Any],
    operation_id="cancel_checkout",
)
async def cancel_checkout(
    session_id: str = Path(..., alias="id"),
    checkout_service: CheckoutService = Depends(
        dependencies.get_checkout_service
    ),
) -> dict[str, Any]:
  """Cancel a checkout session that has not been completed."""
  result = await checkout_service.cancel_checkout(session_id)
  message = (
      "Checkout already cancelled"
      if result.is_existing
      else "Checkout cancelled"
  )
  return _envelope(message, result)
