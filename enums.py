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

"""Enumerations for the checkout server.

This module defines standard enums used throughout the server application
to represent the state of checkout sessions, payments and orders.
"""

import enum


class CheckoutStatus(str, enum.Enum):
  INITIATED = "INITIATED"
  VALIDATING = "VALIDATING"
  AWAITING_PAYMENT = "AWAITING_PAYMENT"
  PROCESSING_PAYMENT = "PROCESSING_PAYMENT"
  COMPLETED = "COMPLETED"
  FAILED = "FAILED"
  CANCELLED = "CANCELLED"
  EXPIRED = "EXPIRED"


class PaymentStatus(str, enum.Enum):
  PROCESSING = "PROCESSING"
  SUCCEEDED = "SUCCEEDED"
  FAILED = "FAILED"
  REFUNDED = "REFUNDED"


class OrderStatus(str, enum.Enum):
  CONFIRMED = "CONFIRMED"


class PaymentMethod(str, enum.Enum):
  MOCK_CARD = "MOCK_CARD"
  MOCK_WALLET = "MOCK_WALLET"
  COD = "COD"


class AuditEntity(str, enum.Enum):
  CHECKOUT = "checkout"
  PAYMENT = "payment"
  ORDER = "order"
