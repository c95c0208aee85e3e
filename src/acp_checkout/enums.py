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

This module defines the states of checkout sessions, orders, payments and
webhook deliveries used throughout the server application.
"""

import enum


class CheckoutStatus(str, enum.Enum):
  OPEN = "open"
  COMPLETED = "completed"
  CANCELED = "canceled"
  EXPIRED = "expired"

  @property
  def is_terminal(self) -> bool:
    return self is not CheckoutStatus.OPEN


class OrderStatus(str, enum.Enum):
  CREATED = "created"
  CONFIRMED = "confirmed"
  MANUAL_REVIEW = "manual_review"
  SHIPPED = "shipped"
  FULFILLED = "fulfilled"
  CANCELED = "canceled"


class PaymentStatus(str, enum.Enum):
  SUCCEEDED = "succeeded"
  DECLINED = "declined"
  GATEWAY_ERROR = "gateway_error"


class WebhookEventType(str, enum.Enum):
  ORDER_CREATED = "order_created"
  ORDER_UPDATED = "order_updated"


class DeliveryOutcome(str, enum.Enum):
  PENDING = "pending"
  DELIVERED = "delivered"
  FAILED = "failed"


class IdempotencyState(str, enum.Enum):
  PROCESSING = "processing"
  COMPLETED = "completed"


class RefundType(str, enum.Enum):
  STORE_CREDIT = "store_credit"
  ORIGINAL_PAYMENT = "original_payment"
