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

"""Typed event bus for order lifecycle notifications.

Handlers publish an `OrderEvent` inside the database transaction that made the
state change, so subscribers that write (the webhook dispatcher's outbox)
commit or roll back together with the change itself.
"""

import dataclasses
import logging
from typing import Awaitable, Callable, List

from sqlalchemy.ext.asyncio import AsyncSession

from acp_checkout.enums import WebhookEventType
from acp_checkout.models import OrderResponse

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class OrderEvent:
  event_type: WebhookEventType
  order: OrderResponse


Subscriber = Callable[[AsyncSession, OrderEvent], Awaitable[None]]


class EventBus:
  """Fans order events out to subscribers in registration order."""

  def __init__(self) -> None:
    self._subscribers: List[Subscriber] = []

  def subscribe(self, subscriber: Subscriber) -> None:
    self._subscribers.append(subscriber)

  async def publish(self, session: AsyncSession, event: OrderEvent) -> None:
    for subscriber in self._subscribers:
      await subscriber(session, event)


async def log_order_event(session: AsyncSession, event: OrderEvent) -> None:
  """Reporting subscriber: records every order event in the server log."""
  del session  # Unused.
  logger.info(
      "Order event %s for order %s (checkout %s, status %s, total %d)",
      event.event_type.value,
      event.order.id,
      event.order.checkout_session_id,
      event.order.status.value,
      event.order.totals.total,
  )
