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

"""Order materializer: turns completed checkout sessions into orders.

Orders are created once per checkout session; calling `create_order` again
for the same session returns the existing order. Stock is taken from
inventory atomically when the order is created. Status and refund changes
publish `order_updated` on the event bus inside the same transaction.
"""

import datetime
import logging
import time
from typing import Callable, List, Optional, Protocol
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from acp_checkout import db
from acp_checkout import exceptions
from acp_checkout.enums import OrderStatus
from acp_checkout.enums import WebhookEventType
from acp_checkout.events import EventBus
from acp_checkout.events import OrderEvent
from acp_checkout.models import CheckoutSessionResponse
from acp_checkout.models import OrderResponse
from acp_checkout.models import Refund

logger = logging.getLogger(__name__)


class OrderMaterializer(Protocol):
  """Order creation boundary used by the checkout handlers."""

  async def create_order(
      self, session: CheckoutSessionResponse, payment_reference: str
  ) -> str:
    ...

  async def get_order(self, order_id: str) -> OrderResponse:
    ...

  async def find_order_by_payment_reference(
      self, payment_reference: str
  ) -> Optional[OrderResponse]:
    ...

  async def update_status(
      self,
      order_id: str,
      status: Optional[OrderStatus] = None,
      refunds: Optional[List[Refund]] = None,
  ) -> OrderResponse:
    ...


def _timestamp(epoch: int) -> str:
  return datetime.datetime.fromtimestamp(
      epoch, datetime.timezone.utc
  ).isoformat()


def order_response(order: db.Order) -> OrderResponse:
  """Builds the immutable snapshot of an order row."""
  return OrderResponse(
      id=order.id,
      checkout_session_id=order.checkout_id,
      status=OrderStatus(order.status),
      created_at=_timestamp(order.created_at),
      updated_at=_timestamp(order.updated_at),
      **order.data,
  )


class OrderService:
  """Persists orders and their lifecycle changes."""

  def __init__(
      self,
      database: db.DatabaseManager,
      event_bus: EventBus,
      permalink_base: str,
      clock: Callable[[], float] = time.time,
  ):
    self._db = database
    self._event_bus = event_bus
    self._permalink_base = permalink_base.rstrip("/")
    self._clock = clock

  def permalink(self, order_id: str) -> str:
    return f"{self._permalink_base}/{order_id}"

  async def create_order(
      self, session: CheckoutSessionResponse, payment_reference: str
  ) -> str:
    """Creates the order for a checkout session whose payment succeeded.

    Args:
      session: Snapshot of the checkout session.
      payment_reference: Gateway reference of the captured payment.

    Returns:
      The order id. Repeated calls for one session return the same id.

    Raises:
      OrderMaterializationFailed: Stock ran out before the order was written.
    """
    now = int(self._clock())
    async with self._db.session_factory() as db_session:
      async with db_session.begin():
        existing = await db.get_order_by_checkout(db_session, session.id)
        if existing:
          logger.info(
              "Order %s already exists for checkout %s",
              existing.id,
              session.id,
          )
          return existing.id

        for item in session.line_items:
          if not await db.decrement_stock(
              db_session, item.catalog_ref, item.quantity
          ):
            raise exceptions.OrderMaterializationFailed(
                f"Insufficient stock for item {item.catalog_ref}"
            )

        order_id = f"ord_{uuid.uuid4().hex}"
        db_session.add(
            db.Order(
                id=order_id,
                checkout_id=session.id,
                payment_reference=payment_reference,
                status=OrderStatus.CONFIRMED.value,
                data={
                    "permalink_url": self.permalink(order_id),
                    "currency": session.currency,
                    "line_items": [
                        item.model_dump(mode="json")
                        for item in session.line_items
                    ],
                    "totals": session.totals.model_dump(mode="json"),
                    "refunds": [],
                },
                created_at=now,
                updated_at=now,
            )
        )
    logger.info("Created order %s for checkout %s", order_id, session.id)
    return order_id

  async def get_order(self, order_id: str) -> OrderResponse:
    async with self._db.session_factory() as db_session:
      order = await db.get_order(db_session, order_id)
    if not order:
      raise exceptions.OrderNotFound(order_id)
    return order_response(order)

  async def find_order_by_payment_reference(
      self, payment_reference: str
  ) -> Optional[OrderResponse]:
    if not payment_reference:
      return None
    async with self._db.session_factory() as db_session:
      order = await db.get_order_by_payment_reference(
          db_session, payment_reference
      )
    return order_response(order) if order else None

  async def update_status(
      self,
      order_id: str,
      status: Optional[OrderStatus] = None,
      refunds: Optional[List[Refund]] = None,
  ) -> OrderResponse:
    """Changes an order's status and/or appends refunds.

    An `order_updated` event is published only if something changed.

    Args:
      order_id: The order to change.
      status: The new status, or None to keep the current one.
      refunds: Refunds to append.

    Returns:
      The order after the change.
    """
    async with self._db.session_factory() as db_session:
      async with db_session.begin():
        order = await db.get_order(db_session, order_id)
        if not order:
          raise exceptions.OrderNotFound(order_id)

        changed = False
        if status is not None and order.status != status.value:
          logger.info(
              "Order %s status %s -> %s", order_id, order.status, status.value
          )
          order.status = status.value
          changed = True
        if refunds:
          data = dict(order.data)
          data["refunds"] = list(data.get("refunds", [])) + [
              refund.model_dump(mode="json") for refund in refunds
          ]
          order.data = data
          changed = True

        if changed:
          order.updated_at = int(self._clock())
          await db_session.flush()
          snapshot = order_response(order)
          await self._publish(db_session, snapshot)
        else:
          snapshot = order_response(order)
    return snapshot

  async def _publish(
      self, db_session: AsyncSession, order: OrderResponse
  ) -> None:
    await self._event_bus.publish(
        db_session, OrderEvent(WebhookEventType.ORDER_UPDATED, order)
    )
