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

"""Inbound payment gateway events: refunds and disputes.

Events raised on the gateway side (a refund from the gateway dashboard, a
chargeback) are matched to orders only through the payment reference stored
when the order was created; any checkout id inside the event is ignored. A
matched event changes the order through `OrderService.update_status`, which
queues the `order_updated` webhook.
"""

import hashlib
import hmac
import logging
import time
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError

from acp_checkout import db
from acp_checkout import exceptions
from acp_checkout.enums import OrderStatus
from acp_checkout.models import OrderResponse
from acp_checkout.models import Refund
from acp_checkout.services.order_service import OrderService

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Gateway-Signature"

REFUNDED = "charge.refunded"
DISPUTE_CREATED = "charge.dispute.created"
DISPUTE_CLOSED = "charge.dispute.closed"
HANDLED_EVENTS = (REFUNDED, DISPUTE_CREATED, DISPUTE_CLOSED)


def gateway_signature(secret: str, timestamp: str, payload: bytes) -> str:
  signed = timestamp.encode("utf-8") + b"." + payload
  return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_gateway_signature(
    secret: str,
    header: Optional[str],
    payload: bytes,
    now: float,
    tolerance_seconds: int = 300,
) -> None:
  """Checks a `t=<unix time>,v1=<hex hmac>` signature header.

  Raises:
    InvalidSignature: The header is missing, malformed, too old or wrong.
  """
  if not header:
    raise exceptions.InvalidSignature("Missing signature header")
  parts = {}
  for item in header.split(","):
    name, sep, value = item.strip().partition("=")
    if sep:
      parts.setdefault(name, value)
  timestamp, signature = parts.get("t"), parts.get("v1")
  if not timestamp or not signature or not timestamp.isdigit():
    raise exceptions.InvalidSignature("Malformed signature header")
  if abs(now - int(timestamp)) > tolerance_seconds:
    raise exceptions.InvalidSignature("Signature timestamp outside tolerance")
  expected = gateway_signature(secret, timestamp, payload)
  if not hmac.compare_digest(expected, signature):
    raise exceptions.InvalidSignature()


class GatewayEventHandler:
  """Applies refund and dispute events to the orders they belong to."""

  def __init__(
      self,
      database: db.DatabaseManager,
      orders: OrderService,
      clock: Callable[[], float] = time.time,
  ):
    self._db = database
    self._orders = orders
    self._clock = clock

  async def handle(self, event: Dict[str, Any]) -> Optional[OrderResponse]:
    """Handles one gateway event.

    Args:
      event: The decoded event, `{"id", "type", "data": {"object": ...}}`.

    Returns:
      The order after the change, or None if the event was ignored.
    """
    event_id = event.get("id")
    event_type = event.get("type")
    if event_type not in HANDLED_EVENTS:
      logger.debug("Ignoring gateway event %s of type %s", event_id, event_type)
      return None

    obj = (event.get("data") or {}).get("object") or {}
    reference = obj.get("payment_intent")
    order = await self._orders.find_order_by_payment_reference(reference)
    if order is None:
      logger.info(
          "Gateway event %s references unknown payment %s", event_id, reference
      )
      return None

    if event_id and not await self._claim(event_id, event_type):
      logger.info("Gateway event %s already handled", event_id)
      return None

    try:
      order = await self._orders.get_order(order.id)
      if event_type == REFUNDED:
        updated = await self._apply_refund(order, obj)
      elif event_type == DISPUTE_CREATED:
        updated = await self._orders.update_status(
            order.id, OrderStatus.MANUAL_REVIEW
        )
      else:
        updated = await self._apply_dispute_outcome(order, obj)
    except Exception:  # pylint: disable=broad-exception-caught
      # Let the gateway's redelivery of this event try again.
      if event_id:
        await self._release(event_id)
      raise
    return updated

  async def _claim(self, event_id: str, event_type: str) -> bool:
    async with self._db.session_factory() as session:
      try:
        async with session.begin():
          db.add_gateway_event(
              session, event_id, event_type, int(self._clock())
          )
        return True
      except IntegrityError:
        return False

  async def _release(self, event_id: str) -> None:
    async with self._db.session_factory() as session:
      async with session.begin():
        await db.delete_gateway_event(session, event_id)

  async def _apply_refund(
      self, order: OrderResponse, charge: Dict[str, Any]
  ) -> OrderResponse:
    refunded_total = int(charge.get("amount_refunded") or 0)
    already_refunded = sum(refund.amount for refund in order.refunds)
    refunds = []
    if refunded_total > already_refunded:
      refunds.append(Refund(amount=refunded_total - already_refunded))
    status = None
    if refunded_total >= order.totals.total:
      status = OrderStatus.CANCELED
    logger.info(
        "Order %s refunded %d of %d",
        order.id,
        refunded_total,
        order.totals.total,
    )
    return await self._orders.update_status(order.id, status, refunds)

  async def _apply_dispute_outcome(
      self, order: OrderResponse, dispute: Dict[str, Any]
  ) -> OrderResponse:
    outcome = dispute.get("status")
    status = None
    if outcome == "won":
      status = OrderStatus.CONFIRMED
    elif outcome == "lost":
      status = OrderStatus.CANCELED
    logger.info("Dispute on order %s closed as %s", order.id, outcome)
    return await self._orders.update_status(order.id, status)
