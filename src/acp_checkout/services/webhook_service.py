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

"""Webhook dispatcher for order lifecycle notifications.

Events are written to the `webhook_deliveries` table by `enqueue`, inside the
transaction of the state change that produced them. A scheduled worker calls
`deliver_due`, which POSTs due records oldest-first and never overtakes an
earlier undelivered record of the same order.

Each body is canonical JSON (sorted keys, no whitespace). The
`Merchant-Signature` header is the hex HMAC-SHA256 of exactly those bytes
under the merchant's webhook secret; the `Timestamp` header repeats the
body's timestamp.
"""

import dataclasses
import datetime
import hashlib
import hmac
import logging
import time
from typing import Callable, Dict, List, Optional, Set
import uuid

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from acp_checkout import db
from acp_checkout import exceptions
from acp_checkout.config import Settings
from acp_checkout.enums import DeliveryOutcome
from acp_checkout.enums import WebhookEventType
from acp_checkout.events import OrderEvent
from acp_checkout.services.idempotency_service import canonical_json

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Merchant-Signature"
TIMESTAMP_HEADER = "Timestamp"
WEBHOOK_ID_HEADER = "Webhook-ID"


def sign_payload(secret: str, body: str) -> str:
  """Hex HMAC-SHA256 of the canonical body."""
  return hmac.new(
      secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256
  ).hexdigest()


def verify_signature(secret: str, body: str, signature: str) -> bool:
  return hmac.compare_digest(sign_payload(secret, body), signature)


def backoff_delay(attempt: int, base_seconds: int, max_seconds: int) -> int:
  """Seconds to wait after the `attempt`-th failed delivery (1-based)."""
  return min(base_seconds * 2 ** (attempt - 1), max_seconds)


def build_payload(event: OrderEvent, timestamp: str) -> Dict[str, object]:
  order = event.order
  return {
      "event_type": event.event_type.value,
      "timestamp": timestamp,
      "data": {
          "type": "order",
          "id": order.id,
          "checkout_session_id": order.checkout_session_id,
          "permalink_url": order.permalink_url,
          "status": order.status.value,
          "refunds": [
              refund.model_dump(mode="json") for refund in order.refunds
          ],
      },
  }


@dataclasses.dataclass
class DeliveryReport:
  delivered: int = 0
  retried: int = 0
  failed: int = 0
  skipped: int = 0


class WebhookDispatcher:
  """Signs, queues and delivers order webhooks."""

  def __init__(
      self,
      database: db.DatabaseManager,
      settings: Settings,
      clock: Callable[[], float] = time.time,
      transport: Optional[httpx.AsyncBaseTransport] = None,
  ):
    self._db = database
    self._url = settings.webhook_url
    self._secret = settings.webhook_secret
    self._timeout = settings.webhook_timeout_seconds
    self._max_attempts = settings.webhook_max_attempts
    self._backoff_base = settings.webhook_backoff_base_seconds
    self._backoff_max = settings.webhook_backoff_max_seconds
    self._batch_size = settings.webhook_batch_size
    self._clock = clock
    self._transport = transport

  def retry_schedule(self) -> List[int]:
    """Delays applied between successive attempts of one record."""
    return [
        backoff_delay(attempt, self._backoff_base, self._backoff_max)
        for attempt in range(1, self._max_attempts)
    ]

  async def enqueue(
      self, session: AsyncSession, event: OrderEvent
  ) -> Optional[db.WebhookDelivery]:
    """Event bus subscriber: writes a delivery record for `event`.

    Runs inside the caller's transaction. `order_created` is written at most
    once per order.
    """
    order_id = event.order.id
    if (
        event.event_type == WebhookEventType.ORDER_CREATED
        and await db.has_webhook_delivery(
            session, order_id, WebhookEventType.ORDER_CREATED.value
        )
    ):
      logger.info("order_created already queued for order %s", order_id)
      return None

    now = int(self._clock())
    timestamp = datetime.datetime.fromtimestamp(
        now, datetime.timezone.utc
    ).isoformat()
    body = canonical_json(build_payload(event, timestamp))

    record = db.WebhookDelivery(
        webhook_id=f"whk_{uuid.uuid4().hex}",
        order_id=order_id,
        event_type=event.event_type.value,
        target_url=self._url,
        payload=body,
        timestamp=timestamp,
        attempt_count=0,
        created_at=now,
    )
    if self._url and self._secret:
      record.signature = sign_payload(self._secret, body)
      record.outcome = DeliveryOutcome.PENDING.value
      record.next_retry_at = now
    else:
      logger.warning(
          "Webhook endpoint not configured; %s for order %s not sent",
          event.event_type.value,
          order_id,
      )
      record.outcome = DeliveryOutcome.FAILED.value
      record.last_error = "not_configured"
    session.add(record)
    return record

  async def deliver_due(self) -> DeliveryReport:
    """Attempts every due delivery once, preserving per-order order."""
    report = DeliveryReport()
    now = int(self._clock())
    async with self._db.session_factory() as session:
      pending = await db.list_pending_deliveries(session, self._batch_size)
    if not pending:
      return report

    blocked_orders: Set[str] = set()
    async with httpx.AsyncClient(
        timeout=self._timeout, transport=self._transport
    ) as client:
      for record in pending:
        if record.order_id in blocked_orders:
          report.skipped += 1
          continue
        if record.next_retry_at is not None and record.next_retry_at > now:
          blocked_orders.add(record.order_id)
          report.skipped += 1
          continue

        outcome = await self._attempt(client, record, now)
        if outcome is None:
          report.skipped += 1
          blocked_orders.add(record.order_id)
        elif outcome == DeliveryOutcome.DELIVERED:
          report.delivered += 1
        else:
          blocked_orders.add(record.order_id)
          if outcome == DeliveryOutcome.FAILED:
            report.failed += 1
          else:
            report.retried += 1
    return report

  async def _attempt(
      self, client: httpx.AsyncClient, record: db.WebhookDelivery, now: int
  ) -> Optional[DeliveryOutcome]:
    attempt = record.attempt_count + 1
    # Claim the attempt so a concurrent worker skips this record.
    async with self._db.session_factory() as session:
      async with session.begin():
        claimed = await db.update_delivery_if_attempts(
            session,
            record.id,
            record.attempt_count,
            attempt_count=attempt,
            last_attempt_at=now,
            next_retry_at=now + int(self._timeout) + 1,
        )
    if not claimed:
      return None

    error = None
    try:
      await self._post(client, record)
    except (httpx.HTTPError, exceptions.WebhookDeliveryFailed) as e:
      error = str(e) or e.__class__.__name__

    values = {}
    # Finished records keep their outcome but drop the body.
    if error is None:
      outcome = DeliveryOutcome.DELIVERED
      values.update(payload=None, next_retry_at=None, last_error=None)
      logger.info(
          "Delivered %s webhook %s for order %s",
          record.event_type,
          record.webhook_id,
          record.order_id,
      )
    elif attempt >= self._max_attempts:
      outcome = DeliveryOutcome.FAILED
      values.update(payload=None, next_retry_at=None, last_error=error)
      logger.error(
          "Giving up on webhook %s for order %s after %d attempts: %s",
          record.webhook_id,
          record.order_id,
          attempt,
          error,
      )
    else:
      outcome = DeliveryOutcome.PENDING
      delay = backoff_delay(attempt, self._backoff_base, self._backoff_max)
      values.update(next_retry_at=now + delay, last_error=error)
      logger.warning(
          "Webhook %s attempt %d failed (%s); retrying in %ds",
          record.webhook_id,
          attempt,
          error,
          delay,
      )

    async with self._db.session_factory() as session:
      async with session.begin():
        await db.update_delivery_if_attempts(
            session, record.id, attempt, outcome=outcome.value, **values
        )
    return outcome

  async def _post(
      self, client: httpx.AsyncClient, record: db.WebhookDelivery
  ) -> None:
    response = await client.post(
        record.target_url,
        content=record.payload.encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            SIGNATURE_HEADER: record.signature,
            TIMESTAMP_HEADER: record.timestamp,
            WEBHOOK_ID_HEADER: record.webhook_id,
        },
    )
    if not response.is_success:
      raise exceptions.WebhookDeliveryFailed(
          f"Endpoint returned {response.status_code}"
      )
