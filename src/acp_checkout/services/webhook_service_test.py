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

"""Tests for webhook signing, queuing and delivery."""

import asyncio
import json
import shutil
import tempfile
from typing import List

from absl.testing import absltest
import httpx
from sqlalchemy import select

from acp_checkout import db
from acp_checkout import testing_utils
from acp_checkout.enums import OrderStatus
from acp_checkout.enums import WebhookEventType
from acp_checkout.events import OrderEvent
from acp_checkout.models import OrderResponse
from acp_checkout.models import Totals
from acp_checkout.services.webhook_service import backoff_delay
from acp_checkout.services.webhook_service import sign_payload
from acp_checkout.services.webhook_service import SIGNATURE_HEADER
from acp_checkout.services.webhook_service import verify_signature
from acp_checkout.services.webhook_service import WEBHOOK_ID_HEADER
from acp_checkout.services.webhook_service import WebhookDispatcher


def _order(order_id: str = "ord_1", status=OrderStatus.CONFIRMED):
  return OrderResponse(
      id=order_id,
      checkout_session_id="cs_1",
      status=status,
      permalink_url=f"https://merchant.example/orders/{order_id}",
      currency="usd",
      line_items=[],
      totals=Totals.compute(1000, 500, 0, 0),
      created_at="2023-11-14T22:13:20+00:00",
      updated_at="2023-11-14T22:13:20+00:00",
  )


class SigningTest(absltest.TestCase):

  def test_signature_round_trip(self):
    body = '{"a":1}'
    signature = sign_payload("secret", body)
    self.assertLen(signature, 64)
    self.assertTrue(verify_signature("secret", body, signature))
    self.assertFalse(verify_signature("other", body, signature))
    self.assertFalse(verify_signature("secret", '{"a": 1}', signature))

  def test_backoff_doubles_up_to_the_cap(self):
    self.assertEqual(
        [backoff_delay(n, 5, 60) for n in range(1, 7)], [5, 10, 20, 40, 60, 60]
    )


class WebhookDispatcherTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.clock = testing_utils.FakeClock()
    self.database = db.DatabaseManager()
    self.sent: List[httpx.Request] = []
    self.statuses: List[int] = []

  def tearDown(self):
    shutil.rmtree(self.test_dir)
    super().tearDown()

  def _dispatcher(self, **overrides) -> WebhookDispatcher:
    self.settings = testing_utils.make_settings(self.test_dir, **overrides)
    return WebhookDispatcher(
        self.database,
        self.settings,
        clock=self.clock,
        transport=httpx.MockTransport(self._respond),
    )

  def _respond(self, request: httpx.Request) -> httpx.Response:
    self.sent.append(request)
    status = self.statuses.pop(0) if self.statuses else 200
    return httpx.Response(status)

  def _run(self, fn):
    async def run():
      await self.database.init_db(self.settings.database_path)
      try:
        return await fn()
      finally:
        await self.database.close()

    return asyncio.run(run())

  async def _enqueue(self, dispatcher, event):
    async with self.database.session_factory() as session:
      async with session.begin():
        return await dispatcher.enqueue(session, event)

  async def _deliveries(self) -> List[db.WebhookDelivery]:
    async with self.database.session_factory() as session:
      result = await session.execute(
          select(db.WebhookDelivery).order_by(db.WebhookDelivery.id)
      )
      return list(result.scalars().all())

  def test_retry_schedule(self):
    dispatcher = self._dispatcher(
        webhook_max_attempts=5,
        webhook_backoff_base_seconds=5,
        webhook_backoff_max_seconds=600,
    )
    self.assertEqual(dispatcher.retry_schedule(), [5, 10, 20, 40])

  def test_delivers_signed_canonical_body(self):
    dispatcher = self._dispatcher()

    async def scenario():
      await self._enqueue(
          dispatcher, OrderEvent(WebhookEventType.ORDER_CREATED, _order())
      )
      report = await dispatcher.deliver_due()
      return report, await self._deliveries()

    report, deliveries = self._run(scenario)
    self.assertEqual(report.delivered, 1)
    self.assertLen(self.sent, 1)
    request = self.sent[0]
    body = request.content.decode("utf-8")
    self.assertEqual(
        body,
        json.dumps(json.loads(body), sort_keys=True, separators=(",", ":")),
    )
    self.assertEqual(
        request.headers[SIGNATURE_HEADER],
        sign_payload(testing_utils.WEBHOOK_SECRET, body),
    )
    self.assertEqual(
        request.headers[WEBHOOK_ID_HEADER], deliveries[0].webhook_id
    )
    payload = json.loads(body)
    self.assertEqual(payload["event_type"], "order_created")
    self.assertEqual(payload["data"]["type"], "order")
    self.assertEqual(payload["data"]["status"], "confirmed")
    self.assertEqual(deliveries[0].outcome, "delivered")
    self.assertIsNone(deliveries[0].payload)

  def test_order_created_is_queued_once(self):
    dispatcher = self._dispatcher()
    event = OrderEvent(WebhookEventType.ORDER_CREATED, _order())

    async def scenario():
      first = await self._enqueue(dispatcher, event)
      second = await self._enqueue(dispatcher, event)
      return first, second, await self._deliveries()

    first, second, deliveries = self._run(scenario)
    self.assertIsNotNone(first)
    self.assertIsNone(second)
    self.assertLen(deliveries, 1)

  def test_unconfigured_endpoint_is_recorded_as_failed(self):
    dispatcher = self._dispatcher(webhook_url=None)

    async def scenario():
      await self._enqueue(
          dispatcher, OrderEvent(WebhookEventType.ORDER_CREATED, _order())
      )
      report = await dispatcher.deliver_due()
      return report, await self._deliveries()

    report, deliveries = self._run(scenario)
    self.assertEqual(report.delivered, 0)
    self.assertEmpty(self.sent)
    self.assertEqual(deliveries[0].outcome, "failed")
    self.assertIsNone(deliveries[0].payload)
    self.assertIsNotNone(deliveries[0].last_error)
    self.assertEqual(deliveries[0].last_error, "not_configured")

  def test_failed_attempt_is_retried_after_backoff(self):
    dispatcher = self._dispatcher(webhook_backoff_base_seconds=5)
    self.statuses = [500]

    async def scenario():
      await self._enqueue(
          dispatcher, OrderEvent(WebhookEventType.ORDER_CREATED, _order())
      )
      first = await dispatcher.deliver_due()
      pending = (await self._deliveries())[0]
      too_early = await dispatcher.deliver_due()
      self.clock.advance(5)
      retried = await dispatcher.deliver_due()
      return first, pending, too_early, retried, await self._deliveries()

    first, pending, too_early, retried, deliveries = self._run(scenario)
    self.assertEqual(first.retried, 1)
    self.assertEqual(pending.attempt_count, 1)
    self.assertEqual(pending.next_retry_at, int(testing_utils.START_TIME) + 5)
    self.assertEqual(pending.last_error, "Endpoint returned 500")
    self.assertEqual(too_early.skipped, 1)
    self.assertEqual(retried.delivered, 1)
    self.assertEqual(deliveries[0].attempt_count, 2)
    self.assertLen(self.sent, 2)
    # Retries resend the exact same bytes and signature.
    self.assertEqual(self.sent[0].content, self.sent[1].content)
    self.assertEqual(
        self.sent[0].headers[SIGNATURE_HEADER],
        self.sent[1].headers[SIGNATURE_HEADER],
    )

  def test_gives_up_after_max_attempts(self):
    dispatcher = self._dispatcher(
        webhook_max_attempts=2, webhook_backoff_base_seconds=1
    )
    self.statuses = [503, 503, 503]

    async def scenario():
      await self._enqueue(
          dispatcher, OrderEvent(WebhookEventType.ORDER_CREATED, _order())
      )
      await dispatcher.deliver_due()
      self.clock.advance(1)
      report = await dispatcher.deliver_due()
      self.clock.advance(100)
      after = await dispatcher.deliver_due()
      return report, after, await self._deliveries()

    report, after, deliveries = self._run(scenario)
    self.assertEqual(report.failed, 1)
    self.assertEqual(after.delivered + after.retried + after.failed, 0)
    self.assertEqual(deliveries[0].outcome, "failed")
    self.assertLen(self.sent, 2)

  def test_events_of_one_order_are_not_reordered(self):
    dispatcher = self._dispatcher()
    self.statuses = [500]

    async def scenario():
      await self._enqueue(
          dispatcher, OrderEvent(WebhookEventType.ORDER_CREATED, _order())
      )
      await self._enqueue(
          dispatcher,
          OrderEvent(
              WebhookEventType.ORDER_UPDATED,
              _order(status=OrderStatus.SHIPPED),
          ),
      )
      await self._enqueue(
          dispatcher,
          OrderEvent(WebhookEventType.ORDER_CREATED, _order("ord_2")),
      )
      report = await dispatcher.deliver_due()
      self.clock.advance(60)
      await dispatcher.deliver_due()
      return report

    report = self._run(scenario)
    self.assertEqual(report.retried, 1)
    self.assertEqual(report.skipped, 1)
    self.assertEqual(report.delivered, 1)
    bodies = [json.loads(request.content) for request in self.sent]
    sent = [(body["data"]["id"], body["event_type"]) for body in bodies]
    self.assertEqual(
        sent,
        [
            ("ord_1", "order_created"),
            ("ord_2", "order_created"),
            ("ord_1", "order_created"),
            ("ord_1", "order_updated"),
        ],
    )


if __name__ == "__main__":
  absltest.main()
