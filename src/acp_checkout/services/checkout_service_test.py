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

"""Tests for the checkout session state machine and totals."""

import asyncio
import shutil
import tempfile
from typing import Any, Awaitable, Callable

from absl.testing import absltest
from sqlalchemy import select

from acp_checkout import db
from acp_checkout import exceptions
from acp_checkout import testing_utils
from acp_checkout.context import RequestContext
from acp_checkout.enums import CheckoutStatus
from acp_checkout.enums import OrderStatus
from acp_checkout.enums import WebhookEventType
from acp_checkout.events import EventBus
from acp_checkout.models import Address
from acp_checkout.models import Buyer
from acp_checkout.models import CompleteCheckoutSessionRequest
from acp_checkout.models import CreateCheckoutSessionRequest
from acp_checkout.models import UpdateCheckoutSessionRequest
from acp_checkout.services.catalog import DatabaseCatalog
from acp_checkout.services.checkout_service import CheckoutService
from acp_checkout.services.fulfillment_service import FulfillmentService
from acp_checkout.services.order_service import OrderService
from acp_checkout.services.payment_adapter import MockPaymentGateway
from acp_checkout.services.payment_adapter import PaymentCompletionAdapter

CTX = RequestContext(
    principal="merchant:test",
    endpoint="update",
    method="POST",
    path="/checkout_sessions",
    trace_id="trace-1",
    api_version="2025-09-29",
)


class _FailingOrders:
  """Order materializer whose writes always fail."""

  def __init__(self):
    self.calls = 0

  async def create_order(self, session, payment_reference):
    del session, payment_reference  # Unused.
    self.calls += 1
    raise RuntimeError("orders table unavailable")

  async def get_order(self, order_id):
    raise AssertionError(f"unexpected lookup of {order_id}")

  async def find_order_by_payment_reference(self, payment_reference):
    del payment_reference  # Unused.
    return None


class _InterruptedOrders:
  """Order materializer that runs `interruption` before creating an order."""

  def __init__(self, orders, interruption):
    self._orders = orders
    self._interruption = interruption

  async def create_order(self, session, payment_reference):
    await self._interruption(session.id)
    return await self._orders.create_order(session, payment_reference)

  def __getattr__(self, name):
    return getattr(self._orders, name)


class CheckoutServiceTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.settings = testing_utils.make_settings(self.test_dir)
    self.clock = testing_utils.FakeClock()
    self.database = db.DatabaseManager()
    self.gateway = MockPaymentGateway()
    self.event_bus = EventBus()
    self.orders = OrderService(
        self.database,
        self.event_bus,
        self.settings.order_permalink_base,
        clock=self.clock,
    )

  def tearDown(self):
    shutil.rmtree(self.test_dir)
    super().tearDown()

  def _service(self, orders=None) -> CheckoutService:
    return CheckoutService(
        self.database,
        self.settings,
        DatabaseCatalog(self.database),
        FulfillmentService(),
        PaymentCompletionAdapter(self.gateway),
        orders or self.orders,
        self.event_bus,
        clock=self.clock,
    )

  def _run(self, fn: Callable[[], Awaitable[Any]]) -> Any:
    async def run() -> Any:
      await self.database.init_db(self.settings.database_path)
      try:
        await testing_utils.seed_catalog(self.database)
        return await fn()
      finally:
        await self.database.close()

    return asyncio.run(run())

  async def _create(self, service, items=None, state="OR", **fields):
    request = CreateCheckoutSessionRequest(
        items=items or [{"id": "rose", "quantity": 1}],
        buyer=testing_utils.BUYER,
        shipping_address=testing_utils.address(state=state),
        **fields,
    )
    return await service.create_session(CTX, request)

  def test_concurrent_updates_with_same_version(self):
    service = self._service()

    async def scenario():
      session = await self._create(service)
      updates = [
          service.update_session(
              CTX,
              session.id,
              UpdateCheckoutSessionRequest(
                  shipping_selection=option, version=session.version
              ),
          )
          for option in ["std-us", "exp-us"] * 3
      ]
      results = await asyncio.gather(*updates, return_exceptions=True)
      final = await service.get_session(CTX, session.id)
      return results, final

    results, final = self._run(scenario)
    succeeded = [r for r in results if not isinstance(r, Exception)]
    failed = [r for r in results if isinstance(r, Exception)]
    self.assertLen(succeeded, 1)
    self.assertLen(failed, 5)
    for error in failed:
      self.assertIsInstance(error, exceptions.SessionStateConflict)
    self.assertEqual(final.version, 2)
    self.assertEqual(final.shipping_selection, succeeded[0].shipping_selection)

  def test_tax_rounds_half_up_after_discount(self):
    service = self._service()

    async def scenario():
      session = await self._create(
          service,
          items=[{"id": "pot", "quantity": 1}],
          state="CA",
          discount_codes=["10OFF"],
      )
      return await service.update_session(
          CTX,
          session.id,
          UpdateCheckoutSessionRequest(shipping_selection="std-us"),
      )

    session = self._run(scenario)
    # (1000 - 100) * 7.25% = 65.25
    self.assertEqual(session.totals.subtotal, 1000)
    self.assertEqual(session.totals.discount, 100)
    self.assertEqual(session.totals.tax, 65)
    self.assertEqual(session.totals.shipping, 500)
    self.assertEqual(session.totals.total, 1465)

  def test_discount_is_capped_at_subtotal(self):
    service = self._service()

    async def scenario():
      return await self._create(
          service,
          items=[{"id": "gift_card", "quantity": 1}],
          discount_codes=["BIG"],
      )

    session = self._run(scenario)
    self.assertEqual(session.totals.discount, 2500)
    self.assertEqual(session.totals.total, 0)
    self.assertEmpty(session.shipping_options)

  def test_unknown_discount_code_is_rejected(self):
    service = self._service()

    async def scenario():
      await self._create(service, discount_codes=["NOPE"])

    with self.assertRaises(exceptions.ValidationFailed) as cm:
      self._run(scenario)
    self.assertEqual(cm.exception.code, "invalid_discount_code")
    self.assertEqual(cm.exception.param, "$.discount_codes[0]")

  def test_unknown_discount_code_reports_request_index(self):
    service = self._service()

    async def scenario():
      await self._create(service, discount_codes=["10OFF", " 10OFF", "NOPE"])

    with self.assertRaises(exceptions.ValidationFailed) as cm:
      self._run(scenario)
    self.assertEqual(cm.exception.param, "$.discount_codes[2]")

  def test_explicit_null_clears_field(self):
    service = self._service()

    async def scenario():
      session = await self._create(service)
      return await service.update_session(
          CTX,
          session.id,
          UpdateCheckoutSessionRequest.model_validate(
              {"shipping_address": None}
          ),
      )

    session = self._run(scenario)
    self.assertIsNone(session.shipping_address)
    self.assertEmpty(session.shipping_options)
    self.assertIsNotNone(session.buyer)

  def test_duplicate_items_are_merged(self):
    service = self._service()

    async def scenario():
      return await self._create(
          service,
          items=[
              {"id": "rose", "quantity": 1},
              {"id": "pot", "quantity": 1},
              {"id": "rose", "quantity": 2},
          ],
      )

    session = self._run(scenario)
    self.assertEqual(
        [(item.id, item.quantity) for item in session.line_items],
        [("li_rose", 3), ("li_pot", 1)],
    )
    self.assertEqual(session.totals.subtotal, 7000)

  def test_reservations_hold_stock_until_cancel(self):
    service = self._service()

    async def scenario():
      holder = await self._create(
          service, items=[{"id": "rose", "quantity": 10}]
      )
      with self.assertRaises(exceptions.ValidationFailed) as cm:
        await self._create(service)
      self.assertEqual(cm.exception.code, "out_of_stock")

      await service.cancel_session(CTX, holder.id)
      return await self._create(service)

    session = self._run(scenario)
    self.assertEqual(session.status, CheckoutStatus.OPEN)

  def test_ttl_expiry_on_access(self):
    service = self._service()

    async def scenario():
      session = await self._create(service)
      self.clock.advance(self.settings.session_ttl_seconds + 1)
      with self.assertRaises(exceptions.SessionStateConflict):
        await service.update_session(
            CTX,
            session.id,
            UpdateCheckoutSessionRequest(shipping_selection="std-us"),
        )
      return await service.get_session(CTX, session.id)

    session = self._run(scenario)
    self.assertEqual(session.status, CheckoutStatus.EXPIRED)

  def test_sweep_expires_abandoned_sessions(self):
    service = self._service()

    async def scenario():
      stale = await self._create(service)
      self.clock.advance(self.settings.abandoned_session_seconds - 10)
      fresh = await self._create(service)
      self.clock.advance(20)
      expired = await service.expire_sessions()
      return (
          expired,
          await service.get_session(CTX, stale.id),
          await service.get_session(CTX, fresh.id),
      )

    expired, stale, fresh = self._run(scenario)
    self.assertEqual(expired, 1)
    self.assertEqual(stale.status, CheckoutStatus.EXPIRED)
    self.assertEqual(fresh.status, CheckoutStatus.OPEN)

  def test_complete_requires_buyer(self):
    service = self._service()

    async def scenario():
      request = CreateCheckoutSessionRequest(
          items=[{"id": "gift_card", "quantity": 1}]
      )
      session = await service.create_session(CTX, request)
      await service.complete_session(
          CTX,
          session.id,
          CompleteCheckoutSessionRequest(payment_data={"token": "success_1"}),
      )

    with self.assertRaises(exceptions.ValidationFailed) as cm:
      self._run(scenario)
    self.assertEqual(cm.exception.code, "missing_buyer")
    self.assertEmpty(self.gateway.requests)

  def test_digital_goods_complete_without_shipping(self):
    service = self._service()

    async def scenario():
      request = CreateCheckoutSessionRequest(
          items=[{"id": "gift_card", "quantity": 2}],
          buyer=Buyer(first_name="Ann", email="ann@example.com"),
          billing_address=Address(**testing_utils.address(state="CA")),
      )
      session = await service.create_session(CTX, request)
      return await service.complete_session(
          CTX,
          session.id,
          CompleteCheckoutSessionRequest(payment_data={"token": "spt_123"}),
      )

    session = self._run(scenario)
    self.assertEqual(session.status, CheckoutStatus.COMPLETED)
    # Tax falls back to the billing address: 5000 * 7.25% = 362.5
    self.assertEqual(session.totals.tax, 363)
    self.assertEqual(self.gateway.requests[0].amount, 5363)

  def test_failed_order_creation_refunds_payment(self):
    failing = _FailingOrders()
    service = self._service(orders=failing)

    async def scenario():
      session = await self._create(service)
      await service.update_session(
          CTX,
          session.id,
          UpdateCheckoutSessionRequest(shipping_selection="std-us"),
      )
      with self.assertRaises(exceptions.OrderMaterializationFailed):
        await service.complete_session(
            CTX,
            session.id,
            CompleteCheckoutSessionRequest(
                payment_data={"token": "success_1"}
            ),
        )
      return await service.get_session(CTX, session.id)

    session = self._run(scenario)
    self.assertEqual(
        failing.calls, self.settings.order_materialization_attempts
    )
    self.assertEqual(session.status, CheckoutStatus.OPEN)
    self.assertIsNone(session.order_id)
    self.assertLen(self.gateway.refunds, 1)
    self.assertEqual(self.gateway.refunds[0][1], 2500)

  def test_stale_completion_claim_is_released(self):
    service = self._service()

    async def scenario():
      session = await self._create(service)
      async with self.database.session_factory() as db_session:
        async with db_session.begin():
          await db.update_checkout_if_version(
              db_session,
              session.id,
              session.version,
              completion_attempt_id="attempt-1",
              completion_started_at=int(self.clock()),
          )
      with self.assertRaises(exceptions.SessionStateConflict) as cm:
        await service.cancel_session(CTX, session.id)
      self.assertEqual(cm.exception.code, "completion_in_progress")

      self.assertEqual(await service.release_stale_completions(), 0)
      self.clock.advance(self.settings.completion_claim_timeout_seconds + 1)
      released = await service.release_stale_completions()
      canceled = await service.cancel_session(CTX, session.id)
      return released, canceled

    released, canceled = self._run(scenario)
    self.assertEqual(released, 1)
    self.assertEqual(canceled.status, CheckoutStatus.CANCELED)

  async def _claim(self, session):
    async with self.database.session_factory() as db_session:
      async with db_session.begin():
        await db.update_checkout_if_version(
            db_session,
            session.id,
            session.version,
            completion_attempt_id="attempt-1",
            completion_started_at=int(self.clock()),
        )

  async def _complete_with_shipping(self, service, session):
    await service.update_session(
        CTX,
        session.id,
        UpdateCheckoutSessionRequest(shipping_selection="std-us"),
    )
    return await service.complete_session(
        CTX,
        session.id,
        CompleteCheckoutSessionRequest(payment_data={"token": "success_1"}),
    )

  def test_completion_survives_released_claim(self):
    published = []

    async def record(db_session, event):
      del db_session  # Unused.
      published.append(event.event_type)

    self.event_bus.subscribe(record)

    async def release_claim(checkout_id):
      del checkout_id  # Unused.
      self.clock.advance(self.settings.completion_claim_timeout_seconds + 1)
      self.assertEqual(await service.release_stale_completions(), 1)

    service = self._service(
        orders=_InterruptedOrders(self.orders, release_claim)
    )

    async def scenario():
      session = await self._create(service)
      completed = await self._complete_with_shipping(service, session)
      return completed, await service.get_session(CTX, session.id)

    completed, stored = self._run(scenario)
    self.assertEqual(completed.status, CheckoutStatus.COMPLETED)
    self.assertIsNotNone(completed.order_id)
    self.assertEqual(stored.status, CheckoutStatus.COMPLETED)
    self.assertEqual(stored.order_id, completed.order_id)
    self.assertEqual(published, [WebhookEventType.ORDER_CREATED])
    self.assertEmpty(self.gateway.refunds)

  def test_sweep_completes_claim_whose_order_exists(self):
    service = self._service()

    async def scenario():
      session = await self._create(service)
      await self._claim(session)
      order_id = await self.orders.create_order(session, "pi_captured")
      self.clock.advance(self.settings.completion_claim_timeout_seconds + 1)
      resolved = await service.release_stale_completions()
      return order_id, resolved, await service.get_session(CTX, session.id)

    order_id, resolved, session = self._run(scenario)
    self.assertEqual(resolved, 1)
    self.assertEqual(session.status, CheckoutStatus.COMPLETED)
    self.assertEqual(session.order_id, order_id)
    self.assertEqual(session.order.id, order_id)

  def test_payment_refunded_when_session_canceled_mid_completion(self):
    async def cancel(checkout_id):
      self.clock.advance(self.settings.completion_claim_timeout_seconds + 1)
      await service.release_stale_completions()
      await service.cancel_session(CTX, checkout_id)

    service = self._service(orders=_InterruptedOrders(self.orders, cancel))

    async def scenario():
      session = await self._create(service)
      with self.assertRaises(exceptions.SessionStateConflict):
        await self._complete_with_shipping(service, session)
      async with self.database.session_factory() as db_session:
        order_row = await db.get_order_by_checkout(db_session, session.id)
      return (
          await service.get_session(CTX, session.id),
          await self.orders.get_order(order_row.id),
      )

    session, order = self._run(scenario)
    self.assertEqual(session.status, CheckoutStatus.CANCELED)
    self.assertIsNone(session.order_id)
    self.assertEqual(order.status, OrderStatus.CANCELED)
    self.assertLen(self.gateway.refunds, 1)

  def test_request_log_written_per_mutation(self):
    service = self._service()

    async def scenario():
      session = await self._create(service)
      await service.cancel_session(CTX, session.id)
      async with self.database.session_factory() as db_session:
        result = await db_session.execute(
            select(db.RequestLog).where(
                db.RequestLog.checkout_id == session.id
            )
        )
        return list(result.scalars().all())

    logs = self._run(scenario)
    self.assertLen(logs, 2)
    self.assertEqual(logs[0].trace_id, "trace-1")


if __name__ == "__main__":
  absltest.main()
