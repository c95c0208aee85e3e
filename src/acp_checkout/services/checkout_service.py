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

This module provides the `CheckoutService` class, which encapsulates the
business logic for creating, retrieving, updating, completing and canceling
checkout sessions, plus the background expiry of abandoned ones.

Key responsibilities include:
- Resolving line items against the catalog collaborator and holding stock.
- Recomputing shipping options and totals on every mutation. Totals are never
  taken from the client.
- Enforcing the session state machine: only `open` sessions change, and
  every write is conditional on the version that was read, so concurrent
  writers get a conflict instead of a lost update.
- Completing payment with a delegated token, materializing the order and
  queuing the `order_created` webhook in the same transaction that marks the
  session completed.
"""

import asyncio
import datetime
import logging
import time
from typing import Any, Callable, Dict, List, Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from acp_checkout import db
from acp_checkout import exceptions
from acp_checkout.config import Settings
from acp_checkout.context import RequestContext
from acp_checkout.enums import CheckoutStatus
from acp_checkout.enums import OrderStatus
from acp_checkout.enums import PaymentStatus
from acp_checkout.enums import WebhookEventType
from acp_checkout.events import EventBus
from acp_checkout.events import OrderEvent
from acp_checkout.models import AppliedDiscount
from acp_checkout.models import CancelCheckoutSessionRequest
from acp_checkout.models import CheckoutSessionDocument
from acp_checkout.models import CheckoutSessionResponse
from acp_checkout.models import CompleteCheckoutSessionRequest
from acp_checkout.models import CreateCheckoutSessionRequest
from acp_checkout.models import Item
from acp_checkout.models import LineItem
from acp_checkout.models import OrderResponse
from acp_checkout.models import OrderSummary
from acp_checkout.models import Totals
from acp_checkout.models import UpdateCheckoutSessionRequest
from acp_checkout.services.catalog import Catalog
from acp_checkout.services.catalog import supports_reservations
from acp_checkout.services.fulfillment_service import FulfillmentService
from acp_checkout.services.order_service import OrderMaterializer
from acp_checkout.services.payment_adapter import PaymentCompletionAdapter

logger = logging.getLogger(__name__)

_REDACTED = "[redacted]"


def _timestamp(epoch: int) -> str:
  return datetime.datetime.fromtimestamp(
      epoch, datetime.timezone.utc
  ).isoformat()


def _discount_amount(discount: db.Discount, subtotal: int) -> int:
  if discount.type == "percentage":
    return subtotal * discount.value // 100
  if discount.type == "fixed_amount":
    return discount.value
  logger.warning(
      "Ignoring discount %s of unknown type %s", discount.code, discount.type
  )
  return 0


def _pick_tax_rate(rates: List[db.TaxRate], region: Optional[str]) -> int:
  """Most specific rate: region, then country, then 'default'."""
  best, best_rank = None, -1
  for rate in rates:
    if rate.country_code == "default":
      rank = 0
    elif rate.region is None:
      rank = 1
    elif region and rate.region.upper() == region.upper():
      rank = 2
    else:
      continue
    if rank > best_rank:
      best, best_rank = rate, rank
  return best.rate_bps if best else 0


def _tax_amount(taxable: int, rate_bps: int) -> int:
  # Half-up rounding to the minor unit.
  return (taxable * rate_bps + 5000) // 10000


class CheckoutService:
  """Service for managing checkout sessions."""

  def __init__(
      self,
      database: db.DatabaseManager,
      settings: Settings,
      catalog: Catalog,
      fulfillment_service: FulfillmentService,
      payment_adapter: PaymentCompletionAdapter,
      orders: OrderMaterializer,
      event_bus: EventBus,
      clock: Callable[[], float] = time.time,
  ):
    self._db = database
    self._settings = settings
    self._catalog = catalog
    self._fulfillment = fulfillment_service
    self._payments = payment_adapter
    self._orders = orders
    self._event_bus = event_bus
    self._clock = clock

  def _now(self) -> int:
    return int(self._clock())

  # --- Protocol operations ---

  async def create_session(
      self, ctx: RequestContext, request: CreateCheckoutSessionRequest
  ) -> CheckoutSessionResponse:
    """Creates a new open checkout session."""
    checkout_id = f"cs_{uuid.uuid4().hex}"
    logger.info("[%s] Creating checkout session %s", ctx.trace_id, checkout_id)

    line_items = await self._resolve_line_items(request.items, checkout_id)
    discount_codes = await self._validate_discount_codes(
        request.discount_codes
    )
    document = await self._recalculate(
        CheckoutSessionDocument(
            currency=self._settings.currency,
            line_items=line_items,
            buyer=request.buyer,
            shipping_address=request.shipping_address,
            billing_address=request.billing_address,
            discount_codes=discount_codes,
        )
    )

    now = self._now()
    row = db.CheckoutSession(
        id=checkout_id,
        status=CheckoutStatus.OPEN.value,
        version=1,
        data=document.model_dump(mode="json"),
        created_at=now,
        updated_at=now,
        expires_at=now + self._settings.session_ttl_seconds,
    )
    async with self._db.session_factory() as session:
      async with session.begin():
        session.add(row)
        await self._log_request(session, ctx, checkout_id, request)

    await self._reserve(checkout_id, line_items)
    return self._render(row, document)

  async def get_session(
      self, ctx: RequestContext, checkout_id: str
  ) -> CheckoutSessionResponse:
    """Retrieves a checkout session, including terminal ones."""
    row = await self._load(checkout_id)
    now = self._now()
    if (
        row.status == CheckoutStatus.OPEN.value
        and not row.completion_attempt_id
        and row.expires_at is not None
        and row.expires_at <= now
        and await self._expire(row, now)
    ):
      row = await self._load(checkout_id)
    async with self._db.session_factory() as session:
      async with session.begin():
        await self._log_request(session, ctx, checkout_id)
    return self._render(row, CheckoutSessionDocument.model_validate(row.data))

  async def update_session(
      self,
      ctx: RequestContext,
      checkout_id: str,
      request: UpdateCheckoutSessionRequest,
  ) -> CheckoutSessionResponse:
    """Applies a partial update to an open session.

    Args:
      ctx: The request context.
      checkout_id: The session to update.
      request: Fields to change. Only fields present in the body are applied.

    Returns:
      The updated session.

    Raises:
      SessionNotFound: Unknown session.
      SessionStateConflict: The session is terminal, being completed, or was
        modified since `request.version` (or since it was read).
      ValidationFailed: Unknown item, insufficient stock, unknown discount
        code or a shipping selection that is not offered for the address.
    """
    logger.info("[%s] Updating checkout session %s", ctx.trace_id, checkout_id)
    row = await self._load(checkout_id)
    await self._ensure_mutable(row, "update")
    if request.version is not None and request.version != row.version:
      raise exceptions.SessionStateConflict(
          f"Checkout session is at version {row.version}, not"
          f" {request.version}",
          code="stale_version",
      )

    document = CheckoutSessionDocument.model_validate(row.data)
    fields = request.model_fields_set
    items_changed = False

    if "items" in fields and request.items is not None:
      document.line_items = await self._resolve_line_items(
          request.items, checkout_id
      )
      items_changed = True
    if "buyer" in fields:
      document.buyer = request.buyer
    if "shipping_address" in fields:
      document.shipping_address = request.shipping_address
    if "billing_address" in fields:
      document.billing_address = request.billing_address
    if "discount_codes" in fields:
      document.discount_codes = await self._validate_discount_codes(
          request.discount_codes or []
      )
    if "shipping_selection" in fields:
      document.shipping_selection = request.shipping_selection

    document = await self._recalculate(document)
    if (
        request.shipping_selection
        and document.shipping_selection != request.shipping_selection
    ):
      raise exceptions.ValidationFailed(
          f"Shipping option {request.shipping_selection} is not available for"
          " this address",
          param="$.shipping_selection",
          code="invalid_shipping_selection",
      )

    now = self._now()
    async with self._db.session_factory() as session:
      async with session.begin():
        if not await db.update_checkout_if_version(
            session,
            checkout_id,
            row.version,
            data=document.model_dump(mode="json"),
            updated_at=now,
        ):
          raise exceptions.SessionStateConflict(
              "Checkout session was modified concurrently",
              code="stale_version",
          )
        await self._log_request(session, ctx, checkout_id, request)

    if items_changed:
      await self._reserve(checkout_id, document.line_items)
    return self._render(row, document, version=row.version + 1, updated_at=now)

  async def complete_session(
      self,
      ctx: RequestContext,
      checkout_id: str,
      request: CompleteCheckoutSessionRequest,
  ) -> CheckoutSessionResponse:
    """Pays for an open session and turns it into an order.

    The session is first claimed for this completion attempt, so concurrent
    updates, cancels and completes are rejected while the gateway call is in
    flight. A decline or gateway failure releases the claim and leaves the
    session open; success marks it completed only once the order exists.

    Args:
      ctx: The request context.
      checkout_id: The session to complete.
      request: Payment data carrying the delegated payment token.

    Returns:
      The completed session, with `order_id` set.

    Raises:
      SessionNotFound: Unknown session.
      SessionStateConflict: The session is terminal or busy.
      ValidationFailed: Buyer, shipping address or shipping selection missing,
        or an item ran out of stock.
      PaymentDeclined: The gateway declined the token.
      PaymentGatewayUnavailable: The gateway failed; retry with a new token.
      OrderMaterializationFailed: The order could not be created and the
        payment was refunded.
    """
    logger.info(
        "[%s] Completing checkout session %s", ctx.trace_id, checkout_id
    )
    row = await self._load(checkout_id)
    await self._ensure_mutable(row, "complete")

    document = CheckoutSessionDocument.model_validate(row.data)
    if request.buyer is not None:
      document.buyer = request.buyer
    if request.payment_data.billing_address is not None:
      document.billing_address = request.payment_data.billing_address
    document = await self._recalculate(document)
    self._check_ready_for_payment(document)
    await self._validate_stock(document, checkout_id)

    attempt_id = uuid.uuid4().hex
    now = self._now()
    async with self._db.session_factory() as session:
      async with session.begin():
        if not await db.update_checkout_if_version(
            session,
            checkout_id,
            row.version,
            data=document.model_dump(mode="json"),
            completion_attempt_id=attempt_id,
            completion_started_at=now,
            updated_at=now,
        ):
          raise exceptions.SessionStateConflict(
              "Checkout session was modified concurrently",
              code="stale_version",
          )
        await self._log_request(session, ctx, checkout_id, request)

    snapshot = self._render(
        row, document, version=row.version + 1, updated_at=now
    )
    outcome = await self._payments.complete_payment(
        snapshot, request.payment_data.token, attempt_id
    )

    if outcome.status == PaymentStatus.DECLINED:
      await self._release_claim(
          checkout_id, attempt_id, outcome.gateway_reference
      )
      raise exceptions.PaymentDeclined(
          outcome.message or "Payment was declined", outcome.decline_code
      )
    if outcome.status != PaymentStatus.SUCCEEDED:
      await self._release_claim(checkout_id, attempt_id, None)
      raise exceptions.PaymentGatewayUnavailable()

    reference = outcome.gateway_reference
    try:
      order_id = await self._materialize(snapshot, reference)
    except Exception as e:  # pylint: disable=broad-exception-caught
      logger.error(
          "Order creation for checkout %s failed after payment %s: %s",
          checkout_id,
          reference,
          e,
      )
      await self._payments.refund(reference, snapshot.totals.total)
      await self._release_claim(checkout_id, attempt_id, reference)
      raise exceptions.OrderMaterializationFailed() from e

    order = await self._orders.get_order(order_id)
    if not await self._finish_completion(
        checkout_id, attempt_id, document, order, reference
    ):
      await self._abandon_completion(
          checkout_id, order_id, reference, snapshot.totals.total
      )

    await self._release_reservations(checkout_id)
    logger.info(
        "Checkout session %s completed as order %s", checkout_id, order_id
    )
    return self._render(await self._load(checkout_id), document)

  async def cancel_session(
      self,
      ctx: RequestContext,
      checkout_id: str,
      request: Optional[CancelCheckoutSessionRequest] = None,
  ) -> CheckoutSessionResponse:
    """Cancels an open session and releases its stock."""
    logger.info("[%s] Canceling checkout session %s", ctx.trace_id, checkout_id)
    row = await self._load(checkout_id)
    await self._ensure_mutable(row, "cancel")

    now = self._now()
    async with self._db.session_factory() as session:
      async with session.begin():
        if not await db.update_checkout_if_version(
            session,
            checkout_id,
            row.version,
            status=CheckoutStatus.CANCELED.value,
            updated_at=now,
        ):
          raise exceptions.SessionStateConflict(
              "Checkout session was modified concurrently",
              code="stale_version",
          )
        await self._log_request(session, ctx, checkout_id, request)

    await self._release_reservations(checkout_id)
    return self._render(
        row,
        CheckoutSessionDocument.model_validate(row.data),
        status=CheckoutStatus.CANCELED,
        version=row.version + 1,
        updated_at=now,
    )

  # --- Background maintenance ---

  async def expire_sessions(self) -> int:
    """Expires one batch of sessions past their TTL or abandoned.

    Returns:
      The number of sessions expired.
    """
    now = self._now()
    inactive_before = now - self._settings.abandoned_session_seconds
    async with self._db.session_factory() as session:
      rows = await db.find_expirable_checkouts(
          session, now, inactive_before, self._settings.sweep_batch_size
      )

    expired = 0
    for row in rows:
      if await self._expire(row, now):
        expired += 1
    if expired:
      logger.info("Expired %d checkout sessions", expired)
    return expired

  async def release_stale_completions(self) -> int:
    """Resolves completion claims whose request never finished.

    A claim whose order already exists is finished as a completed session,
    since its payment was captured. Any other claim is released so the
    session can be paid again.

    Returns:
      The number of claims resolved.
    """
    now = self._now()
    started_before = now - self._settings.completion_claim_timeout_seconds
    async with self._db.session_factory() as session:
      rows = await db.find_stale_completion_claims(
          session, started_before, self._settings.sweep_batch_size
      )

    resolved = 0
    for row in rows:
      async with self._db.session_factory() as session:
        order_row = await db.get_order_by_checkout(session, row.id)
      if order_row is not None:
        order = await self._orders.get_order(order_row.id)
        if await self._finish_completion(
            row.id,
            row.completion_attempt_id,
            CheckoutSessionDocument.model_validate(row.data),
            order,
            order_row.payment_reference,
        ):
          await self._release_reservations(row.id)
          logger.warning(
              "Completed checkout %s from its existing order %s",
              row.id,
              order.id,
          )
          resolved += 1
        continue

      async with self._db.session_factory() as session:
        async with session.begin():
          if not await db.update_checkout_if_claimed(
              session,
              row.id,
              row.completion_attempt_id,
              completion_attempt_id=None,
              completion_started_at=None,
              updated_at=now,
          ):
            continue
      logger.error(
          "Released stale completion attempt %s of checkout %s; reconcile"
          " its payment with the gateway",
          row.completion_attempt_id,
          row.id,
      )
      resolved += 1
    return resolved

  # --- Helpers ---

  async def _load(self, checkout_id: str) -> db.CheckoutSession:
    async with self._db.session_factory() as session:
      row = await db.get_checkout(session, checkout_id)
    if not row:
      raise exceptions.SessionNotFound(checkout_id)
    return row

  async def _ensure_mutable(self, row: db.CheckoutSession, action: str) -> None:
    status = CheckoutStatus(row.status)
    if status.is_terminal:
      raise exceptions.SessionStateConflict(
          f"Cannot {action} checkout session in status {status.value}"
      )
    if row.completion_attempt_id:
      raise exceptions.SessionStateConflict(
          f"Cannot {action} checkout session while a completion is in"
          " progress",
          code="completion_in_progress",
      )
    now = self._now()
    if row.expires_at is not None and row.expires_at <= now:
      await self._expire(row, now)
      raise exceptions.SessionStateConflict(
          f"Cannot {action} checkout session in status"
          f" {CheckoutStatus.EXPIRED.value}"
      )

  async def _expire(self, row: db.CheckoutSession, now: int) -> bool:
    async with self._db.session_factory() as session:
      async with session.begin():
        expired = await db.update_checkout_if_version(
            session,
            row.id,
            row.version,
            status=CheckoutStatus.EXPIRED.value,
            updated_at=now,
        )
    if expired:
      logger.info("Checkout session %s expired", row.id)
      await self._release_reservations(row.id)
    return expired

  async def _finish_completion(
      self,
      checkout_id: str,
      attempt_id: Optional[str],
      document: CheckoutSessionDocument,
      order: OrderResponse,
      payment_reference: Optional[str],
  ) -> bool:
    """Marks a session completed with its order and queues `order_created`.

    The write is conditioned on the completion claim. If the claim was
    released while the payment and order were being made, the session is
    still completed as long as it has no order and was not canceled.

    Returns:
      False if the session could not take the order.
    """
    document.order = OrderSummary(
        id=order.id, permalink_url=order.permalink_url
    )
    values = {
        "status": CheckoutStatus.COMPLETED.value,
        "order_id": order.id,
        "payment_reference": payment_reference,
        "completion_attempt_id": None,
        "completion_started_at": None,
        "data": document.model_dump(mode="json"),
        "updated_at": self._now(),
    }
    async with self._db.session_factory() as session:
      async with session.begin():
        finished = bool(attempt_id) and await db.update_checkout_if_claimed(
            session, checkout_id, attempt_id, **values
        )
        if not finished:
          finished = await db.update_checkout_if_unordered(
              session, checkout_id, **values
          )
          if finished:
            logger.warning(
                "Completion claim of checkout %s was released before order"
                " %s was recorded; completed it anyway",
                checkout_id,
                order.id,
            )
        if finished:
          await self._event_bus.publish(
              session, OrderEvent(WebhookEventType.ORDER_CREATED, order)
          )
    return finished

  async def _abandon_completion(
      self, checkout_id: str, order_id: str, reference: str, amount: int
  ) -> None:
    """Undoes a payment the session can no longer take, then raises."""
    row = await self._load(checkout_id)
    logger.error(
        "Checkout %s is %s with order %s; refunding payment %s",
        checkout_id,
        row.status,
        row.order_id,
        reference,
    )
    await self._payments.refund(reference, amount)
    if row.order_id != order_id:
      await self._orders.update_status(order_id, OrderStatus.CANCELED)
    raise exceptions.SessionStateConflict(
        f"Cannot complete checkout session in status {row.status}"
    )

  async def _release_claim(
      self,
      checkout_id: str,
      attempt_id: str,
      payment_reference: Optional[str],
  ) -> None:
    async with self._db.session_factory() as session:
      async with session.begin():
        released = await db.update_checkout_if_claimed(
            session,
            checkout_id,
            attempt_id,
            completion_attempt_id=None,
            completion_started_at=None,
            payment_reference=payment_reference,
            updated_at=self._now(),
        )
    if not released:
      logger.warning(
          "Completion attempt %s of checkout %s was already released",
          attempt_id,
          checkout_id,
      )

  async def _materialize(
      self, snapshot: CheckoutSessionResponse, payment_reference: str
  ) -> str:
    attempts = max(1, self._settings.order_materialization_attempts)
    delay = self._settings.order_materialization_retry_delay_seconds
    attempt = 1
    while True:
      try:
        return await self._orders.create_order(snapshot, payment_reference)
      except Exception as e:  # pylint: disable=broad-exception-caught
        if attempt >= attempts:
          raise
        logger.warning(
            "Order creation for checkout %s failed (attempt %d/%d): %s",
            snapshot.id,
            attempt,
            attempts,
            e,
        )
        await asyncio.sleep(delay * attempt)
        attempt += 1

  async def _resolve_line_items(
      self, items: List[Item], checkout_id: str
  ) -> List[LineItem]:
    """Resolves requested items against the catalog, merging duplicates."""
    quantities: Dict[str, int] = {}
    positions: Dict[str, int] = {}
    for index, item in enumerate(items):
      quantities[item.id] = quantities.get(item.id, 0) + item.quantity
      positions.setdefault(item.id, index)

    line_items = []
    for ref, quantity in quantities.items():
      index = positions[ref]
      catalog_item = await self._catalog.resolve(ref, checkout_id)
      if catalog_item is None:
        raise exceptions.ValidationFailed(
            f"Unknown item {ref}",
            param=f"$.items[{index}].id",
            code="invalid_item",
        )
      if catalog_item.available < quantity:
        raise exceptions.ValidationFailed(
            f"Insufficient stock for item {ref}",
            param=f"$.items[{index}].quantity",
            code="out_of_stock",
        )
      line_items.append(
          LineItem(
              id=f"li_{ref}",
              catalog_ref=ref,
              title=catalog_item.title,
              quantity=quantity,
              unit_price=catalog_item.unit_price,
              subtotal=catalog_item.unit_price * quantity,
              requires_shipping=catalog_item.requires_shipping,
          )
      )
    return line_items

  async def _validate_stock(
      self, document: CheckoutSessionDocument, checkout_id: str
  ) -> None:
    for index, item in enumerate(document.line_items):
      catalog_item = await self._catalog.resolve(item.catalog_ref, checkout_id)
      if catalog_item is None or catalog_item.available < item.quantity:
        raise exceptions.ValidationFailed(
            f"Insufficient stock for item {item.catalog_ref}",
            param=f"$.line_items[{index}]",
            code="out_of_stock",
        )

  async def _validate_discount_codes(self, codes: List[str]) -> List[str]:
    positions: Dict[str, int] = {}
    for index, code in enumerate(codes):
      positions.setdefault(code.strip(), index)
    if not positions:
      return []
    async with self._db.session_factory() as session:
      known = {
          d.code
          for d in await db.get_discounts_by_codes(session, list(positions))
      }
    for code, index in positions.items():
      if code not in known:
        raise exceptions.ValidationFailed(
            f"Unknown discount code {code}",
            param=f"$.discount_codes[{index}]",
            code="invalid_discount_code",
        )
    return list(positions)

  def _check_ready_for_payment(self, document: CheckoutSessionDocument) -> None:
    if document.buyer is None:
      raise exceptions.ValidationFailed(
          "Buyer information is required to complete checkout",
          param="$.buyer",
          code="missing_buyer",
      )
    if not document.requires_shipping:
      return
    if document.shipping_address is None:
      raise exceptions.ValidationFailed(
          "A shipping address is required to complete checkout",
          param="$.shipping_address",
          code="missing_shipping_address",
      )
    if not document.shipping_selection:
      raise exceptions.ValidationFailed(
          "A shipping option must be selected to complete checkout",
          param="$.shipping_selection",
          code="missing_shipping_selection",
      )

  async def _recalculate(
      self, document: CheckoutSessionDocument
  ) -> CheckoutSessionDocument:
    """Recomputes shipping options, discounts, tax and totals."""
    subtotal = sum(item.subtotal for item in document.line_items)
    address = document.shipping_address or document.billing_address

    async with self._db.session_factory() as session:
      shipping_options = []
      if document.requires_shipping:
        shipping_options = await self._fulfillment.calculate_options(
            session,
            document.shipping_address,
            promotions=await db.get_active_promotions(session),
            subtotal=subtotal,
            item_refs=[item.catalog_ref for item in document.line_items],
        )
      applied = await self._apply_discounts(
          session, document.discount_codes, subtotal
      )
      rate_bps = 0
      if address is not None:
        rate_bps = _pick_tax_rate(
            await db.get_tax_rates(session, address.country), address.state
        )

    selection = document.shipping_selection
    amounts = {option.id: option.amount for option in shipping_options}
    if selection is not None and selection not in amounts:
      logger.info(
          "Clearing shipping selection %s; no longer offered", selection
      )
      selection = None
    shipping = amounts.get(selection, 0) if selection else 0

    discount = sum(a.amount for a in applied)
    tax = _tax_amount(subtotal - discount, rate_bps)
    return document.model_copy(
        update={
            "shipping_options": shipping_options,
            "shipping_selection": selection,
            "applied_discounts": applied,
            "totals": Totals.compute(subtotal, shipping, tax, discount),
        }
    )

  async def _apply_discounts(
      self, session: AsyncSession, codes: List[str], subtotal: int
  ) -> List[AppliedDiscount]:
    if not codes:
      return []
    by_code = {
        d.code: d for d in await db.get_discounts_by_codes(session, codes)
    }
    applied = []
    remaining = subtotal
    for code in codes:
      discount = by_code.get(code)
      if discount is None:
        continue
      amount = min(_discount_amount(discount, subtotal), remaining)
      remaining -= amount
      applied.append(AppliedDiscount(code=code, amount=amount))
    return applied

  async def _reserve(
      self, checkout_id: str, line_items: List[LineItem]
  ) -> None:
    if supports_reservations(self._catalog):
      await self._catalog.reserve(
          checkout_id, {item.catalog_ref: item.quantity for item in line_items}
      )

  async def _release_reservations(self, checkout_id: str) -> None:
    if supports_reservations(self._catalog):
      await self._catalog.release(checkout_id)

  async def _log_request(
      self,
      session: AsyncSession,
      ctx: RequestContext,
      checkout_id: str,
      request: Optional[Any] = None,
  ) -> None:
    payload = None
    if request is not None:
      payload = request.model_dump(mode="json", exclude_unset=True)
      if "payment_data" in payload:
        payload["payment_data"]["token"] = _REDACTED
    await db.log_request(
        session,
        method=ctx.method,
        url=ctx.path,
        checkout_id=checkout_id,
        trace_id=ctx.trace_id,
        payload=payload,
    )

  def _render(
      self,
      row: db.CheckoutSession,
      document: CheckoutSessionDocument,
      status: Optional[CheckoutStatus] = None,
      version: Optional[int] = None,
      order_id: Optional[str] = None,
      updated_at: Optional[int] = None,
  ) -> CheckoutSessionResponse:
    return CheckoutSessionResponse(
        id=row.id,
        status=status or CheckoutStatus(row.status),
        order_id=order_id or row.order_id,
        version=version or row.version,
        created_at=_timestamp(row.created_at),
        updated_at=_timestamp(updated_at or row.updated_at),
        expires_at=_timestamp(row.expires_at),
        **document.model_dump(),
    )
