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

"""Database management and persistence layer for the checkout server.

This module provides the schema definitions, database session management, and
asynchronous data access helpers used by the server. It utilizes SQLAlchemy with
SQLite (via aiosqlite).

Key features include:
- `DatabaseManager`: Handles asynchronous engine initialization and the session
  factory. One manager is built at startup and handed to every component.
- WAL Mode: Enables SQLite Write-Ahead Logging so request handlers and the
  background workers can access the database concurrently.
- Declarative Models: Tables for the catalog lookup data, checkout sessions,
  orders, idempotency records, webhook deliveries and request logs.
- Data Access Helpers: Asynchronous functions for the reads and the
  conditional writes the services rely on. Writes to checkout sessions are
  always guarded by the expected `version` so concurrent writers cannot
  silently overwrite each other.
"""

import datetime
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import delete
from sqlalchemy import func
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy import text
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker

from acp_checkout.enums import CheckoutStatus
from acp_checkout.enums import DeliveryOutcome
from acp_checkout.enums import IdempotencyState

logger = logging.getLogger(__name__)

Base = declarative_base()

# Seconds a connection waits for SQLite's write lock before failing.
_BUSY_TIMEOUT_SECONDS = 30


class DatabaseManager:
  """Manages the database engine and sessions without using global variables."""

  def __init__(self) -> None:
    self.engine: Optional[AsyncEngine] = None
    self.session_factory: Optional[sessionmaker] = None

  async def init_db(self, database_path: str) -> None:
    """Initializes the database engine and creates tables."""
    url = f"sqlite+aiosqlite:///{database_path}"
    self.engine = create_async_engine(
        url, echo=False, connect_args={"timeout": _BUSY_TIMEOUT_SECONDS}
    )

    async with self.engine.connect() as conn:
      await conn.execute(text("PRAGMA journal_mode=WAL"))

    self.session_factory = sessionmaker(
        self.engine, expire_on_commit=False, class_=AsyncSession
    )

    async with self.engine.begin() as conn:
      await conn.run_sync(Base.metadata.create_all)

  async def close(self) -> None:
    """Closes the database engine."""
    if self.engine:
      await self.engine.dispose()


# --- Catalog lookup data ---


class Product(Base):
  __tablename__ = "products"

  id = Column(String, primary_key=True)
  title = Column(String)
  price = Column(Integer)  # Price in cents
  requires_shipping = Column(Boolean, default=True)
  image_url = Column(String, nullable=True)


class Inventory(Base):
  __tablename__ = "inventory"

  product_id = Column(String, primary_key=True)
  quantity = Column(Integer, default=0)


class StockReservation(Base):
  __tablename__ = "stock_reservations"

  checkout_id = Column(String, primary_key=True)
  product_id = Column(String, primary_key=True)
  quantity = Column(Integer)


class Promotion(Base):
  __tablename__ = "promotions"

  id = Column(String, primary_key=True)
  type = Column(String)  # e.g., 'free_shipping'
  min_subtotal = Column(Integer, nullable=True)  # In cents
  eligible_item_ids = Column(JSON, nullable=True)  # List of item IDs
  description = Column(String)


class Discount(Base):
  __tablename__ = "discounts"

  code = Column(String, primary_key=True)
  type = Column(String)  # 'percentage' or 'fixed_amount'
  value = Column(Integer)  # Percentage (e.g., 10) or Amount in cents
  description = Column(String)


class ShippingRate(Base):
  __tablename__ = "shipping_rates"

  id = Column(String, primary_key=True)
  country_code = Column(String)  # e.g., 'US', 'default'
  service_level = Column(String)  # e.g., 'standard', 'express'
  price = Column(Integer)  # In cents
  title = Column(String)


class TaxRate(Base):
  __tablename__ = "tax_rates"

  id = Column(String, primary_key=True)
  country_code = Column(String)  # e.g., 'US', 'default'
  region = Column(String, nullable=True)  # State or province, None = country
  rate_bps = Column(Integer)  # Basis points, 825 = 8.25%


# --- Transactional data ---


class CheckoutSession(Base):
  __tablename__ = "checkouts"

  id = Column(String, primary_key=True)
  status = Column(String, index=True)
  version = Column(Integer, nullable=False, default=1)
  # Session document: line items, buyer, addresses, shipping, totals.
  data = Column(JSON)
  payment_reference = Column(String, nullable=True, index=True)
  order_id = Column(String, nullable=True)
  completion_attempt_id = Column(String, nullable=True)
  completion_started_at = Column(Integer, nullable=True)
  created_at = Column(Integer)
  updated_at = Column(Integer, index=True)
  expires_at = Column(Integer, index=True)


class Order(Base):
  __tablename__ = "orders"

  id = Column(String, primary_key=True)
  checkout_id = Column(String, unique=True)
  payment_reference = Column(String, nullable=True, index=True)
  status = Column(String)
  data = Column(JSON)
  created_at = Column(Integer)
  updated_at = Column(Integer)


class GatewayEvent(Base):
  __tablename__ = "gateway_events"

  id = Column(String, primary_key=True)
  type = Column(String)
  received_at = Column(Integer)


class RequestLog(Base):
  __tablename__ = "request_logs"

  id = Column(Integer, primary_key=True, autoincrement=True)
  timestamp = Column(String)
  method = Column(String)
  url = Column(String)
  checkout_id = Column(String, nullable=True)
  trace_id = Column(String, nullable=True)
  payload = Column(JSON, nullable=True)


class IdempotencyRecord(Base):
  __tablename__ = "idempotency_records"

  scope = Column(String, primary_key=True)
  key = Column(String, primary_key=True)
  request_fingerprint = Column(String)
  state = Column(String)
  response_status = Column(Integer, nullable=True)
  # Exact response bytes, so replays are identical to the first response.
  response_body = Column(Text, nullable=True)
  created_at = Column(Integer, index=True)


class WebhookDelivery(Base):
  __tablename__ = "webhook_deliveries"

  id = Column(Integer, primary_key=True, autoincrement=True)
  webhook_id = Column(String, unique=True)
  order_id = Column(String, index=True)
  event_type = Column(String)
  target_url = Column(String, nullable=True)
  payload = Column(Text, nullable=True)
  signature = Column(String, nullable=True)
  timestamp = Column(String)
  attempt_count = Column(Integer, default=0)
  last_attempt_at = Column(Integer, nullable=True)
  next_retry_at = Column(Integer, nullable=True, index=True)
  outcome = Column(String, index=True)
  last_error = Column(String, nullable=True)
  created_at = Column(Integer)


# --- Data Access Helpers ---


async def get_product(
    session: AsyncSession, product_id: str
) -> Optional[Product]:
  """Retrieves a product by ID."""
  return await session.get(Product, product_id)


async def get_inventory(
    session: AsyncSession, product_id: str
) -> Optional[int]:
  """Retrieves the inventory quantity for a product."""
  result = await session.execute(
      select(Inventory.quantity).where(Inventory.product_id == product_id)
  )
  return result.scalar_one_or_none()


async def get_reserved_quantity(
    session: AsyncSession,
    product_id: str,
    exclude_checkout_id: Optional[str] = None,
) -> int:
  """Sums the stock held by checkout sessions other than the excluded one."""
  stmt = select(func.coalesce(func.sum(StockReservation.quantity), 0)).where(
      StockReservation.product_id == product_id
  )
  if exclude_checkout_id:
    stmt = stmt.where(StockReservation.checkout_id != exclude_checkout_id)
  result = await session.execute(stmt)
  return int(result.scalar_one())


async def replace_reservations(
    session: AsyncSession, checkout_id: str, quantities: Dict[str, int]
) -> None:
  """Replaces the stock held by a checkout session."""
  await delete_reservations(session, checkout_id)
  session.add_all([
      StockReservation(
          checkout_id=checkout_id, product_id=product_id, quantity=quantity
      )
      for product_id, quantity in quantities.items()
  ])


async def delete_reservations(session: AsyncSession, checkout_id: str) -> None:
  """Releases all stock held by a checkout session."""
  await session.execute(
      delete(StockReservation).where(
          StockReservation.checkout_id == checkout_id
      )
  )


async def decrement_stock(
    session: AsyncSession, product_id: str, quantity: int
) -> bool:
  """Atomically decrements inventory if sufficient stock exists."""
  stmt = (
      update(Inventory)
      .where(Inventory.product_id == product_id)
      .where(Inventory.quantity >= quantity)
      .values(quantity=Inventory.quantity - quantity)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def get_shipping_rates(
    session: AsyncSession, country_code: str
) -> List[ShippingRate]:
  """Retrieves shipping rates for a specific country and default rates.

  Args:
    session: The database session to use.
    country_code: The ISO country code (e.g., 'US') to fetch rates for.

  Returns:
    A list of ShippingRate objects matching the country or 'default'.
  """
  result = await session.execute(
      select(ShippingRate).where(
          ShippingRate.country_code.in_([country_code, "default"])
      )
  )
  return list(result.scalars().all())


async def get_discounts_by_codes(
    session: AsyncSession, codes: List[str]
) -> List[Discount]:
  """Retrieves multiple discounts by their codes in a single query."""
  result = await session.execute(
      select(Discount).where(Discount.code.in_(codes))
  )
  return list(result.scalars().all())


async def get_active_promotions(session: AsyncSession) -> List[Promotion]:
  """Retrieves all active promotions."""
  result = await session.execute(select(Promotion))
  return list(result.scalars().all())


async def get_tax_rates(
    session: AsyncSession, country_code: str
) -> List[TaxRate]:
  """Retrieves tax rates for a country, including the 'default' fallback."""
  result = await session.execute(
      select(TaxRate).where(TaxRate.country_code.in_([country_code, "default"]))
  )
  return list(result.scalars().all())


async def get_checkout(
    session: AsyncSession, checkout_id: str
) -> Optional[CheckoutSession]:
  """Retrieves a checkout session row by ID."""
  result = await session.execute(
      select(CheckoutSession).where(CheckoutSession.id == checkout_id)
  )
  return result.scalar_one_or_none()


async def update_checkout_if_version(
    session: AsyncSession,
    checkout_id: str,
    expected_version: int,
    **values: Any,
) -> bool:
  """Writes a checkout session only if nobody else wrote it first.

  Args:
    session: The database session to use.
    checkout_id: The checkout session to update.
    expected_version: The version the caller read before computing `values`.
    **values: Columns to set. `version` is always incremented.

  Returns:
    True if the row was updated, False if the version no longer matched.
  """
  stmt = (
      update(CheckoutSession)
      .where(CheckoutSession.id == checkout_id)
      .where(CheckoutSession.version == expected_version)
      .values(version=CheckoutSession.version + 1, **values)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def update_checkout_if_claimed(
    session: AsyncSession,
    checkout_id: str,
    attempt_id: str,
    **values: Any,
) -> bool:
  """Writes a checkout session still held by the given completion attempt."""
  stmt = (
      update(CheckoutSession)
      .where(CheckoutSession.id == checkout_id)
      .where(CheckoutSession.completion_attempt_id == attempt_id)
      .values(version=CheckoutSession.version + 1, **values)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def update_checkout_if_unordered(
    session: AsyncSession,
    checkout_id: str,
    **values: Any,
) -> bool:
  """Writes a checkout session that has no order and was not canceled.

  Used to finish a completion whose claim was released while its payment and
  order were still being made.
  """
  stmt = (
      update(CheckoutSession)
      .where(CheckoutSession.id == checkout_id)
      .where(CheckoutSession.order_id.is_(None))
      .where(
          CheckoutSession.status.in_(
              [CheckoutStatus.OPEN.value, CheckoutStatus.EXPIRED.value]
          )
      )
      .values(version=CheckoutSession.version + 1, **values)
  )
  result = await session.execute(stmt)
  return result.rowcount > 0


async def find_expirable_checkouts(
    session: AsyncSession, now: int, inactive_before: int, limit: int
) -> List[CheckoutSession]:
  """Finds open sessions past their TTL or abandoned without an order."""
  result = await session.execute(
      select(CheckoutSession)
      .where(CheckoutSession.status == CheckoutStatus.OPEN.value)
      .where(CheckoutSession.completion_attempt_id.is_(None))
      .where(
          or_(
              CheckoutSession.expires_at <= now,
              (CheckoutSession.updated_at <= inactive_before)
              & CheckoutSession.order_id.is_(None),
          )
      )
      .order_by(CheckoutSession.updated_at)
      .limit(limit)
  )
  return list(result.scalars().all())


async def find_stale_completion_claims(
    session: AsyncSession, started_before: int, limit: int
) -> List[CheckoutSession]:
  """Finds completion attempts that never resolved."""
  result = await session.execute(
      select(CheckoutSession)
      .where(CheckoutSession.completion_attempt_id.is_not(None))
      .where(CheckoutSession.completion_started_at <= started_before)
      .limit(limit)
  )
  return list(result.scalars().all())


async def get_order(session: AsyncSession, order_id: str) -> Optional[Order]:
  """Retrieves an order by ID."""
  return await session.get(Order, order_id)


async def get_order_by_checkout(
    session: AsyncSession, checkout_id: str
) -> Optional[Order]:
  """Retrieves the order materialized from a checkout session."""
  result = await session.execute(
      select(Order).where(Order.checkout_id == checkout_id)
  )
  return result.scalar_one_or_none()


async def get_order_by_payment_reference(
    session: AsyncSession, payment_reference: str
) -> Optional[Order]:
  """Retrieves an order by the gateway reference of its payment."""
  result = await session.execute(
      select(Order).where(Order.payment_reference == payment_reference)
  )
  return result.scalar_one_or_none()


def add_gateway_event(
    session: AsyncSession, event_id: str, event_type: str, now: int
) -> None:
  """Claims an inbound gateway event; the flush fails if it is known."""
  session.add(GatewayEvent(id=event_id, type=event_type, received_at=now))


async def delete_gateway_event(session: AsyncSession, event_id: str) -> None:
  await session.execute(delete(GatewayEvent).where(GatewayEvent.id == event_id))


async def purge_idempotency_records(
    session: AsyncSession, created_before: int
) -> int:
  """Deletes idempotency records older than the retention window."""
  result = await session.execute(
      delete(IdempotencyRecord).where(
          IdempotencyRecord.created_at < created_before
      )
  )
  return result.rowcount


async def has_webhook_delivery(
    session: AsyncSession, order_id: str, event_type: str
) -> bool:
  """Checks whether an event was already enqueued for an order."""
  result = await session.execute(
      select(WebhookDelivery.id)
      .where(WebhookDelivery.order_id == order_id)
      .where(WebhookDelivery.event_type == event_type)
      .limit(1)
  )
  return result.scalar_one_or_none() is not None


async def list_pending_deliveries(
    session: AsyncSession, limit: int
) -> List[WebhookDelivery]:
  """Lists undelivered webhook records, oldest first."""
  result = await session.execute(
      select(WebhookDelivery)
      .where(WebhookDelivery.outcome == DeliveryOutcome.PENDING.value)
      .order_by(WebhookDelivery.id)
      .limit(limit)
  )
  return list(result.scalars().all())


async def update_delivery_if_attempts(
    session: AsyncSession,
    delivery_id: int,
    expected_attempts: int,
    **values: Any,
) -> bool:
  """Updates a pending delivery unless another worker attempted it first."""
  result = await session.execute(
      update(WebhookDelivery)
      .where(WebhookDelivery.id == delivery_id)
      .where(WebhookDelivery.attempt_count == expected_attempts)
      .where(WebhookDelivery.outcome == DeliveryOutcome.PENDING.value)
      .values(**values)
  )
  return result.rowcount > 0
