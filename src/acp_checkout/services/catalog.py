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

"""Catalog lookup collaborator.

Checkout handlers only see the `Catalog` protocol: resolve an item reference
to its price and availability, and optionally hold stock for a session.
`DatabaseCatalog` is the default implementation over the local product and
inventory tables; reservations it holds count against availability for every
other session.
"""

import dataclasses
import logging
from typing import Dict, Optional, Protocol

from acp_checkout import db

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class CatalogItem:
  ref: str
  title: str
  unit_price: int
  available: int
  requires_shipping: bool = True


class Catalog(Protocol):
  """Price and availability lookup for catalog items."""

  async def resolve(
      self, item_ref: str, checkout_id: Optional[str] = None
  ) -> Optional[CatalogItem]:
    """Returns the item, or None if the catalog does not know it.

    `available` excludes stock reserved by sessions other than `checkout_id`.
    """


class ReservingCatalog(Catalog, Protocol):
  """A catalog that can hold stock for a checkout session."""

  async def reserve(self, checkout_id: str, quantities: Dict[str, int]) -> None:
    ...

  async def release(self, checkout_id: str) -> None:
    ...


def supports_reservations(catalog: Catalog) -> bool:
  return hasattr(catalog, "reserve") and hasattr(catalog, "release")


class DatabaseCatalog:
  """Catalog backed by the `products` and `inventory` tables."""

  def __init__(self, database: db.DatabaseManager):
    self._db = database

  async def resolve(
      self, item_ref: str, checkout_id: Optional[str] = None
  ) -> Optional[CatalogItem]:
    async with self._db.session_factory() as session:
      product = await db.get_product(session, item_ref)
      if not product:
        return None
      on_hand = await db.get_inventory(session, item_ref) or 0
      reserved = await db.get_reserved_quantity(session, item_ref, checkout_id)
    return CatalogItem(
        ref=product.id,
        title=product.title,
        unit_price=product.price,
        available=max(0, on_hand - reserved),
        requires_shipping=(
            True if product.requires_shipping is None
            else product.requires_shipping
        ),
    )

  async def reserve(self, checkout_id: str, quantities: Dict[str, int]) -> None:
    async with self._db.session_factory() as session:
      async with session.begin():
        await db.replace_reservations(session, checkout_id, quantities)
    logger.debug("Reserved %s for checkout %s", quantities, checkout_id)

  async def release(self, checkout_id: str) -> None:
    async with self._db.session_factory() as session:
      async with session.begin():
        await db.delete_reservations(session, checkout_id)
    logger.debug("Released reservations of checkout %s", checkout_id)
