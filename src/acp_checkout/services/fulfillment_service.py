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

"""Fulfillment service for calculating shipping options.

This module encapsulates the logic for determining available shipping options
and their costs based on the shipping address of a checkout session.
"""

from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from acp_checkout import db
from acp_checkout.models import Address
from acp_checkout.models import ShippingOption


class FulfillmentService:
  """Service for handling fulfillment logic."""

  async def calculate_options(
      self,
      session: AsyncSession,
      address: Optional[Address],
      promotions: Optional[List[db.Promotion]] = None,
      subtotal: int = 0,
      item_refs: Optional[List[str]] = None,
  ) -> List[ShippingOption]:
    """Calculates available shipping options based on the address.

    Args:
      session: The database session to fetch rates from.
      address: The shipping address.
      promotions: Optional list of active promotions.
      subtotal: The order subtotal in cents.
      item_refs: Catalog references of the items in the order.

    Returns:
      Shipping options, cheapest first. Empty without an address.
    """
    if not address:
      return []

    free_standard = self._has_free_shipping(
        promotions or [], subtotal, item_refs or []
    )

    # Deduplicate by service level, preferring an exact country match over
    # the 'default' rate.
    rates_by_level = {}
    for rate in await db.get_shipping_rates(session, address.country):
      existing = rates_by_level.get(rate.service_level)
      if existing is None or (
          existing.country_code == "default" and rate.country_code != "default"
      ):
        rates_by_level[rate.service_level] = rate

    options = []
    for rate in sorted(rates_by_level.values(), key=lambda r: (r.price, r.id)):
      amount = rate.price
      title = rate.title
      if free_standard and rate.service_level == "standard":
        amount = 0
        title += " (Free)"
      options.append(ShippingOption(id=rate.id, title=title, amount=amount))
    return options

  def _has_free_shipping(
      self,
      promotions: List[db.Promotion],
      subtotal: int,
      item_refs: List[str],
  ) -> bool:
    for promo in promotions:
      if promo.type != "free_shipping":
        continue
      if promo.min_subtotal and subtotal >= promo.min_subtotal:
        return True
      if promo.eligible_item_ids and any(
          ref in promo.eligible_item_ids for ref in item_refs
      ):
        return True
    return False
