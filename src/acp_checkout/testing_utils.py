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

"""Shared fixtures for the checkout server tests."""

import os
from typing import Optional

from acp_checkout import db
from acp_checkout.config import Settings

API_KEY = "test_api_key"
WEBHOOK_URL = "https://platform.example/webhooks/orders"
WEBHOOK_SECRET = "whsec_test"
GATEWAY_SECRET = "gwsec_test"
SIMULATION_SECRET = "sim_secret"

# 2023-11-14T22:13:20Z
START_TIME = 1_700_000_000.0


class FakeClock:
  """Manually advanced clock, injected wherever components read time."""

  def __init__(self, now: float = START_TIME):
    self.now = now

  def __call__(self) -> float:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now += seconds


def make_settings(test_dir: str, **overrides) -> Settings:
  """Settings for an isolated test server backed by a temporary database."""
  values = {
      "database_path": os.path.join(test_dir, "checkout.db"),
      "api_key": API_KEY,
      "test_mode": True,
      "background_workers": False,
      "webhook_url": WEBHOOK_URL,
      "webhook_secret": WEBHOOK_SECRET,
      "gateway_webhook_secret": GATEWAY_SECRET,
      "simulation_secret": SIMULATION_SECRET,
      "order_materialization_retry_delay_seconds": 0,
      "gateway_retry_delay_seconds": 0,
  }
  values.update(overrides)
  return Settings(**values)


async def seed_catalog(
    database: db.DatabaseManager, roses: int = 10, pots: int = 5
) -> None:
  """Seeds a small catalog: $20 roses, $10 pots and a $25 gift card."""
  async with database.session_factory() as session:
    async with session.begin():
      session.add_all([
          db.Product(id="rose", title="Red Rose", price=2000),
          db.Product(id="pot", title="Ceramic Pot", price=1000),
          db.Product(
              id="gift_card",
              title="Gift Card",
              price=2500,
              requires_shipping=False,
          ),
          db.Inventory(product_id="rose", quantity=roses),
          db.Inventory(product_id="pot", quantity=pots),
          db.Inventory(product_id="gift_card", quantity=100),
          db.ShippingRate(
              id="std-us",
              country_code="US",
              service_level="standard",
              price=500,
              title="Standard Shipping",
          ),
          db.ShippingRate(
              id="exp-us",
              country_code="US",
              service_level="express",
              price=1500,
              title="Express Shipping",
          ),
          db.ShippingRate(
              id="std-intl",
              country_code="default",
              service_level="standard",
              price=2500,
              title="International Standard",
          ),
          db.Discount(
              code="10OFF",
              type="percentage",
              value=10,
              description="10% off",
          ),
          db.Discount(
              code="BIG",
              type="fixed_amount",
              value=100000,
              description="Larger than any cart",
          ),
          db.TaxRate(
              id="tax-us-ca", country_code="US", region="CA", rate_bps=725
          ),
      ])


def address(state: Optional[str] = "OR", country: str = "US") -> dict:
  return {
      "name": "Jane Doe",
      "line_one": "1 Main St",
      "city": "Portland",
      "state": state,
      "country": country,
      "postal_code": "97201",
  }


BUYER = {"first_name": "Jane", "last_name": "Doe", "email": "jane@example.com"}
