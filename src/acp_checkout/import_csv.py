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

"""Database initialization script for the checkout server.

This script imports catalog data (products, inventory, promotions, discounts,
shipping rates and tax rates) from CSV files into the configured SQLite
database. Existing rows in those tables are replaced; checkout sessions,
orders and the webhook outbox are left untouched.

Usage:
  acp-import-csv --database_path=... [--data_dir=...]
"""

import asyncio
import csv
import json
import logging
import os
from typing import Dict, Iterator

from absl import app as absl_app
from absl import flags
from sqlalchemy import delete

from acp_checkout import config  # pylint: disable=unused-import
from acp_checkout import db

FLAGS = flags.FLAGS

DEFAULT_DATA_DIR = os.path.join(
    os.path.dirname(os.path.abspath(__file__)), "data"
)

try:
  flags.DEFINE_string(
      "data_dir", DEFAULT_DATA_DIR, "Directory containing the catalog CSVs"
  )
except flags.DuplicateFlagError:
  pass

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _read_rows(path: str) -> Iterator[Dict[str, str]]:
  with open(path, "r", newline="") as f:
    yield from csv.DictReader(f)


def _optional_int(value: str):
  return int(value) if value else None


def _product(row: Dict[str, str]) -> db.Product:
  return db.Product(
      id=row["id"],
      title=row["title"],
      price=int(row["price"]),
      requires_shipping=row.get("requires_shipping", "true").lower()
      != "false",
      image_url=row.get("image_url") or None,
  )


def _inventory(row: Dict[str, str]) -> db.Inventory:
  return db.Inventory(
      product_id=row["product_id"], quantity=int(row["quantity"])
  )


def _promotion(row: Dict[str, str]) -> db.Promotion:
  eligible = row.get("eligible_item_ids")
  return db.Promotion(
      id=row["id"],
      type=row["type"],
      min_subtotal=_optional_int(row.get("min_subtotal")),
      eligible_item_ids=json.loads(eligible) if eligible else None,
      description=row["description"],
  )


def _discount(row: Dict[str, str]) -> db.Discount:
  return db.Discount(
      code=row["code"],
      type=row["type"],
      value=int(row["value"]),
      description=row["description"],
  )


def _shipping_rate(row: Dict[str, str]) -> db.ShippingRate:
  return db.ShippingRate(
      id=row["id"],
      country_code=row["country_code"],
      service_level=row["service_level"],
      price=int(row["price"]),
      title=row["title"],
  )


def _tax_rate(row: Dict[str, str]) -> db.TaxRate:
  return db.TaxRate(
      id=row["id"],
      country_code=row["country_code"],
      region=row.get("region") or None,
      rate_bps=int(row["rate_bps"]),
  )


# File name, table and row builder, in import order.
_TABLES = [
    ("products.csv", db.Product, _product),
    ("inventory.csv", db.Inventory, _inventory),
    ("promotions.csv", db.Promotion, _promotion),
    ("discounts.csv", db.Discount, _discount),
    ("shipping_rates.csv", db.ShippingRate, _shipping_rate),
    ("tax_rates.csv", db.TaxRate, _tax_rate),
]


async def import_csv_data(database_path: str, data_dir: str) -> Dict[str, int]:
  """Reads the CSV files in `data_dir` and populates the database.

  Missing files are skipped, leaving the table empty.

  Args:
    database_path: The SQLite database to populate.
    data_dir: Directory with the CSV files.

  Returns:
    Number of rows imported per table.
  """
  manager = db.DatabaseManager()
  await manager.init_db(database_path)
  counts = {}
  try:
    async with manager.session_factory() as session:
      async with session.begin():
        for file_name, table, build in _TABLES:
          logger.info("Clearing existing %s...", table.__tablename__)
          await session.execute(delete(table))

          path = os.path.join(data_dir, file_name)
          if not os.path.exists(path):
            logger.info("No %s found, skipping", file_name)
            counts[table.__tablename__] = 0
            continue

          logger.info("Importing %s from CSV...", table.__tablename__)
          rows = [build(row) for row in _read_rows(path)]
          session.add_all(rows)
          counts[table.__tablename__] = len(rows)

    logger.info("Database populated from CSVs: %s", counts)
  finally:
    await manager.close()
  return counts


def main(argv) -> None:
  """Main entry point for the CSV import script."""
  del argv
  if not FLAGS.database_path:
    raise absl_app.UsageError("--database_path is required")
  asyncio.run(import_csv_data(FLAGS.database_path, FLAGS.data_dir))


def run() -> None:
  absl_app.run(main)


if __name__ == "__main__":
  run()
