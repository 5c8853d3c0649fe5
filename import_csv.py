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

This script imports catalog, inventory and cart data from CSV files into the
configured SQLite databases. It clears the existing rows of every table it
loads before populating them with the new dataset. Checkout sessions,
payments, orders and the audit trail are left untouched.

Usage:
  uv run import_csv.py --products_db_path=... --transactions_db_path=...
  --data_dir=...
"""

import asyncio
import csv
import logging
import os
from typing import Optional
from absl import app as absl_app
from absl import flags
import db
from db import CartItem
from db import Inventory
from db import Product
from db import ProductVariant
from sqlalchemy import delete

FLAGS = flags.FLAGS

# The server flags share these names when both modules are imported by tests.
try:
  flags.DEFINE_string("products_db_path", "products.db", "Path to products DB")
  flags.DEFINE_string(
      "transactions_db_path", "transactions.db", "Path to transactions DB"
  )
except flags.DuplicateFlagError:
  pass
flags.DEFINE_string(
    "data_dir",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "data"),
    "Directory containing products.csv, variants.csv, inventory.csv and"
    " cart_items.csv",
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _optional_float(value: Optional[str]) -> Optional[float]:
  return float(value) if value else None


def _read_rows(data_dir: str, name: str) -> list[dict[str, str]]:
  path = os.path.join(data_dir, name)
  if not os.path.exists(path):
    logger.info("No %s found, skipping.", name)
    return []
  with open(path, "r") as f:
    return list(csv.DictReader(f))


async def import_csv_data(
    products_db_path: str, transactions_db_path: str, data_dir: str
) -> None:
  """Reads CSV files and populates the databases."""
  manager = db.DatabaseManager()
  # Ensure tables exist
  await manager.init_dbs(products_db_path, transactions_db_path)

  try:
    # Import Products and Variants to Products DB
    async with manager.products_session_factory() as session:
      logger.info("Clearing existing products and variants...")
      await session.execute(delete(ProductVariant))
      await session.execute(delete(Product))

      logger.info("Importing Products from CSV...")
      products = []
      with open(os.path.join(data_dir, "products.csv"), "r") as f:
        reader = csv.DictReader(f)
        for row in reader:
          products.append(
              Product(
                  id=row["id"],
                  name=row["name"],
                  image=row.get("image") or None,
                  base_price=float(row["base_price"]),
                  discount_percentage=_optional_float(
                      row.get("discount_percentage")
                  ),
              )
          )
      session.add_all(products)

      logger.info("Importing Variants from CSV...")
      variants = [
          ProductVariant(
              id=row["id"],
              product_id=row["product_id"],
              name=row["name"],
              price=_optional_float(row.get("price")),
              discount_percentage=_optional_float(
                  row.get("discount_percentage")
              ),
              image=row.get("image") or None,
          )
          for row in _read_rows(data_dir, "variants.csv")
      ]
      session.add_all(variants)
      await session.commit()

    # Import Inventory and Carts to Transactions DB
    async with manager.transactions_session_factory() as session:
      logger.info("Clearing existing inventory...")
      await session.execute(delete(Inventory))

      logger.info("Importing Inventory from CSV...")
      inventory = []
      with open(os.path.join(data_dir, "inventory.csv"), "r") as f:
        reader = csv.DictReader(f)
        for row in reader:
          inventory.append(
              Inventory(variant_id=row["variant_id"], stock=int(row["stock"]))
          )
      session.add_all(inventory)

      logger.info("Clearing existing cart items...")
      await session.execute(delete(CartItem))

      logger.info("Importing Cart Items from CSV...")
      cart_items = [
          CartItem(
              id=row["id"],
              customer_id=row["customer_id"],
              product_id=row["product_id"],
              variant_id=row.get("variant_id") or None,
              quantity=int(row["quantity"]),
          )
          for row in _read_rows(data_dir, "cart_items.csv")
      ]
      session.add_all(cart_items)
      await session.commit()

    logger.info(
        "Database populated from CSVs: %d products, %d variants, %d inventory"
        " rows, %d cart items.",
        len(products),
        len(variants),
        len(inventory),
        len(cart_items),
    )
  finally:
    await manager.close()


def main(argv) -> None:
  """Main entry point for the CSV import script."""
  del argv
  asyncio.run(
      import_csv_data(
          FLAGS.products_db_path, FLAGS.transactions_db_path, FLAGS.data_dir
      )
  )


if __name__ == "__main__":
  absl_app.run(main)
