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

"""Utility script to dump variant stock levels.

This script reads the current stock of every variant from the configured
transactions SQLite database and outputs it to standard output in CSV format.
Pass --products_db_path to add the variant and product names.

Usage:
  uv run dump_inventory.py --transactions_db_path=... [--products_db_path=...]
"""

import asyncio
import csv
import sys
from absl import app as absl_app
from absl import flags
from db import Inventory
from db import Product
from db import ProductVariant
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker

FLAGS = flags.FLAGS
flags.DEFINE_string("transactions_db_path", None, "Path to transactions DB")
flags.DEFINE_string(
    "products_db_path", None, "Optional path to products DB for names"
)


async def _load_names(products_db_path: str) -> dict[str, tuple[str, str]]:
  """Maps variant IDs to (product name, variant name)."""
  engine = create_async_engine(
      f"sqlite+aiosqlite:///{products_db_path}", echo=False
  )
  session_factory = sessionmaker(
      engine, expire_on_commit=False, class_=AsyncSession
  )
  try:
    async with session_factory() as session:
      result = await session.execute(
          select(ProductVariant.id, Product.name, ProductVariant.name).join(
              Product, Product.id == ProductVariant.product_id
          )
      )
      return {
          variant_id: (product_name, variant_name)
          for variant_id, product_name, variant_name in result.all()
      }
  finally:
    await engine.dispose()


async def dump_inventory():
  """Queries the database and prints current stock levels."""
  if not FLAGS.transactions_db_path:
    print("Error: --transactions_db_path is required.")
    sys.exit(1)

  names = {}
  if FLAGS.products_db_path:
    names = await _load_names(FLAGS.products_db_path)

  db_url = f"sqlite+aiosqlite:///{FLAGS.transactions_db_path}"
  engine = create_async_engine(db_url, echo=False)
  session_factory = sessionmaker(
      engine, expire_on_commit=False, class_=AsyncSession
  )

  async with session_factory() as session:
    result = await session.execute(
        select(Inventory).order_by(Inventory.variant_id)
    )
    items = result.scalars().all()

    writer = csv.writer(sys.stdout)
    writer.writerow(["variant_id", "product", "variant", "stock"])
    for item in items:
      product_name, variant_name = names.get(item.variant_id, ("", ""))
      writer.writerow([item.variant_id, product_name, variant_name, item.stock])

  await engine.dispose()


def main(argv):
  """Main entry point for the inventory dump script."""
  del argv
  asyncio.run(dump_inventory())


if __name__ == "__main__":
  absl_app.run(main)
