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

"""Utility script to dump the audit trail from the database.

This script reads and displays the audit log stored in the transactions DB.
It provides details such as timestamp, action, entity and payload for each
event.
It can optionally look up and display the current status of the checkout
session an event refers to.

Usage:
  uv run dump_log.py --transactions_db_path=... [--show_session]
  [--entity_id=...]
"""

import asyncio
import json
import sys
from absl import app as absl_app
from absl import flags
from db import AuditLog
from db import CheckoutSession
from enums import AuditEntity
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker

FLAGS = flags.FLAGS
flags.DEFINE_string("transactions_db_path", None, "Path to transactions DB")
flags.DEFINE_bool(
    "show_session", False, "Show the current status of the checkout session"
)
flags.DEFINE_string(
    "entity_id", None, "Only show events for this session, payment or order"
)


async def dump_logs():
  """Queries the database and prints audit events."""
  if not FLAGS.transactions_db_path:
    print("Error: --transactions_db_path is required.")
    sys.exit(1)

  db_url = f"sqlite+aiosqlite:///{FLAGS.transactions_db_path}"
  engine = create_async_engine(db_url, echo=False)
  session_factory = sessionmaker(
      engine, expire_on_commit=False, class_=AsyncSession
  )

  async with session_factory() as session:
    print("=== AUDIT LOG ===")
    query = select(AuditLog).order_by(AuditLog.id)
    if FLAGS.entity_id:
      query = query.where(AuditLog.entity_id == FLAGS.entity_id)
    result = await session.execute(query)
    logs = result.scalars().all()

    if not logs:
      print("No audit events found.")
      return

    for log in logs:
      print(f"[{log.timestamp}] {log.action} {log.entity_type}:{log.entity_id}")
      if log.customer_id:
        print(f"  Customer: {log.customer_id}")

      if (
          FLAGS.show_session
          and log.entity_type == AuditEntity.CHECKOUT.value
      ):
        checkout_session = await session.get(CheckoutSession, log.entity_id)
        if checkout_session:
          print(f"  Session Status: {checkout_session.status}")

      if log.data:
        print(f"  Data: {json.dumps(log.data, indent=2)}")
      if log.error_message:
        print(f"  Error: {log.error_message}")
      print("-" * 40)

  await engine.dispose()


def main(argv):
  """Main entry point for the log dump script."""
  del argv
  asyncio.run(dump_logs())


if __name__ == "__main__":
  absl_app.run(main)
