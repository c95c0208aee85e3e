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

"""Utility script to dump request logs and the webhook outbox.

This script reads and displays the HTTP request logs stored in the database:
timestamp, method, URL, trace id and payload for each request. It can
optionally show the status of the associated checkout session, and the state
of every queued order webhook.

Usage:
  acp-dump-log --database_path=... [--show_transaction] [--show_webhooks]
"""

import asyncio
import json
import sys

from absl import app as absl_app
from absl import flags
from sqlalchemy import select

from acp_checkout import config  # pylint: disable=unused-import
from acp_checkout import db

FLAGS = flags.FLAGS

try:
  flags.DEFINE_bool(
      "show_transaction", False, "Show correlated checkout session status"
  )
  flags.DEFINE_bool("show_webhooks", False, "Show the webhook outbox")
except flags.DuplicateFlagError:
  pass


async def dump_logs(
    database_path: str, show_transaction: bool, show_webhooks: bool
) -> None:
  """Queries the database and prints request logs."""
  manager = db.DatabaseManager()
  await manager.init_db(database_path)
  try:
    async with manager.session_factory() as session:
      print("=== REQUEST LOGS ===")
      result = await session.execute(
          select(db.RequestLog).order_by(db.RequestLog.id)
      )
      logs = result.scalars().all()
      if not logs:
        print("No request logs found.")

      for log in logs:
        print(f"[{log.timestamp}] {log.method} {log.url}")
        if log.trace_id:
          print(f"  Request ID: {log.trace_id}")
        if log.checkout_id:
          print(f"  Checkout ID: {log.checkout_id}")
          if show_transaction:
            checkout = await session.get(db.CheckoutSession, log.checkout_id)
            if checkout:
              print(
                  f"  Session Status: {checkout.status}"
                  f" (version {checkout.version})"
              )
        if log.payload:
          print(f"  Payload: {json.dumps(log.payload, indent=2)}")
        print("-" * 40)

      if show_webhooks:
        print("=== WEBHOOK DELIVERIES ===")
        result = await session.execute(
            select(db.WebhookDelivery).order_by(db.WebhookDelivery.id)
        )
        deliveries = result.scalars().all()
        if not deliveries:
          print("No webhook deliveries found.")
        for delivery in deliveries:
          print(
              f"[{delivery.timestamp}] {delivery.event_type} order"
              f" {delivery.order_id} -> {delivery.outcome}"
          )
          print(f"  Webhook ID: {delivery.webhook_id}")
          print(f"  Attempts: {delivery.attempt_count}")
          if delivery.next_retry_at:
            print(f"  Next retry at: {delivery.next_retry_at}")
          if delivery.last_error:
            print(f"  Last error: {delivery.last_error}")
          print("-" * 40)
  finally:
    await manager.close()


def main(argv):
  """Main entry point for the log dump script."""
  del argv
  if not FLAGS.database_path:
    print("Error: --database_path is required.")
    sys.exit(1)
  asyncio.run(
      dump_logs(
          FLAGS.database_path, FLAGS.show_transaction, FLAGS.show_webhooks
      )
  )


def run() -> None:
  absl_app.run(main)


if __name__ == "__main__":
  run()
