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

"""Tests for the idempotency ledger."""

import asyncio
import json
import os
import shutil
import tempfile

from absl.testing import absltest

from acp_checkout import db
from acp_checkout import exceptions
from acp_checkout import testing_utils
from acp_checkout.services.idempotency_service import IdempotencyLedger
from acp_checkout.services.idempotency_service import request_fingerprint
from acp_checkout.services.idempotency_service import StoredResponse


class _Operation:
  """Counts executions and returns a fresh payload each time."""

  def __init__(self, error=None):
    self.calls = 0
    self.error = error

  async def __call__(self) -> StoredResponse:
    self.calls += 1
    if self.error is not None:
      raise self.error
    return StoredResponse.from_payload(201, {"id": "cs_1", "n": self.calls})


class RequestFingerprintTest(absltest.TestCase):

  def test_key_order_does_not_matter(self):
    self.assertEqual(
        request_fingerprint({"id": "a"}, {"x": 1, "y": [1, 2]}),
        request_fingerprint({"id": "a"}, {"y": [1, 2], "x": 1}),
    )

  def test_params_and_body_both_count(self):
    self.assertNotEqual(
        request_fingerprint({"id": "a"}, {"x": 1}),
        request_fingerprint({"id": "b"}, {"x": 1}),
    )
    self.assertNotEqual(
        request_fingerprint({"id": "a"}, {"x": 1}),
        request_fingerprint({"id": "a"}, {"x": 2}),
    )


class IdempotencyLedgerTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.test_dir = tempfile.mkdtemp()
    self.db_path = os.path.join(self.test_dir, "ledger.db")
    self.clock = testing_utils.FakeClock()
    self.database = db.DatabaseManager()
    self.ledger = IdempotencyLedger(
        self.database, ttl_seconds=3600, clock=self.clock
    )

  def tearDown(self):
    shutil.rmtree(self.test_dir)
    super().tearDown()

  def _run(self, fn):
    async def run():
      await self.database.init_db(self.db_path)
      try:
        return await fn()
      finally:
        await self.database.close()

    return asyncio.run(run())

  def test_replays_first_response(self):
    operation = _Operation()

    async def scenario():
      first = await self.ledger.execute_once("create", "k1", "fp", operation)
      second = await self.ledger.execute_once("create", "k1", "fp", operation)
      return first, second

    first, second = self._run(scenario)
    self.assertEqual(operation.calls, 1)
    self.assertFalse(first.replayed)
    self.assertTrue(second.replayed)
    self.assertEqual(second.status_code, 201)
    self.assertEqual(second.body, first.body)
    self.assertEqual(json.loads(second.body)["n"], 1)

  def test_different_request_conflicts(self):
    operation = _Operation()

    async def scenario():
      await self.ledger.execute_once("create", "k1", "fp-a", operation)
      await self.ledger.execute_once("create", "k1", "fp-b", operation)

    with self.assertRaises(exceptions.IdempotencyConflict):
      self._run(scenario)
    self.assertEqual(operation.calls, 1)

  def test_scopes_are_independent(self):
    operation = _Operation()

    async def scenario():
      await self.ledger.execute_once("create", "k1", "fp-a", operation)
      await self.ledger.execute_once("cancel", "k1", "fp-b", operation)

    self._run(scenario)
    self.assertEqual(operation.calls, 2)

  def test_final_errors_are_stored(self):
    operation = _Operation(
        exceptions.PaymentDeclined("Payment was declined", "card_declined")
    )

    async def scenario():
      first = await self.ledger.execute_once("complete", "k", "fp", operation)
      second = await self.ledger.execute_once("complete", "k", "fp", operation)
      return first, second

    first, second = self._run(scenario)
    self.assertEqual(operation.calls, 1)
    self.assertEqual(first.status_code, 402)
    self.assertEqual(json.loads(first.body)["decline_code"], "card_declined")
    self.assertEqual(second.body, first.body)
    self.assertTrue(second.replayed)

  def test_retryable_errors_release_the_key(self):
    operation = _Operation(exceptions.PaymentGatewayUnavailable())

    async def scenario():
      for _ in range(2):
        with self.assertRaises(exceptions.PaymentGatewayUnavailable):
          await self.ledger.execute_once("complete", "k", "fp", operation)
      operation.error = None
      return await self.ledger.execute_once("complete", "k", "fp", operation)

    stored = self._run(scenario)
    self.assertEqual(operation.calls, 3)
    self.assertFalse(stored.replayed)

  def test_concurrent_duplicate_is_rejected(self):
    async def scenario():
      is_running, may_finish = asyncio.Event(), asyncio.Event()

      async def slow() -> StoredResponse:
        is_running.set()
        await may_finish.wait()
        return StoredResponse.from_payload(200, {"ok": True})

      first = asyncio.create_task(
          self.ledger.execute_once("update", "k", "fp", slow)
      )
      await is_running.wait()
      with self.assertRaises(exceptions.IdempotencyInProgress):
        await self.ledger.execute_once("update", "k", "fp", slow)
      may_finish.set()
      await first
      return await self.ledger.execute_once("update", "k", "fp", slow)

    replay = self._run(scenario)
    self.assertTrue(replay.replayed)

  def test_missing_key_runs_every_time(self):
    operation = _Operation()

    async def scenario():
      await self.ledger.execute_once("create", None, "fp", operation)
      await self.ledger.execute_once("create", None, "fp", operation)

    self._run(scenario)
    self.assertEqual(operation.calls, 2)

  def test_expired_records_no_longer_hold_the_key(self):
    operation = _Operation()

    async def scenario():
      await self.ledger.execute_once("create", "k", "fp-a", operation)
      await self.ledger.execute_once("create", "other", "fp", operation)
      self.clock.advance(3601)
      # A different request may now reuse the key.
      reused = await self.ledger.execute_once("create", "k", "fp-b", operation)
      purged = await self.ledger.purge_expired()
      return reused, purged

    reused, purged = self._run(scenario)
    self.assertFalse(reused.replayed)
    self.assertEqual(operation.calls, 3)
    self.assertEqual(purged, 1)


if __name__ == "__main__":
  absltest.main()
