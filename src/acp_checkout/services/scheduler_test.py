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

"""Tests for the background workers."""

import asyncio
import tempfile

from absl.testing import absltest

from acp_checkout import testing_utils
from acp_checkout.services.scheduler import BackgroundWorkers
from acp_checkout.services.webhook_service import DeliveryReport


class _FakeCheckoutService:

  def __init__(self):
    self.calls = []

  async def expire_sessions(self):
    self.calls.append("expire")
    return 2

  async def release_stale_completions(self):
    self.calls.append("release")
    return 0


class _FakeLedger:

  async def purge_expired(self):
    return 5


class _FakeDispatcher:

  def __init__(self, error=None):
    self.runs = 0
    self.error = error

  async def deliver_due(self):
    self.runs += 1
    if self.error:
      raise self.error
    return DeliveryReport(delivered=1)


class _FakeAllowlist:

  def __init__(self):
    self.refreshes = 0

  async def refresh(self):
    self.refreshes += 1
    return True


class BackgroundWorkersTest(absltest.TestCase):

  def _workers(self, dispatcher=None, **overrides):
    self.checkout = _FakeCheckoutService()
    self.dispatcher = dispatcher or _FakeDispatcher()
    self.allowlist = _FakeAllowlist()
    settings = testing_utils.make_settings(tempfile.gettempdir(), **overrides)
    return BackgroundWorkers(
        settings, self.checkout, _FakeLedger(), self.dispatcher, self.allowlist
    )

  def test_sweep_runs_every_housekeeping_task(self):
    workers = self._workers()
    asyncio.run(workers.sweep())
    self.assertEqual(self.checkout.calls, ["expire", "release"])

  def test_jobs_registered(self):
    async def scenario(workers):
      workers.start()
      try:
        return workers.job_ids
      finally:
        workers.shutdown()

    self.assertCountEqual(
        asyncio.run(scenario(self._workers())),
        ["webhook_delivery", "housekeeping_sweep"],
    )
    self.assertCountEqual(
        asyncio.run(scenario(self._workers(ip_allowlist_enabled=True))),
        ["webhook_delivery", "housekeeping_sweep", "ip_ranges_refresh"],
    )

  def test_failing_job_does_not_stop_the_scheduler(self):
    dispatcher = _FakeDispatcher(error=RuntimeError("database is locked"))

    async def scenario():
      workers = self._workers(dispatcher=dispatcher, webhook_poll_seconds=1)
      workers.start()
      try:
        await asyncio.sleep(3.5)
      finally:
        workers.shutdown()

    asyncio.run(scenario())
    self.assertGreaterEqual(dispatcher.runs, 2)


if __name__ == "__main__":
  absltest.main()
