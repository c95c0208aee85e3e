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

"""Background workers driven by APScheduler.

Three time-triggered jobs run off the request path:
- webhook delivery, every `webhook_poll_seconds`;
- the housekeeping sweep (session expiry, stale completion claims and
  idempotency record purge), every `sweep_interval_seconds`;
- the published IP range refresh, every `ip_ranges_refresh_seconds`, when the
  allowlist is enabled.

Each job handles one bounded batch per run. Jobs never overlap themselves and
missed runs are coalesced.
"""

import logging
from typing import Awaitable, Callable, List

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from acp_checkout.config import Settings
from acp_checkout.services.checkout_service import CheckoutService
from acp_checkout.services.idempotency_service import IdempotencyLedger
from acp_checkout.services.ip_allowlist import IpAllowlist
from acp_checkout.services.webhook_service import WebhookDispatcher

logger = logging.getLogger(__name__)


class BackgroundWorkers:
  """Owns the scheduler and the periodic jobs of the server."""

  def __init__(
      self,
      settings: Settings,
      checkout_service: CheckoutService,
      ledger: IdempotencyLedger,
      dispatcher: WebhookDispatcher,
      allowlist: IpAllowlist,
  ):
    self._settings = settings
    self._checkout_service = checkout_service
    self._ledger = ledger
    self._dispatcher = dispatcher
    self._allowlist = allowlist
    self._scheduler = AsyncIOScheduler(
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 60,
        },
        timezone="UTC",
    )

  def start(self) -> None:
    """Registers the jobs and starts the scheduler on the running loop."""
    self._add_job(
        "webhook_delivery",
        self.deliver_webhooks,
        self._settings.webhook_poll_seconds,
    )
    self._add_job(
        "housekeeping_sweep", self.sweep, self._settings.sweep_interval_seconds
    )
    if self._settings.ip_allowlist_enabled:
      self._add_job(
          "ip_ranges_refresh",
          self.refresh_ip_ranges,
          self._settings.ip_ranges_refresh_seconds,
      )
    self._scheduler.start()
    logger.info("Background workers started: %s", ", ".join(self.job_ids))

  @property
  def job_ids(self) -> List[str]:
    return [job.id for job in self._scheduler.get_jobs()]

  def shutdown(self) -> None:
    if self._scheduler.running:
      self._scheduler.shutdown(wait=False)
      logger.info("Background workers stopped")

  async def deliver_webhooks(self) -> None:
    report = await self._dispatcher.deliver_due()
    if report.delivered or report.retried or report.failed:
      logger.info(
          "Webhook run: %d delivered, %d retrying, %d failed",
          report.delivered,
          report.retried,
          report.failed,
      )

  async def sweep(self) -> None:
    expired = await self._checkout_service.expire_sessions()
    released = await self._checkout_service.release_stale_completions()
    purged = await self._ledger.purge_expired()
    logger.info(
        "Sweep: %d sessions expired, %d stale completions released,"
        " %d idempotency records purged",
        expired,
        released,
        purged,
    )

  async def refresh_ip_ranges(self) -> None:
    await self._allowlist.refresh()

  def _add_job(
      self, job_id: str, job: Callable[[], Awaitable[None]], seconds: int
  ) -> None:
    async def run() -> None:
      try:
        await job()
      except Exception:  # pylint: disable=broad-exception-caught
        logger.exception("Background job %s failed", job_id)

    self._scheduler.add_job(
        run,
        IntervalTrigger(seconds=seconds),
        id=job_id,
        replace_existing=True,
    )
