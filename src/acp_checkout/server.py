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

"""Agentic Checkout Merchant Server (Python/FastAPI)."""

import contextlib
import logging
import sys
import time
from typing import Any, Callable, Optional, Sequence

from absl import app as absl_app
from fastapi import FastAPI
from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import httpx
import uvicorn

from acp_checkout import config
from acp_checkout import db
from acp_checkout import dependencies
from acp_checkout.config import Settings
from acp_checkout.events import EventBus
from acp_checkout.events import log_order_event
from acp_checkout.exceptions import CheckoutError
from acp_checkout.exceptions import ValidationFailed
from acp_checkout.routes.checkout_sessions import router as checkout_router
from acp_checkout.routes.gateway_webhooks import router as gateway_router
from acp_checkout.routes.orders import router as order_router
from acp_checkout.services.access_gate import AccessGate
from acp_checkout.services.catalog import Catalog
from acp_checkout.services.catalog import DatabaseCatalog
from acp_checkout.services.checkout_service import CheckoutService
from acp_checkout.services.fulfillment_service import FulfillmentService
from acp_checkout.services.gateway_events import GatewayEventHandler
from acp_checkout.services.idempotency_service import IdempotencyLedger
from acp_checkout.services.ip_allowlist import IpAllowlist
from acp_checkout.services.order_service import OrderService
from acp_checkout.services.payment_adapter import HttpPaymentGateway
from acp_checkout.services.payment_adapter import MockPaymentGateway
from acp_checkout.services.payment_adapter import PaymentCompletionAdapter
from acp_checkout.services.payment_adapter import PaymentGateway
from acp_checkout.services.rate_limiter import FixedWindowRateLimiter
from acp_checkout.services.scheduler import BackgroundWorkers
from acp_checkout.services.webhook_service import WebhookDispatcher

# --- App Setup ---

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _payment_gateway(
    settings: Settings, transport: Optional[httpx.AsyncBaseTransport]
) -> PaymentGateway:
  if settings.payment_gateway == "http" and not settings.test_mode:
    if not settings.gateway_api_key:
      raise ValueError("--gateway_api_key is required for the http gateway")
    return HttpPaymentGateway(
        settings.gateway_base_url,
        settings.gateway_api_key,
        settings.gateway_timeout_seconds,
        transport=transport,
    )
  logger.warning("Using the mock payment gateway; no money will move")
  return MockPaymentGateway()


def build_services(
    settings: Settings,
    *,
    database: Optional[db.DatabaseManager] = None,
    catalog: Optional[Catalog] = None,
    payment_gateway: Optional[PaymentGateway] = None,
    clock: Callable[[], float] = time.time,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dependencies.Services:
  """Wires every component of the server together.

  Args:
    settings: The server configuration.
    database: Database manager; a new one is created if omitted. It is
      initialized by the app lifespan.
    catalog: Product lookup; defaults to the database catalog.
    payment_gateway: Gateway client; chosen from `settings` if omitted.
    clock: Source of the current time, in seconds since the epoch.
    transport: HTTP transport for outbound calls (webhooks, IP range feed and
      the gateway), mainly for tests.

  Returns:
    The assembled services.
  """
  database = database or db.DatabaseManager()
  event_bus = EventBus()

  allowlist = IpAllowlist(
      settings.ip_ranges_url,
      settings.static_ip_ranges,
      settings.ip_ranges_max_age_seconds,
      clock=clock,
      transport=transport,
  )
  gate = AccessGate(
      settings,
      allowlist,
      FixedWindowRateLimiter(settings.rate_limit_window_seconds, clock=clock),
  )
  payments = PaymentCompletionAdapter(
      payment_gateway or _payment_gateway(settings, transport),
      settings.default_payment_method,
      retry_attempts=settings.gateway_retry_attempts,
      retry_delay_seconds=settings.gateway_retry_delay_seconds,
  )
  orders = OrderService(
      database, event_bus, settings.order_permalink_base, clock=clock
  )
  checkout = CheckoutService(
      database,
      settings,
      catalog or DatabaseCatalog(database),
      FulfillmentService(),
      payments,
      orders,
      event_bus,
      clock=clock,
  )
  dispatcher = WebhookDispatcher(
      database, settings, clock=clock, transport=transport
  )

  # The outbox writer must see the event inside the publishing transaction.
  event_bus.subscribe(dispatcher.enqueue)
  event_bus.subscribe(log_order_event)

  return dependencies.Services(
      settings=settings,
      database=database,
      event_bus=event_bus,
      gate=gate,
      allowlist=allowlist,
      ledger=IdempotencyLedger(
          database, settings.idempotency_ttl_seconds, clock=clock
      ),
      payments=payments,
      orders=orders,
      checkout=checkout,
      dispatcher=dispatcher,
      gateway_events=GatewayEventHandler(database, orders, clock=clock),
      clock=clock,
  )


def _json_path(loc: Sequence[Any]) -> str:
  """Turns a pydantic error location into a JSONPath like `$.items[0].id`."""
  parts = list(loc)
  if parts and parts[0] in ("body", "query", "path", "header"):
    parts = parts[1:]
  path = "$"
  for part in parts:
    path += f"[{part}]" if isinstance(part, int) else f".{part}"
  return path


async def checkout_exception_handler(request: Request, exc: CheckoutError):
  """Converts checkout errors to the protocol's flat error object."""
  if exc.status_code >= 500:
    logger.error(
        "%s %s failed: %s (%s)",
        request.method,
        request.url.path,
        exc.message,
        exc.code,
    )
  return JSONResponse(
      status_code=exc.status_code,
      content=exc.to_dict(),
      headers=exc.headers(),
  )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
):
  """Reports the first schema violation as a `ValidationFailed` error."""
  del request  # Unused.
  errors = exc.errors()
  first = errors[0] if errors else {}
  error = ValidationFailed(
      first.get("msg", "Invalid request"),
      param=_json_path(first.get("loc", ())),
  )
  return JSONResponse(status_code=error.status_code, content=error.to_dict())


def create_app(
    settings: Settings, services: Optional[dependencies.Services] = None
) -> FastAPI:
  """Creates the FastAPI application for the given configuration."""
  services = services or build_services(settings)

  @contextlib.asynccontextmanager
  async def lifespan(app: FastAPI):
    del app  # Unused.
    await services.database.init_db(settings.database_path)
    if settings.ip_allowlist_enabled:
      await services.allowlist.refresh()

    workers = None
    if settings.background_workers:
      workers = BackgroundWorkers(
          settings,
          services.checkout,
          services.ledger,
          services.dispatcher,
          services.allowlist,
      )
      workers.start()
    try:
      yield
    finally:
      if workers:
        workers.shutdown()
      await services.database.close()

  app = FastAPI(
      title="Agentic Checkout Service",
      version=settings.api_version,
      description="Merchant side of the agentic checkout protocol",
      lifespan=lifespan,
  )
  app.state.services = services
  app.add_exception_handler(CheckoutError, checkout_exception_handler)
  app.add_exception_handler(
      RequestValidationError, validation_exception_handler
  )

  app.include_router(checkout_router)
  app.include_router(order_router)
  app.include_router(gateway_router)
  return app


def main(argv: Sequence[str]) -> None:
  """Main entry point for the Agentic Checkout Merchant Server."""
  del argv  # Unused.

  if (
      config.FLAGS.database_path is None
      or config.FLAGS.api_key is None
      or config.FLAGS.port is None
  ):
    logger.error(
        "--database_path, --api_key and --port must all be provided."
    )
    print("\nUsage:")
    print(config.FLAGS.main_module_help())
    sys.exit(1)

  settings = config.settings_from_flags()
  if settings.test_mode:
    logger.warning("Running in test mode")
  uvicorn.run(
      create_app(settings), host=config.FLAGS.host, port=config.FLAGS.port
  )


def run() -> None:
  absl_app.run(main)


if __name__ == "__main__":
  run()
