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

"""FastAPI dependencies for the checkout server.

This module contains dependency injection logic for FastAPI endpoints,
including:
- The bundle of services assembled once at startup (`Services`).
- The access gate, turning each request into a `RequestContext`.
- Secret verification for the testing endpoints.
"""

import dataclasses
import hmac
import time
from typing import Callable, Optional

from fastapi import Depends
from fastapi import Header
from fastapi import Request

from acp_checkout import db
from acp_checkout import exceptions
from acp_checkout.config import Settings
from acp_checkout.context import RequestContext
from acp_checkout.events import EventBus
from acp_checkout.services.access_gate import AccessGate
from acp_checkout.services.checkout_service import CheckoutService
from acp_checkout.services.gateway_events import GatewayEventHandler
from acp_checkout.services.idempotency_service import IdempotencyLedger
from acp_checkout.services.ip_allowlist import IpAllowlist
from acp_checkout.services.order_service import OrderService
from acp_checkout.services.payment_adapter import PaymentCompletionAdapter
from acp_checkout.services.webhook_service import WebhookDispatcher


@dataclasses.dataclass
class Services:
  """Everything the routes need, built once by `server.build_services`."""

  settings: Settings
  database: db.DatabaseManager
  event_bus: EventBus
  gate: AccessGate
  allowlist: IpAllowlist
  ledger: IdempotencyLedger
  payments: PaymentCompletionAdapter
  orders: OrderService
  checkout: CheckoutService
  dispatcher: WebhookDispatcher
  gateway_events: GatewayEventHandler
  clock: Callable[[], float] = time.time


def get_services(request: Request) -> Services:
  """Dependency provider for the service bundle of the running app."""
  return request.app.state.services


def gate(
    endpoint: str, mutating: bool = False
) -> Callable[..., RequestContext]:
  """Builds the access gate dependency for one logical endpoint."""

  async def admit(
      request: Request,
      services: Services = Depends(get_services),
  ) -> RequestContext:
    return services.gate.admit(
        endpoint=endpoint,
        method=request.method,
        path=request.url.path,
        scheme=request.url.scheme,
        headers=request.headers,
        peer_ip=request.client.host if request.client else None,
        mutating=mutating,
    )

  return admit


async def verify_simulation_secret(
    simulation_secret: Optional[str] = Header(None, alias="Simulation-Secret"),
    services: Services = Depends(get_services),
) -> None:
  """Verifies the secret for simulation endpoints."""
  expected_secret = services.settings.simulation_secret
  if not expected_secret:
    raise exceptions.SimulationForbidden("Simulation endpoints are disabled")

  if not simulation_secret or not hmac.compare_digest(
      simulation_secret.encode("utf-8"), expected_secret.encode("utf-8")
  ):
    raise exceptions.SimulationForbidden()
