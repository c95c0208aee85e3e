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

"""Inbound payment gateway events (refunds and disputes)."""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Header
from fastapi import Request

from acp_checkout import dependencies
from acp_checkout import exceptions
from acp_checkout.services.gateway_events import verify_gateway_signature

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/webhooks/payment_gateway",
    response_model=Dict[str, Any],
    operation_id="receive_gateway_event",
)
async def receive_gateway_event(
    request: Request,
    gateway_signature: Optional[str] = Header(
        None, alias="Gateway-Signature"
    ),
    services: dependencies.Services = Depends(dependencies.get_services),
) -> Dict[str, Any]:
  """Verifies and applies a payment gateway event."""
  secret = services.settings.gateway_webhook_secret
  if not secret:
    raise exceptions.InvalidSignature("Gateway events are not configured")

  payload = await request.body()
  verify_gateway_signature(
      secret,
      gateway_signature,
      payload,
      services.clock(),
      services.settings.gateway_webhook_tolerance_seconds,
  )
  try:
    event = json.loads(payload)
  except ValueError as e:
    raise exceptions.ValidationFailed("Event body is not valid JSON") from e
  if not isinstance(event, dict):
    raise exceptions.ValidationFailed("Event body must be a JSON object")

  order = await services.gateway_events.handle(event)
  logger.info(
      "Gateway event %s (%s) handled, order %s",
      event.get("id"),
      event.get("type"),
      order.id if order else None,
  )
  return {"received": True}
