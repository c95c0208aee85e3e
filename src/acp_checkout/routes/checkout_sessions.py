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

"""Checkout session routes.

Mutating routes run their operation through the idempotency ledger and return
the ledger's stored body, so a retried request gets back exactly the bytes the
first one produced.
"""

from typing import Awaitable, Callable, Optional

from fastapi import APIRouter
from fastapi import Body
from fastapi import Depends
from fastapi import Path
from fastapi import Response
from pydantic import BaseModel

from acp_checkout import dependencies
from acp_checkout.context import RequestContext
from acp_checkout.models import CancelCheckoutSessionRequest
from acp_checkout.models import CheckoutSessionResponse
from acp_checkout.models import CompleteCheckoutSessionRequest
from acp_checkout.models import CreateCheckoutSessionRequest
from acp_checkout.models import UpdateCheckoutSessionRequest
from acp_checkout.services.idempotency_service import request_fingerprint
from acp_checkout.services.idempotency_service import StoredResponse

router = APIRouter()


def _respond(stored: StoredResponse, ctx: RequestContext) -> Response:
  headers = ctx.response_headers()
  if stored.replayed:
    headers["Idempotent-Replayed"] = "true"
  return Response(
      content=stored.body,
      status_code=stored.status_code,
      media_type="application/json",
      headers=headers,
  )


async def _run_once(
    services: dependencies.Services,
    ctx: RequestContext,
    checkout_id: Optional[str],
    body: Optional[BaseModel],
    status_code: int,
    operation: Callable[[], Awaitable[CheckoutSessionResponse]],
) -> Response:
  """Runs a mutating operation at most once per idempotency key."""
  fingerprint = request_fingerprint(
      {"id": checkout_id},
      body.model_dump(mode="json", exclude_unset=True) if body else None,
  )

  async def execute() -> StoredResponse:
    session = await operation()
    return StoredResponse.from_payload(
        status_code, session.model_dump(mode="json")
    )

  stored = await services.ledger.execute_once(
      ctx.endpoint, ctx.idempotency_key, fingerprint, execute
  )
  return _respond(stored, ctx)


@router.post(
    "/checkout_sessions",
    status_code=201,
    response_model=CheckoutSessionResponse,
    operation_id="create_checkout_session",
)
async def create_checkout_session(
    checkout_request: CreateCheckoutSessionRequest = Body(...),
    ctx: RequestContext = Depends(dependencies.gate("create", mutating=True)),
    services: dependencies.Services = Depends(dependencies.get_services),
) -> Response:
  """Creates a checkout session from a cart."""
  return await _run_once(
      services,
      ctx,
      None,
      checkout_request,
      201,
      lambda: services.checkout.create_session(ctx, checkout_request),
  )


@router.get(
    "/checkout_sessions/{id}",
    response_model=CheckoutSessionResponse,
    operation_id="get_checkout_session",
)
async def get_checkout_session(
    checkout_id: str = Path(..., alias="id"),
    ctx: RequestContext = Depends(dependencies.gate("retrieve")),
    services: dependencies.Services = Depends(dependencies.get_services),
) -> Response:
  """Retrieves a checkout session in any status."""
  session = await services.checkout.get_session(ctx, checkout_id)
  return _respond(
      StoredResponse.from_payload(200, session.model_dump(mode="json")), ctx
  )


@router.post(
    "/checkout_sessions/{id}",
    response_model=CheckoutSessionResponse,
    operation_id="update_checkout_session",
)
async def update_checkout_session(
    checkout_id: str = Path(..., alias="id"),
    checkout_request: UpdateCheckoutSessionRequest = Body(...),
    ctx: RequestContext = Depends(dependencies.gate("update", mutating=True)),
    services: dependencies.Services = Depends(dependencies.get_services),
) -> Response:
  """Updates an open checkout session."""
  return await _run_once(
      services,
      ctx,
      checkout_id,
      checkout_request,
      200,
      lambda: services.checkout.update_session(
          ctx, checkout_id, checkout_request
      ),
  )


@router.post(
    "/checkout_sessions/{id}/complete",
    response_model=CheckoutSessionResponse,
    operation_id="complete_checkout_session",
)
async def complete_checkout_session(
    checkout_id: str = Path(..., alias="id"),
    checkout_request: CompleteCheckoutSessionRequest = Body(...),
    ctx: RequestContext = Depends(
        dependencies.gate("complete", mutating=True)
    ),
    services: dependencies.Services = Depends(dependencies.get_services),
) -> Response:
  """Pays for a checkout session and creates its order."""
  return await _run_once(
      services,
      ctx,
      checkout_id,
      checkout_request,
      200,
      lambda: services.checkout.complete_session(
          ctx, checkout_id, checkout_request
      ),
  )


@router.post(
    "/checkout_sessions/{id}/cancel",
    response_model=CheckoutSessionResponse,
    operation_id="cancel_checkout_session",
)
async def cancel_checkout_session(
    checkout_id: str = Path(..., alias="id"),
    checkout_request: Optional[CancelCheckoutSessionRequest] = Body(None),
    ctx: RequestContext = Depends(dependencies.gate("cancel", mutating=True)),
    services: dependencies.Services = Depends(dependencies.get_services),
) -> Response:
  """Cancels an open checkout session."""
  return await _run_once(
      services,
      ctx,
      checkout_id,
      checkout_request,
      200,
      lambda: services.checkout.cancel_session(
          ctx, checkout_id, checkout_request
      ),
  )
