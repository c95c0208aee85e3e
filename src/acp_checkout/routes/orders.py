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

"""Order routes, including the shipping simulation used by tests."""

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Path

from acp_checkout import dependencies
from acp_checkout.context import RequestContext
from acp_checkout.enums import OrderStatus
from acp_checkout.models import OrderResponse

router = APIRouter()


@router.get(
    "/orders/{id}",
    response_model=OrderResponse,
    operation_id="get_order",
)
async def get_order(
    order_id: str = Path(..., alias="id"),
    ctx: RequestContext = Depends(dependencies.gate("get_order")),
    services: dependencies.Services = Depends(dependencies.get_services),
) -> OrderResponse:
  """Get an order by ID."""
  del ctx  # Unused
  return await services.orders.get_order(order_id)


@router.post(
    "/testing/simulate-shipping/{id}",
    response_model=OrderResponse,
    operation_id="ship_order",
    dependencies=[Depends(dependencies.verify_simulation_secret)],
)
async def ship_order(
    order_id: str = Path(..., alias="id"),
    services: dependencies.Services = Depends(dependencies.get_services),
) -> OrderResponse:
  """Simulate shipping an order.

  The status change is published like any other, so the platform receives an
  `order_updated` webhook.
  """
  return await services.orders.update_status(order_id, OrderStatus.SHIPPED)
