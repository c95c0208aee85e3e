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

"""Payment completion via single-use delegated payment tokens.

The `PaymentCompletionAdapter` turns a checkout session and the delegated
token the agent platform sent with `complete` into one gateway call. The
token replaces the default payment method the integration would otherwise
send, and is held only for the duration of that call.

Two gateway clients are provided: `HttpPaymentGateway` speaks a Stripe-style
payment intents API over httpx, and `MockPaymentGateway` resolves tokens by
prefix for tests and test mode.
"""

import asyncio
import dataclasses
import logging
from typing import Dict, List, Optional, Protocol
import uuid

import httpx

from acp_checkout.enums import PaymentStatus
from acp_checkout.models import CheckoutSessionResponse

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True)
class PaymentRequest:
  amount: int
  currency: str
  idempotency_key: str
  metadata: Dict[str, str] = dataclasses.field(default_factory=dict)
  payment_method: Optional[str] = None
  shared_payment_token: Optional[str] = None

  def to_params(self) -> Dict[str, str]:
    """Form parameters for the payment intents endpoint."""
    params = {
        "amount": str(self.amount),
        "currency": self.currency,
        "confirm": "true",
    }
    if self.payment_method:
      params["payment_method"] = self.payment_method
    if self.shared_payment_token:
      params["shared_payment_token"] = self.shared_payment_token
    for key, value in self.metadata.items():
      params[f"metadata[{key}]"] = value
    return params


@dataclasses.dataclass(frozen=True)
class PaymentOutcome:
  status: PaymentStatus
  gateway_reference: Optional[str] = None
  decline_code: Optional[str] = None
  message: Optional[str] = None


class PaymentGateway(Protocol):
  """External payment processor client."""

  async def create_payment(self, request: PaymentRequest) -> PaymentOutcome:
    ...

  async def refund_payment(self, reference: str, amount: int) -> bool:
    ...


class HttpPaymentGateway:
  """Payment intents client for a Stripe-compatible gateway."""

  def __init__(
      self,
      base_url: str,
      api_key: str,
      timeout_seconds: float = 30.0,
      transport: Optional[httpx.AsyncBaseTransport] = None,
  ):
    self._base_url = base_url.rstrip("/")
    self._api_key = api_key
    self._timeout = timeout_seconds
    self._transport = transport

  def _client(self) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=self._base_url,
        timeout=self._timeout,
        transport=self._transport,
        headers={"Authorization": f"Bearer {self._api_key}"},
    )

  async def create_payment(self, request: PaymentRequest) -> PaymentOutcome:
    try:
      async with self._client() as client:
        response = await client.post(
            "/v1/payment_intents",
            data=request.to_params(),
            headers={"Idempotency-Key": request.idempotency_key},
        )
    except httpx.HTTPError as e:
      logger.error("Payment gateway request failed: %s", e)
      return PaymentOutcome(PaymentStatus.GATEWAY_ERROR, message=str(e))

    if response.status_code == 429 or response.status_code >= 500:
      logger.error(
          "Payment gateway returned %d: %s",
          response.status_code,
          response.text,
      )
      return PaymentOutcome(
          PaymentStatus.GATEWAY_ERROR,
          message=f"Gateway returned {response.status_code}",
      )

    try:
      body = response.json()
    except ValueError:
      logger.error("Payment gateway returned a non-JSON body")
      return PaymentOutcome(
          PaymentStatus.GATEWAY_ERROR, message="Malformed gateway response"
      )

    if response.is_success:
      intent_id = body.get("id")
      if body.get("status") == "succeeded":
        return PaymentOutcome(
            PaymentStatus.SUCCEEDED, gateway_reference=intent_id
        )
      return PaymentOutcome(
          PaymentStatus.DECLINED,
          gateway_reference=intent_id,
          decline_code=body.get("status"),
          message=f"Payment intent is {body.get('status')}",
      )

    error = body.get("error", {})
    intent = error.get("payment_intent") or {}
    if response.status_code != 402 and error.get("type") != "card_error":
      # Rejections that are not about the card point at the integration.
      logger.error(
          "Payment gateway rejected the request with %d: %s",
          response.status_code,
          error.get("message") or response.text,
      )
      return PaymentOutcome(
          PaymentStatus.GATEWAY_ERROR,
          message=f"Gateway returned {response.status_code}",
      )
    return PaymentOutcome(
        PaymentStatus.DECLINED,
        gateway_reference=intent.get("id"),
        decline_code=error.get("decline_code") or error.get("code"),
        message=error.get("message", "Payment was declined"),
    )

  async def refund_payment(self, reference: str, amount: int) -> bool:
    try:
      async with self._client() as client:
        response = await client.post(
            "/v1/refunds",
            data={"payment_intent": reference, "amount": str(amount)},
            headers={"Idempotency-Key": f"refund:{reference}"},
        )
    except httpx.HTTPError as e:
      logger.error("Refund of %s failed: %s", reference, e)
      return False
    if not response.is_success:
      logger.error(
          "Refund of %s rejected with %d: %s",
          reference,
          response.status_code,
          response.text,
      )
      return False
    return True


class MockPaymentGateway:
  """In-process gateway that resolves delegated tokens by prefix.

  `success_*` and `spt_*` tokens succeed, `fail_*` and `fraud_*` are declined,
  `unavailable_*` simulates an outage. Every token can be used once.
  """

  def __init__(self) -> None:
    self.requests: List[PaymentRequest] = []
    self.refunds: List[tuple[str, int]] = []
    self._used_tokens: set[str] = set()

  async def create_payment(self, request: PaymentRequest) -> PaymentOutcome:
    self.requests.append(request)
    token = request.shared_payment_token or ""

    if token.startswith("unavailable"):
      return PaymentOutcome(
          PaymentStatus.GATEWAY_ERROR, message="Simulated gateway outage"
      )
    if token in self._used_tokens:
      return PaymentOutcome(
          PaymentStatus.DECLINED,
          decline_code="shared_payment_token_used",
          message="Payment token has already been used",
      )
    self._used_tokens.add(token)

    reference = f"pi_mock_{uuid.uuid4().hex[:24]}"
    if token.startswith(("success", "spt_")):
      return PaymentOutcome(
          PaymentStatus.SUCCEEDED, gateway_reference=reference
      )
    if token.startswith("fraud"):
      return PaymentOutcome(
          PaymentStatus.DECLINED,
          gateway_reference=reference,
          decline_code="fraudulent",
          message="Payment was declined",
      )
    if token.startswith("fail"):
      return PaymentOutcome(
          PaymentStatus.DECLINED,
          gateway_reference=reference,
          decline_code="insufficient_funds",
          message="Payment was declined",
      )
    return PaymentOutcome(
        PaymentStatus.DECLINED,
        decline_code="invalid_token_format",
        message="Invalid payment token format",
    )

  async def refund_payment(self, reference: str, amount: int) -> bool:
    self.refunds.append((reference, amount))
    return True


class PaymentCompletionAdapter:
  """Exchanges a delegated token for a captured payment.

  Gateway infrastructure failures are retried with the same request, and so
  the same gateway idempotency key, up to `retry_attempts` calls in total. A
  payment the gateway captured before the connection dropped is then
  returned by the retry instead of being charged again.
  """

  def __init__(
      self,
      gateway: PaymentGateway,
      default_payment_method: Optional[str] = None,
      retry_attempts: int = 1,
      retry_delay_seconds: float = 0.0,
  ):
    self._gateway = gateway
    self._default_payment_method = default_payment_method
    self._retry_attempts = max(1, retry_attempts)
    self._retry_delay = retry_delay_seconds
    # Delegated tokens of in-flight attempts, keyed by attempt id.
    self._token_vault: Dict[str, str] = {}

  @property
  def pending_tokens(self) -> int:
    return len(self._token_vault)

  async def complete_payment(
      self,
      session: CheckoutSessionResponse,
      delegated_token: str,
      attempt_id: str,
  ) -> PaymentOutcome:
    """Charges the session total with the delegated token.

    Args:
      session: Snapshot of the checkout session being completed.
      delegated_token: The single-use token from the agent platform.
      attempt_id: Identifier of this completion attempt. It keys the gateway
        idempotency key so a network retry cannot charge twice.

    Returns:
      The payment outcome. Gateway exceptions are reported as
      `gateway_error` once the retry budget is spent, never raised.
    """
    self._token_vault[attempt_id] = delegated_token
    try:
      request = self._inject_delegated_token(
          self._build_request(session, attempt_id), attempt_id
      )
      outcome = await self._call_gateway(session.id, request)
    finally:
      self._token_vault.pop(attempt_id, None)

    logger.info(
        "Payment for checkout %s: %s (reference %s)",
        session.id,
        outcome.status.value,
        outcome.gateway_reference,
    )
    return outcome

  async def _call_gateway(
      self, checkout_id: str, request: PaymentRequest
  ) -> PaymentOutcome:
    attempt = 1
    while True:
      try:
        outcome = await self._gateway.create_payment(request)
      except Exception as e:  # pylint: disable=broad-exception-caught
        logger.exception("Payment gateway call for %s raised", checkout_id)
        outcome = PaymentOutcome(PaymentStatus.GATEWAY_ERROR, message=str(e))
      if (
          outcome.status != PaymentStatus.GATEWAY_ERROR
          or attempt >= self._retry_attempts
      ):
        return outcome
      logger.warning(
          "Payment gateway error for %s (attempt %d/%d): %s",
          checkout_id,
          attempt,
          self._retry_attempts,
          outcome.message,
      )
      await asyncio.sleep(self._retry_delay * attempt)
      attempt += 1

  async def refund(self, reference: str, amount: int) -> bool:
    """Refunds a captured payment whose order could not be created."""
    refunded = await self._gateway.refund_payment(reference, amount)
    if refunded:
      logger.warning("Refunded payment %s (%d)", reference, amount)
    else:
      logger.error(
          "Refund of payment %s (%d) failed; needs manual reconciliation",
          reference,
          amount,
      )
    return refunded

  def _build_request(
      self, session: CheckoutSessionResponse, attempt_id: str
  ) -> PaymentRequest:
    return PaymentRequest(
        amount=session.totals.total,
        currency=session.currency,
        idempotency_key=f"{session.id}:{attempt_id}",
        metadata={"checkout_session_id": session.id},
        payment_method=self._default_payment_method,
    )

  def _inject_delegated_token(
      self, request: PaymentRequest, attempt_id: str
  ) -> PaymentRequest:
    # The delegated token and a payment method are mutually exclusive.
    return dataclasses.replace(
        request,
        shared_payment_token=self._token_vault[attempt_id],
        payment_method=None,
    )
