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

"""Custom exceptions for the checkout server.

Every error that can reach a caller derives from `CheckoutError` and is
rendered as `{"type", "code", "message"[, "param"]}` by the server's exception
handler. Errors flagged `retryable` describe infrastructure failures: the
idempotency ledger releases the key for them instead of replaying them.
"""

from typing import Any, Dict, Optional


class CheckoutError(Exception):
  """Base class for all checkout server exceptions."""

  def __init__(
      self,
      message: str,
      code: str = "internal_error",
      status_code: int = 500,
      error_type: str = "processing_error",
      param: Optional[str] = None,
      retryable: bool = False,
  ):
    self.message = message
    self.code = code
    self.status_code = status_code
    self.error_type = error_type
    self.param = param
    self.retryable = retryable
    super().__init__(self.message)

  def to_dict(self) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "type": self.error_type,
        "code": self.code,
        "message": self.message,
    }
    if self.param:
      body["param"] = self.param
    return body

  def headers(self) -> Dict[str, str]:
    return {}


class AuthenticationFailed(CheckoutError):
  """Raised when the bearer credential is missing or wrong."""

  def __init__(self, message: str = "Invalid or missing API key"):
    super().__init__(
        message,
        code="unauthorized",
        status_code=401,
        error_type="invalid_request",
    )

  def headers(self) -> Dict[str, str]:
    return {"WWW-Authenticate": "Bearer"}


class TransportSecurityRequired(CheckoutError):
  """Raised when a request arrives over plain HTTP outside test mode."""

  def __init__(self, message: str = "HTTPS is required"):
    super().__init__(
        message,
        code="https_required",
        status_code=403,
        error_type="invalid_request",
    )


class OriginNotAllowed(CheckoutError):
  """Raised when the caller's address is outside the published ranges."""

  def __init__(self, message: str = "Request origin is not allowed"):
    super().__init__(
        message,
        code="origin_not_allowed",
        status_code=403,
        error_type="invalid_request",
    )


class RateLimited(CheckoutError):
  """Raised when a credential exceeds its per-endpoint request budget."""

  def __init__(self, retry_after: int, limit: int, reset_at: int):
    super().__init__(
        "Rate limit exceeded",
        code="rate_limit_exceeded",
        status_code=429,
        error_type="invalid_request",
        retryable=True,
    )
    self.retry_after = retry_after
    self.limit = limit
    self.reset_at = reset_at

  def to_dict(self) -> Dict[str, Any]:
    body = super().to_dict()
    body["retry_after"] = self.retry_after
    return body

  def headers(self) -> Dict[str, str]:
    return {
        "Retry-After": str(self.retry_after),
        "X-RateLimit-Limit": str(self.limit),
        "X-RateLimit-Remaining": "0",
        "X-RateLimit-Reset": str(self.reset_at),
    }


class UnsupportedApiVersion(CheckoutError):
  """Raised when the caller asks for a protocol version we do not speak."""

  def __init__(self, message: str):
    super().__init__(
        message,
        code="unsupported_api_version",
        status_code=400,
        error_type="invalid_request",
        param="API-Version",
    )


class IdempotencyConflict(CheckoutError):
  """Raised when an idempotency key is reused with different parameters."""

  def __init__(
      self, message: str = "Idempotency key reused with different parameters"
  ):
    super().__init__(
        message,
        code="idempotency_conflict",
        status_code=409,
        error_type="request_not_idempotent",
    )


class IdempotencyInProgress(CheckoutError):
  """Raised when a request with the same key is still being processed."""

  def __init__(
      self,
      message: str = "A request with this idempotency key is in progress",
  ):
    super().__init__(
        message,
        code="idempotency_in_progress",
        status_code=409,
        error_type="request_not_idempotent",
        retryable=True,
    )


class ValidationFailed(CheckoutError):
  """Raised when the request is invalid (unknown item, bad address, ...)."""

  def __init__(
      self,
      message: str,
      param: Optional[str] = None,
      code: str = "invalid",
  ):
    super().__init__(
        message,
        code=code,
        status_code=400,
        error_type="invalid_request",
        param=param,
    )


class SessionNotFound(CheckoutError):
  """Raised when a checkout session does not exist."""

  def __init__(self, session_id: str):
    super().__init__(
        f"Checkout session {session_id} not found",
        code="not_found",
        status_code=404,
        error_type="invalid_request",
    )


class OrderNotFound(CheckoutError):
  """Raised when an order does not exist."""

  def __init__(self, order_id: str):
    super().__init__(
        f"Order {order_id} not found",
        code="not_found",
        status_code=404,
        error_type="invalid_request",
    )


class SessionStateConflict(CheckoutError):
  """Raised on an illegal state transition or a stale version."""

  def __init__(self, message: str, code: str = "invalid_state"):
    super().__init__(
        message,
        code=code,
        status_code=409,
        error_type="invalid_request",
    )


class PaymentDeclined(CheckoutError):
  """Raised when the gateway declines the delegated token."""

  def __init__(self, message: str, decline_code: Optional[str] = None):
    super().__init__(
        message,
        code="payment_declined",
        status_code=402,
        error_type="processing_error",
    )
    self.decline_code = decline_code

  def to_dict(self) -> Dict[str, Any]:
    body = super().to_dict()
    if self.decline_code:
      body["decline_code"] = self.decline_code
    return body


class PaymentGatewayUnavailable(CheckoutError):
  """Raised when the gateway could not be reached or failed internally."""

  def __init__(self, message: str = "Payment gateway is unavailable"):
    super().__init__(
        message,
        code="payment_gateway_unavailable",
        status_code=503,
        error_type="service_unavailable",
        retryable=True,
    )


class OrderMaterializationFailed(CheckoutError):
  """Raised when a captured payment could not be turned into an order."""

  def __init__(self, message: str = "Order could not be created"):
    super().__init__(
        message,
        code="order_creation_failed",
        status_code=503,
        error_type="processing_error",
        retryable=True,
    )


class WebhookDeliveryFailed(CheckoutError):
  """Raised internally when a webhook endpoint rejects a delivery."""

  def __init__(self, message: str):
    super().__init__(message, code="webhook_delivery_failed")


class InvalidSignature(CheckoutError):
  """Raised when an inbound gateway event carries a bad signature."""

  def __init__(self, message: str = "Invalid signature"):
    super().__init__(
        message,
        code="invalid_signature",
        status_code=401,
        error_type="invalid_request",
    )


class SimulationForbidden(CheckoutError):
  """Raised when a testing endpoint is called without its secret."""

  def __init__(self, message: str = "Invalid simulation secret"):
    super().__init__(
        message,
        code="forbidden",
        status_code=403,
        error_type="invalid_request",
    )
