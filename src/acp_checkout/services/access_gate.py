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

"""Access gate: the checks every inbound checkout call passes first.

Checks run in a fixed order: transport security, bearer credential,
network-origin allowlist, then the rate limit. Only the rate limit has a side
effect (its counter). A request that passes gets a `RequestContext`.
"""

import hashlib
import hmac
import logging
import re
from typing import Mapping, Optional
import uuid

from acp_checkout import exceptions
from acp_checkout.config import Settings
from acp_checkout.context import RateLimitStatus
from acp_checkout.context import RequestContext
from acp_checkout.services.ip_allowlist import IpAllowlist
from acp_checkout.services.rate_limiter import FixedWindowRateLimiter

logger = logging.getLogger(__name__)

_VERSION_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CLIENT_IP_HEADERS = ("cf-connecting-ip", "x-real-ip", "x-forwarded-for")


def credential_fingerprint(credential: str) -> str:
  return hashlib.sha256(credential.encode("utf-8")).hexdigest()[:16]


class AccessGate:
  """Authenticates callers and applies transport, origin and rate policies."""

  def __init__(
      self,
      settings: Settings,
      allowlist: IpAllowlist,
      rate_limiter: FixedWindowRateLimiter,
  ):
    self._settings = settings
    self._allowlist = allowlist
    self._rate_limiter = rate_limiter

  def admit(
      self,
      *,
      endpoint: str,
      method: str,
      path: str,
      scheme: str,
      headers: Mapping[str, str],
      peer_ip: Optional[str],
      mutating: bool = False,
  ) -> RequestContext:
    """Runs every check and returns the context of an admitted request.

    Args:
      endpoint: Logical endpoint name used for rate limit buckets.
      method: HTTP method.
      path: Request path.
      scheme: URL scheme the server saw ('http' or 'https').
      headers: Request headers.
      peer_ip: Address of the socket peer.
      mutating: Whether the endpoint changes state and so needs an
        `Idempotency-Key`.

    Returns:
      The request context.

    Raises:
      TransportSecurityRequired, AuthenticationFailed, OriginNotAllowed,
      RateLimited, UnsupportedApiVersion, ValidationFailed.
    """
    headers = {name.lower(): value for name, value in headers.items()}

    self._check_transport(scheme, headers)
    credential = self._check_credential(headers)
    client_ip = self.resolve_client_ip(headers, peer_ip)
    self._check_origin(client_ip)
    fingerprint = credential_fingerprint(credential)
    rate_limit = self._check_rate_limit(fingerprint, endpoint)

    api_version = self._negotiate_version(headers.get("api-version"))
    idempotency_key = headers.get("idempotency-key") or None
    if (
        mutating
        and idempotency_key is None
        and self._settings.require_idempotency_key
    ):
      raise exceptions.ValidationFailed(
          "Idempotency-Key header is required",
          param="Idempotency-Key",
          code="missing_idempotency_key",
      )
    if idempotency_key is not None and len(idempotency_key) > 255:
      raise exceptions.ValidationFailed(
          "Idempotency-Key must be at most 255 characters",
          param="Idempotency-Key",
      )

    return RequestContext(
        principal=f"{self._settings.merchant_id}:{fingerprint}",
        endpoint=endpoint,
        method=method,
        path=path,
        trace_id=headers.get("request-id") or str(uuid.uuid4()),
        api_version=api_version,
        idempotency_key=idempotency_key,
        client_ip=client_ip,
        rate_limit=rate_limit,
    )

  def resolve_client_ip(
      self, headers: Mapping[str, str], peer_ip: Optional[str]
  ) -> Optional[str]:
    if self._settings.trust_forwarded_headers:
      for name in _CLIENT_IP_HEADERS:
        value = headers.get(name)
        if value:
          return value.split(",")[0].strip()
    return peer_ip

  def _check_transport(self, scheme: str, headers: Mapping[str, str]) -> None:
    if self._settings.test_mode or self._settings.allow_insecure_transport:
      return
    if scheme == "https":
      return
    if (
        self._settings.trust_forwarded_headers
        and headers.get("x-forwarded-proto", "").lower() == "https"
    ):
      return
    raise exceptions.TransportSecurityRequired()

  def _check_credential(self, headers: Mapping[str, str]) -> str:
    authorization = headers.get("authorization", "")
    scheme, _, credential = authorization.partition(" ")
    credential = credential.strip()
    if scheme.lower() != "bearer" or not credential:
      raise exceptions.AuthenticationFailed()
    if not hmac.compare_digest(
        credential.encode("utf-8"), self._settings.api_key.encode("utf-8")
    ):
      logger.warning("Rejected request with an invalid API key")
      raise exceptions.AuthenticationFailed()
    return credential

  def _check_origin(self, client_ip: Optional[str]) -> None:
    if not self._settings.ip_allowlist_enabled:
      return
    fail_open = self._settings.test_mode
    if not self._allowlist.allows(client_ip, fail_open=fail_open):
      logger.warning("Rejected request from %s: not in allowlist", client_ip)
      raise exceptions.OriginNotAllowed()

  def _check_rate_limit(
      self, fingerprint: str, endpoint: str
  ) -> RateLimitStatus:
    decision = self._rate_limiter.hit(
        f"{fingerprint}:{endpoint}", self._settings.rate_limit_for(endpoint)
    )
    if not decision.allowed:
      raise exceptions.RateLimited(
          retry_after=decision.retry_after,
          limit=decision.limit,
          reset_at=decision.reset_at,
      )
    return RateLimitStatus(
        limit=decision.limit,
        remaining=decision.remaining,
        reset_at=decision.reset_at,
    )

  def _negotiate_version(self, requested: Optional[str]) -> str:
    supported = self._settings.api_version
    if not requested:
      return supported
    requested = requested.strip()
    if not _VERSION_PATTERN.match(requested):
      raise exceptions.UnsupportedApiVersion(
          f"Malformed API version {requested!r}"
      )
    if requested > supported:
      raise exceptions.UnsupportedApiVersion(
          f"Version {requested} is not supported. This merchant implements"
          f" version {supported}."
      )
    return requested
