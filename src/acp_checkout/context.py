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

"""Per-request context passed through every service call."""

import dataclasses
from typing import Optional


@dataclasses.dataclass(frozen=True)
class RateLimitStatus:
  limit: int
  remaining: int
  reset_at: int

  def headers(self) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(self.limit),
        "X-RateLimit-Remaining": str(self.remaining),
        "X-RateLimit-Reset": str(self.reset_at),
    }


@dataclasses.dataclass(frozen=True)
class RequestContext:
  """What the access gate learned about the caller.

  Attributes:
    principal: Identifier of the authenticated caller (merchant credential
      fingerprint).
    endpoint: Logical endpoint name, e.g. 'create' or 'complete'.
    method: HTTP method of the request.
    path: Request path, used for request logging.
    trace_id: Caller supplied `Request-Id` or a generated identifier.
    api_version: Negotiated protocol version.
    idempotency_key: The `Idempotency-Key` header, if any.
    client_ip: Resolved client address.
    rate_limit: Counter state after this request was admitted.
  """

  principal: str
  endpoint: str
  method: str
  path: str
  trace_id: str
  api_version: str
  idempotency_key: Optional[str] = None
  client_ip: Optional[str] = None
  rate_limit: Optional[RateLimitStatus] = None

  def response_headers(self) -> dict[str, str]:
    headers = {"Request-Id": self.trace_id, "API-Version": self.api_version}
    if self.rate_limit:
      headers.update(self.rate_limit.headers())
    if self.idempotency_key:
      headers["Idempotency-Key"] = self.idempotency_key
    return headers
