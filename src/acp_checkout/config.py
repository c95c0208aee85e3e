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

"""Configuration for the checkout server.

Command line flags are read exactly once, by `settings_from_flags`, and turned
into an immutable `Settings` object that is passed to every component. Nothing
else in the server reads flags.
"""

from typing import Dict, List, Optional
import uuid

from absl import flags
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

FLAGS = flags.FLAGS

DEFAULT_API_VERSION = "2025-09-29"
DEFAULT_IP_RANGES_URL = "https://openai.com/chatgpt-connectors.json"

# Define flags only if they haven't been defined yet (to avoid duplicates
# during tests or re-imports)
try:
  flags.DEFINE_string("database_path", None, "Path to the SQLite database")
  flags.DEFINE_integer("port", None, "Port to run the server on")
  flags.DEFINE_string("host", "0.0.0.0", "Interface to bind the server to")
  flags.DEFINE_string(
      "api_key", None, "Bearer credential issued to the agent platform"
  )
  flags.DEFINE_string("merchant_id", "merchant", "Merchant identifier")
  flags.DEFINE_bool(
      "test_mode",
      False,
      "Relaxes transport checks, fails the allowlist open and uses the mock"
      " payment gateway",
  )
  flags.DEFINE_bool(
      "allow_insecure_transport", False, "Accept plain HTTP outside test mode"
  )
  flags.DEFINE_bool(
      "ip_allowlist", False, "Only accept requests from published IP ranges"
  )
  flags.DEFINE_string(
      "ip_ranges_url", DEFAULT_IP_RANGES_URL, "Published agent IP ranges"
  )
  flags.DEFINE_list("static_ip_ranges", [], "Additional allowed CIDR ranges")
  flags.DEFINE_enum(
      "payment_gateway", "mock", ["mock", "http"], "Payment gateway client"
  )
  flags.DEFINE_string(
      "gateway_base_url", "https://api.stripe.com", "Payment gateway base URL"
  )
  flags.DEFINE_string("gateway_api_key", None, "Payment gateway secret key")
  flags.DEFINE_integer(
      "gateway_retry_attempts",
      3,
      "Gateway calls per payment attempt before reporting an outage",
  )
  flags.DEFINE_string(
      "gateway_webhook_secret", None, "Secret for inbound gateway events"
  )
  flags.DEFINE_string(
      "default_payment_method",
      None,
      "Payment method the gateway integration sends when no delegated token"
      " is present",
  )
  flags.DEFINE_string("webhook_url", None, "Agent platform webhook endpoint")
  flags.DEFINE_string("webhook_secret", None, "Webhook signing secret")
  flags.DEFINE_string(
      "order_permalink_base",
      "https://merchant.example/orders",
      "Base URL of buyer-facing order pages",
  )
  flags.DEFINE_string(
      "simulation_secret",
      str(uuid.uuid4()),
      "Secret key for simulation endpoints",
  )
  flags.DEFINE_integer(
      "session_ttl_seconds", 86400, "Absolute lifetime of a checkout session"
  )
  flags.DEFINE_integer(
      "abandoned_session_seconds",
      7200,
      "Inactivity after which an open session is considered abandoned",
  )
except flags.DuplicateFlagError:
  pass


class RateLimits(BaseModel):
  """Requests allowed per window, per credential and endpoint."""

  model_config = ConfigDict(frozen=True)

  create: int = 100
  retrieve: int = 200
  update: int = 100
  complete: int = 50
  cancel: int = 50
  default: int = 100

  def for_endpoint(self, endpoint: str) -> int:
    return getattr(self, endpoint, self.default)


class Settings(BaseModel):
  """Typed server configuration, loaded once at startup."""

  model_config = ConfigDict(frozen=True)

  database_path: str
  api_key: str = Field(min_length=1)
  merchant_id: str = "merchant"
  currency: str = "usd"
  api_version: str = DEFAULT_API_VERSION

  test_mode: bool = False
  allow_insecure_transport: bool = False
  trust_forwarded_headers: bool = True

  ip_allowlist_enabled: bool = False
  ip_ranges_url: str = DEFAULT_IP_RANGES_URL
  ip_ranges_max_age_seconds: int = 7200
  ip_ranges_refresh_seconds: int = 3600
  static_ip_ranges: List[str] = Field(default_factory=list)

  rate_limit_window_seconds: int = 60
  rate_limits: RateLimits = Field(default_factory=RateLimits)

  require_idempotency_key: bool = True
  idempotency_ttl_seconds: int = 86400

  session_ttl_seconds: int = 86400
  abandoned_session_seconds: int = 7200
  sweep_interval_seconds: int = 900
  sweep_batch_size: int = 100
  completion_claim_timeout_seconds: int = 120

  payment_gateway: str = "mock"
  gateway_base_url: str = "https://api.stripe.com"
  gateway_api_key: Optional[str] = None
  gateway_timeout_seconds: float = 30.0
  gateway_retry_attempts: int = 3
  gateway_retry_delay_seconds: float = 0.5
  gateway_webhook_secret: Optional[str] = None
  gateway_webhook_tolerance_seconds: int = 300
  default_payment_method: Optional[str] = None

  order_materialization_attempts: int = 3
  order_materialization_retry_delay_seconds: float = 0.2

  webhook_url: Optional[str] = None
  webhook_secret: Optional[str] = None
  webhook_timeout_seconds: float = 15.0
  webhook_max_attempts: int = 5
  webhook_backoff_base_seconds: int = 5
  webhook_backoff_max_seconds: int = 600
  webhook_poll_seconds: int = 5
  webhook_batch_size: int = 50

  order_permalink_base: str = "https://merchant.example/orders"
  simulation_secret: Optional[str] = None
  background_workers: bool = True

  def rate_limit_for(self, endpoint: str) -> int:
    return self.rate_limits.for_endpoint(endpoint)


def settings_from_flags(
    overrides: Optional[Dict[str, object]] = None,
) -> Settings:
  """Builds the server settings from parsed command line flags."""
  values = {
      "database_path": FLAGS.database_path,
      "api_key": FLAGS.api_key,
      "merchant_id": FLAGS.merchant_id,
      "test_mode": FLAGS.test_mode,
      "allow_insecure_transport": FLAGS.allow_insecure_transport,
      "ip_allowlist_enabled": FLAGS.ip_allowlist,
      "ip_ranges_url": FLAGS.ip_ranges_url,
      "static_ip_ranges": FLAGS.static_ip_ranges,
      "payment_gateway": FLAGS.payment_gateway,
      "gateway_base_url": FLAGS.gateway_base_url,
      "gateway_api_key": FLAGS.gateway_api_key,
      "gateway_retry_attempts": FLAGS.gateway_retry_attempts,
      "gateway_webhook_secret": FLAGS.gateway_webhook_secret,
      "default_payment_method": FLAGS.default_payment_method,
      "webhook_url": FLAGS.webhook_url,
      "webhook_secret": FLAGS.webhook_secret,
      "order_permalink_base": FLAGS.order_permalink_base,
      "simulation_secret": FLAGS.simulation_secret,
      "session_ttl_seconds": FLAGS.session_ttl_seconds,
      "abandoned_session_seconds": FLAGS.abandoned_session_seconds,
  }
  values.update(overrides or {})
  return Settings(**values)
