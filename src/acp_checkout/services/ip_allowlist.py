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

"""Network-origin allowlist built from the agent platform's published ranges.

The published range set is fetched by a background job (see `scheduler.py`);
requests only ever read the last good set. A failed refresh keeps the previous
set, and statically configured ranges are always honoured.
"""

import ipaddress
import logging
import time
from typing import Callable, Iterable, List, Optional, Union

import httpx

logger = logging.getLogger(__name__)

IpNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


def parse_ranges(document: dict) -> List[IpNetwork]:
  """Extracts CIDR ranges from a `{"prefixes": [{"ipv4Prefix": ...}]}` feed."""
  networks = []
  for prefix in document.get("prefixes", []):
    for field in ("ipv4Prefix", "ipv6Prefix"):
      cidr = prefix.get(field)
      if not cidr:
        continue
      try:
        networks.append(ipaddress.ip_network(cidr, strict=False))
      except ValueError:
        logger.warning("Ignoring malformed published range %r", cidr)
  return networks


class IpAllowlist:
  """Holds the current allowlist and decides whether an address may call."""

  def __init__(
      self,
      source_url: str,
      static_ranges: Iterable[str] = (),
      max_age_seconds: int = 7200,
      clock: Callable[[], float] = time.time,
      transport: Optional[httpx.AsyncBaseTransport] = None,
  ):
    self._source_url = source_url
    self._static = [
        ipaddress.ip_network(cidr, strict=False) for cidr in static_ranges
    ]
    self._max_age = max_age_seconds
    self._clock = clock
    self._transport = transport
    self._published: List[IpNetwork] = []
    self._fetched_at: Optional[float] = None

  @property
  def fetched_at(self) -> Optional[float]:
    return self._fetched_at

  def is_fresh(self) -> bool:
    return (
        bool(self._published)
        and self._fetched_at is not None
        and self._clock() - self._fetched_at <= self._max_age
    )

  def set_published(self, networks: List[IpNetwork]) -> None:
    self._published = list(networks)
    self._fetched_at = self._clock()

  async def refresh(self) -> bool:
    """Fetches the published ranges, keeping the old set on failure."""
    try:
      async with httpx.AsyncClient(
          transport=self._transport, timeout=10.0
      ) as client:
        response = await client.get(self._source_url)
        response.raise_for_status()
        networks = parse_ranges(response.json())
    except (httpx.HTTPError, ValueError) as e:
      logger.error(
          "Failed to refresh IP ranges from %s: %s", self._source_url, e
      )
      return False

    if not networks:
      logger.warning("Published IP range feed at %s is empty", self._source_url)
      return False

    self.set_published(networks)
    logger.info("Loaded %d published IP ranges", len(networks))
    return True

  def allows(self, client_ip: Optional[str], fail_open: bool) -> bool:
    """Decides whether `client_ip` may call.

    Args:
      client_ip: The resolved caller address.
      fail_open: Whether to admit callers when the published set is stale or
        empty. Only test mode fails open.

    Returns:
      True if the caller is admitted.
    """
    networks = list(self._static)
    if self.is_fresh():
      networks.extend(self._published)
    elif fail_open:
      return True
    elif not networks:
      logger.warning("IP allowlist is stale or empty; rejecting request")
      return False

    if not client_ip:
      return False
    try:
      address = ipaddress.ip_address(client_ip)
    except ValueError:
      return False
    return any(
        address.version == network.version and address in network
        for network in networks
    )
