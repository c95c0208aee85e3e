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

"""Tests for the published IP range allowlist."""

import asyncio
import ipaddress

from absl.testing import absltest
import httpx

from acp_checkout import testing_utils
from acp_checkout.services.ip_allowlist import IpAllowlist
from acp_checkout.services.ip_allowlist import parse_ranges

_FEED = {
    "creationTime": "2025-09-29T00:00:00Z",
    "prefixes": [
        {"ipv4Prefix": "192.0.2.0/24"},
        {"ipv6Prefix": "2001:db8::/32"},
        {"ipv4Prefix": "not-a-range"},
    ],
}


class ParseRangesTest(absltest.TestCase):

  def test_parses_both_families_and_skips_garbage(self):
    self.assertEqual(
        parse_ranges(_FEED),
        [
            ipaddress.ip_network("192.0.2.0/24"),
            ipaddress.ip_network("2001:db8::/32"),
        ],
    )

  def test_empty_document(self):
    self.assertEmpty(parse_ranges({}))


class IpAllowlistTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.clock = testing_utils.FakeClock()
    self.response = httpx.Response(200, json=_FEED)

  def _allowlist(self, static_ranges=()):
    return IpAllowlist(
        "https://platform.example/ranges.json",
        static_ranges=static_ranges,
        max_age_seconds=7200,
        clock=self.clock,
        transport=httpx.MockTransport(lambda request: self.response),
    )

  def test_refresh_loads_published_ranges(self):
    allowlist = self._allowlist()
    self.assertTrue(asyncio.run(allowlist.refresh()))
    self.assertTrue(allowlist.is_fresh())
    self.assertTrue(allowlist.allows("192.0.2.7", fail_open=False))
    self.assertTrue(allowlist.allows("2001:db8::1", fail_open=False))
    self.assertFalse(allowlist.allows("198.51.100.1", fail_open=False))
    self.assertFalse(allowlist.allows("garbage", fail_open=False))
    self.assertFalse(allowlist.allows(None, fail_open=False))

  def test_failed_refresh_keeps_previous_set(self):
    allowlist = self._allowlist()
    asyncio.run(allowlist.refresh())
    fetched_at = allowlist.fetched_at

    self.clock.advance(100)
    self.response = httpx.Response(503)
    self.assertFalse(asyncio.run(allowlist.refresh()))
    self.response = httpx.Response(200, json={"prefixes": []})
    self.assertFalse(asyncio.run(allowlist.refresh()))

    self.assertEqual(allowlist.fetched_at, fetched_at)
    self.assertTrue(allowlist.allows("192.0.2.7", fail_open=False))

  def test_stale_set_fails_closed_but_keeps_static_ranges(self):
    allowlist = self._allowlist(static_ranges=["203.0.113.0/24"])
    asyncio.run(allowlist.refresh())
    self.clock.advance(7201)
    self.assertFalse(allowlist.is_fresh())
    self.assertFalse(allowlist.allows("192.0.2.7", fail_open=False))
    self.assertTrue(allowlist.allows("203.0.113.9", fail_open=False))

  def test_stale_set_fails_open_when_asked(self):
    allowlist = self._allowlist()
    self.assertTrue(allowlist.allows("198.51.100.1", fail_open=True))
    self.assertFalse(allowlist.allows("198.51.100.1", fail_open=False))


if __name__ == "__main__":
  absltest.main()
