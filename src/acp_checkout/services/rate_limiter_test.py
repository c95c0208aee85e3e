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

"""Tests for the fixed-window rate limiter."""

from absl.testing import absltest

from acp_checkout import testing_utils
from acp_checkout.services.rate_limiter import FixedWindowRateLimiter


class FixedWindowRateLimiterTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    # Start 10 seconds into a 60 second window.
    self.clock = testing_utils.FakeClock(now=6000 + 10)
    self.limiter = FixedWindowRateLimiter(60, clock=self.clock)

  def test_counts_down_then_rejects(self):
    decisions = [self.limiter.hit("key:create", 3) for _ in range(4)]
    self.assertEqual([d.allowed for d in decisions], [True, True, True, False])
    self.assertEqual([d.remaining for d in decisions], [2, 1, 0, 0])
    self.assertEqual(decisions[-1].reset_at, 6060)
    self.assertEqual(decisions[-1].retry_after, 50)

  def test_new_window_resets_the_count(self):
    for _ in range(3):
      self.limiter.hit("key:create", 3)
    self.clock.advance(50)
    decision = self.limiter.hit("key:create", 3)
    self.assertTrue(decision.allowed)
    self.assertEqual(decision.remaining, 2)

  def test_buckets_are_independent(self):
    self.limiter.hit("key:create", 1)
    self.assertFalse(self.limiter.hit("key:create", 1).allowed)
    self.assertTrue(self.limiter.hit("key:update", 1).allowed)
    self.assertTrue(self.limiter.hit("other:create", 1).allowed)


if __name__ == "__main__":
  absltest.main()
