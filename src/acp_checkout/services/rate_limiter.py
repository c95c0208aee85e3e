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

"""Fixed-window request counters for the access gate."""

import dataclasses
import math
import threading
import time
from typing import Callable, Dict, Tuple

# Counter maps larger than this are pruned of windows that already ended.
_PRUNE_THRESHOLD = 10000


@dataclasses.dataclass(frozen=True)
class RateLimitDecision:
  allowed: bool
  limit: int
  remaining: int
  reset_at: int
  retry_after: int


class FixedWindowRateLimiter:
  """Counts requests per bucket in fixed windows aligned to the epoch."""

  def __init__(
      self,
      window_seconds: int = 60,
      clock: Callable[[], float] = time.time,
  ):
    self._window = window_seconds
    self._clock = clock
    self._counters: Dict[str, Tuple[int, int]] = {}
    self._lock = threading.Lock()

  def hit(self, bucket: str, limit: int) -> RateLimitDecision:
    """Counts one request against `bucket` and reports whether it fits."""
    now = self._clock()
    window_start = int(now // self._window) * self._window
    reset_at = window_start + self._window

    with self._lock:
      start, count = self._counters.get(bucket, (window_start, 0))
      if start != window_start:
        count = 0
      if count >= limit:
        return RateLimitDecision(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_at=reset_at,
            retry_after=max(1, math.ceil(reset_at - now)),
        )
      count += 1
      self._counters[bucket] = (window_start, count)
      if len(self._counters) > _PRUNE_THRESHOLD:
        self._prune(window_start)

    return RateLimitDecision(
        allowed=True,
        limit=limit,
        remaining=limit - count,
        reset_at=reset_at,
        retry_after=0,
    )

  def _prune(self, current_window: int) -> None:
    stale = [
        bucket
        for bucket, (start, _) in self._counters.items()
        if start != current_window
    ]
    for bucket in stale:
      del self._counters[bucket]
