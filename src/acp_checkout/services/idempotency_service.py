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

"""Idempotency ledger for mutating checkout calls.

`execute_once` guarantees at most one execution of an operation per
(endpoint scope, idempotency key). The key is claimed by inserting a
`processing` record in its own committed transaction before the operation
runs; the primary key makes the claim atomic across concurrent requests. A
racing duplicate is rejected with `IdempotencyInProgress` rather than waiting.

The exact response text of the first execution is stored and replayed, so a
retried call gets a byte-identical body. Errors that describe a final outcome
(validation, decline, state conflict) are stored and replayed like successes;
retryable errors release the key so the caller can try again.
"""

import dataclasses
import hashlib
import json
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import IntegrityError

from acp_checkout import db
from acp_checkout import exceptions
from acp_checkout.enums import IdempotencyState

logger = logging.getLogger(__name__)


def canonical_json(data: Any) -> str:
  """Serializes `data` deterministically: sorted keys, no whitespace."""
  return json.dumps(
      data, sort_keys=True, separators=(",", ":"), ensure_ascii=False
  )


def request_fingerprint(params: Any, body: Any) -> str:
  """Hashes the normalized path parameters and body of a request."""
  payload = canonical_json({"params": params, "body": body})
  return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclasses.dataclass(frozen=True)
class StoredResponse:
  status_code: int
  body: str
  replayed: bool = False

  @classmethod
  def from_payload(cls, status_code: int, payload: Any) -> "StoredResponse":
    return cls(
        status_code=status_code,
        body=json.dumps(payload, separators=(",", ":"), ensure_ascii=False),
    )

  @classmethod
  def from_error(cls, exc: exceptions.CheckoutError) -> "StoredResponse":
    return cls.from_payload(exc.status_code, exc.to_dict())


Operation = Callable[[], Awaitable[StoredResponse]]


class IdempotencyLedger:
  """Deduplicates mutating calls by client supplied key."""

  def __init__(
      self,
      database: db.DatabaseManager,
      ttl_seconds: int = 86400,
      clock: Callable[[], float] = time.time,
  ):
    self._db = database
    self._ttl = ttl_seconds
    self._clock = clock

  async def execute_once(
      self,
      scope: str,
      key: Optional[str],
      fingerprint: str,
      operation: Operation,
  ) -> StoredResponse:
    """Runs `operation` at most once per (scope, key).

    Args:
      scope: Logical endpoint the key is scoped to.
      key: The client's idempotency key. Without one the operation runs
        without deduplication.
      fingerprint: Hash of the normalized request, see
        `request_fingerprint`.
      operation: Produces the response to store.

    Returns:
      The stored response of the first execution.

    Raises:
      IdempotencyConflict: The key was used with a different request.
      IdempotencyInProgress: The first request with this key is still running.
    """
    if not key:
      try:
        return await operation()
      except exceptions.CheckoutError as e:
        if e.retryable:
          raise
        return StoredResponse.from_error(e)

    existing = await self._claim(scope, key, fingerprint)
    if existing is not None:
      return self._replay(existing, fingerprint)

    try:
      stored = await operation()
    except exceptions.CheckoutError as e:
      if e.retryable:
        await self._release(scope, key)
        raise
      stored = StoredResponse.from_error(e)
    except Exception:
      await self._release(scope, key)
      raise

    await self._finalize(scope, key, stored)
    return stored

  async def purge_expired(self) -> int:
    """Deletes records older than the retention window."""
    cutoff = int(self._clock()) - self._ttl
    async with self._db.session_factory() as session:
      async with session.begin():
        return await db.purge_idempotency_records(session, cutoff)

  async def _claim(
      self, scope: str, key: str, fingerprint: str
  ) -> Optional[db.IdempotencyRecord]:
    """Inserts a processing record; returns the existing record on a clash."""
    now = int(self._clock())
    async with self._db.session_factory() as session:
      try:
        async with session.begin():
          # An expired record no longer holds the key.
          await db.delete_idempotency_record(
              session, scope, key, created_before=now - self._ttl
          )
          session.add(
              db.IdempotencyRecord(
                  scope=scope,
                  key=key,
                  request_fingerprint=fingerprint,
                  state=IdempotencyState.PROCESSING.value,
                  created_at=now,
              )
          )
        return None
      except IntegrityError:
        logger.info("Idempotency key %s already claimed for %s", key, scope)

    async with self._db.session_factory() as session:
      record = await db.get_idempotency_record(session, scope, key)
    if record is None:
      # Released by a failed first attempt between our insert and this read.
      raise exceptions.IdempotencyInProgress()
    return record

  def _replay(
      self, record: db.IdempotencyRecord, fingerprint: str
  ) -> StoredResponse:
    if record.request_fingerprint != fingerprint:
      raise exceptions.IdempotencyConflict()
    if record.state != IdempotencyState.COMPLETED.value:
      raise exceptions.IdempotencyInProgress()
    logger.info("Replaying stored response for key %s", record.key)
    return StoredResponse(
        status_code=record.response_status,
        body=record.response_body,
        replayed=True,
    )

  async def _finalize(
      self, scope: str, key: str, stored: StoredResponse
  ) -> None:
    async with self._db.session_factory() as session:
      async with session.begin():
        await db.complete_idempotency_record(
            session, scope, key, stored.status_code, stored.body
        )

  async def _release(self, scope: str, key: str) -> None:
    async with self._db.session_factory() as session:
      async with session.begin():
        await db.delete_idempotency_record(session, scope, key)
