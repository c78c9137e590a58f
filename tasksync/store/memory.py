from __future__ import annotations

import copy
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from tasksync.errors import AdapterError
from tasksync.models import new_id, utcnow
from tasksync.store.base import SERVER_FIELDS, iso, matches_where, order_documents


class ServerClock:
  """UTC clock that never repeats or goes backwards, so updatedAt ordering is strict."""

  def __init__(self) -> None:
    self._last: datetime | None = None

  def now(self) -> datetime:
    now = utcnow()
    if self._last is not None and now <= self._last:
      now = self._last + timedelta(microseconds=1)
    self._last = now
    return now


class MemoryDocumentStore:
  """
  In-process document store for one collection.

  Documents are deep-copied on the way in and out so callers can never alias
  stored state.
  """

  def __init__(self, collection: str, *, clock: ServerClock | None = None) -> None:
    self.collection = collection
    self._clock = clock or ServerClock()
    self._docs: dict[str, dict[str, Any]] = {}

  async def fetch(self, doc_id: str) -> dict[str, Any] | None:
    doc = self._docs.get(doc_id)
    return copy.deepcopy(doc) if doc is not None else None

  async def query(
    self,
    where: Mapping[str, Any] | None = None,
    *,
    order_by: str | None = None,
    descending: bool = False,
    limit: int | None = None,
  ) -> list[dict[str, Any]]:
    docs = [d for d in self._docs.values() if matches_where(d, where)]
    out = order_documents(docs, order_by=order_by, descending=descending, limit=limit)
    return copy.deepcopy(out)

  async def create(self, data: Mapping[str, Any]) -> dict[str, Any]:
    now = iso(self._clock.now())
    doc = {k: copy.deepcopy(v) for k, v in data.items() if k not in SERVER_FIELDS}
    doc["id"] = new_id()
    doc["createdAt"] = now
    doc["updatedAt"] = now
    self._docs[doc["id"]] = doc
    return copy.deepcopy(doc)

  async def patch(self, doc_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
    doc = self._docs.get(doc_id)
    if doc is None:
      raise AdapterError(f"{self.collection}/{doc_id} not found", status_code=404)
    for k, v in fields.items():
      if k in SERVER_FIELDS:
        continue
      doc[k] = copy.deepcopy(v)
    doc["updatedAt"] = iso(self._clock.now())
    return copy.deepcopy(doc)

  async def remove(self, doc_id: str) -> None:
    if self._docs.pop(doc_id, None) is None:
      raise AdapterError(f"{self.collection}/{doc_id} not found", status_code=404)

  async def server_time(self) -> datetime:
    return self._clock.now()

  async def close(self) -> None:
    return

  def __len__(self) -> int:
    return len(self._docs)
