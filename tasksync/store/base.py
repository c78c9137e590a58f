from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol

# Fields a store owns; client-supplied values are ignored.
SERVER_FIELDS = ("id", "createdAt", "updatedAt")


class DocumentStore(Protocol):
  """
  Narrow CRUD + query facade over one collection of a remote document store.

  Documents are JSON-compatible dicts. The store assigns `id`, `createdAt` and
  `updatedAt` (ISO-8601 UTC strings); `patch` always bumps `updatedAt`.
  Every failure surfaces as `AdapterError`.
  """

  collection: str

  async def fetch(self, doc_id: str) -> dict[str, Any] | None: ...

  async def query(
    self,
    where: Mapping[str, Any] | None = None,
    *,
    order_by: str | None = None,
    descending: bool = False,
    limit: int | None = None,
  ) -> list[dict[str, Any]]: ...

  async def create(self, data: Mapping[str, Any]) -> dict[str, Any]: ...

  async def patch(self, doc_id: str, fields: Mapping[str, Any]) -> dict[str, Any]: ...

  async def remove(self, doc_id: str) -> None: ...

  async def server_time(self) -> datetime: ...

  async def close(self) -> None: ...


def matches_where(doc: Mapping[str, Any], where: Mapping[str, Any] | None) -> bool:
  """Equality per field; a list/tuple constraint means membership."""
  if not where:
    return True
  for key, expected in where.items():
    actual = doc.get(key)
    if isinstance(expected, (list, tuple, set, frozenset)):
      if actual not in expected:
        return False
    elif actual != expected:
      return False
  return True


def order_documents(
  docs: list[dict[str, Any]],
  *,
  order_by: str | None,
  descending: bool,
  limit: int | None,
) -> list[dict[str, Any]]:
  out = sorted(docs, key=lambda d: str(d.get("id") or ""))
  if order_by:
    present = [d for d in out if d.get(order_by) is not None]
    missing = [d for d in out if d.get(order_by) is None]
    present.sort(key=lambda d: d[order_by], reverse=descending)
    out = present + missing
  if limit is not None:
    out = out[: max(0, int(limit))]
  return out


def iso(dt: datetime) -> str:
  return dt.isoformat(timespec="microseconds")
