from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

import httpx

from tasksync.errors import AdapterError
from tasksync.models import _as_utc


def normalize_base_url(base_url: str) -> str:
  """Absolute http(s) origin plus optional path prefix, no trailing slash; bare hosts get https."""
  raw = (base_url or "").strip()
  if not raw:
    raise ValueError("remote base url is required")
  if "://" not in raw:
    raw = f"https://{raw}"
  url = httpx.URL(raw)
  if url.scheme not in ("http", "https") or not url.host:
    raise ValueError(f"unsupported remote base url: {base_url}")
  return f"{url.scheme}://{url.netloc.decode('ascii')}{url.path}".rstrip("/")


def make_client(base_url: str, *, timeout: float = 15.0, user_agent: str = "tasksync/0.1") -> httpx.AsyncClient:
  headers = {"User-Agent": user_agent, "Accept": "application/json"}
  return httpx.AsyncClient(base_url=normalize_base_url(base_url), headers=headers, timeout=timeout)


def _extract_error(payload: Any) -> str:
  if isinstance(payload, dict):
    detail = payload.get("detail")
    if isinstance(detail, str) and detail.strip():
      return detail.strip()
    if isinstance(detail, list) and detail:
      return "; ".join(str(d.get("msg") if isinstance(d, dict) else d) for d in detail)
  if isinstance(payload, str) and payload.strip():
    return payload.strip()[:500]
  return "document store request failed"


class HttpDocumentStore:
  """Client for the remote document API served by `tasksync.server`."""

  def __init__(self, collection: str, client: httpx.AsyncClient, *, owns_client: bool = False) -> None:
    self.collection = collection
    self._client = client
    self._owns_client = owns_client

  def _path(self, suffix: str = "") -> str:
    return f"/collections/{self.collection}{suffix}"

  async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
    try:
      r = await self._client.request(method, path, **kwargs)
    except httpx.HTTPError as e:
      raise AdapterError(f"{method} {path} failed: {e.__class__.__name__}") from e
    if r.status_code >= 400 and r.status_code != 404:
      try:
        payload = r.json()
      except Exception:
        payload = (r.text or "")[:800]
      raise AdapterError(_extract_error(payload), status_code=r.status_code, details={"path": path})
    return r

  async def fetch(self, doc_id: str) -> dict[str, Any] | None:
    r = await self._request("GET", self._path(f"/documents/{doc_id}"))
    if r.status_code == 404:
      return None
    return r.json()

  async def query(
    self,
    where: Mapping[str, Any] | None = None,
    *,
    order_by: str | None = None,
    descending: bool = False,
    limit: int | None = None,
  ) -> list[dict[str, Any]]:
    body = {"where": dict(where or {}), "orderBy": order_by, "descending": descending, "limit": limit}
    r = await self._request("POST", self._path("/query"), json=body)
    if r.status_code == 404:
      raise AdapterError(f"unknown collection {self.collection}", status_code=404)
    return list(r.json())

  async def create(self, data: Mapping[str, Any]) -> dict[str, Any]:
    r = await self._request("POST", self._path("/documents"), json=dict(data))
    if r.status_code == 404:
      raise AdapterError(f"unknown collection {self.collection}", status_code=404)
    return r.json()

  async def patch(self, doc_id: str, fields: Mapping[str, Any]) -> dict[str, Any]:
    r = await self._request("PATCH", self._path(f"/documents/{doc_id}"), json=dict(fields))
    if r.status_code == 404:
      raise AdapterError(f"{self.collection}/{doc_id} not found", status_code=404)
    return r.json()

  async def remove(self, doc_id: str) -> None:
    r = await self._request("DELETE", self._path(f"/documents/{doc_id}"))
    if r.status_code == 404:
      raise AdapterError(f"{self.collection}/{doc_id} not found", status_code=404)

  async def server_time(self) -> datetime:
    r = await self._request("GET", "/time")
    now = _as_utc((r.json() or {}).get("now"))
    if not isinstance(now, datetime):
      raise AdapterError("remote clock returned no timestamp")
    return now

  async def close(self) -> None:
    if self._owns_client:
      await self._client.aclose()
