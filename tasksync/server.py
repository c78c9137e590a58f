from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from fastapi import APIRouter, Body, FastAPI, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from tasksync import __version__
from tasksync.errors import AdapterError
from tasksync.store.base import DocumentStore, iso

logger = logging.getLogger(__name__)


class QueryIn(BaseModel):
  where: dict[str, Any] = Field(default_factory=dict)
  orderBy: str | None = None
  descending: bool = False
  limit: int | None = Field(default=None, ge=0)


def create_app(stores: Mapping[str, DocumentStore]) -> FastAPI:
  """
  Serve a set of document stores over HTTP, one collection per store.

  No business validation happens here; this is the opaque remote store the
  HTTP document store client talks to.
  """
  app = FastAPI(title="tasksync document API", version=__version__)
  router = APIRouter(prefix="/collections", tags=["documents"])

  def _store(name: str) -> DocumentStore:
    s = stores.get(name)
    if s is None:
      raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Collection not found")
    return s

  @app.exception_handler(AdapterError)
  async def _adapter_error_handler(_, exc: AdapterError) -> JSONResponse:
    code = exc.status_code if exc.status_code == 404 else status.HTTP_502_BAD_GATEWAY
    if code != 404:
      logger.warning("document store error: %s", exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})

  @app.get("/time")
  async def server_time() -> dict:
    any_store = next(iter(stores.values()), None)
    if any_store is None:
      raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="No collections configured")
    return {"now": iso(await any_store.server_time())}

  @router.get("/{name}/documents/{doc_id}")
  async def fetch_document(name: str, doc_id: str) -> dict:
    doc = await _store(name).fetch(doc_id)
    if doc is None:
      raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    return doc

  @router.post("/{name}/query")
  async def query_documents(name: str, payload: QueryIn) -> list[dict]:
    return await _store(name).query(
      payload.where,
      order_by=payload.orderBy,
      descending=payload.descending,
      limit=payload.limit,
    )

  @router.post("/{name}/documents")
  async def create_document(name: str, payload: dict[str, Any] = Body(...)) -> dict:
    return await _store(name).create(payload)

  @router.patch("/{name}/documents/{doc_id}")
  async def patch_document(name: str, doc_id: str, payload: dict[str, Any] = Body(...)) -> dict:
    return await _store(name).patch(doc_id, payload)

  @router.delete("/{name}/documents/{doc_id}")
  async def delete_document(name: str, doc_id: str) -> dict:
    await _store(name).remove(doc_id)
    return {"ok": True}

  app.include_router(router)
  return app
