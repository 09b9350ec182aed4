from __future__ import annotations

"""
HTTP surface for draft auto-save.

Design intent:
- Keep route handlers thin; the gateway owns validation of content, ownership
  and the version check.
- Translate domain errors into ``{error}`` bodies and status codes here only.
- Let tests and embedders swap the store, gateway and identity resolver
  through ``app.state``.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from hativon.drafts.authorization import Caller
from hativon.drafts.errors import (
    AuthorizationError,
    AutosaveError,
    DraftConflictError,
    DraftNotFoundError,
    PayloadValidationError,
)
from hativon.drafts.gateway import PersistenceGateway, draft_detail_of
from hativon.internal_core.config import AutosaveConfig, load_config, project_root
from hativon.internal_core.contracts import (
    AutosavePayload,
    ConflictResponse,
    DraftDetailResponse,
    ErrorResponse,
    SaveSuccessResponse,
)
from hativon.internal_core.draft_store import DraftStore, InMemoryDraftStore, SqliteDraftStore

app = FastAPI(title="hativon backend service")
logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"
USER_NAME_HEADER = "X-User-Name"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_config() -> AutosaveConfig:
    existing = getattr(app.state, "autosave_config", None)
    if isinstance(existing, AutosaveConfig):
        return existing
    created = load_config()
    logging.getLogger("hativon").setLevel(created.HATIVON_LOG_LEVEL.upper())
    setattr(app.state, "autosave_config", created)
    return created


def _get_draft_store() -> DraftStore:
    existing = getattr(app.state, "draft_store", None)
    if isinstance(existing, DraftStore):
        return existing
    config = _get_config()
    if config.HATIVON_DRAFT_STORE == "sqlite":
        created: DraftStore = SqliteDraftStore(config.sqlite_path(project_root()))
    else:
        created = InMemoryDraftStore()
    setattr(app.state, "draft_store", created)
    return created


def _get_gateway() -> PersistenceGateway:
    existing = getattr(app.state, "persistence_gateway", None)
    if isinstance(existing, PersistenceGateway):
        return existing
    created = PersistenceGateway.from_config(_get_draft_store(), _get_config())
    setattr(app.state, "persistence_gateway", created)
    return created


def _caller_from_headers(request: Request) -> Optional[Caller]:
    user_id = str(request.headers.get(USER_ID_HEADER, "") or "").strip()
    if not user_id:
        return None
    display_name = str(request.headers.get(USER_NAME_HEADER, "") or "").strip()
    return Caller(user_id=user_id, display_name=display_name)


def _resolve_caller(request: Request) -> Caller:
    resolver = getattr(app.state, "identity_resolver", None)
    caller = resolver(request) if callable(resolver) else _caller_from_headers(request)
    if caller is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return caller


def _http_error_for(exc: AutosaveError) -> HTTPException:
    if isinstance(exc, PayloadValidationError):
        return HTTPException(
            status_code=400,
            detail=ErrorResponse(error=exc.message, errors=exc.errors).model_dump(),
        )
    if isinstance(exc, AuthorizationError):
        return HTTPException(status_code=exc.status_code, detail=exc.message)
    if isinstance(exc, DraftNotFoundError):
        return HTTPException(status_code=404, detail="Draft not found")
    return HTTPException(status_code=exc.status_code, detail=exc.message)


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    _ = request
    detail: Any = exc.detail
    content = detail if isinstance(detail, dict) else {"error": str(detail)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    _ = request
    errors: dict[str, str] = {}
    for issue in exc.errors():
        loc = [str(part) for part in issue.get("loc", ()) if part != "body"]
        errors[".".join(loc) or "body"] = str(issue.get("msg", "invalid"))
    body = ErrorResponse(error="Invalid auto-save data", errors=errors)
    return JSONResponse(status_code=400, content=body.model_dump())


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post(
    "/api/user/posts/autosave",
    response_model=SaveSuccessResponse,
    responses={409: {"model": ConflictResponse}, 400: {"model": ErrorResponse}},
)
async def autosave_draft(payload: AutosavePayload, request: Request) -> Any:
    caller = _resolve_caller(request)
    gateway = _get_gateway()
    try:
        result = gateway.save(
            caller=caller,
            draft_id=payload.draft_id,
            fields=payload.supplied_fields(),
            expected_version=payload.expected_version,
        )
    except DraftConflictError as exc:
        return JSONResponse(
            status_code=409,
            content=exc.to_response().model_dump(by_alias=True, exclude_none=True),
        )
    except AutosaveError as exc:
        raise _http_error_for(exc) from exc
    except Exception as exc:
        logger.exception("Auto-save failed draft_id=%s", payload.draft_id)
        raise HTTPException(status_code=500, detail="Auto-save failed") from exc
    return result.to_response()


@app.get("/api/user/posts/{draft_id}", response_model=DraftDetailResponse)
async def get_draft(draft_id: str, request: Request) -> DraftDetailResponse:
    caller = _resolve_caller(request)
    normalized_id = str(draft_id or "").strip()
    if not normalized_id:
        raise HTTPException(status_code=400, detail="draft_id is required.")
    try:
        record = _get_gateway().get_draft(caller=caller, draft_id=normalized_id)
    except AutosaveError as exc:
        raise _http_error_for(exc) from exc
    return draft_detail_of(record)


@app.delete("/api/user/posts/{draft_id}")
async def delete_draft(draft_id: str, request: Request) -> dict[str, Any]:
    caller = _resolve_caller(request)
    normalized_id = str(draft_id or "").strip()
    if not normalized_id:
        raise HTTPException(status_code=400, detail="draft_id is required.")
    try:
        _get_gateway().delete_draft(caller=caller, draft_id=normalized_id)
    except AutosaveError as exc:
        raise _http_error_for(exc) from exc
    return {"success": True, "id": normalized_id}
