"""
HTTP API for the selection server.

Endpoints:
    POST   /selections                    create a selection token
    POST   /selections/{token}/estimate   advisory selected-count
    DELETE /selections/{token}            discard a token early
    POST   /bulk-actions                  run a bulk action (sync or async)
    GET    /bulk-actions/{result_id}      poll a bulk action result
    POST   /bulk-actions/{result_id}/cancel
    GET    /health

Invariants:
    - JSON request/response format
    - Errors are rendered as {"error", "error_code", "details"}
    - Estimates are always flagged approximate

How to change safely:
    - Never change the meaning of an existing error_code
    - Add fields to responses, don't rename them
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import HttpConfig
from ..errors import SelectionError
from ..filters import FilterDescriptor
from ..results import BulkOperationResult
from ..selection import selection_from_dict
from ..service import SelectionService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Selections"])

_STATUS_BY_CODE = {
    "INVALID_FILTER": 400,
    "INVALID_SELECTION": 400,
    "INVALID_ACTION_PARAMS": 400,
    "UNKNOWN_ACTION": 400,
    "TOKEN_NOT_FOUND": 404,
    "RESULT_NOT_FOUND": 404,
    "TOKEN_EXPIRED": 410,
    "STORE_UNAVAILABLE": 503,
    "RECORD_STORE_UNAVAILABLE": 503,
}

RETRY_AFTER_SECONDS = "1"


# --- Request/Response Models ---


class CreateSelectionRequest(BaseModel):
    """Request to store a selection."""

    filter: dict[str, Any] = Field(default_factory=dict, description="Filter descriptor")
    selection: dict[str, Any] = Field(
        default_factory=lambda: {"mode": "manual"},
        description="Selection state ({mode, included} or {mode, excluded})",
    )
    pin_snapshot: bool = Field(False, description="Resolve against the current data version")
    single_use: bool | None = Field(None, description="Invalidate after one execution")


class SelectionResponse(BaseModel):
    """Stored selection handle."""

    token: str
    expires_at: float
    mode: str
    snapshot: dict[str, Any]
    single_use: bool


class EstimateResponse(BaseModel):
    """Advisory selected-count."""

    estimated_count: int
    approximate: bool = True


class BulkActionRequest(BaseModel):
    """Request to run a bulk action over a selection."""

    token: str = Field(..., description="Selection token")
    action_kind: str = Field(..., description="Registered action name")
    action_params: dict[str, Any] = Field(default_factory=dict, description="Action parameters")
    wait: bool | None = Field(None, description="Run synchronously (default: decided by size)")


class BulkActionAccepted(BaseModel):
    """Async bulk action handle."""

    result_id: str
    status: str


class FailedItemResponse(BaseModel):
    record_id: str
    error_kind: str
    message: str = ""


class BulkResultResponse(BaseModel):
    """Bulk action result."""

    result_id: str
    action_kind: str
    status: str
    attempted: int
    succeeded: int
    failed: int
    failures: list[FailedItemResponse]
    failures_truncated: bool
    abort_reason: str | None = None
    started_at: float
    finished_at: float | None = None


# --- Dependencies ---


def get_service(request: Request) -> SelectionService:
    """Get selection service from app state."""
    return request.app.state.service


def _result_response(result: BulkOperationResult) -> BulkResultResponse:
    return BulkResultResponse(**result.to_dict())


# --- Routes ---


@router.post("/selections", response_model=SelectionResponse, status_code=201)
async def create_selection(
    body: CreateSelectionRequest,
    service: SelectionService = Depends(get_service),
):
    """Store a filter + selection and return an opaque token."""
    descriptor = FilterDescriptor.from_dict(body.filter)
    selection = selection_from_dict(body.selection)
    tok = await service.create_selection(
        descriptor,
        selection,
        pin_snapshot=body.pin_snapshot,
        single_use=body.single_use,
    )
    return SelectionResponse(
        token=tok.token,
        expires_at=tok.expires_at,
        mode=tok.selection.mode,
        snapshot=tok.snapshot.to_dict(),
        single_use=tok.single_use,
    )


@router.post("/selections/{token}/estimate", response_model=EstimateResponse)
async def estimate_selection(
    token: str,
    service: SelectionService = Depends(get_service),
):
    """Approximate selected-count; re-query periodically, data can drift."""
    return EstimateResponse(estimated_count=await service.estimate(token))


@router.delete("/selections/{token}", status_code=204)
async def discard_selection(
    token: str,
    service: SelectionService = Depends(get_service),
):
    await service.discard_selection(token)
    return Response(status_code=204)


@router.post(
    "/bulk-actions",
    responses={200: {"model": BulkResultResponse}, 202: {"model": BulkActionAccepted}},
)
async def start_bulk_action(
    body: BulkActionRequest,
    service: SelectionService = Depends(get_service),
):
    """Run a bulk action.

    Returns the full result (200) when executed synchronously, or a
    result_id to poll (202) when running in the background.
    """
    result = await service.start_bulk_action(
        body.token,
        body.action_kind,
        body.action_params,
        wait=body.wait,
    )
    if result.status.is_final:
        return JSONResponse(_result_response(result).model_dump(), status_code=200)
    accepted = BulkActionAccepted(result_id=result.result_id, status=result.status.value)
    return JSONResponse(accepted.model_dump(), status_code=202)


@router.get("/bulk-actions/{result_id}", response_model=BulkResultResponse)
async def get_bulk_action(
    result_id: str,
    service: SelectionService = Depends(get_service),
):
    """Current (possibly partial) result of a bulk action."""
    return _result_response(service.get_result(result_id))


@router.post("/bulk-actions/{result_id}/cancel", response_model=BulkResultResponse)
async def cancel_bulk_action(
    result_id: str,
    service: SelectionService = Depends(get_service),
):
    """Request cooperative cancellation; already applied actions stay applied."""
    return _result_response(service.cancel(result_id))


# --- App factory ---


def create_http_app(
    service: SelectionService,
    config: HttpConfig | None = None,
) -> FastAPI:
    """Create the HTTP application.

    Args:
        service: SelectionService instance
        config: HTTP server configuration

    Returns:
        FastAPI application
    """
    config = config or HttpConfig()

    app = FastAPI(
        title="Selection Server",
        description="Token-based selections and bulk actions over filtered collections.",
        version="1.0.0",
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(SelectionError)
    async def selection_error_handler(request: Request, exc: SelectionError) -> JSONResponse:
        status = _STATUS_BY_CODE.get(exc.code, 400)
        headers = {"Retry-After": RETRY_AFTER_SECONDS} if status == 503 else None
        if status >= 500:
            logger.warning(f"Request failed: {exc.message}", extra={"error_code": exc.code, "path": request.url.path})
        return JSONResponse(
            {"error": exc.message, "error_code": exc.code, "details": exc.details},
            status_code=status,
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = {"errors": jsonable_encoder(exc.errors())}
        return JSONResponse(
            {"error": "Invalid request body", "error_code": "INVALID_REQUEST", "details": details},
            status_code=400,
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(f"HTTP handler error: {exc}", exc_info=True)
        return JSONResponse({"error": str(exc), "error_code": "INTERNAL", "details": {}}, status_code=500)

    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": "selection-server", "jobs": len(service.jobs)}

    return app
