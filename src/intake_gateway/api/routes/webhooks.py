"""Webhook intake endpoints.

Vendors POST raw JSON bodies; the exact bytes are hashed for idempotency and
checked against optional HMAC signatures, so the body is read unparsed and
handed to the intake pipeline.

Security Impact:
    - Responses never echo credentials or PHI beyond ids
    - Source health reports the binding shape only, never secrets
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from intake_gateway.api.dependencies import PipelineDep
from intake_gateway.api.models import SourceHealthResponse
from intake_gateway.domain.services import IntakePipeline, WebhookRequest
from intake_gateway.infrastructure.request_context import new_request_id, request_scope

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _receive(request: Request, pipeline: IntakePipeline, source: Optional[str]) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None) or new_request_id()
    webhook_request = WebhookRequest(
        source=source or "",
        raw_body=await request.body(),
        headers={name.lower(): value for name, value in request.headers.items()},
        request_id=request_id,
        client_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )

    def handle():
        with request_scope(request_id):
            return pipeline.handle(webhook_request)

    # Storage and crypto calls are blocking
    result = await run_in_threadpool(handle)
    return JSONResponse(status_code=result.status, content=result.body)


@router.post("/intake")
async def receive_intake(
    request: Request,
    pipeline: PipelineDep,
    source: Optional[str] = Query(None, description="Intake source name")
) -> JSONResponse:
    """Receive an intake webhook; the source comes from ?source= or headers."""
    return await _receive(request, pipeline, source)


@router.post("/{source}/intake")
async def receive_source_intake(source: str, request: Request, pipeline: PipelineDep) -> JSONResponse:
    """Receive an intake webhook for the source named in the path."""
    return await _receive(request, pipeline, source)


@router.get("/{source}/health", response_model=SourceHealthResponse)
async def source_health(source: str, pipeline: PipelineDep) -> SourceHealthResponse:
    """Report how a source is bound and which credential kinds it accepts."""
    return SourceHealthResponse(**pipeline.source_status(source))
