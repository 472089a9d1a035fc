"""Streaming generation and edit endpoints (Server-Sent Events)."""

import logging
import uuid
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from codeforge.api.v1.deps import get_orchestrator
from codeforge.core.rate_limit import codegen_limit, limiter
from codeforge.gateway.normalizer import is_safe_path
from codeforge.gateway.orchestrator import CodeGenerationOrchestrator
from codeforge.gateway.stream import format_sse
from codeforge.gateway.types import EventType, StreamEvent
from codeforge.schemas.codegen import EditRequest, GenerateRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["generation"])

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}


async def _sse(events: AsyncIterator[StreamEvent], project_id: str | None = None) -> AsyncIterator[str]:
    """Serialize events, dropping files whose path would escape the project."""
    if project_id is not None:
        yield format_sse({"type": "meta", "projectId": project_id, "sessionId": str(uuid.uuid4())})

    async for event in events:
        if event.type == EventType.FILE and not is_safe_path(event.path):
            logger.warning("Skipping file with unsafe path: %r", event.path)
            continue
        if event.type == EventType.COMPLETE and project_id is not None:
            yield format_sse({**event.to_dict(), "projectId": project_id})
            continue
        yield format_sse(event)


@router.post("/generate")
@limiter.limit(codegen_limit)
async def generate(
    request: Request,
    body: GenerateRequest,
    orchestrator: CodeGenerationOrchestrator = Depends(get_orchestrator),
):
    project_id = str(uuid.uuid4())
    logger.info("Generate stream %s: model=%s", project_id, body.model)
    events = orchestrator.generate_files(body.prompt, body.model, audit=body.audit)
    return StreamingResponse(_sse(events, project_id), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/edit")
@limiter.limit(codegen_limit)
async def edit(
    request: Request,
    body: EditRequest,
    orchestrator: CodeGenerationOrchestrator = Depends(get_orchestrator),
):
    logger.info("Edit stream: file=%s model=%s", body.file_to_edit or "-", body.model)
    events = orchestrator.edit_files(
        body.instruction,
        body.current_content,
        body.file_to_edit,
        body.model,
        all_files=body.all_files,
        audit=body.audit,
    )
    return StreamingResponse(_sse(events), media_type="text/event-stream", headers=SSE_HEADERS)
