"""Non-streaming code generation and its operational endpoints."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from codeforge.api.v1.deps import get_orchestrator
from codeforge.core.config import settings
from codeforge.core.exceptions import BadRequestError
from codeforge.core.rate_limit import codegen_limit, limiter
from codeforge.gateway.orchestrator import CodeGenerationOrchestrator
from codeforge.gateway.types import GenerationRequest
from codeforge.schemas.codegen import CodegenRequest, CodegenResponse, ModelSelectRequest, ModelSelectResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/codegen", tags=["codegen"])

_HEALTH_STATUS_CODES = {"healthy": 200, "degraded": 207, "down": 503}
_HEALTH_MESSAGES = {
    "healthy": "All providers operational",
    "degraded": "Running with limited providers",
    "down": "All providers down",
}

RECOMMENDED_MODELS = [
    {
        "name": "deepseek-coder:6.7b",
        "displayName": "DeepSeek Coder 6.7B",
        "description": "Best balance of quality and speed",
        "size": "3.8 GB",
        "ram": "8 GB",
        "recommended": True,
    },
    {
        "name": "qwen2.5-coder:7b",
        "displayName": "Qwen2.5 Coder 7B",
        "description": "Fast and efficient code generation",
        "size": "4.7 GB",
        "ram": "8 GB",
        "recommended": True,
    },
    {
        "name": "deepseek-coder:33b",
        "displayName": "DeepSeek Coder 33B",
        "description": "Maximum quality for complex apps",
        "size": "19 GB",
        "ram": "32 GB",
        "recommended": False,
    },
    {
        "name": "codellama:13b",
        "displayName": "CodeLlama 13B",
        "description": "Good quality, general purpose",
        "size": "7.4 GB",
        "ram": "16 GB",
        "recommended": False,
    },
]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.post("", response_model=CodegenResponse, response_model_exclude_none=True)
@limiter.limit(codegen_limit)
async def generate_code(
    request: Request,
    body: CodegenRequest,
    orchestrator: CodeGenerationOrchestrator = Depends(get_orchestrator),
):
    prompt = body.prompt
    if not prompt.strip():
        raise BadRequestError("Prompt is required and must be a non-empty string")
    if len(prompt) > settings.max_prompt_length:
        raise BadRequestError(f"Maximum prompt length is {settings.max_prompt_length} characters")

    logger.info("Codegen request: %.50s...", prompt)
    result = await orchestrator.generate_code(GenerationRequest(prompt=prompt))
    return result.to_dict()


@router.get("/stats")
async def get_stats(orchestrator: CodeGenerationOrchestrator = Depends(get_orchestrator)):
    return {"success": True, "stats": orchestrator.get_stats(), "timestamp": _now()}


@router.post("/cache/clear")
async def clear_cache(orchestrator: CodeGenerationOrchestrator = Depends(get_orchestrator)):
    cleared = orchestrator.clear_cache()
    return {"success": True, "message": "Cache cleared successfully", "cleared": cleared}


@router.get("/health")
async def health(orchestrator: CodeGenerationOrchestrator = Depends(get_orchestrator)):
    report = await orchestrator.health_check()
    status = report["status"]
    return JSONResponse(
        status_code=_HEALTH_STATUS_CODES.get(status, 503),
        content={"success": True, **report, "message": _HEALTH_MESSAGES.get(status, ""), "timestamp": _now()},
    )


@router.get("/models")
async def list_models(orchestrator: CodeGenerationOrchestrator = Depends(get_orchestrator)):
    models = await orchestrator.list_models()
    return {
        "success": True,
        "models": models,
        "currentModel": orchestrator.get_current_model(),
        "timestamp": _now(),
    }


@router.get("/models/recommended")
async def recommended_models(orchestrator: CodeGenerationOrchestrator = Depends(get_orchestrator)):
    return {"success": True, "models": RECOMMENDED_MODELS, "currentModel": orchestrator.get_current_model()}


@router.post("/models/select", response_model=ModelSelectResponse)
async def select_model(body: ModelSelectRequest, orchestrator: CodeGenerationOrchestrator = Depends(get_orchestrator)):
    model = body.model.strip()
    if not model:
        raise BadRequestError("Model name is required")
    orchestrator.set_model(model)
    return ModelSelectResponse(
        message=f"Model '{model}' selected. It will be auto-installed on first use if not available.",
        currentModel=model,
    )
