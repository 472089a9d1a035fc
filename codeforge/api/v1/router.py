from fastapi import APIRouter

from codeforge.api.v1.codegen import router as codegen_router
from codeforge.api.v1.generation import router as generation_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(codegen_router)
api_v1_router.include_router(generation_router)
