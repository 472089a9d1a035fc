from fastapi import Request

from codeforge.core.exceptions import ServiceUnavailableError
from codeforge.gateway.orchestrator import CodeGenerationOrchestrator


def get_orchestrator(request: Request) -> CodeGenerationOrchestrator:
    """Orchestrator built in the application lifespan."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise ServiceUnavailableError("Generation service is starting up")
    return orchestrator
