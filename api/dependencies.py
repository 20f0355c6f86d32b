"""
FastAPI dependencies
"""

from fastapi import Request

from pipeline.orchestrator import PipelineOrchestrator


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    """Orchestrator created at application startup"""
    return request.app.state.orchestrator
