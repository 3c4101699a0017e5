from __future__ import annotations

from fastapi import Request

from bankrecon.services.orchestrator import BatchOrchestrator


def get_orchestrator(request: Request) -> BatchOrchestrator:
    return request.app.state.orchestrator
