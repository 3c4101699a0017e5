from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from bankrecon.api.batches import router as batch_router
from bankrecon.api.items import router as item_router
from bankrecon.api.rules import router as rule_router
from bankrecon.config import settings
from bankrecon.db.init_db import init_db
from bankrecon.graphql.schema import graphql_router
from bankrecon.logging_config import configure_logging
from bankrecon.services.orchestrator import BatchOrchestrator


def create_app(orchestrator: BatchOrchestrator | None = None) -> FastAPI:
    configure_logging(settings.log_level)
    init_db()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.orchestrator.runner.shutdown(wait=True)

    app = FastAPI(title="Bank Reconciliation Engine", lifespan=lifespan)
    app.state.orchestrator = orchestrator or BatchOrchestrator()

    app.include_router(rule_router)
    app.include_router(batch_router)
    app.include_router(item_router)

    app.include_router(graphql_router, prefix="/graphql")
    return app


app = create_app()
