from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pocket_budget.api.router import router as api_router
from pocket_budget.bootstrap import bootstrap
from pocket_budget.core.logging import RequestContextMiddleware
from pocket_budget.modules.ingestion.service import get_registry


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        bootstrap()
        yield
        # Open smart-entry sessions still own preview blobs.
        get_registry().close_all()

    app = FastAPI(title="Pocket Budget", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    app.include_router(api_router)
    return app


app = create_app()
