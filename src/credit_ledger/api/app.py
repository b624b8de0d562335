"""
FastAPI application exposing the credit ledger.

The lifespan owns the expiration scheduler: it starts with the app and
stops with it, so the accounting core itself holds no scheduling state.

Run:
  uvicorn credit_ledger.api.app:app --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from ..config import settings
from ..db.mongo import MongoDBManager
from ..scheduler import ExpirationScheduler
from .router import CreditServices, get_services, router


logger = logging.getLogger(__name__)


def create_app(
    services: Optional[CreditServices] = None, enable_scheduler: bool = True
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        wired = services or get_services()
        if isinstance(wired.db, MongoDBManager):
            await wired.db.ensure_indexes()

        scheduler: Optional[ExpirationScheduler] = None
        if enable_scheduler:
            scheduler = ExpirationScheduler(
                wired.sweeper,
                hour=settings.EXPIRATION_SWEEP_HOUR,
                minute=settings.EXPIRATION_SWEEP_MINUTE,
            )
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown()

    app = FastAPI(title="Credit ledger", lifespan=lifespan)
    app.include_router(router)
    if services is not None:
        app.dependency_overrides[get_services] = lambda: services

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
