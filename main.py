from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from api import create_router
from config import Settings, configure_logging
from repository import InMemoryReservationStore
from services import Clock, ReservationEngine

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[InMemoryReservationStore] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    store = store or InMemoryReservationStore(settings)
    engine = ReservationEngine(store, clock=clock)

    # Logging is configured when the server starts, not when this module is imported.
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        logger.info(
            "Reservation API ready (business hours %s-%s %s)",
            settings.business_open.strftime("%H:%M"),
            settings.business_close.strftime("%H:%M"),
            settings.timezone,
        )
        yield

    app = FastAPI(title="Meeting Room Reservation API", version="1.0.0", lifespan=lifespan)
    app.include_router(create_router(engine))
    return app


# Wire up dependencies (in-memory store; run with `uvicorn main:app`)
_settings = Settings.from_env()
_store = InMemoryReservationStore(_settings)
app = create_app(_settings, _store)
