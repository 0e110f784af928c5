import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api.exceptions import register_exception_handlers
from .api.routes import reservation_router, router as credits_router
from .core.config import get_settings
from .core.db import init_db, new_session
from .core.dependencies import get_idempotency_guard
from .services import ExpirySweeper, LedgerService

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    if settings.credit_packages:
        with new_session() as session:
            LedgerService(session, settings=settings).sync_packages(settings.credit_packages)
    sweeper_task = None
    if settings.sweeper_enabled and settings.sweep_interval_seconds > 0:
        sweeper = ExpirySweeper(new_session, get_idempotency_guard(), settings)
        sweeper_task = asyncio.create_task(sweeper.run_periodically())
        logger.info(
            "sweeper.started",
            extra={"interval_seconds": settings.sweep_interval_seconds},
        )
    yield
    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass

app = FastAPI(title=settings.app_name, lifespan=lifespan)

app.include_router(credits_router)
app.include_router(reservation_router)
register_exception_handlers(app)

@app.get("/health")
def read_health() -> dict[str, str]:
    return {"status": "ok"}
