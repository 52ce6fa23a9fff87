import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from relaybot.config import _is_env_enabled, settings
from relaybot.database import init_db
from relaybot.logging_config import get_logger, setup_logging
from relaybot.routers import webhook
from relaybot.services.dedup_service import dedup_guard
from relaybot.services.media_storage import STATIC_ROUTE, get_temp_dir

setup_logging(settings.log_level)

app = FastAPI(
    title="Relaybot",
    description="WhatsApp command resolution service for Green API",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.mount(STATIC_ROUTE, StaticFiles(directory=str(get_temp_dir())), name="static")

dedup_logger = get_logger("dedup_worker")
_dedup_clear_task: asyncio.Task | None = None


def _is_dedup_clear_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("DEDUP_CLEAR_ENABLED"), default=True)


async def _dedup_clear_loop() -> None:
    while True:
        try:
            await asyncio.sleep(max(settings.dedup_clear_interval_seconds, 1.0))
            dedup_guard.clear_if_oversized()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            dedup_logger.error(
                "Dedup clear loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def on_startup() -> None:
    global _dedup_clear_task
    init_db()
    if not _is_dedup_clear_enabled():
        return
    if _dedup_clear_task is None or _dedup_clear_task.done():
        _dedup_clear_task = asyncio.create_task(_dedup_clear_loop())
        dedup_logger.info("Dedup clear task started")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    global _dedup_clear_task
    if _dedup_clear_task is None:
        return
    _dedup_clear_task.cancel()
    try:
        await _dedup_clear_task
    except asyncio.CancelledError:
        pass
    _dedup_clear_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}
