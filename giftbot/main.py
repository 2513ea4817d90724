import asyncio
import os

from fastapi import FastAPI

from giftbot.config import settings
from giftbot.logging_config import get_logger, setup_logging
from giftbot.routers import webhook
from giftbot.services.message_service import get_message_handler

setup_logging(settings.log_level)

app = FastAPI(
    title="Gift Bot",
    description="WhatsApp assistant for a preserved-flower gift shop",
    version="0.1.0",
)

app.include_router(webhook.router)

cleanup_logger = get_logger("buffer_cleanup")
_buffer_cleanup_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_buffer_cleanup_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("BUFFER_CLEANUP_ENABLED"), default=True)


async def _buffer_cleanup_loop() -> None:
    interval_seconds = max(settings.buffer_cleanup_interval_seconds, 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            get_message_handler().buffer.cleanup()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            cleanup_logger.error(
                "Buffer cleanup loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_buffer_cleanup() -> None:
    global _buffer_cleanup_task
    if not _is_buffer_cleanup_enabled():
        return
    if _buffer_cleanup_task is None or _buffer_cleanup_task.done():
        _buffer_cleanup_task = asyncio.create_task(_buffer_cleanup_loop())
        cleanup_logger.info("Buffer cleanup started")


@app.on_event("shutdown")
async def stop_buffer_cleanup() -> None:
    global _buffer_cleanup_task
    if _buffer_cleanup_task is None:
        return
    _buffer_cleanup_task.cancel()
    try:
        await _buffer_cleanup_task
    except asyncio.CancelledError:
        pass
    _buffer_cleanup_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}
