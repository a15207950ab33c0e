"""Main application entry point."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from lock_manager.api.routes import get_manager, router as api_router, set_manager
from lock_manager.config import settings
from lock_manager.core.exceptions import (
    ConsistencyError,
    LockManagerError,
    NotFoundError,
    ProviderRejectedError,
    ProviderTimeoutError,
    ValidationError,
)
from lock_manager.core.manager import LockManager
from lock_manager.db.database import init_db

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting lock manager application...")

    # Initialize database
    await init_db()

    manager = LockManager(settings)
    set_manager(manager)
    await manager.start()

    logger.info("Application started successfully")

    yield

    # Shutdown
    logger.info("Shutting down lock manager application...")
    await manager.stop()
    set_manager(None)
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Lock Manager",
    description="Smart-lock access codes, commands and activity",
    version="0.1.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount API routes
app.include_router(api_router, prefix="/api")


# Error mapping


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"error": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"error": str(exc)})


@app.exception_handler(ProviderTimeoutError)
async def provider_timeout_handler(request: Request, exc: ProviderTimeoutError):
    # Never coerce a timeout into locked or unlocked
    return JSONResponse(
        status_code=504,
        content={"error": str(exc), "lock_id": exc.lock_id, "physical_state": "unknown"},
    )


@app.exception_handler(ProviderRejectedError)
async def provider_rejected_handler(request: Request, exc: ProviderRejectedError):
    return JSONResponse(
        status_code=502,
        content={"error": str(exc), "lock_id": exc.lock_id, "physical_state": "unchanged"},
    )


@app.exception_handler(ConsistencyError)
async def consistency_error_handler(request: Request, exc: ConsistencyError):
    return JSONResponse(
        status_code=500,
        content={"error": str(exc), "retry": "verify before retrying"},
    )


@app.exception_handler(LockManagerError)
async def lock_manager_error_handler(request: Request, exc: LockManagerError):
    logger.error("Unhandled lock manager error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": str(exc)})


class LockEventPayload(BaseModel):
    """Payload from HA automation for keypad events."""

    entity_id: str
    code_slot: Optional[int] = None
    event_label: Optional[str] = None
    timestamp: Optional[datetime] = None


@app.post("/webhooks/lock-event")
async def webhook_lock_event(
    payload: LockEventPayload,
    manager: LockManager = Depends(get_manager),
):
    """Record a keypad unlock pushed by an HA automation.

    Used instead of the websocket listener when HA is not reachable from
    here; the automation posts the lock entity and the slot that was used.
    """
    if payload.code_slot is None:
        return {"recorded": False, "reason": "no code slot"}

    entry = await manager.record_keypad_unlock(
        entity_id=payload.entity_id,
        code_slot=payload.code_slot,
        event_label=payload.event_label or "Keypad Unlock",
        raw=payload.model_dump(mode="json"),
        at=payload.timestamp,
    )
    if entry is None:
        return {"recorded": False, "reason": "unknown lock or audit failure"}
    return {
        "recorded": True,
        "sequence": entry.sequence,
        "anomalous": entry.details["anomalous"],
    }


def main():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "lock_manager.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
