import asyncio
import os

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import settings
from app.database import SessionLocal
from app.logging_config import get_logger, setup_logging
from app.routers import auth, health, messages, notifications, webhook, whatsapp, ws
from app.services import whatsapp_service
from app.services.socket_manager import discard_pending_events, send_pending_events
from app.services.whatsapp_gateway import GatewayError

setup_logging(settings.log_level)
logger = get_logger("main")

app = FastAPI(
    title="WABot API",
    description="Multi-tenant WhatsApp business automation backend",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(auth.router)
app.include_router(whatsapp.router)
app.include_router(webhook.router)
app.include_router(messages.router)
app.include_router(notifications.router)
app.include_router(ws.router)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"message": "Validation failed", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail
    if exc.status_code == status.HTTP_404_NOT_FOUND and message == "Not Found":
        message = "Route not found"
    return JSONResponse(status_code=exc.status_code, content={"message": message}, headers=exc.headers)


@app.exception_handler(GatewayError)
async def gateway_exception_handler(request: Request, exc: GatewayError):
    logger.error(
        "WhatsApp gateway error",
        extra={"context": {"path": request.url.path, "status": exc.status_code, "error": str(exc)}},
    )
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"message": "WhatsApp gateway unavailable"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled error",
        exc_info=exc,
        extra={"context": {"path": request.url.path, "method": request.method}},
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"message": "Internal server error"},
    )


def _is_session_restore_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.whatsapp_restore_on_startup


async def _restore_whatsapp_sessions() -> None:
    db = SessionLocal()
    try:
        restored = await whatsapp_service.restore_sessions(db)
        db.commit()
        await send_pending_events(db)
        logger.info("WhatsApp sessions restored", extra={"context": {"restored": restored}})
    except Exception as exc:
        db.rollback()
        discard_pending_events(db)
        logger.error("WhatsApp session restore failed", extra={"context": {"error": str(exc)}})
    finally:
        db.close()


_restore_task: asyncio.Task | None = None


@app.on_event("startup")
async def start_session_restore() -> None:
    global _restore_task
    if not _is_session_restore_enabled():
        return
    _restore_task = asyncio.create_task(_restore_whatsapp_sessions())


@app.on_event("shutdown")
async def stop_session_restore() -> None:
    global _restore_task
    if _restore_task is None:
        return
    _restore_task.cancel()
    try:
        await _restore_task
    except asyncio.CancelledError:
        pass
    _restore_task = None


@app.get("/health")
async def liveness():
    return {"status": "ok"}
