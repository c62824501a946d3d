from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import settings
from app.database import SessionLocal, engine
from app.dependencies import get_session_manager
from app.logging_config import get_logger, setup_logging
from app.routers import sessions
from app.schemas.session import HealthResponse
from app.services.llm import create_provider
from app.services.reply_service import ReplyEngine
from app.services.session_manager import SessionManager
from app.services.session_store import SessionStore
from app.transport import BridgeTransport

setup_logging(settings.log_level, sql_echo=settings.debug)

logger = get_logger("main")


def build_session_manager() -> tuple[SessionManager, BridgeTransport]:
    store = SessionStore(SessionLocal)
    transport = BridgeTransport(
        settings.wa_bridge_url,
        token=settings.wa_bridge_token,
        connect_timeout_ms=settings.connect_timeout_ms,
        browser=tuple(part.strip() for part in settings.wa_browser.split(",")),
    )
    llm = create_provider(settings)
    reply_engine = ReplyEngine(
        store,
        llm,
        model=settings.openai_model,
        max_tokens=settings.ai_max_tokens,
        temperature=settings.ai_temperature,
    )
    manager = SessionManager(
        transport,
        store,
        reply_engine,
        print_qr_in_terminal=settings.print_qr_in_terminal,
    )
    return manager, transport


@asynccontextmanager
async def lifespan(app: FastAPI):
    manager, transport = build_session_manager()
    app.state.session_manager = manager
    logger.info("WhatsApp gateway started", extra={"context": {"port": settings.port}})
    try:
        yield
    finally:
        await manager.close_all()
        await transport.aclose()
        await engine.dispose()
        logger.info("WhatsApp gateway stopped")


app = FastAPI(
    title="WhatsApp Gateway",
    description="Multi-tenant WhatsApp bot gateway",
    version="0.1.0",
    lifespan=lifespan,
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

app.include_router(sessions.router)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "invalid request") if errors else "invalid request"
    return JSONResponse(status_code=400, content={"ok": False, "error": message})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled error",
        exc_info=exc,
        extra={"context": {"path": request.url.path, "error": str(exc)}},
    )
    return JSONResponse(status_code=500, content={"ok": False, "error": str(exc)})


@app.get("/health", response_model=HealthResponse)
async def health(manager: SessionManager = Depends(get_session_manager)):
    return HealthResponse(sessions=manager.session_count())


def run() -> None:
    uvicorn.run("app.main:app", host="0.0.0.0", port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
