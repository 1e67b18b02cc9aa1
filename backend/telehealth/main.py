import time

from fastapi import FastAPI, Request, status, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from telehealth.config import get_settings
from telehealth.database import init_db, close_db, ping_db, get_store
from telehealth.utils.logger import get_logger
from telehealth.rate_limit import limiter

logger = get_logger("main")
settings = get_settings()

# Routers
from telehealth.routers import appointments as appointments_router
from telehealth.routers import sessions as sessions_router
from telehealth.routers import session_ws as session_ws_router
from telehealth.services.session_sweeper import end_expired_sessions

app = FastAPI(
    title="Telehealth Session API",
    debug=settings.APP_DEBUG,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(appointments_router.router)
app.include_router(sessions_router.router)
app.include_router(session_ws_router.router)
logger.info("✅ Routers registered: /appointments, /sessions, /ws/sessions")


# Error handlers
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP {exc.status_code}: {exc.detail} - Path: {request.url.path}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "status_code": exc.status_code},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error: {exc.errors()} - Path: {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": jsonable_encoder(exc.errors()), "status_code": 422}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error", "status_code": 500}
    )


# Middleware Logging
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    logger.info(
        f"{request.method} {request.url.path} - "
        f"Status: {response.status_code} - "
        f"Time: {process_time:.3f}s"
    )
    return response


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/readyz")
async def readyz():
    if not await ping_db():
        raise HTTPException(status_code=503, detail="Document store not ready")
    return {"status": "ok", "database": "up"}


# Global scheduler instance
scheduler = None


async def _sweep_sessions():
    await end_expired_sessions(get_store())


@app.on_event("startup")
async def on_startup():
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    global scheduler

    logger.info("🚀 Starting application...")
    await init_db()
    logger.info("Document store initialized")

    if settings.SESSION_SWEEP_INTERVAL_SECONDS > 0:
        try:
            scheduler = AsyncIOScheduler()
            scheduler.add_job(
                _sweep_sessions,
                trigger="interval",
                seconds=settings.SESSION_SWEEP_INTERVAL_SECONDS,
                id="session_sweeper",
                replace_existing=True,
            )
            scheduler.start()
            logger.info(f"✅ Session sweeper started (every {settings.SESSION_SWEEP_INTERVAL_SECONDS}s)")
        except Exception as e:
            logger.error(f"Failed to start session sweeper: {e}")
            scheduler = None

    logger.info("✅ Application ready!")


@app.on_event("shutdown")
async def on_shutdown():
    global scheduler
    if scheduler:
        try:
            scheduler.shutdown(wait=False)
            logger.info("Session sweeper stopped")
        except Exception as e:
            logger.error(f"Error stopping scheduler: {e}")
        scheduler = None
    await close_db()
    logger.info("Shutting down application...")
