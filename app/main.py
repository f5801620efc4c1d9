import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.captcha import RedisCaptchaStore
from app.config import settings
from app.container import build_services
from app.database import async_session, autocommit_session
from app.exceptions import AppError
from app.logging_config import configure_logging
from app.routers import articles, auth, captcha, comments, permissions, roles, users

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging(settings.LOG_LEVEL)
    captcha_store = RedisCaptchaStore(settings.REDIS_URL)
    await captcha_store.connect()
    app.state.services = build_services(settings, async_session, autocommit_session, captcha_store)
    logger.info("Application started (%s)", settings.APP_ENV)
    yield
    # Shutdown
    await captcha_store.disconnect()

app = FastAPI(
    title="Identity & Moderation API",
    description="Accounts, roles, abuse protection and comment moderation",
    version="1.0.0",
    lifespan=lifespan,
)

# Error mapping
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"success": False, "code": "VALIDATION_ERROR", "message": "Invalid request"},
    )

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "code": "INTERNAL_ERROR", "message": "Internal server error"},
    )

# Routers
app.include_router(captcha.router)
app.include_router(auth.router)
app.include_router(comments.router)
app.include_router(articles.router)
app.include_router(roles.router)
app.include_router(permissions.router)
app.include_router(users.router)

@app.get("/health")
async def health():
    return {"status": "healthy", "version": "1.0.0"}
