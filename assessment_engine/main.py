# Standard library imports
from contextlib import asynccontextmanager

# Third-party imports
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.middleware.cors import CORSMiddleware

# Local imports
from assessment_engine.api.v1.routes.router import router as api_v1_router
from assessment_engine.core.config import settings
from assessment_engine.core.logging_config import get_logger
from assessment_engine.core.response import error_response, validation_error_response
from assessment_engine.db.deps import Base, engine
from assessment_engine.services.session_registry import registry

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown operations."""
    # Production schemas are managed by alembic
    if settings.ENVIRONMENT == "development":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    yield
    # Stop every running countdown; timed attempts stay resumable
    await registry.close_all()


# Initialize FastAPI
app = FastAPI(
    title="Assessment Engine API",
    description="Attempt lifecycle, countdown and auto-grading for assigned assessments",
    version="1.0.0",
    openapi_url="/api/openapi.json",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan,
)

app.include_router(
    api_v1_router,
    prefix="/api/v1",
)


# Custom exception handler
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions with logging"""
    msg = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    logger.warning(
        f"HTTP Exception: {exc.status_code} - {msg}",
        extra={
            "status_code": exc.status_code,
            "path": request.url.path,
            "method": request.method,
        }
    )

    return error_response(msg, status_code=exc.status_code)


# Pydantic validation errors
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Validation error handler with structured error details and logging"""
    error_count = len(exc.errors())
    logger.warning(
        f"Validation Error: {error_count} field(s) failed validation",
        extra={
            "path": request.url.path,
            "method": request.method,
            "error_count": error_count,
        }
    )

    return validation_error_response(exc.errors(), status_code=422)


logger.info(f"Configuring CORS middleware with origins: {settings.ALLOWED_ORIGINS}")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=settings.ALLOW_CREDENTIALS,
    allow_methods=settings.ALLOWED_METHODS,
    allow_headers=settings.ALLOWED_HEADERS,
)


# Run the app
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG
    )
