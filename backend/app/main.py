"""
FastAPI application entry point.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.app.core.config import get_settings
from backend.app.core.database import db
from backend.app.core.errors import CreditServiceError, InternalError
from backend.app.api import credits, payments, webhooks

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()

    await db.connect()
    logger.info("Connected to Postgres")
    if settings.init_schema:
        # Ensure schema exists (idempotent)
        try:
            from backend.app.storage.postgres import init_schema
            async with db.connection() as conn:
                await init_schema(conn)
        except Exception:
            # Don't crash the app on schema init errors; surface them in logs.
            logger.exception("Schema init failed")

    yield

    await db.disconnect()


def create_app() -> FastAPI:
    """Create and configure the FastAPI app."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    allowed_origins = settings.cors_origins_list
    allow_any = "*" in allowed_origins

    def _cors_headers(request: Request) -> dict:
        origin = request.headers.get("origin")
        if allow_any:
            return {"Access-Control-Allow-Origin": "*"}
        if origin and origin in allowed_origins:
            return {"Access-Control-Allow-Origin": origin, "Access-Control-Allow-Credentials": "true"}
        return {}

    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        description="Credit ledger, feature deductions and workflow relay",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=not allow_any,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers to ensure CORS headers are always sent
    @app.exception_handler(CreditServiceError)
    async def credit_service_error_handler(request: Request, exc: CreditServiceError):
        return JSONResponse(
            status_code=exc.status_code,
            content=jsonable_encoder(exc.to_dict()),
            headers=_cors_headers(request),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.detail, "error_code": f"http_{exc.status_code}"},
            headers={**(exc.headers or {}), **_cors_headers(request)},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=jsonable_encoder(
                {"success": False, "error": "Invalid request", "error_code": "validation_error", "details": exc.errors()}
            ),
            headers=_cors_headers(request),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=InternalError().to_dict(),
            headers=_cors_headers(request),
        )

    # Routes
    app.include_router(credits.router, prefix=settings.api_prefix)
    app.include_router(webhooks.router, prefix=settings.api_prefix)
    app.include_router(payments.router, prefix=settings.api_prefix)

    @app.get("/")
    async def root():
        return {
            "name": settings.app_name,
            "version": "1.0.0",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("backend.app.main:app", host="0.0.0.0", port=8000, reload=True)
