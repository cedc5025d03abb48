from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.router import router as api_router
from app.services.api_client import create_http_client
from app.services.checkout.registry import CheckoutRegistry
from core.config import config
from core.exceptions.base import CustomException
from core.logging import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the shared registration API client for the app's lifetime."""
    logger.info(f"Starting {config.APP_NAME} against {config.API_BASE_URL}")
    app.state.http_client = create_http_client()
    yield
    registry: CheckoutRegistry = app.state.checkout_registry
    logger.info(f"Shutting down {config.APP_NAME} with {len(registry)} open checkout(s)")
    await app.state.http_client.aclose()


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CustomException)
    async def custom_exception_handler(
        request: Request, exc: CustomException
    ) -> JSONResponse:
        logger.warning(
            f"{request.method} {request.url.path} -> {exc.code} {exc.error_code}: {exc.message}"
        )
        return JSONResponse(
            status_code=exc.code,
            content={
                "error_code": exc.error_code,
                "message": exc.message,
                "data": exc.data,
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(
            status_code=500,
            content={
                "error_code": "INTERNAL_ERROR",
                "message": "An internal server error occurred",
                "detail": str(exc) if config.DEBUG else None,
            },
        )


def create_app() -> FastAPI:
    """Create and configure the checkout API."""
    app = FastAPI(
        title="CSF Checkout",
        description="Checkout backend for CSF class registration",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.checkout_registry = CheckoutRegistry()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    @app.get("/health")
    async def health_check(request: Request) -> dict:
        return {
            "status": "healthy",
            "version": VERSION,
            "app_name": config.APP_NAME,
            "open_checkouts": len(request.app.state.checkout_registry),
        }

    app.include_router(api_router, prefix="/api")
    return app


app = create_app()
