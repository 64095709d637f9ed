"""
FastAPI application and endpoints
"""
import logging
import traceback
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.formparsers import MultiPartException

from .config import Settings
from .logger import setup_logging
from .models import ErrorCategory, HealthResponse, PipelineError
from .pipeline import RequestPipeline, error_response
from .ratelimit import RateLimiter
from .storage import ArtifactStore
from .uploads import PartTooLargeError, declared_too_large, parse_uploads
from .upscaler import ProcessingInvoker
from utils.cleanup import EvictionSweeper

logger = logging.getLogger(__name__)

SERVICE_NAME = "image-upscaler"
VERSION = "1.0.0"


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    setup_logging(settings.log_level)

    store = ArtifactStore(settings.upload_dir, settings.output_dir)
    pipeline = RequestPipeline(store, ProcessingInvoker.from_settings(settings), settings)
    sweeper = EvictionSweeper(
        store,
        interval_seconds=settings.cleanup_interval_seconds,
        retention_seconds=settings.retention_seconds,
    )
    rate_limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Failing to create the directories is the one fatal error
        store.ensure_directories()
        sweeper.start()
        logger.info(f"✅ {SERVICE_NAME} ready ({settings.app_env})")
        try:
            yield
        finally:
            await sweeper.stop()
            logger.info("👋 Cleanup task stopped")

    web_app = FastAPI(
        title="Image Upscaler API",
        version=VERSION,
        description="Real-ESRGAN image upscaler: upload an image, receive the upscaled file",
        lifespan=lifespan,
    )
    web_app.state.settings = settings
    web_app.state.store = store
    web_app.state.pipeline = pipeline
    web_app.state.sweeper = sweeper
    web_app.state.rate_limiter = rate_limiter

    web_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Processing-Time", "X-File-Size"],
    )

    # Global exception handler to prevent crash loops
    @web_app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"❌ Server error: {exc!r}")
        content = {
            "error": "Internal server error",
            "details": str(exc) if settings.is_development else "Something went wrong",
        }
        if settings.is_development:
            content["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return JSONResponse(status_code=500, content=content)

    # Method not allowed handler (e.g. DELETE /upscale)
    @web_app.exception_handler(405)
    async def method_not_allowed_handler(request: Request, exc):
        return JSONResponse(
            status_code=405,
            content={
                "error": "Method not allowed",
                "details": f"Method {request.method} not allowed for {request.url.path}",
            },
        )

    @web_app.post("/upscale")
    async def upscale_endpoint(request: Request):
        client_ip = request.client.host if request.client else "unknown"
        if not rate_limiter.allow(client_ip):
            return error_response(PipelineError(
                category=ErrorCategory.RATE_LIMIT,
                error="Too many requests",
                details="Rate limit exceeded, please try again later",
            ))

        if declared_too_large(request, settings):
            logger.info(f"🚫 Rejected upload: Content-Length {request.headers['content-length']}")
            return error_response(pipeline.too_large())

        try:
            form = await parse_uploads(request, settings)
        except PartTooLargeError as e:
            logger.info(f"🚫 Rejected upload: {e.message}")
            return error_response(pipeline.too_large())
        except MultiPartException as e:
            # Too many files, malformed body
            return error_response(PipelineError(
                category=ErrorCategory.VALIDATION,
                error="File upload error",
                details=e.message,
            ))

        try:
            return await pipeline.handle(form.getlist(settings.upload_field))
        finally:
            await form.close()

    @web_app.get("/upscale")
    async def upscale_get_info():
        return {
            "error": "Method not allowed",
            "message": "Use POST method to upscale images",
            "required_fields": {
                settings.upload_field: "multipart file (JPEG, PNG or WEBP)",
            },
            "limits": {
                "max_file_size_bytes": settings.max_file_size_bytes,
                "max_files": settings.max_files,
            },
            "response_format": "binary image with X-Processing-Time and X-File-Size headers",
        }

    @web_app.get("/health", response_model=HealthResponse)
    def health():
        """Health check endpoint"""
        return HealthResponse()

    @web_app.get("/")
    def root():
        """Root endpoint with API info"""
        return {
            "message": "Image Upscaler API",
            "version": VERSION,
            "endpoints": {
                "POST /upscale": "Upload an image (multipart field 'image'), receive the upscaled file",
                "GET /health": "Health check",
                "GET /docs": "API documentation",
                "GET /": "This info page",
            },
        }

    return web_app
