"""
Request pipeline: validate -> store -> upscale -> stream -> cleanup

Every request ends in exactly one terminal state (completed or failed) and the
transition into it deletes the upload and the result, whatever happened.
"""
import dataclasses
import logging
import re
import time
import traceback
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, List, Optional, Sequence

from starlette.datastructures import UploadFile
from starlette.requests import ClientDisconnect
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.types import Message, Receive, Scope, Send

from .config import Settings
from .models import ErrorCategory, PipelineError, ValidationResult
from .storage import ArtifactStore, StorageError, UploadTooLargeError
from .upscaler import ProcessingInvoker

logger = logging.getLogger(__name__)


class RequestState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    PROCESSING = "processing"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (RequestState.COMPLETED, RequestState.FAILED)

SAFE_EXTENSION = re.compile(r"\.[A-Za-z0-9]{1,8}")


def safe_extension(filename: Optional[str]) -> str:
    """Extension of the client filename, or "" when it is not plain alphanumerics"""
    extension = Path(filename or "").suffix
    return extension if SAFE_EXTENSION.fullmatch(extension) else ""


class RequestContext:
    """Tracks one request's state and the files it owns"""

    def __init__(self, store: ArtifactStore):
        self.store = store
        self.state = RequestState.RECEIVED
        self.paths: List[Path] = []

    def own(self, path: Path) -> None:
        self.paths.append(path)

    def advance(self, state: RequestState) -> None:
        logger.debug(f"Request {id(self):x}: {self.state.value} -> {state.value}")
        self.state = state

    def finish(self, state: RequestState) -> None:
        """Enter a terminal state and delete owned files; later calls do nothing"""
        if self.state in TERMINAL_STATES:
            return
        self.advance(state)
        for path in self.paths:
            # delete() logs and swallows failures; the sweeper retries later
            if not self.store.delete(path):
                logger.warning(f"⚠️ Cleanup left {path} behind for the sweeper")
        self.paths = []


def error_response(error: PipelineError, include_stack: bool = False) -> JSONResponse:
    body = error.to_response(include_stack=include_stack)
    return JSONResponse(status_code=error.status_code, content=body.model_dump(exclude_none=True))


class ArtifactStreamResponse(StreamingResponse):
    """Streams a result file and finishes the request context once sending stops

    The first chunk is read before headers go out, so a result that cannot be
    opened still becomes a 500 JSON response. Anything failing later is only
    logged: the status line is already on the wire.
    """

    def __init__(
        self,
        content: AsyncIterator[bytes],
        context: RequestContext,
        headers: Optional[dict] = None,
        media_type: Optional[str] = None,
    ):
        super().__init__(content, status_code=200, headers=headers, media_type=media_type)
        self.context = context

    async def stream_response(self, send: Send) -> None:
        iterator = self.body_iterator.__aiter__()
        try:
            first = await iterator.__anext__()
        except StopAsyncIteration:
            first = b""
        await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
        await send({"type": "http.response.body", "body": first, "more_body": True})
        async for chunk in iterator:
            await send({"type": "http.response.body", "body": chunk, "more_body": True})
        await send({"type": "http.response.body", "body": b"", "more_body": False})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        committed = False
        delivered = False

        async def tracking_send(message: Message) -> None:
            nonlocal committed, delivered
            if message["type"] == "http.response.start":
                committed = True
            elif message["type"] == "http.response.body" and not message.get("more_body", False):
                delivered = True
            await send(message)

        try:
            await super().__call__(scope, receive, tracking_send)
        except (OSError, ClientDisconnect) as e:
            logger.error(f"❌ File streaming error: {e!r}")
            if not committed:
                await self._send_streaming_error(scope, receive, send, e)
        finally:
            # Disconnects cancel the body task without raising, hence `delivered`
            if not delivered:
                logger.warning("⚠️ Response stream ended before the whole file was sent")
            try:
                await self._close_body()
            finally:
                self.context.finish(RequestState.COMPLETED if delivered else RequestState.FAILED)

    async def _close_body(self) -> None:
        # Releases the open file handle when streaming was cut short
        aclose = getattr(self.body_iterator, "aclose", None)
        if aclose is not None:
            await aclose()

    async def _send_streaming_error(self, scope: Scope, receive: Receive, send: Send, exc: Exception) -> None:
        error = PipelineError(
            category=ErrorCategory.STREAMING,
            error="File streaming failed",
            details=str(exc),
        )
        try:
            await error_response(error)(scope, receive, send)
        except (OSError, ClientDisconnect) as e:
            logger.warning(f"⚠️ Could not deliver streaming error to client: {e!r}")


class RequestPipeline:
    """Runs one upscale request end to end"""

    def __init__(self, store: ArtifactStore, invoker: ProcessingInvoker, settings: Settings):
        self.store = store
        self.invoker = invoker
        self.settings = settings
        self.active_jobs = 0

    def validate(self, uploads: Sequence) -> ValidationResult:
        """Check presence, declared type and size before anything touches disk"""
        files = [u for u in uploads if isinstance(u, UploadFile)]
        if not files:
            return ValidationResult(error=self._invalid(
                "No image file uploaded",
                "Please provide a valid image file (JPEG, PNG, WEBP) under "
                f"{self.settings.max_file_size_bytes // (1024 * 1024)}MB",
            ))
        if len(files) > self.settings.max_files:
            return ValidationResult(error=self._invalid(
                "File upload error",
                f"Too many files: at most {self.settings.max_files} per request",
            ))

        upload = files[0]
        if upload.content_type not in self.settings.allowed_content_types:
            return ValidationResult(error=self._invalid(
                "File upload error",
                "Invalid file type. Only JPEG, PNG, and WEBP are allowed.",
            ))
        if upload.size is not None and upload.size > self.settings.max_file_size_bytes:
            return ValidationResult(error=self.too_large())

        result = ValidationResult()
        if len(files) > 1:
            result.warnings.append(f"{len(files) - 1} extra file(s) ignored, only the first is processed")
        return result

    async def handle(self, uploads: Sequence) -> Response:
        context = RequestContext(self.store)
        try:
            return await self._run(context, list(uploads))
        except BaseException:
            context.finish(RequestState.FAILED)
            raise

    async def _run(self, context: RequestContext, uploads: List) -> Response:
        validation = self.validate(uploads)
        if not validation.ok:
            logger.info(f"🚫 Rejected upload: {validation.error.details}")
            context.finish(RequestState.FAILED)
            return self._error(validation.error)
        for warning in validation.warnings:
            logger.warning(f"⚠️ {warning}")
        context.advance(RequestState.VALIDATED)

        if self.active_jobs >= self.settings.max_concurrent_jobs:
            context.finish(RequestState.FAILED)
            return self._error(PipelineError(
                category=ErrorCategory.CAPACITY,
                error="Server busy",
                details="Too many images are being processed, please retry shortly",
            ))

        upload: UploadFile = next(u for u in uploads if isinstance(u, UploadFile))
        self.active_jobs += 1
        try:
            stored = await self._store(context, upload)
            if isinstance(stored, PipelineError):
                context.finish(RequestState.FAILED)
                return self._error(stored)

            context.advance(RequestState.PROCESSING)
            start = time.monotonic()
            result = await self.invoker.invoke(stored, self.store.outgoing_dir)
            processing_time = time.monotonic() - start
        finally:
            self.active_jobs -= 1

        if not result.ok:
            logger.error(f"❌ Upscaling error: {result.error.details}")
            context.finish(RequestState.FAILED)
            error = result.error
            if self.settings.is_development:
                stack = "".join(traceback.format_stack())
                error = dataclasses.replace(error, stack=f"{result.diagnostics}\n{stack}".lstrip())
            return self._error(error)

        artifact = result.artifact
        context.own(artifact.path)
        context.advance(RequestState.STREAMING)
        return ArtifactStreamResponse(
            self.store.iter_file(artifact.path, self.settings.stream_chunk_size),
            context,
            headers={
                "X-Processing-Time": f"{processing_time:.2f}s",
                "X-File-Size": str(artifact.size),
            },
            media_type=artifact.content_type,
        )

    async def _store(self, context: RequestContext, upload: UploadFile):
        """Persist the upload; returns its path, or a PipelineError"""
        try:
            stored = await self.store.persist_upload(
                upload,
                safe_extension(upload.filename),
                content_type=upload.content_type,
                fieldname=self.settings.upload_field,
                max_bytes=self.settings.max_file_size_bytes,
            )
        except UploadTooLargeError:
            return self.too_large()
        except (StorageError, OSError) as e:
            return PipelineError(
                category=ErrorCategory.INVOCATION,
                error="Image upscaling failed",
                details=f"Could not store upload: {e}",
                stack=traceback.format_exc(),
            )
        context.own(stored.path)
        return stored.path

    def _invalid(self, error: str, details: str) -> PipelineError:
        return PipelineError(category=ErrorCategory.VALIDATION, error=error, details=details)

    def too_large(self) -> PipelineError:
        limit_mb = self.settings.max_file_size_bytes // (1024 * 1024)
        return self._invalid("File upload error", f"File too large. Maximum size is {limit_mb}MB")

    def _error(self, error: PipelineError) -> JSONResponse:
        return error_response(error, include_stack=self.settings.is_development)
