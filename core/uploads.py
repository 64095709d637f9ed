"""
Multipart ingestion with a per-file byte ceiling

Starlette's parser spools every file part in full before the handler sees it.
This one stops reading the request body as soon as a file part crosses the
ceiling, so an oversized upload never costs more than the ceiling on disk.
"""
import logging
from typing import AsyncGenerator

from python_multipart.multipart import parse_options_header
from starlette.datastructures import FormData, Headers
from starlette.formparsers import MultiPartException, MultiPartParser
from starlette.requests import Request

from .config import Settings

logger = logging.getLogger(__name__)

# Boundaries and part headers; generous for any real client
MULTIPART_OVERHEAD_BYTES = 64 * 1024


class PartTooLargeError(MultiPartException):
    def __init__(self, limit: int):
        super().__init__(f"File part exceeded {limit} bytes")
        self.limit = limit


class CappedMultiPartParser(MultiPartParser):
    """MultiPartParser that aborts once any file part exceeds max_file_bytes"""

    def __init__(
        self,
        headers: Headers,
        stream: AsyncGenerator[bytes, None],
        *,
        max_file_bytes: int,
        max_files: int = 1000,
        max_fields: int = 1000,
    ):
        super().__init__(headers, stream, max_files=max_files, max_fields=max_fields)
        self.max_file_bytes = max_file_bytes
        self._part_bytes = 0

    def on_part_begin(self) -> None:
        super().on_part_begin()
        self._part_bytes = 0

    def on_part_data(self, data: bytes, start: int, end: int) -> None:
        if self._current_part.file is not None:
            self._part_bytes += end - start
            if self._part_bytes > self.max_file_bytes:
                raise PartTooLargeError(self.max_file_bytes)
        super().on_part_data(data, start, end)


def max_request_bytes(settings: Settings) -> int:
    return settings.max_files * (settings.max_file_size_bytes + MULTIPART_OVERHEAD_BYTES)


def declared_too_large(request: Request, settings: Settings) -> bool:
    """True when Content-Length alone rules the request out"""
    length = request.headers.get("content-length", "")
    if not length.isdigit():
        return False
    return int(length) > max_request_bytes(settings)


async def parse_uploads(request: Request, settings: Settings) -> FormData:
    """Parse a multipart body; any other body carries no files and is not read"""
    media_type, _ = parse_options_header(request.headers.get("content-type", ""))
    if media_type != b"multipart/form-data":
        logger.debug(f"Ignoring non-multipart body ({media_type.decode('latin-1') or 'none'})")
        return FormData()
    parser = CappedMultiPartParser(
        request.headers,
        request.stream(),
        max_file_bytes=settings.max_file_size_bytes,
        max_files=settings.max_files,
    )
    return await parser.parse()
