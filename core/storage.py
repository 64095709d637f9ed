"""
Transient file storage for uploads (incoming) and upscaled results (outgoing)
"""
import logging
import os
import secrets
import time
from pathlib import Path
from typing import AsyncIterator, List, Optional

import anyio

from .models import UploadedFile

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024  # 1 MiB


class StorageError(Exception):
    """Managed directories cannot be created or written"""


class UploadTooLargeError(StorageError):
    """Upload exceeded the byte ceiling while being written"""

    def __init__(self, limit: int):
        super().__init__(f"File exceeds the maximum size of {limit} bytes")
        self.limit = limit


class ArtifactStore:
    """Owns the incoming and outgoing directories and every file inside them"""

    def __init__(self, incoming_dir: Path, outgoing_dir: Path):
        self.incoming_dir = Path(incoming_dir).resolve()
        self.outgoing_dir = Path(outgoing_dir).resolve()

    @property
    def directories(self) -> List[Path]:
        return [self.incoming_dir, self.outgoing_dir]

    def ensure_directories(self) -> None:
        """Create both directories (and parents); raises StorageError if impossible"""
        for directory in self.directories:
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Cannot create directory {directory}: {e}") from e
        logger.info(f"📁 Storage ready: {self.incoming_dir}, {self.outgoing_dir}")

    def generate_filename(self, fieldname: str, extension: str) -> str:
        """{fieldname}-{timestamp}-{random}{ext}; nanosecond clock plus 9 random digits"""
        if extension and not extension.startswith("."):
            extension = f".{extension}"
        return f"{fieldname}-{time.time_ns()}-{secrets.randbelow(10**9)}{extension}"

    async def persist_upload(
        self,
        stream,
        declared_extension: str,
        content_type: str = "application/octet-stream",
        fieldname: str = "image",
        max_bytes: Optional[int] = None,
    ) -> UploadedFile:
        """Copy an async readable stream (e.g. UploadFile) into the incoming directory

        Writing stops and the partial file is removed as soon as max_bytes is
        exceeded, so oversized uploads never stay on disk.
        """
        filename = self.generate_filename(fieldname, declared_extension)
        target = self.incoming_dir / filename
        written = 0
        try:
            # "xb" never reuses a name that somehow already exists
            with open(target, "xb") as sink:
                while True:
                    chunk = await stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if max_bytes is not None and written > max_bytes:
                        raise UploadTooLargeError(max_bytes)
                    sink.write(chunk)
        except BaseException:
            self.delete(target)
            raise

        logger.info(f"📥 Stored upload {filename} ({written} bytes)")
        return UploadedFile(
            filename=filename,
            path=target,
            content_type=content_type,
            size=written,
            created_at=time.time(),
        )

    async def iter_file(self, path: Path, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Yield the file in chunks so large results are never fully in memory"""
        async with await anyio.open_file(path, "rb") as f:
            while True:
                chunk = await f.read(chunk_size)
                if not chunk:
                    break
                yield chunk

    def delete(self, path: Optional[Path]) -> bool:
        """Best-effort removal. Never raises; returns True if the file is gone"""
        if path is None:
            return True
        try:
            os.remove(path)
            logger.debug(f"🗑️ Deleted {path}")
            return True
        except FileNotFoundError:
            return True
        except (OSError, ValueError) as e:
            logger.error(f"❌ Error deleting file {path}: {e}")
            return False

    def stat_age(self, path: Path, now: Optional[float] = None) -> float:
        """Seconds since the file was last modified"""
        current = time.time() if now is None else now
        return current - os.stat(path).st_mtime

    def list_entries(self, directory: Path) -> List[Path]:
        """Regular files currently in directory (one snapshot, not a live view)"""
        with os.scandir(directory) as it:
            return [Path(entry.path) for entry in it if entry.is_file(follow_symlinks=False)]
