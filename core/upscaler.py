"""
Real-ESRGAN (ncnn-vulkan) invocation as a child process
"""
import asyncio
import logging
import mimetypes
import os
import shutil
import time
from collections import deque
from pathlib import Path
from typing import List, Optional

from .config import Settings
from .models import ErrorCategory, InvocationResult, OutputArtifact, PipelineError, ProcessingJob

logger = logging.getLogger(__name__)

mimetypes.add_type("image/webp", ".webp")

OUTPUT_PREFIX = "upscaled_"
DEFAULT_EXTENSION = ".png"
DIAGNOSTIC_TAIL_BYTES = 64 * 1024


def output_path_for(input_path: Path, output_dir: Path) -> Path:
    """upscaled_{basename}{ext}; .png when the input has no extension"""
    input_path = Path(input_path)
    ext = input_path.suffix or DEFAULT_EXTENSION
    basename = input_path.stem if input_path.suffix else input_path.name
    return Path(output_dir) / f"{OUTPUT_PREFIX}{basename}{ext}"


def guess_content_type(path: Path) -> str:
    content_type, _ = mimetypes.guess_type(str(path))
    return content_type or "application/octet-stream"


class _TailBuffer:
    """Keeps only the last max_bytes of a stream"""

    def __init__(self, max_bytes: int = DIAGNOSTIC_TAIL_BYTES):
        self.max_bytes = max_bytes
        self._chunks = deque()
        self._size = 0

    def append(self, data: bytes) -> None:
        self._chunks.append(data)
        self._size += len(data)
        while self._size > self.max_bytes and len(self._chunks) > 1:
            self._size -= len(self._chunks.popleft())

    def text(self) -> str:
        data = b"".join(self._chunks)[-self.max_bytes:]
        return data.decode("utf-8", errors="replace")


class ProcessingInvoker:
    """Runs the external upscaler once per call and reports what happened"""

    def __init__(
        self,
        executable_path: Path,
        models_dir: Path,
        model_name: str = "realesrgan-x4plus",
        scale: int = 4,
        timeout: Optional[float] = None,
    ):
        self.executable_path = Path(executable_path)
        self.models_dir = Path(models_dir)
        self.model_name = model_name
        self.scale = scale
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProcessingInvoker":
        return cls(
            executable_path=settings.executable_path,
            models_dir=settings.models_dir,
            model_name=settings.model_name,
            scale=settings.scale,
            timeout=settings.process_timeout_seconds,
        )

    def resolve_executable(self) -> Optional[str]:
        """Configured path if it exists, else a lookup on PATH for bare names"""
        if self.executable_path.is_file():
            return str(self.executable_path)
        return shutil.which(str(self.executable_path))

    def build_args(self, input_path: Path, output_path: Path) -> List[str]:
        return [
            "-i", str(input_path),
            "-o", str(output_path),
            "-m", str(self.models_dir),
            "-n", self.model_name,
            "-s", str(self.scale),
        ]

    def prepare(self, input_path: Path, output_dir: Path) -> ProcessingJob:
        output_path = output_path_for(input_path, output_dir)
        return ProcessingJob(
            input_path=Path(input_path),
            output_dir=Path(output_dir),
            output_path=output_path,
            args=self.build_args(input_path, output_path),
            started_at=time.monotonic(),
        )

    async def invoke(self, input_path: Path, output_dir: Path) -> InvocationResult:
        """Run the tool on input_path, writing into output_dir

        The child is awaited on the event loop, so other requests keep being
        served while it runs. Both output pipes are drained continuously.
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        job = self.prepare(input_path, output_dir)

        executable = self.resolve_executable()
        if executable is None:
            return self._failure(
                "Image upscaling failed",
                f"RealESRGAN executable not found at {self.executable_path}. "
                "Please place realesrgan-ncnn-vulkan in the configured location.",
            )

        logger.info(f"🚀 Running: {executable} {' '.join(job.args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                executable,
                *job.args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return self._failure("Image upscaling failed", f"Failed to start RealESRGAN: {e}")

        stdout, stderr = _TailBuffer(), _TailBuffer()
        drains = asyncio.gather(
            _drain(process.stdout, stdout, "stdout"),
            _drain(process.stderr, stderr, "stderr"),
        )
        try:
            # One deadline for both: a child may close its pipes and keep running
            _, code = await asyncio.wait_for(
                asyncio.gather(asyncio.shield(drains), process.wait()),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            await drains
            diagnostics = _join(stdout, stderr)
            return self._failure(
                "Image upscaling failed",
                f"RealESRGAN timed out after {self.timeout}s: {diagnostics}",
                diagnostics=diagnostics,
            )

        diagnostics = _join(stdout, stderr)
        elapsed = time.monotonic() - job.started_at

        if code != 0:
            logger.error(f"❌ RealESRGAN exited with code {code} after {elapsed:.2f}s")
            return self._failure(
                "Image upscaling failed",
                f"RealESRGAN failed with code {code}: {diagnostics}",
                exit_code=code,
                diagnostics=diagnostics,
            )

        if not job.output_path.is_file():
            logger.error(f"❌ RealESRGAN exited 0 but {job.output_path} is missing")
            return self._failure(
                "Image upscaling failed",
                "Upscaling completed but output file not found",
                exit_code=code,
                diagnostics=diagnostics,
            )

        artifact = OutputArtifact(
            path=job.output_path,
            size=os.path.getsize(job.output_path),
            content_type=guess_content_type(job.output_path),
        )
        logger.info(f"✅ Upscaled {job.input_path.name} in {elapsed:.2f}s ({artifact.size} bytes)")
        return InvocationResult(artifact=artifact, diagnostics=diagnostics)

    def _failure(
        self,
        error: str,
        details: str,
        exit_code: Optional[int] = None,
        diagnostics: str = "",
    ) -> InvocationResult:
        return InvocationResult(
            error=PipelineError(
                category=ErrorCategory.INVOCATION,
                error=error,
                details=details,
                exit_code=exit_code,
            ),
            diagnostics=diagnostics,
        )


async def _drain(stream: asyncio.StreamReader, buffer: _TailBuffer, name: str) -> None:
    # read() rather than readline(): progress output may not contain newlines
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        buffer.append(chunk)
        logger.debug(f"[{name}] {chunk.decode('utf-8', errors='replace').rstrip()}")


def _join(stdout: _TailBuffer, stderr: _TailBuffer) -> str:
    return (stdout.text() + stderr.text()).strip()
