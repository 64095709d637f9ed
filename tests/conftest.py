import io
import stat
import sys
from pathlib import Path
from typing import Callable

import pytest
from PIL import Image

from core.config import Settings

# Stand-in for realesrgan-ncnn-vulkan: same argument contract, behaviour picked by MODE
FAKE_TOOL = """#!{python}
import json
import os
import sys
import time

MODE = {mode!r}
args = dict(zip(sys.argv[1::2], sys.argv[2::2]))
with open({log!r}, "a") as log:
    log.write(json.dumps(sys.argv[1:]) + "\\n")

print("realesrgan: processing " + args["-i"])
print("0.00%", file=sys.stderr)

if MODE == "fail":
    print("vkCreateInstance failed -9", file=sys.stderr)
    sys.exit(3)
if MODE == "no-output":
    sys.exit(0)
if MODE == "detached":
    sys.stdout.flush()
    sys.stderr.flush()
    os.close(1)
    os.close(2)
    time.sleep(20)
if MODE == "sleep":
    time.sleep(30)
if MODE == "noisy":
    sys.stdout.write("o" * (2 * 1024 * 1024))
    sys.stderr.write("e" * (2 * 1024 * 1024))
    sys.stdout.flush()
    sys.stderr.flush()

with open(args["-i"], "rb") as src, open(args["-o"], "wb") as dst:
    dst.write(src.read() * 2)
print("100.00%", file=sys.stderr)
"""


@pytest.fixture()
def make_tool(tmp_path: Path) -> Callable[[str], Path]:
    """Write an executable fake upscaler for the given mode and return its path"""

    def _make(mode: str = "ok") -> Path:
        tool = tmp_path / "bin" / f"realesrgan-{mode}"
        tool.parent.mkdir(parents=True, exist_ok=True)
        log = tmp_path / "bin" / f"{mode}.log"
        tool.write_text(FAKE_TOOL.format(python=sys.executable, mode=mode, log=str(log)))
        tool.chmod(tool.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return tool

    return _make


@pytest.fixture()
def make_settings(tmp_path: Path, make_tool) -> Callable[..., Settings]:
    def _make(mode: str = "ok", **overrides) -> Settings:
        values = dict(
            upload_dir=tmp_path / "uploads",
            output_dir=tmp_path / "outputs",
            executable_path=make_tool(mode),
            models_dir=tmp_path / "models",
            log_level="DEBUG",
        )
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture()
def png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()

