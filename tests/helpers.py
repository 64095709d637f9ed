import io
import json
from pathlib import Path
from typing import List, Tuple

from starlette.datastructures import Headers, UploadFile
from starlette.responses import Response


def make_upload(data: bytes, filename: str = "photo.png", content_type: str = "image/png") -> UploadFile:
    return UploadFile(
        file=io.BytesIO(data),
        size=len(data),
        filename=filename,
        headers=Headers({"content-type": content_type}),
    )


def list_files(directory: Path) -> List[str]:
    if not directory.exists():
        return []
    return sorted(p.name for p in directory.iterdir())


def read_calls(tool: Path) -> List[list]:
    """argv lists recorded by the fake upscaler"""
    mode = tool.name.split("realesrgan-", 1)[1]
    log = tool.parent / f"{mode}.log"
    if not log.exists():
        return []
    return [json.loads(line) for line in log.read_text().splitlines()]


async def drive(response: Response) -> Tuple[int, dict, bytes]:
    """Run an ASGI response directly; returns (status, headers, body)"""
    messages = []

    async def receive():
        return {"type": "http.disconnect"}

    async def collect(message):
        messages.append(message)

    scope = {"type": "http", "asgi": {"version": "3.0", "spec_version": "2.4"}}
    await response(scope, receive, collect)

    start = next(m for m in messages if m["type"] == "http.response.start")
    headers = {k.decode(): v.decode() for k, v in start["headers"]}
    body = b"".join(m.get("body", b"") for m in messages if m["type"] == "http.response.body")
    return start["status"], headers, body
