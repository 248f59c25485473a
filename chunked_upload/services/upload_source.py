# services/upload_source.py
import asyncio
import mimetypes
import os
from typing import Optional


class FileSource:
    """A file on disk, read part by part"""

    def __init__(self, path: str, mime_type: Optional[str] = None):
        self.path = path
        self.name = os.path.basename(path)
        self.size = os.path.getsize(path)
        self.mime_type = mime_type or mimetypes.guess_type(path)[0] or "application/octet-stream"

    async def read_range(self, start: int, end: int) -> bytes:
        return await asyncio.to_thread(self._read, start, end)

    def _read(self, start: int, end: int) -> bytes:
        with open(self.path, "rb") as fh:
            fh.seek(start)
            return fh.read(end - start)


class BytesSource:
    """An in-memory payload"""

    def __init__(self, name: str, data: bytes, mime_type: str = "application/octet-stream"):
        self.name = name
        self.data = data
        self.size = len(data)
        self.mime_type = mime_type

    async def read_range(self, start: int, end: int) -> bytes:
        return self.data[start:end]
