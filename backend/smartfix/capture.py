"""
Media capture adapters: still frames as ``data:image/...;base64,`` strings.
"""
import base64
import logging
import mimetypes
from pathlib import Path
from typing import Awaitable, Callable, Optional

import aiofiles

logger = logging.getLogger(__name__)


class MediaDeviceError(Exception):
    """Camera missing, busy, released, or permission denied."""

    def __init__(self, message: str, code: str = "unavailable"):
        super().__init__(message)
        self.code = code


def to_data_uri(image: bytes, mime_type: str = "image/jpeg") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(image).decode('ascii')}"


class FrameSource:
    supported = True

    def __init__(self):
        self.released = False

    async def capture(self) -> str:
        raise NotImplementedError

    def release(self) -> None:
        self.released = True

    def _check_open(self) -> None:
        if self.released:
            raise MediaDeviceError("Camera has been released", code="released")


class UnsupportedCamera(FrameSource):
    """No camera on this platform; capture always fails."""
    supported = False

    async def capture(self) -> str:
        raise MediaDeviceError("No camera available", code="unavailable")


class StillImageSource(FrameSource):
    """Serves an image file as the current frame (bench testing, kiosks)."""

    def __init__(self, path: str, mime_type: Optional[str] = None):
        super().__init__()
        self.path = Path(path)
        self.mime_type = mime_type or mimetypes.guess_type(self.path.name)[0] or "image/jpeg"

    async def capture(self) -> str:
        self._check_open()
        try:
            async with aiofiles.open(self.path, "rb") as f:
                image = await f.read()
        except FileNotFoundError as e:
            raise MediaDeviceError(f"Frame source not found: {self.path}", code="unavailable") from e
        except PermissionError as e:
            raise MediaDeviceError(f"Permission denied: {self.path}", code="permission_denied") from e
        return to_data_uri(image, self.mime_type)


class CallbackFrameSource(FrameSource):
    """Wraps a driver coroutine that returns encoded JPEG bytes."""

    def __init__(self, grab: Callable[[], Awaitable[bytes]], close: Optional[Callable[[], None]] = None):
        super().__init__()
        self._grab = grab
        self._close = close

    async def capture(self) -> str:
        self._check_open()
        frame = await self._grab()
        if not frame:
            raise MediaDeviceError("Camera returned an empty frame", code="unavailable")
        return to_data_uri(frame)

    def release(self) -> None:
        if not self.released and self._close is not None:
            self._close()
        super().release()
