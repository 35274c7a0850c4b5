"""
BLOOMFIT Exercise Service - Video Source Adapter

Acquires a camera stream through OpenCV, walking a prioritized list of
capture constraints from most to least demanding. Failures are classified
so the client can show the right message and a retry affordance.
"""

import asyncio
import errno
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# ERRORS
# ═══════════════════════════════════════════════════════════════════════════════

class CameraErrorKind(str, Enum):
    """Classified camera failure."""
    PERMISSION_DENIED = "permission_denied"
    DEVICE_NOT_FOUND = "device_not_found"
    DEVICE_BUSY = "device_busy"
    UNSUPPORTED = "unsupported"
    TIMEOUT = "timeout"
    GENERIC = "generic"


USER_MESSAGES: Dict[CameraErrorKind, str] = {
    CameraErrorKind.PERMISSION_DENIED: (
        "Camera access was denied. Please enable camera permissions and try again."
    ),
    CameraErrorKind.DEVICE_NOT_FOUND: "No camera device found. Please connect a camera and try again.",
    CameraErrorKind.DEVICE_BUSY: (
        "Camera is being used by another application. Please close other apps using the camera and try again."
    ),
    CameraErrorKind.UNSUPPORTED: "Camera access is not supported on this device.",
    CameraErrorKind.TIMEOUT: "The camera did not deliver a frame in time. Please try again.",
    CameraErrorKind.GENERIC: "Camera error. Please check your camera settings and try again.",
}

# Kinds that end acquisition immediately instead of trying the next constraint
TERMINAL_KINDS = {CameraErrorKind.PERMISSION_DENIED, CameraErrorKind.TIMEOUT}


class CameraError(Exception):
    """Camera could not be acquired."""

    def __init__(self, kind: CameraErrorKind, message: Optional[str] = None):
        super().__init__(message or USER_MESSAGES[kind])
        self.kind = kind

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind]

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "message": self.user_message, "detail": str(self)}


def classify_camera_error(error: BaseException) -> CameraErrorKind:
    """Map a raw capture failure to a CameraErrorKind."""
    if isinstance(error, CameraError):
        return error.kind
    if isinstance(error, PermissionError):
        return CameraErrorKind.PERMISSION_DENIED
    if isinstance(error, FileNotFoundError):
        return CameraErrorKind.DEVICE_NOT_FOUND
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return CameraErrorKind.TIMEOUT
    if isinstance(error, NotImplementedError):
        return CameraErrorKind.UNSUPPORTED
    if isinstance(error, OSError) and error.errno == errno.EBUSY:
        return CameraErrorKind.DEVICE_BUSY

    message = str(error).lower()
    if "permission denied" in message or "not authorized" in message:
        return CameraErrorKind.PERMISSION_DENIED
    if "not found" in message or "no device" in message:
        return CameraErrorKind.DEVICE_NOT_FOUND
    if "in use" in message or "busy" in message:
        return CameraErrorKind.DEVICE_BUSY
    if "not supported" in message:
        return CameraErrorKind.UNSUPPORTED
    return CameraErrorKind.GENERIC


# ═══════════════════════════════════════════════════════════════════════════════
# CONSTRAINTS AND STREAM
# ═══════════════════════════════════════════════════════════════════════════════

# Device index offset per facing mode; "environment" is the second camera
FACING_MODE_OFFSETS = {"user": 0, "environment": 1}


@dataclass(frozen=True)
class CaptureConstraint:
    """One capture attempt: resolution, frame rate and facing mode (all optional)."""
    width: Optional[int] = None
    height: Optional[int] = None
    fps: Optional[int] = None
    facing_mode: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CaptureConstraint":
        return cls(
            width=data.get("width"),
            height=data.get("height"),
            fps=data.get("fps"),
            facing_mode=data.get("facing_mode"),
        )

    def with_facing_mode(self, facing_mode: str) -> "CaptureConstraint":
        return CaptureConstraint(self.width, self.height, self.fps, facing_mode)

    def describe(self) -> str:
        parts = []
        if self.width and self.height:
            parts.append(f"{self.width}x{self.height}")
        if self.fps:
            parts.append(f"{self.fps}fps")
        if self.facing_mode:
            parts.append(self.facing_mode)
        return " ".join(parts) or "any"


def default_constraints() -> List[CaptureConstraint]:
    return [CaptureConstraint.from_dict(c) for c in settings.CAMERA_CONSTRAINTS]


class _FirstFrameRead:
    """
    The first capture.read() of an attempt.

    If the caller gives up while the read is still blocked, the capture is
    released by whichever side finishes last, never while read() is running.
    """

    def __init__(self, capture: Any):
        self.capture = capture
        self._lock = threading.Lock()
        self._finished = False
        self._abandoned = False

    def __call__(self) -> Tuple[bool, Optional[np.ndarray]]:
        try:
            return self.capture.read()
        finally:
            with self._lock:
                self._finished = True
                release = self._abandoned
            if release:
                self.capture.release()

    def abandon(self) -> None:
        with self._lock:
            self._abandoned = True
            release = self._finished
        if release:
            self.capture.release()


class CameraStream:
    """An open capture device. Frames are BGR numpy arrays."""

    def __init__(self, capture: Any, constraint: CaptureConstraint, device_index: int,
                 first_frame: Optional[np.ndarray] = None):
        self.capture = capture
        self.constraint = constraint
        self.device_index = device_index
        self._released = False
        self._dimensions: Optional[Tuple[int, int]] = None
        self._pending_frame = first_frame
        if first_frame is not None:
            self._dimensions = (first_frame.shape[1], first_frame.shape[0])

    @property
    def released(self) -> bool:
        return self._released

    @property
    def dimensions(self) -> Optional[Tuple[int, int]]:
        """(width, height) of the most recent frame."""
        return self._dimensions

    def read(self) -> Optional[np.ndarray]:
        """Read the next frame (blocking). None once released or on read failure."""
        if self._released:
            return None
        if self._pending_frame is not None:
            frame, self._pending_frame = self._pending_frame, None
            return frame
        ok, frame = self.capture.read()
        if not ok or frame is None:
            return None
        self._dimensions = (frame.shape[1], frame.shape[0])
        return frame

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._pending_frame = None
        self.capture.release()


# ═══════════════════════════════════════════════════════════════════════════════
# ADAPTER
# ═══════════════════════════════════════════════════════════════════════════════

class VideoSourceAdapter:
    """
    Acquires and releases camera streams.

    acquire() tries each constraint in order. Permission denial and the
    first-frame timeout end the attempt immediately; other failures move on
    to the next constraint. Exhausting the list raises one CameraError
    classified from the last failure.
    """

    def __init__(
        self,
        device_index: Optional[int] = None,
        constraints: Optional[Sequence[CaptureConstraint]] = None,
        first_frame_timeout: Optional[float] = None,
        capture_factory: Optional[Callable[[int], Any]] = None
    ):
        self.device_index = device_index if device_index is not None else settings.CAMERA_DEVICE_INDEX
        self.constraints = list(constraints) if constraints is not None else default_constraints()
        self.first_frame_timeout = first_frame_timeout or settings.CAMERA_FIRST_FRAME_TIMEOUT
        self.capture_factory = capture_factory or cv2.VideoCapture

    def _device_for(self, constraint: CaptureConstraint) -> int:
        return self.device_index + FACING_MODE_OFFSETS.get(constraint.facing_mode or "user", 0)

    def _open(self, constraint: CaptureConstraint) -> Any:
        """Open and configure a capture device (blocking)."""
        device = self._device_for(constraint)
        capture = self.capture_factory(device)
        if not capture.isOpened():
            capture.release()
            raise CameraError(CameraErrorKind.DEVICE_NOT_FOUND, f"Camera {device} could not be opened")

        if constraint.width:
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, float(constraint.width))
        if constraint.height:
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, float(constraint.height))
        if constraint.fps:
            capture.set(cv2.CAP_PROP_FPS, float(constraint.fps))
        return capture

    async def _attempt(self, constraint: CaptureConstraint) -> CameraStream:
        loop = asyncio.get_running_loop()
        capture = await loop.run_in_executor(None, self._open, constraint)

        first_read = _FirstFrameRead(capture)
        try:
            ok, frame = await asyncio.wait_for(
                loop.run_in_executor(None, first_read),
                timeout=self.first_frame_timeout
            )
        except asyncio.TimeoutError:
            first_read.abandon()
            raise CameraError(
                CameraErrorKind.TIMEOUT,
                f"No frame within {self.first_frame_timeout}s ({constraint.describe()})"
            )
        except BaseException:
            first_read.abandon()
            raise

        if not ok or frame is None:
            capture.release()
            raise CameraError(CameraErrorKind.GENERIC, f"Camera opened but delivered no frames ({constraint.describe()})")

        return CameraStream(capture, constraint, self._device_for(constraint), first_frame=frame)

    async def acquire(self, constraints: Optional[Sequence[CaptureConstraint]] = None) -> CameraStream:
        """Open the first camera configuration that works."""
        attempts = list(constraints) if constraints is not None else self.constraints
        if not attempts:
            raise CameraError(CameraErrorKind.UNSUPPORTED, "No capture constraints configured")

        last_error: Optional[CameraError] = None
        for constraint in attempts:
            logger.debug(f"📷 Trying camera constraint: {constraint.describe()}")
            try:
                stream = await self._attempt(constraint)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e if isinstance(e, CameraError) else CameraError(classify_camera_error(e), str(e))
                logger.warning(f"Camera constraint failed ({constraint.describe()}): {error.kind.value}: {error}")
                if error.kind in TERMINAL_KINDS:
                    raise error
                last_error = error
                continue

            logger.info(f"✅ Camera stream acquired: device {stream.device_index}, {constraint.describe()}")
            return stream

        logger.error(f"❌ All {len(attempts)} camera constraint attempts failed")
        raise CameraError(last_error.kind, f"Cannot access camera with any settings: {last_error}")

    def release(self, stream: Optional[CameraStream]) -> None:
        """Stop the stream. Safe with None or an already released stream."""
        if stream is None or stream.released:
            return
        stream.release()
        logger.info(f"📷 Camera {stream.device_index} released")

    async def switch_facing_mode(self, current: Optional[CameraStream], facing_mode: str = "environment") -> CameraStream:
        """
        Release the current stream and re-acquire with another facing mode,
        falling back to the default constraint list.
        """
        self.release(current)
        switched = [c.with_facing_mode(facing_mode) for c in self.constraints]
        try:
            return await self.acquire(switched)
        except CameraError as e:
            if e.kind == CameraErrorKind.PERMISSION_DENIED:
                raise
            logger.warning(f"Switching to '{facing_mode}' camera failed, using default: {e}")
            return await self.acquire()
