"""
Shared fakes for the exercise service tests: camera capture, pose engine,
persistence repository and a manual clock.
"""

import asyncio
import threading
import time
from collections import deque
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import pytest

from core.persistence import PersistenceError, SessionRepository, StoredRecord
from exercise_service.models.exercise_session import SessionController
from exercise_service.models.landmark_provider import LandmarkProvider, PoseEngine
from exercise_service.models.landmarks import Landmark
from exercise_service.models.motion_analyzer import MotionAnalyzer
from exercise_service.models.video_source import CaptureConstraint, VideoSourceAdapter

FRAME_WIDTH = 64
FRAME_HEIGHT = 48


# ═══════════════════════════════════════════════════════════════════════════════
# LANDMARK BUILDERS
# ═══════════════════════════════════════════════════════════════════════════════

def make_landmarks(
    hip_y: float = 0.6,
    shoulder_y: float = 0.3,
    nose_y: float = 0.1,
    visibility: Optional[float] = 0.9,
    count: int = 33
) -> List[Landmark]:
    """A body with every point at the center except nose, shoulders and hips."""
    landmarks = [Landmark(index=i, x=0.5, y=0.5, z=0.0, visibility=visibility) for i in range(count)]
    if count == 33:
        landmarks[0].y = nose_y
        landmarks[11].y = landmarks[12].y = shoulder_y
        landmarks[23].y = landmarks[24].y = hip_y
    return landmarks


def make_frame(width: int = FRAME_WIDTH, height: int = FRAME_HEIGHT) -> np.ndarray:
    return np.zeros((height, width, 3), dtype=np.uint8)


async def wait_until(predicate, timeout: float = 2.0, step: float = 0.005) -> bool:
    """Poll predicate on the running loop until true or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(step)
    return predicate()


# ═══════════════════════════════════════════════════════════════════════════════
# CAMERA
# ═══════════════════════════════════════════════════════════════════════════════

class FakeCapture:
    """Stands in for cv2.VideoCapture."""

    def __init__(self, device: int, opened: bool = True, read_ok: bool = True,
                 read_delay: float = 0.0, frame: Optional[np.ndarray] = None):
        self.device = device
        self.opened = opened
        self.read_ok = read_ok
        self.read_delay = read_delay
        self.frame = frame if frame is not None else make_frame()
        self.props: Dict[int, float] = {}
        self.release_count = 0
        self.reads = 0
        self.events: List[str] = []

    @property
    def released(self) -> bool:
        return self.release_count > 0

    def isOpened(self) -> bool:
        return self.opened and not self.released

    def set(self, prop: int, value: float) -> bool:
        self.props[prop] = value
        return True

    def read(self):
        if self.read_delay:
            time.sleep(self.read_delay)
        self.reads += 1
        self.events.append("read")
        if not self.read_ok or self.released:
            return False, None
        return True, self.frame.copy()

    def release(self) -> None:
        self.release_count += 1
        self.events.append("release")


class CaptureFactory:
    """
    Capture factory with scripted behaviour per call.

    Each positional behaviour is either an exception to raise or kwargs for
    FakeCapture; once exhausted, `default` is used.
    """

    def __init__(self, *behaviours: Any, default: Optional[Dict[str, Any]] = None):
        self.behaviours = deque(behaviours)
        self.default = default or {}
        self.captures: List[FakeCapture] = []
        self.devices: List[int] = []

    def __call__(self, device: int) -> FakeCapture:
        self.devices.append(device)
        behaviour = self.behaviours.popleft() if self.behaviours else self.default
        if isinstance(behaviour, BaseException):
            raise behaviour
        capture = FakeCapture(device, **behaviour)
        self.captures.append(capture)
        return capture


# ═══════════════════════════════════════════════════════════════════════════════
# POSE ENGINE
# ═══════════════════════════════════════════════════════════════════════════════

class FakeEngine(PoseEngine):
    """
    Scripted pose engine. Each process() call pops the next hip y from
    `hip_values` (repeating the last one once drained) and returns a full
    landmark set at that height.
    """

    name = "fake-engine"

    def __init__(self, hip_values: Iterable[float] = (0.5,), fail_load: bool = False,
                 load_delay: float = 0.0, process_delay: float = 0.0,
                 errors_on: Iterable[int] = (), return_none: bool = False):
        self.hip_values = deque(hip_values)
        self.last_hip = self.hip_values[0] if self.hip_values else 0.5
        self.fail_load = fail_load
        self.load_delay = load_delay
        self.process_delay = process_delay
        self.errors_on = set(errors_on)
        self.return_none = return_none
        self.loaded = False
        self.closed = False
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def load(self) -> None:
        if self.load_delay:
            time.sleep(self.load_delay)
        if self.fail_load:
            raise RuntimeError("model asset missing")
        self.loaded = True

    def is_ready(self) -> bool:
        return self.loaded

    def push(self, *values: float) -> None:
        self.hip_values.extend(values)

    def process(self, frame_bgr, timestamp_ms):
        with self._lock:
            self.calls += 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            return self._detect()
        finally:
            with self._lock:
                self.in_flight -= 1

    def _detect(self):
        if self.process_delay:
            time.sleep(self.process_delay)
        if self.calls in self.errors_on:
            raise RuntimeError(f"detection failed on call {self.calls}")
        if self.return_none:
            return None
        if self.hip_values:
            self.last_hip = self.hip_values.popleft()
        return make_landmarks(hip_y=self.last_hip)

    def close(self) -> None:
        self.closed = True


# ═══════════════════════════════════════════════════════════════════════════════
# PERSISTENCE
# ═══════════════════════════════════════════════════════════════════════════════

class FakeRepository(SessionRepository):
    def __init__(self, fail: bool = False, retryable: bool = True):
        self.fail = fail
        self.retryable = retryable
        self.saved: List[Any] = []
        self.attempts = 0

    async def save_exercise_session(self, summary) -> StoredRecord:
        self.attempts += 1
        if self.fail:
            raise PersistenceError("backend unavailable", status=503 if self.retryable else 400,
                                   retryable=self.retryable)
        self.saved.append(summary)
        return StoredRecord(record_id=len(self.saved), kind="exercise_session", data=summary.to_payload())


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ═══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════

@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


def make_controller(factory=None, engine=None, repository=None, clock=None) -> SessionController:
    """Session controller wired to fakes, with a fast detection loop."""
    video = VideoSourceAdapter(
        device_index=0,
        constraints=[CaptureConstraint(width=640, height=480)],
        first_frame_timeout=1.0,
        capture_factory=factory or CaptureFactory(),
    )
    provider = LandmarkProvider(engine or FakeEngine(), interval=0.001, ready_timeout=1.0)
    analyzer = MotionAnalyzer(threshold=0.02, debounce_seconds=1.0, score_interval=1.0, posture_scale=200.0)
    return SessionController(
        video_source=video,
        provider=provider,
        analyzer=analyzer,
        repository=repository or FakeRepository(),
        exercise_type="Pelvic Tilts",
        clock=clock or FakeClock(100.0),
        tick_interval=0.01,
    )
