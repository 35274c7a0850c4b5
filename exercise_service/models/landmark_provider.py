"""
BLOOMFIT Exercise Service - Landmark Provider

Facade over the external pose-estimation engine (MediaPipe Pose Landmarker)
and the fixed-cadence detection loop that feeds the analyzer and overlay.
"""

import asyncio
import inspect
import logging
import time
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Awaitable, Callable, FrozenSet, List, Optional, Tuple, Union

import cv2
import numpy as np

from core.config import settings
from core.scheduling import PeriodicTask

from .landmarks import POSE_CONNECTIONS, Landmark

logger = logging.getLogger(__name__)


class DetectionError(Exception):
    """A single detection call failed. Non-fatal: the loop continues."""


class EngineInitError(Exception):
    """The pose engine could not be loaded."""


# Called with (landmarks or None, frame, timestamp) for every detection
ResultCallback = Callable[[Optional[List[Landmark]], np.ndarray, float], Union[None, Awaitable[None]]]
FrameSource = Callable[[], Optional[np.ndarray]]


# ═══════════════════════════════════════════════════════════════════════════════
# ENGINE CAPABILITY
# ═══════════════════════════════════════════════════════════════════════════════

class PoseEngine:
    """Narrow capability interface over an external pose-estimation engine."""

    name: str = "pose-engine"

    @property
    def connections(self) -> FrozenSet[Tuple[int, int]]:
        """Skeleton topology used to draw connecting segments."""
        return POSE_CONNECTIONS

    def load(self) -> None:
        """Load model assets (blocking). Raises on failure."""
        raise NotImplementedError

    def is_ready(self) -> bool:
        raise NotImplementedError

    def process(self, frame_bgr: np.ndarray, timestamp_ms: int) -> Optional[List[Landmark]]:
        """Run detection on one BGR frame; None when no body was found."""
        raise NotImplementedError

    def close(self) -> None:
        pass


class MediaPipePoseEngine(PoseEngine):
    """
    MediaPipe Pose Landmarker (Tasks API, VIDEO running mode).

    Timestamps passed to the landmarker are kept strictly increasing, which
    the VIDEO mode requires.
    """

    name = "mediapipe-pose-landmarker"

    def __init__(
        self,
        model_path: Optional[str] = None,
        model_url: Optional[str] = None,
        auto_download: Optional[bool] = None,
        min_detection_confidence: Optional[float] = None,
        min_tracking_confidence: Optional[float] = None
    ):
        self.model_path = Path(model_path or settings.POSE_MODEL_PATH)
        self.model_url = model_url or settings.POSE_MODEL_URL
        self.auto_download = settings.POSE_MODEL_AUTO_DOWNLOAD if auto_download is None else auto_download
        self.min_detection_confidence = min_detection_confidence or settings.MIN_DETECTION_CONFIDENCE
        self.min_tracking_confidence = min_tracking_confidence or settings.MIN_TRACKING_CONFIDENCE
        self._mp = None
        self._landmarker = None
        self._last_ts_ms = -1

    def _ensure_model(self) -> Path:
        if self.model_path.exists():
            return self.model_path
        if not self.auto_download:
            raise FileNotFoundError(f"Pose model not found at {self.model_path}")
        logger.info(f"⬇️ Downloading pose model to {self.model_path}...")
        self.model_path.parent.mkdir(parents=True, exist_ok=True)
        urllib.request.urlretrieve(self.model_url, str(self.model_path))
        return self.model_path

    def load(self) -> None:
        import mediapipe as mp
        from mediapipe.tasks import python as mp_python
        from mediapipe.tasks.python import vision

        model_path = self._ensure_model()
        options = vision.PoseLandmarkerOptions(
            base_options=mp_python.BaseOptions(model_asset_path=str(model_path)),
            running_mode=vision.RunningMode.VIDEO,
            num_poses=1,
            min_pose_detection_confidence=self.min_detection_confidence,
            min_tracking_confidence=self.min_tracking_confidence,
        )
        self._landmarker = vision.PoseLandmarker.create_from_options(options)
        self._mp = mp
        logger.info("✅ MediaPipe pose landmarker initialized")

    def is_ready(self) -> bool:
        return self._landmarker is not None

    def _next_ts_ms(self, timestamp_ms: int) -> int:
        ts = max(int(timestamp_ms), self._last_ts_ms + 1)
        self._last_ts_ms = ts
        return ts

    def process(self, frame_bgr: np.ndarray, timestamp_ms: int) -> Optional[List[Landmark]]:
        if self._landmarker is None:
            raise DetectionError("Pose landmarker not loaded")

        rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
        image = self._mp.Image(image_format=self._mp.ImageFormat.SRGB, data=rgb)
        result = self._landmarker.detect_for_video(image, self._next_ts_ms(timestamp_ms))

        if not result.pose_landmarks:
            return None

        return [
            Landmark(index=idx, x=lm.x, y=lm.y, z=lm.z, visibility=lm.visibility)
            for idx, lm in enumerate(result.pose_landmarks[0])
        ]

    def close(self) -> None:
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None


# ═══════════════════════════════════════════════════════════════════════════════
# LANDMARK PROVIDER
# ═══════════════════════════════════════════════════════════════════════════════

class LandmarkProvider:
    """
    Drives detection for an active tracking session.

    - Engine readiness is a future resolved once by the loader and awaited
      with a bounded timeout.
    - If the engine cannot be loaded the provider switches to fallback mode
      and reports None for every frame, so the overlay animates and the
      analyzer simulates.
    - Engine calls run on a single dedicated worker, so one detection is in
      flight at a time even across a restart. deactivate() cancels the loop
      and any result arriving afterwards is dropped.
    """

    def __init__(
        self,
        engine: PoseEngine,
        interval: Optional[float] = None,
        ready_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.engine = engine
        self.interval = interval if interval is not None else settings.DETECTION_INTERVAL
        self.ready_timeout = ready_timeout if ready_timeout is not None else settings.ENGINE_READY_TIMEOUT
        self.clock = clock

        self.fallback_mode = False
        self.frames_processed = 0
        self.detection_errors = 0

        self._ready: Optional[asyncio.Future] = None
        self._loop_task: Optional[PeriodicTask] = None
        self._active = False
        self._generation = 0
        self._engine_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pose-engine")

    @property
    def active(self) -> bool:
        return self._active

    @property
    def connections(self) -> FrozenSet[Tuple[int, int]]:
        return self.engine.connections

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    async def _load_engine(self, ready: asyncio.Future) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.engine.load)
        except Exception as e:
            if not ready.done():
                ready.set_exception(EngineInitError(f"{self.engine.name} failed to load: {e}"))
            return
        if not ready.done():
            ready.set_result(True)

    async def prepare(self) -> bool:
        """
        Wait for the engine to become ready. Returns False (fallback mode)
        if loading fails or does not finish within the ready timeout.
        """
        if self.engine.is_ready():
            return True
        if self.fallback_mode:
            return False

        if self._ready is None:
            self._ready = asyncio.get_running_loop().create_future()
            asyncio.get_running_loop().create_task(self._load_engine(self._ready))

        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self.ready_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                f"⚠️ {self.engine.name} not ready after {self.ready_timeout}s. Using simulated tracking."
            )
            self.fallback_mode = True
            return False
        except EngineInitError as e:
            logger.warning(f"⚠️ {e}. Using simulated tracking.")
            self.fallback_mode = True
            return False

        return True

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return self._active and generation == self._generation

    async def detect(self, frame: np.ndarray, on_result: ResultCallback, generation: Optional[int] = None) -> None:
        """
        Detect landmarks in one frame and hand them to on_result.

        Detection failures are logged and swallowed; the callback is not
        invoked for a failed frame or for results that arrive after the
        provider was deactivated.
        """
        if generation is None:
            generation = self._generation
        now = self.clock()
        landmarks: Optional[List[Landmark]] = None

        if not self.fallback_mode:
            loop = asyncio.get_running_loop()
            try:
                landmarks = await loop.run_in_executor(
                    self._engine_executor, self.engine.process, frame, int(now * 1000)
                )
            except Exception as e:
                self.detection_errors += 1
                logger.warning(f"Pose detection error: {e}")
                return

        if not self._is_current(generation):
            logger.debug("Dropping detection result that arrived after deactivation")
            return

        self.frames_processed += 1
        result = on_result(landmarks, frame, now)
        if inspect.isawaitable(result):
            await result

    async def activate(self, frame_source: FrameSource, on_result: ResultCallback) -> None:
        """Start the detection loop (after waiting for engine readiness)."""
        if self._active:
            return
        await self.prepare()

        self._active = True
        self._generation += 1
        generation = self._generation

        async def iteration() -> None:
            frame = await asyncio.get_running_loop().run_in_executor(None, frame_source)
            if frame is None or not self._is_current(generation):
                return
            await self.detect(frame, on_result, generation)

        self._loop_task = PeriodicTask(iteration, self.interval, name="detection-loop").start()
        mode = "simulated" if self.fallback_mode else self.engine.name
        logger.info(f"🎬 Detection loop started ({mode}, every {self.interval * 1000:.0f}ms)")

    def deactivate(self) -> None:
        """Stop the loop immediately. Pending results are discarded."""
        if not self._active and self._loop_task is None:
            return
        self._active = False
        self._generation += 1
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
        logger.info(f"🛑 Detection loop stopped ({self.frames_processed} frames, {self.detection_errors} errors)")

    def close(self) -> None:
        self.deactivate()
        # Let a running engine call finish before the landmarker is torn down
        self._engine_executor.shutdown(wait=True)
        self.engine.close()

    def get_stats(self) -> dict:
        return {
            "engine": self.engine.name,
            "ready": self.engine.is_ready(),
            "fallback_mode": self.fallback_mode,
            "active": self._active,
            "frames_processed": self.frames_processed,
            "detection_errors": self.detection_errors,
        }
