"""
BLOOMFIT Exercise Service - Session Controller

Owns the camera stream, the overlay canvas and the exercise lifecycle:
Idle -> Active <-> Paused -> Idle. Aggregates duration, repetitions and
posture score, and submits a summary when the session stops.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import numpy as np
from pydantic import BaseModel, Field

from core.config import settings
from core.persistence import (
    PendingSubmissionQueue,
    PersistenceError,
    SessionRepository,
    get_repository,
)
from core.scheduling import PeriodicTask
from shared.utils import format_duration, get_now_iso

from .landmark_provider import LandmarkProvider, MediaPipePoseEngine
from .landmarks import Landmark
from .motion_analyzer import AnalysisResult, MotionAnalyzer
from .overlay import Canvas, OverlayRenderer, composite, encode_frame
from .video_source import CameraError, CameraStream, VideoSourceAdapter

logger = logging.getLogger(__name__)


class CameraState(str, Enum):
    PERMISSION = "permission"
    LOADING = "loading"
    ACTIVE = "active"
    ERROR = "error"


class ExerciseState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"


class SessionPreconditionError(Exception):
    """Operation not allowed in the current camera/exercise state."""


class SessionSummary(BaseModel):
    """Aggregate of a completed session, submitted to the persistence API."""
    exercise_type: str
    duration_seconds: int = Field(ge=0)
    repetition_count: int = Field(ge=0)
    accuracy: float = Field(ge=0, le=100)
    posture_score: float = Field(ge=0, le=100)
    notes: str = ""

    def to_payload(self) -> Dict[str, Any]:
        """Wire format expected by POST /api/exercise-sessions."""
        return {
            "exerciseType": self.exercise_type,
            "duration": self.duration_seconds,
            "reps": self.repetition_count,
            "accuracy": self.accuracy,
            "postureScore": self.posture_score,
            "notes": self.notes,
        }


# ═══════════════════════════════════════════════════════════════════════════════
# EVENTS
# ═══════════════════════════════════════════════════════════════════════════════

class EventType(str, Enum):
    CAMERA_STATE = "CAMERA_STATE"
    SESSION_STATE = "SESSION_STATE"
    POSTURE_UPDATE = "POSTURE_UPDATE"
    REP_COUNT = "REP_COUNT"
    TIMER = "TIMER"
    NOTIFICATION = "NOTIFICATION"
    FRAME = "FRAME"


@dataclass
class SessionEvent:
    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=get_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, **self.data, "timestamp": self.timestamp}


# ═══════════════════════════════════════════════════════════════════════════════
# SESSION CONTROLLER
# ═══════════════════════════════════════════════════════════════════════════════

class SessionController:
    """
    Coordinates camera, tracking and the exercise lifecycle.

    The detection callback renders every frame; rep and score updates are
    only applied while Active, so pausing freezes the metrics while the
    overlay keeps following the user.
    """

    def __init__(
        self,
        video_source: Optional[VideoSourceAdapter] = None,
        provider: Optional[LandmarkProvider] = None,
        analyzer: Optional[MotionAnalyzer] = None,
        renderer: Optional[OverlayRenderer] = None,
        repository: Optional[SessionRepository] = None,
        exercise_type: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        tick_interval: Optional[float] = None
    ):
        self.video_source = video_source or VideoSourceAdapter()
        self.provider = provider or LandmarkProvider(MediaPipePoseEngine(), clock=clock)
        self.analyzer = analyzer or MotionAnalyzer()
        self.renderer = renderer or OverlayRenderer(connections=self.provider.connections)
        self._repository = repository
        self.exercise_type = exercise_type or settings.DEFAULT_EXERCISE_TYPE
        self.clock = clock
        self.tick_interval = tick_interval if tick_interval is not None else settings.TIMER_TICK_INTERVAL

        self.canvas = Canvas()
        self.stream: Optional[CameraStream] = None
        self.camera_state = CameraState.PERMISSION
        self.camera_error: Optional[CameraError] = None
        self.exercise_state = ExerciseState.IDLE

        self.rep_count = 0
        self.posture_score = settings.INITIAL_POSTURE_SCORE
        self.elapsed_seconds = 0
        self._scores: List[float] = []
        self._accumulated = 0.0
        self._active_since: Optional[float] = None
        self._timer: Optional[PeriodicTask] = None

        self.pending = PendingSubmissionQueue(max_size=settings.PENDING_QUEUE_SIZE)
        self.last_summary: Optional[SessionSummary] = None
        self._subscribers: List[asyncio.Queue] = []

    @property
    def repository(self) -> SessionRepository:
        if self._repository is None:
            self._repository = get_repository()
        return self._repository

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, max_size: int = 100) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=max_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event_type: EventType, **data: Any) -> SessionEvent:
        event = SessionEvent(type=event_type, data=data)
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                # Slow consumer: drop its oldest event
                queue.get_nowait()
                queue.put_nowait(event)
        return event

    def _notify(self, title: str, description: str, variant: str = "default", dismissable: bool = True) -> None:
        self.publish(
            EventType.NOTIFICATION,
            title=title,
            description=description,
            variant=variant,
            dismissable=dismissable,
        )

    def _set_camera_state(self, state: CameraState) -> None:
        self.camera_state = state
        data: Dict[str, Any] = {"state": state.value}
        if state == CameraState.ERROR and self.camera_error is not None:
            data["error"] = self.camera_error.to_dict()
        self.publish(EventType.CAMERA_STATE, **data)

    def _set_exercise_state(self, state: ExerciseState) -> None:
        self.exercise_state = state
        self.publish(EventType.SESSION_STATE, state=state.value, exercise_type=self.exercise_type)

    # ------------------------------------------------------------------
    # Camera
    # ------------------------------------------------------------------

    async def init_camera(self) -> CameraState:
        """Acquire the camera. Raises CameraError (state becomes ERROR)."""
        if self.camera_state == CameraState.ACTIVE and self.stream is not None and not self.stream.released:
            return self.camera_state

        self._set_camera_state(CameraState.LOADING)
        try:
            self.stream = await self.video_source.acquire()
        except CameraError as e:
            self.stream = None
            self.camera_error = e
            self._set_camera_state(CameraState.ERROR)
            logger.error(f"❌ Camera unavailable: {e.kind.value}")
            raise

        self.camera_error = None
        self._set_camera_state(CameraState.ACTIVE)
        return self.camera_state

    def _release_camera(self) -> None:
        self.video_source.release(self.stream)
        self.stream = None
        if self.camera_state != CameraState.ERROR:
            self._set_camera_state(CameraState.PERMISSION)

    async def retry_camera(self) -> CameraState:
        """Release whatever is held and acquire again."""
        if self.exercise_state != ExerciseState.IDLE:
            raise SessionPreconditionError("Stop the exercise before re-initializing the camera.")
        self.video_source.release(self.stream)
        self.stream = None
        self.camera_error = None
        self.camera_state = CameraState.PERMISSION
        return await self.init_camera()

    async def switch_camera(self, facing_mode: str = "environment") -> CameraState:
        """Re-acquire with another facing mode (falls back to the default camera)."""
        if self.exercise_state != ExerciseState.IDLE:
            raise SessionPreconditionError("Stop the exercise before switching cameras.")

        current, self.stream = self.stream, None
        self._set_camera_state(CameraState.LOADING)
        try:
            self.stream = await self.video_source.switch_facing_mode(current, facing_mode)
        except CameraError as e:
            self.camera_error = e
            self._set_camera_state(CameraState.ERROR)
            raise

        self.camera_error = None
        self._set_camera_state(CameraState.ACTIVE)
        return self.camera_state

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def elapsed(self) -> float:
        """Active time of the current session in seconds, excluding pauses."""
        running = self.clock() - self._active_since if self._active_since is not None else 0.0
        return self._accumulated + running

    async def tick(self) -> None:
        if self.exercise_state != ExerciseState.ACTIVE:
            return
        self.elapsed_seconds = int(self.elapsed())
        self.publish(EventType.TIMER, elapsed_seconds=self.elapsed_seconds, display=format_duration(self.elapsed_seconds))

    def _start_timer(self) -> None:
        self._cancel_timer()
        self._timer = PeriodicTask(self.tick, self.tick_interval, name="session-timer", run_immediately=False).start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _freeze_elapsed(self) -> None:
        if self._active_since is not None:
            self._accumulated += self.clock() - self._active_since
            self._active_since = None
        self.elapsed_seconds = int(self._accumulated)

    # ------------------------------------------------------------------
    # Tracking callback
    # ------------------------------------------------------------------

    async def _on_result(self, landmarks: Optional[List[Landmark]], frame: np.ndarray, now: float) -> None:
        if self.exercise_state == ExerciseState.IDLE:
            return

        # With a working engine, "no body" clears the overlay; only fallback animates
        drawn = landmarks if landmarks is not None or self.provider.fallback_mode else []
        self.renderer.render(self.canvas, (frame.shape[1], frame.shape[0]), drawn, now, self.rep_count)

        if landmarks is None and self.provider.fallback_mode:
            result: Optional[AnalysisResult] = self.analyzer.simulate(now)
        else:
            result = self.analyzer.analyze(landmarks, now)

        if result is not None and self.exercise_state == ExerciseState.ACTIVE:
            self._apply(result)

        if self._subscribers:
            await self._publish_frame(frame)

    def _apply(self, result: AnalysisResult) -> None:
        if result.rep_count_delta:
            self.rep_count += result.rep_count_delta
            self.publish(EventType.REP_COUNT, rep_count=self.rep_count)
        if result.score_emitted:
            self.posture_score = result.posture_score
            self._scores.append(result.posture_score)
            self.publish(EventType.POSTURE_UPDATE, posture_score=result.posture_score)

    async def _publish_frame(self, frame: np.ndarray) -> None:
        loop = asyncio.get_running_loop()
        encoded = await loop.run_in_executor(
            None, lambda: encode_frame(composite(frame, self.canvas), settings.STREAM_JPEG_QUALITY)
        )
        if encoded is not None:
            self.publish(EventType.FRAME, image=encoded, width=frame.shape[1], height=frame.shape[0])

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Start (or restart from Paused) an exercise session.

        Raises SessionPreconditionError when the camera is not active.
        """
        if self.exercise_state == ExerciseState.ACTIVE:
            return
        if self.camera_state != CameraState.ACTIVE or self.stream is None:
            self._notify("Camera Required", "Please enable your camera first to start exercising.", "destructive")
            raise SessionPreconditionError("Camera is not active.")

        if self.exercise_state == ExerciseState.PAUSED:
            self.provider.deactivate()
            self._cancel_timer()

        await self.provider.prepare()
        if self.stream is None or self.stream.released:
            raise SessionPreconditionError("Camera was released while tracking was loading.")

        self._reset_metrics()
        self.analyzer.reset()
        self._active_since = self.clock()
        self._set_exercise_state(ExerciseState.ACTIVE)
        self._start_timer()

        stream = self.stream
        await self.provider.activate(stream.read, self._on_result)

        logger.info(f"🏃 {self.exercise_type} session started")
        self._notify("Exercise Started!", f"Starting {self.exercise_type} session. Follow the real-time guidance.")

    def pause(self) -> None:
        if self.exercise_state != ExerciseState.ACTIVE:
            return
        self._freeze_elapsed()
        self._cancel_timer()
        self._set_exercise_state(ExerciseState.PAUSED)
        self._notify("Exercise Paused", "Take a break. Resume when you're ready.")

    def resume(self) -> None:
        if self.exercise_state != ExerciseState.PAUSED:
            return
        self._active_since = self.clock()
        self._set_exercise_state(ExerciseState.ACTIVE)
        self._start_timer()

    async def stop(self) -> Optional[SessionSummary]:
        """
        End the session and submit its summary.

        Returns None when no session is running. A failed submission is
        kept in the pending queue; the state resets to Idle either way.
        """
        if self.exercise_state == ExerciseState.IDLE:
            return None

        self._freeze_elapsed()
        summary = self._build_summary()

        self._cancel_timer()
        self.provider.deactivate()
        self.analyzer.reset()
        self._release_camera()
        self.canvas.clear()
        self._reset_metrics()
        self._set_exercise_state(ExerciseState.IDLE)

        logger.info(
            f"🏁 Session complete: {summary.repetition_count} reps in "
            f"{format_duration(summary.duration_seconds)}, posture {summary.posture_score}"
        )
        self.last_summary = summary
        await self._submit(summary)
        return summary

    def _reset_metrics(self) -> None:
        self.rep_count = 0
        self.elapsed_seconds = 0
        self.posture_score = settings.INITIAL_POSTURE_SCORE
        self._scores = []
        self._accumulated = 0.0
        self._active_since = None

    def _build_summary(self) -> SessionSummary:
        duration = int(self._accumulated)
        accuracy = sum(self._scores) / len(self._scores) if self._scores else self.posture_score
        minutes = int(duration / 60 + 0.5)
        return SessionSummary(
            exercise_type=self.exercise_type,
            duration_seconds=duration,
            repetition_count=self.rep_count,
            accuracy=round(accuracy, 1),
            posture_score=round(self.posture_score, 1),
            notes=f"Completed with {self.rep_count} reps in {minutes} minutes",
        )

    async def _submit(self, summary: SessionSummary) -> bool:
        try:
            record = await self.repository.save_exercise_session(summary)
        except PersistenceError as e:
            self.pending.add(summary)
            logger.error(f"❌ Failed to save exercise session ({len(self.pending)} pending): {e}")
            self._notify(
                "Error",
                "Failed to save exercise session. Please try again.",
                "destructive",
            )
            return False

        logger.info(f"💾 Exercise session saved (id: {record.record_id})")
        self._notify("Exercise Completed!", "Your session has been saved successfully.")
        return True

    async def retry_pending(self) -> Dict[str, Any]:
        """Resubmit summaries whose earlier submission failed."""
        if not len(self.pending):
            return {"stored": 0, "pending": 0}

        stored, remaining = await self.pending.retry(self.repository)
        if stored:
            self._notify("Sessions Saved", f"{len(stored)} pending session(s) saved successfully.")
        if remaining:
            self._notify("Error", f"{len(remaining)} session(s) could not be saved yet.", "destructive")
        return {"stored": len(stored), "pending": len(remaining)}

    async def shutdown(self) -> None:
        """Release every resource. An unfinished session is discarded."""
        if self.exercise_state != ExerciseState.IDLE:
            logger.warning("⚠️ Shutting down with an exercise in progress; session not saved")
        self._cancel_timer()
        self.provider.close()
        self.video_source.release(self.stream)
        self.stream = None
        self._reset_metrics()
        self.exercise_state = ExerciseState.IDLE
        self.camera_state = CameraState.PERMISSION
        self._subscribers.clear()

    def status(self) -> Dict[str, Any]:
        if self.exercise_state == ExerciseState.ACTIVE:
            self.elapsed_seconds = int(self.elapsed())
        return {
            "camera_state": self.camera_state.value,
            "camera_error": self.camera_error.to_dict() if self.camera_error else None,
            "exercise_state": self.exercise_state.value,
            "exercise_type": self.exercise_type,
            "elapsed_seconds": self.elapsed_seconds,
            "timer": format_duration(self.elapsed_seconds),
            "rep_count": self.rep_count,
            "posture_score": self.posture_score,
            "pending_submissions": len(self.pending),
            "tracking": self.provider.get_stats(),
        }


# ═══════════════════════════════════════════════════════════════════════════════
# MODULE-LEVEL SINGLETON
# ═══════════════════════════════════════════════════════════════════════════════

_controller_instance: Optional[SessionController] = None


def get_session_controller() -> SessionController:
    """Get or create the global session controller."""
    global _controller_instance
    if _controller_instance is None:
        _controller_instance = SessionController()
    return _controller_instance
