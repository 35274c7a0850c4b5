"""
BLOOMFIT Exercise Service - Motion Analyzer

Rule-based posture scoring and repetition counting from pose landmarks.
The rep counter is a single-axis direction-reversal heuristic on the hip
center, suited to repeated vertical pelvic movement (pelvic tilts, bridges).
"""

import math
import random
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Sequence, Tuple

from core.config import settings
from shared.utils import clamp

from .landmarks import JointType, Landmark, is_complete


class Direction(str, Enum):
    """Vertical movement direction of the tracked joint (image y grows downward)."""
    UP = "up"
    DOWN = "down"
    NONE = "none"


@dataclass(frozen=True)
class TrackingState:
    """Per-session analysis state, carried from frame to frame."""
    previous_joint_y: Optional[float] = None
    movement_direction: Direction = Direction.NONE
    rep_in_progress: bool = False
    rep_cooldown_until: float = 0.0
    last_score_timestamp: Optional[float] = None


@dataclass
class AnalysisResult:
    """Outcome of analyzing one frame."""
    posture_score: float
    rep_count_delta: int
    score_emitted: bool


# ═══════════════════════════════════════════════════════════════════════════════
# PURE FUNCTIONS
# ═══════════════════════════════════════════════════════════════════════════════

def hip_center_y(landmarks: Sequence[Landmark]) -> float:
    return (landmarks[JointType.LEFT_HIP.value].y + landmarks[JointType.RIGHT_HIP.value].y) / 2


def shoulder_center_y(landmarks: Sequence[Landmark]) -> float:
    return (landmarks[JointType.LEFT_SHOULDER.value].y + landmarks[JointType.RIGHT_SHOULDER.value].y) / 2


def compute_posture_score(landmarks: Sequence[Landmark], scale: float = 200.0) -> float:
    """
    Heuristic spinal-alignment proxy in [0, 100].

    spine_alignment = |head_y - shoulder_center_y - hip_center_y|
    score = clamp(100 - spine_alignment * scale, 0, 100)
    """
    head_y = landmarks[JointType.NOSE.value].y
    spine_alignment = abs(head_y - shoulder_center_y(landmarks) - hip_center_y(landmarks))
    score = 100.0 - spine_alignment * scale
    if math.isnan(score):
        return 0.0
    return clamp(score, 0.0, 100.0)


def step_reps(
    state: TrackingState,
    joint_y: float,
    now: float,
    threshold: float = 0.02,
    debounce_seconds: float = 1.0
) -> Tuple[TrackingState, int]:
    """
    Advance the direction-reversal rep counter by one frame.

    Returns the new state and 0 or 1 repetitions counted on this frame.
    """
    if state.rep_in_progress and now >= state.rep_cooldown_until:
        state = replace(state, rep_in_progress=False)

    # First frame only records the baseline
    if state.previous_joint_y is None:
        return replace(state, previous_joint_y=joint_y), 0

    movement = joint_y - state.previous_joint_y
    direction = state.movement_direction
    rep_in_progress = state.rep_in_progress
    cooldown_until = state.rep_cooldown_until
    delta = 0

    if abs(movement) > threshold:
        new_direction = Direction.DOWN if movement > 0 else Direction.UP

        if direction == Direction.DOWN and new_direction == Direction.UP and not rep_in_progress:
            delta = 1
            rep_in_progress = True
            cooldown_until = now + debounce_seconds

        direction = new_direction

    return replace(
        state,
        previous_joint_y=joint_y,
        movement_direction=direction,
        rep_in_progress=rep_in_progress,
        rep_cooldown_until=cooldown_until,
    ), delta


def should_emit_score(state: TrackingState, now: float, interval: float = 1.0) -> bool:
    return state.last_score_timestamp is None or now - state.last_score_timestamp > interval


# ═══════════════════════════════════════════════════════════════════════════════
# MOTION ANALYZER
# ═══════════════════════════════════════════════════════════════════════════════

class MotionAnalyzer:
    """
    Consumes one landmark set per frame and produces a posture score and
    repetition deltas.

    The score is computed every frame but only flagged for emission at most
    once per score interval, so observers do not flicker at detection rate.
    """

    def __init__(
        self,
        threshold: Optional[float] = None,
        debounce_seconds: Optional[float] = None,
        score_interval: Optional[float] = None,
        posture_scale: Optional[float] = None,
        rng: Optional[random.Random] = None
    ):
        self.threshold = threshold if threshold is not None else settings.REP_MOVEMENT_THRESHOLD
        self.debounce_seconds = debounce_seconds if debounce_seconds is not None else settings.REP_DEBOUNCE_SECONDS
        self.score_interval = score_interval if score_interval is not None else settings.SCORE_EMIT_INTERVAL
        self.posture_scale = posture_scale if posture_scale is not None else settings.POSTURE_SCALE
        self.rng = rng or random.Random()
        self.state = TrackingState()

    def reset(self) -> None:
        """Drop all tracking state (called when tracking starts or stops)."""
        self.state = TrackingState()

    def analyze(self, landmarks: Optional[Sequence[Landmark]], now: float) -> Optional[AnalysisResult]:
        """
        Analyze one detection.

        Returns None for anything other than a full 33-point landmark set.
        """
        if not is_complete(landmarks):
            return None

        score = compute_posture_score(landmarks, self.posture_scale)
        emitted = should_emit_score(self.state, now, self.score_interval)
        if emitted:
            self.state = replace(self.state, last_score_timestamp=now)

        self.state, delta = step_reps(
            self.state,
            hip_center_y(landmarks),
            now,
            threshold=self.threshold,
            debounce_seconds=self.debounce_seconds,
        )
        return AnalysisResult(posture_score=round(score, 1), rep_count_delta=delta, score_emitted=emitted)

    def simulate(self, now: float) -> AnalysisResult:
        """
        Simulated scoring used while the pose engine is unavailable.

        Once per score interval: a slowly oscillating score around 75 with a
        little noise, and a repetition with 30% probability.
        """
        if not should_emit_score(self.state, now, self.score_interval):
            return AnalysisResult(posture_score=0.0, rep_count_delta=0, score_emitted=False)

        self.state = replace(self.state, last_score_timestamp=now)
        base = 75 + math.sin(now / 5.0) * 15
        variation = (self.rng.random() - 0.5) * 10
        score = float(round(clamp(base + variation, 0.0, 100.0)))
        delta = 1 if self.rng.random() < 0.3 else 0
        return AnalysisResult(posture_score=score, rep_count_delta=delta, score_emitted=True)
