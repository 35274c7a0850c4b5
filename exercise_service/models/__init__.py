"""
BLOOMFIT Exercise Service Models

Camera acquisition, MediaPipe landmark tracking, rule-based motion analysis,
skeleton overlay and the exercise session lifecycle.
"""

from .landmarks import (
    Landmark,
    JointType,
    LandmarkGroup,
    POSE_CONNECTIONS,
)

from .video_source import (
    VideoSourceAdapter,
    CameraStream,
    CaptureConstraint,
    CameraError,
    CameraErrorKind,
)

from .landmark_provider import (
    LandmarkProvider,
    PoseEngine,
    MediaPipePoseEngine,
    DetectionError,
)

from .motion_analyzer import (
    MotionAnalyzer,
    TrackingState,
    AnalysisResult,
    Direction,
)

from .overlay import (
    Canvas,
    OverlayRenderer,
)

from .exercise_session import (
    SessionController,
    SessionSummary,
    SessionEvent,
    EventType,
    CameraState,
    ExerciseState,
    SessionPreconditionError,
    get_session_controller,
)

__all__ = [
    # Landmarks
    "Landmark",
    "JointType",
    "LandmarkGroup",
    "POSE_CONNECTIONS",
    # Video Source
    "VideoSourceAdapter",
    "CameraStream",
    "CaptureConstraint",
    "CameraError",
    "CameraErrorKind",
    # Landmark Provider
    "LandmarkProvider",
    "PoseEngine",
    "MediaPipePoseEngine",
    "DetectionError",
    # Motion Analyzer
    "MotionAnalyzer",
    "TrackingState",
    "AnalysisResult",
    "Direction",
    # Overlay
    "Canvas",
    "OverlayRenderer",
    # Session
    "SessionController",
    "SessionSummary",
    "SessionEvent",
    "EventType",
    "CameraState",
    "ExerciseState",
    "SessionPreconditionError",
    "get_session_controller",
]
