"""
BLOOMFIT Configuration

Environment variables and application settings.
"""

from pydantic_settings import BaseSettings
from typing import List, Dict, Any


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "BLOOMFIT"
    DEBUG: bool = True

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Camera
    CAMERA_DEVICE_INDEX: int = 0
    CAMERA_FIRST_FRAME_TIMEOUT: float = 8.0  # seconds
    CAMERA_CONSTRAINTS: List[Dict[str, Any]] = [
        {"width": 640, "height": 480, "fps": 30, "facing_mode": "user"},
        {"width": 480, "height": 360},
        {"width": 320, "height": 240},
        {"fps": 15},
        {},
    ]

    # Pose engine (MediaPipe Pose Landmarker)
    POSE_MODEL_PATH: str = "ml_models/pose_landmarker_lite.task"
    POSE_MODEL_URL: str = (
        "https://storage.googleapis.com/mediapipe-models/"
        "pose_landmarker/pose_landmarker_lite/float16/latest/"
        "pose_landmarker_lite.task"
    )
    POSE_MODEL_AUTO_DOWNLOAD: bool = True
    MIN_DETECTION_CONFIDENCE: float = 0.5
    MIN_TRACKING_CONFIDENCE: float = 0.5
    ENGINE_READY_TIMEOUT: float = 15.0  # seconds
    DETECTION_INTERVAL: float = 0.033  # ~30 FPS

    # Motion analysis
    REP_MOVEMENT_THRESHOLD: float = 0.02  # normalized coordinates
    REP_DEBOUNCE_SECONDS: float = 1.0
    SCORE_EMIT_INTERVAL: float = 1.0
    POSTURE_SCALE: float = 200.0

    # Overlay
    VISIBILITY_THRESHOLD: float = 0.5

    # Session
    DEFAULT_EXERCISE_TYPE: str = "Pelvic Tilts"
    TIMER_TICK_INTERVAL: float = 1.0
    INITIAL_POSTURE_SCORE: float = 85.0
    PENDING_QUEUE_SIZE: int = 50
    STREAM_JPEG_QUALITY: int = 70

    # WebSocket stream
    WS_MAX_CONNECTIONS: int = 10
    WS_HEARTBEAT_INTERVAL: float = 30.0  # seconds

    # Persistence API (empty URL = in-memory mock mode)
    API_BASE_URL: str = ""
    API_TOKEN: str = ""
    API_TIMEOUT: float = 10.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
