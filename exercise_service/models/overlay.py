"""
BLOOMFIT Exercise Service - Overlay Renderer

Draws the skeleton overlay onto a transparent BGRA canvas with OpenCV.
With a 33-point detection it draws the real skeleton; with no detection
(engine unavailable) it draws a synthetic animated figure so the user
still gets visual feedback.
"""

import base64
import logging
import math
from typing import FrozenSet, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from core.config import settings

from .landmarks import POSE_CONNECTIONS, JointType, Landmark, LandmarkGroup

logger = logging.getLogger(__name__)

# Colors are BGRA
WHITE = (255, 255, 255, 255)
BLACK = (0, 0, 0, 255)

GROUP_STYLES = {
    LandmarkGroup.HEAD: ((0, 215, 255, 255), 6),     # gold
    LandmarkGroup.HANDS: ((0, 0, 255, 255), 12),     # red
    LandmarkGroup.HIPS: ((209, 206, 0, 255), 10),    # turquoise
    LandmarkGroup.LEGS: ((50, 205, 50, 255), 8),     # lime
    LandmarkGroup.BODY: ((157, 107, 255, 255), 8),   # pink
}

CONNECTION_COLOR = (163, 136, 216, 204)
SYNTHETIC_POINT_COLOR = (163, 136, 216, 230)
SYNTHETIC_HIP_COLOR = (180, 107, 255, 230)
SYNTHETIC_WRIST_COLOR = (253, 197, 147, 230)
SYNTHETIC_PULSE_COLOR = (180, 107, 255, 102)

FONT = cv2.FONT_HERSHEY_SIMPLEX

# Ten-point synthetic figure: head, shoulders, elbows, wrists, hip, knees
SYNTHETIC_CONNECTIONS = [
    (0, 1), (0, 2),
    (1, 3), (2, 4),
    (3, 5), (4, 6),
    (1, 7), (2, 7),
    (7, 8), (7, 9),
]

HEADER_TITLE = "Tracking body movement"
HEADER_INSTRUCTION = "Pink dot follows hip movement"


# ═══════════════════════════════════════════════════════════════════════════════
# CANVAS
# ═══════════════════════════════════════════════════════════════════════════════

class Canvas:
    """Transparent drawing surface sized to the video frame."""

    def __init__(self, width: int = 0, height: int = 0):
        self.image = np.zeros((height, width, 4), dtype=np.uint8)
        self.resize_count = 0

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]

    def resize(self, width: int, height: int) -> bool:
        """Reallocate only when the dimensions change. Returns True if resized."""
        if (width, height) == (self.width, self.height):
            return False
        self.image = np.zeros((height, width, 4), dtype=np.uint8)
        self.resize_count += 1
        return True

    def clear(self) -> None:
        self.image[:] = 0

    def is_blank(self) -> bool:
        return not self.image.any()


# ═══════════════════════════════════════════════════════════════════════════════
# RENDERER
# ═══════════════════════════════════════════════════════════════════════════════

class OverlayRenderer:
    """Renders landmark overlays. Side-effect only: draws into the canvas."""

    def __init__(
        self,
        connections: Optional[FrozenSet[Tuple[int, int]]] = None,
        visibility_threshold: Optional[float] = None
    ):
        self.connections = connections if connections is not None else POSE_CONNECTIONS
        self.visibility_threshold = (
            visibility_threshold if visibility_threshold is not None else settings.VISIBILITY_THRESHOLD
        )

    def render(
        self,
        canvas: Canvas,
        frame_dimensions: Tuple[int, int],
        landmarks: Optional[Sequence[Landmark]],
        now: float,
        rep_count: int = 0
    ) -> None:
        """
        Draw one frame of overlay.

        Args:
            canvas: Target canvas, resized to frame_dimensions if needed
            frame_dimensions: (width, height) of the source frame
            landmarks: A detection, or None to draw the synthetic figure
            now: Timestamp in seconds, drives the synthetic animation
            rep_count: Shown in the synthetic header when > 0
        """
        width, height = frame_dimensions
        canvas.resize(width, height)
        canvas.clear()

        if landmarks is None:
            self._draw_synthetic(canvas, now, rep_count)
            return

        if len(landmarks) != 33:
            return

        self._draw_landmarks(canvas, landmarks)

    # ------------------------------------------------------------------
    # Real detection
    # ------------------------------------------------------------------

    def _to_pixel(self, canvas: Canvas, landmark: Landmark) -> Optional[Tuple[int, int]]:
        x = landmark.x * canvas.width
        y = landmark.y * canvas.height
        if not landmark.is_visible(self.visibility_threshold):
            return None
        if not (0 <= x <= canvas.width and 0 <= y <= canvas.height):
            return None
        return int(round(x)), int(round(y))

    def _draw_landmarks(self, canvas: Canvas, landmarks: Sequence[Landmark]) -> None:
        img = canvas.image
        points: List[Optional[Tuple[int, int]]] = [self._to_pixel(canvas, lm) for lm in landmarks]

        for start, end in self.connections:
            if points[start] is None or points[end] is None:
                continue
            cv2.line(img, points[start], points[end], CONNECTION_COLOR, 2, cv2.LINE_AA)

        for landmark, point in zip(landmarks, points):
            if point is None:
                continue
            color, radius = GROUP_STYLES[landmark.group]
            cv2.circle(img, point, radius, color, -1, cv2.LINE_AA)
            cv2.circle(img, point, radius, WHITE, 2, cv2.LINE_AA)
            self._centered_text(img, str(landmark.index), point, 0.3, BLACK, 1)

        for joint, caption in ((JointType.LEFT_WRIST, "LEFT HAND"), (JointType.RIGHT_WRIST, "RIGHT HAND")):
            point = points[joint.value]
            if point is not None:
                self._outlined_text(img, caption, (point[0] + 15, point[1] - 15), 0.45)

    # ------------------------------------------------------------------
    # Synthetic figure
    # ------------------------------------------------------------------

    @staticmethod
    def synthetic_points(width: int, height: int, now: float) -> List[Tuple[str, float, float]]:
        """Ten labeled points animated as a slow pelvic-tilt rhythm."""
        cx, cy = width / 2, height / 2
        phase = math.sin(now * 0.5)
        micro = math.sin(now * 2) * 2
        tilt = phase * 15
        spine = phase * 8

        return [
            ("head", cx + micro, cy - 100 + spine * 0.3),
            ("left_shoulder", cx - 80 + micro * 0.5, cy - 50 + spine * 0.5),
            ("right_shoulder", cx + 80 - micro * 0.5, cy - 50 + spine * 0.5),
            ("left_elbow", cx - 100 + math.sin(now * 1.1) * 4, cy + micro),
            ("right_elbow", cx + 100 - math.sin(now * 1.1) * 4, cy + micro),
            ("left_wrist", cx - 120 + math.cos(now * 1.3) * 6, cy + 50 + micro * 2),
            ("right_wrist", cx + 120 - math.cos(now * 1.3) * 6, cy + 50 + micro * 2),
            ("hip", cx + tilt * 0.3, cy + 80 + tilt),
            ("left_knee", cx - 40 + tilt * 0.2, cy + 150 + tilt * 0.5),
            ("right_knee", cx + 40 + tilt * 0.2, cy + 150 + tilt * 0.5),
        ]

    def _draw_synthetic(self, canvas: Canvas, now: float, rep_count: int) -> None:
        img = canvas.image
        points = self.synthetic_points(canvas.width, canvas.height, now)
        pixels = [(int(round(x)), int(round(y))) for _, x, y in points]

        for start, end in SYNTHETIC_CONNECTIONS:
            cv2.line(img, pixels[start], pixels[end], CONNECTION_COLOR, 2, cv2.LINE_AA)

        for (label, _, _), pixel in zip(points, pixels):
            is_hip = label == "hip"
            radius = 8 if is_hip else 6
            if is_hip:
                color = SYNTHETIC_HIP_COLOR
            elif "wrist" in label:
                color = SYNTHETIC_WRIST_COLOR
            else:
                color = SYNTHETIC_POINT_COLOR

            cv2.circle(img, pixel, radius, color, -1, cv2.LINE_AA)
            cv2.circle(img, pixel, radius, WHITE, 3 if is_hip else 2, cv2.LINE_AA)

            if is_hip:
                pulse = max(1, int(round(radius + math.sin(now * 5) * 3)))
                cv2.circle(img, pixel, pulse, SYNTHETIC_PULSE_COLOR, 1, cv2.LINE_AA)

        self._outlined_text(img, HEADER_TITLE, (20, 35), 0.7)
        if rep_count > 0:
            self._outlined_text(img, f"Reps: {rep_count}", (20, 65), 0.6)
        self._outlined_text(img, HEADER_INSTRUCTION, (20, 90), 0.5)

    # ------------------------------------------------------------------
    # Text helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _outlined_text(img: np.ndarray, text: str, origin: Tuple[int, int], scale: float) -> None:
        cv2.putText(img, text, origin, FONT, scale, BLACK, 3, cv2.LINE_AA)
        cv2.putText(img, text, origin, FONT, scale, WHITE, 1, cv2.LINE_AA)

    @staticmethod
    def _centered_text(img: np.ndarray, text: str, center: Tuple[int, int], scale: float,
                       color: Tuple[int, int, int, int], thickness: int) -> None:
        (w, h), _ = cv2.getTextSize(text, FONT, scale, thickness)
        cv2.putText(img, text, (center[0] - w // 2, center[1] + h // 2), FONT, scale, color, thickness, cv2.LINE_AA)


# ═══════════════════════════════════════════════════════════════════════════════
# COMPOSITING
# ═══════════════════════════════════════════════════════════════════════════════

def composite(frame_bgr: np.ndarray, canvas: Canvas) -> np.ndarray:
    """Alpha-blend the overlay canvas onto a copy of the video frame."""
    if canvas.width != frame_bgr.shape[1] or canvas.height != frame_bgr.shape[0]:
        return frame_bgr.copy()
    alpha = canvas.image[:, :, 3:4].astype(np.float32) / 255.0
    overlay = canvas.image[:, :, :3].astype(np.float32)
    blended = frame_bgr.astype(np.float32) * (1.0 - alpha) + overlay * alpha
    return blended.astype(np.uint8)


def encode_frame(image_bgr: np.ndarray, quality: int = 70) -> Optional[str]:
    """JPEG-encode a frame as base64 text for the stream socket."""
    ok, buffer = cv2.imencode(".jpg", image_bgr, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        logger.warning("Failed to encode overlay frame")
        return None
    return base64.b64encode(buffer.tobytes()).decode("ascii")
