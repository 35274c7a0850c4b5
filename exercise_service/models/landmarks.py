"""
BLOOMFIT Exercise Service - Landmark Model

Normalized body keypoints as produced by the pose engine, the 33-point
MediaPipe topology and the anatomical grouping used by the overlay.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Sequence, Tuple


# Number of keypoints in a valid detection
LANDMARK_COUNT = 33


class JointType(Enum):
    """Body joint indices of the 33-point pose topology."""
    NOSE = 0
    LEFT_EYE_INNER = 1
    LEFT_EYE = 2
    LEFT_EYE_OUTER = 3
    RIGHT_EYE_INNER = 4
    RIGHT_EYE = 5
    RIGHT_EYE_OUTER = 6
    LEFT_EAR = 7
    RIGHT_EAR = 8
    MOUTH_LEFT = 9
    MOUTH_RIGHT = 10
    LEFT_SHOULDER = 11
    RIGHT_SHOULDER = 12
    LEFT_ELBOW = 13
    RIGHT_ELBOW = 14
    LEFT_WRIST = 15
    RIGHT_WRIST = 16
    LEFT_PINKY = 17
    RIGHT_PINKY = 18
    LEFT_INDEX = 19
    RIGHT_INDEX = 20
    LEFT_THUMB = 21
    RIGHT_THUMB = 22
    LEFT_HIP = 23
    RIGHT_HIP = 24
    LEFT_KNEE = 25
    RIGHT_KNEE = 26
    LEFT_ANKLE = 27
    RIGHT_ANKLE = 28
    LEFT_HEEL = 29
    RIGHT_HEEL = 30
    LEFT_FOOT_INDEX = 31
    RIGHT_FOOT_INDEX = 32


class LandmarkGroup(Enum):
    """Anatomical groups used for color/size coding."""
    HEAD = "head"
    BODY = "body"
    HANDS = "hands"
    HIPS = "hips"
    LEGS = "legs"


# Same edges as mediapipe.solutions.pose.POSE_CONNECTIONS
POSE_CONNECTIONS: FrozenSet[Tuple[int, int]] = frozenset([
    (0, 1), (1, 2), (2, 3), (3, 7),
    (0, 4), (4, 5), (5, 6), (6, 8),
    (9, 10),
    (11, 12),
    (11, 13), (13, 15),
    (12, 14), (14, 16),
    (15, 17), (15, 19), (15, 21), (17, 19),
    (16, 18), (16, 20), (16, 22), (18, 20),
    (11, 23), (12, 24),
    (23, 24),
    (23, 25), (25, 27),
    (24, 26), (26, 28),
    (27, 29), (29, 31), (27, 31),
    (28, 30), (30, 32), (28, 32),
])


@dataclass
class Landmark:
    """A single pose landmark with normalized coordinates and visibility."""
    index: int
    x: float
    y: float
    z: float = 0.0
    visibility: Optional[float] = None

    @property
    def group(self) -> LandmarkGroup:
        return landmark_group(self.index)

    def is_visible(self, threshold: float) -> bool:
        # Engines that do not report visibility are treated as fully visible
        return self.visibility is None or self.visibility > threshold


def landmark_group(index: int) -> LandmarkGroup:
    """Map a landmark index to its anatomical group."""
    if index <= JointType.MOUTH_RIGHT.value:
        return LandmarkGroup.HEAD
    if JointType.LEFT_WRIST.value <= index <= JointType.RIGHT_THUMB.value:
        return LandmarkGroup.HANDS
    if index in (JointType.LEFT_HIP.value, JointType.RIGHT_HIP.value):
        return LandmarkGroup.HIPS
    if index >= JointType.LEFT_KNEE.value:
        return LandmarkGroup.LEGS
    return LandmarkGroup.BODY


def is_complete(landmarks: Optional[Sequence[Landmark]]) -> bool:
    """True for a full 33-point detection."""
    return landmarks is not None and len(landmarks) == LANDMARK_COUNT
