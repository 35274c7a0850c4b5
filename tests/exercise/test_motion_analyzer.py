"""
Tests for posture scoring and repetition counting.
"""

import random

import pytest

from exercise_service.models.motion_analyzer import (
    Direction,
    MotionAnalyzer,
    TrackingState,
    compute_posture_score,
    should_emit_score,
    step_reps,
)

from conftest import make_landmarks


def run_hip_sequence(values, start=0.0, step=0.1, state=None):
    state = state or TrackingState()
    directions, total = [], 0
    for i, y in enumerate(values):
        state, delta = step_reps(state, y, start + i * step, threshold=0.02, debounce_seconds=1.0)
        directions.append(state.movement_direction)
        total += delta
    return state, directions, total


# ═══════════════════════════════════════════════════════════════════════════════
# REP COUNTING
# ═══════════════════════════════════════════════════════════════════════════════

def test_down_then_up_counts_exactly_one_rep():
    state, directions, total = run_hip_sequence([0.50, 0.53, 0.56, 0.53, 0.50])

    assert total == 1
    assert directions == [Direction.NONE, Direction.DOWN, Direction.DOWN, Direction.UP, Direction.UP]
    assert state.rep_in_progress is True


def test_step_exactly_at_threshold_reverses_direction():
    # 0.56 -> 0.54 moves by the threshold itself
    state, directions, total = run_hip_sequence([0.50, 0.53, 0.56, 0.54, 0.51, 0.48])

    assert total == 1
    assert directions[1:] == [Direction.DOWN, Direction.DOWN, Direction.UP, Direction.UP, Direction.UP]
    assert state.rep_in_progress is True


def test_first_frame_only_sets_baseline():
    state, delta = step_reps(TrackingState(), 0.4, 0.0)
    assert delta == 0
    assert state.previous_joint_y == 0.4
    assert state.movement_direction == Direction.NONE


def test_movement_below_threshold_is_ignored():
    _, directions, total = run_hip_sequence([0.50, 0.51, 0.52, 0.51, 0.50])
    assert total == 0
    assert set(directions) == {Direction.NONE}


def test_debounce_blocks_a_second_rep_inside_cooldown():
    # Rep at t=0.3, a second down/up at t=0.5/0.6 falls inside the 1s cooldown
    state, _, first = run_hip_sequence([0.50, 0.53, 0.56, 0.53])
    state, d1 = step_reps(state, 0.56, 0.5)
    state, d2 = step_reps(state, 0.53, 0.6)
    assert first == 1
    assert d1 + d2 == 0

    # After the cooldown expires the next reversal counts
    state, d3 = step_reps(state, 0.56, 1.4)
    state, d4 = step_reps(state, 0.53, 1.5)
    assert state.movement_direction == Direction.UP
    assert d3 + d4 == 1


def test_up_then_down_is_not_a_rep():
    _, _, total = run_hip_sequence([0.56, 0.53, 0.50, 0.53, 0.56])
    assert total == 0


# ═══════════════════════════════════════════════════════════════════════════════
# POSTURE SCORE
# ═══════════════════════════════════════════════════════════════════════════════

def test_posture_score_formula():
    # |0.5 - 0.3 - 0.6| * 200 = 80
    landmarks = make_landmarks(nose_y=0.5, shoulder_y=0.3, hip_y=0.6)
    assert compute_posture_score(landmarks) == pytest.approx(20.0)


def test_posture_score_is_clamped():
    assert compute_posture_score(make_landmarks(nose_y=0.1, shoulder_y=0.3, hip_y=0.6)) == 0.0
    assert compute_posture_score(make_landmarks(nose_y=0.9, shoulder_y=0.3, hip_y=0.6)) == pytest.approx(100.0)


@pytest.mark.parametrize("nose_y", [0.0, 0.25, 0.5, 0.75, 1.0])
def test_posture_score_stays_in_range(nose_y):
    score = compute_posture_score(make_landmarks(nose_y=nose_y))
    assert 0.0 <= score <= 100.0


def test_score_emission_is_rate_limited():
    state = TrackingState()
    assert should_emit_score(state, 0.0)
    state = TrackingState(last_score_timestamp=0.0)
    assert not should_emit_score(state, 0.5)
    assert not should_emit_score(state, 1.0)
    assert should_emit_score(state, 1.01)


# ═══════════════════════════════════════════════════════════════════════════════
# ANALYZER
# ═══════════════════════════════════════════════════════════════════════════════

def make_analyzer(**kwargs):
    defaults = dict(threshold=0.02, debounce_seconds=1.0, score_interval=1.0, posture_scale=200.0)
    defaults.update(kwargs)
    return MotionAnalyzer(**defaults)


def test_incomplete_landmark_sets_are_ignored():
    analyzer = make_analyzer()
    assert analyzer.analyze(make_landmarks(count=32), 0.0) is None
    assert analyzer.analyze(None, 0.0) is None
    assert analyzer.analyze([], 0.0) is None
    assert analyzer.state == TrackingState()


def test_analyze_counts_reps_from_hip_center():
    analyzer = make_analyzer()
    total = 0
    for i, hip in enumerate([0.50, 0.53, 0.56, 0.53, 0.50]):
        result = analyzer.analyze(make_landmarks(hip_y=hip), i * 0.1)
        total += result.rep_count_delta
    assert total == 1


def test_analyze_emits_score_once_per_interval():
    analyzer = make_analyzer()
    emitted = [analyzer.analyze(make_landmarks(), t).score_emitted for t in (0.0, 0.3, 0.9, 1.2, 1.5)]
    assert emitted == [True, False, False, True, False]


def test_reset_clears_state():
    analyzer = make_analyzer()
    analyzer.analyze(make_landmarks(hip_y=0.5), 0.0)
    analyzer.reset()
    assert analyzer.state == TrackingState()


class FixedRandom(random.Random):
    def __init__(self, value):
        super().__init__()
        self.value = value

    def random(self):
        return self.value


def test_simulate_is_rate_limited_and_deterministic_with_fixed_rng():
    analyzer = make_analyzer(rng=FixedRandom(0.1))

    first = analyzer.simulate(0.0)
    # 75 + sin(0) * 15 + (0.1 - 0.5) * 10 = 71; 0.1 < 0.3 counts a rep
    assert first.score_emitted
    assert first.posture_score == 71.0
    assert first.rep_count_delta == 1

    second = analyzer.simulate(0.5)
    assert not second.score_emitted
    assert second.rep_count_delta == 0


def test_simulate_without_rep():
    analyzer = make_analyzer(rng=FixedRandom(0.9))
    result = analyzer.simulate(0.0)
    assert result.rep_count_delta == 0
    assert 0.0 <= result.posture_score <= 100.0
