from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from pjn_sync.manager.scaler import (
    REASON_CLAMPED,
    REASON_COOLDOWN,
    REASON_SCALE_DOWN,
    REASON_SCALE_UP,
    REASON_STARVATION_GUARD,
    REASON_STEADY,
    compute_desired_instances,
    cooldown_remaining,
)
from pjn_sync.manager_contract import ScalingConfig


def _scaling(**overrides) -> ScalingConfig:
    params = dict(
        min_instances=0,
        max_instances=4,
        scale_up_threshold=10,
        scale_down_threshold=2,
        scale_up_step=1,
        scale_down_step=1,
        cooldown_ms=60_000,
    )
    params.update(overrides)
    return ScalingConfig(**params)


def test_scale_up_when_depth_exceeds_threshold() -> None:
    decision = compute_desired_instances(1, 25, _scaling(scale_up_step=2))
    assert decision.desired == 3
    assert decision.reason == REASON_SCALE_UP


def test_scale_up_bounded_by_max() -> None:
    decision = compute_desired_instances(3, 100, _scaling(scale_up_step=5))
    assert decision.desired == 4


def test_scale_down_when_depth_is_low() -> None:
    decision = compute_desired_instances(3, 0, _scaling(scale_down_step=2))
    assert decision.desired == 1
    assert decision.reason == REASON_SCALE_DOWN


def test_scale_down_never_reaches_zero_with_pending_work() -> None:
    decision = compute_desired_instances(1, 2, _scaling())
    assert decision.desired == 1
    assert decision.reason == REASON_STEADY


def test_starvation_guard_below_threshold() -> None:
    decision = compute_desired_instances(0, 1, _scaling())
    assert decision.desired == 1
    assert decision.reason == REASON_STARVATION_GUARD


def test_idle_stays_at_zero() -> None:
    decision = compute_desired_instances(0, 0, _scaling())
    assert decision.desired == 0
    assert decision.reason == REASON_STEADY


def test_current_above_max_is_clamped() -> None:
    decision = compute_desired_instances(6, 5, _scaling())
    assert decision.desired == 4
    assert decision.reason == REASON_CLAMPED


def test_cooldown_holds_scale_up_and_down() -> None:
    assert compute_desired_instances(1, 50, _scaling(), cooldown_remaining_s=10).reason == REASON_COOLDOWN
    held = compute_desired_instances(3, 0, _scaling(), cooldown_remaining_s=10)
    assert held.desired == 3
    assert held.reason == REASON_COOLDOWN


def test_starvation_guard_ignores_cooldown() -> None:
    decision = compute_desired_instances(0, 50, _scaling(), cooldown_remaining_s=30)
    assert decision.desired == 1
    assert decision.reason == REASON_STARVATION_GUARD


@pytest.mark.parametrize("depth", [1, 2, 5, 10, 11, 500])
@pytest.mark.parametrize("current", [0, 1, 2, 3, 4])
def test_pending_work_always_has_an_instance(current, depth) -> None:
    for cooldown in (0.0, 120.0):
        decision = compute_desired_instances(current, depth, _scaling(), cooldown_remaining_s=cooldown)
        assert decision.desired >= 1


@pytest.mark.parametrize("current", [0, 1, 2, 3])
def test_monotonic_scale_up(current) -> None:
    assert compute_desired_instances(current, 11, _scaling()).desired > current


@pytest.mark.parametrize("current", [2, 3, 4])
def test_monotonic_scale_down(current) -> None:
    assert compute_desired_instances(current, 0, _scaling()).desired < current


def test_cooldown_remaining() -> None:
    now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert cooldown_remaining(None, 60_000, now) == 0.0
    assert cooldown_remaining(now - timedelta(seconds=20), 60_000, now) == pytest.approx(40.0)
    assert cooldown_remaining(now - timedelta(minutes=5), 60_000, now) == 0.0
    # Naive timestamps read back from SQLite are treated as UTC.
    naive = (now - timedelta(seconds=50)).replace(tzinfo=None)
    assert cooldown_remaining(naive, 60_000, now) == pytest.approx(10.0)
