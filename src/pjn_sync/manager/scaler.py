from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..manager_contract import ScalingConfig
from ..timeutils import ensure_utc

REASON_GLOBAL_DISABLED = "global_disabled"
REASON_WORKER_DISABLED = "worker_disabled"
REASON_OUTSIDE_SCHEDULE = "outside_schedule"
REASON_SCHEDULE_BYPASS = "schedule_bypass"
REASON_SCALE_UP = "scale_up"
REASON_SCALE_DOWN = "scale_down"
REASON_STARVATION_GUARD = "starvation_guard"
REASON_COOLDOWN = "cooldown"
REASON_CLAMPED = "clamped"
REASON_STEADY = "steady"
REASON_PROBE_ERROR = "probe_error"
REASON_SUPERVISOR_ERROR = "supervisor_error"


@dataclass(frozen=True)
class ScaleDecision:
    desired: int
    reason: str


def cooldown_remaining(
    last_action_at: Optional[datetime],
    cooldown_ms: int,
    now: datetime,
) -> float:
    """
    Seconds left before the next scaling action is allowed.
    """
    last = ensure_utc(last_action_at)
    if last is None or cooldown_ms <= 0:
        return 0.0
    elapsed = (ensure_utc(now) - last).total_seconds()
    return max(0.0, cooldown_ms / 1000.0 - elapsed)


def compute_desired_instances(
    current: int,
    queue_depth: int,
    scaling: ScalingConfig,
    cooldown_remaining_s: float = 0.0,
) -> ScaleDecision:
    """
    Deterministic scaling rule for one worker kind.

    1. depth > scaleUpThreshold and current < max: + scaleUpStep (<= max)
    2. depth <= scaleDownThreshold and current > min: - scaleDownStep (>= min)
    3. depth > 0 and current == 0: at least one instance (starvation guard)
    4. otherwise no change

    The result is clamped to [min, max]. A pending cooldown holds every
    transition except the starvation guard.
    """
    lo = max(0, scaling.min_instances)
    hi = max(lo, scaling.max_instances)
    current = max(0, current)

    if queue_depth > scaling.scale_up_threshold and current < hi:
        target, reason = min(current + max(1, scaling.scale_up_step), hi), REASON_SCALE_UP
    elif queue_depth <= scaling.scale_down_threshold and current > lo:
        target, reason = max(current - max(1, scaling.scale_down_step), lo), REASON_SCALE_DOWN
        if queue_depth > 0:
            # Never scale a kind with pending work down to zero.
            target = max(target, 1)
            if target == current:
                reason = REASON_STEADY
    elif queue_depth > 0 and current == 0:
        target, reason = 1, REASON_STARVATION_GUARD
    else:
        target, reason = current, REASON_STEADY

    clamped = min(max(target, lo), hi)
    if clamped != target:
        reason = REASON_CLAMPED
    target = clamped

    if target != current and cooldown_remaining_s > 0:
        if current == 0 and queue_depth > 0 and hi > 0:
            return ScaleDecision(desired=max(1, lo), reason=REASON_STARVATION_GUARD)
        return ScaleDecision(desired=current, reason=REASON_COOLDOWN)

    return ScaleDecision(desired=target, reason=reason)


__all__ = [
    "REASON_CLAMPED",
    "REASON_COOLDOWN",
    "REASON_GLOBAL_DISABLED",
    "REASON_OUTSIDE_SCHEDULE",
    "REASON_PROBE_ERROR",
    "REASON_SCALE_DOWN",
    "REASON_SCALE_UP",
    "REASON_SCHEDULE_BYPASS",
    "REASON_STARVATION_GUARD",
    "REASON_STEADY",
    "REASON_SUPERVISOR_ERROR",
    "REASON_WORKER_DISABLED",
    "ScaleDecision",
    "compute_desired_instances",
    "cooldown_remaining",
]
