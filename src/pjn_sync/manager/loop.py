from __future__ import annotations

import logging
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import get_manager_poll_interval_override
from ..config_store import load_manager_config
from ..db import get_session
from ..manager_contract import GlobalConfig, ManagerConfig, WorkerConfig
from ..models import ManagerSnapshot, ManagerStatus
from ..seeds import MANAGER_STATUS_ID
from ..timeutils import isoformat_or_none, parse_iso, utcnow
from .health import VERDICT_OK, run_health_checks
from .queue_probe import ProbeResult, QueueDepthProbe, probe_all
from .scaler import (
    REASON_COOLDOWN,
    REASON_GLOBAL_DISABLED,
    REASON_OUTSIDE_SCHEDULE,
    REASON_PROBE_ERROR,
    REASON_SCHEDULE_BYPASS,
    REASON_SUPERVISOR_ERROR,
    REASON_WORKER_DISABLED,
    compute_desired_instances,
    cooldown_remaining,
)
from .schedule import evaluate_schedule
from .supervisor import ProcessSupervisor

"""
pjn_sync.manager.loop - Manager Loop

Each tick, for every configured worker kind:

    1. global disabled / kind disabled -> zero instances
    2. schedule verdict (with priority bypass)
    3. queue depth probe
    4. scaler decision under cooldown
    5. supervisor reconcile
    6. health checks on running instances
    7. status document + snapshot

Kinds are evaluated in isolation: an error in one kind is logged and
reported for that kind only.
"""

logger = logging.getLogger("pjn_sync.manager")


@dataclass
class KindStatus:
    kind: str
    queue_depth: int = 0
    current_instances: int = 0
    desired_instances: int = 0
    within_schedule: bool = True
    reason: str = ""
    error: Optional[str] = None
    health: List[Dict[str, Any]] = field(default_factory=list)
    scaled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "queueDepth": self.queue_depth,
            "currentInstances": self.current_instances,
            "desiredInstances": self.desired_instances,
            "withinSchedule": self.within_schedule,
            "reason": self.reason,
        }
        if self.error:
            data["error"] = self.error
        if self.health:
            data["health"] = self.health
        return data


def _load_status(session: Session) -> ManagerStatus:
    status = session.get(ManagerStatus, MANAGER_STATUS_ID)
    if status is None:
        status = ManagerStatus(id=MANAGER_STATUS_ID, is_running=False, cycle_count=0)
        session.add(status)
        session.flush()
    return status


class ManagerLoop:
    """
    One manager process; ``tick()`` is a single evaluation of every kind.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        probe: QueueDepthProbe,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.supervisor = supervisor
        self.probe = probe
        self.clock = clock
        self.started_at = clock()
        self.last_config: Optional[ManagerConfig] = None

    def tick(self) -> Dict[str, KindStatus]:
        now = self.clock()
        with get_session() as session:
            cfg = load_manager_config(session)
            status = _load_status(session)
            scale_actions: Dict[str, str] = dict(status.scale_actions or {})
        self.last_config = cfg

        global_cfg = cfg.global_config
        to_probe = []
        if global_cfg.enabled:
            to_probe = [kind for kind, wc in cfg.workers.items() if wc.enabled]
        probes = probe_all(self.probe, to_probe, concurrency=cfg.manager.probe_concurrency)

        results: Dict[str, KindStatus] = {}
        for kind, worker_cfg in cfg.workers.items():
            try:
                result = self._evaluate_kind(
                    kind,
                    worker_cfg,
                    global_cfg,
                    probes.get(kind),
                    parse_iso(scale_actions.get(kind)),
                    now,
                )
            except Exception as exc:
                logger.error("Evaluating worker kind %s failed: %s", kind, exc, exc_info=True)
                result = KindStatus(
                    kind=kind,
                    reason=REASON_SUPERVISOR_ERROR,
                    error=f"{type(exc).__name__}: {exc}",
                )
            if result.scaled:
                scale_actions[kind] = now.isoformat()
            results[kind] = result

        self._persist(cfg, results, scale_actions, now)
        return results

    def _evaluate_kind(
        self,
        kind: str,
        worker_cfg: WorkerConfig,
        global_cfg: GlobalConfig,
        probe: Optional[ProbeResult],
        last_action_at: Optional[datetime],
        now: datetime,
    ) -> KindStatus:
        result = KindStatus(kind=kind)
        try:
            current = self.supervisor.current_count(kind)
        except Exception as exc:
            logger.error("Supervisor could not count %s instances: %s", kind, exc, exc_info=True)
            result.reason = REASON_SUPERVISOR_ERROR
            result.error = f"{type(exc).__name__}: {exc}"
            return result
        result.current_instances = current
        result.desired_instances = current

        if not global_cfg.enabled:
            result.desired_instances = 0
            result.reason = REASON_GLOBAL_DISABLED
        elif not worker_cfg.enabled:
            result.desired_instances = 0
            result.reason = REASON_WORKER_DISABLED
        elif probe is None or probe.error:
            result.reason = REASON_PROBE_ERROR
            result.error = probe.error if probe is not None else "no probe result"
        else:
            result.queue_depth = probe.depth
            verdict = evaluate_schedule(worker_cfg.schedule, now, priority_condition=probe.priority)
            result.within_schedule = verdict.within_schedule
            if not verdict.allowed:
                result.desired_instances = 0
                result.reason = REASON_OUTSIDE_SCHEDULE
            else:
                decision = compute_desired_instances(
                    current,
                    probe.depth,
                    worker_cfg.scaling,
                    cooldown_remaining(last_action_at, worker_cfg.scaling.cooldown_ms, now),
                )
                result.desired_instances = decision.desired
                result.reason = decision.reason
                if verdict.bypassed and decision.reason != REASON_COOLDOWN:
                    result.reason = REASON_SCHEDULE_BYPASS

        if result.desired_instances != current:
            logger.info(
                "Scaling %s: %d -> %d (%s, depth=%d).",
                kind,
                current,
                result.desired_instances,
                result.reason,
                result.queue_depth,
            )
            try:
                self.supervisor.reconcile(kind, result.desired_instances, worker_cfg)
                result.scaled = True
            except Exception as exc:
                logger.error("Supervisor failed to scale %s: %s", kind, exc, exc_info=True)
                result.reason = REASON_SUPERVISOR_ERROR
                result.error = f"{type(exc).__name__}: {exc}"
                return result

        if result.desired_instances > 0:
            try:
                reports = run_health_checks(self.supervisor, kind, worker_cfg, now)
            except Exception as exc:
                logger.error("Health checks for %s failed: %s", kind, exc, exc_info=True)
            else:
                result.health = [r.to_dict() for r in reports if r.verdict != VERDICT_OK]
        return result

    def _persist(
        self,
        cfg: ManagerConfig,
        results: Dict[str, KindStatus],
        scale_actions: Dict[str, str],
        now: datetime,
    ) -> None:
        workers = {kind: r.to_dict() for kind, r in results.items()}
        retention = timedelta(hours=max(1, cfg.manager.history_retention_hours))
        with get_session() as session:
            status = _load_status(session)
            status.is_running = True
            status.started_at = self.started_at
            status.global_enabled = cfg.global_config.enabled
            status.service_available = cfg.global_config.service_available
            status.maintenance_message = cfg.global_config.maintenance_message
            status.config_version = cfg.version
            status.last_poll = now
            status.cycle_count = (status.cycle_count or 0) + 1
            status.workers = workers
            status.scale_actions = scale_actions

            session.add(ManagerSnapshot(taken_at=now, workers=workers))
            pruned = (
                session.query(ManagerSnapshot)
                .filter(ManagerSnapshot.taken_at < now - retention)
                .delete(synchronize_session=False)
            )
        if pruned:
            logger.debug("Pruned %d manager snapshot(s).", pruned)


def mark_manager_stopped() -> None:
    with get_session() as session:
        status = _load_status(session)
        status.is_running = False
        status.updated_at = utcnow()


def status_to_dict(status: ManagerStatus) -> Dict[str, Any]:
    return {
        "isRunning": bool(status.is_running),
        "globalEnabled": bool(status.global_enabled),
        "serviceAvailable": bool(status.service_available),
        "maintenanceMessage": status.maintenance_message,
        "configVersion": status.config_version,
        "startedAt": isoformat_or_none(status.started_at),
        "lastPoll": isoformat_or_none(status.last_poll),
        "cycleCount": status.cycle_count,
        "workers": status.workers or {},
    }


def _raise_keyboard_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt(f"signal {signum}")


def run_manager_loop(
    supervisor: ProcessSupervisor,
    probe: QueueDepthProbe,
    *,
    poll_interval: Optional[int] = None,
    run_once: bool = False,
) -> None:
    """
    Run the Manager Loop until interrupted.

    Args:
        poll_interval: Seconds between ticks. Defaults to
            PJN_SYNC_MANAGER_POLL_INTERVAL, then the configured pollIntervalMs.
        run_once: Perform a single tick and return.
    """
    loop = ManagerLoop(supervisor, probe)
    override = poll_interval or get_manager_poll_interval_override()
    logger.info("Manager starting (poll_interval=%s, run_once=%s).", override, run_once)

    try:
        signal.signal(signal.SIGTERM, _raise_keyboard_interrupt)
    except ValueError:
        pass

    try:
        while True:
            try:
                loop.tick()
            except Exception as exc:
                logger.error("Manager tick failed: %s", exc, exc_info=True)
            if run_once:
                break
            if override:
                sleep_for = float(override)
            elif loop.last_config is not None:
                sleep_for = loop.last_config.manager.poll_interval_ms / 1000.0
            else:
                sleep_for = 30.0
            time.sleep(sleep_for)
    except KeyboardInterrupt:
        logger.info("Manager interrupted; shutting down.")
    finally:
        try:
            mark_manager_stopped()
        except Exception as exc:
            logger.error("Could not record manager shutdown: %s", exc)
    logger.info("Manager stopped.")


__all__ = [
    "KindStatus",
    "ManagerLoop",
    "mark_manager_stopped",
    "run_manager_loop",
    "status_to_dict",
]
