from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from ..manager_contract import HealthCheckConfig, WorkerConfig
from ..timeutils import ensure_utc
from .supervisor import InstanceInfo, ProcessSupervisor

logger = logging.getLogger("pjn_sync.manager.health")

VERDICT_OK = "ok"
VERDICT_STUCK = "stuck"
VERDICT_IDLE = "idle"
VERDICT_HIGH_MEMORY = "high_memory"

RESTARTABLE_VERDICTS = frozenset({VERDICT_STUCK, VERDICT_IDLE})


@dataclass
class HealthReport:
    instance: str
    verdict: str
    detail: str = ""
    restarted: bool = False

    def to_dict(self) -> dict:
        return {
            "instance": self.instance,
            "verdict": self.verdict,
            "detail": self.detail,
            "restarted": self.restarted,
        }


def _minutes_since(value: Optional[datetime], now: datetime) -> Optional[float]:
    value = ensure_utc(value)
    if value is None:
        return None
    return (ensure_utc(now) - value).total_seconds() / 60.0


def evaluate_instance(info: InstanceInfo, hc: HealthCheckConfig, now: datetime) -> HealthReport:
    """
    Classify one running instance.

    ``stuck`` wins over ``idle``; ``high_memory`` is reported only when the
    instance is otherwise healthy.
    """
    processing = _minutes_since(info.processing_since, now)
    if processing is not None and processing > hc.max_processing_minutes:
        return HealthReport(
            instance=info.name,
            verdict=VERDICT_STUCK,
            detail=f"processing for {processing:.0f} min (credential {info.current_credential_id})",
        )

    # Instances that never reported activity are measured from their start.
    idle = _minutes_since(info.last_activity_at or info.started_at, now)
    if idle is not None and idle > hc.max_idle_minutes:
        return HealthReport(
            instance=info.name,
            verdict=VERDICT_IDLE,
            detail=f"no activity for {idle:.0f} min",
        )

    if info.memory_mb is not None and hc.max_memory_mb > 0 and info.memory_mb > hc.max_memory_mb:
        return HealthReport(
            instance=info.name,
            verdict=VERDICT_HIGH_MEMORY,
            detail=f"{info.memory_mb:.0f} MB > {hc.max_memory_mb} MB",
        )

    return HealthReport(instance=info.name, verdict=VERDICT_OK)


def run_health_checks(
    supervisor: ProcessSupervisor,
    kind: str,
    worker_cfg: WorkerConfig,
    now: datetime,
) -> List[HealthReport]:
    """
    Evaluate every reported instance of ``kind`` and restart stuck or idle
    ones when ``autoRestartOnStuck`` is set.
    """
    hc = worker_cfg.health_check
    if not hc.enabled:
        return []

    reports: List[HealthReport] = []
    for info in supervisor.instances(kind):
        report = evaluate_instance(info, hc, now)
        reports.append(report)
        if report.verdict == VERDICT_OK:
            continue
        if report.verdict == VERDICT_HIGH_MEMORY:
            logger.warning("Worker instance %s (%s) high memory: %s", info.name, kind, report.detail)
            continue

        logger.warning("Worker instance %s (%s) is %s: %s", info.name, kind, report.verdict, report.detail)
        if hc.auto_restart_on_stuck and report.verdict in RESTARTABLE_VERDICTS:
            try:
                supervisor.restart(kind, info.name, worker_cfg)
                report.restarted = True
                logger.info("Restarted worker instance %s (%s).", info.name, kind)
            except Exception as exc:
                logger.error("Restarting worker instance %s failed: %s", info.name, exc, exc_info=True)
    return reports


__all__ = [
    "HealthReport",
    "RESTARTABLE_VERDICTS",
    "VERDICT_HIGH_MEMORY",
    "VERDICT_IDLE",
    "VERDICT_OK",
    "VERDICT_STUCK",
    "evaluate_instance",
    "run_health_checks",
]
