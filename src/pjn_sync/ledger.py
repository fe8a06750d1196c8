from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import (
    RUN_COMPLETED,
    RUN_ERROR,
    RUN_IN_PROGRESS,
    RUN_INTERRUPTED,
    RUN_PARTIAL,
    SyncRun,
)
from .causa_keys import CausaKey
from .timeutils import ensure_utc, isoformat_or_none

"""
pjn_sync.ledger - Run Ledger

One SyncRun row per synchronization attempt. The per-case outcome list is
append-only; when a case is retried by a resumed run the latest outcome for
that causa wins.
"""

logger = logging.getLogger("pjn_sync.ledger")

PHASE_INITIAL = "initial"
PHASE_UPDATE = "update"
PHASE_FULL_SCAN = "full_scan"

CASE_SUCCESS = "success"
CASE_NOT_FOUND = "not_found"
CASE_ERROR = "error"
CASE_SKIPPED = "skipped"

# Outcomes that need no further work when a run is resumed.
DONE_CASE_STATUSES = frozenset({CASE_SUCCESS, CASE_NOT_FOUND})

RESUMABLE_RUN_STATUSES = (RUN_IN_PROGRESS, RUN_ERROR, RUN_INTERRUPTED)


def start_run(
    session: Session,
    *,
    credential_id: int,
    user_id: str,
    phase: str,
    planned_causa_ids: Iterable[int],
    now: datetime,
    is_first_run: bool = False,
    instance_name: Optional[str] = None,
    worker_pid: Optional[int] = None,
    config_snapshot: Optional[Dict[str, Any]] = None,
    triggered_by: str = "manager",
) -> SyncRun:
    planned = list(dict.fromkeys(int(cid) for cid in planned_causa_ids))
    run = SyncRun(
        credential_id=credential_id,
        user_id=user_id,
        status=RUN_IN_PROGRESS,
        phase=phase,
        triggered_by=triggered_by,
        started_at=now,
        heartbeat_at=now,
        total_causas=len(planned),
        causas_processed=0,
        causas_updated=0,
        causas_skipped=0,
        causas_error=0,
        new_movimientos=0,
        is_complete=False,
        planned_causa_ids=planned,
        causas_detail=[],
        resume_attempts=0,
        is_first_run=is_first_run,
        is_resumed_run=False,
        instance_name=instance_name,
        worker_pid=worker_pid,
        config_snapshot=config_snapshot,
    )
    session.add(run)
    session.flush()
    logger.info(
        "Run %s started for credential %s (phase=%s, causas=%d).",
        run.id,
        credential_id,
        phase,
        len(planned),
    )
    return run


def record_case_outcome(
    run: SyncRun,
    *,
    causa_id: int,
    key: CausaKey,
    status: str,
    now: datetime,
    movimientos_added: int = 0,
    error: Optional[str] = None,
) -> None:
    entry: Dict[str, Any] = {
        "causaId": causa_id,
        "fuero": key.fuero,
        "number": key.number,
        "year": key.year,
        "incidente": key.incidente,
        "status": status,
        "movimientosAdded": movimientos_added,
    }
    if error:
        entry["error"] = error[:500]
    # Reassign so the JSON column is flagged dirty.
    run.causas_detail = list(run.causas_detail or []) + [entry]

    if movimientos_added > 0:
        run.new_movimientos = (run.new_movimientos or 0) + movimientos_added
    _recount(run)
    run.heartbeat_at = now


def _recount(run: SyncRun) -> None:
    """
    Per-causa counters count distinct causas; a retried causa is counted
    once, under its latest outcome.
    """
    outcomes = latest_outcomes(run)
    statuses = list(outcomes.values())
    run.causas_processed = len(outcomes)
    run.causas_skipped = statuses.count(CASE_SKIPPED)
    run.causas_error = statuses.count(CASE_ERROR)
    run.causas_updated = len(
        {
            entry.get("causaId")
            for entry in run.causas_detail or []
            if (entry.get("movimientosAdded") or 0) > 0
        }
    )


def latest_outcomes(run: SyncRun) -> Dict[int, str]:
    outcomes: Dict[int, str] = {}
    for entry in run.causas_detail or []:
        try:
            outcomes[int(entry["causaId"])] = str(entry.get("status"))
        except (KeyError, TypeError, ValueError):
            continue
    return outcomes


def remaining_causa_ids(run: SyncRun) -> List[int]:
    """
    Planned causas not yet processed successfully, in planned order.
    """
    outcomes = latest_outcomes(run)
    return [
        cid
        for cid in (run.planned_causa_ids or [])
        if outcomes.get(int(cid)) not in DONE_CASE_STATUSES
    ]


def _duration(run: SyncRun, now: datetime) -> float:
    started = ensure_utc(run.started_at)
    if started is None:
        return 0.0
    return max(0.0, (ensure_utc(now) - started).total_seconds())


def finish_run(run: SyncRun, *, now: datetime) -> str:
    """
    Close a run that processed its whole plan.

    ``completed`` when every planned causa ended success/not_found,
    ``partial`` otherwise.
    """
    remaining = remaining_causa_ids(run)
    run.is_complete = not remaining
    run.status = RUN_COMPLETED if not remaining else RUN_PARTIAL
    run.completed_at = now
    run.heartbeat_at = now
    run.duration_seconds = _duration(run, now)
    logger.info(
        "Run %s finished with status %s (processed=%s, updated=%s, new_movimientos=%s, errors=%s).",
        run.id,
        run.status,
        run.causas_processed,
        run.causas_updated,
        run.new_movimientos,
        run.causas_error,
    )
    return run.status


def fail_run(
    run: SyncRun,
    *,
    now: datetime,
    code: str,
    message: str,
    phase: Optional[str] = None,
    status: str = RUN_ERROR,
) -> None:
    """
    Abort a run at credential level. The run stays resumable unless its
    resume budget is spent.
    """
    run.status = status
    run.error_code = code
    run.error_message = (message or "")[:2000]
    run.error_phase = phase
    run.completed_at = now
    run.heartbeat_at = now
    run.duration_seconds = _duration(run, now)
    logger.warning("Run %s ended as %s (%s): %s", run.id, status, code, message)


def runs_started_since(session: Session, credential_id: int, since: datetime) -> int:
    return (
        session.query(func.count(SyncRun.id))
        .filter(SyncRun.credential_id == credential_id, SyncRun.started_at >= since)
        .scalar()
        or 0
    )


def start_of_day(now: datetime) -> datetime:
    now = ensure_utc(now)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def find_stale_runs(session: Session, *, older_than: timedelta, now: datetime) -> List[SyncRun]:
    """
    in_progress runs whose heartbeat is older than ``older_than``.
    """
    cutoff = ensure_utc(now) - older_than
    rows = (
        session.query(SyncRun)
        .filter(SyncRun.status == RUN_IN_PROGRESS)
        .order_by(SyncRun.started_at.asc())
        .all()
    )
    stale: List[SyncRun] = []
    for run in rows:
        beat = ensure_utc(run.heartbeat_at or run.started_at)
        if beat is None or beat < cutoff:
            stale.append(run)
    return stale


def run_to_dict(run: SyncRun) -> Dict[str, Any]:
    return {
        "id": run.id,
        "credentialId": run.credential_id,
        "userId": run.user_id,
        "status": run.status,
        "phase": run.phase,
        "startedAt": isoformat_or_none(run.started_at),
        "completedAt": isoformat_or_none(run.completed_at),
        "durationSeconds": run.duration_seconds,
        "results": {
            "totalCausas": run.total_causas,
            "causasProcessed": run.causas_processed,
            "causasUpdated": run.causas_updated,
            "causasSkipped": run.causas_skipped,
            "causasError": run.causas_error,
            "newMovimientos": run.new_movimientos,
            "isComplete": bool(run.is_complete),
        },
        "causasDetail": list(run.causas_detail or []),
        "resumeAttempts": run.resume_attempts,
        "error": (
            {"code": run.error_code, "message": run.error_message, "phase": run.error_phase}
            if run.error_code
            else None
        ),
        "metadata": {
            "isFirstRun": bool(run.is_first_run),
            "isResumedRun": bool(run.is_resumed_run),
            "instanceName": run.instance_name,
            "workerPid": run.worker_pid,
        },
    }


def run_stats(session: Session, *, since: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Aggregate counts by status plus totals, optionally since a timestamp.
    """
    query = session.query(SyncRun.status, func.count(SyncRun.id))
    if since is not None:
        query = query.filter(SyncRun.started_at >= since)
    by_status = {status: count for status, count in query.group_by(SyncRun.status).all()}

    totals_query = session.query(
        func.coalesce(func.sum(SyncRun.causas_processed), 0),
        func.coalesce(func.sum(SyncRun.new_movimientos), 0),
        func.avg(SyncRun.duration_seconds),
    )
    if since is not None:
        totals_query = totals_query.filter(SyncRun.started_at >= since)
    processed, new_movs, avg_duration = totals_query.one()

    return {
        "byStatus": by_status,
        "totalRuns": sum(by_status.values()),
        "causasProcessed": int(processed or 0),
        "newMovimientos": int(new_movs or 0),
        "avgDurationSeconds": float(avg_duration) if avg_duration is not None else None,
    }


__all__ = [
    "CASE_ERROR",
    "CASE_NOT_FOUND",
    "CASE_SKIPPED",
    "CASE_SUCCESS",
    "DONE_CASE_STATUSES",
    "PHASE_FULL_SCAN",
    "PHASE_INITIAL",
    "PHASE_UPDATE",
    "RESUMABLE_RUN_STATUSES",
    "fail_run",
    "find_stale_runs",
    "finish_run",
    "latest_outcomes",
    "record_case_outcome",
    "remaining_causa_ids",
    "run_stats",
    "run_to_dict",
    "runs_started_since",
    "start_of_day",
    "start_run",
]
