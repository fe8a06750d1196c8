from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .models import RUN_IN_PROGRESS, SYNC_STATUS_IN_PROGRESS, Credential, SyncRun
from .timeutils import utcnow

"""
pjn_sync.leases - Persistent-status mutual exclusion

A credential's sync_status = 'in_progress' is the lease. Every transition is
a conditional UPDATE guarded by the value the caller observed; the caller
wins only when exactly one row changed. There is no expiry timer: stale
leases are recovered by the resume phase.
"""

logger = logging.getLogger("pjn_sync.leases")


def acquire_credential_lease(session: Session, credential_id: int, expected: str) -> bool:
    """
    Move ``credential_id`` from ``expected`` to in_progress.

    Returns True when this caller now holds the lease.
    """
    if expected == SYNC_STATUS_IN_PROGRESS:
        return False
    changed = (
        session.query(Credential)
        .filter(Credential.id == credential_id, Credential.sync_status == expected)
        .update(
            {
                Credential.sync_status: SYNC_STATUS_IN_PROGRESS,
                Credential.last_sync_attempt_at: utcnow(),
            },
            synchronize_session=False,
        )
    )
    acquired = changed == 1
    if not acquired:
        logger.debug(
            "Lease on credential %s not acquired (expected status %r no longer current).",
            credential_id,
            expected,
        )
    return acquired


def release_credential_lease(session: Session, credential_id: int, to_status: str) -> bool:
    """
    Hand the lease back, restoring the status observed before acquisition.
    """
    changed = (
        session.query(Credential)
        .filter(
            Credential.id == credential_id,
            Credential.sync_status == SYNC_STATUS_IN_PROGRESS,
        )
        .update({Credential.sync_status: to_status}, synchronize_session=False)
    )
    if changed != 1:
        logger.warning(
            "Releasing lease on credential %s found it not in_progress; nothing changed.",
            credential_id,
        )
    return changed == 1


def claim_run_for_resume(
    session: Session,
    run_id: int,
    *,
    expected_status: str,
    expected_attempts: int,
    stale_before: datetime,
    now: datetime,
) -> bool:
    """
    Take over a resumable run, bumping its resume counter.

    The guard on (status, resume_attempts) makes two racing workers agree on a
    single winner; the heartbeat guard keeps a live run from being stolen.
    """
    changed = (
        session.query(SyncRun)
        .filter(
            SyncRun.id == run_id,
            SyncRun.status == expected_status,
            SyncRun.resume_attempts == expected_attempts,
            or_(SyncRun.heartbeat_at.is_(None), SyncRun.heartbeat_at < stale_before),
        )
        .update(
            {
                SyncRun.status: RUN_IN_PROGRESS,
                SyncRun.resume_attempts: SyncRun.resume_attempts + 1,
                SyncRun.is_resumed_run: True,
                SyncRun.heartbeat_at: now,
                SyncRun.error_message: None,
                SyncRun.error_code: None,
                SyncRun.error_phase: None,
            },
            synchronize_session=False,
        )
    )
    return changed == 1


def close_run_if_status(
    session: Session,
    run_id: int,
    *,
    expected_status: str,
    new_status: str,
    now: datetime,
    error_code: str | None = None,
    error_message: str | None = None,
) -> bool:
    """
    Conditionally close a run; used to retire crashed or exhausted runs.
    """
    values = {
        SyncRun.status: new_status,
        SyncRun.completed_at: now,
    }
    if error_code is not None:
        values[SyncRun.error_code] = error_code
    if error_message is not None:
        values[SyncRun.error_message] = error_message
    changed = (
        session.query(SyncRun)
        .filter(SyncRun.id == run_id, SyncRun.status == expected_status)
        .update(values, synchronize_session=False)
    )
    return changed == 1


__all__ = [
    "acquire_credential_lease",
    "claim_run_for_resume",
    "close_run_if_status",
    "release_credential_lease",
]
