from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import List, Optional, Set

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..db import get_session
from ..ledger import (
    CASE_ERROR,
    CASE_NOT_FOUND,
    CASE_SKIPPED,
    CASE_SUCCESS,
    PHASE_INITIAL,
    PHASE_UPDATE,
    RESUMABLE_RUN_STATUSES,
    fail_run,
    finish_run,
    record_case_outcome,
    remaining_causa_ids,
    runs_started_since,
    start_of_day,
    start_run,
)
from ..leases import (
    acquire_credential_lease,
    claim_run_for_resume,
    close_run_if_status,
    release_credential_lease,
)
from ..manager_contract import CausasUpdateConfig
from ..models import (
    INITIAL_SYNC_COMPLETED,
    INITIAL_SYNC_IN_PROGRESS,
    INITIAL_SYNC_PENDING,
    RUN_ERROR,
    RUN_IN_PROGRESS,
    RUN_INTERRUPTED,
    SYNC_STATUS_IDLE,
    SYNC_STATUS_IN_PROGRESS,
    SYNC_STATUS_PENDING,
    Causa,
    Credential,
    SyncRun,
    causa_credentials,
)
from ..movements import apply_movements
from ..portal import (
    CausaNotFoundError,
    JurisdictionUnavailableError,
    PortalAuthError,
    PortalClient,
    PortalCredential,
    PortalSession,
)
from ..portal_errors import (
    ERROR_CODE_AUTH,
    ERROR_CODE_INTERRUPTED,
    ERROR_CODE_JURISDICTION,
    ERROR_CODE_RESUME_EXHAUSTED,
    classify_error_code,
    is_transient_portal_error,
)
from ..reconciler import ReconciliationInvariantError
from ..timeutils import ensure_utc, utcnow
from .context import WorkerContext

"""
pjn_sync.worker.phases - Phased synchronization of case movements

Each invocation picks the highest-priority unit of work available:

    Phase 0  initial sync of a newly validated credential (no recency gate)
    Phase 1  resume of an interrupted/failed update run
    Phase 2  regular update of credentials with stale causas

Exclusivity per credential comes from the sync_status lease (see
pjn_sync.leases); a crashed holder is recovered by Phase 0 (first runs) or
Phase 1 (update runs) once its heartbeat is older than resumeDelayMinutes.
"""

logger = logging.getLogger("pjn_sync.worker.phases")

PHASE_RESUME = "resume"

PHASE0_INITIAL_STATES = (INITIAL_SYNC_PENDING, INITIAL_SYNC_IN_PROGRESS)
CREATION_ACTIVE_STATES = (SYNC_STATUS_PENDING, SYNC_STATUS_IN_PROGRESS)


@dataclass
class WorkUnit:
    phase: str
    credential_id: int
    user_id: str
    cuil: str
    run_id: int
    # Credential sync_status to restore when the lease is released.
    lease_restore: str
    causa_ids: List[int] = field(default_factory=list)


# === Eligibility queries ===


def _stale_causa_clause(cfg: CausasUpdateConfig, now: datetime):
    threshold = now - timedelta(hours=cfg.update_threshold_hours)
    return (
        or_(Causa.last_update.is_(None), Causa.last_update < threshold),
        or_(Causa.skip_until.is_(None), Causa.skip_until <= now),
    )


def _resumable_run_clause(cfg: CausasUpdateConfig):
    return (
        SyncRun.status.in_(RESUMABLE_RUN_STATUSES),
        SyncRun.is_first_run.is_(False),
        SyncRun.phase == PHASE_UPDATE,
        SyncRun.resume_attempts < cfg.max_resume_attempts,
        or_(SyncRun.error_code.is_(None), SyncRun.error_code != ERROR_CODE_RESUME_EXHAUSTED),
    )


def phase0_candidates(session: Session) -> List[Credential]:
    return (
        session.query(Credential)
        .filter(
            Credential.enabled.is_(True),
            Credential.is_valid.is_(True),
            Credential.initial_movements_sync.in_(PHASE0_INITIAL_STATES),
        )
        .order_by(Credential.id.asc())
        .all()
    )


def resumable_runs(session: Session, cfg: CausasUpdateConfig, now: datetime) -> List[SyncRun]:
    stale_before = now - timedelta(minutes=cfg.resume_delay_minutes)
    return (
        session.query(SyncRun)
        .join(Credential, Credential.id == SyncRun.credential_id)
        .filter(
            *_resumable_run_clause(cfg),
            or_(SyncRun.heartbeat_at.is_(None), SyncRun.heartbeat_at < stale_before),
            Credential.enabled.is_(True),
            Credential.is_valid.is_(True),
        )
        .order_by(SyncRun.started_at.asc(), SyncRun.id.asc())
        .all()
    )


def exhausted_runs(session: Session, cfg: CausasUpdateConfig, now: datetime) -> List[SyncRun]:
    stale_before = now - timedelta(minutes=cfg.resume_delay_minutes)
    return (
        session.query(SyncRun)
        .filter(
            SyncRun.status.in_(RESUMABLE_RUN_STATUSES),
            SyncRun.is_first_run.is_(False),
            SyncRun.phase == PHASE_UPDATE,
            SyncRun.resume_attempts >= cfg.max_resume_attempts,
            or_(
                SyncRun.error_code.is_(None),
                SyncRun.error_code != ERROR_CODE_RESUME_EXHAUSTED,
            ),
            or_(SyncRun.heartbeat_at.is_(None), SyncRun.heartbeat_at < stale_before),
        )
        .all()
    )


def phase2_candidates(
    session: Session,
    cfg: CausasUpdateConfig,
    now: datetime,
) -> List[Credential]:
    """
    Credentials due for a regular update, oldest run first.

    Excludes leased credentials, pending initial syncs and credentials with a
    resumable run, so Phase 2 never overlaps Phase 0 or Phase 1.
    """
    min_gap_cutoff = now - timedelta(minutes=cfg.min_time_between_runs_minutes)

    has_stale_causa = (
        select(causa_credentials.c.causa_id)
        .join(Causa, Causa.id == causa_credentials.c.causa_id)
        .where(
            causa_credentials.c.credential_id == Credential.id,
            *_stale_causa_clause(cfg, now),
        )
        .exists()
    )

    query = session.query(Credential).filter(
        Credential.enabled.is_(True),
        Credential.is_valid.is_(True),
        Credential.sync_status != SYNC_STATUS_IN_PROGRESS,
        or_(
            Credential.initial_movements_sync.is_(None),
            Credential.initial_movements_sync.notin_(PHASE0_INITIAL_STATES),
        ),
        or_(Credential.last_run_at.is_(None), Credential.last_run_at < min_gap_cutoff),
        has_stale_causa,
    )
    if cfg.resume_enabled:
        has_resumable_run = (
            select(SyncRun.id)
            .where(SyncRun.credential_id == Credential.id, *_resumable_run_clause(cfg))
            .exists()
        )
        query = query.filter(~has_resumable_run)

    rows = query.order_by(Credential.last_run_at.asc().nullsfirst(), Credential.id.asc()).all()

    day_start = start_of_day(now)
    eligible: List[Credential] = []
    for credential in rows:
        if runs_started_since(session, credential.id, day_start) >= cfg.max_runs_per_day:
            continue
        eligible.append(credential)
        if len(eligible) >= cfg.max_credentials_per_run:
            break
    return eligible


def linked_causa_ids(session: Session, credential_id: int) -> List[int]:
    """
    All causas linked to a credential, in the order they were observed.
    """
    rows = (
        session.query(causa_credentials.c.causa_id)
        .filter(causa_credentials.c.credential_id == credential_id)
        .order_by(causa_credentials.c.linked_at.asc(), causa_credentials.c.causa_id.asc())
        .all()
    )
    return [cid for (cid,) in rows]


def stale_causa_ids(
    session: Session,
    credential_id: int,
    cfg: CausasUpdateConfig,
    now: datetime,
) -> List[int]:
    query = (
        session.query(Causa.id)
        .join(causa_credentials, causa_credentials.c.causa_id == Causa.id)
        .filter(
            causa_credentials.c.credential_id == credential_id,
            *_stale_causa_clause(cfg, now),
        )
        .order_by(causa_credentials.c.linked_at.asc(), Causa.id.asc())
    )
    if cfg.max_causas_per_credential > 0:
        query = query.limit(cfg.max_causas_per_credential)
    return [cid for (cid,) in query.all()]


def count_pending_units(session: Session, cfg: CausasUpdateConfig, now: datetime) -> int:
    """
    Backlog of the phased worker: Phase 0 + Phase 1 + Phase 2 units.
    """
    phase0 = len(phase0_candidates(session))
    phase1 = len(resumable_runs(session, cfg, now)) if cfg.resume_enabled else 0
    phase2 = len(phase2_candidates(session, replace(cfg, max_credentials_per_run=1_000_000), now))
    return phase0 + phase1 + phase2


def has_pending_initial_sync(session: Session) -> bool:
    return (
        session.query(Credential.id)
        .filter(
            Credential.enabled.is_(True),
            Credential.initial_movements_sync == INITIAL_SYNC_PENDING,
        )
        .first()
        is not None
    )


# === Execution ===


class PhaseExecutor:
    """
    Runs one unit of phased work per call to :meth:`run_once`.
    """

    def __init__(
        self,
        client: PortalClient,
        cfg: CausasUpdateConfig,
        ctx: WorkerContext,
    ) -> None:
        self.client = client
        self.cfg = cfg
        self.ctx = ctx

    # --- selection + claiming ---

    def run_once(self) -> bool:
        """
        Returns True if any unit of work was processed.
        """
        if self._try_phase0():
            return True
        if self.cfg.resume_enabled:
            self._retire_exhausted_runs()
            if self._try_resume():
                return True
        else:
            self._close_crashed_update_runs()
        return self._run_phase2() > 0

    def _is_stale(self, beat: Optional[datetime], now: datetime) -> bool:
        beat = ensure_utc(beat)
        return beat is None or beat < now - timedelta(minutes=self.cfg.resume_delay_minutes)

    def _try_phase0(self) -> bool:
        with get_session() as session:
            candidates = [(c.id, c.sync_status) for c in phase0_candidates(session)]
        for credential_id, observed in candidates:
            if observed == SYNC_STATUS_PENDING:
                observed = self._wait_for_causa_creation(credential_id, observed)
                if observed is None:
                    continue
            unit = self._claim_phase0(credential_id, observed)
            if unit is not None:
                self._execute(unit)
                return True
        return False

    def _claim_phase0(self, credential_id: int, observed: str) -> Optional[WorkUnit]:
        now = utcnow()
        with get_session() as session:
            previous = (
                session.query(SyncRun)
                .filter(
                    SyncRun.credential_id == credential_id,
                    SyncRun.is_first_run.is_(True),
                    SyncRun.status == RUN_IN_PROGRESS,
                )
                .order_by(SyncRun.id.desc())
                .all()
            )
            if observed == SYNC_STATUS_IN_PROGRESS:
                # Lease held: only a crashed first run may be taken over.
                if not previous or not self._is_stale(previous[0].heartbeat_at, now):
                    return None
                restore = SYNC_STATUS_IDLE
            else:
                if not acquire_credential_lease(session, credential_id, observed):
                    return None
                restore = observed

            prev_ids = [run.id for run in previous]
            for idx, run_id in enumerate(prev_ids):
                closed = close_run_if_status(
                    session,
                    run_id,
                    expected_status=RUN_IN_PROGRESS,
                    new_status=RUN_INTERRUPTED,
                    now=now,
                    error_code=ERROR_CODE_INTERRUPTED,
                    error_message="Superseded by a new initial sync run",
                )
                if idx == 0 and observed == SYNC_STATUS_IN_PROGRESS and not closed:
                    session.rollback()
                    return None

            credential = session.get(Credential, credential_id)
            credential.initial_movements_sync = INITIAL_SYNC_IN_PROGRESS
            credential.last_run_at = now
            planned = linked_causa_ids(session, credential_id)
            run = start_run(
                session,
                credential_id=credential_id,
                user_id=credential.user_id,
                phase=PHASE_INITIAL,
                planned_causa_ids=planned,
                now=now,
                is_first_run=True,
                instance_name=self.ctx.instance_name,
                worker_pid=self.ctx.pid,
                config_snapshot=self.cfg.snapshot(),
            )
            if prev_ids:
                logger.info(
                    "Credential %s: closed interrupted first run(s) %s; restarting initial sync.",
                    credential_id,
                    prev_ids,
                )
            return WorkUnit(
                phase=PHASE_INITIAL,
                credential_id=credential_id,
                user_id=credential.user_id,
                cuil=credential.cuil,
                run_id=run.id,
                lease_restore=restore,
                causa_ids=planned,
            )

    def _retire_exhausted_runs(self) -> None:
        now = utcnow()
        with get_session() as session:
            runs = [
                (run.id, run.credential_id, run.status, run.resume_attempts)
                for run in exhausted_runs(session, self.cfg, now)
            ]
            for run_id, credential_id, status, attempts in runs:
                closed = close_run_if_status(
                    session,
                    run_id,
                    expected_status=status,
                    new_status=RUN_ERROR,
                    now=now,
                    error_code=ERROR_CODE_RESUME_EXHAUSTED,
                    error_message=f"Resume budget exhausted after {attempts} attempt(s)",
                )
                if not closed:
                    continue
                logger.error(
                    "Run %s for credential %s exhausted its resume budget (%s); operator attention required.",
                    run_id,
                    credential_id,
                    attempts,
                )
                if status == RUN_IN_PROGRESS:
                    release_credential_lease(session, credential_id, SYNC_STATUS_IDLE)

    def _close_crashed_update_runs(self) -> None:
        now = utcnow()
        with get_session() as session:
            runs = [
                (run.id, run.credential_id, run.heartbeat_at)
                for run in session.query(SyncRun)
                .filter(
                    SyncRun.status == RUN_IN_PROGRESS,
                    SyncRun.phase == PHASE_UPDATE,
                    SyncRun.is_first_run.is_(False),
                )
                .all()
            ]
            for run_id, credential_id, beat in runs:
                if not self._is_stale(beat, now):
                    continue
                if close_run_if_status(
                    session,
                    run_id,
                    expected_status=RUN_IN_PROGRESS,
                    new_status=RUN_INTERRUPTED,
                    now=now,
                    error_code=ERROR_CODE_INTERRUPTED,
                    error_message="Worker stopped heartbeating; resume disabled",
                ):
                    release_credential_lease(session, credential_id, SYNC_STATUS_IDLE)

    def _try_resume(self) -> bool:
        now = utcnow()
        with get_session() as session:
            candidates = [
                (run.id, run.credential_id, run.status, run.resume_attempts)
                for run in resumable_runs(session, self.cfg, now)
            ]
        for run_id, credential_id, status, attempts in candidates:
            observed = self._read_sync_status(credential_id)
            if observed == SYNC_STATUS_PENDING:
                if self._wait_for_causa_creation(credential_id, observed) is None:
                    continue
            unit = self._claim_resume(run_id, credential_id, status, attempts)
            if unit is not None:
                self._execute(unit)
                return True
        return False

    def _claim_resume(
        self,
        run_id: int,
        credential_id: int,
        status: str,
        attempts: int,
    ) -> Optional[WorkUnit]:
        now = utcnow()
        stale_before = now - timedelta(minutes=self.cfg.resume_delay_minutes)
        with get_session() as session:
            observed = (
                session.query(Credential.sync_status)
                .filter(Credential.id == credential_id)
                .scalar()
            )
            if observed is None:
                return None

            if status == RUN_IN_PROGRESS and observed == SYNC_STATUS_IN_PROGRESS:
                # The lease belongs to the crashed run; taking over the run
                # takes over the lease.
                restore = SYNC_STATUS_IDLE
            elif observed == SYNC_STATUS_IN_PROGRESS:
                return None
            else:
                if not acquire_credential_lease(session, credential_id, observed):
                    return None
                restore = observed

            if not claim_run_for_resume(
                session,
                run_id,
                expected_status=status,
                expected_attempts=attempts,
                stale_before=stale_before,
                now=now,
            ):
                session.rollback()
                return None

            run = session.get(SyncRun, run_id)
            existing = {
                cid
                for (cid,) in session.query(Causa.id).filter(
                    Causa.id.in_(run.planned_causa_ids or [])
                )
            }
            remaining = [cid for cid in remaining_causa_ids(run) if cid in existing]
            credential = session.get(Credential, credential_id)
            credential.last_run_at = now
            run.instance_name = self.ctx.instance_name
            run.worker_pid = self.ctx.pid
            logger.info(
                "Resuming run %s for credential %s (attempt %s/%s, %d causa(s) remaining).",
                run_id,
                credential_id,
                attempts + 1,
                self.cfg.max_resume_attempts,
                len(remaining),
            )
            return WorkUnit(
                phase=PHASE_RESUME,
                credential_id=credential_id,
                user_id=credential.user_id,
                cuil=credential.cuil,
                run_id=run_id,
                lease_restore=restore,
                causa_ids=remaining,
            )

    def _run_phase2(self) -> int:
        now = utcnow()
        with get_session() as session:
            candidates = [(c.id, c.sync_status) for c in phase2_candidates(session, self.cfg, now)]

        processed = 0
        for credential_id, observed in candidates:
            if self.ctx.stop_requested:
                break
            if processed:
                time.sleep(self.cfg.delay_between_credentials_ms / 1000.0)
            current = self._wait_for_causa_creation(credential_id, observed)
            if current is None:
                continue
            unit = self._claim_update(credential_id, current)
            if unit is None:
                continue
            self._execute(unit)
            processed += 1
        return processed

    def _read_sync_status(self, credential_id: int) -> Optional[str]:
        with get_session() as session:
            return (
                session.query(Credential.sync_status)
                .filter(Credential.id == credential_id)
                .scalar()
            )

    def _wait_for_causa_creation(self, credential_id: int, observed: str) -> Optional[str]:
        """
        Return the sync_status to lease from, or None to defer the credential
        to the next cycle.
        """
        if observed not in CREATION_ACTIVE_STATES or not self.cfg.wait_for_causa_creation:
            return observed

        interval_s = max(self.cfg.check_interval_ms, 1) / 1000.0
        polls = max(1, math.ceil(self.cfg.max_wait_minutes * 60 / interval_s))
        logger.info(
            "Credential %s has a causa-creation process active (%s); waiting up to %s minute(s).",
            credential_id,
            observed,
            self.cfg.max_wait_minutes,
        )
        for _ in range(polls):
            if self.ctx.stop_requested:
                return None
            time.sleep(interval_s)
            self.ctx.beat()
            status = self._read_sync_status(credential_id)
            if status is None:
                return None
            if status not in CREATION_ACTIVE_STATES:
                return status
        logger.info(
            "Credential %s still busy after %s minute(s); deferring to next cycle.",
            credential_id,
            self.cfg.max_wait_minutes,
        )
        return None

    def _claim_update(self, credential_id: int, observed: str) -> Optional[WorkUnit]:
        now = utcnow()
        with get_session() as session:
            if not acquire_credential_lease(session, credential_id, observed):
                return None
            planned = stale_causa_ids(session, credential_id, self.cfg, now)
            if not planned:
                session.rollback()
                return None
            credential = session.get(Credential, credential_id)
            credential.last_run_at = now
            run = start_run(
                session,
                credential_id=credential_id,
                user_id=credential.user_id,
                phase=PHASE_UPDATE,
                planned_causa_ids=planned,
                now=now,
                instance_name=self.ctx.instance_name,
                worker_pid=self.ctx.pid,
                config_snapshot=self.cfg.snapshot(),
            )
            return WorkUnit(
                phase=PHASE_UPDATE,
                credential_id=credential_id,
                user_id=credential.user_id,
                cuil=credential.cuil,
                run_id=run.id,
                lease_restore=observed,
                causa_ids=planned,
            )

    # --- execution ---

    def _execute(self, unit: WorkUnit) -> None:
        logger.info(
            "Credential %s: %s run %s with %d causa(s).",
            unit.credential_id,
            unit.phase,
            unit.run_id,
            len(unit.causa_ids),
        )
        self.ctx.beat(processing=True, credential_id=unit.credential_id)
        try:
            self._process(unit)
        except KeyboardInterrupt:
            self._close(
                unit,
                status=RUN_INTERRUPTED,
                code=ERROR_CODE_INTERRUPTED,
                message="Worker shutting down",
            )
            raise
        except ReconciliationInvariantError:
            raise
        except Exception as exc:
            logger.exception("Run %s for credential %s aborted.", unit.run_id, unit.credential_id)
            self._close(unit, status=RUN_ERROR, code=classify_error_code(exc), message=str(exc))
        finally:
            self.ctx.beat()

    def _process(self, unit: WorkUnit) -> None:
        portal_session: Optional[PortalSession] = None
        try:
            portal_session = self.client.login(
                PortalCredential(
                    credential_id=unit.credential_id,
                    user_id=unit.user_id,
                    cuil=unit.cuil,
                )
            )
            skipped_fueros: Set[str] = set()
            for idx, causa_id in enumerate(unit.causa_ids):
                if idx > 0:
                    time.sleep(self.cfg.delay_between_causas_ms / 1000.0)
                self._process_causa(unit, portal_session, causa_id, skipped_fueros)
                self.ctx.beat(processing=True, credential_id=unit.credential_id)
        except PortalAuthError as exc:
            self._auth_failure(unit, exc)
            return
        finally:
            if portal_session is not None:
                try:
                    portal_session.close()
                except Exception as exc:
                    logger.warning("Closing portal session for credential %s failed: %s", unit.credential_id, exc)
        self._finish(unit)

    def _record(self, unit: WorkUnit, causa_id: int, key, status: str, **kwargs) -> None:
        now = utcnow()
        with get_session() as session:
            run = session.get(SyncRun, unit.run_id)
            record_case_outcome(run, causa_id=causa_id, key=key, status=status, now=now, **kwargs)

    def _process_causa(
        self,
        unit: WorkUnit,
        portal_session: PortalSession,
        causa_id: int,
        skipped_fueros: Set[str],
    ) -> None:
        now = utcnow()
        jurisdiction_until = now + timedelta(minutes=self.cfg.jurisdiction_cooldown_minutes)
        with get_session() as session:
            causa = session.get(Causa, causa_id)
            if causa is None:
                key = None
            else:
                key = causa.key
                if key.fuero in skipped_fueros:
                    causa.skip_until = jurisdiction_until
                cooldown = ensure_utc(causa.skip_until)

        if key is None:
            logger.info("Causa %s was removed locally; nothing to update.", causa_id)
            return
        if key.fuero in skipped_fueros:
            self._record(
                unit,
                causa_id,
                key,
                CASE_SKIPPED,
                error=f"Jurisdiction {key.fuero} unavailable earlier in this run",
            )
            return
        if cooldown is not None and cooldown > now:
            self._record(unit, causa_id, key, CASE_SKIPPED, error=f"In cooldown until {cooldown.isoformat()}")
            return

        try:
            movements = portal_session.fetch_movements(key)
        except PortalAuthError:
            raise
        except CausaNotFoundError as exc:
            logger.info("Causa %s not found on portal: %s", key, exc)
            self._record(unit, causa_id, key, CASE_NOT_FOUND, error=str(exc))
            return
        except JurisdictionUnavailableError as exc:
            fuero = exc.fuero or key.fuero
            skipped_fueros.add(fuero)
            logger.warning(
                "Jurisdiction %s unavailable while updating %s; cooling down until %s.",
                fuero,
                key,
                jurisdiction_until.isoformat(),
            )
            with get_session() as session:
                causa = session.get(Causa, causa_id)
                if causa is not None:
                    causa.skip_until = jurisdiction_until
                    causa.last_error = f"{ERROR_CODE_JURISDICTION}: {exc}"
            self._record(unit, causa_id, key, CASE_ERROR, error=f"{ERROR_CODE_JURISDICTION}: {exc}")
            return
        except ReconciliationInvariantError:
            raise
        except Exception as exc:
            self._case_error(unit, causa_id, key, exc)
            return

        with get_session() as session:
            causa = session.get(Causa, causa_id)
            if causa is None:
                return
            diff = apply_movements(session, causa, movements)
            causa.consecutive_errors = 0
            causa.skip_until = None
            causa.last_error = None
            run = session.get(SyncRun, unit.run_id)
            record_case_outcome(
                run,
                causa_id=causa_id,
                key=key,
                status=CASE_SUCCESS,
                now=utcnow(),
                movimientos_added=diff.added,
            )

    def _case_error(self, unit: WorkUnit, causa_id: int, key, exc: Exception) -> None:
        transient = is_transient_portal_error(exc)
        now = utcnow()
        code = classify_error_code(exc)
        if transient:
            logger.warning("Transient error updating %s: %s", key, exc)
        else:
            logger.error("Error updating %s: %s", key, exc, exc_info=True)
        with get_session() as session:
            causa = session.get(Causa, causa_id)
            if causa is not None:
                causa.consecutive_errors = (causa.consecutive_errors or 0) + 1
                causa.last_error = f"{code}: {exc}"[:2000]
                if causa.consecutive_errors >= self.cfg.case_error_threshold:
                    causa.skip_until = now + timedelta(minutes=self.cfg.case_error_cooldown_minutes)
                    logger.warning(
                        "Causa %s failed %s time(s) in a row; cooling down until %s.",
                        key,
                        causa.consecutive_errors,
                        causa.skip_until.isoformat(),
                    )
            run = session.get(SyncRun, unit.run_id)
            record_case_outcome(run, causa_id=causa_id, key=key, status=CASE_ERROR, now=now, error=f"{code}: {exc}")

    def _finish(self, unit: WorkUnit) -> None:
        now = utcnow()
        with get_session() as session:
            run = session.get(SyncRun, unit.run_id)
            status = finish_run(run, now=now)
            credential = session.get(Credential, unit.credential_id)
            credential.last_sync_at = now
            credential.consecutive_errors = 0
            credential.consecutive_auth_failures = 0
            if run.is_first_run:
                credential.initial_movements_sync = INITIAL_SYNC_COMPLETED
                logger.info("Credential %s initial sync completed (%s).", unit.credential_id, status)
            release_credential_lease(session, unit.credential_id, unit.lease_restore)

    def _auth_failure(self, unit: WorkUnit, exc: PortalAuthError) -> None:
        now = utcnow()
        with get_session() as session:
            run = session.get(SyncRun, unit.run_id)
            fail_run(run, now=now, code=ERROR_CODE_AUTH, message=str(exc), phase="login")
            credential = session.get(Credential, unit.credential_id)
            credential.consecutive_auth_failures = (credential.consecutive_auth_failures or 0) + 1
            credential.last_error_message = str(exc)[:2000]
            credential.last_error_code = ERROR_CODE_AUTH
            credential.last_error_at = now
            if credential.consecutive_auth_failures >= self.cfg.max_auth_failures:
                credential.is_valid = False
                credential.is_valid_at = now
                logger.error(
                    "Credential %s failed authentication %s time(s); marked invalid.",
                    unit.credential_id,
                    credential.consecutive_auth_failures,
                )
            release_credential_lease(session, unit.credential_id, unit.lease_restore)

    def _close(self, unit: WorkUnit, *, status: str, code: str, message: str) -> None:
        now = utcnow()
        with get_session() as session:
            run = session.get(SyncRun, unit.run_id)
            if run is not None:
                fail_run(run, now=now, code=code, message=message, phase=unit.phase, status=status)
            credential = session.get(Credential, unit.credential_id)
            if credential is not None and status == RUN_ERROR:
                credential.consecutive_errors = (credential.consecutive_errors or 0) + 1
                credential.last_error_message = message[:2000]
                credential.last_error_code = code
                credential.last_error_at = now
            release_credential_lease(session, unit.credential_id, unit.lease_restore)


__all__ = [
    "PHASE_RESUME",
    "PhaseExecutor",
    "WorkUnit",
    "count_pending_units",
    "exhausted_runs",
    "has_pending_initial_sync",
    "linked_causa_ids",
    "phase0_candidates",
    "phase2_candidates",
    "resumable_runs",
    "stale_causa_ids",
]
