from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..causa_keys import CausaKey
from ..db import get_session
from ..ledger import (
    CASE_SUCCESS,
    PHASE_FULL_SCAN,
    fail_run,
    finish_run,
    record_case_outcome,
    start_run,
)
from ..leases import acquire_credential_lease, close_run_if_status, release_credential_lease
from ..manager_contract import CausasUpdateConfig, QueueConfig
from ..models import (
    INITIAL_SYNC_PENDING,
    RUN_ERROR,
    RUN_IN_PROGRESS,
    RUN_INTERRUPTED,
    RUN_PARTIAL,
    SYNC_STATUS_IDLE,
    SYNC_STATUS_PENDING,
    Credential,
    SyncRun,
)
from ..portal import PortalAuthError, PortalClient, PortalCredential, PortalSession, iter_listing
from ..portal_errors import (
    ERROR_CODE_AUTH,
    ERROR_CODE_INTERRUPTED,
    classify_error_code,
    is_transient_portal_error,
)
from ..reconciler import (
    FOLDER_CREATED,
    FOLDER_CREATED_DUPLICATE,
    ReconciliationInvariantError,
    load_exclusion_set,
    reconcile_not_found,
    reconcile_observed,
)
from ..timeutils import utcnow
from .context import WorkerContext

logger = logging.getLogger("pjn_sync.worker.full_sync")


@dataclass
class ScanResult:
    pages_fetched: int = 0
    total_pages: int = 0
    reported_total: int = 0
    observed: Set[CausaKey] = field(default_factory=set)
    folders_created: int = 0
    by_fuero: Dict[str, int] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        """
        Every page fetched and the distinct keys match the portal's total.
        """
        return (
            self.pages_fetched > 0
            and self.pages_fetched == self.total_pages
            and len(self.observed) == self.reported_total
        )


def full_sync_candidates(
    session: Session,
    *,
    now: Optional[datetime] = None,
    error_cooldown: Optional[timedelta] = None,
) -> List[Credential]:
    """
    Verified credentials with a full re-synchronization requested.

    Credentials whose last attempt failed are skipped until ``error_cooldown``
    has passed, so a failing portal is not hammered.
    """
    query = session.query(Credential).filter(
        Credential.enabled.is_(True),
        Credential.verified.is_(True),
        Credential.sync_status == SYNC_STATUS_PENDING,
    )
    if now is not None and error_cooldown:
        cutoff = now - error_cooldown
        query = query.filter(
            or_(Credential.last_error_at.is_(None), Credential.last_error_at < cutoff)
        )
    return (
        query
        .order_by(Credential.last_full_scan_at.asc().nullsfirst(), Credential.id.asc())
        .all()
    )


def stale_full_scan_runs(session: Session, *, stale_before: datetime) -> List[SyncRun]:
    """
    Full-scan runs still marked in_progress whose worker stopped heartbeating.
    """
    return (
        session.query(SyncRun)
        .filter(
            SyncRun.phase == PHASE_FULL_SCAN,
            SyncRun.status == RUN_IN_PROGRESS,
            or_(SyncRun.heartbeat_at.is_(None), SyncRun.heartbeat_at < stale_before),
        )
        .order_by(SyncRun.id.asc())
        .all()
    )


def scan_listing(
    portal_session: PortalSession,
    credential_id: int,
    run_id: int,
) -> ScanResult:
    """
    Walk the portal listing page by page, reconciling each page in its own
    transaction.
    """
    result = ScanResult()
    fuero_counts: Counter = Counter()
    exclusions: Optional[Set[CausaKey]] = None
    for page in iter_listing(portal_session):
        now = utcnow()
        with get_session() as session:
            credential = session.get(Credential, credential_id)
            if exclusions is None:
                exclusions = load_exclusion_set(session, credential_id)
            run = session.get(SyncRun, run_id)
            run.heartbeat_at = now
            for causa, folder_result in reconcile_observed(session, credential, page.causas, exclusions):
                if folder_result.outcome in (FOLDER_CREATED, FOLDER_CREATED_DUPLICATE):
                    result.folders_created += 1
                record_case_outcome(run, causa_id=causa.id, key=causa.key, status=CASE_SUCCESS, now=now)
            credential.processed_causas_count = (credential.processed_causas_count or 0) + len(page.causas)
        if result.pages_fetched == 0:
            result.total_pages = page.total_pages
            result.reported_total = page.total_causas
        result.pages_fetched += 1
        for item in page.causas:
            if item.key not in result.observed:
                fuero_counts[item.key.fuero] += 1
            result.observed.add(item.key)
    result.by_fuero = dict(fuero_counts)
    return result


class FullSyncExecutor:
    """
    Full re-synchronization of one credential's case listing per call.
    """

    def __init__(
        self,
        client: PortalClient,
        queue_cfg: QueueConfig,
        ctx: WorkerContext,
        *,
        max_auth_failures: Optional[int] = None,
    ) -> None:
        self.client = client
        self.queue_cfg = queue_cfg
        self.ctx = ctx
        if max_auth_failures is None:
            max_auth_failures = CausasUpdateConfig().max_auth_failures
        self.max_auth_failures = max(1, max_auth_failures)

    def run_once(self) -> bool:
        self.recover_stale_scans()
        with get_session() as session:
            candidates = [
                c.id
                for c in full_sync_candidates(
                    session,
                    now=utcnow(),
                    error_cooldown=timedelta(milliseconds=self.queue_cfg.error_cooldown_ms),
                )
            ]
        for credential_id in candidates:
            claimed = self._claim(credential_id)
            if claimed is None:
                continue
            self._execute(credential_id, *claimed)
            return True
        return False

    def recover_stale_scans(self) -> int:
        """
        Close full scans left in_progress by a dead worker and re-queue their
        credentials. Returns the number of runs recovered.
        """
        now = utcnow()
        stale_before = now - timedelta(minutes=self.queue_cfg.stale_run_minutes)
        recovered = 0
        with get_session() as session:
            stale = [
                (run.id, run.credential_id)
                for run in stale_full_scan_runs(session, stale_before=stale_before)
            ]
            for run_id, credential_id in stale:
                if not close_run_if_status(
                    session,
                    run_id,
                    expected_status=RUN_IN_PROGRESS,
                    new_status=RUN_INTERRUPTED,
                    now=now,
                    error_code=ERROR_CODE_INTERRUPTED,
                    error_message="Worker stopped heartbeating during full scan",
                ):
                    continue
                release_credential_lease(session, credential_id, SYNC_STATUS_PENDING)
                recovered += 1
                logger.warning(
                    "Full scan run %s for credential %s was abandoned; re-queued the credential.",
                    run_id,
                    credential_id,
                )
        return recovered

    def _claim(self, credential_id: int):
        now = utcnow()
        with get_session() as session:
            if not acquire_credential_lease(session, credential_id, SYNC_STATUS_PENDING):
                return None
            credential = session.get(Credential, credential_id)
            credential.processed_causas_count = 0
            run = start_run(
                session,
                credential_id=credential_id,
                user_id=credential.user_id,
                phase=PHASE_FULL_SCAN,
                planned_causa_ids=[],
                now=now,
                instance_name=self.ctx.instance_name,
                worker_pid=self.ctx.pid,
            )
            return run.id, credential.user_id, credential.cuil

    def _execute(self, credential_id: int, run_id: int, user_id: str, cuil: str) -> None:
        logger.info("Credential %s: full scan run %s.", credential_id, run_id)
        self.ctx.beat(processing=True, credential_id=credential_id)
        portal_session: Optional[PortalSession] = None
        try:
            portal_session = self.client.login(
                PortalCredential(credential_id=credential_id, user_id=user_id, cuil=cuil)
            )
            result = scan_listing(portal_session, credential_id, run_id)
            self._finish(credential_id, run_id, result)
        except KeyboardInterrupt:
            self._fail(
                credential_id,
                run_id,
                RUN_INTERRUPTED,
                ERROR_CODE_INTERRUPTED,
                "Worker shutting down",
                SYNC_STATUS_PENDING,
            )
            raise
        except ReconciliationInvariantError:
            raise
        except PortalAuthError as exc:
            self._auth_failure(credential_id, run_id, exc)
        except Exception as exc:
            transient = is_transient_portal_error(exc)
            logger.error(
                "Full scan for credential %s failed (%s): %s",
                credential_id,
                "transient" if transient else "unexpected",
                exc,
                exc_info=not transient,
            )
            self._fail(credential_id, run_id, RUN_ERROR, classify_error_code(exc), str(exc), None)
        finally:
            if portal_session is not None:
                try:
                    portal_session.close()
                except Exception as exc:
                    logger.warning("Closing portal session for credential %s failed: %s", credential_id, exc)
            self.ctx.beat()

    def _finish(self, credential_id: int, run_id: int, result: ScanResult) -> None:
        now = utcnow()
        with get_session() as session:
            credential = session.get(Credential, credential_id)
            reconcile_not_found(session, credential, result.observed, complete=result.complete)
            if not result.complete:
                logger.warning(
                    "Credential %s scan incomplete (pages %s/%s, keys %s/%s); not-found flags untouched.",
                    credential_id,
                    result.pages_fetched,
                    result.total_pages,
                    len(result.observed),
                    result.reported_total,
                )
            previous_total = credential.last_listing_total
            if previous_total is not None and result.reported_total < previous_total:
                logger.info(
                    "Credential %s listing shrank from %s to %s causas.",
                    credential_id,
                    previous_total,
                    result.reported_total,
                )
            credential.last_listing_total = result.reported_total
            credential.expected_causas_count = result.reported_total
            credential.last_full_scan_at = now
            credential.last_sync_at = now
            credential.stats = {"byFuero": result.by_fuero, "complete": result.complete}
            credential.verified = True
            credential.verified_at = credential.verified_at or now
            if not credential.is_valid:
                credential.is_valid = True
                credential.is_valid_at = now
            if credential.initial_movements_sync is None:
                credential.initial_movements_sync = INITIAL_SYNC_PENDING
            credential.consecutive_errors = 0
            credential.consecutive_auth_failures = 0

            run = session.get(SyncRun, run_id)
            run.planned_causa_ids = list(
                dict.fromkeys(entry["causaId"] for entry in run.causas_detail or [])
            )
            run.total_causas = len(run.planned_causa_ids)
            finish_run(run, now=now)
            if not result.complete:
                run.status = RUN_PARTIAL
            run.is_complete = result.complete
            release_credential_lease(session, credential_id, SYNC_STATUS_IDLE)
        logger.info(
            "Credential %s full scan done: %d causa(s), %d folder(s) created, complete=%s.",
            credential_id,
            len(result.observed),
            result.folders_created,
            result.complete,
        )

    def _auth_failure(self, credential_id: int, run_id: int, exc: PortalAuthError) -> None:
        now = utcnow()
        with get_session() as session:
            run = session.get(SyncRun, run_id)
            fail_run(run, now=now, code=ERROR_CODE_AUTH, message=str(exc), phase="login")
            credential = session.get(Credential, credential_id)
            credential.consecutive_auth_failures = (credential.consecutive_auth_failures or 0) + 1
            credential.last_error_message = str(exc)[:2000]
            credential.last_error_code = ERROR_CODE_AUTH
            credential.last_error_at = now
            failures = credential.consecutive_auth_failures
            if failures >= self.max_auth_failures:
                credential.is_valid = False
                credential.is_valid_at = now
                restore = SYNC_STATUS_IDLE
            else:
                restore = SYNC_STATUS_PENDING
            release_credential_lease(session, credential_id, restore)
        if restore == SYNC_STATUS_IDLE:
            logger.error(
                "Credential %s failed authentication %s time(s); marked invalid.",
                credential_id,
                failures,
            )
        else:
            logger.warning(
                "Credential %s rejected by portal during full scan (%s/%s): %s",
                credential_id,
                failures,
                self.max_auth_failures,
                exc,
            )

    def _fail(
        self,
        credential_id: int,
        run_id: int,
        status: str,
        code: str,
        message: str,
        restore: Optional[str],
    ) -> None:
        """
        Close the run and hand the lease back; the credential is re-queued
        until it has failed ``maxConsecutiveErrors`` times in a row.
        """
        now = utcnow()
        with get_session() as session:
            run = session.get(SyncRun, run_id)
            fail_run(run, now=now, code=code, message=message, phase=PHASE_FULL_SCAN, status=status)
            credential = session.get(Credential, credential_id)
            if restore is None:
                credential.consecutive_errors = (credential.consecutive_errors or 0) + 1
                credential.last_error_message = message[:2000]
                credential.last_error_code = code
                credential.last_error_at = now
                if credential.consecutive_errors >= self.queue_cfg.max_consecutive_errors:
                    restore = SYNC_STATUS_IDLE
                    logger.error(
                        "Credential %s full scan failed %s time(s); leaving it idle.",
                        credential_id,
                        credential.consecutive_errors,
                    )
                else:
                    restore = SYNC_STATUS_PENDING
            release_credential_lease(session, credential_id, restore)


__all__ = [
    "FullSyncExecutor",
    "ScanResult",
    "full_sync_candidates",
    "scan_listing",
    "stale_full_scan_runs",
]
