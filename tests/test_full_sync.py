from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import List

from pjn_sync import db as db_module
from pjn_sync.causa_keys import CausaKey
from pjn_sync.db import Base, get_engine, get_session
from pjn_sync.ledger import start_run
from pjn_sync.manager_contract import QueueConfig
from pjn_sync.models import Credential, Folder, SyncRun
from pjn_sync.portal import ListingPage, PortalAuthError, PortalCausa, PortalTimeoutError
from pjn_sync.timeutils import utcnow
from pjn_sync.worker.context import WorkerContext
from pjn_sync.worker.full_sync import FullSyncExecutor, full_sync_candidates

K1 = CausaKey("CIV", 100, 2024)
K2 = CausaKey("COM", 200, 2023)
K3 = CausaKey("CNT", 300, 2022)


def _init_test_db(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "full_sync.db"
    monkeypatch.setenv("PJN_SYNC_DATABASE_URL", f"sqlite:///{db_path}")
    db_module.reset_engine()

    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)


class ListingSession:
    def __init__(self, pages: List[ListingPage], error: Exception | None = None) -> None:
        self.pages = pages
        self.error = error
        self.requested: List[int] = []

    def fetch_listing_page(self, page: int) -> ListingPage:
        self.requested.append(page)
        if self.error is not None:
            raise self.error
        return self.pages[page - 1]

    def fetch_movements(self, key):
        raise AssertionError("full scans do not fetch movements")

    def close(self) -> None:
        pass


class ListingClient:
    def __init__(self, session: ListingSession | None = None, login_error=None) -> None:
        self.session = session
        self.login_error = login_error

    def login(self, credential):
        if self.login_error is not None:
            raise self.login_error
        return self.session


def _pages(keys_per_page: List[List[CausaKey]], total: int | None = None) -> List[ListingPage]:
    reported = total if total is not None else sum(len(keys) for keys in keys_per_page)
    return [
        ListingPage(
            page=i + 1,
            total_pages=len(keys_per_page),
            total_causas=reported,
            causas=[PortalCausa(key=k, caratula=f"CARATULA {k.number}") for k in keys],
        )
        for i, keys in enumerate(keys_per_page)
    ]


def _executor(
    client,
    queue_cfg: QueueConfig | None = None,
    max_auth_failures: int | None = None,
) -> FullSyncExecutor:
    ctx = WorkerContext(kind="mis-causas", instance_name="mis-causas-test")
    return FullSyncExecutor(
        client, queue_cfg or QueueConfig(), ctx, max_auth_failures=max_auth_failures
    )


def _pending_credential(
    user_id: str = "user-9", cuil: str = "27222222223", sync_status: str = "pending"
) -> int:
    with get_session() as session:
        credential = Credential(
            user_id=user_id,
            cuil=cuil,
            enabled=True,
            verified=True,
            is_valid=True,
            sync_status=sync_status,
        )
        session.add(credential)
        session.flush()
        return credential.id


def _requeue(credential_id: int) -> None:
    with get_session() as session:
        session.get(Credential, credential_id).sync_status = "pending"


def _folders() -> dict:
    with get_session() as session:
        return {f.key: f.pjn_not_found for f in session.query(Folder).filter(Folder.user_id == "user-9")}


def test_full_scan_creates_folders_and_queues_initial_sync(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    cid = _pending_credential()
    session = ListingSession(_pages([[K1, K2], [K3]]))

    assert _executor(ListingClient(session)).run_once() is True

    assert session.requested == [1, 2]
    assert _folders() == {K1: False, K2: False, K3: False}
    with get_session() as db:
        credential = db.get(Credential, cid)
        assert credential.sync_status == "idle"
        assert credential.initial_movements_sync == "pending"
        assert credential.last_listing_total == 3
        assert credential.stats["byFuero"] == {"CIV": 1, "COM": 1, "CNT": 1}
        run = db.query(SyncRun).one()
        assert run.phase == "full_scan"
        assert run.status == "completed"
        assert run.total_causas == 3


def test_shrinking_listing_flags_missing_case_not_found(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    cid = _pending_credential()
    _executor(ListingClient(ListingSession(_pages([[K1, K2, K3]])))).run_once()

    _requeue(cid)
    _executor(ListingClient(ListingSession(_pages([[K1, K3]])))).run_once()

    assert _folders() == {K1: False, K2: True, K3: False}

    # The case coming back clears the flag.
    _requeue(cid)
    _executor(ListingClient(ListingSession(_pages([[K1, K2, K3]])))).run_once()
    assert _folders()[K2] is False


def test_incomplete_scan_leaves_not_found_flags_alone(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    cid = _pending_credential()
    _executor(ListingClient(ListingSession(_pages([[K1, K2, K3]])))).run_once()

    _requeue(cid)
    # Portal reports 3 causas but only 2 distinct keys came back.
    _executor(ListingClient(ListingSession(_pages([[K1, K3, K3]], total=3)))).run_once()

    assert _folders() == {K1: False, K2: False, K3: False}
    with get_session() as db:
        latest = db.query(SyncRun).order_by(SyncRun.id.desc()).first()
        assert latest.status == "partial"
        assert latest.is_complete is False


def test_auth_failure_requeues_until_max_auth_failures(tmp_path, monkeypatch) -> None:
    """
    A single portal rejection re-queues the credential; it is marked invalid
    only once maxAuthFailures consecutive rejections have been seen.
    """
    _init_test_db(tmp_path, monkeypatch)
    cid = _pending_credential()
    client = ListingClient(login_error=PortalAuthError("captcha required"))
    queue_cfg = QueueConfig(error_cooldown_ms=0)

    _executor(client, queue_cfg, max_auth_failures=2).run_once()

    with get_session() as db:
        credential = db.get(Credential, cid)
        assert credential.is_valid is True
        assert credential.consecutive_auth_failures == 1
        assert credential.sync_status == "pending"
        assert credential.last_error_code == "AUTH_FAILED"
        assert db.query(SyncRun).one().error_code == "AUTH_FAILED"

    _executor(client, queue_cfg, max_auth_failures=2).run_once()

    with get_session() as db:
        credential = db.get(Credential, cid)
        assert credential.is_valid is False
        assert credential.consecutive_auth_failures == 2
        assert credential.sync_status == "idle"
        assert db.query(SyncRun).count() == 2

    # A successful scan clears the streak.
    _requeue(cid)
    with get_session() as db:
        db.get(Credential, cid).consecutive_auth_failures = 1
    _executor(ListingClient(ListingSession(_pages([[K1]]))), queue_cfg).run_once()
    with get_session() as db:
        credential = db.get(Credential, cid)
        assert credential.is_valid is True
        assert credential.consecutive_auth_failures == 0



def test_transient_failure_requeues_with_cooldown(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    cid = _pending_credential()
    client = ListingClient(ListingSession([], error=PortalTimeoutError("listing timed out")))

    _executor(client, QueueConfig(max_consecutive_errors=2, error_cooldown_ms=60_000)).run_once()

    with get_session() as db:
        credential = db.get(Credential, cid)
        assert credential.sync_status == "pending"
        assert credential.consecutive_errors == 1
        assert credential.last_error_code == "PORTAL_TRANSIENT"
        assert db.query(SyncRun).one().status == "error"

        assert full_sync_candidates(db, now=utcnow(), error_cooldown=timedelta(minutes=1)) == []
        assert [c.id for c in full_sync_candidates(db)] == [cid]

    # A second failure reaches maxConsecutiveErrors and parks the credential.
    with get_session() as db:
        db.get(Credential, cid).last_error_at = None
    _executor(client, QueueConfig(max_consecutive_errors=2)).run_once()
    with get_session() as db:
        assert db.get(Credential, cid).sync_status == "idle"


def _scan_in_flight(credential_id: int, heartbeat_age: timedelta) -> int:
    with get_session() as session:
        credential = session.get(Credential, credential_id)
        run = start_run(
            session,
            credential_id=credential_id,
            user_id=credential.user_id,
            phase="full_scan",
            planned_causa_ids=[],
            now=utcnow() - heartbeat_age,
            instance_name="mis-causas-dead",
        )
        return run.id


def test_abandoned_full_scan_is_recovered_and_rescanned(tmp_path, monkeypatch) -> None:
    """
    A worker that died mid-scan leaves its run and lease in_progress; the
    next instance closes the run as interrupted and scans the credential
    again. Scans that are still heartbeating are left alone.
    """
    _init_test_db(tmp_path, monkeypatch)
    stale_cid = _pending_credential(sync_status="in_progress")
    live_cid = _pending_credential(user_id="user-8", cuil="20333333334", sync_status="in_progress")
    stale_run = _scan_in_flight(stale_cid, timedelta(days=2))
    live_run = _scan_in_flight(live_cid, timedelta(minutes=1))

    session = ListingSession(_pages([[K1, K2]]))
    assert _executor(ListingClient(session), QueueConfig(stale_run_minutes=30)).run_once() is True

    with get_session() as db:
        abandoned = db.get(SyncRun, stale_run)
        assert abandoned.status == "interrupted"
        assert abandoned.error_code == "INTERRUPTED"
        assert abandoned.completed_at is not None

        rescan = db.query(SyncRun).filter(SyncRun.id.notin_([stale_run, live_run])).one()
        assert rescan.credential_id == stale_cid
        assert rescan.status == "completed"
        assert db.get(Credential, stale_cid).sync_status == "idle"

        assert db.get(SyncRun, live_run).status == "in_progress"
        assert db.get(Credential, live_cid).sync_status == "in_progress"

    assert _folders() == {K1: False, K2: False}


def test_recover_stale_scans_only_touches_full_scan_runs(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    cid = _pending_credential(sync_status="in_progress")
    with get_session() as session:
        run = start_run(
            session,
            credential_id=cid,
            user_id="user-9",
            phase="update",
            planned_causa_ids=[1],
            now=utcnow() - timedelta(days=2),
        )
        run_id = run.id

    assert _executor(ListingClient()).recover_stale_scans() == 0

    with get_session() as db:
        assert db.get(SyncRun, run_id).status == "in_progress"
        assert db.get(Credential, cid).sync_status == "in_progress"
