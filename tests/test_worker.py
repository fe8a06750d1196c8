from __future__ import annotations

import signal
from pathlib import Path

import pytest

from pjn_sync import db as db_module
from pjn_sync.causa_keys import CausaKey
from pjn_sync.config_store import load_causas_update_config, save_causas_update_config
from pjn_sync.db import Base, get_engine, get_session
from pjn_sync.models import Credential, Folder, SyncRun, WorkerHeartbeat
from pjn_sync.portal import ListingPage, PortalCausa, PortalClientNotConfigured
from pjn_sync.worker.main import UnsupportedWorkerKind, run_worker_loop

KEY = CausaKey("CIV", 555, 2021)


def _init_test_db(tmp_path: Path, monkeypatch) -> None:
    """
    Point the ORM at a throwaway SQLite database and create all tables.
    """
    db_path = tmp_path / "worker.db"
    monkeypatch.setenv("PJN_SYNC_DATABASE_URL", f"sqlite:///{db_path}")
    db_module.reset_engine()

    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)


class _Session:
    def fetch_listing_page(self, page: int) -> ListingPage:
        return ListingPage(page=1, total_pages=1, total_causas=1, causas=[PortalCausa(key=KEY)])

    def fetch_movements(self, key):
        return []

    def close(self) -> None:
        pass


class _Client:
    def __init__(self) -> None:
        self.logins = 0

    def login(self, credential):
        self.logins += 1
        return _Session()


def test_mis_causas_worker_processes_pending_credential(tmp_path, monkeypatch) -> None:
    """
    One iteration takes the pending credential, scans its listing, and
    clears its heartbeat on exit.
    """
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        credential = Credential(
            user_id="u-1",
            cuil="20111111112",
            enabled=True,
            verified=True,
            is_valid=True,
            sync_status="pending",
        )
        session.add(credential)
        session.flush()
        cid = credential.id

    client = _Client()
    run_worker_loop("mis-causas", run_once=True, client=client, instance_name="mis-causas-1")

    assert client.logins == 1
    with get_session() as session:
        assert session.get(Credential, cid).sync_status == "idle"
        run = session.query(SyncRun).one()
        assert run.instance_name == "mis-causas-1"
        assert run.status == "completed"
        assert session.query(Folder).one().key == KEY
        assert session.query(WorkerHeartbeat).count() == 0


def test_causas_update_worker_idles_when_disabled(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        cfg = load_causas_update_config(session)
        cfg.enabled = False
        save_causas_update_config(session, cfg)
        session.add(
            Credential(
                user_id="u-1",
                cuil="20111111112",
                enabled=True,
                verified=True,
                is_valid=True,
                sync_status="idle",
                initial_movements_sync="pending",
            )
        )

    client = _Client()
    run_worker_loop("causas-update", run_once=True, client=client, instance_name="cu-1")

    assert client.logins == 0
    with get_session() as session:
        assert session.query(SyncRun).count() == 0


def test_unsupported_kind_and_missing_client(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with pytest.raises(UnsupportedWorkerKind):
        run_worker_loop("credentials-processor", run_once=True, client=_Client())

    with pytest.raises(PortalClientNotConfigured):
        run_worker_loop("mis-causas", run_once=True)


class _StoppingSession(_Session):
    """
    Delivers SIGTERM to the worker while its first listing page is fetched.
    """

    def fetch_listing_page(self, page: int) -> ListingPage:
        handler = signal.getsignal(signal.SIGTERM)
        handler(signal.SIGTERM, None)
        return super().fetch_listing_page(page)


class _StoppingClient(_Client):
    def login(self, credential):
        self.logins += 1
        return _StoppingSession()


def test_sigterm_lets_the_unit_in_flight_finish(tmp_path, monkeypatch) -> None:
    """
    A stop requested mid-scan does not interrupt the scan: the run completes
    and the worker exits before claiming the next credential.
    """
    _init_test_db(tmp_path, monkeypatch)

    ids = []
    with get_session() as session:
        for user_id, cuil in (("u-1", "20111111112"), ("u-2", "20222222223")):
            credential = Credential(
                user_id=user_id,
                cuil=cuil,
                enabled=True,
                verified=True,
                is_valid=True,
                sync_status="pending",
            )
            session.add(credential)
            session.flush()
            ids.append(credential.id)

    previous = signal.getsignal(signal.SIGTERM)
    client = _StoppingClient()
    run_worker_loop("mis-causas", run_once=False, client=client, instance_name="mis-causas-1")

    assert client.logins == 1
    assert signal.getsignal(signal.SIGTERM) is previous
    with get_session() as session:
        run = session.query(SyncRun).one()
        assert run.credential_id == ids[0]
        assert run.status == "completed"
        assert session.get(Credential, ids[0]).sync_status == "idle"
        assert session.get(Credential, ids[1]).sync_status == "pending"
        assert session.query(WorkerHeartbeat).count() == 0
