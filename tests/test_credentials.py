from __future__ import annotations

from pathlib import Path

import pytest

from pjn_sync import db as db_module
from pjn_sync.causa_keys import CausaKey
from pjn_sync.credentials import (
    CredentialBusyError,
    link_credential,
    reset_credential,
    unlink_credential,
)
from pjn_sync.db import Base, get_engine, get_session
from pjn_sync.models import Causa, Credential, Folder
from pjn_sync.portal import PortalCausa
from pjn_sync.reconciler import ensure_folder, upsert_causa

OWN = CausaKey("CIV", 10, 2024)
SHARED = CausaKey("COM", 20, 2023)
MANUAL = CausaKey("CNT", 30, 2022)


def _init_test_db(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "credentials.db"
    monkeypatch.setenv("PJN_SYNC_DATABASE_URL", f"sqlite:///{db_path}")
    db_module.reset_engine()

    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)


def test_link_creates_then_reenables_same_row(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        credential, created = link_credential(session, user_id="u-1", cuil="20111111112")
        assert created is True
        assert credential.sync_status == "pending"
        first_id = credential.id
        credential.enabled = False
        credential.sync_status = "idle"

    with get_session() as session:
        credential, created = link_credential(session, user_id="u-1", cuil="20111111112")
        assert created is False
        assert credential.id == first_id
        assert credential.enabled is True
        assert credential.sync_status == "pending"
        assert session.query(Credential).count() == 1


def test_relink_does_not_steal_an_active_lease(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        credential, _ = link_credential(session, user_id="u-1", cuil="20111111112")
        credential.sync_status = "in_progress"

    with get_session() as session:
        credential, _ = link_credential(session, user_id="u-1", cuil="20111111112")
        assert credential.sync_status == "in_progress"


def test_reset_clears_errors_and_requeues(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        credential, _ = link_credential(session, user_id="u-1", cuil="20111111112")
        credential.sync_status = "in_progress"
        credential.consecutive_errors = 4
        credential.last_error_code = "PORTAL_TRANSIENT"
        cid = credential.id

    with get_session() as session:
        reset_credential(session, cid)

    with get_session() as session:
        credential = session.get(Credential, cid)
        assert credential.sync_status == "pending"
        assert credential.consecutive_errors == 0
        assert credential.last_error_code is None

    with pytest.raises(LookupError):
        with get_session() as session:
            reset_credential(session, 999)


def test_unlink_deletes_exclusive_causas_and_keeps_shared_ones(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        mine, _ = link_credential(session, user_id="u-1", cuil="20111111112")
        other, _ = link_credential(session, user_id="u-2", cuil="20999999998")
        for cred in (mine, other):
            cred.sync_status = "idle"

        own, _ = upsert_causa(session, PortalCausa(key=OWN), mine)
        ensure_folder(session, own, mine)
        shared, _ = upsert_causa(session, PortalCausa(key=SHARED), mine)
        ensure_folder(session, shared, mine)
        upsert_causa(session, PortalCausa(key=SHARED), other)
        ensure_folder(session, shared, other)

        manual = Causa(fuero=MANUAL.fuero, number=MANUAL.number, year=MANUAL.year, source="manual")
        session.add(manual)
        session.flush()
        session.add(
            Folder(
                user_id="u-1",
                causa_id=manual.id,
                source="user",
                fuero=MANUAL.fuero,
                number=MANUAL.number,
                year=MANUAL.year,
            )
        )
        upsert_causa(session, MANUAL, mine)
        mine_id, own_id, shared_id, manual_id = mine.id, own.id, shared.id, manual.id

    with get_session() as session:
        result = unlink_credential(session, mine_id)

    assert result.causas_deleted == [own_id]
    assert sorted(result.causas_unlinked) == sorted([shared_id, manual_id])
    assert len(result.folders_removed) == 2

    with get_session() as session:
        assert session.get(Causa, own_id) is None
        shared = session.get(Causa, shared_id)
        assert {c.user_id for c in shared.linked_credentials} == {"u-2"}
        manual = session.get(Causa, manual_id)
        assert manual.linked_credentials == set()
        remaining = {(f.user_id, f.causa_id) for f in session.query(Folder)}
        assert remaining == {("u-2", shared_id), ("u-1", manual_id)}
        credential = session.get(Credential, mine_id)
        assert credential.enabled is False
        assert credential.sync_status == "idle"


def test_unlink_refuses_busy_credential(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    with get_session() as session:
        credential, _ = link_credential(session, user_id="u-1", cuil="20111111112")
        credential.sync_status = "in_progress"
        cid = credential.id

    with pytest.raises(CredentialBusyError):
        with get_session() as session:
            unlink_credential(session, cid)

    with get_session() as session:
        assert session.get(Credential, cid).enabled is True
