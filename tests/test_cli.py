from __future__ import annotations

import json
import sys
from datetime import datetime, timedelta, timezone
from io import StringIO
from pathlib import Path

import pytest

from pjn_sync import cli as cli_module
from pjn_sync import db as db_module
from pjn_sync.config_store import load_manager_config
from pjn_sync.db import Base, get_engine, get_session
from pjn_sync.models import ConfigDocument, Credential, SyncRun


def _init_test_db(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("PJN_SYNC_DATABASE_URL", f"sqlite:///{db_path}")
    db_module.reset_engine()

    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)


def _run_cli(args_list: list[str]) -> str:
    parser = cli_module.build_parser()
    args = parser.parse_args(args_list)

    stdout = StringIO()
    old_stdout = sys.stdout
    try:
        sys.stdout = stdout
        args.func(args)
    finally:
        sys.stdout = old_stdout

    return stdout.getvalue()


def test_init_db_seeds_once(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    assert "Seeded 2 configuration document(s)." in _run_cli(["init-db"])
    assert "Seeded 0 configuration document(s)." in _run_cli(["seed-config"])

    with get_session() as session:
        names = sorted(name for (name,) in session.query(ConfigDocument.name))
    assert names == ["causas-update", "scraping-manager"]

    shown = json.loads(_run_cli(["show-config", "--name", "scraping-manager"]))
    assert shown["version"] == "1"
    assert "causas-update" in shown["data"]["workers"]


def test_manager_status_after_init(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    _run_cli(["init-db"])

    data = json.loads(_run_cli(["manager-status"]))
    assert data["isRunning"] is False
    assert data["cycleCount"] == 0


def test_set_global_and_set_worker(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    _run_cli(["init-db"])

    out = _run_cli(["set-global", "--disabled", "--maintenance-message", "Mantenimiento"])
    assert "version 2" in out
    out = _run_cli(["set-worker", "mis-causas", "--disabled", "--max", "5"])
    assert "version 3" in out

    with get_session() as session:
        cfg = load_manager_config(session)
    assert cfg.global_config.enabled is False
    assert cfg.global_config.maintenance_message == "Mantenimiento"
    assert cfg.workers["mis-causas"].enabled is False
    assert cfg.workers["mis-causas"].scaling.max_instances == 5
    # Untouched toggles keep their value.
    assert cfg.global_config.service_available is True


def test_set_worker_rejects_invalid_values(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    _run_cli(["init-db"])

    with pytest.raises(SystemExit) as excinfo:
        _run_cli(["set-worker", "mis-causas", "--min", "4", "--max", "2"])
    assert excinfo.value.code == 1

    with pytest.raises(SystemExit):
        _run_cli(["set-worker", "no-such-kind", "--enabled"])

    with get_session() as session:
        assert load_manager_config(session).version == "1"


def test_link_credential_twice_reenables(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)

    out = _run_cli(["link-credential", "--user", "u-1", "--cuil", "20333333334", "--verified"])
    assert "Created credential 1 (sync_status=pending)." in out

    with get_session() as session:
        credential = session.get(Credential, 1)
        assert credential.verified is True
        credential.enabled = False
        credential.sync_status = "idle"

    out = _run_cli(["link-credential", "--user", "u-1", "--cuil", "20333333334"])
    assert "Re-enabled credential 1 (sync_status=pending)." in out


def test_unlink_busy_credential_needs_force(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    _run_cli(["link-credential", "--user", "u-1", "--cuil", "20333333334"])
    with get_session() as session:
        session.get(Credential, 1).sync_status = "in_progress"

    with pytest.raises(SystemExit) as excinfo:
        _run_cli(["unlink-credential", "1"])
    assert excinfo.value.code == 3

    out = _run_cli(["unlink-credential", "1", "--force"])
    assert "Credential 1 unlinked" in out
    with get_session() as session:
        credential = session.get(Credential, 1)
        assert credential.enabled is False
        assert credential.sync_status == "idle"


def test_list_show_and_recover_stale_runs(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    _run_cli(["link-credential", "--user", "u-1", "--cuil", "20333333334", "--verified"])

    stale_at = datetime.now(timezone.utc) - timedelta(hours=2)
    with get_session() as session:
        credential = session.get(Credential, 1)
        credential.sync_status = "in_progress"
        for offset, phase in enumerate(("full_scan", "update")):
            session.add(
                SyncRun(
                    credential_id=1,
                    user_id="u-1",
                    status="in_progress",
                    phase=phase,
                    started_at=stale_at + timedelta(minutes=offset),
                    heartbeat_at=stale_at + timedelta(minutes=offset),
                    planned_causa_ids=[],
                    causas_detail=[],
                )
            )

    listing = _run_cli(["list-runs", "--status", "in_progress"])
    assert "full_scan" in listing
    assert "update" in listing
    assert json.loads(_run_cli(["show-run", "1"]))["phase"] == "full_scan"

    out = _run_cli(["recover-stale-runs", "--older-than-minutes", "60"])
    assert "Found 2 stale run(s):" in out
    assert "Dry run; pass --apply to mark them interrupted." in out
    with get_session() as session:
        assert session.query(SyncRun).filter(SyncRun.status == "in_progress").count() == 2

    out = _run_cli(["recover-stale-runs", "--older-than-minutes", "60", "--apply"])
    assert "Marked 2 run(s) as interrupted." in out

    with get_session() as session:
        statuses = {r.phase: (r.status, r.error_code) for r in session.query(SyncRun)}
        assert statuses == {
            "full_scan": ("interrupted", "INTERRUPTED"),
            "update": ("interrupted", "INTERRUPTED"),
        }
        # Full scan ran first, so the credential went back to the full-sync queue.
        assert session.get(Credential, 1).sync_status == "pending"

    assert "No stale runs found." in _run_cli(["recover-stale-runs", "--older-than-minutes", "60"])
    stats = json.loads(_run_cli(["run-stats"]))
    assert stats["byStatus"] == {"interrupted": 2}


def test_start_worker_without_portal_client_exits(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    _run_cli(["init-db"])

    with pytest.raises(SystemExit) as excinfo:
        _run_cli(["start-worker", "--kind", "mis-causas", "--once"])
    assert excinfo.value.code == 2

    with pytest.raises(SystemExit) as excinfo:
        _run_cli(["start-worker", "--kind", "bogus", "--once"])
    assert excinfo.value.code == 2
