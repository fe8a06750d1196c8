from __future__ import annotations

import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

from pjn_sync import db as db_module
from pjn_sync.config import SupervisorConfig
from pjn_sync.db import Base, get_engine, get_session
from pjn_sync.manager import supervisor as supervisor_module
from pjn_sync.manager.health import evaluate_instance, run_health_checks
from pjn_sync.manager.supervisor import InstanceInfo, SubprocessSupervisor, instance_names
from pjn_sync.manager_contract import HealthCheckConfig, WorkerConfig
from pjn_sync.models import WorkerHeartbeat

NOW = datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)


def _init_test_db(tmp_path: Path, monkeypatch) -> None:
    db_path = tmp_path / "supervisor.db"
    monkeypatch.setenv("PJN_SYNC_DATABASE_URL", f"sqlite:///{db_path}")
    db_module.reset_engine()

    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)


class FakeProcess:
    def __init__(self, pid: int, *, stubborn: bool = False) -> None:
        self.pid = pid
        self.returncode = None
        self.stubborn = stubborn
        self.signals: List[str] = []

    def poll(self):
        return self.returncode

    def terminate(self) -> None:
        self.signals.append("TERM")
        if not self.stubborn:
            self.returncode = -15

    def kill(self) -> None:
        self.signals.append("KILL")
        self.returncode = -9

    def wait(self, timeout=None):
        if self.returncode is None:
            raise subprocess.TimeoutExpired(cmd="worker", timeout=timeout)
        return self.returncode


class FakePopen:
    def __init__(self) -> None:
        self.calls: List[dict] = []
        self.processes: List[FakeProcess] = []
        self.next_pid = 1000
        self.stubborn = False

    def __call__(self, cmd, **kwargs):
        self.next_pid += 1
        proc = FakeProcess(self.next_pid, stubborn=self.stubborn)
        self.calls.append({"cmd": cmd, **kwargs})
        self.processes.append(proc)
        return proc


def _supervisor(tmp_path: Path, popen: FakePopen) -> SubprocessSupervisor:
    cfg = SupervisorConfig(worker_cmd="pjn-sync", log_dir=tmp_path / "logs", stop_grace_seconds=1)
    return SubprocessSupervisor(cfg, popen=popen)


def test_instance_names_follow_fork_mode_numbering() -> None:
    assert instance_names("pjn-mis-causas", 3) == [
        "pjn-mis-causas",
        "pjn-mis-causas-2",
        "pjn-mis-causas-3",
    ]
    assert instance_names("x", 0) == []


def test_reconcile_spawns_named_instances(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    popen = FakePopen()
    supervisor = _supervisor(tmp_path, popen)
    worker_cfg = WorkerConfig(process_name="pjn-causas-update")

    supervisor.reconcile("causas-update", 2, worker_cfg)

    assert supervisor.current_count("causas-update") == 2
    assert [c["cmd"] for c in popen.calls] == [
        ["pjn-sync", "start-worker", "--kind", "causas-update", "--instance", "pjn-causas-update"],
        ["pjn-sync", "start-worker", "--kind", "causas-update", "--instance", "pjn-causas-update-2"],
    ]
    assert popen.calls[1]["env"]["PJN_SYNC_INSTANCE_NAME"] == "pjn-causas-update-2"
    assert popen.calls[0]["start_new_session"] is True
    assert (tmp_path / "logs" / "pjn-causas-update.log").exists()


def test_reconcile_uses_command_override(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    popen = FakePopen()
    supervisor = _supervisor(tmp_path, popen)

    supervisor.reconcile("mis-causas", 1, WorkerConfig(process_name="mc", command=["run-mc", "--fast"]))

    assert popen.calls[0]["cmd"] == ["run-mc", "--fast"]


def test_scale_down_stops_highest_numbered_first(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    popen = FakePopen()
    supervisor = _supervisor(tmp_path, popen)
    worker_cfg = WorkerConfig(process_name="w")

    supervisor.reconcile("k", 3, worker_cfg)
    supervisor.reconcile("k", 1, worker_cfg)

    names = [i.name for i in supervisor.instances("k")]
    assert names == ["w"]
    assert popen.processes[0].signals == []
    assert popen.processes[1].signals == ["TERM"]
    assert popen.processes[2].signals == ["TERM"]


def test_scaled_down_instance_drains_before_it_is_killed(tmp_path, monkeypatch) -> None:
    """
    A busy instance keeps running after SIGTERM until the drain window ends;
    its name is not reused in the meantime.
    """
    _init_test_db(tmp_path, monkeypatch)
    popen = FakePopen()
    popen.stubborn = True
    clock = [0.0]
    cfg = SupervisorConfig(worker_cmd="pjn-sync", stop_grace_seconds=1, drain_seconds=600)
    supervisor = SubprocessSupervisor(cfg, popen=popen, clock=lambda: clock[0])
    worker_cfg = WorkerConfig(process_name="w")

    supervisor.reconcile("k", 1, worker_cfg)
    supervisor.reconcile("k", 0, worker_cfg)

    assert popen.processes[0].signals == ["TERM"]
    assert supervisor.current_count("k") == 0
    assert supervisor.draining_names("k") == ["w"]

    popen.stubborn = False
    supervisor.reconcile("k", 1, worker_cfg)
    assert [i.name for i in supervisor.instances("k")] == ["w-2"]

    clock[0] = 599.0
    supervisor.current_count("k")
    assert popen.processes[0].signals == ["TERM"]

    clock[0] = 601.0
    assert supervisor.current_count("k") == 1
    assert popen.processes[0].signals == ["TERM", "KILL"]
    assert supervisor.draining_names("k") == []


def test_drained_instance_is_not_adopted_from_its_heartbeat(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    popen = FakePopen()
    popen.stubborn = True
    supervisor = _supervisor(tmp_path, popen)
    worker_cfg = WorkerConfig(process_name="w")

    supervisor.reconcile("k", 1, worker_cfg)
    pid = popen.processes[0].pid
    monkeypatch.setattr(supervisor_module, "pid_alive", lambda p: p == pid)
    with get_session() as session:
        session.add(
            WorkerHeartbeat(
                instance_name="w",
                kind="k",
                pid=pid,
                started_at=NOW,
                last_activity_at=NOW,
                processing_since=NOW,
                current_credential_id=4,
            )
        )

    supervisor.reconcile("k", 0, worker_cfg)

    assert supervisor.current_count("k") == 0
    assert supervisor.instances("k") == []
    with get_session() as session:
        assert session.get(WorkerHeartbeat, "w") is not None

    popen.processes[0].returncode = 0
    assert supervisor.current_count("k") == 0
    assert supervisor.draining_names("k") == []
    with get_session() as session:
        assert session.get(WorkerHeartbeat, "w") is None


def test_restart_kills_an_instance_that_ignores_sigterm(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    popen = FakePopen()
    popen.stubborn = True
    supervisor = _supervisor(tmp_path, popen)
    worker_cfg = WorkerConfig(process_name="w")

    supervisor.reconcile("k", 1, worker_cfg)
    supervisor.restart("k", "w", worker_cfg)

    assert popen.processes[0].signals == ["TERM", "KILL"]
    assert [i.pid for i in supervisor.instances("k")] == [popen.processes[1].pid]


def test_exited_instances_are_reaped_and_respawned(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    popen = FakePopen()
    supervisor = _supervisor(tmp_path, popen)
    worker_cfg = WorkerConfig(process_name="w")

    supervisor.reconcile("k", 2, worker_cfg)
    popen.processes[0].returncode = 1

    assert supervisor.current_count("k") == 1
    supervisor.reconcile("k", 2, worker_cfg)
    assert sorted(i.name for i in supervisor.instances("k")) == ["w", "w-2"]
    assert len(popen.calls) == 3


def test_heartbeats_are_adopted_or_cleared(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    monkeypatch.setattr(supervisor_module, "pid_alive", lambda pid: pid == 555)
    with get_session() as session:
        for name, pid in (("w", 555), ("w-2", 556)):
            session.add(
                WorkerHeartbeat(
                    instance_name=name,
                    kind="k",
                    pid=pid,
                    started_at=NOW,
                    last_activity_at=NOW,
                    current_credential_id=9 if pid == 555 else None,
                )
            )

    supervisor = _supervisor(tmp_path, FakePopen())
    infos = supervisor.instances("k")

    assert [(i.name, i.pid, i.current_credential_id) for i in infos] == [("w", 555, 9)]
    with get_session() as session:
        assert [r.instance_name for r in session.query(WorkerHeartbeat).all()] == ["w"]


def test_restart_replaces_the_process(tmp_path, monkeypatch) -> None:
    _init_test_db(tmp_path, monkeypatch)
    popen = FakePopen()
    supervisor = _supervisor(tmp_path, popen)
    worker_cfg = WorkerConfig(process_name="w")

    supervisor.reconcile("k", 1, worker_cfg)
    supervisor.restart("k", "w", worker_cfg)

    assert popen.processes[0].signals == ["TERM"]
    assert [i.pid for i in supervisor.instances("k")] == [popen.processes[1].pid]


def _info(**kwargs) -> InstanceInfo:
    base = dict(name="w", kind="k", pid=1, started_at=NOW - timedelta(hours=2))
    base.update(kwargs)
    return InstanceInfo(**base)


def test_evaluate_instance_verdicts() -> None:
    hc = HealthCheckConfig(max_idle_minutes=30, max_processing_minutes=60, max_memory_mb=500)

    assert evaluate_instance(_info(last_activity_at=NOW), hc, NOW).verdict == "ok"
    assert (
        evaluate_instance(
            _info(last_activity_at=NOW, processing_since=NOW - timedelta(minutes=61)), hc, NOW
        ).verdict
        == "stuck"
    )
    assert (
        evaluate_instance(_info(last_activity_at=NOW - timedelta(minutes=45)), hc, NOW).verdict
        == "idle"
    )
    # No activity ever reported: measured from start.
    assert evaluate_instance(_info(), hc, NOW).verdict == "idle"
    assert (
        evaluate_instance(_info(last_activity_at=NOW, memory_mb=900.0), hc, NOW).verdict
        == "high_memory"
    )


class _RecordingSupervisor:
    def __init__(self, infos, fail_restart: bool = False) -> None:
        self.infos = infos
        self.fail_restart = fail_restart
        self.restarted: List[str] = []

    def instances(self, kind):
        return self.infos

    def restart(self, kind, name, worker_cfg):
        if self.fail_restart:
            raise OSError("spawn failed")
        self.restarted.append(name)


def test_run_health_checks_restart_policy() -> None:
    infos = [
        _info(name="w", last_activity_at=NOW - timedelta(minutes=90)),
        _info(name="w-2", last_activity_at=NOW, memory_mb=2048.0),
        _info(name="w-3", last_activity_at=NOW),
    ]
    sup = _RecordingSupervisor(infos)
    reports = run_health_checks(sup, "k", WorkerConfig(), NOW)

    assert [r.verdict for r in reports] == ["idle", "high_memory", "ok"]
    assert sup.restarted == ["w"]
    assert reports[0].restarted is True

    no_restart = WorkerConfig(health_check=HealthCheckConfig(auto_restart_on_stuck=False))
    sup = _RecordingSupervisor(infos)
    run_health_checks(sup, "k", no_restart, NOW)
    assert sup.restarted == []

    disabled = WorkerConfig(health_check=HealthCheckConfig(enabled=False))
    assert run_health_checks(_RecordingSupervisor(infos), "k", disabled, NOW) == []


def test_failed_restart_is_reported_not_raised() -> None:
    sup = _RecordingSupervisor(
        [_info(last_activity_at=NOW, processing_since=NOW - timedelta(hours=3))],
        fail_restart=True,
    )
    reports = run_health_checks(sup, "k", WorkerConfig(), NOW)
    assert reports[0].verdict == "stuck"
    assert reports[0].restarted is False
