from __future__ import annotations

import logging
import os
import signal
import subprocess  # nosec: B404 - spawning our own worker console script
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

from ..config import SupervisorConfig, get_supervisor_config
from ..db import get_session
from ..manager_contract import WorkerConfig
from ..models import WorkerHeartbeat

"""
pjn_sync.manager.supervisor - Process Supervisor

The manager only decides instance counts. A supervisor turns those counts
into running OS processes and reports what is alive:

    current_count(kind)              -> int
    reconcile(kind, desired, cfg)    start instances, or ask surplus ones to stop
    instances(kind)                  -> [InstanceInfo] for the Health Monitor
    restart(kind, name, cfg)         forced restart of one instance

Scaling down never interrupts work in flight: a surplus instance receives
SIGTERM, finishes its current unit and exits on its own. It is killed only
when it is still running drain_seconds later.
"""

logger = logging.getLogger("pjn_sync.manager.supervisor")


@dataclass
class InstanceInfo:
    name: str
    kind: str
    pid: Optional[int] = None
    alive: bool = True
    started_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    processing_since: Optional[datetime] = None
    current_credential_id: Optional[int] = None
    memory_mb: Optional[float] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "pid": self.pid,
            "alive": self.alive,
            "currentCredentialId": self.current_credential_id,
            "memoryMB": self.memory_mb,
        }


class ProcessSupervisor(Protocol):
    def current_count(self, kind: str) -> int: ...

    def reconcile(self, kind: str, desired: int, worker_cfg: WorkerConfig) -> None: ...

    def instances(self, kind: str) -> List[InstanceInfo]: ...

    def restart(self, kind: str, name: str, worker_cfg: WorkerConfig) -> None: ...


def instance_names(process_name: str, count: int) -> List[str]:
    """
    Fork-mode instance names: ``name``, ``name-2``, ``name-3`` ...
    """
    return [process_name if i == 1 else f"{process_name}-{i}" for i in range(1, count + 1)]


def _instance_index(process_name: str, name: str) -> int:
    if name == process_name:
        return 1
    suffix = name[len(process_name) + 1 :] if name.startswith(process_name + "-") else ""
    try:
        return int(suffix)
    except ValueError:
        return 10_000


def pid_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@dataclass
class _Handle:
    name: str
    pid: int
    process: Optional[subprocess.Popen] = None
    log_file: Optional[object] = None
    drain_deadline: Optional[float] = None

    def poll(self) -> Optional[int]:
        if self.process is not None:
            return self.process.poll()
        return None if pid_alive(self.pid) else -1


class SubprocessSupervisor:
    """
    Supervisor that runs each worker instance as a child OS process.

    Instances started by a previous manager process are adopted through their
    heartbeat rows when their pid is still alive.
    """

    def __init__(
        self,
        cfg: Optional[SupervisorConfig] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg or get_supervisor_config()
        self._popen = popen
        self._clock = clock
        self._handles: Dict[str, Dict[str, _Handle]] = {}
        self._draining: Dict[str, Dict[str, _Handle]] = {}

    # --- bookkeeping ---

    def _kind_handles(self, kind: str) -> Dict[str, _Handle]:
        return self._handles.setdefault(kind, {})

    def _kind_draining(self, kind: str) -> Dict[str, _Handle]:
        return self._draining.setdefault(kind, {})

    def draining_names(self, kind: str) -> List[str]:
        return sorted(self._kind_draining(kind))

    def _heartbeats(self, kind: str) -> List[WorkerHeartbeat]:
        with get_session() as session:
            rows = session.query(WorkerHeartbeat).filter(WorkerHeartbeat.kind == kind).all()
            session.expunge_all()
        return rows

    def _clear_heartbeats(self, names: List[str]) -> None:
        if not names:
            return
        with get_session() as session:
            session.query(WorkerHeartbeat).filter(
                WorkerHeartbeat.instance_name.in_(names)
            ).delete(synchronize_session=False)

    def _refresh(self, kind: str) -> Dict[str, _Handle]:
        """
        Drop exited instances, adopt live ones known only from heartbeats,
        and clear heartbeat rows of dead instances.
        """
        handles = self._kind_handles(kind)
        draining = self._kind_draining(kind)
        dead: List[str] = self._reap_draining(kind)
        for name, handle in list(handles.items()):
            rc = handle.poll()
            if rc is not None:
                logger.warning("Worker instance %s (pid %s) exited with code %s.", name, handle.pid, rc)
                self._close_log(handle)
                del handles[name]
                dead.append(name)

        for row in self._heartbeats(kind):
            if row.instance_name in handles or row.instance_name in draining or row.instance_name in dead:
                continue
            if pid_alive(row.pid):
                logger.info("Adopting running worker instance %s (pid %s).", row.instance_name, row.pid)
                handles[row.instance_name] = _Handle(name=row.instance_name, pid=int(row.pid))
            else:
                dead.append(row.instance_name)

        self._clear_heartbeats(dead)
        return handles

    # --- process control ---

    def _command(self, kind: str, name: str, worker_cfg: WorkerConfig) -> List[str]:
        if worker_cfg.command:
            return list(worker_cfg.command)
        return [self.cfg.worker_cmd, "start-worker", "--kind", kind, "--instance", name]

    def _spawn(self, kind: str, name: str, worker_cfg: WorkerConfig) -> _Handle:
        cmd = self._command(kind, name, worker_cfg)
        env = dict(os.environ)
        env["PJN_SYNC_INSTANCE_NAME"] = name

        log_file = None
        stdout = subprocess.DEVNULL
        if self.cfg.log_dir is not None:
            log_dir = Path(self.cfg.log_dir)
            log_dir.mkdir(parents=True, exist_ok=True)
            log_file = open(log_dir / f"{name}.log", "a", encoding="utf-8")
            stdout = log_file

        logger.info("Starting worker instance %s: %s", name, " ".join(cmd))
        try:
            process = self._popen(  # nosec: B603 - argv built from configuration
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                env=env,
                start_new_session=True,
            )
        except Exception:
            if log_file is not None:
                log_file.close()
            raise
        return _Handle(name=name, pid=process.pid, process=process, log_file=log_file)

    def _close_log(self, handle: _Handle) -> None:
        if handle.log_file is not None:
            try:
                handle.log_file.close()
            except OSError:
                pass
            handle.log_file = None

    def _terminate(self, handle: _Handle) -> None:
        if handle.process is not None:
            handle.process.terminate()
            return
        try:
            os.kill(handle.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass

    def _kill(self, handle: _Handle) -> None:
        if handle.process is None:
            try:
                os.kill(handle.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            return
        handle.process.kill()
        try:
            handle.process.wait(timeout=self.cfg.stop_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.error("Worker instance %s (pid %s) survived SIGKILL.", handle.name, handle.pid)

    def _stop(self, handle: _Handle) -> None:
        """
        Stop an instance now: SIGTERM, then SIGKILL after the grace period.
        """
        grace = self.cfg.stop_grace_seconds
        logger.info("Stopping worker instance %s (pid %s).", handle.name, handle.pid)
        self._terminate(handle)
        if handle.process is not None:
            try:
                handle.process.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                logger.warning(
                    "Worker instance %s did not exit within %ss; killing.", handle.name, grace
                )
                self._kill(handle)
        self._close_log(handle)

    def _drain(self, kind: str, handle: _Handle) -> None:
        """
        Ask an instance to exit once its current unit is done.
        """
        logger.info(
            "Draining worker instance %s (pid %s); it exits after its current unit.",
            handle.name,
            handle.pid,
        )
        self._terminate(handle)
        handle.drain_deadline = self._clock() + self.cfg.drain_seconds
        self._kind_draining(kind)[handle.name] = handle

    def _reap_draining(self, kind: str) -> List[str]:
        """
        Forget drained instances that exited; kill those past their deadline.
        Returns the names that are gone.
        """
        draining = self._kind_draining(kind)
        gone: List[str] = []
        now = self._clock()
        for name, handle in list(draining.items()):
            rc = handle.poll()
            if rc is None:
                if handle.drain_deadline is None or now < handle.drain_deadline:
                    continue
                logger.warning(
                    "Worker instance %s still running %ss after SIGTERM; killing.",
                    name,
                    self.cfg.drain_seconds,
                )
                self._kill(handle)
            else:
                logger.info("Worker instance %s drained (exit code %s).", name, rc)
            self._close_log(handle)
            del draining[name]
            gone.append(name)
        return gone

    # --- ProcessSupervisor interface ---

    def current_count(self, kind: str) -> int:
        return len(self._refresh(kind))

    def reconcile(self, kind: str, desired: int, worker_cfg: WorkerConfig) -> None:
        handles = self._refresh(kind)
        process_name = worker_cfg.process_name or kind
        current = len(handles)

        if desired > current:
            # Names of draining instances stay taken until they exit.
            taken = set(handles) | set(self._kind_draining(kind))
            for name in instance_names(process_name, desired + len(taken)):
                if len(handles) >= desired:
                    break
                if name in taken:
                    continue
                handles[name] = self._spawn(kind, name, worker_cfg)
        elif desired < current:
            ordered = sorted(handles, key=lambda n: _instance_index(process_name, n), reverse=True)
            for name in ordered[: current - desired]:
                self._drain(kind, handles.pop(name))

    def instances(self, kind: str) -> List[InstanceInfo]:
        handles = self._refresh(kind)
        beats = {row.instance_name: row for row in self._heartbeats(kind)}
        result: List[InstanceInfo] = []
        for name, handle in sorted(handles.items()):
            row = beats.get(name)
            result.append(
                InstanceInfo(
                    name=name,
                    kind=kind,
                    pid=handle.pid,
                    alive=True,
                    started_at=row.started_at if row else None,
                    last_activity_at=row.last_activity_at if row else None,
                    processing_since=row.processing_since if row else None,
                    current_credential_id=row.current_credential_id if row else None,
                    memory_mb=row.memory_mb if row else None,
                )
            )
        return result

    def restart(self, kind: str, name: str, worker_cfg: WorkerConfig) -> None:
        handles = self._refresh(kind)
        handle = handles.pop(name, None)
        if handle is not None:
            self._stop(handle)
        self._clear_heartbeats([name])
        handles[name] = self._spawn(kind, name, worker_cfg)


__all__ = [
    "InstanceInfo",
    "ProcessSupervisor",
    "SubprocessSupervisor",
    "instance_names",
    "pid_alive",
]
