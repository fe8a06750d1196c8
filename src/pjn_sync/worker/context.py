from __future__ import annotations

import logging
import os
import resource
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from ..db import get_session
from ..models import WorkerHeartbeat
from ..timeutils import utcnow

logger = logging.getLogger("pjn_sync.worker")


def current_memory_mb() -> Optional[float]:
    """
    Peak resident memory of this process in MiB.
    """
    try:
        usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    except (OSError, ValueError):
        return None
    # ru_maxrss is bytes on macOS and KiB elsewhere.
    if sys.platform == "darwin":
        return round(usage / (1024 * 1024), 1)
    return round(usage / 1024, 1)


@dataclass
class WorkerContext:
    """
    Identity of one worker instance plus its heartbeat writer.
    """

    kind: str
    instance_name: str
    pid: int = field(default_factory=os.getpid)
    started_at: datetime = field(default_factory=utcnow)
    _stop: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        """
        Ask the worker to exit once the current unit of work is done.
        """
        self._stop.set()

    def sleep(self, seconds: float) -> None:
        """
        Idle for up to ``seconds``; returns early when a stop is requested.
        """
        if seconds > 0:
            self._stop.wait(seconds)

    def beat(
        self,
        *,
        processing: bool = False,
        credential_id: Optional[int] = None,
    ) -> None:
        """
        Upsert this instance's heartbeat row.

        ``processing`` marks the start (or continuation) of a unit of work;
        the first beat with processing=True stamps ``processing_since``.
        """
        now = utcnow()
        with get_session() as session:
            row = session.get(WorkerHeartbeat, self.instance_name)
            if row is None:
                row = WorkerHeartbeat(
                    instance_name=self.instance_name,
                    kind=self.kind,
                    started_at=self.started_at,
                    last_activity_at=now,
                )
                session.add(row)
            row.kind = self.kind
            row.pid = self.pid
            row.last_activity_at = now
            row.memory_mb = current_memory_mb()
            if processing:
                if row.processing_since is None or row.current_credential_id != credential_id:
                    row.processing_since = now
                row.current_credential_id = credential_id
            else:
                row.processing_since = None
                row.current_credential_id = None

    def clear(self) -> None:
        with get_session() as session:
            row = session.get(WorkerHeartbeat, self.instance_name)
            if row is not None:
                session.delete(row)


__all__ = ["WorkerContext", "current_memory_mb"]
