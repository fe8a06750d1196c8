from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, Optional, Protocol

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from ..config_store import load_causas_update_config
from ..db import get_session
from ..manager_contract import KIND_CAUSAS_UPDATE, KIND_CREDENTIALS_PROCESSOR, KIND_MIS_CAUSAS
from ..models import SYNC_STATUS_IN_PROGRESS, SYNC_STATUS_PENDING, Credential
from ..timeutils import utcnow
from ..worker.phases import count_pending_units, has_pending_initial_sync

"""
pjn_sync.manager.queue_probe - Queue Depth Probe

Backlog depth per worker kind, read straight from the record store. Probes
are read-only. The manager fans them out over a small thread pool; a probe
that raises only affects its own kind.
"""

logger = logging.getLogger("pjn_sync.manager.queue_probe")


@dataclass(frozen=True)
class ProbeResult:
    depth: int = 0
    # True when high-priority work is waiting (schedule bypass condition).
    priority: bool = False
    error: Optional[str] = None


class QueueDepthProbe(Protocol):
    def probe(self, kind: str) -> ProbeResult: ...


ProbeFn = Callable[[Session, datetime], ProbeResult]


def probe_causas_update(session: Session, now: datetime) -> ProbeResult:
    cfg = load_causas_update_config(session)
    return ProbeResult(
        depth=count_pending_units(session, cfg, now),
        priority=has_pending_initial_sync(session),
    )


def probe_mis_causas(session: Session, now: datetime) -> ProbeResult:
    depth = (
        session.query(func.count(Credential.id))
        .filter(
            Credential.enabled.is_(True),
            Credential.verified.is_(True),
            Credential.sync_status == SYNC_STATUS_PENDING,
        )
        .scalar()
        or 0
    )
    return ProbeResult(depth=int(depth))


def probe_credentials_processor(session: Session, now: datetime) -> ProbeResult:
    depth = (
        session.query(func.count(Credential.id))
        .filter(
            Credential.enabled.is_(True),
            or_(
                Credential.verified.is_(False),
                and_(
                    Credential.is_valid.is_(False),
                    Credential.sync_status != SYNC_STATUS_IN_PROGRESS,
                ),
            ),
        )
        .scalar()
        or 0
    )
    return ProbeResult(depth=int(depth))


DEFAULT_PROBES: Dict[str, ProbeFn] = {
    KIND_CAUSAS_UPDATE: probe_causas_update,
    KIND_MIS_CAUSAS: probe_mis_causas,
    KIND_CREDENTIALS_PROCESSOR: probe_credentials_processor,
}


class DatabaseQueueProbe:
    """
    Probe backed by the record store; one short session per probe.
    """

    def __init__(
        self,
        probes: Optional[Dict[str, ProbeFn]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.probes = dict(DEFAULT_PROBES if probes is None else probes)
        self.clock = clock

    def probe(self, kind: str) -> ProbeResult:
        fn = self.probes.get(kind)
        if fn is None:
            raise KeyError(f"No queue probe registered for worker kind {kind!r}")
        with get_session() as session:
            return fn(session, self.clock())


def probe_all(
    probe: QueueDepthProbe,
    kinds: Iterable[str],
    *,
    concurrency: int = 4,
) -> Dict[str, ProbeResult]:
    """
    Probe every kind with bounded fan-out. Failures are returned as
    ``ProbeResult(error=...)`` for that kind only.
    """
    kinds = list(kinds)
    results: Dict[str, ProbeResult] = {}
    if not kinds:
        return results

    workers = max(1, min(concurrency, len(kinds)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="queue-probe") as pool:
        futures = {kind: pool.submit(probe.probe, kind) for kind in kinds}
        for kind, future in futures.items():
            try:
                results[kind] = future.result()
            except Exception as exc:
                logger.error("Queue probe for %s failed: %s", kind, exc, exc_info=True)
                results[kind] = ProbeResult(error=f"{type(exc).__name__}: {exc}")
    return results


__all__ = [
    "DEFAULT_PROBES",
    "DatabaseQueueProbe",
    "ProbeResult",
    "QueueDepthProbe",
    "probe_all",
    "probe_causas_update",
    "probe_credentials_processor",
    "probe_mis_causas",
]
