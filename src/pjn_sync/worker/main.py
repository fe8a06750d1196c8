from __future__ import annotations

import logging
import signal
from typing import Optional, Tuple

from ..config import get_instance_name
from ..config_store import load_causas_update_config, load_manager_config
from ..db import get_session
from ..manager_contract import KIND_CAUSAS_UPDATE, KIND_MIS_CAUSAS, QueueConfig, WorkerConfig
from ..portal import PortalClient, load_portal_client
from ..reconciler import ReconciliationInvariantError
from .context import WorkerContext
from .full_sync import FullSyncExecutor
from .phases import PhaseExecutor

"""
pjn_sync.worker.main - Worker loop

One OS process per worker instance. Each iteration re-reads the
configuration documents, writes a heartbeat, processes at most one unit of
work and sleeps queue.pollIntervalMs when idle.

SIGTERM only requests a stop: the unit in flight runs to completion and the
loop exits before claiming the next one. SIGINT still interrupts at once.

Supported kinds:
    - causas-update: phased movement synchronization (pjn_sync.worker.phases)
    - mis-causas:    full listing re-synchronization (pjn_sync.worker.full_sync)
"""

logger = logging.getLogger("pjn_sync.worker")

SUPPORTED_KINDS = (KIND_CAUSAS_UPDATE, KIND_MIS_CAUSAS)


class UnsupportedWorkerKind(ValueError):
    pass


def _stop_handler(ctx: WorkerContext):
    def _handle(signum, frame) -> None:
        if not ctx.stop_requested:
            logger.info(
                "Worker %s received signal %s; exiting after the current unit.",
                ctx.instance_name,
                signum,
            )
        ctx.request_stop()

    return _handle


def _process_single_unit(
    kind: str,
    client: PortalClient,
    ctx: WorkerContext,
) -> Tuple[bool, QueueConfig]:
    """
    Attempt to process a single unit of work.

    Returns:
        (processed, queue_cfg): processed is False when no work was found or
        the kind is disabled.
    """
    with get_session() as session:
        manager_cfg = load_manager_config(session)
        worker_cfg = manager_cfg.workers.get(kind) or WorkerConfig(process_name=kind)
        causas_cfg = load_causas_update_config(session)

    queue_cfg = worker_cfg.queue
    ctx.beat()

    if kind == KIND_CAUSAS_UPDATE:
        if not causas_cfg.enabled:
            logger.info("causas-update worker disabled by configuration; idling.")
            return False, queue_cfg
        return PhaseExecutor(client, causas_cfg, ctx).run_once(), queue_cfg

    executor = FullSyncExecutor(
        client, queue_cfg, ctx, max_auth_failures=causas_cfg.max_auth_failures
    )
    return executor.run_once(), queue_cfg


def run_worker_loop(
    kind: str,
    poll_interval: Optional[int] = None,
    run_once: bool = False,
    *,
    client: Optional[PortalClient] = None,
    instance_name: Optional[str] = None,
) -> None:
    """
    Main worker loop.

    Args:
        kind: Worker kind to run (causas-update or mis-causas).
        poll_interval: Seconds to sleep when idle; defaults to the kind's
            queue.pollIntervalMs.
        run_once: If True, perform a single iteration and return.
    """
    if kind not in SUPPORTED_KINDS:
        raise UnsupportedWorkerKind(
            f"Worker kind {kind!r} is not implemented here (supported: {', '.join(SUPPORTED_KINDS)})"
        )
    if client is None:
        client = load_portal_client()

    ctx = WorkerContext(kind=kind, instance_name=instance_name or get_instance_name(kind))
    logger.info(
        "Worker %s (%s) starting (poll_interval=%s, run_once=%s).",
        ctx.instance_name,
        kind,
        poll_interval,
        run_once,
    )

    previous_handler = None
    try:
        previous_handler = signal.signal(signal.SIGTERM, _stop_handler(ctx))
    except ValueError:
        # Not the main thread (tests, embedded use).
        previous_handler = None

    consecutive_errors = 0
    try:
        while not ctx.stop_requested:
            processed = False
            queue_cfg = QueueConfig()
            try:
                processed, queue_cfg = _process_single_unit(kind, client, ctx)
                consecutive_errors = 0
            except ReconciliationInvariantError:
                raise
            except Exception as exc:
                consecutive_errors += 1
                logger.error("Unexpected error in worker iteration: %s", exc, exc_info=True)

            if run_once or ctx.stop_requested:
                break

            if consecutive_errors >= queue_cfg.max_consecutive_errors:
                cooldown = queue_cfg.error_cooldown_ms / 1000.0
                logger.warning(
                    "%d consecutive iteration errors; cooling down for %.0f seconds.",
                    consecutive_errors,
                    cooldown,
                )
                consecutive_errors = 0
                ctx.sleep(cooldown)
            elif not processed:
                sleep_for = poll_interval if poll_interval else queue_cfg.poll_interval_ms / 1000.0
                logger.debug("No work found; sleeping for %s seconds.", sleep_for)
                ctx.sleep(sleep_for)
    except KeyboardInterrupt:
        logger.info("Worker %s interrupted; shutting down.", ctx.instance_name)
    else:
        if ctx.stop_requested:
            logger.info("Worker %s stopped.", ctx.instance_name)
    finally:
        if previous_handler is not None:
            signal.signal(signal.SIGTERM, previous_handler)
        try:
            ctx.clear()
        except Exception as exc:
            logger.warning("Could not clear heartbeat for %s: %s", ctx.instance_name, exc)


__all__ = ["SUPPORTED_KINDS", "UnsupportedWorkerKind", "run_worker_loop"]
