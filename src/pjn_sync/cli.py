from __future__ import annotations

import argparse
import json
import sys
from datetime import timedelta
from typing import Any

from sqlalchemy import text

from .config import get_database_config
from .config_store import load_manager_config, save_manager_config
from .credentials import (
    CredentialBusyError,
    delete_folder,
    link_credential,
    reset_credential,
    unlink_credential,
)
from .db import get_engine, get_session
from .ledger import PHASE_FULL_SCAN, find_stale_runs, run_stats, run_to_dict
from .leases import close_run_if_status, release_credential_lease
from .logging_config import configure_logging
from .models import (
    RUN_IN_PROGRESS,
    RUN_INTERRUPTED,
    SYNC_STATUS_IDLE,
    SYNC_STATUS_PENDING,
    Base,
    ConfigDocument,
    Credential,
    SyncRun,
)
from .portal_errors import ERROR_CODE_INTERRUPTED
from .seeds import seed_config_documents
from .timeutils import utcnow

# === Helpers ===


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def _fail(message: str, code: int = 1) -> None:
    print(f"ERROR: {message}", file=sys.stderr)
    sys.exit(code)


# === Command implementations ===


def cmd_check_db(args: argparse.Namespace) -> None:
    """
    Simple connectivity check for the configured database.
    """
    db_cfg = get_database_config()
    print("PJN Sync – Database Check")
    print("-------------------------")
    print(f"Database URL: {db_cfg.database_url}")

    try:
        with get_session() as session:
            session.execute(text("SELECT 1"))
    except Exception as exc:  # broad by design for a health check
        print(f"ERROR: Failed to connect to database: {exc}")
        sys.exit(1)
    else:
        print("Database connection OK.")


def cmd_init_db(args: argparse.Namespace) -> None:
    """
    Create all tables and seed the default configuration documents.

    Production deployments should prefer ``alembic upgrade head``; this is the
    quick path for local development and tests.
    """
    Base.metadata.create_all(get_engine())
    with get_session() as session:
        created = seed_config_documents(session)
    print(f"Schema created. Seeded {created} configuration document(s).")


def cmd_seed_config(args: argparse.Namespace) -> None:
    with get_session() as session:
        created = seed_config_documents(session)
    print(f"Seeded {created} configuration document(s).")


def cmd_show_config(args: argparse.Namespace) -> None:
    with get_session() as session:
        query = session.query(ConfigDocument).order_by(ConfigDocument.name.asc())
        if args.name:
            query = query.filter(ConfigDocument.name == args.name)
        docs = [
            {
                "name": doc.name,
                "version": doc.version,
                "updatedBy": doc.updated_by,
                "updatedAt": doc.updated_at,
                "data": doc.data,
            }
            for doc in query.all()
        ]
    if not docs:
        _fail(f"No configuration document named {args.name!r}." if args.name else "No configuration documents.")
    _print_json(docs if not args.name else docs[0])


def cmd_start_manager(args: argparse.Namespace) -> None:
    """
    Start the Manager Loop with the subprocess supervisor and database probes.
    """
    from .manager import DatabaseQueueProbe, SubprocessSupervisor, run_manager_loop

    run_manager_loop(
        SubprocessSupervisor(),
        DatabaseQueueProbe(),
        poll_interval=args.poll_interval,
        run_once=args.once,
    )


def cmd_start_worker(args: argparse.Namespace) -> None:
    """
    Start one worker instance of the given kind.
    """
    from .portal import PortalClientNotConfigured
    from .worker import UnsupportedWorkerKind, run_worker_loop

    try:
        run_worker_loop(
            args.kind,
            poll_interval=args.poll_interval,
            run_once=args.once,
            instance_name=args.instance,
        )
    except (UnsupportedWorkerKind, PortalClientNotConfigured) as exc:
        _fail(str(exc), code=2)


def cmd_manager_status(args: argparse.Namespace) -> None:
    from .manager.loop import status_to_dict
    from .models import ManagerStatus
    from .seeds import MANAGER_STATUS_ID

    with get_session() as session:
        status = session.get(ManagerStatus, MANAGER_STATUS_ID)
        if status is None:
            _fail("Manager status not found; run 'pjn-sync init-db' first.")
        data = status_to_dict(status)
    _print_json(data)


def cmd_list_runs(args: argparse.Namespace) -> None:
    """
    List recent SyncRun rows with optional filters.
    """
    rows_data = []
    with get_session() as session:
        query = session.query(SyncRun)
        if args.status:
            query = query.filter(SyncRun.status.in_(args.status))
        if args.credential is not None:
            query = query.filter(SyncRun.credential_id == args.credential)
        query = query.order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).limit(args.limit)
        for run in query.all():
            rows_data.append(
                (
                    run.id,
                    run.credential_id,
                    run.phase,
                    run.status,
                    run.resume_attempts,
                    run.started_at,
                    run.completed_at,
                    run.causas_processed,
                    run.total_causas,
                    run.new_movimientos,
                )
            )

    if not rows_data:
        print("No runs found.")
        return

    print("ID   Cred  Phase      Status       Resumes  Started_at           Completed_at         Cases    NewMovs")
    for (
        run_id,
        credential_id,
        phase,
        status,
        resumes,
        started_at,
        completed_at,
        processed,
        total,
        new_movs,
    ) in rows_data:
        print(
            f"{run_id:<4} {credential_id:<5} {phase:<10} {status:<12} {resumes:<8} "
            f"{str(started_at)[:19]:<19} {str(completed_at)[:19]:<19} "
            f"{f'{processed}/{total}':<8} {new_movs}"
        )


def cmd_show_run(args: argparse.Namespace) -> None:
    with get_session() as session:
        run = session.get(SyncRun, args.id)
        if run is None:
            _fail(f"Run {args.id} not found.")
        data = run_to_dict(run)
    _print_json(data)


def cmd_run_stats(args: argparse.Namespace) -> None:
    since = utcnow() - timedelta(hours=args.hours) if args.hours else None
    with get_session() as session:
        data = run_stats(session, since=since)
    _print_json(data)


def cmd_set_global(args: argparse.Namespace) -> None:
    with get_session() as session:
        cfg = load_manager_config(session)
        if args.enabled is not None:
            cfg.global_config.enabled = args.enabled
        if args.service_available is not None:
            cfg.global_config.service_available = args.service_available
        if args.maintenance_message is not None:
            cfg.global_config.maintenance_message = args.maintenance_message or None
        version = save_manager_config(session, cfg, updated_by="cli")
        data = cfg.global_config.to_dict()
    print(f"scraping-manager updated to version {version}.")
    _print_json(data)


def cmd_set_worker(args: argparse.Namespace) -> None:
    with get_session() as session:
        cfg = load_manager_config(session)
        worker = cfg.workers.get(args.kind)
        if worker is None:
            _fail(f"Unknown worker kind {args.kind!r} (known: {', '.join(sorted(cfg.workers))}).")
        if args.enabled is not None:
            worker.enabled = args.enabled
        if args.min is not None:
            worker.scaling.min_instances = args.min
        if args.max is not None:
            worker.scaling.max_instances = args.max
        try:
            version = save_manager_config(session, cfg, updated_by="cli")
        except ValueError as exc:
            _fail(f"Invalid worker configuration: {exc}")
        data = worker.to_dict()
    print(f"scraping-manager updated to version {version}.")
    _print_json({args.kind: data})


def cmd_link_credential(args: argparse.Namespace) -> None:
    with get_session() as session:
        credential, created = link_credential(session, user_id=args.user, cuil=args.cuil)
        if args.verified:
            now = utcnow()
            credential.verified = True
            credential.verified_at = credential.verified_at or now
        credential_id = credential.id
        status = credential.sync_status
    print(
        f"{'Created' if created else 'Re-enabled'} credential {credential_id} "
        f"(sync_status={status})."
    )


def cmd_unlink_credential(args: argparse.Namespace) -> None:
    try:
        with get_session() as session:
            result = unlink_credential(session, args.id, force=args.force)
    except LookupError as exc:
        _fail(str(exc))
    except CredentialBusyError as exc:
        _fail(str(exc), code=3)
    print(
        f"Credential {result.credential_id} unlinked: "
        f"{len(result.folders_removed)} folder(s) removed, "
        f"{len(result.causas_deleted)} causa(s) deleted, "
        f"{len(result.causas_unlinked)} causa(s) unlinked."
    )


def cmd_reset_credential(args: argparse.Namespace) -> None:
    try:
        with get_session() as session:
            reset_credential(session, args.id)
    except LookupError as exc:
        _fail(str(exc))
    print(f"Credential {args.id} reset; full re-synchronization requested.")


def cmd_delete_folder(args: argparse.Namespace) -> None:
    try:
        with get_session() as session:
            result = delete_folder(session, args.id)
    except LookupError as exc:
        _fail(str(exc))
    print(
        f"Folder {result.folder_id} deleted (causa {result.causa_id}, "
        f"causa_deleted={result.causa_deleted}, excluded_for={result.excluded_for})."
    )


def cmd_recover_stale_runs(args: argparse.Namespace) -> None:
    """
    Mark in_progress runs with stale heartbeats as interrupted.

    Dry-run by default; pass --apply to write changes. The credential lease
    is handed back (pending for full scans, idle otherwise) so the next
    worker iteration can pick the credential up again.
    """
    now = utcnow()
    older_than = timedelta(minutes=args.older_than_minutes)
    with get_session() as session:
        stale = [
            (run.id, run.credential_id, run.phase, run.heartbeat_at or run.started_at)
            for run in find_stale_runs(session, older_than=older_than, now=now)
        ]

    if not stale:
        print("No stale runs found.")
        return

    print(f"Found {len(stale)} stale run(s):")
    for run_id, credential_id, phase, beat in stale:
        print(f"  run {run_id} credential {credential_id} phase {phase} last heartbeat {str(beat)[:19]}")

    if not args.apply:
        print("Dry run; pass --apply to mark them interrupted.")
        return

    recovered = 0
    for run_id, credential_id, phase, _ in stale:
        with get_session() as session:
            closed = close_run_if_status(
                session,
                run_id,
                expected_status=RUN_IN_PROGRESS,
                new_status=RUN_INTERRUPTED,
                now=now,
                error_code=ERROR_CODE_INTERRUPTED,
                error_message="Recovered stale run",
            )
            if not closed:
                continue
            restore = SYNC_STATUS_PENDING if phase == PHASE_FULL_SCAN else SYNC_STATUS_IDLE
            release_credential_lease(session, credential_id, restore)
            recovered += 1
    print(f"Marked {recovered} run(s) as interrupted.")


# === Argument parser wiring ===


def _add_toggle(parser: argparse.ArgumentParser, dest: str, on: str, off: str, help_on: str, help_off: str) -> None:
    group = parser.add_mutually_exclusive_group()
    group.add_argument(on, dest=dest, action="store_true", help=help_on)
    group.add_argument(off, dest=dest, action="store_false", help=help_off)
    parser.set_defaults(**{dest: None})


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pjn-sync",
        description="PJN case synchronization manager and worker CLI.",
    )
    subparsers = parser.add_subparsers(
        dest="command",
        metavar="COMMAND",
        required=True,
    )

    # check-db
    p_db = subparsers.add_parser(
        "check-db",
        help="Check database connectivity.",
    )
    p_db.set_defaults(func=cmd_check_db)

    # init-db
    p_init = subparsers.add_parser(
        "init-db",
        help="Create tables and seed default configuration documents.",
    )
    p_init.set_defaults(func=cmd_init_db)

    # seed-config
    p_seed = subparsers.add_parser(
        "seed-config",
        help="Insert missing default configuration documents.",
    )
    p_seed.set_defaults(func=cmd_seed_config)

    # show-config
    p_show_cfg = subparsers.add_parser(
        "show-config",
        help="Print stored configuration documents as JSON.",
    )
    p_show_cfg.add_argument(
        "--name",
        help="Only show this document (e.g. 'scraping-manager').",
    )
    p_show_cfg.set_defaults(func=cmd_show_config)

    # start-manager
    p_manager = subparsers.add_parser(
        "start-manager",
        help="Start the Manager Loop (scaling, schedules, health checks).",
    )
    p_manager.add_argument(
        "--poll-interval",
        type=int,
        default=None,
        help="Seconds between ticks; defaults to manager.pollIntervalMs.",
    )
    p_manager.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Run a single tick and exit.",
    )
    p_manager.set_defaults(func=cmd_start_manager)

    # start-worker
    p_worker = subparsers.add_parser(
        "start-worker",
        help="Start one synchronization worker instance.",
    )
    p_worker.add_argument(
        "--kind",
        required=True,
        help="Worker kind (causas-update or mis-causas).",
    )
    p_worker.add_argument(
        "--instance",
        default=None,
        help="Instance name reported in heartbeats.",
    )
    p_worker.add_argument(
        "--poll-interval",
        type=int,
        default=None,
        help="Seconds between polls when no work is found; defaults to queue.pollIntervalMs.",
    )
    p_worker.add_argument(
        "--once",
        action="store_true",
        default=False,
        help="Run a single iteration and exit.",
    )
    p_worker.set_defaults(func=cmd_start_worker)

    # manager-status
    p_status = subparsers.add_parser(
        "manager-status",
        help="Print the manager status document.",
    )
    p_status.set_defaults(func=cmd_manager_status)

    # list-runs
    p_list = subparsers.add_parser(
        "list-runs",
        help="List recent synchronization runs.",
    )
    p_list.add_argument(
        "--status",
        nargs="+",
        help="Filter by one or more run statuses.",
    )
    p_list.add_argument(
        "--credential",
        type=int,
        default=None,
        help="Filter by credential ID.",
    )
    p_list.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Maximum number of runs to show.",
    )
    p_list.set_defaults(func=cmd_list_runs)

    # show-run
    p_show = subparsers.add_parser(
        "show-run",
        help="Show one run ledger entry as JSON.",
    )
    p_show.add_argument("id", type=int, help="SyncRun ID.")
    p_show.set_defaults(func=cmd_show_run)

    # run-stats
    p_stats = subparsers.add_parser(
        "run-stats",
        help="Aggregate run ledger statistics.",
    )
    p_stats.add_argument(
        "--hours",
        type=int,
        default=None,
        help="Only count runs started within the last N hours.",
    )
    p_stats.set_defaults(func=cmd_run_stats)

    # set-global
    p_global = subparsers.add_parser(
        "set-global",
        help="Update the global section of the scraping-manager document.",
    )
    _add_toggle(
        p_global,
        "enabled",
        "--enabled",
        "--disabled",
        "Enable all worker kinds.",
        "Stop every worker kind.",
    )
    _add_toggle(
        p_global,
        "service_available",
        "--service-available",
        "--service-unavailable",
        "Mark the service as available.",
        "Mark the service as unavailable.",
    )
    p_global.add_argument(
        "--maintenance-message",
        default=None,
        help="Message shown while unavailable (empty string clears it).",
    )
    p_global.set_defaults(func=cmd_set_global)

    # set-worker
    p_set_worker = subparsers.add_parser(
        "set-worker",
        help="Update one worker kind in the scraping-manager document.",
    )
    p_set_worker.add_argument("kind", help="Worker kind to update.")
    _add_toggle(
        p_set_worker,
        "enabled",
        "--enabled",
        "--disabled",
        "Enable this worker kind.",
        "Disable this worker kind.",
    )
    p_set_worker.add_argument("--min", type=int, default=None, help="scaling.minInstances")
    p_set_worker.add_argument("--max", type=int, default=None, help="scaling.maxInstances")
    p_set_worker.set_defaults(func=cmd_set_worker)

    # link-credential
    p_link = subparsers.add_parser(
        "link-credential",
        help="Create or re-enable a portal credential and request a full sync.",
    )
    p_link.add_argument("--user", required=True, help="Owning user ID.")
    p_link.add_argument("--cuil", required=True, help="Portal CUIL.")
    p_link.add_argument(
        "--verified",
        action="store_true",
        default=False,
        help="Mark the credential as already verified.",
    )
    p_link.set_defaults(func=cmd_link_credential)

    # unlink-credential
    p_unlink = subparsers.add_parser(
        "unlink-credential",
        help="Disable a credential and clean up the causas it observed.",
    )
    p_unlink.add_argument("id", type=int, help="Credential ID.")
    p_unlink.add_argument(
        "--force",
        action="store_true",
        default=False,
        help="Unlink even while a sync holds the credential.",
    )
    p_unlink.set_defaults(func=cmd_unlink_credential)

    # reset-credential
    p_reset = subparsers.add_parser(
        "reset-credential",
        help="Clear a credential's errors and request a full re-sync.",
    )
    p_reset.add_argument("id", type=int, help="Credential ID.")
    p_reset.set_defaults(func=cmd_reset_credential)

    # delete-folder
    p_delete = subparsers.add_parser(
        "delete-folder",
        help="Delete a user folder and exclude its causa from future syncs.",
    )
    p_delete.add_argument("id", type=int, help="Folder ID.")
    p_delete.set_defaults(func=cmd_delete_folder)

    # recover-stale-runs
    p_recover = subparsers.add_parser(
        "recover-stale-runs",
        help="Mark in_progress runs with stale heartbeats as interrupted.",
    )
    p_recover.add_argument(
        "--older-than-minutes",
        type=int,
        required=True,
        help="Heartbeat age after which a run counts as stale.",
    )
    p_recover.add_argument(
        "--apply",
        action="store_true",
        default=False,
        help="Write changes (default is a dry run).",
    )
    p_recover.set_defaults(func=cmd_recover_stale_runs)

    return parser


def main(argv: list[str] | None = None) -> None:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)
    args.func(args)


if __name__ == "__main__":
    main()
