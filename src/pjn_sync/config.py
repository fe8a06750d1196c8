from __future__ import annotations

import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path

# === Core paths ===

# Path to this repo root (computed from this file)
REPO_ROOT = Path(__file__).resolve().parents[2]  # src/pjn_sync -> src -> repo root

# === Database configuration ===

# By default we keep things simple and use a SQLite database file in the
# repository root. This can be overridden via PJN_SYNC_DATABASE_URL.
DEFAULT_DATABASE_URL = f"sqlite:///{REPO_ROOT / 'pjn_sync.db'}"

# === Worker process invocation ===

# The Process Supervisor spawns worker instances through the console script
# declared in pyproject.toml (pjn_sync.cli:main).
DEFAULT_WORKER_CMD = "pjn-sync"

# === Manager / worker defaults ===

DEFAULT_MANAGER_POLL_INTERVAL_SECONDS = 30
DEFAULT_WORKER_POLL_INTERVAL_SECONDS = 30

# Timezone used by schedules that do not declare one.
DEFAULT_SCHEDULE_TIMEZONE = "America/Argentina/Buenos_Aires"

# Seconds a restarted worker instance gets between SIGTERM and SIGKILL.
DEFAULT_WORKER_STOP_GRACE_SECONDS = 20

# Seconds a scaled-down worker instance may spend finishing its current unit
# before it is killed.
DEFAULT_WORKER_DRAIN_SECONDS = 3600


@dataclass
class DatabaseConfig:
    """
    Database connection settings.

    For now this is a very small wrapper around a single DATABASE_URL string,
    but it gives us a stable place to grow later (pool settings, echo flags,
    etc.).
    """

    database_url: str = DEFAULT_DATABASE_URL


def get_database_config() -> DatabaseConfig:
    """
    Return the current database configuration, honouring environment overrides.
    """
    url = os.environ.get("PJN_SYNC_DATABASE_URL", DEFAULT_DATABASE_URL)
    return DatabaseConfig(database_url=url)


def _detect_worker_cmd() -> str:
    """
    Determine the effective command used to spawn worker instances.

    Precedence:
    1) PJN_SYNC_WORKER_CMD (explicit override)
    2) If running from a venv and the sibling console script exists, use:
         <venv>/bin/pjn-sync
    3) Fallback: "pjn-sync" (PATH lookup)
    """
    explicit = os.environ.get("PJN_SYNC_WORKER_CMD")
    if explicit is not None and explicit.strip():
        return explicit.strip()

    try:
        candidate = Path(sys.executable).parent / DEFAULT_WORKER_CMD
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
    except OSError:
        return DEFAULT_WORKER_CMD

    resolved = shutil.which(DEFAULT_WORKER_CMD)
    if resolved:
        return resolved

    return DEFAULT_WORKER_CMD


@dataclass
class SupervisorConfig:
    """
    Settings for the subprocess-based Process Supervisor.
    """

    worker_cmd: str = DEFAULT_WORKER_CMD
    log_dir: Path | None = None
    stop_grace_seconds: int = DEFAULT_WORKER_STOP_GRACE_SECONDS
    drain_seconds: int = DEFAULT_WORKER_DRAIN_SECONDS


def get_supervisor_config() -> SupervisorConfig:
    raw_log_dir = os.environ.get("PJN_SYNC_WORKER_LOG_DIR", "").strip()
    raw_grace = os.environ.get(
        "PJN_SYNC_WORKER_STOP_GRACE_SECONDS",
        str(DEFAULT_WORKER_STOP_GRACE_SECONDS),
    ).strip()
    try:
        grace = int(raw_grace)
    except ValueError:
        grace = DEFAULT_WORKER_STOP_GRACE_SECONDS
    raw_drain = os.environ.get(
        "PJN_SYNC_WORKER_DRAIN_SECONDS",
        str(DEFAULT_WORKER_DRAIN_SECONDS),
    ).strip()
    try:
        drain = int(raw_drain)
    except ValueError:
        drain = DEFAULT_WORKER_DRAIN_SECONDS
    return SupervisorConfig(
        worker_cmd=_detect_worker_cmd(),
        log_dir=Path(raw_log_dir) if raw_log_dir else None,
        stop_grace_seconds=max(1, min(grace, 300)),
        drain_seconds=max(1, min(drain, 86_400)),
    )


def get_portal_client_spec() -> str | None:
    """
    Return the ``module:callable`` import path of the portal client factory.

    Controlled via PJN_SYNC_PORTAL_CLIENT. Workers that need the portal
    refuse to start when it is unset.
    """
    raw = os.environ.get("PJN_SYNC_PORTAL_CLIENT", "").strip()
    return raw or None


def get_instance_name(kind: str) -> str:
    """
    Return the name this worker process reports in its heartbeat.
    """
    raw = os.environ.get("PJN_SYNC_INSTANCE_NAME", "").strip()
    if raw:
        return raw
    return f"{kind}-{os.getpid()}"


def get_manager_poll_interval_override() -> int | None:
    """
    Optional hard override of the manager poll interval (seconds).

    When unset the interval comes from the scraping-manager document.
    """
    raw = os.environ.get("PJN_SYNC_MANAGER_POLL_INTERVAL", "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        return None
    return max(1, min(value, 3600))
