from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def _isolate_process_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Make tests deterministic even when run in a production-like shell.

    Deployments export PJN_SYNC_* variables (database URL, portal client,
    worker command, poll overrides) that change manager and worker behavior.
    If those leak into pytest runs, tests can fail depending on the host
    environment.
    """
    for name in (
        "PJN_SYNC_DATABASE_URL",
        "PJN_SYNC_PORTAL_CLIENT",
        "PJN_SYNC_WORKER_CMD",
        "PJN_SYNC_WORKER_LOG_DIR",
        "PJN_SYNC_WORKER_STOP_GRACE_SECONDS",
        "PJN_SYNC_WORKER_DRAIN_SECONDS",
        "PJN_SYNC_INSTANCE_NAME",
        "PJN_SYNC_MANAGER_POLL_INTERVAL",
        "PJN_SYNC_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
