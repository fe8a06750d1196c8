from __future__ import annotations

import pytest

from pjn_sync.manager_contract import (
    KIND_CAUSAS_UPDATE,
    KIND_CREDENTIALS_PROCESSOR,
    KIND_MIS_CAUSAS,
    CausasUpdateConfig,
    ManagerConfig,
    WorkerConfig,
    default_manager_config,
    validate_causas_update_config,
    validate_manager_config,
    validate_worker_config,
)


def test_default_manager_config_is_valid() -> None:
    cfg = default_manager_config()
    validate_manager_config(cfg)

    assert set(cfg.workers) == {KIND_CAUSAS_UPDATE, KIND_MIS_CAUSAS, KIND_CREDENTIALS_PROCESSOR}
    assert cfg.workers[KIND_CREDENTIALS_PROCESSOR].enabled is False
    assert cfg.workers[KIND_CAUSAS_UPDATE].schedule.priority_bypass is True
    assert cfg.workers[KIND_CAUSAS_UPDATE].schedule.enabled is True


def test_manager_config_document_keys_are_camel_case() -> None:
    data = default_manager_config().to_dict()

    assert data["_version"] == "1"
    assert set(data["global"]) == {
        "enabled",
        "serviceAvailable",
        "maintenanceMessage",
        "scheduledDowntime",
    }
    worker = data["workers"][KIND_CAUSAS_UPDATE]
    assert worker["scaling"]["scaleUpThreshold"] == 10
    assert worker["schedule"]["workingHoursStart"] == "07:00"
    assert worker["healthCheck"]["maxProcessingMinutes"] == 60
    assert "command" not in worker


def test_manager_config_from_partial_document_uses_defaults() -> None:
    cfg = ManagerConfig.from_dict(
        {
            "_version": "7",
            "global": {"enabled": False},
            "workers": {
                "mis-causas": {
                    "scaling": {"maxInstances": "5", "cooldownMs": "not-a-number"},
                    "queue": {"staleRunMinutes": "45"},
                    "pm2ProcessName": "legacy-name",
                }
            },
        }
    )

    assert cfg.version == "7"
    assert cfg.global_config.enabled is False
    assert cfg.global_config.service_available is True
    worker = cfg.workers["mis-causas"]
    assert worker.process_name == "legacy-name"
    assert worker.scaling.max_instances == 5
    assert worker.scaling.cooldown_ms == 300_000
    assert worker.queue.poll_interval_ms == 30_000
    assert worker.queue.stale_run_minutes == 45


def test_worker_config_process_name_defaults_to_kind() -> None:
    cfg = WorkerConfig.from_dict({"command": ["python", "-m", "verifier"]}, kind="credentials-processor")
    assert cfg.process_name == "credentials-processor"
    assert cfg.command == ["python", "-m", "verifier"]
    assert cfg.to_dict()["command"] == ["python", "-m", "verifier"]


@pytest.mark.parametrize(
    "mutate, message",
    [
        (lambda c: setattr(c.scaling, "min_instances", -1), "minInstances"),
        (lambda c: setattr(c.scaling, "max_instances", 0) or setattr(c.scaling, "min_instances", 1), "maxInstances"),
        (lambda c: setattr(c.scaling, "scale_up_step", 0), "step"),
        (lambda c: setattr(c.scaling, "scale_down_threshold", 50), "scaleDownThreshold"),
        (lambda c: setattr(c.schedule, "working_days", [0, 1]), "workingDays"),
        (lambda c: setattr(c.schedule, "working_hours_end", "24:00"), "workingHoursEnd"),
        (lambda c: setattr(c.queue, "poll_interval_ms", 10), "pollIntervalMs"),
        (lambda c: setattr(c.queue, "stale_run_minutes", 0), "staleRunMinutes"),
    ],
)
def test_validate_worker_config_rejects_bad_values(mutate, message) -> None:
    cfg = WorkerConfig()
    mutate(cfg)
    with pytest.raises(ValueError, match=message):
        validate_worker_config("mis-causas", cfg)


def test_validate_manager_config_rejects_fast_poll() -> None:
    cfg = default_manager_config()
    cfg.manager.poll_interval_ms = 10
    with pytest.raises(ValueError, match="pollIntervalMs"):
        validate_manager_config(cfg)


def test_causas_update_config_sections_round_trip() -> None:
    cfg = CausasUpdateConfig(max_runs_per_day=2, resume_enabled=False, jurisdiction_cooldown_minutes=15)
    data = cfg.to_dict()

    assert data["thresholds"]["maxRunsPerDay"] == 2
    assert data["resume"]["enabled"] is False
    assert data["errors"]["jurisdictionCooldownMinutes"] == 15
    assert CausasUpdateConfig.from_dict(data) == cfg


def test_causas_update_config_snapshot_subset() -> None:
    snap = CausasUpdateConfig(update_threshold_hours=6).snapshot()
    assert snap == {
        "updateThresholdHours": 6,
        "maxCausasPerCredential": 0,
        "delayBetweenCausas": 2000,
    }


def test_validate_causas_update_config() -> None:
    validate_causas_update_config(CausasUpdateConfig())
    with pytest.raises(ValueError, match="maxRunsPerDay"):
        validate_causas_update_config(CausasUpdateConfig(max_runs_per_day=0))
    with pytest.raises(ValueError, match="maxAuthFailures"):
        validate_causas_update_config(CausasUpdateConfig(max_auth_failures=0))
