from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import DEFAULT_SCHEDULE_TIMEZONE

MANAGER_CONFIG_NAME = "scraping-manager"
CAUSAS_UPDATE_CONFIG_NAME = "causas-update"

KIND_CAUSAS_UPDATE = "causas-update"
KIND_MIS_CAUSAS = "mis-causas"
KIND_CREDENTIALS_PROCESSOR = "credentials-processor"

_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def _int(data: Dict[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class ScalingConfig:
    min_instances: int = 0
    max_instances: int = 1
    scale_up_threshold: int = 10
    scale_down_threshold: int = 0
    scale_up_step: int = 1
    scale_down_step: int = 1
    cooldown_ms: int = 300_000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "minInstances": self.min_instances,
            "maxInstances": self.max_instances,
            "scaleUpThreshold": self.scale_up_threshold,
            "scaleDownThreshold": self.scale_down_threshold,
            "scaleUpStep": self.scale_up_step,
            "scaleDownStep": self.scale_down_step,
            "cooldownMs": self.cooldown_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScalingConfig":
        defaults = cls()
        return cls(
            min_instances=_int(data, "minInstances", defaults.min_instances),
            max_instances=_int(data, "maxInstances", defaults.max_instances),
            scale_up_threshold=_int(data, "scaleUpThreshold", defaults.scale_up_threshold),
            scale_down_threshold=_int(data, "scaleDownThreshold", defaults.scale_down_threshold),
            scale_up_step=_int(data, "scaleUpStep", defaults.scale_up_step),
            scale_down_step=_int(data, "scaleDownStep", defaults.scale_down_step),
            cooldown_ms=_int(data, "cooldownMs", defaults.cooldown_ms),
        )


@dataclass
class ScheduleConfig:
    """
    Working window of a worker kind.

    ``working_days`` uses ISO weekdays (1=Monday .. 7=Sunday). The end hour is
    exclusive; an end earlier than the start wraps past midnight.
    """

    enabled: bool = False
    timezone: str = DEFAULT_SCHEDULE_TIMEZONE
    working_days: List[int] = field(default_factory=lambda: [1, 2, 3, 4, 5])
    working_hours_start: str = "08:00"
    working_hours_end: str = "20:00"
    priority_bypass: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "timezone": self.timezone,
            "workingDays": list(self.working_days),
            "workingHoursStart": self.working_hours_start,
            "workingHoursEnd": self.working_hours_end,
            "priorityBypass": self.priority_bypass,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduleConfig":
        defaults = cls()
        raw_days = data.get("workingDays")
        days = defaults.working_days if raw_days is None else [int(d) for d in raw_days]
        return cls(
            enabled=bool(data.get("enabled", defaults.enabled)),
            timezone=str(data.get("timezone") or defaults.timezone),
            working_days=days,
            working_hours_start=str(data.get("workingHoursStart", defaults.working_hours_start)),
            working_hours_end=str(data.get("workingHoursEnd", defaults.working_hours_end)),
            priority_bypass=bool(data.get("priorityBypass", defaults.priority_bypass)),
        )


@dataclass
class QueueConfig:
    poll_interval_ms: int = 30_000
    max_consecutive_errors: int = 5
    error_cooldown_ms: int = 60_000
    # In-progress runs whose heartbeat is older than this belong to a dead
    # worker and are recovered by the next instance of the kind.
    stale_run_minutes: int = 30

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pollIntervalMs": self.poll_interval_ms,
            "maxConsecutiveErrors": self.max_consecutive_errors,
            "errorCooldownMs": self.error_cooldown_ms,
            "staleRunMinutes": self.stale_run_minutes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueConfig":
        defaults = cls()
        return cls(
            poll_interval_ms=_int(data, "pollIntervalMs", defaults.poll_interval_ms),
            max_consecutive_errors=_int(
                data, "maxConsecutiveErrors", defaults.max_consecutive_errors
            ),
            error_cooldown_ms=_int(data, "errorCooldownMs", defaults.error_cooldown_ms),
            stale_run_minutes=_int(data, "staleRunMinutes", defaults.stale_run_minutes),
        )


@dataclass
class HealthCheckConfig:
    enabled: bool = True
    max_idle_minutes: int = 30
    max_processing_minutes: int = 60
    auto_restart_on_stuck: bool = True
    max_memory_mb: int = 800

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "maxIdleMinutes": self.max_idle_minutes,
            "maxProcessingMinutes": self.max_processing_minutes,
            "autoRestartOnStuck": self.auto_restart_on_stuck,
            "maxMemoryMB": self.max_memory_mb,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthCheckConfig":
        defaults = cls()
        return cls(
            enabled=bool(data.get("enabled", defaults.enabled)),
            max_idle_minutes=_int(data, "maxIdleMinutes", defaults.max_idle_minutes),
            max_processing_minutes=_int(
                data, "maxProcessingMinutes", defaults.max_processing_minutes
            ),
            auto_restart_on_stuck=bool(
                data.get("autoRestartOnStuck", defaults.auto_restart_on_stuck)
            ),
            max_memory_mb=_int(data, "maxMemoryMB", defaults.max_memory_mb),
        )


@dataclass
class WorkerConfig:
    """
    Per-kind scaling, schedule, queue and health settings.
    """

    enabled: bool = True
    process_name: str = ""
    description: str = ""
    # Optional argv override for spawning an instance of this kind.
    command: Optional[List[str]] = None
    scaling: ScalingConfig = field(default_factory=ScalingConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    health_check: HealthCheckConfig = field(default_factory=HealthCheckConfig)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "enabled": self.enabled,
            "processName": self.process_name,
            "description": self.description,
            "scaling": self.scaling.to_dict(),
            "schedule": self.schedule.to_dict(),
            "queue": self.queue.to_dict(),
            "healthCheck": self.health_check.to_dict(),
        }
        if self.command:
            data["command"] = list(self.command)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, kind: str = "") -> "WorkerConfig":
        raw_command = data.get("command")
        return cls(
            enabled=bool(data.get("enabled", True)),
            process_name=str(data.get("processName") or data.get("pm2ProcessName") or kind),
            description=str(data.get("description") or ""),
            command=[str(part) for part in raw_command] if raw_command else None,
            scaling=ScalingConfig.from_dict(data.get("scaling") or {}),
            schedule=ScheduleConfig.from_dict(data.get("schedule") or {}),
            queue=QueueConfig.from_dict(data.get("queue") or {}),
            health_check=HealthCheckConfig.from_dict(data.get("healthCheck") or {}),
        )


@dataclass
class GlobalConfig:
    enabled: bool = True
    service_available: bool = True
    maintenance_message: Optional[str] = None
    scheduled_downtime: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "serviceAvailable": self.service_available,
            "maintenanceMessage": self.maintenance_message,
            "scheduledDowntime": self.scheduled_downtime,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GlobalConfig":
        return cls(
            enabled=bool(data.get("enabled", True)),
            service_available=bool(data.get("serviceAvailable", True)),
            maintenance_message=data.get("maintenanceMessage"),
            scheduled_downtime=data.get("scheduledDowntime"),
        )


@dataclass
class ManagerSettings:
    poll_interval_ms: int = 30_000
    probe_concurrency: int = 4
    history_retention_hours: int = 24

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pollIntervalMs": self.poll_interval_ms,
            "probeConcurrency": self.probe_concurrency,
            "historyRetentionHours": self.history_retention_hours,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagerSettings":
        defaults = cls()
        return cls(
            poll_interval_ms=_int(data, "pollIntervalMs", defaults.poll_interval_ms),
            probe_concurrency=_int(data, "probeConcurrency", defaults.probe_concurrency),
            history_retention_hours=_int(
                data, "historyRetentionHours", defaults.history_retention_hours
            ),
        )


@dataclass
class ManagerConfig:
    """
    Typed representation of the ``scraping-manager`` configuration document.
    """

    version: str = "1"
    last_modified: Optional[str] = None
    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    manager: ManagerSettings = field(default_factory=ManagerSettings)
    workers: Dict[str, WorkerConfig] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_version": self.version,
            "_lastModified": self.last_modified,
            "global": self.global_config.to_dict(),
            "manager": self.manager.to_dict(),
            "workers": {kind: cfg.to_dict() for kind, cfg in self.workers.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagerConfig":
        raw_workers = data.get("workers") or {}
        return cls(
            version=str(data.get("_version") or "1"),
            last_modified=data.get("_lastModified"),
            global_config=GlobalConfig.from_dict(data.get("global") or {}),
            manager=ManagerSettings.from_dict(data.get("manager") or {}),
            workers={
                str(kind): WorkerConfig.from_dict(raw or {}, kind=str(kind))
                for kind, raw in raw_workers.items()
            },
        )


def default_manager_config() -> ManagerConfig:
    """
    Factory defaults for the scraping-manager document.
    """
    return ManagerConfig(
        version="1",
        workers={
            KIND_CREDENTIALS_PROCESSOR: WorkerConfig(
                enabled=False,
                process_name="pjn-credentials-processor",
                description="Verifies newly linked portal credentials.",
                scaling=ScalingConfig(
                    min_instances=0,
                    max_instances=3,
                    scale_up_threshold=5,
                    scale_down_threshold=1,
                ),
                schedule=ScheduleConfig(enabled=False),
                health_check=HealthCheckConfig(max_processing_minutes=120),
            ),
            KIND_MIS_CAUSAS: WorkerConfig(
                enabled=True,
                process_name="pjn-mis-causas",
                description="Full re-synchronization of a credential's case listing.",
                scaling=ScalingConfig(
                    min_instances=0,
                    max_instances=2,
                    scale_up_threshold=3,
                    scale_down_threshold=0,
                ),
                schedule=ScheduleConfig(enabled=False),
                health_check=HealthCheckConfig(max_processing_minutes=90),
            ),
            KIND_CAUSAS_UPDATE: WorkerConfig(
                enabled=True,
                process_name="pjn-causas-update",
                description="Phased movement synchronization (initial, resume, update).",
                scaling=ScalingConfig(
                    min_instances=0,
                    max_instances=4,
                    scale_up_threshold=10,
                    scale_down_threshold=2,
                ),
                schedule=ScheduleConfig(
                    enabled=True,
                    working_days=[1, 2, 3, 4, 5],
                    working_hours_start="07:00",
                    working_hours_end="21:00",
                    priority_bypass=True,
                ),
                health_check=HealthCheckConfig(max_processing_minutes=60, max_idle_minutes=30),
            ),
        },
    )


def validate_worker_config(kind: str, cfg: WorkerConfig) -> None:
    """
    Reject worker configurations the manager cannot act on.
    """
    scaling = cfg.scaling
    if scaling.min_instances < 0:
        raise ValueError(f"workers.{kind}.scaling.minInstances must be >= 0")
    if scaling.max_instances < scaling.min_instances:
        raise ValueError(f"workers.{kind}.scaling.maxInstances must be >= minInstances")
    if scaling.scale_up_step < 1 or scaling.scale_down_step < 1:
        raise ValueError(f"workers.{kind}.scaling step sizes must be >= 1")
    if scaling.cooldown_ms < 0:
        raise ValueError(f"workers.{kind}.scaling.cooldownMs must be >= 0")
    if scaling.scale_down_threshold > scaling.scale_up_threshold:
        raise ValueError(
            f"workers.{kind}.scaling.scaleDownThreshold cannot exceed scaleUpThreshold"
        )

    schedule = cfg.schedule
    for day in schedule.working_days:
        if day < 1 or day > 7:
            raise ValueError(f"workers.{kind}.schedule.workingDays must use ISO weekdays 1..7")
    for label, value in (
        ("workingHoursStart", schedule.working_hours_start),
        ("workingHoursEnd", schedule.working_hours_end),
    ):
        if not _HHMM_RE.match(value):
            raise ValueError(f"workers.{kind}.schedule.{label} must be HH:MM, got {value!r}")

    if cfg.queue.poll_interval_ms < 100:
        raise ValueError(f"workers.{kind}.queue.pollIntervalMs must be >= 100")
    if cfg.queue.stale_run_minutes < 1:
        raise ValueError(f"workers.{kind}.queue.staleRunMinutes must be >= 1")
    if cfg.health_check.max_processing_minutes < 1 or cfg.health_check.max_idle_minutes < 1:
        raise ValueError(f"workers.{kind}.healthCheck thresholds must be >= 1 minute")


def validate_manager_config(cfg: ManagerConfig) -> None:
    if cfg.manager.poll_interval_ms < 1000:
        raise ValueError("manager.pollIntervalMs must be >= 1000")
    if cfg.manager.probe_concurrency < 1:
        raise ValueError("manager.probeConcurrency must be >= 1")
    for kind, worker_cfg in cfg.workers.items():
        validate_worker_config(kind, worker_cfg)


@dataclass
class CausasUpdateConfig:
    """
    Typed representation of the ``causas-update`` configuration document
    consumed by the phased synchronization worker.
    """

    enabled: bool = True
    max_credentials_per_run: int = 10
    max_causas_per_credential: int = 0
    delay_between_causas_ms: int = 2000
    delay_between_credentials_ms: int = 5000

    update_threshold_hours: int = 3
    min_time_between_runs_minutes: int = 120
    max_runs_per_day: int = 8

    wait_for_causa_creation: bool = True
    check_interval_ms: int = 30_000
    max_wait_minutes: int = 60

    resume_enabled: bool = True
    max_resume_attempts: int = 3
    resume_delay_minutes: int = 5

    jurisdiction_cooldown_minutes: int = 60
    case_error_threshold: int = 3
    case_error_cooldown_minutes: int = 60
    max_auth_failures: int = 3

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker": {
                "enabled": self.enabled,
                "maxCredentialsPerRun": self.max_credentials_per_run,
                "maxCausasPerCredential": self.max_causas_per_credential,
                "delayBetweenCausas": self.delay_between_causas_ms,
                "delayBetweenCredentials": self.delay_between_credentials_ms,
            },
            "thresholds": {
                "updateThresholdHours": self.update_threshold_hours,
                "minTimeBetweenRunsMinutes": self.min_time_between_runs_minutes,
                "maxRunsPerDay": self.max_runs_per_day,
            },
            "concurrency": {
                "waitForCausaCreation": self.wait_for_causa_creation,
                "checkIntervalMs": self.check_interval_ms,
                "maxWaitMinutes": self.max_wait_minutes,
            },
            "resume": {
                "enabled": self.resume_enabled,
                "maxResumeAttempts": self.max_resume_attempts,
                "resumeDelayMinutes": self.resume_delay_minutes,
            },
            "errors": {
                "jurisdictionCooldownMinutes": self.jurisdiction_cooldown_minutes,
                "caseErrorThreshold": self.case_error_threshold,
                "caseErrorCooldownMinutes": self.case_error_cooldown_minutes,
                "maxAuthFailures": self.max_auth_failures,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CausasUpdateConfig":
        d = cls()
        worker = data.get("worker") or {}
        thresholds = data.get("thresholds") or {}
        concurrency = data.get("concurrency") or {}
        resume = data.get("resume") or {}
        errors = data.get("errors") or {}
        return cls(
            enabled=bool(worker.get("enabled", d.enabled)),
            max_credentials_per_run=_int(worker, "maxCredentialsPerRun", d.max_credentials_per_run),
            max_causas_per_credential=_int(
                worker, "maxCausasPerCredential", d.max_causas_per_credential
            ),
            delay_between_causas_ms=_int(worker, "delayBetweenCausas", d.delay_between_causas_ms),
            delay_between_credentials_ms=_int(
                worker, "delayBetweenCredentials", d.delay_between_credentials_ms
            ),
            update_threshold_hours=_int(
                thresholds, "updateThresholdHours", d.update_threshold_hours
            ),
            min_time_between_runs_minutes=_int(
                thresholds, "minTimeBetweenRunsMinutes", d.min_time_between_runs_minutes
            ),
            max_runs_per_day=_int(thresholds, "maxRunsPerDay", d.max_runs_per_day),
            wait_for_causa_creation=bool(
                concurrency.get("waitForCausaCreation", d.wait_for_causa_creation)
            ),
            check_interval_ms=_int(concurrency, "checkIntervalMs", d.check_interval_ms),
            max_wait_minutes=_int(concurrency, "maxWaitMinutes", d.max_wait_minutes),
            resume_enabled=bool(resume.get("enabled", d.resume_enabled)),
            max_resume_attempts=_int(resume, "maxResumeAttempts", d.max_resume_attempts),
            resume_delay_minutes=_int(resume, "resumeDelayMinutes", d.resume_delay_minutes),
            jurisdiction_cooldown_minutes=_int(
                errors, "jurisdictionCooldownMinutes", d.jurisdiction_cooldown_minutes
            ),
            case_error_threshold=_int(errors, "caseErrorThreshold", d.case_error_threshold),
            case_error_cooldown_minutes=_int(
                errors, "caseErrorCooldownMinutes", d.case_error_cooldown_minutes
            ),
            max_auth_failures=_int(errors, "maxAuthFailures", d.max_auth_failures),
        )

    def snapshot(self) -> Dict[str, Any]:
        """
        Subset copied onto each run record for later auditing.
        """
        return {
            "updateThresholdHours": self.update_threshold_hours,
            "maxCausasPerCredential": self.max_causas_per_credential,
            "delayBetweenCausas": self.delay_between_causas_ms,
        }


def validate_causas_update_config(cfg: CausasUpdateConfig) -> None:
    if cfg.max_credentials_per_run < 1:
        raise ValueError("worker.maxCredentialsPerRun must be >= 1")
    if cfg.max_causas_per_credential < 0:
        raise ValueError("worker.maxCausasPerCredential must be >= 0 (0 = unlimited)")
    if cfg.delay_between_causas_ms < 0 or cfg.delay_between_credentials_ms < 0:
        raise ValueError("worker delays must be >= 0")
    if cfg.update_threshold_hours < 0 or cfg.min_time_between_runs_minutes < 0:
        raise ValueError("thresholds must be >= 0")
    if cfg.max_runs_per_day < 1:
        raise ValueError("thresholds.maxRunsPerDay must be >= 1")
    if cfg.max_resume_attempts < 0:
        raise ValueError("resume.maxResumeAttempts must be >= 0")
    if cfg.max_auth_failures < 1:
        raise ValueError("errors.maxAuthFailures must be >= 1")


__all__ = [
    "CAUSAS_UPDATE_CONFIG_NAME",
    "KIND_CAUSAS_UPDATE",
    "KIND_CREDENTIALS_PROCESSOR",
    "KIND_MIS_CAUSAS",
    "MANAGER_CONFIG_NAME",
    "CausasUpdateConfig",
    "GlobalConfig",
    "HealthCheckConfig",
    "ManagerConfig",
    "ManagerSettings",
    "QueueConfig",
    "ScalingConfig",
    "ScheduleConfig",
    "WorkerConfig",
    "default_manager_config",
    "validate_causas_update_config",
    "validate_manager_config",
    "validate_worker_config",
]
