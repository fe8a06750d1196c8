from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional, Set

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    false,
    text,
    true,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from .causa_keys import CausaKey
from .db import Base

# Sync status values shared by the lease helpers and the workers.
SYNC_STATUS_IDLE = "idle"
SYNC_STATUS_PENDING = "pending"
SYNC_STATUS_IN_PROGRESS = "in_progress"

# initialMovementsSync tri-state (None means "never requested").
INITIAL_SYNC_PENDING = "pending"
INITIAL_SYNC_IN_PROGRESS = "in_progress"
INITIAL_SYNC_COMPLETED = "completed"

# Causa.source values.
SOURCE_SYNC = "sync"
SOURCE_MANUAL = "manual"
SOURCE_SEARCH = "search"
SOURCE_CACHE = "cache"

# Folder.source values.
FOLDER_SOURCE_SYNC = "sync"
FOLDER_SOURCE_USER = "user"

# SyncRun.status values.
RUN_IN_PROGRESS = "in_progress"
RUN_COMPLETED = "completed"
RUN_PARTIAL = "partial"
RUN_ERROR = "error"
RUN_INTERRUPTED = "interrupted"


class TimestampMixin:
    """
    Common created_at / updated_at columns.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# linkedCredentials: one row per (causa, credential) pair, so membership is a
# set by construction.
causa_credentials = Table(
    "causa_credentials",
    Base.metadata,
    Column(
        "causa_id",
        Integer,
        ForeignKey("causas.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "credential_id",
        Integer,
        ForeignKey("credentials.id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    ),
    Column(
        "linked_at",
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    ),
)


class Credential(TimestampMixin, Base):
    """
    One linked account on the external case portal, owned by one user.

    Credentials are never hard-deleted: unlinking disables them and
    re-linking re-enables the same row.
    """

    __tablename__ = "credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    cuil: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=true())
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false())
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_valid: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false())
    is_valid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Lease: only one worker may hold in_progress for a credential.
    sync_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'idle'"),
        index=True,
    )
    initial_movements_sync: Mapped[Optional[str]] = mapped_column(String(20), index=True)

    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_sync_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    consecutive_errors: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    consecutive_auth_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    last_error_message: Mapped[Optional[str]] = mapped_column(Text)
    last_error_code: Mapped[Optional[str]] = mapped_column(String(50))
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    expected_causas_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    processed_causas_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    folders_created_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    last_listing_total: Mapped[Optional[int]] = mapped_column(Integer)
    last_full_scan_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Per-fuero counters from the latest full scan.
    stats: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)

    excluded_causas: Mapped[List["ExcludedCausa"]] = relationship(
        back_populates="credential",
        cascade="all, delete-orphan",
    )
    causas: Mapped[Set["Causa"]] = relationship(
        secondary=causa_credentials,
        collection_class=set,
        back_populates="linked_credentials",
    )
    runs: Mapped[List["SyncRun"]] = relationship(back_populates="credential")

    def __repr__(self) -> str:
        return (
            f"<Credential id={self.id!r} user_id={self.user_id!r} "
            f"sync_status={self.sync_status!r}>"
        )


class ExcludedCausa(Base):
    """
    A case the owning user deliberately removed; sync never recreates a
    folder for it under this credential.
    """

    __tablename__ = "excluded_causas"
    __table_args__ = (
        UniqueConstraint(
            "credential_id",
            "fuero",
            "number",
            "year",
            "incidente",
            name="uq_excluded_causas_credential_key",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    credential_id: Mapped[int] = mapped_column(
        ForeignKey("credentials.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Not a foreign key: the causa may be deleted while the exclusion stays.
    causa_id: Mapped[Optional[int]] = mapped_column(Integer)
    causa_type: Mapped[str] = mapped_column(String(20), nullable=False)

    fuero: Mapped[str] = mapped_column(String(10), nullable=False)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    incidente: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default=text("''")
    )

    excluded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    credential: Mapped[Credential] = relationship(back_populates="excluded_causas")

    @property
    def key(self) -> CausaKey:
        return CausaKey(self.fuero, self.number, self.year, self.incidente)


class Causa(TimestampMixin, Base):
    """
    One judicial case, shared by every user whose credential observes it.
    """

    __tablename__ = "causas"
    __table_args__ = (
        UniqueConstraint(
            "fuero",
            "number",
            "year",
            "incidente",
            name="uq_causas_natural_key",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    fuero: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    incidente: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default=text("''")
    )

    # Origin of creation; only "sync" causas may ever be deleted by the
    # reconciler.
    source: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'sync'"),
        index=True,
    )

    caratula: Mapped[Optional[str]] = mapped_column(Text)
    juzgado: Mapped[Optional[str]] = mapped_column(String(255))
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false())

    last_update: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    movimientos_count: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    last_movement_key: Mapped[Optional[str]] = mapped_column(String(64))

    # Cooldown after jurisdiction outages or repeated case errors.
    skip_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    consecutive_errors: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    linked_credentials: Mapped[Set[Credential]] = relationship(
        secondary=causa_credentials,
        collection_class=set,
        back_populates="causas",
    )
    folders: Mapped[List["Folder"]] = relationship(back_populates="causa")
    movimientos: Mapped[List["Movimiento"]] = relationship(
        back_populates="causa",
        cascade="all, delete-orphan",
    )

    @property
    def key(self) -> CausaKey:
        return CausaKey(self.fuero, self.number, self.year, self.incidente)

    @property
    def folder_ids(self) -> Set[int]:
        return {folder.id for folder in self.folders}

    def __repr__(self) -> str:
        return f"<Causa id={self.id!r} key={self.key} source={self.source!r}>"


class Movimiento(Base):
    """
    A single entry of a causa's movement history.
    """

    __tablename__ = "movimientos"
    __table_args__ = (UniqueConstraint("causa_id", "key", name="uq_movimientos_causa_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    causa_id: Mapped[int] = mapped_column(
        ForeignKey("causas.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    key: Mapped[str] = mapped_column(String(64), nullable=False)
    fecha: Mapped[Optional[date]] = mapped_column(Date)
    tipo: Mapped[Optional[str]] = mapped_column(String(255))
    detalle: Mapped[Optional[str]] = mapped_column(Text)
    url: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    causa: Mapped[Causa] = relationship(back_populates="movimientos")


class Folder(TimestampMixin, Base):
    """
    A single user's handle onto a causa. Never shared between users.
    """

    __tablename__ = "folders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    causa_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("causas.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    source: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'user'"),
    )

    # Natural key copy so a folder can be matched before it is linked.
    fuero: Mapped[str] = mapped_column(String(10), nullable=False)
    number: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    incidente: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default=text("''")
    )
    caratula: Mapped[Optional[str]] = mapped_column(Text)

    pjn_not_found: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false())
    pjn_not_found_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    causa: Mapped[Optional[Causa]] = relationship(back_populates="folders")

    @property
    def key(self) -> CausaKey:
        return CausaKey(self.fuero, self.number, self.year, self.incidente)

    def __repr__(self) -> str:
        return (
            f"<Folder id={self.id!r} user_id={self.user_id!r} "
            f"causa_id={self.causa_id!r} source={self.source!r}>"
        )


class SyncRun(TimestampMixin, Base):
    """
    Run Ledger entry: one synchronization attempt for one credential.
    """

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    credential_id: Mapped[int] = mapped_column(
        ForeignKey("credentials.id"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'in_progress'"),
        index=True,
    )
    # "initial" (phase 0), "update" (phase 2); resumed runs keep their phase.
    phase: Mapped[str] = mapped_column(String(20), nullable=False)
    triggered_by: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        server_default=text("'manager'"),
    )

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    duration_seconds: Mapped[Optional[float]] = mapped_column(Float)

    total_causas: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    causas_processed: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    causas_updated: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    causas_skipped: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    causas_error: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    new_movimientos: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    is_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false())

    planned_causa_ids: Mapped[Optional[List[int]]] = mapped_column(JSON)
    causas_detail: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)

    resume_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    is_first_run: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false())
    is_resumed_run: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false())

    worker_pid: Mapped[Optional[int]] = mapped_column(Integer)
    instance_name: Mapped[Optional[str]] = mapped_column(String(100))
    config_snapshot: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)

    error_message: Mapped[Optional[str]] = mapped_column(Text)
    error_code: Mapped[Optional[str]] = mapped_column(String(50))
    error_phase: Mapped[Optional[str]] = mapped_column(String(50))

    credential: Mapped[Credential] = relationship(back_populates="runs")

    def __repr__(self) -> str:
        return (
            f"<SyncRun id={self.id!r} credential_id={self.credential_id!r} "
            f"status={self.status!r}>"
        )


class ConfigDocument(Base):
    """
    Named JSON configuration document edited by the admin console.
    """

    __tablename__ = "config_documents"

    name: Mapped[str] = mapped_column(String(100), primary_key=True)
    version: Mapped[str] = mapped_column(String(50), nullable=False)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    updated_by: Mapped[Optional[str]] = mapped_column(String(100))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class ManagerStatus(Base):
    """
    Singleton status document written by the manager on every tick.
    """

    __tablename__ = "manager_status"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    is_running: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=false())
    global_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=true())
    service_available: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=true()
    )
    maintenance_message: Mapped[Optional[str]] = mapped_column(Text)
    config_version: Mapped[Optional[str]] = mapped_column(String(50))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_poll: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cycle_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("0"))
    workers: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    # {kind: ISO timestamp of the last scaling action}
    scale_actions: Mapped[Optional[Dict[str, str]]] = mapped_column(JSON)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class ManagerSnapshot(Base):
    """
    Point-in-time copy of per-kind queue depth and instance counts.
    """

    __tablename__ = "manager_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    taken_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    workers: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


class WorkerHeartbeat(Base):
    """
    Liveness/activity report of one running worker instance.
    """

    __tablename__ = "worker_heartbeats"

    instance_name: Mapped[str] = mapped_column(String(100), primary_key=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    pid: Mapped[Optional[int]] = mapped_column(Integer)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Set while the instance is inside a unit of work.
    processing_since: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    current_credential_id: Mapped[Optional[int]] = mapped_column(Integer)
    memory_mb: Mapped[Optional[float]] = mapped_column(Float)


__all__ = [
    "Causa",
    "ConfigDocument",
    "Credential",
    "ExcludedCausa",
    "Folder",
    "ManagerSnapshot",
    "ManagerStatus",
    "Movimiento",
    "SyncRun",
    "WorkerHeartbeat",
    "causa_credentials",
]
