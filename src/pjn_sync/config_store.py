from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from .manager_contract import (
    CAUSAS_UPDATE_CONFIG_NAME,
    MANAGER_CONFIG_NAME,
    CausasUpdateConfig,
    ManagerConfig,
    default_manager_config,
    validate_causas_update_config,
    validate_manager_config,
)
from .models import ConfigDocument
from .timeutils import utcnow

logger = logging.getLogger("pjn_sync.config_store")


def _load_document(session: Session, name: str, default: Dict[str, Any]) -> ConfigDocument:
    doc = session.get(ConfigDocument, name)
    if doc is None:
        logger.info("Configuration document %r missing; seeding defaults.", name)
        doc = ConfigDocument(
            name=name,
            version=str(default.get("_version") or "1"),
            data=default,
            updated_by="seed",
        )
        session.add(doc)
        session.flush()
    return doc


def load_manager_config(session: Session) -> ManagerConfig:
    """
    Read the scraping-manager document, seeding it from defaults when absent.

    An invalid stored document is logged and replaced by defaults for this
    read only; the stored row is left untouched for the operator to fix.
    """
    doc = _load_document(session, MANAGER_CONFIG_NAME, default_manager_config().to_dict())
    cfg = ManagerConfig.from_dict(doc.data or {})
    cfg.version = doc.version or cfg.version
    try:
        validate_manager_config(cfg)
    except ValueError as exc:
        logger.error("Invalid %s document (version %s): %s", MANAGER_CONFIG_NAME, doc.version, exc)
        fallback = default_manager_config()
        fallback.version = f"{doc.version}-invalid"
        return fallback
    return cfg


def load_causas_update_config(session: Session) -> CausasUpdateConfig:
    doc = _load_document(session, CAUSAS_UPDATE_CONFIG_NAME, CausasUpdateConfig().to_dict())
    cfg = CausasUpdateConfig.from_dict(doc.data or {})
    try:
        validate_causas_update_config(cfg)
    except ValueError as exc:
        logger.error("Invalid %s document: %s", CAUSAS_UPDATE_CONFIG_NAME, exc)
        return CausasUpdateConfig()
    return cfg


def _bump_version(current: Optional[str]) -> str:
    try:
        return str(int(current or "0") + 1)
    except ValueError:
        return "1"


def save_manager_config(
    session: Session, cfg: ManagerConfig, *, updated_by: Optional[str] = None
) -> str:
    """
    Validate and persist the scraping-manager document, bumping its version.

    Returns the new version string.
    """
    validate_manager_config(cfg)
    doc = _load_document(session, MANAGER_CONFIG_NAME, default_manager_config().to_dict())
    now = utcnow()
    cfg.version = _bump_version(doc.version)
    cfg.last_modified = now.isoformat()
    doc.data = cfg.to_dict()
    doc.version = cfg.version
    doc.updated_by = updated_by
    doc.updated_at = now
    return cfg.version


def save_causas_update_config(
    session: Session, cfg: CausasUpdateConfig, *, updated_by: Optional[str] = None
) -> str:
    validate_causas_update_config(cfg)
    doc = _load_document(session, CAUSAS_UPDATE_CONFIG_NAME, CausasUpdateConfig().to_dict())
    doc.data = cfg.to_dict()
    doc.version = _bump_version(doc.version)
    doc.updated_by = updated_by
    doc.updated_at = utcnow()
    return doc.version


__all__ = [
    "load_causas_update_config",
    "load_manager_config",
    "save_causas_update_config",
    "save_manager_config",
]
