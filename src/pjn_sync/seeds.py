from __future__ import annotations

from typing import Any, Callable, Dict, Iterable

from sqlalchemy.orm import Session

from .manager_contract import (
    CAUSAS_UPDATE_CONFIG_NAME,
    MANAGER_CONFIG_NAME,
    CausasUpdateConfig,
    default_manager_config,
)
from .models import ConfigDocument, ManagerStatus

MANAGER_STATUS_ID = 1


def default_config_documents() -> Dict[str, Dict[str, Any]]:
    return {
        MANAGER_CONFIG_NAME: default_manager_config().to_dict(),
        CAUSAS_UPDATE_CONFIG_NAME: CausasUpdateConfig().to_dict(),
    }


def seed_config_documents(session: Session) -> int:
    """
    Insert the default configuration documents if they do not already exist.

    Returns the number of documents created.
    """
    initial_documents: Iterable[tuple[str, Callable[[], Dict[str, Any]]]] = [
        (MANAGER_CONFIG_NAME, lambda: default_manager_config().to_dict()),
        (CAUSAS_UPDATE_CONFIG_NAME, lambda: CausasUpdateConfig().to_dict()),
    ]

    # Flush pending documents so we have a complete view of existing names
    # within this session.
    session.flush()

    existing_names = {name for (name,) in session.query(ConfigDocument.name).all()}

    created = 0
    for name, factory in initial_documents:
        if name in existing_names:
            continue
        data = factory()
        session.add(
            ConfigDocument(
                name=name,
                version=str(data.get("_version") or "1"),
                data=data,
                updated_by="seed",
            )
        )
        created += 1

    if session.get(ManagerStatus, MANAGER_STATUS_ID) is None:
        session.add(ManagerStatus(id=MANAGER_STATUS_ID, is_running=False, cycle_count=0))

    return created


__all__ = ["MANAGER_STATUS_ID", "default_config_documents", "seed_config_documents"]
