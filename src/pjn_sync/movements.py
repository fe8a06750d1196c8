from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from .models import Causa, Movimiento
from .portal import PortalMovement
from .timeutils import utcnow

logger = logging.getLogger("pjn_sync.movements")


def movement_key(movement: PortalMovement) -> str:
    """
    Stable digest of a movement's (date, type, detail).
    """
    fecha = movement.fecha.isoformat() if isinstance(movement.fecha, date) else ""
    raw = "\x1f".join([fecha, (movement.tipo or "").strip(), (movement.detalle or "").strip()])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def newest_movement(movements: Sequence[PortalMovement]) -> Optional[PortalMovement]:
    """
    Most recent movement; ties keep the portal's own order.
    """
    if not movements:
        return None
    return sorted(movements, key=lambda m: m.fecha or date.min, reverse=True)[0]


@dataclass
class MovementDiff:
    unchanged: bool
    added: int
    total: int


def apply_movements(
    session: Session,
    causa: Causa,
    movements: Sequence[PortalMovement],
) -> MovementDiff:
    """
    Store the movements of ``causa`` that are not stored yet.

    A causa whose stored count and newest key both match the portal is left
    untouched apart from ``last_update``.
    """
    now = utcnow()
    newest = newest_movement(movements)
    newest_key = movement_key(newest) if newest is not None else None

    if len(movements) == (causa.movimientos_count or 0) and newest_key == causa.last_movement_key:
        causa.last_update = now
        return MovementDiff(unchanged=True, added=0, total=causa.movimientos_count or 0)

    existing_keys = {
        key for (key,) in session.query(Movimiento.key).filter(Movimiento.causa_id == causa.id)
    }

    to_insert: List[Movimiento] = []
    for movement in movements:
        key = movement_key(movement)
        if key in existing_keys:
            continue
        existing_keys.add(key)
        to_insert.append(
            Movimiento(
                causa_id=causa.id,
                key=key,
                fecha=movement.fecha,
                tipo=movement.tipo or None,
                detalle=movement.detalle or None,
                url=movement.url,
            )
        )

    session.add_all(to_insert)
    causa.movimientos_count = len(existing_keys)
    causa.last_movement_key = newest_key
    causa.last_update = now

    if to_insert:
        logger.debug("Causa %s: %d new movimientos.", causa.key, len(to_insert))
    return MovementDiff(unchanged=False, added=len(to_insert), total=len(existing_keys))


__all__ = ["MovementDiff", "apply_movements", "movement_key", "newest_movement"]
