from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from .causa_keys import CausaKey
from .models import (
    FOLDER_SOURCE_SYNC,
    SOURCE_SYNC,
    Causa,
    Credential,
    ExcludedCausa,
    Folder,
    causa_credentials,
)
from .portal import PortalCausa
from .timeutils import utcnow

"""
pjn_sync.reconciler - Record Reconciler

Maps externally observed cases onto local Causa/Folder rows:

    upsert_causa     create a sync-origin causa or add the credential to an
                     existing one (set union, idempotent)
    ensure_folder    give the credential's user a folder for the causa unless
                     the case is in the credential's exclusion set
    cleanup_causa    apply the cleanup decision table when a credential lets
                     go of a causa; only sync-origin causas with no other
                     links are ever deleted
    sweep_orphans    purge sync causas linked to a credential that never got a
                     folder
    reconcile_not_found
                     set/clear Folder.pjn_not_found from a complete scan
"""

logger = logging.getLogger("pjn_sync.reconciler")

FOLDER_EXCLUDED = "excluded"
FOLDER_EXISTING = "existing"
FOLDER_LINKED = "linked"
FOLDER_CREATED = "created"
FOLDER_CREATED_DUPLICATE = "created_duplicate"

CLEANUP_DELETED = "deleted"
CLEANUP_UNLINKED = "unlinked"


class ReconciliationInvariantError(AssertionError):
    """
    Raised when a reconciliation step would break a data invariant, for
    example deleting a causa the synchronization did not create.

    Never caught by the reconciler or the phase executors.
    """


@dataclass
class FolderResult:
    outcome: str
    folder: Optional[Folder] = None


@dataclass
class NotFoundResult:
    applied: bool
    flagged: List[int] = field(default_factory=list)
    cleared: List[int] = field(default_factory=list)


def _as_key(observed: PortalCausa | CausaKey) -> CausaKey:
    return observed.key if isinstance(observed, PortalCausa) else observed


def find_causa(session: Session, key: CausaKey) -> Optional[Causa]:
    return (
        session.query(Causa)
        .filter(
            Causa.fuero == key.fuero,
            Causa.number == key.number,
            Causa.year == key.year,
            Causa.incidente == key.incidente,
        )
        .one_or_none()
    )


def upsert_causa(
    session: Session,
    observed: PortalCausa | CausaKey,
    credential: Credential,
) -> Tuple[Causa, bool]:
    """
    Return ``(causa, created)`` for an externally observed case.

    A new causa gets ``source = sync``; an existing one keeps its source and
    gains ``credential`` in its linked set.
    """
    key = _as_key(observed)
    causa = find_causa(session, key)
    created = False
    if causa is None:
        causa = Causa(
            fuero=key.fuero,
            number=key.number,
            year=key.year,
            incidente=key.incidente,
            source=SOURCE_SYNC,
            movimientos_count=0,
            consecutive_errors=0,
        )
        session.add(causa)
        created = True

    if isinstance(observed, PortalCausa):
        if observed.caratula:
            causa.caratula = observed.caratula
        if observed.juzgado:
            causa.juzgado = observed.juzgado
        causa.is_private = bool(observed.is_private)

    causa.linked_credentials.add(credential)
    session.flush()
    if created:
        logger.debug("Created causa %s for credential %s.", key, credential.id)
    return causa, created


def load_exclusion_set(session: Session, credential_id: int) -> Set[CausaKey]:
    """
    Natural keys the credential's owner removed; loaded once per batch.
    """
    rows = (
        session.query(
            ExcludedCausa.fuero,
            ExcludedCausa.number,
            ExcludedCausa.year,
            ExcludedCausa.incidente,
        )
        .filter(ExcludedCausa.credential_id == credential_id)
        .all()
    )
    return {CausaKey(fuero, number, year, incidente or "") for fuero, number, year, incidente in rows}


def add_exclusion(session: Session, credential: Credential, causa: Causa) -> bool:
    """
    Add ``causa``'s key to ``credential``'s exclusion set. Idempotent.
    """
    key = causa.key
    existing = (
        session.query(ExcludedCausa.id)
        .filter(
            ExcludedCausa.credential_id == credential.id,
            ExcludedCausa.fuero == key.fuero,
            ExcludedCausa.number == key.number,
            ExcludedCausa.year == key.year,
            ExcludedCausa.incidente == key.incidente,
        )
        .first()
    )
    if existing is not None:
        return False
    session.add(
        ExcludedCausa(
            credential_id=credential.id,
            causa_id=causa.id,
            causa_type=key.fuero,
            fuero=key.fuero,
            number=key.number,
            year=key.year,
            incidente=key.incidente,
            excluded_at=utcnow(),
        )
    )
    session.flush()
    logger.info("Credential %s now excludes causa %s.", credential.id, key)
    return True


def ensure_folder(
    session: Session,
    causa: Causa,
    credential: Credential,
    exclusions: Optional[Set[CausaKey]] = None,
) -> FolderResult:
    """
    Make sure the credential's user has a folder for ``causa``.

    Lookup order: exact causa_id, then natural key ignoring causa_id. A
    keyless match is linked; a match already pointing at a different causa
    gets a separate folder.
    """
    if exclusions is None:
        exclusions = load_exclusion_set(session, credential.id)
    key = causa.key
    if key in exclusions:
        return FolderResult(FOLDER_EXCLUDED)

    user_id = credential.user_id
    folder = (
        session.query(Folder)
        .filter(Folder.user_id == user_id, Folder.causa_id == causa.id)
        .order_by(Folder.id.asc())
        .first()
    )
    if folder is not None:
        return FolderResult(FOLDER_EXISTING, folder)

    candidates = (
        session.query(Folder)
        .filter(
            Folder.user_id == user_id,
            Folder.fuero == key.fuero,
            Folder.number == key.number,
            Folder.year == key.year,
            Folder.incidente == key.incidente,
        )
        .order_by(Folder.id.asc())
        .all()
    )
    for candidate in candidates:
        if candidate.causa_id is None:
            candidate.causa_id = causa.id
            session.flush()
            logger.debug("Linked folder %s to causa %s.", candidate.id, key)
            return FolderResult(FOLDER_LINKED, candidate)

    folder = Folder(
        user_id=user_id,
        causa_id=causa.id,
        source=FOLDER_SOURCE_SYNC,
        fuero=key.fuero,
        number=key.number,
        year=key.year,
        incidente=key.incidente,
        caratula=causa.caratula,
        pjn_not_found=False,
    )
    session.add(folder)
    credential.folders_created_count = (credential.folders_created_count or 0) + 1
    session.flush()
    outcome = FOLDER_CREATED_DUPLICATE if candidates else FOLDER_CREATED
    if candidates:
        logger.warning(
            "User %s already had folder(s) %s for %s linked to another causa; created folder %s.",
            user_id,
            [c.id for c in candidates],
            key,
            folder.id,
        )
    return FolderResult(outcome, folder)


def reconcile_observed(
    session: Session,
    credential: Credential,
    observed: Iterable[PortalCausa],
    exclusions: Optional[Set[CausaKey]] = None,
) -> List[Tuple[Causa, FolderResult]]:
    """
    Run upsert_causa + ensure_folder over a batch, loading the exclusion set
    once.
    """
    if exclusions is None:
        exclusions = load_exclusion_set(session, credential.id)
    results: List[Tuple[Causa, FolderResult]] = []
    for item in observed:
        causa, _created = upsert_causa(session, item, credential)
        results.append((causa, ensure_folder(session, causa, credential, exclusions)))
    return results


def _other_credential_links(session: Session, causa_id: int, credential_id: int) -> int:
    return (
        session.query(func.count())
        .select_from(causa_credentials)
        .filter(
            causa_credentials.c.causa_id == causa_id,
            causa_credentials.c.credential_id != credential_id,
        )
        .scalar()
        or 0
    )


def _other_folders(session: Session, causa_id: int, ignore_folder_ids: Set[int]) -> int:
    query = session.query(func.count(Folder.id)).filter(Folder.causa_id == causa_id)
    if ignore_folder_ids:
        query = query.filter(Folder.id.notin_(ignore_folder_ids))
    return query.scalar() or 0


def other_links_exist(
    session: Session,
    causa: Causa,
    credential: Credential,
    ignore_folder_ids: Optional[Set[int]] = None,
) -> bool:
    """
    True when another credential or another folder still points at ``causa``.
    """
    ignore = set(ignore_folder_ids or ())
    if _other_credential_links(session, causa.id, credential.id):
        return True
    return _other_folders(session, causa.id, ignore) > 0


def delete_causa(session: Session, causa: Causa, ignore_folder_ids: Optional[Set[int]] = None) -> None:
    """
    Hard-delete a sync-origin causa that nothing references any more.
    """
    if causa.source != SOURCE_SYNC:
        raise ReconciliationInvariantError(
            f"Refusing to delete causa {causa.id} ({causa.key}) with source={causa.source!r}"
        )
    ignore = set(ignore_folder_ids or ())
    if _other_folders(session, causa.id, ignore):
        raise ReconciliationInvariantError(
            f"Refusing to delete causa {causa.id} ({causa.key}) still referenced by folders"
        )
    remaining = {cred.id for cred in causa.linked_credentials}
    if len(remaining) > 1:
        raise ReconciliationInvariantError(
            f"Refusing to delete causa {causa.id} ({causa.key}) linked to credentials {sorted(remaining)}"
        )
    logger.info("Deleting sync causa %s (%s).", causa.id, causa.key)
    session.expire(causa, ["folders"])
    session.delete(causa)
    session.flush()


def cleanup_causa(
    session: Session,
    causa: Causa,
    credential: Credential,
    *,
    ignore_folder_ids: Optional[Set[int]] = None,
) -> str:
    """
    Apply the cleanup decision table for ``credential`` letting go of
    ``causa``:

        source=sync,     no other links  -> delete causa
        source=sync,     other links     -> unlink credential
        source!=sync,    any             -> unlink credential
    """
    if causa.source == SOURCE_SYNC and not other_links_exist(
        session, causa, credential, ignore_folder_ids
    ):
        delete_causa(session, causa, ignore_folder_ids)
        return CLEANUP_DELETED

    causa.linked_credentials.discard(credential)
    session.flush()
    logger.debug("Unlinked credential %s from causa %s.", credential.id, causa.key)
    return CLEANUP_UNLINKED


def sweep_orphans(session: Session, credential: Credential) -> List[int]:
    """
    Purge sync causas linked to ``credential`` that have no folder at all.

    Only reachable through the credential's linked set since there is no
    folder to start from. Returns the ids of deleted causas.
    """
    orphans = (
        session.query(Causa)
        .join(causa_credentials, causa_credentials.c.causa_id == Causa.id)
        .filter(
            causa_credentials.c.credential_id == credential.id,
            Causa.source == SOURCE_SYNC,
            ~Causa.folders.any(),
        )
        .all()
    )
    deleted: List[int] = []
    for causa in orphans:
        causa_id = causa.id
        if cleanup_causa(session, causa, credential) == CLEANUP_DELETED:
            deleted.append(causa_id)
    if deleted:
        logger.info("Swept %d orphan causa(s) for credential %s.", len(deleted), credential.id)
    return deleted


def reconcile_not_found(
    session: Session,
    credential: Credential,
    observed_keys: Set[CausaKey],
    *,
    complete: bool,
) -> NotFoundResult:
    """
    Flag sync folders whose case vanished from the portal and clear folders
    whose case reappeared.

    Only a complete scan may change the flag; a partial scan is a no-op.
    """
    if not complete:
        logger.info(
            "Skipping not-found reconciliation for credential %s: scan incomplete.",
            credential.id,
        )
        return NotFoundResult(applied=False)

    linked_ids = {
        cid
        for (cid,) in session.query(causa_credentials.c.causa_id).filter(
            causa_credentials.c.credential_id == credential.id
        )
    }
    folders = (
        session.query(Folder)
        .filter(Folder.user_id == credential.user_id, Folder.source == FOLDER_SOURCE_SYNC)
        .all()
    )
    now = utcnow()
    result = NotFoundResult(applied=True)
    for folder in folders:
        if folder.causa_id is not None and folder.causa_id not in linked_ids:
            continue
        key = folder.causa.key if folder.causa is not None else folder.key
        present = key in observed_keys
        if not present and not folder.pjn_not_found:
            folder.pjn_not_found = True
            folder.pjn_not_found_at = now
            result.flagged.append(folder.id)
        elif present and folder.pjn_not_found:
            folder.pjn_not_found = False
            folder.pjn_not_found_at = None
            result.cleared.append(folder.id)
    session.flush()
    if result.flagged or result.cleared:
        logger.info(
            "Credential %s not-found reconciliation: flagged=%s cleared=%s.",
            credential.id,
            result.flagged,
            result.cleared,
        )
    return result


__all__ = [
    "CLEANUP_DELETED",
    "CLEANUP_UNLINKED",
    "FOLDER_CREATED",
    "FOLDER_CREATED_DUPLICATE",
    "FOLDER_EXCLUDED",
    "FOLDER_EXISTING",
    "FOLDER_LINKED",
    "FolderResult",
    "NotFoundResult",
    "ReconciliationInvariantError",
    "add_exclusion",
    "cleanup_causa",
    "delete_causa",
    "ensure_folder",
    "find_causa",
    "load_exclusion_set",
    "other_links_exist",
    "reconcile_not_found",
    "reconcile_observed",
    "sweep_orphans",
    "upsert_causa",
]
