from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from .models import (
    FOLDER_SOURCE_SYNC,
    SOURCE_SYNC,
    SYNC_STATUS_IDLE,
    SYNC_STATUS_IN_PROGRESS,
    SYNC_STATUS_PENDING,
    Causa,
    Credential,
    Folder,
)
from .reconciler import (
    CLEANUP_DELETED,
    add_exclusion,
    cleanup_causa,
    delete_causa,
    sweep_orphans,
)

logger = logging.getLogger("pjn_sync.credentials")


class CredentialBusyError(RuntimeError):
    """
    The credential currently holds a sync lease.
    """


@dataclass
class UnlinkResult:
    credential_id: int
    folders_removed: List[int] = field(default_factory=list)
    causas_deleted: List[int] = field(default_factory=list)
    causas_unlinked: List[int] = field(default_factory=list)


@dataclass
class DeleteFolderResult:
    folder_id: int
    causa_id: Optional[int] = None
    causa_deleted: bool = False
    excluded_for: List[int] = field(default_factory=list)


def link_credential(session: Session, *, user_id: str, cuil: str) -> Tuple[Credential, bool]:
    """
    Create a credential for (user, cuil) or re-enable the existing one.

    Either way a full re-synchronization is requested.
    """
    credential = (
        session.query(Credential)
        .filter(Credential.user_id == user_id, Credential.cuil == cuil)
        .order_by(Credential.id.asc())
        .first()
    )
    created = credential is None
    if credential is None:
        credential = Credential(
            user_id=user_id,
            cuil=cuil,
            enabled=True,
            verified=False,
            is_valid=False,
            sync_status=SYNC_STATUS_PENDING,
            consecutive_errors=0,
            consecutive_auth_failures=0,
            expected_causas_count=0,
            processed_causas_count=0,
            folders_created_count=0,
        )
        session.add(credential)
    else:
        credential.enabled = True
        if credential.sync_status != SYNC_STATUS_IN_PROGRESS:
            credential.sync_status = SYNC_STATUS_PENDING
    session.flush()
    logger.info(
        "%s credential %s for user %s.",
        "Created" if created else "Re-enabled",
        credential.id,
        user_id,
    )
    return credential, created


def reset_credential(session: Session, credential_id: int) -> Credential:
    """
    Clear error counters and any stuck lease, and request a full re-sync.
    """
    credential = session.get(Credential, credential_id)
    if credential is None:
        raise LookupError(f"Credential {credential_id} not found")
    credential.sync_status = SYNC_STATUS_PENDING
    credential.consecutive_errors = 0
    credential.consecutive_auth_failures = 0
    credential.last_error_message = None
    credential.last_error_code = None
    credential.last_error_at = None
    session.flush()
    logger.info("Credential %s reset.", credential_id)
    return credential


def unlink_credential(session: Session, credential_id: int, *, force: bool = False) -> UnlinkResult:
    """
    Disable a credential and let go of every causa it observed.

    The user's sync-created folders for those causas are removed first; the
    cleanup decision table then decides per causa between delete and unlink.
    Credentials are never hard-deleted.
    """
    credential = session.get(Credential, credential_id)
    if credential is None:
        raise LookupError(f"Credential {credential_id} not found")
    if credential.sync_status == SYNC_STATUS_IN_PROGRESS and not force:
        raise CredentialBusyError(
            f"Credential {credential_id} is being synchronized; retry later or force"
        )

    result = UnlinkResult(credential_id=credential_id)
    credential.enabled = False
    credential.sync_status = SYNC_STATUS_IDLE

    causas: List[Causa] = sorted(credential.causas, key=lambda c: c.id)
    causa_ids = [c.id for c in causas]
    if causa_ids:
        folders = (
            session.query(Folder)
            .filter(
                Folder.user_id == credential.user_id,
                Folder.source == FOLDER_SOURCE_SYNC,
                Folder.causa_id.in_(causa_ids),
            )
            .all()
        )
        for folder in folders:
            result.folders_removed.append(folder.id)
            session.delete(folder)
        session.flush()

    for causa in causas:
        causa_id = causa.id
        session.expire(causa, ["folders"])
        if cleanup_causa(session, causa, credential) == CLEANUP_DELETED:
            result.causas_deleted.append(causa_id)
        else:
            result.causas_unlinked.append(causa_id)

    result.causas_deleted.extend(sweep_orphans(session, credential))
    logger.info(
        "Unlinked credential %s: %d folder(s) removed, %d causa(s) deleted, %d unlinked.",
        credential_id,
        len(result.folders_removed),
        len(result.causas_deleted),
        len(result.causas_unlinked),
    )
    return result


def delete_folder(session: Session, folder_id: int) -> DeleteFolderResult:
    """
    Delete a user's folder and record the exclusion for the user's
    credentials that observe the case, so sync does not recreate it.

    The causa itself goes through the cleanup decision table for each of
    those credentials.
    """
    folder = session.get(Folder, folder_id)
    if folder is None:
        raise LookupError(f"Folder {folder_id} not found")

    result = DeleteFolderResult(folder_id=folder_id, causa_id=folder.causa_id)
    causa = folder.causa
    user_id = folder.user_id

    session.delete(folder)
    session.flush()
    if causa is None:
        return result
    session.expire(causa, ["folders"])

    owners = sorted(
        (cred for cred in causa.linked_credentials if cred.user_id == user_id),
        key=lambda cred: cred.id,
    )
    for credential in owners:
        add_exclusion(session, credential, causa)
        result.excluded_for.append(credential.id)

    for credential in owners:
        if cleanup_causa(session, causa, credential) == CLEANUP_DELETED:
            result.causa_deleted = True
            break

    if not result.causa_deleted and not owners and causa.source == SOURCE_SYNC:
        # A sync causa with no credentials and no folders left is garbage.
        if not causa.linked_credentials and not causa.folders:
            delete_causa(session, causa)
            result.causa_deleted = True

    logger.info(
        "Deleted folder %s (causa %s deleted=%s, excluded for credentials %s).",
        folder_id,
        result.causa_id,
        result.causa_deleted,
        result.excluded_for,
    )
    return result


__all__ = [
    "CredentialBusyError",
    "DeleteFolderResult",
    "UnlinkResult",
    "delete_folder",
    "link_credential",
    "reset_credential",
    "unlink_credential",
]
