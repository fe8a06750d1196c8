from __future__ import annotations

import errno as errno_module
import socket
from typing import Iterator

from .portal import (
    CausaNotFoundError,
    JurisdictionUnavailableError,
    PortalAuthError,
    PortalTimeoutError,
)

NETWORK_TRANSIENT_ERRNOS: frozenset[int] = frozenset(
    {
        errno_module.ETIMEDOUT,
        errno_module.ECONNRESET,
        errno_module.ECONNABORTED,
        errno_module.ECONNREFUSED,
        errno_module.ENETUNREACH,
        errno_module.EHOSTUNREACH,
        errno_module.ENETDOWN,
        errno_module.EPIPE,
    }
)

# Error codes recorded on runs and credentials.
ERROR_CODE_AUTH = "AUTH_FAILED"
ERROR_CODE_TRANSIENT = "PORTAL_TRANSIENT"
ERROR_CODE_JURISDICTION = "JURISDICTION_UNAVAILABLE"
ERROR_CODE_NOT_FOUND = "CAUSA_NOT_FOUND"
ERROR_CODE_UNEXPECTED = "UNEXPECTED"
ERROR_CODE_RESUME_EXHAUSTED = "RESUME_EXHAUSTED"
ERROR_CODE_INTERRUPTED = "INTERRUPTED"


def iter_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """
    Yield an exception and its causal/context chain (best-effort).

    Useful when a portal error is wrapped by a higher-level exception.
    """
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None:
        cur_id = id(cur)
        if cur_id in seen:
            break
        seen.add(cur_id)
        yield cur
        cur = cur.__cause__ or cur.__context__


def is_network_errno(errno: int | None) -> bool:
    if errno is None:
        return False
    try:
        return int(errno) in NETWORK_TRANSIENT_ERRNOS
    except (TypeError, ValueError):
        return False


def is_transient_portal_error(exc: BaseException) -> bool:
    """
    Return True if the failure is worth retrying later (timeouts, outages,
    dropped connections). Auth failures and missing cases are not transient.
    """
    for item in iter_exception_chain(exc):
        if isinstance(item, (PortalAuthError, CausaNotFoundError)):
            return False
        if isinstance(item, (PortalTimeoutError, JurisdictionUnavailableError)):
            return True
        if isinstance(item, (TimeoutError, socket.timeout, ConnectionError)):
            return True
        if isinstance(item, OSError) and is_network_errno(item.errno):
            return True
    return False


def find_in_chain(exc: BaseException, exc_type: type) -> BaseException | None:
    for item in iter_exception_chain(exc):
        if isinstance(item, exc_type):
            return item
    return None


def classify_error_code(exc: BaseException) -> str:
    if find_in_chain(exc, PortalAuthError) is not None:
        return ERROR_CODE_AUTH
    if find_in_chain(exc, JurisdictionUnavailableError) is not None:
        return ERROR_CODE_JURISDICTION
    if find_in_chain(exc, CausaNotFoundError) is not None:
        return ERROR_CODE_NOT_FOUND
    if is_transient_portal_error(exc):
        return ERROR_CODE_TRANSIENT
    return ERROR_CODE_UNEXPECTED
