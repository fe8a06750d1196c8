from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, List, Optional, Protocol

from .causa_keys import CausaKey
from .config import get_portal_client_spec

"""
pjn_sync.portal - Contract with the external case portal

The browser automation that talks to the portal lives outside this package.
Workers only see the small protocol below: log in with a credential, page
through the case listing, fetch a case's movements, close the session.
"""

logger = logging.getLogger("pjn_sync.portal")


class PortalError(Exception):
    """
    Base class for failures reported by the portal collaborator.
    """


class PortalAuthError(PortalError):
    """
    The portal rejected the credential (bad password, locked account, captcha).
    """


class PortalTimeoutError(PortalError):
    pass


class JurisdictionUnavailableError(PortalError):
    """
    A whole jurisdiction (fuero) is not answering. Distinct from a missing case.
    """

    def __init__(self, fuero: str, message: Optional[str] = None) -> None:
        self.fuero = str(fuero).upper()
        super().__init__(message or f"Jurisdiction {self.fuero} is unavailable")


class CausaNotFoundError(PortalError):
    def __init__(self, key: CausaKey, message: Optional[str] = None) -> None:
        self.key = key
        super().__init__(message or f"Causa {key} not found on portal")


@dataclass(frozen=True)
class PortalMovement:
    fecha: Optional[date]
    tipo: str = ""
    detalle: str = ""
    url: Optional[str] = None


@dataclass(frozen=True)
class PortalCausa:
    """
    One row of the portal's case listing.
    """

    key: CausaKey
    caratula: str = ""
    juzgado: Optional[str] = None
    is_private: bool = False


@dataclass
class ListingPage:
    page: int
    total_pages: int
    total_causas: int
    causas: List[PortalCausa] = field(default_factory=list)


@dataclass(frozen=True)
class PortalCredential:
    """
    What the portal client needs to log in; decoupled from the ORM row.
    """

    credential_id: int
    user_id: str
    cuil: str


class PortalSession(Protocol):
    def fetch_listing_page(self, page: int) -> ListingPage: ...

    def fetch_movements(self, key: CausaKey) -> List[PortalMovement]: ...

    def close(self) -> None: ...


class PortalClient(Protocol):
    def login(self, credential: PortalCredential) -> PortalSession: ...


class PortalClientNotConfigured(RuntimeError):
    pass


def _resolve_factory(spec: str) -> Callable[[], Any]:
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise PortalClientNotConfigured(
            f"PJN_SYNC_PORTAL_CLIENT must look like 'package.module:factory', got {spec!r}"
        )
    module = importlib.import_module(module_name)
    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise PortalClientNotConfigured(f"{spec!r} does not name a callable")
    return target


def load_portal_client(spec: Optional[str] = None) -> PortalClient:
    """
    Instantiate the portal client named by ``spec`` or PJN_SYNC_PORTAL_CLIENT.
    """
    spec = spec or get_portal_client_spec()
    if not spec:
        raise PortalClientNotConfigured(
            "No portal client configured; set PJN_SYNC_PORTAL_CLIENT=module:factory"
        )
    factory = _resolve_factory(spec)
    client = factory()
    logger.info("Loaded portal client from %s (%s).", spec, type(client).__name__)
    return client


def iter_listing(session: PortalSession):
    """
    Yield listing pages in page order, starting at page 1.

    Stops after ``total_pages`` as reported by the first page.
    """
    first = session.fetch_listing_page(1)
    yield first
    for page in range(2, max(first.total_pages, 1) + 1):
        yield session.fetch_listing_page(page)


__all__ = [
    "CausaNotFoundError",
    "JurisdictionUnavailableError",
    "ListingPage",
    "PortalAuthError",
    "PortalCausa",
    "PortalClient",
    "PortalClientNotConfigured",
    "PortalCredential",
    "PortalError",
    "PortalMovement",
    "PortalSession",
    "PortalTimeoutError",
    "iter_listing",
    "load_portal_client",
]
