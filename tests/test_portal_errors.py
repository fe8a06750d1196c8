from __future__ import annotations

import errno

import pytest

from pjn_sync.causa_keys import CausaKey
from pjn_sync.portal import (
    CausaNotFoundError,
    JurisdictionUnavailableError,
    ListingPage,
    PortalAuthError,
    PortalClientNotConfigured,
    PortalTimeoutError,
    iter_listing,
    load_portal_client,
)
from pjn_sync.portal_errors import (
    ERROR_CODE_AUTH,
    ERROR_CODE_JURISDICTION,
    ERROR_CODE_NOT_FOUND,
    ERROR_CODE_TRANSIENT,
    ERROR_CODE_UNEXPECTED,
    classify_error_code,
    is_transient_portal_error,
    iter_exception_chain,
)


def _wrapped(inner: BaseException) -> RuntimeError:
    try:
        try:
            raise inner
        except BaseException as exc:
            raise RuntimeError("browser step failed") from exc
    except RuntimeError as outer:
        return outer


def test_iter_exception_chain_follows_cause() -> None:
    exc = _wrapped(PortalTimeoutError("slow"))
    chain = list(iter_exception_chain(exc))
    assert [type(e) for e in chain] == [RuntimeError, PortalTimeoutError]


@pytest.mark.parametrize(
    "exc, transient",
    [
        (PortalTimeoutError("slow"), True),
        (JurisdictionUnavailableError("civ"), True),
        (TimeoutError(), True),
        (ConnectionResetError(), True),
        (OSError(errno.EHOSTUNREACH, "no route"), True),
        (OSError(errno.ENOENT, "missing"), False),
        (PortalAuthError("bad password"), False),
        (CausaNotFoundError(CausaKey("CIV", 1, 2024)), False),
        (ValueError("parse"), False),
    ],
)
def test_is_transient_portal_error(exc, transient) -> None:
    assert is_transient_portal_error(exc) is transient
    assert is_transient_portal_error(_wrapped(exc)) is transient


def test_classify_error_code() -> None:
    assert classify_error_code(_wrapped(PortalAuthError("x"))) == ERROR_CODE_AUTH
    assert classify_error_code(JurisdictionUnavailableError("COM")) == ERROR_CODE_JURISDICTION
    assert classify_error_code(CausaNotFoundError(CausaKey("CIV", 1, 2024))) == ERROR_CODE_NOT_FOUND
    assert classify_error_code(PortalTimeoutError("x")) == ERROR_CODE_TRANSIENT
    assert classify_error_code(KeyError("x")) == ERROR_CODE_UNEXPECTED


def test_jurisdiction_error_normalizes_fuero() -> None:
    assert JurisdictionUnavailableError("civ").fuero == "CIV"


def test_load_portal_client_requires_configuration(monkeypatch) -> None:
    with pytest.raises(PortalClientNotConfigured):
        load_portal_client()
    with pytest.raises(PortalClientNotConfigured):
        load_portal_client("no-colon-here")


def test_load_portal_client_from_spec(monkeypatch) -> None:
    monkeypatch.setenv("PJN_SYNC_PORTAL_CLIENT", "collections:OrderedDict")
    client = load_portal_client()
    assert type(client).__name__ == "OrderedDict"


def test_iter_listing_walks_reported_pages() -> None:
    class _Session:
        def __init__(self) -> None:
            self.requested: list[int] = []

        def fetch_listing_page(self, page: int) -> ListingPage:
            self.requested.append(page)
            return ListingPage(page=page, total_pages=3, total_causas=0)

    session = _Session()
    pages = [p.page for p in iter_listing(session)]
    assert pages == [1, 2, 3]
    assert session.requested == [1, 2, 3]
