from __future__ import annotations

import pytest

from pjn_sync.causa_keys import CausaKey


def test_parse_expediente_labels() -> None:
    assert CausaKey.parse("CIV 12345/2024") == CausaKey("CIV", 12345, 2024)
    assert CausaKey.parse(" com 7 / 2023 / 1 ") == CausaKey("COM", 7, 2023, "1")


def test_parse_rejects_garbage() -> None:
    with pytest.raises(ValueError):
        CausaKey.parse("12345/2024")


def test_label_round_trip() -> None:
    key = CausaKey.build("cnt", "42", "2022", None)
    assert key == CausaKey("CNT", 42, 2022, "")
    assert str(key) == "CNT 42/2022"
    assert CausaKey.parse(CausaKey("CIV", 1, 2020, "3").label()) == CausaKey("CIV", 1, 2020, "3")
