from __future__ import annotations

import re
from typing import NamedTuple

# Jurisdictions (fueros) served by the portal, keyed by the code used in
# expediente numbers such as "CIV 12345/2024".
KNOWN_FUEROS = frozenset(
    {
        "CIV",
        "COM",
        "CNT",
        "CSS",
        "CAF",
        "CCF",
        "CPE",
        "CFP",
        "CCC",
        "FSM",
        "FMP",
        "FRE",
        "FCR",
        "FCB",
        "FGR",
        "FLP",
        "FPO",
        "FRO",
        "FSA",
        "FTU",
        "FPA",
        "FBB",
        "CSJ",
    }
)

_EXPEDIENTE_RE = re.compile(
    r"^\s*(?P<fuero>[A-Za-z]{2,4})\s+(?P<number>\d+)\s*/\s*(?P<year>\d{4})"
    r"(?:\s*/\s*(?P<incidente>[0-9A-Za-z]+))?\s*$"
)


class CausaKey(NamedTuple):
    """
    Natural key of a judicial case: (fuero, number, year[, incidente]).

    Hashable, so sets of keys give O(1) membership tests for exclusion and
    not-found reconciliation.
    """

    fuero: str
    number: int
    year: int
    incidente: str = ""

    @classmethod
    def build(cls, fuero: str, number: int | str, year: int | str, incidente: str | None = None):
        return cls(
            fuero=str(fuero).strip().upper(),
            number=int(number),
            year=int(year),
            incidente=(str(incidente).strip() if incidente else ""),
        )

    @classmethod
    def parse(cls, raw: str) -> "CausaKey":
        """
        Parse an expediente label such as ``"CIV 12345/2024"`` or
        ``"CIV 12345/2024/1"``.
        """
        match = _EXPEDIENTE_RE.match(raw or "")
        if match is None:
            raise ValueError(f"Unrecognised expediente label: {raw!r}")
        return cls.build(
            match.group("fuero"),
            match.group("number"),
            match.group("year"),
            match.group("incidente"),
        )

    def label(self) -> str:
        base = f"{self.fuero} {self.number}/{self.year}"
        return f"{base}/{self.incidente}" if self.incidente else base

    def __str__(self) -> str:
        return self.label()


__all__ = ["CausaKey", "KNOWN_FUEROS"]
