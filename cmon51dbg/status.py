"""Register dump parsing."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Dict, Optional

from .expect import ExpectEngine
from .listing import AddressLineMap


REGISTER_LINE = re.compile(
    r"A =(?P<a>[0-9A-F]*)  B =(?P<b>[0-9A-F]*)  SP=(?P<sp>[0-9A-F]*)  IE=(?P<ie>[0-9A-F]*)"
    r"  DPH=(?P<dph>[0-9A-F]*) DPL=(?P<dpl>[0-9A-F]*) PSW=(?P<psw>[0-9A-F]*) PC=(?P<pc>[0-9A-F]*)"
)
BANK_LINE = re.compile(
    r"R0=(?P<r0>[0-9A-F]*)  R1=(?P<r1>[0-9A-F]*)  R2=(?P<r2>[0-9A-F]*)  R3=(?P<r3>[0-9A-F]*)"
    r"  R4=(?P<r4>[0-9A-F]*)  R5=(?P<r5>[0-9A-F]*)  R6=(?P<r6>[0-9A-F]*)  R7=(?P<r7>[0-9A-F]*)"
    r"  BANK=(?P<bank>[0-9A-F]*)"
)

# Display label for every register field, in dump order.
REGISTER_NAMES: Dict[str, str] = {
    "a": "A",
    "b": "B",
    "sp": "SP",
    "ie": "IE",
    "dph": "DPH",
    "dpl": "DPL",
    "psw": "PSW",
    "pc": "PC",
    "r0": "R0",
    "r1": "R1",
    "r2": "R2",
    "r3": "R3",
    "r4": "R4",
    "r5": "R5",
    "r6": "R6",
    "r7": "R7",
    "bank": "BANK",
}


@dataclass
class RegisterSnapshot:
    """Register values as printed by the monitor, plus the mapped source line."""

    a: str
    b: str
    sp: str
    ie: str
    dph: str
    dpl: str
    psw: str
    pc: str
    r0: str
    r1: str
    r2: str
    r3: str
    r4: str
    r5: str
    r6: str
    r7: str
    bank: str
    line: int = -1

    def as_dict(self) -> Dict[str, str]:
        values = asdict(self)
        values.pop("line")
        return values

    def value_of(self, name: str) -> str:
        key = name.lower()
        if key not in REGISTER_NAMES:
            raise KeyError(name)
        return getattr(self, key)


def await_status(
    engine: ExpectEngine,
    line_map: Optional[AddressLineMap] = None,
    *,
    timeout: Optional[float] = None,
) -> RegisterSnapshot:
    """Consume one register dump and the prompt that follows it."""
    registers, bank, _ = engine.await_sequence([REGISTER_LINE, BANK_LINE, engine.matcher.prompt], timeout=timeout)
    values = dict(registers.groupdict())
    values.update(bank.groupdict())
    # A padded address can repeat over several lines; report the last one.
    line = line_map.last_line_of(values["pc"]) if line_map is not None and values["pc"] else -1
    return RegisterSnapshot(line=line, **values)
