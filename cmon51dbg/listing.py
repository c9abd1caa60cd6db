"""Source line to program memory mapping built from assembler listings."""

from __future__ import annotations

import bisect
import re
from pathlib import Path
from typing import Dict, Iterable, List, Union


AddressLike = Union[str, int]

# Address, optional object bytes, then the source line number.
LISTING_ENTRY = re.compile(r"(?P<address>[0-9A-F]{4}) (?:[0-9A-F]*)? *(?P<line>\d+)")
PAD_ADDRESS = "0000"


class ListingError(ValueError):
    """Raised when a listing file does not map any source line."""


def _to_int(address: AddressLike) -> int:
    if isinstance(address, int):
        return address
    return int(address.strip(), 16)


class AddressLineMap:
    """
    Memory addresses indexed by 0-based source line.

    Lines after the program's END directive are not represented; lookups
    past the end clamp to the final entry.
    """

    def __init__(self, addresses: Iterable[str]) -> None:
        self.addresses: List[str] = list(addresses)
        if not self.addresses:
            raise ListingError("address map is empty")
        self._values = [_to_int(address) for address in self.addresses]
        self._last_line: Dict[int, int] = {}
        for line, value in enumerate(self._values):
            self._last_line[value] = line
        self._instructions: List[int] = list(dict.fromkeys(self._values))
        self._instruction_index = {value: index for index, value in enumerate(self._instructions)}
        self._sorted = sorted(self._instructions)

    def __len__(self) -> int:
        return len(self.addresses)

    def __repr__(self) -> str:
        return f"AddressLineMap({len(self.addresses)} lines, {len(self._instructions)} instructions)"

    def address_for_line(self, line: int) -> str:
        if line < 0:
            raise IndexError(f"negative source line {line}")
        if line >= len(self.addresses):
            return self.addresses[-1]
        return self.addresses[line]

    def last_line_of(self, address: AddressLike) -> int:
        """Highest source line assembled at *address*, or -1."""
        try:
            value = _to_int(address)
        except ValueError:
            return -1
        return self._last_line.get(value, -1)

    # Instruction view ---------------------------------------------------
    @property
    def instruction_addresses(self) -> List[int]:
        return list(self._instructions)

    @property
    def last_address(self) -> int:
        return self._instructions[-1]

    @property
    def last_index(self) -> int:
        return len(self._instructions) - 1

    def instruction_index(self, address: int) -> int:
        """Ordinal of the instruction at (or just before) *address*."""
        index = self._instruction_index.get(address)
        if index is not None:
            return index
        pos = bisect.bisect_right(self._sorted, address) - 1
        if pos < 0:
            return 0
        return self._instruction_index[self._sorted[pos]]

    def instruction_address(self, index: int) -> int:
        return self._instructions[index]

    @classmethod
    def from_listing(cls, source_path: Union[str, Path]) -> "AddressLineMap":
        return read_listing(source_path)


def listing_path_for(source_path: Union[str, Path]) -> Path:
    return Path(source_path).with_suffix(".lst")


def parse_listing(text: str) -> List[str]:
    """
    Extract the address of every source line from listing text.

    Include files produce their own runs of line numbers earlier in the
    listing, so only the last run of consecutive line numbers is kept.
    """
    addresses: List[str] = []
    last_line = -1
    for row in reversed(text.splitlines()):
        match = LISTING_ENTRY.search(row)
        if match is None:
            continue
        line = int(match.group("line"))
        if last_line != -1 and line != last_line - 1:
            break
        addresses.append(match.group("address"))
        last_line = line
    addresses.reverse()
    # Listing lines are 1-based; pad so list index == 0-based source line.
    if last_line > 1:
        addresses[:0] = [PAD_ADDRESS] * (last_line - 1)
    return addresses


def read_listing(source_path: Union[str, Path]) -> AddressLineMap:
    path = listing_path_for(source_path)
    text = path.read_text(encoding="utf-8", errors="replace")
    addresses = parse_listing(text)
    if not addresses:
        raise ListingError(f"{path}: no source lines mapped to addresses")
    return AddressLineMap(addresses)
