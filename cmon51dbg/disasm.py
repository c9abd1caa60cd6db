"""
Disassembly windows over the program's instruction stream.

Clients page through disassembly by instruction index rather than by byte
address.  Index 0 is the first listed instruction; indices below zero are
padded with synthetic NOPs so a client can scroll "before" the program,
and indices past the last listed instruction are extrapolated one byte
per index.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .expect import ExpectEngine
from .listing import AddressLineMap


logger = logging.getLogger(__name__)

DISASSEMBLY_LINE = re.compile(r"(?P<address>[0-9A-F]+): *(?P<instruction>[^\r]+)")
PADDING_TEXT = "00        nop"
# Index -1 needs a label that does not read as a real address.
BEFORE_ZERO_LABEL = "-1 "


@dataclass
class Instruction:
    address: str
    instruction: str
    line: int


@dataclass
class DisassemblyPlan:
    start_index: int
    count: int
    synthetic: List[Instruction] = field(default_factory=list)
    device_address: Optional[int] = None
    device_count: int = 0

    @property
    def device_command(self) -> Optional[str]:
        if self.device_address is None:
            return None
        return f"u {self.device_address:x} {self.device_count:x}"


def _padding(index: int) -> Instruction:
    label = BEFORE_ZERO_LABEL if index == -1 else format(index, "x")
    return Instruction(address=label, instruction=PADDING_TEXT, line=-1)


def base_index(line_map: AddressLineMap, address: int) -> int:
    if address < 0:
        return address
    if address > line_map.last_address:
        return line_map.last_index + (address - line_map.last_address)
    return line_map.instruction_index(address)


def index_address(line_map: AddressLineMap, index: int) -> int:
    """Inverse of base_index for non-negative indices."""
    if index > line_map.last_index:
        return line_map.last_address + (index - line_map.last_index)
    return line_map.instruction_address(index)


def plan_window(line_map: AddressLineMap, address: int, count: int, offset: int = 0) -> DisassemblyPlan:
    start = base_index(line_map, address) + offset
    plan = DisassemblyPlan(start_index=start, count=max(count, 0))
    if count <= 0:
        return plan
    end = start + count
    plan.synthetic = [_padding(index) for index in range(start, min(end, 0))]
    if end > 0:
        device_start = max(start, 0)
        plan.device_address = index_address(line_map, device_start)
        plan.device_count = end - device_start
    return plan


def disassemble(
    send: Callable[[str], None],
    engine: ExpectEngine,
    line_map: AddressLineMap,
    address: int,
    count: int,
    offset: int = 0,
    *,
    timeout: Optional[float] = None,
) -> List[Instruction]:
    plan = plan_window(line_map, address, count, offset)
    results = list(plan.synthetic)
    command = plan.device_command
    if command is None:
        return results
    logger.debug("disassembly window %d+%d -> %s", plan.start_index, plan.count, command)
    send(command)
    for match in engine.await_until_prompt(DISASSEMBLY_LINE, timeout=timeout):
        device_address = match.group("address")
        line = line_map.last_line_of(device_address) if int(device_address, 16) <= line_map.last_address else -1
        results.append(Instruction(address=device_address, instruction=match.group("instruction"), line=line))
    return results
