from cmon51dbg.disasm import PADDING_TEXT, base_index, disassemble, plan_window
from cmon51dbg.expect import ExpectEngine
from cmon51dbg.listing import AddressLineMap


TIMEOUT = 2.0
LINE_MAP = AddressLineMap(["8000", "8003", "8006"])
DEVICE_LISTING = {
    0x8000: "8000: 02 80 06    ljmp 8006",
    0x8003: "8003: 00          nop",
    0x8006: "8006: 80 FE       sjmp 8006",
    0x8007: "8007: FF          mov r7, a",
    0x8008: "8008: FF          mov r7, a",
}


class FakeMonitor:
    """Answers ``u`` commands from DEVICE_LISTING through an ExpectEngine."""

    def __init__(self):
        self.engine = ExpectEngine(timeout=TIMEOUT)
        self.engine.start()
        self.sent = []

    def send(self, command):
        self.sent.append(command)
        _, address, count = command.split()
        start = int(address, 16)
        rows = [DEVICE_LISTING[addr] for addr in sorted(DEVICE_LISTING) if addr >= start][: int(count, 16)]
        self.engine.feed(command + "\r\n" + "".join(row + "\r\n" for row in rows) + "> ")

    def close(self):
        self.engine.close()


def _disassemble(address, count, offset=0):
    monitor = FakeMonitor()
    try:
        return disassemble(monitor.send, monitor.engine, LINE_MAP, address, count, offset), monitor.sent
    finally:
        monitor.close()


def test_window_straddles_program_start():
    records, sent = _disassemble(0x8000, 4, -2)
    assert sent == ["u 8000 2"]
    assert [r.line for r in records] == [-1, -1, 0, 1]
    assert records[0].address == "-2"
    assert records[1].address == "-1 "
    assert records[0].instruction == records[1].instruction == PADDING_TEXT
    assert records[2].address == "8000"
    assert records[3].instruction == "00          nop"


def test_window_entirely_before_program():
    records, sent = _disassemble(0x8000, 2, -2)
    assert sent == []
    assert [r.address for r in records] == ["-2", "-1 "]


def test_negative_address_is_its_own_index():
    assert base_index(LINE_MAP, -5) == -5
    plan = plan_window(LINE_MAP, -3, 5)
    assert [r.address for r in plan.synthetic] == ["-3", "-2", "-1 "]
    assert plan.device_command == "u 8000 2"


def test_offset_shifts_window():
    shifted, _ = _disassemble(0x8000, 2, 1)
    assert [r.address for r in shifted] == ["8003", "8006"]
    assert [r.line for r in shifted] == [1, 2]


def test_offset_matches_overlapping_window():
    plain, _ = _disassemble(0x8000, 4, -1)
    later, _ = _disassemble(0x8000, 4, 0)
    assert [r.address for r in plain[1:]] == [r.address for r in later[:3]]


def test_address_past_program_is_extrapolated():
    assert base_index(LINE_MAP, 0x8008) == 2 + 2
    records, sent = _disassemble(0x8006, 3)
    assert sent == ["u 8006 3"]
    assert [r.line for r in records] == [2, -1, -1]


def test_address_between_instructions_uses_preceding():
    plan = plan_window(LINE_MAP, 0x8004, 1)
    assert plan.device_command == "u 8003 1"


def test_zero_count_sends_nothing():
    records, sent = _disassemble(0x8000, 0)
    assert records == []
    assert sent == []
