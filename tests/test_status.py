import pytest

from cmon51dbg.expect import ExpectEngine
from cmon51dbg.listing import AddressLineMap
from cmon51dbg.status import REGISTER_NAMES, RegisterSnapshot, await_status

from monitor_stubs import status_dump


TIMEOUT = 2.0


def _parse(text, line_map=None):
    engine = ExpectEngine(timeout=TIMEOUT)
    engine.start()
    try:
        engine.feed(text)
        return await_status(engine, line_map)
    finally:
        engine.close()


def test_status_captures_every_register():
    snapshot = _parse("r\r\n" + status_dump(pc="8003", a="5A", bank="1"))
    assert snapshot.a == "5A"
    assert snapshot.b == "00"
    assert snapshot.sp == "07"
    assert snapshot.pc == "8003"
    assert [getattr(snapshot, "r%d" % index) for index in range(8)] == ["00", "01", "02", "03", "04", "05", "06", "07"]
    assert snapshot.bank == "1"
    assert set(snapshot.as_dict()) == set(REGISTER_NAMES)
    assert snapshot.line == -1


def test_status_maps_pc_to_last_line():
    line_map = AddressLineMap(["0000", "8000", "8003", "8003", "8006"])
    snapshot = _parse(status_dump(pc="8003"), line_map)
    assert snapshot.line == 3


def test_status_pc_outside_program():
    line_map = AddressLineMap(["8000", "8003"])
    assert _parse(status_dump(pc="9000"), line_map).line == -1


def test_status_skips_unrelated_lines():
    snapshot = _parse("g\r\nBreakpoint hit\r\n" + status_dump(pc="8006"))
    assert snapshot.pc == "8006"


def test_value_of_is_case_insensitive():
    values = {name: "00" for name in REGISTER_NAMES}
    values["dpl"] = "34"
    snapshot = RegisterSnapshot(**values)
    assert snapshot.value_of("DPL") == "34"
    with pytest.raises(KeyError):
        snapshot.value_of("R8")


def test_every_field_round_trips():
    registers = {
        "a": "01", "b": "02", "sp": "03", "ie": "04", "dph": "05", "dpl": "06", "psw": "07", "pc": "0002",
        "r0": "10", "r1": "11", "r2": "12", "r3": "13", "r4": "14", "r5": "15", "r6": "16", "r7": "17",
        "bank": "2",
    }
    line_map = AddressLineMap(["0000", "0001", "0002"])
    snapshot = _parse(status_dump(**registers), line_map)
    assert snapshot.as_dict() == registers
    assert snapshot.line == 2
