import pytest

from cmon51dbg.listing import AddressLineMap, ListingError, listing_path_for, parse_listing, read_listing


LISTING = """\
0000              1   ; include file
0000              2   CLK EQU 22118400
0000              1   $MODLP51
0000              2   org 0000H
0000 020003       3       ljmp main
0003              4   main:
0003 758107       5       mov SP, #7FH
0006 80FE         6       sjmp $
0008              7   END
"""


def test_parse_listing_keeps_last_run():
    assert parse_listing(LISTING) == ["0000", "0000", "0000", "0003", "0003", "0006", "0008"]


def test_parse_listing_pads_leading_lines():
    text = "8000 020003       3       ljmp main\n8003 00          4       nop\n"
    addresses = parse_listing(text)
    assert addresses == ["0000", "0000", "8000", "8003"]
    assert addresses[3] == "8003"


def test_parse_listing_without_entries():
    assert parse_listing("no listing here\n") == []


def test_read_listing_uses_lst_next_to_source(tmp_path):
    source = tmp_path / "blinky.asm"
    source.write_text("; source\n")
    (tmp_path / "blinky.lst").write_text(LISTING)
    line_map = read_listing(source)
    assert len(line_map) == 7
    assert listing_path_for(source) == tmp_path / "blinky.lst"


def test_read_listing_rejects_empty(tmp_path):
    source = tmp_path / "empty.asm"
    (tmp_path / "empty.lst").write_text("nothing\n")
    with pytest.raises(ListingError):
        read_listing(source)


def test_read_listing_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_listing(tmp_path / "missing.asm")


def test_last_line_of_returns_highest_line():
    line_map = AddressLineMap(["0000", "0000", "0000", "0003", "0003", "0006"])
    assert line_map.last_line_of("0000") == 2
    assert line_map.last_line_of("0003") == 4
    assert line_map.last_line_of(0x6) == 5
    assert line_map.last_line_of("0004") == -1
    assert line_map.last_line_of("zz") == -1


def test_address_for_line_clamps_past_end():
    line_map = AddressLineMap(["0000", "0002", "0004"])
    assert line_map.address_for_line(1) == "0002"
    assert line_map.address_for_line(10) == "0004"
    with pytest.raises(IndexError):
        line_map.address_for_line(-1)


def test_instruction_view_is_deduplicated():
    line_map = AddressLineMap(["0000", "0000", "8000", "8003", "8003", "8006"])
    assert line_map.instruction_addresses == [0x0000, 0x8000, 0x8003, 0x8006]
    assert line_map.last_address == 0x8006
    assert line_map.last_index == 3
    assert line_map.instruction_index(0x8003) == 2
    assert line_map.instruction_address(1) == 0x8000


def test_instruction_index_floors_between_instructions():
    line_map = AddressLineMap(["8000", "8003", "8006"])
    assert line_map.instruction_index(0x8004) == 1
    assert line_map.instruction_index(0x7000) == 0


def test_empty_map_is_rejected():
    with pytest.raises(ListingError):
        AddressLineMap([])
