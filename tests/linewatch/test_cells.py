"""
Tests for linewatch.cells
"""
import pytest

import linewatch.cells as cells


def test_parse_number_native():
    assert cells.parse_number(105) == 105
    assert cells.parse_number(12.0) == 12
    assert isinstance(cells.parse_number(12.0), int)
    assert cells.parse_number(0.86) == 0.86
    assert cells.parse_number(True) == 1
    assert cells.parse_number(float('nan')) == 0
    assert cells.parse_number(None) == 0


@pytest.mark.parametrize("text, expect", [
    ('1,234', 1234),
    ('1.234,5', 1234.5),
    ('1,234.5', 1234.5),
    ('12,5', 12.5),
    ('85.5%', 85.5),
    (' 42 ', 42),
    ('-3', -3),
    ('#DIV/0!', 0),
    ('#N/A', 0),
    ('', 0),
    ('n/a', 0),
])
def test_parse_number_text(text, expect):
    assert cells.parse_number(text) == expect


def test_parse_percentage():
    assert cells.parse_percentage('85.5%') == 85.5
    assert cells.parse_percentage(0.86, ratio=True) == 86
    assert cells.parse_percentage('86%', ratio=True) == 86
    assert cells.parse_percentage('92', ratio=True) == 92
    assert cells.parse_percentage('#VALUE!', ratio=True) == 0


def test_percent_of():
    assert cells.percent_of(1, 3) == 33.33
    assert cells.percent_of(5, 0) == 0
    assert cells.percent_of(5, -2) == 0


def test_cell_helpers():
    assert cells.cell_str(None) == ''
    assert cells.cell_str('  TỔ 1 ') == 'TỔ 1'
    assert cells.cell([1, 2], 1) == 2
    assert cells.cell([1, 2], 5) is None


def test_fill_forward():
    rows = [
        ['TS1', 'LINE 1', 'a'],
        ['', '', 'b'],
        ['', 'LINE 2', 'c'],
        ['TS2', '', 'd'],
        [],
    ]
    expect = [
        ['TS1', 'LINE 1', 'a'],
        ['TS1', 'LINE 1', 'b'],
        ['TS1', 'LINE 2', 'c'],
        ['TS2', 'LINE 2', 'd'],
        ['TS2', 'LINE 2'],
    ]

    assert cells.fill_forward(rows, [0, 1]) == expect
    assert rows[1] == ['', '', 'b']


def test_fill_forward_leading_blanks():
    rows = [['', 'x'], ['A', 'y'], ['', 'z']]
    assert cells.fill_forward(rows, [0]) == [['', 'x'], ['A', 'y'], ['A', 'z']]


def test_factory_from_label():
    assert cells.factory_from_label('ts 1') == 'TS1'
    assert cells.factory_from_label('Nhà máy TS3') == 'TS3'
    assert cells.factory_from_label('XX') is None


def test_factory_from_code():
    assert cells.factory_from_code('KVHB07M01') == 'TS1'
    assert cells.factory_from_code('KVHB07M18') == 'TS2'
    assert cells.factory_from_code('kvhb07m30') == 'TS3'
    assert cells.factory_from_code('KVHB07CD20') == 'TS2'
    assert cells.factory_from_code('KVHB07M16') is None
    assert cells.factory_from_code('LKKH') is None


def test_line_code():
    assert cells.line_code('TS1', 'LINE 1') == 'KVHB07M01'
    assert cells.line_code('ts2', 'line 18') == 'KVHB07M18'
    assert cells.line_code('XX', 'LINE 3') is None
    assert cells.line_code('TS1', 'LINE') is None


def test_is_line_code():
    assert cells.is_line_code('KVHB07M01')
    assert not cells.is_line_code('LKKH')
    assert not cells.is_line_code('MÃ CHUYỀN')
    assert not cells.is_line_code('')


def test_in_slot_block():
    assert cells.in_slot_block(8, 30)
    assert cells.in_slot_block(9, 59)
    assert not cells.in_slot_block(10, 0)
    assert cells.in_slot_block(18, 15)
    assert not cells.in_slot_block(12, 15)
    assert not cells.in_slot_block(20, 30)


def test_time_slots():
    assert len(cells.TIME_SLOTS) == 11
    assert list(cells.SLOT_STARTS) == list(cells.TIME_SLOTS)
