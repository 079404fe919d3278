import pytest

from tiospatch.errors import PatternNotFoundError, StreamExhaustedError
from tiospatch.image import AddressSpace, ByteCursor
from tiospatch.scanner import SignatureScanner

START = 0x212000


def make_scanner(size=0x200):
    cur = ByteCursor(bytearray(size), AddressSpace(0x200000, 0))
    return cur, SignatureScanner(cur)


def test_forward_u16_returns_address_after_match():
    cur, scan = make_scanner()
    cur.put_u16(0x4E68, START + 0x20)
    cur.seek(START)
    assert scan.find_u16(0x4E68) == START + 0x22
    assert cur.tell() == START + 0x22


def test_forward_u16_steps_on_word_boundaries():
    cur, scan = make_scanner()
    cur.put_u16(0x4E68, START + 0x11)    # odd address: never a candidate
    cur.put_u16(0x4E68, START + 0x30)
    cur.seek(START)
    assert scan.find_u16(0x4E68) == START + 0x32


def test_forward_u32_overlaps_candidates_by_a_word():
    cur, scan = make_scanner()
    cur.put_u32(0x00700012, START + 0x16)
    cur.seek(START)
    assert scan.find_u32(0x700012) == START + 0x1A


def test_forward_u8_checks_every_byte():
    cur, scan = make_scanner()
    cur.put_u8(0x74, START + 0x13)
    cur.seek(START)
    assert scan.find_u8(0x74) == START + 0x14


def test_successive_searches_continue_from_last_match():
    cur, scan = make_scanner()
    for off in (0x10, 0x20, 0x30):
        cur.put_u16(0xA244, START + off)
    cur.seek(START)
    hits = [scan.find_u16(0xA244) for _ in range(3)]
    assert hits == [START + 0x12, START + 0x22, START + 0x32]


def test_forward_search_is_capped_by_end_of_image():
    cur, scan = make_scanner()
    cur.seek(START)
    with pytest.raises(StreamExhaustedError):
        scan.find_u32(0xC6FC0006)


def test_forward_search_is_capped_by_limit():
    cur, scan = make_scanner()
    cur.put_u16(0x4E73, START + 0x100)
    cur.seek(START)
    with pytest.raises(StreamExhaustedError, match="within 0x40 bytes"):
        scan.find_u16(0x4E73, limit=0x40)
    cur.seek(START)
    assert scan.find_u16(0x4E73, limit=0x100) == START + 0x102


def test_stream_exhausted_is_a_pattern_miss():
    assert issubclass(StreamExhaustedError, PatternNotFoundError)


def test_backward_u16_returns_match_address():
    cur, scan = make_scanner()
    cur.put_u16(0x48E7, START + 0x40)
    cur.seek(START + 0x80)
    assert scan.rfind_u16(0x48E7) == START + 0x40
    # cursor is left just past the matched value
    assert cur.tell() == START + 0x42


def test_backward_u32_walks_by_words():
    cur, scan = make_scanner()
    cur.put_u32(0xDEADBEEF, START + 0x42)
    cur.seek(START + 0x80)
    assert scan.rfind_u32(0xDEADBEEF) == START + 0x42


def test_backward_u8():
    cur, scan = make_scanner()
    cur.put_u8(0x5A, START + 0x41)
    cur.seek(START + 0x80)
    assert scan.rfind_u8(0x5A) == START + 0x41


def test_backward_search_matches_at_start_position():
    cur, scan = make_scanner()
    cur.put_u16(0x48E7, START + 0x80)
    cur.seek(START + 0x80)
    assert scan.rfind_u16(0x48E7) == START + 0x80


def test_backward_search_is_capped_by_start_of_image():
    cur, scan = make_scanner()
    cur.seek(START + 0x80)
    with pytest.raises(StreamExhaustedError):
        scan.rfind_u16(0x48E7)


def test_backward_search_is_capped_by_limit():
    cur, scan = make_scanner()
    cur.put_u16(0x48E7, START + 0x10)
    cur.seek(START + 0x80)
    with pytest.raises(StreamExhaustedError):
        scan.rfind_u16(0x48E7, limit=0x20)


def test_values_are_masked_to_width():
    cur, scan = make_scanner()
    cur.put_u16(0x4E75, START + 0x10)
    cur.seek(START)
    assert scan.find_u16(0x14E75) == START + 0x12


def test_unsupported_width():
    _, scan = make_scanner()
    with pytest.raises(ValueError):
        scan.scan_forward(0, 3)
