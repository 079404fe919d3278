"""
scanner.py — Forward/backward literal-value search over the image cursor.

The stages locate code whose exact address varies between AMS builds by
searching for a known 8/16/32-bit encoding.  The step sizes are part of the
contract: later patch offsets are computed relative to where a match lands,
so a 32-bit search walks in 16-bit steps (68000 code is word aligned but a
long constant may start on any word), and a forward hit reports the address
just past the value while a backward hit reports the value itself.
"""

from .errors import StreamExhaustedError

# width -> distance between two candidate positions
STRIDE = {1: 1, 2: 2, 4: 2}
_MASK = {1: 0xFF, 2: 0xFFFF, 4: 0xFFFFFFFF}


class SignatureScanner:

    def __init__(self, cursor):
        self.cursor = cursor

    def _read(self, width):
        if width == 1:
            return self.cursor.read_u8()
        if width == 2:
            return self.cursor.read_u16()
        return self.cursor.read_u32()

    def scan_forward(self, value, width, limit=None):
        """Search from the cursor; return the address after the first match.

        On a miss the cursor backs up by `width - stride` so that the next
        read overlaps the previous one.  The scan stops with
        StreamExhaustedError at end of image, or once it has travelled
        more than `limit` bytes.
        """
        if width not in STRIDE:
            raise ValueError(f"unsupported search width {width}")
        value &= _MASK[width]
        cur = self.cursor
        start = cur.tell_offset()
        size = len(cur)
        while True:
            pos = cur.tell_offset()
            if limit is not None and pos - start > limit:
                raise StreamExhaustedError(
                    f"0x{value:0{width * 2}X} not found within 0x{limit:X} bytes "
                    f"after 0x{cur.space.to_address(start):06X}")
            if pos + width > size:
                raise StreamExhaustedError(
                    f"0x{value:0{width * 2}X} not found between "
                    f"0x{cur.space.to_address(start):06X} and end of image")
            if self._read(width) == value:
                return cur.tell()
            cur.skip(STRIDE[width] - width)

    def scan_backward(self, value, width, limit=None):
        """Search towards the start of the image; return the address of the
        match itself.  The cursor is left just past the matched value."""
        if width not in STRIDE:
            raise ValueError(f"unsupported search width {width}")
        value &= _MASK[width]
        cur = self.cursor
        start = cur.tell_offset()
        while True:
            pos = cur.tell_offset()
            if limit is not None and start - pos > limit:
                raise StreamExhaustedError(
                    f"0x{value:0{width * 2}X} not found within 0x{limit:X} bytes "
                    f"before 0x{cur.space.to_address(start):06X}")
            if pos + width > len(cur):
                raise StreamExhaustedError(
                    f"backward search for 0x{value:0{width * 2}X} started past end of image")
            if self._read(width) == value:
                return cur.tell() - width
            back = pos - STRIDE[width]
            if back < 0:
                raise StreamExhaustedError(
                    f"0x{value:0{width * 2}X} not found between start of image "
                    f"and 0x{cur.space.to_address(start):06X}")
            cur.seek_offset(back)

    # ── Shorthands ───────────────────────────────────────────────
    def find_u8(self, value, limit=None):
        return self.scan_forward(value, 1, limit)

    def find_u16(self, value, limit=None):
        return self.scan_forward(value, 2, limit)

    def find_u32(self, value, limit=None):
        return self.scan_forward(value, 4, limit)

    def rfind_u8(self, value, limit=None):
        return self.scan_backward(value, 1, limit)

    def rfind_u16(self, value, limit=None):
        return self.scan_backward(value, 2, limit)

    def rfind_u32(self, value, limit=None):
        return self.scan_backward(value, 4, limit)
