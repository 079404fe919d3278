"""
image.py — Address translation and the shared read/write cursor over an AMS
basecode image.

The image is a bytearray holding the whole .89u/.9xu/.v2u file.  The
basecode proper starts at file offset `head` and is mapped by the
calculator at `base + 0x12000`; every absolute address used by the patch
stages goes through AddressSpace before touching the bytearray.
"""

import struct

from .errors import OutOfRangeError, TruncatedImageError

BASECODE_OFFSET = 0x12000   # basecode start relative to the Flash base
BASE_MASK       = 0xE00000  # Flash base bits of any basecode address

_FMT = {1: ">B", 2: ">H", 4: ">I"}
_MASK = {1: 0xFF, 2: 0xFFFF, 4: 0xFFFFFFFF}


def sign_extend16(value):
    value &= 0xFFFF
    return value - 0x10000 if value & 0x8000 else value


def sign_extend32(value):
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


# ── AddressSpace ─────────────────────────────────────────────────

class AddressSpace:
    """Bidirectional absolute address <-> file offset mapping.

    `delta` is fixed for the whole run; both directions are plain integer
    arithmetic with no clamping.  An address outside the image yields an
    offset the next I/O operation rejects.
    """

    def __init__(self, base, head):
        self.base  = base
        self.head  = head
        self.delta = base + BASECODE_OFFSET - head

    @classmethod
    def from_dispatch_pointer(cls, pointer, head):
        """Derive the mapping from the dispatch-table pointer stored in the
        vector table: the table always lives inside the basecode, so its
        top address bits are the Flash base."""
        return cls(pointer & BASE_MASK, head)

    @property
    def image_start(self):
        return self.base + BASECODE_OFFSET

    def to_offset(self, addr):
        return addr - self.delta

    def to_address(self, offset):
        return offset + self.delta

    def __repr__(self):
        return (f"AddressSpace(base=0x{self.base:06X}, head=0x{self.head:X}, "
                f"delta=0x{self.delta:X})")


# ── ByteCursor ───────────────────────────────────────────────────

class ByteCursor:
    """Big-endian cursor over the image.

    The position is shared by every component working on the image:
    callers seek before any operation whose starting point matters.
    """

    def __init__(self, data, space):
        self.data  = data            # bytearray (mutable)
        self.space = space
        self.pos   = 0               # file offset

    def __len__(self):
        return len(self.data)

    # ── Positioning ──────────────────────────────────────────────
    def seek_offset(self, offset):
        if offset < 0 or offset > len(self.data):
            raise OutOfRangeError(
                f"file offset 0x{offset:X} outside image (size 0x{len(self.data):X})")
        self.pos = offset

    def tell_offset(self):
        return self.pos

    def seek(self, addr):
        try:
            self.seek_offset(self.space.to_offset(addr))
        except OutOfRangeError:
            raise OutOfRangeError(
                f"address 0x{addr:06X} maps outside the image ({self.space!r})") from None

    def tell(self):
        return self.space.to_address(self.pos)

    def skip(self, count):
        self.seek_offset(self.pos + count)

    # ── Sequential access ────────────────────────────────────────
    def _claim(self, count):
        start = self.pos
        if start + count > len(self.data):
            raise TruncatedImageError(
                f"{count}-byte access at 0x{self.tell():06X} runs past end of image")
        self.pos = start + count
        return start

    def _read(self, width):
        return struct.unpack_from(_FMT[width], self.data, self._claim(width))[0]

    def _write(self, width, value):
        struct.pack_into(_FMT[width], self.data, self._claim(width), value & _MASK[width])

    def read_u8(self):
        return self._read(1)

    def read_u16(self):
        return self._read(2)

    def read_u32(self):
        return self._read(4)

    def read_s16(self):
        return sign_extend16(self._read(2))

    def read_s32(self):
        return sign_extend32(self._read(4))

    def read_n(self, count):
        start = self._claim(count)
        return bytes(self.data[start:start + count])

    def write_u8(self, value):
        self._write(1, value)

    def write_u16(self, value):
        self._write(2, value)

    def write_u32(self, value):
        self._write(4, value)

    def write_n(self, buf):
        start = self._claim(len(buf))
        self.data[start:start + len(buf)] = buf

    # ── Absolute access (seek + one operation) ───────────────────
    def get_u8(self, addr):
        self.seek(addr)
        return self.read_u8()

    def get_u16(self, addr):
        self.seek(addr)
        return self.read_u16()

    def get_u32(self, addr):
        self.seek(addr)
        return self.read_u32()

    def get_n(self, count, addr):
        self.seek(addr)
        return self.read_n(count)

    def put_u8(self, value, addr):
        self.seek(addr)
        self.write_u8(value)

    def put_u16(self, value, addr):
        self.seek(addr)
        self.write_u16(value)

    def put_u32(self, value, addr):
        self.seek(addr)
        self.write_u32(value)

    def put_n(self, buf, addr):
        self.seek(addr)
        self.write_n(buf)

    def peek(self, addr, count):
        """Bytes at addr, clipped to the image, without moving the cursor."""
        off = self.space.to_offset(addr)
        if off < 0 or off >= len(self.data):
            return b""
        return bytes(self.data[off:off + count])

    def truncate(self, length):
        if length < 0 or length > len(self.data):
            raise OutOfRangeError(f"cannot truncate image to 0x{length:X} bytes")
        del self.data[length:]
        self.pos = min(self.pos, length)
