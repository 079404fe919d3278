"""
integrity.py — Basecode checksum validation/update and length bookkeeping.

AMS protects the basecode with a plain 32-bit sum of its big-endian 16-bit
words, stored right after the summed range.  The calculator re-validates it
when the OS is transferred, so the algorithm must match exactly.

Layout after the basecode head (absolute address `image_start`):
    +0   u16  field tag
    +2   u32  length L of the field payload
    +6   ...  payload
    +2+L u32  checksum of [image_start, image_start + L + 2)
    +6+L      67-byte end signature
"""

import struct
from dataclasses import dataclass

from .errors import ChecksumMismatchError

CHECKSUM_SIZE = 4
END_SIGNATURE_SIZE = 67
LENGTH_FIELD = 2
# bytes following the length-field payload: tag/length prefix, checksum, signature
TRAILER_SIZE = 2 + CHECKSUM_SIZE + END_SIGNATURE_SIZE


def checksum(cursor, start, length):
    """Sum of the big-endian 16-bit words in [start, start + length), mod 2**32."""
    if length % 2:
        raise ValueError(f"checksum range length 0x{length:X} is odd")
    raw = cursor.get_n(length, start)
    return sum(struct.unpack(f">{length // 2}H", raw)) & 0xFFFFFFFF


@dataclass
class ChecksumRecord:
    range_start: int
    range_length: int
    stored_value: int
    computed_value: int

    @property
    def valid(self):
        return self.stored_value == self.computed_value


class IntegrityLedger:
    """Brackets a patch run: verify() before the first write, commit() after
    the last one."""

    def __init__(self, cursor, verbose=True):
        self.cursor  = cursor
        self.verbose = verbose
        self.record  = None
        self.shrunk  = 0
        self._image_length = None

    def _log(self, msg):
        if self.verbose:
            print(msg)

    @property
    def start(self):
        return self.cursor.space.image_start

    def summed_length(self):
        return self.cursor.get_u32(self.start + LENGTH_FIELD) + 2

    def verify(self):
        length = self.summed_length()
        stored = self.cursor.get_u32(self.start + length)
        computed = checksum(self.cursor, self.start, length)
        self._log(f"  embedded basecode checksum is {stored:08X}")
        self._log(f"  computed basecode checksum is {computed:08X}")
        if stored != computed:
            raise ChecksumMismatchError(stored, computed)
        self.record = ChecksumRecord(self.start, length, stored, computed)
        self._image_length = len(self.cursor)
        return self.record

    def record_shrink(self, size, dependent_fields=()):
        """Account for `size` bytes removed from the end of the summed range.

        Decrements the basecode length field by `size`; each
        `(offset, adjust)` in dependent_fields is a nested length field at
        image_start + offset, rewritten as the new length minus `adjust`.
        """
        cur = self.cursor
        length = cur.get_u32(self.start + LENGTH_FIELD) - size
        cur.put_u32(length, self.start + LENGTH_FIELD)
        for offset, adjust in dependent_fields:
            cur.put_u32(length - adjust, self.start + offset)
        self.shrunk += size
        return length

    def commit(self):
        """Embed the new checksum; apply a pending shrink to the container
        size field and truncate the image as the very last step."""
        if self.record is None:
            raise RuntimeError("commit() without a verified checksum")
        cur = self.cursor
        length = self.record.range_length - self.shrunk
        value = checksum(cur, self.start, length)
        cur.put_u32(value, self.start + length)
        self._log(f"  new basecode checksum is {value:08X}")

        if self.shrunk:
            total = self._image_length - self.shrunk
            # container data size: little-endian, just before the head
            cur.seek_offset(cur.space.head - 4)
            cur.write_n(struct.pack("<I", total - cur.space.head))
            if len(cur) > total:
                cur.truncate(total)
            self._log(f"  final file size is {total} (0x{total:X})")

        return ChecksumRecord(self.start, length, value, value)
