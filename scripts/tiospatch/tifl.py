"""
tifl.py — TI Flash (`**TIFL**`) container header of .89u / .9xu / .v2u files.

A basecode update is a 0x4E-byte TIFL header followed by the basecode
itself.  Some distributions prepend a License block, which is a complete
TIFL record of its own; the basecode header then starts at the second
`**TIFL**` marker.
"""

from dataclasses import dataclass

from .errors import FormatError, SizeMismatchError
from .integrity import TRAILER_SIZE
from .variants import calculator_from_code, expected_sizes

MAGIC = b"**TIFL**"
TAG_OFFSET = 0x11
TAG_BASECODE = b"basecode"
TAG_LICENSE = b"License"
TIFL_HEADER_SIZE = 17 + 61
LICENSE_SEARCH = 0xA000
PRODUCT_NAME = b"Advanced Mathematics Software"
PRODUCT_NAME_OFFSET = 0x16

# offsets from the basecode head
SIZE_OFFSET = 2
CALCULATOR_OFFSET = 8
VERSION_TYPE_OFFSET = 11


@dataclass
class TIFLHeader:
    head: int               # file offset of the basecode
    license_size: int       # bytes of License block in front, 0 if none
    basecode_size: int
    calculator: int
    version_type: int

    @property
    def image_length(self):
        """Bytes of the input file that make up the update."""
        return self.head + self.basecode_size + TRAILER_SIZE


def _wrong_type(reason):
    return FormatError(f"wrong input file type ({reason}); use .89u, .9xu or .v2u ROM files")


def parse_header(data):
    if data[:len(MAGIC)] != MAGIC:
        raise _wrong_type("no **TIFL** signature")

    tag = data[TAG_OFFSET:TAG_OFFSET + len(TAG_BASECODE)]
    license_size = 0
    if tag.startswith(TAG_LICENSE):
        idx = data.find(MAGIC, TAG_OFFSET, LICENSE_SEARCH + len(MAGIC) - 1)
        if idx < 0:
            raise _wrong_type("License block without a following basecode record")
        license_size = idx
        tag = data[idx + 17:idx + 17 + len(TAG_BASECODE)]
    if tag != TAG_BASECODE:
        raise _wrong_type("not a basecode record")

    head = license_size + TIFL_HEADER_SIZE
    name = data[head + PRODUCT_NAME_OFFSET:head + PRODUCT_NAME_OFFSET + len(PRODUCT_NAME)]
    if name != PRODUCT_NAME:
        raise _wrong_type("not an AMS basecode")
    if len(data) < head + VERSION_TYPE_OFFSET + 1:
        raise _wrong_type("truncated header")

    return TIFLHeader(
        head=head,
        license_size=license_size,
        basecode_size=int.from_bytes(data[head + SIZE_OFFSET:head + SIZE_OFFSET + 4], "big"),
        calculator=data[head + CALCULATOR_OFFSET],
        version_type=data[head + VERSION_TYPE_OFFSET],
    )


def check_size(header):
    """Validate model, version type and basecode size; returns the Calculator."""
    calculator = calculator_from_code(header.calculator)
    sizes = expected_sizes(calculator, header.version_type)
    if header.basecode_size not in sizes:
        raise SizeMismatchError(
            f"unexpected size 0x{header.basecode_size:X} for {calculator.name} "
            f"version type {header.version_type}")
    return calculator
