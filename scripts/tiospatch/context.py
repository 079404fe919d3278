"""
context.py — Per-run engine state shared by every patch stage.
"""

from dataclasses import dataclass
from enum import IntFlag

from .errors import TruncatedImageError
from .image import AddressSpace, ByteCursor
from .integrity import IntegrityLedger
from .scanner import SignatureScanner
from .tables import DISPATCH_VECTOR, VECTOR_TABLE, IndirectionResolver


class Feature(IntFlag):
    NONE = 0
    HARDCODE_FONTS = 1
    HARDCODE_ENGLISH_LANGUAGE = 2


DEFAULT_FEATURES = Feature.HARDCODE_FONTS


@dataclass
class EngineContext:
    data: bytearray
    space: AddressSpace
    cursor: ByteCursor
    scanner: SignatureScanner
    tables: IndirectionResolver
    ledger: IntegrityLedger
    calculator: int
    version_type: int
    major: int
    minor: int
    features: Feature = DEFAULT_FEATURES

    @classmethod
    def open(cls, data, head, calculator, version_type,
             features=DEFAULT_FEATURES, verbose=True):
        """Derive the address mapping from the dispatch-table pointer in
        the vector table and wire the components over `data`."""
        off = head + VECTOR_TABLE + DISPATCH_VECTOR
        if len(data) < off + 4:
            raise TruncatedImageError(
                f"image too short for a vector table (0x{len(data):X} bytes)")
        pointer = int.from_bytes(data[off:off + 4], "big")
        space = AddressSpace.from_dispatch_pointer(pointer, head)
        cursor = ByteCursor(data, space)
        scanner = SignatureScanner(cursor)
        tables = IndirectionResolver(cursor, scanner, pointer)
        major, minor = tables.release_version()
        return cls(
            data=data,
            space=space,
            cursor=cursor,
            scanner=scanner,
            tables=tables,
            ledger=IntegrityLedger(cursor, verbose=verbose),
            calculator=calculator,
            version_type=version_type,
            major=major,
            minor=minor,
            features=Feature(features),
        )

    def enabled(self, feature):
        return bool(self.features & feature)
