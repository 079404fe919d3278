"""
variants.py — Per-build data for the supported AMS releases.

Supported basecodes (version type byte from the container header):
    9   AMS 2.05          TI-89, TI-92+
    11  AMS 2.08          TI-89, TI-92+, V200
    12  AMS 2.09          TI-89, TI-92+, V200 (two V200 builds share the byte)
    13  AMS 3.01          TI-89 Titanium, V200
    14  AMS 3.10          TI-89 Titanium
"""

from dataclasses import dataclass, field
from enum import IntEnum

from .errors import SizeMismatchError, UnknownCalculatorError, UnsupportedVersionError


class Calculator(IntEnum):
    TI92P = 1
    TI89  = 3
    V200  = 8
    TI89T = 9


# ── Basecode size check ──────────────────────────────────────────

# version type -> {calculator: accepted basecode sizes}
EXPECTED_SIZES = {
    9:  {Calculator.TI89: (0x124772,), Calculator.TI92P: (0x123F8E,)},
    11: {Calculator.TI89: (0x12E01A,), Calculator.TI92P: (0x12D96A,),
         Calculator.V200: (0x12DBEE,)},
    12: {Calculator.TI89: (0x12E2FE,), Calculator.TI92P: (0x12DC4E,),
         Calculator.V200: (0x12DECA, 0x1393F6)},
    13: {Calculator.TI89T: (0x14565A,), Calculator.V200: (0x148D3A,)},
    14: {Calculator.TI89T: (0x155C3E,)},
}


def calculator_from_code(code):
    try:
        return Calculator(code)
    except ValueError:
        raise UnknownCalculatorError(f"unknown calculator type {code}") from None


def expected_sizes(calculator, version_type):
    if version_type not in EXPECTED_SIZES:
        raise UnsupportedVersionError(
            f"unsupported AMS version type {version_type}; "
            f"use AMS 2.05, 2.08, 2.09, 3.01 or 3.10")
    sizes = EXPECTED_SIZES[version_type].get(calculator)
    if sizes is None:
        raise SizeMismatchError(
            f"no AMS build of version type {version_type} exists for {calculator.name}")
    return sizes


# ── asm_size_limit: cmpi.l #imm,d? whose high word caps ASM programs ──

ASM_LIMIT_SIGNATURES = {
    5: 0x0C526000,
    8: 0x0C536000,
    9: 0x0C536000,
}


# ── timer_vectors: number of OS timer slots cleared at reset ─────

def timer_slot_count(calculator, major, minor):
    if major == 2:
        return 7 if minor == 5 else 8
    return 9 if calculator == Calculator.TI89T else 8


# ── shrink: relocation of trailing data blocks into free space ───

@dataclass(frozen=True)
class Relocation:
    """One data block at the tail of the basecode.

    refs are absolute addresses of u32 pointers to the block; fixups are
    (field, target) pairs of self-pointers inside the block, both relative
    to the block start.  A block with `alias_of` set is a duplicate of an
    earlier block: it is dropped and its refs point at that block's copy.
    """
    length: int
    refs: tuple = ()
    fixups: tuple = ()
    alias_of: int = None


@dataclass(frozen=True)
class ShrinkPlan:
    source: int
    destination: int
    blocks: tuple
    # nested length fields: (offset from image start, subtracted from the basecode length)
    dependent_fields: tuple = field(default=((0x80, 126),))

    @property
    def size(self):
        return sum(b.length for b in self.blocks)


# cursor bitmaps of GD_Eraser / GT_WinCursor and the bitmap pointer array
_BITMAPS_208 = (
    Relocation(10, (0x237362,)),
    Relocation(10, (0x237368,)),
    Relocation(26, (0x2A8B06,)),
    Relocation(8,  (0x2A8B1C,)),
    Relocation(10, (0x2A8B32,)),
    Relocation(10, (0x2A8B48,)),
    Relocation(10, (0x2B97E8,), alias_of=0),
    Relocation(10, (0x2B97EC,)),
    Relocation(10, (0x2B97F0, 0x2A8AEE)),
    Relocation(10, (0x2B97F8,)),
    Relocation(10, (0x2B97F4,)),
    Relocation(68, (0x2A8B5C,)),
    Relocation(12, (0x2A8B76,)),
    Relocation(16, (0x2B97FC,)),
    Relocation(16, (0x2B9800,)),
    Relocation(16, (0x2B9804,)),
    Relocation(16, (0x2B9808,)),
    Relocation(16, (0x2B980C,)),
    Relocation(8),
    Relocation(8),
    Relocation(8),
    Relocation(8),
)

_BLOCKS_209 = (
    Relocation(90,  (0x2F5DD2,)),                                  # TITABLED menu
    Relocation(126, (0x2F7FE8,), fixups=((38, 16),)),              # table formats dialog
    Relocation(150, (0x2F870A,), fixups=((86, 40), (118, 52))),    # table setup dialog
    Relocation(38,  (0x2FA8D8,)),
    Relocation(128, (0x224312,)),                                  # TITEXTED menu
    Relocation(10, (0x237362,)),
    Relocation(10, (0x237368,)),
    Relocation(26, (0x2A8CCE,)),
    Relocation(8,  (0x2A8CE4,)),
    Relocation(10, (0x2A8CFA,)),
    Relocation(10, (0x2A8D10,)),
    Relocation(10, (0x2B99B0,), alias_of=5),
    Relocation(10, (0x2B99B4,)),
    Relocation(10, (0x2B99B8, 0x2A8CB6)),
    Relocation(10, (0x2B99C0,)),
    Relocation(10, (0x2B99BC,)),
    Relocation(68, (0x2A8D24,)),
    Relocation(12, (0x2A8D3E,)),
    Relocation(16, (0x2B99C4,)),
    Relocation(16, (0x2B99C8,)),
    Relocation(16, (0x2B99CC,)),
    Relocation(16, (0x2B99D0,)),
    Relocation(16, (0x2B99D4,)),
    Relocation(8),
    Relocation(8),
    Relocation(8),
    Relocation(8),
)

# keyed by (calculator, version type); the only builds that overflow by a few
# hundred bytes into an extra Flash sector
SHRINK_PLANS = {
    (Calculator.TI89, 11): ShrinkPlan(0x33FEE0, 0x214000, _BITMAPS_208),
    (Calculator.TI89, 12): ShrinkPlan(0x33FFB0, 0x214000, _BLOCKS_209),
}
