"""
m68k.py — 68000 encoding helpers for building replacement code, plus the
capstone disassembler used to render audit lines.

Replacement routines are emitted as literal opcode words; the only encoding
decision made here is absolute-short vs absolute-long addressing, which the
68000 picks by whether the address sign-extends from 16 bits.

Dependencies:  capstone
"""

import struct

from capstone import Cs, CS_ARCH_M68K, CS_MODE_BIG_ENDIAN, CS_MODE_M68K_000

# ── Disassembler singleton (audit output only) ─────────────────
_cs = Cs(CS_ARCH_M68K, CS_MODE_BIG_ENDIAN | CS_MODE_M68K_000)

# ── Opcode words ───────────────────────────────────────────────
NOP = 0x4E71
RTS = 0x4E75
RTE = 0x4E73
JSR_ABS_L = 0x4EB9            # jsr abs.l
LEA_ABS_L_A0 = 0x41F9         # lea abs.l,a0
LEA_ABS_W_A0 = 0x41F8         # lea abs.w,a0
MOVE_W_D0_ABS_L = 0x33C0      # move.w d0,abs.l
MOVEM_L_TO_STACK = 0x48E7     # movem.l <list>,-(sp)
MOVEM_L_FROM_STACK = 0x4CDF   # movem.l (sp)+,<list>
MOVEM_W_TO_STACK = 0x48A7     # movem.w <list>,-(sp)
MOVEM_W_FROM_STACK = 0x4C9F   # movem.w (sp)+,<list>
MOVE_USP_A0 = 0x4E68          # move usp,a0
CMPI_W_D0 = 0x0C40            # cmpi.w #imm,d0
BRA_S_2A = 0x602A             # bra.s *+0x2C

ABS_SHORT_LIMIT = 0x8000


def words(*values):
    """Pack 16-bit words big-endian."""
    return struct.pack(f">{len(values)}H", *(v & 0xFFFF for v in values))


def longs(*values):
    return struct.pack(f">{len(values)}I", *(v & 0xFFFFFFFF for v in values))


class CodeBuilder:
    """Accumulates a replacement encoding before a single write."""

    def __init__(self):
        self.buf = bytearray()

    def b(self, *values):
        self.buf += bytes(v & 0xFF for v in values)
        return self

    def w(self, *values):
        self.buf += words(*values)
        return self

    def l(self, *values):
        self.buf += longs(*values)
        return self

    def abs_ea(self, short_op, long_op, addr):
        """`op abs.w` when addr fits a sign-extended word, else `op abs.l`."""
        if addr < ABS_SHORT_LIMIT:
            return self.w(short_op, addr)
        return self.w(long_op).l(addr)

    def __len__(self):
        return len(self.buf)

    def bytes(self):
        return bytes(self.buf)


# ── Rendering ──────────────────────────────────────────────────

def disasm_str(code, addr):
    """First instruction of code at addr, with the count of the ones after it."""
    insns = list(_cs.disasm(bytes(code), addr))
    if not insns:
        return "???"
    text = f"{insns[0].mnemonic} {insns[0].op_str}".strip()
    if len(insns) > 1:
        text += f" (+{len(insns) - 1})"
    return text
