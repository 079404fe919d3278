"""
tables.py — Resolution of the indirection structures inside AMS: the
ROM_CALL dispatch table, the 68000 vector table, the trap #9 and trap #$B
function tables, and the attribute table of OO_SYSTEM_FRAME.

Table bases that need a search to find are resolved on first use and then
cached for the rest of the run.
"""

from enum import IntEnum

from .errors import PatternNotFoundError

VECTOR_TABLE = 0x88            # vector table offset from the basecode head
DISPATCH_VECTOR = 0xC8         # vector slot holding the ROM_CALL table pointer
TRAP9_VECTOR = 0xA4
TRAP10_VECTOR = 0xA8
TRAPB_VECTOR = 0xAC
AUTOINT5_VECTOR = 0x74
TRAP3_VECTOR = 0x8C

TRAPB_SIGNATURE = 0xC6FC0006   # mulu.w #6,d3: index into the 6-byte entries
TRAPB_ENTRY_SIZE = 6
TRAPB_SEARCH_LIMIT = 0x1000

FRAME_ATTRIBUTES = 0x0E        # count field, then (key, value) pairs
ATTRIBUTE_NOT_FOUND = 0xFFFFFFFF


class RomCall(IntEnum):
    ROM_CALL_COUNT               = -1
    HeapDeref                    = 0x096
    EX_stoBCD                    = 0x0C0
    OSRegisterTimer              = 0x0F0
    DrawClipChar                 = 0x191
    DrawChar                     = 0x1A4
    DrawStr                      = 0x1A9
    memcmp                       = 0x270
    OSVRegisterTimer             = 0x284
    OSVFreeTimer                 = 0x285
    XR_stringPtr                 = 0x293
    OSContrastUp                 = 0x296
    OSContrastDn                 = 0x297
    EM_GetArchiveMemoryBeginning = 0x3CF
    OO_CondGetAttr               = 0x3FA
    OO_Deref                     = 0x3FB
    ReleaseVersion               = 0x440
    HeapTable                    = 0x441
    EV_runningApp                = 0x45D
    sf_width                     = 0x4D3
    FiftyMsecTick                = 0x4FC


class IndirectionResolver:

    def __init__(self, cursor, scanner, dispatch_table):
        self.cursor = cursor
        self.scanner = scanner
        self.dispatch_table = dispatch_table
        self._trap9_pointers = None
        self._trapb_functions = None
        self._frame = None

    # ── ROM_CALL dispatch table ──────────────────────────────────
    def dispatch_slot(self, idx):
        """Address of entry idx; negative ids address the metadata words
        stored in front of the callable entries."""
        return self.dispatch_table + 4 * idx

    def dispatch_address(self, idx):
        return self.cursor.get_u32(self.dispatch_slot(idx))

    def set_dispatch_address(self, idx, addr):
        self.cursor.put_u32(addr, self.dispatch_slot(idx))

    # ── Vector table (file-relative, independent of delta) ───────
    def _vector_offset(self, off):
        return self.cursor.space.head + VECTOR_TABLE + off

    def vector_address(self, off):
        return self.cursor.space.to_address(self._vector_offset(off))

    def vector(self, off):
        self.cursor.seek_offset(self._vector_offset(off))
        return self.cursor.read_u32()

    def set_vector(self, off, addr):
        self.cursor.seek_offset(self._vector_offset(off))
        self.cursor.write_u32(addr)

    # ── PC-relative operands ─────────────────────────────────────
    def pc_relative(self, addr):
        """Target of a (d16,pc) operand whose extension word is at addr."""
        self.cursor.seek(addr)
        return addr + self.cursor.read_s16()

    # ── Trap tables ──────────────────────────────────────────────
    def trap9_pointers(self):
        if self._trap9_pointers is None:
            handler = self.vector(TRAP9_VECTOR)
            # lea table,a0 right at the handler entry
            self._trap9_pointers = self.cursor.get_u32(handler + 2)
        return self._trap9_pointers

    def trap9_item(self, idx):
        return self.cursor.get_u32(self.trap9_pointers() + 4 * idx)

    def trap_b_functions(self):
        if self._trapb_functions is None:
            self.cursor.seek(self.vector(TRAPB_VECTOR))
            after = self.scanner.find_u32(TRAPB_SIGNATURE, TRAPB_SEARCH_LIMIT)
            self._trapb_functions = self.pc_relative(after - 6)
        return self._trapb_functions

    def trap_b_function(self, idx):
        return self.cursor.get_u32(self.trap_b_functions() + TRAPB_ENTRY_SIZE * idx)

    # ── OO_SYSTEM_FRAME attributes ───────────────────────────────
    def frame(self):
        if self._frame is None:
            self._frame = self.cursor.get_u32(self.vector(TRAP10_VECTOR) + 10)
        return self._frame

    def attribute(self, key):
        """Value stored under key, or ATTRIBUTE_NOT_FOUND.

        The count field holds the index of the last entry; table order is
        scan order and the first matching key wins.
        """
        cur = self.cursor
        cur.seek(self.frame() + FRAME_ATTRIBUTES)
        remaining = cur.read_s32()
        while remaining >= 0:
            k = cur.read_u32()
            v = cur.read_u32()
            if k == key:
                return v
            remaining -= 1
        return ATTRIBUTE_NOT_FOUND

    def require_attribute(self, key):
        value = self.attribute(key)
        if value == ATTRIBUTE_NOT_FOUND:
            raise PatternNotFoundError(
                f"attribute 0x{key:X} missing from OO_SYSTEM_FRAME at 0x{self.frame():06X}")
        return value

    # ── Release ──────────────────────────────────────────────────
    def release_version(self):
        """(major, minor) from the "M.mm" ReleaseVersion string."""
        text = self.cursor.get_n(4, self.dispatch_address(RomCall.ReleaseVersion))
        major = text[0] - ord("0")
        minor = (text[2] - ord("0")) * 10 + (text[3] - ord("0"))
        return major, minor
