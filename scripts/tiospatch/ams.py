"""
ams.py — Patch stages for AMS 2.05 - 3.10 basecodes.

Locates every patch site dynamically (dispatch table, vector table, trap
tables, byte signatures) and rewrites it in place.  NO hardcoded offsets
except the free areas at base+0x13100..0x131A0 and the shrink relocation
plans of the two TI-89 builds that need one.

Stages, in order:
  Unlock
    ram_execution_protection    zero the HW2/3 RAM execution guard
    flash_execution_protection  port 700012 limit, HW1 stealth ports
    archive_memory_limit        MaxMem / XPand equivalent
    flashapp_signature          accept unsigned FlashApps        (best effort)
    asm_size_limit              AMS 2.xx only
    invalid_program_reference   three `Invalid Program Reference` throws
  Optimize
    heap_deref                  two-instruction HeapDeref
    font_drawing                hard-coded font pointers          (fonts)
    sf_width                    hard-coded 4x6 font               (fonts)
    english_language            XR_stringPtr without localization (English)
  Fix
    trap3_heap_deref            trap #3 as HeapDeref
    contrast_registers          OSContrastUp/Dn clobbering d3/d4  (best effort)
    battery_change              battery change crash
  Shrink
    shrink                      TI-89 AMS 2.08 / 2.09            (best effort)
  Expand
    timer_vectors               OSVRegisterTimer / OSVFreeTimer

Dependencies:  capstone
"""

from dataclasses import dataclass

from .context import Feature
from .errors import PatternNotFoundError
from .integrity import CHECKSUM_SIZE, END_SIGNATURE_SIZE
from .m68k import (
    BRA_S_2A, CMPI_W_D0, JSR_ABS_L, LEA_ABS_L_A0, LEA_ABS_W_A0,
    MOVE_USP_A0, MOVE_W_D0_ABS_L, MOVEM_L_FROM_STACK, MOVEM_L_TO_STACK,
    MOVEM_W_FROM_STACK, MOVEM_W_TO_STACK, NOP, RTE, RTS,
    CodeBuilder, disasm_str, longs, words,
)
from .tables import AUTOINT5_VECTOR, TRAP3_VECTOR, TRAPB_VECTOR, RomCall
from .variants import ASM_LIMIT_SIGNATURES, SHRINK_PLANS, Calculator, timer_slot_count

# ── Fixed locations, relative to the Flash base ──────────────────
RESET_CODE = 0x12188          # early reset code
SYSTEM_CODE = 0x20000         # start of the bulk of the OS code
TRAP3_HANDLER = 0x13100       # free space in the basecode head area
AI5_HANDLER = 0x13110
OSV_REGISTER_TIMER = 0x13140
OSV_FREE_TIMER = 0x13170

# cap for searches that stay inside a single routine
ROUTINE_SCAN_LIMIT = 0x1000

PORT_FLASH_PROTECTION = 0x700012
FLASHAPP_CHECK_MARKER = 0x0000020E
ARCHIVE_ROUNDING = 0xFFFF0000
INVALID_PROGRAM_REFERENCE = 0xA244   # ER_throw 580 line-A trap

FONT_4X6, FONT_6X8, FONT_8X10 = 0x300, 0x301, 0x302
# (attribute, offset in the character routine, label)
FONT_SLOTS = (
    (FONT_8X10, 0x7A,  "8x10"),
    (FONT_6X8,  0xC2,  "6x8"),
    (FONT_4X6,  0x112, "4x6"),
)


@dataclass(frozen=True)
class PatchStage:
    name: str
    method: str
    applies: object = None        # callable(ctx) -> bool, None = always
    feature: Feature = Feature.NONE
    best_effort: bool = False


def _ams2_asm_limit(ctx):
    return ctx.major == 2 and ctx.minor in ASM_LIMIT_SIGNATURES


def _needs_shrink(ctx):
    return (ctx.calculator, ctx.version_type) in SHRINK_PLANS


STAGES = [
    PatchStage("ram_execution_protection", "patch_ram_execution_protection"),
    PatchStage("flash_execution_protection", "patch_flash_execution_protection"),
    PatchStage("archive_memory_limit", "patch_archive_memory_limit"),
    PatchStage("flashapp_signature", "patch_flashapp_signature", best_effort=True),
    PatchStage("asm_size_limit", "patch_asm_size_limit", applies=_ams2_asm_limit),
    PatchStage("invalid_program_reference", "patch_invalid_program_reference"),
    PatchStage("heap_deref", "patch_heap_deref"),
    PatchStage("font_drawing", "patch_font_drawing", feature=Feature.HARDCODE_FONTS),
    PatchStage("sf_width", "patch_sf_width", feature=Feature.HARDCODE_FONTS),
    PatchStage("english_language", "patch_english_language",
               feature=Feature.HARDCODE_ENGLISH_LANGUAGE),
    PatchStage("trap3_heap_deref", "patch_trap3_heap_deref"),
    PatchStage("contrast_registers", "patch_contrast_registers", best_effort=True),
    PatchStage("battery_change", "patch_battery_change"),
    PatchStage("shrink", "patch_shrink", applies=_needs_shrink, best_effort=True),
    PatchStage("timer_vectors", "patch_timer_vectors"),
]

STAGES_BY_NAME = {s.name: s for s in STAGES}


# ── AMSPatcher ─────────────────────────────────────────────────

class AMSPatcher:
    """Runs the patch stages over an EngineContext.

    Every write goes through emit()/emit_data(), which apply it immediately
    (later stages read what earlier ones wrote) and keep an audit trail in
    `self.patches`.
    """

    def __init__(self, ctx, verbose=True):
        self.ctx     = ctx
        self.cur     = ctx.cursor
        self.scan    = ctx.scanner
        self.tables  = ctx.tables
        self.verbose = verbose
        self.patches = []
        self.skipped = []

    def _log(self, msg):
        if self.verbose:
            print(msg)

    @property
    def base(self):
        return self.ctx.space.base

    def rom_call(self, idx):
        return self.tables.dispatch_address(idx)

    def emit(self, addr, code, desc):
        """Write instruction bytes at addr; print before/after disassembly."""
        code = bytes(code)
        before = self.cur.peek(addr, len(code))
        self.cur.put_n(code, addr)
        self.patches.append((addr, code, desc))
        if self.verbose:
            b_str = disasm_str(before, addr)
            a_str = disasm_str(code, addr)
            print(f"  0x{addr:06X}: {b_str} → {a_str}  [{desc}]")

    def emit_data(self, addr, data, desc):
        """Write operands, pointers or data blocks at addr."""
        data = bytes(data)
        before = self.cur.peek(addr, len(data))
        self.cur.put_n(data, addr)
        self.patches.append((addr, data, desc))
        if self.verbose:
            if len(data) <= 8:
                print(f"  0x{addr:06X}: {before.hex()} → {data.hex()}  [{desc}]")
            else:
                print(f"  0x{addr:06X}: {len(data)} bytes  [{desc}]")

    # ── Driver ───────────────────────────────────────────────────
    def apply(self):
        """Verify the checksum, run every stage, commit; return patch count."""
        ctx = self.ctx
        self._log(f"[*] AMS {ctx.major}.{ctx.minor:02d} for {Calculator(ctx.calculator).name}, "
                  f"Flash base 0x{self.base:06X}, delta 0x{ctx.space.delta:X}")
        before = ctx.ledger.verify()
        self.find_all()
        after = ctx.ledger.commit()
        self._log(f"\n  [{len(self.patches)} AMS patches applied]")
        self._log(f"[+] checksum {before.stored_value:08X} → {after.stored_value:08X}")
        return len(self.patches)

    def find_all(self):
        self.patches = []
        self.skipped = []
        for stage in STAGES:
            self._run(stage)
        return self.patches

    def run_stage(self, name):
        """Run one stage by name; returns False when it did not apply."""
        return self._run(STAGES_BY_NAME[name])

    def _run(self, stage):
        ctx = self.ctx
        if stage.feature and not ctx.enabled(stage.feature):
            self._log(f"  [-] {stage.name}: disabled")
            return False
        if stage.applies is not None and not stage.applies(ctx):
            return False
        self._log(f"[*] {stage.name}")
        method = getattr(self, stage.method)
        if not stage.best_effort:
            method()
            return True
        try:
            method()
        except PatternNotFoundError as e:
            self._log(f"  [-] {stage.name}: {e}, skipped")
            self.skipped.append(stage.name)
            return False
        return True

    # ═══════════════════════════════════════════════════════════
    #  Unlock
    # ═══════════════════════════════════════════════════════════

    # EX_stoBCD hosts the HW2/3 RAM execution guard; its four limit
    # operands are cleared (same effect as HW2Patch / HW3Patch).
    def patch_ram_execution_protection(self):
        addr = self.rom_call(RomCall.EX_stoBCD)
        self._log(f"  RAM execution protection at 0x{addr + 0x56:06X}")
        for off in (0x58, 0x5C, 0x62, 0x68):
            self.emit_data(addr + off, words(0), "RAM execution protection")

    # HW2+: the reset code writes the protected-area limit to port
    # 700012, and trap #$B function $10 rewrites it later.  HW1: three
    # reads of stealth I/O ranges become writes.
    def patch_flash_execution_protection(self):
        self.cur.seek(self.base + RESET_CODE)
        m = self.scan.find_u32(PORT_FLASH_PROTECTION)
        self._log(f"  Flash execution protection init at 0x{m - 8:06X}")
        self.emit_data(m - 6, words(0x003F), "port 700012 limit")
        for off in (26, 20, 14):
            self.emit(m - off, words(MOVE_W_D0_ABS_L), "HW1 stealth port read → write")

        fn = self.tables.trap_b_function(0x10)
        code = CodeBuilder().w(0x33FC, 0x003F).l(PORT_FLASH_PROTECTION).w(RTS)
        self.emit(fn, code.bytes(), "trap #$B function $10: fixed 700012 limit")

    def patch_archive_memory_limit(self):
        self.cur.seek(self.rom_call(RomCall.EM_GetArchiveMemoryBeginning))
        m = self.scan.find_u32(ARCHIVE_ROUNDING, ROUTINE_SCAN_LIMIT)
        self.emit(m, words(0x2040, 0x508F, RTS), "archive memory limit")

    def patch_flashapp_signature(self):
        cur = self.cur
        xr_string_ptr = self.rom_call(RomCall.XR_stringPtr)
        memcmp = self.rom_call(RomCall.memcmp)

        cur.seek(self.base + SYSTEM_CODE)
        marker = self.scan.find_u32(FLASHAPP_CHECK_MARKER)
        if cur.read_u16() != JSR_ABS_L or cur.read_u32() != xr_string_ptr:
            raise PatternNotFoundError(
                f"no jsr XR_stringPtr after 0x{FLASHAPP_CHECK_MARKER:08X} at 0x{marker:06X}")

        routine = self.tables.pc_relative(marker - 0x0C)
        cur.seek(routine)
        m = self.scan.find_u32(memcmp, ROUTINE_SCAN_LIMIT)
        self._log(f"  FlashApp signature check at 0x{m - 0x0E:06X}")
        self.emit(m - 0x0C, cur.get_n(2, m - 0x08), "FlashApp signature check")

    def patch_asm_size_limit(self):
        sig = ASM_LIMIT_SIGNATURES[self.ctx.minor]
        self.cur.seek(self.base + SYSTEM_CODE)
        m = self.scan.find_u32(sig)
        self.emit_data(m - 2, words(0xFFFF), "ASM program size limit")

    def patch_invalid_program_reference(self):
        self.cur.seek(self.base + SYSTEM_CODE)
        for _ in range(3):
            m = self.scan.find_u16(INVALID_PROGRAM_REFERENCE)
            self.emit(m - 2, words(NOP), "Invalid Program Reference")
            self.cur.seek(m)

    # ═══════════════════════════════════════════════════════════
    #  Optimize
    # ═══════════════════════════════════════════════════════════

    def patch_heap_deref(self):
        cur = self.cur
        addr = self.rom_call(RomCall.HeapDeref)
        heap = cur.get_u16(addr + 0x0A) or cur.get_u16(addr + 0x0C)
        # move.w 4(sp),d0; lsl.w #2,d0; movea.l heap,a0; movea.l 0(a0,d0.w),a0; rts
        code = (CodeBuilder()
                .l(0x302F0004).w(0xE548)
                .abs_ea(0x2078, 0x2079, heap)
                .l(0x20700000).w(RTS))
        self.emit(addr, code.bytes(), "HeapDeref")

    def patch_font_drawing(self):
        """Hard-code OO_GetAttr(OO_SYSTEM_FRAME, OO_*FONT) in the
        character routine shared by DrawStr / DrawChar / DrawClipChar."""
        cur = self.cur
        fonts = {attr: self.tables.require_attribute(attr) for attr, _, _ in FONT_SLOTS}
        draw_char = self.rom_call(RomCall.DrawChar)
        if self.ctx.major == 2:
            routine = self.tables.pc_relative(draw_char + 0x26)
            shift = 0
        else:
            routine = cur.get_u32(draw_char + 0x26)
            shift = 2
        self._log(f"  character drawing in 0x{routine:06X}")
        for attr, off, label in FONT_SLOTS:
            code = CodeBuilder().w(LEA_ABS_L_A0).l(fonts[attr]).w(BRA_S_2A)
            self.emit(routine + off + shift, code.bytes(), f"{label} font")

    def patch_sf_width(self):
        font = self.tables.require_attribute(FONT_4X6)
        addr = self.rom_call(RomCall.sf_width)
        code = (CodeBuilder()
                .w(LEA_ABS_L_A0).l(font)
                .w(0x7000).l(0x102F0005)
                .w(0x3200, 0xD040, 0xD041, 0xD040)
                .l(0x10300000).w(RTS))
        self.emit(addr, code.bytes(), "sf_width")

    # Localization apps are bypassed: only the built-in English strings
    # remain reachable.
    def patch_english_language(self):
        cur = self.cur
        strings = cur.get_u32(self.tables.frame() + 0x04)
        limit = cur.get_u32(strings + 0x0E)
        addr = self.rom_call(RomCall.XR_stringPtr)
        running_app = self.rom_call(RomCall.EV_runningApp)
        heap = self.rom_call(RomCall.HeapTable)
        cond_get_attr = self.rom_call(RomCall.OO_CondGetAttr)

        code = (CodeBuilder()
                .l(0x302F0006).w(CMPI_W_D0, limit).w(0x620E)
                .w(LEA_ABS_L_A0).l(strings).w(0xE548)
                .l(0x20700012).w(RTS)
                .w(0x42A7, 0x4857).l(0x06400800).w(0x3F00, 0x4267)
                .abs_ea(0x3238, 0x3239, running_app)
                .abs_ea(LEA_ABS_W_A0, LEA_ABS_L_A0, heap)
                .w(0xE549).l(0x20701000, 0x2F280014)
                .w(JSR_ABS_L).l(cond_get_attr)
                .l(0x4FEF000C).w(0x205F, RTS))
        self.emit(addr, code.bytes(), "XR_stringPtr (English only)")

    # ═══════════════════════════════════════════════════════════
    #  Fix
    # ═══════════════════════════════════════════════════════════

    # Pristine AMS wires OSenqueue on trap #3, which cannot work from a
    # trap; replace it by the UniOS / PreOS / PedroM HeapDeref.
    def patch_trap3_heap_deref(self):
        heap = self.rom_call(RomCall.HeapTable)
        handler = self.base + TRAP3_HANDLER
        code = (CodeBuilder()
                .w(0xD0C8, 0xD0C8)
                .abs_ea(0xD0FC, 0xD1FC, heap)
                .w(0x2050, RTE))
        self.emit(handler, code.bytes(), "trap #3 HeapDeref")
        self.emit_data(self.tables.vector_address(TRAP3_VECTOR), longs(handler), "trap #3 vector")

    # OSContrastUp / OSContrastDn save d3-d4 with movem.w and restore
    # them sign-extended; switch both to movem.l.
    def patch_contrast_registers(self):
        cur = self.cur
        up = self.rom_call(RomCall.OSContrastUp)
        dn = self.rom_call(RomCall.OSContrastDn)
        if cur.get_u16(up) != MOVEM_W_TO_STACK:
            raise PatternNotFoundError(f"OSContrastUp at 0x{up:06X} does not start with movem.w")
        if cur.get_u16(dn) != MOVEM_W_TO_STACK:
            raise PatternNotFoundError(f"OSContrastDn at 0x{dn:06X} does not start with movem.w")
        pop = self.scan.find_u16(MOVEM_W_FROM_STACK, ROUTINE_SCAN_LIMIT)
        push = self.scan.find_u16(MOVEM_W_TO_STACK, ROUTINE_SCAN_LIMIT)
        if push - pop > 0x10:
            raise PatternNotFoundError(
                f"movem.w pair at 0x{pop - 2:06X} / 0x{push - 2:06X} too far apart")

        self.emit(up, words(MOVEM_L_TO_STACK), "OSContrastUp save d3-d4")
        self.emit(dn, words(MOVEM_L_TO_STACK), "OSContrastDn save d3-d4")
        self.emit(pop - 2, words(MOVEM_L_FROM_STACK), "restore d3-d4")
        self.emit(push - 2, words(MOVEM_L_TO_STACK), "save d3-d4")

    def patch_battery_change(self):
        self.cur.seek(self.tables.vector(TRAPB_VECTOR))
        addr = self.scan.find_u16(MOVE_USP_A0, ROUTINE_SCAN_LIMIT) + 4
        code = CodeBuilder().w(0x4600).l(0x020000FF, 0x0A000000).w(0x4600).l(0)
        self.emit(addr, code.bytes(), "battery change")

    # ═══════════════════════════════════════════════════════════
    #  Shrink
    #
    #  TI-89 AMS 2.08 and 2.09 overflow into one more Flash sector than
    #  earlier 2.xx releases, costing 64 KB of archive.  The trailing data
    #  blocks move into the free area of the head sector; the checksum and
    #  end signature follow the new end of the basecode.
    # ═══════════════════════════════════════════════════════════
    def patch_shrink(self):
        ctx = self.ctx
        cur = self.cur
        plan = SHRINK_PLANS[(ctx.calculator, ctx.version_type)]
        tail = ctx.space.image_start + ctx.ledger.summed_length()
        if plan.source + plan.size != tail:
            raise PatternNotFoundError(
                f"basecode ends at 0x{tail:06X}, relocation plan expects "
                f"0x{plan.source + plan.size:06X}")

        src, dest = plan.source, plan.destination
        placed = []
        for block in plan.blocks:
            if block.alias_of is not None:
                target = placed[block.alias_of]
            else:
                target = dest
                self.emit_data(dest, cur.get_n(block.length, src),
                               f"block 0x{src:06X} relocated")
                for field, ptr in block.fixups:
                    self.emit_data(dest + field, longs(dest + ptr), "inner pointer")
                dest += block.length
            placed.append(target)
            for ref in block.refs:
                self.emit_data(ref, longs(target), f"pointer to block 0x{src:06X}")
            src += block.length

        size = src - plan.source
        trailer = cur.get_n(CHECKSUM_SIZE + END_SIGNATURE_SIZE, src)
        self.emit_data(plan.source, trailer, "checksum and end signature")
        ctx.ledger.record_shrink(size, plan.dependent_fields)
        self._log(f"  [+] shrunk by {size} bytes")

    # ═══════════════════════════════════════════════════════════
    #  Expand
    #
    #  AMS 2.xx dropped the vectored timers of AMS 1.xx.  The auto-int 5
    #  handler gains a dispatcher walking a table of 12-byte slots
    #  (counter, reload, callback); OSVRegisterTimer / OSVFreeTimer are
    #  reinstated in the dispatch table.
    # ═══════════════════════════════════════════════════════════
    def patch_timer_vectors(self):
        ctx = self.ctx
        cur = self.cur
        t = self.tables

        ai5 = t.vector(AUTOINT5_VECTOR)
        first = cur.get_u32(ai5)
        rte = self.scan.find_u16(RTE, ROUTINE_SCAN_LIMIT)
        chained = cur.get_u32(rte - 6)
        slots = t.trap9_item(3)
        timers = t.trap9_item(4)
        fifty_msec_tick = self.rom_call(RomCall.FiftyMsecTick)
        cur.seek(self.rom_call(RomCall.OSRegisterTimer))
        init = self.scan.rfind_u16(MOVEM_L_TO_STACK, ROUTINE_SCAN_LIMIT) + 2
        count = timer_slot_count(ctx.calculator, ctx.major, ctx.minor)

        # auto-int 5
        self.emit(rte - 6, words(RTS), "auto-int 5 returns to dispatcher")
        handler = self.base + AI5_HANDLER
        code = (CodeBuilder()
                .l(first)
                .w(JSR_ABS_L).l(ai5 + 4)
                .w(0x45F8, slots)
                .w(0x76FF, 0xB69A, 0x6718, 0x5392, 0x6614)
                .l(0x24EAFFFC)
                .w(0x205A, 0x4E90, 0xB4FC, slots + 24, 0x6DEA)
                .l(chained)
                .w(RTE, 0x508A, 0x60F0))
        self.emit(handler, code.bytes(), "auto-int 5 timer dispatcher")
        self.emit_data(t.vector_address(AUTOINT5_VECTOR), longs(handler), "auto-int 5 vector")

        # reset-time timer initialization
        code = (CodeBuilder()
                .w(0x7000)
                .abs_ea(0x21C0, 0x23C0, fifty_msec_tick)
                .w(LEA_ABS_W_A0, timers + 0x0A, 0x43F8, slots - 2 * count)
                .b(0x74, count - 1)
                .w(0x72FF, 0x20C1, 0x20C0, 0x32C0)
                .l(0x51CAFFF8)
                .w(0x22C1, 0x22C0, 0x22C0, 0x22C1, 0x22C0, 0x22C0, RTS))
        self.emit(init, code.bytes(), f"timer init, {count} slots")

        register = self.base + OSV_REGISTER_TIMER
        code = (CodeBuilder()
                .w(0x7000).l(0x322F0004).w(0x5341, 0x74FF)
                .l(0x0C410002).w(0x641C)
                .w(LEA_ABS_W_A0, slots).l(0xC2FC000C).w(0xD1C1)
                .w(0xB490, 0x660E).l(0x242F0006)
                .w(0x20C2, 0x20C2).l(0x20AF000A)
                .w(0x5240, RTS))
        self.emit(register, code.bytes(), "OSVRegisterTimer")
        self.emit_data(t.dispatch_slot(RomCall.OSVRegisterTimer), longs(register),
                       "OSVRegisterTimer entry")

        free = self.base + OSV_FREE_TIMER
        code = (CodeBuilder()
                .w(0x7000).l(0x322F0004).w(0x5341, 0x74FF)
                .l(0x0C410002).w(0x6412)
                .w(LEA_ABS_W_A0, slots).l(0xC3FC000C).w(0xD1C1)
                .w(0x20C2, 0x4298, 0x4290)
                .w(0x5240, RTS))
        self.emit(free, code.bytes(), "OSVFreeTimer")
        self.emit_data(t.dispatch_slot(RomCall.OSVFreeTimer), longs(free),
                       "OSVFreeTimer entry")
