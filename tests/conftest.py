"""
Synthetic AMS updates for the test-suite.

SyntheticAMS lays out a TIFL container whose basecode carries every
structure the patcher resolves (vector table, ROM_CALL table, trap #9 /
trap #$B tables, OO_SYSTEM_FRAME attributes) and every signature the stages
search for, at the fixed addresses listed below, with a valid checksum.
"""

import struct

import pytest

from tiospatch import EngineContext, Feature
from tiospatch.tables import RomCall
from tiospatch.variants import SHRINK_PLANS, Calculator

HEAD = 0x4E
IMAGE_START = 0x212000
DISPATCH_TABLE = 0x300000

# reset code: end of `move.w #$1F,$700012`
PORT_700012 = 0x212200

# system code (searched from base + 0x20000)
A244_SITES = (0x220100, 0x220110, 0x220120)
FLASHAPP_PCREL = 0x2201F8
FLASHAPP_MARKER = 0x220200
FLASHAPP_MEMCMP_REF = 0x220320
ASM_LIMIT = 0x220400

# ROM_CALLs
EX_STOBCD = 0x240000
EM_GET_ARCHIVE = 0x240100
ARCHIVE_ROUNDING = 0x240120
XR_STRINGPTR = 0x240200
HEAPDEREF = 0x240400
DRAWCHAR = 0x240500
CHAR_ROUTINE = 0x240626
SF_WIDTH = 0x240800
CONTRAST_UP = 0x240900
CONTRAST_DN = 0x240940
CONTRAST_POP = 0x240950
CONTRAST_PUSH = 0x240958
TIMER_INIT_MOVEM = 0x240A00
OS_REGISTER_TIMER = 0x240A40
MEMCMP = 0x250000
OO_CONDGETATTR = 0x250100
FONT_4X6 = 0x260000
FONT_6X8 = 0x260100
FONT_8X10 = 0x260200
RELEASE_VERSION = 0x2F0000

# RAM variables
HEAP_TABLE = 0x5D42
EV_RUNNINGAPP = 0x7C94
FIFTY_MSEC_TICK = 0x7C00
TIMER_SLOTS = 0x5B00
TIMERS = 0x5A00

# trap handlers and tables
TRAP9_HANDLER = 0x241000
TRAP9_TABLE = 0x241100
TRAPB_HANDLER = 0x241200
TRAPB_SIGNATURE = 0x241210
TRAPB_TABLE = 0x241300
TRAPB_FUNCTION_10 = 0x241400
MOVE_USP = 0x241220
TRAP10_HANDLER = 0x241500
FRAME = 0x241600
STRING_TABLE = 0x241700
STRING_LIMIT = 0x12C
AI5_HANDLER = 0x241800
AI5_FIRST = 0x2F002F01
AI5_RTE = 0x241820
AI5_CHAINED = 0x12345678
TRAP3_ORIGINAL = 0x241900

END_SIGNATURE = b"\x02\x0d\x40" + bytes(range(64))

BUILDS = {
    "2.05": (Calculator.TI89, 9, 0x124772),
    "2.08": (Calculator.TI89, 11, 0x12E01A),
    "2.09": (Calculator.TI89, 12, 0x12E2FE),
    "2.09-92p": (Calculator.TI92P, 12, 0x12DC4E),
    "3.01": (Calculator.TI89T, 13, 0x14565A),
}

ASM_SIGNATURES = {"2.05": 0x0C526000, "2.08": 0x0C536000, "2.09": 0x0C536000}


class SyntheticAMS:

    def __init__(self, build="2.05", license_size=0):
        calculator, version_type, basecode_size = BUILDS[build]
        self.release = build.split("-")[0]
        self.calculator = calculator
        self.version_type = version_type
        self.basecode_size = basecode_size
        self.license_size = license_size
        self.head = HEAD + license_size
        self.delta = IMAGE_START - self.head
        self.data = bytearray(self.head + basecode_size + 2 + 4 + len(END_SIGNATURE))

        self._container()
        self._tables()
        self._code()
        if (calculator, version_type) in SHRINK_PLANS:
            self._shrink_tail()
        self.seal()

    # ── Raw access by absolute address ───────────────────────────
    def off(self, addr):
        return addr - self.delta

    def put(self, addr, fmt, *values):
        struct.pack_into(">" + fmt, self.data, self.off(addr), *values)

    def u16(self, addr):
        return struct.unpack_from(">H", self.data, self.off(addr))[0]

    def u32(self, addr):
        return struct.unpack_from(">I", self.data, self.off(addr))[0]

    def at(self, addr, count):
        return bytes(self.data[self.off(addr):self.off(addr) + count])

    def vector(self, off, addr=None):
        if addr is None:
            return self.u32(IMAGE_START + 0x88 + off)
        self.put(IMAGE_START + 0x88 + off, "I", addr)

    def rom_call(self, idx, addr=None):
        if addr is None:
            return self.u32(DISPATCH_TABLE + 4 * idx)
        self.put(DISPATCH_TABLE + 4 * idx, "I", addr)

    @property
    def summed_length(self):
        return self.u32(IMAGE_START + 2) + 2

    def seal(self):
        """Embed the checksum of the current contents."""
        length = self.summed_length
        words = struct.unpack_from(f">{length // 2}H", self.data, self.off(IMAGE_START))
        self.put(IMAGE_START + length, "I", sum(words) & 0xFFFFFFFF)
        return self

    def write(self, path):
        path.write_bytes(bytes(self.data))
        return path

    # ── Layout ───────────────────────────────────────────────────
    def _container(self):
        d = self.data
        d[0:8] = b"**TIFL**"
        if self.license_size:
            d[0x11:0x18] = b"License"
            d[0x40:0x60] = b"Texas Instruments License Agreem"
            d[self.license_size:self.license_size + 8] = b"**TIFL**"
            d[self.license_size + 0x11:self.license_size + 0x19] = b"basecode"
        else:
            d[0x11:0x19] = b"basecode"
        struct.pack_into("<I", d, self.head - 4, len(d) - self.head)

        self.put(IMAGE_START, "HI", 0x800F, self.basecode_size)
        d[self.head + 8] = self.calculator
        d[self.head + 11] = self.version_type
        name = b"Advanced Mathematics Software"
        d[self.head + 0x16:self.head + 0x16 + len(name)] = name
        self.put(IMAGE_START + 0x80, "I", self.basecode_size - 0x80)

        end = IMAGE_START + self.basecode_size + 2 + 4
        self.data[self.off(end):self.off(end) + len(END_SIGNATURE)] = END_SIGNATURE

    def _tables(self):
        self.vector(0xC8, DISPATCH_TABLE)
        self.vector(0xA4, TRAP9_HANDLER)
        self.vector(0xA8, TRAP10_HANDLER)
        self.vector(0xAC, TRAPB_HANDLER)
        self.vector(0x74, AI5_HANDLER)
        self.vector(0x8C, TRAP3_ORIGINAL)

        self.rom_call(RomCall.ROM_CALL_COUNT, 0x5FF)
        for idx, addr in (
            (RomCall.EX_stoBCD, EX_STOBCD),
            (RomCall.EM_GetArchiveMemoryBeginning, EM_GET_ARCHIVE),
            (RomCall.XR_stringPtr, XR_STRINGPTR),
            (RomCall.memcmp, MEMCMP),
            (RomCall.HeapDeref, HEAPDEREF),
            (RomCall.HeapTable, HEAP_TABLE),
            (RomCall.DrawChar, DRAWCHAR),
            (RomCall.sf_width, SF_WIDTH),
            (RomCall.EV_runningApp, EV_RUNNINGAPP),
            (RomCall.OO_CondGetAttr, OO_CONDGETATTR),
            (RomCall.OSContrastUp, CONTRAST_UP),
            (RomCall.OSContrastDn, CONTRAST_DN),
            (RomCall.FiftyMsecTick, FIFTY_MSEC_TICK),
            (RomCall.OSRegisterTimer, OS_REGISTER_TIMER),
            (RomCall.ReleaseVersion, RELEASE_VERSION),
        ):
            self.rom_call(idx, addr)
        text = self.release.encode() + b"\0"
        self.data[self.off(RELEASE_VERSION):self.off(RELEASE_VERSION) + len(text)] = text

        # trap #9: lea table,a0
        self.put(TRAP9_HANDLER, "HI", 0x41F9, TRAP9_TABLE)
        self.put(TRAP9_TABLE + 4 * 3, "I", TIMER_SLOTS)
        self.put(TRAP9_TABLE + 4 * 4, "I", TIMERS)

        # trap #$B: lea table(pc),a0 ... mulu.w #6,d3
        self.put(TRAPB_SIGNATURE - 2, "h", TRAPB_TABLE - (TRAPB_SIGNATURE - 2))
        self.put(TRAPB_SIGNATURE, "I", 0xC6FC0006)
        self.put(TRAPB_TABLE + 6 * 0x10, "I", TRAPB_FUNCTION_10)
        self.put(TRAPB_FUNCTION_10, "HHI", 0x33FC, 0x0001, 0x700012)
        self.put(MOVE_USP, "H", 0x4E68)

        # trap #10 handler holds OO_SYSTEM_FRAME at +10
        self.put(TRAP10_HANDLER + 10, "I", FRAME)
        self.put(FRAME + 4, "I", STRING_TABLE)
        self.put(FRAME + 0x0E, "i", 2)
        self.put(FRAME + 0x12, "IIIIII", 0x300, FONT_4X6, 0x301, FONT_6X8, 0x302, FONT_8X10)
        self.put(STRING_TABLE + 0x0E, "I", STRING_LIMIT)

        # auto-int 5
        self.put(AI5_HANDLER, "I", AI5_FIRST)
        self.put(AI5_RTE - 4, "IH", AI5_CHAINED, 0x4E73)

    def _code(self):
        self.put(PORT_700012 - 26, "H", 0x4A79)
        self.put(PORT_700012 - 20, "H", 0x4A79)
        self.put(PORT_700012 - 14, "H", 0x4A79)
        self.put(PORT_700012 - 8, "HHI", 0x33FC, 0x001F, 0x700012)

        for addr in A244_SITES:
            self.put(addr, "H", 0xA244)
        self.put(FLASHAPP_PCREL, "h", 0x0100)
        self.put(FLASHAPP_MARKER, "IHI", 0x0000020E, 0x4EB9, XR_STRINGPTR)
        self.put(FLASHAPP_MEMCMP_REF - 8, "HHHHI", 0x6608, 0x0000, 0x6008, 0x0000, MEMCMP)
        asm_sig = ASM_SIGNATURES.get(self.release)
        if asm_sig is not None:
            self.put(ASM_LIMIT, "I", asm_sig)

        for off in (0x58, 0x5C, 0x62, 0x68):
            self.put(EX_STOBCD + off, "H", 0xFFFF)
        self.put(ARCHIVE_ROUNDING, "I", 0xFFFF0000)
        self.put(HEAPDEREF, "IH", 0x4E560000, 0x302E)
        self.put(HEAPDEREF + 0x0A, "H", HEAP_TABLE)
        if self.release.startswith("2."):
            self.put(DRAWCHAR + 0x26, "h", CHAR_ROUTINE - (DRAWCHAR + 0x26))
        else:
            self.put(DRAWCHAR + 0x26, "I", CHAR_ROUTINE)

        self.put(CONTRAST_UP, "H", 0x48A7)
        self.put(CONTRAST_DN, "H", 0x48A7)
        self.put(CONTRAST_POP, "H", 0x4C9F)
        self.put(CONTRAST_PUSH, "H", 0x48A7)
        self.put(TIMER_INIT_MOVEM, "H", 0x48E7)

    def _shrink_tail(self):
        plan = SHRINK_PLANS[(self.calculator, self.version_type)]
        src = plan.source
        for i, block in enumerate(plan.blocks):
            self.data[self.off(src):self.off(src) + block.length] = bytes(
                (0x40 + i + n) & 0xFF for n in range(block.length))
            for ref in block.refs:
                self.put(ref, "I", src)
            src += block.length


def open_context(image, features=Feature.HARDCODE_FONTS):
    return EngineContext.open(image.data, image.head, image.calculator,
                              image.version_type, features, verbose=False)


@pytest.fixture
def ams205():
    return SyntheticAMS("2.05")


@pytest.fixture
def ams208():
    return SyntheticAMS("2.08")


@pytest.fixture
def ams301():
    return SyntheticAMS("3.01")
