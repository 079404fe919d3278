"""
errors.py — Failure taxonomy shared by the container layer, the engine and
the CLI.  Each exception carries the process exit code tios_patch returns.
"""


class PatchError(Exception):
    """Base class for every failure the patcher reports."""
    exit_code = 1


# ── Input validation (raised before anything is written) ─────────

class FormatError(PatchError, ValueError):
    exit_code = 3


class UnknownCalculatorError(FormatError):
    exit_code = 4


class UnsupportedVersionError(FormatError):
    exit_code = 5


class SizeMismatchError(FormatError):
    exit_code = 6


# ── Input / output files ──────────────────────────────────────────────────────────────────────────────────────────

class InputIOError(PatchError, OSError):
    exit_code = 2


class OutputExistsError(PatchError, FileExistsError):
    exit_code = 7


class OutputIOError(PatchError, OSError):
    exit_code = 8


# ── Engine ───────────────────────────────────────────────────────

class ChecksumMismatchError(PatchError, ValueError):
    exit_code = 9

    def __init__(self, stored, computed):
        super().__init__(
            f"computed checksum {computed:08X} does not match the checksum "
            f"embedded into AMS ({stored:08X}); use a pristine copy of AMS")
        self.stored = stored
        self.computed = computed


class PatternNotFoundError(PatchError, LookupError):
    exit_code = 10


class StreamExhaustedError(PatternNotFoundError):
    pass


class OutOfRangeError(PatchError, IndexError):
    exit_code = 11


class TruncatedImageError(OutOfRangeError):
    pass
