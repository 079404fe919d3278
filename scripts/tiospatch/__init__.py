from .ams import STAGES, AMSPatcher, PatchStage
from .context import DEFAULT_FEATURES, EngineContext, Feature
from .errors import (
    ChecksumMismatchError, FormatError, InputIOError, OutOfRangeError, OutputExistsError,
    OutputIOError, PatchError, PatternNotFoundError, SizeMismatchError,
    StreamExhaustedError, TruncatedImageError, UnknownCalculatorError,
    UnsupportedVersionError,
)
from .tifl import TIFLHeader, check_size, parse_header
from .variants import Calculator

__all__ = [
    "AMSPatcher", "PatchStage", "STAGES",
    "EngineContext", "Feature", "DEFAULT_FEATURES",
    "TIFLHeader", "parse_header", "check_size", "Calculator",
    "PatchError", "FormatError", "UnknownCalculatorError",
    "UnsupportedVersionError", "SizeMismatchError", "InputIOError", "OutputExistsError",
    "OutputIOError", "ChecksumMismatchError", "PatternNotFoundError",
    "StreamExhaustedError", "OutOfRangeError", "TruncatedImageError",
]
