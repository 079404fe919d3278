#!/usr/bin/env python3
"""
tios_patch.py — Unlock, optimize and fix a TI-68k AMS basecode update.

Usage:
    python3 tios_patch.py [options] base.89u patched_base.89u

    Accepts .89u / .9xu / .v2u updates of AMS 2.05, 2.08, 2.09, 3.01 and
    3.10.  The input is never modified; the output is created only once
    every patch stage has succeeded and the new checksum is embedded.

Options:
    --[no-]ams-hardcode-fonts             (default: enabled)
    --[no-]ams-hardcode-english-language  (default: disabled)
    -q, --quiet

Exit codes:
    0 success, 1 usage (also -h/--help), 2 input not found or unreadable,
    3 wrong file type, 4 unknown calculator, 5 unsupported AMS version,
    6 unexpected size, 7 output exists, 8 output not writable, 9 checksum mismatch,
    10 patch site not found, 11 address outside the image

Dependencies:
    pip install capstone
"""

import sys, os, argparse

from tiospatch import AMSPatcher, EngineContext, Feature, PatchError
from tiospatch.errors import InputIOError, OutputExistsError, OutputIOError
from tiospatch.tifl import check_size, parse_header

EXIT_USAGE = 1
EXIT_INPUT_NOT_FOUND = 2


def build_parser():
    parser = argparse.ArgumentParser(
        prog="tios-patch",
        description="Unlock, optimize and fix a TI-68k AMS basecode update")
    parser.add_argument("input", help="pristine .89u / .9xu / .v2u file")
    parser.add_argument("output", help="patched file to create")
    parser.add_argument("--ams-hardcode-fonts", dest="fonts",
                        action=argparse.BooleanOptionalAction, default=True,
                        help="hard-code the system font pointers")
    parser.add_argument("--ams-hardcode-english-language", dest="english",
                        action=argparse.BooleanOptionalAction, default=False,
                        help="hard-code English (breaks language localizations)")
    parser.add_argument("-q", "--quiet", action="store_true")
    return parser


def features_from_args(args):
    features = Feature.NONE
    if args.fonts:
        features |= Feature.HARDCODE_FONTS
    if args.english:
        features |= Feature.HARDCODE_ENGLISH_LANGUAGE
    return features


def write_output(path, data):
    try:
        with open(path, "xb") as f:
            f.write(data)
    except FileExistsError:
        raise OutputExistsError(f"file '{path}' already exists, refusing to overwrite it") from None
    except OSError as e:
        raise OutputIOError(f"can't create '{path}': {e.strerror or e}") from e


def patch_file(input_path, output_path, features, verbose=True):
    """Patch input_path into a new output_path; returns the patch count."""
    try:
        with open(input_path, "rb") as f:
            raw = f.read()
    except OSError as e:
        raise InputIOError(f"can't read '{input_path}': {e.strerror or e}") from e

    header = parse_header(raw)
    calculator = check_size(header)
    if verbose:
        if header.license_size:
            print(f"[*] {header.license_size} bytes of license at the beginning of the file")
        print(f"[*] AMS basecode: {header.basecode_size} bytes (0x{header.basecode_size:X}), "
              f"calculator {calculator.name}, version type {header.version_type}")

    if os.path.exists(output_path):
        raise OutputExistsError(f"file '{output_path}' already exists, refusing to overwrite it")

    data = bytearray(raw[:header.image_length])
    ctx = EngineContext.open(data, header.head, calculator, header.version_type,
                             features, verbose=verbose)
    n = AMSPatcher(ctx, verbose=verbose).apply()

    write_output(output_path, data)
    if verbose:
        print(f"[+] wrote {output_path} ({len(data)} bytes)")
    return n


def main(argv=None):
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit:
        return EXIT_USAGE

    if not os.path.isfile(args.input):
        print(f"[-] ERROR: file '{args.input}' not found")
        return EXIT_INPUT_NOT_FOUND

    try:
        patch_file(args.input, args.output, features_from_args(args),
                   verbose=not args.quiet)
    except PatchError as e:
        print(f"[-] ERROR: {e}")
        return e.exit_code
    return 0


if __name__ == "__main__":
    sys.exit(main())
