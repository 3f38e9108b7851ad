#!/usr/bin/env python3
"""
Module that includes functions for reading, writing, and applying IPS binary patches.

Details of the IPS format:
- https://zerosoft.zophar.net/ips.php
- http://justsolve.archiveteam.org/wiki/IPS_(binary_patch_format)

When executed as a command-line tool, the path to an IPS file needs to be provided. If no input file
is given, the hunks in the patch will be listed. If an input file is given, the patch will be
applied to it in place, or to a copy of it if an output path is also provided.
"""
import argparse
import dataclasses
import io
import logging
import os
import platform
import shutil
import struct
import sys

from enum import IntEnum
from typing import Callable, Optional

__version__ = '1.0.0'

log = logging.getLogger(__name__)

HEADER = b'PATCH'
EOF = b'EOF'

MAX_OFFSET = 0xFFFFFF
MAX_LENGTH = 0xFFFF

windows = platform.system() == 'Windows'


class IPSError(Exception):
    pass


class ParsingError(IPSError):
    pass


class PatchingError(IPSError):
    pass


def encode_uint24(value: int) -> bytes:
    return struct.pack('>I', value & MAX_OFFSET)[1:]


def decode_uint24(data: bytes) -> int:
    return struct.unpack('>I', b'\x00' + data)[0]


EOF_OFFSET = decode_uint24(EOF)


def _read_exact(f, size: int, description: str) -> bytes:
    data = b''
    try:
        while len(data) < size:
            chunk = f.read(size - len(data))
            if not chunk:
                break
            data += chunk
    except OSError as e:
        raise ParsingError(description) from e
    if len(data) != size:
        raise ParsingError(description) from EOFError(
            f'Expected {size} byte(s), but only {len(data)} could be read.')
    return data


def _read_uint24(f, description: str) -> int:
    return decode_uint24(_read_exact(f, 3, description))


def _read_uint16(f, description: str) -> int:
    return struct.unpack('>H', _read_exact(f, 2, description))[0]


class HunkType(IntEnum):
    REGULAR = 0
    RLE = 1


@dataclasses.dataclass(frozen=True)
class Hunk:
    """
    A single edit in an IPS patch.

    For regular hunks, `length` is the size of `payload`, which is written verbatim at `offset`.

    For RLE hunks, `length` is the run length, and `payload` is the single byte that is written
    `length` times at `offset`. In the file, RLE hunks are recognized by a length field of zero.
    """
    type: HunkType
    offset: int
    length: int
    payload: bytes

    def __post_init__(self):
        if not 0 <= self.length <= MAX_LENGTH:
            raise ValueError(f'Hunk length ({self.length}) is out of range [0, {MAX_LENGTH}].')
        if self.type == HunkType.REGULAR:
            if self.length == 0:
                # A zero length field is reserved for RLE hunks.
                raise ValueError('Regular hunks cannot have an empty payload.')
            if len(self.payload) != self.length:
                raise ValueError(f'Payload size ({len(self.payload)}) does not match hunk length '
                                 f'({self.length}).')
        elif len(self.payload) != 1:
            raise ValueError(f'RLE hunks require a single-byte payload; got {len(self.payload)} '
                             'bytes.')

    def data(self) -> bytes:
        """Bytes that applying the hunk writes at its offset."""
        if self.type == HunkType.RLE:
            return self.payload * self.length
        return self.payload


def regular_hunk(offset: int, payload: bytes) -> Hunk:
    return Hunk(HunkType.REGULAR, offset, len(payload), bytes(payload))


def rle_hunk(offset: int, run_length: int, value: int) -> Hunk:
    return Hunk(HunkType.RLE, offset, run_length, bytes((value, )))


def _read_hunk(f, offset: int, length: int) -> Hunk:
    if length == 0:
        run_length = _read_uint16(f, 'Unable to read RLE run length.')
        payload = _read_exact(f, 1, 'Unable to read RLE payload.')
        return Hunk(HunkType.RLE, offset, run_length, payload)

    payload = _read_exact(f, length, 'Unable to read payload.')
    return Hunk(HunkType.REGULAR, offset, length, payload)


def _write_hunk(hunk: Hunk, f):
    if hunk.offset & MAX_OFFSET == EOF_OFFSET:
        log.warning(f'Hunk offset 0x{EOF_OFFSET:06X} matches the EOF marker; readers will '
                    'interpret it as the end of the patch.')

    f.write(encode_uint24(hunk.offset))
    if hunk.type == HunkType.RLE:
        f.write(struct.pack('>HHB', 0, hunk.length, hunk.payload[0]))
    else:
        f.write(struct.pack('>H', hunk.length))
        f.write(hunk.payload)


def _apply_hunk(hunk: Hunk, target):
    if hunk.type == HunkType.RLE:
        description = 'Unable to apply RLE hunk.'
    else:
        description = 'Unable to apply regular hunk.'

    data = hunk.data()
    try:
        target.seek(hunk.offset)
        written = target.write(data)
    except (OSError, ValueError) as e:
        raise PatchingError(description) from e

    # Buffered streams always write everything; raw streams may not.
    if written is not None and written != len(data):
        raise PatchingError(description) from OSError(
            f'Only {written} of {len(data)} byte(s) were written at offset 0x{hunk.offset:06X}.')


def _truncate_target(target, size: int):
    try:
        current_size = target.seek(0, os.SEEK_END)
        # Truncation can only shrink the target; some targets (e.g. files) would otherwise grow.
        target.truncate(min(current_size, size))
    except (OSError, ValueError) as e:
        raise PatchingError('Unable to truncate target.') from e


@dataclasses.dataclass
class Patch:
    hunks: list[Hunk] = dataclasses.field(default_factory=list)
    truncate: Optional[int] = None

    def add_hunk(self, hunk: Hunk):
        self.hunks.append(hunk)

    def with_hunk(self, hunk: Hunk) -> 'Patch':
        self.add_hunk(hunk)
        return self

    def with_truncate(self, truncate: int) -> 'Patch':
        self.truncate = truncate
        return self


def _read_header(f):
    header = _read_exact(f, len(HEADER), 'Unable to parse header.')
    if header != HEADER:
        raise ParsingError('Invalid header.')


def _read_hunks(f, hunk_callback: Callable[[Hunk], None]) -> Optional[int]:
    """
    Reads hunks until the EOF marker is found, passing each of them to `hunk_callback` in order.

    Returns the truncate length that follows the EOF marker, or `None` if the patch ends right after
    the marker.
    """
    while True:
        offset = _read_uint24(f, 'Unable to parse offset.')
        if offset == EOF_OFFSET:
            break
        length = _read_uint16(f, 'Unable to read length.')
        hunk_callback(_read_hunk(f, offset, length))

    try:
        data = f.read(3)
    except OSError as e:
        raise ParsingError('Unable to read truncate.') from e
    if not data:
        return None
    if len(data) < 3:
        # A raw stream may deliver fewer bytes than requested without being at the end.
        data += _read_exact(f, 3 - len(data), 'Unable to read truncate.')
    return decode_uint24(data)


def read_patch(f) -> Patch:
    patch = Patch()
    _read_header(f)
    patch.truncate = _read_hunks(f, patch.add_hunk)
    return patch


def write_patch(patch: Patch, f):
    f.write(HEADER)
    for hunk in patch.hunks:
        _write_hunk(hunk, f)
    f.write(EOF)
    if patch.truncate is not None:
        f.write(encode_uint24(patch.truncate))


def patch_to_bytes(patch: Patch) -> bytes:
    f = io.BytesIO()
    write_patch(patch, f)
    return f.getvalue()


def apply_patch(patch: Patch, target):
    for hunk in patch.hunks:
        _apply_hunk(hunk, target)
    if patch.truncate is not None:
        _truncate_target(target, patch.truncate)

    log.debug(f'Applied {len(patch.hunks)} hunk(s).')


def stream_apply_patch(f, target):
    """
    Applies the IPS patch read from `f` to `target`, one hunk at a time as they are read.

    The result is the same as reading the patch with `read_patch()` and applying it with
    `apply_patch()`, except that the hunks are not retained. If the patch turns out to be malformed
    half way through, the hunks read until then will have been applied already.
    """
    hunk_count = 0

    def apply_hunk(hunk: Hunk):
        nonlocal hunk_count
        _apply_hunk(hunk, target)
        hunk_count += 1

    _read_header(f)
    truncate = _read_hunks(f, apply_hunk)
    if truncate is not None:
        _truncate_target(target, truncate)

    log.debug(f'Applied {hunk_count} hunk(s).')


def patch_bytes(data: bytes, patch: Patch) -> bytes:
    target = io.BytesIO(data)
    apply_patch(patch, target)
    return target.getvalue()


def read_ips_file(filepath: str) -> Patch:
    with open(filepath, 'rb') as f:
        return read_patch(f)


def write_ips_file(patch: Patch, filepath: str):
    with open(filepath, 'wb') as f:
        write_patch(patch, f)


def apply_ips_file(ips_filepath: str, filepath: str, streaming: bool = False):
    if streaming:
        with open(ips_filepath, 'rb') as f, open(filepath, 'r+b') as target:
            stream_apply_patch(f, target)
        return

    # The patch is fully read before the target is opened, so that a malformed patch leaves the
    # target untouched.
    patch = read_ips_file(ips_filepath)
    with open(filepath, 'r+b') as target:
        apply_patch(patch, target)


class _CustomFormatter(logging.Formatter):
    yellow = '\x1b[0;33m' if not windows else ''
    bold_red = '\x1b[1;91m' if not windows else ''
    bold_fucsia = '\x1b[1;95m' if not windows else ''
    reset = '\x1b[0m' if not windows else ''

    def __init__(self):
        super().__init__()

        fmt = '%(asctime)s %(levelname)-8s %(message)s'
        datefmt = '%Y-%m-%d %H:%M:%S'
        self.__formatters = {
            logging.DEBUG: logging.Formatter(fmt, datefmt),
            logging.INFO: logging.Formatter(fmt, datefmt),
            logging.WARNING: logging.Formatter(self.yellow + fmt + self.reset, datefmt),
            logging.ERROR: logging.Formatter(self.bold_red + fmt + self.reset, datefmt),
            logging.CRITICAL: logging.Formatter(self.bold_fucsia + fmt + self.reset, datefmt),
        }

    def format(self, record):
        return self.__formatters[record.levelno].format(record)


def _log_patch(patch: Patch):
    for i, hunk in enumerate(patch.hunks):
        if hunk.type == HunkType.RLE:
            log.info(f'#{i:<5} 0x{hunk.offset:06X}  RLE      {hunk.length:>5} x '
                     f'0x{hunk.payload[0]:02X}')
        else:
            log.info(f'#{i:<5} 0x{hunk.offset:06X}  regular  {hunk.length:>5} byte(s)')

    if patch.truncate is not None:
        log.info(f'Truncate to {patch.truncate} (0x{patch.truncate:06X}) bytes.')

    rle_count = sum(1 for hunk in patch.hunks if hunk.type == HunkType.RLE)
    log.info(f'{len(patch.hunks)} hunk(s) in total: {len(patch.hunks) - rle_count} regular, '
             f'{rle_count} RLE.')


def create_args_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument('patch', type=str, help='Path to the IPS file.')
    parser.add_argument('input',
                        type=str,
                        nargs='?',
                        help='Path to the file that the patch will be applied to. If not '
                        'specified, the hunks in the patch will be listed instead.')
    parser.add_argument('-o',
                        '--output',
                        type=str,
                        help='Path where the patched file will be written. If not specified, the '
                        'input file will be patched in place.')
    parser.add_argument('--streaming',
                        action='store_true',
                        help='If specified, hunks will be applied as they are read, without '
                        'loading the whole patch in memory first.')
    parser.add_argument('--verbose', action='store_true', help='Enable debug messages.')
    return parser


def main(argv: Optional[list[str]] = None):
    args = create_args_parser().parse_args(argv)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(_CustomFormatter())
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        handlers=(console_handler, ))

    try:
        if args.input is None:
            if args.output:
                raise IPSError('An input file is required when an output path is specified.')
            _log_patch(read_ips_file(args.patch))
            return

        filepath = args.input
        if args.output:
            if os.path.abspath(args.output) == os.path.abspath(args.input):
                raise IPSError('Paths to the input and output files must be different.')
            shutil.copyfile(args.input, args.output)
            filepath = args.output

        apply_ips_file(args.patch, filepath, streaming=args.streaming)
        log.info(f'Patch applied to "{filepath}".')

    except IPSError as e:
        log.error(str(e))
        sys.exit(1)
    except Exception as e:
        log.exception(str(e) or 'Unknown error.')
        sys.exit(1)


if __name__ == '__main__':
    main()
