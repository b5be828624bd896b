"""
Tile data decoding (and encoding) for Tiled layer data

=============================================================================
THE DECODE PIPELINE
=============================================================================

Tile layers store a flat list of 32-bit GIDs, one per cell, row by row.
Tiled can write that list in several ways:

    CSV                  "1,2,3,\n4,5,6"
    Base64               "AQAAAAIAAAADAAAA..."   (raw little-endian uint32)
    Base64 + zlib/gzip   "eJxjZGBgYARiJiBmBmIWIGYFYgAAbAAJ"
    Base64 + zstd        (needs the optional zstandard package)

Decoding base64 data is a three stage pipeline:

    text --base64--> bytes --decompress--> bytes --4 bytes LE--> uint32[]

The result is always a numpy uint32 array so callers can reshape it into a
(height, width) grid without copying.

=============================================================================
ERRORS VS EMPTY DATA
=============================================================================

An empty string is a perfectly valid, empty layer and decodes to an empty
array. A NON-empty string that cannot be decoded raises DecodeError. The two
cases are never conflated.

CSV is lenient: a malformed token is skipped with a warning. The result is
then shorter than width*height and the loader's length check rejects it.

=============================================================================
"""

import base64
import binascii
import gzip
import logging
import re
import zlib
from typing import Iterable, Optional

import numpy as np

from .errors import DecodeError

logger = logging.getLogger(__name__)

UINT32_MAX = 0xFFFFFFFF

# 32 + MAX_WBITS: let zlib detect a zlib or a gzip header by itself
AUTO_HEADER_WBITS = 32 + zlib.MAX_WBITS

# Initial output buffer, relative to the compressed size. zlib grows it on
# overflow, so the decompressed length never has to be declared up front.
INITIAL_BUFFER_FACTOR = 10

_WHITESPACE = re.compile(r'\s+')
_BASE64_ALPHABET_PREFIX = re.compile(r'[A-Za-z0-9+/]*')


def empty_tiles() -> np.ndarray:
    return np.zeros(0, dtype=np.uint32)


# =============================================================================
# CSV
# =============================================================================

def parse_csv(csv_data: str) -> np.ndarray:
    """
    Parse comma separated GIDs.

    Whitespace around tokens (including the newlines Tiled inserts after
    every row) is ignored, as are empty tokens from trailing commas.
    Tokens that are not unsigned 32-bit integers are skipped and logged.
    """
    gids = []
    errors = 0

    for position, token in enumerate(csv_data.split(','), start=1):
        token = token.strip()
        if not token:
            continue

        try:
            value = int(token)
        except ValueError:
            errors += 1
            logger.warning("Invalid CSV token at position %d: %r (not a valid number)",
                           position, token)
            continue

        if not 0 <= value <= UINT32_MAX:
            errors += 1
            logger.warning("CSV token out of range at position %d: %r (exceeds uint32)",
                           position, token)
            continue

        gids.append(value)

    if errors:
        logger.warning("Parsed %d valid tiles from CSV with %d errors", len(gids), errors)

    return np.array(gids, dtype=np.uint32)


def decode_tile_array(values: Iterable) -> np.ndarray:
    """
    Convert the JSON array form of layer data ("data": [1, 2, 3]) to uint32.

    Non numeric entries are skipped with a warning, same as bad CSV tokens.
    """
    gids = []
    for position, value in enumerate(values):
        # bool is an int subclass, but true/false is never a GID
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            logger.warning("Ignoring non numeric tile value at index %d: %r", position, value)
            continue
        value = int(value)
        if not 0 <= value <= UINT32_MAX:
            logger.warning("Ignoring out of range tile value at index %d: %d", position, value)
            continue
        gids.append(value)
    return np.array(gids, dtype=np.uint32)


# =============================================================================
# BASE64
# =============================================================================

def decode_base64(encoded: str) -> bytes:
    """
    Decode standard base64, tolerating embedded whitespace.

    Decoding stops silently at the first character outside the alphabet
    (the '=' padding included), so trailing garbage is ignored rather than
    rejected.
    """
    cleaned = _WHITESPACE.sub('', encoded)
    prefix = _BASE64_ALPHABET_PREFIX.match(cleaned).group(0)

    # A single leftover sextet cannot form a byte
    remainder = len(prefix) % 4
    if remainder == 1:
        prefix = prefix[:-1]
        remainder = 0
    if remainder:
        prefix += '=' * (4 - remainder)

    try:
        return base64.b64decode(prefix)
    except binascii.Error as e:
        raise DecodeError(f"Base64 decode failed: {e}") from e


# =============================================================================
# DECOMPRESSION
# =============================================================================

def decompress(raw: bytes, compression: Optional[str]) -> bytes:
    """
    Decompress decoded base64 bytes.

    gzip and zlib take the same path: zlib is told to auto-detect the
    header, so a stream mislabelled by the writer still decodes.
    """
    if not compression:
        return raw

    if compression in ('gzip', 'zlib'):
        try:
            return zlib.decompress(raw, AUTO_HEADER_WBITS,
                                   max(len(raw) * INITIAL_BUFFER_FACTOR, 64))
        except zlib.error as e:
            raise DecodeError(
                f"{compression} decompression failed ({e}); "
                f"input size {len(raw)} bytes, data is corrupted, truncated or invalid"
            ) from e

    if compression == 'zstd':
        # zstd requires external library (not in stdlib)
        try:
            import zstandard as zstd
        except ImportError as e:
            raise DecodeError(
                "zstandard library required for zstd compression. "
                "Install with: pip install zstandard"
            ) from e
        try:
            # decompressobj copes with frames that omit the content size
            return zstd.ZstdDecompressor().decompressobj().decompress(raw)
        except zstd.ZstdError as e:
            raise DecodeError(f"zstd decompression failed: {e}") from e

    raise DecodeError(f"Unsupported compression: '{compression}' "
                      "(supported: gzip, zlib, zstd)")


def bytes_to_tile_ids(raw: bytes) -> np.ndarray:
    """Group bytes four by four into little-endian uint32 GIDs."""
    if len(raw) % 4 != 0:
        raise DecodeError(
            f"Byte array size ({len(raw)}) is not a multiple of 4; "
            f"tile data is corrupted or truncated ({4 - len(raw) % 4} bytes missing)"
        )
    # frombuffer is read-only and may be byte-swapped; astype gives a native copy
    return np.frombuffer(raw, dtype='<u4').astype(np.uint32)


# =============================================================================
# PUBLIC ENTRY POINTS
# =============================================================================

def decode_tile_data(data: str, encoding: Optional[str] = 'csv',
                     compression: Optional[str] = None) -> np.ndarray:
    """
    Decode a layer (or chunk) data string into GIDs.

    Parameters:
    -----------
    data : str
        Text content of <data> (TMX) or the "data" string (TMJ)
    encoding : str
        'csv' or 'base64'. None is treated as csv, the TMJ default.
    compression : str, optional
        None/'' for raw data, 'gzip', 'zlib' or 'zstd' (base64 only)

    Returns:
    --------
    numpy.ndarray of uint32 : may be empty only when `data` is blank

    Raises:
    -------
    DecodeError : unknown encoding/compression, or undecodable non-empty data
    """
    if encoding in (None, '', 'csv'):
        return parse_csv(data or '')

    if encoding != 'base64':
        raise DecodeError(f"Unsupported encoding: '{encoding}' (supported: csv, base64)")

    if not data or not data.strip():
        return empty_tiles()

    raw = decode_base64(data)
    if not raw:
        raise DecodeError(f"Base64 decode failed: {len(data)} characters of input "
                          "produced no bytes")
    logger.debug("Base64 decoded %d bytes", len(raw))

    if compression:
        compressed_size = len(raw)
        raw = decompress(raw, compression)
        logger.debug("%s decompressed from %d to %d bytes",
                     compression, compressed_size, len(raw))

    return bytes_to_tile_ids(raw)


def encode_tile_data(tiles: Iterable[int], encoding: str = 'csv',
                     compression: Optional[str] = None,
                     width: Optional[int] = None) -> str:
    """
    Encode GIDs the way Tiled writes them; inverse of decode_tile_data.

    Parameters:
    -----------
    tiles : iterable of int
        GIDs in row-major order
    encoding : str
        'csv' or 'base64'
    compression : str, optional
        'zlib', 'gzip' or 'zstd' (base64 only)
    width : int, optional
        Row length, used to break CSV output into rows
    """
    gids = np.asarray(list(tiles), dtype=np.uint32)

    if encoding == 'csv':
        values = [str(int(gid)) for gid in gids]
        if not width:
            return ','.join(values)
        # Format as rows for readability
        rows = [','.join(values[start:start + width])
                for start in range(0, len(values), width)]
        return '\n' + ',\n'.join(rows) + '\n'

    if encoding != 'base64':
        raise DecodeError(f"Unsupported encoding: '{encoding}'")

    raw = gids.astype('<u4').tobytes()

    if compression == 'zlib':
        raw = zlib.compress(raw)
    elif compression == 'gzip':
        raw = gzip.compress(raw)
    elif compression == 'zstd':
        import zstandard as zstd
        raw = zstd.ZstdCompressor().compress(raw)
    elif compression:
        raise DecodeError(f"Unsupported compression: '{compression}'")

    return base64.b64encode(raw).decode('ascii')
