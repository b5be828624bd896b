"""
Error kinds and exceptions raised while loading Tiled maps

=============================================================================
ERROR KINDS
=============================================================================

Everything that can go wrong while reading a map falls in one of four
buckets:

    FORMAT          The file is not a map we understand: unparsable XML or
                    JSON, wrong root element, unknown file extension, group
                    nesting deeper than allowed.

    DATA_INTEGRITY  The file parses but its content is inconsistent, e.g. a
                    tile layer holding 99 GIDs when width*height is 100.

    REFERENCE       Something the map points to cannot be used: a missing
                    map file, a missing or broken external tileset.

    DECODE          Tile data that is not empty but cannot be decoded
                    (corrupt base64, truncated zlib stream, ...).

A bad orientation or render order string is NOT an error: the loader logs a
warning and substitutes the default.

=============================================================================
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .structures import TiledMap


class ErrorKind(Enum):
    FORMAT = "format"
    DATA_INTEGRITY = "data-integrity"
    REFERENCE = "reference"
    DECODE = "decode"


class TiledError(Exception):
    """Base class for every error raised by this package."""

    kind = ErrorKind.FORMAT

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class FormatError(TiledError):
    kind = ErrorKind.FORMAT


class DataIntegrityError(TiledError):
    kind = ErrorKind.DATA_INTEGRITY


class ReferenceFileError(TiledError):
    """A referenced file is missing or unusable."""
    kind = ErrorKind.REFERENCE


class MapReferenceError(ReferenceFileError):
    pass


class TilesetReferenceError(ReferenceFileError):
    pass


class DecodeError(TiledError):
    """Non-empty tile data that could not be decoded or decompressed."""
    kind = ErrorKind.DECODE


# What int(), float(), numpy and dict access raise on values of the wrong
# shape; the parsers report these as FormatError
MALFORMED_VALUE_ERRORS = (ValueError, TypeError, AttributeError, OverflowError)


@dataclass
class LoadResult:
    """
    Tagged outcome of a map load.

    Exactly one of the two shapes is produced:

        LoadResult(map=<TiledMap>)                      -> ok is True
        LoadResult(error_kind=ErrorKind.X, message=...) -> ok is False

    A failed load never carries a partially built map.
    """
    map: Optional['TiledMap'] = None
    error_kind: Optional[ErrorKind] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error_kind is None and self.map is not None

    @classmethod
    def success(cls, tiled_map: 'TiledMap') -> 'LoadResult':
        return cls(map=tiled_map)

    @classmethod
    def failure(cls, error: TiledError) -> 'LoadResult':
        return cls(error_kind=error.kind, message=error.message)
