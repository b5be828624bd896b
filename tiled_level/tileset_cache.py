"""
Shared cache of parsed external tilesets.

Many maps of a game usually point at the same few tileset files. The
cache parses each file once and hands the same Tileset back afterwards.

Cached tilesets are shared, so callers must treat them as read-only; the
loader deep-copies before assigning a map's firstgid.

All table operations take one lock. Parsing happens while the lock is
held, so two threads asking for the same missing file never parse it
twice, at the cost of serializing unrelated misses.
"""

import logging
import os
import threading
from pathlib import Path
from typing import Dict, Optional, Union

from .structures import Tileset
from .tileset_parser import parse_tileset_file

logger = logging.getLogger(__name__)


def normalize_key(path: Union[str, Path]) -> str:
    return os.path.normcase(os.path.abspath(os.fspath(path)))


class TilesetCache:

    def __init__(self):
        self._lock = threading.Lock()
        self._tilesets: Dict[str, Tileset] = {}

    def get_tileset(self, path: Union[str, Path]) -> Tileset:
        """
        Return the tileset for `path`, parsing and storing it on first use.

        Parse errors propagate and nothing is stored for the failing path.
        """
        key = normalize_key(path)
        with self._lock:
            tileset = self._tilesets.get(key)
            if tileset is not None:
                logger.debug("Tileset cache hit: %s", key)
                return tileset

            logger.debug("Tileset cache miss: %s", key)
            tileset = parse_tileset_file(key)
            self._tilesets[key] = tileset
            return tileset

    def add_tileset(self, path: Union[str, Path], tileset: Tileset):
        with self._lock:
            self._tilesets[normalize_key(path)] = tileset

    def has_tileset(self, path: Union[str, Path]) -> bool:
        with self._lock:
            return normalize_key(path) in self._tilesets

    def clear(self):
        with self._lock:
            self._tilesets.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tilesets)


_default_cache: Optional[TilesetCache] = None
_default_cache_lock = threading.Lock()


def default_cache() -> TilesetCache:
    """Process-wide cache for hosts that do not manage their own."""
    global _default_cache
    with _default_cache_lock:
        if _default_cache is None:
            _default_cache = TilesetCache()
        return _default_cache
