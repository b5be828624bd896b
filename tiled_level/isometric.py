"""
Isometric projection between tile coordinates and screen pixels

=============================================================================
WHAT IS AN ISOMETRIC MAP?
=============================================================================

In an isometric map the tile grid is rotated 45 degrees and squashed, so
each tile appears as a diamond twice as wide as it is tall:

                 (0,0)
                /     \\
           (0,1)       (1,0)
          /     \\     /     \\
     (0,2)       (1,1)       (2,0)

Moving +1 along the tile X axis goes right-down on screen, moving +1
along tile Y goes left-down.

=============================================================================
COORDINATE TRANSFORMATION MATH
=============================================================================

Tile to screen:
    ax = tx + start_x
    ay = ty + start_y
    screen_x = (ax - ay) * tile_width  / 2 + offset_x + global_offset_x
    screen_y = (ax + ay) * tile_height / 2 + offset_y + global_offset_y

Screen to tile (exact inverse):
    dx = (screen_x - offset_x - global_offset_x) / tile_width
    dy = (screen_y - offset_y - global_offset_y) / tile_height
    tx = dx + dy - start_x
    ty = dy - dx - start_y

start_x/start_y shift the grid origin (infinite maps whose first chunk is
not at 0,0). offset_x/offset_y are per-layer pixel offsets,
global_offset_x/global_offset_y a whole-map pan.

Picking (which tile is under the mouse?) floors the inverse, so points
just left of/above a tile's origin belong to the previous tile, also for
negative coordinates.

=============================================================================
"""

import math
from typing import Tuple

import numpy as np


class IsometricProjection:
    """
    Isometric transform with fixed tile size and offsets.

    Example:
        proj = IsometricProjection(64, 32)
        proj.tile_to_screen(1, 0)       # (32.0, 16.0)
        proj.screen_to_tile(32, 16)     # (1, 0)
    """

    def __init__(self, tile_width: float, tile_height: float,
                 start_x: int = 0, start_y: int = 0,
                 offset_x: float = 0.0, offset_y: float = 0.0,
                 global_offset_x: float = 0.0, global_offset_y: float = 0.0):
        if tile_width <= 0 or tile_height <= 0:
            raise ValueError(f"Tile size must be positive, got {tile_width}x{tile_height}")

        self.tile_width = tile_width
        self.tile_height = tile_height
        self.start_x = start_x
        self.start_y = start_y
        self.offset_x = offset_x
        self.offset_y = offset_y
        self.global_offset_x = global_offset_x
        self.global_offset_y = global_offset_y

    @property
    def origin(self) -> Tuple[float, float]:
        """Screen position of the (unshifted) grid origin."""
        return (self.offset_x + self.global_offset_x,
                self.offset_y + self.global_offset_y)

    def world_to_iso(self, tile_x: float, tile_y: float) -> Tuple[float, float]:
        """Tile coordinates (fractional allowed) to screen pixels."""
        ax = tile_x + self.start_x
        ay = tile_y + self.start_y
        ox, oy = self.origin
        return ((ax - ay) * self.tile_width / 2.0 + ox,
                (ax + ay) * self.tile_height / 2.0 + oy)

    tile_to_screen = world_to_iso

    def iso_to_world(self, screen_x: float, screen_y: float) -> Tuple[float, float]:
        """Screen pixels to fractional tile coordinates."""
        ox, oy = self.origin
        dx = (screen_x - ox) / self.tile_width
        dy = (screen_y - oy) / self.tile_height
        return (dx + dy - self.start_x,
                dy - dx - self.start_y)

    def screen_to_tile(self, screen_x: float, screen_y: float) -> Tuple[int, int]:
        """Tile under a screen point."""
        tx, ty = self.iso_to_world(screen_x, screen_y)
        return math.floor(tx), math.floor(ty)

    def tiles_to_screen(self, tile_xs, tile_ys) -> Tuple[np.ndarray, np.ndarray]:
        """
        Vectorized world_to_iso for whole layers at once.

            ys, xs = np.indices((layer.height, layer.width))
            sx, sy = proj.tiles_to_screen(xs, ys)
        """
        ax = np.asarray(tile_xs, dtype=np.float64) + self.start_x
        ay = np.asarray(tile_ys, dtype=np.float64) + self.start_y
        ox, oy = self.origin
        return ((ax - ay) * (self.tile_width / 2.0) + ox,
                (ax + ay) * (self.tile_height / 2.0) + oy)

    def screen_to_tiles(self, screen_xs, screen_ys) -> Tuple[np.ndarray, np.ndarray]:
        """Vectorized screen_to_tile; returns integer arrays."""
        ox, oy = self.origin
        dx = (np.asarray(screen_xs, dtype=np.float64) - ox) / self.tile_width
        dy = (np.asarray(screen_ys, dtype=np.float64) - oy) / self.tile_height
        return (np.floor(dx + dy - self.start_x).astype(np.int64),
                np.floor(dy - dx - self.start_y).astype(np.int64))


def world_to_iso(tile_x: float, tile_y: float, tile_width: float, tile_height: float,
                 start_x: int = 0, start_y: int = 0,
                 offset_x: float = 0.0, offset_y: float = 0.0,
                 global_offset_x: float = 0.0, global_offset_y: float = 0.0) -> Tuple[float, float]:
    return IsometricProjection(tile_width, tile_height, start_x, start_y, offset_x, offset_y,
                               global_offset_x, global_offset_y).world_to_iso(tile_x, tile_y)


def iso_to_world(screen_x: float, screen_y: float, tile_width: float, tile_height: float,
                 start_x: int = 0, start_y: int = 0,
                 offset_x: float = 0.0, offset_y: float = 0.0,
                 global_offset_x: float = 0.0, global_offset_y: float = 0.0) -> Tuple[float, float]:
    return IsometricProjection(tile_width, tile_height, start_x, start_y, offset_x, offset_y,
                               global_offset_x, global_offset_y).iso_to_world(screen_x, screen_y)


def tile_to_screen(tile_x: float, tile_y: float, tile_width: float, tile_height: float,
                   start_x: int = 0, start_y: int = 0,
                   offset_x: float = 0.0, offset_y: float = 0.0,
                   global_offset_x: float = 0.0, global_offset_y: float = 0.0) -> Tuple[float, float]:
    return world_to_iso(tile_x, tile_y, tile_width, tile_height, start_x, start_y,
                        offset_x, offset_y, global_offset_x, global_offset_y)


def screen_to_tile(screen_x: float, screen_y: float, tile_width: float, tile_height: float,
                   start_x: int = 0, start_y: int = 0,
                   offset_x: float = 0.0, offset_y: float = 0.0,
                   global_offset_x: float = 0.0, global_offset_y: float = 0.0) -> Tuple[int, int]:
    return IsometricProjection(tile_width, tile_height, start_x, start_y, offset_x, offset_y,
                               global_offset_x, global_offset_y).screen_to_tile(screen_x, screen_y)
