"""
tiled_level - load Tiled maps (TMX/TMJ) and tilesets (TSX/TSJ)

    from tiled_level import TiledLevelLoader

    level = TiledLevelLoader().load("level1.tmx")
    for layer in level.tile_layers():
        ...
"""

from .errors import (
    ErrorKind, TiledError, FormatError, DataIntegrityError, ReferenceFileError,
    MapReferenceError, TilesetReferenceError, DecodeError, LoadResult
)
from .decoder import decode_tile_data, encode_tile_data
from .structures import (
    Property, Image, Tile, TileOffset, Tileset, Chunk, MapObject, ObjectShape, Point,
    TileLayer, ObjectGroup, ImageLayer, LayerGroup, LayerType, TiledMap, Orientation,
    RenderOrder, ResolvedGid, GidIndex, resolve_gid, find_tileset_for_gid,
    get_all_image_paths, get_tile_id, FLIPPED_HORIZONTALLY_FLAG, FLIPPED_VERTICALLY_FLAG,
    FLIPPED_DIAGONALLY_FLAG, TILE_ID_MASK
)
from .tileset_parser import TilesetParser, parse_tileset_file
from .tileset_cache import TilesetCache, default_cache
from .loader import TiledLevelLoader, LoadState
from .isometric import IsometricProjection
from .level_parser import LevelParser, LevelParseResult

__version__ = "0.1.0"
