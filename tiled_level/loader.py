"""
Level loader - reads a Tiled map (TMX or TMJ) into a TiledMap

=============================================================================
LOAD PIPELINE
=============================================================================

A load walks through a fixed sequence of states:

    DETECT_FORMAT               pick XML or JSON from the file extension
    PARSE_HEADER                map attributes, orientation, properties
    PARSE_TILESETS              embedded tilesets; external ones are deferred
    PARSE_LAYER_TREE            layers and groups into the layer arena
    RESOLVE_EXTERNAL_TILESETS   TSX/TSJ files through the tileset cache
    FINALIZE_DERIVED_FIELDS     lastgid of every tileset
    DONE

Any error moves the loader to FAILED and the whole load is abandoned: a
caller never sees a partially built map. `loader.state` tells how far the
last load went.

=============================================================================
USAGE
=============================================================================

    cache = TilesetCache()                  # shared between loaders/levels
    loader = TiledLevelLoader(cache=cache)

    level = loader.load("levels/forest.tmj")        # raises TiledError

    result = loader.load_from_file("levels/cave.tmx")
    if not result.ok:
        print(result.error_kind, result.message)    # or loader.last_error

=============================================================================
"""

import copy
import json
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any, Union, Tuple

import numpy as np
from PIL import Image as PILImage

from .decoder import decode_tile_data, decode_tile_array, empty_tiles
from .errors import (
    TiledError, FormatError, DataIntegrityError, MapReferenceError, LoadResult,
    MALFORMED_VALUE_ERRORS
)
from .structures import (
    TiledMap, Tileset, TileLayer, ObjectGroup, ImageLayer, LayerGroup, MapObject,
    Chunk, BaseLayer, Orientation, RenderOrder, parse_properties_xml, parse_properties_json,
    to_int, xml_bool, normalize_color
)
from .tileset_cache import TilesetCache

logger = logging.getLogger(__name__)


class LoadState(Enum):
    IDLE = "idle"
    DETECT_FORMAT = "detect-format"
    PARSE_HEADER = "parse-header"
    PARSE_TILESETS = "parse-tilesets"
    PARSE_LAYER_TREE = "parse-layer-tree"
    RESOLVE_EXTERNAL_TILESETS = "resolve-external-tilesets"
    FINALIZE_DERIVED_FIELDS = "finalize-derived-fields"
    DONE = "done"
    FAILED = "failed"


class MapSyntax(Enum):
    XML = "xml"
    JSON = "json"


@dataclass
class _TilesetRef:
    """External tileset reference waiting for RESOLVE_EXTERNAL_TILESETS."""
    firstgid: int
    source: str


def _parse_enum(enum_cls, value: Optional[str], default, what: str):
    if value is None or value == '':
        return default
    try:
        return enum_cls(value)
    except ValueError:
        logger.warning("Unknown %s '%s', using '%s'", what, value, default.value)
        return default


class TiledLevelLoader:
    """
    Loads TMX and TMJ maps.

    Parameters:
    -----------
    cache : TilesetCache, optional
        Where external tilesets are parsed and kept. Pass the same cache to
        every loader of a game to parse each tileset file once. A private
        cache is created when omitted.
    max_group_depth : int
        Deepest allowed nesting of group layers; deeper maps fail to load.
    """

    MAX_GROUP_DEPTH = 64

    XML_EXTENSIONS = ('.tmx',)
    JSON_EXTENSIONS = ('.tmj', '.json')

    def __init__(self, cache: Optional[TilesetCache] = None,
                 max_group_depth: int = MAX_GROUP_DEPTH):
        self.cache = cache if cache is not None else TilesetCache()
        self.max_group_depth = max_group_depth
        self.state = LoadState.IDLE
        self.last_error = ""

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def load(self, path: Union[str, Path]) -> TiledMap:
        """
        Load a map, raising a TiledError subclass on failure.

        Raises:
        -------
        FormatError : unknown extension, bad XML/JSON, wrong root, groups too deep,
            malformed attribute or property values
        DataIntegrityError : layer or chunk data length mismatch
        MapReferenceError : map file missing or unreadable
        TilesetReferenceError : external tileset file missing
        DecodeError : undecodable tile data
        """
        path = Path(path)
        self.last_error = ""
        try:
            try:
                tiled_map = self._run(path)
            except MALFORMED_VALUE_ERRORS as e:
                raise FormatError(f"Malformed value in {path.name} "
                                  f"while in {self.state.value}: {e}") from e
        except TiledError as e:
            self.state = LoadState.FAILED
            self.last_error = e.message
            logger.error("Failed to load %s: %s", path, e.message)
            raise
        return tiled_map

    def load_from_file(self, path: Union[str, Path]) -> LoadResult:
        """Load a map, reporting failure in the returned LoadResult."""
        try:
            return LoadResult.success(self.load(path))
        except TiledError as e:
            return LoadResult.failure(e)

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def _enter(self, state: LoadState):
        self.state = state
        logger.debug("Loader state: %s", state.value)

    def _run(self, path: Path) -> TiledMap:
        self._enter(LoadState.DETECT_FORMAT)
        syntax = self.detect_format(path)
        root = self._read_document(path, syntax)

        self._enter(LoadState.PARSE_HEADER)
        if syntax is MapSyntax.XML:
            tiled_map = self._parse_header_xml(root)
        else:
            tiled_map = self._parse_header_json(root)
        tiled_map.filepath = str(path)
        if tiled_map.tilewidth <= 0 or tiled_map.tileheight <= 0:
            logger.warning("Map %s has tile size %dx%d; tile and pixel positions "
                           "cannot be computed", path.name,
                           tiled_map.tilewidth, tiled_map.tileheight)

        self._enter(LoadState.PARSE_TILESETS)
        if syntax is MapSyntax.XML:
            entries = self._parse_tilesets_xml(root)
        else:
            entries = self._parse_tilesets_json(root)

        self._enter(LoadState.PARSE_LAYER_TREE)
        if syntax is MapSyntax.XML:
            self._parse_layer_tree_xml(root, tiled_map)
        else:
            self._parse_layer_tree_json(root, tiled_map)

        self._enter(LoadState.RESOLVE_EXTERNAL_TILESETS)
        tiled_map.tilesets = self._resolve_tilesets(entries, tiled_map.directory)

        self._enter(LoadState.FINALIZE_DERIVED_FIELDS)
        self._finalize(tiled_map)

        self._enter(LoadState.DONE)
        logger.info("Loaded map %s: %dx%d %s, %d tilesets, %d layers",
                    path.name, tiled_map.width, tiled_map.height,
                    tiled_map.orientation.value, len(tiled_map.tilesets),
                    len(tiled_map.layers))
        return tiled_map

    # -------------------------------------------------------------------------
    # DETECT_FORMAT
    # -------------------------------------------------------------------------

    def detect_format(self, path: Path) -> MapSyntax:
        suffix = path.suffix.lower()
        if suffix in self.XML_EXTENSIONS:
            return MapSyntax.XML
        if suffix in self.JSON_EXTENSIONS:
            return MapSyntax.JSON
        raise FormatError(f"Unsupported map format: '{path.suffix}' "
                          f"(expected .tmx, .tmj or .json): {path}")

    @staticmethod
    def _read_document(path: Path, syntax: MapSyntax) -> Union[ET.Element, Dict[str, Any]]:
        if not path.is_file():
            raise MapReferenceError(f"Map file not found: {path}")
        try:
            text = path.read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            raise MapReferenceError(f"Cannot read map file {path}: {e}") from e

        if syntax is MapSyntax.XML:
            try:
                return ET.fromstring(text)
            except ET.ParseError as e:
                raise FormatError(f"Failed to parse TMX file {path}: {e}") from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise FormatError(f"Failed to parse TMJ file {path}: {e}") from e
        if not isinstance(data, dict):
            raise FormatError(f"Invalid TMJ file {path}: top level is not an object")
        return data

    # -------------------------------------------------------------------------
    # PARSE_HEADER
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse_header_xml(root: ET.Element) -> TiledMap:
        if root.tag != 'map':
            raise FormatError(f"Invalid TMX file: root element is <{root.tag}>, expected <map>")

        return TiledMap(
            version=root.get('version', '1.0'),
            tiledversion=root.get('tiledversion', ''),
            orientation=_parse_enum(Orientation, root.get('orientation'),
                                    Orientation.ORTHOGONAL, 'orientation'),
            renderorder=_parse_enum(RenderOrder, root.get('renderorder'),
                                    RenderOrder.RIGHT_DOWN, 'render order'),
            width=to_int(root.get('width')),
            height=to_int(root.get('height')),
            tilewidth=to_int(root.get('tilewidth')),
            tileheight=to_int(root.get('tileheight')),
            infinite=xml_bool(root.get('infinite'), False),
            backgroundcolor=root.get('backgroundcolor'),
            nextlayerid=to_int(root.get('nextlayerid'), 1),
            nextobjectid=to_int(root.get('nextobjectid'), 1),
            compressionlevel=to_int(root.get('compressionlevel'), -1),
            hexsidelength=to_int(root.get('hexsidelength')),
            staggeraxis=root.get('staggeraxis'),
            staggerindex=root.get('staggerindex'),
            properties=parse_properties_xml(root)
        )

    @staticmethod
    def _parse_header_json(data: Dict[str, Any]) -> TiledMap:
        map_type = data.get('type', 'map')
        if map_type != 'map':
            raise FormatError(f"Invalid TMJ file: type is '{map_type}', expected 'map'")

        return TiledMap(
            version=str(data.get('version', '1.0')),
            tiledversion=data.get('tiledversion', ''),
            orientation=_parse_enum(Orientation, data.get('orientation'),
                                    Orientation.ORTHOGONAL, 'orientation'),
            renderorder=_parse_enum(RenderOrder, data.get('renderorder'),
                                    RenderOrder.RIGHT_DOWN, 'render order'),
            width=to_int(data.get('width')),
            height=to_int(data.get('height')),
            tilewidth=to_int(data.get('tilewidth')),
            tileheight=to_int(data.get('tileheight')),
            infinite=bool(data.get('infinite', False)),
            backgroundcolor=data.get('backgroundcolor'),
            nextlayerid=to_int(data.get('nextlayerid'), 1),
            nextobjectid=to_int(data.get('nextobjectid'), 1),
            compressionlevel=to_int(data.get('compressionlevel'), -1),
            hexsidelength=to_int(data.get('hexsidelength')),
            staggeraxis=data.get('staggeraxis'),
            staggerindex=data.get('staggerindex'),
            properties=parse_properties_json(data)
        )

    # -------------------------------------------------------------------------
    # PARSE_TILESETS
    # -------------------------------------------------------------------------

    @staticmethod
    def _parse_tilesets_xml(root: ET.Element) -> List[Union[Tileset, _TilesetRef]]:
        entries = []
        for tileset_elem in root.findall('tileset'):
            firstgid = to_int(tileset_elem.get('firstgid'), 1)
            source = tileset_elem.get('source')
            if source:
                entries.append(_TilesetRef(firstgid, source))
            else:
                entries.append(Tileset.from_xml(tileset_elem, firstgid))
        return entries

    @staticmethod
    def _parse_tilesets_json(data: Dict[str, Any]) -> List[Union[Tileset, _TilesetRef]]:
        entries = []
        for tileset_data in data.get('tilesets') or []:
            if not isinstance(tileset_data, dict):
                raise FormatError(f"Invalid tileset entry: {tileset_data!r}")
            firstgid = to_int(tileset_data.get('firstgid'), 1)
            source = tileset_data.get('source')
            if source:
                entries.append(_TilesetRef(firstgid, source))
            else:
                entries.append(Tileset.from_json(tileset_data, firstgid))
        return entries

    # -------------------------------------------------------------------------
    # PARSE_LAYER_TREE
    # -------------------------------------------------------------------------
    # Groups are walked with an explicit stack instead of recursion. Children
    # are pushed in reverse so layers enter the arena in document order.

    XML_LAYER_TAGS = ('layer', 'objectgroup', 'imagelayer', 'group')

    def _check_group_depth(self, group: LayerGroup, depth: int):
        if depth > self.max_group_depth:
            raise FormatError(f"Group layer '{group.name}' is nested {depth} levels deep "
                              f"(limit is {self.max_group_depth})")

    def _parse_layer_tree_xml(self, root: ET.Element, tiled_map: TiledMap):
        stack: List[Tuple[ET.Element, Optional[int], int]] = [
            (elem, None, 0) for elem in reversed(root) if elem.tag in self.XML_LAYER_TAGS
        ]
        while stack:
            elem, parent, depth = stack.pop()
            try:
                layer = self._layer_from_xml(elem, tiled_map)
            except MALFORMED_VALUE_ERRORS as e:
                raise FormatError(f"Layer '{elem.get('name', '')}': malformed value: {e}") from e
            index = tiled_map.add_layer(layer, parent)
            if isinstance(layer, LayerGroup):
                self._check_group_depth(layer, depth + 1)
                stack.extend((child, index, depth + 1) for child in reversed(elem)
                             if child.tag in self.XML_LAYER_TAGS)

    def _parse_layer_tree_json(self, data: Dict[str, Any], tiled_map: TiledMap):
        stack: List[Tuple[Dict[str, Any], Optional[int], int]] = [
            (layer_data, None, 0) for layer_data in reversed(data.get('layers') or [])
        ]
        while stack:
            layer_data, parent, depth = stack.pop()
            try:
                layer = self._layer_from_json(layer_data, tiled_map)
            except MALFORMED_VALUE_ERRORS as e:
                raise FormatError(f"Layer '{layer_data.get('name', '')}': malformed value: {e}") from e
            if layer is None:
                continue
            index = tiled_map.add_layer(layer, parent)
            if isinstance(layer, LayerGroup):
                self._check_group_depth(layer, depth + 1)
                stack.extend((child, index, depth + 1)
                             for child in reversed(layer_data.get('layers') or []))

    # XML layers

    def _layer_from_xml(self, elem: ET.Element, tiled_map: TiledMap) -> BaseLayer:
        common = BaseLayer.common_xml(elem)

        if elem.tag == 'layer':
            layer = TileLayer(width=to_int(elem.get('width')), height=to_int(elem.get('height')),
                              startx=to_int(elem.get('startx')), starty=to_int(elem.get('starty')),
                              **common)
            data_elem = elem.find('data')
            if data_elem is not None:
                self._read_tile_data_xml(layer, data_elem)
            self._check_tile_layer(layer, tiled_map)
            return layer

        if elem.tag == 'objectgroup':
            return ObjectGroup(draworder=elem.get('draworder', 'topdown'),
                               color=elem.get('color'),
                               objects=[MapObject.from_xml(obj) for obj in elem.findall('object')],
                               **common)

        if elem.tag == 'imagelayer':
            layer = ImageLayer(repeatx=xml_bool(elem.get('repeatx'), False),
                               repeaty=xml_bool(elem.get('repeaty'), False),
                               **common)
            img_elem = elem.find('image')
            if img_elem is not None:
                layer.image = img_elem.get('source', '')
                layer.imagewidth = to_int(img_elem.get('width')) or None
                layer.imageheight = to_int(img_elem.get('height')) or None
                layer.trans = normalize_color(img_elem.get('trans'))
            return layer

        return LayerGroup(**common)

    @staticmethod
    def _xml_gids(elem: ET.Element, encoding: Optional[str],
                  compression: Optional[str]) -> np.ndarray:
        if encoding is None:
            # Deprecated XML form: <tile gid="5"/> per cell, gid omitted for empty.
            # Out of range gids are dropped and then caught by the length check.
            return decode_tile_array([to_int(tile.get('gid')) for tile in elem.findall('tile')])
        return decode_tile_data(elem.text or '', encoding, compression)

    def _read_tile_data_xml(self, layer: TileLayer, data_elem: ET.Element):
        layer.encoding = data_elem.get('encoding')
        layer.compression = data_elem.get('compression') or None

        chunk_elems = data_elem.findall('chunk')
        if chunk_elems:
            for chunk_elem in chunk_elems:
                chunk = Chunk(x=to_int(chunk_elem.get('x')), y=to_int(chunk_elem.get('y')),
                              width=to_int(chunk_elem.get('width')),
                              height=to_int(chunk_elem.get('height')))
                # Chunks use the encoding/compression of their layer
                chunk.data = self._xml_gids(chunk_elem, layer.encoding, layer.compression)
                layer.chunks.append(chunk)
        else:
            layer.data = self._xml_gids(data_elem, layer.encoding, layer.compression)

    # JSON layers

    def _layer_from_json(self, data: Dict[str, Any], tiled_map: TiledMap) -> Optional[BaseLayer]:
        if not isinstance(data, dict):
            raise FormatError(f"Invalid layer entry: {data!r}")

        common = BaseLayer.common_json(data)
        layer_type = data.get('type')

        if layer_type == 'tilelayer':
            layer = TileLayer(width=to_int(data.get('width')), height=to_int(data.get('height')),
                              startx=to_int(data.get('startx')), starty=to_int(data.get('starty')),
                              encoding=data.get('encoding') or 'csv',
                              compression=data.get('compression') or None,
                              **common)
            for chunk_data in data.get('chunks') or []:
                chunk = Chunk(x=to_int(chunk_data.get('x')), y=to_int(chunk_data.get('y')),
                              width=to_int(chunk_data.get('width')),
                              height=to_int(chunk_data.get('height')))
                chunk.data = self._json_gids(chunk_data.get('data'), layer)
                layer.chunks.append(chunk)
            if not layer.chunks and 'data' in data:
                layer.data = self._json_gids(data.get('data'), layer)
            self._check_tile_layer(layer, tiled_map)
            return layer

        if layer_type == 'objectgroup':
            return ObjectGroup(draworder=data.get('draworder', 'topdown'),
                               color=data.get('color'),
                               objects=[MapObject.from_json(obj) for obj in data.get('objects') or []],
                               **common)

        if layer_type == 'imagelayer':
            return ImageLayer(image=data.get('image', ''),
                              imagewidth=to_int(data.get('imagewidth')) or None,
                              imageheight=to_int(data.get('imageheight')) or None,
                              trans=normalize_color(data.get('transparentcolor')),
                              repeatx=bool(data.get('repeatx', False)),
                              repeaty=bool(data.get('repeaty', False)),
                              **common)

        if layer_type == 'group':
            return LayerGroup(**common)

        logger.warning("Skipping layer '%s' of unknown type '%s'", common['name'], layer_type)
        return None

    @staticmethod
    def _json_gids(value: Any, layer: TileLayer) -> np.ndarray:
        if value is None:
            return empty_tiles()
        if isinstance(value, list):
            return decode_tile_array(value)
        if isinstance(value, str):
            return decode_tile_data(value, layer.encoding, layer.compression)
        raise FormatError(f"Tile layer '{layer.name}': unsupported data value of type "
                          f"{type(value).__name__}")

    # Shared checks

    @staticmethod
    def _check_tile_layer(layer: TileLayer, tiled_map: TiledMap):
        """A layer with the wrong number of tiles fails the whole load."""
        for chunk in layer.chunks:
            if len(chunk.data) != chunk.expected_length:
                raise DataIntegrityError(
                    f"Tile layer '{layer.name}': chunk at ({chunk.x}, {chunk.y}) has "
                    f"{len(chunk.data)} tiles, expected {chunk.expected_length} "
                    f"({chunk.width}x{chunk.height})"
                )
        if layer.chunks:
            return

        if tiled_map.infinite and len(layer.data) == 0:
            return

        if len(layer.data) != layer.expected_length:
            raise DataIntegrityError(
                f"Tile layer '{layer.name}': decoded {len(layer.data)} tiles, expected "
                f"{layer.expected_length} ({layer.width}x{layer.height})"
            )

    # -------------------------------------------------------------------------
    # RESOLVE_EXTERNAL_TILESETS
    # -------------------------------------------------------------------------

    def _resolve_tilesets(self, entries: List[Union[Tileset, _TilesetRef]],
                          map_dir: Path) -> List[Tileset]:
        tilesets = []
        for entry in entries:
            if isinstance(entry, Tileset):
                tilesets.append(entry)
                continue

            source_path = Path(entry.source)
            if not source_path.is_absolute():
                source_path = map_dir / source_path

            shared = self.cache.get_tileset(source_path)
            # The cached tileset is shared; this map gets its own copy
            tileset = copy.deepcopy(shared)
            tileset.firstgid = entry.firstgid
            tileset.source = entry.source
            tilesets.append(tileset)
        return tilesets

    # -------------------------------------------------------------------------
    # FINALIZE_DERIVED_FIELDS
    # -------------------------------------------------------------------------

    @staticmethod
    def _probe_image_size(tileset: Tileset, map_dir: Path):
        """Fill in missing atlas dimensions from the image file header."""
        base = map_dir
        if tileset.source:
            base = map_dir / Path(tileset.source).parent
        image_path = base / tileset.image.source
        if not image_path.is_file():
            logger.warning("Tileset '%s' has no tilecount and its image %s is missing; "
                           "GID range cannot be derived", tileset.name, image_path)
            return
        try:
            # open() only reads the header
            with PILImage.open(image_path) as img:
                tileset.image.width, tileset.image.height = img.size
        except OSError as e:
            logger.warning("Cannot read size of tileset image %s: %s", image_path, e)

    def _finalize(self, tiled_map: TiledMap):
        for tileset in tiled_map.tilesets:
            if (tileset.tilecount <= 0 and tileset.image is not None
                    and not (tileset.image.width and tileset.image.height)):
                self._probe_image_size(tileset, tiled_map.directory)
        tiled_map.calculate_all_lastgids()
