"""
Document model for Tiled maps (TMX/TMJ) and tilesets (TSX/TSJ)

=============================================================================
WHAT IS IN A TILED MAP?
=============================================================================

A Tiled map describes:

- Map dimensions, tile size and orientation
- Tilesets (collections of tile graphics), embedded or in external files
- Layers: tile layers, object layers, image layers and groups of layers
- Custom properties (metadata on almost any element)

Every record here is a plain dataclass that knows how to build itself from
both syntaxes: `from_xml(elem)` for TMX/TSX and `from_json(dict)` for
TMJ/TSJ. Orchestration (file reading, external tilesets, tile data checks)
lives in loader.py.

=============================================================================
GLOBAL TILE IDs (GIDs)
=============================================================================

Tiles are referenced by Global IDs (GIDs) across all tilesets:

    Tileset A (firstgid=1):   tiles 1-100
    Tileset B (firstgid=101): tiles 101-200

    GID 0   = empty tile (no graphic)
    GID 50  = tile 49 of tileset A (50 - 1)
    GID 150 = tile 49 of tileset B (150 - 101)

The top three bits of a GID are flip flags, not part of the ID:

    bit 31  0x80000000  flipped horizontally
    bit 30  0x40000000  flipped vertically
    bit 29  0x20000000  flipped diagonally (swap x/y)

=============================================================================
LAYER ARENA
=============================================================================

Groups nest layers into a tree. Instead of groups owning child objects,
the map keeps ONE flat list of every layer (the arena, in document order)
and groups hold indices into it:

    map.layers       [Background, Sky, Mountains, Ground]
                          0        1       2         3
    map.root_layers  [0, 3]
    Background       LayerGroup(children=[1, 2])
    Sky.parent       0

A layer is owned by exactly one slot of the arena, so there is no aliasing,
and copying the tree is copying lists of ints.

=============================================================================
"""

import bisect
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any, Union, Iterator, NamedTuple, Tuple, ClassVar

import numpy as np


# =============================================================================
# GID FLAGS
# =============================================================================

FLIPPED_HORIZONTALLY_FLAG = 0x80000000
FLIPPED_VERTICALLY_FLAG = 0x40000000
FLIPPED_DIAGONALLY_FLAG = 0x20000000
TILE_FLIP_FLAGS_MASK = 0xE0000000
TILE_ID_MASK = 0x1FFFFFFF


def get_tile_id(gid: int) -> int:
    """Strip the flip flags from a raw GID."""
    return gid & TILE_ID_MASK


def is_flipped_horizontally(gid: int) -> bool:
    return (gid & FLIPPED_HORIZONTALLY_FLAG) != 0


def is_flipped_vertically(gid: int) -> bool:
    return (gid & FLIPPED_VERTICALLY_FLAG) != 0


def is_flipped_diagonally(gid: int) -> bool:
    return (gid & FLIPPED_DIAGONALLY_FLAG) != 0


# =============================================================================
# ENUMS
# =============================================================================

class Orientation(Enum):
    ORTHOGONAL = "orthogonal"
    ISOMETRIC = "isometric"
    STAGGERED = "staggered"
    HEXAGONAL = "hexagonal"


class RenderOrder(Enum):
    RIGHT_DOWN = "right-down"
    RIGHT_UP = "right-up"
    LEFT_DOWN = "left-down"
    LEFT_UP = "left-up"


class LayerType(Enum):
    TILE = "tilelayer"
    OBJECT = "objectgroup"
    IMAGE = "imagelayer"
    GROUP = "group"


class ObjectShape(Enum):
    RECTANGLE = "rectangle"
    ELLIPSE = "ellipse"
    POINT = "point"
    POLYGON = "polygon"
    POLYLINE = "polyline"
    TEXT = "text"


# =============================================================================
# SMALL ATTRIBUTE HELPERS
# =============================================================================

def to_int(value: Any, default: int = 0) -> int:
    if value is None or value == '':
        return default
    return int(float(value))


def to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == '':
        return default
    return float(value)


def xml_bool(value: Optional[str], default: bool) -> bool:
    # TMX writes booleans as "0"/"1"; a few tools write "true"/"false"
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true')


def normalize_color(value: Optional[str]) -> Optional[str]:
    """TSX writes trans="ff00ff", TSJ writes "#ff00ff"; keep the '#' form."""
    if not value:
        return None
    return value if value.startswith('#') else '#' + value


# =============================================================================
# PROPERTY CLASS
# =============================================================================

@dataclass
class Property:
    """
    Custom property attached to a map, layer, tileset, tile or object.

    ==========================================================================
    SUPPORTED TYPES
    ==========================================================================

    - string: Text value (default)
    - int:    Integer number
    - float:  Decimal number
    - bool:   True/False
    - color:  Color in #AARRGGBB format (kept as a string)
    - file:   File path reference (kept as a string)
    - object: Reference to another object by ID (int)

    Values are converted to Python types on load, so game code can use
    `props['damage'].value + 1` directly.
    ==========================================================================
    """
    name: str                    # Property name (key)
    type: str = "string"         # Value type
    value: Any = None            # The actual value

    @staticmethod
    def convert(prop_type: str, value: Any) -> Any:
        """Convert a raw XML/JSON value to the Python type for `prop_type`."""
        if prop_type in ('int', 'object'):
            return to_int(value)
        if prop_type == 'float':
            return to_float(value)
        if prop_type == 'bool':
            if isinstance(value, str):
                return value.strip().lower() == 'true'
            return bool(value)
        if prop_type == 'class':
            # Nested class members stay a plain dict
            return value if value is not None else {}
        # string, color, file and unknown types stay text
        return '' if value is None else str(value)

    @classmethod
    def from_xml(cls, elem: ET.Element) -> 'Property':
        """
        Parse property from XML element.

        XML format:
            <property name="solid" type="bool" value="true"/>
            <property name="health" type="int" value="100"/>
            <property name="note">multi-line text lives in the body</property>
        """
        prop_type = elem.get('type', 'string')
        value = elem.get('value')
        if value is None:
            value = elem.text or ''
        return cls(name=elem.get('name', ''), type=prop_type,
                   value=cls.convert(prop_type, value))

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'Property':
        """
        Parse property from a JSON object.

        JSON format:
            {"name": "solid", "type": "bool", "value": true}
        """
        prop_type = data.get('type', 'string')
        return cls(name=data.get('name', ''), type=prop_type,
                   value=cls.convert(prop_type, data.get('value')))


def parse_properties_xml(elem: ET.Element) -> Dict[str, Property]:
    """Collect <properties><property/>...</properties> under `elem`, by name."""
    properties: Dict[str, Property] = {}
    props_elem = elem.find('properties')
    if props_elem is not None:
        for prop_elem in props_elem.findall('property'):
            prop = Property.from_xml(prop_elem)
            properties[prop.name] = prop
    return properties


def parse_properties_json(data: Dict[str, Any]) -> Dict[str, Property]:
    properties: Dict[str, Property] = {}
    items = data.get('properties')
    if isinstance(items, list):
        for item in items:
            if isinstance(item, dict):
                prop = Property.from_json(item)
                properties[prop.name] = prop
    return properties


# =============================================================================
# IMAGE / TILE / TILESET
# =============================================================================

@dataclass
class Image:
    """
    Image reference used by atlas tilesets, collection tiles and image layers.

    source: Path to image file, relative to the file that declared it
    width:  Image width in pixels (optional)
    height: Image height in pixels (optional)
    trans:  Transparent color key ("#ff00ff")
    """
    source: str                          # Path to image file
    width: Optional[int] = None          # Image width (pixels)
    height: Optional[int] = None         # Image height (pixels)
    trans: Optional[str] = None          # Transparent color (#RRGGBB)

    @classmethod
    def from_xml(cls, elem: ET.Element) -> 'Image':
        """Parse image from XML element."""
        return cls(
            source=elem.get('source', ''),
            width=int(elem.get('width')) if elem.get('width') else None,
            height=int(elem.get('height')) if elem.get('height') else None,
            trans=normalize_color(elem.get('trans'))
        )

    @classmethod
    def from_json(cls, data: Dict[str, Any], key: str = 'image') -> Optional['Image']:
        """
        Build an Image from the flat TMJ/TSJ keys:
            "image", "imagewidth", "imageheight", "transparentcolor"
        Returns None when there is no image.
        """
        source = data.get(key)
        if not source:
            return None
        return cls(
            source=source,
            width=to_int(data.get('imagewidth')) or None,
            height=to_int(data.get('imageheight')) or None,
            trans=normalize_color(data.get('transparentcolor'))
        )


@dataclass
class Tile:
    """
    Per-tile metadata inside a tileset.

    The 'id' is LOCAL to the tileset (0-based), GID = firstgid + id.
    Only tiles with properties, a type or (for collection tilesets) their
    own image are listed.
    """
    id: int                                          # Local tile ID (within tileset)
    type: str = ""                                   # Tile type/class
    properties: Dict[str, Property] = field(default_factory=dict)  # Custom properties
    image: Optional[Image] = None                    # Image (for collection tilesets)

    @classmethod
    def from_xml(cls, elem: ET.Element) -> 'Tile':
        """Parse tile from XML element."""
        tile = cls(id=int(elem.get('id', 0)))
        # Tiled 1.9 renamed "type" to "class"
        tile.type = elem.get('type') or elem.get('class', '')
        tile.properties = parse_properties_xml(elem)

        img_elem = elem.find('image')
        if img_elem is not None:
            tile.image = Image.from_xml(img_elem)
        return tile

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'Tile':
        return cls(
            id=to_int(data.get('id')),
            type=data.get('type') or data.get('class', ''),
            properties=parse_properties_json(data),
            image=Image.from_json(data)
        )


@dataclass
class TileOffset:
    """Pixel offset applied when drawing every tile of a tileset."""
    x: int = 0
    y: int = 0


@dataclass
class Tileset:
    """
    Tileset - a named range of GIDs and the graphics behind them.

    ==========================================================================
    TILESET TYPES
    ==========================================================================

    1. ATLAS TILESET (most common):
       One large image divided into a grid of tiles.

       +---+---+---+---+
       | 0 | 1 | 2 | 3 |
       +---+---+---+---+
       | 4 | 5 | 6 | 7 |
       +---+---+---+---+

       Attributes used: image, tilewidth, tileheight, columns, spacing, margin

    2. IMAGE COLLECTION TILESET:
       No atlas; every Tile carries its own Image.

    ==========================================================================
    GID RANGE
    ==========================================================================

    firstgid comes from the MAP that references the tileset, never from
    the tileset file. lastgid is derived by calculate_lastgid():

        lastgid = firstgid + tilecount - 1

    and when tilecount is missing, from the atlas size:

        columns = (imagewidth  - 2*margin + spacing) // (tilewidth  + spacing)
        rows    = (imageheight - 2*margin + spacing) // (tileheight + spacing)

    ==========================================================================
    """
    firstgid: int = 0                                # First Global ID (map assigned)
    name: str = ""                                   # Tileset name
    tilewidth: int = 0                               # Tile width in pixels
    tileheight: int = 0                              # Tile height in pixels
    tilecount: int = 0                               # Total number of tiles
    columns: int = 0                                 # Tiles per row (atlas)
    spacing: int = 0                                 # Pixels between tiles
    margin: int = 0                                  # Pixels around edge
    tileoffset: TileOffset = field(default_factory=TileOffset)
    image: Optional[Image] = None                    # Atlas image
    tiles: Dict[int, Tile] = field(default_factory=dict)  # Tile metadata
    properties: Dict[str, Property] = field(default_factory=dict)
    source: Optional[str] = None                     # External file path (as written in the map)
    lastgid: int = 0                                 # Derived, see calculate_lastgid()

    @classmethod
    def from_xml(cls, elem: ET.Element, firstgid: int = 0) -> 'Tileset':
        """
        Parse tileset from a <tileset> element (embedded in TMX, or TSX root).

        Parameters:
        -----------
        elem : ET.Element
            The <tileset> XML element
        firstgid : int
            First Global ID (from parent TMX, not the TSX itself)
        """
        tileset = cls(
            firstgid=firstgid,
            name=elem.get('name', ''),
            tilewidth=to_int(elem.get('tilewidth')),
            tileheight=to_int(elem.get('tileheight')),
            tilecount=to_int(elem.get('tilecount')),
            columns=to_int(elem.get('columns')),
            spacing=to_int(elem.get('spacing')),
            margin=to_int(elem.get('margin')),
            source=elem.get('source')
        )

        offset_elem = elem.find('tileoffset')
        if offset_elem is not None:
            tileset.tileoffset = TileOffset(x=to_int(offset_elem.get('x')),
                                            y=to_int(offset_elem.get('y')))

        tileset.properties = parse_properties_xml(elem)

        img_elem = elem.find('image')
        if img_elem is not None:
            tileset.image = Image.from_xml(img_elem)

        for tile_elem in elem.findall('tile'):
            tile = Tile.from_xml(tile_elem)
            tileset.tiles[tile.id] = tile

        return tileset

    @classmethod
    def from_json(cls, data: Dict[str, Any], firstgid: int = 0) -> 'Tileset':
        """Parse tileset from a TMJ "tilesets" entry or a TSJ document."""
        tileset = cls(
            firstgid=firstgid,
            name=data.get('name', ''),
            tilewidth=to_int(data.get('tilewidth')),
            tileheight=to_int(data.get('tileheight')),
            tilecount=to_int(data.get('tilecount')),
            columns=to_int(data.get('columns')),
            spacing=to_int(data.get('spacing')),
            margin=to_int(data.get('margin')),
            image=Image.from_json(data),
            properties=parse_properties_json(data),
            source=data.get('source')
        )

        offset = data.get('tileoffset')
        if isinstance(offset, dict):
            tileset.tileoffset = TileOffset(x=to_int(offset.get('x')), y=to_int(offset.get('y')))

        tiles = data.get('tiles')
        if isinstance(tiles, list):
            for tile_data in tiles:
                tile = Tile.from_json(tile_data)
                tileset.tiles[tile.id] = tile

        return tileset

    @property
    def is_collection(self) -> bool:
        """True for image collection tilesets (no atlas, per-tile images)."""
        return self.image is None and any(t.image for t in self.tiles.values())

    def calculate_lastgid(self) -> int:
        """
        Derive lastgid (and columns, if missing) from the tileset's size.

        An empty tileset gets lastgid = firstgid - 1, an empty range.
        """
        count = self.tilecount

        if (count <= 0 and self.image is not None and self.image.width
                and self.image.height and self.tilewidth > 0 and self.tileheight > 0):
            usable_w = self.image.width - 2 * self.margin + self.spacing
            usable_h = self.image.height - 2 * self.margin + self.spacing
            cols = max(0, usable_w // (self.tilewidth + self.spacing))
            rows = max(0, usable_h // (self.tileheight + self.spacing))
            count = cols * rows
            if self.columns <= 0:
                self.columns = cols

        if count <= 0 and self.tiles:
            # Collection tilesets: IDs can be sparse, the highest one bounds the range
            count = max(self.tiles) + 1

        self.lastgid = self.firstgid + count - 1
        return self.lastgid

    def contains_gid(self, gid: int) -> bool:
        return self.firstgid <= gid <= self.lastgid

    def get_local_id(self, gid: int) -> int:
        return get_tile_id(gid) - self.firstgid

    def get_tile_coords(self, gid: int) -> Tuple[int, int]:
        """Atlas (column, row) of a GID inside this tileset."""
        local_id = self.get_local_id(gid)
        if self.columns <= 0:
            return local_id, 0
        return local_id % self.columns, local_id // self.columns


# =============================================================================
# OBJECTS
# =============================================================================

class Point(NamedTuple):
    x: float
    y: float


@dataclass
class MapObject:
    """
    Object in an object layer.

    Used for collision shapes, spawn points, triggers and tile placement.
    The shape is one of rectangle (default), ellipse, point, polygon,
    polyline or text; polygon/polyline points are relative to (x, y).
    A non-zero gid makes it a tile object (the raw GID keeps its flip bits).
    """
    id: int = 0                                      # Unique object ID
    name: str = ""                                   # Object name
    type: str = ""                                   # Object type/class
    shape: ObjectShape = ObjectShape.RECTANGLE
    x: float = 0                                     # X position
    y: float = 0                                     # Y position
    width: float = 0                                 # Width (0 for points)
    height: float = 0                                # Height (0 for points)
    rotation: float = 0                              # Rotation in degrees
    gid: int = 0                                     # Tile GID (tile objects)
    visible: bool = True
    points: List[Point] = field(default_factory=list)
    text: str = ""
    template: Optional[str] = None
    properties: Dict[str, Property] = field(default_factory=dict)

    @staticmethod
    def _read_points_xml(text: Optional[str]) -> List[Point]:
        # "0,0 32,0 32,32"
        points = []
        for pair in (text or '').split():
            x, _, y = pair.partition(',')
            points.append(Point(float(x), float(y or 0)))
        return points

    @classmethod
    def from_xml(cls, elem: ET.Element) -> 'MapObject':
        """Parse object from XML element."""
        obj = cls(
            id=to_int(elem.get('id')),
            name=elem.get('name', ''),
            type=elem.get('type') or elem.get('class', ''),
            x=to_float(elem.get('x')),
            y=to_float(elem.get('y')),
            width=to_float(elem.get('width')),
            height=to_float(elem.get('height')),
            rotation=to_float(elem.get('rotation')),
            gid=to_int(elem.get('gid')),
            visible=xml_bool(elem.get('visible'), True),
            template=elem.get('template'),
            properties=parse_properties_xml(elem)
        )

        if elem.find('ellipse') is not None:
            obj.shape = ObjectShape.ELLIPSE
        elif elem.find('point') is not None:
            obj.shape = ObjectShape.POINT
        elif elem.find('polygon') is not None:
            obj.shape = ObjectShape.POLYGON
            obj.points = cls._read_points_xml(elem.find('polygon').get('points'))
        elif elem.find('polyline') is not None:
            obj.shape = ObjectShape.POLYLINE
            obj.points = cls._read_points_xml(elem.find('polyline').get('points'))
        elif elem.find('text') is not None:
            obj.shape = ObjectShape.TEXT
            obj.text = elem.find('text').text or ''

        return obj

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> 'MapObject':
        obj = cls(
            id=to_int(data.get('id')),
            name=data.get('name', ''),
            type=data.get('type') or data.get('class', ''),
            x=to_float(data.get('x')),
            y=to_float(data.get('y')),
            width=to_float(data.get('width')),
            height=to_float(data.get('height')),
            rotation=to_float(data.get('rotation')),
            gid=to_int(data.get('gid')),
            visible=bool(data.get('visible', True)),
            template=data.get('template'),
            properties=parse_properties_json(data)
        )

        if data.get('point'):
            obj.shape = ObjectShape.POINT
        elif data.get('ellipse'):
            obj.shape = ObjectShape.ELLIPSE
        elif 'polygon' in data:
            obj.shape = ObjectShape.POLYGON
            obj.points = [Point(to_float(p.get('x')), to_float(p.get('y')))
                          for p in data.get('polygon') or []]
        elif 'polyline' in data:
            obj.shape = ObjectShape.POLYLINE
            obj.points = [Point(to_float(p.get('x')), to_float(p.get('y')))
                          for p in data.get('polyline') or []]
        elif 'text' in data:
            obj.shape = ObjectShape.TEXT
            text = data.get('text')
            obj.text = text.get('text', '') if isinstance(text, dict) else str(text or '')

        return obj


# =============================================================================
# CHUNK CLASS
# =============================================================================

@dataclass
class Chunk:
    """
    Rectangular block of tile data in an infinite map.

    (x, y) is the chunk origin in tile coordinates relative to the map
    origin, and may be negative. data is row-major, width*height GIDs.
    """
    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0
    data: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.uint32))

    @property
    def expected_length(self) -> int:
        return self.width * self.height

    def contains(self, tx: int, ty: int) -> bool:
        return self.x <= tx < self.x + self.width and self.y <= ty < self.y + self.height

    def get_tile_gid(self, tx: int, ty: int) -> int:
        if not self.contains(tx, ty):
            return 0
        return int(self.data[(ty - self.y) * self.width + (tx - self.x)])


# =============================================================================
# LAYERS
# =============================================================================

@dataclass
class BaseLayer:
    """
    Attributes every layer kind shares.

    - visible / opacity / tintcolor: rendering hints
    - offsetx / offsety: pixel offset of the whole layer
    - parallaxx / parallaxy: scroll factor relative to the camera (1.0 = normal)
    - parent: arena index of the enclosing LayerGroup, None at the root
    """
    kind: ClassVar[LayerType]

    name: str = ""
    id: int = 0
    visible: bool = True
    opacity: float = 1.0
    offsetx: float = 0
    offsety: float = 0
    parallaxx: float = 1.0
    parallaxy: float = 1.0
    tintcolor: Optional[str] = None
    properties: Dict[str, Property] = field(default_factory=dict)
    parent: Optional[int] = None

    @staticmethod
    def common_xml(elem: ET.Element) -> Dict[str, Any]:
        return dict(
            name=elem.get('name', ''),
            id=to_int(elem.get('id')),
            # '1' is default for visible (absent means visible)
            visible=xml_bool(elem.get('visible'), True),
            opacity=to_float(elem.get('opacity'), 1.0),
            offsetx=to_float(elem.get('offsetx')),
            offsety=to_float(elem.get('offsety')),
            parallaxx=to_float(elem.get('parallaxx'), 1.0),
            parallaxy=to_float(elem.get('parallaxy'), 1.0),
            tintcolor=elem.get('tintcolor'),
            properties=parse_properties_xml(elem)
        )

    @staticmethod
    def common_json(data: Dict[str, Any]) -> Dict[str, Any]:
        return dict(
            name=data.get('name', ''),
            id=to_int(data.get('id')),
            visible=bool(data.get('visible', True)),
            opacity=to_float(data.get('opacity'), 1.0),
            offsetx=to_float(data.get('offsetx')),
            offsety=to_float(data.get('offsety')),
            parallaxx=to_float(data.get('parallaxx'), 1.0),
            parallaxy=to_float(data.get('parallaxy'), 1.0),
            tintcolor=data.get('tintcolor'),
            properties=parse_properties_json(data)
        )


@dataclass
class TileLayer(BaseLayer):
    """
    Tile layer - a grid of GIDs.

    Finite maps fill `data` (width*height GIDs, row-major):

        index = y * width + x

    Infinite maps leave `data` empty and fill `chunks` instead.
    """
    kind: ClassVar[LayerType] = LayerType.TILE

    width: int = 0                                   # Width in tiles
    height: int = 0                                  # Height in tiles
    startx: int = 0                                  # Origin offset (infinite maps)
    starty: int = 0
    encoding: Optional[str] = None                   # csv, base64 or None
    compression: Optional[str] = None                # gzip, zlib, zstd or None
    data: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.uint32))
    chunks: List[Chunk] = field(default_factory=list)

    @property
    def is_chunked(self) -> bool:
        return bool(self.chunks)

    @property
    def expected_length(self) -> int:
        return self.width * self.height

    def get_tile_gid(self, x: int, y: int) -> int:
        """
        GID at tile position (x, y); 0 when out of bounds or empty.

        For infinite maps (x, y) are map tile coordinates and the owning
        chunk is looked up.
        """
        if self.chunks:
            for chunk in self.chunks:
                if chunk.contains(x, y):
                    return chunk.get_tile_gid(x, y)
            return 0
        if 0 <= x < self.width and 0 <= y < self.height and len(self.data):
            return int(self.data[y * self.width + x])
        return 0

    def as_grid(self) -> np.ndarray:
        """Finite layer data as a (height, width) view."""
        return self.data.reshape(self.height, self.width)


@dataclass
class ObjectGroup(BaseLayer):
    """Object layer - an ordered list of MapObjects."""
    kind: ClassVar[LayerType] = LayerType.OBJECT

    draworder: str = "topdown"
    color: Optional[str] = None
    objects: List[MapObject] = field(default_factory=list)


@dataclass
class ImageLayer(BaseLayer):
    """
    Image layer - a single picture, typically a parallax background.

    ==========================================================================
    PARALLAX PLACEMENT
    ==========================================================================

    The layer is drawn at

        x = offsetx - camera_x * parallaxx
        y = offsety - camera_y * parallaxy

    parallax 0.0 -> fixed to the screen (distant sky)
    parallax 1.0 -> moves with the world
    parallax >1  -> moves faster than the world (foreground)
    ==========================================================================
    """
    kind: ClassVar[LayerType] = LayerType.IMAGE

    image: str = ""
    imagewidth: Optional[int] = None
    imageheight: Optional[int] = None
    trans: Optional[str] = None
    repeatx: bool = False
    repeaty: bool = False

    def render_position(self, camera_x: float, camera_y: float) -> Tuple[float, float]:
        return (self.offsetx - camera_x * self.parallaxx,
                self.offsety - camera_y * self.parallaxy)


@dataclass
class LayerGroup(BaseLayer):
    """Group of layers. `children` are indices into TiledMap.layers."""
    kind: ClassVar[LayerType] = LayerType.GROUP

    children: List[int] = field(default_factory=list)


Layer = Union[TileLayer, ObjectGroup, ImageLayer, LayerGroup]


# =============================================================================
# GID RESOLUTION
# =============================================================================

@dataclass
class ResolvedGid:
    """
    Everything a renderer needs to draw one cell.

    tileset is None for GID 0 and for GIDs no tileset claims.
    """
    gid: int = 0                                     # Clean GID (flags removed)
    tileset: Optional[Tileset] = None
    local_id: int = -1
    tile_x: int = 0                                  # Atlas column
    tile_y: int = 0                                  # Atlas row
    flip_h: bool = False
    flip_v: bool = False
    flip_d: bool = False

    @property
    def is_valid(self) -> bool:
        return self.tileset is not None and self.local_id >= 0


def find_tileset_for_gid(tilesets: List[Tileset], gid: int) -> Optional[Tileset]:
    """
    Linear scan in stored (ascending firstgid) order; first range wins.

    Expects lastgid to have been computed (the loader does it).
    """
    clean_gid = get_tile_id(gid)
    if clean_gid == 0:
        return None
    for tileset in tilesets:
        if tileset.firstgid <= clean_gid <= tileset.lastgid:
            return tileset
    return None


def _resolve_with(owner: Optional[Tileset], raw_gid: int) -> ResolvedGid:
    clean_gid = get_tile_id(raw_gid)
    resolved = ResolvedGid(
        gid=clean_gid,
        flip_h=is_flipped_horizontally(raw_gid),
        flip_v=is_flipped_vertically(raw_gid),
        flip_d=is_flipped_diagonally(raw_gid)
    )
    if owner is None:
        return resolved

    resolved.tileset = owner
    resolved.local_id = clean_gid - owner.firstgid
    resolved.tile_x, resolved.tile_y = owner.get_tile_coords(clean_gid)
    return resolved


def resolve_gid(tiled_map: 'TiledMap', raw_gid: int) -> ResolvedGid:
    """
    Resolve a raw GID (flip bits included) against a map's tilesets.

    1. Extract the three flip flags from the top bits
    2. Clear them; GID 0 is the empty tile and resolves to invalid
    3. Scan tilesets in order; the first containing range owns the GID
    4. local_id = gid - firstgid; atlas column/row from columns
    """
    return _resolve_with(find_tileset_for_gid(tiled_map.tilesets, raw_gid), raw_gid)


class GidIndex:
    """
    Sorted-by-firstgid index over a map's tilesets, binary searched.

    For maps with many tilesets. Gives the same answer as the linear scan,
    including the "first containing range in stored order wins" rule when
    ranges overlap.
    """

    def __init__(self, tilesets: List[Tileset]):
        # Stable sort keeps stored order among equal firstgids
        ordered = sorted(enumerate(tilesets), key=lambda item: item[1].firstgid)
        self._order = [position for position, _ in ordered]
        self._tilesets = [tileset for _, tileset in ordered]
        self._firstgids = [tileset.firstgid for tileset in self._tilesets]

    def find(self, gid: int) -> Optional[Tileset]:
        clean_gid = get_tile_id(gid)
        if clean_gid == 0:
            return None
        # Every candidate has firstgid <= gid
        end = bisect.bisect_right(self._firstgids, clean_gid)
        best = None
        best_position = None
        for i in range(end - 1, -1, -1):
            tileset = self._tilesets[i]
            if tileset.lastgid < clean_gid:
                continue
            if best_position is None or self._order[i] < best_position:
                best, best_position = tileset, self._order[i]
        return best

    def resolve(self, raw_gid: int) -> ResolvedGid:
        return _resolve_with(self.find(raw_gid), raw_gid)


# =============================================================================
# TILED MAP CLASS
# =============================================================================

@dataclass
class TiledMap:
    """
    Complete Tiled map - the root of the document model.

    Built once per load by TiledLevelLoader and owned by the caller.

    ==========================================================================
    USAGE
    ==========================================================================

        loader = TiledLevelLoader()
        level = loader.load("level1.tmx")

        ground = level.get_layer_by_name("Ground")
        gid = ground.get_tile_gid(5, 10)
        cell = level.resolve_gid(gid)
        if cell.is_valid:
            draw(cell.tileset.image.source, cell.tile_x, cell.tile_y, cell.flip_h)

        for path in level.get_all_image_paths(resolve=True):
            preload(path)

    ==========================================================================
    """
    version: str = "1.10"                            # Format version
    tiledversion: str = ""                           # Tiled editor version
    orientation: Orientation = Orientation.ORTHOGONAL
    renderorder: RenderOrder = RenderOrder.RIGHT_DOWN
    width: int = 0                                   # Map width in tiles
    height: int = 0                                  # Map height in tiles
    tilewidth: int = 0                               # Tile width in pixels
    tileheight: int = 0                              # Tile height in pixels
    infinite: bool = False                           # Chunked layers?
    backgroundcolor: Optional[str] = None
    nextlayerid: int = 1
    nextobjectid: int = 1
    compressionlevel: int = -1
    hexsidelength: int = 0
    staggeraxis: Optional[str] = None
    staggerindex: Optional[str] = None
    properties: Dict[str, Property] = field(default_factory=dict)
    tilesets: List[Tileset] = field(default_factory=list)
    layers: List[Layer] = field(default_factory=list)     # Arena, document order
    root_layers: List[int] = field(default_factory=list)  # Arena indices
    filepath: Optional[str] = None

    # -------------------------------------------------------------------------
    # Arena construction
    # -------------------------------------------------------------------------

    def add_layer(self, layer: Layer, parent: Optional[int] = None) -> int:
        """Append a layer to the arena and link it under `parent` (or the root)."""
        index = len(self.layers)
        layer.parent = parent
        self.layers.append(layer)
        if parent is None:
            self.root_layers.append(index)
        else:
            group = self.layers[parent]
            if not isinstance(group, LayerGroup):
                raise TypeError(f"Layer {parent} ({group.name!r}) is not a group")
            group.children.append(index)
        return index

    # -------------------------------------------------------------------------
    # Traversal
    # -------------------------------------------------------------------------

    def iter_children(self, group: Optional[LayerGroup] = None) -> Iterator[Layer]:
        """Direct children of `group`, or the top-level layers when None."""
        indices = self.root_layers if group is None else group.children
        for index in indices:
            yield self.layers[index]

    def iter_layers(self) -> Iterator[Tuple[int, Layer]]:
        """
        Every layer in document (pre-)order, as (depth, layer).

        Walks with an explicit stack, so nesting depth never touches the
        Python recursion limit.
        """
        stack = [(0, index) for index in reversed(self.root_layers)]
        while stack:
            depth, index = stack.pop()
            layer = self.layers[index]
            yield depth, layer
            if isinstance(layer, LayerGroup):
                stack.extend((depth + 1, child) for child in reversed(layer.children))

    def get_layer_by_name(self, name: str) -> Optional[Layer]:
        """First layer with this name, searching inside groups too."""
        for _, layer in self.iter_layers():
            if layer.name == name:
                return layer
        return None

    def get_all_layers_flat(self) -> List[Layer]:
        """All non-group layers in document order (groups expanded)."""
        return [layer for _, layer in self.iter_layers() if not isinstance(layer, LayerGroup)]

    def layers_of_kind(self, kind: LayerType) -> List[Layer]:
        return [layer for _, layer in self.iter_layers() if layer.kind is kind]

    def tile_layers(self) -> List[TileLayer]:
        return self.layers_of_kind(LayerType.TILE)

    def object_groups(self) -> List[ObjectGroup]:
        return self.layers_of_kind(LayerType.OBJECT)

    def image_layers(self) -> List[ImageLayer]:
        return self.layers_of_kind(LayerType.IMAGE)

    # -------------------------------------------------------------------------
    # Tilesets and GIDs
    # -------------------------------------------------------------------------

    def calculate_all_lastgids(self):
        for tileset in self.tilesets:
            tileset.calculate_lastgid()

    def find_tileset_for_gid(self, gid: int) -> Optional[Tileset]:
        return find_tileset_for_gid(self.tilesets, gid)

    def resolve_gid(self, raw_gid: int) -> ResolvedGid:
        return resolve_gid(self, raw_gid)

    def build_gid_index(self) -> GidIndex:
        return GidIndex(self.tilesets)

    def get_all_image_paths(self, resolve: bool = False) -> List[str]:
        return get_all_image_paths(self, resolve)

    @property
    def directory(self) -> Path:
        """Directory relative paths in this map are resolved against."""
        return Path(self.filepath).parent if self.filepath else Path('.')


# =============================================================================
# IMAGE MANIFEST
# =============================================================================

def get_all_image_paths(tiled_map: TiledMap, resolve: bool = False) -> List[str]:
    """
    Deduplicated list of every image the renderer must load for this map.

    Collects:
    - the atlas image of each tileset
    - the per-tile images of collection tilesets
    - the image of every image layer, however deep inside groups

    Parameters:
    -----------
    resolve : bool
        False returns paths exactly as written in the files.
        True joins them to the directory they are relative to: the map's
        directory, or the external tileset's directory for its images.
    """
    paths: List[str] = []
    seen = set()

    def add(source: str, base: Path):
        if not source:
            return
        path = str(base / source) if resolve else source
        if path not in seen:
            seen.add(path)
            paths.append(path)

    map_dir = tiled_map.directory

    for tileset in tiled_map.tilesets:
        # Images of external tilesets are relative to the tileset file
        tileset_base = map_dir
        if tileset.source:
            tileset_base = map_dir / Path(tileset.source).parent

        if tileset.image is not None:
            add(tileset.image.source, tileset_base)
        for tile in tileset.tiles.values():
            if tile.image is not None:
                add(tile.image.source, tileset_base)

    for layer in tiled_map.image_layers():
        add(layer.image, map_dir)

    return paths
