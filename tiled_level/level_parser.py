"""
Level analysis on top of the loader.

Loads a map and reports what a game needs to know before instantiating
it: which images to load, which object types appear (and how often), and
which objects point at other objects through their properties.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List, Dict, Union

from .loader import TiledLevelLoader
from .structures import TiledMap
from .tileset_cache import TilesetCache

logger = logging.getLogger(__name__)

UNDEFINED_TYPE = "undefined"

# Object properties that name another object, by id (int) or by name (string)
REFERENCE_PROPERTIES = ('targetObject', 'patrolPath', 'linkedObject')


@dataclass
class TilesetRef:
    firstgid: int
    source: Optional[str]
    image: Optional[str]
    is_collection: bool = False
    individual_images: List[str] = field(default_factory=list)


@dataclass
class VisualResourceManifest:
    tilesets: List[TilesetRef] = field(default_factory=list)
    parallax_layers: List[str] = field(default_factory=list)
    all_image_paths: List[str] = field(default_factory=list)

    @property
    def total_image_count(self) -> int:
        return len(self.all_image_paths)


@dataclass
class ObjectTypeCensus:
    type_counts: Dict[str, int] = field(default_factory=dict)
    templates: Dict[str, str] = field(default_factory=dict)    # object name -> template

    @property
    def total_objects(self) -> int:
        return sum(self.type_counts.values())

    @property
    def unique_types(self) -> List[str]:
        return sorted(self.type_counts)

    def has_type(self, object_type: str) -> bool:
        return object_type in self.type_counts


@dataclass
class ObjectReference:
    source_id: int
    source_name: str
    reference_type: str                  # property name, e.g. "patrolPath"
    target_id: int = 0
    target_name: str = ""


@dataclass
class LevelParseResult:
    success: bool = False
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    orientation: str = ""
    width: int = 0
    height: int = 0
    tilewidth: int = 0
    tileheight: int = 0
    infinite: bool = False

    manifest: VisualResourceManifest = field(default_factory=VisualResourceManifest)
    census: ObjectTypeCensus = field(default_factory=ObjectTypeCensus)
    references: List[ObjectReference] = field(default_factory=list)
    map: Optional[TiledMap] = None

    @property
    def ok(self) -> bool:
        return self.success and not self.errors


class LevelParser:

    def __init__(self, cache: Optional[TilesetCache] = None):
        self.loader = TiledLevelLoader(cache=cache)

    def parse_and_analyze(self, path: Union[str, Path]) -> LevelParseResult:
        result = LevelParseResult()

        load = self.loader.load_from_file(path)
        if not load.ok:
            result.errors.append(f"Failed to load Tiled map: {load.message}")
            return result

        tiled_map = load.map
        result.map = tiled_map
        result.orientation = tiled_map.orientation.value
        result.width = tiled_map.width
        result.height = tiled_map.height
        result.tilewidth = tiled_map.tilewidth
        result.tileheight = tiled_map.tileheight
        result.infinite = tiled_map.infinite

        result.manifest = self.extract_visual_resources(tiled_map)
        result.census = self.build_object_census(tiled_map)
        result.references = self.extract_object_references(tiled_map)

        for ref in result.manifest.tilesets:
            if ref.image is None and not ref.individual_images:
                result.warnings.append(f"Tileset at firstgid {ref.firstgid} has no images")

        logger.info("Analyzed %s: %d images, %d objects of %d types, %d references",
                    path, result.manifest.total_image_count, result.census.total_objects,
                    len(result.census.type_counts), len(result.references))
        result.success = True
        return result

    @staticmethod
    def extract_visual_resources(tiled_map: TiledMap) -> VisualResourceManifest:
        manifest = VisualResourceManifest()

        for tileset in tiled_map.tilesets:
            ref = TilesetRef(firstgid=tileset.firstgid, source=tileset.source,
                             image=tileset.image.source if tileset.image else None,
                             is_collection=tileset.is_collection)
            if ref.is_collection:
                ref.individual_images = [tile.image.source for tile in tileset.tiles.values()
                                         if tile.image is not None]
            manifest.tilesets.append(ref)

        manifest.parallax_layers = [layer.image for layer in tiled_map.image_layers()
                                    if layer.image]
        manifest.all_image_paths = tiled_map.get_all_image_paths()
        return manifest

    @staticmethod
    def build_object_census(tiled_map: TiledMap) -> ObjectTypeCensus:
        census = ObjectTypeCensus()
        counts = Counter()

        for group in tiled_map.object_groups():
            for obj in group.objects:
                counts[obj.type or UNDEFINED_TYPE] += 1

                template = obj.properties.get('template')
                if template is not None and template.type == 'string' and template.value:
                    census.templates[obj.name] = template.value
                elif obj.template:
                    census.templates[obj.name] = obj.template

        census.type_counts = dict(counts)
        return census

    @staticmethod
    def extract_object_references(tiled_map: TiledMap) -> List[ObjectReference]:
        references = []
        for group in tiled_map.object_groups():
            for obj in group.objects:
                for name in REFERENCE_PROPERTIES:
                    prop = obj.properties.get(name)
                    if prop is None:
                        continue
                    ref = ObjectReference(source_id=obj.id, source_name=obj.name,
                                          reference_type=name)
                    if prop.type in ('int', 'object'):
                        ref.target_id = prop.value
                    elif prop.type == 'string':
                        ref.target_name = prop.value
                    references.append(ref)
        return references
