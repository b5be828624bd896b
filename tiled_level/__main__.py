#!/usr/bin/env python3

"""
Tiled Level Inspector - print what a Tiled map contains

Usage:
    python -m tiled_level <map.tmx|map.tmj> [-v]

Prints the map header, tilesets with their GID ranges, the layer tree,
the object census and every image the map needs.

Options:
    -v          Verbose logging (decoder and loader details)
"""

import logging
import sys
from pathlib import Path

from .level_parser import LevelParser
from .structures import TileLayer, ObjectGroup, ImageLayer, LayerGroup


def print_report(result):
    tiled_map = result.map

    print("=" * 60)
    print(f"Map: {tiled_map.filepath}")
    print("=" * 60)
    print(f"Size:        {tiled_map.width}x{tiled_map.height} tiles "
          f"({tiled_map.width * tiled_map.tilewidth}x{tiled_map.height * tiled_map.tileheight} px)")
    print(f"Tile size:   {tiled_map.tilewidth}x{tiled_map.tileheight}")
    print(f"Orientation: {tiled_map.orientation.value}")
    print(f"Infinite:    {'yes' if tiled_map.infinite else 'no'}")

    print("\n--- Tilesets ---")
    for tileset in tiled_map.tilesets:
        kind = "collection" if tileset.is_collection else "atlas"
        origin = f" ({tileset.source})" if tileset.source else ""
        print(f"  {tileset.name}: GIDs {tileset.firstgid}-{tileset.lastgid}, {kind}{origin}")

    print("\n--- Layers ---")
    for depth, layer in tiled_map.iter_layers():
        indent = "  " * (depth + 1)
        if isinstance(layer, TileLayer):
            if layer.chunks:
                detail = f"tiles, {len(layer.chunks)} chunks"
            else:
                detail = f"tiles {layer.width}x{layer.height}, {int((layer.data != 0).sum())} set"
        elif isinstance(layer, ObjectGroup):
            detail = f"objects, {len(layer.objects)}"
        elif isinstance(layer, ImageLayer):
            detail = f"image {layer.image}"
        elif isinstance(layer, LayerGroup):
            detail = f"group, {len(layer.children)} children"
        else:
            detail = "?"
        hidden = "" if layer.visible else " [hidden]"
        print(f"{indent}{layer.name} ({detail}){hidden}")

    census = result.census
    print(f"\n--- Objects: {census.total_objects} ---")
    for object_type, count in sorted(census.type_counts.items()):
        print(f"  {object_type}: {count}")
    for ref in result.references:
        target = ref.target_name or ref.target_id
        print(f"  {ref.source_name or ref.source_id} --{ref.reference_type}--> {target}")

    print(f"\n--- Images: {result.manifest.total_image_count} ---")
    for path in tiled_map.get_all_image_paths(resolve=True):
        print(f"  {path}")

    for warning in result.warnings:
        print(f"Warning: {warning}")


def main(argv=None):
    args = list(sys.argv[1:] if argv is None else argv)
    verbose = '-v' in args
    args = [arg for arg in args if arg != '-v']

    if len(args) != 1:
        print(__doc__)
        return 1

    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    source_path = args[0]

    if not Path(source_path).exists():
        print(f"Error: File '{source_path}' not found")
        return 1

    result = LevelParser().parse_and_analyze(source_path)

    if not result.ok:
        for error in result.errors:
            print(f"Error: {error}")
        return 1

    print_report(result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
