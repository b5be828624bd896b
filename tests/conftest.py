import json

import pytest

from tiled_level.tileset_cache import TilesetCache

from builders import TERRAIN_TSX, PROPS_TSJ


@pytest.fixture
def level_dir(tmp_path):
    """Directory with external tilesets in tilesets/ and the images they reference."""
    tilesets = tmp_path / "tilesets"
    tilesets.mkdir()
    (tilesets / "terrain.tsx").write_text(TERRAIN_TSX, encoding='utf-8')
    (tilesets / "props.tsj").write_text(json.dumps(PROPS_TSJ), encoding='utf-8')
    return tmp_path


@pytest.fixture
def write_map(level_dir):
    def write(name, content):
        path = level_dir / name
        if isinstance(content, dict):
            content = json.dumps(content)
        path.write_text(content, encoding='utf-8')
        return path
    return write


@pytest.fixture
def cache():
    """Fresh tileset cache for each test."""
    return TilesetCache()


@pytest.fixture
def tmj_document():
    """A small orthogonal TMJ map with nested groups, objects and an image layer."""
    return {
        "type": "map",
        "version": "1.10",
        "tiledversion": "1.10.2",
        "orientation": "orthogonal",
        "renderorder": "right-down",
        "width": 3,
        "height": 2,
        "tilewidth": 32,
        "tileheight": 32,
        "infinite": False,
        "nextlayerid": 6,
        "nextobjectid": 4,
        "properties": [{"name": "music", "type": "string", "value": "forest.ogg"}],
        "tilesets": [
            {"firstgid": 1, "source": "tilesets/terrain.tsx"},
            {"firstgid": 11, "source": "tilesets/props.tsj"},
        ],
        "layers": [
            {
                "id": 1, "name": "Ground", "type": "tilelayer",
                "width": 3, "height": 2, "visible": True, "opacity": 1,
                "data": [1, 2, 3, 11, 0, 0x80000000 | 12],
            },
            {
                "id": 2, "name": "Background", "type": "group",
                "layers": [
                    {
                        "id": 3, "name": "Sky", "type": "imagelayer",
                        "image": "sky.png", "parallaxx": 0.25, "parallaxy": 0.5,
                        "offsetx": 10, "offsety": 20, "repeatx": True,
                    },
                    {
                        "id": 4, "name": "Entities", "type": "objectgroup",
                        "objects": [
                            {"id": 1, "name": "guard", "type": "npc", "x": 32, "y": 64,
                             "properties": [
                                 {"name": "patrolPath", "type": "int", "value": 3},
                                 {"name": "template", "type": "string", "value": "guard.tx"},
                             ]},
                            {"id": 2, "name": "chest", "x": 64, "y": 32, "gid": 13},
                            {"id": 3, "name": "route", "type": "path", "x": 0, "y": 0,
                             "polyline": [{"x": 0, "y": 0}, {"x": 32, "y": 0}]},
                        ],
                    },
                ],
            },
        ],
    }
