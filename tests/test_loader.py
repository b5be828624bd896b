import logging

import pytest
from PIL import Image as PILImage

from tiled_level.decoder import encode_tile_data
from tiled_level.errors import (
    ErrorKind, DataIntegrityError, FormatError, MapReferenceError, TilesetReferenceError,
    DecodeError
)
from tiled_level.loader import TiledLevelLoader, LoadState
from tiled_level.structures import (
    Orientation, RenderOrder, TileLayer, ImageLayer, ObjectGroup, LayerGroup, ObjectShape
)

from builders import tmx_map, tmx_layer


GROUND = [1, 2, 3, 4,
          5, 6, 7, 8,
          9, 10, 0, 0x80000000 | 4]


@pytest.fixture
def loader(cache):
    return TiledLevelLoader(cache=cache)


def nested_groups_tmx(depth):
    opening = ''.join(f'<group id="{i + 2}" name="g{i}">' for i in range(depth))
    closing = '</group>' * depth
    return tmx_map(opening + tmx_layer("Deep", 4, 3, [0] * 12) + closing)


# -----------------------------------------------------------------------------
# TMX
# -----------------------------------------------------------------------------

def test_load_tmx_csv(write_map, loader):
    path = write_map("level.tmx", tmx_map(tmx_layer("Ground", 4, 3, GROUND)))

    level = loader.load(path)

    assert loader.state is LoadState.DONE
    assert level.orientation is Orientation.ORTHOGONAL
    assert level.renderorder is RenderOrder.RIGHT_DOWN
    assert (level.width, level.height, level.tilewidth, level.tileheight) == (4, 3, 32, 32)
    assert level.nextobjectid == 9

    ground = level.get_layer_by_name("Ground")
    assert isinstance(ground, TileLayer)
    assert ground.data.tolist() == GROUND
    assert ground.get_tile_gid(1, 2) == 10
    assert ground.as_grid().shape == (3, 4)

    tileset = level.tilesets[0]
    assert (tileset.firstgid, tileset.lastgid) == (1, 10)
    cell = level.resolve_gid(ground.get_tile_gid(3, 2))
    assert cell.local_id == 3 and cell.flip_h


@pytest.mark.parametrize("compression", [None, "zlib", "gzip"])
def test_load_tmx_base64(write_map, loader, compression):
    path = write_map("level.tmx", tmx_map(
        tmx_layer("Ground", 4, 3, GROUND, encoding="base64", compression=compression)))

    ground = loader.load(path).get_layer_by_name("Ground")

    assert ground.data.tolist() == GROUND
    assert ground.encoding == "base64"
    assert ground.compression == compression


def test_load_tmx_xml_tile_elements(write_map, loader):
    tiles = ''.join('<tile gid="%d"/>' % gid if gid else '<tile/>' for gid in [3, 0, 5, 0])
    body = f'<layer id="1" name="Old" width="2" height="2"><data>{tiles}</data></layer>'
    level = loader.load(write_map("old.tmx", tmx_map(body, width=2, height=2)))

    assert level.get_layer_by_name("Old").data.tolist() == [3, 0, 5, 0]


def test_load_tmx_layer_kinds_and_tree(write_map, loader):
    body = (
        tmx_layer("Ground", 4, 3, GROUND) +
        '<group id="2" name="Background" parallaxx="0.5">'
        ' <imagelayer id="3" name="Sky" offsetx="4" repeatx="1">'
        '  <image source="sky.png" width="640" height="480"/>'
        ' </imagelayer>'
        ' <objectgroup id="4" name="Spawns">'
        '  <object id="1" name="start" type="spawn" x="16" y="32"><point/></object>'
        '  <object id="2" name="wall" x="0" y="0" width="64" height="8"/>'
        ' </objectgroup>'
        '</group>'
    )
    level = loader.load(write_map("tree.tmx", tmx_map(body)))

    assert [type(layer) for layer in level.layers] == [TileLayer, LayerGroup, ImageLayer, ObjectGroup]
    assert level.root_layers == [0, 1]
    assert level.layers[1].children == [2, 3]
    assert level.layers[2].parent == 1

    sky = level.get_layer_by_name("Sky")
    assert sky.image == "sky.png"
    assert sky.repeatx and not sky.repeaty
    assert level.layers[1].parallaxx == 0.5

    spawns = level.get_layer_by_name("Spawns")
    assert [obj.shape for obj in spawns.objects] == [ObjectShape.POINT, ObjectShape.RECTANGLE]
    assert spawns.objects[0].type == "spawn"


def test_embedded_tileset(write_map, loader):
    tilesets = ('<tileset firstgid="1" name="inline" tilewidth="32" tileheight="32" '
                'tilecount="16" columns="4"><image source="inline.png" width="128" height="128"/>'
                '</tileset>')
    level = loader.load(write_map("embedded.tmx", tmx_map(
        tmx_layer("Ground", 4, 3, [0] * 12), tilesets=tilesets)))

    tileset = level.tilesets[0]
    assert tileset.source is None
    assert (tileset.firstgid, tileset.lastgid) == (1, 16)
    assert level.get_all_image_paths() == ["inline.png"]


def test_tileset_size_read_from_image_file(write_map, loader, level_dir):
    PILImage.new("RGBA", (64, 32)).save(level_dir / "atlas.png")
    tilesets = ('<tileset firstgid="1" name="probe" tilewidth="16" tileheight="16">'
                '<image source="atlas.png"/></tileset>')
    level = loader.load(write_map("probe.tmx", tmx_map(
        tmx_layer("Ground", 4, 3, [0] * 12), tilesets=tilesets)))

    tileset = level.tilesets[0]
    assert (tileset.image.width, tileset.image.height) == (64, 32)
    assert tileset.columns == 4
    assert tileset.lastgid == 8


def test_unknown_orientation_falls_back(write_map, loader, caplog):
    path = write_map("odd.tmx", tmx_map(tmx_layer("Ground", 4, 3, GROUND),
                                        orientation="diagonal"))
    with caplog.at_level(logging.WARNING, logger="tiled_level.loader"):
        level = loader.load(path)

    assert level.orientation is Orientation.ORTHOGONAL
    assert "diagonal" in caplog.text


def test_isometric_orientation(write_map, loader):
    path = write_map("iso.tmx", tmx_map(tmx_layer("Ground", 4, 3, GROUND),
                                        orientation="isometric"))
    assert loader.load(path).orientation is Orientation.ISOMETRIC


# -----------------------------------------------------------------------------
# Failures
# -----------------------------------------------------------------------------

def test_length_mismatch_fails_whole_load(write_map, loader):
    body = tmx_layer("Ground", 4, 3, GROUND) + tmx_layer("Broken Layer", 4, 3, GROUND[:11], layer_id=2)
    result = loader.load_from_file(write_map("short.tmx", tmx_map(body)))

    assert not result.ok
    assert result.map is None
    assert result.error_kind is ErrorKind.DATA_INTEGRITY
    assert "Broken Layer" in result.message
    assert "Broken Layer" in loader.last_error
    assert loader.state is LoadState.FAILED

    with pytest.raises(DataIntegrityError):
        loader.load(write_map("short.tmx", tmx_map(body)))


def test_bad_csv_token_is_caught_by_length_check(write_map, loader):
    body = ('<layer id="1" name="Typo" width="2" height="2">'
            '<data encoding="csv">1,2,x,4</data></layer>')
    result = loader.load_from_file(write_map("typo.tmx", tmx_map(body, width=2, height=2)))
    assert result.error_kind is ErrorKind.DATA_INTEGRITY
    assert "Typo" in result.message


def test_group_depth_limit(write_map, cache):
    path = write_map("deep.tmx", nested_groups_tmx(4))

    with pytest.raises(FormatError, match="nested"):
        TiledLevelLoader(cache=cache, max_group_depth=3).load(path)

    level = TiledLevelLoader(cache=cache, max_group_depth=4).load(path)
    assert level.get_layer_by_name("Deep").parent == 3


def test_very_deep_nesting_does_not_recurse(write_map, cache):
    path = write_map("abyss.tmx", nested_groups_tmx(1500))

    result = TiledLevelLoader(cache=cache).load_from_file(path)
    assert result.error_kind is ErrorKind.FORMAT

    level = TiledLevelLoader(cache=cache, max_group_depth=2000).load(path)
    depths = [depth for depth, _ in level.iter_layers()]
    assert max(depths) == 1500


def test_wrong_root_element(write_map, loader):
    path = write_map("notamap.tmx", '<tileset name="x"/>')
    with pytest.raises(FormatError, match="expected <map>"):
        loader.load(path)


def test_unsupported_extension(write_map, loader):
    result = loader.load_from_file(write_map("level.txt", "hello"))
    assert result.error_kind is ErrorKind.FORMAT


def test_malformed_xml(write_map, loader):
    result = loader.load_from_file(write_map("bad.tmx", "<map><layer></map>"))
    assert result.error_kind is ErrorKind.FORMAT


def test_missing_map_file(tmp_path, loader):
    result = loader.load_from_file(tmp_path / "ghost.tmx")
    assert result.error_kind is ErrorKind.REFERENCE

    with pytest.raises(MapReferenceError, match="ghost.tmx"):
        loader.load(tmp_path / "ghost.tmx")


def test_non_numeric_map_width(write_map, loader):
    result = loader.load_from_file(write_map("four.tmx", tmx_map(
        tmx_layer("Ground", 4, 3, GROUND), width="four")))

    assert result.error_kind is ErrorKind.FORMAT
    assert "four" in result.message
    assert loader.state is LoadState.FAILED
    assert loader.last_error == result.message


def test_non_numeric_int_property(write_map, loader):
    body = ('<objectgroup id="2" name="Enemies">'
            ' <properties><property name="count" type="int" value="lots"/></properties>'
            '</objectgroup>')
    result = loader.load_from_file(write_map("lots.tmx", tmx_map(body)))

    assert result.error_kind is ErrorKind.FORMAT
    assert "Enemies" in result.message
    assert loader.state is LoadState.FAILED


def test_negative_tile_gid(write_map, loader):
    tiles = ''.join('<tile gid="%d"/>' % gid for gid in [3, -1, 5, 0])
    body = f'<layer id="1" name="Old" width="2" height="2"><data>{tiles}</data></layer>'
    result = loader.load_from_file(write_map("negative.tmx", tmx_map(body, width=2, height=2)))

    assert not result.ok
    assert result.error_kind is ErrorKind.DATA_INTEGRITY
    assert "Old" in result.message
    assert loader.state is LoadState.FAILED


def test_zero_tile_size_warns(write_map, loader, caplog):
    path = write_map("flat.tmx", tmx_map(tmx_layer("Ground", 4, 3, GROUND))
                     .replace('tilewidth="32"', 'tilewidth="0"', 1))
    with caplog.at_level(logging.WARNING, logger="tiled_level.loader"):
        level = loader.load(path)

    assert level.tilewidth == 0
    assert "tile size 0x32" in caplog.text


def test_missing_external_tileset(write_map, loader):
    path = write_map("lost.tmx", tmx_map(
        tmx_layer("Ground", 4, 3, GROUND),
        tilesets='<tileset firstgid="1" source="tilesets/missing.tsx"/>'))

    with pytest.raises(TilesetReferenceError, match="missing.tsx"):
        loader.load(path)


def test_corrupt_tile_data_is_decode_error(write_map, loader):
    body = ('<layer id="1" name="Ground" width="4" height="3">'
            '<data encoding="base64" compression="zlib">AAAAAAAAAAAAAAAA</data></layer>')
    with pytest.raises(DecodeError):
        loader.load(write_map("corrupt.tmx", tmx_map(body)))


# -----------------------------------------------------------------------------
# TMJ
# -----------------------------------------------------------------------------

def test_load_tmj(write_map, loader, tmj_document):
    level = loader.load(write_map("level.tmj", tmj_document))

    assert level.properties["music"].value == "forest.ogg"
    assert [ts.name for ts in level.tilesets] == ["terrain", "props"]
    assert (level.tilesets[1].firstgid, level.tilesets[1].lastgid) == (11, 30)

    ground = level.get_layer_by_name("Ground")
    assert ground.data.tolist() == [1, 2, 3, 11, 0, 0x80000000 | 12]
    cell = level.resolve_gid(ground.get_tile_gid(2, 1))
    assert cell.tileset.name == "props"
    assert cell.local_id == 1
    assert cell.flip_h

    background = level.get_layer_by_name("Background")
    assert [layer.name for layer in level.iter_children(background)] == ["Sky", "Entities"]

    sky = level.get_layer_by_name("Sky")
    assert (sky.parallaxx, sky.parallaxy) == (0.25, 0.5)
    assert sky.render_position(100, 100) == (-15.0, -30.0)

    entities = level.get_layer_by_name("Entities")
    assert entities.objects[1].gid == 13
    assert entities.objects[2].shape is ObjectShape.POLYLINE


def test_tmj_base64_layer(write_map, loader, tmj_document):
    tmj_document["layers"][0].update(
        encoding="base64", compression="zlib",
        data=encode_tile_data([1, 2, 3, 4, 5, 6], "base64", "zlib"))
    level = loader.load(write_map("b64.tmj", tmj_document))
    assert level.get_layer_by_name("Ground").data.tolist() == [1, 2, 3, 4, 5, 6]


def test_tmj_wrong_type(write_map, loader, tmj_document):
    tmj_document["type"] = "tileset"
    result = loader.load_from_file(write_map("wrong.tmj", tmj_document))
    assert result.error_kind is ErrorKind.FORMAT


def test_tmj_length_mismatch(write_map, loader, tmj_document):
    tmj_document["layers"][0]["data"] = [1, 2, 3]
    result = loader.load_from_file(write_map("short.tmj", tmj_document))
    assert result.error_kind is ErrorKind.DATA_INTEGRITY
    assert "Ground" in result.message


def test_tmj_infinite_chunks(write_map, loader, tmj_document):
    tmj_document["infinite"] = True
    tmj_document["layers"][0] = {
        "id": 1, "name": "Ground", "type": "tilelayer", "width": 32, "height": 16,
        "startx": -16, "starty": 0, "encoding": "base64", "compression": "gzip",
        "chunks": [
            {"x": -16, "y": 0, "width": 16, "height": 16,
             "data": encode_tile_data([2] * 256, "base64", "gzip")},
            {"x": 0, "y": 0, "width": 16, "height": 16,
             "data": encode_tile_data([3] * 256, "base64", "gzip")},
        ],
    }
    level = loader.load(write_map("infinite.tmj", tmj_document))

    ground = level.get_layer_by_name("Ground")
    assert level.infinite
    assert len(ground.chunks) == 2
    assert ground.get_tile_gid(-1, 5) == 2
    assert ground.get_tile_gid(15, 15) == 3
    assert ground.get_tile_gid(16, 0) == 0


def test_tmx_infinite_chunk_mismatch(write_map, loader):
    body = ('<layer id="1" name="Endless" width="16" height="16"><data encoding="csv">'
            '<chunk x="0" y="0" width="2" height="2">1,2,3</chunk>'
            '</data></layer>')
    path = write_map("endless.tmx", tmx_map(body).replace('infinite="0"', 'infinite="1"'))

    result = loader.load_from_file(path)
    assert result.error_kind is ErrorKind.DATA_INTEGRITY
    assert "Endless" in result.message


def test_tmj_chunk_that_is_not_an_object(write_map, loader, tmj_document):
    tmj_document["infinite"] = True
    tmj_document["layers"][0] = {
        "id": 1, "name": "Ground", "type": "tilelayer", "width": 16, "height": 16,
        "chunks": [[1, 2, 3]],
    }
    result = loader.load_from_file(write_map("listchunk.tmj", tmj_document))

    assert result.error_kind is ErrorKind.FORMAT
    assert "Ground" in result.message
    assert loader.state is LoadState.FAILED
