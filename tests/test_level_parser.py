from tiled_level.__main__ import main
from tiled_level.level_parser import LevelParser

from builders import tmx_map, tmx_layer


def test_parse_and_analyze(write_map, cache, tmj_document):
    result = LevelParser(cache=cache).parse_and_analyze(write_map("level.tmj", tmj_document))

    assert result.ok
    assert result.orientation == "orthogonal"
    assert (result.width, result.height, result.tilewidth, result.tileheight) == (3, 2, 32, 32)

    manifest = result.manifest
    assert [ref.firstgid for ref in manifest.tilesets] == [1, 11]
    assert not any(ref.is_collection for ref in manifest.tilesets)
    assert manifest.parallax_layers == ["sky.png"]
    assert manifest.all_image_paths == ["terrain.png", "props.png", "sky.png"]

    census = result.census
    assert census.type_counts == {"npc": 1, "undefined": 1, "path": 1}
    assert census.total_objects == 3
    assert census.has_type("undefined")
    assert census.templates == {"guard": "guard.tx"}

    assert len(result.references) == 1
    reference = result.references[0]
    assert (reference.source_name, reference.reference_type, reference.target_id) == \
        ("guard", "patrolPath", 3)


def test_string_reference_and_collection_tileset(write_map, cache):
    tilesets = ('<tileset firstgid="1" name="sprites" tilewidth="32" tileheight="32" tilecount="2">'
                ' <tile id="0"><image source="hero.png" width="32" height="32"/></tile>'
                ' <tile id="1"><image source="slime.png" width="32" height="32"/></tile>'
                '</tileset>')
    body = ('<objectgroup id="2" name="Triggers">'
            ' <object id="7" name="door">'
            '  <properties><property name="linkedObject" value="switch"/></properties>'
            ' </object>'
            '</objectgroup>')
    path = write_map("sprites.tmx", tmx_map(body, tilesets=tilesets))

    result = LevelParser(cache=cache).parse_and_analyze(path)

    ref = result.manifest.tilesets[0]
    assert ref.is_collection
    assert ref.individual_images == ["hero.png", "slime.png"]
    assert result.references[0].target_name == "switch"
    assert result.census.type_counts == {"undefined": 1}


def test_failed_load_is_reported(write_map, cache):
    body = tmx_layer("Ground", 4, 3, [1, 2, 3])
    result = LevelParser(cache=cache).parse_and_analyze(write_map("bad.tmx", tmx_map(body)))

    assert not result.ok
    assert "Ground" in result.errors[0]
    assert result.map is None


def test_cli_report(write_map, tmj_document, capsys):
    path = write_map("level.tmj", tmj_document)

    assert main([str(path)]) == 0

    out = capsys.readouterr().out
    assert "terrain: GIDs 1-10" in out
    assert "props: GIDs 11-30" in out
    assert "Background (group, 2 children)" in out
    assert "npc: 1" in out
    assert "sky.png" in out


def test_cli_errors(tmp_path, write_map, capsys):
    assert main([]) == 1
    assert main([str(tmp_path / "missing.tmx")]) == 1

    path = write_map("bad.tmx", tmx_map(tmx_layer("Ground", 4, 3, [1])))
    assert main([str(path)]) == 1
    assert "Ground" in capsys.readouterr().out
