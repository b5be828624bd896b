"""
External tileset files: TSX (XML) and TSJ (JSON)

A map can keep its tilesets in separate files so several maps share them:

    <tileset firstgid="1" source="terrain.tsx"/>          (TMX)
    {"firstgid": 1, "source": "terrain.tsj"}              (TMJ)

The tileset file itself never knows its firstgid; that number belongs to
the map. Tilesets parsed here therefore come back with firstgid = 0 and the
loader fills it in on its own copy.
"""

import json
import logging
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Union

from .errors import FormatError, TilesetReferenceError, MALFORMED_VALUE_ERRORS
from .structures import Tileset

logger = logging.getLogger(__name__)


class TilesetParser:
    """Parses one tileset file; the syntax is picked from the extension."""

    XML_EXTENSIONS = ('.tsx',)
    JSON_EXTENSIONS = ('.tsj', '.json')

    def parse_file(self, path: Union[str, Path]) -> Tileset:
        """
        Parse a .tsx/.tsj/.json tileset file.

        Raises:
        -------
        TilesetReferenceError : file missing or unreadable
        FormatError : unknown extension, malformed file or value, wrong root element
        """
        path = Path(path)
        suffix = path.suffix.lower()

        if suffix not in self.XML_EXTENSIONS + self.JSON_EXTENSIONS:
            raise FormatError(f"Unsupported tileset format: '{path.suffix}' "
                              f"(expected .tsx, .tsj or .json): {path}")

        if not path.is_file():
            raise TilesetReferenceError(f"Tileset file not found: {path}")

        try:
            text = path.read_text(encoding='utf-8')
        except OSError as e:
            raise TilesetReferenceError(f"Cannot read tileset file {path}: {e}") from e

        if suffix in self.XML_EXTENSIONS:
            tileset = self.parse_xml(text, path)
        else:
            tileset = self.parse_json(text, path)

        logger.debug("Parsed tileset '%s' from %s (%d tiles)",
                     tileset.name, path, tileset.tilecount)
        return tileset

    @staticmethod
    def parse_xml(text: str, path: Union[str, Path] = '<string>') -> Tileset:
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            raise FormatError(f"Failed to parse TSX file {path}: {e}") from e

        if root.tag != 'tileset':
            raise FormatError(f"Invalid TSX file {path}: root element is "
                              f"<{root.tag}>, expected <tileset>")

        try:
            tileset = Tileset.from_xml(root)
        except MALFORMED_VALUE_ERRORS as e:
            raise FormatError(f"Invalid TSX file {path}: malformed value: {e}") from e
        # A TSX root has no source attribute of its own
        tileset.source = None
        return tileset

    @staticmethod
    def parse_json(text: str, path: Union[str, Path] = '<string>') -> Tileset:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise FormatError(f"Failed to parse TSJ file {path}: {e}") from e

        if not isinstance(data, dict):
            raise FormatError(f"Invalid TSJ file {path}: top level is not an object")
        if data.get('type', 'tileset') != 'tileset':
            raise FormatError(f"Invalid TSJ file {path}: type is "
                              f"'{data.get('type')}', expected 'tileset'")

        try:
            tileset = Tileset.from_json(data)
        except MALFORMED_VALUE_ERRORS as e:
            raise FormatError(f"Invalid TSJ file {path}: malformed value: {e}") from e
        tileset.source = None
        return tileset


def parse_tileset_file(path: Union[str, Path]) -> Tileset:
    return TilesetParser().parse_file(path)
