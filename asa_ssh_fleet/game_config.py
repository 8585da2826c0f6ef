"""Per-instance game configuration files (GameUserSettings.ini, Game.ini)."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from . import remote_commands as rc
from .channel import RemoteChannel
from .registry import InstanceRegistry

_LOGGER = logging.getLogger(__name__)

GAME_USER_SETTINGS = "GameUserSettings.ini"
GAME_INI = "Game.ini"
KNOWN_FILES = (GAME_USER_SETTINGS, GAME_INI)

_SECTION_RE = re.compile(r"^\s*\[([^\]]+)\]\s*$")
_PAIR_RE = re.compile(r"^(\s*)([^=]+?)\s*=(.*)$")


class LineKind(str, Enum):
    SECTION = "section"
    VALUE = "value"
    COMMENT = "comment"
    BLANK = "blank"
    UNKNOWN = "unknown"


@dataclass
class IniLine:
    kind: LineKind
    raw: str
    section: str = ""
    key: str = ""
    value: str = ""

    @property
    def is_boolean(self) -> bool:
        return self.kind is LineKind.VALUE and self.value.strip().lower() in ("true", "false")


def _split_eol(raw: str) -> Tuple[str, str]:
    for eol in ("\r\n", "\n"):
        if raw.endswith(eol):
            return raw[: -len(eol)], eol
    return raw, ""


class IniDocument:
    """``[Section]`` / ``key=value`` text that serialises back byte for byte.

    Lines that are never modified keep their original text, including
    whitespace and line endings. Section and key lookups ignore case.
    """

    def __init__(self, lines: Optional[List[IniLine]] = None) -> None:
        self.lines: List[IniLine] = lines or []

    @classmethod
    def parse(cls, text: str) -> "IniDocument":
        lines: List[IniLine] = []
        section = ""
        pieces = text.split("\n")
        for index, piece in enumerate(pieces):
            last = index == len(pieces) - 1
            if last and piece == "":
                break
            raw = piece if last else piece + "\n"
            body = piece.rstrip("\r")
            stripped = body.strip()
            header = _SECTION_RE.match(body)
            if not stripped:
                lines.append(IniLine(LineKind.BLANK, raw, section))
            elif stripped.startswith((";", "#")):
                lines.append(IniLine(LineKind.COMMENT, raw, section))
            elif header:
                section = header.group(1).strip()
                lines.append(IniLine(LineKind.SECTION, raw, section))
            else:
                pair = _PAIR_RE.match(body)
                if pair:
                    lines.append(
                        IniLine(LineKind.VALUE, raw, section, pair.group(2).strip(), pair.group(3).strip())
                    )
                else:
                    lines.append(IniLine(LineKind.UNKNOWN, raw, section))
        return cls(lines)

    def serialize(self) -> str:
        return "".join(line.raw for line in self.lines)

    __str__ = serialize

    def sections(self) -> List[str]:
        names: List[str] = []
        for line in self.lines:
            if line.kind is LineKind.SECTION and line.section not in names:
                names.append(line.section)
        return names

    def items(self, section: str) -> Dict[str, str]:
        result: Dict[str, str] = {}
        for line in self._values(section):
            result.setdefault(line.key, line.value)
        return result

    def get(self, section: str, key: str, default: Optional[str] = None) -> Optional[str]:
        line = self._find(section, key)
        return line.value if line else default

    def get_all(self, section: str, key: str) -> List[str]:
        """Every value of a repeated key, in file order."""
        return [line.value for line in self._values(section) if line.key.lower() == key.lower()]

    def set(self, section: str, key: str, value: Union[str, int, float, bool]) -> None:
        """Change the first ``key`` in ``section``, appending it (and the section) if missing."""
        if isinstance(value, bool):
            value = "True" if value else "False"
        value = str(value)
        line = self._find(section, key)
        if line is not None:
            if line.value == value:
                return
            body, eol = _split_eol(line.raw)
            indent = _PAIR_RE.match(body).group(1)
            line.raw = f"{indent}{line.key}={value}{eol}"
            line.value = value
            return

        eol = self._eol()
        new = IniLine(LineKind.VALUE, f"{key}={value}{eol}", section, key, value)
        position = self._insert_position(section)
        if position is None:
            self._terminate_last_line(eol)
            self.lines.append(IniLine(LineKind.SECTION, f"[{section}]{eol}", section))
            self.lines.append(new)
            return
        self._terminate_line(position - 1, eol)
        self.lines.insert(position, new)

    def remove(self, section: str, key: str) -> bool:
        line = self._find(section, key)
        if line is None:
            return False
        self.lines.remove(line)
        return True

    def _values(self, section: str) -> List[IniLine]:
        return [
            line
            for line in self.lines
            if line.kind is LineKind.VALUE and line.section.lower() == section.lower()
        ]

    def _find(self, section: str, key: str) -> Optional[IniLine]:
        for line in self._values(section):
            if line.key.lower() == key.lower():
                return line
        return None

    def _insert_position(self, section: str) -> Optional[int]:
        """Index just after the last value/header line of *section*."""
        position = None
        for index, line in enumerate(self.lines):
            if line.section.lower() != section.lower():
                continue
            if line.kind in (LineKind.SECTION, LineKind.VALUE):
                position = index + 1
        if position is None and section == "":
            # Keys before the first header.
            return 0
        return position

    def _eol(self) -> str:
        for line in self.lines:
            _, eol = _split_eol(line.raw)
            if eol:
                return eol
        return "\n"

    def _terminate_line(self, index: int, eol: str) -> None:
        if 0 <= index < len(self.lines):
            line = self.lines[index]
            if not _split_eol(line.raw)[1]:
                line.raw += eol

    def _terminate_last_line(self, eol: str) -> None:
        self._terminate_line(len(self.lines) - 1, eol)


class GameConfigStore:
    """Read and atomically replace an instance's config files over the channel."""

    def __init__(self, channel: RemoteChannel, registry: InstanceRegistry) -> None:
        self._channel = channel
        self._registry = registry

    def path(self, name: str, filename: str) -> str:
        if not filename or "/" in filename or filename in (".", ".."):
            raise ValueError(f"Invalid config file name: {filename!r}")
        instance = self._registry.require(name).instance
        return rc.config_path(instance.directory_path, instance.bare_name, filename)

    async def read_text(self, name: str, filename: str) -> str:
        data = await self._channel.read_file(self.path(name, filename))
        return data.decode("utf-8", "replace")

    async def read(self, name: str, filename: str) -> IniDocument:
        return IniDocument.parse(await self.read_text(name, filename))

    async def write(self, name: str, filename: str, content: Union[IniDocument, str]) -> None:
        text = content.serialize() if isinstance(content, IniDocument) else content
        path = self.path(name, filename)
        await self._channel.write_file(path, text.encode("utf-8"))
        _LOGGER.info("Saved %s for %s", filename, name)
