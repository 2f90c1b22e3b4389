"""对象字典宽度表：从 EDS 文本中提取 (index, subindex) -> 字节宽度。

只解析 SDO 加速传输需要的信息（DataType），其余字段一律忽略。文件缺失或格式
错误时目录为空，所有未知对象按 4 字节处理。
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional, Tuple, Union

from canopen.objectdictionary import datatypes

from . import cia402

log = logging.getLogger(__name__)

DEFAULT_WIDTH = 4

# 固定宽度的 CiA402 对象，优先级高于 EDS
FIXED_WIDTHS: Dict[Tuple[int, int], int] = {
    (cia402.CONTROLWORD, 0): 2,
    (cia402.STATUSWORD, 0): 2,
    (cia402.MODES_OF_OPERATION, 0): 1,
    (cia402.PROFILE_VELOCITY, 0): 4,
    (cia402.PROFILE_ACCELERATION, 0): 4,
    (cia402.PROFILE_DECELERATION, 0): 4,
}

TYPE_WIDTHS: Dict[int, int] = {
    datatypes.BOOLEAN: 1,
    datatypes.INTEGER8: 1,
    datatypes.UNSIGNED8: 1,
    datatypes.INTEGER16: 2,
    datatypes.UNSIGNED16: 2,
    datatypes.INTEGER32: 4,
    datatypes.UNSIGNED32: 4,
    datatypes.REAL32: 4,
    datatypes.INTEGER64: 8,
    datatypes.UNSIGNED64: 8,
    datatypes.REAL64: 8,
}

_SECTION_RE = re.compile(r"^\[([0-9A-Fa-f]{1,4})(?:sub(\d{1,3}))?\]$")
_DATATYPE_RE = re.compile(r"^DataType\s*=\s*(0[xX][0-9A-Fa-f]+|\d+)\s*$")


@dataclass(frozen=True, slots=True)
class ObjectDictionaryEntry:
    index: int
    subindex: int
    width: int


class ObjectDictionaryCatalog:
    """Read-only (index, subindex) -> byte width table."""

    def __init__(self, entries: Iterable[ObjectDictionaryEntry] = ()) -> None:
        self._entries: Dict[Tuple[int, int], ObjectDictionaryEntry] = {}
        for entry in entries:
            # 重复定义时以第一次出现为准
            self._entries.setdefault((entry.index, entry.subindex), entry)

    @classmethod
    def from_eds(cls, path: Union[str, Path, None]) -> "ObjectDictionaryCatalog":
        """Load a catalog from an EDS file, or an empty one if that fails."""
        if path is None:
            return cls()
        try:
            text = Path(path).read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            log.warning("EDS file %s not loaded (%s), using default widths", path, exc)
            return cls()
        catalog = cls(parse_eds(text.splitlines()))
        log.info("EDS file %s parsed, loaded %d objects", path, len(catalog))
        return catalog

    def width_of(self, index: int, subindex: int = 0) -> int:
        fixed = FIXED_WIDTHS.get((index, subindex))
        if fixed is not None:
            return fixed
        entry = self._entries.get((index, subindex))
        if entry is not None:
            return entry.width
        return DEFAULT_WIDTH

    def get(self, index: int, subindex: int = 0) -> Optional[ObjectDictionaryEntry]:
        return self._entries.get((index, subindex))

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ObjectDictionaryEntry]:
        return iter(self._entries.values())


def _parse_number(text: str) -> int:
    if text[:2].lower() == "0x":
        return int(text, 16)
    return int(text)


def parse_eds(lines: Iterable[str]) -> Iterator[ObjectDictionaryEntry]:
    """Yield one entry per object section that declares a known DataType.

    A section starts at ``[XXXX]`` or ``[XXXXsubN]`` and is committed by its
    ``AccessType=`` line. Anything that does not fit is skipped.
    """
    key: Optional[Tuple[int, int]] = None
    data_type: Optional[int] = None
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith(";"):
            continue
        if line.startswith("["):
            match = _SECTION_RE.match(line)
            if match is None:
                key = None
            else:
                subindex = int(match.group(2)) if match.group(2) else 0
                key = (int(match.group(1), 16), subindex) if subindex <= 0xFF else None
            data_type = None
            continue
        if key is None:
            continue
        if line.startswith("DataType"):
            match = _DATATYPE_RE.match(line)
            data_type = _parse_number(match.group(1)) if match else None
        elif line.startswith("AccessType"):
            width = TYPE_WIDTHS.get(data_type) if data_type is not None else None
            if width is not None:
                yield ObjectDictionaryEntry(key[0], key[1], width)
            else:
                log.debug("EDS object 0x%04X:%d skipped (DataType=%s)", key[0], key[1], data_type)
            key = None
            data_type = None
