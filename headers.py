"""Ordered, case-insensitive HTTP header mapping and field value helpers."""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-connection",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

DECIMAL_DIGITS = re.compile(r"[0-9]+")
HEX_DIGITS = re.compile(rb"[0-9A-Fa-f]+")


def parse_decimal(value: str) -> int | None:
    """ASCII decimal digits only (Content-Length, ports, max-age); ``None`` otherwise."""
    if DECIMAL_DIGITS.fullmatch(value) is None:
        return None
    return int(value)


def parse_chunk_size(line: bytes) -> int | None:
    """Size from a chunk-size line, extensions ignored; ``None`` when malformed."""
    token = line.split(b";", 1)[0].strip()
    if HEX_DIGITS.fullmatch(token) is None:
        return None
    return int(token, 16)


class Headers:
    """Header fields kept in arrival order with case-insensitive lookup.

    Repeated fields are stored as separate entries so they can be written
    back exactly as received.
    """

    __slots__ = ("_items",)

    def __init__(self, items: Iterable[tuple[str, str]] = ()) -> None:
        self._items: list[tuple[str, str]] = [(name, value) for name, value in items]

    @classmethod
    def parse_lines(cls, lines: Iterable[str]) -> "Headers":
        headers = cls()
        for line in lines:
            if ":" not in line:
                raise ValueError("Malformed header line")
            name, value = line.split(":", 1)
            if not name or name != name.strip():
                raise ValueError("Invalid header name")
            headers.add(name, value.strip())
        return headers

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[tuple[str, str]]:
        return iter(list(self._items))

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        key = name.lower()
        return any(existing.lower() == key for existing, _value in self._items)

    def __getitem__(self, name: str) -> str:
        value = self.get(name)
        if value is None:
            raise KeyError(name)
        return value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Headers):
            return NotImplemented
        return self._items == other._items

    def __repr__(self) -> str:
        return f"Headers({self._items!r})"

    def get(self, name: str, default: str | None = None) -> str | None:
        key = name.lower()
        for existing, value in self._items:
            if existing.lower() == key:
                return value
        return default

    def get_all(self, name: str) -> list[str]:
        key = name.lower()
        return [value for existing, value in self._items if existing.lower() == key]

    def tokens(self, name: str) -> set[str]:
        """Comma-separated values of every ``name`` field, lowercased."""
        found: set[str] = set()
        for value in self.get_all(name):
            found.update(token.strip().lower() for token in value.split(",") if token.strip())
        return found

    def add(self, name: str, value: str) -> None:
        self._items.append((name, value))

    def set(self, name: str, value: str) -> None:
        """Replace every ``name`` field with one entry at the first position."""
        key = name.lower()
        replaced: list[tuple[str, str]] = []
        inserted = False
        for existing, existing_value in self._items:
            if existing.lower() != key:
                replaced.append((existing, existing_value))
                continue
            if not inserted:
                replaced.append((name, value))
                inserted = True
        if not inserted:
            replaced.append((name, value))
        self._items = replaced

    def setdefault(self, name: str, value: str) -> str:
        existing = self.get(name)
        if existing is not None:
            return existing
        self.add(name, value)
        return value

    def copy(self) -> "Headers":
        return Headers(self._items)

    def without_hop_by_hop(self, *, keep: Iterable[str] = ()) -> "Headers":
        """Copy without hop-by-hop fields, including ones named in ``Connection``."""
        kept = {name.lower() for name in keep}
        dropped = (set(HOP_BY_HOP_HEADERS) | self.tokens("connection")) - kept
        return Headers(item for item in self._items if item[0].lower() not in dropped)

    def to_lines(self) -> list[str]:
        return [f"{name}: {value}" for name, value in self._items]
