"""Shared fixtures: tiny images produced with Pillow and EXIF blobs assembled with struct."""

import struct
from collections.abc import Callable
from pathlib import Path
from types import SimpleNamespace

import pytest
from loguru import logger
from PIL import Image


Entry = tuple[int, int, int, bytes]

ASCII = 2
SHORT = 3
LONG = 4
RATIONAL = 5


def _ifd(entries: list[Entry], offset: int, byteorder: str) -> bytes:
    entries = sorted(entries)
    data_start = offset + 2 + 12 * len(entries) + 4
    directory = struct.pack(byteorder + "H", len(entries))
    data = b""
    for tag, type_, count, value in entries:
        directory += struct.pack(byteorder + "HHI", tag, type_, count)
        if len(value) <= 4:
            directory += value.ljust(4, b"\0")
        else:
            directory += struct.pack(byteorder + "I", data_start + len(data))
            data += value + (b"\0" if len(value) & 1 else b"")
    return directory + struct.pack(byteorder + "I", 0) + data


def build_tiff(
    ifd0: list[Entry],
    gps: list[Entry] | None = None,
    *,
    byteorder: str = "<",
    gps_pointer: int | None = None,
) -> bytes:
    """Assemble a TIFF structure: header, IFD0 and an optional GPS IFD right after it."""
    header = (b"II" if byteorder == "<" else b"MM") + struct.pack(byteorder + "HI", 42, 8)
    entries = list(ifd0)
    if gps is not None or gps_pointer is not None:
        entries.append((0x8825, LONG, 1, struct.pack(byteorder + "I", 0)))
    first = _ifd(entries, 8, byteorder)
    if gps is None and gps_pointer is None:
        return header + first
    target = gps_pointer if gps_pointer is not None else 8 + len(first)
    entries[-1] = (0x8825, LONG, 1, struct.pack(byteorder + "I", target))
    body = _ifd(entries, 8, byteorder)
    if gps is None:
        return header + body
    return header + body + _ifd(gps, 8 + len(body), byteorder)


def ascii_value(tag: int, text: str) -> Entry:
    raw = text.encode() + b"\0"
    return (tag, ASCII, len(raw), raw)


def rational_value(tag: int, pairs: list[tuple[int, int]], byteorder: str = "<") -> Entry:
    raw = b"".join(struct.pack(byteorder + "II", n, d) for n, d in pairs)
    return (tag, RATIONAL, len(pairs), raw)


def gps_entries(lat: float, lon: float) -> list[Entry]:
    def dms(value: float) -> list[tuple[int, int]]:
        value = abs(value)
        degrees = int(value)
        minutes = int((value - degrees) * 60)
        seconds = round(((value - degrees) * 60 - minutes) * 60 * 100)
        return [(degrees, 1), (minutes, 1), (seconds, 100)]

    return [
        ascii_value(0x0001, "S" if lat < 0 else "N"),
        rational_value(0x0002, dms(lat)),
        ascii_value(0x0003, "W" if lon < 0 else "E"),
        rational_value(0x0004, dms(lon)),
    ]


@pytest.fixture(autouse=True)
def _quiet_logging() -> None:
    """Keep loguru's default stderr sink out of test output."""
    logger.remove()


@pytest.fixture
def exif() -> SimpleNamespace:
    """EXIF builders: `build` (TIFF structure), `ascii`, `rational` and `gps` entry helpers."""
    return SimpleNamespace(
        build=build_tiff,
        ascii=ascii_value,
        rational=rational_value,
        gps=gps_entries,
    )


@pytest.fixture
def make_jpeg(tmp_path: Path) -> Callable[..., Path]:
    def _make(
        name: str = "photo.jpg",
        *,
        exif: bytes | None = None,
        size: tuple[int, int] = (32, 24),
    ) -> Path:
        path = tmp_path / name
        image = Image.new("RGB", size, (200, 120, 40))
        params = {"exif": b"Exif\0\0" + exif} if exif is not None else {}
        image.save(path, "JPEG", quality=90, **params)
        return path

    return _make


@pytest.fixture
def make_image(tmp_path: Path) -> Callable[..., Path]:
    """Save a small RGB image in any Pillow-writable format, chosen by extension."""

    def _make(name: str, **params: object) -> Path:
        path = tmp_path / name
        Image.new("RGB", (16, 12), (20, 90, 160)).save(path, **params)
        return path

    return _make
