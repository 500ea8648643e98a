"""
GPS write-safety policy and coordinate conversions.

Coordinates are only ever added, never replaced: a file that already carries GPS (even GPS we
cannot decode) keeps it, and a candidate is accepted only if it is a plausible position.
"""

import math
import re

from loguru import logger

from exif_ai.models import Coordinate


MAX_LATITUDE = 90.0
MAX_LONGITUDE = 180.0
SECONDS_DENOMINATOR = 10000
_NUMBER = r"(\d+(?:\.\d+)?)"
_XMP_GPS_RE = re.compile(rf"^\s*{_NUMBER}(?:,{_NUMBER})?(?:,{_NUMBER})?([NSEW])\s*$")


def is_valid(candidate: Coordinate) -> bool:
    """
    Check that a coordinate is finite, in range and not the (0, 0) null island.

    Examples:
        >>> is_valid(Coordinate(latitude=90.0, longitude=-180.0))
        True
        >>> is_valid(Coordinate(latitude=0.0, longitude=0.0))
        False

    """
    lat, lon = candidate.latitude, candidate.longitude
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    if abs(lat) > MAX_LATITUDE or abs(lon) > MAX_LONGITUDE:
        return False
    return not (lat == 0.0 and lon == 0.0)


def decide(
    existing_has_gps: bool,  # noqa: FBT001
    candidate: Coordinate | None,
) -> Coordinate | None:
    """
    Return the coordinate to write, or None if GPS must be left alone.

    Args:
        existing_has_gps: The container already holds GPS tags (decodable or not)
        candidate: Position proposed by a backend, if any

    """
    if existing_has_gps:
        if candidate is not None:
            logger.debug("gps_skipped_existing_present")
        return None
    if candidate is None:
        return None
    if not is_valid(candidate):
        logger.warning(
            "gps_candidate_rejected",
            latitude=candidate.latitude,
            longitude=candidate.longitude,
        )
        return None
    return candidate


def to_dms_rationals(value: float) -> list[tuple[int, int]]:
    """
    Convert an absolute decimal degree value to EXIF degree/minute/second rationals.

    Seconds keep four decimal places (denominator 10000).

    Examples:
        >>> to_dms_rationals(-33.5)
        [(33, 1), (30, 1), (0, 10000)]

    """
    value = abs(value)
    degrees = int(value)
    minutes_float = (value - degrees) * 60
    minutes = int(minutes_float)
    seconds = round((minutes_float - minutes) * 60 * SECONDS_DENOMINATOR)
    if seconds >= 60 * SECONDS_DENOMINATOR:
        seconds -= 60 * SECONDS_DENOMINATOR
        minutes += 1
    if minutes >= 60:  # noqa: PLR2004
        minutes -= 60
        degrees += 1
    return [(degrees, 1), (minutes, 1), (seconds, SECONDS_DENOMINATOR)]


def from_dms(parts: list[tuple[int, int]], ref: str | None) -> float | None:
    """Convert EXIF DMS rationals plus a hemisphere reference to signed decimal degrees."""
    if len(parts) != 3 or any(den == 0 for _, den in parts):  # noqa: PLR2004
        return None
    (d_num, d_den), (m_num, m_den), (s_num, s_den) = parts
    value = d_num / d_den + m_num / m_den / 60 + s_num / s_den / 3600
    if ref and ref.strip().upper()[:1] in ("S", "W"):
        value = -value
    return value


def hemisphere(value: float, *, latitude: bool) -> str:
    if latitude:
        return "S" if value < 0 else "N"
    return "W" if value < 0 else "E"


def format_xmp(value: float, *, latitude: bool) -> str:
    """
    Format a coordinate as an XMP GPSCoordinate string ("DDD,MM.mmmmR").

    Examples:
        >>> format_xmp(-33.5, latitude=True)
        '33,30.0000S'
        >>> format_xmp(10.999999999, latitude=False)
        '11,0.0000E'

    """
    ref = hemisphere(value, latitude=latitude)
    # Rounded in ten-thousandths of a minute so 59.99999 carries into the degrees.
    degrees, minutes = divmod(round(abs(value) * 60 * 10_000), 60 * 10_000)
    return f"{degrees},{minutes / 10_000:.4f}{ref}"


def parse_xmp(text: str | None) -> float | None:
    """
    Parse an XMP GPSCoordinate ("DD,MM.mmR" or "DD,MM,SSR") into signed decimal degrees.

    Examples:
        >>> parse_xmp("33,30.0000S")
        -33.5

    """
    if not text:
        return None
    match = _XMP_GPS_RE.match(text)
    if match is None:
        return None
    degrees, minutes, seconds, ref = match.groups()
    value = float(degrees) + float(minutes or 0) / 60 + float(seconds or 0) / 3600
    return -value if ref in ("S", "W") else value
