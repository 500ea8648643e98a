"""Tests for the GPS write-safety policy and coordinate conversions."""

import math

import pytest

from exif_ai import gps
from exif_ai.models import Coordinate


@pytest.mark.parametrize(
    ("existing", "candidate", "accepted"),
    [
        (True, (48.85, 2.35), False),
        (True, None, False),
        (False, None, False),
        (False, (48.85, 2.35), True),
        (False, (0.0, 0.0), False),
        (False, (0.0, 10.0), True),
        (False, (90.0, 180.0), True),
        (False, (-90.0, -180.0), True),
        (False, (90.0001, 0.5), False),
        (False, (10.0, -180.0001), False),
        (False, (math.nan, 1.0), False),
        (False, (1.0, math.inf), False),
    ],
)
def test_decide_truth_table(
    existing: bool,  # noqa: FBT001
    candidate: tuple[float, float] | None,
    accepted: bool,  # noqa: FBT001
) -> None:
    """GPS is only added to files without GPS, and only for plausible positions."""
    coordinate = Coordinate(latitude=candidate[0], longitude=candidate[1]) if candidate else None
    decision = gps.decide(existing, coordinate)
    if accepted:
        assert decision == coordinate
    else:
        assert decision is None


def test_dms_round_trip_within_seconds_precision() -> None:
    """Decimal degrees survive DMS rational encoding to well under a metre."""
    for value in (-33.8688, 151.2093, 0.000123, 179.99999):
        parts = gps.to_dms_rationals(value)
        ref = gps.hemisphere(value, latitude=abs(value) <= 90)  # noqa: PLR2004
        decoded = gps.from_dms(parts, ref)
        assert decoded is not None
        assert decoded == pytest.approx(value, abs=1e-6)
        assert parts[2][1] == gps.SECONDS_DENOMINATOR


def test_from_dms_rejects_malformed_rationals() -> None:
    """Zero denominators or the wrong number of parts decode to None."""
    assert gps.from_dms([(1, 1), (2, 0), (3, 1)], "N") is None
    assert gps.from_dms([(1, 1)], "N") is None


def test_xmp_coordinate_strings() -> None:
    """XMP GPSCoordinate strings are written as DD,MM.mmmmR and parsed in both forms."""
    assert gps.format_xmp(151.2093, latitude=False) == "151,12.5580E"
    assert gps.parse_xmp("151,12.5580E") == pytest.approx(151.2093)
    assert gps.parse_xmp("33,52,7.68S") == pytest.approx(-33.8688)
    assert gps.parse_xmp("garbage") is None
    assert gps.parse_xmp(None) is None


@pytest.mark.parametrize(
    ("value", "latitude", "expected"),
    [
        (10.999999999, False, "11,0.0000E"),
        (-45.9999999, True, "46,0.0000S"),
        (0.99999999, True, "1,0.0000N"),
    ],
)
def test_xmp_minutes_never_round_to_sixty(
    value: float,
    latitude: bool,  # noqa: FBT001
    expected: str,
) -> None:
    """Minutes that round up to 60 carry into the degrees."""
    assert gps.format_xmp(value, latitude=latitude) == expected
    assert gps.parse_xmp(expected) == pytest.approx(value, abs=1e-6)
