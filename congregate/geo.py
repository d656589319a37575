"""Great-circle distance helpers used by the audience resolver."""

from __future__ import annotations

import math
from dataclasses import dataclass

from .errors import ValidationError

EARTH_RADIUS_MILES = 3958.8


@dataclass(frozen=True)
class GeoMatch:
    user_id: str
    distance: float


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Return the great-circle distance between two points in miles."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Rounding can push ``a`` a hair above 1 for antipodal points.
    return 2 * EARTH_RADIUS_MILES * math.asin(math.sqrt(min(a, 1.0)))


def clamp_radius(radius: float | int | str | None, *, minimum: float, maximum: float) -> float:
    """Coerce a requested radius into ``[minimum, maximum]``.

    Non-numeric or non-finite values are rejected rather than clamped.
    """
    try:
        value = float(radius)
    except (TypeError, ValueError) as exc:
        raise ValidationError("INVALID_RADIUS", "Radius must be a number") from exc
    if not math.isfinite(value):
        raise ValidationError("INVALID_RADIUS", "Radius must be a finite number")
    return min(max(value, minimum), maximum)


def validate_coordinates(latitude: float | None, longitude: float | None) -> None:
    if latitude is None or longitude is None:
        raise ValidationError("MISSING_COORDINATES", "Coordinates are required")
    if not -90.0 <= latitude <= 90.0 or not -180.0 <= longitude <= 180.0:
        raise ValidationError("MISSING_COORDINATES", "Coordinates are out of range")


def rank_within_radius(
    center: tuple[float, float],
    candidates: list[tuple[str, float | None, float | None]],
    radius: float,
) -> list[GeoMatch]:
    """Return candidates within ``radius`` of ``center``, nearest first.

    Candidates without coordinates are skipped. The inclusion test uses the
    exact distance; the reported distance is rounded to one decimal place.
    """
    lat, lon = center
    matches: list[tuple[float, str]] = []
    for user_id, cand_lat, cand_lon in candidates:
        if cand_lat is None or cand_lon is None:
            continue
        distance = haversine_miles(lat, lon, cand_lat, cand_lon)
        if distance <= radius:
            matches.append((distance, user_id))
    matches.sort()
    return [GeoMatch(user_id=uid, distance=round(dist, 1)) for dist, uid in matches]
