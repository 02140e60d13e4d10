"""Approximate distance kernel and bounding-box rejection."""
import math

EARTH_RADIUS_M = 6371000.0

# Meters per degree of latitude, rounded down so box thresholds stay loose.
METERS_PER_DEG_LAT = 111000.0

# Widening applied to box thresholds to absorb rounding in the approximation.
BOX_MARGIN = 1.01

_MAX_LAT_FOR_BOX = 89.9


def lon_delta(lon1: float, lon2: float) -> float:
    """Signed longitude difference wrapped into [-180, 180]."""
    dlon = lon2 - lon1
    while dlon > 180:
        dlon -= 360
    while dlon < -180:
        dlon += 360
    return dlon


def distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Equirectangular distance in meters.

    Within ~0.5% of great-circle distance below 1 km.
    """
    lat1_r = math.radians(lat1)
    lat2_r = math.radians(lat2)
    x = math.radians(lon_delta(lon1, lon2)) * math.cos((lat1_r + lat2_r) / 2)
    y = lat2_r - lat1_r
    return math.sqrt(x * x + y * y) * EARTH_RADIUS_M


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters. Reference for the approximation."""
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dphi = p2 - p1
    dlambda = math.radians(lon_delta(lon1, lon2))
    a = (
        math.sin(dphi / 2) ** 2
        + math.cos(p1) * math.cos(p2) * math.sin(dlambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, a)))


def box_thresholds(lat: float, radius_m: float) -> tuple[float, float]:
    """Degree half-widths (lat, lon) of a box containing the radius around lat."""
    lat_deg = radius_m / METERS_PER_DEG_LAT * BOX_MARGIN
    # Longitude degrees shrink toward the pole, so size the box by the
    # poleward edge of the latitude band.
    edge = min(abs(lat) + lat_deg, _MAX_LAT_FOR_BOX)
    lon_deg = lat_deg / math.cos(math.radians(edge))
    return lat_deg, lon_deg


def within_box(
    lat1: float, lon1: float, lat2: float, lon2: float, radius_m: float
) -> bool:
    lat_deg, lon_deg = box_thresholds(lat1, radius_m)
    if abs(lat2 - lat1) > lat_deg:
        return False
    return abs(lon_delta(lon1, lon2)) <= lon_deg


def within_distance(
    lat1: float, lon1: float, lat2: float, lon2: float, radius_m: float
) -> bool:
    """Box test first, exact distance only for survivors."""
    if not within_box(lat1, lon1, lat2, lon2, radius_m):
        return False
    return distance(lat1, lon1, lat2, lon2) <= radius_m
