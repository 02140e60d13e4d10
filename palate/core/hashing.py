"""Deterministic visit identity."""
import hashlib

HOUR_MS = 3600 * 1000

VISIT_ID_LENGTH = 16


def visit_hash_key(start_time: int, center_lat: float, center_lon: float) -> str:
    """Hour bucket of the start time plus the centroid rounded to ~100 m."""
    hour = start_time // HOUR_MS
    return f"{hour}-{center_lat:.3f}-{center_lon:.3f}"


def compute_visit_id(start_time: int, center_lat: float, center_lon: float) -> str:
    key = visit_hash_key(start_time, center_lat, center_lon)
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:VISIT_ID_LENGTH]


def calendar_visit_id(event_id: str, start_time: int) -> str:
    """Id for a visit imported from a calendar event with no photos."""
    return f"cal-{event_id}-{start_time // HOUR_MS}"
