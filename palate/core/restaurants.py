"""Spatial resolution of visit centroids to reference restaurants."""
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from palate.core.geo import EARTH_RADIUS_M, box_thresholds
from palate.core.models import Restaurant, RestaurantCandidate

log = logging.getLogger("palate.restaurants")

MATCH_RADIUS_M = 100.0
SUGGESTION_RADIUS_M = 2 * MATCH_RADIUS_M
MAX_SUGGESTIONS = 5


@dataclass
class Resolution:
    candidates: list[RestaurantCandidate]
    primary: Optional[RestaurantCandidate] = None


class RestaurantIndex:
    """Reference restaurants held as coordinate arrays for vectorized lookups."""

    def __init__(self, restaurants: list[Restaurant]):
        self.restaurants = list(restaurants)
        self._by_id = {r.id: r for r in self.restaurants}
        self._lats = np.array([r.latitude for r in self.restaurants], dtype=np.float64)
        self._lons = np.array([r.longitude for r in self.restaurants], dtype=np.float64)
        log.debug("Restaurant index built with %d entries", len(self.restaurants))

    def __len__(self) -> int:
        return len(self.restaurants)

    def get(self, restaurant_id: str) -> Optional[Restaurant]:
        return self._by_id.get(restaurant_id)

    def nearby(
        self, lat: float, lon: float, radius_m: float = SUGGESTION_RADIUS_M,
        limit: Optional[int] = MAX_SUGGESTIONS,
    ) -> list[RestaurantCandidate]:
        """Candidates within radius_m, nearest first."""
        if not self.restaurants:
            return []

        lat_deg, lon_deg = box_thresholds(lat, radius_m)
        dlon = np.abs(self._lons - lon)
        dlon = np.where(dlon > 180, 360 - dlon, dlon)
        in_box = np.nonzero((np.abs(self._lats - lat) <= lat_deg) & (dlon <= lon_deg))[0]
        if in_box.size == 0:
            return []

        lats = np.radians(self._lats[in_box])
        x = np.radians(dlon[in_box]) * np.cos((lats + np.radians(lat)) / 2)
        y = lats - np.radians(lat)
        dists = np.sqrt(x * x + y * y) * EARTH_RADIUS_M

        keep = dists <= radius_m
        idx = in_box[keep]
        dists = dists[keep]
        order = np.argsort(dists, kind="stable")
        if limit is not None:
            order = order[:limit]
        return [
            RestaurantCandidate(self.restaurants[int(idx[i])], float(dists[i]))
            for i in order
        ]

    def resolve(
        self, lat: float, lon: float,
        suggestion_radius_m: float = SUGGESTION_RADIUS_M,
        match_radius_m: float = MATCH_RADIUS_M,
        limit: int = MAX_SUGGESTIONS,
    ) -> Resolution:
        """Suggestion list plus the nearest candidate inside the match radius."""
        candidates = self.nearby(lat, lon, suggestion_radius_m, limit)
        primary = None
        if candidates and candidates[0].distance <= match_radius_m:
            primary = candidates[0]
        return Resolution(candidates=candidates, primary=primary)

    def resolve_many(
        self, points: list[tuple[float, float]], **kwargs
    ) -> list[Resolution]:
        return [self.resolve(lat, lon, **kwargs) for lat, lon in points]
