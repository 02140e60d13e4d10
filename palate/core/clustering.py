"""Time/space clustering of photos into visit groups."""
import asyncio
import logging
from typing import Callable, Optional

from palate.core.geo import lon_delta, within_distance
from palate.core.hashing import compute_visit_id
from palate.core.models import Photo, PhotoGroup

log = logging.getLogger("palate.clustering")

DEFAULT_MAX_TIME_GAP_MS = 2 * 3600 * 1000
DEFAULT_MAX_DISTANCE_M = 200.0
MIN_PHOTOS_PER_VISIT = 2
YIELD_EVERY = 1000


class GroupBuilder:
    """Single forward pass over time-sorted photos.

    Each photo is compared against its predecessor only: the time gap is
    checked first, then the distance to the most recent geolocated photo
    of the open group. Photos without coordinates never break a group on
    distance.
    """

    def __init__(
        self,
        max_time_gap_ms: int = DEFAULT_MAX_TIME_GAP_MS,
        max_distance_m: float = DEFAULT_MAX_DISTANCE_M,
    ):
        self.max_time_gap_ms = max_time_gap_ms
        self.max_distance_m = max_distance_m
        self.groups: list[PhotoGroup] = []
        self.discarded = 0
        self._current: list[Photo] = []
        self._last_located: Optional[Photo] = None

    def _belongs(self, photo: Photo) -> bool:
        prev = self._current[-1]
        if photo.creation_time - prev.creation_time > self.max_time_gap_ms:
            return False
        anchor = self._last_located
        if anchor is None or not photo.has_location:
            return True
        return within_distance(
            anchor.latitude, anchor.longitude,
            photo.latitude, photo.longitude,
            self.max_distance_m,
        )

    def feed(self, photo: Photo) -> None:
        if self._current and not self._belongs(photo):
            self._close()
        self._current.append(photo)
        if photo.has_location:
            self._last_located = photo

    def finish(self) -> list[PhotoGroup]:
        if self._current:
            self._close()
        return self.groups

    def _close(self) -> None:
        members = self._current
        self._current = []
        self._last_located = None

        group = make_group(members)
        if group is None:
            self.discarded += len(members)
            return
        self.groups.append(group)


def make_group(members: list[Photo]) -> Optional[PhotoGroup]:
    """Reduce members to centroid, window and id; None if not a visit."""
    if len(members) < MIN_PHOTOS_PER_VISIT:
        return None
    located = [p for p in members if p.has_location]
    if not located:
        return None

    center_lat = sum(p.latitude for p in located) / len(located)
    # Average offsets from the first fix so groups straddling 180 stay put.
    ref = located[0].longitude
    offset = sum(lon_delta(ref, p.longitude) for p in located) / len(located)
    center_lon = lon_delta(0.0, ref + offset)
    start = min(p.creation_time for p in members)
    end = max(p.creation_time for p in members)
    return PhotoGroup(
        photos=members,
        start_time=start,
        end_time=end,
        center_lat=center_lat,
        center_lon=center_lon,
        id=compute_visit_id(start, center_lat, center_lon),
    )


def build_visit_groups(
    photos: list[Photo],
    max_time_gap_ms: int = DEFAULT_MAX_TIME_GAP_MS,
    max_distance_m: float = DEFAULT_MAX_DISTANCE_M,
) -> list[PhotoGroup]:
    """Group photos already sorted by creation time."""
    builder = GroupBuilder(max_time_gap_ms, max_distance_m)
    for photo in photos:
        builder.feed(photo)
    return builder.finish()


async def cluster_photos(
    photos: list[Photo],
    max_time_gap_ms: int = DEFAULT_MAX_TIME_GAP_MS,
    max_distance_m: float = DEFAULT_MAX_DISTANCE_M,
    progress_cb: Optional[Callable[[int, int], None]] = None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> list[PhotoGroup]:
    """Same as build_visit_groups, yielding to the event loop periodically.

    A cancelled run returns the groups closed so far; the open group is
    dropped so its photos stay unvisited.
    """
    builder = GroupBuilder(max_time_gap_ms, max_distance_m)
    total = len(photos)
    for i, photo in enumerate(photos):
        builder.feed(photo)
        if i % YIELD_EVERY == YIELD_EVERY - 1:
            if progress_cb:
                progress_cb(i + 1, total)
            await asyncio.sleep(0)
            if cancel_check and cancel_check():
                log.info("Clustering cancelled after %d of %d photos", i + 1, total)
                return builder.groups

    groups = builder.finish()
    if progress_cb:
        progress_cb(total, total)
    log.info(
        "Clustered %d photos into %d groups (%d photos discarded)",
        total, len(groups), builder.discarded,
    )
    return groups
