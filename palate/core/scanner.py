"""Library scan: page through a photo source and store new photos."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from palate.core.errors import PermissionDenied
from palate.core.models import AssetInfo, DeviceTier, Photo
from palate.core.progress import ProgressEvent, ProgressTracker

log = logging.getLogger("palate.scanner")

PHASE = "scanning"


@dataclass(frozen=True)
class TierSettings:
    batch_size: int
    native_batch_size: int
    concurrency: int


TIER_SETTINGS = {
    DeviceTier.LOW: TierSettings(25, 250, 5),
    DeviceTier.MEDIUM: TierSettings(50, 500, 10),
    DeviceTier.HIGH: TierSettings(100, 2000, 20),
}


def classify_device_tier(
    memory_gb: Optional[float] = None, device_year: Optional[int] = None
) -> DeviceTier:
    if memory_gb is not None:
        if memory_gb < 2:
            return DeviceTier.LOW
        if memory_gb < 4:
            return DeviceTier.MEDIUM
        return DeviceTier.HIGH
    if device_year is not None:
        if device_year <= 2018:
            return DeviceTier.LOW
        if device_year <= 2020:
            return DeviceTier.MEDIUM
        return DeviceTier.HIGH
    return DeviceTier.MEDIUM


# ── Metadata strategies ──────────────────────────────

class BulkMetadataStrategy:
    """One source call per batch. A failed batch yields nothing."""

    name = "bulk"

    def __init__(self, settings: TierSettings):
        self.settings = settings

    async def fetch(self, source, ids: list[str]) -> list[AssetInfo]:
        infos: list[AssetInfo] = []
        step = self.settings.native_batch_size
        for i in range(0, len(ids), step):
            chunk = ids[i:i + step]
            try:
                infos.extend(await source.bulk_metadata(chunk))
            except Exception:
                log.exception("Bulk metadata failed for %d assets", len(chunk))
        return infos


class PerItemMetadataStrategy:
    """One source call per asset under a concurrency bound. Failed assets are skipped."""

    name = "per-item"

    def __init__(self, settings: TierSettings):
        self.settings = settings

    async def fetch(self, source, ids: list[str]) -> list[AssetInfo]:
        sem = asyncio.Semaphore(self.settings.concurrency)

        async def one(asset_id: str) -> Optional[AssetInfo]:
            async with sem:
                try:
                    return await source.asset_info(asset_id)
                except Exception as e:
                    log.warning("Metadata fetch failed for %s: %s", asset_id, e)
                    return None

        infos: list[AssetInfo] = []
        step = self.settings.batch_size
        for i in range(0, len(ids), step):
            results = await asyncio.gather(*(one(a) for a in ids[i:i + step]))
            infos.extend(r for r in results if r is not None)
        return infos


def select_strategy(source, tier: DeviceTier):
    settings = TIER_SETTINGS[tier]
    if getattr(source, "supports_bulk", False):
        return BulkMetadataStrategy(settings)
    return PerItemMetadataStrategy(settings)


def asset_to_photo(info: AssetInfo) -> Photo:
    return Photo(
        id=info.id,
        uri=info.uri,
        creation_time=info.creation_time,
        latitude=info.latitude,
        longitude=info.longitude,
        media_kind=info.media_kind,
        duration=info.duration,
    )


# ── Scan ─────────────────────────────────────────────

@dataclass
class ScanResult:
    seen: int = 0
    inserted: int = 0
    skipped_existing: int = 0
    cancelled: bool = False


async def scan_photos(
    source,
    store,
    tier: DeviceTier = DeviceTier.MEDIUM,
    progress_cb: Optional[Callable[[ProgressEvent], None]] = None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> ScanResult:
    """Store every asset the source has that the store does not."""
    result = ScanResult()
    settings = TIER_SETTINGS[tier]
    strategy = select_strategy(source, tier)
    try:
        total = await source.total_count()
    except PermissionDenied as e:
        log.warning("Photo library not accessible: %s", e)
        return result

    log.info("Scanning %d assets (tier=%s, strategy=%s)", total, tier.value, strategy.name)
    tracker = ProgressTracker(total)
    cursor: Optional[str] = None
    while True:
        if cancel_check and cancel_check():
            log.info("Scan cancelled after %d assets", result.seen)
            result.cancelled = True
            break

        page = await source.list_assets(cursor, settings.native_batch_size)
        ids = [a.id for a in page.assets]
        existing = store.get_existing_photo_ids(ids)
        new_ids = [i for i in ids if i not in existing]

        inserted = 0
        if new_ids:
            infos = await strategy.fetch(source, new_ids)
            inserted = store.insert_photos_batch([asset_to_photo(i) for i in infos])

        result.seen += len(ids)
        result.inserted += inserted
        result.skipped_existing += len(existing)
        tracker.advance(len(ids), inserted)
        if progress_cb:
            progress_cb(tracker.snapshot(
                PHASE, f"{tracker.processed}/{tracker.total} assets, {tracker.found} new"
            ))

        if not page.has_next_page or not page.assets:
            break
        cursor = page.end_cursor
        await asyncio.sleep(0)

    log.info("Scan done: %d seen, %d new, %d already stored",
             result.seen, result.inserted, result.skipped_existing)
    return result
