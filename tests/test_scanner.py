import asyncio

import pytest

from palate.core.errors import PermissionDenied
from palate.core.models import AssetInfo, AssetPage, DeviceTier, Photo
from palate.core.scanner import (
    TIER_SETTINGS,
    BulkMetadataStrategy,
    PerItemMetadataStrategy,
    classify_device_tier,
    scan_photos,
    select_strategy,
)

BASE = 1_700_000_000_000


class DummyPhotoSource:
    supports_bulk = False

    def __init__(self, count, fail_ids=()):
        self.ids = [f"asset-{i:04d}" for i in range(count)]
        self.fail_ids = set(fail_ids)
        self.page_sizes = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def total_count(self):
        return len(self.ids)

    async def list_assets(self, after, first):
        start = int(after) if after else 0
        page = self.ids[start:start + first]
        self.page_sizes.append(first)
        end = start + len(page)
        return AssetPage(
            assets=[AssetInfo(id=i, uri="", creation_time=0) for i in page],
            end_cursor=str(end),
            has_next_page=end < len(self.ids),
        )

    def _info(self, asset_id):
        n = int(asset_id.split("-")[1])
        return AssetInfo(id=asset_id, uri=f"/lib/{asset_id}.jpg", creation_time=BASE + n * 1000,
                         latitude=40.7, longitude=-74.0)

    async def asset_info(self, asset_id):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        await asyncio.sleep(0)
        self.in_flight -= 1
        if asset_id in self.fail_ids:
            raise OSError("unreadable")
        return self._info(asset_id)


class DummyBulkSource(DummyPhotoSource):
    supports_bulk = True

    def __init__(self, count, fail=False):
        super().__init__(count)
        self.fail = fail
        self.bulk_calls = 0

    async def bulk_metadata(self, ids):
        self.bulk_calls += 1
        if self.fail:
            raise OSError("native module unavailable")
        return [self._info(i) for i in ids]


class DeniedSource(DummyPhotoSource):
    async def total_count(self):
        raise PermissionDenied("no library access")


@pytest.mark.parametrize(
    "memory,year,expected",
    [
        (1.5, None, DeviceTier.LOW),
        (3, 2015, DeviceTier.MEDIUM),
        (8, 2015, DeviceTier.HIGH),
        (None, 2018, DeviceTier.LOW),
        (None, 2020, DeviceTier.MEDIUM),
        (None, 2023, DeviceTier.HIGH),
        (None, None, DeviceTier.MEDIUM),
    ],
)
def test_classify_device_tier(memory, year, expected):
    assert classify_device_tier(memory, year) is expected


def test_low_tier_settings():
    low = TIER_SETTINGS[DeviceTier.LOW]
    assert (low.batch_size, low.native_batch_size, low.concurrency) == (25, 250, 5)


def test_select_strategy():
    assert isinstance(select_strategy(DummyBulkSource(1), DeviceTier.HIGH), BulkMetadataStrategy)
    assert isinstance(select_strategy(DummyPhotoSource(1), DeviceTier.HIGH), PerItemMetadataStrategy)


def test_per_item_scan_pages_skips_existing_and_failures(store):
    source = DummyPhotoSource(600, fail_ids={"asset-0100"})
    store.insert_photos_batch([Photo(id=f"asset-{i:04d}", uri="", creation_time=0) for i in range(10)])
    events = []

    result = asyncio.run(scan_photos(source, store, DeviceTier.LOW, progress_cb=events.append))

    assert source.page_sizes == [250, 250, 250]
    assert result.seen == 600
    assert result.skipped_existing == 10
    assert result.inserted == 589
    assert store.count_photos() == 599
    assert source.max_in_flight <= 5
    assert events[-1].phase == "scanning"
    assert events[-1].current == 600
    photo = store.get_photo("asset-0500")
    assert photo.creation_time == BASE + 500 * 1000


def test_bulk_scan(store):
    source = DummyBulkSource(1200)
    result = asyncio.run(scan_photos(source, store, DeviceTier.MEDIUM))
    assert result.inserted == 1200
    assert source.bulk_calls == 3


def test_bulk_failure_yields_nothing_without_raising(store):
    source = DummyBulkSource(30, fail=True)
    result = asyncio.run(scan_photos(source, store, DeviceTier.MEDIUM))
    assert result.seen == 30
    assert result.inserted == 0


def test_denied_library_scans_nothing(store):
    result = asyncio.run(scan_photos(DeniedSource(5), store))
    assert result.seen == 0


def test_cancelled_scan_stops_before_next_page(store):
    source = DummyPhotoSource(600)
    checks = iter([False, True])
    result = asyncio.run(scan_photos(source, store, DeviceTier.LOW,
                                     cancel_check=lambda: next(checks)))
    assert result.cancelled is True
    assert store.count_photos() == 250


def test_per_item_strategy_respects_concurrency():
    source = DummyPhotoSource(40)
    strategy = PerItemMetadataStrategy(TIER_SETTINGS[DeviceTier.LOW])
    infos = asyncio.run(strategy.fetch(source, source.ids))
    assert len(infos) == 40
    assert source.max_in_flight <= 5
