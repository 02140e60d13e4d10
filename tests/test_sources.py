import asyncio
import json
import os
from datetime import datetime

import pytest
from PIL import ExifTags, Image

from palate.core.calendar import fetch_events
from palate.core.errors import TransientIOFailure
from palate.core.models import CalendarEventInfo, MediaKind
from palate.core.sources import (
    FolderPhotoSource,
    JsonCalendarSource,
    collect_files,
    parse_exif_datetime,
)

BASE = 1_700_000_000_000
HOUR = 3600 * 1000


def write_jpeg(path, taken=None):
    exif = Image.Exif()
    if taken:
        exif[ExifTags.Base.DateTime] = taken
    Image.new("RGB", (16, 16), (10, 20, 30)).save(path, exif=exif)


def test_collect_files_skips_hidden_state_and_unknown_types(tmp_path):
    (tmp_path / "2024").mkdir()
    (tmp_path / ".palate").mkdir()
    write_jpeg(tmp_path / "2024" / "b.jpg")
    write_jpeg(tmp_path / "a.JPG")
    write_jpeg(tmp_path / ".palate" / "thumb.jpg")
    (tmp_path / "notes.txt").write_text("x")
    (tmp_path / "clip.mov").write_bytes(b"\x00")
    assert collect_files(str(tmp_path)) == ["2024/b.jpg", "a.JPG", "clip.mov"]


def test_parse_exif_datetime_with_offset():
    utc = parse_exif_datetime("2024:05:01 19:30:00", "+00:00")
    assert utc == int(datetime.fromisoformat("2024-05-01T19:30:00+00:00").timestamp() * 1000)
    assert parse_exif_datetime("garbage") is None


def test_folder_source_pages_and_reads_exif(tmp_path):
    for i in range(5):
        write_jpeg(tmp_path / f"img{i}.jpg", taken=f"2024:05:01 19:3{i}:00")
    source = FolderPhotoSource(str(tmp_path))

    assert asyncio.run(source.total_count()) == 5
    first = asyncio.run(source.list_assets(None, 2))
    assert [a.id for a in first.assets] == ["img0.jpg", "img1.jpg"]
    assert first.has_next_page is True
    last = asyncio.run(source.list_assets("4", 2))
    assert [a.id for a in last.assets] == ["img4.jpg"]
    assert last.has_next_page is False

    info = asyncio.run(source.asset_info("img2.jpg"))
    assert info.creation_time == int(datetime(2024, 5, 1, 19, 32).timestamp() * 1000)
    assert info.latitude is None
    assert info.media_kind is MediaKind.PHOTO
    assert source.supports_bulk is False


def test_folder_source_falls_back_to_mtime(tmp_path):
    write_jpeg(tmp_path / "plain.jpg")
    os.utime(tmp_path / "plain.jpg", (1_600_000_000, 1_600_000_000))
    info = asyncio.run(FolderPhotoSource(str(tmp_path)).asset_info("plain.jpg"))
    assert info.creation_time == 1_600_000_000_000


def test_folder_source_missing_file_is_transient(tmp_path):
    with pytest.raises(TransientIOFailure):
        asyncio.run(FolderPhotoSource(str(tmp_path)).asset_info("gone.jpg"))


def test_folder_source_bulk_manifest(tmp_path):
    write_jpeg(tmp_path / "a.jpg")
    manifest = tmp_path / "manifest.json"
    manifest.write_text(json.dumps({
        "a.jpg": {"creation_time": BASE, "latitude": 40.7, "longitude": -74.0},
        "b.jpg": {"latitude": 1.0},
    }))
    source = FolderPhotoSource(str(tmp_path), str(manifest))
    assert source.supports_bulk is True
    infos = asyncio.run(source.bulk_metadata(["a.jpg", "b.jpg", "c.jpg"]))
    assert [(i.id, i.creation_time, i.latitude) for i in infos] == [("a.jpg", BASE, 40.7)]


def test_json_calendar_source_round_trip(tmp_path):
    path = tmp_path / "calendar.json"
    path.write_text(json.dumps([
        {"id": "e1", "title": "Dinner at Lilia", "start": BASE, "end": BASE + HOUR,
         "location": "567 Union Ave"},
        {"id": "e2", "title": "Later", "start": BASE + 48 * HOUR, "end": BASE + 49 * HOUR},
        {"title": "no id"},
    ]))
    source = JsonCalendarSource(str(path))
    assert asyncio.run(source.has_permission()) is True

    events = asyncio.run(source.get_events(BASE - HOUR, BASE + 2 * HOUR))
    assert [e.id for e in events] == ["e1"]
    assert events[0].location == "567 Union Ave"

    new_id = asyncio.run(source.create_event(
        CalendarEventInfo(id="", title="Brunch", start_date=BASE + HOUR, end_date=BASE + 2 * HOUR)))
    assert new_id
    ids = [e.id for e in asyncio.run(source.get_events(BASE, BASE + 3 * HOUR))]
    assert ids == ["e1", new_id]

    asyncio.run(source.delete_event("e1"))
    ids = [e.id for e in asyncio.run(source.get_events(BASE, BASE + 3 * HOUR))]
    assert ids == [new_id]


def test_json_calendar_source_iso_dates(tmp_path):
    path = tmp_path / "calendar.json"
    path.write_text(json.dumps([
        {"id": "e1", "title": "Lunch", "start": "2024-05-01T12:00:00+00:00",
         "end": "2024-05-01T13:00:00+00:00"},
    ]))
    start = int(datetime.fromisoformat("2024-05-01T12:00:00+00:00").timestamp() * 1000)
    events = asyncio.run(JsonCalendarSource(str(path)).get_events(start, start + HOUR))
    assert events[0].start_date == start


def test_missing_calendar_file_means_no_events(tmp_path):
    source = JsonCalendarSource(str(tmp_path / "absent.json"))
    assert asyncio.run(source.has_permission()) is False
    assert asyncio.run(fetch_events(source, BASE, BASE + HOUR)) == []
