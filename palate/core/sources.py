"""Photo and calendar sources the pipeline reads from."""
import asyncio
import json
import logging
import os
import uuid
from datetime import datetime
from typing import Optional, Protocol

from PIL import ExifTags, Image

from palate.core.errors import PermissionDenied, TransientIOFailure
from palate.core.models import AssetInfo, AssetPage, CalendarEventInfo, MediaKind
from palate.util.paths import SKIP_DIRS, SUPPORTED_EXTENSIONS, VIDEO_EXTENSIONS

log = logging.getLogger("palate.sources")


class PhotoSource(Protocol):
    supports_bulk: bool

    async def list_assets(self, after: Optional[str], first: int) -> AssetPage: ...

    async def bulk_metadata(self, ids: list[str]) -> list[AssetInfo]: ...

    async def asset_info(self, asset_id: str) -> Optional[AssetInfo]: ...

    async def total_count(self) -> int: ...


class CalendarSource(Protocol):
    async def has_permission(self) -> bool: ...

    async def request_permission(self) -> bool: ...

    async def get_events(self, start_ms: int, end_ms: int) -> list[CalendarEventInfo]: ...

    async def create_event(self, event: CalendarEventInfo) -> str: ...

    async def delete_event(self, event_id: str) -> None: ...


# ── EXIF ─────────────────────────────────────────────

_DATE_TAGS = [
    ExifTags.Base.DateTimeOriginal,
    ExifTags.Base.DateTimeDigitized,
    ExifTags.Base.DateTime,
]
_OFFSET_TAGS = [
    ExifTags.Base.OffsetTimeOriginal,
    ExifTags.Base.OffsetTimeDigitized,
    ExifTags.Base.OffsetTime,
]
_EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"

_GPS_LAT_REF = 1
_GPS_LAT = 2
_GPS_LON_REF = 3
_GPS_LON = 4


def _dms_to_degrees(dms, ref: str) -> float:
    d, m, s = (float(x) for x in dms)
    value = d + m / 60.0 + s / 3600.0
    return -value if ref.upper() in ("S", "W") else value


def parse_exif_datetime(value: str, offset: Optional[str] = None) -> Optional[int]:
    """EXIF date string to epoch ms; naive times are taken as local."""
    try:
        dt = datetime.strptime(value.strip(), _EXIF_DATE_FORMAT)
    except ValueError:
        return None
    if offset:
        try:
            dt = datetime.fromisoformat(f"{dt.isoformat()}{offset.strip()}")
        except ValueError:
            pass
    return int(dt.timestamp() * 1000)


def read_exif(path: str) -> tuple[Optional[int], Optional[float], Optional[float]]:
    """(creation ms, latitude, longitude) from a photo's EXIF, each possibly None."""
    with Image.open(path) as img:
        exif = img.getexif()
    if not exif:
        return None, None, None

    tags = dict(exif)
    tags.update(exif.get_ifd(ExifTags.IFD.Exif))

    created = None
    offset = next((tags[t] for t in _OFFSET_TAGS if isinstance(tags.get(t), str)), None)
    for tag in _DATE_TAGS:
        value = tags.get(tag)
        if isinstance(value, str):
            created = parse_exif_datetime(value, offset)
            if created is not None:
                break

    lat = lon = None
    gps = exif.get_ifd(ExifTags.IFD.GPSInfo)
    if gps and _GPS_LAT in gps and _GPS_LON in gps:
        try:
            lat = _dms_to_degrees(gps[_GPS_LAT], gps.get(_GPS_LAT_REF, "N"))
            lon = _dms_to_degrees(gps[_GPS_LON], gps.get(_GPS_LON_REF, "E"))
        except (TypeError, ValueError, ZeroDivisionError) as e:
            log.debug("Bad GPS block in %s: %s", path, e)
            lat = lon = None
    return created, lat, lon


# ── Folder source ────────────────────────────────────

def collect_files(root_folder: str) -> list[str]:
    """Supported media under root_folder, as sorted relative paths."""
    files = []
    extensions = SUPPORTED_EXTENSIONS | VIDEO_EXTENSIONS
    for dirpath, dirnames, filenames in os.walk(root_folder):
        dirnames[:] = [d for d in dirnames if d not in SKIP_DIRS]
        for fname in filenames:
            if os.path.splitext(fname)[1].lower() in extensions:
                rel = os.path.relpath(os.path.join(dirpath, fname), root_folder)
                files.append(rel.replace(os.sep, "/"))
    files.sort()
    log.info("Collected %d files from %s", len(files), root_folder)
    return files


class FolderPhotoSource:
    """Photos on disk. Asset ids are paths relative to the root.

    A manifest (JSON object keyed by asset id with creation_time in ms,
    latitude, longitude, media_kind and duration) enables bulk metadata.
    """

    def __init__(self, root_folder: str, manifest_path: Optional[str] = None):
        self.root_folder = root_folder
        self.manifest_path = manifest_path
        self._files: Optional[list[str]] = None
        self._manifest: Optional[dict] = None

    @property
    def supports_bulk(self) -> bool:
        return bool(self.manifest_path) and os.path.isfile(self.manifest_path)

    def _all_files(self) -> list[str]:
        if self._files is None:
            if not os.path.isdir(self.root_folder):
                raise PermissionDenied(f"photo folder not readable: {self.root_folder}")
            self._files = collect_files(self.root_folder)
        return self._files

    async def total_count(self) -> int:
        return len(self._all_files())

    async def list_assets(self, after: Optional[str], first: int) -> AssetPage:
        files = self._all_files()
        start = int(after) if after else 0
        page = files[start:start + first]
        end = start + len(page)
        return AssetPage(
            assets=[AssetInfo(id=f, uri=os.path.join(self.root_folder, f), creation_time=0)
                    for f in page],
            end_cursor=str(end),
            has_next_page=end < len(files),
        )

    def _load_manifest(self) -> dict:
        if self._manifest is None:
            with open(self.manifest_path, "r", encoding="utf-8") as f:
                self._manifest = json.load(f)
        return self._manifest

    async def bulk_metadata(self, ids: list[str]) -> list[AssetInfo]:
        try:
            manifest = self._load_manifest()
        except (OSError, ValueError) as e:
            raise TransientIOFailure(f"manifest unreadable: {e}") from e
        infos = []
        for asset_id in ids:
            entry = manifest.get(asset_id)
            if not entry or entry.get("creation_time") is None:
                continue
            infos.append(AssetInfo(
                id=asset_id,
                uri=os.path.join(self.root_folder, asset_id),
                creation_time=int(entry["creation_time"]),
                latitude=entry.get("latitude"),
                longitude=entry.get("longitude"),
                media_kind=MediaKind(entry.get("media_kind", "photo")),
                duration=entry.get("duration"),
            ))
        return infos

    def _read_asset(self, asset_id: str) -> AssetInfo:
        path = os.path.join(self.root_folder, asset_id)
        ext = os.path.splitext(path)[1].lower()
        created = lat = lon = None
        kind = MediaKind.VIDEO if ext in VIDEO_EXTENSIONS else MediaKind.PHOTO
        if kind is MediaKind.PHOTO:
            try:
                created, lat, lon = read_exif(path)
            except OSError as e:
                log.debug("EXIF unreadable for %s: %s", path, e)
        if created is None:
            created = int(os.path.getmtime(path) * 1000)
        return AssetInfo(
            id=asset_id, uri=path, creation_time=created,
            latitude=lat, longitude=lon, media_kind=kind,
        )

    async def asset_info(self, asset_id: str) -> Optional[AssetInfo]:
        try:
            return await asyncio.to_thread(self._read_asset, asset_id)
        except OSError as e:
            raise TransientIOFailure(f"{asset_id}: {e}") from e


# ── Calendar source ──────────────────────────────────

def _to_ms(value) -> int:
    if isinstance(value, (int, float)):
        return int(value)
    return int(datetime.fromisoformat(str(value)).timestamp() * 1000)


def event_from_dict(d: dict) -> CalendarEventInfo:
    return CalendarEventInfo(
        id=str(d["id"]),
        title=d.get("title") or "",
        start_date=_to_ms(d["start"]),
        end_date=_to_ms(d["end"]),
        notes=d.get("notes"),
        location=d.get("location"),
        is_all_day=bool(d.get("all_day", False)),
        calendar_title=d.get("calendar"),
        recurring=bool(d.get("recurring", False)),
    )


def event_to_dict(e: CalendarEventInfo) -> dict:
    return {
        "id": e.id, "title": e.title, "start": e.start_date, "end": e.end_date,
        "notes": e.notes, "location": e.location, "all_day": e.is_all_day,
        "calendar": e.calendar_title, "recurring": e.recurring,
    }


class JsonCalendarSource:
    """Calendar backed by an exported JSON list of events.

    Access is granted when the file exists and parses.
    """

    def __init__(self, path: str):
        self.path = path

    async def has_permission(self) -> bool:
        return os.path.isfile(self.path) and os.access(self.path, os.R_OK)

    async def request_permission(self) -> bool:
        return await self.has_permission()

    def _read(self) -> list[dict]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError as e:
            raise PermissionDenied(f"calendar file missing: {self.path}") from e
        except (OSError, ValueError) as e:
            raise TransientIOFailure(f"calendar file unreadable: {e}") from e

    def _write(self, rows: list[dict]) -> None:
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(rows, f, indent=2)
        os.replace(tmp, self.path)

    async def get_events(self, start_ms: int, end_ms: int) -> list[CalendarEventInfo]:
        events = []
        for row in self._read():
            try:
                event = event_from_dict(row)
            except (KeyError, TypeError, ValueError) as e:
                log.warning("Skipping malformed calendar entry: %s", e)
                continue
            if event.start_date <= end_ms and event.end_date >= start_ms:
                events.append(event)
        return events

    async def create_event(self, event: CalendarEventInfo) -> str:
        rows = self._read() if os.path.isfile(self.path) else []
        if not event.id:
            event.id = uuid.uuid4().hex
        rows.append(event_to_dict(event))
        self._write(rows)
        return event.id

    async def delete_event(self, event_id: str) -> None:
        rows = [r for r in self._read() if str(r.get("id")) != event_id]
        self._write(rows)
