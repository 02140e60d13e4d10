"""Command-line entry point."""
import argparse
import asyncio
import logging
import sys
from datetime import datetime
from typing import Optional

from palate.config import Settings, get_settings, require
from palate.core.calendar import CalendarEnricher
from palate.core.errors import ConfigurationMissing, PalateError
from palate.core.food import deep_scan_all_photos, reclassify_photos_with_current_keywords
from palate.core.progress import ProgressEmitter, ProgressEvent, format_eta
from palate.core.reference_data import load_reference_restaurants
from palate.core.restaurants import RestaurantIndex
from palate.core.scanner import classify_device_tier
from palate.core.sources import FolderPhotoSource, JsonCalendarSource
from palate.core.store import VisitStore
from palate.core.titles import TitleMatcher
from palate.util.logging_util import setup_logging
from palate.util.paths import get_db_path, get_log_dir
from palate.workers.pipeline import PipelineCoordinator

log = logging.getLogger("palate.main")


def _print_progress(event: ProgressEvent) -> None:
    if event.total:
        log.info("[%s] %s (eta %s)", event.phase, event.detail, format_eta(event.eta))
    else:
        log.info("[%s] %s", event.phase, event.detail)


def _load_restaurants(settings: Settings) -> RestaurantIndex:
    if not settings.reference_db:
        return RestaurantIndex([])
    try:
        return RestaurantIndex(load_reference_restaurants(settings.reference_db))
    except Exception:
        log.exception("Could not load reference restaurants from %s", settings.reference_db)
        return RestaurantIndex([])


def _build_classifier(settings: Settings, store: VisitStore):
    if not settings.classifier_model or not settings.classifier_labels:
        return None
    from palate.core.classifier import OnnxFoodClassifier

    def uri_for(photo_id: str) -> Optional[str]:
        photo = store.get_photo(photo_id)
        return photo.uri if photo else None

    return OnnxFoodClassifier(
        settings.classifier_model, settings.classifier_labels,
        uri_lookup=uri_for, keywords=store.get_enabled_food_keywords,
    )


# ── Commands ─────────────────────────────────────────

async def cmd_run(settings: Settings, store: VisitStore, args) -> int:
    emitter = ProgressEmitter()
    emitter.subscribe(_print_progress)
    photo_source = (
        FolderPhotoSource(settings.photo_dir, settings.photo_manifest)
        if settings.photo_dir else None
    )
    calendar_source = JsonCalendarSource(settings.calendar_file) if settings.calendar_file else None

    coordinator = PipelineCoordinator(
        store,
        photo_source=photo_source,
        calendar_source=calendar_source,
        classifier=_build_classifier(settings, store),
        restaurants=_load_restaurants(settings),
        emitter=emitter,
        tier=classify_device_tier(settings.device_memory_gb, settings.device_year),
        max_time_gap_hours=settings.max_time_gap_hours,
        max_distance_m=settings.max_distance_m,
        food_sample_pct=settings.food_sample_pct,
        food_confidence=settings.food_confidence,
        calendar_buffer_min=settings.calendar_buffer_min,
    )
    result = await coordinator.run()
    print(
        f"Visits created: {result.visits_created}\n"
        f"Photos processed: {result.photos_processed}\n"
        f"Food visits: {result.food_visits_found}\n"
        f"Visits with calendar events: {result.visits_with_calendar_events}"
    )
    return 0


async def cmd_deep_scan(settings: Settings, store: VisitStore, args) -> int:
    require(settings, "classifier_model")
    require(settings, "classifier_labels")
    result = await deep_scan_all_photos(
        _build_classifier(settings, store), store, settings.food_confidence, _print_progress,
    )
    print(f"Classified {result.processed} photos, {result.found} with food")
    return 0


async def cmd_import_calendar(settings: Settings, store: VisitStore, args) -> int:
    calendar_file = require(settings, "calendar_file")
    require(settings, "reference_db")
    enricher = CalendarEnricher(JsonCalendarSource(calendar_file), store, matcher=TitleMatcher())

    if args.dismiss:
        enricher.dismiss_calendar_events(args.dismiss)
        print(f"Dismissed {len(args.dismiss)} events")
        return 0

    restaurants = _load_restaurants(settings).restaurants
    if args.ids:
        count = await enricher.import_calendar_events(args.ids, restaurants)
        print(f"Imported {count} visits")
        return 0

    for item in await enricher.get_importable_calendar_events(restaurants):
        when = datetime.fromtimestamp(item.event.start_date / 1000).strftime("%Y-%m-%d %H:%M")
        print(f"{item.event.id}\t{when}\t{item.event.title}\t-> {item.restaurant.name}")
    return 0


async def cmd_reclassify(settings: Settings, store: VisitStore, args) -> int:
    if args.add:
        store.add_food_keyword(args.add)
    if args.disable:
        store.set_food_keyword_enabled(args.disable, False)
    if args.enable:
        store.set_food_keyword_enabled(args.enable, True)
    if args.reset:
        store.reset_food_keywords()
    updated = reclassify_photos_with_current_keywords(store)
    print(f"Reclassified {updated} photos")
    return 0


async def cmd_maintenance(settings: Settings, store: VisitStore, args) -> int:
    if args.ignore:
        lat, lon = args.ignore
        store.add_ignored_location(lat, lon, args.radius, args.name)
        rejected = store.reject_visits_in_ignored_locations()
        print(f"Rejected {rejected} visits")
    store.optimize(full=args.full)
    return 0


COMMANDS = {
    "run": cmd_run,
    "deep-scan": cmd_deep_scan,
    "import-calendar": cmd_import_calendar,
    "reclassify": cmd_reclassify,
    "maintenance": cmd_maintenance,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="palate", description="Turn photos into dining visits.")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug output on the console")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="scan, group, enrich and classify")
    sub.add_parser("deep-scan", help="classify every unlabeled photo")

    imp = sub.add_parser("import-calendar", help="list or import reservation events")
    imp.add_argument("--ids", nargs="+", help="event ids to import as confirmed visits")
    imp.add_argument("--dismiss", nargs="+", help="event ids to hide from the list")

    rec = sub.add_parser("reclassify", help="re-apply food keywords to stored labels")
    rec.add_argument("--add", help="add a food keyword")
    rec.add_argument("--enable", help="enable a keyword")
    rec.add_argument("--disable", help="disable a keyword")
    rec.add_argument("--reset", action="store_true", help="restore the default keywords")

    mnt = sub.add_parser("maintenance", help="optimize the database")
    mnt.add_argument("--full", action="store_true", help="also truncate the WAL and vacuum")
    mnt.add_argument("--ignore", nargs=2, type=float, metavar=("LAT", "LON"),
                     help="ignore visits around this location")
    mnt.add_argument("--radius", type=float, default=100.0)
    mnt.add_argument("--name")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(
        get_log_dir(settings.data_dir),
        console_level=logging.DEBUG if args.verbose else logging.INFO,
    )

    store = VisitStore(get_db_path(settings.data_dir))
    try:
        return asyncio.run(COMMANDS[args.command](settings, store, args))
    except ConfigurationMissing as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except PalateError as e:
        log.error("%s failed: %s", args.command, e)
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
