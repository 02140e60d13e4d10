"""Runs the full scan-to-visits pipeline, phase by phase."""
import asyncio
import logging
from typing import Optional

from palate.core.calendar import CalendarEnricher
from palate.core.clustering import cluster_photos
from palate.core.food import detect_food_in_visits
from palate.core.models import DeviceTier, PipelineResult, SuggestedRestaurantLink, VisitStatus
from palate.core.progress import ProgressEmitter, ProgressEvent
from palate.core.restaurants import RestaurantIndex
from palate.core.scanner import scan_photos
from palate.core.titles import TitleMatcher

log = logging.getLogger("palate.pipeline")

SCANNING = "scanning"
GROUPING = "grouping-visits"
CALENDAR = "calendar-events"
FOOD = "detecting-food"
SUGGESTIONS = "recomputing-suggested-restaurants"
OPTIMIZING = "optimizing-database"

HOUR_MS = 3600 * 1000


class PipelineCoordinator:
    """Owns one pipeline run. Missing collaborators skip their phase."""

    def __init__(
        self,
        store,
        photo_source=None,
        calendar_source=None,
        classifier=None,
        restaurants: Optional[RestaurantIndex] = None,
        emitter: Optional[ProgressEmitter] = None,
        tier: DeviceTier = DeviceTier.MEDIUM,
        max_time_gap_hours: float = 2.0,
        max_distance_m: float = 200.0,
        food_sample_pct: float = 0.1,
        food_confidence: float = 0.3,
        calendar_buffer_min: int = 30,
        matcher: Optional[TitleMatcher] = None,
    ):
        self.store = store
        self.photo_source = photo_source
        self.calendar_source = calendar_source
        self.classifier = classifier
        self.restaurants = restaurants or RestaurantIndex([])
        self.emitter = emitter or ProgressEmitter()
        self.tier = tier
        self.max_time_gap_ms = int(max_time_gap_hours * HOUR_MS)
        self.max_distance_m = max_distance_m
        self.food_sample_pct = food_sample_pct
        self.food_confidence = food_confidence
        self.calendar_buffer_min = calendar_buffer_min
        self.matcher = matcher or TitleMatcher()
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    def _is_cancelled(self) -> bool:
        return self._cancelled

    def _emit(self, phase: str, detail: str = "", current: int = 0, total: int = 0):
        self.emitter.emit(ProgressEvent(phase=phase, detail=detail, current=current, total=total))

    async def _run_phase(self, phase: str, coro_fn) -> None:
        if self._cancelled:
            log.info("Skipping %s: run cancelled", phase)
            return
        try:
            await coro_fn()
        except Exception:
            log.exception("Phase %s failed", phase)

    async def run(self) -> PipelineResult:
        result = PipelineResult()
        log.info("Pipeline started")

        await self._run_phase(SCANNING, lambda: self._scan(result))
        await self._run_phase(GROUPING, lambda: self._group(result))
        await self._run_phase(CALENDAR, lambda: self._calendar(result))
        await self._run_phase(FOOD, lambda: self._food(result))
        await self._run_phase(SUGGESTIONS, self._recompute_suggestions)
        await self._run_phase(OPTIMIZING, self._optimize)

        log.info(
            "Pipeline complete: %d visits created from %d photos, %d food visits, "
            "%d with calendar events",
            result.visits_created, result.photos_processed,
            result.food_visits_found, result.visits_with_calendar_events,
        )
        return result

    # ── Phases ───────────────────────────────────────────

    async def _scan(self, result: PipelineResult):
        if self.photo_source is None:
            log.info("No photo source configured; skipping scan")
            return
        self._emit(SCANNING, "Scanning photo library...")
        scan = await scan_photos(
            self.photo_source, self.store, self.tier,
            self.emitter.emit, self._is_cancelled,
        )
        result.photos_processed = scan.inserted

    async def _group(self, result: PipelineResult):
        photos = self.store.get_unvisited_photos()
        if not photos:
            log.info("No unvisited photos; skipping grouping")
            return
        self._emit(GROUPING, f"Grouping {len(photos)} photos", 0, len(photos))

        def progress(current: int, total: int):
            self._emit(GROUPING, f"{current}/{total} photos", current, total)

        groups = await cluster_photos(
            photos, self.max_time_gap_ms, self.max_distance_m,
            progress, self._is_cancelled,
        )
        result.visits_created = self.store.insert_visits_from_groups(groups)
        self.store.reject_visits_in_ignored_locations()
        self._suggest_for_visits(self.store.get_visit_ids_without_suggestions())

    async def _calendar(self, result: PipelineResult):
        if self.calendar_source is None:
            log.info("No calendar source configured; skipping calendar enrichment")
            return
        self._emit(CALENDAR, "Matching calendar events...")
        enricher = CalendarEnricher(
            self.calendar_source, self.store,
            restaurant_lookup=self._lookup_restaurant,
            matcher=self.matcher,
            buffer_minutes=self.calendar_buffer_min,
        )
        result.visits_with_calendar_events = await enricher.enrich_visits(
            self.emitter.emit, self._is_cancelled,
        )

    async def _food(self, result: PipelineResult):
        if self.classifier is None:
            log.info("No food classifier configured; skipping food detection")
            return
        self._emit(FOOD, "Detecting food...")
        before = self.store.get_food_visit_ids()
        await detect_food_in_visits(
            self.classifier, self.store, self.food_sample_pct, self.food_confidence,
            self.emitter.emit, self._is_cancelled,
        )
        result.food_visits_found = len(self.store.get_food_visit_ids() - before)

    async def _recompute_suggestions(self):
        pending = [v.id for v in self.store.get_visits(VisitStatus.PENDING)]
        if not pending:
            return
        self._emit(SUGGESTIONS, f"Resolving {len(pending)} pending visits", 0, len(pending))
        self._suggest_for_visits(pending)
        await asyncio.sleep(0)

    async def _optimize(self):
        self._emit(OPTIMIZING, "Optimizing database...")
        self.store.optimize()

    # ── Helpers ──────────────────────────────────────────

    def _lookup_restaurant(self, restaurant_id: str):
        return self.restaurants.get(restaurant_id) or self.store.get_restaurant(restaurant_id)

    def _suggest_for_visits(self, visit_ids: list[str]) -> None:
        """Replace links and primary suggestion from the reference index."""
        if not visit_ids:
            return
        visits = [v for v in (self.store.get_visit(vid) for vid in visit_ids) if v is not None]
        resolutions = self.restaurants.resolve_many(
            [(v.center_lat, v.center_lon) for v in visits]
        )
        suggestions = {}
        referenced = {}
        for visit, resolution in zip(visits, resolutions):
            links = [
                SuggestedRestaurantLink(visit.id, c.id, c.distance)
                for c in resolution.candidates
            ]
            for c in resolution.candidates:
                referenced[c.id] = c.restaurant
            primary = resolution.primary.id if resolution.primary else None
            suggestions[visit.id] = (links, primary)

        if referenced:
            self.store.upsert_restaurants(list(referenced.values()))
        self.store.replace_suggestions_batch(suggestions)
        log.info("Resolved restaurants for %d visits (%d distinct candidates)",
                 len(suggestions), len(referenced))
