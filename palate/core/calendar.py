"""Calendar enrichment: event retrieval, visit matching, dedupe and import."""
import asyncio
import bisect
import logging
import re
from datetime import datetime, tzinfo
from typing import Callable, Optional

from palate.core.errors import PermissionDenied
from palate.core.hashing import calendar_visit_id
from palate.core.models import (
    CalendarEventInfo, ImportableCalendarEvent, Restaurant, Visit, VisitStatus,
)
from palate.core.progress import ProgressTracker, ProgressEvent
from palate.core.titles import FUZZY_MIN_LENGTH, TitleMatcher

log = logging.getLogger("palate.calendar")

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

DEFAULT_BUFFER_MINUTES = 30
DEDUPE_BUFFER_MS = 2 * HOUR_MS
ENRICH_BATCH_SIZE = 300
IMPORT_LOOKBACK_DAYS = 1000
IMPORT_LOOKFORWARD_DAYS = 30
IMPORT_YIELD_EVERY = 50

# ── Retrieval filters ────────────────────────────────

_NON_RESERVATION_PATTERNS = [
    re.compile("[✈\U0001F6EB\U0001F6EC\U0001F6E9\U0001F686\U0001F684\U0001F685"
               "\U0001F687\U0001F688\U0001F689\U0001F68C\U0001F68D\U0001F68E\U0001F697"
               "\U0001F695\U0001F696\U0001F698\U0001F699\U0001F6FB\U0001F6B2\U0001F6B4"
               "\U0001F6A4⛴\U0001F6A2\U0001F68B\U0001F69D\U0001F69E\U0001F68A\U0001F6F3]"),
    re.compile(r"\b(airbnb|check[-\s]?in|check[-\s]?out)\b", re.IGNORECASE),
]

_INVALID_TITLES = frozenset({"untitled event", "custom"})


def is_likely_non_reservation_title(title: str) -> bool:
    return any(p.search(title) for p in _NON_RESERVATION_PATTERNS)


def has_valid_event_title(title: Optional[str]) -> bool:
    if not title or not title.strip():
        return False
    return title.strip().lower() not in _INVALID_TITLES


def filter_candidate_events(events: list[CalendarEventInfo]) -> list[CalendarEventInfo]:
    """Drop all-day, recurring, untitled and obviously non-dining events."""
    kept = []
    for e in events:
        if e.is_all_day or e.recurring:
            continue
        if not has_valid_event_title(e.title) or is_likely_non_reservation_title(e.title):
            continue
        e.title = e.title.strip()
        kept.append(e)
    return kept


async def fetch_events(source, start_ms: int, end_ms: int) -> list[CalendarEventInfo]:
    """Candidate events in [start, end]; empty on refused access or source errors."""
    try:
        if not await source.has_permission():
            raise PermissionDenied("calendar access not granted")
        events = await source.get_events(start_ms, end_ms)
    except PermissionDenied as e:
        log.info("Skipping calendar lookup: %s", e)
        return []
    except Exception:
        log.warning("Failed to fetch calendar events", exc_info=True)
        return []
    return filter_candidate_events(events)


# ── Interval search ──────────────────────────────────

def is_time_overlapping(
    visit_start: int, visit_end: int, event_start: int, event_end: int, buffer_ms: int,
) -> bool:
    return visit_start < event_end + buffer_ms and visit_end > event_start - buffer_ms


def start_of_day(ts_ms: int, tz: Optional[tzinfo] = None) -> int:
    dt = datetime.fromtimestamp(ts_ms / 1000, tz)
    midnight = dt.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp() * 1000)


def end_of_day(ts_ms: int, tz: Optional[tzinfo] = None) -> int:
    dt = datetime.fromtimestamp(ts_ms / 1000, tz)
    last = dt.replace(hour=23, minute=59, second=59, microsecond=999000)
    return int(last.timestamp() * 1000)


class SortedEvents:
    """Events ordered by (start, end) with bounded slice lookups."""

    def __init__(self, events: list[CalendarEventInfo]):
        self.events = sorted(
            (e for e in events if not e.is_all_day),
            key=lambda e: (e.start_date, e.end_date),
        )
        self._starts = [e.start_date for e in self.events]
        self.max_duration = max(
            (max(0, e.end_date - e.start_date) for e in self.events), default=0
        )

    def candidates(self, window_start: int, window_end: int) -> list[CalendarEventInfo]:
        """Events that could overlap the window; nothing starting earlier than
        window_start - max_duration can reach it."""
        lo = bisect.bisect_left(self._starts, window_start - self.max_duration)
        hi = bisect.bisect_right(self._starts, window_end)
        return self.events[lo:hi]


# ── Scoring ──────────────────────────────────────────

_URL_TLD_RE = re.compile(r"^[a-z0-9-]+\.(com|org|net|io|co|app|ly|me|us|uk|ca|de|fr|it|es|au|jp|cn)\b")

RESERVATION_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"reserv(ation|e|ed)", r"resy", r"opentable", r"yelp", r"tock",
        r"seated", r"bookatable", r"quandoo", r"the\s*fork", r"dinner",
        r"lunch", r"brunch", r"breakfast", r"restaurant", r"bistro", r"cafe",
        r"table\s+(at|for)", r"party\s+of\s+\d+", r"\d+\s*(people|guests|pax)",
    )
]

SCORE_TIMED = 100
SCORE_RESERVATION = 200
SCORE_LOCATION = 50
SCORE_URL_LOCATION = -100
SCORE_NOTES = 10
SCORE_PROXIMITY_MAX = 20
PROXIMITY_WINDOW_MS = 2 * HOUR_MS


def looks_like_url(text: Optional[str]) -> bool:
    if not text:
        return False
    s = text.lower().strip()
    return (
        s.startswith("http://")
        or s.startswith("https://")
        or s.startswith("www.")
        or bool(_URL_TLD_RE.match(s))
    )


def looks_like_reservation(event: CalendarEventInfo) -> bool:
    text = f"{event.title} {event.location or ''} {event.notes or ''}"
    return any(p.search(text) for p in RESERVATION_PATTERNS)


def score_event(event: CalendarEventInfo, visit_start: int, visit_end: int) -> int:
    score = 0
    if not event.is_all_day:
        score += SCORE_TIMED
    if looks_like_reservation(event):
        score += SCORE_RESERVATION
    if event.location:
        score += SCORE_URL_LOCATION if looks_like_url(event.location) else SCORE_LOCATION
    if event.notes:
        score += SCORE_NOTES

    if not event.is_all_day:
        diff = abs((visit_start + visit_end) / 2 - (event.start_date + event.end_date) / 2)
        if diff < PROXIMITY_WINDOW_MS:
            score += round(SCORE_PROXIMITY_MAX * (1 - diff / PROXIMITY_WINDOW_MS))

    duration = event.end_date - event.start_date
    if duration < 4 * HOUR_MS:
        score += 15
    elif duration < 8 * HOUR_MS:
        score += 5
    return score


# ── Batch matching ───────────────────────────────────

def match_events_to_visits(
    visits: list[Visit], events: list[CalendarEventInfo], buffer_ms: int,
) -> dict[str, Optional[CalendarEventInfo]]:
    """Best-scoring overlapping event per visit, or None."""
    index = SortedEvents(events)
    results: dict[str, Optional[CalendarEventInfo]] = {}
    for visit in visits:
        best: Optional[CalendarEventInfo] = None
        best_score = None
        for event in index.candidates(visit.start_time - buffer_ms, visit.end_time + buffer_ms):
            if not is_time_overlapping(
                visit.start_time, visit.end_time, event.start_date, event.end_date, buffer_ms
            ):
                continue
            s = score_event(event, visit.start_time, visit.end_time)
            if best_score is None or s > best_score:
                best, best_score = event, s
        results[visit.id] = best
    return results


async def batch_find_events_for_visits(
    source,
    visits: list[Visit],
    buffer_minutes: int = DEFAULT_BUFFER_MINUTES,
    tz: Optional[tzinfo] = None,
) -> dict[str, Optional[CalendarEventInfo]]:
    """One calendar query covering the whole batch, then per-visit matching."""
    if not visits:
        return {}
    buffer_ms = buffer_minutes * MINUTE_MS
    times = [t for v in visits for t in (v.start_time, v.end_time)]
    search_start = start_of_day(min(times), tz) - buffer_ms
    search_end = end_of_day(max(times), tz) + buffer_ms

    events = await fetch_events(source, search_start, search_end)
    return match_events_to_visits(visits, events, buffer_ms)


# ── Deduplication ────────────────────────────────────

def _info_score(event: CalendarEventInfo) -> int:
    return (1 if event.location else 0) + (1 if event.notes else 0)


def _ranges_touch(a_start: int, a_end: int, b_start: int, b_end: int, buffer_ms: int) -> bool:
    return a_start <= b_end + buffer_ms and a_end >= b_start - buffer_ms


def dedupe_calendar_events(
    events: list[CalendarEventInfo],
    matcher: TitleMatcher,
    buffer_ms: int = DEDUPE_BUFFER_MS,
) -> list[CalendarEventInfo]:
    """Collapse same-titled events that overlap, keeping the most informative."""
    if len(events) <= 1:
        return list(events)

    deduped: list[CalendarEventInfo] = []
    seen: dict[str, CalendarEventInfo] = {}
    for event in sorted(events, key=lambda e: e.start_date):
        key = matcher.normalize(matcher.clean(event.title))
        if len(key) < FUZZY_MIN_LENGTH:
            deduped.append(event)
            continue
        existing = seen.get(key)
        if existing is None:
            seen[key] = event
            continue
        if not _ranges_touch(existing.start_date, existing.end_date,
                             event.start_date, event.end_date, buffer_ms):
            deduped.append(existing)
            seen[key] = event
            continue
        if _info_score(event) > _info_score(existing):
            seen[key] = event

    deduped.extend(seen.values())
    return deduped


def dedupe_importable_events(
    items: list[ImportableCalendarEvent], buffer_ms: int = DEDUPE_BUFFER_MS,
) -> list[ImportableCalendarEvent]:
    """At most one importable event per restaurant per overlapping time slot."""
    if len(items) <= 1:
        return list(items)

    by_restaurant: dict[str, list[ImportableCalendarEvent]] = {}
    for item in items:
        by_restaurant.setdefault(item.restaurant.id, []).append(item)

    deduped: list[ImportableCalendarEvent] = []
    for group in by_restaurant.values():
        group.sort(key=lambda i: i.event.start_date)
        merged = [group[0]]
        for current in group[1:]:
            last = merged[-1]
            if not _ranges_touch(last.event.start_date, last.event.end_date,
                                 current.event.start_date, current.event.end_date, buffer_ms):
                merged.append(current)
        deduped.extend(merged)
    return deduped


# ── Exact-name import ────────────────────────────────

def build_exact_name_index(
    restaurants: list[Restaurant], matcher: TitleMatcher,
) -> dict[str, list[Restaurant]]:
    index: dict[str, list[Restaurant]] = {}
    for r in restaurants:
        key = matcher.comparison_key(r.name)
        if key:
            index.setdefault(key, []).append(r)
    return index


def pick_best_restaurant_for_event_location(
    matches: list[Restaurant], event_location: Optional[str], matcher: TitleMatcher,
) -> Restaurant:
    """Disambiguate restaurants sharing one exact name by address overlap."""
    if len(matches) == 1 or not event_location:
        return matches[0]

    loc = matcher.normalize(event_location)
    best = matches[0]
    best_score = -1
    for r in matches:
        addr = matcher.normalize(r.address)
        area = matcher.normalize(r.location)
        score = 0
        if addr and (addr in loc or loc in addr):
            score += 2
        if area and (area in loc or loc in area):
            score += 1
        if score > best_score:
            best, best_score = r, score
    return best


def find_exact_restaurant_match(
    title: str,
    event_location: Optional[str],
    name_index: dict[str, list[Restaurant]],
    matcher: TitleMatcher,
) -> Optional[Restaurant]:
    key = matcher.comparison_key(matcher.clean(title))
    if len(key) < FUZZY_MIN_LENGTH:
        return None
    matches = name_index.get(key)
    if not matches:
        return None
    return pick_best_restaurant_for_event_location(matches, event_location, matcher)


class CalendarEnricher:
    """Calendar-driven operations over the visit store."""

    def __init__(
        self,
        source,
        store,
        restaurant_lookup: Optional[Callable[[str], Optional[Restaurant]]] = None,
        matcher: Optional[TitleMatcher] = None,
        buffer_minutes: int = DEFAULT_BUFFER_MINUTES,
        tz: Optional[tzinfo] = None,
    ):
        self.source = source
        self.store = store
        self.restaurant_lookup = restaurant_lookup or store.get_restaurant
        self.matcher = matcher or TitleMatcher()
        self.buffer_minutes = buffer_minutes
        self.tz = tz

    async def _ensure_permission(self) -> bool:
        try:
            if await self.source.has_permission():
                return True
            return bool(await self.source.request_permission())
        except Exception:
            log.warning("Calendar permission check failed", exc_info=True)
            return False

    def _match_suggested_restaurant(self, visit_id: str, title: str, links) -> Optional[str]:
        cleaned = self.matcher.clean(title)
        if len(cleaned) < FUZZY_MIN_LENGTH:
            return None
        for link in links:
            restaurant = self.restaurant_lookup(link.restaurant_id)
            if restaurant and self.matcher.fuzzy_match(cleaned, restaurant.name):
                log.debug("Calendar title %r matched %s for visit %s",
                          title, restaurant.id, visit_id)
                return restaurant.id
        return None

    async def enrich_visits(
        self,
        progress_cb: Optional[Callable[[ProgressEvent], None]] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
        batch_size: int = ENRICH_BATCH_SIZE,
    ) -> int:
        """Attach the best calendar event to visits that have none.

        Returns the number of visits that received an event.
        """
        if not await self._ensure_permission():
            log.info("Calendar permission denied; skipping enrichment")
            return 0

        visits = self.store.get_visits_without_calendar_event()
        if not visits:
            return 0

        tracker = ProgressTracker(len(visits))
        with_events = 0
        for i in range(0, len(visits), batch_size):
            if cancel_check and cancel_check():
                log.info("Calendar enrichment cancelled at %d/%d", i, len(visits))
                break
            batch = visits[i:i + batch_size]
            event_map = await batch_find_events_for_visits(
                self.source, batch, self.buffer_minutes, self.tz
            )
            links_map = self.store.get_suggestion_links_for_visits([v.id for v in batch])

            updates = []
            for visit in batch:
                event = event_map.get(visit.id)
                if event is None:
                    continue
                suggested = self._match_suggested_restaurant(
                    visit.id, event.title, links_map.get(visit.id, [])
                )
                updates.append((visit.id, event, suggested))

            self.store.update_visits_calendar_batch(updates)
            with_events += len(updates)
            tracker.advance(len(batch), len(updates))
            if progress_cb:
                progress_cb(tracker.snapshot(
                    "calendar-events", f"{tracker.processed}/{tracker.total} visits"
                ))
            await asyncio.sleep(0)

        log.info("Calendar enrichment: %d of %d visits matched", with_events, len(visits))
        return with_events

    async def get_importable_calendar_events(
        self,
        restaurants: list[Restaurant],
        lookback_days: int = IMPORT_LOOKBACK_DAYS,
        lookforward_days: int = IMPORT_LOOKFORWARD_DAYS,
        now_ms: Optional[int] = None,
    ) -> list[ImportableCalendarEvent]:
        """Reservation events that exactly name a reference restaurant and have
        no visit yet, newest first."""
        if now_ms is None:
            now_ms = int(datetime.now().timestamp() * 1000)
        start = now_ms - lookback_days * DAY_MS
        end = now_ms + lookforward_days * DAY_MS

        events = await fetch_events(self.source, start, end)
        if not events:
            return []

        linked = self.store.get_linked_calendar_event_ids()
        dismissed = self.store.get_dismissed_calendar_event_ids()
        events = [e for e in events if e.id not in linked and e.id not in dismissed]
        if not events:
            return []

        confirmed = self.store.get_confirmed_visit_times_by_restaurant()

        def near_confirmed_visit(restaurant_id: str, ts: int) -> bool:
            return any(abs(t - ts) <= DAY_MS for t in confirmed.get(restaurant_id, ()))

        events = dedupe_calendar_events(events, self.matcher)
        name_index = build_exact_name_index(restaurants, self.matcher)
        await asyncio.sleep(0)

        importable: list[ImportableCalendarEvent] = []
        for i, event in enumerate(events):
            restaurant = find_exact_restaurant_match(
                event.title, event.location, name_index, self.matcher
            )
            if restaurant is not None and not near_confirmed_visit(restaurant.id, event.start_date):
                importable.append(ImportableCalendarEvent(event=event, restaurant=restaurant))
            if (i + 1) % IMPORT_YIELD_EVERY == 0:
                await asyncio.sleep(0)

        result = dedupe_importable_events(importable)
        result.sort(key=lambda i: i.event.start_date, reverse=True)
        log.info("Found %d importable calendar events", len(result))
        return result

    async def import_calendar_events(
        self, event_ids: list[str], restaurants: list[Restaurant], **kwargs,
    ) -> int:
        """Create confirmed visits for the given importable event ids."""
        if not event_ids:
            return 0
        wanted = set(event_ids)
        items = [
            i for i in await self.get_importable_calendar_events(restaurants, **kwargs)
            if i.event.id in wanted
        ]
        if not items:
            return 0

        visits = [
            Visit(
                id=calendar_visit_id(i.event.id, i.event.start_date),
                start_time=i.event.start_date,
                end_time=i.event.end_date,
                center_lat=i.restaurant.latitude,
                center_lon=i.restaurant.longitude,
                status=VisitStatus.CONFIRMED,
                restaurant_id=i.restaurant.id,
                suggested_restaurant_id=i.restaurant.id,
                calendar_event_id=i.event.id,
                calendar_event_title=i.event.title,
                calendar_event_location=i.event.location,
                calendar_event_is_all_day=False,
                updated_at=int(datetime.now().timestamp() * 1000),
            )
            for i in items
        ]
        inserted = self.store.insert_calendar_visits(visits, [i.restaurant for i in items])
        log.info("Imported %d calendar events as visits", inserted)
        return inserted

    def dismiss_calendar_events(self, event_ids: list[str]) -> None:
        self.store.dismiss_calendar_events(event_ids)
