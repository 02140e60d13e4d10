import asyncio
from datetime import timezone

from palate.core import calendar
from palate.core.calendar import (
    CalendarEnricher,
    batch_find_events_for_visits,
    dedupe_calendar_events,
    dedupe_importable_events,
    fetch_events,
    filter_candidate_events,
    is_time_overlapping,
    looks_like_url,
    match_events_to_visits,
    pick_best_restaurant_for_event_location,
    score_event,
)
from palate.core.models import (
    CalendarEventInfo, ImportableCalendarEvent, Photo, PhotoGroup, Restaurant,
    SuggestedRestaurantLink, Visit, VisitStatus,
)
from palate.core.titles import TitleMatcher

BASE = 1_700_000_000_000
MIN = 60 * 1000
HOUR = 60 * MIN
DAY = 24 * HOUR


def event(eid, title, start, end, **kw):
    return CalendarEventInfo(id=eid, title=title, start_date=start, end_date=end, **kw)


def visit(vid, start, end):
    return Visit(id=vid, start_time=start, end_time=end, center_lat=40.7, center_lon=-74.0)


class DummyCalendarSource:
    def __init__(self, events, permitted=True, fail=False):
        self.events = events
        self.permitted = permitted
        self.fail = fail
        self.calls = []

    async def has_permission(self):
        return self.permitted

    async def request_permission(self):
        return self.permitted

    async def get_events(self, start_ms, end_ms):
        self.calls.append((start_ms, end_ms))
        if self.fail:
            raise OSError("calendar backend down")
        return [
            CalendarEventInfo(**vars(e)) for e in self.events
            if e.start_date <= end_ms and e.end_date >= start_ms
        ]


def test_is_time_overlapping_with_buffer():
    assert is_time_overlapping(0, 10, 10, 20, 0) is False
    assert is_time_overlapping(0, 10, 5, 20, 0) is True
    assert is_time_overlapping(0, 10, 15, 20, 5) is False
    assert is_time_overlapping(0, 10, 15, 20, 6) is True


def test_filter_candidate_events():
    events = [
        event("1", "  Dinner at Carbone ", BASE, BASE + HOUR),
        event("2", "Holiday", BASE, BASE + DAY, is_all_day=True),
        event("3", "Weekly lunch", BASE, BASE + HOUR, recurring=True),
        event("4", "Untitled Event", BASE, BASE + HOUR),
        event("5", "✈ Flight to SFO", BASE, BASE + HOUR),
        event("6", "Airbnb check-in", BASE, BASE + HOUR),
        event("7", "", BASE, BASE + HOUR),
    ]
    kept = filter_candidate_events(events)
    assert [e.id for e in kept] == ["1"]
    assert kept[0].title == "Dinner at Carbone"


def test_looks_like_url():
    assert looks_like_url("https://resy.com/cities/ny")
    assert looks_like_url("www.opentable.com")
    assert looks_like_url("carbone.com")
    assert not looks_like_url("181 Thompson St, New York")
    assert not looks_like_url(None)


def test_score_prefers_reservations_with_location():
    reservation = event("r", "Reservation at Carbone", BASE, BASE + 2 * HOUR,
                        location="181 Thompson St")
    meeting = event("m", "Sync", BASE, BASE + 2 * HOUR)
    url_location = event("u", "Sync", BASE, BASE + 2 * HOUR, location="https://zoom.us/j/1")
    s_res = score_event(reservation, BASE, BASE + HOUR)
    s_meet = score_event(meeting, BASE, BASE + HOUR)
    assert s_res > s_meet > score_event(url_location, BASE, BASE + HOUR)


def test_match_events_to_visits_picks_best_overlap():
    visits = [visit("v1", BASE, BASE + HOUR), visit("v2", BASE + 5 * DAY, BASE + 5 * DAY + HOUR)]
    events = [
        event("meeting", "Sync", BASE - 30 * MIN, BASE + 30 * MIN),
        event("dinner", "Dinner at Lilia", BASE + 10 * MIN, BASE + 2 * HOUR, location="Brooklyn"),
        event("long", "Conference", BASE - 6 * DAY, BASE + 6 * DAY, is_all_day=True),
    ]
    matches = match_events_to_visits(visits, events, 30 * MIN)
    assert matches["v1"].id == "dinner"
    assert matches["v2"] is None


def test_match_finds_long_events_that_started_earlier():
    visits = [visit("v1", BASE, BASE + HOUR)]
    events = [
        event("short", "Sync", BASE - 5 * HOUR, BASE - 4 * HOUR),
        event("long", "Tasting menu dinner", BASE - 3 * HOUR, BASE + 2 * HOUR),
    ]
    assert match_events_to_visits(visits, events, 0)["v1"].id == "long"


def test_batch_lookup_makes_one_calendar_query():
    source = DummyCalendarSource([event("e1", "Dinner at Lilia", BASE, BASE + HOUR)])
    visits = [visit("v1", BASE, BASE + HOUR), visit("v2", BASE + 3 * DAY, BASE + 3 * DAY + HOUR)]
    result = asyncio.run(batch_find_events_for_visits(source, visits, tz=timezone.utc))
    assert len(source.calls) == 1
    start, end = source.calls[0]
    assert start <= BASE - 30 * MIN
    assert end >= BASE + 3 * DAY + HOUR + 30 * MIN
    assert result["v1"].id == "e1"
    assert result["v2"] is None


def test_fetch_events_degrades_to_empty():
    denied = DummyCalendarSource([event("e1", "Dinner", BASE, BASE + HOUR)], permitted=False)
    broken = DummyCalendarSource([], fail=True)
    assert asyncio.run(fetch_events(denied, BASE, BASE + DAY)) == []
    assert denied.calls == []
    assert asyncio.run(fetch_events(broken, BASE, BASE + DAY)) == []


def test_dedupe_keeps_most_informative_overlapping_event():
    matcher = TitleMatcher()
    events = [
        event("a", "Dinner at Carbone", BASE, BASE + HOUR),
        event("b", "Carbone", BASE + 30 * MIN, BASE + 2 * HOUR, location="181 Thompson St"),
        event("c", "Dinner at Carbone", BASE + 5 * DAY, BASE + 5 * DAY + HOUR),
        event("d", "Go", BASE, BASE + HOUR),
    ]
    kept = {e.id for e in dedupe_calendar_events(events, matcher)}
    assert kept == {"b", "c", "d"}


def test_dedupe_importable_events_per_restaurant():
    carbone = Restaurant(id="r1", name="Carbone", latitude=0, longitude=0)
    lilia = Restaurant(id="r2", name="Lilia", latitude=0, longitude=0)
    items = [
        ImportableCalendarEvent(event("a", "Carbone", BASE, BASE + HOUR), carbone),
        ImportableCalendarEvent(event("b", "Carbone!", BASE + HOUR, BASE + 2 * HOUR), carbone),
        ImportableCalendarEvent(event("c", "Lilia", BASE, BASE + HOUR), lilia),
    ]
    assert sorted(i.event.id for i in dedupe_importable_events(items)) == ["a", "c"]


def test_pick_best_restaurant_by_address():
    matcher = TitleMatcher()
    uptown = Restaurant(id="r1", name="Nobu", latitude=0, longitude=0, address="40 W 57th St")
    downtown = Restaurant(id="r2", name="Nobu", latitude=0, longitude=0, address="195 Broadway")
    assert pick_best_restaurant_for_event_location(
        [uptown, downtown], "Nobu, 195 Broadway, New York", matcher) is downtown
    assert pick_best_restaurant_for_event_location([uptown, downtown], None, matcher) is uptown


# ── Store-backed ─────────────────────────────────────

CARBONE = Restaurant(id="michelin-1", name="Carbone", latitude=40.7279, longitude=-74.0003,
                     address="181 Thompson St", location="New York")
TORRISI = Restaurant(id="michelin-2", name="Torrisi", latitude=40.7230, longitude=-73.9960)


def seed_visit(store, vid="v1", start=BASE):
    photos = [
        Photo(id=f"{vid}-p{i}", uri="", creation_time=start + i * 10 * MIN,
              latitude=40.7279, longitude=-74.0003)
        for i in range(2)
    ]
    store.insert_photos_batch(photos)
    store.insert_visits_from_groups([PhotoGroup(
        photos=photos, start_time=start, end_time=start + 10 * MIN,
        center_lat=40.7279, center_lon=-74.0003, id=vid,
    )])
    store.upsert_restaurants([CARBONE, TORRISI])
    store.replace_suggestions_batch({vid: (
        [SuggestedRestaurantLink(vid, TORRISI.id, 20.0), SuggestedRestaurantLink(vid, CARBONE.id, 60.0)],
        TORRISI.id,
    )})


def test_enrich_visits_sets_event_and_fuzzy_suggestion(store):
    seed_visit(store)
    source = DummyCalendarSource([event("e1", "Reservation at Carbone - 2 people", BASE, BASE + 2 * HOUR)])
    progress = []
    enricher = CalendarEnricher(source, store, tz=timezone.utc)

    assert asyncio.run(enricher.enrich_visits(progress_cb=progress.append)) == 1
    v = store.get_visit("v1")
    assert v.calendar_event_id == "e1"
    assert v.calendar_event_title == "Reservation at Carbone - 2 people"
    assert v.suggested_restaurant_id == CARBONE.id
    assert progress[-1].phase == "calendar-events"
    assert asyncio.run(enricher.enrich_visits()) == 0


def test_enrich_visits_without_permission_does_nothing(store):
    seed_visit(store)
    source = DummyCalendarSource([event("e1", "Carbone", BASE, BASE + HOUR)], permitted=False)
    assert asyncio.run(CalendarEnricher(source, store).enrich_visits()) == 0
    assert store.get_visit("v1").calendar_event_id is None


def test_enrich_stops_when_cancelled(store):
    seed_visit(store)
    source = DummyCalendarSource([event("e1", "Carbone", BASE, BASE + HOUR)])
    assert asyncio.run(CalendarEnricher(source, store).enrich_visits(cancel_check=lambda: True)) == 0
    assert source.calls == []


def test_importable_events_and_import(store):
    now = BASE + 10 * DAY
    source = DummyCalendarSource([
        event("e1", "Reservation at Carbone", BASE, BASE + 2 * HOUR),
        event("e2", "Dentist", BASE + DAY, BASE + DAY + HOUR),
        event("e3", "Dinner at Torrisi", BASE + 2 * DAY, BASE + 2 * DAY + HOUR),
        event("e4", "Dinner at Carbone", BASE + 3 * DAY, BASE + 3 * DAY + HOUR),
    ])
    store.dismiss_calendar_events(["e3"])
    enricher = CalendarEnricher(source, store)
    restaurants = [CARBONE, TORRISI]

    items = asyncio.run(enricher.get_importable_calendar_events(restaurants, now_ms=now))
    assert [i.event.id for i in items] == ["e4", "e1"]
    assert all(i.restaurant is CARBONE for i in items)

    imported = asyncio.run(enricher.import_calendar_events(["e1"], restaurants, now_ms=now))
    assert imported == 1
    visits = store.get_visits(VisitStatus.CONFIRMED)
    assert [v.calendar_event_id for v in visits] == ["e1"]
    assert visits[0].restaurant_id == CARBONE.id

    items = asyncio.run(enricher.get_importable_calendar_events(restaurants, now_ms=now))
    assert [i.event.id for i in items] == ["e4"]


def test_importable_events_skip_dates_near_confirmed_visits(store):
    now = BASE + 10 * DAY
    source = DummyCalendarSource([event("e1", "Carbone", BASE, BASE + HOUR)])
    seed_visit(store, "v9", start=BASE - 2 * HOUR)
    store.update_visit_status("v9", VisitStatus.CONFIRMED, CARBONE.id)

    items = asyncio.run(CalendarEnricher(source, store).get_importable_calendar_events(
        [CARBONE], now_ms=now))
    assert items == []


def test_module_constants():
    assert calendar.DEFAULT_BUFFER_MINUTES == 30
    assert calendar.ENRICH_BATCH_SIZE == 300
