"""SQLite persistence layer for photos, visits and their annotations."""
import json
import logging
import sqlite3
import time
import uuid
from contextlib import contextmanager
from typing import Iterable, Optional

from palate.core.geo import within_distance
from palate.core.models import (
    CalendarEventInfo, FoodLabel, IgnoredLocation, MediaKind, Photo,
    PhotoGroup, Restaurant, SuggestedRestaurantLink, Visit, VisitStatus,
    ClassificationResult,
)

log = logging.getLogger("palate.store")

SCHEMA_VERSION = 2

SCHEMA_V1 = """
CREATE TABLE IF NOT EXISTS photos (
    id TEXT PRIMARY KEY,
    uri TEXT NOT NULL,
    creation_time INTEGER NOT NULL,
    latitude REAL,
    longitude REAL,
    media_kind TEXT DEFAULT 'photo',
    duration REAL,
    visit_id TEXT,
    food_detected INTEGER,
    food_labels TEXT,
    food_confidence REAL,
    FOREIGN KEY (visit_id) REFERENCES visits(id)
);

CREATE TABLE IF NOT EXISTS visits (
    id TEXT PRIMARY KEY,
    restaurant_id TEXT,
    suggested_restaurant_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    start_time INTEGER NOT NULL,
    end_time INTEGER NOT NULL,
    center_lat REAL NOT NULL,
    center_lon REAL NOT NULL,
    photo_count INTEGER NOT NULL DEFAULT 0,
    food_probable INTEGER NOT NULL DEFAULT 0,
    calendar_event_id TEXT,
    calendar_event_title TEXT,
    calendar_event_location TEXT,
    calendar_event_is_all_day INTEGER,
    notes TEXT,
    updated_at INTEGER
);

CREATE TABLE IF NOT EXISTS visit_suggested_restaurants (
    visit_id TEXT NOT NULL,
    restaurant_id TEXT NOT NULL,
    distance REAL NOT NULL,
    PRIMARY KEY (visit_id, restaurant_id),
    FOREIGN KEY (visit_id) REFERENCES visits(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS restaurants (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    address TEXT NOT NULL DEFAULT '',
    location TEXT NOT NULL DEFAULT '',
    cuisine TEXT NOT NULL DEFAULT '',
    award TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS ignored_locations (
    id TEXT PRIMARY KEY,
    latitude REAL NOT NULL,
    longitude REAL NOT NULL,
    radius REAL NOT NULL DEFAULT 100,
    name TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS dismissed_calendar_events (
    calendar_event_id TEXT PRIMARY KEY,
    dismissed_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_photos_creation_time ON photos(creation_time);
CREATE INDEX IF NOT EXISTS idx_photos_visit ON photos(visit_id);
CREATE INDEX IF NOT EXISTS idx_photos_visit_food_time ON photos(visit_id, food_detected, creation_time);
CREATE INDEX IF NOT EXISTS idx_visits_status_time ON visits(status, start_time DESC);
CREATE INDEX IF NOT EXISTS idx_visits_calendar ON visits(calendar_event_id);
CREATE INDEX IF NOT EXISTS idx_visit_suggested_distance ON visit_suggested_restaurants(visit_id, distance);
"""

# v1 -> v2: keep every classifier label for keyword reclassification
MIGRATION_V1_TO_V2 = [
    "ALTER TABLE photos ADD COLUMN all_labels TEXT",
    """CREATE TABLE IF NOT EXISTS food_keywords (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        keyword TEXT NOT NULL UNIQUE,
        enabled INTEGER NOT NULL DEFAULT 1,
        is_built_in INTEGER NOT NULL DEFAULT 0,
        created_at INTEGER NOT NULL
    )""",
]

DEFAULT_FOOD_KEYWORDS = [
    "food", "dish", "meal", "cuisine", "snack", "breakfast", "lunch",
    "dinner", "brunch", "appetizer", "dessert", "tableware", "utensil",
    "salad", "soup", "sandwich", "pizza", "pasta", "sushi", "burger",
    "steak", "chicken", "fish", "seafood", "meat", "vegetable", "fruit",
    "bread", "cake", "pie", "biscuit", "chopsticks", "baked_goods",
    "cookie", "ice_cream", "fork", "drinking_glass", "chocolate", "candy",
    "beverage", "coffee", "tea", "wine", "beer", "cocktail", "juice",
    "smoothie", "menu", "plate", "bowl", "restaurant", "cafe", "dining",
    "table_setting", "cutlery",
]

# SQLite's default host parameter limit is 999 on older builds.
_MAX_PARAMS = 900


def now_ms() -> int:
    return int(time.time() * 1000)


def _chunks(items: list, size: int = _MAX_PARAMS):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _labels_to_json(labels: list[FoodLabel]) -> Optional[str]:
    if not labels:
        return None
    return json.dumps([{"label": l.label, "confidence": l.confidence} for l in labels])


def _labels_from_json(raw: Optional[str]) -> list[FoodLabel]:
    if not raw:
        return []
    return [FoodLabel(d["label"], float(d["confidence"])) for d in json.loads(raw)]


class VisitStore:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self):
        version = self._conn.execute("PRAGMA user_version").fetchone()[0]

        if version == 0:
            self._conn.executescript(SCHEMA_V1)
            self._conn.commit()
            version = 1

        if version == 1:
            log.info("Migrating database from v1 to v2 (all labels, food keywords)")
            for sql in MIGRATION_V1_TO_V2:
                try:
                    self._conn.execute(sql)
                except sqlite3.OperationalError as e:
                    if "duplicate column" not in str(e).lower():
                        log.warning("Migration statement failed: %s", e)
            self._conn.commit()

        self._conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")
        self._conn.commit()
        self._seed_food_keywords()

    def close(self):
        self._conn.close()

    @contextmanager
    def _transaction(self):
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self._conn
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    # ── Photos ───────────────────────────────────────────

    def insert_photos_batch(self, photos: list[Photo]) -> int:
        """Insert newly scanned photos; already-known ids are left untouched."""
        if not photos:
            return 0
        before = self._conn.total_changes
        with self._transaction() as conn:
            conn.executemany(
                """INSERT OR IGNORE INTO photos
                   (id, uri, creation_time, latitude, longitude, media_kind, duration)
                   VALUES (?,?,?,?,?,?,?)""",
                [
                    (p.id, p.uri, p.creation_time, p.latitude, p.longitude,
                     p.media_kind.value, p.duration)
                    for p in photos
                ],
            )
        return self._conn.total_changes - before

    def get_existing_photo_ids(self, ids: list[str]) -> set[str]:
        found: set[str] = set()
        for chunk in _chunks(ids):
            placeholders = ",".join("?" * len(chunk))
            rows = self._conn.execute(
                f"SELECT id FROM photos WHERE id IN ({placeholders})", chunk,
            ).fetchall()
            found.update(r["id"] for r in rows)
        return found

    def count_photos(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM photos").fetchone()[0]

    def get_photo(self, photo_id: str) -> Optional[Photo]:
        row = self._conn.execute("SELECT * FROM photos WHERE id=?", (photo_id,)).fetchone()
        return self._row_to_photo(row) if row else None

    def get_unvisited_photos(self) -> list[Photo]:
        rows = self._conn.execute(
            "SELECT * FROM photos WHERE visit_id IS NULL ORDER BY creation_time, id"
        ).fetchall()
        return [self._row_to_photo(r) for r in rows]

    # ── Visits ───────────────────────────────────────────

    def insert_visits_from_groups(self, groups: list[PhotoGroup]) -> int:
        """Create visits for closed groups and attach their photos.

        Returns the number of visits that did not exist before.
        """
        if not groups:
            return 0
        now = now_ms()
        created = 0
        with self._transaction() as conn:
            for g in groups:
                cur = conn.execute(
                    """INSERT OR IGNORE INTO visits
                       (id, status, start_time, end_time, center_lat, center_lon,
                        photo_count, updated_at)
                       VALUES (?,?,?,?,?,?,?,?)""",
                    (g.id, VisitStatus.PENDING.value, g.start_time, g.end_time,
                     g.center_lat, g.center_lon, len(g.photos), now),
                )
                created += cur.rowcount
                conn.executemany(
                    "UPDATE photos SET visit_id=? WHERE id=? AND visit_id IS NULL",
                    [(g.id, p.id) for p in g.photos],
                )
                if cur.rowcount == 0:
                    # Same hour and place as an existing visit: extend it.
                    conn.execute(
                        """UPDATE visits SET
                           start_time=MIN(start_time, ?), end_time=MAX(end_time, ?),
                           photo_count=(SELECT COUNT(*) FROM photos WHERE visit_id=?),
                           updated_at=?
                           WHERE id=?""",
                        (g.start_time, g.end_time, g.id, now, g.id),
                    )
        return created

    def get_visit(self, visit_id: str) -> Optional[Visit]:
        row = self._conn.execute("SELECT * FROM visits WHERE id=?", (visit_id,)).fetchone()
        return self._row_to_visit(row) if row else None

    def get_visits(self, status: Optional[VisitStatus] = None) -> list[Visit]:
        if status is None:
            rows = self._conn.execute("SELECT * FROM visits ORDER BY start_time DESC").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM visits WHERE status=? ORDER BY start_time DESC",
                (status.value,),
            ).fetchall()
        return [self._row_to_visit(r) for r in rows]

    def get_visits_without_calendar_event(self) -> list[Visit]:
        rows = self._conn.execute(
            """SELECT * FROM visits WHERE calendar_event_id IS NULL
               ORDER BY start_time DESC"""
        ).fetchall()
        return [self._row_to_visit(r) for r in rows]

    def update_visit_status(self, visit_id: str, status: VisitStatus,
                            restaurant_id: Optional[str] = None):
        self._conn.execute(
            """UPDATE visits SET status=?, restaurant_id=COALESCE(?, restaurant_id),
               updated_at=? WHERE id=?""",
            (status.value, restaurant_id, now_ms(), visit_id),
        )
        self._conn.commit()

    def update_visits_calendar_batch(
        self, matches: list[tuple[str, CalendarEventInfo, Optional[str]]]
    ):
        """Write (visit_id, event, suggested_restaurant_id or None) triples."""
        if not matches:
            return
        now = now_ms()
        with self._transaction() as conn:
            conn.executemany(
                """UPDATE visits SET calendar_event_id=?, calendar_event_title=?,
                   calendar_event_location=?, calendar_event_is_all_day=?,
                   suggested_restaurant_id=COALESCE(?, suggested_restaurant_id),
                   updated_at=?
                   WHERE id=?""",
                [
                    (e.id, e.title, e.location, int(e.is_all_day), rid, now, vid)
                    for vid, e, rid in matches
                ],
            )

    def get_food_visit_ids(self) -> set[str]:
        rows = self._conn.execute("SELECT id FROM visits WHERE food_probable=1").fetchall()
        return {r[0] for r in rows}

    # ── Suggested restaurants ────────────────────────────

    def replace_suggestions_batch(
        self,
        suggestions: dict[str, tuple[list[SuggestedRestaurantLink], Optional[str]]],
    ):
        """Per visit: replace all links and set the primary suggestion.

        The primary id, when given, must be one of the visit's links.
        """
        if not suggestions:
            return
        now = now_ms()
        with self._transaction() as conn:
            for visit_id, (links, primary) in suggestions.items():
                if primary is not None and primary not in {l.restaurant_id for l in links}:
                    raise ValueError(f"primary {primary} not among links of {visit_id}")
                conn.execute(
                    "DELETE FROM visit_suggested_restaurants WHERE visit_id=?", (visit_id,)
                )
                conn.executemany(
                    """INSERT OR REPLACE INTO visit_suggested_restaurants
                       (visit_id, restaurant_id, distance) VALUES (?,?,?)""",
                    [(l.visit_id, l.restaurant_id, l.distance) for l in links],
                )
                conn.execute(
                    "UPDATE visits SET suggested_restaurant_id=?, updated_at=? WHERE id=?",
                    (primary, now, visit_id),
                )

    def get_suggestion_links(self, visit_id: str) -> list[SuggestedRestaurantLink]:
        rows = self._conn.execute(
            """SELECT * FROM visit_suggested_restaurants WHERE visit_id=?
               ORDER BY distance""",
            (visit_id,),
        ).fetchall()
        return [self._row_to_link(r) for r in rows]

    def get_suggestion_links_for_visits(
        self, visit_ids: list[str]
    ) -> dict[str, list[SuggestedRestaurantLink]]:
        result: dict[str, list[SuggestedRestaurantLink]] = {v: [] for v in visit_ids}
        for chunk in _chunks(visit_ids):
            placeholders = ",".join("?" * len(chunk))
            rows = self._conn.execute(
                f"""SELECT * FROM visit_suggested_restaurants
                    WHERE visit_id IN ({placeholders}) ORDER BY visit_id, distance""",
                chunk,
            ).fetchall()
            for r in rows:
                result[r["visit_id"]].append(self._row_to_link(r))
        return result

    def get_visit_ids_without_suggestions(self) -> list[str]:
        rows = self._conn.execute(
            """SELECT v.id FROM visits v
               WHERE NOT EXISTS (
                   SELECT 1 FROM visit_suggested_restaurants s WHERE s.visit_id = v.id
               )"""
        ).fetchall()
        return [r["id"] for r in rows]

    # ── Restaurants ──────────────────────────────────────

    def upsert_restaurants(self, restaurants: list[Restaurant]):
        with self._transaction() as conn:
            conn.executemany(
                """INSERT OR REPLACE INTO restaurants
                   (id, name, latitude, longitude, address, location, cuisine, award)
                   VALUES (?,?,?,?,?,?,?,?)""",
                [
                    (r.id, r.name, r.latitude, r.longitude, r.address,
                     r.location, r.cuisine, r.award)
                    for r in restaurants
                ],
            )

    def get_restaurant(self, restaurant_id: str) -> Optional[Restaurant]:
        row = self._conn.execute(
            "SELECT * FROM restaurants WHERE id=?", (restaurant_id,)
        ).fetchone()
        return self._row_to_restaurant(row) if row else None

    # ── Food labels ──────────────────────────────────────

    def get_visits_needing_food_detection(self) -> list[Visit]:
        rows = self._conn.execute(
            """SELECT v.* FROM visits v
               WHERE EXISTS (
                   SELECT 1 FROM photos p WHERE p.visit_id = v.id AND p.food_detected IS NULL
               )
               ORDER BY v.start_time DESC"""
        ).fetchall()
        return [self._row_to_visit(r) for r in rows]

    def get_visit_photo_samples(
        self, visit_ids: list[str], sample_pct: float
    ) -> list[tuple[str, str]]:
        """(visit_id, photo_id) pairs still owed to each visit's sample.

        A visit's sample is max(1, int(photo_count * pct)) photos taken in
        (creation_time, id) order; photos labeled by an earlier run count
        toward it.
        """
        samples: list[tuple[str, str]] = []
        for visit_id in visit_ids:
            total, labeled = self._conn.execute(
                """SELECT COUNT(*), COUNT(food_detected) FROM photos
                   WHERE visit_id=?""",
                (visit_id,),
            ).fetchone()
            owed = max(1, int(total * sample_pct)) - labeled
            if owed <= 0:
                continue
            rows = self._conn.execute(
                """SELECT id FROM photos
                   WHERE visit_id=? AND food_detected IS NULL
                   ORDER BY creation_time, id LIMIT ?""",
                (visit_id, owed),
            ).fetchall()
            samples.extend((visit_id, r["id"]) for r in rows)
        return samples

    def get_unlabeled_photo_ids(self, visit_id: Optional[str] = None) -> list[str]:
        if visit_id is None:
            rows = self._conn.execute(
                """SELECT id FROM photos WHERE food_detected IS NULL
                   ORDER BY creation_time, id"""
            ).fetchall()
        else:
            rows = self._conn.execute(
                """SELECT id FROM photos WHERE visit_id=? AND food_detected IS NULL
                   ORDER BY creation_time, id""",
                (visit_id,),
            ).fetchall()
        return [r["id"] for r in rows]

    def update_food_labels_batch(self, results: list[ClassificationResult]):
        if not results:
            return
        with self._transaction() as conn:
            conn.executemany(
                """UPDATE photos SET food_detected=?, food_labels=?,
                   food_confidence=?, all_labels=? WHERE id=?""",
                [
                    (int(r.is_food), _labels_to_json(r.labels), r.confidence,
                     _labels_to_json(r.all_labels), r.id)
                    for r in results
                ],
            )

    def sync_visits_food_probable(self, visit_ids: Optional[list[str]] = None):
        sql = """UPDATE visits SET food_probable = COALESCE(
                     (SELECT MAX(food_detected) FROM photos WHERE visit_id = visits.id), 0)"""
        if visit_ids is None:
            self._conn.execute(sql)
            self._conn.commit()
            return
        with self._transaction() as conn:
            for chunk in _chunks(visit_ids):
                placeholders = ",".join("?" * len(chunk))
                conn.execute(f"{sql} WHERE id IN ({placeholders})", chunk)

    def get_visit_ids_for_photos(self, photo_ids: list[str]) -> set[str]:
        found: set[str] = set()
        for chunk in _chunks(photo_ids):
            placeholders = ",".join("?" * len(chunk))
            rows = self._conn.execute(
                f"""SELECT DISTINCT visit_id FROM photos
                    WHERE id IN ({placeholders}) AND visit_id IS NOT NULL""",
                chunk,
            ).fetchall()
            found.update(r["visit_id"] for r in rows)
        return found

    # ── Food keywords ────────────────────────────────────

    def _seed_food_keywords(self):
        count = self._conn.execute("SELECT COUNT(*) FROM food_keywords").fetchone()[0]
        if count:
            return
        now = now_ms()
        with self._transaction() as conn:
            conn.executemany(
                """INSERT OR IGNORE INTO food_keywords
                   (keyword, enabled, is_built_in, created_at) VALUES (?,1,1,?)""",
                [(k, now) for k in DEFAULT_FOOD_KEYWORDS],
            )

    def get_enabled_food_keywords(self) -> set[str]:
        rows = self._conn.execute(
            "SELECT keyword FROM food_keywords WHERE enabled=1"
        ).fetchall()
        return {r["keyword"] for r in rows}

    def add_food_keyword(self, keyword: str):
        self._conn.execute(
            """INSERT OR IGNORE INTO food_keywords (keyword, enabled, is_built_in, created_at)
               VALUES (?,1,0,?)""",
            (keyword.strip().lower(), now_ms()),
        )
        self._conn.commit()

    def set_food_keyword_enabled(self, keyword: str, enabled: bool):
        self._conn.execute(
            "UPDATE food_keywords SET enabled=? WHERE keyword=?",
            (int(enabled), keyword.strip().lower()),
        )
        self._conn.commit()

    def reset_food_keywords(self):
        with self._transaction() as conn:
            conn.execute("DELETE FROM food_keywords WHERE is_built_in=0")
            conn.execute("UPDATE food_keywords SET enabled=1 WHERE is_built_in=1")

    def get_photos_with_all_labels(self) -> list[tuple[str, Optional[str]]]:
        """(photo_id, raw all_labels JSON) for photos classified at least once."""
        rows = self._conn.execute(
            "SELECT id, all_labels FROM photos WHERE all_labels IS NOT NULL"
        ).fetchall()
        return [(r["id"], r["all_labels"]) for r in rows]

    def update_food_classification_batch(
        self, updates: list[tuple[str, bool, list[FoodLabel], Optional[float]]]
    ):
        """Rewrite food flag, labels and confidence without touching all_labels."""
        with self._transaction() as conn:
            conn.executemany(
                """UPDATE photos SET food_detected=?, food_labels=?, food_confidence=?
                   WHERE id=?""",
                [
                    (int(detected), _labels_to_json(labels), conf, pid)
                    for pid, detected, labels, conf in updates
                ],
            )

    # ── Ignored locations ────────────────────────────────

    def add_ignored_location(
        self, latitude: float, longitude: float,
        radius: float = 100.0, name: Optional[str] = None,
    ) -> str:
        loc_id = f"ignored-{now_ms()}-{uuid.uuid4().hex[:9]}"
        self._conn.execute(
            """INSERT INTO ignored_locations (id, latitude, longitude, radius, name, created_at)
               VALUES (?,?,?,?,?,?)""",
            (loc_id, latitude, longitude, radius, name, now_ms()),
        )
        self._conn.commit()
        return loc_id

    def remove_ignored_location(self, location_id: str):
        self._conn.execute("DELETE FROM ignored_locations WHERE id=?", (location_id,))
        self._conn.commit()

    def get_ignored_locations(self) -> list[IgnoredLocation]:
        rows = self._conn.execute(
            "SELECT * FROM ignored_locations ORDER BY created_at DESC"
        ).fetchall()
        return [
            IgnoredLocation(
                id=r["id"], latitude=r["latitude"], longitude=r["longitude"],
                radius=r["radius"], name=r["name"], created_at=r["created_at"],
            )
            for r in rows
        ]

    def reject_visits_in_ignored_locations(self) -> int:
        ignored = self.get_ignored_locations()
        if not ignored:
            return 0
        pending = self.get_visits(VisitStatus.PENDING)
        to_reject = [
            v.id for v in pending
            if any(
                within_distance(loc.latitude, loc.longitude,
                                v.center_lat, v.center_lon, loc.radius)
                for loc in ignored
            )
        ]
        if not to_reject:
            return 0
        now = now_ms()
        with self._transaction() as conn:
            conn.executemany(
                "UPDATE visits SET status=?, updated_at=? WHERE id=?",
                [(VisitStatus.REJECTED.value, now, vid) for vid in to_reject],
            )
        log.info("Rejected %d visits inside ignored locations", len(to_reject))
        return len(to_reject)

    # ── Calendar import ──────────────────────────────────

    def get_linked_calendar_event_ids(self) -> set[str]:
        rows = self._conn.execute(
            "SELECT DISTINCT calendar_event_id FROM visits WHERE calendar_event_id IS NOT NULL"
        ).fetchall()
        return {r["calendar_event_id"] for r in rows}

    def dismiss_calendar_events(self, event_ids: Iterable[str]):
        now = now_ms()
        with self._transaction() as conn:
            conn.executemany(
                """INSERT OR REPLACE INTO dismissed_calendar_events
                   (calendar_event_id, dismissed_at) VALUES (?,?)""",
                [(eid, now) for eid in event_ids],
            )

    def get_dismissed_calendar_event_ids(self) -> set[str]:
        rows = self._conn.execute(
            "SELECT calendar_event_id FROM dismissed_calendar_events"
        ).fetchall()
        return {r["calendar_event_id"] for r in rows}

    def get_confirmed_visit_times_by_restaurant(self) -> dict[str, list[int]]:
        rows = self._conn.execute(
            """SELECT restaurant_id, start_time FROM visits
               WHERE status=? AND restaurant_id IS NOT NULL""",
            (VisitStatus.CONFIRMED.value,),
        ).fetchall()
        result: dict[str, list[int]] = {}
        for r in rows:
            result.setdefault(r["restaurant_id"], []).append(r["start_time"])
        return result

    def insert_calendar_visits(self, visits: list[Visit], restaurants: list[Restaurant]) -> int:
        """Insert confirmed visits imported from calendar events.

        Each visit gets one suggestion link to its restaurant at distance 0.
        """
        if not visits:
            return 0
        self.upsert_restaurants(restaurants)
        before = self._conn.total_changes
        with self._transaction() as conn:
            conn.executemany(
                """INSERT OR IGNORE INTO visits
                   (id, restaurant_id, suggested_restaurant_id, status, start_time,
                    end_time, center_lat, center_lon, photo_count, food_probable,
                    calendar_event_id, calendar_event_title, calendar_event_location,
                    calendar_event_is_all_day, notes, updated_at)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                [
                    (v.id, v.restaurant_id, v.suggested_restaurant_id, v.status.value,
                     v.start_time, v.end_time, v.center_lat, v.center_lon,
                     v.photo_count, int(v.food_probable), v.calendar_event_id,
                     v.calendar_event_title, v.calendar_event_location,
                     int(bool(v.calendar_event_is_all_day)), v.notes, v.updated_at)
                    for v in visits
                ],
            )
            inserted = self._conn.total_changes - before
            conn.executemany(
                """INSERT OR IGNORE INTO visit_suggested_restaurants
                   (visit_id, restaurant_id, distance) VALUES (?,?,0)""",
                [(v.id, v.restaurant_id) for v in visits if v.restaurant_id],
            )
        return inserted

    # ── Maintenance ──────────────────────────────────────

    def optimize(self, full: bool = False):
        """Checkpoint the WAL and refresh planner statistics.

        ``full`` also truncates the WAL and rebuilds the file.
        """
        self._conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
        self._conn.execute("ANALYZE")
        self._conn.commit()
        if full:
            self._conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            self._conn.execute("VACUUM")
        log.info("Database optimized (full=%s)", full)

    # ── Row mapping ──────────────────────────────────────

    @staticmethod
    def _row_to_photo(row: sqlite3.Row) -> Photo:
        keys = row.keys()
        detected = row["food_detected"]
        return Photo(
            id=row["id"],
            uri=row["uri"],
            creation_time=row["creation_time"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            media_kind=MediaKind(row["media_kind"] or "photo"),
            duration=row["duration"],
            visit_id=row["visit_id"],
            food_detected=None if detected is None else bool(detected),
            food_labels=_labels_from_json(row["food_labels"]),
            food_confidence=row["food_confidence"],
            all_labels=_labels_from_json(row["all_labels"]) if "all_labels" in keys else [],
        )

    @staticmethod
    def _row_to_visit(row: sqlite3.Row) -> Visit:
        all_day = row["calendar_event_is_all_day"]
        return Visit(
            id=row["id"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            center_lat=row["center_lat"],
            center_lon=row["center_lon"],
            status=VisitStatus(row["status"]),
            photo_count=row["photo_count"],
            food_probable=bool(row["food_probable"]),
            restaurant_id=row["restaurant_id"],
            suggested_restaurant_id=row["suggested_restaurant_id"],
            calendar_event_id=row["calendar_event_id"],
            calendar_event_title=row["calendar_event_title"],
            calendar_event_location=row["calendar_event_location"],
            calendar_event_is_all_day=None if all_day is None else bool(all_day),
            notes=row["notes"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_link(row: sqlite3.Row) -> SuggestedRestaurantLink:
        return SuggestedRestaurantLink(
            visit_id=row["visit_id"],
            restaurant_id=row["restaurant_id"],
            distance=row["distance"],
        )

    @staticmethod
    def _row_to_restaurant(row: sqlite3.Row) -> Restaurant:
        return Restaurant(
            id=row["id"],
            name=row["name"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            address=row["address"],
            location=row["location"],
            cuisine=row["cuisine"],
            award=row["award"],
        )
