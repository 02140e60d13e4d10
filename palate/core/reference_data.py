"""Read-only access to the curated restaurant reference database."""
import logging
import math
import re
import sqlite3
from contextlib import closing
from typing import Callable, Optional

from palate.core.errors import MalformedReferenceData
from palate.core.models import AwardRecord, Restaurant

log = logging.getLogger("palate.reference_data")

ID_PREFIX = "michelin-"
PROGRESS_EVERY = 1000

_ID_RE = re.compile(r"^michelin-(\d+)$")

_LOAD_SQL = """
SELECT r.*,
       a.distinction AS latest_distinction,
       a.year AS latest_year,
       a.green_star AS has_green_star
FROM restaurants r
LEFT JOIN (
    SELECT ra.*
    FROM restaurant_awards ra
    INNER JOIN (
        SELECT restaurant_id, MAX(year) AS max_year
        FROM restaurant_awards
        GROUP BY restaurant_id
    ) latest ON ra.restaurant_id = latest.restaurant_id AND ra.year = latest.max_year
) a ON r.id = a.restaurant_id
WHERE r.latitude IS NOT NULL AND r.longitude IS NOT NULL
  AND r.latitude != '' AND r.longitude != ''
"""


def _connect_readonly(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    return conn


def format_award(distinction: Optional[str], green_star) -> str:
    award = distinction or ""
    if green_star:
        award = f"{award}, Green Star" if award else "Green Star"
    return award


def parse_reference_row(row) -> Restaurant:
    """Convert one joined row; raises MalformedReferenceData on bad coordinates."""
    try:
        lat = float(row["latitude"])
        lon = float(row["longitude"])
    except (TypeError, ValueError) as e:
        raise MalformedReferenceData(f"restaurant {row['id']}: {e}") from e
    if math.isnan(lat) or math.isnan(lon):
        raise MalformedReferenceData(f"restaurant {row['id']}: NaN coordinates")
    if lat == 0 and lon == 0:
        raise MalformedReferenceData(f"restaurant {row['id']}: null island")

    keys = row.keys()
    return Restaurant(
        id=f"{ID_PREFIX}{row['id']}",
        name=row["name"] or "",
        latitude=lat,
        longitude=lon,
        address=(row["address"] if "address" in keys else "") or "",
        location=(row["location"] if "location" in keys else "") or "",
        cuisine=(row["cuisine"] if "cuisine" in keys else "") or "",
        award=format_award(row["latest_distinction"], row["has_green_star"]),
    )


def load_reference_restaurants(
    db_path: str,
    progress_cb: Optional[Callable[[int, int], None]] = None,
) -> list[Restaurant]:
    """Load every restaurant with its latest award.

    Rows that fail to parse are dropped individually.
    """
    with closing(_connect_readonly(db_path)) as conn:
        total = conn.execute("SELECT COUNT(*) FROM restaurants").fetchone()[0]
        rows = conn.execute(_LOAD_SQL).fetchall()

    restaurants: list[Restaurant] = []
    skipped = 0
    for row in rows:
        try:
            restaurants.append(parse_reference_row(row))
        except MalformedReferenceData as e:
            skipped += 1
            log.debug("Skipping reference row: %s", e)
            continue
        if progress_cb and len(restaurants) % PROGRESS_EVERY == 0:
            progress_cb(len(restaurants), total)

    if progress_cb:
        progress_cb(len(restaurants), total)
    log.info("Loaded %d reference restaurants (%d skipped)", len(restaurants), skipped)
    return restaurants


def db_id_from_restaurant_id(restaurant_id: str) -> Optional[int]:
    m = _ID_RE.match(restaurant_id)
    return int(m.group(1)) if m else None


def get_award_history(db_path: str, restaurant_id: str) -> list[AwardRecord]:
    """All awards for one restaurant, newest first."""
    db_id = db_id_from_restaurant_id(restaurant_id)
    if db_id is None:
        return []
    with closing(_connect_readonly(db_path)) as conn:
        rows = conn.execute(
            """SELECT year, distinction, price, green_star
               FROM restaurant_awards WHERE restaurant_id=?
               ORDER BY year DESC""",
            (db_id,),
        ).fetchall()
    return [
        AwardRecord(
            restaurant_id=restaurant_id,
            year=int(r["year"]),
            distinction=r["distinction"] or "",
            price=r["price"] or "",
            green_star=bool(r["green_star"]),
        )
        for r in rows
    ]


def award_for_year(history: list[AwardRecord], year: int) -> str:
    """Award held in ``year``: latest one at or before it, else the earliest."""
    if not history:
        return ""
    ordered = sorted(history, key=lambda a: a.year)
    chosen = ordered[0]
    for award in ordered:
        if award.year <= year:
            chosen = award
        else:
            break
    return format_award(chosen.distinction, chosen.green_star)
