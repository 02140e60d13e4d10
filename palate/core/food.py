"""Batched food classification over stored photos."""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from palate.core.models import ClassificationResult, FoodLabel
from palate.core.progress import ProgressEvent, ProgressTracker

log = logging.getLogger("palate.food")

CHUNK_SIZE = 50
DEFAULT_SAMPLE_PCT = 0.1
DEFAULT_CONFIDENCE_THRESHOLD = 0.3
RECLASSIFY_BATCH_SIZE = 500

PHASE = "detecting-food"


class FoodClassifier(Protocol):
    def classify(
        self, photo_ids: list[str], confidence_threshold: float
    ) -> list[ClassificationResult]:
        """Results for some or all of the ids; omitted ids stay unlabeled."""
        ...


@dataclass
class FoodRunResult:
    processed: int = 0
    found: int = 0
    failed_chunks: int = 0
    cancelled: bool = False


async def classify_in_chunks(
    classifier: FoodClassifier,
    store,
    photo_ids: list[str],
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    progress_cb: Optional[Callable[[ProgressEvent], None]] = None,
    cancel_check: Optional[Callable[[], bool]] = None,
    chunk_size: int = CHUNK_SIZE,
) -> FoodRunResult:
    """Classify photo_ids chunk by chunk, persisting after every chunk."""
    result = FoodRunResult()
    if not photo_ids:
        return result

    tracker = ProgressTracker(len(photo_ids))
    for i in range(0, len(photo_ids), chunk_size):
        if cancel_check and cancel_check():
            log.info("Food detection cancelled at %d/%d", i, len(photo_ids))
            result.cancelled = True
            break

        chunk = photo_ids[i:i + chunk_size]
        try:
            outcomes = await asyncio.to_thread(
                classifier.classify, chunk, confidence_threshold
            )
        except Exception:
            log.exception("Food classification failed for chunk at offset %d", i)
            result.failed_chunks += 1
            tracker.advance(len(chunk))
            continue

        wanted = set(chunk)
        outcomes = [r for r in outcomes if r.id in wanted]
        store.update_food_labels_batch(outcomes)
        touched = store.get_visit_ids_for_photos([r.id for r in outcomes])
        if touched:
            store.sync_visits_food_probable(sorted(touched))

        found = sum(1 for r in outcomes if r.is_food)
        result.processed += len(outcomes)
        result.found += found
        tracker.advance(len(chunk), found)
        if progress_cb:
            progress_cb(tracker.snapshot(
                PHASE, f"{tracker.processed}/{tracker.total} photos, {tracker.found} with food"
            ))
        await asyncio.sleep(0)

    log.info("Food detection: %d photos classified, %d with food, %d chunks failed",
             result.processed, result.found, result.failed_chunks)
    return result


async def detect_food_in_visits(
    classifier: FoodClassifier,
    store,
    sample_pct: float = DEFAULT_SAMPLE_PCT,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    progress_cb: Optional[Callable[[ProgressEvent], None]] = None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> FoodRunResult:
    """Sampled mode: a fraction of each visit's photos."""
    visits = store.get_visits_needing_food_detection()
    if not visits:
        return FoodRunResult()
    samples = store.get_visit_photo_samples([v.id for v in visits], sample_pct)
    log.info("Sampling %d photos across %d visits", len(samples), len(visits))
    return await classify_in_chunks(
        classifier, store, [pid for _, pid in samples],
        confidence_threshold, progress_cb, cancel_check,
    )


async def deep_scan_all_photos(
    classifier: FoodClassifier,
    store,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    progress_cb: Optional[Callable[[ProgressEvent], None]] = None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> FoodRunResult:
    """Deep mode: every photo that has no food label yet."""
    photo_ids = store.get_unlabeled_photo_ids()
    log.info("Deep scan over %d unlabeled photos", len(photo_ids))
    return await classify_in_chunks(
        classifier, store, photo_ids, confidence_threshold, progress_cb, cancel_check,
    )


async def scan_visit_photos_for_food(
    classifier: FoodClassifier,
    store,
    visit_id: str,
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
) -> FoodRunResult:
    return await classify_in_chunks(
        classifier, store, store.get_unlabeled_photo_ids(visit_id), confidence_threshold,
    )


# ── Keyword reclassification ─────────────────────────

def parse_labels(raw: str) -> list[FoodLabel]:
    """Raises ValueError for anything that is not a list of label objects."""
    try:
        data = json.loads(raw)
        return [FoodLabel(str(d["label"]), float(d["confidence"])) for d in data]
    except (TypeError, KeyError) as e:
        raise ValueError(f"bad label payload: {e}") from e


def match_keywords(
    labels: list[FoodLabel], keywords: set[str]
) -> tuple[bool, list[FoodLabel], Optional[float]]:
    matched = [l for l in labels if l.label.strip().lower() in keywords]
    confidence = max((l.confidence for l in matched), default=None)
    return bool(matched), matched, confidence


def reclassify_photos_with_current_keywords(
    store,
    progress_cb: Optional[Callable[[int, int], None]] = None,
    batch_size: int = RECLASSIFY_BATCH_SIZE,
) -> int:
    """Recompute food flags from stored labels against the enabled keywords.

    Returns the number of photos rewritten.
    """
    keywords = store.get_enabled_food_keywords()
    rows = store.get_photos_with_all_labels()
    if progress_cb:
        progress_cb(0, len(rows))
    if not rows:
        return 0

    updated = 0
    pending: list[tuple[str, bool, list[FoodLabel], Optional[float]]] = []
    for i, (photo_id, raw) in enumerate(rows, start=1):
        try:
            labels = parse_labels(raw)
        except ValueError:
            log.warning("Skipping photo %s with malformed labels", photo_id)
            continue
        detected, matched, confidence = match_keywords(labels, keywords)
        pending.append((photo_id, detected, matched, confidence))

        if len(pending) >= batch_size or i == len(rows):
            store.update_food_classification_batch(pending)
            updated += len(pending)
            pending = []
            if progress_cb:
                progress_cb(i, len(rows))

    if pending:
        store.update_food_classification_batch(pending)
        updated += len(pending)
    if progress_cb:
        progress_cb(len(rows), len(rows))

    store.sync_visits_food_probable()
    log.info("Reclassified %d photos against %d keywords", updated, len(keywords))
    return updated
