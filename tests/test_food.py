import asyncio
import json

import numpy as np
import pytest
from PIL import Image

from palate.core import classifier as classifier_mod
from palate.core.food import (
    classify_in_chunks,
    deep_scan_all_photos,
    detect_food_in_visits,
    match_keywords,
    parse_labels,
    reclassify_photos_with_current_keywords,
    scan_visit_photos_for_food,
)
from palate.core.models import ClassificationResult, FoodLabel, Photo, PhotoGroup

BASE = 1_700_000_000_000
MIN = 60 * 1000


class DummyClassifier:
    def __init__(self, food_ids=(), omit=(), fail_on=None):
        self.food_ids = set(food_ids)
        self.omit = set(omit)
        self.fail_on = fail_on
        self.calls = []

    def classify(self, photo_ids, confidence_threshold):
        self.calls.append(list(photo_ids))
        if self.fail_on is not None and self.fail_on in photo_ids:
            raise RuntimeError("model crashed")
        results = []
        for pid in photo_ids:
            if pid in self.omit:
                continue
            is_food = pid in self.food_ids
            labels = [FoodLabel("pizza", 0.9)] if is_food else []
            results.append(ClassificationResult(
                id=pid, is_food=is_food, labels=labels,
                confidence=0.9 if is_food else None,
                all_labels=labels + [FoodLabel("table", 0.4)],
            ))
        return results


def seed(store, vid, count, start=BASE):
    photos = [
        Photo(id=f"{vid}-{i:03d}", uri=f"/p/{vid}-{i}.jpg", creation_time=start + i * MIN,
              latitude=40.7, longitude=-74.0)
        for i in range(count)
    ]
    store.insert_photos_batch(photos)
    store.insert_visits_from_groups([PhotoGroup(
        photos=photos, start_time=photos[0].creation_time, end_time=photos[-1].creation_time,
        center_lat=40.7, center_lon=-74.0, id=vid,
    )])
    return [p.id for p in photos]


def test_chunks_are_persisted_and_failures_isolated(store):
    ids = seed(store, "v1", 120)
    dummy = DummyClassifier(food_ids={ids[3]}, omit={ids[119]}, fail_on=ids[60])
    progress = []

    result = asyncio.run(classify_in_chunks(dummy, store, ids, progress_cb=progress.append))

    assert [len(c) for c in dummy.calls] == [50, 50, 20]
    assert result.failed_chunks == 1
    assert result.processed == 69
    assert result.found == 1
    unlabeled = set(store.get_unlabeled_photo_ids())
    assert unlabeled == set(ids[50:100]) | {ids[119]}
    assert store.get_visit("v1").food_probable is True
    assert [e.phase for e in progress] == ["detecting-food", "detecting-food"]
    assert progress[-1].current == 120


def test_cancel_between_chunks_keeps_flushed_work(store):
    ids = seed(store, "v1", 120)
    dummy = DummyClassifier()
    checks = iter([False, True])
    result = asyncio.run(classify_in_chunks(dummy, store, ids, cancel_check=lambda: next(checks)))
    assert result.cancelled is True
    assert result.processed == 50
    assert len(store.get_unlabeled_photo_ids()) == 70


def test_sampled_detection_takes_quota_per_visit(store):
    seed(store, "v1", 20)
    seed(store, "v2", 3, start=BASE + 600 * MIN)
    dummy = DummyClassifier(food_ids={"v2-000"})

    result = asyncio.run(detect_food_in_visits(dummy, store, sample_pct=0.1))
    assert sorted(dummy.calls[0]) == ["v1-000", "v1-001", "v2-000"]
    assert result.found == 1
    assert store.get_visit("v2").food_probable is True
    assert store.get_visit("v1").food_probable is False

    again = asyncio.run(detect_food_in_visits(dummy, store, sample_pct=0.1))
    assert again.processed == 0
    assert len(dummy.calls) == 1


def test_deep_scan_and_single_visit_scan(store):
    seed(store, "v1", 4)
    seed(store, "v2", 3, start=BASE + 600 * MIN)
    dummy = DummyClassifier()

    asyncio.run(scan_visit_photos_for_food(dummy, store, "v2"))
    assert store.get_unlabeled_photo_ids("v2") == []
    assert len(store.get_unlabeled_photo_ids("v1")) == 4

    result = asyncio.run(deep_scan_all_photos(dummy, store))
    assert result.processed == 4
    assert store.get_unlabeled_photo_ids() == []


def test_parse_labels_rejects_bad_payloads():
    assert parse_labels('[{"label": "pizza", "confidence": 0.8}]') == [FoodLabel("pizza", 0.8)]
    with pytest.raises(ValueError):
        parse_labels("not json")
    with pytest.raises(ValueError):
        parse_labels('[{"name": "pizza"}]')


def test_match_keywords():
    labels = [FoodLabel("Pizza ", 0.7), FoodLabel("plate", 0.9), FoodLabel("car", 0.95)]
    detected, matched, confidence = match_keywords(labels, {"pizza", "plate"})
    assert detected is True
    assert [l.label for l in matched] == ["Pizza ", "plate"]
    assert confidence == 0.9
    assert match_keywords(labels, set()) == (False, [], None)


def test_reclassify_with_current_keywords(store):
    ids = seed(store, "v1", 3)
    asyncio.run(classify_in_chunks(DummyClassifier(food_ids={ids[0]}), store, ids))
    store._conn.execute("UPDATE photos SET all_labels='{broken' WHERE id=?", (ids[2],))
    store._conn.commit()
    assert store.get_visit("v1").food_probable is True

    store.set_food_keyword_enabled("pizza", False)
    progress = []
    updated = reclassify_photos_with_current_keywords(store, lambda c, t: progress.append((c, t)))

    assert updated == 2
    assert progress[-1] == (3, 3)
    assert store.get_photo(ids[0]).food_detected is False
    assert store.get_visit("v1").food_probable is False

    store.add_food_keyword("table")
    reclassify_photos_with_current_keywords(store)
    photo = store.get_photo(ids[1])
    assert photo.food_detected is True
    assert photo.food_labels == [FoodLabel("table", 0.4)]
    assert store.get_visit("v1").food_probable is True


# ── ONNX classifier ──────────────────────────────────

class DummyNode:
    def __init__(self, name):
        self.name = name


class DummySession:
    def __init__(self, path, providers=None):
        self.path = path
        self.providers = providers
        self.batches = []

    def get_inputs(self):
        return [DummyNode("input")]

    def get_outputs(self):
        return [DummyNode("logits")]

    def run(self, output_names, feeds):
        batch = feeds["input"]
        self.batches.append(batch.shape)
        row = np.array([5.0, 0.0, 1.0], dtype=np.float32)
        return [np.tile(row, (batch.shape[0], 1))]


def test_onnx_classifier_scores_and_filters_by_keywords(tmp_path, monkeypatch):
    monkeypatch.setattr(classifier_mod.ort, "InferenceSession", DummySession)
    labels_path = tmp_path / "labels.json"
    labels_path.write_text(json.dumps({"0": "pizza", "1": "car", "2": "plate"}))
    image_path = tmp_path / "a.jpg"
    Image.new("RGB", (64, 48), (200, 100, 50)).save(image_path)
    uris = {"a": str(image_path), "missing": str(tmp_path / "nope.jpg")}

    clf = classifier_mod.OnnxFoodClassifier(
        "model.onnx", str(labels_path),
        uri_lookup=uris.get, keywords=lambda: {"pizza", "plate"},
    )
    results = clf.classify(["a", "missing", "unknown"], 0.3)

    assert clf.session.batches == [(1, 3, 224, 224)]
    assert [r.id for r in results] == ["a"]
    result = results[0]
    assert result.is_food is True
    assert [l.label for l in result.labels] == ["pizza"]
    assert result.confidence == pytest.approx(0.9756, abs=1e-3)
    assert [l.label for l in result.all_labels] == ["pizza", "plate"]


def test_load_labels_accepts_lists(tmp_path):
    path = tmp_path / "labels.json"
    path.write_text(json.dumps(["pizza", "car"]))
    assert classifier_mod.load_labels(str(path)) == ["pizza", "car"]
