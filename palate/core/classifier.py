"""Image classifier behind the FoodClassifier interface, run with onnxruntime."""
import json
import logging
from typing import Callable, Optional

import numpy as np
import onnxruntime as ort
from PIL import Image, ImageOps

from palate.core.models import ClassificationResult, FoodLabel

log = logging.getLogger("palate.classifier")

INPUT_SIZE = 224
TOP_K = 10
MIN_LABEL_CONFIDENCE = 0.01

_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


def load_labels(path: str) -> list[str]:
    """Accepts either a JSON list or an {"index": label} object."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        return [data[str(i)] for i in range(len(data))]
    return list(data)


def softmax(logits: np.ndarray) -> np.ndarray:
    shifted = logits - logits.max(axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return exp / exp.sum(axis=-1, keepdims=True)


def preprocess(path: str, size: int = INPUT_SIZE) -> np.ndarray:
    """CHW float32 tensor, ImageNet-normalized."""
    with Image.open(path) as img:
        img = ImageOps.exif_transpose(img).convert("RGB")
        img = img.resize((size, size), Image.BILINEAR)
        arr = np.asarray(img, dtype=np.float32) / 255.0
    arr = (arr - _MEAN) / _STD
    return arr.transpose(2, 0, 1)


class OnnxFoodClassifier:
    """Scores photos with a single-input image classification model.

    A photo is food when one of its labels above the threshold is an
    enabled food keyword.
    """

    def __init__(
        self,
        model_path: str,
        labels_path: str,
        uri_lookup: Callable[[str], Optional[str]],
        keywords: Callable[[], set[str]],
        input_size: int = INPUT_SIZE,
        top_k: int = TOP_K,
    ):
        self.session = ort.InferenceSession(model_path, providers=["CPUExecutionProvider"])
        self.input_name = self.session.get_inputs()[0].name
        self.output_name = self.session.get_outputs()[0].name
        self.labels = load_labels(labels_path)
        self.uri_lookup = uri_lookup
        self.keywords = keywords
        self.input_size = input_size
        self.top_k = top_k
        log.info("Loaded classifier %s with %d labels", model_path, len(self.labels))

    def _load_batch(self, photo_ids: list[str]) -> tuple[list[str], Optional[np.ndarray]]:
        ids, tensors = [], []
        for pid in photo_ids:
            uri = self.uri_lookup(pid)
            if not uri:
                log.warning("No file for photo %s", pid)
                continue
            try:
                tensors.append(preprocess(uri, self.input_size))
            except OSError as e:
                log.warning("Cannot read %s: %s", uri, e)
                continue
            ids.append(pid)
        if not tensors:
            return ids, None
        return ids, np.stack(tensors).astype(np.float32)

    def classify(
        self, photo_ids: list[str], confidence_threshold: float
    ) -> list[ClassificationResult]:
        ids, batch = self._load_batch(photo_ids)
        if batch is None:
            return []

        logits = self.session.run([self.output_name], {self.input_name: batch})[0]
        probs = softmax(np.asarray(logits, dtype=np.float32))
        keywords = self.keywords()

        results = []
        for pid, row in zip(ids, probs):
            top = np.argsort(row)[::-1][: self.top_k]
            all_labels = [
                FoodLabel(self.labels[int(i)], float(row[i]))
                for i in top
                if int(i) < len(self.labels) and row[i] >= MIN_LABEL_CONFIDENCE
            ]
            food = [
                l for l in all_labels
                if l.confidence >= confidence_threshold
                and l.label.strip().lower() in keywords
            ]
            results.append(ClassificationResult(
                id=pid,
                is_food=bool(food),
                labels=food,
                confidence=max((l.confidence for l in food), default=None),
                all_labels=all_labels,
            ))
        return results
