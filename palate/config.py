"""Runtime settings read from the environment and an optional .env file."""
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv

from palate.core.errors import ConfigurationMissing

log = logging.getLogger("palate.config")


@dataclass(frozen=True)
class Settings:
    data_dir: str = "~/.palate"
    photo_dir: Optional[str] = None
    photo_manifest: Optional[str] = None
    calendar_file: Optional[str] = None
    reference_db: Optional[str] = None
    classifier_model: Optional[str] = None
    classifier_labels: Optional[str] = None
    max_time_gap_hours: float = 2.0
    max_distance_m: float = 200.0
    food_sample_pct: float = 0.1
    food_confidence: float = 0.3
    calendar_buffer_min: int = 30
    device_memory_gb: Optional[float] = None
    device_year: Optional[int] = None


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def _optional_number(name: str, cast, default=None):
    raw = _optional(name)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError:
        log.warning("%s=%r is not a number; ignoring it.", name, raw)
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with defaults."""
    load_dotenv()

    settings = Settings(
        data_dir=os.getenv("PALATE_DATA_DIR", "~/.palate"),
        photo_dir=_optional("PALATE_PHOTO_DIR"),
        photo_manifest=_optional("PALATE_PHOTO_MANIFEST"),
        calendar_file=_optional("PALATE_CALENDAR_FILE"),
        reference_db=_optional("PALATE_REFERENCE_DB"),
        classifier_model=_optional("PALATE_CLASSIFIER_MODEL"),
        classifier_labels=_optional("PALATE_CLASSIFIER_LABELS"),
        max_time_gap_hours=_optional_number("PALATE_MAX_TIME_GAP_HOURS", float, 2.0),
        max_distance_m=_optional_number("PALATE_MAX_DISTANCE_M", float, 200.0),
        food_sample_pct=_optional_number("PALATE_FOOD_SAMPLE_PCT", float, 0.1),
        food_confidence=_optional_number("PALATE_FOOD_CONFIDENCE", float, 0.3),
        calendar_buffer_min=_optional_number("PALATE_CALENDAR_BUFFER_MIN", int, 30),
        device_memory_gb=_optional_number("PALATE_DEVICE_MEMORY_GB", float),
        device_year=_optional_number("PALATE_DEVICE_YEAR", int),
    )

    if not settings.photo_dir:
        log.warning("PALATE_PHOTO_DIR is not set; photo scanning will be skipped.")
    if not settings.calendar_file:
        log.warning("PALATE_CALENDAR_FILE is not set; calendar enrichment will be skipped.")
    if not settings.reference_db:
        log.warning("PALATE_REFERENCE_DB is not set; no restaurants will be suggested.")
    if not settings.classifier_model or not settings.classifier_labels:
        log.warning("Classifier model or labels not configured; food detection will be skipped.")

    return settings


_ENV_NAMES = {
    "photo_dir": "PALATE_PHOTO_DIR",
    "calendar_file": "PALATE_CALENDAR_FILE",
    "reference_db": "PALATE_REFERENCE_DB",
    "classifier_model": "PALATE_CLASSIFIER_MODEL",
    "classifier_labels": "PALATE_CLASSIFIER_LABELS",
}


def require(settings: Settings, field_name: str) -> str:
    """Value of a setting a command cannot run without."""
    value = getattr(settings, field_name)
    if not value:
        env = _ENV_NAMES.get(field_name, field_name.upper())
        raise ConfigurationMissing(f"{env} must be set for this command.")
    return value
