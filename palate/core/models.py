"""Data models for Palate."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class VisitStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"


class MediaKind(Enum):
    PHOTO = "photo"
    VIDEO = "video"


class DeviceTier(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class FoodLabel:
    label: str
    confidence: float


@dataclass
class Photo:
    id: str
    uri: str
    creation_time: int          # epoch ms
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    media_kind: MediaKind = MediaKind.PHOTO
    duration: Optional[float] = None
    visit_id: Optional[str] = None
    food_detected: Optional[bool] = None
    food_labels: list[FoodLabel] = field(default_factory=list)
    food_confidence: Optional[float] = None
    all_labels: list[FoodLabel] = field(default_factory=list)

    @property
    def has_location(self) -> bool:
        return has_valid_location(self.latitude, self.longitude)


@dataclass
class Visit:
    id: str
    start_time: int
    end_time: int
    center_lat: float
    center_lon: float
    status: VisitStatus = VisitStatus.PENDING
    photo_count: int = 0
    food_probable: bool = False
    restaurant_id: Optional[str] = None
    suggested_restaurant_id: Optional[str] = None
    calendar_event_id: Optional[str] = None
    calendar_event_title: Optional[str] = None
    calendar_event_location: Optional[str] = None
    calendar_event_is_all_day: Optional[bool] = None
    notes: Optional[str] = None
    updated_at: Optional[int] = None


@dataclass
class Restaurant:
    id: str
    name: str
    latitude: float
    longitude: float
    address: str = ""
    location: str = ""
    cuisine: str = ""
    award: str = ""


@dataclass
class RestaurantCandidate:
    restaurant: Restaurant
    distance: float             # meters, per query

    @property
    def id(self) -> str:
        return self.restaurant.id


@dataclass
class SuggestedRestaurantLink:
    visit_id: str
    restaurant_id: str
    distance: float


@dataclass
class AwardRecord:
    restaurant_id: str
    year: int
    distinction: str
    price: str = ""
    green_star: bool = False


@dataclass
class CalendarEventInfo:
    id: str
    title: str
    start_date: int
    end_date: int
    notes: Optional[str] = None
    location: Optional[str] = None
    is_all_day: bool = False
    calendar_title: Optional[str] = None
    recurring: bool = False


@dataclass
class ImportableCalendarEvent:
    event: CalendarEventInfo
    restaurant: Restaurant


@dataclass
class IgnoredLocation:
    id: str
    latitude: float
    longitude: float
    radius: float = 100.0
    name: Optional[str] = None
    created_at: int = 0


@dataclass
class PhotoGroup:
    """A closed cluster of photos, reduced to what a Visit needs."""
    photos: list[Photo]
    start_time: int
    end_time: int
    center_lat: float
    center_lon: float
    id: str = ""


@dataclass
class ClassificationResult:
    id: str
    is_food: bool
    labels: list[FoodLabel] = field(default_factory=list)
    confidence: Optional[float] = None
    all_labels: list[FoodLabel] = field(default_factory=list)


@dataclass
class AssetInfo:
    id: str
    uri: str
    creation_time: int
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    media_kind: MediaKind = MediaKind.PHOTO
    duration: Optional[float] = None


@dataclass
class AssetPage:
    assets: list[AssetInfo]
    end_cursor: Optional[str] = None
    has_next_page: bool = False


@dataclass
class PipelineResult:
    visits_created: int = 0
    photos_processed: int = 0
    food_visits_found: int = 0
    visits_with_calendar_events: int = 0


def has_valid_location(lat: Optional[float], lon: Optional[float]) -> bool:
    """(0, 0) is what cameras write when they have no fix."""
    if lat is None or lon is None:
        return False
    return not (lat == 0 and lon == 0)
