from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field


class EventStatus(str, Enum):
    """Lifecycle status reported by a listing source."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    POSTPONED = "postponed"


class EventField(str, Enum):
    """Closed registry of every mergeable Event attribute."""

    ID = "id"
    EXTERNAL_ID = "external_id"
    SOURCE = "source"
    TITLE = "title"
    DESCRIPTION = "description"
    CATEGORY = "category"
    SUBCATEGORY = "subcategory"
    TAGS = "tags"
    START_TIME = "start_time"
    END_TIME = "end_time"
    TIMEZONE = "timezone"
    VENUE_NAME = "venue_name"
    ADDRESS = "address"
    CITY = "city"
    LATITUDE = "latitude"
    LONGITUDE = "longitude"
    PRICE_MIN = "price_min"
    PRICE_MAX = "price_max"
    CURRENCY = "currency"
    IS_FREE = "is_free"
    IMAGE_URL = "image_url"
    WEBSITE_URL = "website_url"
    TICKET_URL = "ticket_url"
    VIDEO_URL = "video_url"
    STATUS = "status"
    IS_FEATURED = "is_featured"
    VIEW_COUNT = "view_count"
    MERGED_EVENT_IDS = "merged_event_ids"
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"


class Event(BaseModel):
    """Canonical event listing as produced by the ingestion pipeline."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique event identifier")
    external_id: Optional[str] = Field(None, description="Identifier assigned by the originating source")
    source: Optional[str] = Field(None, description="Name of the originating source")
    title: Optional[str] = Field(None, description="Event title")
    description: Optional[str] = Field(None, description="Long-form event description")
    category: Optional[str] = Field(None, description="Primary event category")
    subcategory: Optional[str] = Field(None, description="More specific category")
    tags: List[str] = Field(default_factory=list, description="Free-form tags")
    start_time: Optional[datetime] = Field(None, description="When the event starts")
    end_time: Optional[datetime] = Field(None, description="When the event ends")
    timezone: Optional[str] = Field(None, description="IANA timezone name of the event")
    venue_name: Optional[str] = Field(None, description="Venue name as reported by the source")
    address: Optional[str] = Field(None, description="Street address of the venue")
    city: Optional[str] = Field(None, description="City name")
    latitude: Optional[float] = Field(None, description="Venue latitude")
    longitude: Optional[float] = Field(None, description="Venue longitude")
    price_min: Optional[float] = Field(None, description="Lowest ticket price")
    price_max: Optional[float] = Field(None, description="Highest ticket price")
    currency: Optional[str] = Field(None, description="ISO 4217 currency code")
    is_free: Optional[bool] = Field(None, description="Whether entry is free")
    image_url: Optional[str] = Field(None, description="Primary image")
    website_url: Optional[str] = Field(None, description="Event or organiser website")
    ticket_url: Optional[str] = Field(None, description="Ticket purchase page")
    video_url: Optional[str] = Field(None, description="Promotional video")
    status: Optional[EventStatus] = Field(None, description="Lifecycle status")
    is_featured: bool = Field(False, description="Whether the event is featured")
    view_count: int = Field(0, ge=0, description="Number of listing views")
    merged_event_ids: List[str] = Field(default_factory=list, description="IDs of events merged into this one")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Record creation timestamp")
    updated_at: Optional[datetime] = Field(None, description="Last update timestamp")

    model_config = ConfigDict(json_encoders={datetime: lambda value: value.isoformat()})

    def get_field(self, field: EventField):
        return getattr(self, field.value)


# A field added to Event without a registry entry must fail loudly at import.
_MODEL_FIELDS = set(Event.model_fields)
_REGISTRY_FIELDS = {field.value for field in EventField}
if _MODEL_FIELDS != _REGISTRY_FIELDS:
    raise RuntimeError(
        "EventField registry out of sync with Event model: "
        f"missing={sorted(_MODEL_FIELDS - _REGISTRY_FIELDS)} extra={sorted(_REGISTRY_FIELDS - _MODEL_FIELDS)}"
    )
