from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from commcal.parsers.utils import to_local_naive
from commcal.services.tag_manager import MachineTag, machine_tags, normalise_tags


# --- Parser output ---
class AbstractVenue(BaseModel):
    """Venue data as read from a source, before it is matched or saved."""

    title: str
    description: str | None = None
    address: str | None = None
    street_address: str | None = None
    locality: str | None = None
    region: str | None = None
    postal_code: str | None = None
    country: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    url: str | None = None
    email: str | None = None
    telephone: str | None = None
    tags: list[str] = []

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, v: list[str]) -> list[str]:
        return normalise_tags(v)

    def machine_tags(self) -> list[MachineTag]:
        return machine_tags(self.tags)


class AbstractEvent(BaseModel):
    """Raw event data extracted from a source.

    ``start_time`` is required: a parser that cannot find one must drop the
    record instead of emitting it.  Datetimes are naive, in the configured
    local timezone.
    """

    title: str
    start_time: datetime
    end_time: datetime | None = None
    description: str | None = None
    url: str | None = None
    venue: AbstractVenue | None = None
    tags: list[str] = []
    content_type: str | None = None

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, v: list[str]) -> list[str]:
        return normalise_tags(v)

    @field_validator("start_time", "end_time")
    @classmethod
    def _local_time(cls, v: datetime | None) -> datetime | None:
        return to_local_naive(v) if v is not None else None

    @property
    def venue_title(self) -> str | None:
        return self.venue.title if self.venue else None

    def identity(self) -> tuple[str, datetime, str | None]:
        """Key under which two abstract events in one batch are identical."""
        return (self.title, self.start_time, self.venue_title)


# --- Sources ---
class SourceCreate(BaseModel):
    url: str
    title: str | None = None
    parser_key: str | None = None


class SourceUpdate(BaseModel):
    title: str | None = None
    url: str | None = None
    parser_key: str | None = None


class SourceOut(BaseModel):
    id: int
    title: str | None
    url: str
    parser_key: str | None
    imported_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


# --- Venues ---
class VenueOut(BaseModel):
    id: int
    title: str
    description: str | None
    address: str | None
    street_address: str | None
    locality: str | None
    region: str | None
    postal_code: str | None
    country: str | None
    latitude: float | None
    longitude: float | None
    url: str | None
    email: str | None
    telephone: str | None
    access_notes: str | None
    tag_list: list[str]
    duplicate_of_id: int | None

    model_config = {"from_attributes": True}


class VenueUpdate(BaseModel):
    title: str | None = None
    description: str | None = None
    address: str | None = None
    street_address: str | None = None
    locality: str | None = None
    region: str | None = None
    postal_code: str | None = None
    country: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    url: str | None = None
    email: str | None = None
    telephone: str | None = None
    access_notes: str | None = None
    tags: list[str] | None = None


# --- Events ---
class EventOut(BaseModel):
    id: int
    title: str
    description: str | None
    start_time: datetime
    end_time: datetime | None
    url: str | None
    venue_id: int | None
    venue_title: str | None
    venue_details: str | None
    tag_list: list[str]
    duplicate_of_id: int | None
    source_id: int | None

    model_config = {"from_attributes": True}


class EventCreate(BaseModel):
    title: str
    start_time: datetime
    end_time: datetime | None = None
    description: str | None = None
    url: str | None = None
    venue_id: int | None = None
    venue_title: str | None = None  # used when venue_id is not given
    venue_details: str | None = None
    tags: list[str] = []


class EventUpdate(BaseModel):
    title: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    description: str | None = None
    url: str | None = None
    venue_id: int | None = None
    venue_details: str | None = None
    tags: list[str] | None = None


class SourceDetail(SourceOut):
    events: list[EventOut] = []
    venues: list[VenueOut] = []


# --- Imports ---
class ImportRequest(BaseModel):
    url: str
    title: str | None = None
    skip_old: bool | None = None


class ImportErrorOut(BaseModel):
    title: str
    start_time: datetime
    message: str


class ImportOut(BaseModel):
    source: SourceOut
    created_count: int
    reused_count: int
    skipped_count: int
    events: list[EventOut] = Field(default_factory=list)
    errors: list[ImportErrorOut] = Field(default_factory=list)
    message: str
