from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import DateTime, Float, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from commcal.database import Base
from commcal.errors import RecordInvalid
from commcal.services.tag_manager import (
    MachineTag,
    deserialize_tags,
    machine_tags,
    serialize_tags,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.\-]*:(?!\d)", re.IGNORECASE)


def normalize_url(url: str | None) -> str | None:
    """Strip *url* and add http:// when it names a host without a scheme."""
    if url is None:
        return None
    url = url.strip()
    if not url:
        return None
    if not _SCHEME_RE.match(url) and not url.startswith("/"):
        url = "http://" + url
    return url


def _url_error(url: str | None) -> str | None:
    if url and not url.strip().lower().startswith(("http://", "https://")):
        return "must be an http or https address"
    return None


class TaggableMixin:
    tags: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # JSON array of tag strings

    @property
    def tag_list(self) -> list[str]:
        return deserialize_tags(self.tags)

    @tag_list.setter
    def tag_list(self, value: list[str]) -> None:
        self.tags = serialize_tags(value)

    @property
    def machine_tags(self) -> list[MachineTag]:
        return machine_tags(self.tag_list)


class Source(Base):
    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    parser_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # forces a single parser
    imported_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    events: Mapped[List["Event"]] = relationship(
        back_populates="source", cascade="all, delete-orphan"
    )
    venues: Mapped[List["Venue"]] = relationship(back_populates="source")

    @property
    def display_name(self) -> str:
        return self.title or self.url


class Venue(TaggableMixin, Base):
    __tablename__ = "venues"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    street_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    locality: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    region: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    country: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    telephone: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    access_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Squashed duplicates point at their canonical venue; target may be gone
    duplicate_of_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("venues.id"), nullable=True
    )
    source_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("sources.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    source: Mapped[Optional["Source"]] = relationship(back_populates="venues")

    @validates("url")
    def _normalize_url(self, key, value):
        return normalize_url(value)

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of_id is not None

    def validate(self) -> dict[str, str]:
        errors: dict[str, str] = {}
        if not self.title or not self.title.strip():
            errors["title"] = "can't be blank"
        if url_error := _url_error(self.url):
            errors["url"] = url_error
        return errors

    def ensure_valid(self) -> None:
        errors = self.validate()
        if errors:
            raise RecordInvalid(errors)


class Event(TaggableMixin, Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    venue_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("venues.id"), nullable=True
    )
    venue_details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duplicate_of_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("events.id"), nullable=True
    )
    source_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("sources.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    source: Mapped[Optional["Source"]] = relationship(back_populates="events")
    venue: Mapped[Optional["Venue"]] = relationship(lazy="selectin")

    @validates("url")
    def _normalize_url(self, key, value):
        return normalize_url(value)

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of_id is not None

    @property
    def venue_title(self) -> str | None:
        return self.venue.title if self.venue else None

    def is_old(self, now: datetime) -> bool:
        return self.start_time < now

    def validate(self) -> dict[str, str]:
        errors: dict[str, str] = {}
        if not self.title or not self.title.strip():
            errors["title"] = "can't be blank"
        if self.start_time is None:
            errors["start_time"] = "can't be blank"
        elif self.end_time is not None and self.end_time < self.start_time:
            errors["end_time"] = "can't be before the start time"
        if url_error := _url_error(self.url):
            errors["url"] = url_error
        return errors

    def ensure_valid(self) -> None:
        errors = self.validate()
        if errors:
            raise RecordInvalid(errors)
