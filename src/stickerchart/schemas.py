"""Typed records returned by the store and carried inside backup archives.

Field names follow the ORM attributes; aliases give the field names used in
``database.json`` so that archives keep the historical wire format.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Record(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class RoleRecord(Record):
    role_id: int
    role_name: str


class UserRecord(Record):
    id: int
    name: str
    role_id: int
    code: str
    is_active: bool = True
    created_at: str
    updated_at: str
    icon: Optional[str] = None


class EventTypeRecord(Record):
    name: str
    icon: str
    icon_color: str = Field(alias="iconColor")
    availability: int = Field(0, ge=0, description="0 means unlimited")
    owner: Optional[int] = None
    weight: int = Field(1, ge=1, description="Face value of one sticker")


class EventTypeWithOwner(EventTypeRecord):
    """Event type joined with its owner's display name and usage count."""

    owner_name: Optional[str] = Field(None, alias="ownerName")
    event_count: int = Field(0, alias="eventCount")


class EventRecord(Record):
    id: int
    date: str
    marked_at: str = Field(alias="markedAt")
    event_type: str = Field(alias="eventType")
    note: Optional[str] = None
    photo_path: Optional[str] = Field(None, alias="photoPath")
    created_by: Optional[int] = None
    is_verified: bool = False
    verified_at: Optional[str] = None
    verified_by: Optional[int] = None


class EventDetails(EventRecord):
    """Event with creator, verifier and event type owner names resolved."""

    creator_name: Optional[str] = Field(None, alias="creatorName")
    verifier_name: Optional[str] = Field(None, alias="verifierName")
    owner_name: Optional[str] = Field(None, alias="ownerName")


class DbVersionRecord(Record):
    version: int


class ArchivePayload(Record):
    """Content of ``database.json`` inside a backup archive."""

    users: List[UserRecord]
    event_types: List[EventTypeRecord] = Field(alias="eventTypes")
    events: List[EventRecord]
    roles: List[RoleRecord]
    db_version: Optional[DbVersionRecord] = Field(None, alias="dbVersion")
