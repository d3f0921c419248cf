"""
Pydantic schemas for request/response validation.
"""
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from drivetrack.models import TrackRecord


# ============ Auth ============

class Credentials(BaseModel):
    """Email/password pair for sign-in."""
    email: EmailStr
    password: str = Field(..., min_length=1)


class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)


class SessionResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    expires_at: Optional[int] = None


class SignupResponse(BaseModel):
    """confirmation_required is true when the backend emails a confirmation link."""
    confirmation_required: bool
    session: Optional[SessionResponse] = None


# ============ Tracking ============

class LocationOut(BaseModel):
    latitude: float
    longitude: float
    captured_at: datetime


class TrackingStatus(BaseModel):
    """Live session state for the tracking screen."""
    state: str
    provider: Optional[str] = None
    is_tracking: bool
    location: Optional[LocationOut] = None
    advisory: str = ""
    started_at: Optional[datetime] = None
    sample_count: int = 0
    write_failures: int = 0
    pending_writes: int = 0


class TrackOut(BaseModel):
    """Stored track in the recent-tracks list."""
    id: str
    user_id: str
    latitude: float
    longitude: float
    timestamp: datetime
    notes: Optional[str] = None

    @classmethod
    def from_record(cls, record: TrackRecord) -> "TrackOut":
        return cls(
            id=record.id,
            user_id=record.owner_id,
            latitude=record.latitude,
            longitude=record.longitude,
            timestamp=record.captured_at,
            notes=record.notes,
        )


class NotificationOut(BaseModel):
    kind: str
    title: str
    description: str
    ts_ms: int
