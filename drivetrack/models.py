"""
Core data models shared by providers, the tracking session and the stores.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class PermissionState(str, Enum):
    """Location permission as reported by a provider."""
    GRANTED = "granted"
    DENIED = "denied"
    UNDETERMINED = "undetermined"


class ErrorKind(str, Enum):
    """Fix-acquisition failures reported during an active watch."""
    TIMEOUT = "timeout"                            # No fix within sample_timeout_ms
    POSITION_UNAVAILABLE = "position_unavailable"  # Receiver has no valid fix
    DEVICE_ERROR = "device_error"                  # I/O error on the underlying source


class Order(str, Enum):
    """Sort direction for track history, by capture time."""
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class WatchOptions:
    """Options passed unchanged to whichever provider is tried."""
    high_accuracy: bool = True
    sample_timeout_ms: int = 1000


@dataclass(frozen=True)
class LocationSample:
    """A single fix from a location provider."""
    latitude: float
    longitude: float
    captured_at: datetime

    def is_valid(self) -> bool:
        return -90 <= self.latitude <= 90 and -180 <= self.longitude <= 180

    @classmethod
    def from_epoch_ms(cls, lat: float, lon: float, ts_ms: int) -> "LocationSample":
        return cls(
            latitude=lat,
            longitude=lon,
            captured_at=datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc),
        )


@dataclass(frozen=True)
class NewTrack:
    """A sample on its way to the sink (no id or owner yet)."""
    latitude: float
    longitude: float
    captured_at: datetime
    notes: Optional[str] = None

    @classmethod
    def from_sample(cls, sample: LocationSample, notes: Optional[str] = None) -> "NewTrack":
        return cls(
            latitude=sample.latitude,
            longitude=sample.longitude,
            captured_at=sample.captured_at,
            notes=notes,
        )

    def to_row(self) -> dict[str, Any]:
        """Row in the hosted location_tracks table format."""
        row: dict[str, Any] = {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": self.captured_at.isoformat(),
        }
        if self.notes is not None:
            row["notes"] = self.notes
        return row


@dataclass(frozen=True)
class TrackRecord:
    """Persisted location sample, as returned by the sink."""
    id: str
    owner_id: str
    latitude: float
    longitude: float
    captured_at: datetime
    notes: Optional[str] = None

    @property
    def lon_lat(self) -> tuple[float, float]:
        return (self.longitude, self.latitude)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "TrackRecord":
        """Build from a location_tracks row (id, user_id, latitude, longitude, timestamp, notes)."""
        ts = row["timestamp"]
        if isinstance(ts, str):
            ts = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        return cls(
            id=str(row["id"]),
            owner_id=str(row.get("user_id") or ""),
            latitude=float(row["latitude"]),
            longitude=float(row["longitude"]),
            captured_at=ts,
            notes=row.get("notes"),
        )

    def to_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.owner_id,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "timestamp": self.captured_at.isoformat(),
            "notes": self.notes,
        }


@dataclass(frozen=True)
class AuthSession:
    """Authenticated user session from the hosted auth service."""
    access_token: str
    user_id: str
    email: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None  # Epoch seconds
