"""
Pytest configuration and fixtures for DriveTrack tests.
"""
import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

# Set test environment before importing the package
os.environ["DRIVETRACK_DEBUG"] = "true"
os.environ["DRIVETRACK_TRACK_STORE"] = "memory"
os.environ["DRIVETRACK_PROVIDERS"] = '["simulated"]'
os.environ["DRIVETRACK_SUPABASE_URL"] = ""
os.environ["DRIVETRACK_SUPABASE_ANON_KEY"] = ""

import pytest

from drivetrack.exceptions import SinkWriteFailed
from drivetrack.models import (
    AuthSession,
    ErrorKind,
    LocationSample,
    NewTrack,
    Order,
    PermissionState,
    TrackRecord,
    WatchOptions,
)
from drivetrack.providers.base import LocationProvider
from drivetrack.services.notifications import NotificationCenter
from drivetrack.services.track_store import MemoryTrackStore


class FakeProvider(LocationProvider):
    """Provider driven by the test: records every call and emits samples on demand."""

    def __init__(
        self,
        name: str,
        permission: PermissionState = PermissionState.GRANTED,
        request_result: Optional[PermissionState] = None,
        fail_watch: Optional[Exception] = None,
        fail_stop: Optional[Exception] = None,
    ):
        super().__init__()
        self.name = name
        self.permission = permission
        self.request_result = request_result
        self.fail_watch = fail_watch
        self.fail_stop = fail_stop
        self.permission_checks = 0
        self.permission_requests = 0
        self.watch_calls: list[WatchOptions] = []
        self.stop_calls: list[Optional[str]] = []
        self.callbacks: dict[str, tuple] = {}

    async def check_permission(self) -> PermissionState:
        self.permission_checks += 1
        return self.permission

    async def request_permission(self) -> PermissionState:
        self.permission_requests += 1
        return self.request_result or self.permission

    async def watch(self, options, on_sample, on_error) -> str:
        self.watch_calls.append(options)
        if self.fail_watch is not None:
            raise self.fail_watch
        handle = self._spawn(asyncio.Event().wait())
        self.callbacks[handle] = (on_sample, on_error)
        return handle

    async def stop_watch(self, handle) -> None:
        self.stop_calls.append(handle)
        if self.fail_stop is not None:
            raise self.fail_stop
        await super().stop_watch(handle)

    @property
    def touched(self) -> bool:
        return bool(self.permission_checks or self.permission_requests or self.watch_calls or self.stop_calls)

    def _open_callbacks(self):
        return [cb for handle, cb in self.callbacks.items() if handle in self._watches]

    def emit(self, sample: LocationSample) -> None:
        for on_sample, _ in self._open_callbacks():
            on_sample(sample)

    def fail(self, kind: ErrorKind) -> None:
        for _, on_error in self._open_callbacks():
            on_error(kind)


class GatedProvider(FakeProvider):
    """watch() blocks until the test opens the gate."""

    def __init__(self, name: str = "gated"):
        super().__init__(name)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()
        self.handles: list[str] = []

    async def watch(self, options, on_sample, on_error) -> str:
        self.entered.set()
        await self.gate.wait()
        handle = await super().watch(options, on_sample, on_error)
        self.handles.append(handle)
        return handle


class FakeAuth:
    def __init__(self, session: Optional[AuthSession] = None):
        self.session = session
        self.calls = 0

    async def current_session(self) -> Optional[AuthSession]:
        self.calls += 1
        return self.session

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user_id if self.session else None

    @property
    def access_token(self) -> Optional[str]:
        return self.session.access_token if self.session else None


class FailingSink:
    def __init__(self):
        self.inserts = 0
        self.queries = 0

    async def insert(self, track: NewTrack) -> TrackRecord:
        self.inserts += 1
        raise SinkWriteFailed("Track insert rejected: HTTP 500")

    async def query(self, order=Order.ASC, limit=None):
        self.queries += 1
        raise RuntimeError("connection reset")


class SlowSink(MemoryTrackStore):
    """Memory store whose inserts wait for the test to release them."""

    def __init__(self):
        super().__init__(owner=lambda: "user-1")
        self.release = asyncio.Event()

    async def insert(self, track: NewTrack) -> TrackRecord:
        await self.release.wait()
        return await super().insert(track)


def make_sample(lat: float = 10.0, lon: float = 20.0, minute: int = 0) -> LocationSample:
    return LocationSample(
        latitude=lat,
        longitude=lon,
        captured_at=datetime(2024, 5, 1, 7, minute, tzinfo=timezone.utc),
    )


def make_records(count: int, owner: str = "user-1") -> list[TrackRecord]:
    """Records one minute apart, oldest first."""
    start = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
    return [
        TrackRecord(
            id=f"track-{i}",
            owner_id=owner,
            latitude=10.0 + i * 0.001,
            longitude=20.0 + i * 0.001,
            captured_at=start + timedelta(minutes=i),
        )
        for i in range(count)
    ]


@pytest.fixture
def user_session():
    return AuthSession(access_token="token-1", user_id="user-1", email="driver@example.com")


@pytest.fixture
def auth(user_session):
    return FakeAuth(user_session)


@pytest.fixture
def sink():
    return MemoryTrackStore(owner=lambda: "user-1")


@pytest.fixture
def notifications():
    return NotificationCenter()


@pytest.fixture
def morning_clock():
    """Local clock pinned to 07:30."""
    return lambda: datetime(2024, 5, 1, 7, 30)
