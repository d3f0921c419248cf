"""
Tracking Session State Machine

Owns the lifecycle of one live location-tracking session: provider
selection with fallback, the per-sample pipeline and start/stop.

State Machine:
    IDLE → (start) → STARTING → (permission + watch on a provider) → ACTIVE
    STARTING → (no session / every provider failed) → IDLE
    ACTIVE → (sample) → ACTIVE          advisory + detached sink write
    ACTIVE → (stop) → STOPPING → IDLE   stop_watch on the owning provider
    * → (close) → IDLE                  exactly once

Key Invariants:
    - A watch handle exists only while ACTIVE; at most one watch is open
    - start() outside IDLE raises AlreadyActive and leaves the watch alone
    - stop() while IDLE does nothing; stop() during STARTING waits for the
      acquisition to settle and closes any watch it produced
    - Every sample reaches both the advisory and the sink; a failed sink
      write is reported but never changes state or stops the watch
    - Sink writes are detached tasks: sample handling never awaits them
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol, Sequence

import structlog

from drivetrack.exceptions import (
    AlreadyActive,
    PermissionDenied,
    ProviderUnavailable,
    SinkWriteFailed,
    TrackingError,
    Unauthenticated,
)
from drivetrack.models import (
    AuthSession,
    ErrorKind,
    LocationSample,
    NewTrack,
    PermissionState,
    TrackRecord,
    WatchOptions,
)
from drivetrack.providers.base import LocationProvider
from drivetrack.services.insight import advise
from drivetrack.services.map_layers import MapView
from drivetrack.services.notifications import NotificationKind, Notifier
from drivetrack.services.track_store import TrackSink

logger = structlog.get_logger("tracking_session")


class TrackingSessionState(str, Enum):
    """Tracking session states."""
    IDLE = "IDLE"
    STARTING = "STARTING"
    ACTIVE = "ACTIVE"
    STOPPING = "STOPPING"


class AuthProvider(Protocol):
    async def current_session(self) -> Optional[AuthSession]:
        ...


@dataclass(frozen=True)
class WriteResult:
    """Outcome of one detached sink write."""
    sample: LocationSample
    record: Optional[TrackRecord] = None
    error: Optional[SinkWriteFailed] = None

    @property
    def ok(self) -> bool:
        return self.error is None


WATCH_ERROR_MESSAGES = {
    ErrorKind.TIMEOUT: "Timed out waiting for a location fix.",
    ErrorKind.POSITION_UNAVAILABLE: "Failed to get location. Please enable location services.",
    ErrorKind.DEVICE_ERROR: "The location device reported an error.",
}


class TrackingSession:
    """
    One live tracking session.

    Providers are tried in the order given; the first that grants
    permission and opens a watch wins. Only this object calls provider APIs.
    """

    def __init__(
        self,
        providers: Sequence[LocationProvider],
        sink: TrackSink,
        auth: AuthProvider,
        notifier: Optional[Notifier] = None,
        map_view: Optional[MapView] = None,
        options: WatchOptions = WatchOptions(),
        connectivity: Optional[Callable[[], bool]] = None,
        clock: Callable[[], datetime] = datetime.now,
        on_write: Optional[Callable[[WriteResult], None]] = None,
    ):
        if not providers:
            raise ValueError("TrackingSession needs at least one location provider")
        self._providers = list(providers)
        self._sink = sink
        self._auth = auth
        self._notifier = notifier
        self._map = map_view
        self.options = options
        self._connectivity = connectivity or (lambda: self._sink_online)
        self._clock = clock
        self._on_write = on_write

        self._state = TrackingSessionState.IDLE
        self._idle = asyncio.Event()
        self._idle.set()
        self._provider: Optional[LocationProvider] = None
        self._handle: Optional[str] = None
        self._cancel_requested = False
        self._closed = False

        self._current: Optional[LocationSample] = None
        self._advisory = ""
        self._started_at: Optional[datetime] = None
        self._last_watch_error: Optional[ErrorKind] = None
        self._sink_online = True
        self._pending: set[asyncio.Task] = set()

        self.sample_count = 0
        self.write_failures = 0

    # ============ Read-only state ============

    @property
    def state(self) -> TrackingSessionState:
        return self._state

    @property
    def advisory(self) -> str:
        return self._advisory

    @property
    def current_sample(self) -> Optional[LocationSample]:
        return self._current

    @property
    def handle(self) -> Optional[str]:
        return self._handle

    @property
    def provider_name(self) -> Optional[str]:
        return self._provider.name if self._provider else None

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    def status(self) -> dict:
        sample = self._current
        return {
            "state": self._state.value,
            "provider": self.provider_name,
            "is_tracking": self._state == TrackingSessionState.ACTIVE,
            "location": (
                {
                    "latitude": sample.latitude,
                    "longitude": sample.longitude,
                    "captured_at": sample.captured_at.isoformat(),
                }
                if sample else None
            ),
            "advisory": self._advisory,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "sample_count": self.sample_count,
            "write_failures": self.write_failures,
            "pending_writes": self.pending_writes,
        }

    # ============ Transitions ============

    def _set_state(self, new_state: TrackingSessionState) -> None:
        """Single mutation point for the state field."""
        if new_state == self._state:
            return
        logger.info("Tracking state change", old=self._state.value, new=new_state.value)
        self._state = new_state
        if new_state == TrackingSessionState.IDLE:
            self._idle.set()
        else:
            self._idle.clear()

    def _notify(self, kind: NotificationKind, title: str, description: str) -> None:
        if self._notifier is not None:
            self._notifier.notify(kind, title, description)

    async def start(self) -> Optional[str]:
        """
        Start tracking.

        Returns the name of the provider that opened the watch, or None if
        stop() cancelled the start while it was in flight.

        Raises:
            AlreadyActive: the session is not IDLE
            Unauthenticated: no signed-in session (no provider is touched)
            ProviderUnavailable: every provider failed to start
        """
        if self._closed:
            raise TrackingError("Tracking session has been closed")
        if self._state != TrackingSessionState.IDLE:
            raise AlreadyActive(self._state.value)

        self._set_state(TrackingSessionState.STARTING)
        self._cancel_requested = False

        try:
            session = await self._auth.current_session()
            if session is None:
                raise Unauthenticated()
            acquired = await self._acquire()
        except TrackingError as e:
            self._set_state(TrackingSessionState.IDLE)
            self._notify(NotificationKind.ERROR, e.title, str(e))
            raise
        except Exception as e:
            self._set_state(TrackingSessionState.IDLE)
            logger.exception("Error starting tracking")
            self._notify(NotificationKind.ERROR, "Error", "Failed to start location tracking")
            raise ProviderUnavailable({"session": e}) from e
        except asyncio.CancelledError:
            self._set_state(TrackingSessionState.IDLE)
            raise

        if acquired is None:
            # stop() arrived before any provider opened a watch
            self._set_state(TrackingSessionState.IDLE)
            self._notify(NotificationKind.INFO, "Tracking Stopped", "Location tracking has been stopped")
            return None

        provider, handle = acquired
        if self._cancel_requested:
            logger.info("Start cancelled, closing freshly opened watch", provider=provider.name)
            await self._close_watch(provider, handle)
            self._set_state(TrackingSessionState.IDLE)
            self._notify(NotificationKind.INFO, "Tracking Stopped", "Location tracking has been stopped")
            return None

        self._provider = provider
        self._handle = handle
        self._started_at = self._clock()
        self._last_watch_error = None
        if self._map is not None:
            self._map.set_following(True)
        self._set_state(TrackingSessionState.ACTIVE)
        logger.info("Tracking started", provider=provider.name, handle=handle)
        self._notify(
            NotificationKind.INFO,
            "Tracking Started",
            "Your location is now being tracked in real-time",
        )
        return provider.name

    async def _ensure_permission(self, provider: LocationProvider) -> None:
        state = await provider.check_permission()
        if state != PermissionState.GRANTED:
            state = await provider.request_permission()
        if state != PermissionState.GRANTED:
            raise PermissionDenied(provider.name, state.value)

    async def _acquire(self) -> Optional[tuple[LocationProvider, str]]:
        """Try each provider in order with the same options until one opens a watch."""
        failures: dict[str, Exception] = {}
        for provider in self._providers:
            if self._cancel_requested:
                return None
            try:
                await self._ensure_permission(provider)
                handle = await provider.watch(
                    self.options,
                    self._sample_callback(provider),
                    self._error_callback(provider),
                )
            except Exception as e:
                logger.warning("Provider failed to start", provider=provider.name, error=str(e))
                failures[provider.name] = e
                continue
            return provider, handle
        raise ProviderUnavailable(failures)

    async def stop(self) -> None:
        """Stop tracking. No-op while IDLE; safe to call during STARTING."""
        if self._state == TrackingSessionState.IDLE:
            return
        if self._state in (TrackingSessionState.STARTING, TrackingSessionState.STOPPING):
            self._cancel_requested = True
            await self._idle.wait()
            return

        provider, handle = self._provider, self._handle
        self._provider = None
        self._handle = None
        self._set_state(TrackingSessionState.STOPPING)
        try:
            await self._close_watch(provider, handle)
        finally:
            self._advisory = ""
            self._started_at = None
            if self._map is not None:
                self._map.set_following(False)
            self._set_state(TrackingSessionState.IDLE)

        logger.info("Tracking stopped", provider=provider.name, samples=self.sample_count)
        self._notify(NotificationKind.INFO, "Tracking Stopped", "Location tracking has been stopped")

    async def _close_watch(self, provider: LocationProvider, handle: str) -> None:
        try:
            await provider.stop_watch(handle)
        except Exception as e:
            logger.warning("Error stopping watch", provider=provider.name, handle=handle, error=str(e))

    async def close(self) -> None:
        """Teardown: stop tracking and settle pending writes. Runs once."""
        if self._closed:
            return
        self._closed = True
        await self.stop()
        await self.drain()

    async def __aenter__(self) -> "TrackingSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ============ Sample pipeline ============

    def _sample_callback(self, provider: LocationProvider) -> Callable[[LocationSample], None]:
        def on_sample(sample: LocationSample) -> None:
            self._handle_sample(provider, sample)
        return on_sample

    def _error_callback(self, provider: LocationProvider) -> Callable[[ErrorKind], None]:
        def on_error(kind: ErrorKind) -> None:
            self._handle_watch_error(provider, kind)
        return on_error

    def _handle_sample(self, provider: LocationProvider, sample: LocationSample) -> None:
        if self._state != TrackingSessionState.ACTIVE or provider is not self._provider:
            logger.debug("Dropping sample outside active watch", provider=provider.name)
            return

        self._current = sample
        self._last_watch_error = None
        self.sample_count += 1
        self._advisory = advise(sample, self._clock(), self._connectivity())
        if self._map is not None:
            self._map.move_marker(sample)
        self._spawn_write(sample)

    def _handle_watch_error(self, provider: LocationProvider, kind: ErrorKind) -> None:
        if self._state != TrackingSessionState.ACTIVE or provider is not self._provider:
            return
        # One notification per error streak; a sample ends the streak.
        if kind == self._last_watch_error:
            logger.debug("Repeated watch error", provider=provider.name, kind=kind.value)
            return
        self._last_watch_error = kind
        logger.warning("Location watch error", provider=provider.name, kind=kind.value)
        self._notify(NotificationKind.ERROR, "Error", WATCH_ERROR_MESSAGES[kind])

    def _spawn_write(self, sample: LocationSample) -> None:
        task = asyncio.create_task(self._write(sample))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, sample: LocationSample) -> None:
        try:
            record = await self._sink.insert(NewTrack.from_sample(sample))
        except Exception as e:
            error = e if isinstance(e, SinkWriteFailed) else SinkWriteFailed(str(e))
            self._sink_online = False
            self.write_failures += 1
            logger.warning("Track write failed", error=str(error))
            self._notify(NotificationKind.ERROR, error.title, str(error))
            result = WriteResult(sample=sample, error=error)
        else:
            self._sink_online = True
            result = WriteResult(sample=sample, record=record)

        if self._on_write is not None:
            self._on_write(result)

    async def drain(self) -> None:
        """Wait for every detached sink write started so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
