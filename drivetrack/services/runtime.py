"""
Wires the collaborators of one tracking UI instance together.

One runtime = one auth client, one sink, one provider list, one
TrackingSession, one history loader, one notification feed and one map view.
The API and the CLI both build their objects through here.
"""
import asyncio
from typing import Optional, Sequence, Union

import structlog

from drivetrack.config import Settings
from drivetrack.models import AuthSession, WatchOptions
from drivetrack.providers import LocationProvider, build_providers
from drivetrack.services.auth import AuthClient, StaticAuth
from drivetrack.services.history import TrackHistoryLoader
from drivetrack.services.map_layers import MapView
from drivetrack.services.notifications import NotificationCenter
from drivetrack.services.track_store import (
    LocalTrackStore,
    MemoryTrackStore,
    RestTrackStore,
    TrackSink,
)
from drivetrack.services.tracking_session import TrackingSession

logger = structlog.get_logger("runtime")

LOCAL_SESSION = AuthSession(access_token="local", user_id="local")


def build_auth(settings: Settings) -> Union[AuthClient, StaticAuth]:
    """Hosted auth when configured, else a fixed local session."""
    if settings.supabase_url and settings.supabase_anon_key:
        return AuthClient(
            settings.supabase_url,
            settings.supabase_anon_key,
            session_file=settings.session_file,
            timeout_s=settings.http_timeout_s,
        )
    return StaticAuth(LOCAL_SESSION)


def build_sink(settings: Settings, auth: Union[AuthClient, StaticAuth]) -> TrackSink:
    owner = lambda: auth.user_id  # noqa: E731
    if settings.track_store == "rest":
        return RestTrackStore(
            settings.supabase_url,
            settings.supabase_anon_key,
            access_token=lambda: auth.access_token,
            table=settings.tracks_table,
            timeout_s=settings.http_timeout_s,
        )
    if settings.track_store == "local":
        return LocalTrackStore(settings.local_store_path, owner=owner)
    return MemoryTrackStore(owner=owner)


class TrackerRuntime:
    """Owns every long-lived object behind the tracking screen."""

    def __init__(
        self,
        settings: Settings,
        auth=None,
        sink: Optional[TrackSink] = None,
        providers: Optional[Sequence[LocationProvider]] = None,
    ):
        self.settings = settings
        self.auth = auth if auth is not None else build_auth(settings)
        self.sink = sink if sink is not None else build_sink(settings, self.auth)
        self.providers = list(providers) if providers is not None else build_providers(settings)
        self.notifications = NotificationCenter(max_items=settings.notification_history)
        self.map_view = MapView()
        self.session = TrackingSession(
            self.providers,
            self.sink,
            self.auth,
            notifier=self.notifications,
            map_view=self.map_view,
            options=WatchOptions(
                high_accuracy=settings.high_accuracy,
                sample_timeout_ms=settings.sample_timeout_ms,
            ),
        )
        self.history = TrackHistoryLoader(self.sink, notifier=self.notifications)
        self._stop_tasks: set[asyncio.Task] = set()

        if hasattr(self.auth, "subscribe"):
            self.auth.subscribe(self._on_auth_change)

    def _on_auth_change(self, event: str, session: Optional[AuthSession]) -> None:
        """Signing out ends any live session."""
        if event != "SIGNED_OUT":
            return
        logger.info("Signed out, stopping tracking")
        task = asyncio.create_task(self.session.stop())
        self._stop_tasks.add(task)
        task.add_done_callback(self._stop_tasks.discard)

    async def close(self) -> None:
        await self.session.close()
        if self._stop_tasks:
            await asyncio.gather(*list(self._stop_tasks), return_exceptions=True)
        for resource in (self.sink, self.auth):
            closer = getattr(resource, "close", None)
            if closer is not None:
                await closer()
