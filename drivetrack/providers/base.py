"""
Location provider capability.

Every provider exposes the same four operations:

    check_permission() / request_permission() -> PermissionState
    watch(options, on_sample, on_error) -> handle     (awaitable)
    stop_watch(handle)                                 (never raises)

watch() raises WatchStartError when the watch cannot be opened at all.
Problems while a watch is running are reported through on_error instead.
Samples are passed on in arrival order, unmodified: no reordering or
de-duplication happens at this layer.
"""
import asyncio
import itertools
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import structlog

from drivetrack.models import ErrorKind, LocationSample, PermissionState, WatchOptions

SampleCallback = Callable[[LocationSample], None]
ErrorCallback = Callable[[ErrorKind], None]

logger = structlog.get_logger("providers")

_handle_counter = itertools.count(1)


class LocationProvider(ABC):
    """Base class: owns the background task behind each open watch."""

    name: str = "provider"

    def __init__(self):
        self._watches: dict[str, asyncio.Task] = {}

    @abstractmethod
    async def check_permission(self) -> PermissionState:
        ...

    async def request_permission(self) -> PermissionState:
        """Default: nothing to prompt for, report the current state."""
        return await self.check_permission()

    @abstractmethod
    async def watch(
        self,
        options: WatchOptions,
        on_sample: SampleCallback,
        on_error: ErrorCallback,
    ) -> str:
        ...

    async def stop_watch(self, handle: Optional[str]) -> None:
        """Cancel the watch behind handle. Unknown or stale handles are ignored."""
        task = self._watches.pop(handle, None) if handle else None
        if task is None:
            logger.debug("stop_watch on unknown handle", provider=self.name, handle=handle)
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("Watch task ended with error", provider=self.name, error=str(e))
        await self._on_watch_closed(handle)

    async def _on_watch_closed(self, handle: str) -> None:
        """Hook for providers holding per-watch resources."""

    def _spawn(self, loop_coro: Awaitable[None]) -> str:
        handle = f"{self.name}-{next(_handle_counter)}"
        self._watches[handle] = asyncio.create_task(loop_coro, name=f"watch:{handle}")
        return handle

    @property
    def open_watches(self) -> int:
        return len(self._watches)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"
