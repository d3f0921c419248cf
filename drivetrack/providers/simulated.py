"""
Simulated GPS provider for demos and development without hardware.

Produces a random walk at a fixed rate starting from a configurable origin.
"""
import asyncio
import math
import random
from datetime import datetime, timezone
from typing import Optional

import structlog

from drivetrack.models import LocationSample, PermissionState, WatchOptions
from drivetrack.providers.base import ErrorCallback, LocationProvider, SampleCallback

logger = structlog.get_logger("simulated_provider")


class SimulatedProvider(LocationProvider):

    name = "simulated"

    def __init__(
        self,
        origin: tuple[float, float] = (34.36, -116.45),
        speed_mps: float = 15.0,
        interval_s: float = 1.0,
        seed: Optional[int] = None,
    ):
        super().__init__()
        self.origin = origin
        self.speed_mps = speed_mps
        self.interval_s = interval_s
        self._rng = random.Random(seed)

    async def check_permission(self) -> PermissionState:
        return PermissionState.GRANTED

    async def watch(
        self,
        options: WatchOptions,
        on_sample: SampleCallback,
        on_error: ErrorCallback,
    ) -> str:
        logger.info("Running in SIMULATION mode", origin=self.origin)
        return self._spawn(self._walk(on_sample))

    def _step(self, lat: float, lon: float, heading: float) -> tuple[float, float, float]:
        heading = (heading + self._rng.gauss(0, 5)) % 360
        distance = self.speed_mps * self.interval_s
        lat += (distance / 111000) * math.cos(math.radians(heading))
        lon += (distance / (111000 * math.cos(math.radians(lat)))) * math.sin(math.radians(heading))
        return lat, lon, heading

    async def _walk(self, on_sample: SampleCallback) -> None:
        lat, lon = self.origin
        heading = 45.0
        while True:
            lat, lon, heading = self._step(lat, lon, heading)
            on_sample(LocationSample(
                latitude=lat + self._rng.gauss(0, 0.00005),  # GPS noise
                longitude=lon + self._rng.gauss(0, 0.00005),
                captured_at=datetime.now(timezone.utc),
            ))
            await asyncio.sleep(self.interval_s)
