"""
GPS feed over ZMQ.

Subscribes to a local GPS publisher (topic b"gps", JSON payload with
ts_utc_ms, lat, lon and optional fix_quality/hdop) and turns each frame
into a LocationSample. Used as the secondary provider when the receiver
cannot be opened directly.
"""
import json
from typing import Optional

import structlog
import zmq
import zmq.asyncio

from drivetrack.exceptions import WatchStartError
from drivetrack.models import ErrorKind, LocationSample, PermissionState, WatchOptions
from drivetrack.providers.base import ErrorCallback, LocationProvider, SampleCallback

logger = structlog.get_logger("zmq_provider")

GPS_TOPIC = b"gps"


def decode_frame(
    payload: bytes,
    high_accuracy: bool = False,
    max_hdop: float = 5.0,
) -> Optional[LocationSample]:
    """Decode one GPS frame. Returns None for frames without a usable fix."""
    try:
        data = json.loads(payload)
        lat = float(data["lat"])
        lon = float(data["lon"])
        ts_ms = int(data["ts_utc_ms"])
        if high_accuracy:
            if int(data.get("fix_quality", 1)) <= 0:
                return None
            hdop = data.get("hdop")
            if hdop is not None and float(hdop) > max_hdop:
                return None
        sample = LocationSample.from_epoch_ms(lat, lon, ts_ms)
    except (ValueError, KeyError, TypeError, OverflowError, OSError):
        return None

    return sample if sample.is_valid() else None


class ZmqFeedProvider(LocationProvider):
    """Secondary provider: subscribes to a ZMQ GPS publisher."""

    name = "zmq"

    def __init__(self, endpoint: str = "tcp://localhost:5558", max_hdop: float = 5.0):
        super().__init__()
        self.endpoint = endpoint
        self.max_hdop = max_hdop
        self._sockets: dict[str, zmq.asyncio.Socket] = {}

    async def check_permission(self) -> PermissionState:
        # A network feed needs no user consent.
        return PermissionState.GRANTED

    async def watch(
        self,
        options: WatchOptions,
        on_sample: SampleCallback,
        on_error: ErrorCallback,
    ) -> str:
        ctx = zmq.asyncio.Context.instance()
        socket = ctx.socket(zmq.SUB)
        try:
            socket.setsockopt(zmq.LINGER, 0)
            socket.connect(self.endpoint)
            socket.setsockopt(zmq.SUBSCRIBE, GPS_TOPIC)
        except zmq.ZMQError as e:
            socket.close()
            raise WatchStartError(self.name, f"cannot subscribe to {self.endpoint}: {e}") from e

        logger.info("ZMQ GPS subscriber connected", endpoint=self.endpoint)
        handle = self._spawn(self._recv_loop(socket, options, on_sample, on_error))
        self._sockets[handle] = socket
        return handle

    async def _recv_loop(
        self,
        socket: zmq.asyncio.Socket,
        options: WatchOptions,
        on_sample: SampleCallback,
        on_error: ErrorCallback,
    ) -> None:
        while True:
            ready = await socket.poll(timeout=options.sample_timeout_ms)
            if not ready:
                on_error(ErrorKind.TIMEOUT)
                continue
            try:
                frames = await socket.recv_multipart()
            except zmq.ZMQError as e:
                logger.error("ZMQ receive error", error=str(e))
                on_error(ErrorKind.DEVICE_ERROR)
                continue

            if len(frames) < 2 or frames[0] != GPS_TOPIC:
                continue
            try:
                sample = decode_frame(frames[1], options.high_accuracy, self.max_hdop)
                if sample is None:
                    on_error(ErrorKind.POSITION_UNAVAILABLE)
                    continue
                on_sample(sample)
            except Exception as e:
                logger.error("GPS frame handling error", error=str(e))
                on_error(ErrorKind.DEVICE_ERROR)

    async def _on_watch_closed(self, handle: str) -> None:
        socket = self._sockets.pop(handle, None)
        if socket is not None:
            socket.close()
