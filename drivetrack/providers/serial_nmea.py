"""
Native GPS receiver over a serial port (USB dongle or UART module).

Reads NMEA sentences with pyserial and parses GGA/RMC fixes with pynmea2.

Hardware Support:
    - USB GPS dongles (e.g., u-blox, GlobalSat)
    - UART GPS modules (e.g., NEO-6M, NEO-M8N)

Permission maps onto device access: a readable device is GRANTED, a device
we cannot open for reading is DENIED, no device at all is UNDETERMINED.
"""
import asyncio
import os
import time
from datetime import datetime, timezone
from typing import Optional

import pynmea2
import serial
import serial.tools.list_ports
import structlog

from drivetrack.exceptions import WatchStartError
from drivetrack.models import ErrorKind, LocationSample, PermissionState, WatchOptions
from drivetrack.providers.base import ErrorCallback, LocationProvider, SampleCallback

logger = structlog.get_logger("serial_provider")

GPS_PORT_HINTS = ("gps", "u-blox", "gnss", "nmea")
RECONNECT_DELAY_S = 2.0
MAX_ERRORS_BEFORE_RECONNECT = 5


class MalformedSentence(ValueError):
    """An NMEA sentence that parsed but carried unreadable fields."""


def _fix_from(msg, high_accuracy: bool, max_hdop: float) -> Optional[LocationSample]:
    if isinstance(msg, pynmea2.GGA):
        if not (msg.lat and msg.lon):
            return None
        quality = int(msg.gps_qual or 0)
        if quality == 0:
            return None
        if high_accuracy:
            if not msg.horizontal_dil:
                return None
            if float(msg.horizontal_dil) > max_hdop:
                return None
    elif isinstance(msg, pynmea2.RMC):
        if msg.status != "A" or not (msg.lat and msg.lon):
            return None
    else:
        return None

    sample = LocationSample(
        latitude=msg.latitude,
        longitude=msg.longitude,
        captured_at=datetime.now(timezone.utc),
    )
    return sample if sample.is_valid() else None


def decode_sentence(
    sentence: str,
    high_accuracy: bool = False,
    max_hdop: float = 5.0,
) -> Optional[LocationSample]:
    """
    Like parse_sentence, but garbled fields raise MalformedSentence so a
    running watch can report them. Text that is not NMEA at all is None.
    """
    try:
        msg = pynmea2.parse(sentence)
    except pynmea2.ParseError:
        return None
    try:
        return _fix_from(msg, high_accuracy, max_hdop)
    except (ValueError, TypeError) as e:
        raise MalformedSentence(f"{sentence!r}: {e}") from e


def parse_sentence(
    sentence: str,
    high_accuracy: bool = False,
    max_hdop: float = 5.0,
) -> Optional[LocationSample]:
    """
    Turn one NMEA sentence into a sample, or None if it carries no usable fix.

    GGA gives fix quality and HDOP, so high-accuracy mode can filter on them.
    RMC only has an A/V status flag; void fixes are dropped.
    """
    try:
        return decode_sentence(sentence, high_accuracy, max_hdop)
    except MalformedSentence:
        return None


class SerialNmeaProvider(LocationProvider):
    """Primary provider: NMEA receiver on a local serial device."""

    name = "serial"

    def __init__(
        self,
        device: str = "/dev/ttyUSB0",
        baud: int = 9600,
        fallback_devices: Optional[list[str]] = None,
        max_hdop: float = 5.0,
    ):
        super().__init__()
        self.device = device
        self.baud = baud
        self.fallback_devices = fallback_devices or []
        self.max_hdop = max_hdop
        self._ports: dict[str, dict] = {}

    def _device_permission(self, path: str) -> PermissionState:
        if not os.path.exists(path):
            return PermissionState.UNDETERMINED
        if os.access(path, os.R_OK):
            return PermissionState.GRANTED
        return PermissionState.DENIED

    def _find_device(self) -> Optional[str]:
        """Configured device first, then fallbacks, then USB auto-detection."""
        for path in [self.device, *self.fallback_devices]:
            if os.path.exists(path):
                return path

        for port in serial.tools.list_ports.comports():
            if any(x in (port.description or "").lower() for x in GPS_PORT_HINTS):
                logger.info("Auto-detected GPS", device=port.device, description=port.description)
                return port.device
        return None

    async def check_permission(self) -> PermissionState:
        return self._device_permission(self.device)

    async def request_permission(self) -> PermissionState:
        """Re-probe, switching to a fallback or auto-detected device if the configured one is gone."""
        state = self._device_permission(self.device)
        if state != PermissionState.UNDETERMINED:
            return state

        found = self._find_device()
        if found is None:
            return PermissionState.UNDETERMINED
        if found != self.device:
            logger.info("Using fallback GPS device", device=found)
            self.device = found
        return self._device_permission(found)

    def _open(self) -> serial.Serial:
        return serial.Serial(self.device, self.baud, timeout=1.0)

    async def watch(
        self,
        options: WatchOptions,
        on_sample: SampleCallback,
        on_error: ErrorCallback,
    ) -> str:
        try:
            port = self._open()
        except (serial.SerialException, OSError) as e:
            raise WatchStartError(self.name, f"cannot open {self.device}: {e}") from e

        logger.info("GPS serial port opened", device=self.device, baud=self.baud)
        holder = {"port": port}
        handle = self._spawn(self._read_loop(holder, options, on_sample, on_error))
        self._ports[handle] = holder
        return handle

    async def _read_loop(
        self,
        holder: dict,
        options: WatchOptions,
        on_sample: SampleCallback,
        on_error: ErrorCallback,
    ) -> None:
        buffer = ""
        timeout_s = options.sample_timeout_ms / 1000.0
        last_fix = time.monotonic()
        consecutive_errors = 0

        while True:
            port = holder.get("port")
            if port is None or not port.is_open:
                await asyncio.sleep(RECONNECT_DELAY_S)
                try:
                    holder["port"] = self._open()
                    logger.info("GPS reconnected", device=self.device)
                    buffer = ""
                    consecutive_errors = 0
                except (serial.SerialException, OSError) as e:
                    logger.warning("GPS reconnect failed", device=self.device, error=str(e))
                continue

            try:
                waiting = port.in_waiting
                if waiting > 0:
                    buffer += port.read(waiting).decode("ascii", errors="ignore")
                    while "\n" in buffer:
                        line, buffer = buffer.split("\n", 1)
                        line = line.strip()
                        if not line.startswith("$"):
                            continue
                        try:
                            sample = decode_sentence(line, options.high_accuracy, self.max_hdop)
                        except MalformedSentence as e:
                            logger.debug("Dropping malformed NMEA sentence", error=str(e))
                            on_error(ErrorKind.POSITION_UNAVAILABLE)
                            continue
                        if sample is not None:
                            last_fix = time.monotonic()
                            on_sample(sample)
                    consecutive_errors = 0
                else:
                    await asyncio.sleep(0.01)
            except serial.SerialException as e:
                consecutive_errors += 1
                logger.error("Serial read error", error=str(e), consecutive=consecutive_errors)
                on_error(ErrorKind.DEVICE_ERROR)
                if consecutive_errors >= MAX_ERRORS_BEFORE_RECONNECT:
                    port.close()
                    holder["port"] = None
                else:
                    await asyncio.sleep(0.1)
            except Exception as e:
                logger.error("GPS read loop error", error=str(e))
                on_error(ErrorKind.DEVICE_ERROR)
                await asyncio.sleep(0.1)

            if time.monotonic() - last_fix > timeout_s:
                on_error(ErrorKind.TIMEOUT)
                last_fix = time.monotonic()

    async def _on_watch_closed(self, handle: str) -> None:
        holder = self._ports.pop(handle, None)
        port = holder.get("port") if holder else None
        if port is not None:
            port.close()
            logger.info("GPS serial port closed", device=self.device)
