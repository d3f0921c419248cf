"""
Location providers: NMEA parsing, ZMQ frames, permissions and watch lifecycle.

Run with: pytest tests/test_providers.py -v
"""
import asyncio
import json

import pytest
import zmq
import zmq.asyncio

from drivetrack.config import Settings
from drivetrack.exceptions import WatchStartError
from drivetrack.models import ErrorKind, PermissionState, WatchOptions
from drivetrack.providers import (
    SerialNmeaProvider,
    SimulatedProvider,
    ZmqFeedProvider,
    build_providers,
)
from drivetrack.providers import serial_nmea
from drivetrack.providers.serial_nmea import MalformedSentence, decode_sentence, parse_sentence
from drivetrack.providers.zmq_feed import decode_frame

GGA = "$GPGGA,123519,4807.038,N,01131.000,E,1,08,0.9,545.4,M,46.9,M,,*47"
RMC = "$GPRMC,123519,A,4807.038,N,01131.000,E,022.4,084.4,230394,003.1,W*6A"
GSA = "$GPGSA,A,3,04,05,,09,12,,,24,,,,,2.5,1.3,2.1*39"


# ============================================
# Test: NMEA parsing
# ============================================

class TestParseSentence:

    def test_gga_fix(self):
        sample = parse_sentence(GGA)
        assert sample.latitude == pytest.approx(48.1173, abs=1e-4)
        assert sample.longitude == pytest.approx(11.516667, abs=1e-5)

    def test_rmc_fix(self):
        sample = parse_sentence(RMC)
        assert sample.latitude == pytest.approx(48.1173, abs=1e-4)

    def test_southern_latitude(self):
        sample = parse_sentence("$GPGGA,123519,3351.000,S,15112.000,E,1,08,0.9,10.0,M,0.0,M,,")
        assert sample.latitude == pytest.approx(-33.85)
        assert sample.longitude == pytest.approx(151.2)

    def test_gga_without_fix_quality_dropped(self):
        assert parse_sentence("$GPGGA,123519,4807.038,N,01131.000,E,0,00,99.9,545.4,M,46.9,M,,") is None

    def test_void_rmc_dropped(self):
        assert parse_sentence("$GPRMC,123519,V,4807.038,N,01131.000,E,022.4,084.4,230394,003.1,W") is None

    def test_high_accuracy_filters_on_hdop(self):
        assert parse_sentence(GGA, high_accuracy=True, max_hdop=5.0) is not None
        assert parse_sentence(GGA, high_accuracy=True, max_hdop=0.5) is None

    def test_other_sentences_ignored(self):
        assert parse_sentence(GSA) is None

    def test_garbage_ignored(self):
        assert parse_sentence("not nmea at all") is None

    def test_garbled_coordinates_are_malformed(self):
        garbled = "$GPGGA,123519,48X7.038,N,01131.000,E,1,08,0.9,545.4,M,46.9,M,,"

        with pytest.raises(MalformedSentence):
            decode_sentence(garbled)
        assert parse_sentence(garbled) is None


# ============================================
# Test: ZMQ frames
# ============================================

class TestDecodeFrame:

    def test_valid_frame(self):
        payload = json.dumps({"ts_utc_ms": 1714550400000, "lat": 34.36, "lon": -116.45}).encode()
        sample = decode_frame(payload)
        assert sample.latitude == 34.36
        assert sample.longitude == -116.45
        assert sample.captured_at.year == 2024

    def test_missing_fields(self):
        assert decode_frame(json.dumps({"lat": 1.0}).encode()) is None
        assert decode_frame(b"{not json") is None

    def test_out_of_range(self):
        payload = json.dumps({"ts_utc_ms": 0, "lat": 95.0, "lon": 0.0}).encode()
        assert decode_frame(payload) is None

    def test_high_accuracy_filters(self):
        invalid = json.dumps({"ts_utc_ms": 0, "lat": 1.0, "lon": 1.0, "fix_quality": 0}).encode()
        coarse = json.dumps({"ts_utc_ms": 0, "lat": 1.0, "lon": 1.0, "fix_quality": 1, "hdop": 9.0}).encode()
        assert decode_frame(invalid, high_accuracy=True) is None
        assert decode_frame(coarse, high_accuracy=True, max_hdop=5.0) is None
        assert decode_frame(coarse, high_accuracy=False) is not None

    def test_mistyped_fields(self):
        def frame(**extra):
            return json.dumps({"ts_utc_ms": 1714550400000, "lat": 1.0, "lon": 1.0, **extra}).encode()

        assert decode_frame(frame(fix_quality="1"), high_accuracy=True) is not None
        assert decode_frame(frame(fix_quality=None), high_accuracy=True) is None
        assert decode_frame(frame(hdop="n/a"), high_accuracy=True) is None
        assert decode_frame(json.dumps({"ts_utc_ms": 10**20, "lat": 1.0, "lon": 1.0}).encode()) is None
        assert decode_frame(b"[1, 2]") is None


# ============================================
# Test: Serial provider
# ============================================

class FakeSerial:
    def __init__(self, data: bytes):
        self._data = data
        self.is_open = True

    @property
    def in_waiting(self) -> int:
        return len(self._data)

    def read(self, size: int) -> bytes:
        chunk, self._data = self._data[:size], self._data[size:]
        return chunk

    def close(self) -> None:
        self.is_open = False


class TestSerialNmeaProvider:

    @pytest.mark.asyncio
    async def test_missing_device_is_undetermined(self, tmp_path, monkeypatch):
        monkeypatch.setattr(serial_nmea.serial.tools.list_ports, "comports", lambda: [])
        provider = SerialNmeaProvider(device=str(tmp_path / "missing"))

        assert await provider.check_permission() == PermissionState.UNDETERMINED
        assert await provider.request_permission() == PermissionState.UNDETERMINED

    @pytest.mark.asyncio
    async def test_readable_device_is_granted(self, tmp_path):
        device = tmp_path / "gps"
        device.write_text("")
        provider = SerialNmeaProvider(device=str(device))

        assert await provider.check_permission() == PermissionState.GRANTED

    @pytest.mark.asyncio
    async def test_unreadable_device_is_denied(self, tmp_path, monkeypatch):
        device = tmp_path / "gps"
        device.write_text("")
        monkeypatch.setattr(serial_nmea.os, "access", lambda path, mode: False)
        provider = SerialNmeaProvider(device=str(device))

        assert await provider.check_permission() == PermissionState.DENIED

    @pytest.mark.asyncio
    async def test_request_permission_switches_to_fallback(self, tmp_path):
        fallback = tmp_path / "ttyACM0"
        fallback.write_text("")
        provider = SerialNmeaProvider(
            device=str(tmp_path / "missing"),
            fallback_devices=[str(fallback)],
        )

        assert await provider.request_permission() == PermissionState.GRANTED
        assert provider.device == str(fallback)

    @pytest.mark.asyncio
    async def test_watch_fails_when_device_cannot_open(self, tmp_path):
        provider = SerialNmeaProvider(device=str(tmp_path / "missing"))

        with pytest.raises(WatchStartError):
            await provider.watch(WatchOptions(), lambda s: None, lambda e: None)
        assert provider.open_watches == 0

    @pytest.mark.asyncio
    async def test_watch_delivers_fixes_and_stops(self, monkeypatch):
        port = FakeSerial(f"{GGA}\r\n$GPGSV,garbage\r\n{RMC}\r\n".encode())
        provider = SerialNmeaProvider(device="/dev/fake")
        monkeypatch.setattr(provider, "_open", lambda: port)
        samples = []
        got_two = asyncio.Event()

        def on_sample(sample):
            samples.append(sample)
            if len(samples) == 2:
                got_two.set()

        handle = await provider.watch(
            WatchOptions(high_accuracy=False, sample_timeout_ms=10_000), on_sample, lambda e: None
        )
        await asyncio.wait_for(got_two.wait(), timeout=2.0)
        await provider.stop_watch(handle)

        assert len(samples) == 2
        assert port.is_open is False
        assert provider.open_watches == 0

    @pytest.mark.asyncio
    async def test_watch_reports_timeout(self, monkeypatch):
        provider = SerialNmeaProvider(device="/dev/fake")
        monkeypatch.setattr(provider, "_open", lambda: FakeSerial(b""))
        errors = []
        timed_out = asyncio.Event()

        def on_error(kind):
            errors.append(kind)
            timed_out.set()

        handle = await provider.watch(WatchOptions(sample_timeout_ms=20), lambda s: None, on_error)
        await asyncio.wait_for(timed_out.wait(), timeout=2.0)
        await provider.stop_watch(handle)

        assert errors[0] == ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_malformed_sentence_reported_and_watch_continues(self, monkeypatch):
        garbled = "$GPGGA,123519,48X7.038,N,01131.000,E,1,08,0.9,545.4,M,46.9,M,,"
        port = FakeSerial(f"{garbled}\r\n{GGA}\r\n".encode())
        provider = SerialNmeaProvider(device="/dev/fake")
        monkeypatch.setattr(provider, "_open", lambda: port)
        samples = []
        errors = []
        got_fix = asyncio.Event()

        def on_sample(sample):
            samples.append(sample)
            got_fix.set()

        handle = await provider.watch(
            WatchOptions(high_accuracy=False, sample_timeout_ms=10_000), on_sample, errors.append
        )
        await asyncio.wait_for(got_fix.wait(), timeout=2.0)
        await asyncio.sleep(0.05)
        still_running = not provider._watches[handle].done()
        await provider.stop_watch(handle)

        assert still_running
        assert errors == [ErrorKind.POSITION_UNAVAILABLE]
        assert len(samples) == 1
        assert samples[0].latitude == pytest.approx(48.1173, abs=1e-4)

    @pytest.mark.asyncio
    async def test_unexpected_read_error_reported_and_watch_continues(self, monkeypatch):
        class FlakySerial(FakeSerial):
            def __init__(self, data):
                super().__init__(data)
                self.failed = False

            @property
            def in_waiting(self) -> int:
                if not self.failed:
                    self.failed = True
                    raise OSError("device hiccup")
                return len(self._data)

        provider = SerialNmeaProvider(device="/dev/fake")
        monkeypatch.setattr(provider, "_open", lambda: FlakySerial(f"{GGA}\r\n".encode()))
        errors = []
        got_fix = asyncio.Event()

        handle = await provider.watch(
            WatchOptions(high_accuracy=False, sample_timeout_ms=10_000),
            lambda s: got_fix.set(),
            errors.append,
        )
        await asyncio.wait_for(got_fix.wait(), timeout=2.0)
        await provider.stop_watch(handle)

        assert errors == [ErrorKind.DEVICE_ERROR]

    @pytest.mark.asyncio
    async def test_stop_watch_ignores_stale_handles(self):
        provider = SerialNmeaProvider(device="/dev/fake")

        await provider.stop_watch("serial-unknown")
        await provider.stop_watch(None)


# ============================================
# Test: ZMQ provider
# ============================================

class TestZmqFeedProvider:

    @pytest.mark.asyncio
    async def test_permission_always_granted(self):
        assert await ZmqFeedProvider().check_permission() == PermissionState.GRANTED

    @pytest.mark.asyncio
    async def test_invalid_endpoint_fails_to_start(self):
        provider = ZmqFeedProvider(endpoint="not-an-endpoint")

        with pytest.raises(WatchStartError):
            await provider.watch(WatchOptions(), lambda s: None, lambda e: None)

    @pytest.mark.asyncio
    async def test_receives_published_fixes(self):
        endpoint = "inproc://drivetrack-gps-test"
        pub = zmq.asyncio.Context.instance().socket(zmq.PUB)
        pub.bind(endpoint)
        provider = ZmqFeedProvider(endpoint=endpoint)
        received = asyncio.Event()
        samples = []

        def on_sample(sample):
            samples.append(sample)
            received.set()

        handle = await provider.watch(
            WatchOptions(high_accuracy=False, sample_timeout_ms=50), on_sample, lambda e: None
        )
        payload = json.dumps({"ts_utc_ms": 1714550400000, "lat": 34.36, "lon": -116.45}).encode()
        try:
            for _ in range(200):
                await pub.send_multipart([b"gps", payload])
                if received.is_set():
                    break
                await asyncio.sleep(0.01)
        finally:
            await provider.stop_watch(handle)
            pub.close(linger=0)

        assert samples
        assert samples[0].latitude == 34.36
        assert provider.open_watches == 0

    @pytest.mark.asyncio
    async def test_bad_frames_reported_and_watch_continues(self):
        endpoint = "inproc://drivetrack-gps-bad-frames"
        pub = zmq.asyncio.Context.instance().socket(zmq.PUB)
        pub.bind(endpoint)
        provider = ZmqFeedProvider(endpoint=endpoint)
        received = asyncio.Event()
        rejected = asyncio.Event()
        samples = []

        def on_sample(sample):
            samples.append(sample)
            received.set()

        def on_error(kind):
            if kind == ErrorKind.POSITION_UNAVAILABLE:
                rejected.set()

        handle = await provider.watch(
            WatchOptions(high_accuracy=True, sample_timeout_ms=50), on_sample, on_error
        )
        bad = [
            json.dumps({"ts_utc_ms": 10**20, "lat": 1.0, "lon": 1.0}).encode(),
            json.dumps({"ts_utc_ms": 1714550400000, "lat": 1.0, "lon": 1.0, "fix_quality": None}).encode(),
        ]
        good = json.dumps({"ts_utc_ms": 1714550400000, "lat": 34.36, "lon": -116.45}).encode()
        try:
            for _ in range(200):
                for payload in bad:
                    await pub.send_multipart([b"gps", payload])
                await pub.send_multipart([b"gps", good])
                if received.is_set() and rejected.is_set():
                    break
                await asyncio.sleep(0.01)
            still_running = not provider._watches[handle].done()
        finally:
            await provider.stop_watch(handle)
            pub.close(linger=0)

        assert still_running
        assert rejected.is_set()
        assert samples
        assert all(s.latitude == 34.36 for s in samples)


# ============================================
# Test: Simulated provider and factory
# ============================================

class TestSimulatedProvider:

    @pytest.mark.asyncio
    async def test_walk_produces_samples(self):
        provider = SimulatedProvider(interval_s=0.01, seed=7)
        samples = []
        handle = await provider.watch(WatchOptions(), samples.append, lambda e: None)
        await asyncio.sleep(0.05)
        await provider.stop_watch(handle)

        assert len(samples) >= 2
        assert all(s.is_valid() for s in samples)
        assert samples[0].latitude == pytest.approx(34.36, abs=0.01)


def test_build_providers_in_configured_order():
    settings = Settings(debug=True, track_store="memory", providers=["zmq", "serial", "simulated"])

    providers = build_providers(settings)

    assert [p.name for p in providers] == ["zmq", "serial", "simulated"]
    assert providers[1].device == settings.gps_device
