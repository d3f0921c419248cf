"""
Location providers and the factory that builds them in configured order.
"""
from drivetrack.config import Settings
from drivetrack.providers.base import LocationProvider
from drivetrack.providers.serial_nmea import SerialNmeaProvider
from drivetrack.providers.simulated import SimulatedProvider
from drivetrack.providers.zmq_feed import ZmqFeedProvider

__all__ = [
    "LocationProvider",
    "SerialNmeaProvider",
    "SimulatedProvider",
    "ZmqFeedProvider",
    "build_providers",
]


def build_providers(settings: Settings) -> list[LocationProvider]:
    """Instantiate providers in the order listed in settings.providers."""
    providers: list[LocationProvider] = []
    for name in settings.providers:
        if name == "serial":
            providers.append(SerialNmeaProvider(
                device=settings.gps_device,
                baud=settings.gps_baud,
                fallback_devices=settings.gps_fallback_devices,
                max_hdop=settings.gps_max_hdop,
            ))
        elif name == "zmq":
            providers.append(ZmqFeedProvider(
                endpoint=settings.zmq_gps_endpoint,
                max_hdop=settings.gps_max_hdop,
            ))
        elif name == "simulated":
            providers.append(SimulatedProvider())
    return providers
