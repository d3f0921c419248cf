"""
Local driving advisory.

Rule-based and fully offline: no network or model call, so it can run
synchronously on every sample.

Clauses are concatenated in a fixed order:
    1. baseline following-distance reminder (always)
    2. time-of-day band (night / morning rush / evening rush / none)
    3. hemisphere (latitude > 0 is northern; the equator counts as southern)
    4. connectivity (online / offline)
"""
from datetime import datetime

from drivetrack.models import LocationSample

BASELINE = "Drive safely and maintain proper distance from other vehicles."
NIGHT = "It's dark outside - ensure your headlights are on and be extra vigilant."
MORNING_RUSH = "Morning rush hour - expect increased traffic."
EVENING_RUSH = "Evening rush hour - stay alert for heavy traffic."
NORTHERN = "Driving in the Northern Hemisphere - watch for seasonal weather changes."
SOUTHERN = "Driving in the Southern Hemisphere - watch for seasonal weather changes."
ONLINE = "You're connected - real-time traffic data is available."
OFFLINE = "You're offline - drive with extra caution as traffic data is unavailable."


def time_of_day_clause(hour: int) -> str:
    """Night wins over the rush bands; hours outside every band give ''."""
    if hour >= 20 or hour <= 5:
        return NIGHT
    if 6 <= hour <= 9:
        return MORNING_RUSH
    if 16 <= hour <= 19:
        return EVENING_RUSH
    return ""


def hemisphere_clause(latitude: float) -> str:
    # latitude == 0 falls through to southern
    return NORTHERN if latitude > 0 else SOUTHERN


def advise(sample: LocationSample, now: datetime, connectivity: bool) -> str:
    """Build the advisory text for one sample."""
    clauses = [
        BASELINE,
        time_of_day_clause(now.hour),
        hemisphere_clause(sample.latitude),
        ONLINE if connectivity else OFFLINE,
    ]
    return " ".join(c for c in clauses if c)
