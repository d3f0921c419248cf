"""
Map layer data for the route view.

Builds the GeoJSON the map surface consumes: a route line through the
track history, a point marker per stored sample and a single
current-position marker that moves with each live sample.
"""
from typing import Optional, Sequence

from drivetrack.models import LocationSample, TrackRecord

ROUTE_PAINT = {"line-color": "#3b82f6", "line-width": 3}
POINT_PAINT = {
    "circle-radius": 4,
    "circle-color": "#3b82f6",
    "circle-stroke-width": 1,
    "circle-stroke-color": "#fff",
}
DEFAULT_ZOOM = 15


def route_coordinates(records: Sequence[TrackRecord]) -> list[tuple[float, float]]:
    """[(lon, lat), ...] in the order given. Callers pass ascending history."""
    return [r.lon_lat for r in records]


def points_collection(records: Sequence[TrackRecord]) -> dict:
    """FeatureCollection of Point features with timestamp properties."""
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": {"type": "Point", "coordinates": [r.longitude, r.latitude]},
                "properties": {"timestamp": r.captured_at.isoformat()},
            }
            for r in records
        ],
    }


def route_feature(records: Sequence[TrackRecord]) -> Optional[dict]:
    """LineString through the records, or None with fewer than two points."""
    coords = route_coordinates(records)
    if len(coords) < 2:
        return None
    return {
        "type": "Feature",
        "geometry": {"type": "LineString", "coordinates": [list(c) for c in coords]},
        "properties": {},
    }


def current_marker(sample: Optional[LocationSample]) -> Optional[dict]:
    if sample is None:
        return None
    return {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [sample.longitude, sample.latitude]},
        "properties": {"timestamp": sample.captured_at.isoformat()},
    }


def build_map_view(
    records: Sequence[TrackRecord],
    current: Optional[LocationSample] = None,
    follow: bool = False,
) -> dict:
    """
    Full map payload: layers, paint hints and camera.

    The camera centres on the current position when following a live
    session, else on the latest stored point, else on (0, 0).
    """
    if current is not None:
        center = [current.longitude, current.latitude]
    elif records:
        center = [records[-1].longitude, records[-1].latitude]
    else:
        center = [0.0, 0.0]

    return {
        "route": route_feature(records),
        "points": points_collection(records),
        "current": current_marker(current),
        "paint": {"route": ROUTE_PAINT, "points": POINT_PAINT},
        "camera": {"center": center, "zoom": DEFAULT_ZOOM, "follow": follow and current is not None},
    }


class MapView:
    """
    Live map state fed by the tracking session.

    Holds the ordered route loaded from history plus the current marker,
    which the session moves on every sample.
    """

    def __init__(self):
        self._route: list[TrackRecord] = []
        self._current: Optional[LocationSample] = None
        self._following = False

    def set_route(self, records: Sequence[TrackRecord]) -> None:
        self._route = list(records)

    def move_marker(self, sample: LocationSample) -> None:
        self._current = sample

    def set_following(self, following: bool) -> None:
        self._following = following

    @property
    def current(self) -> Optional[LocationSample]:
        return self._current

    def render(self) -> dict:
        return build_map_view(self._route, self._current, follow=self._following)
