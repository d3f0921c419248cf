"""
Track history loading for the map and the recent-tracks list.

The two consumers want opposite orders (the map draws the route oldest
first, the list shows newest first), so order is always explicit.
Failures are reported and raised as FetchFailed; nothing is retried.
"""
from typing import Optional

import structlog

from drivetrack.exceptions import FetchFailed
from drivetrack.models import Order, TrackRecord
from drivetrack.services.map_layers import MapView
from drivetrack.services.notifications import NotificationKind, Notifier
from drivetrack.services.track_store import TrackSink

logger = structlog.get_logger("history")


class TrackHistoryLoader:
    """One-shot loader, independent of any live tracking session."""

    def __init__(self, sink: TrackSink, notifier: Optional[Notifier] = None):
        self._sink = sink
        self._notifier = notifier

    async def load(
        self,
        owner_filter: Optional[str] = None,
        limit: Optional[int] = None,
        order: Order = Order.ASC,
    ) -> list[TrackRecord]:
        """
        Fetch stored tracks sorted by capture time.

        Args:
            owner_filter: Only keep records of this owner (the sink already
                scopes to the signed-in user; this narrows further)
            limit: Maximum number of records, taken from the front of the
                requested order (limit=5, DESC gives the 5 most recent)
            order: Order.ASC for route drawing, Order.DESC for lists

        Raises:
            FetchFailed: the sink could not be queried
        """
        order = Order(order)
        if limit is not None and limit < 0:
            raise ValueError("limit must be >= 0")

        try:
            # Filtering happens after the query, so the sink cannot apply the limit.
            records = await self._sink.query(order, None if owner_filter else limit)
        except FetchFailed as e:
            self._report(e)
            raise
        except Exception as e:
            error = FetchFailed(str(e))
            self._report(error)
            raise error from e

        if owner_filter:
            records = [r for r in records if r.owner_id == owner_filter]

        records = sorted(records, key=lambda r: r.captured_at, reverse=(order == Order.DESC))
        if limit is not None:
            records = records[:limit]

        logger.debug("Loaded track history", count=len(records), order=order.value)
        return records

    def _report(self, error: FetchFailed) -> None:
        logger.warning("Track history load failed", error=str(error))
        if self._notifier is not None:
            self._notifier.notify(
                NotificationKind.ERROR, error.title, "Failed to load location history"
            )

    async def load_route(self, map_view: MapView, owner_filter: Optional[str] = None) -> list[TrackRecord]:
        """Load the full history oldest-first into the map's route layer."""
        records = await self.load(owner_filter=owner_filter, order=Order.ASC)
        map_view.set_route(records)
        return records
