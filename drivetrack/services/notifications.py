"""
User-visible notifications (the toast feed).

The tracking session and history loader report every user-visible
transition here. NotificationCenter keeps a bounded history that the API
serves to the UI, and logs each entry.
"""
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Protocol

import structlog

logger = structlog.get_logger("notifications")


class NotificationKind(str, Enum):
    INFO = "info"
    ERROR = "error"


@dataclass
class Notification:
    kind: NotificationKind
    title: str
    description: str
    ts_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


class Notifier(Protocol):
    def notify(self, kind: NotificationKind, title: str, description: str) -> None:
        ...


class NotificationCenter:
    """Bounded, in-memory notification feed."""

    def __init__(self, max_items: int = 50):
        self._items: deque[Notification] = deque(maxlen=max_items)

    def notify(self, kind: NotificationKind, title: str, description: str) -> None:
        item = Notification(kind=NotificationKind(kind), title=title, description=description)
        self._items.append(item)
        log = logger.error if item.kind == NotificationKind.ERROR else logger.info
        log("Notification", title=title, description=description)

    def recent(self, limit: Optional[int] = None) -> list[Notification]:
        """Most recent first."""
        items = list(reversed(self._items))
        return items[:limit] if limit is not None else items

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)
