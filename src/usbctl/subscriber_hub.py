"""
Server-sent event subscriber management for real-time updates.

Tracks the open /events streams and fans device snapshots out to them.
Writing a frame only puts it on the subscriber's queue; the stream handler
does the network send, so no socket I/O happens under the hub lock.
"""

from __future__ import annotations
import asyncio
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .models import DeviceRecord, devices_to_json

logger = logging.getLogger(__name__)

MAX_SUBSCRIBERS = 10
HEARTBEAT_INTERVAL = 30.0
QUEUE_SIZE = 16

HEARTBEAT_FRAME = ": heartbeat\n\n"


def format_event(payload: Any) -> str:
    """Frame a JSON payload as a server-sent event."""
    data = payload if isinstance(payload, str) else json.dumps(payload, separators=(",", ":"))
    return f"data: {data}\n\n"


@dataclass(eq=False)
class Subscriber:
    """One open event stream."""
    peer: str = "unknown"
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=QUEUE_SIZE))
    connected_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.monotonic)
    closed: bool = False

    def write(self, frame: str) -> None:
        """Queue a frame for sending.

        Raises:
            asyncio.QueueFull: if the client is not keeping up
        """
        self.queue.put_nowait(frame)

    def close(self) -> None:
        """Wake the stream handler so it ends the response."""
        self.closed = True
        while True:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self.queue.put_nowait(None)


class SubscriberHub:
    """Manages event stream subscribers and broadcasts."""

    def __init__(
        self,
        max_subscribers: int = MAX_SUBSCRIBERS,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ):
        self.max_subscribers = max_subscribers
        self.heartbeat_interval = heartbeat_interval
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()
        self._closed = False
        # Registry version of the newest device list sent so far
        self._last_version = -1

    @property
    def connection_count(self) -> int:
        """Get number of active subscribers."""
        with self._lock:
            return len(self._subscribers)

    def describe(self) -> list[dict[str, Any]]:
        """Connection and idle times of each subscriber, in seconds."""
        now, mono = time.time(), time.monotonic()
        with self._lock:
            subscribers = list(self._subscribers)
        return [
            {
                "peer": s.peer,
                "connected_for": round(now - s.connected_at, 1),
                "idle_for": round(mono - s.last_activity, 1),
            }
            for s in subscribers
        ]

    @property
    def is_full(self) -> bool:
        with self._lock:
            return self._closed or len(self._subscribers) >= self.max_subscribers

    def add(self, subscriber: Subscriber) -> bool:
        """Register a subscriber; False if the hub is full or shut down."""
        with self._lock:
            if self._closed:
                return False
            if len(self._subscribers) >= self.max_subscribers:
                logger.warning(f"Rejecting subscriber {subscriber.peer}: limit of {self.max_subscribers} reached")
                return False
            self._subscribers.append(subscriber)
            count = len(self._subscribers)
        logger.info(f"Subscriber connected from {subscriber.peer}. Total subscribers: {count}")
        return True

    def remove(self, subscriber: Subscriber) -> bool:
        """Remove a subscriber; False if it was not registered."""
        with self._lock:
            if subscriber not in self._subscribers:
                return False
            self._subscribers.remove(subscriber)
            count = len(self._subscribers)
        logger.info(f"Subscriber {subscriber.peer} disconnected. Total subscribers: {count}")
        return True

    def broadcast(self, payload: Any, version: Optional[int] = None) -> int:
        """Send a payload to every subscriber.

        Subscribers that cannot take the frame are dropped. A versioned
        payload no newer than one already sent is skipped so clients never
        see the device list move backwards.

        Returns:
            Number of subscribers the frame was delivered to
        """
        frame = format_event(payload)
        delivered = 0
        dropped: list[Subscriber] = []

        with self._lock:
            if version is not None:
                if version <= self._last_version:
                    logger.debug(f"Skipping stale device list v{version}, v{self._last_version} already sent")
                    return 0
                self._last_version = version
            for i in range(len(self._subscribers) - 1, -1, -1):
                subscriber = self._subscribers[i]
                if self._try_write(subscriber, frame):
                    delivered += 1
                    continue
                # swap-remove keeps the unvisited indices below i valid
                self._subscribers[i] = self._subscribers[-1]
                self._subscribers.pop()
                subscriber.close()
                dropped.append(subscriber)

        for subscriber in dropped:
            logger.warning(f"Dropped slow subscriber {subscriber.peer}")
        return delivered

    @staticmethod
    def _try_write(subscriber: Subscriber, frame: str) -> bool:
        if subscriber.closed:
            return False
        try:
            subscriber.write(frame)
        except asyncio.QueueFull:
            return False
        return True

    def broadcast_devices(self, devices: Iterable[DeviceRecord], version: Optional[int] = None) -> int:
        """Broadcast a device snapshot to all subscribers."""
        return self.broadcast(devices_to_json(devices), version)

    async def next_frame(self, subscriber: Subscriber) -> Optional[str]:
        """Wait for the subscriber's next frame.

        Returns a heartbeat comment if nothing arrives within the heartbeat
        interval, or None once the subscriber has been closed.
        """
        if subscriber.closed and subscriber.queue.empty():
            return None
        try:
            frame = await asyncio.wait_for(subscriber.queue.get(), self.heartbeat_interval)
        except asyncio.TimeoutError:
            frame = HEARTBEAT_FRAME
        subscriber.last_activity = time.monotonic()
        return frame

    def close_all(self) -> None:
        """Close every subscriber and refuse new ones."""
        with self._lock:
            self._closed = True
            subscribers = self._subscribers
            self._subscribers = []
            for subscriber in subscribers:
                subscriber.close()
        if subscribers:
            logger.info(f"Closed {len(subscribers)} subscriber(s)")


# Global subscriber hub instance
_subscriber_hub: Optional[SubscriberHub] = None


def get_subscriber_hub() -> SubscriberHub:
    """Get or create the global subscriber hub."""
    global _subscriber_hub
    if _subscriber_hub is None:
        _subscriber_hub = SubscriberHub()
    return _subscriber_hub
