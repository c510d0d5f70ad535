"""
Fan-out of live events to connected viewers.

One hub is built per server and handed to the repository and the WebSocket
route. Each subscriber is a bounded queue; a subscriber that stops draining
its queue, or whose socket write fails, is dropped and never retried. A
dropped queue is left holding only SUBSCRIBER_CLOSED so its reader can close
the socket; the viewer reconnects and gets the replay.
Events are hints to re-fetch, not state: ordering is per subscriber only.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100

# Last frame a dropped subscriber sees; the socket is closed when it arrives
SUBSCRIBER_CLOSED = {'event': 'closed', 'data': None}

EVENT_CATALOG = frozenset({
    'connected',
    'new_delivery',
    'update_delivery',
    'feedback_received',
    'execution_events_updated',
    'settings_updated',
    'design_updated',
    'alignment_update',
})


class BroadcastHub:
    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: list[asyncio.Queue] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def connect(self, pending: Iterable[dict] = ()) -> asyncio.Queue:
        """
        Register a subscriber and preload it with the current blocking state.

        ``pending`` is the list of blocking deliveries still awaiting feedback;
        each is replayed as a ``new_delivery`` frame so late joiners see them.
        """
        queue = asyncio.Queue(maxsize=self.queue_size)
        queue.put_nowait({
            'event': 'connected',
            'data': {'ts': datetime.now(timezone.utc).isoformat()},
        })
        for entry in pending:
            try:
                queue.put_nowait({'event': 'new_delivery', 'data': entry})
            except asyncio.QueueFull:
                logger.warning("Too many pending deliveries to replay; truncating")
                break
        self._subscribers.append(queue)
        return queue

    def disconnect(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @staticmethod
    def _close(queue: asyncio.Queue):
        """Replace a dropped subscriber's backlog with the closing frame."""
        while not queue.empty():
            queue.get_nowait()
        queue.put_nowait(SUBSCRIBER_CLOSED)

    def broadcast(self, event: str, data) -> int:
        """
        Send ``{event, data}`` to every subscriber.

        Returns:
            Number of subscribers the frame was queued for.
        """
        if event not in EVENT_CATALOG:
            raise ValueError(f"Unknown event: {event}")

        frame = {'event': event, 'data': data}
        delivered = 0
        dead_queues = []
        for queue in self._subscribers:
            try:
                queue.put_nowait(frame)
                delivered += 1
            except asyncio.QueueFull:
                dead_queues.append(queue)  # Queue full = subscriber not consuming
        for queue in dead_queues:
            logger.debug("Dropping unresponsive subscriber")
            self.disconnect(queue)
            self._close(queue)
        return delivered
