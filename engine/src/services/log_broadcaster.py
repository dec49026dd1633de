"""
Build log broadcaster.

Persists step output and fans it out to live subscribers of a build.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Dict, Optional, Set

from engine.src.models.build import LogChunk
from engine.src.services.persistence import PersistenceGateway

logger = logging.getLogger(__name__)

_END = object()

class Subscription:
    """
    Live view of one build's output.

    Iterating yields LogChunk objects until the build finishes, the
    subscriber closes it, or it falls behind by more than ``limit`` chunks.
    In the last case ``overflowed`` is set and iteration stops after the
    buffered chunks have been consumed.
    """

    def __init__(self, broadcaster: "LogBroadcaster", build_id: int, limit: int):
        self.build_id = build_id
        self.limit = limit
        self.overflowed = False
        self.closed = False
        self._broadcaster = broadcaster
        self._queue: asyncio.Queue = asyncio.Queue()

    def offer(self, chunk: LogChunk) -> bool:
        """Buffer a chunk without blocking. Returns False if the subscriber was dropped."""
        if self.closed:
            return False
        if self._queue.qsize() >= self.limit:
            self.overflowed = True
            self.finish()
            return False
        self._queue.put_nowait(chunk)
        return True

    def close(self):
        """Detach from the broadcaster."""
        self._broadcaster.unsubscribe(self)
        self.finish()

    def finish(self):
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_END)

    def __aiter__(self):
        return self

    async def __anext__(self) -> LogChunk:
        item = await self._queue.get()
        if item is _END:
            # Leave the marker for any other reader
            self._queue.put_nowait(_END)
            raise StopAsyncIteration
        return item

class LogBroadcaster:
    def __init__(self, gateway: PersistenceGateway, subscriber_buffer: int = 1000):
        self.gateway = gateway
        self.subscriber_buffer = subscriber_buffer
        self._subscribers: Dict[int, Set[Subscription]] = defaultdict(set)
        self._offsets: Dict[int, int] = defaultdict(int)

    async def append(self, build_id: int, step_id: int, content: str) -> LogChunk:
        """
        Persist a chunk of step output, then deliver it to current subscribers.
        Never waits on a subscriber.
        """
        await self.gateway.append_step_output(step_id, content)

        chunk = LogChunk(
            build_id=build_id,
            step_id=step_id,
            offset=self._offsets[step_id],
            content=content,
        )
        self._offsets[step_id] += len(content)

        for subscription in list(self._subscribers.get(build_id, ())):
            if not subscription.offer(chunk):
                self.unsubscribe(subscription)
                if subscription.overflowed:
                    logger.warning(
                        f"Dropped log subscriber of build {build_id}: "
                        f"more than {subscription.limit} chunks behind"
                    )
        return chunk

    def subscribe(self, build_id: int, limit: Optional[int] = None) -> Subscription:
        """Attach a live subscriber at the current tail of the build's output."""
        subscription = Subscription(self, build_id, limit or self.subscriber_buffer)
        self._subscribers[build_id].add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        subscribers = self._subscribers.get(subscription.build_id)
        if subscribers is None:
            return
        subscribers.discard(subscription)
        if not subscribers:
            del self._subscribers[subscription.build_id]

    def subscriber_count(self, build_id: int) -> int:
        return len(self._subscribers.get(build_id, ()))

    def close_build(self, build_id: int, step_ids=()):
        """End every subscription of a finished build and forget its offsets."""
        for subscription in list(self._subscribers.pop(build_id, ())):
            subscription.finish()
        for step_id in step_ids:
            self._offsets.pop(step_id, None)
