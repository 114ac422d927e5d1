"""Per-session fan-out channel for render progress.

The render task publishes RenderProgress events keyed by render session id;
SSE and WebSocket observers subscribe to the same key. There is no replay: a
late subscriber only sees events published after it subscribed, but every
live subscriber receives the terminal event, after which its subscription
ends on its own.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncGenerator

from src.schemas.render import RenderProgress

logger = logging.getLogger(__name__)


class RenderProgressChannel:
    """Manages progress subscriptions and publishing per render session."""

    def __init__(self) -> None:
        # Map session_id -> set of asyncio.Queue for each subscriber.
        # Queues are unbounded so a terminal event is never dropped.
        self._subscribers: dict[str, set[asyncio.Queue[RenderProgress]]] = defaultdict(
            set
        )

    async def subscribe(self, session_id: str) -> AsyncGenerator[RenderProgress, None]:
        """Subscribe to progress events for one render session.

        Yields events until (and including) the terminal done/error event,
        then unsubscribes.
        """
        queue: asyncio.Queue[RenderProgress] = asyncio.Queue()
        self._subscribers[session_id].add(queue)
        logger.info(
            f"New progress subscriber for session {session_id}. "
            f"Total: {len(self._subscribers[session_id])}"
        )

        try:
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            self._unsubscribe(session_id, queue)

    def _unsubscribe(self, session_id: str, queue: asyncio.Queue[RenderProgress]) -> None:
        subscribers = self._subscribers.get(session_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        logger.debug(
            f"Progress subscriber removed for session {session_id}. "
            f"Remaining: {len(subscribers)}"
        )
        # Clean up empty subscriber sets
        if not subscribers:
            del self._subscribers[session_id]

    def publish(self, session_id: str, progress: RenderProgress) -> int:
        """Publish an event to all subscribers of a session (fire-and-forget).

        Returns:
            Number of subscribers notified
        """
        subscribers = self._subscribers.get(session_id)
        if not subscribers:
            return 0

        for queue in list(subscribers):
            queue.put_nowait(progress)

        if progress.is_terminal:
            logger.info(
                f"Published {progress.phase.value} to {len(subscribers)} "
                f"subscribers for session {session_id}"
            )
        return len(subscribers)

    def get_subscriber_count(self, session_id: str) -> int:
        """Get the number of active subscribers for a session."""
        return len(self._subscribers.get(session_id, set()))


# Global channel instance, keyed by render session id
progress_channel = RenderProgressChannel()


def get_progress_channel() -> RenderProgressChannel:
    return progress_channel
