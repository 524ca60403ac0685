"""FIFO buffer for connectivity candidates that arrive before the remote description."""

import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Iterator, Optional

logger = logging.getLogger(__name__)


class CandidateBuffer:
    """Ordered queue of candidate payloads for one remote peer.

    Entries are never dropped or reordered. ``drain`` applies them strictly in
    insertion order; entries appended while a drain is suspended are applied
    by the same drain.

    Args:
        peer_id: Remote participant the candidates come from (for logging).
    """

    def __init__(self, peer_id: Optional[str] = None):
        self.peer_id = peer_id
        self._queue: Deque[Any] = deque()
        self.total_buffered = 0
        self.total_drained = 0

    def append(self, payload: Any) -> None:
        self._queue.append(payload)
        self.total_buffered += 1
        logger.debug(
            f"Buffered candidate from {self.peer_id or 'peer'} ({len(self._queue)} pending)"
        )

    async def drain(self, apply: Callable[[Any], Awaitable[None]]) -> int:
        """Apply every buffered candidate in FIFO order.

        Each entry is removed before it is applied, so a failing ``apply``
        never causes a retry of the same entry.

        Args:
            apply: Coroutine applying one candidate payload.

        Returns:
            Number of candidates applied.
        """
        drained = 0
        while self._queue:
            payload = self._queue.popleft()
            await apply(payload)
            drained += 1
        self.total_drained += drained
        if drained:
            logger.info(f"Applied {drained} buffered candidate(s) from {self.peer_id or 'peer'}")
        return drained

    def clear(self) -> int:
        """Discard pending entries (on teardown). Returns how many were dropped."""
        dropped = len(self._queue)
        self._queue.clear()
        return dropped

    def __len__(self) -> int:
        return len(self._queue)

    def __iter__(self) -> Iterator[Any]:
        return iter(list(self._queue))
