"""
pydrel.queues
=============
Deferral primitives used to keep the object graph consistent while it is
being mutated.

* :class:`Semaphore` – a counting lock. Nothing here is concurrent; the
  counter only records that an operation is already in flight so that
  re-entrant calls can recognise themselves.
* :class:`BlockingQueue` – a FIFO of callbacks that runs immediately when
  unblocked, and otherwise holds callbacks until the outermost
  :meth:`BlockingQueue.unblock`.
* :data:`event_queue` – the process-wide queue through which every
  externally visible event is dispatched once a mutation has settled.
"""

from collections import deque
from typing import Callable, Deque, Optional


class Semaphore:
    """
    Counting lock mixin.

    ``_permits_available`` of ``None`` means "unbounded"; otherwise
    :meth:`acquire` refuses to go past that many concurrent holders.
    """

    _permits_available: Optional[int] = None
    _permits_used: int = 0

    def acquire(self) -> None:
        if (
            self._permits_available is not None
            and self._permits_used >= self._permits_available
        ):
            raise RuntimeError("Max permits acquired")
        self._permits_used += 1

    def release(self) -> None:
        if self._permits_used == 0:
            raise RuntimeError("All permits released")
        self._permits_used -= 1

    def is_locked(self) -> bool:
        return self._permits_used > 0


class BlockingQueue(Semaphore):
    """
    FIFO callback queue with reference-counted blocking.

    Callbacks added while the queue is blocked, or while it is draining,
    are appended and run in enqueue order by the outermost
    :meth:`unblock`. A callback that blocks and unblocks the queue again
    does not start a nested drain; its additions are picked up by the
    drain already in progress.
    """

    def __init__(self) -> None:
        self._queue: Deque[Callable[[], None]] = deque()
        self._draining = False

    def add(self, func: Callable[[], None]) -> None:
        if self.is_blocked() or self._draining:
            self._queue.append(func)
        else:
            func()

    def process(self) -> None:
        if self._draining:
            return
        self._draining = True
        try:
            while self._queue:
                self._queue.popleft()()
        finally:
            self._draining = False

    def block(self) -> None:
        self.acquire()

    def unblock(self) -> None:
        self.release()
        if not self.is_blocked():
            self.process()

    def is_blocked(self) -> bool:
        return self.is_locked()

    def clear(self) -> None:
        """Drop pending callbacks and any outstanding blocks."""
        self._queue.clear()
        self._permits_used = 0
        self._draining = False

    def __len__(self) -> int:
        return len(self._queue)


event_queue = BlockingQueue()
