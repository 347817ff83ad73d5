import threading
from typing import Optional


class WaitGroup:
    """Counted rendezvous between extraction stages.

    The coordinator calls `add` once per submitted task, every task calls
    `done` exactly once when it finishes (successfully or not), and `wait`
    blocks until the count drops back to zero.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._count = 0

    def add(self, n: int = 1) -> None:
        with self._cond:
            if self._count + n < 0:
                raise ValueError("WaitGroup counter would go negative")
            self._count += n
            if self._count == 0:
                self._cond.notify_all()

    def done(self) -> None:
        self.add(-1)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every task is done. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout=timeout)

    @property
    def pending(self) -> int:
        with self._cond:
            return self._count
