"""Reference count of loops currently driving the desktop."""

import threading
from collections.abc import Callable

from lumi.utils.logging import get_logger

logger = get_logger(__name__)

ScreenControlObserver = Callable[[bool], None]


class ScreenControlArbiter:
    """Counts runs exercising desktop-control tools.

    Observers are told `True` when the count leaves zero and `False` when it
    returns to zero. The count never goes negative.
    """

    def __init__(self) -> None:
        self._count = 0
        self._generation = 0
        self._lock = threading.Lock()
        self._observers: list[ScreenControlObserver] = []

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def is_active(self) -> bool:
        return self.count > 0

    def subscribe(self, observer: ScreenControlObserver) -> None:
        self._observers.append(observer)

    def lease(self) -> "ScreenControlLease":
        """Create the per-run handle through which one loop raises and drops control."""
        return ScreenControlLease(self)

    def _increment(self) -> int:
        with self._lock:
            self._count += 1
            became_active = self._count == 1
            generation = self._generation
        if became_active:
            self._notify(True)
        return generation

    def _decrement(self, generation: int) -> None:
        with self._lock:
            # Leases raised before a reset were already cleared by it
            if self._count == 0 or generation != self._generation:
                return
            self._count -= 1
            became_idle = self._count == 0
        if became_idle:
            self._notify(False)

    def reset(self) -> None:
        """Force the count back to zero, e.g. when the user stops all agent control."""
        with self._lock:
            was_active = self._count > 0
            self._count = 0
            self._generation += 1
        if was_active:
            self._notify(False)

    def _notify(self, active: bool) -> None:
        logger.info(f"Agent screen control {'started' if active else 'ended'}")
        for observer in list(self._observers):
            try:
                observer(active)
            except Exception as e:
                logger.error(f"Screen control observer failed: {e}", exc_info=True)


class ScreenControlLease:
    """Raises the arbiter count at most once and releases it at most once."""

    def __init__(self, arbiter: ScreenControlArbiter):
        self._arbiter = arbiter
        self._held = False
        self._released = False
        self._generation = 0

    @property
    def held(self) -> bool:
        return self._held and not self._released

    def acquire(self) -> bool:
        """Raise the count if this run has not already done so. Returns True on the raising call."""
        if self._held or self._released:
            return False
        self._held = True
        self._generation = self._arbiter._increment()
        return True

    def release(self) -> None:
        if self._held and not self._released:
            self._released = True
            self._arbiter._decrement(self._generation)
