from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass, field

from .config import compute_max_workers
from .errors import ConfigurationError


logger = logging.getLogger(__name__)


@dataclass
class Permit:
    ident: int
    released: bool = field(default=False)


class ConcurrencyGate:
    """Admission control bounding how many workers run at once.

    ``admit`` blocks until a slot is free and ``release`` hands it back. The slot
    count is fixed at construction. Waiters are woken in no particular order.
    """

    def __init__(self, max_slots: int) -> None:
        if int(max_slots) < 1:
            raise ConfigurationError(f"max_slots must be >= 1, got {max_slots}")
        self._max_slots = int(max_slots)
        self._occupied = 0
        self._peak = 0
        self._cond = threading.Condition()
        self._ids = itertools.count(1)

    @classmethod
    def from_budget(cls, processors: int, threads_per_worker: int) -> "ConcurrencyGate":
        return cls(compute_max_workers(processors, threads_per_worker))

    @property
    def max_slots(self) -> int:
        return self._max_slots

    @property
    def occupied(self) -> int:
        with self._cond:
            return self._occupied

    @property
    def peak(self) -> int:
        with self._cond:
            return self._peak

    def admit(self, timeout: float | None = None) -> Permit:
        with self._cond:
            if not self._cond.wait_for(lambda: self._occupied < self._max_slots, timeout):
                raise TimeoutError(f"No slot freed within {timeout} seconds")
            self._occupied += 1
            self._peak = max(self._peak, self._occupied)
            permit = Permit(ident=next(self._ids))
            logger.debug(
                "admitted permit %d (%d/%d occupied)",
                permit.ident,
                self._occupied,
                self._max_slots,
            )
            return permit

    def release(self, permit: Permit) -> None:
        with self._cond:
            if permit.released:
                raise ValueError(f"Permit {permit.ident} already released")
            permit.released = True
            self._occupied -= 1
            logger.debug(
                "released permit %d (%d/%d occupied)",
                permit.ident,
                self._occupied,
                self._max_slots,
            )
            self._cond.notify()
