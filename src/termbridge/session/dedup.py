"""
session/dedup.py — Bounded set of processed inbound envelope ids.

Clients retry envelopes they did not see acknowledged; each Session keeps the
ids it has already handled so a retried envelope is processed at most once.
Capacity is fixed; once full, adding an id evicts the oldest one.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Hashable


class SeenIds:
    """FIFO-evicting set of envelope ids."""

    def __init__(self, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._ids: OrderedDict[Hashable, None] = OrderedDict()

    def add(self, envelope_id: Hashable) -> bool:
        """
        Record an id. Returns True if it was new, False if already seen.

        A repeat does not refresh the id's position; eviction order is the
        order of first arrival.
        """
        if envelope_id in self._ids:
            return False
        self._ids[envelope_id] = None
        if len(self._ids) > self._capacity:
            self._ids.popitem(last=False)
        return True

    def clear(self) -> None:
        self._ids.clear()

    def __contains__(self, envelope_id: object) -> bool:
        return envelope_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)
