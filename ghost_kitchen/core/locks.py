"""Per-restaurant mutation locks.

Session lifecycle changes and live order-count updates for one restaurant
run one at a time within this process. Locks are re-entrant because an
order-count update may end the session it is updating. Cross-process
exclusivity of open sessions is enforced by the partial unique index on
ghost_kitchen_sessions.
"""

import threading
from typing import Dict


class RestaurantLocks:
    """Lazily created RLock per restaurant id."""

    def __init__(self):
        self._locks: Dict[int, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, restaurant_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(restaurant_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[restaurant_id] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)


restaurant_locks = RestaurantLocks()
