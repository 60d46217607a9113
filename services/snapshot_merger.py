import threading
from typing import Callable, Dict, Iterable, List, Optional

from schemas.travel_plan_schema import TravelPlan


def merge_travel_plans(own: Iterable[TravelPlan], shared: Iterable[TravelPlan]) -> List[TravelPlan]:
    """Union by id, the shared copy winning on collision, newest first."""
    by_id: Dict[str, TravelPlan] = {}
    for plan in list(own) + list(shared):
        by_id[plan.id] = plan
    return sorted(by_id.values(), key=lambda p: p.created_at, reverse=True)


class TravelPlanSnapshotMerger:
    """
    Combines the "own plans" and "shared with me" listeners into one list.

    Nothing is emitted until both listeners have delivered at least once,
    so the first list a client sees is never a partial one. Listener
    callbacks arrive on SDK threads; all state changes happen under a lock.
    """

    def __init__(self, on_emit: Callable[[List[TravelPlan]], None]):
        self._on_emit = on_emit
        self._lock = threading.Lock()
        self._own: Optional[List[TravelPlan]] = None
        self._shared: Optional[List[TravelPlan]] = None

    @property
    def ready(self) -> bool:
        with self._lock:
            return self._own is not None and self._shared is not None

    def update_own(self, plans: List[TravelPlan]):
        with self._lock:
            self._own = list(plans)
            merged = self._merged()
        if merged is not None:
            self._on_emit(merged)

    def update_shared(self, plans: List[TravelPlan]):
        with self._lock:
            self._shared = list(plans)
            merged = self._merged()
        if merged is not None:
            self._on_emit(merged)

    def _merged(self) -> Optional[List[TravelPlan]]:
        if self._own is None or self._shared is None:
            return None
        return merge_travel_plans(self._own, self._shared)
