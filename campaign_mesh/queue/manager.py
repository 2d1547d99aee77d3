from __future__ import annotations

from collections import deque

from ..core.logging import get_logger

logger = get_logger(name=__name__)


class GoalQueue:
    """FIFO of goal plan ids awaiting decomposition; high-priority goals jump to the front."""

    def __init__(self) -> None:
        self._items: deque[str] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._items

    def enqueue(self, plan_id: str, *, front: bool = False) -> int:
        if plan_id in self._items:
            return self.position(plan_id) or 1
        if front:
            self._items.appendleft(plan_id)
        else:
            self._items.append(plan_id)
        position = self.position(plan_id) or 1
        logger.info("goal_enqueued", plan_id=plan_id, position=position, queue_size=len(self._items))
        return position

    def pop(self) -> str | None:
        if not self._items:
            return None
        return self._items.popleft()

    def remove(self, plan_id: str) -> bool:
        try:
            self._items.remove(plan_id)
        except ValueError:
            return False
        return True

    def position(self, plan_id: str) -> int | None:
        for index, item in enumerate(self._items, start=1):
            if item == plan_id:
                return index
        return None

    def snapshot(self) -> list[str]:
        return list(self._items)
