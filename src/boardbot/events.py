from __future__ import annotations

import logging

from boardbot.models import TaskEvent
from boardbot.store import TaskStore

logger = logging.getLogger(__name__)

PROGRESS = "progress"
SUMMARY = "summary"
ERROR = "error"
CLAIM = "claim"
REVIEW = "review"
STATUS_CHANGE = "status_change"
DEPENDENCY_CYCLE = "dependency_cycle"


class EventEmitter:
    """Fire-and-forget task events; a failed write is logged and dropped."""

    def __init__(self, store: TaskStore, author: str = "boardbot") -> None:
        self.store = store
        self.author = author

    def emit(
        self,
        task_id: str,
        event_type: str,
        message: str,
        *,
        loop_number: int | None = None,
    ) -> bool:
        event = TaskEvent(
            task_id=task_id,
            event_type=event_type,
            message=message,
            author=self.author,
            loop_number=loop_number,
        )
        logger.debug("task %s [%s] %s", task_id, event_type, message)
        try:
            self.store.add_event(event)
        except Exception:
            logger.warning("Dropping %s event for task %s", event_type, task_id, exc_info=True)
            return False
        return True
