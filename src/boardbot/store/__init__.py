from boardbot.store.base import UNSET, TaskStore
from boardbot.store.memory import InMemoryTaskStore
from boardbot.store.sqlite import SQLiteTaskStore

__all__ = [
    "InMemoryTaskStore",
    "SQLiteTaskStore",
    "TaskStore",
    "UNSET",
]
