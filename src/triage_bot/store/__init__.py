from triage_bot.store.base import CommitResult, ContextStore
from triage_bot.store.memory import MemoryContextStore
from triage_bot.store.sql import SqlContextStore

__all__ = ["CommitResult", "ContextStore", "MemoryContextStore", "SqlContextStore"]
