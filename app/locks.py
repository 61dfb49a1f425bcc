"""
Per-conversation mutual exclusion for the inbound pipeline.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class ConversationLockTable:
    """
    Maps a conversation id to its own lock.

    Locks are created on first use and kept for the life of the table;
    the number of conversation ids is bounded by real customers.
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, conversation_id: str) -> threading.Lock:
        """Return the lock for a conversation, creating it if absent."""
        with self._guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[conversation_id] = lock
            return lock

    @contextmanager
    def hold(self, conversation_id: str) -> Iterator[None]:
        """Hold a conversation's lock for the duration of the block."""
        lock = self.lock_for(conversation_id)
        with lock:
            yield

    def __contains__(self, conversation_id: str) -> bool:
        with self._guard:
            return conversation_id in self._locks

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
