from typing import Dict, Optional

import structlog

logger = structlog.get_logger()


class IdentifierCache:
    """
    Serialized identifier key → identifier row id.

    Entries are permanent: there is no update, delete or eviction, matching
    the store where identifier rows are never changed once written. The
    cache therefore grows with the number of distinct series seen over the
    life of the process; a long-running writer fed high-cardinality series
    holds every key in memory.

    Not thread-safe on its own. The resolver guards it with its lock.
    """

    def __init__(self):
        self._entries: Dict[str, int] = {}

    def lookup(self, key: str) -> Optional[int]:
        return self._entries.get(key)

    def insert(self, key: str, identifier_id: int) -> bool:
        """
        Remember `identifier_id` for `key`. Best effort: a failure only means
        the next lookup misses again and the store is asked once more.
        Returns False when nothing was stored.
        """
        if key in self._entries:
            return False
        try:
            self._entries[key] = identifier_id
        except MemoryError:
            logger.warning("identifier_cache_insert_failed", key=key, id=identifier_id)
            return False
        return True

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
