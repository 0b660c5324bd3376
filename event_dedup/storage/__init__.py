from .cache import CacheEntry, CacheManager
from .merge_history import MergeHistoryStore

__all__ = [
    "CacheEntry",
    "CacheManager",
    "MergeHistoryStore",
]
