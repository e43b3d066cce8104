# mediatrack/cache.py
"""
Keyed query cache in front of the recommendation service.

Entries stay fresh for `stale_time` seconds. A failed fetch is retried
`retry` times before the error propagates. Mutations invalidate the keys
whose data they change, so the next read goes back to the backend.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple

from mediatrack import aggregation
from mediatrack.media import MOVIES_TV
from mediatrack.repo import RepoError
from mediatrack.service import RecommendationService, ValidationError, require_kind

logger = logging.getLogger(__name__)

Key = Tuple[Hashable, ...]

VIEWS = ("overview", "queue", "hits", "misses", "sent", "friend")

class query_keys:
    @staticmethod
    def recommendations(view: str, friend_id: Optional[str], media_kind: str) -> Key:
        return ("recommendations", view, friend_id, media_kind)

    @staticmethod
    def friends_with_recs(media_kind: str) -> Key:
        return ("friends", "with-recs", media_kind)

    @staticmethod
    def quick_stats(media_kind: str) -> Key:
        return ("stats", "quick", media_kind)

    DASHBOARD = ("dashboard",)

    @staticmethod
    def dashboard_stats() -> Key:
        return ("dashboard", "stats")

@dataclass
class _Entry:
    value: Any
    fetched_at: float
    stale: bool = False

class QueryCache:
    def __init__(self, stale_time: float = 30.0, retry: int = 1, clock: Callable[[], float] = time.monotonic):
        self.stale_time = stale_time
        self.retry = retry
        self.clock = clock
        self._entries: Dict[Key, _Entry] = {}
        self._locks: Dict[Key, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock(self, key: Key) -> threading.Lock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def _fresh(self, key: Key) -> Optional[_Entry]:
        entry = self._entries.get(key)
        if entry is None or entry.stale or self.clock() - entry.fetched_at >= self.stale_time:
            return None
        return entry

    def fetch(self, key: Key, fn: Callable[[], Any]) -> Any:
        entry = self._fresh(key)
        if entry is not None:
            logger.debug("cache hit %s", key)
            return entry.value
        with self._lock(key):
            # another caller may have filled it while we waited
            entry = self._fresh(key)
            if entry is not None:
                return entry.value
            attempt = 0
            while True:
                try:
                    value = fn()
                    break
                except RepoError as e:
                    if attempt >= self.retry:
                        raise
                    attempt += 1
                    logger.warning("query %s failed (%s), retry %d/%d", key, e, attempt, self.retry)
            self._entries[key] = _Entry(value, self.clock())
            return value

    def peek(self, key: Key) -> Any:
        entry = self._entries.get(key)
        return entry.value if entry else None

    def invalidate(self, prefix: Optional[Key] = None,
                   predicate: Optional[Callable[[Key], bool]] = None) -> int:
        """Mark matching keys stale. With neither argument, everything is marked."""
        marked = 0
        for key, entry in list(self._entries.items()):
            if prefix is not None and key[:len(prefix)] != tuple(prefix):
                continue
            if predicate is not None and not predicate(key):
                continue
            entry.stale = True
            marked += 1
        logger.debug("invalidated %d keys (prefix=%s)", marked, prefix)
        return marked

    def clear(self) -> None:
        self._entries.clear()

def _recommendation_keys_for(media_kind: str) -> Callable[[Key], bool]:
    return lambda key: key[0] == "recommendations" and media_kind in key

class RecommendationQueries:
    """Cached reads and invalidating mutations over RecommendationService."""

    def __init__(self, service: RecommendationService, cache: QueryCache):
        self.service = service
        self.cache = cache

    # ---- Reads ----
    def friends_with_recs(self, media_kind: str = MOVIES_TV):
        return self.cache.fetch(query_keys.friends_with_recs(media_kind),
                                lambda: self.service.friends_with_recommendations(media_kind))

    def quick_stats(self, media_kind: str = MOVIES_TV):
        return self.cache.fetch(query_keys.quick_stats(media_kind),
                                lambda: self.service.quick_stats(media_kind))

    def _load(self, view: str, friend_id: Optional[str], media_kind: str) -> List:
        svc = self.service
        if view == "friend":
            if not friend_id:
                return []
            return svc.recommendations_from_friend(friend_id, media_kind)
        if view == "queue":
            return list(svc.get_recommendations("received", "pending", media_kind))
        if view == "hits":
            return list(svc.get_recommendations("received", "hit", media_kind))
        if view == "misses":
            return list(svc.get_recommendations("received", "miss", media_kind))
        if view == "sent":
            return list(svc.get_recommendations("sent", media_kind=media_kind))
        return []

    def recommendations(self, view: str, friend_id: Optional[str] = None, media_kind: str = MOVIES_TV) -> List:
        if view not in VIEWS:
            raise ValidationError(f"unknown view: {view}")
        require_kind(media_kind)
        # the overview page renders from the aggregated data, nothing to fetch
        if view == "overview":
            return []
        return self.cache.fetch(query_keys.recommendations(view, friend_id, media_kind),
                                lambda: self._load(view, friend_id, media_kind))

    def recommendations_data(self, media_kind: str = MOVIES_TV) -> aggregation.RecommendationsView:
        friends = self.friends_with_recs(media_kind)
        stats = self.quick_stats(media_kind)
        hits = self.recommendations("hits", None, media_kind)
        misses = self.recommendations("misses", None, media_kind)
        sent = self.recommendations("sent", None, media_kind)
        pending = self.recommendations("queue", None, media_kind)
        uid = self.service.repo.current_user_id()
        return aggregation.build_recommendations_view(uid, friends, hits, misses, pending, sent,
                                                      stats, media_kind)

    def movie_recommendations_data(self) -> aggregation.RecommendationsView:
        return self.recommendations_data(MOVIES_TV)

    # ---- Mutations ----
    def _after_change(self, media_kind: str) -> None:
        self.cache.invalidate(prefix=query_keys.friends_with_recs(media_kind))
        self.cache.invalidate(prefix=query_keys.quick_stats(media_kind))
        self.cache.invalidate(predicate=_recommendation_keys_for(media_kind))

    def update_status(self, rec_id: str, status: str, media_kind: str, note: Optional[str] = None):
        rec = self.service.update_status(rec_id, status, media_kind, note)
        self._after_change(media_kind)
        return rec

    def delete(self, rec_id: str, media_kind: str) -> bool:
        deleted = self.service.delete_recommendation(rec_id, media_kind)
        self._after_change(media_kind)
        return deleted

    def update_sender_note(self, rec_id: str, note: str, media_kind: str) -> None:
        self.service.update_sender_note(rec_id, note, media_kind)
        self.cache.invalidate(predicate=_recommendation_keys_for(media_kind))

    def update_recipient_note(self, rec_id: str, note: str, media_kind: str) -> None:
        self.service.update_recipient_note(rec_id, note, media_kind)
        self.cache.invalidate(predicate=_recommendation_keys_for(media_kind))

    def mark_opened(self, media_kind: str) -> int:
        count = self.service.mark_all_pending_as_opened(media_kind)
        self.cache.invalidate(prefix=query_keys.DASHBOARD)
        self.cache.invalidate(predicate=_recommendation_keys_for(media_kind))
        return count

    def send(self, to_user_ids, item, media_kind: str, message: Optional[str] = None):
        created = self.service.send_recommendation(to_user_ids, item, media_kind, message)
        self._after_change(media_kind)
        return created
