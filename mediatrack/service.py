# mediatrack/service.py
from typing import Any, Dict, Iterable, Iterator, List, Optional
import logging

from mediatrack import aggregation
from mediatrack.media import (BOOKS, GAMES, MUSIC, DEFAULT_MEDIA_TYPE, MOVIES_TV, UnknownMediaKind,
                              allowed_statuses, check_kind, kind_for_media_type, read_view_for,
                              storage_status, table_for, timestamp_column)
from mediatrack.models import QuickStats, Recommendation, FriendSummary, WatchlistItem, now_iso
from mediatrack.repo import RepoError

logger = logging.getLogger(__name__)

# Exceptions
class ServiceError(Exception):
    """Base class for errors raised by the service layer."""
    pass

class AuthError(ServiceError):
    """Raised when an operation needs a signed-in user and there is none."""
    pass

class ForbiddenError(ServiceError):
    """Raised when the signed-in user may not perform the operation."""
    pass

class ValidationError(ServiceError):
    """Raised when input or business validation fails."""
    pass

class RateLimitError(ValidationError):
    """Raised when too many attempts were made in the current window."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after

class NotFoundError(ServiceError):
    """Raised when an entity is not found."""
    pass

class ConfigurationError(ServiceError):
    """Raised when the backend connection is not configured."""
    pass

ADMIN_ROLES = ("admin", "super_admin")

def is_admin_profile(row: Dict[str, Any]) -> bool:
    return row.get("role") in ADMIN_ROLES or bool(row.get("is_admin"))

def require_kind(media_kind: str) -> str:
    try:
        return check_kind(media_kind)
    except UnknownMediaKind as e:
        logger.warning("rejected media kind %r", media_kind)
        raise ValidationError(str(e)) from e

class SessionBound:
    """Shared plumbing for services that act on behalf of the signed-in user."""

    def __init__(self, repo):
        self.repo = repo

    def current_user_id(self) -> str:
        uid = self.repo.current_user_id()
        if not uid:
            raise AuthError("not authenticated")
        return uid

    def require_admin(self) -> str:
        """Return the signed-in user id, or raise ForbiddenError unless that user is an admin."""
        uid = self.current_user_id()
        rows = self.repo.select("user_profiles", "user_id,role,is_admin", [("eq", "user_id", uid)], limit=1)
        if not rows or not is_admin_profile(rows[0]):
            logger.warning("admin operation refused for %s", uid)
            raise ForbiddenError("admin access required")
        return uid

    def display_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        ids = [u for u in dict.fromkeys(user_ids) if u]
        if not ids:
            return {}
        rows = self.repo.select("user_profiles", "user_id,display_name", [("in", "user_id", ids)])
        return {r["user_id"]: r["display_name"] for r in rows if r.get("display_name")}

class RecommendationService(SessionBound):
    """
    Reads and mutates friend-to-friend recommendations.
    The repo is injected (SupabaseRepo or InMemoryRepo from mediatrack.repo);
    every query is scoped to the signed-in user.
    """

    def __init__(self, repo):
        super().__init__(repo)
        logger.debug("RecommendationService initialized with repo %s", type(repo).__name__)

    # ---- Reads ----
    def get_recommendations(self, direction: Optional[str] = None, status: Optional[str] = None,
                            media_kind: str = MOVIES_TV, media_type: Optional[str] = None,
                            from_user_id: Optional[str] = None) -> Iterator[Recommendation]:
        """
        Recommendations visible to the signed-in user, newest first.
        `direction` is "received", "sent" or None for both. The query runs
        before this returns; rows are converted as the iterator is consumed.
        """
        kind = require_kind(media_kind)
        uid = self.current_user_id()
        filters = []
        if direction == "received":
            filters.append(("eq", "to_user_id", uid))
        elif direction == "sent":
            filters.append(("eq", "from_user_id", uid))
        elif direction is not None:
            raise ValidationError(f"invalid direction: {direction}")
        if status:
            filters.append(("eq", "status", storage_status(kind, status)))
        if from_user_id:
            filters.append(("eq", "from_user_id", from_user_id))
        if media_type:
            try:
                type_kind = kind_for_media_type(media_type)
            except UnknownMediaKind as e:
                raise ValidationError(str(e)) from e
            if type_kind != kind:
                raise ValidationError(f"media type {media_type} does not belong to {kind}")
            if kind in (MOVIES_TV, MUSIC):
                filters.append(("eq", "media_type", media_type))
        try:
            rows = self.repo.select(read_view_for(kind), filters=filters, order=[("created_at", True)])
        except RepoError as e:
            logger.error("fetching %s recommendations failed: %s", kind, e)
            raise
        default_type = DEFAULT_MEDIA_TYPE.get(kind)
        return (Recommendation.from_row(r, default_type) for r in rows)

    def recommendations_from_friend(self, friend_id: str, media_kind: str = MOVIES_TV) -> List[Recommendation]:
        return list(self.get_recommendations("received", media_kind=media_kind, from_user_id=friend_id))

    def friends_with_recommendations(self, media_kind: str = MOVIES_TV) -> List[FriendSummary]:
        received = list(self.get_recommendations("received", media_kind=media_kind))
        missing = [r.from_user_id for r in received if not r.sender_name]
        names = self.display_names(missing) if missing else {}
        return aggregation.summarize_friends(received, names)

    def quick_stats(self, media_kind: str = MOVIES_TV) -> QuickStats:
        received = self.get_recommendations("received", media_kind=media_kind)
        sent = self.get_recommendations("sent", media_kind=media_kind)
        return aggregation.quick_stats(received, sent)

    # ---- Mutations ----
    def update_status(self, rec_id: str, status: str, media_kind: str, note: Optional[str] = None) -> Recommendation:
        """
        Set the status of a received recommendation. The consumed timestamp
        is stamped (or cleared for "pending") and an optional note is stored
        as recipient_note in the same update.
        """
        kind = require_kind(media_kind)
        stored = storage_status(kind, status)
        if stored not in allowed_statuses(kind):
            logger.warning("update_status: invalid status %r for %s", status, kind)
            raise ValidationError(f"invalid status {status} for {kind}")
        uid = self.current_user_id()
        values: Dict[str, Any] = {
            "status": stored,
            timestamp_column(kind): None if stored == "pending" else now_iso(),
        }
        if note is not None:
            values["recipient_note"] = note
        rows = self.repo.update(table_for(kind), values, [("eq", "id", rec_id), ("eq", "to_user_id", uid)])
        if not rows:
            raise NotFoundError("recommendation not found")
        logger.info("Recommendation %s (%s) status -> %s", rec_id, kind, stored)
        return Recommendation.from_row(rows[0], DEFAULT_MEDIA_TYPE.get(kind))

    def delete_recommendation(self, rec_id: str, media_kind: str) -> bool:
        """Delete a sent or received recommendation. Returns False if it was already gone."""
        kind = require_kind(media_kind)
        uid = self.current_user_id()
        rows = self.repo.delete(table_for(kind), [
            ("eq", "id", rec_id),
            ("or", None, f"from_user_id.eq.{uid},to_user_id.eq.{uid}"),
        ])
        if rows:
            logger.info("Deleted recommendation %s from %s", rec_id, kind)
        else:
            logger.debug("delete_recommendation: %s not present in %s", rec_id, kind)
        return bool(rows)

    def _set_note(self, rec_id: str, media_kind: str, column: str, owner_column: str, note: str) -> None:
        kind = require_kind(media_kind)
        uid = self.current_user_id()
        rows = self.repo.update(table_for(kind), {column: note},
                                [("eq", "id", rec_id), ("eq", owner_column, uid)])
        if not rows:
            raise NotFoundError("recommendation not found")
        logger.info("Updated %s on recommendation %s", column, rec_id)

    def update_sender_note(self, rec_id: str, note: str, media_kind: str) -> None:
        self._set_note(rec_id, media_kind, "sender_note", "from_user_id", note)

    def update_recipient_note(self, rec_id: str, note: str, media_kind: str) -> None:
        self._set_note(rec_id, media_kind, "recipient_note", "to_user_id", note)

    def mark_all_pending_as_opened(self, media_kind: str) -> int:
        kind = require_kind(media_kind)
        uid = self.current_user_id()
        rows = self.repo.update(table_for(kind), {"opened_at": now_iso()}, [
            ("eq", "to_user_id", uid),
            ("eq", "status", "pending"),
            ("is", "opened_at", None),
        ])
        logger.info("Marked %d pending %s recommendations as opened", len(rows), kind)
        return len(rows)

    def send_recommendation(self, to_user_ids: Iterable[str], item: Dict[str, Any], media_kind: str,
                            message: Optional[str] = None,
                            recommendation_type: Optional[str] = None) -> List[Recommendation]:
        """Send one item to several friends; one row is written per recipient."""
        kind = require_kind(media_kind)
        uid = self.current_user_id()
        recipients = [r for r in dict.fromkeys(to_user_ids or []) if r and r != uid]
        if not recipients:
            logger.warning("send_recommendation: no recipients besides the sender")
            raise ValidationError("at least one recipient required")
        if not item.get("external_id") or not (item.get("title") or "").strip():
            raise ValidationError("item external_id and title required")
        if kind in (MOVIES_TV, MUSIC):
            try:
                if kind_for_media_type(item.get("media_type")) != kind:
                    raise ValidationError(f"media type {item.get('media_type')} does not belong to {kind}")
            except UnknownMediaKind as e:
                raise ValidationError(str(e)) from e
        rows = [self._recommendation_row(kind, uid, r, item, message or None, recommendation_type)
                for r in recipients]
        created = self.repo.insert(table_for(kind), rows)
        logger.info("Sent %s recommendation %s to %d friends", kind, item.get("external_id"), len(created))
        return [Recommendation.from_row(r, DEFAULT_MEDIA_TYPE.get(kind)) for r in created]

    @staticmethod
    def _recommendation_row(kind, from_id, to_id, item, message, rec_type) -> Dict[str, Any]:
        base = {
            "from_user_id": from_id,
            "to_user_id": to_id,
            "external_id": str(item["external_id"]),
            "status": "pending",
            "sent_message": message,
        }
        if kind == BOOKS:
            return {**base, "title": item["title"], "authors": item.get("authors"),
                    "thumbnail_url": item.get("poster_url"), "published_date": item.get("release_date"),
                    "description": item.get("description"), "isbn": item.get("isbn"),
                    "page_count": item.get("page_count"), "recommendation_type": rec_type or "read"}
        if kind == GAMES:
            return {**base, "name": item["title"], "slug": item.get("slug") or "",
                    "released": item.get("release_date"), "background_image": item.get("poster_url"),
                    "platforms": item.get("platforms"), "genres": item.get("genres"),
                    "rating": item.get("rating"), "metacritic": item.get("metacritic"),
                    "playtime": item.get("playtime"), "recommendation_type": rec_type or "play"}
        row = {**base, "title": item["title"], "poster_url": item.get("poster_url"),
               "media_type": item["media_type"]}
        if kind == MUSIC:
            row.update(artist=item.get("subtitle") or item.get("artist"), album=item.get("album"),
                       release_date=item.get("release_date"), recommendation_type=rec_type or "listen")
        else:
            row.update(overview=item.get("description"), year=item.get("year"),
                       recommendation_type=rec_type or "watch")
        return row

    # ---- Watchlist ----
    def get_watchlist(self) -> List[WatchlistItem]:
        uid = self.current_user_id()
        rows = self.repo.select("user_watchlist", filters=[("eq", "user_id", uid)], order=[("added_at", True)])
        return [WatchlistItem.from_row(r) for r in rows]

    def add_to_watchlist(self, item: Dict[str, Any]) -> WatchlistItem:
        uid = self.current_user_id()
        if not item.get("external_id") or not (item.get("title") or "").strip():
            logger.warning("add_to_watchlist: missing external_id/title")
            raise ValidationError("external_id and title required")
        if item.get("media_type") not in ("movie", "tv"):
            raise ValidationError("media_type must be movie or tv")
        row = {"user_id": uid, "external_id": str(item["external_id"]), "title": item["title"].strip(),
               "media_type": item["media_type"], "poster_url": item.get("poster_url"),
               "notes": item.get("notes"), "watched": False}
        created = self.repo.insert("user_watchlist", row)[0]
        logger.info("Added %s to watchlist of %s", created.get("external_id"), uid)
        return WatchlistItem.from_row(created)

    def _watchlist_row(self, item_id: str, uid: str) -> Dict[str, Any]:
        rows = self.repo.select("user_watchlist", filters=[("eq", "id", item_id), ("eq", "user_id", uid)])
        if not rows:
            raise NotFoundError("watchlist item not found")
        return rows[0]

    def toggle_watched(self, item_id: str) -> WatchlistItem:
        uid = self.current_user_id()
        watched = not self._watchlist_row(item_id, uid).get("watched")
        rows = self.repo.update("user_watchlist", {
            "watched": watched,
            "watched_at": now_iso() if watched else None,
            "updated_at": now_iso(),
        }, [("eq", "id", item_id), ("eq", "user_id", uid)])
        return WatchlistItem.from_row(rows[0])

    def update_watchlist_item(self, item_id: str, updates: Dict[str, Any]) -> WatchlistItem:
        uid = self.current_user_id()
        allowed = {k: v for k, v in updates.items() if k in ("title", "poster_url", "notes", "watched")}
        if not allowed:
            raise ValidationError("nothing to update")
        if "title" in allowed and not (allowed["title"] or "").strip():
            raise ValidationError("title required")
        self._watchlist_row(item_id, uid)
        rows = self.repo.update("user_watchlist", {**allowed, "updated_at": now_iso()},
                                [("eq", "id", item_id), ("eq", "user_id", uid)])
        return WatchlistItem.from_row(rows[0])

    def delete_from_watchlist(self, item_id: str) -> bool:
        uid = self.current_user_id()
        rows = self.repo.delete("user_watchlist", [("eq", "id", item_id), ("eq", "user_id", uid)])
        return bool(rows)
