# mediatrack/admin.py
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from mediatrack.models import AdminStats, DashboardStats, PopularMedia, UserProfile
from mediatrack.repo import RepoError
from mediatrack.service import NotFoundError, SessionBound, ValidationError

logger = logging.getLogger(__name__)

ASSIGNABLE_ROLES = ("user", "admin")
RECENT_ACTIVITY_COLUMNS = "id,title,media_type,status,created_at,from_user_id,to_user_id"

def quote_filter_value(value: str) -> str:
    """Double-quote a value for a PostgREST or-expression so commas and dots in it stay literal."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'

def run_parallel(queries: Dict[str, Callable[[], Any]], max_workers: int) -> Dict[str, Any]:
    """Run independent queries on a thread pool and wait for all of them.
    The first failure is re-raised once every query has finished."""
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(queries)))) as executor:
        futures = {name: executor.submit(fn) for name, fn in queries.items()}
    return {name: f.result() for name, f in futures.items()}

class AdminService(SessionBound):
    """
    Site-wide statistics and user management.
    Every operation first checks that the signed-in user is an admin.
    """

    def __init__(self, repo, max_workers: int = 8):
        super().__init__(repo)
        self.max_workers = max_workers

    def stats(self, now: Optional[datetime] = None) -> AdminStats:
        self.require_admin()
        now = now or datetime.now(timezone.utc)
        week_ago = (now - timedelta(days=7)).isoformat()
        month_ago = (now - timedelta(days=30)).isoformat()
        repo = self.repo
        r = run_parallel({
            "invite_codes": lambda: repo.count("invite_codes"),
            "watchlist": lambda: repo.count("user_watchlist"),
            "watched": lambda: repo.count("user_watched_archive"),
            "users": lambda: repo.count("user_profiles"),
            "week_users": lambda: repo.count("user_profiles", [("gte", "created_at", week_ago)]),
            "month_users": lambda: repo.count("user_profiles", [("gte", "created_at", month_ago)]),
            "recent_watchlist": lambda: repo.select("user_watchlist", "user_id", [("gte", "added_at", month_ago)]),
            "recent_archive": lambda: repo.select("user_watched_archive", "user_id",
                                                  [("gte", "watched_at", month_ago)]),
        }, self.max_workers)
        active = {row["user_id"] for row in r["recent_watchlist"]} | {row["user_id"] for row in r["recent_archive"]}
        return AdminStats(
            total_users=r["users"],
            total_media_items=r["watchlist"] + r["watched"],
            total_ratings=r["watched"],
            total_invite_codes=r["invite_codes"],
            new_users_this_week=r["week_users"],
            new_users_this_month=r["month_users"],
            active_users=len(active),
            avg_ratings_per_user=round(r["watched"] / r["users"]) if r["users"] else 0,
        )

    def users(self, page: int = 0, per_page: int = 20, search: str = "") -> Dict[str, Any]:
        """One page (0-based) of user profiles, newest first, optionally searched by name or bio."""
        self.require_admin()
        if page < 0 or per_page < 1:
            raise ValidationError("page must be >= 0 and per_page >= 1")
        filters = []
        term = (search or "").strip()
        if term:
            pattern = quote_filter_value(f"%{term}%")
            filters.append(("or", None, f"display_name.ilike.{pattern},bio.ilike.{pattern}"))
        total = self.repo.count("user_profiles", filters)
        rows = self.repo.select("user_profiles", filters=filters, order=[("created_at", True)],
                                limit=per_page, offset=page * per_page)
        return {"users": [UserProfile.from_row(r) for r in rows], "total_pages": math.ceil(total / per_page)}

    def popular_media(self, limit: int = 10) -> List[PopularMedia]:
        self.require_admin()
        cols = "external_id,title,media_type"
        counts: Dict[str, PopularMedia] = {}
        for row in self.repo.select("user_watchlist", cols) + self.repo.select("user_watched_archive", cols):
            ext = row.get("external_id")
            if not ext:
                continue
            if ext not in counts:
                counts[ext] = PopularMedia(ext, row.get("title") or "Unknown", row.get("media_type") or "N/A", 0)
            counts[ext].tracking_count += 1
        ranked = sorted(counts.values(), key=lambda m: m.tracking_count, reverse=True)
        return ranked[:limit]

    def recent_activity(self, limit: int = 10) -> List[Dict[str, Any]]:
        self.require_admin()
        return self.repo.select("movie_recommendations", RECENT_ACTIVITY_COLUMNS,
                                order=[("created_at", True)], limit=limit)

    def update_user_role(self, user_id: str, role: str) -> UserProfile:
        admin_id = self.require_admin()
        if role not in ASSIGNABLE_ROLES:
            raise ValidationError(f"invalid role: {role}")
        if user_id == admin_id:
            raise ValidationError("you cannot change your own role")
        rows = self.repo.update("user_profiles", {"role": role, "is_admin": role != "user"},
                                [("eq", "user_id", user_id)])
        if not rows:
            raise NotFoundError("user not found")
        logger.info("Admin %s set role of %s to %s", admin_id, user_id, role)
        try:
            self.repo.rpc("log_admin_action", {"p_action": "update_role", "p_target_user_id": user_id,
                                               "p_details": {"role": role}})
        except RepoError as e:
            logger.warning("audit log write failed: %s", e)
        return UserProfile.from_row(rows[0])

class DashboardService(SessionBound):
    """Counters for the signed-in user's home dashboard."""

    def __init__(self, repo, max_workers: int = 8):
        super().__init__(repo)
        self.max_workers = max_workers

    def stats(self) -> DashboardStats:
        uid = self.current_user_id()
        repo = self.repo
        unopened = [("eq", "to_user_id", uid), ("eq", "status", "pending"), ("is", "opened_at", None)]
        r = run_parallel({
            "watchlist": lambda: repo.select("user_watchlist", "watched", [("eq", "user_id", uid)]),
            "books": lambda: repo.select("reading_list", "read", [("eq", "user_id", uid)]),
            "music": lambda: repo.count("music_library", [("eq", "user_id", uid)]),
            "games": lambda: repo.select("game_library", "played", [("eq", "user_id", uid)]),
            "friends": lambda: repo.count("connections", [("eq", "user_id", uid)]),
            "movie_recs": lambda: repo.count("movie_recommendations", unopened),
            "book_recs": lambda: repo.count("book_recommendations", unopened),
        }, self.max_workers)
        watched = sum(1 for x in r["watchlist"] if x.get("watched"))
        read = sum(1 for x in r["books"] if x.get("read") is True)
        played = sum(1 for x in r["games"] if x.get("played"))
        return DashboardStats(
            movies_and_tv_count=len(r["watchlist"]),
            movies_watched=watched,
            movies_to_watch=len(r["watchlist"]) - watched,
            books_count=len(r["books"]),
            books_read=read,
            books_to_read=sum(1 for x in r["books"] if x.get("read") is False),
            music_count=r["music"],
            games_count=len(r["games"]),
            games_played=played,
            games_to_play=len(r["games"]) - played,
            friends_count=r["friends"],
            pending_recommendations=r["movie_recs"] + r["book_recs"],
        )
