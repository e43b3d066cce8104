# mediatrack/models.py
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

def parse_ts(value: Optional[str]) -> Optional[datetime]:
    """Parse a backend timestamp ("2025-01-01T10:00:00+00:00" or with a trailing Z)."""
    if not value:
        return None
    text = value.replace("Z", "+00:00") if isinstance(value, str) else value
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

# columns where each media kind records the moment the item was consumed
CONSUMED_AT_COLUMNS = ("watched_at", "consumed_at", "read_at", "played_at")

@dataclass
class Recommendation:
    id: Optional[str]
    from_user_id: str
    to_user_id: str
    external_id: str
    title: str
    media_type: str
    status: str = "pending"
    sent_message: Optional[str] = None
    sender_note: Optional[str] = None
    recipient_note: Optional[str] = None
    created_at: Optional[str] = None
    opened_at: Optional[str] = None
    consumed_at: Optional[str] = None
    sender_name: Optional[str] = None
    recipient_name: Optional[str] = None
    poster_url: Optional[str] = None
    year: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    KNOWN = ("id", "from_user_id", "to_user_id", "external_id", "title", "name", "media_type",
             "status", "sent_message", "sender_note", "recipient_note", "created_at", "opened_at",
             "sender_name", "recipient_name", "poster_url", "year") + CONSUMED_AT_COLUMNS

    @classmethod
    def from_row(cls, r: Dict[str, Any], media_type: Optional[str] = None) -> "Recommendation":
        consumed_at = None
        for col in CONSUMED_AT_COLUMNS:
            if r.get(col):
                consumed_at = r[col]
                break
        return cls(
            id=r.get("id"),
            from_user_id=r.get("from_user_id"),
            to_user_id=r.get("to_user_id"),
            external_id=r.get("external_id"),
            # game rows carry "name" instead of "title"
            title=r.get("title") or r.get("name") or "",
            media_type=r.get("media_type") or media_type or "",
            status=r.get("status") or "pending",
            sent_message=r.get("sent_message"),
            sender_note=r.get("sender_note"),
            recipient_note=r.get("recipient_note"),
            created_at=r.get("created_at"),
            opened_at=r.get("opened_at"),
            consumed_at=consumed_at,
            sender_name=r.get("sender_name"),
            recipient_name=r.get("recipient_name"),
            poster_url=r.get("poster_url") or r.get("thumbnail_url") or r.get("background_image"),
            year=r.get("year"),
            extra={k: v for k, v in r.items() if k not in cls.KNOWN},
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

@dataclass
class FriendSummary:
    user_id: str
    display_name: str
    pending_count: int = 0
    total_count: int = 0
    hit_count: int = 0
    miss_count: int = 0

@dataclass
class QuickStats:
    hits: int = 0
    misses: int = 0
    queue: int = 0
    sent: int = 0

@dataclass
class WatchlistItem:
    id: Optional[str]
    user_id: str
    external_id: str
    media_type: str
    title: str
    poster_url: Optional[str] = None
    watched: bool = False
    notes: Optional[str] = None
    added_at: Optional[str] = None
    watched_at: Optional[str] = None

    @classmethod
    def from_row(cls, r: Dict[str, Any]) -> "WatchlistItem":
        return cls(r.get("id"), r.get("user_id"), r.get("external_id"), r.get("media_type"),
                   r.get("title"), r.get("poster_url"), bool(r.get("watched")), r.get("notes"),
                   r.get("added_at"), r.get("watched_at"))

@dataclass
class Board:
    id: Optional[str]
    user_id: str
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    is_public: bool = False
    board_type: str = "kanban"
    template_type: str = "kanban"
    display_order: Optional[int] = None
    field_config: Optional[Dict[str, Any]] = None
    # only filled when read from task_boards_with_stats
    task_count: Optional[int] = None
    completed_count: Optional[int] = None

    @classmethod
    def from_row(cls, r: Dict[str, Any]) -> "Board":
        return cls(r.get("id"), r.get("user_id"), r.get("name"), r.get("description"), r.get("icon"),
                   r.get("color"), bool(r.get("is_public")), r.get("board_type") or "kanban",
                   r.get("template_type") or "kanban", r.get("display_order"), r.get("field_config"),
                   r.get("task_count"), r.get("completed_count"))

@dataclass
class Section:
    id: Optional[str]
    board_id: str
    name: str
    display_order: int = 0

    @classmethod
    def from_row(cls, r: Dict[str, Any]) -> "Section":
        return cls(r.get("id"), r.get("board_id"), r.get("name"), r.get("display_order") or 0)

@dataclass
class Task:
    id: Optional[str]
    user_id: str
    title: str
    board_id: Optional[str] = None
    section_id: Optional[str] = None
    description: Optional[str] = None
    status: str = "todo"  # "todo", "in_progress", "done", "archived"
    priority: Optional[str] = None
    due_date: Optional[str] = None
    tags: Optional[List[str]] = None
    display_order: Optional[int] = None
    completed_at: Optional[str] = None
    archived_at: Optional[str] = None

    @classmethod
    def from_row(cls, r: Dict[str, Any]) -> "Task":
        return cls(r.get("id"), r.get("user_id"), r.get("title"), r.get("board_id"), r.get("section_id"),
                   r.get("description"), r.get("status") or "todo", r.get("priority"), r.get("due_date"),
                   r.get("tags"), r.get("display_order"), r.get("completed_at"), r.get("archived_at"))

@dataclass
class InviteCode:
    id: Optional[str]
    code: str
    created_by: Optional[str] = None
    used_by: Optional[str] = None
    is_active: bool = True
    max_uses: int = 1
    current_uses: int = 0
    expires_at: Optional[str] = None
    created_at: Optional[str] = None
    used_at: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_row(cls, r: Dict[str, Any]) -> "InviteCode":
        return cls(r.get("id"), r.get("code"), r.get("created_by"), r.get("used_by"),
                   r.get("is_active", True), r.get("max_uses", 1), r.get("current_uses", 0),
                   r.get("expires_at"), r.get("created_at"), r.get("used_at"), r.get("notes"))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        exp = parse_ts(self.expires_at)
        return exp is not None and exp <= now

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and self.current_uses < self.max_uses and not self.is_expired(now)

@dataclass
class MediaList:
    id: Optional[str]
    owner_id: str
    name: str
    media_domain: str
    description: Optional[str] = None
    is_public: bool = False
    item_count: int = 0
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, r: Dict[str, Any]) -> "MediaList":
        return cls(r.get("id"), r.get("owner_id"), r.get("name"), r.get("media_domain"),
                   r.get("description"), bool(r.get("is_public")), r.get("item_count") or 0,
                   r.get("updated_at"))

@dataclass
class MediaListItem:
    id: Optional[str]
    list_id: str
    external_id: str
    media_type: str
    title: str
    subtitle: Optional[str] = None
    poster_url: Optional[str] = None
    release_date: Optional[str] = None
    year: Optional[int] = None

    @classmethod
    def from_row(cls, r: Dict[str, Any]) -> "MediaListItem":
        return cls(r.get("id"), r.get("list_id"), r.get("external_id"), r.get("media_type"),
                   r.get("title"), r.get("subtitle"), r.get("poster_url"), r.get("release_date"),
                   r.get("year"))

@dataclass
class MediaListMember:
    id: Optional[str]
    list_id: str
    user_id: str
    role: str  # "viewer" or "editor"
    invited_by: Optional[str] = None
    display_name: Optional[str] = None

@dataclass
class Connection:
    user_id: str
    display_name: str
    connected_at: Optional[str] = None

@dataclass
class UserProfile:
    id: str
    display_name: str
    email: Optional[str] = None
    bio: Optional[str] = None
    is_admin: bool = False
    role: str = "user"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, r: Dict[str, Any]) -> "UserProfile":
        return cls(r.get("user_id"), r.get("display_name") or "No Name Set", r.get("email"),
                   r.get("bio"), bool(r.get("is_admin")), r.get("role") or "user",
                   r.get("created_at"), r.get("updated_at"))

@dataclass
class AdminStats:
    total_users: int = 0
    total_media_items: int = 0
    total_ratings: int = 0
    total_invite_codes: int = 0
    new_users_this_week: int = 0
    new_users_this_month: int = 0
    active_users: int = 0
    avg_ratings_per_user: int = 0

@dataclass
class PopularMedia:
    id: str
    title: str
    type: str
    tracking_count: int

@dataclass
class DashboardStats:
    movies_and_tv_count: int = 0
    movies_watched: int = 0
    movies_to_watch: int = 0
    books_count: int = 0
    books_read: int = 0
    books_to_read: int = 0
    music_count: int = 0
    games_count: int = 0
    games_played: int = 0
    games_to_play: int = 0
    friends_count: int = 0
    pending_recommendations: int = 0
