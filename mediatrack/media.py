# mediatrack/media.py
"""
Media kinds and the per-kind storage details of recommendations.

Each kind keeps its recommendations in its own table and names the
"consumed" state differently (watched / consumed / read / played), so the
status a user picks has to be translated before it is written.
"""
from typing import Dict, Optional

MOVIES_TV = "movies-tv"
MUSIC = "music"
BOOKS = "books"
GAMES = "games"

MEDIA_KINDS = (MOVIES_TV, MUSIC, BOOKS, GAMES)

TABLES = {
    MOVIES_TV: "movie_recommendations",
    MUSIC: "music_recommendations",
    BOOKS: "book_recommendations",
    GAMES: "game_recommendations",
}

# read views that carry sender_name / recipient_name; music has none
READ_VIEWS = {
    MOVIES_TV: "movie_recommendations_with_users",
    MUSIC: "music_recommendations",
    BOOKS: "book_recommendations_with_users",
    GAMES: "game_recommendations_with_users",
}

TIMESTAMP_COLUMNS = {
    MOVIES_TV: "watched_at",
    MUSIC: "consumed_at",
    BOOKS: "read_at",
    GAMES: "played_at",
}

CONSUMED_STATUS = {
    MOVIES_TV: "watched",
    MUSIC: "consumed",
    BOOKS: "read",
    GAMES: "played",
}

STATUS_ALIASES: Dict[str, Dict[str, str]] = {
    MOVIES_TV: {"consumed": "watched"},
    MUSIC: {"watched": "consumed"},
    BOOKS: {"consumed": "read", "watched": "read"},
    GAMES: {"consumed": "played", "watched": "played"},
}

MEDIA_TYPE_KINDS = {
    "movie": MOVIES_TV,
    "tv": MOVIES_TV,
    "song": MUSIC,
    "album": MUSIC,
    "playlist": MUSIC,
    "book": BOOKS,
    "game": GAMES,
}

# book and game rows have no media_type column
DEFAULT_MEDIA_TYPE = {BOOKS: "book", GAMES: "game"}

class UnknownMediaKind(ValueError):
    pass

def check_kind(media_kind: str) -> str:
    if media_kind not in TABLES:
        raise UnknownMediaKind(f"unknown media kind: {media_kind}")
    return media_kind

def kind_for_media_type(media_type: Optional[str]) -> str:
    if media_type not in MEDIA_TYPE_KINDS:
        raise UnknownMediaKind(f"unknown media type: {media_type}")
    return MEDIA_TYPE_KINDS[media_type]

def table_for(media_kind: str) -> str:
    return TABLES[check_kind(media_kind)]

def read_view_for(media_kind: str) -> str:
    return READ_VIEWS[check_kind(media_kind)]

def timestamp_column(media_kind: str) -> str:
    return TIMESTAMP_COLUMNS[check_kind(media_kind)]

def allowed_statuses(media_kind: str):
    return ("pending", CONSUMED_STATUS[check_kind(media_kind)], "hit", "miss")

def storage_status(media_kind: str, status: str) -> str:
    """Translate a requested status into the value stored for this kind."""
    return STATUS_ALIASES[check_kind(media_kind)].get(status, status)

def display_status(media_kind: str, status: str) -> str:
    """Collapse every consumed alias to the kind's own consumed label."""
    consumed = CONSUMED_STATUS[check_kind(media_kind)]
    if status in ("consumed", "watched", "read", "played"):
        return consumed
    return status
