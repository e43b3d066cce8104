# mediatrack/friends.py
from typing import Any, Dict, List
import logging

from mediatrack.models import Connection
from mediatrack.service import SessionBound, ValidationError

logger = logging.getLogger(__name__)

class FriendService(SessionBound):
    """Connections between users. A connection is always stored in both directions."""

    def list_friends(self) -> List[Connection]:
        uid = self.current_user_id()
        rows = self.repo.select("connections", "friend_id,created_at", [("eq", "user_id", uid)])
        names = self.display_names(r["friend_id"] for r in rows)
        friends = [Connection(r["friend_id"], names.get(r["friend_id"], "Unknown User"), r.get("created_at"))
                   for r in rows]
        friends.sort(key=lambda c: c.display_name.lower())
        return friends

    def is_connected(self, other_id: str) -> bool:
        uid = self.current_user_id()
        return self.repo.count("connections", [("eq", "user_id", uid), ("eq", "friend_id", other_id)]) > 0

    def create_connection(self, target_id: str) -> None:
        uid = self.current_user_id()
        if not target_id or target_id == uid:
            logger.warning("create_connection: rejected target %r", target_id)
            raise ValidationError("cannot connect to yourself")
        self.repo.rpc("create_bidirectional_connection", {"user_a": uid, "user_b": target_id})
        logger.info("Connected %s <-> %s", uid, target_id)

    def remove_connection(self, target_id: str) -> None:
        uid = self.current_user_id()
        self.repo.delete("connections", [("eq", "user_id", uid), ("eq", "friend_id", target_id)])
        self.repo.delete("connections", [("eq", "user_id", target_id), ("eq", "friend_id", uid)])
        logger.info("Disconnected %s <-> %s", uid, target_id)

    def search_users(self, query: str = "", page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        """
        Page through other users by display name.
        Each hit says whether it is already a friend and, if not, how many
        friends it shares with the signed-in user.
        """
        uid = self.current_user_id()
        if page < 1 or page_size < 1:
            raise ValidationError("page and page_size must be >= 1")
        filters = [("neq", "user_id", uid)]
        if query.strip():
            filters.append(("ilike", "display_name", f"%{query.strip()}%"))
        total = self.repo.count("user_profiles", filters)
        offset = (page - 1) * page_size
        users = self.repo.select("user_profiles", "user_id,display_name", filters,
                                 order=[("display_name", False)], limit=page_size, offset=offset)
        mine = {r["friend_id"] for r in self.repo.select("connections", "friend_id", [("eq", "user_id", uid)])}
        theirs: Dict[str, set] = {}
        if users:
            for c in self.repo.select("connections", "user_id,friend_id",
                                      [("in", "user_id", [u["user_id"] for u in users])]):
                theirs.setdefault(c["user_id"], set()).add(c["friend_id"])
        hits = []
        for u in users:
            connected = u["user_id"] in mine
            hits.append({
                "user_id": u["user_id"],
                "display_name": u.get("display_name"),
                "is_connected": connected,
                "mutual_friends_count": 0 if connected else len(mine & theirs.get(u["user_id"], set())),
            })
        return {"users": hits, "total_count": total, "has_more": total > offset + page_size}
