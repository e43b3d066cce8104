# mediatrack/lists.py
from typing import Any, Dict, List, Optional, Sequence
import logging

from mediatrack.media import MEDIA_KINDS, MOVIES_TV, BOOKS, GAMES
from mediatrack.models import MediaList, MediaListItem, MediaListMember, now_iso
from mediatrack.service import ForbiddenError, NotFoundError, SessionBound, ValidationError

logger = logging.getLogger(__name__)

ROLES = ("viewer", "editor")

def normalize_media_type(domain: str, item: Dict[str, Any]) -> str:
    if domain == MOVIES_TV:
        return "tv" if item.get("media_type") == "tv" else "movie"
    if domain == BOOKS:
        return "book"
    if domain == GAMES:
        return "game"
    if item.get("media_type") in ("album", "playlist"):
        return item["media_type"]
    return "song"

def year_from(release_date: Optional[str]) -> Optional[int]:
    if not release_date:
        return None
    try:
        return int(str(release_date).split("-")[0])
    except ValueError:
        return None

def _domain(domain: str) -> str:
    if domain not in MEDIA_KINDS:
        raise ValidationError(f"unknown media domain: {domain}")
    return domain

class MediaListService(SessionBound):
    """Personal media lists, their items, and sharing with connected friends."""

    # ---- Lists ----
    def get_lists(self, domain: str) -> List[MediaList]:
        self.current_user_id()
        rows = self.repo.select("media_lists_with_counts", filters=[("eq", "media_domain", _domain(domain))],
                                order=[("updated_at", True), ("created_at", True)])
        return [MediaList.from_row(r) for r in rows]

    def get_list(self, list_id: str) -> MediaList:
        self.current_user_id()
        rows = self.repo.select("media_lists_with_counts", filters=[("eq", "id", list_id)])
        if not rows:
            raise NotFoundError("list not found")
        return MediaList.from_row(rows[0])

    def create_list(self, name: str, domain: str, description: Optional[str] = None,
                    is_public: bool = False) -> MediaList:
        uid = self.current_user_id()
        if not name or not name.strip():
            logger.warning("create_list: empty name")
            raise ValidationError("list name required")
        row = self.repo.insert("media_lists", {
            "owner_id": uid, "name": name.strip(), "media_domain": _domain(domain),
            "description": description, "is_public": bool(is_public), "updated_at": now_iso(),
        })[0]
        logger.info("Created media list id=%s name=%s", row["id"], row["name"])
        return MediaList.from_row(row)

    def _owned(self, list_id: str) -> MediaList:
        lst = self.get_list(list_id)
        if lst.owner_id != self.current_user_id():
            raise ForbiddenError("only the list owner can do that")
        return lst

    def _editable(self, list_id: str) -> MediaList:
        lst = self.get_list(list_id)
        if lst.owner_id != self.current_user_id() and self.my_role(list_id) != "editor":
            raise ForbiddenError("you cannot edit this list")
        return lst

    def update_list(self, list_id: str, fields: Dict[str, Any]) -> MediaList:
        self._owned(list_id)
        values = {k: v for k, v in fields.items() if k in ("name", "description", "is_public")}
        if "name" in values and not (values["name"] or "").strip():
            raise ValidationError("list name required")
        if not values:
            raise ValidationError("nothing to update")
        values["updated_at"] = now_iso()
        self.repo.update("media_lists", values, [("eq", "id", list_id)])
        return self.get_list(list_id)

    def delete_list(self, list_id: str) -> None:
        self._owned(list_id)
        self.repo.delete("media_list_items", [("eq", "list_id", list_id)])
        self.repo.delete("media_list_members", [("eq", "list_id", list_id)])
        self.repo.delete("media_lists", [("eq", "id", list_id)])
        logger.info("Deleted media list id=%s", list_id)

    # ---- Items ----
    def get_items(self, list_id: str) -> List[MediaListItem]:
        self.get_list(list_id)
        rows = self.repo.select("media_list_items", filters=[("eq", "list_id", list_id)],
                                order=[("created_at", True)])
        return [MediaListItem.from_row(r) for r in rows]

    def add_item(self, list_id: str, domain: str, item: Dict[str, Any]) -> MediaListItem:
        self._editable(list_id)
        if not item.get("external_id") or not (item.get("title") or "").strip():
            raise ValidationError("item external_id and title required")
        release = item.get("release_date")
        row = self.repo.insert("media_list_items", {
            "list_id": list_id,
            "external_id": str(item["external_id"]),
            "media_type": normalize_media_type(_domain(domain), item),
            "title": item["title"].strip(),
            "subtitle": item.get("subtitle") or item.get("artist") or item.get("authors") or item.get("platforms"),
            "poster_url": item.get("poster_url"),
            "release_date": release,
            "description": item.get("description"),
            "year": year_from(release),
        })[0]
        self.repo.update("media_lists", {"updated_at": now_iso()}, [("eq", "id", list_id)])
        return MediaListItem.from_row(row)

    def remove_item(self, list_id: str, item_id: str) -> bool:
        self._editable(list_id)
        return bool(self.repo.delete("media_list_items", [("eq", "id", item_id), ("eq", "list_id", list_id)]))

    # ---- Sharing ----
    def get_members(self, list_id: str) -> List[MediaListMember]:
        self.get_list(list_id)
        rows = self.repo.select("media_list_members", filters=[("eq", "list_id", list_id)])
        names = self.display_names(r["user_id"] for r in rows)
        return [MediaListMember(r.get("id"), r["list_id"], r["user_id"], r["role"], r.get("invited_by"),
                                names.get(r["user_id"])) for r in rows]

    def my_role(self, list_id: str) -> Optional[str]:
        uid = self.current_user_id()
        rows = self.repo.select("media_list_members", "role",
                                [("eq", "list_id", list_id), ("eq", "user_id", uid)], limit=1)
        return rows[0]["role"] if rows else None

    def share(self, list_id: str, user_ids: Sequence[str], role: str = "viewer") -> int:
        """Invite connected friends to a list. Returns the number of members written."""
        if role not in ROLES:
            raise ValidationError(f"invalid role: {role}")
        if not user_ids:
            return 0
        self._owned(list_id)
        uid = self.current_user_id()
        connected = {r["friend_id"] for r in self.repo.select(
            "connections", "friend_id", [("eq", "user_id", uid), ("in", "friend_id", list(user_ids))])}
        strangers = [u for u in user_ids if u not in connected]
        if strangers:
            logger.warning("share: %d users are not connected to %s", len(strangers), uid)
            raise ValidationError("Can only invite connected users (friends)")
        rows = [{"list_id": list_id, "user_id": u, "role": role, "invited_by": uid} for u in user_ids]
        self.repo.upsert("media_list_members", rows, on_conflict="list_id,user_id")
        logger.info("Shared list %s with %d users as %s", list_id, len(rows), role)
        return len(rows)

    def unshare(self, list_id: str, user_id: str) -> bool:
        self._owned(list_id)
        return bool(self.repo.delete("media_list_members",
                                     [("eq", "list_id", list_id), ("eq", "user_id", user_id)]))

    def update_member_role(self, list_id: str, user_id: str, role: str) -> None:
        if role not in ROLES:
            raise ValidationError(f"invalid role: {role}")
        self._owned(list_id)
        rows = self.repo.update("media_list_members", {"role": role},
                                [("eq", "list_id", list_id), ("eq", "user_id", user_id)])
        if not rows:
            raise NotFoundError("member not found")
