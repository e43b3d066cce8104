# mediatrack/repo.py
import logging
import re
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx
from postgrest.exceptions import APIError
from supabase_auth.errors import AuthError as SupabaseAuthError

from mediatrack.models import InviteCode

logger = logging.getLogger(__name__)

# (op, column, value); ops: eq, neq, is, gte, lte, in, ov, ilike, or
Filter = Tuple[str, Optional[str], Any]
# (column, descending)
Order = Tuple[str, bool]

# --- Exceptions ---
class RepoError(Exception):
    """A remote query failed. `kind` tells callers what sort of failure it was."""

    def __init__(self, message: str, kind: str = "unknown", code: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.code = code

def classify_error(code: Optional[str]) -> str:
    """Map a Postgres / PostgREST error code to a RepoError kind."""
    if not code:
        return "unknown"
    if code in ("42501", "PGRST301", "PGRST302"):
        return "forbidden"
    if code == "PGRST116":
        return "not_found"
    if code in ("42P01", "42703", "42883", "PGRST202", "PGRST204", "PGRST205"):
        return "setup"
    if code.startswith("23") or code == "22P02":
        return "validation"
    return "unknown"

# --- Supabase repo ---
class SupabaseRepo:
    """
    Data access over a hosted Supabase project.
    The client is built once by the app factory and handed in here.
    """

    def __init__(self, client):
        self.client = client

    def _run(self, query, what: str):
        try:
            return query.execute()
        except APIError as e:
            kind = classify_error(e.code)
            logger.error("%s failed: %s (code=%s)", what, e.message, e.code)
            raise RepoError(e.message or str(e), kind=kind, code=e.code) from e
        except httpx.HTTPError as e:
            logger.error("%s failed: network error %s", what, e)
            raise RepoError(str(e), kind="network") from e

    @staticmethod
    def _apply(query, filters: Iterable[Filter]):
        for op, col, val in filters:
            if op == "eq":
                query = query.eq(col, val)
            elif op == "neq":
                query = query.neq(col, val)
            elif op == "is":
                query = query.is_(col, "null" if val is None else str(val).lower())
            elif op == "gte":
                query = query.gte(col, val)
            elif op == "lte":
                query = query.lte(col, val)
            elif op == "in":
                query = query.in_(col, list(val))
            elif op == "ov":
                query = query.ov(col, list(val))
            elif op == "ilike":
                query = query.ilike(col, val)
            elif op == "or":
                query = query.or_(val)
            else:
                raise ValueError(f"unsupported filter op {op}")
        return query

    def select(self, table: str, columns: str = "*", filters: Sequence[Filter] = (),
               order: Sequence[Order] = (), limit: Optional[int] = None,
               offset: Optional[int] = None) -> List[Dict[str, Any]]:
        q = self._apply(self.client.table(table).select(columns), filters)
        for col, desc in order:
            q = q.order(col, desc=desc)
        if offset is not None and limit is not None:
            q = q.range(offset, offset + limit - 1)
        elif limit is not None:
            q = q.limit(limit)
        return self._run(q, f"select {table}").data or []

    def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        q = self._apply(self.client.table(table).select("*", count="exact", head=True), filters)
        return self._run(q, f"count {table}").count or 0

    def insert(self, table: str, rows) -> List[Dict[str, Any]]:
        return self._run(self.client.table(table).insert(rows), f"insert {table}").data or []

    def upsert(self, table: str, rows, on_conflict: str) -> List[Dict[str, Any]]:
        q = self.client.table(table).upsert(rows, on_conflict=on_conflict)
        return self._run(q, f"upsert {table}").data or []

    def update(self, table: str, values: Dict[str, Any], filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        q = self._apply(self.client.table(table).update(values), filters)
        return self._run(q, f"update {table}").data or []

    def delete(self, table: str, filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        q = self._apply(self.client.table(table).delete(), filters)
        return self._run(q, f"delete {table}").data or []

    def rpc(self, name: str, params: Dict[str, Any]):
        return self._run(self.client.rpc(name, params), f"rpc {name}").data

    # -- Auth --
    # auth client errors become RepoError(kind="auth"); transport failures are kind="network"
    def sign_up(self, email: str, password: str) -> str:
        try:
            res = self.client.auth.sign_up({"email": email, "password": password})
        except SupabaseAuthError as e:
            logger.warning("auth call failed: %s", e)
            raise RepoError(str(e), kind="auth") from e
        except httpx.HTTPError as e:
            logger.error("auth call failed: network error %s", e)
            raise RepoError(str(e), kind="network") from e
        if not res.user:
            raise RepoError("user creation failed", kind="auth")
        return res.user.id

    def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        try:
            res = self.client.auth.sign_in_with_password({"email": email, "password": password})
        except SupabaseAuthError as e:
            logger.warning("auth call failed: %s", e)
            raise RepoError(str(e), kind="auth") from e
        except httpx.HTTPError as e:
            logger.error("auth call failed: network error %s", e)
            raise RepoError(str(e), kind="network") from e
        session = res.session
        return {"user_id": res.user.id, "access_token": session.access_token if session else None}

    def sign_out(self) -> None:
        try:
            self.client.auth.sign_out()
        except SupabaseAuthError as e:
            logger.warning("auth call failed: %s", e)
            raise RepoError(str(e), kind="auth") from e
        except httpx.HTTPError as e:
            logger.error("auth call failed: network error %s", e)
            raise RepoError(str(e), kind="network") from e

    def current_user_id(self) -> Optional[str]:
        try:
            res = self.client.auth.get_user()
        except SupabaseAuthError as e:
            logger.warning("auth call failed: %s", e)
            raise RepoError(str(e), kind="auth") from e
        except httpx.HTTPError as e:
            logger.error("auth call failed: network error %s", e)
            raise RepoError(str(e), kind="network") from e
        return res.user.id if res and res.user else None

# --- In-memory repo (unit tests and local runs without a backend) ---
_TABLE_DEFAULTS = {
    "movie_recommendations": {"status": "pending", "opened_at": None, "watched_at": None},
    "music_recommendations": {"status": "pending", "opened_at": None, "consumed_at": None},
    "book_recommendations": {"status": "pending", "opened_at": None, "read_at": None},
    "game_recommendations": {"status": "pending", "opened_at": None, "played_at": None},
    "invite_codes": {"is_active": True, "max_uses": 1, "current_uses": 0, "used_by": None,
                     "expires_at": None, "used_at": None, "notes": None},
    "tasks": {"status": "todo", "board_id": None, "section_id": None, "completed_at": None,
              "archived_at": None, "tags": None},
    "user_profiles": {"role": "user", "is_admin": False, "bio": None},
    "user_watchlist": {"watched": False, "watched_at": None},
}

_SIGNIN_LIMIT = (5, timedelta(minutes=15))
_SIGNUP_LIMIT = (3, timedelta(minutes=60))

class InMemoryRepo:
    def __init__(self):
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        self._accounts: Dict[str, Dict[str, str]] = {}
        self._session: Optional[str] = None
        self._attempts: Dict[str, List[datetime]] = {}
        self._blocked: Dict[str, datetime] = {}
        self._last_stamp: Optional[datetime] = None
        self._lock = threading.RLock()
        self._views = {
            "movie_recommendations_with_users": lambda: self._with_users("movie_recommendations"),
            "book_recommendations_with_users": lambda: self._with_users("book_recommendations"),
            "game_recommendations_with_users": lambda: self._with_users("game_recommendations"),
            "task_boards_with_stats": self._boards_with_stats,
            "media_lists_with_counts": self._lists_with_counts,
        }
        self._rpcs = {
            "validate_invite_code": self._rpc_validate_invite_code,
            "consume_invite_code": self._rpc_consume_invite_code,
            "create_bidirectional_connection": self._rpc_create_connection,
            "check_signin_rate_limit": lambda user_email: self._rpc_rate_limit("signin", user_email),
            "check_signup_rate_limit": lambda user_email: self._rpc_rate_limit("signup", user_email),
            "reset_auth_rate_limit": self._rpc_reset_rate_limit,
            "log_admin_action": self._rpc_log_admin_action,
        }

    @contextmanager
    def locked(self):
        with self._lock:
            yield

    # strictly increasing timestamps keep "newest first" ordering deterministic
    def _stamp(self) -> str:
        now = datetime.now(timezone.utc)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now.isoformat()

    def table(self, name: str) -> List[Dict[str, Any]]:
        return self._tables.setdefault(name, [])

    def _rows(self, name: str) -> List[Dict[str, Any]]:
        if name in self._views:
            return self._views[name]()
        return self.table(name)

    # helpers for seeding
    def add_user(self, display_name: str, email: Optional[str] = None, role: str = "user",
                 user_id: Optional[str] = None, password: Optional[str] = None) -> str:
        uid = user_id or str(uuid.uuid4())
        with self.locked():
            self.table("user_profiles").append({
                **_TABLE_DEFAULTS["user_profiles"],
                "user_id": uid, "display_name": display_name, "email": email, "role": role,
                "is_admin": role in ("admin", "super_admin"),
                "created_at": self._stamp(), "updated_at": None,
            })
            if email and password:
                self._accounts[email.lower()] = {"id": uid, "password": password}
        return uid

    def set_session(self, user_id: Optional[str]) -> None:
        self._session = user_id

    # -- filtering --
    @staticmethod
    def _like(pattern: str, value: Any) -> bool:
        if value is None:
            return False
        rx = "^" + ".*".join(re.escape(p) for p in str(pattern).split("%")) + "$"
        return re.match(rx, str(value), re.IGNORECASE | re.DOTALL) is not None

    @staticmethod
    def _split_or(expr: str) -> List[str]:
        """Split a PostgREST or-expression at top-level commas; double-quoted values stay whole."""
        parts, buf = [], []
        quoted = escaped = False
        for ch in expr:
            if escaped:
                escaped = False
            elif ch == "\\" and quoted:
                escaped = True
            elif ch == '"':
                quoted = not quoted
            elif ch == "," and not quoted:
                parts.append("".join(buf))
                buf = []
                continue
            buf.append(ch)
        parts.append("".join(buf))
        return parts

    @classmethod
    def _or_matches(cls, row: Dict[str, Any], expr: str) -> bool:
        for part in cls._split_or(expr):
            col, op, val = part.split(".", 2)
            if len(val) >= 2 and val[0] == val[-1] == '"':
                val = re.sub(r"\\(.)", r"\1", val[1:-1])
            if cls._matches(row, [(op, col, val)]):
                return True
        return False

    @classmethod
    def _matches(cls, row: Dict[str, Any], filters: Iterable[Filter]) -> bool:
        for op, col, val in filters:
            cur = row.get(col) if col else None
            if op == "eq" and cur != val:
                return False
            if op == "neq" and cur == val:
                return False
            if op == "is" and cur is not val:
                return False
            if op == "gte" and (cur is None or cur < val):
                return False
            if op == "lte" and (cur is None or cur > val):
                return False
            if op == "in" and cur not in list(val):
                return False
            if op == "ov" and not set(cur or []) & set(val):
                return False
            if op == "ilike" and not cls._like(val, cur):
                return False
            if op == "or" and not cls._or_matches(row, val):
                return False
        return True

    @staticmethod
    def _sorted(rows: List[Dict[str, Any]], order: Sequence[Order]) -> List[Dict[str, Any]]:
        for col, desc in reversed(list(order)):
            present = [r for r in rows if r.get(col) is not None]
            missing = [r for r in rows if r.get(col) is None]
            present.sort(key=lambda r: r[col], reverse=desc)
            rows = present + missing
        return rows

    # -- table operations --
    def select(self, table: str, columns: str = "*", filters: Sequence[Filter] = (),
               order: Sequence[Order] = (), limit: Optional[int] = None,
               offset: Optional[int] = None) -> List[Dict[str, Any]]:
        with self.locked():
            rows = [dict(r) for r in self._rows(table) if self._matches(r, filters)]
        rows = self._sorted(rows, order)
        start = offset or 0
        rows = rows[start:start + limit] if limit is not None else rows[start:]
        if columns != "*":
            wanted = [c.strip() for c in columns.split(",")]
            rows = [{c: r.get(c) for c in wanted} for r in rows]
        return rows

    def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        with self.locked():
            return sum(1 for r in self._rows(table) if self._matches(r, filters))

    def insert(self, table: str, rows) -> List[Dict[str, Any]]:
        if isinstance(rows, dict):
            rows = [rows]
        created = []
        with self.locked():
            for r in rows:
                row = {**_TABLE_DEFAULTS.get(table, {}), **r}
                row.setdefault("id", str(uuid.uuid4()))
                row.setdefault("created_at", self._stamp())
                if table == "user_watchlist":
                    row.setdefault("added_at", row["created_at"])
                self.table(table).append(row)
                created.append(dict(row))
        return created

    def upsert(self, table: str, rows, on_conflict: str) -> List[Dict[str, Any]]:
        if isinstance(rows, dict):
            rows = [rows]
        keys = [k.strip() for k in on_conflict.split(",")]
        out = []
        with self.locked():
            for r in rows:
                existing = [x for x in self.table(table) if all(x.get(k) == r.get(k) for k in keys)]
                if existing:
                    existing[0].update(r)
                    out.append(dict(existing[0]))
                else:
                    out.extend(self.insert(table, [r]))
        return out

    def update(self, table: str, values: Dict[str, Any], filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        out = []
        with self.locked():
            for r in self.table(table):
                if self._matches(r, filters):
                    r.update(values)
                    out.append(dict(r))
        return out

    def delete(self, table: str, filters: Sequence[Filter]) -> List[Dict[str, Any]]:
        with self.locked():
            rows = self.table(table)
            gone = [r for r in rows if self._matches(r, filters)]
            self._tables[table] = [r for r in rows if not self._matches(r, filters)]
        return gone

    def rpc(self, name: str, params: Dict[str, Any]):
        fn = self._rpcs.get(name)
        if fn is None:
            raise RepoError(f"function {name} does not exist", kind="setup", code="PGRST202")
        with self.locked():
            return fn(**params)

    # -- views --
    def _names(self) -> Dict[str, str]:
        return {p["user_id"]: p.get("display_name") for p in self.table("user_profiles")}

    def _with_users(self, base: str) -> List[Dict[str, Any]]:
        names = self._names()
        return [{**r, "sender_name": names.get(r.get("from_user_id")),
                 "recipient_name": names.get(r.get("to_user_id"))} for r in self.table(base)]

    def _boards_with_stats(self) -> List[Dict[str, Any]]:
        out = []
        for b in self.table("task_boards"):
            tasks = [t for t in self.table("tasks") if t.get("board_id") == b["id"]]
            out.append({**b, "task_count": len(tasks),
                        "completed_count": sum(1 for t in tasks if t.get("status") == "done")})
        return out

    def _lists_with_counts(self) -> List[Dict[str, Any]]:
        me = self._session
        member_of = {m["list_id"] for m in self.table("media_list_members") if m.get("user_id") == me}
        out = []
        for lst in self.table("media_lists"):
            if lst.get("owner_id") != me and lst["id"] not in member_of and not lst.get("is_public"):
                continue
            items = [i for i in self.table("media_list_items") if i.get("list_id") == lst["id"]]
            out.append({**lst, "item_count": len(items)})
        return out

    # -- rpc emulation --
    def _find_code(self, code: str) -> Optional[Dict[str, Any]]:
        for r in self.table("invite_codes"):
            if r.get("code") == code:
                return r
        return None

    def _rpc_validate_invite_code(self, code_to_check: str) -> bool:
        row = self._find_code(code_to_check)
        return bool(row) and InviteCode.from_row(row).is_usable()

    def _rpc_consume_invite_code(self, code_to_use: str, user_id: str) -> bool:
        row = self._find_code(code_to_use)
        if not row or not InviteCode.from_row(row).is_usable():
            return False
        row["current_uses"] += 1
        row["used_by"] = user_id
        row["used_at"] = self._stamp()
        return True

    def _rpc_create_connection(self, user_a: str, user_b: str) -> None:
        conns = self.table("connections")
        for a, b in ((user_a, user_b), (user_b, user_a)):
            if not any(c["user_id"] == a and c["friend_id"] == b for c in conns):
                conns.append({"id": str(uuid.uuid4()), "user_id": a, "friend_id": b,
                              "created_at": self._stamp()})

    def _rpc_rate_limit(self, kind: str, user_email: str) -> Dict[str, Any]:
        limit, window = _SIGNIN_LIMIT if kind == "signin" else _SIGNUP_LIMIT
        key = f"{kind}:{user_email.strip().lower()}"
        now = datetime.now(timezone.utc)
        blocked = self._blocked.get(key)
        if blocked and blocked > now:
            return {"allowed": False, "error": self._limit_message(kind)}
        attempts = [t for t in self._attempts.get(key, []) if t > now - window]
        if len(attempts) >= limit:
            self._blocked[key] = now + window
            self._attempts[key] = attempts
            return {"allowed": False, "error": self._limit_message(kind)}
        attempts.append(now)
        self._attempts[key] = attempts
        return {"allowed": True}

    @staticmethod
    def _limit_message(kind: str) -> str:
        if kind == "signin":
            return "Too many login attempts. Please try again in 15 minutes."
        return "Too many signup attempts. Please try again later."

    def _rpc_reset_rate_limit(self, user_email: str, auth_type: str) -> None:
        key = f"{auth_type}:{user_email.strip().lower()}"
        self._attempts.pop(key, None)
        self._blocked.pop(key, None)

    def _rpc_log_admin_action(self, p_action: str, p_target_user_id: Optional[str] = None,
                              p_details: Optional[Dict[str, Any]] = None) -> None:
        self.table("admin_audit_log").append({
            "id": str(uuid.uuid4()), "admin_user_id": self._session, "action": p_action,
            "target_user_id": p_target_user_id, "details": p_details or {}, "created_at": self._stamp(),
        })

    # -- auth --
    def sign_up(self, email: str, password: str) -> str:
        key = email.strip().lower()
        if key in self._accounts:
            raise RepoError("User already registered", kind="auth")
        uid = self.add_user(key.split("@")[0], email=key, password=password)
        self._session = uid
        return uid

    def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        acct = self._accounts.get(email.strip().lower())
        if not acct or acct["password"] != password:
            raise RepoError("Invalid login credentials", kind="auth")
        self._session = acct["id"]
        return {"user_id": acct["id"], "access_token": f"memory-{uuid.uuid4().hex}"}

    def sign_out(self) -> None:
        self._session = None

    def current_user_id(self) -> Optional[str]:
        return self._session
