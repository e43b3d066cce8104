# mediatrack/invites.py
import logging
import math
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from mediatrack.models import InviteCode
from mediatrack.repo import RepoError
from mediatrack.service import AuthError, NotFoundError, RateLimitError, SessionBound, ValidationError
from mediatrack.throttle import SlidingWindowThrottle

logger = logging.getLogger(__name__)

# no ambiguous characters (0, O, 1, I, L, S, Z)
CODE_ALPHABET = "ABCDEFGHJKMNPQRTUVWXY23456789"
CODE_SEGMENTS = 4
SEGMENT_LENGTH = 3
MAX_BATCH = 100
MIN_PASSWORD_LENGTH = 6

def generate_secure_code() -> str:
    """Random invite code shaped like XXX-XXX-XXX-XXX."""
    return "-".join(
        "".join(secrets.choice(CODE_ALPHABET) for _ in range(SEGMENT_LENGTH))
        for _ in range(CODE_SEGMENTS)
    )

def normalize_code(code: str) -> str:
    return (code or "").strip().upper()

class InviteService(SessionBound):
    """Invite codes gate sign-up. Creating and managing them is admin-only."""

    def validate(self, code: str) -> bool:
        code = normalize_code(code)
        if not code:
            return False
        return bool(self.repo.rpc("validate_invite_code", {"code_to_check": code}))

    def consume(self, code: str, user_id: str) -> bool:
        return bool(self.repo.rpc("consume_invite_code", {"code_to_use": normalize_code(code), "user_id": user_id}))

    def _row(self, uid: str, notes: Optional[str], max_uses: int, expires_in_days: Optional[int]) -> Dict[str, Any]:
        if max_uses < 1:
            raise ValidationError("max_uses must be >= 1")
        if expires_in_days is not None and expires_in_days < 1:
            raise ValidationError("expires_in_days must be >= 1")
        expires_at = None
        if expires_in_days:
            expires_at = (datetime.now(timezone.utc) + timedelta(days=expires_in_days)).isoformat()
        return {"code": generate_secure_code(), "created_by": uid, "notes": notes,
                "max_uses": max_uses, "expires_at": expires_at}

    def create(self, notes: Optional[str] = None, max_uses: int = 1,
               expires_in_days: Optional[int] = None) -> InviteCode:
        uid = self.require_admin()
        created = InviteCode.from_row(self.repo.insert("invite_codes", self._row(uid, notes, max_uses, expires_in_days))[0])
        logger.info("Created invite code id=%s", created.id)
        return created

    def batch_create(self, count: int, notes: Optional[str] = None, max_uses: int = 1,
                     expires_in_days: Optional[int] = None) -> List[InviteCode]:
        if count < 1 or count > MAX_BATCH:
            raise ValidationError(f"count must be between 1 and {MAX_BATCH}")
        uid = self.require_admin()
        rows = [self._row(uid, notes, max_uses, expires_in_days) for _ in range(count)]
        created = [InviteCode.from_row(r) for r in self.repo.insert("invite_codes", rows)]
        logger.info("Created %d invite codes", len(created))
        return created

    def list_all(self) -> List[InviteCode]:
        self.require_admin()
        rows = self.repo.select("invite_codes", order=[("created_at", True)])
        return [InviteCode.from_row(r) for r in rows]

    def list_mine(self) -> List[InviteCode]:
        uid = self.current_user_id()
        rows = self.repo.select("invite_codes", filters=[("eq", "created_by", uid)], order=[("created_at", True)])
        return [InviteCode.from_row(r) for r in rows]

    def revoke(self, code_id: str) -> None:
        self.require_admin()
        if not self.repo.update("invite_codes", {"is_active": False}, [("eq", "id", code_id)]):
            raise NotFoundError("invite code not found")
        logger.info("Revoked invite code id=%s", code_id)

    def delete(self, code_id: str) -> bool:
        self.require_admin()
        return bool(self.repo.delete("invite_codes", [("eq", "id", code_id)]))

    def stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        self.require_admin()
        now = now or datetime.now(timezone.utc)
        codes = [InviteCode.from_row(r) for r in self.repo.select("invite_codes")]
        return {
            "total": len(codes),
            "active": sum(1 for c in codes if c.is_usable(now)),
            "used": sum(1 for c in codes if c.current_uses >= c.max_uses),
            "expired": sum(1 for c in codes if c.is_expired(now)),
        }

class AuthService:
    """
    Invite-gated sign-up and throttled sign-in.
    `throttle` is the in-process guard consulted before the server-side
    rate-limit RPCs.
    """

    def __init__(self, repo, invites: InviteService, throttle: Optional[SlidingWindowThrottle] = None):
        self.repo = repo
        self.invites = invites
        self.throttle = throttle or SlidingWindowThrottle(5, 15 * 60)

    @staticmethod
    def _check_credentials(email: str, password: str) -> str:
        email = (email or "").strip().lower()
        if "@" not in email:
            raise ValidationError("a valid email is required")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        return email

    def _server_limit(self, rpc: str, email: str) -> None:
        verdict = self.repo.rpc(rpc, {"user_email": email}) or {}
        if not verdict.get("allowed", True):
            logger.warning("%s refused for %s", rpc, email)
            raise RateLimitError(verdict.get("error") or "Too many attempts. Please try again later.")

    def sign_up(self, email: str, password: str, invite_code: str) -> str:
        email = self._check_credentials(email, password)
        if not self.invites.validate(invite_code):
            logger.warning("sign_up: invalid invite code for %s", email)
            raise ValidationError("Invalid or expired invite code")
        self._server_limit("check_signup_rate_limit", email)
        try:
            user_id = self.repo.sign_up(email, password)
        except RepoError as e:
            if e.kind == "auth":
                raise ValidationError(str(e)) from e
            raise
        # the account exists at this point, so a failed consume only gets logged
        try:
            if not self.invites.consume(invite_code, user_id):
                logger.error("Invite code was not consumed for new user %s", user_id)
        except RepoError as e:
            logger.error("Failed to consume invite code for %s: %s", user_id, e)
        logger.info("Signed up user %s", user_id)
        return user_id

    def sign_in(self, email: str, password: str) -> Dict[str, Any]:
        key = (email or "").strip().lower()
        if not key or not password:
            raise ValidationError("email and password required")
        allowed, retry_after = self.throttle.hit(key)
        if not allowed:
            logger.warning("sign_in throttled for %s", key)
            raise RateLimitError(f"Too many login attempts. Please try again in {math.ceil(retry_after)} seconds.",
                                 retry_after)
        self._server_limit("check_signin_rate_limit", key)
        try:
            session = self.repo.sign_in(key, password)
        except RepoError as e:
            if e.kind == "auth":
                logger.info("sign_in failed for %s", key)
                raise AuthError("Invalid login credentials") from e
            raise
        self.repo.rpc("reset_auth_rate_limit", {"user_email": key, "auth_type": "signin"})
        self.throttle.reset(key)
        logger.info("Signed in user %s", session["user_id"])
        return session

    def sign_out(self) -> None:
        self.repo.sign_out()

    def current_user_id(self) -> Optional[str]:
        return self.repo.current_user_id()
