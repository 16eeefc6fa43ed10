# MiastoAlert Identity
# Resolves a bearer token to a caller {id, role, city, banned}.
#
# Tokens are opaque session rows, not signed claims: every request re-reads
# the user row, so a ban, a role change or a city reset applies to tokens
# that were issued before it.
#
# Exactly one owner exists system-wide. It is provisioned once from
# OWNER_EMAIL / OWNER_PASSWORD by bootstrap_owner() at startup.

import logging
import os
import secrets
import time
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

import bcrypt

from db import adapt_sql, get_engine
from errors import Forbidden, NotFound, Unauthorized, ValidationError

log = logging.getLogger("miastoalert")


class Role(str, Enum):
    OWNER = "owner"
    MODERATOR = "moderator"
    USER = "user"


STAFF_ROLES = frozenset({Role.OWNER.value, Role.MODERATOR.value})

# Sentinel city written by a reset; forces the client to pick a city again.
CITY_UNSET = "DO_USTALENIA"
MAX_CITY_LENGTH = 100

SESSION_TTL_SEC = int(os.environ.get("MIASTOALERT_SESSION_TTL_SEC", str(30 * 86400)))

OWNER_EMAIL = os.environ.get("OWNER_EMAIL", "")
OWNER_PASSWORD = os.environ.get("OWNER_PASSWORD", "")
OWNER_CITY = os.environ.get("OWNER_CITY", "Warszawa")


@dataclass
class Caller:
    """The authenticated identity an engine operation runs on behalf of."""

    id: str
    role: str
    city: str
    banned: bool = False
    rating: int = 0

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    @property
    def has_city(self) -> bool:
        return bool(self.city) and self.city != CITY_UNSET

    def to_dict(self) -> dict:
        return asdict(self)


def _user_from_row(row) -> dict:
    user = dict(row)
    user["banned"] = bool(user.get("banned"))
    user.pop("password_hash", None)
    return user


def caller_from_user(user: dict) -> Caller:
    return Caller(
        id=user["id"],
        role=user["role"],
        city=user["city"],
        banned=bool(user.get("banned")),
        rating=int(user.get("rating") or 0),
    )


def normalize_city(city) -> str:
    """Validate a free-text city name chosen by the client."""
    if not isinstance(city, str) or not city.strip():
        raise ValidationError("City is required.")
    city = city.strip()
    if len(city) > MAX_CITY_LENGTH:
        raise ValidationError(f"City name longer than {MAX_CITY_LENGTH} characters.")
    if city == CITY_UNSET:
        raise ValidationError("City is required.")
    return city


# ── Passwords ─────────────────────────────────────────────────────────


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


# ── User Store ────────────────────────────────────────────────────────

_USER_COLUMNS = "id, role, email, city, rating, banned, created_at"


class UserStore:
    """Users and sessions on the shared store."""

    @staticmethod
    def create_user(role, city, email=None, password_hash=None, now=None) -> dict:
        user_id = f"user_{uuid.uuid4()}"
        created_at = time.time() if now is None else now
        with get_engine().transaction() as (conn, backend):
            conn.execute(
                adapt_sql(
                    "INSERT INTO users (id, role, email, password_hash, city, rating, banned, created_at) "
                    "VALUES (?, ?, ?, ?, ?, 0, ?, ?)",
                    backend,
                ),
                (user_id, role, email, password_hash, city, False, created_at),
            )
        return {
            "id": user_id,
            "role": role,
            "email": email,
            "city": city,
            "rating": 0,
            "banned": False,
            "created_at": created_at,
        }

    @staticmethod
    def get_user(user_id) -> Optional[dict]:
        with get_engine().connection() as (conn, backend):
            row = conn.execute(
                adapt_sql(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", backend),
                (user_id,),
            ).fetchone()
        return _user_from_row(row) if row else None

    @staticmethod
    def get_user_credentials(email) -> Optional[dict]:
        """User row including the password hash. Only login reads this."""
        with get_engine().connection() as (conn, backend):
            row = conn.execute(
                adapt_sql(f"SELECT {_USER_COLUMNS}, password_hash FROM users WHERE email = ?", backend),
                (email,),
            ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def list_owners() -> list:
        with get_engine().connection() as (conn, backend):
            rows = conn.execute(
                adapt_sql(f"SELECT {_USER_COLUMNS} FROM users WHERE role = ? ORDER BY created_at ASC", backend),
                (Role.OWNER.value,),
            ).fetchall()
        return [_user_from_row(r) for r in rows]

    @staticmethod
    def list_users(limit=200) -> list:
        with get_engine().connection() as (conn, backend):
            rows = conn.execute(
                adapt_sql(f"SELECT {_USER_COLUMNS} FROM users ORDER BY created_at DESC LIMIT ?", backend),
                (limit,),
            ).fetchall()
        return [_user_from_row(r) for r in rows]

    @staticmethod
    def update_user(user_id, **fields) -> bool:
        """Update role/city/banned. Returns False when the user does not exist."""
        allowed = {k: v for k, v in fields.items() if k in ("role", "city", "banned")}
        if not allowed:
            return False
        assignments = ", ".join(f"{k} = ?" for k in allowed)
        with get_engine().transaction() as (conn, backend):
            cur = conn.execute(
                adapt_sql(f"UPDATE users SET {assignments} WHERE id = ?", backend),
                (*allowed.values(), user_id),
            )
            return cur.rowcount > 0

    @staticmethod
    def delete_user(user_id) -> bool:
        """Remove a user. Their reports stay with author set to NULL."""
        with get_engine().transaction() as (conn, backend):
            cur = conn.execute(adapt_sql("DELETE FROM users WHERE id = ?", backend), (user_id,))
            return cur.rowcount > 0

    # ── Sessions ──

    @staticmethod
    def create_session(user_id, now=None) -> str:
        token = secrets.token_urlsafe(32)
        created_at = time.time() if now is None else now
        with get_engine().transaction() as (conn, backend):
            conn.execute(
                adapt_sql(
                    "INSERT INTO sessions (token, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
                    backend,
                ),
                (token, user_id, created_at, created_at + SESSION_TTL_SEC),
            )
        return token

    @staticmethod
    def get_session_user(token, now=None) -> Optional[dict]:
        """Live user row behind an unexpired session token."""
        now = time.time() if now is None else now
        with get_engine().connection() as (conn, backend):
            row = conn.execute(
                adapt_sql(
                    "SELECT u.id, u.role, u.email, u.city, u.rating, u.banned, u.created_at "
                    "FROM sessions s JOIN users u ON u.id = s.user_id "
                    "WHERE s.token = ? AND s.expires_at > ?",
                    backend,
                ),
                (token, now),
            ).fetchone()
        return _user_from_row(row) if row else None

    @staticmethod
    def delete_session(token):
        with get_engine().transaction() as (conn, backend):
            conn.execute(adapt_sql("DELETE FROM sessions WHERE token = ?", backend), (token,))

    @staticmethod
    def cleanup_expired_sessions(now=None) -> int:
        now = time.time() if now is None else now
        with get_engine().transaction() as (conn, backend):
            cur = conn.execute(adapt_sql("DELETE FROM sessions WHERE expires_at <= ?", backend), (now,))
            return cur.rowcount


# ── Capability checks ─────────────────────────────────────────────────


def resolve_caller(token: Optional[str], now=None) -> Optional[Caller]:
    """Caller behind a token, or None. Does not apply the ban gate."""
    if not token:
        return None
    user = UserStore.get_session_user(token, now=now)
    return caller_from_user(user) if user else None


def require_caller(token: Optional[str], now=None) -> Caller:
    """Authenticated, non-banned caller or raise."""
    if not token:
        raise Unauthorized("Authorization required.")
    caller = resolve_caller(token, now=now)
    if caller is None:
        raise Unauthorized("Invalid or expired token.")
    ensure_active(caller)
    return caller


def ensure_active(caller: Optional[Caller]):
    """Gate for every mutating operation."""
    if caller is None:
        raise Unauthorized("Authorization required.")
    if caller.banned:
        raise Forbidden("Account is banned.")


def require_role(caller: Optional[Caller], roles):
    ensure_active(caller)
    if caller.role not in roles:
        raise Forbidden("Insufficient permissions.")


# ── Flows ─────────────────────────────────────────────────────────────


def register_anonymous(city, now=None):
    """Create a plain user for the chosen city and issue a token."""
    city = normalize_city(city)
    user = UserStore.create_user(Role.USER.value, city, now=now)
    token = UserStore.create_session(user["id"], now=now)
    log.info("USER REGISTERED %s city=%s", user["id"], city)
    return token, user


def login(email, password, now=None):
    """Password login. Only the provisioned owner has credentials."""
    if not email or not password:
        raise ValidationError("Email and password are required.")
    record = UserStore.get_user_credentials(email)
    if not record or not verify_password(password, record.get("password_hash")):
        log.warning("LOGIN FAILED email=%s", email)
        raise Unauthorized("Invalid credentials.")
    if record.get("banned"):
        raise Forbidden("Account is banned.")
    token = UserStore.create_session(record["id"], now=now)
    return token, _user_from_row(record)


def select_city(caller: Caller, city) -> dict:
    """Pick a city again after a reset. A set city cannot be changed here."""
    ensure_active(caller)
    if caller.has_city:
        raise Forbidden("City already selected.")
    city = normalize_city(city)
    UserStore.update_user(caller.id, city=city)
    log.info("USER CITY SELECTED %s city=%s", caller.id, city)
    user = UserStore.get_user(caller.id)
    if user is None:
        raise NotFound("User does not exist.")
    return user


def bootstrap_owner(email=None, password=None, city=None, now=None) -> Optional[dict]:
    """Provision the single owner account if none exists.

    Raises RuntimeError when more than one owner is found; the service must
    not start in that state.
    """
    email = OWNER_EMAIL if email is None else email
    password = OWNER_PASSWORD if password is None else password
    city = OWNER_CITY if city is None else city

    owners = UserStore.list_owners()
    if len(owners) > 1:
        raise RuntimeError(
            f"Found {len(owners)} owner accounts; exactly one is allowed: "
            + ", ".join(o["id"] for o in owners)
        )
    if owners:
        return owners[0]

    if not email or not password:
        log.warning("OWNER_EMAIL and OWNER_PASSWORD are not set; admin panel unavailable until configured")
        return None

    owner = UserStore.create_user(
        Role.OWNER.value, normalize_city(city), email=email, password_hash=hash_password(password), now=now,
    )
    log.info("OWNER PROVISIONED %s email=%s", owner["id"], email)
    return owner
