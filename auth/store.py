"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper (same as catalog/store.py).
UserStore is the repository; _row_to_user / _row_to_session are the mappers.
Route and service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  No in-process locks. Email uniqueness is a UNIQUE index, so two racing
  registrations resolve to one IntegrityError. Session pruning runs inside
  the same transaction as the insert (engine.begin()), so a burst of logins
  for one user cannot leave more than MAX_SESSIONS rows behind.

Timestamps are ISO 8601 UTC strings with microsecond precision. The fixed
format makes lexicographic order equal chronological order, which the
ORDER BY created_at and expires_at comparisons rely on.

Layer rule: no imports from api/, catalog/, ged/, or mail/.
"""

from __future__ import annotations

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from auth.models import RefreshSession, Role, User
from core.db import make_engine, now_iso

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_key", String(36), nullable=False, unique=True),
    Column("name", String(100), nullable=False),
    Column("email", String(255), nullable=False, unique=True),  # always lower-cased
    Column("hashed_password", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("is_active", Integer, nullable=False, server_default="0"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("password_changed_at", String(32)),
    Column("verification_token", String(64), index=True),
    Column("verification_token_expires", String(32)),
    Column("reset_password_token", String(64), index=True),
    Column("reset_password_expires", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "refresh_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("token", Text, nullable=False),
    Column("jti", String(32), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("device", String(255), nullable=False),
    Column("ip", String(45)),
)


_UPDATABLE = {
    "name",
    "email",
    "hashed_password",
    "role",
    "is_active",
    "email_verified",
    "last_login",
    "password_changed_at",
    "verification_token",
    "verification_token_expires",
    "reset_password_token",
    "reset_password_expires",
}


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and RefreshSession entities.

    Usage:
        store = UserStore("sqlite:///immobilier.db")
        store.create_user(User(identity_key=str(uuid4()), name="Alice", email="alice@x.com", ...))
        user = store.get_by_email("alice@x.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email (or identity key)
        already exists. The API layer maps that to 409.
        """
        now = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    identity_key=user.identity_key,
                    name=user.name,
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    role=Role(user.role).value,
                    is_active=1 if user.is_active else 0,
                    email_verified=1 if user.email_verified else 0,
                    verification_token=user.verification_token,
                    verification_token_expires=user.verification_token_expires,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def _get_one(self, clause) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(clause)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        return self._get_one(_users.c.id == user_id)

    def get_by_identity_key(self, identity_key: str) -> User | None:
        return self._get_one(_users.c.identity_key == identity_key)

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively (emails are stored lower-cased)."""
        return self._get_one(_users.c.email == email.strip().lower())

    def get_by_verification_token(self, token: str) -> User | None:
        return self._get_one(_users.c.verification_token == token)

    def get_by_reset_token(self, token_hash: str) -> User | None:
        return self._get_one(_users.c.reset_password_token == token_hash)

    def email_taken(self, email: str, exclude_user_id: int | None = None) -> bool:
        stmt = select(func.count()).select_from(_users).where(_users.c.email == email.strip().lower())
        if exclude_user_id is not None:
            stmt = stmt.where(_users.c.id != exclude_user_id)
        with self.engine.connect() as conn:
            return (conn.execute(stmt).scalar() or 0) > 0

    def list_users(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        role: Role | None = None,
        is_active: bool | None = None,
        search: str | None = None,
    ) -> tuple[list[User], int]:
        """Return one page of users (newest first) and the total match count."""
        conditions = []
        if role is not None:
            conditions.append(_users.c.role == role.value)
        if is_active is not None:
            conditions.append(_users.c.is_active == (1 if is_active else 0))
        if search:
            needle = search.strip().lower()
            conditions.append(
                func.lower(_users.c.name).contains(needle, autoescape=True)
                | _users.c.email.contains(needle, autoescape=True)
            )
        query = _users.select().where(*conditions).order_by(_users.c.created_at.desc(), _users.c.id.desc())
        count = select(func.count()).select_from(_users).where(*conditions)
        with self.engine.connect() as conn:
            total = conn.execute(count).scalar() or 0
            rows = conn.execute(query.limit(limit).offset((page - 1) * limit)).fetchall()
        return [_row_to_user(r) for r in rows], total

    def stats(self) -> dict:
        """Return account counters for the admin dashboard."""
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(_users)).scalar() or 0
            active = conn.execute(select(func.count()).select_from(_users).where(_users.c.is_active == 1)).scalar()
            verified = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.email_verified == 1)
            ).scalar()
            by_role = conn.execute(select(_users.c.role, func.count()).group_by(_users.c.role)).fetchall()
        return {
            "total": total,
            "active": active or 0,
            "inactive": total - (active or 0),
            "verified": verified or 0,
            "by_role": {role.value: 0 for role in Role} | {r[0]: r[1] for r in by_role},
        }

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Unknown field names raise ValueError (fail fast, and column names never
        come from user input). Booleans are converted to 0/1 for SQLite and
        roles to their wire value. updated_at is always refreshed.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        for flag in ("is_active", "email_verified"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        if "email" in fields:
            fields["email"] = fields["email"].strip().lower()
        fields["updated_at"] = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=now_iso()))
            conn.commit()

    def delete_user(self, user_id: int) -> bool:
        """Permanently delete a user and every session it owns."""
        with self.engine.begin() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh sessions
    # ------------------------------------------------------------------

    def add_session(self, session: RefreshSession, max_sessions: int = 5) -> int:
        """Insert a session, then evict all but the max_sessions most recent.

        Runs in one transaction. Ordering is created_at DESC with the row id as
        tie-breaker, so two sessions created in the same microsecond still have
        a deterministic "newest".
        """
        created_at = session.created_at or now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.insert().values(
                    user_id=session.user_id,
                    token=session.token,
                    jti=session.jti,
                    expires_at=session.expires_at,
                    created_at=created_at,
                    device=session.device,
                    ip=session.ip,
                )
            )
            session_id = result.inserted_primary_key[0]
            stale_ids = [
                row.id
                for row in conn.execute(
                    select(_sessions.c.id)
                    .where(_sessions.c.user_id == session.user_id)
                    .order_by(_sessions.c.created_at.desc(), _sessions.c.id.desc())
                    .offset(max_sessions)
                ).fetchall()
            ]
            if stale_ids:
                conn.execute(_sessions.delete().where(_sessions.c.id.in_(stale_ids)))
        return session_id

    def get_sessions(self, user_id: int, include_expired: bool = False) -> list[RefreshSession]:
        """Return the user's sessions, newest first. Expired rows are skipped unless asked for."""
        query = _sessions.select().where(_sessions.c.user_id == user_id)
        if not include_expired:
            query = query.where(_sessions.c.expires_at > now_iso())
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_sessions.c.created_at.desc(), _sessions.c.id.desc())).fetchall()
        return [_row_to_session(r) for r in rows]

    def find_session(self, user_id: int, token: str) -> RefreshSession | None:
        """Return the live (unexpired) session holding exactly this refresh token."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _sessions.select().where(
                    (_sessions.c.user_id == user_id)
                    & (_sessions.c.token == token)
                    & (_sessions.c.expires_at > now_iso())
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, user_id: int, token: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.delete().where((_sessions.c.user_id == user_id) & (_sessions.c.token == token))
            )
            conn.commit()
        return result.rowcount > 0

    def delete_sessions(self, user_id: int) -> int:
        """Remove every session for a user (logout-all, password change)."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            conn.commit()
        return result.rowcount

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        identity_key=row.identity_key,
        name=row.name,
        email=row.email,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        is_active=bool(row.is_active),
        email_verified=bool(row.email_verified),
        last_login=row.last_login,
        password_changed_at=row.password_changed_at,
        verification_token=row.verification_token,
        verification_token_expires=row.verification_token_expires,
        reset_password_token=row.reset_password_token,
        reset_password_expires=row.reset_password_expires,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> RefreshSession:
    return RefreshSession(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        jti=row.jti,
        expires_at=row.expires_at,
        created_at=row.created_at,
        device=row.device,
        ip=row.ip,
    )
