"""Database models and operations using SQLAlchemy."""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    String,
    create_engine,
    delete,
    or_,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from reeltrack.errors import AuthError, NotFoundError, PersistenceError, StaleDocumentError
from reeltrack.models import (
    MOVIE,
    ActivityRecord,
    FriendRequest,
    MediaRef,
    WatchlistDocument,
    WatchlistEntry,
    check_kind,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    """Naive UTC timestamp, as SQLite stores it."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class UserDB(Base):
    """Public profile plus credentials."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    username = Column(String(30), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)

    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    def to_dict(self, friends: Optional[list[str]] = None, include_secret: bool = False) -> dict:
        data = {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "friends": list(friends or []),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_secret:
            data["password_hash"] = self.password_hash
        return data


class FriendshipDB(Base):
    """One direction of a friendship; an accepted request writes both."""

    __tablename__ = "friendships"

    user_id = Column(String(36), primary_key=True)
    friend_id = Column(String(36), primary_key=True)
    created_at = Column(DateTime, default=_now)


class _WatchlistColumns:
    """One row per user: the three lists as JSON arrays."""

    user_id = Column(String(36), primary_key=True)
    watching = Column(JSON, nullable=False, default=list)
    completed = Column(JSON, nullable=False, default=list)
    planned = Column(JSON, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, default=_now, onupdate=_now)


class MovieWatchlistDB(_WatchlistColumns, Base):
    __tablename__ = "moviewatchlist"


class TVWatchlistDB(_WatchlistColumns, Base):
    __tablename__ = "tvwatchlist"


class FriendRequestDB(Base):
    __tablename__ = "friend_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_id = Column(String(36), nullable=False, index=True)
    receiver_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending")  # pending, accepted, declined
    created_at = Column(DateTime, default=_now)

    def to_model(self, sender_username: Optional[str] = None) -> FriendRequest:
        return FriendRequest(
            id=self.id,
            sender_id=self.sender_id,
            receiver_id=self.receiver_id,
            status=self.status,
            created_at=self.created_at,
            sender_username=sender_username,
        )


class _ActivityColumns:
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), nullable=False, index=True)
    media_id = Column(Integer, nullable=False)
    title = Column(String(500), nullable=False)
    poster_path = Column(String(500), nullable=True)
    action = Column(String(100), nullable=False)
    timestamp = Column(DateTime, default=_now, index=True)


class MovieActivityDB(_ActivityColumns, Base):
    __tablename__ = "movie_activities"


class TVActivityDB(_ActivityColumns, Base):
    __tablename__ = "tv_activities"


class AuthSessionDB(Base):
    __tablename__ = "auth_sessions"

    token = Column(String(64), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    created_at = Column(DateTime, default=_now)
    expires_at = Column(DateTime, nullable=False)


WATCHLIST_TABLES = {MOVIE: MovieWatchlistDB, "tv": TVWatchlistDB}
ACTIVITY_TABLES = {MOVIE: MovieActivityDB, "tv": TVActivityDB}


class Database:
    """Database operations."""

    def __init__(self, db_path: Path = Path("data/reeltrack.db")):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def get_session(self) -> Session:
        return self.SessionLocal()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session that commits on success and turns driver errors into PersistenceError."""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise PersistenceError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ============== Users ==============

    @staticmethod
    def _friend_ids(session: Session, user_ids: list[str]) -> dict[str, list[str]]:
        """Friend ids per user, oldest friendship first."""
        friends: dict[str, list[str]] = {user_id: [] for user_id in user_ids}
        if not user_ids:
            return friends
        rows = (
            session.query(FriendshipDB.user_id, FriendshipDB.friend_id)
            .filter(FriendshipDB.user_id.in_(user_ids))
            .order_by(FriendshipDB.created_at, FriendshipDB.friend_id)
            .all()
        )
        for user_id, friend_id in rows:
            friends[user_id].append(friend_id)
        return friends

    def _user_dict(self, session: Session, user: Optional[UserDB], include_secret: bool = False) -> Optional[dict]:
        if not user:
            return None
        return user.to_dict(friends=self._friend_ids(session, [user.id])[user.id], include_secret=include_secret)

    def _user_dicts(self, session: Session, users: list[UserDB]) -> list[dict]:
        friends = self._friend_ids(session, [u.id for u in users])
        return [u.to_dict(friends=friends[u.id]) for u in users]

    def create_user(self, user_id: str, username: str, email: str, password_hash: str) -> dict:
        """Insert a profile. Duplicate username or email raises AuthError."""
        try:
            with self.transaction() as session:
                user = UserDB(
                    id=user_id,
                    username=username,
                    email=email,
                    password_hash=password_hash,
                )
                session.add(user)
                session.flush()
                return user.to_dict()
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise AuthError("Username or email already registered") from e
            raise

    def get_user(self, user_id: str) -> Optional[dict]:
        with self.transaction() as session:
            return self._user_dict(session, session.get(UserDB, user_id))

    def get_user_by_username(self, username: str) -> Optional[dict]:
        with self.transaction() as session:
            user = session.query(UserDB).filter(UserDB.username == username.lower()).first()
            return self._user_dict(session, user)

    def get_user_by_email(self, email: str, include_secret: bool = False) -> Optional[dict]:
        with self.transaction() as session:
            user = session.query(UserDB).filter(UserDB.email == email.lower()).first()
            return self._user_dict(session, user, include_secret=include_secret)

    def get_users(self, user_ids: list[str]) -> list[dict]:
        if not user_ids:
            return []
        with self.transaction() as session:
            users = session.query(UserDB).filter(UserDB.id.in_(user_ids)).all()
            return self._user_dicts(session, users)

    def search_users(self, query: str, exclude_ids: Optional[list[str]] = None, limit: int = 10) -> list[dict]:
        """Case-insensitive username search. `%`, `_` and `\\` in the query match literally."""
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self.transaction() as session:
            q = session.query(UserDB).filter(UserDB.username.ilike(f"%{escaped}%", escape="\\"))
            if exclude_ids:
                q = q.filter(UserDB.id.notin_(exclude_ids))
            return self._user_dicts(session, q.order_by(UserDB.username).limit(limit).all())

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self.transaction() as session:
            user = session.get(UserDB, user_id)
            if not user:
                raise NotFoundError(f"Unknown user {user_id}")
            user.password_hash = password_hash

    def update_email(self, user_id: str, email: str) -> dict:
        """Change a user's email. An address held by another account raises AuthError."""
        try:
            with self.transaction() as session:
                user = session.get(UserDB, user_id)
                if not user:
                    raise NotFoundError(f"Unknown user {user_id}")
                user.email = email.lower()
                session.flush()
                return self._user_dict(session, user)
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise AuthError("Email already registered") from e
            raise

    # ============== Watchlists ==============

    def get_watchlist(self, user_id: str, kind: str) -> Optional[WatchlistDocument]:
        """Load one user's document for a media kind, or None if never written."""
        table = WATCHLIST_TABLES[check_kind(kind)]
        with self.transaction() as session:
            row = session.get(table, user_id)
            if not row:
                return None
            return WatchlistDocument(
                user_id=user_id,
                kind=kind,
                watching=[WatchlistEntry.from_dict(e, kind) for e in row.watching or []],
                completed=[WatchlistEntry.from_dict(e, kind) for e in row.completed or []],
                planned=[WatchlistEntry.from_dict(e, kind) for e in row.planned or []],
                version=row.version,
            )

    def save_watchlist(self, document: WatchlistDocument) -> int:
        """
        Upsert all three lists keyed on user_id.

        The write only lands if the stored version still equals
        document.version (0 meaning "no row yet"); otherwise
        StaleDocumentError is raised. Returns the new version.
        """
        table = WATCHLIST_TABLES[check_kind(document.kind)]
        lists = document.lists_to_dict()
        expected = document.version

        try:
            with self.transaction() as session:
                if expected == 0:
                    session.add(table(user_id=document.user_id, version=1, **lists))
                    session.flush()
                    return 1

                updated = (
                    session.query(table)
                    .filter(table.user_id == document.user_id, table.version == expected)
                    .update(
                        {**lists, "version": expected + 1, "updated_at": _now()},
                        synchronize_session=False,
                    )
                )
                if updated != 1:
                    raise StaleDocumentError(
                        f"{document.kind} watchlist of {document.user_id} changed since version {expected}"
                    )
                return expected + 1
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise StaleDocumentError(
                    f"{document.kind} watchlist of {document.user_id} was created concurrently"
                ) from e
            raise

    # ============== Activities ==============

    def add_activity(self, record: ActivityRecord) -> None:
        table = ACTIVITY_TABLES[record.media.kind]
        with self.transaction() as session:
            session.add(
                table(
                    user_id=record.user_id,
                    media_id=record.media.id,
                    title=record.title,
                    poster_path=record.poster_path,
                    action=record.action,
                    timestamp=record.timestamp.astimezone(timezone.utc).replace(tzinfo=None),
                )
            )

    def get_activities(self, user_ids: list[str], kind: str, limit: int = 10) -> list[ActivityRecord]:
        """Newest activities of the given users for one media kind."""
        if not user_ids:
            return []
        table = ACTIVITY_TABLES[check_kind(kind)]
        with self.transaction() as session:
            rows = (
                session.query(table)
                .filter(table.user_id.in_(user_ids))
                .order_by(table.timestamp.desc(), table.id.desc())
                .limit(limit)
                .all()
            )
            return [
                ActivityRecord(
                    user_id=r.user_id,
                    media=MediaRef(r.media_id, kind),
                    title=r.title,
                    poster_path=r.poster_path,
                    action=r.action,
                    timestamp=r.timestamp.replace(tzinfo=timezone.utc),
                )
                for r in rows
            ]

    # ============== Friends ==============

    def create_friend_request(self, sender_id: str, receiver_id: str) -> FriendRequest:
        with self.transaction() as session:
            row = FriendRequestDB(sender_id=sender_id, receiver_id=receiver_id, status="pending")
            session.add(row)
            session.flush()
            return row.to_model()

    def get_friend_request(self, request_id: int) -> Optional[FriendRequest]:
        with self.transaction() as session:
            row = session.get(FriendRequestDB, request_id)
            return row.to_model() if row else None

    def find_pending_request(self, user_a: str, user_b: str) -> Optional[FriendRequest]:
        """A pending request between two users, in either direction."""
        with self.transaction() as session:
            row = (
                session.query(FriendRequestDB)
                .filter(
                    FriendRequestDB.status == "pending",
                    or_(
                        (FriendRequestDB.sender_id == user_a) & (FriendRequestDB.receiver_id == user_b),
                        (FriendRequestDB.sender_id == user_b) & (FriendRequestDB.receiver_id == user_a),
                    ),
                )
                .first()
            )
            return row.to_model() if row else None

    def list_friend_requests(
        self,
        receiver_id: Optional[str] = None,
        sender_id: Optional[str] = None,
        status: str = "pending",
    ) -> list[FriendRequest]:
        with self.transaction() as session:
            query = session.query(FriendRequestDB, UserDB.username).outerjoin(
                UserDB, UserDB.id == FriendRequestDB.sender_id
            )
            if receiver_id is not None:
                query = query.filter(FriendRequestDB.receiver_id == receiver_id)
            if sender_id is not None:
                query = query.filter(FriendRequestDB.sender_id == sender_id)
            query = query.filter(FriendRequestDB.status == status)
            rows = query.order_by(FriendRequestDB.created_at.desc(), FriendRequestDB.id.desc()).all()
            return [row.to_model(sender_username=username) for row, username in rows]

    def delete_friend_request(self, request_id: int) -> bool:
        with self.transaction() as session:
            row = session.get(FriendRequestDB, request_id)
            if row:
                session.delete(row)
                return True
            return False

    def accept_friend_request(self, request_id: int, accepter_id: str) -> FriendRequest:
        """
        Mark a pending request accepted and insert the friendship in both
        directions, all in one transaction.

        The status flip is a conditional UPDATE, so of two concurrent accepts
        of the same request only one sees a matching row. Friendship rows are
        inserted, never rewritten, so accepts of different requests for the
        same user do not overwrite each other.
        """
        with self.transaction() as session:
            flipped = session.execute(
                update(FriendRequestDB)
                .where(
                    FriendRequestDB.id == request_id,
                    FriendRequestDB.status == "pending",
                    FriendRequestDB.receiver_id == accepter_id,
                )
                .values(status="accepted")
            ).rowcount
            if not flipped:
                raise NotFoundError(f"No pending friend request {request_id} for {accepter_id}")

            request = session.get(FriendRequestDB, request_id)
            sender = session.get(UserDB, request.sender_id)
            receiver = session.get(UserDB, request.receiver_id)
            if not sender or not receiver:
                raise NotFoundError(f"Friend request {request_id} references a missing user")

            now = _now()
            session.execute(
                sqlite_insert(FriendshipDB.__table__)
                .values(
                    [
                        {"user_id": sender.id, "friend_id": receiver.id, "created_at": now},
                        {"user_id": receiver.id, "friend_id": sender.id, "created_at": now},
                    ]
                )
                .on_conflict_do_nothing(index_elements=["user_id", "friend_id"])
            )
            return request.to_model(sender_username=sender.username)

    def remove_friendship(self, user_id: str, friend_id: str) -> None:
        """Delete both directions of the friendship in one transaction."""
        with self.transaction() as session:
            session.execute(
                delete(FriendshipDB).where(
                    or_(
                        (FriendshipDB.user_id == user_id) & (FriendshipDB.friend_id == friend_id),
                        (FriendshipDB.user_id == friend_id) & (FriendshipDB.friend_id == user_id),
                    )
                )
            )
            user = session.get(UserDB, user_id)
            friend = session.get(UserDB, friend_id)
            if not user or not friend:
                raise NotFoundError(f"Unknown user {user_id if not user else friend_id}")

    # ============== Auth sessions ==============

    def create_auth_session(self, token: str, user_id: str, expires_at: datetime) -> None:
        with self.transaction() as session:
            session.add(
                AuthSessionDB(
                    token=token,
                    user_id=user_id,
                    expires_at=expires_at.astimezone(timezone.utc).replace(tzinfo=None),
                )
            )

    def get_auth_session(self, token: str) -> Optional[dict]:
        with self.transaction() as session:
            row = session.get(AuthSessionDB, token)
            if not row:
                return None
            return {
                "token": row.token,
                "user_id": row.user_id,
                "created_at": row.created_at.replace(tzinfo=timezone.utc),
                "expires_at": row.expires_at.replace(tzinfo=timezone.utc),
            }

    def delete_auth_session(self, token: str) -> bool:
        with self.transaction() as session:
            row = session.get(AuthSessionDB, token)
            if row:
                session.delete(row)
                return True
            return False
