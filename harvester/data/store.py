"""Persistence helpers for profiles, posts, follow edges and collection tasks."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, TypeVar

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    or_,
    select,
    tuple_,
)
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import DBAPIError, OperationalError

from ..config import DatabaseSettings
from ..errors import StoreUnavailable


LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

TASK_STATUS_PENDING = "pending"
TASK_STATUS_RUNNING = "running"
TASK_STATUS_COMPLETED = "completed"
TASK_STATUS_FAILED = "failed"

FREQUENCY_ALL = "all"

USER_COLUMNS = (
    "handle",
    "external_id",
    "display_name",
    "bio",
    "location",
    "website",
    "verified",
    "blue_verified",
    "followers_count",
    "following_count",
    "posts_count",
    "avatar_url",
    "banner_url",
)

POST_COLUMNS = (
    "post_id",
    "user_id",
    "parent_post_id",
    "conversation_id",
    "text",
    "language",
    "post_type",
    "view_count",
    "reply_count",
    "repost_count",
    "quote_count",
    "favorite_count",
    "bookmark_count",
    "published_at",
    "post_url",
    "source",
    "hashtags",
    "urls",
    "media_type",
    "media_urls",
)

COUNTER_COLUMNS = (
    "view_count",
    "reply_count",
    "repost_count",
    "quote_count",
    "favorite_count",
    "bookmark_count",
)


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation every table column uses."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield items[start:start + size]


@dataclass(frozen=True)
class HarvestTask:
    """A scheduled (entity, data-type) collection obligation."""

    id: int
    handle: str
    data_type: str
    max_count: Optional[int]
    enabled: bool
    status: str
    last_run_at: Optional[datetime]
    next_run_at: Optional[datetime]
    error_message: Optional[str]
    frequency_tier: Optional[str]
    avg_posts_per_day: Optional[float]
    last_post_count: Optional[int]


class HarvestStore:
    """Typed wrapper around the relational entity store."""

    USER_TABLE = "users"
    POST_TABLE = "posts"
    FOLLOW_TABLE = "follows"
    TASK_TABLE = "tasks"
    _RETRYABLE_ERRORS = (
        "disk i/o error",
        "database is locked",
        "lost connection",
        "server has gone away",
        "deadlock",
    )
    _LOOKUP_CHUNK_SIZE = 500

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._metadata = MetaData()
        self._user_table = Table(
            self.USER_TABLE,
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("handle", String(64), nullable=False),
            Column("external_id", String(64), nullable=True),
            Column("display_name", String(255), nullable=True),
            Column("bio", Text, nullable=True),
            Column("location", String(255), nullable=True),
            Column("website", String(512), nullable=True),
            Column("verified", Boolean, nullable=True),
            Column("blue_verified", Boolean, nullable=True),
            Column("followers_count", Integer, nullable=True),
            Column("following_count", Integer, nullable=True),
            Column("posts_count", Integer, nullable=True),
            Column("avatar_url", String(1024), nullable=True),
            Column("banner_url", String(1024), nullable=True),
            Column("created_at", DateTime(timezone=False), nullable=False),
            Column("updated_at", DateTime(timezone=False), nullable=False),
            UniqueConstraint("handle", name="uq_users_handle"),
            UniqueConstraint("external_id", name="uq_users_external_id"),
        )
        self._post_table = Table(
            self.POST_TABLE,
            self._metadata,
            Column("post_id", String(64), primary_key=True),
            Column("user_id", Integer, nullable=False),
            Column("parent_post_id", String(64), nullable=True),
            Column("conversation_id", String(64), nullable=True),
            Column("text", Text, nullable=True),
            Column("language", String(16), nullable=True),
            Column("post_type", String(16), nullable=True),
            Column("view_count", Integer, nullable=False, default=0),
            Column("reply_count", Integer, nullable=False, default=0),
            Column("repost_count", Integer, nullable=False, default=0),
            Column("quote_count", Integer, nullable=False, default=0),
            Column("favorite_count", Integer, nullable=False, default=0),
            Column("bookmark_count", Integer, nullable=False, default=0),
            Column("published_at", DateTime(timezone=False), nullable=True),
            Column("post_url", String(512), nullable=True),
            Column("source", String(255), nullable=True),
            Column("hashtags", JSON, nullable=True),
            Column("urls", JSON, nullable=True),
            Column("media_type", String(32), nullable=True),
            Column("media_urls", JSON, nullable=True),
            Column("created_at", DateTime(timezone=False), nullable=False),
            Column("updated_at", DateTime(timezone=False), nullable=False),
            Index("ix_posts_user_id", "user_id"),
        )
        self._follow_table = Table(
            self.FOLLOW_TABLE,
            self._metadata,
            Column("source_user_id", Integer, nullable=False),
            Column("target_user_id", Integer, nullable=False),
            Column("created_at", DateTime(timezone=False), nullable=False),
            PrimaryKeyConstraint("source_user_id", "target_user_id", name="pk_follows"),
            Index("ix_follows_target", "target_user_id"),
        )
        self._task_table = Table(
            self.TASK_TABLE,
            self._metadata,
            Column("id", Integer, primary_key=True, autoincrement=True),
            Column("handle", String(64), nullable=False),
            Column("data_type", String(16), nullable=False),
            Column("max_count", Integer, nullable=True),
            Column("enabled", Boolean, nullable=False, default=True),
            Column("status", String(16), nullable=False, default=TASK_STATUS_PENDING),
            Column("last_run_at", DateTime(timezone=False), nullable=True),
            Column("next_run_at", DateTime(timezone=False), nullable=True),
            Column("error_message", Text, nullable=True),
            Column("frequency_tier", String(16), nullable=True),
            Column("avg_posts_per_day", Float, nullable=True),
            Column("last_post_count", Integer, nullable=True),
            Column("created_at", DateTime(timezone=False), nullable=False),
            Column("updated_at", DateTime(timezone=False), nullable=False),
            UniqueConstraint("handle", "data_type", name="uq_tasks_handle_type"),
            Index("ix_tasks_next_run", "next_run_at"),
        )
        self._execute_with_retry(
            "create_schema", lambda engine: self._metadata.create_all(engine, checkfirst=True)
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _execute_with_retry(
        self,
        op_name: str,
        fn: Callable[[Engine], T],
        *,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
    ) -> T:
        last_exc: Optional[OperationalError] = None
        message = ""
        for attempt in range(1, max_attempts + 1):
            try:
                return fn(self._engine)
            except OperationalError as exc:
                if getattr(exc, "orig", None) is not None:
                    message = str(exc.orig).lower()
                else:
                    message = str(exc).lower()

                if not any(token in message for token in self._RETRYABLE_ERRORS):
                    raise StoreUnavailable(op_name, message or str(exc)) from exc

                last_exc = exc
                LOGGER.error(
                    "Retryable store error during %s (attempt %s/%s): %s",
                    op_name,
                    attempt,
                    max_attempts,
                    message or exc,
                )
                self._engine.dispose()

                if attempt == max_attempts:
                    break

                sleep_for = base_delay_seconds * (2 ** (attempt - 1))
                time.sleep(sleep_for)
            except DBAPIError as exc:
                # Integrity, data and programming errors will not succeed on retry.
                raise StoreUnavailable(op_name, str(getattr(exc, "orig", None) or exc)) from exc

        assert last_exc is not None
        LOGGER.error(
            "Exhausted retries for %s after %s attempts; giving up.",
            op_name,
            max_attempts,
        )
        raise StoreUnavailable(op_name, message or str(last_exc)) from last_exc

    def _insert(self, table: Table):
        dialect = self._engine.dialect.name
        if dialect in ("mysql", "mariadb"):
            return mysql.insert(table)
        if dialect == "postgresql":
            return postgresql.insert(table)
        return sqlite.insert(table)

    def _upsert_statement(
        self,
        table: Table,
        rows: Sequence[dict],
        *,
        keys: Sequence[str],
        update_cols: Sequence[str] = (),
        coalesce_cols: Iterable[str] = (),
    ):
        """Build "insert, or update on conflict" (or ignore when no update columns)."""

        coalesce = set(coalesce_cols)
        stmt = self._insert(table).values(list(rows))
        if self._engine.dialect.name in ("mysql", "mariadb"):
            incoming = stmt.inserted
            if not update_cols:
                return stmt.on_duplicate_key_update({keys[0]: table.c[keys[0]]})
            return stmt.on_duplicate_key_update(
                {
                    col: func.coalesce(incoming[col], table.c[col]) if col in coalesce else incoming[col]
                    for col in update_cols
                }
            )

        incoming = stmt.excluded
        index_elements = [table.c[key] for key in keys]
        if not update_cols:
            return stmt.on_conflict_do_nothing(index_elements=index_elements)
        return stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={
                col: func.coalesce(incoming[col], table.c[col]) if col in coalesce else incoming[col]
                for col in update_cols
            },
        )

    @staticmethod
    def _task_from_row(row) -> HarvestTask:
        return HarvestTask(
            id=row.id,
            handle=row.handle,
            data_type=row.data_type,
            max_count=row.max_count,
            enabled=bool(row.enabled),
            status=row.status,
            last_run_at=row.last_run_at,
            next_run_at=row.next_run_at,
            error_message=row.error_message,
            frequency_tier=row.frequency_tier,
            avg_posts_per_day=row.avg_posts_per_day,
            last_post_count=row.last_post_count,
        )

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------
    def upsert_users(
        self,
        users: Sequence[dict],
        *,
        chunk_size: int = 500,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Insert or update profiles keyed by handle; return handle -> internal id.

        Stored values are never replaced by NULL. A known ``external_id`` seen
        under a new handle renames the stored row instead of creating another.
        """
        if not users:
            return {}
        now = now or utcnow()
        by_handle: Dict[str, dict] = {}
        for user in users:
            row = {col: user.get(col) for col in USER_COLUMNS}
            row["created_at"] = now
            row["updated_at"] = now
            by_handle[row["handle"]] = row
        rows = list(by_handle.values())
        update_cols = [col for col in rows[0].keys() if col not in {"handle", "created_at"}]

        for chunk in chunked(rows, chunk_size):
            def _op(engine: Engine, chunk=chunk) -> int:
                with engine.begin() as conn:
                    for row in chunk:
                        self._reconcile_renamed_handle(conn, row)
                    conn.execute(
                        self._upsert_statement(
                            self._user_table,
                            chunk,
                            keys=["handle"],
                            update_cols=update_cols,
                            coalesce_cols=[col for col in update_cols if col != "updated_at"],
                        )
                    )
                return len(chunk)

            self._execute_with_retry("upsert_users", _op)

        return self.user_ids_by_handle(list(by_handle))

    def ensure_user(
        self,
        handle: str,
        display_name: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> int:
        """Return the id for ``handle``, creating a minimal row if it is absent."""
        now = now or utcnow()
        row = {col: None for col in USER_COLUMNS}
        row.update(handle=handle, display_name=display_name, created_at=now, updated_at=now)

        def _op(engine: Engine) -> int:
            with engine.begin() as conn:
                conn.execute(self._upsert_statement(self._user_table, [row], keys=["handle"]))
                return conn.execute(
                    select(self._user_table.c.id).where(self._user_table.c.handle == handle)
                ).scalar_one()

        return self._execute_with_retry("ensure_user", _op)

    def get_user_id(self, handle: str) -> Optional[int]:
        def _op(engine: Engine) -> Optional[int]:
            with engine.connect() as conn:
                return conn.execute(
                    select(self._user_table.c.id).where(self._user_table.c.handle == handle)
                ).scalar_one_or_none()

        return self._execute_with_retry("get_user_id", _op)

    def user_ids_by_handle(self, handles: Sequence[str]) -> Dict[str, int]:
        handles = list(dict.fromkeys(handles))
        if not handles:
            return {}

        def _op(engine: Engine) -> Dict[str, int]:
            mapping: Dict[str, int] = {}
            with engine.connect() as conn:
                for chunk in chunked(handles, self._LOOKUP_CHUNK_SIZE):
                    stmt = select(self._user_table.c.handle, self._user_table.c.id).where(
                        self._user_table.c.handle.in_(list(chunk))
                    )
                    mapping.update({row.handle: row.id for row in conn.execute(stmt)})
            return mapping

        return self._execute_with_retry("user_ids_by_handle", _op)

    def fetch_users(self, handles: Optional[Iterable[str]] = None) -> List[dict]:
        def _op(engine: Engine) -> List[dict]:
            with engine.connect() as conn:
                stmt = select(self._user_table)
                if handles is not None:
                    stmt = stmt.where(self._user_table.c.handle.in_(list(handles)))
                return [dict(row._mapping) for row in conn.execute(stmt)]

        return self._execute_with_retry("fetch_users", _op)

    def _reconcile_renamed_handle(self, conn, row: dict) -> None:
        external_id = row.get("external_id")
        if not external_id:
            return
        users = self._user_table
        durable = conn.execute(
            select(users.c.id, users.c.handle).where(users.c.external_id == external_id)
        ).fetchone()
        if durable is not None and durable.handle == row["handle"]:
            return

        holder = conn.execute(
            select(users.c.id, users.c.external_id).where(users.c.handle == row["handle"])
        ).fetchone()
        if durable is None:
            # A new account took a handle still held by another external id.
            if holder is not None and holder.external_id and holder.external_id != external_id:
                self._park_recycled_holder(conn, holder, row["handle"], external_id)
            return

        if holder is not None:
            if holder.external_id is None:
                LOGGER.info(
                    "Folding handle-only row @%s into durable user %s", row["handle"], durable.id
                )
                self._reassign_user_id(conn, holder.id, durable.id)
            else:
                self._park_recycled_holder(conn, holder, row["handle"], external_id)

        LOGGER.info("Handle change detected: @%s -> @%s", durable.handle, row["handle"])
        conn.execute(users.update().where(users.c.id == durable.id).values(handle=row["handle"]))

    def _park_recycled_holder(self, conn, holder, handle: str, external_id: str) -> None:
        LOGGER.warning(
            "Handle @%s moved from external id %s to %s", handle, holder.external_id, external_id
        )
        users = self._user_table
        conn.execute(
            users.update().where(users.c.id == holder.id).values(handle=f"~{holder.external_id}")
        )

    def _reassign_user_id(self, conn, old_id: int, new_id: int) -> None:
        posts, follows = self._post_table, self._follow_table
        conn.execute(posts.update().where(posts.c.user_id == old_id).values(user_id=new_id))

        touching = or_(follows.c.source_user_id == old_id, follows.c.target_user_id == old_id)
        pairs = conn.execute(
            select(follows.c.source_user_id, follows.c.target_user_id, follows.c.created_at).where(touching)
        ).fetchall()
        moved = []
        for source_id, target_id, created_at in pairs:
            source_id = new_id if source_id == old_id else source_id
            target_id = new_id if target_id == old_id else target_id
            if source_id != target_id:
                moved.append(
                    {"source_user_id": source_id, "target_user_id": target_id, "created_at": created_at}
                )
        conn.execute(follows.delete().where(touching))
        if moved:
            conn.execute(
                self._upsert_statement(follows, moved, keys=["source_user_id", "target_user_id"])
            )
        conn.execute(self._user_table.delete().where(self._user_table.c.id == old_id))

    # ------------------------------------------------------------------
    # Post operations
    # ------------------------------------------------------------------
    def upsert_posts(
        self,
        posts: Sequence[dict],
        *,
        chunk_size: int = 1000,
        now: Optional[datetime] = None,
    ) -> int:
        """Write posts in fixed-size chunks, each chunk in its own transaction.

        Reply links use COALESCE so a batch without inferred links keeps the
        stored ones; every other mutable field takes the latest sighting.
        """
        if not posts:
            return 0
        now = now or utcnow()
        rows = []
        for post in posts:
            row = {col: post.get(col) for col in POST_COLUMNS}
            for col in COUNTER_COLUMNS:
                row[col] = row[col] or 0
            row["created_at"] = now
            row["updated_at"] = now
            rows.append(row)
        update_cols = [col for col in rows[0].keys() if col not in {"post_id", "created_at"}]

        written = 0
        for chunk in chunked(rows, chunk_size):
            def _op(engine: Engine, chunk=chunk) -> int:
                with engine.begin() as conn:
                    conn.execute(
                        self._upsert_statement(
                            self._post_table,
                            chunk,
                            keys=["post_id"],
                            update_cols=update_cols,
                            coalesce_cols=["parent_post_id", "conversation_id"],
                        )
                    )
                return len(chunk)

            written += self._execute_with_retry("upsert_posts", _op)
        return written

    def existing_post_ids(self, user_id: int, post_ids: Iterable[str]) -> Set[str]:
        """Return which of ``post_ids`` are already stored for ``user_id``."""
        ids = list(dict.fromkeys(post_ids))
        if not ids:
            return set()

        def _op(engine: Engine) -> Set[str]:
            found: Set[str] = set()
            with engine.connect() as conn:
                for chunk in chunked(ids, self._LOOKUP_CHUNK_SIZE):
                    stmt = select(self._post_table.c.post_id).where(
                        self._post_table.c.user_id == user_id,
                        self._post_table.c.post_id.in_(list(chunk)),
                    )
                    found.update(row.post_id for row in conn.execute(stmt))
            return found

        return self._execute_with_retry("existing_post_ids", _op)

    def fetch_posts(
        self, *, user_id: Optional[int] = None, post_ids: Optional[Iterable[str]] = None
    ) -> List[dict]:
        def _op(engine: Engine) -> List[dict]:
            with engine.connect() as conn:
                stmt = select(self._post_table)
                if user_id is not None:
                    stmt = stmt.where(self._post_table.c.user_id == user_id)
                if post_ids is not None:
                    stmt = stmt.where(self._post_table.c.post_id.in_(list(post_ids)))
                return [dict(row._mapping) for row in conn.execute(stmt)]

        return self._execute_with_retry("fetch_posts", _op)

    def count_posts(self, user_id: Optional[int] = None, post_type: Optional[str] = None) -> int:
        def _op(engine: Engine) -> int:
            with engine.connect() as conn:
                stmt = select(func.count()).select_from(self._post_table)
                if user_id is not None:
                    stmt = stmt.where(self._post_table.c.user_id == user_id)
                if post_type is not None:
                    stmt = stmt.where(self._post_table.c.post_type == post_type)
                return conn.execute(stmt).scalar() or 0

        return self._execute_with_retry("count_posts", _op)

    # ------------------------------------------------------------------
    # Follow edge operations
    # ------------------------------------------------------------------
    def insert_follows(
        self,
        pairs: Sequence[Tuple[int, int]],
        *,
        chunk_size: int = 5000,
        now: Optional[datetime] = None,
    ) -> int:
        """Insert ``(source, target)`` edges if absent; existing edges are left alone."""
        if not pairs:
            return 0
        now = now or utcnow()
        rows = [
            {"source_user_id": source_id, "target_user_id": target_id, "created_at": now}
            for source_id, target_id in dict.fromkeys(pairs)
        ]

        inserted = 0
        for chunk in chunked(rows, chunk_size):
            def _op(engine: Engine, chunk=chunk) -> int:
                with engine.begin() as conn:
                    result = conn.execute(
                        self._upsert_statement(
                            self._follow_table, chunk, keys=["source_user_id", "target_user_id"]
                        )
                    )
                return max(result.rowcount or 0, 0)

            inserted += self._execute_with_retry("insert_follows", _op)
        return inserted

    def existing_follow_pairs(self, pairs: Iterable[Tuple[int, int]]) -> Set[Tuple[int, int]]:
        keys = list(dict.fromkeys(pairs))
        if not keys:
            return set()
        follows = self._follow_table

        def _op(engine: Engine) -> Set[Tuple[int, int]]:
            found: Set[Tuple[int, int]] = set()
            with engine.connect() as conn:
                for chunk in chunked(keys, self._LOOKUP_CHUNK_SIZE):
                    stmt = select(follows.c.source_user_id, follows.c.target_user_id).where(
                        tuple_(follows.c.source_user_id, follows.c.target_user_id).in_(list(chunk))
                    )
                    found.update((row.source_user_id, row.target_user_id) for row in conn.execute(stmt))
            return found

        return self._execute_with_retry("existing_follow_pairs", _op)

    def count_follows(
        self, *, source_user_id: Optional[int] = None, target_user_id: Optional[int] = None
    ) -> int:
        def _op(engine: Engine) -> int:
            with engine.connect() as conn:
                stmt = select(func.count()).select_from(self._follow_table)
                if source_user_id is not None:
                    stmt = stmt.where(self._follow_table.c.source_user_id == source_user_id)
                if target_user_id is not None:
                    stmt = stmt.where(self._follow_table.c.target_user_id == target_user_id)
                return conn.execute(stmt).scalar() or 0

        return self._execute_with_retry("count_follows", _op)

    # ------------------------------------------------------------------
    # Task operations
    # ------------------------------------------------------------------
    def upsert_task(
        self,
        handle: str,
        data_type: str,
        max_count: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> int:
        """Register interest in an entity/data-type, reactivating it if it exists."""
        now = now or utcnow()
        row = {
            "handle": handle,
            "data_type": data_type,
            "max_count": max_count,
            "enabled": True,
            "status": TASK_STATUS_PENDING,
            "created_at": now,
            "updated_at": now,
        }
        tasks = self._task_table

        def _op(engine: Engine) -> int:
            with engine.begin() as conn:
                conn.execute(
                    self._upsert_statement(
                        tasks,
                        [row],
                        keys=["handle", "data_type"],
                        update_cols=["max_count", "enabled", "status", "updated_at"],
                    )
                )
                return conn.execute(
                    select(tasks.c.id).where(tasks.c.handle == handle, tasks.c.data_type == data_type)
                ).scalar_one()

        return self._execute_with_retry("upsert_task", _op)

    def set_task_enabled(
        self, handle: str, data_type: str, enabled: bool, *, now: Optional[datetime] = None
    ) -> bool:
        now = now or utcnow()
        tasks = self._task_table

        def _op(engine: Engine) -> bool:
            with engine.begin() as conn:
                result = conn.execute(
                    tasks.update()
                    .where(tasks.c.handle == handle, tasks.c.data_type == data_type)
                    .values(enabled=enabled, updated_at=now)
                )
                return (result.rowcount or 0) > 0

        return self._execute_with_retry("set_task_enabled", _op)

    def get_task(self, task_id: int) -> Optional[HarvestTask]:
        def _op(engine: Engine):
            with engine.connect() as conn:
                return conn.execute(
                    select(self._task_table).where(self._task_table.c.id == task_id)
                ).fetchone()

        row = self._execute_with_retry("get_task", _op)
        return self._task_from_row(row) if row else None

    def find_task(self, handle: str, data_type: str) -> Optional[HarvestTask]:
        tasks = self._task_table

        def _op(engine: Engine):
            with engine.connect() as conn:
                return conn.execute(
                    select(tasks).where(tasks.c.handle == handle, tasks.c.data_type == data_type)
                ).fetchone()

        row = self._execute_with_retry("find_task", _op)
        return self._task_from_row(row) if row else None

    def fetch_tasks(self) -> List[HarvestTask]:
        def _op(engine: Engine) -> List[HarvestTask]:
            with engine.connect() as conn:
                stmt = select(self._task_table).order_by(
                    self._task_table.c.handle, self._task_table.c.data_type
                )
                return [self._task_from_row(row) for row in conn.execute(stmt)]

        return self._execute_with_retry("fetch_tasks", _op)

    def _eligibility_clauses(self, now: datetime, frequency_tier: Optional[str]) -> list:
        tasks = self._task_table
        clauses = [
            tasks.c.enabled.is_(True),
            tasks.c.status != TASK_STATUS_RUNNING,
            or_(tasks.c.next_run_at.is_(None), tasks.c.next_run_at <= now),
        ]
        if frequency_tier and frequency_tier != FREQUENCY_ALL:
            clauses.append(tasks.c.frequency_tier == frequency_tier)
        return clauses

    def eligible_handles(
        self,
        now: datetime,
        frequency_tier: Optional[str] = None,
        handles: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """Distinct handles owning at least one eligible task."""
        tasks = self._task_table

        def _op(engine: Engine) -> List[str]:
            with engine.connect() as conn:
                stmt = (
                    select(tasks.c.handle)
                    .where(*self._eligibility_clauses(now, frequency_tier))
                    .distinct()
                    .order_by(tasks.c.handle)
                )
                if handles is not None:
                    stmt = stmt.where(tasks.c.handle.in_(list(handles)))
                return [row.handle for row in conn.execute(stmt)]

        return self._execute_with_retry("eligible_handles", _op)

    def eligible_tasks(
        self,
        handles: Sequence[str],
        now: datetime,
        frequency_tier: Optional[str] = None,
    ) -> List[HarvestTask]:
        """Eligible tasks of ``handles``, grouped by handle then data type."""
        if not handles:
            return []
        tasks = self._task_table

        def _op(engine: Engine) -> List[HarvestTask]:
            with engine.connect() as conn:
                stmt = (
                    select(tasks)
                    .where(*self._eligibility_clauses(now, frequency_tier))
                    .where(tasks.c.handle.in_(list(handles)))
                    .order_by(tasks.c.handle, tasks.c.data_type)
                )
                return [self._task_from_row(row) for row in conn.execute(stmt)]

        return self._execute_with_retry("eligible_tasks", _op)

    def mark_task_running(self, task_id: int, *, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        tasks = self._task_table

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                conn.execute(
                    tasks.update()
                    .where(tasks.c.id == task_id)
                    .values(status=TASK_STATUS_RUNNING, last_run_at=now, updated_at=now)
                )

        self._execute_with_retry("mark_task_running", _op)

    def record_task_schedule(
        self,
        task_id: int,
        *,
        status: str,
        frequency_tier: str,
        avg_posts_per_day: Optional[float],
        last_post_count: int,
        next_run_at: datetime,
        now: Optional[datetime] = None,
    ) -> None:
        """Persist status and every schedule field in a single UPDATE."""
        now = now or utcnow()
        tasks = self._task_table

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                conn.execute(
                    tasks.update()
                    .where(tasks.c.id == task_id)
                    .values(
                        status=status,
                        last_run_at=now,
                        error_message=None,
                        frequency_tier=frequency_tier,
                        avg_posts_per_day=avg_posts_per_day,
                        last_post_count=last_post_count,
                        next_run_at=next_run_at,
                        updated_at=now,
                    )
                )

        self._execute_with_retry("record_task_schedule", _op)

    def mark_task_failed(
        self,
        task_id: int,
        error_message: str,
        *,
        next_run_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Record a failure verbatim; next run stays unchanged unless a backoff is given."""
        now = now or utcnow()
        tasks = self._task_table
        values = {
            "status": TASK_STATUS_FAILED,
            "last_run_at": now,
            "error_message": error_message,
            "updated_at": now,
        }
        if next_run_at is not None:
            values["next_run_at"] = next_run_at

        def _op(engine: Engine) -> None:
            with engine.begin() as conn:
                conn.execute(tasks.update().where(tasks.c.id == task_id).values(**values))

        self._execute_with_retry("mark_task_failed", _op)

    def initialize_frequency_tiers(self, *, now: Optional[datetime] = None) -> int:
        """Give untiered tasks the ``medium`` tier and make them eligible now."""
        now = now or utcnow()
        tasks = self._task_table

        def _op(engine: Engine) -> int:
            with engine.begin() as conn:
                result = conn.execute(
                    tasks.update()
                    .where(tasks.c.frequency_tier.is_(None))
                    .values(frequency_tier="medium", next_run_at=now, updated_at=now)
                )
                return result.rowcount or 0

        return self._execute_with_retry("initialize_frequency_tiers", _op)

    def find_stale_running_tasks(
        self, older_than: timedelta, *, now: Optional[datetime] = None
    ) -> List[HarvestTask]:
        now = now or utcnow()
        tasks = self._task_table
        cutoff = now - older_than

        def _op(engine: Engine) -> List[HarvestTask]:
            with engine.connect() as conn:
                stmt = select(tasks).where(
                    tasks.c.status == TASK_STATUS_RUNNING,
                    or_(tasks.c.last_run_at.is_(None), tasks.c.last_run_at < cutoff),
                )
                return [self._task_from_row(row) for row in conn.execute(stmt)]

        return self._execute_with_retry("find_stale_running_tasks", _op)

    def reset_running_tasks(self, task_ids: Sequence[int], *, now: Optional[datetime] = None) -> int:
        """Operator action: return stuck ``running`` tasks to ``pending``."""
        if not task_ids:
            return 0
        now = now or utcnow()
        tasks = self._task_table

        def _op(engine: Engine) -> int:
            with engine.begin() as conn:
                result = conn.execute(
                    tasks.update()
                    .where(tasks.c.id.in_(list(task_ids)), tasks.c.status == TASK_STATUS_RUNNING)
                    .values(status=TASK_STATUS_PENDING, updated_at=now)
                )
                return result.rowcount or 0

        return self._execute_with_retry("reset_running_tasks", _op)


def create_store_engine(settings: DatabaseSettings) -> Engine:
    """Build an engine for ``settings`` (bounded pool for server databases)."""

    if settings.is_sqlite:
        database = make_url(settings.url).database
        if database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)
        return create_engine(settings.url)
    return create_engine(
        settings.url,
        pool_size=settings.pool_size,
        pool_pre_ping=True,
        connect_args=settings.connect_args,
    )


def get_store(engine: Engine) -> HarvestStore:
    """Helper for one-line store construction."""

    return HarvestStore(engine)
