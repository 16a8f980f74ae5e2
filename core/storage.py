"""
Storage Access Layer.

The narrow data-access interface consumed by the ranking, moderation and
statistics services. Every query runs inside a unit of work that owns one
database transaction and one deadline.

Key Components:
- `Storage`: Opens units of work against an async engine. A unit of work
  commits when its block completes and rolls back on any exception, so a
  multi-row write is either fully applied or not at all.
- `StorageSession`: The query/command surface. Point lookups, bulk lookups by
  id set, grouped aggregates for batch scoring, inserts with server-assigned
  ids, the batch visibility update used by moderation, and the count / sum /
  max / most-frequent aggregates used by the statistics endpoints.

Every awaited statement is bounded by the remaining deadline of its unit of
work. Running out of time raises `StorageTimeoutError`; any SQLAlchemy failure
is re-raised as `StorageError`. Nothing is retried here.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Dict, Iterable, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from sqlmodel import col, func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from core.exceptions import StorageError, StorageTimeoutError
from core.logging_config import get_logger
from core.models import (
    Icon,
    Livecomment,
    LivecommentReport,
    Livestream,
    LivestreamViewerHistory,
    NGWord,
    Reaction,
    Theme,
    User,
)

logger = get_logger(__name__)

DEFAULT_STORAGE_TIMEOUT = 5.0


def _storage_timeout_from_env() -> float:
    return float(os.getenv("STORAGE_TIMEOUT_SECONDS", DEFAULT_STORAGE_TIMEOUT))


class StorageSession:
    """Queries and commands bound to one transaction and one deadline"""

    def __init__(self, session: AsyncSession, deadline: float, timeout: float):
        self.session = session
        self._deadline = deadline
        self._timeout = timeout

    async def _run(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        loop = asyncio.get_running_loop()
        remaining = self._deadline - loop.time()
        if remaining <= 0:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise StorageTimeoutError(operation, self._timeout)
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError as e:
            raise StorageTimeoutError(operation, self._timeout) from e
        except SQLAlchemyError as e:
            raise StorageError(operation, str(e)) from e

    async def _all(self, operation: str, statement) -> List[Any]:
        result = await self._run(operation, self.session.exec(statement))
        return list(result.all())

    async def _first(self, operation: str, statement) -> Any:
        result = await self._run(operation, self.session.exec(statement))
        return result.first()

    async def _scalar(self, operation: str, statement, default: int = 0) -> int:
        value = await self._first(operation, statement)
        return int(value) if value is not None else default

    async def _insert(self, operation: str, row):
        self.session.add(row)
        await self._run(operation, self.session.flush())
        return row

    async def commit(self) -> None:
        await self._run("commit", self.session.commit())

    # ---- point lookups ----

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self._first("get_user", select(User).where(User.id == user_id))

    async def get_user_by_name(self, name: str) -> Optional[User]:
        return await self._first(
            "get_user_by_name", select(User).where(User.name == name)
        )

    async def get_livestream(self, livestream_id: int) -> Optional[Livestream]:
        return await self._first(
            "get_livestream", select(Livestream).where(Livestream.id == livestream_id)
        )

    async def get_livecomment(self, livecomment_id: int) -> Optional[Livecomment]:
        return await self._first(
            "get_livecomment",
            select(Livecomment).where(Livecomment.id == livecomment_id),
        )

    async def get_theme(self, user_id: int) -> Optional[Theme]:
        return await self._first(
            "get_theme", select(Theme).where(Theme.user_id == user_id)
        )

    async def get_icon_image(self, user_id: int) -> Optional[bytes]:
        return await self._first(
            "get_icon_image", select(Icon.image).where(Icon.user_id == user_id)
        )

    # ---- bulk lookups ----

    async def list_users(self) -> List[User]:
        return await self._all("list_users", select(User))

    async def get_users_by_ids(self, user_ids: Iterable[int]) -> List[User]:
        ids = sorted(set(user_ids))
        if not ids:
            return []
        return await self._all(
            "get_users_by_ids", select(User).where(col(User.id).in_(ids))
        )

    async def list_livestreams(self) -> List[Livestream]:
        return await self._all("list_livestreams", select(Livestream))

    async def get_livestreams_by_ids(self, livestream_ids: Iterable[int]) -> List[Livestream]:
        ids = sorted(set(livestream_ids))
        if not ids:
            return []
        return await self._all(
            "get_livestreams_by_ids",
            select(Livestream).where(col(Livestream.id).in_(ids)),
        )

    async def list_livestreams_by_owner(self, user_id: int) -> List[Livestream]:
        return await self._all(
            "list_livestreams_by_owner",
            select(Livestream).where(Livestream.user_id == user_id),
        )

    async def get_icons_by_user_ids(self, user_ids: Iterable[int]) -> Dict[int, bytes]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        rows = await self._all(
            "get_icons_by_user_ids",
            select(Icon.user_id, Icon.image).where(col(Icon.user_id).in_(ids)),
        )
        return {user_id: image for user_id, image in rows}

    async def get_themes_by_user_ids(self, user_ids: Iterable[int]) -> Dict[int, bool]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        rows = await self._all(
            "get_themes_by_user_ids",
            select(Theme.user_id, Theme.dark_mode).where(col(Theme.user_id).in_(ids)),
        )
        return {user_id: bool(dark_mode) for user_id, dark_mode in rows}

    async def list_ng_words(
        self, livestream_id: int, user_id: Optional[int] = None
    ) -> List[NGWord]:
        statement = select(NGWord).where(NGWord.livestream_id == livestream_id)
        if user_id is not None:
            statement = statement.where(NGWord.user_id == user_id)
        statement = statement.order_by(col(NGWord.created_at).desc(), col(NGWord.id).desc())
        return await self._all("list_ng_words", statement)

    async def list_visible_livecomments(
        self, livestream_id: int, limit: Optional[int] = None
    ) -> List[Livecomment]:
        statement = (
            select(Livecomment)
            .where(Livecomment.livestream_id == livestream_id)
            .where(col(Livecomment.is_deleted).is_(False))
            .order_by(col(Livecomment.created_at).desc(), col(Livecomment.id).desc())
        )
        if limit is not None:
            statement = statement.limit(limit)
        return await self._all("list_visible_livecomments", statement)

    async def list_reactions(
        self, livestream_id: int, limit: Optional[int] = None
    ) -> List[Reaction]:
        statement = (
            select(Reaction)
            .where(Reaction.livestream_id == livestream_id)
            .order_by(col(Reaction.created_at).desc(), col(Reaction.id).desc())
        )
        if limit is not None:
            statement = statement.limit(limit)
        return await self._all("list_reactions", statement)

    async def list_reports(self, livestream_id: int) -> List[LivecommentReport]:
        return await self._all(
            "list_reports",
            select(LivecommentReport)
            .where(LivecommentReport.livestream_id == livestream_id)
            .order_by(col(LivecommentReport.created_at).desc(), col(LivecommentReport.id).desc()),
        )

    async def get_livecomments_by_ids(self, livecomment_ids: Iterable[int]) -> List[Livecomment]:
        ids = sorted(set(livecomment_ids))
        if not ids:
            return []
        return await self._all(
            "get_livecomments_by_ids",
            select(Livecomment).where(col(Livecomment.id).in_(ids)),
        )

    # ---- batch scoring aggregates ----

    async def reaction_counts_by_livestream(
        self, livestream_ids: Iterable[int]
    ) -> Dict[int, int]:
        ids = sorted(set(livestream_ids))
        if not ids:
            return {}
        rows = await self._all(
            "reaction_counts_by_livestream",
            select(Reaction.livestream_id, func.count(col(Reaction.id)))
            .where(col(Reaction.livestream_id).in_(ids))
            .group_by(Reaction.livestream_id),
        )
        return {livestream_id: int(count) for livestream_id, count in rows}

    async def tip_sums_by_livestream(self, livestream_ids: Iterable[int]) -> Dict[int, int]:
        ids = sorted(set(livestream_ids))
        if not ids:
            return {}
        rows = await self._all(
            "tip_sums_by_livestream",
            select(Livecomment.livestream_id, func.coalesce(func.sum(Livecomment.tip), 0))
            .where(col(Livecomment.livestream_id).in_(ids))
            .where(col(Livecomment.is_deleted).is_(False))
            .group_by(Livecomment.livestream_id),
        )
        return {livestream_id: int(total) for livestream_id, total in rows}

    async def reaction_counts_by_owner(self, user_ids: Iterable[int]) -> Dict[int, int]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        rows = await self._all(
            "reaction_counts_by_owner",
            select(Livestream.user_id, func.count(col(Reaction.id)))
            .select_from(Reaction)
            .join(Livestream, col(Livestream.id) == col(Reaction.livestream_id))
            .where(col(Livestream.user_id).in_(ids))
            .group_by(Livestream.user_id),
        )
        return {user_id: int(count) for user_id, count in rows}

    async def tip_sums_by_owner(self, user_ids: Iterable[int]) -> Dict[int, int]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        rows = await self._all(
            "tip_sums_by_owner",
            select(Livestream.user_id, func.coalesce(func.sum(Livecomment.tip), 0))
            .select_from(Livecomment)
            .join(Livestream, col(Livestream.id) == col(Livecomment.livestream_id))
            .where(col(Livestream.user_id).in_(ids))
            .where(col(Livecomment.is_deleted).is_(False))
            .group_by(Livestream.user_id),
        )
        return {user_id: int(total) for user_id, total in rows}

    # ---- statistics aggregates ----

    async def count_reactions(self, livestream_ids: Iterable[int]) -> int:
        ids = sorted(set(livestream_ids))
        if not ids:
            return 0
        return await self._scalar(
            "count_reactions",
            select(func.count(col(Reaction.id))).where(col(Reaction.livestream_id).in_(ids)),
        )

    async def count_visible_livecomments(self, livestream_ids: Iterable[int]) -> int:
        ids = sorted(set(livestream_ids))
        if not ids:
            return 0
        return await self._scalar(
            "count_visible_livecomments",
            select(func.count(col(Livecomment.id)))
            .where(col(Livecomment.livestream_id).in_(ids))
            .where(col(Livecomment.is_deleted).is_(False)),
        )

    async def sum_visible_tips(self, livestream_ids: Iterable[int]) -> int:
        ids = sorted(set(livestream_ids))
        if not ids:
            return 0
        return await self._scalar(
            "sum_visible_tips",
            select(func.coalesce(func.sum(Livecomment.tip), 0))
            .where(col(Livecomment.livestream_id).in_(ids))
            .where(col(Livecomment.is_deleted).is_(False)),
        )

    async def max_visible_tip(self, livestream_id: int) -> int:
        return await self._scalar(
            "max_visible_tip",
            select(func.coalesce(func.max(Livecomment.tip), 0))
            .where(Livecomment.livestream_id == livestream_id)
            .where(col(Livecomment.is_deleted).is_(False)),
        )

    async def count_viewers(self, livestream_ids: Iterable[int]) -> int:
        ids = sorted(set(livestream_ids))
        if not ids:
            return 0
        return await self._scalar(
            "count_viewers",
            select(func.count(col(LivestreamViewerHistory.id))).where(
                col(LivestreamViewerHistory.livestream_id).in_(ids)
            ),
        )

    async def count_reports(self, livestream_id: int) -> int:
        return await self._scalar(
            "count_reports",
            select(func.count(col(LivecommentReport.id))).where(
                LivecommentReport.livestream_id == livestream_id
            ),
        )

    async def favorite_emoji(self, owner_user_id: int) -> Optional[str]:
        """Most used emoji on the user's livestreams; ties go to the larger name."""
        return await self._first(
            "favorite_emoji",
            select(Reaction.emoji_name)
            .select_from(Reaction)
            .join(Livestream, col(Livestream.id) == col(Reaction.livestream_id))
            .where(Livestream.user_id == owner_user_id)
            .group_by(Reaction.emoji_name)
            .order_by(func.count(col(Reaction.id)).desc(), col(Reaction.emoji_name).desc())
            .limit(1),
        )

    async def total_tip(self) -> int:
        return await self._scalar(
            "total_tip", select(func.coalesce(func.sum(Livecomment.tip), 0))
        )

    # ---- commands ----

    async def insert_user(self, user: User) -> User:
        return await self._insert("insert_user", user)

    async def insert_theme(self, theme: Theme) -> Theme:
        return await self._insert("insert_theme", theme)

    async def insert_livestream(self, livestream: Livestream) -> Livestream:
        return await self._insert("insert_livestream", livestream)

    async def insert_viewer(self, viewer: LivestreamViewerHistory) -> LivestreamViewerHistory:
        return await self._insert("insert_viewer", viewer)

    async def delete_viewer(self, user_id: int, livestream_id: int) -> int:
        result = await self._run(
            "delete_viewer",
            self.session.execute(
                delete(LivestreamViewerHistory)
                .where(col(LivestreamViewerHistory.user_id) == user_id)
                .where(col(LivestreamViewerHistory.livestream_id) == livestream_id)
            ),
        )
        return result.rowcount or 0

    async def insert_reaction(self, reaction: Reaction) -> Reaction:
        return await self._insert("insert_reaction", reaction)

    async def insert_livecomment(self, livecomment: Livecomment) -> Livecomment:
        return await self._insert("insert_livecomment", livecomment)

    async def insert_ng_word(self, ng_word: NGWord) -> NGWord:
        return await self._insert("insert_ng_word", ng_word)

    async def insert_report(self, report: LivecommentReport) -> LivecommentReport:
        return await self._insert("insert_report", report)

    async def replace_icon(self, user_id: int, image: bytes) -> Icon:
        await self._run(
            "delete_icon",
            self.session.execute(delete(Icon).where(col(Icon.user_id) == user_id)),
        )
        return await self._insert("insert_icon", Icon(user_id=user_id, image=image))

    async def hide_livecomments(self, livecomment_ids: Iterable[int]) -> int:
        """Soft-delete the given comments in one statement. Returns rows changed."""
        ids = sorted(set(livecomment_ids))
        if not ids:
            return 0
        result = await self._run(
            "hide_livecomments",
            self.session.execute(
                update(Livecomment)
                .where(col(Livecomment.id).in_(ids))
                .values(is_deleted=True)
                .execution_options(synchronize_session="evaluate")
            ),
        )
        return result.rowcount or 0


class Storage:
    """Factory for units of work against one engine"""

    def __init__(self, engine: AsyncEngine, timeout: Optional[float] = None):
        self.engine = engine
        self.timeout = timeout if timeout is not None else _storage_timeout_from_env()
        self._session_factory = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

    @property
    def supports_serializable(self) -> bool:
        # SQLite transactions are already serialized by its database-wide write lock
        return self.engine.dialect.name != "sqlite"

    @asynccontextmanager
    async def unit_of_work(
        self, timeout: Optional[float] = None, serializable: bool = False
    ) -> AsyncIterator[StorageSession]:
        """
        Open one transaction bounded by ``timeout`` seconds (the storage default
        when omitted). Commits on success, rolls back on any exception.
        """
        timeout = timeout if timeout is not None else self.timeout
        deadline = asyncio.get_running_loop().time() + timeout

        async with self._session_factory() as session:
            tx = StorageSession(session, deadline, timeout)
            try:
                if serializable and self.supports_serializable:
                    await tx._run(
                        "set_isolation_level",
                        session.connection(
                            execution_options={"isolation_level": "SERIALIZABLE"}
                        ),
                    )
                yield tx
                await tx.commit()
            except BaseException:
                await self._rollback(session)
                raise

    async def _rollback(self, session: AsyncSession) -> None:
        try:
            await session.rollback()
        except SQLAlchemyError as e:
            # The original failure is re-raised by the caller
            logger.warning(f"Rollback failed: {e}", extra={"error_type": type(e).__name__})
