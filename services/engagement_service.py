"""
Engagement Service.

Viewer-side activity on a livestream: livecomments (with tips), reactions,
spam reports and viewer presence, plus the listing endpoints built on them.

New livecomments pass the moderation check before they are inserted, in the
same unit of work that inserts them. Lists come back newest first and are
filled in batches: users and livestreams are loaded with one query per kind
for the whole page.
"""

import time
from typing import List, Optional

from core.exceptions import (
    NotFoundError,
    PermissionDeniedError,
    SpamRejectedError,
    ValidationError,
)
from core.logging_config import get_logger, log_function_call
from core.models import (
    Livecomment,
    LivecommentReport,
    LivecommentReportResponse,
    LivecommentResponse,
    LivestreamViewerHistory,
    Reaction,
    ReactionResponse,
)
from core.storage import Storage, StorageSession
from services.moderation_service import ModerationService
from services.user_service import UserService

logger = get_logger(__name__)


def _now(created_at: Optional[int]) -> int:
    return created_at if created_at is not None else int(time.time())


class EngagementService:
    def __init__(self, storage: Storage, users: UserService, moderation: ModerationService):
        self.storage = storage
        self.users = users
        self.moderation = moderation

    async def _require_user(self, tx: StorageSession, user_id: int):
        user = await tx.get_user(user_id)
        if user is None:
            raise NotFoundError("user", user_id)
        return user

    async def _require_livestream(self, tx: StorageSession, livestream_id: int):
        livestream = await tx.get_livestream(livestream_id)
        if livestream is None:
            raise NotFoundError("livestream", livestream_id)
        return livestream

    # ---- fill helpers ----

    async def fill_livecomments(
        self, tx: StorageSession, livecomments: List[Livecomment]
    ) -> List[LivecommentResponse]:
        users = await self.users.load_users(tx, (c.user_id for c in livecomments))
        livestreams = await self.users.load_livestreams(tx, (c.livestream_id for c in livecomments))
        return [
            LivecommentResponse(
                id=c.id,
                user=users[c.user_id],
                livestream=livestreams[c.livestream_id],
                comment=c.comment,
                tip=c.tip,
                created_at=c.created_at,
            )
            for c in livecomments
        ]

    async def fill_reactions(
        self, tx: StorageSession, reactions: List[Reaction]
    ) -> List[ReactionResponse]:
        users = await self.users.load_users(tx, (r.user_id for r in reactions))
        livestreams = await self.users.load_livestreams(tx, (r.livestream_id for r in reactions))
        return [
            ReactionResponse(
                id=r.id,
                emoji_name=r.emoji_name,
                user=users[r.user_id],
                livestream=livestreams[r.livestream_id],
                created_at=r.created_at,
            )
            for r in reactions
        ]

    async def fill_reports(
        self, tx: StorageSession, reports: List[LivecommentReport]
    ) -> List[LivecommentReportResponse]:
        reporters = await self.users.load_users(tx, (r.user_id for r in reports))
        livecomments = await tx.get_livecomments_by_ids(r.livecomment_id for r in reports)
        filled = {c.id: c for c in await self.fill_livecomments(tx, livecomments)}
        return [
            LivecommentReportResponse(
                id=r.id,
                reporter=reporters[r.user_id],
                livecomment=filled[r.livecomment_id],
                created_at=r.created_at,
            )
            for r in reports
        ]

    # ---- livecomments ----

    @log_function_call(logger)
    async def post_livecomment(
        self,
        user_id: int,
        livestream_id: int,
        comment: str,
        tip: int = 0,
        created_at: Optional[int] = None,
    ) -> LivecommentResponse:
        """
        Post a livecomment unless it contains a banned word of the livestream.

        Raises:
            NotFoundError: The livestream does not exist.
            ValidationError: The tip is negative.
            SpamRejectedError: The comment matches a banned word; nothing is stored.
        """
        if tip < 0:
            raise ValidationError("tip", tip, "must not be negative")

        async with self.storage.unit_of_work() as tx:
            await self._require_user(tx, user_id)
            await self._require_livestream(tx, livestream_id)
            if await self.moderation.check_and_reject(tx, livestream_id, comment):
                raise SpamRejectedError(livestream_id)

            livecomment = await tx.insert_livecomment(
                Livecomment(
                    user_id=user_id,
                    livestream_id=livestream_id,
                    comment=comment,
                    tip=tip,
                    created_at=_now(created_at),
                )
            )
            filled = await self.fill_livecomments(tx, [livecomment])

        logger.info(
            f"Livecomment posted on livestream {livestream_id}",
            extra={"livestream_id": livestream_id, "livecomment_id": livecomment.id, "tip": tip},
        )
        return filled[0]

    async def list_livecomments(
        self, livestream_id: int, limit: Optional[int] = None
    ) -> List[LivecommentResponse]:
        async with self.storage.unit_of_work() as tx:
            await self._require_livestream(tx, livestream_id)
            livecomments = await tx.list_visible_livecomments(livestream_id, limit)
            return await self.fill_livecomments(tx, livecomments)

    # ---- reactions ----

    async def post_reaction(
        self,
        user_id: int,
        livestream_id: int,
        emoji_name: str,
        created_at: Optional[int] = None,
    ) -> ReactionResponse:
        async with self.storage.unit_of_work() as tx:
            await self._require_user(tx, user_id)
            await self._require_livestream(tx, livestream_id)
            reaction = await tx.insert_reaction(
                Reaction(
                    user_id=user_id,
                    livestream_id=livestream_id,
                    emoji_name=emoji_name,
                    created_at=_now(created_at),
                )
            )
            filled = await self.fill_reactions(tx, [reaction])
        return filled[0]

    async def list_reactions(
        self, livestream_id: int, limit: Optional[int] = None
    ) -> List[ReactionResponse]:
        async with self.storage.unit_of_work() as tx:
            await self._require_livestream(tx, livestream_id)
            reactions = await tx.list_reactions(livestream_id, limit)
            return await self.fill_reactions(tx, reactions)

    # ---- reports ----

    async def report_livecomment(
        self,
        user_id: int,
        livestream_id: int,
        livecomment_id: int,
        created_at: Optional[int] = None,
    ) -> LivecommentReportResponse:
        async with self.storage.unit_of_work() as tx:
            await self._require_user(tx, user_id)
            await self._require_livestream(tx, livestream_id)
            livecomment = await tx.get_livecomment(livecomment_id)
            if livecomment is None or livecomment.livestream_id != livestream_id:
                raise NotFoundError("livecomment", livecomment_id)

            report = await tx.insert_report(
                LivecommentReport(
                    user_id=user_id,
                    livestream_id=livestream_id,
                    livecomment_id=livecomment_id,
                    created_at=_now(created_at),
                )
            )
            filled = await self.fill_reports(tx, [report])

        logger.info(
            f"Livecomment {livecomment_id} reported",
            extra={"livestream_id": livestream_id, "livecomment_id": livecomment_id},
        )
        return filled[0]

    async def list_reports(self, user_id: int, livestream_id: int) -> List[LivecommentReportResponse]:
        """Reports on a livestream, visible to its owner only"""
        async with self.storage.unit_of_work() as tx:
            livestream = await self._require_livestream(tx, livestream_id)
            if livestream.user_id != user_id:
                raise PermissionDeniedError(user_id, livestream_id, action="view reports of")
            reports = await tx.list_reports(livestream_id)
            return await self.fill_reports(tx, reports)

    # ---- viewers ----

    async def enter_livestream(
        self, user_id: int, livestream_id: int, created_at: Optional[int] = None
    ) -> None:
        async with self.storage.unit_of_work() as tx:
            await self._require_user(tx, user_id)
            await self._require_livestream(tx, livestream_id)
            await tx.insert_viewer(
                LivestreamViewerHistory(
                    user_id=user_id,
                    livestream_id=livestream_id,
                    created_at=_now(created_at),
                )
            )

    async def exit_livestream(self, user_id: int, livestream_id: int) -> None:
        async with self.storage.unit_of_work() as tx:
            await self._require_livestream(tx, livestream_id)
            await tx.delete_viewer(user_id, livestream_id)
