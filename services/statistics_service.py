"""
Statistics Assembler.

Builds the statistics payloads of users and livestreams: engagement rank plus
viewer, reaction, livecomment, tip and report aggregates. All figures of one
payload are read in the same unit of work, so they describe one snapshot.
"""

from typing import Optional

from core.exceptions import NotFoundError
from core.logging_config import get_logger, log_function_call
from core.models import LivestreamStatistics, PaymentResult, UserStatistics
from core.storage import Storage
from services.ranking_service import RankingService

logger = get_logger(__name__)


class StatisticsService:
    def __init__(self, storage: Storage, ranking: Optional[RankingService] = None):
        self.storage = storage
        self.ranking = ranking or RankingService()

    @log_function_call(logger)
    async def user_statistics(self, username: str) -> UserStatistics:
        async with self.storage.unit_of_work() as tx:
            user = await tx.get_user_by_name(username)
            if user is None:
                raise NotFoundError("user", username)

            rank = await self.ranking.user_rank(tx, username)

            owned_ids = [ls.id for ls in await tx.list_livestreams_by_owner(user.id)]
            viewers_count = await tx.count_viewers(owned_ids)
            total_reactions = await tx.count_reactions(owned_ids)
            total_livecomments = await tx.count_visible_livecomments(owned_ids)
            total_tip = await tx.sum_visible_tips(owned_ids)
            favorite_emoji = await tx.favorite_emoji(user.id)

        return UserStatistics(
            rank=rank,
            viewers_count=viewers_count,
            total_reactions=total_reactions,
            total_livecomments=total_livecomments,
            total_tip=total_tip,
            favorite_emoji=favorite_emoji or "",
        )

    @log_function_call(logger)
    async def livestream_statistics(self, livestream_id: int) -> LivestreamStatistics:
        async with self.storage.unit_of_work() as tx:
            livestream = await tx.get_livestream(livestream_id)
            if livestream is None:
                raise NotFoundError("livestream", livestream_id)

            rank = await self.ranking.livestream_rank(tx, livestream_id)
            viewers_count = await tx.count_viewers([livestream_id])
            max_tip = await tx.max_visible_tip(livestream_id)
            total_reactions = await tx.count_reactions([livestream_id])
            total_reports = await tx.count_reports(livestream_id)

        return LivestreamStatistics(
            rank=rank,
            viewers_count=viewers_count,
            total_reactions=total_reactions,
            total_reports=total_reports,
            max_tip=max_tip,
        )

    async def payment_result(self) -> PaymentResult:
        """Tips received across the whole platform, hidden comments included"""
        async with self.storage.unit_of_work() as tx:
            return PaymentResult(total_tip=await tx.total_tip())
