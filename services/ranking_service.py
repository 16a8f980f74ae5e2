"""
Ranking Engine.

Computes the 1-based engagement rank of a user or a livestream against the
complete population of its kind.

Key Components:
- `RankingEntry`: A scored entity, identified by its tie-break key.
- `compare_ranking_entries`: The pure ordering. Higher score first; among equal
  scores the lower key first.
- `compute_rank` / `leaderboard`: Rank of one target, or the full ordered
  population with ranks.
- `RankingService`: Loads the population and its scores from storage with one
  grouped aggregate query per metric and ranks against it.

Score = number of reactions + sum of tips of visible livecomments. Users are
scored over the livestreams they own, livestreams over themselves. Scores are
recomputed on every call; nothing is persisted.
"""

from dataclasses import dataclass
from functools import cmp_to_key
from typing import Any, Callable, Dict, Iterable, List, Mapping, Tuple, TypeVar

from core.exceptions import InternalError
from core.logging_config import get_logger
from core.storage import StorageSession

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RankingEntry:
    key: Any
    score: int


def compare_ranking_entries(a: RankingEntry, b: RankingEntry) -> int:
    """Negative when ``a`` ranks ahead of ``b``, positive when behind, 0 if equal"""
    if a.score != b.score:
        return -1 if a.score > b.score else 1
    if a.key != b.key:
        return -1 if a.key < b.key else 1
    return 0


def _sorted_entries(entries: Iterable[RankingEntry]) -> List[RankingEntry]:
    return sorted(entries, key=cmp_to_key(compare_ranking_entries))


def compute_rank(
    target: T,
    entities: Iterable[T],
    score_of: Callable[[T], int],
    key_of: Callable[[T], Any],
) -> int:
    """
    Rank of ``target`` within ``entities``.

    Rank = 1 + (entities scoring strictly higher)
             + (entities scoring equal with a smaller key).

    Raises:
        InternalError: ``target`` is not part of ``entities``.
    """
    target_key = key_of(target)
    board = leaderboard({key_of(e): score_of(e) for e in entities})
    for key, _, rank in board:
        if key == target_key:
            return rank
    raise InternalError(
        "rank target is not part of the ranked population",
        {"target": str(target_key), "population_size": len(board)},
    )


def leaderboard(scores: Mapping[Any, int]) -> List[Tuple[Any, int, int]]:
    """The whole population best-first as ``(key, score, rank)`` tuples"""
    entries = _sorted_entries(RankingEntry(key, score) for key, score in scores.items())
    return [(entry.key, entry.score, rank) for rank, entry in enumerate(entries, start=1)]


def _merge_scores(ids: Iterable[int], *metrics: Mapping[int, int]) -> Dict[int, int]:
    return {i: sum(metric.get(i, 0) for metric in metrics) for i in ids}


class RankingService:
    """Storage-backed ranking of users and livestreams"""

    async def user_scores(self, tx: StorageSession) -> Dict[str, int]:
        """Username -> score over every registered user"""
        users = await tx.list_users()
        user_ids = [user.id for user in users]
        reactions = await tx.reaction_counts_by_owner(user_ids)
        tips = await tx.tip_sums_by_owner(user_ids)
        by_id = _merge_scores(user_ids, reactions, tips)
        return {user.name: by_id[user.id] for user in users}

    async def livestream_scores(self, tx: StorageSession) -> Dict[int, int]:
        """Livestream id -> score over every livestream"""
        livestreams = await tx.list_livestreams()
        livestream_ids = [livestream.id for livestream in livestreams]
        reactions = await tx.reaction_counts_by_livestream(livestream_ids)
        tips = await tx.tip_sums_by_livestream(livestream_ids)
        return _merge_scores(livestream_ids, reactions, tips)

    async def user_rank(self, tx: StorageSession, username: str) -> int:
        scores = await self.user_scores(tx)
        rank = compute_rank(username, scores, scores.__getitem__, lambda name: name)
        logger.debug(
            f"Ranked user {username} at {rank} of {len(scores)}",
            extra={"username": username, "rank": rank},
        )
        return rank

    async def livestream_rank(self, tx: StorageSession, livestream_id: int) -> int:
        scores = await self.livestream_scores(tx)
        rank = compute_rank(
            livestream_id, scores, scores.__getitem__, lambda lid: lid
        )
        logger.debug(
            f"Ranked livestream {livestream_id} at {rank} of {len(scores)}",
            extra={"livestream_id": livestream_id, "rank": rank},
        )
        return rank
