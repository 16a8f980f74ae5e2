"""
Moderation Engine.

Per-livestream banned word ("NG word") rules and their enforcement.

Key Components:
- `find_violations`: Pure matcher. A comment violates when any banned word
  occurs in it as a case-sensitive substring.
- `ModerationService.add_rule`: Registers a rule and retroactively hides every
  visible comment of the livestream that matches any of its rules.
- `ModerationService.check_and_reject`: Post-time check used before a new
  livecomment is inserted.
- `ModerationService.list_rules`: Rules a streamer registered for a livestream.

Architectural Design:
- Single Unit of Work: Rule insert, rule fetch, comment fetch and the batch hide
  run in one transaction. If the sweep fails the rule is rolled back with it.
  Engines other than SQLite run it at SERIALIZABLE isolation.
- Full Re-sweep: Every rule of the livestream is applied on each sweep, not only
  the new one. Hiding is idempotent, so re-applying old rules is harmless.
- Known gap: a comment inserted by a concurrent post after the comment fetch
  and before commit is not swept. It was checked against the rules committed at
  its own post time and is caught by the next sweep at the latest.
"""

import time
from typing import Iterable, List, Optional, Sequence

from core.exceptions import NotFoundError, PermissionDeniedError, ValidationError
from core.logging_config import get_logger, log_function_call
from core.models import Livecomment, NGWord
from core.storage import Storage, StorageSession

logger = get_logger(__name__)


def contains_banned_word(text: str, words: Iterable[str]) -> bool:
    return any(word in text for word in words)


def find_violations(comments: Sequence[Livecomment], words: Sequence[str]) -> List[int]:
    """Ids of the comments containing at least one of ``words``"""
    if not words:
        return []
    return [c.id for c in comments if contains_banned_word(c.comment, words)]


class ModerationService:
    """Banned word rules and their enforcement on livecomments"""

    def __init__(self, storage: Storage):
        self.storage = storage

    @log_function_call(logger)
    async def add_rule(
        self,
        owner_user_id: int,
        livestream_id: int,
        word: str,
        created_at: Optional[int] = None,
    ) -> NGWord:
        """
        Register ``word`` for the livestream and hide every visible comment that
        matches any rule of the livestream.

        Raises:
            ValidationError: ``word`` is empty.
            NotFoundError: The livestream does not exist.
            PermissionDeniedError: The requester does not own the livestream.
        """
        if not word:
            raise ValidationError("ng_word", word, "must not be empty")

        created_at = created_at if created_at is not None else int(time.time())

        async with self.storage.unit_of_work(serializable=True) as tx:
            livestream = await tx.get_livestream(livestream_id)
            if livestream is None:
                raise NotFoundError("livestream", livestream_id)
            if livestream.user_id != owner_user_id:
                raise PermissionDeniedError(owner_user_id, livestream_id)

            rule = await tx.insert_ng_word(
                NGWord(
                    user_id=owner_user_id,
                    livestream_id=livestream_id,
                    word=word,
                    created_at=created_at,
                )
            )

            rules = await tx.list_ng_words(livestream_id)
            comments = await tx.list_visible_livecomments(livestream_id)
            violating_ids = find_violations(comments, [r.word for r in rules])
            hidden_count = await tx.hide_livecomments(violating_ids)

        logger.info(
            f"Banned word added to livestream {livestream_id}, {hidden_count} comments hidden",
            extra={
                "livestream_id": livestream_id,
                "word_id": rule.id,
                "rules_count": len(rules),
                "hidden_count": hidden_count,
            },
        )
        return rule

    async def check_and_reject(
        self, tx: StorageSession, livestream_id: int, text: str
    ) -> bool:
        """True when ``text`` contains a banned word of the livestream"""
        rules = await tx.list_ng_words(livestream_id)
        rejected = contains_banned_word(text, (r.word for r in rules))
        if rejected:
            logger.info(
                f"Livecomment rejected as spam on livestream {livestream_id}",
                extra={"livestream_id": livestream_id, "rules_count": len(rules)},
            )
        return rejected

    async def list_rules(self, user_id: int, livestream_id: int) -> List[NGWord]:
        """Rules ``user_id`` registered for the livestream, newest first"""
        async with self.storage.unit_of_work() as tx:
            return await tx.list_ng_words(livestream_id, user_id=user_id)
