"""
User Service.

Registration, user lookups and the user payload embedded in every livestream,
livecomment, reaction and report response.

Each user payload carries two derived attributes served from the
derived-attribute caches:
- `theme.dark_mode` from the `ThemeCache` (user id -> flag), falling back to the
  user's `themes` row.
- `icon_hash` from the `IconHashCache` (username -> SHA-256 hex digest), falling
  back to hashing the stored icon or the fallback image.

Payloads for many users are filled in batches: one query per attribute for all
cache misses together.
"""

import time
from typing import Dict, Iterable, List, Optional

from core.cache import DerivedAttributeCaches
from core.exceptions import InternalError, NotFoundError, ValidationError
from core.logging_config import get_logger
from core.models import Livestream, LivestreamResponse, Theme, ThemeResponse, User, UserResponse
from core.storage import Storage, StorageSession
from providers.icon_provider import FallbackIconProvider, icon_hash

logger = get_logger(__name__)

# Used by the platform itself
RESERVED_USERNAMES = {"pipe"}


class UserService:
    def __init__(
        self,
        storage: Storage,
        caches: DerivedAttributeCaches,
        fallback_icon: Optional[FallbackIconProvider] = None,
    ):
        self.storage = storage
        self.caches = caches
        self.fallback_icon = fallback_icon or FallbackIconProvider()

    # ---- derived attributes ----

    async def _dark_modes(self, tx: StorageSession, user_ids: Iterable[int]) -> Dict[int, bool]:
        result: Dict[int, bool] = {}
        versions: Dict[int, int] = {}
        for user_id in set(user_ids):
            dark_mode, present = self.caches.theme.get(user_id)
            if present:
                result[user_id] = dark_mode
            else:
                versions[user_id] = self.caches.theme.version(user_id)
        misses = list(versions)

        if misses:
            loaded = await tx.get_themes_by_user_ids(misses)
            for user_id in misses:
                dark_mode = loaded.get(user_id, False)
                self.caches.theme.set_if_unchanged(user_id, dark_mode, versions[user_id])
                result[user_id] = dark_mode
        return result

    async def _icon_hashes(self, tx: StorageSession, users: List[User]) -> Dict[str, str]:
        result: Dict[str, str] = {}
        misses = []
        versions: Dict[str, int] = {}
        for user in users:
            cached, present = self.caches.icon_hash.get(user.name)
            if present:
                result[user.name] = cached
            else:
                misses.append(user)
                versions[user.name] = self.caches.icon_hash.version(user.name)

        if misses:
            images = await tx.get_icons_by_user_ids(u.id for u in misses)
            for user in misses:
                image = images.get(user.id)
                digest = icon_hash(image) if image is not None else self.fallback_icon.hash
                self.caches.icon_hash.set_if_unchanged(user.name, digest, versions[user.name])
                result[user.name] = digest
        return result

    async def fill_users(self, tx: StorageSession, users: List[User]) -> Dict[int, UserResponse]:
        """User id -> payload for every user in ``users``"""
        dark_modes = await self._dark_modes(tx, (u.id for u in users))
        hashes = await self._icon_hashes(tx, users)
        return {
            user.id: UserResponse(
                id=user.id,
                name=user.name,
                display_name=user.display_name,
                description=user.description,
                theme=ThemeResponse(id=user.id, dark_mode=dark_modes[user.id]),
                icon_hash=hashes[user.name],
            )
            for user in users
        }

    async def fill_user(self, tx: StorageSession, user: User) -> UserResponse:
        return (await self.fill_users(tx, [user]))[user.id]

    async def load_users(self, tx: StorageSession, user_ids: Iterable[int]) -> Dict[int, UserResponse]:
        """Batch load and fill users by id. A dangling id is an internal error."""
        ids = set(user_ids)
        users = await tx.get_users_by_ids(ids)
        if len(users) != len(ids):
            missing = ids - {u.id for u in users}
            raise InternalError("dangling user reference", {"user_ids": sorted(missing)})
        return await self.fill_users(tx, users)

    async def fill_livestreams(
        self, tx: StorageSession, livestreams: List[Livestream]
    ) -> Dict[int, LivestreamResponse]:
        owners = await self.load_users(tx, (ls.user_id for ls in livestreams))
        return {
            ls.id: LivestreamResponse(
                id=ls.id,
                owner=owners[ls.user_id],
                title=ls.title,
                description=ls.description,
                playlist_url=ls.playlist_url,
                thumbnail_url=ls.thumbnail_url,
                start_at=ls.start_at,
                end_at=ls.end_at,
            )
            for ls in livestreams
        }

    async def load_livestreams(
        self, tx: StorageSession, livestream_ids: Iterable[int]
    ) -> Dict[int, LivestreamResponse]:
        ids = set(livestream_ids)
        livestreams = await tx.get_livestreams_by_ids(ids)
        if len(livestreams) != len(ids):
            missing = ids - {ls.id for ls in livestreams}
            raise InternalError(
                "dangling livestream reference", {"livestream_ids": sorted(missing)}
            )
        return await self.fill_livestreams(tx, livestreams)

    # ---- operations ----

    async def register_user(
        self,
        name: str,
        display_name: str = "",
        description: str = "",
        dark_mode: bool = False,
    ) -> UserResponse:
        """
        Create a user together with its theme.

        Raises:
            ValidationError: The name is empty, reserved or already taken.
        """
        if not name:
            raise ValidationError("name", name, "must not be empty")
        if name in RESERVED_USERNAMES:
            raise ValidationError("name", name, "the username is reserved")

        async with self.storage.unit_of_work() as tx:
            if await tx.get_user_by_name(name) is not None:
                raise ValidationError("name", name, "the username is already taken")

            user = await tx.insert_user(
                User(name=name, display_name=display_name, description=description)
            )
            await tx.insert_theme(Theme(user_id=user.id, dark_mode=dark_mode))
            self.caches.theme.set(user.id, dark_mode)
            response = await self.fill_user(tx, user)

        logger.info(f"User registered: {name}", extra={"user_id": user.id})
        return response

    async def get_user(self, username: str) -> UserResponse:
        async with self.storage.unit_of_work() as tx:
            user = await tx.get_user_by_name(username)
            if user is None:
                raise NotFoundError("user", username)
            return await self.fill_user(tx, user)

    async def get_theme(self, username: str) -> ThemeResponse:
        async with self.storage.unit_of_work() as tx:
            user = await tx.get_user_by_name(username)
            if user is None:
                raise NotFoundError("user", username)
            dark_modes = await self._dark_modes(tx, [user.id])
        return ThemeResponse(id=user.id, dark_mode=dark_modes[user.id])

    async def create_livestream(
        self,
        owner_user_id: int,
        title: str,
        description: str = "",
        playlist_url: str = "",
        thumbnail_url: str = "",
        start_at: Optional[int] = None,
        end_at: Optional[int] = None,
    ) -> LivestreamResponse:
        if not title:
            raise ValidationError("title", title, "must not be empty")
        start_at = start_at if start_at is not None else int(time.time())
        end_at = end_at if end_at is not None else start_at
        if end_at < start_at:
            raise ValidationError("end_at", end_at, "must not precede start_at")

        async with self.storage.unit_of_work() as tx:
            if await tx.get_user(owner_user_id) is None:
                raise NotFoundError("user", owner_user_id)
            livestream = await tx.insert_livestream(
                Livestream(
                    user_id=owner_user_id,
                    title=title,
                    description=description,
                    playlist_url=playlist_url,
                    thumbnail_url=thumbnail_url,
                    start_at=start_at,
                    end_at=end_at,
                )
            )
            filled = await self.fill_livestreams(tx, [livestream])

        logger.info(
            f"Livestream created: {livestream.id}",
            extra={"livestream_id": livestream.id, "user_id": owner_user_id},
        )
        return filled[livestream.id]
