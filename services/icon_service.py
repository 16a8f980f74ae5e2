"""
Icon Service and Provider Orchestration.

Serves user icons with conditional-request support and accepts icon uploads.

Key Components:
- `IconService.get_icon`: Answers `NotModified` straight from the icon hash
  cache when the client's `If-None-Match` equals the cached digest. Otherwise
  walks the provider chain (stored upload, then fallback image), refreshes the
  cache unless an upload replaced the icon meanwhile, and returns the bytes
  with their digest.
- `IconService.post_icon`: Replaces the caller's icon and primes the cache with
  the new digest.

Architectural Design:
- Chain of Responsibility: Providers are tried highest priority first; the
  fallback provider always answers, so a known user always gets an image.
- Cache as Shortcut: The cache only ever lets the service skip work. A miss or
  an expired entry costs one storage read, never a wrong answer.
"""

from dataclasses import dataclass
from typing import List, Optional

from core.cache import DerivedAttributeCaches
from core.exceptions import InternalError, NotFoundError, ValidationError
from core.logging_config import get_logger
from core.models import Icon
from core.storage import Storage
from providers.icon_provider import (
    FallbackIconProvider,
    IconProvider,
    StoredIconProvider,
    icon_hash,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class IconContent:
    image: bytes
    icon_hash: str
    source: str


@dataclass(frozen=True)
class NotModified:
    icon_hash: str


def strip_etag_quotes(value: Optional[str]) -> str:
    """``"abc"`` -> ``abc``; short or unquoted values are returned as-is"""
    if not value:
        return ""
    if len(value) > 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1]
    return value


class IconService:
    """Service that orchestrates icon providers and the icon hash cache"""

    def __init__(
        self,
        storage: Storage,
        caches: DerivedAttributeCaches,
        providers: Optional[List[IconProvider]] = None,
    ):
        self.storage = storage
        self.caches = caches
        if providers is None:
            self.providers = [StoredIconProvider(), FallbackIconProvider()]
        else:
            self.providers = sorted(providers, key=lambda p: p.priority, reverse=True)

    async def get_icon(self, username: str, if_none_match: Optional[str] = None):
        """
        Icon of ``username`` as `IconContent`, or `NotModified` when the client
        already holds the current version.

        Raises:
            NotFoundError: The user does not exist.
        """
        client_hash = strip_etag_quotes(if_none_match)
        # Taken before storage is read; a concurrent upload bumps it
        version = self.caches.icon_hash.version(username)
        if client_hash:
            cached, present = self.caches.icon_hash.get(username)
            if present and cached == client_hash:
                logger.debug(f"Icon not modified for {username}")
                return NotModified(icon_hash=cached)

        async with self.storage.unit_of_work() as tx:
            user = await tx.get_user_by_name(username)
            if user is None:
                raise NotFoundError("user", username)

            for provider in self.providers:
                image = await provider.get_icon(tx, user.id)
                if image is not None:
                    digest = icon_hash(image)
                    self.caches.icon_hash.set_if_unchanged(username, digest, version)
                    return IconContent(image=image, icon_hash=digest, source=provider.source_name)

        raise InternalError("no icon provider answered", {"username": username})

    async def post_icon(self, user_id: int, image: bytes) -> Icon:
        """Replace the icon of ``user_id``"""
        if not image:
            raise ValidationError("image", "", "must not be empty")

        async with self.storage.unit_of_work() as tx:
            user = await tx.get_user(user_id)
            if user is None:
                raise NotFoundError("user", user_id)
            icon = await tx.replace_icon(user_id, image)

        digest = icon_hash(image)
        self.caches.icon_hash.set(user.name, digest)
        logger.info(
            f"Icon updated for {user.name}",
            extra={"user_id": user_id, "icon_id": icon.id, "bytes": len(image)},
        )
        return icon
