from typing import Optional

from fastapi import Depends, Header

from core.cache import DerivedAttributeCaches, get_caches
from core.database import engine
from core.exceptions import AuthenticationError
from core.storage import Storage
from providers.icon_provider import FallbackIconProvider, StoredIconProvider
from services.engagement_service import EngagementService
from services.icon_service import IconService
from services.moderation_service import ModerationService
from services.ranking_service import RankingService
from services.statistics_service import StatisticsService
from services.user_service import UserService

_storage: Optional[Storage] = None
_fallback_icon: Optional[FallbackIconProvider] = None


def get_storage() -> Storage:
    global _storage
    if _storage is None:
        _storage = Storage(engine)
    return _storage


def get_fallback_icon() -> FallbackIconProvider:
    global _fallback_icon
    if _fallback_icon is None:
        _fallback_icon = FallbackIconProvider()
    return _fallback_icon


def get_current_user_id(x_user_id: Optional[str] = Header(None, alias="X-User-ID")) -> int:
    """Caller identity as established by the upstream session layer"""
    if x_user_id is None:
        raise AuthenticationError("missing X-User-ID header")
    try:
        return int(x_user_id)
    except ValueError:
        raise AuthenticationError("X-User-ID header is not an integer")


def get_user_service(
    storage: Storage = Depends(get_storage),
    caches: DerivedAttributeCaches = Depends(get_caches),
    fallback_icon: FallbackIconProvider = Depends(get_fallback_icon),
) -> UserService:
    return UserService(storage, caches, fallback_icon)


def get_icon_service(
    storage: Storage = Depends(get_storage),
    caches: DerivedAttributeCaches = Depends(get_caches),
    fallback_icon: FallbackIconProvider = Depends(get_fallback_icon),
) -> IconService:
    return IconService(storage, caches, [StoredIconProvider(), fallback_icon])


def get_moderation_service(storage: Storage = Depends(get_storage)) -> ModerationService:
    return ModerationService(storage)


def get_statistics_service(storage: Storage = Depends(get_storage)) -> StatisticsService:
    return StatisticsService(storage, RankingService())


def get_engagement_service(
    storage: Storage = Depends(get_storage),
    users: UserService = Depends(get_user_service),
    moderation: ModerationService = Depends(get_moderation_service),
) -> EngagementService:
    return EngagementService(storage, users, moderation)
