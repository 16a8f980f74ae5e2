"""
API Endpoints for the Livestream Engagement API.

This module defines the REST endpoints under the `/api` prefix.

Endpoints Provided:
- `/api/register`, `/api/user/{username}`, `/api/user/{username}/theme`:
  User registration and user payloads.
- `/api/user/{username}/icon` and `/api/icon`: Icon download with ETag /
  `If-None-Match` support, and icon upload.
- `/api/livestream` and `/api/livestream/{livestream_id}/...`: Livestream
  creation, livecomments, reactions, reports, banned words (moderation) and
  viewer presence.
- `/api/user/{username}/statistics`, `/api/livestream/{livestream_id}/statistics`
  and `/api/payment`: Engagement statistics and ranks.

Architectural Design:
- Two Routers: `router` requires the caller identity (`X-User-ID`) on every
  route, `public_router` serves registration, icon download and the payment
  summary without it.
- Dependency Injection: Services are built per request from the process-wide
  storage and caches in `api.dependencies`, so tests can override either.
- Error Handling: Endpoints raise `LivestreamAPIException` subclasses and let
  the registered exception handlers render them. Malformed path or query
  integers are rejected by FastAPI and rendered as `VALIDATION_ERROR` (400).
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Response
from pydantic import AliasChoices, BaseModel, Base64Bytes, Field

from core.logging_config import log_function_call
from core.models import (
    LivecommentReportResponse,
    LivecommentResponse,
    LivestreamResponse,
    LivestreamStatistics,
    NGWordResponse,
    PaymentResult,
    ReactionResponse,
    ThemeResponse,
    UserResponse,
    UserStatistics,
)
from services.engagement_service import EngagementService
from services.icon_service import IconService, NotModified
from services.moderation_service import ModerationService
from services.statistics_service import StatisticsService
from services.user_service import UserService
from .dependencies import (
    get_current_user_id,
    get_engagement_service,
    get_icon_service,
    get_moderation_service,
    get_statistics_service,
    get_user_service,
)

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/api",
    tags=["Livestream Engagement"],
    dependencies=[Depends(get_current_user_id)],
)
public_router = APIRouter(prefix="/api", tags=["Livestream Engagement"])


# Request/Response Models
class ThemeRequest(BaseModel):
    dark_mode: bool = False


class RegisterRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    display_name: str = ""
    description: str = ""
    theme: ThemeRequest = Field(default_factory=ThemeRequest)


class PostIconRequest(BaseModel):
    image: Base64Bytes


class PostIconResponse(BaseModel):
    id: int


class CreateLivestreamRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = ""
    playlist_url: str = ""
    thumbnail_url: str = ""
    start_at: Optional[int] = None
    end_at: Optional[int] = None


class ModerateRequest(BaseModel):
    word: str = Field(min_length=1, validation_alias=AliasChoices("ng_word", "word"))


class ModerateResponse(BaseModel):
    word_id: int


class PostLivecommentRequest(BaseModel):
    comment: str
    tip: int = Field(default=0, ge=0)


class PostReactionRequest(BaseModel):
    emoji_name: str = Field(min_length=1, max_length=255)


def _icon_media_type(image: bytes) -> str:
    if image.lstrip()[:5] in (b"<svg ", b"<?xml"):
        return "image/svg+xml"
    return "image/jpeg"


# ---- users ----


@public_router.post("/register", response_model=UserResponse, status_code=201)
@log_function_call(logger)
async def register(
    request: RegisterRequest, user_svc: UserService = Depends(get_user_service)
):
    """Register a user together with their theme"""
    return await user_svc.register_user(
        name=request.name,
        display_name=request.display_name,
        description=request.description,
        dark_mode=request.theme.dark_mode,
    )


@router.get("/user/{username}", response_model=UserResponse)
async def get_user(username: str, user_svc: UserService = Depends(get_user_service)):
    return await user_svc.get_user(username)


@router.get("/user/{username}/theme", response_model=ThemeResponse)
async def get_user_theme(
    username: str, user_svc: UserService = Depends(get_user_service)
):
    return await user_svc.get_theme(username)


@router.get("/user/{username}/statistics", response_model=UserStatistics)
async def get_user_statistics(
    username: str, stats_svc: StatisticsService = Depends(get_statistics_service)
):
    """Rank and engagement totals of a streamer across all their livestreams"""
    return await stats_svc.user_statistics(username)


@public_router.get("/user/{username}/icon")
async def get_icon(
    username: str,
    if_none_match: Optional[str] = Header(None, alias="If-None-Match"),
    icon_svc: IconService = Depends(get_icon_service),
):
    """Icon bytes, or 304 when the client's ETag is still current"""
    result = await icon_svc.get_icon(username, if_none_match)
    etag = f'"{result.icon_hash}"'
    if isinstance(result, NotModified):
        return Response(status_code=304, headers={"ETag": etag})
    return Response(
        content=result.image,
        media_type=_icon_media_type(result.image),
        headers={"ETag": etag},
    )


@router.post("/icon", response_model=PostIconResponse, status_code=201)
async def post_icon(
    request: PostIconRequest,
    user_id: int = Depends(get_current_user_id),
    icon_svc: IconService = Depends(get_icon_service),
):
    icon = await icon_svc.post_icon(user_id, request.image)
    return PostIconResponse(id=icon.id)


# ---- livestreams ----


@router.post("/livestream", response_model=LivestreamResponse, status_code=201)
async def create_livestream(
    request: CreateLivestreamRequest,
    user_id: int = Depends(get_current_user_id),
    user_svc: UserService = Depends(get_user_service),
):
    return await user_svc.create_livestream(
        owner_user_id=user_id,
        title=request.title,
        description=request.description,
        playlist_url=request.playlist_url,
        thumbnail_url=request.thumbnail_url,
        start_at=request.start_at,
        end_at=request.end_at,
    )


@router.get("/livestream/{livestream_id}/statistics", response_model=LivestreamStatistics)
async def get_livestream_statistics(
    livestream_id: int,
    stats_svc: StatisticsService = Depends(get_statistics_service),
):
    return await stats_svc.livestream_statistics(livestream_id)


@router.post("/livestream/{livestream_id}/enter", status_code=200)
async def enter_livestream(
    livestream_id: int,
    user_id: int = Depends(get_current_user_id),
    engagement_svc: EngagementService = Depends(get_engagement_service),
):
    await engagement_svc.enter_livestream(user_id, livestream_id)
    return {"status": "ok"}


@router.delete("/livestream/{livestream_id}/exit", status_code=200)
async def exit_livestream(
    livestream_id: int,
    user_id: int = Depends(get_current_user_id),
    engagement_svc: EngagementService = Depends(get_engagement_service),
):
    await engagement_svc.exit_livestream(user_id, livestream_id)
    return {"status": "ok"}


# ---- moderation ----


@router.post(
    "/livestream/{livestream_id}/moderate",
    response_model=ModerateResponse,
    status_code=201,
)
@log_function_call(logger)
async def moderate(
    livestream_id: int,
    request: ModerateRequest,
    user_id: int = Depends(get_current_user_id),
    moderation_svc: ModerationService = Depends(get_moderation_service),
):
    """Add a banned word and hide every existing comment it (or an older rule) matches"""
    rule = await moderation_svc.add_rule(user_id, livestream_id, request.word)
    return ModerateResponse(word_id=rule.id)


@router.get("/livestream/{livestream_id}/ngwords", response_model=List[NGWordResponse])
async def list_ng_words(
    livestream_id: int,
    user_id: int = Depends(get_current_user_id),
    moderation_svc: ModerationService = Depends(get_moderation_service),
):
    rules = await moderation_svc.list_rules(user_id, livestream_id)
    return [NGWordResponse.model_validate(rule, from_attributes=True) for rule in rules]


# ---- livecomments ----


@router.post(
    "/livestream/{livestream_id}/livecomment",
    response_model=LivecommentResponse,
    status_code=201,
)
@log_function_call(logger)
async def post_livecomment(
    livestream_id: int,
    request: PostLivecommentRequest,
    user_id: int = Depends(get_current_user_id),
    engagement_svc: EngagementService = Depends(get_engagement_service),
):
    return await engagement_svc.post_livecomment(
        user_id, livestream_id, request.comment, request.tip
    )


@router.get(
    "/livestream/{livestream_id}/livecomment",
    response_model=List[LivecommentResponse],
)
async def list_livecomments(
    livestream_id: int,
    limit: Optional[int] = Query(None, ge=0),
    engagement_svc: EngagementService = Depends(get_engagement_service),
):
    return await engagement_svc.list_livecomments(livestream_id, limit)


@router.post(
    "/livestream/{livestream_id}/livecomment/{livecomment_id}/report",
    response_model=LivecommentReportResponse,
    status_code=201,
)
async def report_livecomment(
    livestream_id: int,
    livecomment_id: int,
    user_id: int = Depends(get_current_user_id),
    engagement_svc: EngagementService = Depends(get_engagement_service),
):
    return await engagement_svc.report_livecomment(user_id, livestream_id, livecomment_id)


@router.get(
    "/livestream/{livestream_id}/report",
    response_model=List[LivecommentReportResponse],
)
async def list_reports(
    livestream_id: int,
    user_id: int = Depends(get_current_user_id),
    engagement_svc: EngagementService = Depends(get_engagement_service),
):
    return await engagement_svc.list_reports(user_id, livestream_id)


# ---- reactions ----


@router.post(
    "/livestream/{livestream_id}/reaction",
    response_model=ReactionResponse,
    status_code=201,
)
async def post_reaction(
    livestream_id: int,
    request: PostReactionRequest,
    user_id: int = Depends(get_current_user_id),
    engagement_svc: EngagementService = Depends(get_engagement_service),
):
    return await engagement_svc.post_reaction(user_id, livestream_id, request.emoji_name)


@router.get(
    "/livestream/{livestream_id}/reaction",
    response_model=List[ReactionResponse],
)
async def list_reactions(
    livestream_id: int,
    limit: Optional[int] = Query(None, ge=0),
    engagement_svc: EngagementService = Depends(get_engagement_service),
):
    return await engagement_svc.list_reactions(livestream_id, limit)


# ---- payment ----


@public_router.get("/payment", response_model=PaymentResult)
async def get_payment_result(
    stats_svc: StatisticsService = Depends(get_statistics_service),
):
    return await stats_svc.payment_result()
