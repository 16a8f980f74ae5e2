"""
Core data models for the Livestream Engagement API

SQLModel tables for users, livestreams and their engagement (reactions,
livecomments, banned words, reports), plus the Pydantic payloads returned by
the API.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel
from sqlalchemy import Column, LargeBinary
from sqlmodel import SQLModel, Field


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(max_length=255, unique=True, index=True)
    display_name: str = Field(default="", max_length=255)
    description: str = Field(default="")


class Theme(SQLModel, table=True):
    __tablename__ = "themes"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    dark_mode: bool = Field(default=False)


class Icon(SQLModel, table=True):
    __tablename__ = "icons"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    image: bytes = Field(sa_column=Column(LargeBinary, nullable=False))


class Livestream(SQLModel, table=True):
    __tablename__ = "livestreams"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True)
    title: str = Field(max_length=255)
    description: str = Field(default="")
    playlist_url: str = Field(default="", max_length=255)
    thumbnail_url: str = Field(default="", max_length=255)
    start_at: int = Field(default=0)
    end_at: int = Field(default=0)


class LivestreamViewerHistory(SQLModel, table=True):
    __tablename__ = "livestream_viewers_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int
    livestream_id: int = Field(index=True)
    created_at: int


class Reaction(SQLModel, table=True):
    """Append-only; never updated or deleted."""

    __tablename__ = "reactions"

    id: Optional[int] = Field(default=None, primary_key=True)
    emoji_name: str = Field(max_length=255)
    user_id: int
    livestream_id: int = Field(index=True)
    created_at: int


class CommentVisibility(str, Enum):
    VISIBLE = "visible"
    HIDDEN = "hidden"


class Livecomment(SQLModel, table=True):
    """
    A chat message with an optional tip.

    Soft deletion through ``is_deleted`` is the only mutation: the row stays
    so historical tip accounting keeps working, and a hidden comment never
    becomes visible again.
    """

    __tablename__ = "livecomments"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int
    livestream_id: int = Field(index=True)
    comment: str
    tip: int = Field(default=0, ge=0)
    created_at: int
    is_deleted: bool = Field(default=False)

    @property
    def visibility(self) -> CommentVisibility:
        return CommentVisibility.HIDDEN if self.is_deleted else CommentVisibility.VISIBLE


class NGWord(SQLModel, table=True):
    """A banned word pattern registered by a streamer for one livestream."""

    __tablename__ = "ng_words"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int
    livestream_id: int = Field(index=True)
    word: str = Field(max_length=255)
    created_at: int


class LivecommentReport(SQLModel, table=True):
    __tablename__ = "livecomment_reports"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int
    livestream_id: int = Field(index=True)
    livecomment_id: int
    created_at: int


# API payloads


class ThemeResponse(BaseModel):
    id: int
    dark_mode: bool


class UserResponse(BaseModel):
    id: int
    name: str
    display_name: str = ""
    description: str = ""
    theme: ThemeResponse
    icon_hash: str


class LivestreamResponse(BaseModel):
    id: int
    owner: UserResponse
    title: str
    description: str
    playlist_url: str
    thumbnail_url: str
    start_at: int
    end_at: int


class LivecommentResponse(BaseModel):
    id: int
    user: UserResponse
    livestream: LivestreamResponse
    comment: str
    tip: int
    created_at: int


class ReactionResponse(BaseModel):
    id: int
    emoji_name: str
    user: UserResponse
    livestream: LivestreamResponse
    created_at: int


class LivecommentReportResponse(BaseModel):
    id: int
    reporter: UserResponse
    livecomment: LivecommentResponse
    created_at: int


class NGWordResponse(BaseModel):
    id: int
    user_id: int
    livestream_id: int
    word: str
    created_at: int


class UserStatistics(BaseModel):
    rank: int
    viewers_count: int
    total_reactions: int
    total_livecomments: int
    total_tip: int
    favorite_emoji: str


class LivestreamStatistics(BaseModel):
    rank: int
    viewers_count: int
    total_reactions: int
    total_reports: int
    max_tip: int


class PaymentResult(BaseModel):
    total_tip: int
