"""
SQLAlchemy Models for the Apricot Database Schema

Integer primary keys (post ids are shown to the ranking oracle, so they stay
short), unique constraints for the idempotent upserts, and JSON columns for
the audit payloads.
"""
import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column, String, Text, DateTime, Integer, Boolean, JSON,
    Enum as SAEnum, ForeignKey, Index
)
from sqlalchemy.orm import relationship, Mapped

from apricot.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Enum Definitions
# ============================================================================

class FetchStrategy(enum.Enum):
    """How a source's listing is acquired"""
    FEED = "feed"
    SCRAPE = "scrape"
    MANUAL = "manual"  # posts added one at a time by URL


class FeedMode(enum.Enum):
    """Item selection policy for feed sources"""
    RECENT_POSTS = "recent_posts"
    TIME_RANGE = "time_range"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# ============================================================================
# Entity Models
# ============================================================================

class Source(Base):
    """
    Engineering blog that produces posts

    Managed centrally: only enabled/disabled, never deleted by discovery.
    """
    __tablename__ = "sources"

    # Primary Key
    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)

    # Core Fields
    name: Mapped[str] = Column(String(200), nullable=False, unique=True)
    company: Mapped[str] = Column(String(200), nullable=False, default="")
    url: Mapped[str] = Column(String(500), nullable=False, unique=True)
    site_url: Mapped[Optional[str]] = Column(String(500), nullable=True)
    strategy: Mapped[FetchStrategy] = Column(
        SAEnum(FetchStrategy, name="fetch_strategy", values_callable=_enum_values),
        nullable=False,
        default=FetchStrategy.FEED
    )
    is_active: Mapped[bool] = Column(Boolean, nullable=False, default=True)

    # Timestamps
    created_at: Mapped[datetime] = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    # Relationships
    posts: Mapped[list["Post"]] = relationship("Post", back_populates="source")

    # Indexes
    __table_args__ = (
        Index("ix_sources_is_active", "is_active"),
    )


class Post(Base):
    """
    Durable form of a fetched blog post, unique by canonical URL

    Upserts refresh full_content, content_hash and fetched_at but never blank
    out title or description.
    """
    __tablename__ = "posts"

    # Primary Key
    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)

    # Core Fields
    url: Mapped[str] = Column(String(1000), unique=True, nullable=False)
    title: Mapped[str] = Column(String(500), nullable=False)
    description: Mapped[Optional[str]] = Column(Text, nullable=True)
    full_content: Mapped[Optional[str]] = Column(Text, nullable=True)
    published_at: Mapped[Optional[datetime]] = Column(DateTime(timezone=True), nullable=True)
    fetched_at: Mapped[datetime] = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    content_hash: Mapped[Optional[str]] = Column(String(64), nullable=True)

    # Foreign Keys
    source_id: Mapped[int] = Column(
        Integer,
        ForeignKey("sources.id", ondelete="RESTRICT"),
        nullable=False
    )

    # Timestamps
    created_at: Mapped[datetime] = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    # Relationships
    source: Mapped["Source"] = relationship("Source", back_populates="posts")
    summary: Mapped[Optional["PostSummary"]] = relationship("PostSummary", back_populates="post", uselist=False)

    # Indexes
    __table_args__ = (
        Index("ix_posts_published_at", "published_at"),
        Index("ix_posts_source_id", "source_id"),
    )


class PostSummary(Base):
    """
    Cached oracle summary, one per post

    Replaced wholesale when a post is summarized again.
    """
    __tablename__ = "post_summaries"

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    post_id: Mapped[int] = Column(
        Integer,
        ForeignKey("posts.id", ondelete="CASCADE"),
        nullable=False,
        unique=True  # One summary per post
    )
    summary: Mapped[str] = Column(Text, nullable=False)
    model_used: Mapped[str] = Column(String(100), nullable=False)
    created_at: Mapped[datetime] = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    post: Mapped["Post"] = relationship("Post", back_populates="summary")


class Preference(Base):
    """
    Single-user preference stored as a JSON-encoded value under a unique key
    """
    __tablename__ = "preferences"

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = Column(String(100), nullable=False, unique=True)
    value: Mapped[str] = Column(Text, nullable=False)
    updated_at: Mapped[datetime] = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow
    )


class DiscoverySession(Base):
    """
    Audit record of one discovery run

    Write-once. The latest row backs the "latest discovery" view so results
    can be shown again without fetching or ranking.
    """
    __tablename__ = "discovery_sessions"

    id: Mapped[int] = Column(Integer, primary_key=True, autoincrement=True)

    # Inputs
    preferences_snapshot: Mapped[str] = Column(Text, nullable=False)
    posts_considered: Mapped[int] = Column(Integer, nullable=False, default=0)
    model_used: Mapped[str] = Column(String(100), nullable=False)

    # Outputs
    posts_selected: Mapped[list] = Column(JSON, nullable=False, default=list)
    results: Mapped[list] = Column(JSON, nullable=False, default=list)
    failed_feeds: Mapped[list] = Column(JSON, nullable=False, default=list)

    # Oracle usage, when the provider reports it
    input_tokens: Mapped[Optional[int]] = Column(Integer, nullable=True)
    output_tokens: Mapped[Optional[int]] = Column(Integer, nullable=True)

    created_at: Mapped[datetime] = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_discovery_sessions_created_at", "created_at"),
    )
