"""Relational schema for the skill catalog.

Single source of truth for table layout, enumerated column values and
indexes. Tables are SQLAlchemy Core objects so the store can issue
dialect-aware upserts without an ORM session.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    text,
)
from sqlalchemy.types import TypeDecorator

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Tier(StrEnum):
    """Lifecycle tier of a skill, hottest first."""

    HOT = "hot"
    WARM = "warm"
    COOL = "cool"
    COLD = "cold"
    ARCHIVED = "archived"


class Visibility(StrEnum):
    PUBLIC = "public"
    PRIVATE = "private"
    UNLISTED = "unlisted"


class SourceType(StrEnum):
    GITHUB = "github"
    UPLOAD = "upload"


class ClassificationMethod(StrEnum):
    DIRECT = "direct"  # declared in manifest front-matter
    AI = "ai"
    KEYWORD = "keyword"


# ---------------------------------------------------------------------------
# Column types
# ---------------------------------------------------------------------------


class UTCDateTime(TypeDecorator):
    """Store datetimes as naive UTC, always hand back timezone-aware UTC.

    SQLite drops tzinfo on the way in; normalising at the boundary keeps
    comparisons in Python code free of naive/aware mix-ups.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Any, dialect):  # noqa: ARG002
        if value is None:
            return None
        if not isinstance(value, datetime):
            raise ValueError(f"Invalid datetime value: {value!r}")
        if value.tzinfo is None:
            return value
        return value.astimezone(UTC).replace(tzinfo=None)

    def process_result_value(self, value: Any, dialect):  # noqa: ARG002
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

metadata = MetaData()

_TIER_VALUES = ", ".join(f"'{t.value}'" for t in Tier)

skills = Table(
    "skills",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("slug", String(300), nullable=False),
    Column("description", Text, nullable=True),
    Column("repo_owner", String(100), nullable=False),
    Column("repo_name", String(100), nullable=False),
    Column("skill_path", String(500), nullable=False, server_default=""),
    Column("repo_url", String(500), nullable=True),
    Column("manifest_url", String(500), nullable=True),
    Column("stars", Integer, nullable=False, server_default="0"),
    Column("forks", Integer, nullable=False, server_default="0"),
    Column("star_snapshots", JSON, nullable=True),
    Column("trending_score", Float, nullable=False, server_default="0"),
    Column("language", String(50), nullable=True),
    Column("license", String(50), nullable=True),
    Column("topics", JSON, nullable=True),
    Column("author_id", String(64), nullable=True),
    Column("last_commit_at", UTCDateTime, nullable=True),
    Column("visibility", String(16), nullable=False, server_default=Visibility.PUBLIC.value),
    Column("source_type", String(16), nullable=False, server_default=SourceType.GITHUB.value),
    Column("content_hash", String(64), nullable=True),
    Column("manifest_sha", String(64), nullable=True),
    Column("classification_method", String(16), nullable=True),
    Column("tier", String(16), nullable=False, server_default=Tier.COLD.value),
    Column("last_accessed_at", UTCDateTime, nullable=True),
    Column("access_count_7d", Integer, nullable=False, server_default="0"),
    Column("access_count_30d", Integer, nullable=False, server_default="0"),
    Column("next_update_at", UTCDateTime, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    Column("indexed_at", UTCDateTime, nullable=True),
    Column("deleted_at", UTCDateTime, nullable=True),
    CheckConstraint(f"tier IN ({_TIER_VALUES})", name="ck_skills_tier"),
)

Index("ux_skills_slug", skills.c.slug, unique=True)
Index(
    "ux_skills_natural_key",
    skills.c.repo_owner,
    skills.c.repo_name,
    skills.c.skill_path,
    unique=True,
    sqlite_where=text("deleted_at IS NULL"),
    postgresql_where=text("deleted_at IS NULL"),
)
Index("ix_skills_tier", skills.c.tier)
Index("ix_skills_content_hash", skills.c.content_hash)
Index("ix_skills_next_update_at", skills.c.next_update_at)

authors = Table(
    "authors",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("github_id", Integer, nullable=True),
    Column("username", String(100), nullable=False),
    Column("avatar_url", String(500), nullable=True),
    Column("type", String(20), nullable=True),
    Column("skills_count", Integer, nullable=False, server_default="0"),
    Column("total_stars", Integer, nullable=False, server_default="0"),
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
)

Index("ix_authors_username", authors.c.username)

categories = Table(
    "categories",
    metadata,
    Column("slug", String(50), primary_key=True),
    Column("name", String(100), nullable=False),
    Column("description", Text, nullable=True),
    Column("keywords", JSON, nullable=True),
    Column("sort_order", Integer, nullable=False, server_default="0"),
)

skill_categories = Table(
    "skill_categories",
    metadata,
    Column("skill_id", String(32), ForeignKey("skills.id", ondelete="CASCADE"), primary_key=True),
    Column("category_slug", String(50), ForeignKey("categories.slug"), primary_key=True),
    Column("is_primary", Boolean, nullable=False, server_default="0"),
    Column("confidence", Float, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
)

Index("ix_skill_categories_category", skill_categories.c.category_slug)

schema_version = Table(
    "schema_version",
    metadata,
    Column("version", Integer, primary_key=True),
    Column("applied_at", UTCDateTime, nullable=False),
)
