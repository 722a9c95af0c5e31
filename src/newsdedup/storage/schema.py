"""
Database schema definition for the newsdedup SQLite document store.

Timestamps are stored as ISO-8601 UTC strings so that lexical order matches
chronological order.
"""

from __future__ import annotations

from sqlalchemy import JSON, Boolean, Column, Float, Index, Integer, MetaData, Table, Text, UniqueConstraint

# Using a standard naming convention for database objects
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)


news_normalized_table = Table(
    "news_normalized",
    metadata,
    Column("id", Text, primary_key=True),
    Column("news_raw_id", Text),
    Column("source_id", Text, index=True),
    Column("external_id", Text, index=True),
    Column("source", Text, nullable=False),
    Column("url", Text, index=True),
    Column("title", Text, nullable=False),
    Column("title_original", Text),
    Column("summary", Text, nullable=False, default=""),
    Column("summary_original", Text),
    Column("lang", Text),
    Column("theme", Text),
    Column("topics", JSON),
    Column("tags", JSON),
    Column("entities", JSON),
    Column("duplicate_hint", Text),
    Column("published_at", Text),
    Column("created_at", Text, nullable=False, index=True),
    # Importance score from the normalizer, 0-100
    Column("score", Integer),
    # Back-reference set when a low-confidence duplicate is kept
    Column("duplicate_of", Text),
    Column("similarity_score", Float),
)


news_raw_table = Table(
    "news_raw",
    metadata,
    Column("id", Text, primary_key=True),
    Column("source_id", Text, nullable=False),
    Column("source_url", Text, nullable=False),
    Column("raw_data", JSON, nullable=False),
    Column("guid", Text),
    Column("title", Text),
    # casefolded title for case-insensitive substring lookups
    Column("title_folded", Text),
    Column("link", Text),
    Column("pub_date", Text),
    Column("has_normalized", Boolean, nullable=False, default=False),
    Column("is_duplicate", Boolean, nullable=False, default=False),
    Column("duplicate_reason", Text),
    Column("created_at", Text, nullable=False),
    UniqueConstraint("source_id", "guid", name="uq_news_raw_source_guid"),
)


sources_table = Table(
    "sources",
    metadata,
    Column("id", Text, primary_key=True),
    Column("link", Text, nullable=False, unique=True),
    Column("link_folded", Text, nullable=False),
    Column("title", Text, nullable=False),
    Column("description", Text),
    Column("category", Text),
    Column("language", Text, default="ru"),
    Column("public", Boolean, nullable=False, default=False),
    Column("active", Boolean, nullable=False, default=True),
    Column("owner", Text),
    Column("type", Text, nullable=False, default="rss"),
    Column("metadata", JSON, nullable=False),
    Column("created_at", Text, nullable=False),
)


Index("ix_news_raw_pending", news_raw_table.c.has_normalized, news_raw_table.c.is_duplicate)
Index("ix_sources_public_active", sources_table.c.public, sources_table.c.active)
