"""SQLModel table definitions for the response cache database.

Tables:
- cached_responses: Compressed HTTP responses keyed by request fingerprint
- schema_info: Schema version tracking
"""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy import Column, LargeBinary
from sqlmodel import Field, SQLModel


class SchemaInfo(SQLModel, table=True):  # type: ignore[call-arg]
    """Schema version tracking."""

    __tablename__ = "schema_info"

    id: int | None = Field(default=None, primary_key=True)
    version: int
    applied_at: str | None = Field(
        default=None,
        sa_column_kwargs={"server_default": sa.text("CURRENT_TIMESTAMP")},
    )


class CachedResponse(SQLModel, table=True):  # type: ignore[call-arg]
    """Compressed HTTP responses addressed by request fingerprint."""

    __tablename__ = "cached_responses"
    __table_args__ = (
        sa.Index("idx_cached_responses_expires_at", "expires_at"),
    )

    key: str = Field(primary_key=True)

    # HTTP Response
    url: str
    status_code: int
    headers_json: str | None = None

    # Content (compressed)
    content_compressed: bytes | None = Field(
        default=None, sa_column=Column(LargeBinary, nullable=True)
    )
    content_size_original: int = 0
    content_size_compressed: int = 0

    # Freshness (Unix timestamps / seconds)
    stored_at: float
    ttl: float
    expires_at: float
