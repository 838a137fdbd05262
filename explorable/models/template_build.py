"""Template build record.

One row per (alias, content_hash). A built image is immutable: changing
any step yields a new content hash, a new row and a new image tag.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from explorable.utils.datetime import utcnow


class TemplateBuildStatus(str, Enum):
    BUILDING = "building"
    READY = "ready"
    FAILED = "failed"


class TemplateBuild(SQLModel, table=True):
    __tablename__ = "template_builds"
    __table_args__ = (UniqueConstraint("alias", "content_hash", name="uq_template_build_hash"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    alias: str = Field(index=True)
    content_hash: str
    image_ref: str
    status: TemplateBuildStatus = Field(default=TemplateBuildStatus.BUILDING)
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    built_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
