"""Sandbox instance data model.

An instance belongs to exactly one project run and is never shared.
The row exists so that instances can be reclaimed after a restart
or once their TTL passes.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from explorable.utils.datetime import utcnow


class SandboxInstance(SQLModel, table=True):
    __tablename__ = "sandbox_instances"

    id: str = Field(primary_key=True)
    project_id: str = Field(index=True)
    owner_user_id: str = Field(index=True)
    template: str
    image_ref: str
    container_id: Optional[str] = Field(default=None)
    # Internal address used for readiness probing and file writes
    endpoint: Optional[str] = Field(default=None)
    # Address handed back to the user in the project result
    public_url: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime, index=True)
    destroyed_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    @property
    def is_alive(self) -> bool:
        return self.destroyed_at is None
