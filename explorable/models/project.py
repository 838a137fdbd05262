"""Project data models.

A Project is one user's generation request and its lifecycle outcome.
Its conversation is kept as an append-only, ordered ``ProjectMessage``
sequence rather than a mutable blob on the project row.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel

from explorable.utils.datetime import utcnow


class ProjectStatus(str, Enum):
    """Project lifecycle status.

    queued -> running -> complete | error
    """

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (ProjectStatus.COMPLETE, ProjectStatus.ERROR)


class Project(SQLModel, table=True):
    """Project row; every query on it filters by (id, owner_user_id)."""

    __tablename__ = "projects"

    id: str = Field(primary_key=True)
    owner_user_id: str = Field(index=True)
    title: str = Field(default="")
    description: Optional[str] = Field(default=None)
    template: str
    # Original request text and optional PDF reference
    instruction: str = Field(default="")
    pdf_storage_path: Optional[str] = Field(default=None)
    # Set when the PDF was fetched from arXiv; title and description hold its metadata
    arxiv_id: Optional[str] = Field(default=None)

    status: ProjectStatus = Field(default=ProjectStatus.QUEUED, index=True)
    error_message: Optional[str] = Field(default=None)

    fragment: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    result: Optional[dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ProjectMessage(SQLModel, table=True):
    """One entry in a project's conversation. Rows are never updated."""

    __tablename__ = "project_messages"
    __table_args__ = (UniqueConstraint("project_id", "seq", name="uq_project_message_seq"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: str = Field(foreign_key="projects.id", index=True)
    seq: int
    role: MessageRole
    content: list[dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
