"""API Key data model.

Stores hashed API keys for programmatic authentication.
Plaintext keys are never stored, only SHA-256 hashes.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from explorable.utils.datetime import utcnow


class ApiKey(SQLModel, table=True):
    """API key owned by a single user.

    ``prefix`` is the non-secret lookup part of the key. Keys are never
    hard-deleted: revocation sets ``is_revoked`` and keeps the row for audit.
    """

    __tablename__ = "api_keys"

    id: str = Field(primary_key=True)
    owner_user_id: str = Field(index=True)
    prefix: str = Field(index=True, unique=True)
    secret_hash: str  # SHA-256 hex digest of the full plaintext key
    description: str = Field(default="", max_length=255)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    last_used_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    expires_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    is_revoked: bool = Field(default=False)
    revoked_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now
