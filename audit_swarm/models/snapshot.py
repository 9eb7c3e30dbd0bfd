"""
SQLAlchemy ORM models owned by the snapshot resolver and the content cache.

Tables: repository_snapshots, file_cache, credential_accounts
"""

import enum
import uuid
from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean, Text, JSON, UniqueConstraint, Index
)
from audit_swarm.utils.db import Base
from audit_swarm.utils.clock import utcnow


class AccessMode(str, enum.Enum):
    public = "public"
    authenticated = "authenticated"


def _uuid() -> str:
    return str(uuid.uuid4())


class RepositorySnapshot(Base):
    __tablename__ = "repository_snapshots"

    id = Column(String, primary_key=True, default=_uuid)
    repo_url = Column(Text, nullable=False)            # https://github.com/<owner>/<repo>
    owner = Column(String, nullable=False)
    repo = Column(String, nullable=False)
    default_branch = Column(String, nullable=False, default="main")

    # [{path, size, type}] ordered by path; never mutated after creation
    file_index = Column(JSON, nullable=False, default=list)
    fingerprint = Column(JSON, nullable=False, default=dict)
    stats = Column(JSON, nullable=False, default=dict)
    file_count = Column(Integer, default=0)

    access_mode = Column(String, nullable=False, default=AccessMode.public.value)
    account_ref = Column(String, nullable=True)        # credential_accounts.id, never the token
    token_valid = Column(Boolean, default=True)
    user_id = Column(String, nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("repo_url", "user_id", name="uq_snapshot_repo_user"),
    )

    @property
    def file_paths(self):
        return [f["path"] for f in (self.file_index or [])]

    @property
    def is_authenticated(self) -> bool:
        return self.access_mode == AccessMode.authenticated.value


class FileCacheEntry(Base):
    __tablename__ = "file_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(String, nullable=False)
    repo = Column(String, nullable=False)
    path = Column(Text, nullable=False)
    branch = Column(String, nullable=False)
    etag = Column(String, nullable=True)
    content_sha = Column(String, nullable=True)
    content = Column(Text, nullable=False)
    content_size = Column(Integer, default=0)
    fetched_at = Column(DateTime, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner", "repo", "path", "branch", name="uq_file_cache_key"),
        Index("ix_file_cache_repo", "owner", "repo", "branch"),
    )


class CredentialAccount(Base):
    __tablename__ = "credential_accounts"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, nullable=False, index=True)
    login = Column(String, nullable=True)
    encrypted_token = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utcnow)
