"""Page model."""

from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base

# Prefix carried by every anonymous owner token. Cleanup only ever touches
# pages whose owner token starts with it.
ANONYMOUS_TOKEN_PREFIX = "anon_"


class Page(Base):
    """A canvas page: a mutable draft plus the snapshot captured at last publish."""

    __tablename__ = "pages"
    __table_args__ = (
        Index("ix_pages_owner_token", "owner_token"),
        Index("ix_pages_user_id", "user_id"),
        Index("ix_pages_is_published", "is_published"),
    )

    # Primary key
    id = Column(String(50), primary_key=True)  # page_{uuid hex}

    # Ownership: anonymous token ("anon_<uuid>") or the authenticated user id.
    owner_token = Column(String(100), nullable=False)
    # Set once, by the ownership claim, never cleared.
    user_id = Column(String(50), ForeignKey("users.id"), nullable=True)

    title = Column(String(255), nullable=True)

    # Public address. Unique when present.
    slug = Column(String(64), unique=True, nullable=True)

    # Working document, edited freely.
    draft_content = Column(JSON, nullable=False, default=dict)
    draft_background = Column(JSON, nullable=True)

    # Snapshot taken at the moment of the most recent successful publish.
    published_content = Column(JSON, nullable=True)
    published_background = Column(JSON, nullable=True)

    # Optimistic concurrency token, incremented by exactly 1 on every
    # accepted mutation (draft save or publish). Nothing else detects staleness.
    server_revision = Column(Integer, nullable=False, default=1)
    published_revision = Column(Integer, nullable=True)
    is_published = Column(Boolean, nullable=False, default=False)
    published_at = Column(DateTime(timezone=True), nullable=True)

    # Artifact location, NULL when the last publish ran in degraded mode.
    storage_key = Column(String(255), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="pages")

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None and self.owner_token.startswith(ANONYMOUS_TOKEN_PREFIX)

    @property
    def has_unpublished_changes(self) -> bool:
        """True when the draft has moved past what is live."""
        if not self.is_published or self.published_revision is None:
            return True
        return self.server_revision != self.published_revision

    def is_owned_by(self, user_id: Optional[str] = None, anonymous_token: Optional[str] = None) -> bool:
        """Ownership rule for draft edits and publishes.

        An authenticated caller owns pages created under its id or claimed
        by it. An anonymous caller owns pages created under its token that
        nobody has claimed yet.
        """
        if user_id and (self.owner_token == user_id or self.user_id == user_id):
            return True
        if anonymous_token and self.owner_token == anonymous_token and self.user_id is None:
            return True
        return False
