"""User model.

Users are created by the identity layer after a successful external
authentication. ``auth_subject`` is the provider's stable subject id; the
internal ``id`` seeds the user's default slug.
"""

from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base


class User(Base):
    """Authenticated identity."""

    __tablename__ = "users"

    id = Column(String(50), primary_key=True)
    auth_subject = Column(String(255), unique=True, nullable=False)
    email = Column(String(255), nullable=True)
    display_name = Column(String(255), nullable=True)
    # Human-facing handle. Never used to build slugs.
    username = Column(String(50), unique=True, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    pages = relationship("Page", back_populates="user")
