"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint

from aside.storage import Base
from aside.utils import utcnow


class User(Base):
    """
    A texter, identified by canonical phone number.

    Table: users
    onboarding_step is one of the OnboardingStep values; it only moves forward.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone_number = Column(String(20), nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=True)
    onboarding_step = Column(String(20), nullable=False, default="welcome_sent")
    onboarding_completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Message(Base):
    """
    A saved text. Tags are a non-empty JSON list; "untagged" when nothing applies.

    Table: messages
    provider_message_id holds the first delivery id absorbed into the row;
    every absorbed id lives in deliveries.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sender_id = Column(String(20), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False, default="")
    tags = Column(JSON, nullable=False)
    media_url = Column(Text, nullable=True)
    media_type = Column(String(50), nullable=True)
    provider_message_id = Column(String, nullable=True)
    # Nothing but hashtags and no media; kept out of listings
    is_hashtag_only = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class MessageTag(Base):
    """
    One row per (message, tag), mirroring Message.tags for filtering in SQL.

    Table: message_tags
    Primary Key: (message_id, tag)
    """
    __tablename__ = "message_tags"

    message_id = Column(Integer, ForeignKey("messages.id"), primary_key=True)
    tag = Column(String, primary_key=True, index=True)


class Delivery(Base):
    """
    Provider delivery id -> message it was stored as (inserted or merged into).

    Table: deliveries
    Primary Key: provider_message_id (ensures idempotency)
    """
    __tablename__ = "deliveries"

    provider_message_id = Column(String, primary_key=True)
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class SharedBoard(Base):
    """Table: shared_boards. Names are globally unique."""
    __tablename__ = "shared_boards"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class BoardMembership(Base):
    """Table: board_memberships. role is "owner" or "member"."""
    __tablename__ = "board_memberships"
    __table_args__ = (
        UniqueConstraint("board_id", "user_id", name="uq_board_membership"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    board_id = Column(Integer, ForeignKey("shared_boards.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(String(10), nullable=False, default="member")
    joined_at = Column(DateTime, nullable=False, default=utcnow)
