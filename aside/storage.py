import logging
import re
from datetime import datetime
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, delete, inspect, select, text, update
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from aside.config import settings

logger = logging.getLogger(__name__)

# check_same_thread=False is required for SQLite to work with FastAPI's async
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

_HASHTAG = re.compile(r"#\w+")

REQUIRED_TABLES = ("users", "messages", "message_tags", "deliveries", "shared_boards", "board_memberships")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from aside import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and every table exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        missing = [name for name in REQUIRED_TABLES if not inspector.has_table(name)]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# User Repository Functions
# =============================================================================

def find_user_by_phone(db: Session, phone_number: str):
    """Look up a user by canonical phone number."""
    from aside.models import User

    user = db.execute(select(User).where(User.phone_number == phone_number)).scalar_one_or_none()
    logger.debug(f"Phone lookup for {phone_number}: {'found user ' + str(user.id) if user else 'none'}")
    return user


def find_user_by_id(db: Session, user_id: int):
    from aside.models import User

    return db.get(User, user_id)


def create_user(db: Session, phone_number: str, display_name: Optional[str] = None, commit: bool = True):
    """
    Create a user at the start of onboarding.

    Args:
        db: Database session
        phone_number: Canonical phone number
        display_name: Defaults to "User <last 4 digits>"
        commit: With False the row is only flushed, and lands with (or is
            rolled back with) whatever the caller commits next

    Raises:
        IntegrityError: the phone number already has a user
    """
    from aside.models import User

    user = User(
        phone_number=phone_number,
        display_name=display_name or f"User {phone_number[-4:]}",
        onboarding_step="welcome_sent",
    )
    db.add(user)
    if not commit:
        db.flush()
        logger.debug(f"Pending user {user.id} for {phone_number}")
        return user
    db.commit()
    db.refresh(user)
    logger.info(f"Created user {user.id} for {phone_number}")
    return user


def update_onboarding_step(
    db: Session,
    user_id: int,
    from_step: str,
    to_step: str,
    completed_at: Optional[datetime] = None,
) -> bool:
    """
    Compare-and-set the onboarding step.

    Only moves the row if it is still at from_step, so two concurrent
    deliveries can never walk a user backwards.

    Returns:
        True if this call performed the transition, False if the row had moved on
    """
    from aside.models import User

    values = {"onboarding_step": to_step}
    if completed_at is not None:
        values["onboarding_completed_at"] = completed_at

    result = db.execute(
        update(User)
        .where(User.id == user_id, User.onboarding_step == from_step)
        .values(**values)
    )
    db.commit()
    return result.rowcount == 1


# =============================================================================
# Message Repository Functions
# =============================================================================

def find_message_by_id(db: Session, message_id: int):
    from aside.models import Message

    return db.get(Message, message_id)


def find_message_by_provider_id(db: Session, provider_message_id: str):
    """Return the message a provider delivery id was stored as, if any."""
    from aside.models import Delivery, Message

    delivery = db.get(Delivery, provider_message_id)
    if delivery is None:
        return None
    return db.get(Message, delivery.message_id)


def find_recent_messages_by_sender(db: Session, user_id: int, sender_id: str, since: datetime) -> list:
    """Messages from sender for user created at or after since, newest first."""
    from aside.models import Message

    stmt = (
        select(Message)
        .where(
            Message.sender_id == sender_id,
            Message.user_id == user_id,
            Message.created_at >= since,
        )
        .order_by(Message.created_at.desc(), Message.id.desc())
    )
    return list(db.execute(stmt).scalars())


def find_recent_message(db: Session, sender_id: str, user_id: int, since: datetime):
    """The most recent message from sender for user created at or after since."""
    recent = find_recent_messages_by_sender(db, user_id, sender_id, since)
    return recent[0] if recent else None


def is_hashtag_only(content: Optional[str], media_url: Optional[str] = None) -> bool:
    """True for content that is nothing but hashtags, with no media attached."""
    if media_url:
        return False
    return not _HASHTAG.sub("", content or "").strip()


def _replace_tag_rows(db: Session, message_id: int, tags: list[str]) -> None:
    from aside.models import MessageTag

    db.execute(delete(MessageTag).where(MessageTag.message_id == message_id))
    db.add_all([MessageTag(message_id=message_id, tag=tag) for tag in dict.fromkeys(tags)])


def insert_message(
    db: Session,
    sender_id: str,
    user_id: int,
    content: str,
    tags: list[str],
    created_at: datetime,
    media_url: Optional[str] = None,
    media_type: Optional[str] = None,
    provider_message_id: Optional[str] = None,
):
    """
    Insert a message with its tag rows and delivery id (when present) in one transaction.

    Raises:
        IntegrityError: provider_message_id was already stored by a concurrent delivery
    """
    from aside.models import Delivery, Message

    message = Message(
        sender_id=sender_id,
        user_id=user_id,
        content=content,
        tags=list(tags),
        media_url=media_url,
        media_type=media_type,
        provider_message_id=provider_message_id,
        is_hashtag_only=is_hashtag_only(content, media_url),
        created_at=created_at,
    )
    db.add(message)
    try:
        db.flush()
        _replace_tag_rows(db, message.id, message.tags)
        if provider_message_id:
            db.add(Delivery(provider_message_id=provider_message_id, message_id=message.id, created_at=created_at))
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(message)
    logger.info(f"Message created: id={message.id}, user={user_id}, tags={message.tags}")
    return message


def update_message_content(
    db: Session,
    message,
    content: str,
    provider_message_id: Optional[str] = None,
    media_url: Optional[str] = None,
    media_type: Optional[str] = None,
):
    """
    Replace a message's content, recording the delivery id that caused it.

    Media is only filled in when the row has none yet.

    Raises:
        IntegrityError: provider_message_id was already stored by a concurrent delivery
    """
    from aside.models import Delivery

    message.content = content
    if media_url and not message.media_url:
        message.media_url = media_url
        message.media_type = media_type
    message.is_hashtag_only = is_hashtag_only(message.content, message.media_url)
    try:
        if provider_message_id:
            db.add(Delivery(provider_message_id=provider_message_id, message_id=message.id))
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(message)
    logger.info(f"Message {message.id} content updated")
    return message


def update_message_tags(db: Session, message_id: int, tags: list[str]):
    from aside.models import Message

    message = db.get(Message, message_id)
    if message is None:
        return None
    # Reassign so the JSON column is flagged dirty
    message.tags = list(tags)
    try:
        _replace_tag_rows(db, message_id, message.tags)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(message)
    logger.info(f"Message {message_id} tags updated to {message.tags}")
    return message


def _paginate(query, limit: int, offset: int) -> Tuple[list, int]:
    """Hide hashtag-only rows, count, then page newest first."""
    from aside.models import Message

    query = query.filter(Message.is_hashtag_only.is_(False))

    # Get total count before pagination
    total = query.count()

    query = query.order_by(Message.created_at.desc(), Message.id.desc())
    return query.offset(offset).limit(limit).all(), total


def get_messages(
    db: Session,
    user_id: int,
    tag: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[list, int]:
    """
    A user's own messages, newest first, optionally restricted to one tag.

    The tag filter is a private-board listing: it only ever reads rows owned
    by user_id, whatever shared board happens to share the tag's name.

    Returns:
        Tuple of (messages list, total count matching filters)
    """
    from aside.models import Message, MessageTag

    query = db.query(Message).filter(Message.user_id == user_id)
    if tag is not None:
        query = query.filter(
            Message.id.in_(select(MessageTag.message_id).where(MessageTag.tag == tag))
        )

    page, total = _paginate(query, limit, offset)
    logger.info(f"Retrieved {len(page)} of {total} messages for user {user_id} (tag={tag})")
    return page, total


def get_tags(db: Session, user_id: int) -> list[str]:
    """Distinct tags used by a user, sorted."""
    from aside.models import Message, MessageTag

    stmt = (
        select(MessageTag.tag)
        .join(Message, Message.id == MessageTag.message_id)
        .where(Message.user_id == user_id)
        .distinct()
        .order_by(MessageTag.tag.asc())
    )
    return list(db.execute(stmt).scalars())


# =============================================================================
# Shared Board Repository Functions
# =============================================================================

def find_shared_board_by_name(db: Session, name: str):
    from aside.models import SharedBoard

    return db.execute(select(SharedBoard).where(SharedBoard.name == name)).scalar_one_or_none()


def create_shared_board(db: Session, name: str, owner_id: int):
    """
    Create a shared board and its owner membership.

    Raises:
        IntegrityError: a board with that name already exists
    """
    from aside.models import BoardMembership, SharedBoard

    board = SharedBoard(name=name, owner_id=owner_id)
    db.add(board)
    try:
        db.flush()
        db.add(BoardMembership(board_id=board.id, user_id=owner_id, role="owner"))
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(board)
    logger.info(f"Shared board created: #{name} (id={board.id}) owned by {owner_id}")
    return board


def add_board_member(db: Session, board_id: int, user_id: int, role: str = "member"):
    """Add a member; a no-op returning the existing row if already a member."""
    from aside.models import BoardMembership

    existing = db.execute(
        select(BoardMembership).where(
            BoardMembership.board_id == board_id,
            BoardMembership.user_id == user_id,
        )
    ).scalar_one_or_none()
    if existing is not None:
        return existing

    membership = BoardMembership(board_id=board_id, user_id=user_id, role=role)
    db.add(membership)
    db.commit()
    db.refresh(membership)
    logger.info(f"User {user_id} joined board {board_id} as {role}")
    return membership


def is_member(db: Session, board_id: int, user_id: int) -> bool:
    from aside.models import BoardMembership

    row = db.execute(
        select(BoardMembership.id).where(
            BoardMembership.board_id == board_id,
            BoardMembership.user_id == user_id,
        )
    ).first()
    return row is not None


def members_of(db: Session, board_id: int) -> list[int]:
    """User ids of all current members (owner included)."""
    from aside.models import BoardMembership

    return list(db.execute(
        select(BoardMembership.user_id)
        .where(BoardMembership.board_id == board_id)
        .order_by(BoardMembership.joined_at.asc(), BoardMembership.id.asc())
    ).scalars())


def list_board_memberships(db: Session, board_id: int) -> list:
    """Membership rows joined with their users, in join order."""
    from aside.models import BoardMembership, User

    stmt = (
        select(BoardMembership, User)
        .join(User, User.id == BoardMembership.user_id)
        .where(BoardMembership.board_id == board_id)
        .order_by(BoardMembership.joined_at.asc(), BoardMembership.id.asc())
    )
    return list(db.execute(stmt).all())


def get_shared_board_messages(db: Session, board, limit: int = 50, offset: int = 0) -> Tuple[list, int]:
    """Messages tagged with the board's name from any of its members, newest first."""
    from aside.models import BoardMembership, Message, MessageTag

    query = db.query(Message).filter(
        Message.user_id.in_(
            select(BoardMembership.user_id).where(BoardMembership.board_id == board.id)
        ),
        Message.id.in_(
            select(MessageTag.message_id).where(MessageTag.tag == board.name)
        ),
    )
    page, total = _paginate(query, limit, offset)
    logger.info(f"Retrieved {len(page)} of {total} messages for board #{board.name}")
    return page, total
