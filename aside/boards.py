"""
Board routing: which of a message's tags are shared boards, and who hears about it.

A tag is "shared" for a message only when a shared board of exactly that
name exists and the message's owner is a member. Otherwise it is the
owner's private tag, even if some other group's board has the same name.
"""

import enum
import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from aside import storage
from aside.tags import UNTAGGED

logger = logging.getLogger(__name__)


class TagScope(str, enum.Enum):
    PRIVATE = "private"
    SHARED = "shared"


@dataclass(frozen=True)
class TagRoute:
    tag: str
    scope: TagScope
    board_id: int | None = None


def route_tag(db: Session, tag: str, user_id: int) -> TagRoute:
    """Classify one tag for the user who owns the message."""
    if tag == UNTAGGED:
        return TagRoute(tag, TagScope.PRIVATE)

    board = storage.find_shared_board_by_name(db, tag)
    if board is None:
        return TagRoute(tag, TagScope.PRIVATE)

    if not storage.is_member(db, board.id, user_id):
        logger.debug(f"Tag #{tag} collides with board {board.id} but user {user_id} is not a member")
        return TagRoute(tag, TagScope.PRIVATE)

    return TagRoute(tag, TagScope.SHARED, board.id)


def route_tags(db: Session, tags: list[str], user_id: int) -> list[TagRoute]:
    return [route_tag(db, tag, user_id) for tag in tags]


def notification_set(db: Session, user_id: int, tags: list[str]) -> set[int]:
    """
    Users who should be told a message changed.

    The owner, plus every current member of each shared board the message
    is tagged with.
    """
    recipients = {user_id}
    for route in route_tags(db, tags, user_id):
        if route.scope is TagScope.SHARED:
            recipients.update(storage.members_of(db, route.board_id))
    return recipients


def notification_set_for(db: Session, message) -> set[int]:
    return notification_set(db, message.user_id, list(message.tags or []))


def list_private_tag(db: Session, user_id: int, tag: str, limit: int = 50, offset: int = 0):
    """The user's own messages under tag. Never reads a same-named shared board."""
    return storage.get_messages(db, user_id=user_id, tag=tag, limit=limit, offset=offset)


def list_shared_board(db: Session, board, user_id: int, limit: int = 50, offset: int = 0):
    """
    A shared board's messages, for members only.

    Raises:
        PermissionError: user_id is not a member of board
    """
    if not storage.is_member(db, board.id, user_id):
        raise PermissionError(f"user {user_id} is not a member of #{board.name}")
    return storage.get_shared_board_messages(db, board, limit=limit, offset=offset)
