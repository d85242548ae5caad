"""
Hashtag extraction and tag inheritance.

Carriers and phone clients sometimes split one submission (a caption and a
link, say) into two deliveries. The second one usually has no hashtag, so a
tagless message inherits the tags of the sender's most recent tagged message
from the last few minutes instead of landing in "untagged".
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from aside import storage
from aside.config import settings
from aside.utils import utcnow

logger = logging.getLogger(__name__)

UNTAGGED = "untagged"

URL_PATTERN = re.compile(r"https?://\S+", re.IGNORECASE)
HASHTAG_PATTERN = re.compile(r"#(\w+)")


def extract_tags(content: str) -> list[str]:
    """
    Hashtags in content, first-seen order, duplicates dropped, case preserved.

    URLs are blanked out first so a fragment like https://x.com/page#intro
    is not read as #intro.
    """
    if not content:
        return []
    sanitized = URL_PATTERN.sub(" ", content)

    tags: list[str] = []
    for tag in HASHTAG_PATTERN.findall(sanitized):
        if tag not in tags:
            tags.append(tag)
    return tags


def has_url(content: str) -> bool:
    return bool(content) and URL_PATTERN.search(content) is not None


def real_tags(tags: list[str]) -> list[str]:
    """Tags minus the sentinel."""
    return [tag for tag in tags if tag != UNTAGGED]


def is_untagged(tags: list[str]) -> bool:
    return not real_tags(tags)


def find_inherited_tags(
    db: Session,
    user_id: int,
    sender_id: str,
    since: datetime,
    exclude_message_id: Optional[int] = None,
) -> list[str]:
    """
    Tags of the sender's most recent message since `since` that has any real tag.

    Returns:
        That message's tags without the sentinel, or [] if none qualifies
    """
    recent = storage.find_recent_messages_by_sender(db, user_id, sender_id, since)
    for message in recent:
        if message.id == exclude_message_id:
            continue
        inherited = real_tags(message.tags or [])
        if inherited:
            logger.debug(f"Inheriting {inherited} from message {message.id}")
            return inherited
    return []


def resolve_tags(
    db: Session,
    content: str,
    user_id: int,
    sender_id: str,
    now: Optional[datetime] = None,
) -> list[str]:
    """
    The tag set a new message will be stored with. Never empty.

    Explicit hashtags win; otherwise inherit from the sender's recent tagged
    message; otherwise the sentinel.
    """
    tags = extract_tags(content)
    if tags:
        return tags

    now = now or utcnow()
    since = now - timedelta(seconds=settings.INHERIT_WINDOW_SECONDS)
    inherited = find_inherited_tags(db, user_id, sender_id, since)
    if inherited:
        logger.info(f"Inherited tags {inherited} for message from {sender_id}")
        return inherited

    return [UNTAGGED]
