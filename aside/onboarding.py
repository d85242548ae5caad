"""
Onboarding state machine.

    welcome_sent -> first_text -> first_hashtag -> first_link -> completed

Steps only move forward and completed is terminal. The machine is a plain
transition table; OnboardingService applies it to a User row and sends the
texts. Unreachable phone numbers still advance, they just get no texts.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from aside import storage
from aside.config import Settings, settings as default_settings
from aside.metrics import record_onboarding_transition, record_sms_send
from aside.sms import SmsSender
from aside.tags import has_url, real_tags
from aside.utils import is_reachable_phone, utcnow

logger = logging.getLogger(__name__)


class OnboardingStep(str, enum.Enum):
    WELCOME_SENT = "welcome_sent"
    FIRST_TEXT = "first_text"
    FIRST_HASHTAG = "first_hashtag"
    FIRST_LINK = "first_link"
    COMPLETED = "completed"


STEP_ORDER = [
    OnboardingStep.WELCOME_SENT,
    OnboardingStep.FIRST_TEXT,
    OnboardingStep.FIRST_HASHTAG,
    OnboardingStep.FIRST_LINK,
    OnboardingStep.COMPLETED,
]


class OnboardingEvent(str, enum.Enum):
    MESSAGE_RECEIVED = "message_received"
    HASHTAG_RECEIVED = "hashtag_received"
    LINK_RECEIVED = "link_received"
    # Fired on arrival in a state; drives automatic transitions
    ENTERED = "entered"


@dataclass(frozen=True)
class Transition:
    from_step: OnboardingStep
    to_step: OnboardingStep
    # Key into ONBOARDING_MESSAGES for the text sent on arrival, if any
    outbound: Optional[str] = None


TRANSITIONS: dict[tuple[OnboardingStep, OnboardingEvent], Transition] = {
    (OnboardingStep.WELCOME_SENT, OnboardingEvent.MESSAGE_RECEIVED):
        Transition(OnboardingStep.WELCOME_SENT, OnboardingStep.FIRST_TEXT, "first_text"),
    (OnboardingStep.FIRST_TEXT, OnboardingEvent.HASHTAG_RECEIVED):
        Transition(OnboardingStep.FIRST_TEXT, OnboardingStep.FIRST_HASHTAG, "first_hashtag"),
    (OnboardingStep.FIRST_HASHTAG, OnboardingEvent.LINK_RECEIVED):
        Transition(OnboardingStep.FIRST_HASHTAG, OnboardingStep.FIRST_LINK, "first_link"),
    (OnboardingStep.FIRST_LINK, OnboardingEvent.ENTERED):
        Transition(OnboardingStep.FIRST_LINK, OnboardingStep.COMPLETED, "completion"),
}

ONBOARDING_MESSAGES = {
    "welcome": (
        "👋 Welcome to Aside! This is your space to save any text by sending it here.\n\n"
        "Let's try it: send me a text right now, anything you want."
    ),
    "first_text": (
        "✅ Saved! This text is now in your private space. Only you can see it.\n\n"
        "Next, let's organize. Try sending a text with a hashtag, like:\n"
        "#quotes To be, or not to be"
    ),
    "first_hashtag": (
        "✨ Perfect! You just created your first board: {first_tag}.\n"
        "Every time you add #{first_tag} to a text, it'll land there automatically.\n\n"
        "Now let's try saving a link. Maybe a recipe, an Instagram post, or a movie review. "
        "Just paste any link here."
    ),
    "first_link": (
        "🔗 Got it, your link's been saved!\n"
        "Now let's go see all your texts organized in one place.\n\n"
        "👉 {dashboard_url}"
    ),
    "completion": (
        "🎉 You're all set! From now on, just text me anything (links, reminders, ideas) "
        "and it'll be saved to your account.\n\n"
        "If you ever get stuck, just text #support followed by your question.\n\n"
        "Welcome to Aside: your texts, organized."
    ),
}


def step_index(step: OnboardingStep) -> int:
    return STEP_ORDER.index(step)


def events_for(content: str, tags: list[str]) -> list[OnboardingEvent]:
    """Events a single message raises, in the order they are offered to the machine."""
    events = [OnboardingEvent.MESSAGE_RECEIVED]
    if real_tags(tags):
        events.append(OnboardingEvent.HASHTAG_RECEIVED)
    if has_url(content):
        events.append(OnboardingEvent.LINK_RECEIVED)
    return events


def plan(step: OnboardingStep, content: str, tags: list[str]) -> list[Transition]:
    """
    Transitions one message causes from step.

    At most one message-driven transition, followed by any automatic ones.
    """
    if step is OnboardingStep.COMPLETED:
        return []

    transitions: list[Transition] = []
    for event in events_for(content, tags):
        transition = TRANSITIONS.get((step, event))
        if transition is not None:
            transitions.append(transition)
            step = transition.to_step
            break

    while (step, OnboardingEvent.ENTERED) in TRANSITIONS:
        transition = TRANSITIONS[(step, OnboardingEvent.ENTERED)]
        transitions.append(transition)
        step = transition.to_step

    return transitions


class OnboardingService:
    """Applies the machine to users and sends the guided texts."""

    def __init__(self, sender: SmsSender, settings: Settings = default_settings):
        self.sender = sender
        self.settings = settings

    def render(self, key: str, tags: Optional[list[str]] = None) -> str:
        first = real_tags(tags or [])
        return ONBOARDING_MESSAGES[key].format(
            first_tag=first[0] if first else "",
            dashboard_url=self.settings.DASHBOARD_URL,
        )

    async def _notify(self, phone_number: str, text: str) -> bool:
        if not is_reachable_phone(phone_number):
            logger.info(f"Skipping onboarding SMS for unreachable number {phone_number}")
            record_sms_send("skipped_unreachable")
            return False
        return await self.sender.send(phone_number, text)

    async def start(self, user) -> bool:
        """Send the welcome text to a freshly created user."""
        return await self._notify(user.phone_number, self.render("welcome"))

    async def observe(self, db: Session, user, content: str, tags: list[str]) -> list[Transition]:
        """
        Advance user's onboarding for one stored message.

        Returns:
            The transitions this call actually persisted
        """
        try:
            current = OnboardingStep(user.onboarding_step)
        except ValueError:
            logger.warning(f"User {user.id} has unknown onboarding step {user.onboarding_step!r}")
            return []

        applied: list[Transition] = []
        for transition in plan(current, content, tags):
            completed_at = utcnow() if transition.to_step is OnboardingStep.COMPLETED else None
            moved = storage.update_onboarding_step(
                db,
                user.id,
                transition.from_step.value,
                transition.to_step.value,
                completed_at=completed_at,
            )
            if not moved:
                # A concurrent delivery advanced the user first
                logger.info(f"User {user.id} no longer at {transition.from_step.value}; stopping")
                break

            applied.append(transition)
            record_onboarding_transition(transition.to_step.value)
            logger.info(f"User {user.id} onboarding: {transition.from_step.value} -> {transition.to_step.value}")

            if transition.outbound:
                await self._notify(user.phone_number, self.render(transition.outbound, tags))

        return applied
