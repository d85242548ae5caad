"""
Tests for the onboarding state machine and the service that applies it.
"""

import asyncio
from types import SimpleNamespace

import pytest

from aside import storage
from aside.config import Settings
from aside.onboarding import (
    STEP_ORDER,
    OnboardingEvent,
    OnboardingService,
    OnboardingStep,
    events_for,
    plan,
    step_index,
)


REACHABLE = "+12024561111"
UNREACHABLE = "+15556660001"


class RecordingSender:
    """Stands in for SmsSender; records instead of calling Twilio."""

    def __init__(self):
        self.sent = []

    async def send(self, to: str, text: str) -> bool:
        self.sent.append((to, text))
        return True


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def service(sender):
    return OnboardingService(sender, Settings(DASHBOARD_URL="https://dash.example.com"))


def steps(transitions) -> list[str]:
    return [t.to_step.value for t in transitions]


class TestPlan:

    def test_first_message_moves_to_first_text(self):
        assert steps(plan(OnboardingStep.WELCOME_SENT, "hi", ["untagged"])) == ["first_text"]

    def test_one_message_driven_step_per_message(self):
        transitions = plan(OnboardingStep.WELCOME_SENT, "#movies https://example.com", ["movies"])
        assert steps(transitions) == ["first_text"]

    def test_untagged_text_does_not_leave_first_text(self):
        assert plan(OnboardingStep.FIRST_TEXT, "hello again", ["untagged"]) == []

    def test_hashtag_moves_to_first_hashtag(self):
        assert steps(plan(OnboardingStep.FIRST_TEXT, "#movies heat", ["movies"])) == ["first_hashtag"]

    def test_link_completes_automatically(self):
        transitions = plan(OnboardingStep.FIRST_HASHTAG, "https://example.com", ["movies"])
        assert steps(transitions) == ["first_link", "completed"]

    def test_text_without_link_stays_at_first_hashtag(self):
        assert plan(OnboardingStep.FIRST_HASHTAG, "#movies more", ["movies"]) == []

    def test_completed_is_terminal(self):
        assert plan(OnboardingStep.COMPLETED, "#x https://example.com", ["x"]) == []

    @pytest.mark.parametrize("step", STEP_ORDER)
    def test_never_moves_backwards(self, step):
        for content, tags in [("hi", ["untagged"]), ("#a", ["a"]), ("https://e.com", ["untagged"])]:
            for transition in plan(step, content, tags):
                assert step_index(transition.to_step) > step_index(transition.from_step)


class TestEvents:

    def test_plain_text(self):
        assert events_for("hi", ["untagged"]) == [OnboardingEvent.MESSAGE_RECEIVED]

    def test_inherited_tags_count_as_hashtag(self):
        assert OnboardingEvent.HASHTAG_RECEIVED in events_for("https://example.com", ["movies"])

    def test_link(self):
        assert events_for("https://example.com", ["untagged"]) == [
            OnboardingEvent.MESSAGE_RECEIVED,
            OnboardingEvent.LINK_RECEIVED,
        ]


class TestOnboardingService:

    def test_full_walkthrough(self, db, service, sender):
        user = storage.create_user(db, REACHABLE)

        asyncio.run(service.start(user))
        asyncio.run(service.observe(db, user, "hello", ["untagged"]))
        asyncio.run(service.observe(db, user, "#quotes to be", ["quotes"]))
        asyncio.run(service.observe(db, user, "https://example.com", ["quotes"]))

        db.refresh(user)
        assert user.onboarding_step == "completed"
        assert user.onboarding_completed_at is not None

        texts = [text for _, text in sender.sent]
        assert len(texts) == 5
        assert texts[0].startswith("👋 Welcome to Aside!")
        assert "quotes" in texts[2]
        assert "https://dash.example.com" in texts[3]
        assert texts[4].startswith("🎉 You're all set!")
        assert all(to == REACHABLE for to, _ in sender.sent)

    def test_unreachable_number_advances_silently(self, db, service, sender):
        user = storage.create_user(db, UNREACHABLE)

        asyncio.run(service.start(user))
        applied = asyncio.run(service.observe(db, user, "hello", ["untagged"]))

        db.refresh(user)
        assert steps(applied) == ["first_text"]
        assert user.onboarding_step == "first_text"
        assert sender.sent == []

    def test_stale_step_is_not_applied(self, db, service, sender):
        user = storage.create_user(db, REACHABLE)
        storage.update_onboarding_step(db, user.id, "welcome_sent", "first_text")
        stale = SimpleNamespace(id=user.id, phone_number=REACHABLE, onboarding_step="welcome_sent")

        applied = asyncio.run(service.observe(db, stale, "hello", ["untagged"]))

        db.refresh(user)
        assert applied == []
        assert user.onboarding_step == "first_text"
        assert sender.sent == []

    def test_completed_user_gets_nothing(self, db, service, sender):
        user = storage.create_user(db, REACHABLE)
        storage.update_onboarding_step(db, user.id, "welcome_sent", "completed")
        db.refresh(user)

        assert asyncio.run(service.observe(db, user, "#a https://example.com", ["a"])) == []
        assert sender.sent == []

    def test_unknown_step_is_ignored(self, db, service):
        user = SimpleNamespace(id=1, phone_number=REACHABLE, onboarding_step="legacy")
        assert asyncio.run(service.observe(db, user, "hello", ["untagged"])) == []

    def test_render_first_hashtag_skips_sentinel(self, service):
        text = service.render("first_hashtag", ["untagged", "movies"])
        assert "first board: movies" in text
