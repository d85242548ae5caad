"""
Tests for the POST /api/webhook/sms endpoint.

Tests cover:
- The caption / redelivery / link-follow-up scenario
- Idempotency per provider message id
- Both provider payload shapes, form and JSON encoded
- Skipped deliveries (confirmation echoes, empty bodies)
- Untrusted (403), malformed (422) and store failure (503) responses
- Optional Twilio signature validation
"""

import base64
import hashlib
import hmac
import os

import pytest
from sqlalchemy.exc import OperationalError

from aside.config import settings
from aside.models import Message, User
from aside.storage import SessionLocal, find_user_by_phone


ACCOUNT_SID = os.environ["TWILIO_ACCOUNT_SID"]
SENDER = "+15551230001"


def twilio_form(body: str, sid: str, sender: str = SENDER, **extra) -> dict:
    """A Twilio inbound SMS form with the fields Twilio always sends."""
    form = {
        "Body": body,
        "From": sender,
        "To": "+15550000000",
        "AccountSid": ACCOUNT_SID,
        "MessageSid": sid,
        "SmsMessageSid": sid,
        "NumMedia": "0",
    }
    form.update(extra)
    return form


def post_sms(client, form: dict, path: str = "/api/webhook/sms", headers: dict | None = None):
    return client.post(path, data=form, headers=headers or {})


def count_rows(model) -> int:
    with SessionLocal() as db:
        return db.query(model).count()


class TestWebhookScenario:
    """A caption, its redelivery, and a bare link sent right after."""

    def test_caption_redelivery_and_link(self, client):
        first = post_sms(client, twilio_form("#movies great film", "SM1"))
        assert first.status_code == 200
        assert first.json()["status"] == "created"
        message_id = first.json()["message_id"]

        again = post_sms(client, twilio_form("#movies great film", "SM1"))
        assert again.status_code == 200
        assert again.json() == {"status": "duplicate", "message_id": message_id}

        link = post_sms(client, twilio_form("https://example.com", "SM2"))
        assert link.status_code == 200
        assert link.json() == {"status": "merged", "message_id": message_id}

        with SessionLocal() as db:
            user = find_user_by_phone(db, SENDER)
            messages = db.query(Message).filter(Message.user_id == user.id).all()

        assert len(messages) == 1
        assert messages[0].tags == ["movies"]
        assert messages[0].content == "#movies great film https://example.com"

    def test_redelivery_leaves_content_alone(self, client):
        post_sms(client, twilio_form("#books dune", "SM1"))
        post_sms(client, twilio_form("#books dune", "SM1"))
        post_sms(client, twilio_form("#books dune", "SM1"))

        with SessionLocal() as db:
            messages = db.query(Message).all()
        assert len(messages) == 1
        assert messages[0].content == "#books dune"

    def test_redelivered_merge_segment_is_duplicate(self, client):
        post_sms(client, twilio_form("#books part one", "SM1"))
        merged = post_sms(client, twilio_form("#books part two", "SM2"))
        assert merged.json()["status"] == "merged"

        again = post_sms(client, twilio_form("#books part two", "SM2"))
        assert again.json()["status"] == "duplicate"

        with SessionLocal() as db:
            message = db.query(Message).one()
        assert message.content == "#books part one #books part two"

    def test_different_tags_are_separate_messages(self, client):
        a = post_sms(client, twilio_form("#movies alien", "SM1"))
        b = post_sms(client, twilio_form("#recipes soup", "SM2"))

        assert a.json()["status"] == "created"
        assert b.json()["status"] == "created"
        assert a.json()["message_id"] != b.json()["message_id"]

    def test_plain_text_is_untagged(self, client):
        post_sms(client, twilio_form("remember the milk", "SM1"))

        with SessionLocal() as db:
            message = db.query(Message).one()
        assert message.tags == ["untagged"]

    def test_first_message_creates_user(self, client):
        post_sms(client, twilio_form("hello", "SM1", sender="(555) 123-0009"))

        with SessionLocal() as db:
            user = find_user_by_phone(db, "+15551230009")
        assert user is not None
        assert user.onboarding_step == "welcome_sent"
        assert user.display_name == "User 0009"

    def test_twilio_alias_route(self, client):
        response = post_sms(client, twilio_form("#movies heat", "SM1"), path="/api/webhook/twilio")

        assert response.status_code == 200
        assert response.json()["status"] == "created"

    def test_media_only_message_is_stored(self, client):
        form = twilio_form(
            "",
            "MM1",
            NumMedia="1",
            MediaUrl0="https://media.example.com/photo.jpg",
            MediaContentType0="image/jpeg",
        )
        response = post_sms(client, form)
        assert response.json()["status"] == "created"

        with SessionLocal() as db:
            message = db.query(Message).one()
        assert message.media_url == "https://media.example.com/photo.jpg"
        assert message.media_type == "image/jpeg"
        assert message.tags == ["untagged"]


class TestWebhookGatewayProvider:
    """Provider B: generic gateway payloads."""

    def test_json_payload(self, client):
        response = client.post(
            "/api/webhook/sms",
            json={"message": "#recipes lentil soup", "from": "5551230002", "message_id": "gw-1"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "created"
        with SessionLocal() as db:
            user = find_user_by_phone(db, "+15551230002")
            message = db.query(Message).one()
        assert message.user_id == user.id
        assert message.tags == ["recipes"]

    def test_form_payload_with_alternate_fields(self, client):
        response = client.post(
            "/api/webhook/sms",
            data={"sms": "#quotes carpe diem", "originalsenderid": "15551230003"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "created"
        with SessionLocal() as db:
            assert find_user_by_phone(db, "+15551230003") is not None

    def test_same_handset_in_both_shapes_is_one_user(self, client):
        post_sms(client, twilio_form("#a one", "SM1", sender="+15551230004"))
        client.post("/api/webhook/sms", json={"body": "#b two", "from": "5551230004"})

        assert count_rows(User) == 1
        assert count_rows(Message) == 2

    def test_without_message_id_merges_repeats(self, client):
        payload = {"message": "#notes hi", "from": "5551230005"}
        first = client.post("/api/webhook/sms", json=payload)
        second = client.post("/api/webhook/sms", json=payload)

        assert first.json()["status"] == "created"
        assert second.json()["status"] == "merged"


class TestWebhookSkips:
    """Deliveries that are acknowledged but not stored."""

    def test_confirmation_echo_is_skipped(self, client):
        response = post_sms(client, twilio_form("Saved to #movies", "SM1"))

        assert response.status_code == 200
        assert response.json() == {"status": "skipped"}
        assert count_rows(Message) == 0

    def test_empty_body_is_skipped(self, client):
        response = post_sms(client, twilio_form("   ", "SM1"))

        assert response.status_code == 200
        assert response.json() == {"status": "skipped"}
        assert count_rows(Message) == 0
        assert count_rows(User) == 0


class TestWebhookRejections:
    """Rejected deliveries have no side effects."""

    def test_untrusted_account_returns_403(self, client):
        form = twilio_form("#movies sneaky", "SM1", AccountSid="ACsomeoneelse")
        response = post_sms(client, form)

        assert response.status_code == 403
        assert count_rows(Message) == 0
        assert count_rows(User) == 0

    def test_invalid_json_returns_422(self, client):
        response = client.post(
            "/api/webhook/sms",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 422

    def test_json_array_returns_422(self, client):
        response = client.post(
            "/api/webhook/sms",
            content="[1, 2, 3]",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 422

    def test_unknown_shape_returns_422(self, client):
        response = client.post("/api/webhook/sms", json={"foo": "bar"})
        assert response.status_code == 422

    def test_twilio_missing_required_fields_returns_422(self, client):
        response = client.post("/api/webhook/sms", data={"Body": "hi", "From": SENDER})
        assert response.status_code == 422
        assert count_rows(User) == 0

    def test_gateway_without_sender_returns_422(self, client):
        response = client.post("/api/webhook/sms", json={"message": "hi"})
        assert response.status_code == 422

    def test_store_failure_returns_503(self, client, monkeypatch):
        def broken_ingest(*args, **kwargs):
            raise OperationalError("INSERT INTO messages", {}, Exception("disk I/O error"))

        monkeypatch.setattr("aside.pipeline.ingest", broken_ingest)
        response = post_sms(client, twilio_form("#movies heat", "SM1"))

        assert response.status_code == 503

    def test_retry_after_store_failure_is_still_first_contact(self, client, monkeypatch):
        from aside.dedup import ingest as real_ingest

        calls = []

        def fails_once(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("INSERT INTO messages", {}, Exception("disk I/O error"))
            return real_ingest(*args, **kwargs)

        monkeypatch.setattr("aside.pipeline.ingest", fails_once)

        assert post_sms(client, twilio_form("hello", "SM1")).status_code == 503
        assert count_rows(User) == 0

        assert post_sms(client, twilio_form("hello", "SM1")).json()["status"] == "created"
        with SessionLocal() as db:
            user = find_user_by_phone(db, SENDER)
            assert user.onboarding_step == "welcome_sent"


class TestWebhookSignature:
    """X-Twilio-Signature validation when enabled."""

    URL = "https://hooks.example.com/api/webhook/sms"
    TOKEN = "test-auth-token"

    @pytest.fixture
    def signed(self, monkeypatch):
        monkeypatch.setattr(settings, "VALIDATE_TWILIO_SIGNATURE", True)
        monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", self.TOKEN)
        monkeypatch.setattr(settings, "PUBLIC_WEBHOOK_URL", self.URL)

    def sign(self, form: dict, token: str | None = None) -> str:
        payload = self.URL + "".join(f"{key}{form[key]}" for key in sorted(form))
        digest = hmac.new((token or self.TOKEN).encode(), payload.encode(), hashlib.sha1).digest()
        return base64.b64encode(digest).decode()

    def test_valid_signature_accepted(self, client, signed):
        form = twilio_form("#movies heat", "SM1")
        response = post_sms(client, form, headers={"X-Twilio-Signature": self.sign(form)})

        assert response.status_code == 200
        assert response.json()["status"] == "created"

    def test_missing_signature_rejected(self, client, signed):
        response = post_sms(client, twilio_form("#movies heat", "SM1"))

        assert response.status_code == 403
        assert count_rows(Message) == 0

    def test_wrong_token_rejected(self, client, signed):
        form = twilio_form("#movies heat", "SM1")
        response = post_sms(client, form, headers={"X-Twilio-Signature": self.sign(form, "other-token")})

        assert response.status_code == 403

    def test_tampered_body_rejected(self, client, signed):
        form = twilio_form("#movies heat", "SM1")
        signature = self.sign(form)
        form["Body"] = "#movies something else"
        response = post_sms(client, form, headers={"X-Twilio-Signature": signature})

        assert response.status_code == 403

    def test_gateway_payload_not_held_to_twilio_signature(self, client, signed):
        response = client.post("/api/webhook/sms", json={"message": "#movies heat", "from": "+12024561111"})

        assert response.status_code == 200
        assert response.json()["status"] == "created"

    def test_gateway_form_not_held_to_twilio_signature(self, client, signed):
        response = client.post("/api/webhook/sms", data={"sms": "#books dune", "originalsenderid": "2024561111"})

        assert response.status_code == 200
        assert count_rows(Message) == 1


class TestHealthAndMetrics:

    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_ready_without_auth_token_when_validating(self, client, monkeypatch):
        monkeypatch.setattr(settings, "VALIDATE_TWILIO_SIGNATURE", True)
        monkeypatch.setattr(settings, "TWILIO_AUTH_TOKEN", None)

        response = client.get("/health/ready")
        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_metrics_count_webhook_outcomes(self, client):
        post_sms(client, twilio_form("#movies heat", "SM1"))
        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'webhook_requests_total{result="created"}' in response.text

    def test_request_id_header(self, client):
        response = client.get("/health/live")
        assert "X-Request-ID" in response.headers

    def test_upstream_request_id_is_kept(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "edge-42"})
        assert response.headers["X-Request-ID"] == "edge-42"
