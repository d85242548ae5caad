"""
Webhook normalizer: two provider payload shapes in, one IngestionRequest out.

parse() never touches the store. It returns NormalizedOk, NormalizedSkip
(confirmation echoes, empty deliveries) or NormalizedInvalid, and raises
UntrustedSender when a Twilio payload names the wrong account.
"""

import json
import logging
from typing import Any, Optional
from urllib.parse import parse_qsl

from pydantic import ValidationError

from aside.config import Settings, settings as default_settings
from aside.errors import MalformedPayload, UntrustedSender
from aside.schemas import (
    GatewayWebhook,
    IngestionRequest,
    NormalizedInvalid,
    NormalizedOk,
    NormalizedSkip,
    NormalizerResult,
    TwilioWebhook,
)
from aside.utils import normalize_phone

logger = logging.getLogger(__name__)

_TWILIO_MARKERS = ("AccountSid", "MessageSid", "SmsMessageSid", "Body", "From")
_GATEWAY_MARKERS = ("message", "sms", "body", "from", "originalsenderid")


def decode_payload(raw_body: bytes, content_type: Optional[str]) -> dict[str, Any]:
    """
    Decode a webhook body. Twilio posts form-encoded, gateways usually JSON.

    Raises:
        MalformedPayload: body is neither a JSON object nor a form
    """
    content_type = (content_type or "").split(";")[0].strip().lower()
    text = raw_body.decode("utf-8", errors="replace")

    if content_type == "application/json" or text.lstrip().startswith("{"):
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedPayload(f"Invalid JSON: {e}", raw_body)
        if not isinstance(payload, dict):
            raise MalformedPayload("JSON body must be an object", raw_body)
        return payload

    pairs = parse_qsl(text, keep_blank_values=True)
    if not pairs:
        raise MalformedPayload("Empty or undecodable body", raw_body)
    return dict(pairs)


def _is_confirmation_echo(content: str, sender: str, settings: Settings) -> bool:
    """Our own outbound texts bounced back at the webhook."""
    if settings.TWILIO_PHONE_NUMBER and sender == normalize_phone(settings.TWILIO_PHONE_NUMBER):
        return True
    prefix = settings.CONFIRMATION_ECHO_PREFIX
    return bool(prefix) and content.strip().startswith(prefix)


def _finish(request: IngestionRequest, settings: Settings) -> NormalizerResult:
    if _is_confirmation_echo(request.content, request.sender_identity, settings):
        logger.info(f"Skipping confirmation echo from {request.sender_identity}")
        return NormalizedSkip(reason="confirmation_echo", provider=request.provider)
    if not request.content.strip() and not request.raw_media_url:
        logger.info(f"Skipping empty delivery from {request.sender_identity}")
        return NormalizedSkip(reason="empty", provider=request.provider)
    return NormalizedOk(request=request)


def _parse_twilio(payload: dict[str, Any], settings: Settings) -> NormalizerResult:
    try:
        data = TwilioWebhook.model_validate(payload)
    except ValidationError as e:
        return NormalizedInvalid(reason=f"Twilio payload: {e.errors(include_url=False)}")

    if settings.TWILIO_ACCOUNT_SID and data.AccountSid != settings.TWILIO_ACCOUNT_SID:
        logger.warning(f"Account SID mismatch: received {data.AccountSid}")
        raise UntrustedSender("AccountSid does not match the configured account")

    if data.NumSegments and data.NumSegments.isdigit() and int(data.NumSegments) > 1:
        logger.info(f"Multi-part message received: {data.NumSegments} segments")

    sender = normalize_phone(data.From)
    if sender == "+":
        return NormalizedInvalid(reason="Twilio payload: From has no digits")

    has_media = data.media_count > 0
    request = IngestionRequest(
        content=data.Body,
        sender_identity=sender,
        raw_media_url=data.MediaUrl0 if has_media else None,
        raw_media_type=data.MediaContentType0 if has_media else None,
        provider_message_id=data.delivery_id,
        provider="twilio",
    )
    return _finish(request, settings)


def _parse_gateway(payload: dict[str, Any], settings: Settings) -> NormalizerResult:
    try:
        data = GatewayWebhook.model_validate(payload)
    except ValidationError as e:
        return NormalizedInvalid(reason=f"Gateway payload: {e.errors(include_url=False)}")

    sender = normalize_phone(data.sender)
    if sender == "+":
        return NormalizedInvalid(reason="Gateway payload: sender has no digits")

    request = IngestionRequest(
        content=data.content,
        sender_identity=sender,
        provider_message_id=data.message_id or None,
        provider="gateway",
    )
    return _finish(request, settings)


def detect_provider(payload: dict[str, Any]) -> Optional[str]:
    """Which provider shape the payload has, by its marker keys; None if neither."""
    if any(key in payload for key in _TWILIO_MARKERS):
        return "twilio"
    if any(key in payload for key in _GATEWAY_MARKERS):
        return "gateway"
    return None


def parse(payload: dict[str, Any], settings: Settings = default_settings) -> NormalizerResult:
    """
    Normalize a decoded webhook payload.

    Raises:
        UntrustedSender: Twilio AccountSid differs from TWILIO_ACCOUNT_SID
    """
    provider = detect_provider(payload)
    if provider == "twilio":
        return _parse_twilio(payload, settings)
    if provider == "gateway":
        return _parse_gateway(payload, settings)
    return NormalizedInvalid(reason="Payload matches no known provider shape")
