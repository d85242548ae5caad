import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated, NoReturn

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aside import boards, storage
from aside.config import settings
from aside.errors import MalformedPayload, PersistenceFailure, UntrustedSender
from aside.logging_utils import RequestLoggingMiddleware, bind_request_id, log_webhook_data, setup_logging
from aside.metrics import get_metrics, get_metrics_content_type, record_webhook_outcome
from aside.normalizer import decode_payload, detect_provider
from aside.notifications import ConnectionRegistry
from aside.onboarding import OnboardingService
from aside.pipeline import IngestionPipeline, PostProcessor
from aside.schemas import (
    BoardMemberAdd,
    BoardMemberResponse,
    BoardMembersResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    MessagesListResponse,
    SharedBoardCreate,
    SharedBoardResponse,
    TagsResponse,
    WebhookResponse,
    WsInbound,
)
from aside.sms import sms_sender
from aside.storage import check_db_health, get_db, init_db
from aside.utils import verify_twilio_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, wire the registry, onboarding and pipeline services,
      start the closed-connection sweep
    - Shutdown: stop the sweep and cancel pending post-processing
    """
    init_db()

    registry = ConnectionRegistry()
    post_processor = PostProcessor(registry)
    onboarding = OnboardingService(sms_sender)
    app.state.registry = registry
    app.state.post_processor = post_processor
    app.state.onboarding = onboarding
    app.state.pipeline = IngestionPipeline(registry, onboarding, post_processor)

    sweeper = asyncio.create_task(registry.run_sweep(settings.WS_PING_INTERVAL_SECONDS))
    yield

    sweeper.cancel()
    await asyncio.gather(sweeper, return_exceptions=True)
    await post_processor.shutdown()


app = FastAPI(
    title="Aside SMS Ingestion",
    description="Turns inbound SMS into tagged, deduplicated, shared messages",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


def get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. TWILIO_AUTH_TOKEN is set whenever signature validation is on

    Otherwise returns 503 (Service Unavailable).
    """
    if settings.VALIDATE_TWILIO_SIGNATURE and not settings.TWILIO_AUTH_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="TWILIO_AUTH_TOKEN required for signature validation"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Route
# =============================================================================

def _reject(request: Request, result: str, status_code: int, detail: str, provider: str | None = None) -> NoReturn:
    record_webhook_outcome(result)
    log_webhook_data(request=request, result=result, provider=provider)
    raise HTTPException(status_code=status_code, detail=detail)


def _signature_ok(request: Request, payload: dict, signature: str | None) -> bool:
    if not settings.VALIDATE_TWILIO_SIGNATURE:
        return True
    if not signature or not settings.TWILIO_AUTH_TOKEN:
        return False
    url = settings.PUBLIC_WEBHOOK_URL or str(request.url)
    params = {key: str(value) for key, value in payload.items()}
    return verify_twilio_signature(url, params, signature, settings.TWILIO_AUTH_TOKEN)


@app.post(
    "/api/webhook/sms",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    responses={
        403: {"model": ErrorResponse, "description": "Untrusted sender or invalid signature"},
        422: {"model": ErrorResponse, "description": "Malformed payload"},
        503: {"model": ErrorResponse, "description": "Store unavailable, retry later"},
    }
)
@app.post(
    "/api/webhook/twilio",
    response_model=WebhookResponse,
    response_model_exclude_none=True,
    include_in_schema=False,
)
async def webhook(
    request: Request,
    x_twilio_signature: Annotated[str | None, Header(alias="X-Twilio-Signature")] = None,
    db: Session = Depends(get_db),
    pipeline: IngestionPipeline = Depends(get_pipeline),
) -> WebhookResponse:
    """
    Ingest one inbound SMS from either provider.

    - Twilio posts form-encoded fields (Body, From, MessageSid, ...)
    - SMS gateways post JSON or form fields (message/sms/body, from, message_id)
    - Idempotent per provider message id: a redelivery returns "duplicate"
    - Confirmation echoes and empty deliveries are acknowledged as "skipped"

    Headers:
        - X-Twilio-Signature: checked on Twilio payloads when VALIDATE_TWILIO_SIGNATURE is on
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    try:
        payload = decode_payload(raw_body, request.headers.get("content-type"))
    except MalformedPayload as e:
        logger.error(f"Malformed webhook body: {e.reason}; raw body: {raw_body[:2000]!r}")
        _reject(request, "malformed", status.HTTP_422_UNPROCESSABLE_ENTITY, e.reason)

    provider = detect_provider(payload)
    if provider == "twilio" and not _signature_ok(request, payload, x_twilio_signature):
        logger.error("Invalid or missing X-Twilio-Signature")
        _reject(request, "untrusted", status.HTTP_403_FORBIDDEN, "invalid signature", provider=provider)

    try:
        result = await pipeline.handle(db, payload)
    except UntrustedSender as e:
        _reject(request, "untrusted", status.HTTP_403_FORBIDDEN, str(e), provider="twilio")
    except MalformedPayload as e:
        logger.error(f"Unrecognized webhook payload: {e.reason}; raw body: {raw_body[:2000]!r}")
        _reject(request, "malformed", status.HTTP_422_UNPROCESSABLE_ENTITY, e.reason, provider=provider)
    except PersistenceFailure:
        _reject(request, "error", status.HTTP_503_SERVICE_UNAVAILABLE, "store unavailable, retry later", provider=provider)

    logger.info(f"Webhook processed: result={result.status}, message_id={result.message_id}")
    record_webhook_outcome(result.status)
    log_webhook_data(
        request=request,
        result=result.status,
        message_id=result.message_id,
        provider=result.provider,
        dup=result.duplicate,
    )

    return WebhookResponse(status=result.status, message_id=result.message_id)


# =============================================================================
# Message Routes
# =============================================================================

def _require_user(db: Session, user_id: int):
    user = storage.find_user_by_id(db, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="user not found")
    return user


@app.get("/api/messages", response_model=MessagesListResponse)
async def list_messages(
    user_id: Annotated[int, Query(description="Owner of the messages")],
    tag: Annotated[str | None, Query(description="Only messages carrying this private tag")] = None,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    List a user's own messages, newest first.

    Messages that are nothing but hashtags are left out. A tag filter only
    reads the user's own rows, whatever shared board shares its name.
    """
    _require_user(db, user_id)
    if tag is not None:
        messages, total = boards.list_private_tag(db, user_id, tag, limit=limit, offset=offset)
    else:
        messages, total = storage.get_messages(db, user_id=user_id, limit=limit, offset=offset)

    logger.info(f"GET /api/messages: returned {len(messages)} of {total} for user {user_id} (tag={tag})")
    return MessagesListResponse(
        data=[MessageResponse.model_validate(m) for m in messages],
        total=total,
        limit=limit,
        offset=offset
    )


@app.get("/api/tags", response_model=TagsResponse)
async def list_tags(
    user_id: Annotated[int, Query()],
    db: Session = Depends(get_db)
) -> TagsResponse:
    _require_user(db, user_id)
    return TagsResponse(tags=storage.get_tags(db, user_id))


# =============================================================================
# Shared Board Routes
# =============================================================================

def _require_board(db: Session, name: str):
    board = storage.find_shared_board_by_name(db, name)
    if board is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"shared board #{name} not found")
    return board


def _members_response(db: Session, board) -> BoardMembersResponse:
    rows = storage.list_board_memberships(db, board.id)
    return BoardMembersResponse(
        board=board.name,
        members=[
            BoardMemberResponse(
                user_id=user.id,
                display_name=user.display_name,
                role=membership.role,
                joined_at=membership.joined_at,
            )
            for membership, user in rows
        ],
    )


@app.post(
    "/api/shared-boards",
    response_model=SharedBoardResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse, "description": "Board name taken"}},
)
async def create_shared_board(body: SharedBoardCreate, db: Session = Depends(get_db)) -> SharedBoardResponse:
    """Create a shared board; the owner becomes its first member."""
    _require_user(db, body.owner_id)
    if storage.find_shared_board_by_name(db, body.name) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"shared board #{body.name} exists")
    try:
        board = storage.create_shared_board(db, body.name, body.owner_id)
    except IntegrityError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"shared board #{body.name} exists")
    return SharedBoardResponse.model_validate(board)


@app.post("/api/shared-boards/{name}/members", response_model=BoardMembersResponse)
async def add_shared_board_member(
    name: str,
    body: BoardMemberAdd,
    db: Session = Depends(get_db)
) -> BoardMembersResponse:
    board = _require_board(db, name)
    _require_user(db, body.user_id)
    storage.add_board_member(db, board.id, body.user_id)
    return _members_response(db, board)


@app.get("/api/shared-boards/{name}/members", response_model=BoardMembersResponse)
async def list_shared_board_members(name: str, db: Session = Depends(get_db)) -> BoardMembersResponse:
    return _members_response(db, _require_board(db, name))


@app.get(
    "/api/shared-boards/{name}/messages",
    response_model=MessagesListResponse,
    responses={403: {"model": ErrorResponse, "description": "Not a member"}},
)
async def list_shared_board_messages(
    name: str,
    user_id: Annotated[int, Query(description="Member asking for the board")],
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """Every member's messages tagged with the board's name. Members only."""
    board = _require_board(db, name)
    try:
        messages, total = boards.list_shared_board(db, board, user_id, limit=limit, offset=offset)
    except PermissionError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))

    return MessagesListResponse(
        data=[MessageResponse.model_validate(m) for m in messages],
        total=total,
        limit=limit,
        offset=offset
    )


# =============================================================================
# Live Updates
# =============================================================================

@app.websocket("/ws/messages")
async def messages_socket(websocket: WebSocket):
    """
    Dashboard live-update channel.

    Client frames: {"type": "IDENTIFY", "userId": n}.
    Server frames: IDENTIFIED and ERROR (replies to the client's own frames)
    and NEW_MESSAGE (a refetch hint, no payload, identified connections only).
    Liveness rides on protocol-level pings, not on frames.
    """
    registry: ConnectionRegistry = websocket.app.state.registry
    await websocket.accept()
    connection = await registry.register(websocket)

    with bind_request_id(connection.id):
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = WsInbound.model_validate_json(raw)
                except ValidationError as e:
                    logger.warning(f"Invalid frame on {connection.id}: {raw[:200]!r}")
                    await websocket.send_text(json.dumps({
                        "type": "ERROR",
                        "message": e.errors(include_url=False)[0]["msg"],
                    }))
                    continue

                if not await registry.identify(connection.id, frame.user_id):
                    # Dropped by a failed write or the sweep while this frame was in flight
                    logger.warning(f"IDENTIFY on removed connection {connection.id}; closing")
                    await websocket.send_text(json.dumps({"type": "ERROR", "message": "connection expired, reconnect"}))
                    await websocket.close()
                    return
                await websocket.send_text(json.dumps({"type": "IDENTIFIED", "userId": frame.user_id}))
        except WebSocketDisconnect:
            logger.info(f"WebSocket client disconnected: {connection.id}")
        finally:
            await registry.remove(connection.id)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total / request_latency_seconds
    - webhook_requests_total: Webhook outcomes by result
    - ws_connections / ws_events_total: live fan-out
    - onboarding_transitions_total, sms_send_total, post_process_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


def main() -> None:
    """Serve the app; WebSocket liveness uses uvicorn's protocol-level pings."""
    import uvicorn

    uvicorn.run(
        "aside.main:app",
        host=settings.HOST,
        port=settings.PORT,
        ws_ping_interval=settings.WS_PING_INTERVAL_SECONDS,
        ws_ping_timeout=settings.WS_PING_TIMEOUT_SECONDS,
        log_config=None,
    )


if __name__ == "__main__":
    main()
