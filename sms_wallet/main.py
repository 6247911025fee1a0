import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from sms_wallet.config import settings
from sms_wallet.errors import SmsWalletError
from sms_wallet.events import EventPublisher, RecentEvents
from sms_wallet.inbound import InboundReceiver
from sms_wallet.logging_utils import RequestLoggingMiddleware, log_callback_data, setup_logging
from sms_wallet.metrics import get_metrics, get_metrics_content_type
from sms_wallet.outbound import OutboundStateMachine
from sms_wallet.recovery import BootRecoveryScheduler, RecoveryEngine
from sms_wallet.schemas import (
    ErrorResponse,
    EventsResponse,
    HealthResponse,
    InboundRequest,
    InboundResponse,
    OkResponse,
    PendingListResponse,
    RecoveryResponse,
    SendRequestResponse,
    SubmitRequest,
    SubmitResponse,
    TransportCallback,
)
from sms_wallet.storage import CorrelationStore, SessionLocal, check_db_health, init_db
from sms_wallet.transport import DryRunTransport, Transport
from sms_wallet.utils import verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@dataclass
class Service:
    """Delivery core wired together for one process."""
    store: CorrelationStore
    transport: Transport
    publisher: EventPublisher
    recent_events: RecentEvents
    machine: OutboundStateMachine
    recovery: RecoveryEngine
    receiver: InboundReceiver
    scheduler: BootRecoveryScheduler


def build_service(
    session_factory: sessionmaker = SessionLocal,
    transport: Optional[Transport] = None,
) -> Service:
    store = CorrelationStore(session_factory)
    transport = transport or DryRunTransport()
    publisher = EventPublisher()
    machine = OutboundStateMachine(store, transport, publisher)
    recovery = RecoveryEngine(store, machine, publisher)
    return Service(
        store=store,
        transport=transport,
        publisher=publisher,
        recent_events=RecentEvents(settings.EVENT_BUFFER_SIZE),
        machine=machine,
        recovery=recovery,
        receiver=InboundReceiver(publisher),
        scheduler=BootRecoveryScheduler(recovery),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    - Startup: create tables, wire the delivery core, attach the event
      buffer and schedule the boot recovery pass
    - Shutdown: detach the event consumer
    """
    init_db()
    service = build_service()
    service.publisher.attach(service.recent_events)
    app.state.service = service

    if settings.RECOVERY_ON_BOOT:
        service.scheduler.schedule()

    yield

    service.publisher.detach()


app = FastAPI(
    title="SMS Wallet Delivery API",
    description="Offline SMS transport for wallet transaction messages",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(SmsWalletError)
async def sms_wallet_error_handler(request: Request, exc: SmsWalletError) -> JSONResponse:
    logger.warning(f"{exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


def get_service(request: Request) -> Service:
    return request.app.state.service


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. CALLBACK_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.CALLBACK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="CALLBACK_SECRET not configured")

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Database not reachable or schema not applied")

    return HealthResponse(status="ready")


# =============================================================================
# Outbound Routes
# =============================================================================

@app.post(
    "/messages",
    response_model=SubmitResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        409: {"model": ErrorResponse, "description": "request_id already used"},
        422: {"model": ErrorResponse, "description": "Invalid phone number"},
    },
)
def submit_message(payload: SubmitRequest, service: Service = Depends(get_service)) -> SubmitResponse:
    """
    Accept a transaction message for SMS delivery.

    202 means accepted for processing; follow progress with
    GET /messages/{request_id} or GET /events.
    """
    request = service.machine.submit(
        phone_number=payload.phone_number,
        body=payload.body,
        request_id=payload.request_id,
    )
    return SubmitResponse(request_id=request.request_id, segments=len(request.segments))


@app.get("/messages/pending", response_model=PendingListResponse)
def list_pending(service: Service = Depends(get_service)) -> PendingListResponse:
    """Requests that are not in a terminal state, oldest first."""
    pending = service.store.list_non_terminal()
    return PendingListResponse(
        data=[SendRequestResponse.from_domain(r) for r in pending],
        total=len(pending),
    )


@app.get(
    "/messages/{request_id}",
    response_model=SendRequestResponse,
    responses={404: {"model": ErrorResponse, "description": "Unknown request"}},
)
def get_message(request_id: str, service: Service = Depends(get_service)) -> SendRequestResponse:
    return SendRequestResponse.from_domain(service.store.get(request_id))


# =============================================================================
# Transport / Inbox Routes
# =============================================================================

def _require_signature(request: Request, raw_body: bytes, signature: Optional[str], kind: str) -> None:
    if not signature or not verify_hmac_signature(raw_body, signature, settings.CALLBACK_SECRET):
        logger.error(f"Invalid or missing X-Signature on {kind} callback")
        log_callback_data(request, kind=kind, result="invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")


async def _handle_transport_callback(request: Request, signature: Optional[str], kind: str) -> OkResponse:
    raw_body = await request.body()
    _require_signature(request, raw_body, signature, kind)

    try:
        callback = TransportCallback.model_validate_json(raw_body)
    except ValidationError as e:
        logger.error(f"Invalid {kind} callback body: {e}")
        log_callback_data(request, kind=kind, result="validation_error")
        raise HTTPException(status_code=422, detail=str(e))

    machine = request.app.state.service.machine
    handler = machine.on_sent if kind == "sent" else machine.on_delivered
    # Per-request locks block, so keep them off the event loop
    state = await run_in_threadpool(handler, callback.token, callback.result_code)

    log_callback_data(
        request,
        kind=kind,
        token=callback.token,
        result=state.value if state is not None else "ignored",
    )
    return OkResponse()


@app.post(
    "/callbacks/sent",
    response_model=OkResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid signature"}},
)
async def sent_callback(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
) -> OkResponse:
    """
    Transport "sent" report for one segment.

    Always 200 once the signature and body are valid: duplicate, stale or
    conflicting reports are absorbed by the state machine.
    """
    return await _handle_transport_callback(request, x_signature, "sent")


@app.post(
    "/callbacks/delivered",
    response_model=OkResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid signature"}},
)
async def delivered_callback(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
) -> OkResponse:
    """Transport "delivered" report for one segment."""
    return await _handle_transport_callback(request, x_signature, "delivered")


@app.post(
    "/inbound",
    response_model=InboundResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid signature"}},
)
async def inbound(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
) -> InboundResponse:
    """Inbox hand-off of one reassembled message."""
    raw_body = await request.body()
    _require_signature(request, raw_body, x_signature, "inbound")

    try:
        message = InboundRequest.model_validate_json(raw_body)
    except ValidationError as e:
        logger.error(f"Invalid inbound body: {e}")
        log_callback_data(request, kind="inbound", result="validation_error")
        raise HTTPException(status_code=422, detail=str(e))

    receiver = request.app.state.service.receiver
    decoded = receiver.on_inbound_assembled(
        message.raw_body,
        message.sender_address,
        message.sent_timestamp,
        message.received_at,
    )
    log_callback_data(request, kind="inbound", result="matched" if decoded else "ignored")
    return InboundResponse(matched=decoded is not None)


# =============================================================================
# Recovery / Events Routes
# =============================================================================

@app.post("/recovery", response_model=RecoveryResponse)
def run_recovery(service: Service = Depends(get_service)) -> RecoveryResponse:
    """Run one recovery pass now and report how many requests were re-driven."""
    return RecoveryResponse(redriven=service.recovery.recover())


@app.get("/events", response_model=EventsResponse)
def recent_events(
    limit: Annotated[int, Query(ge=1, le=1000, description="Maximum number of events to return")] = 100,
    service: Service = Depends(get_service),
) -> EventsResponse:
    events = service.recent_events.snapshot(limit)
    return EventsResponse(data=[e.model_dump(mode="json") for e in events])


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus metrics in text exposition format."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
