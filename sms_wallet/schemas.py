"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for submissions, transport callbacks and inbox deliveries
- Response models for API responses
"""

from typing import Optional

from pydantic import BaseModel, Field

from sms_wallet.domain import RequestState, SendRequest


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SubmitRequest(BaseModel):
    """
    Body of POST /messages.

    The phone number format is checked by the state machine so that a bad
    number is reported as INVALID_PHONE_NUMBER rather than a schema error.
    """
    request_id: str = Field(..., min_length=1, description="Caller supplied identifier, unique per logical send")
    phone_number: str = Field(..., description="Destination in E.164 format")
    body: str = Field(..., description="Transaction message text")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "request_id": "r1",
                    "phone_number": "+14155550100",
                    "body": "WLT1|TX|3f2a|from:+919876543210|to:+14155550100|amt:5.00|ts:1736935200|n:9a1b|sig:abc",
                }
            ]
        }
    }


class TransportCallback(BaseModel):
    """Body of POST /callbacks/sent and /callbacks/delivered."""
    token: str = Field(..., min_length=1, description="Correlation token given to the transport")
    result_code: int = Field(..., description="Transport result code, -1 means OK")


class InboundRequest(BaseModel):
    """Body of POST /inbound: one message reassembled by the inbox."""
    raw_body: str = Field(..., description="Full message text")
    sender_address: Optional[str] = Field(None, description="Originating address if the inbox reported one")
    sent_timestamp: int = Field(..., ge=0, description="Service centre timestamp, epoch milliseconds")
    received_at: int = Field(..., ge=0, description="Local receive time, epoch milliseconds")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class SubmitResponse(BaseModel):
    status: str = Field(default="accepted", description="Accepted for processing, not sent")
    request_id: str
    segments: int = Field(..., ge=1, description="Number of SMS parts")


class OkResponse(BaseModel):
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    code: str = Field(..., description="Machine readable error code")


class SegmentResponse(BaseModel):
    index: int
    sent: str = Field(..., description="pending, ok or error")
    sent_code: Optional[int] = None
    delivered: str = Field(..., description="pending, ok or error")
    delivered_code: Optional[int] = None


class SendRequestResponse(BaseModel):
    request_id: str
    phone_number: str
    state: RequestState
    reason: Optional[str] = None
    attempt: int
    created_at: str
    last_transition_at: str
    segments: list[SegmentResponse] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, request: SendRequest) -> "SendRequestResponse":
        return cls(
            request_id=request.request_id,
            phone_number=request.phone_number,
            state=request.state,
            reason=request.reason,
            attempt=request.attempt,
            created_at=request.created_at,
            last_transition_at=request.last_transition_at,
            segments=[
                SegmentResponse(
                    index=s.index,
                    sent=s.sent_outcome.kind.value,
                    sent_code=s.sent_outcome.code,
                    delivered=s.delivered_outcome.kind.value,
                    delivered_code=s.delivered_outcome.code,
                )
                for s in request.segments
            ],
        )


class PendingListResponse(BaseModel):
    data: list[SendRequestResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class InboundResponse(BaseModel):
    matched: bool


class RecoveryResponse(BaseModel):
    redriven: int = Field(..., ge=0, description="Requests re-driven by this pass")


class EventsResponse(BaseModel):
    data: list[dict] = Field(default_factory=list, description="Most recent events, oldest first")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
