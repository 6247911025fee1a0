"""
Exception taxonomy for the SMS delivery core.

Only DuplicateRequest and InvalidPhoneNumber ever reach a submit() caller.
Everything raised on the callback side is resolved inside the outbound
state machine and surfaces as a request state plus reason.
"""

from typing import Any, Optional


class SmsWalletError(Exception):
    """Base exception carrying an error code and the HTTP status it maps to."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        status_code: int = 500,
        details: Optional[Any] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details
        super().__init__(self.message)


class DuplicateRequest(SmsWalletError):
    """Raised when a request_id is reused; the existing record is left as is."""

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(
            f"request {request_id} already exists",
            code="DUPLICATE_REQUEST",
            status_code=409,
        )


class InvalidPhoneNumber(SmsWalletError):
    def __init__(self, phone_number: str, reason: str = "must be E.164 (+ followed by 1-15 digits)"):
        self.phone_number = phone_number
        super().__init__(
            f"invalid phone number {phone_number!r}: {reason}",
            code="INVALID_PHONE_NUMBER",
            status_code=422,
        )


class InvalidTransition(SmsWalletError):
    """
    Raised when a segment outcome conflicts with the one already recorded,
    or a state change is not allowed from the record's current state.
    """

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, code="INVALID_TRANSITION", status_code=409, details=details)


class NotFound(SmsWalletError):
    def __init__(self, message: str = "Resource not found"):
        super().__init__(message, code="NOT_FOUND", status_code=404)


class MalformedToken(SmsWalletError):
    def __init__(self, token: str):
        self.token = token
        super().__init__(
            f"malformed correlation token {token!r}",
            code="MALFORMED_TOKEN",
            status_code=422,
        )


class MalformedPayload(SmsWalletError):
    def __init__(self, message: str):
        super().__init__(message, code="MALFORMED_PAYLOAD", status_code=422)


# =============================================================================
# Transport failures
# =============================================================================

class TransportError(SmsWalletError):
    """
    Raised by a Transport that cannot hand a segment to the radio at all.

    The state machine records it as the segment's sent outcome using
    result_code, exactly as if the transport had reported it via on_sent.
    """

    def __init__(self, message: str, result_code: int = 1):
        self.result_code = result_code
        super().__init__(message, code="TRANSPORT_ERROR", status_code=502)


class TransientSendFailure(TransportError):
    pass


class PermanentSendFailure(TransportError):
    # Defaults to NULL_PDU, the transport's "payload cannot be encoded" result
    def __init__(self, message: str, result_code: int = 3):
        super().__init__(message, result_code=result_code)
