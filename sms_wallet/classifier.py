"""
Failure classification for transport result codes.

Result codes follow Android's SmsManager / Activity constants, which is what
the handset transport reports in its sent and delivered callbacks.
"""

from enum import Enum, IntEnum


RESULT_OK = -1


class ResultCode(IntEnum):
    OK = RESULT_OK
    GENERIC_FAILURE = 1
    RADIO_OFF = 2
    NULL_PDU = 3
    NO_SERVICE = 4
    LIMIT_EXCEEDED = 5
    FDN_CHECK_FAILURE = 6
    SHORT_CODE_NOT_ALLOWED = 7
    SHORT_CODE_NEVER_ALLOWED = 8
    RADIO_NOT_AVAILABLE = 9
    NETWORK_REJECT = 10
    INVALID_ARGUMENTS = 11
    INVALID_STATE = 12
    NO_MEMORY = 13
    INVALID_SMS_FORMAT = 14
    SYSTEM_ERROR = 15
    MODEM_ERROR = 16
    NETWORK_ERROR = 17
    ENCODING_ERROR = 18
    INVALID_SMSC_ADDRESS = 19


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


# Malformed payload or a transport defect that resending the same PDU cannot fix
PERMANENT_CODES = frozenset({
    ResultCode.NULL_PDU,
    ResultCode.FDN_CHECK_FAILURE,
    ResultCode.SHORT_CODE_NOT_ALLOWED,
    ResultCode.SHORT_CODE_NEVER_ALLOWED,
    ResultCode.INVALID_ARGUMENTS,
    ResultCode.INVALID_SMS_FORMAT,
    ResultCode.ENCODING_ERROR,
    ResultCode.INVALID_SMSC_ADDRESS,
})

# Temporary radio or service unavailability
TRANSIENT_CODES = frozenset({
    ResultCode.GENERIC_FAILURE,
    ResultCode.RADIO_OFF,
    ResultCode.NO_SERVICE,
    ResultCode.LIMIT_EXCEEDED,
    ResultCode.RADIO_NOT_AVAILABLE,
    ResultCode.NETWORK_REJECT,
    ResultCode.INVALID_STATE,
    ResultCode.NO_MEMORY,
    ResultCode.SYSTEM_ERROR,
    ResultCode.MODEM_ERROR,
    ResultCode.NETWORK_ERROR,
})


def classify(code: int) -> FailureClass:
    """
    Map a transport result code to a failure class.

    Unrecognized codes are transient: a spurious retry is cheaper than
    abandoning a transaction message.

    Args:
        code: Result code reported by the transport (never RESULT_OK)

    Returns:
        FailureClass.PERMANENT or FailureClass.TRANSIENT
    """
    if code in PERMANENT_CODES:
        return FailureClass.PERMANENT
    return FailureClass.TRANSIENT


def describe(code: int) -> str:
    """Opaque, human readable reason for a result code (e.g. "RADIO_OFF", "CODE_42")."""
    try:
        return ResultCode(code).name
    except ValueError:
        return f"CODE_{code}"
