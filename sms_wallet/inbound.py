"""
Inbound wallet messages.

The inbox hands over bodies that are already reassembled from their PDUs.
A body is a wallet message only if it starts with PROTOCOL_MARKER; what
follows the marker belongs to the application.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import unquote

from sms_wallet.errors import MalformedPayload
from sms_wallet.events import EventPublisher, InboundMessageReceived
from sms_wallet.metrics import record_inbound

logger = logging.getLogger(__name__)

# Wire-compatibility constant. Changing it requires a protocol version bump.
PROTOCOL_MARKER = "WLT1|TX|"


@dataclass(frozen=True)
class InboundMessage:
    raw_body: str
    sender_address: Optional[str]
    sent_timestamp: int
    received_at: int


def decode(
    raw_body: str,
    sender_address: Optional[str],
    sent_timestamp: int,
    received_at: int,
) -> Optional[InboundMessage]:
    """
    Match a reassembled body against the protocol marker.

    Exact, case-sensitive prefix test; no parsing beyond it.

    Returns:
        InboundMessage on a match, None otherwise
    """
    if not raw_body or not raw_body.startswith(PROTOCOL_MARKER):
        return None
    return InboundMessage(
        raw_body=raw_body,
        sender_address=sender_address,
        sent_timestamp=sent_timestamp,
        received_at=received_at,
    )


# =============================================================================
# Transaction payload
# =============================================================================

@dataclass(frozen=True)
class TransactionPayload:
    """
    Fields of a WLT1 transaction message:

        WLT1|TX|<txid>|from:<e164>|to:<e164>|amt:<d.dd>|ts:<epoch s>|n:<nonce>[|m:<memo>]|sig:<b64url>

    signed_text is everything before "|sig:", i.e. the bytes the signature covers.
    """
    version: str
    kind: str
    txid: str
    sender: str
    recipient: str
    amount: str
    timestamp: int
    nonce: str
    memo: Optional[str]
    signature: str
    signed_text: str


def _field(value: Optional[str], prefix: str) -> str:
    if value is not None and value.startswith(prefix):
        return value[len(prefix):]
    return ""


def parse_payload(raw_body: str) -> TransactionPayload:
    """
    Split a wallet transaction message into its fields.

    Signature verification and amount handling are left to the caller.

    Raises:
        MalformedPayload: Missing marker, signature or required field, or
            a field beyond the optional memo
    """
    if not raw_body.startswith(PROTOCOL_MARKER):
        raise MalformedPayload("missing protocol marker")

    sig_at = raw_body.find("|sig:")
    if sig_at < 0:
        raise MalformedPayload("missing signature")
    signed_text = raw_body[:sig_at]
    signature = raw_body[sig_at + len("|sig:"):]

    fields = signed_text.split("|")
    if len(fields) > 9 or (len(fields) == 9 and not fields[8].startswith("m:")):
        raise MalformedPayload("unexpected fields")
    fields += [None] * (9 - len(fields))
    version, kind, txid, sender, recipient, amount, ts, nonce, memo = fields[:9]

    sender = _field(sender, "from:")
    recipient = _field(recipient, "to:")
    amount = _field(amount, "amt:")
    ts = _field(ts, "ts:")
    nonce = _field(nonce, "n:")
    memo = unquote(memo[2:]) if memo and memo.startswith("m:") else None

    if not (txid and sender and recipient and amount and nonce and ts.isdigit() and int(ts) > 0):
        raise MalformedPayload("missing required fields")

    return TransactionPayload(
        version=version,
        kind=kind,
        txid=txid,
        sender=sender,
        recipient=recipient,
        amount=amount,
        timestamp=int(ts),
        nonce=nonce,
        memo=memo,
        signature=signature,
        signed_text=signed_text,
    )


# =============================================================================
# Inbox entry point
# =============================================================================

class InboundReceiver:
    def __init__(self, publisher: EventPublisher):
        self._publisher = publisher

    def on_inbound_assembled(
        self,
        raw_body: str,
        sender_address: Optional[str],
        sent_timestamp: int,
        received_at: int,
    ) -> Optional[InboundMessage]:
        """Decode one inbox message and publish it if it carries the wallet marker."""
        message = decode(raw_body, sender_address, sent_timestamp, received_at)
        if message is None:
            logger.debug(f"Inbound message ignored, no protocol marker (length={len(raw_body)})")
            record_inbound("ignored")
            return None

        logger.info(f"Inbound wallet message from {sender_address or 'unknown sender'}")
        record_inbound("matched")
        self._publisher.publish(InboundMessageReceived(
            raw_body=message.raw_body,
            sender_address=message.sender_address,
            sent_timestamp=message.sent_timestamp,
            received_at=message.received_at,
        ))
        return message
