"""
Transport boundary: hands one SMS part to the radio.

A transport accepts a segment and later reports "sent" and "delivered"
results for it by calling back into the outbound state machine with the
correlation token it was given. Those callbacks may come from any thread,
in any order, more than once, or never.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import List, Protocol

logger = logging.getLogger(__name__)


class Transport(Protocol):
    def send_segment(self, phone_number: str, segment_body: str, correlation_token: str) -> None:
        """
        Queue one part for transmission and return immediately.
        May raise TransportError (or a subclass) if the part cannot be queued.
        """
        ...


@dataclass(frozen=True)
class QueuedSegment:
    phone_number: str
    segment_body: str
    correlation_token: str


class DryRunTransport:
    """
    Transport that never touches a radio.

    Queued parts are kept in memory so a device bridge (or a test) can
    inspect them and report results through the callback endpoints.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queued: List[QueuedSegment] = []

    def send_segment(self, phone_number: str, segment_body: str, correlation_token: str) -> None:
        with self._lock:
            self._queued.append(QueuedSegment(phone_number, segment_body, correlation_token))
        logger.debug(f"DRY_RUN: segment queued, token={correlation_token}, length={len(segment_body)}")

    @property
    def queued(self) -> List[QueuedSegment]:
        with self._lock:
            return list(self._queued)

    def clear(self) -> None:
        with self._lock:
            self._queued.clear()
