"""
SQLAlchemy ORM models for the correlation store.

This module contains database table definitions using SQLAlchemy.
For the immutable snapshots handed to callers, see domain.py.
"""

from sqlalchemy import Column, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from sms_wallet.storage import Base


class SendRequestRecord(Base):
    """
    One logical outbound message.

    Table: send_requests
    Primary Key: request_id (caller supplied, rejects reuse)
    Indexed on state so recovery can find non-terminal requests cheaply.
    """
    __tablename__ = "send_requests"

    request_id = Column(String, primary_key=True)
    phone_number = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    state = Column(String, nullable=False, index=True)
    attempt = Column(Integer, nullable=False, default=1)
    reason = Column(String, nullable=True)
    created_at = Column(String, nullable=False)  # ISO-8601 UTC
    last_transition_at = Column(String, nullable=False)  # ISO-8601 UTC

    segments = relationship(
        "SegmentRecord",
        back_populates="request",
        order_by="SegmentRecord.segment_index",
        cascade="all, delete-orphan",
    )


class SegmentRecord(Base):
    """
    One transport-level part of a send request.

    Table: send_segments
    Primary Key: (request_id, segment_index)
    Outcomes are stored as kind ("pending", "ok", "error") plus result code.
    """
    __tablename__ = "send_segments"

    request_id = Column(
        String,
        ForeignKey("send_requests.request_id", ondelete="CASCADE"),
        primary_key=True,
    )
    segment_index = Column(Integer, primary_key=True)
    body = Column(Text, nullable=False)
    sent_outcome = Column(String, nullable=False, default="pending")
    sent_code = Column(Integer, nullable=True)
    delivered_outcome = Column(String, nullable=False, default="pending")
    delivered_code = Column(Integer, nullable=True)

    request = relationship("SendRequestRecord", back_populates="segments")
