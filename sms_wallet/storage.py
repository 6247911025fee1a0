import logging
import threading
from contextlib import contextmanager
from typing import Dict, Generator, Iterator, List, Optional

from sqlalchemy import create_engine, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, joinedload, sessionmaker

from sms_wallet.config import settings
from sms_wallet.domain import (
    ALLOWED_TRANSITIONS,
    NON_TERMINAL_STATES,
    Outcome,
    OutcomeKind,
    RequestState,
    Segment,
    SendRequest,
)
from sms_wallet.errors import DuplicateRequest, InvalidTransition, NotFound
from sms_wallet.utils import utc_now_iso

logger = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine with SQLite-specific settings.

    check_same_thread=False lets transport callbacks arrive on any thread;
    the busy timeout absorbs writers on different requests contending for
    the database file.
    """
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False, "timeout": 30},
        echo=False,
    )


engine = build_engine(settings.DATABASE_URL)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db(bind: Optional[Engine] = None) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    bind = bind or engine
    logger.debug(f"Initializing database with URL: {bind.url}")
    try:
        # Import models to register them with Base.metadata
        from sms_wallet.models import SendRequestRecord, SegmentRecord  # noqa: F401

        Base.metadata.create_all(bind=bind)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            result = db.execute(text(
                "SELECT COUNT(*) FROM sqlite_master WHERE type='table' AND name='send_requests'"
            )).scalar()
            if result == 0:
                logger.error("Database schema not applied: 'send_requests' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Per-record locking
# =============================================================================

class KeyedLocks:
    """
    Re-entrant locks keyed by request_id.

    Holders of the same key are serialized; different keys never contend.
    An entry is dropped once nobody holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._entries[key] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


# =============================================================================
# Correlation Store
# =============================================================================

def _outcome(kind: str, code: Optional[int]) -> Outcome:
    return Outcome(OutcomeKind(kind), code)


def _to_domain(record) -> SendRequest:
    return SendRequest(
        request_id=record.request_id,
        phone_number=record.phone_number,
        body=record.body,
        state=RequestState(record.state),
        attempt=record.attempt,
        reason=record.reason,
        created_at=record.created_at,
        last_transition_at=record.last_transition_at,
        segments=tuple(
            Segment(
                index=seg.segment_index,
                body=seg.body,
                sent_outcome=_outcome(seg.sent_outcome, seg.sent_code),
                delivered_outcome=_outcome(seg.delivered_outcome, seg.delivered_code),
            )
            for seg in record.segments
        ),
    )


class CorrelationStore:
    """
    Durable mapping from request_id to the lifecycle state of one logical send.

    Every mutation of a record runs under that record's lock, and callers
    that need a read-modify-write spanning several calls (the outbound state
    machine) take the same lock through lock().
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory
        self._locks = KeyedLocks()

    def lock(self, request_id: str):
        """Context manager serializing all work on one request_id."""
        return self._locks.hold(request_id)

    def create(
        self,
        request_id: str,
        phone_number: str,
        body: str,
        segments: List[str],
    ) -> SendRequest:
        """
        Create a new send request in state QUEUED.

        Args:
            request_id: Caller supplied identifier, unique per logical send
            phone_number: Destination number
            body: Full message body
            segments: Ordered part bodies produced by the segmenter

        Returns:
            Snapshot of the created request

        Raises:
            DuplicateRequest: If request_id already exists (record untouched)
        """
        from sms_wallet.models import SegmentRecord, SendRequestRecord

        logger.info(f"Creating send request: id={request_id}, to={phone_number}, segments={len(segments)}")

        with self.lock(request_id), self._session_factory() as db:
            if db.get(SendRequestRecord, request_id) is not None:
                logger.info(f"Duplicate send request rejected: {request_id}")
                raise DuplicateRequest(request_id)

            now = utc_now_iso()
            record = SendRequestRecord(
                request_id=request_id,
                phone_number=phone_number,
                body=body,
                state=RequestState.QUEUED.value,
                attempt=1,
                created_at=now,
                last_transition_at=now,
                segments=[
                    SegmentRecord(segment_index=i, body=part)
                    for i, part in enumerate(segments)
                ],
            )
            db.add(record)
            try:
                db.commit()
            except IntegrityError:
                # Another process sharing the database won the insert
                db.rollback()
                logger.info(f"Duplicate send request rejected: {request_id}")
                raise DuplicateRequest(request_id)

            db.refresh(record)
            return _to_domain(record)

    def get(self, request_id: str) -> SendRequest:
        """
        Retrieve a send request by its ID.

        Raises:
            NotFound: If no such request exists
        """
        from sms_wallet.models import SendRequestRecord

        with self._session_factory() as db:
            record = db.get(SendRequestRecord, request_id)
            if record is None:
                raise NotFound(f"request {request_id} not found")
            return _to_domain(record)

    def list_non_terminal(self) -> List[SendRequest]:
        """
        Snapshot of every request not in a terminal state, oldest first.

        Requests and segments are read with a single joined SELECT, so no
        request is observed in two different states within one scan.
        """
        from sms_wallet.models import SendRequestRecord

        with self._session_factory() as db:
            stmt = (
                select(SendRequestRecord)
                .options(joinedload(SendRequestRecord.segments))
                .where(SendRequestRecord.state.in_([s.value for s in NON_TERMINAL_STATES]))
                .order_by(SendRequestRecord.created_at.asc(), SendRequestRecord.request_id.asc())
            )
            records = db.execute(stmt).unique().scalars().all()
            logger.debug(f"Non-terminal requests found: {len(records)}")
            return [_to_domain(r) for r in records]

    def record_sent_outcome(self, request_id: str, segment_index: int, outcome: Outcome) -> bool:
        return self._record_outcome(request_id, segment_index, outcome, "sent")

    def record_delivered_outcome(self, request_id: str, segment_index: int, outcome: Outcome) -> bool:
        return self._record_outcome(request_id, segment_index, outcome, "delivered")

    def _record_outcome(self, request_id: str, segment_index: int, outcome: Outcome, kind: str) -> bool:
        """
        Store a segment outcome.

        Returns:
            True if stored, False if the identical outcome was already there

        Raises:
            NotFound: Unknown request or segment
            InvalidTransition: A different non-pending outcome is already recorded
        """
        from sms_wallet.models import SegmentRecord, SendRequestRecord

        if outcome.is_pending:
            raise InvalidTransition(f"cannot record a pending {kind} outcome")

        with self.lock(request_id), self._session_factory() as db:
            segment = db.get(SegmentRecord, (request_id, segment_index))
            if segment is None:
                if db.get(SendRequestRecord, request_id) is None:
                    raise NotFound(f"request {request_id} not found")
                raise NotFound(f"request {request_id} has no segment {segment_index}")

            kind_column, code_column = f"{kind}_outcome", f"{kind}_code"
            current = _outcome(getattr(segment, kind_column), getattr(segment, code_column))
            if current == outcome:
                logger.debug(f"Duplicate {kind} outcome ignored: {request_id}[{segment_index}]")
                return False
            if not current.is_pending:
                raise InvalidTransition(
                    f"{kind} outcome for {request_id}[{segment_index}] already recorded",
                    details={"recorded": current.kind.value, "rejected": outcome.kind.value},
                )

            setattr(segment, kind_column, outcome.kind.value)
            setattr(segment, code_column, outcome.code)
            db.commit()
            logger.debug(f"Recorded {kind} outcome {outcome.kind.value} for {request_id}[{segment_index}]")
            return True

    def transition(self, request_id: str, new_state: RequestState, reason: Optional[str] = None) -> SendRequest:
        """
        Move a request forward along the state machine.

        Raises:
            NotFound: Unknown request
            InvalidTransition: new_state is not reachable from the current state
        """
        from sms_wallet.models import SendRequestRecord

        with self.lock(request_id), self._session_factory() as db:
            record = db.get(SendRequestRecord, request_id)
            if record is None:
                raise NotFound(f"request {request_id} not found")

            current = RequestState(record.state)
            if new_state not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransition(
                    f"{request_id}: {current.value} -> {new_state.value} not allowed"
                )

            record.state = new_state.value
            record.reason = reason
            record.last_transition_at = utc_now_iso()
            db.commit()
            logger.info(f"Request {request_id}: {current.value} -> {new_state.value}")
            db.refresh(record)
            return _to_domain(record)

    def begin_attempt(self, request_id: str) -> SendRequest:
        """
        Start a fresh attempt for a non-terminal request.

        Increments attempt, resets every segment outcome to pending and
        moves the request to SUBMITTED. Segments and body are kept as is.

        Raises:
            NotFound: Unknown request
            InvalidTransition: The request is terminal
        """
        from sms_wallet.models import SendRequestRecord

        with self.lock(request_id), self._session_factory() as db:
            record = db.get(SendRequestRecord, request_id)
            if record is None:
                raise NotFound(f"request {request_id} not found")

            current = RequestState(record.state)
            if current.is_terminal:
                raise InvalidTransition(f"{request_id}: {current.value} is terminal")

            record.attempt += 1
            record.state = RequestState.SUBMITTED.value
            record.reason = None
            record.last_transition_at = utc_now_iso()
            for segment in record.segments:
                segment.sent_outcome = OutcomeKind.PENDING.value
                segment.sent_code = None
                segment.delivered_outcome = OutcomeKind.PENDING.value
                segment.delivered_code = None
            db.commit()
            logger.info(f"Request {request_id}: {current.value} -> SUBMITTED (attempt {record.attempt})")
            db.refresh(record)
            return _to_domain(record)
