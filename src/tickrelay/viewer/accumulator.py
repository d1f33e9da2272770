import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List

from ..errors import AuthorizationError, NotFoundError, StoreError, TickRelayError
from ..models import SessionRecord, SessionStatus

logger = logging.getLogger(__name__)


@dataclass
class TranscriptUpdate:
    """What a viewer shows after one observed version of the session record."""

    transcript: str
    changed: bool = False
    latest_fragment: str = ""
    status: SessionStatus | None = None
    record: SessionRecord | None = None
    error: TickRelayError | None = None

    @property
    def has_error(self) -> bool:
        return self.error is not None


TranscriptListener = Callable[[TranscriptUpdate], None]


@dataclass
class TranscriptAccumulator:
    """Rebuilds the full response from the versions a subscription delivers.

    A fragment is appended only when its server timestamp is strictly later
    than the last appended one, so redelivered versions are no-ops. Timestamps
    are the sole de-duplication key; repeated text with a newer timestamp is a
    genuine new fragment and is appended.

    An organization mismatch or a subscription failure closes the accumulator:
    later versions are ignored until a fresh accumulator is built. A missing
    record only reports not-found and accumulation resumes once it appears.
    """

    session_id: str
    organization_id: str
    transcript: str = ""
    last_seen_timestamp: datetime | None = None
    closed: bool = False
    error: TickRelayError | None = None
    _listeners: List[TranscriptListener] = field(default_factory=list, repr=False)

    def add_listener(self, listener: TranscriptListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: TranscriptListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def observe(self, record: SessionRecord | None) -> TranscriptUpdate:
        """Fold one observed version into the transcript and notify listeners."""
        if self.closed:
            return self._emit(TranscriptUpdate(transcript=self.transcript, error=self.error))

        if record is None:
            self.error = NotFoundError(
                f'Session "{self.session_id}" not found',
                session_id=self.session_id,
                organization_id=self.organization_id,
            )
            return self._emit(TranscriptUpdate(transcript=self.transcript, error=self.error))

        if record.organization_id != self.organization_id:
            self.error = AuthorizationError(
                f"Session does not belong to organization: {self.organization_id}",
                session_id=self.session_id,
                organization_id=self.organization_id,
            )
            self.closed = True
            logger.warning(
                "Viewer closed on organization mismatch session_id=%s organization_id=%s",
                self.session_id,
                self.organization_id,
            )
            return self._emit(TranscriptUpdate(transcript=self.transcript, error=self.error))

        self.error = None
        changed = self._accept(record.latest_fragment, record.latest_fragment_timestamp)
        return self._emit(
            TranscriptUpdate(
                transcript=self.transcript,
                changed=changed,
                latest_fragment=record.latest_fragment,
                status=record.status,
                record=record,
            )
        )

    def fail(self, exc: BaseException) -> TranscriptUpdate:
        """Record a subscription failure; the accumulator stops for good."""
        if isinstance(exc, TickRelayError):
            self.error = exc
        else:
            self.error = StoreError(
                str(exc) or "Subscription failed",
                session_id=self.session_id,
                organization_id=self.organization_id,
            )
        if self.error.session_id is None:
            self.error.session_id = self.session_id
        if self.error.organization_id is None:
            self.error.organization_id = self.organization_id
        self.closed = True
        return self._emit(TranscriptUpdate(transcript=self.transcript, error=self.error))

    def _accept(self, fragment: str, timestamp: datetime | None) -> bool:
        if not fragment or timestamp is None:
            return False
        if self.last_seen_timestamp is not None and timestamp <= self.last_seen_timestamp:
            return False
        self.transcript += fragment
        self.last_seen_timestamp = timestamp
        return True

    def _emit(self, update: TranscriptUpdate) -> TranscriptUpdate:
        for listener in list(self._listeners):
            listener(update)
        return update
