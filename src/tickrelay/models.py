from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict

from .errors import TickRelayError

LAST_RESPONSE_KEY = "lastResponse"
LAST_PROMPT_KEY = "lastPrompt"
RESERVED_CONTEXT_KEYS = frozenset({LAST_RESPONSE_KEY, LAST_PROMPT_KEY})


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"


class _ServerTimestamp:
    """Sentinel replaced by the store's clock when a write is committed."""

    _instance = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass
class SessionRecord:
    """The per-session document shared by the tick writer and every viewer.

    ``latest_fragment`` holds only the most recent completion fragment; the
    full response exists as each viewer's reconstruction and, once a tick
    completes, as ``shared_context["lastResponse"]``.
    """

    organization_id: str
    user_id: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    shared_context: Dict[str, Any] = field(default_factory=dict)
    latest_fragment: str = ""
    latest_fragment_timestamp: datetime | None = None
    status: SessionStatus = SessionStatus.ACTIVE
    metadata: Dict[str, Any] = field(default_factory=dict)


RECORD_FIELDS = frozenset(f.name for f in fields(SessionRecord))
TIMESTAMP_FIELDS = frozenset({"created_at", "updated_at", "latest_fragment_timestamp"})


def _ts_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _str_to_ts(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def record_to_dict(record: SessionRecord) -> Dict[str, Any]:
    """Serialize a SessionRecord to a JSON-serializable dict with wire (camelCase) keys."""
    return {
        "organizationId": record.organization_id,
        "userId": record.user_id,
        "createdAt": _ts_to_str(record.created_at),
        "updatedAt": _ts_to_str(record.updated_at),
        "sharedContext": record.shared_context,
        "latestFragment": record.latest_fragment,
        "latestFragmentTimestamp": _ts_to_str(record.latest_fragment_timestamp),
        "status": record.status.value,
        "metadata": record.metadata,
    }


def dict_to_record(data: Dict[str, Any]) -> SessionRecord:
    """Build a SessionRecord from a wire dict (e.g. from Redis)."""
    return SessionRecord(
        organization_id=str(data["organizationId"]),
        user_id=str(data.get("userId", "")),
        created_at=_str_to_ts(data.get("createdAt")),
        updated_at=_str_to_ts(data.get("updatedAt")),
        shared_context=dict(data.get("sharedContext") or {}),
        latest_fragment=data.get("latestFragment") or "",
        latest_fragment_timestamp=_str_to_ts(data.get("latestFragmentTimestamp")),
        status=SessionStatus(data.get("status", SessionStatus.ACTIVE.value)),
        metadata=dict(data.get("metadata") or {}),
    )


@dataclass
class TickResult:
    """Outcome of one tick: success with a message, or the error that stopped it."""

    success: bool
    session_id: str
    message: str = ""
    error: TickRelayError | None = None

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "sessionId": self.session_id, "message": self.message}
        return {
            "success": False,
            "sessionId": self.session_id,
            "error": self.error.message if self.error is not None else self.message,
        }
