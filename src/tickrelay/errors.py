"""Error taxonomy shared by the tick path, the viewer path and the HTTP layer.

Each error carries the HTTP status it surfaces as, so the web layer maps a
failure to a response without knowing where it was raised.
"""


class TickRelayError(Exception):
    """Base error for the relay. Surfaces as HTTP 500 unless a subclass says otherwise."""

    status_code = 500
    kind = "internal"

    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        organization_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.session_id = session_id
        self.organization_id = organization_id

    def to_dict(self) -> dict[str, str | None]:
        """Serialize for the viewer's error banner."""
        return {
            "kind": self.kind,
            "message": self.message,
            "sessionId": self.session_id,
            "organizationId": self.organization_id,
        }


class ValidationError(TickRelayError):
    """Missing or malformed required request fields."""

    status_code = 400
    kind = "validation"


class AuthorizationError(TickRelayError):
    """Session belongs to a different organization."""

    status_code = 403
    kind = "authorization"


class NotFoundError(TickRelayError):
    """Session record does not exist."""

    status_code = 404
    kind = "not_found"


class UpstreamError(TickRelayError):
    """Completion source failed before or during streaming."""

    kind = "upstream"


class StoreError(TickRelayError):
    """Session store read, write or subscription failure."""

    kind = "store"
