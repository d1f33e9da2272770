import logging
from typing import Any, Dict, Mapping

from ..errors import AuthorizationError, TickRelayError, ValidationError
from ..models import (
    LAST_PROMPT_KEY,
    LAST_RESPONSE_KEY,
    SERVER_TIMESTAMP,
    SessionRecord,
    SessionStatus,
    TickResult,
)
from ..prompts import build_contextual_prompt
from .completion import CompletionSource
from .session_store import SessionStore

logger = logging.getLogger(__name__)

REQUIRED_FIELDS_MESSAGE = "Missing required fields: sessionId, prompt, organizationId, userId"
SUCCESS_MESSAGE = "Streaming completed successfully"


def _is_present(value: Any) -> bool:
    return value is not None and str(value) != ""


class TickProcessor:
    """Runs one tick: ensure the session, stream a completion into it, merge the result.

    Every non-empty fragment is written to the session record's latest-fragment
    slot before the next one is requested, so viewers observe fragments in
    stream order. Ticks on the same session are not coordinated with each other.
    """

    def __init__(self, store: SessionStore, completion_source: CompletionSource) -> None:
        self._store = store
        self._completion = completion_source

    async def process_tick(
        self,
        session_id: str,
        prompt: str,
        organization_id: str,
        user_id: str,
        extra_context: Mapping[str, Any] | None = None,
    ) -> TickResult:
        """Process one prompt for a session.

        Args:
            session_id: Opaque session key.
            prompt: Raw user prompt.
            organization_id: Tenant the caller acts for; must own the session.
            user_id: Opaque user id, recorded on creation.
            extra_context: Entries shallow-merged into the session's shared context.

        Returns:
            TickResult: success with a message, or the error that stopped the tick.
        """
        try:
            self._validate(session_id, prompt, organization_id, user_id, extra_context)
        except ValidationError as e:
            logger.warning("Rejected tick: %s", e)
            return TickResult(success=False, session_id=str(session_id or ""), error=e)

        session_id, prompt, organization_id, user_id = (
            str(v) for v in (session_id, prompt, organization_id, user_id)
        )

        logger.info(
            "onTick called session_id=%s organization_id=%s user_id=%s prompt_len=%d",
            session_id,
            organization_id,
            user_id,
            len(prompt),
        )

        try:
            shared_context = await self._ensure_session(
                session_id, organization_id, user_id, extra_context
            )
            contextual_prompt = build_contextual_prompt(prompt, shared_context)
            full_text, fragment_count = await self._relay_fragments(session_id, contextual_prompt)
            await self._store.update(
                session_id,
                {
                    "shared_context": {
                        **shared_context,
                        LAST_RESPONSE_KEY: full_text,
                        LAST_PROMPT_KEY: prompt,
                    },
                    "updated_at": SERVER_TIMESTAMP,
                    "status": SessionStatus.ACTIVE,
                },
            )
        except AuthorizationError as e:
            logger.warning("Tick refused session_id=%s: %s", session_id, e)
            return TickResult(success=False, session_id=session_id, error=e)
        except Exception as e:
            logger.exception("onTick error session_id=%s: %s", session_id, e)
            await self._mark_error(session_id)
            error = e if isinstance(e, TickRelayError) else TickRelayError(
                str(e) or "Internal server error", session_id=session_id
            )
            return TickResult(success=False, session_id=session_id, error=error)

        logger.info(
            "onTick completed session_id=%s total_fragments=%d total_len=%d",
            session_id,
            fragment_count,
            len(full_text),
        )
        return TickResult(success=True, session_id=session_id, message=SUCCESS_MESSAGE)

    @staticmethod
    def _validate(
        session_id: Any,
        prompt: Any,
        organization_id: Any,
        user_id: Any,
        extra_context: Any,
    ) -> None:
        if not all(_is_present(v) for v in (session_id, prompt, organization_id, user_id)):
            raise ValidationError(REQUIRED_FIELDS_MESSAGE, session_id=session_id or None)
        if not str(prompt).strip():
            raise ValidationError(REQUIRED_FIELDS_MESSAGE, session_id=session_id or None)
        if extra_context is not None and not isinstance(extra_context, Mapping):
            raise ValidationError("context must be a JSON object", session_id=session_id)

    async def _ensure_session(
        self,
        session_id: str,
        organization_id: str,
        user_id: str,
        extra_context: Mapping[str, Any] | None,
    ) -> Dict[str, Any]:
        """Create or validate the session record and return its current shared context."""
        existing = await self._store.get(session_id)
        if existing is None:
            await self._store.set(
                session_id,
                SessionRecord(
                    organization_id=organization_id,
                    user_id=user_id,
                    created_at=SERVER_TIMESTAMP,
                    updated_at=SERVER_TIMESTAMP,
                    shared_context=dict(extra_context or {}),
                    latest_fragment="",
                    latest_fragment_timestamp=SERVER_TIMESTAMP,
                    status=SessionStatus.ACTIVE,
                ),
            )
            logger.info("Created session session_id=%s organization_id=%s", session_id, organization_id)
        else:
            if existing.organization_id != organization_id:
                raise AuthorizationError(
                    "Session does not belong to this organization",
                    session_id=session_id,
                    organization_id=organization_id,
                )
            if extra_context:
                await self._store.update(
                    session_id,
                    {
                        "shared_context": {**existing.shared_context, **extra_context},
                        "updated_at": SERVER_TIMESTAMP,
                    },
                )

        current = await self._store.get(session_id)
        if current is None:
            raise TickRelayError(f"Session {session_id} vanished during tick", session_id=session_id)
        return dict(current.shared_context)

    async def _relay_fragments(self, session_id: str, contextual_prompt: str) -> tuple[str, int]:
        """Write each fragment to the session in order; return the full text and fragment count."""
        parts: list[str] = []
        async for fragment in self._completion.stream(contextual_prompt):
            if not fragment:
                continue
            await self._store.update(
                session_id,
                {
                    "latest_fragment": fragment,
                    "latest_fragment_timestamp": SERVER_TIMESTAMP,
                    "updated_at": SERVER_TIMESTAMP,
                },
            )
            parts.append(fragment)
            logger.debug(
                "Fragment relayed session_id=%s fragment_count=%d fragment_len=%d",
                session_id,
                len(parts),
                len(fragment),
            )
        return "".join(parts), len(parts)

    async def _mark_error(self, session_id: str) -> None:
        """Best-effort status=error; a failure here is logged and dropped."""
        if not session_id:
            return
        try:
            await self._store.update(
                session_id,
                {"status": SessionStatus.ERROR, "updated_at": SERVER_TIMESTAMP},
            )
        except Exception as e:
            logger.error("Failed to update session status session_id=%s: %s", session_id, e)
