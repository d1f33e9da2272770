import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping

from ..errors import TickRelayError
from ..services.session_store import SessionStore, SessionSubscription
from .accumulator import TranscriptAccumulator, TranscriptUpdate
from .autoscroll import AutoScrollController, ViewportMetrics
from .typewriter import DEFAULT_STARTUP_DELAY_MS, Sleep, TypewriterRenderer

logger = logging.getLogger(__name__)

FRAGMENT_PANEL = "fragment"
TRANSCRIPT_PANEL = "transcript"
PANELS = (FRAGMENT_PANEL, TRANSCRIPT_PANEL)

EventSink = Callable[[Dict[str, Any]], Awaitable[None]]


class SessionViewer:
    """One viewer of one session: subscription, transcript, typewriter and scroll policy.

    Events are pushed through ``send`` as JSON-ready dicts. The subscription
    ends on an authorization or store error; ``aclose`` tears everything down
    and no event is sent afterwards.
    """

    def __init__(
        self,
        store: SessionStore,
        session_id: str,
        organization_id: str,
        send: EventSink,
        typewriter_speed_ms: float = 20,
        typewriter_startup_delay_ms: float = DEFAULT_STARTUP_DELAY_MS,
        autoscroll_threshold: float = 50,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._store = store
        self.session_id = session_id
        self.organization_id = organization_id
        self._send = send
        self.accumulator = TranscriptAccumulator(session_id, organization_id)
        self.typewriter = TypewriterRenderer(
            self._send_frame,
            speed_ms=typewriter_speed_ms,
            startup_delay_ms=typewriter_startup_delay_ms,
            sleep=sleep,
        )
        self.viewports = {panel: ViewportMetrics() for panel in PANELS}
        self.scrollers = {
            panel: AutoScrollController(self.viewports[panel], autoscroll_threshold)
            for panel in PANELS
        }
        self._subscription: SessionSubscription | None = None
        self._fragment_key: tuple[str, datetime | None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def run(self) -> None:
        """Follow the session until the subscription ends, fails, or the viewer is closed."""
        try:
            async with self._store.subscribe(self.session_id) as subscription:
                self._subscription = subscription
                async for record in subscription:
                    if self._closed:
                        break
                    await self._handle(self.accumulator.observe(record))
                    if self.accumulator.closed:
                        break
        except TickRelayError as e:
            logger.warning("Viewer subscription failed session_id=%s: %s", self.session_id, e)
            if not self._closed:
                await self._handle(self.accumulator.fail(e))
        finally:
            self._subscription = None

    async def handle_client_message(self, message: Mapping[str, Any]) -> None:
        """Apply a message from the display; only scroll reports are understood."""
        if message.get("type") != "scroll":
            logger.debug("Ignoring viewer message type=%s", message.get("type"))
            return
        panel = message.get("panel")
        if panel not in self.scrollers:
            logger.debug("Ignoring scroll report for unknown panel %s", panel)
            return
        self.viewports[panel].report(
            float(message.get("scrollTop", 0)),
            float(message.get("scrollHeight", 0)),
            float(message.get("clientHeight", 0)),
        )
        self.scrollers[panel].on_user_scroll()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.typewriter.aclose()
        finally:
            if self._subscription is not None:
                await self._subscription.close()

    async def _emit(self, event: Dict[str, Any]) -> None:
        if not self._closed:
            await self._send(event)

    async def _handle(self, update: TranscriptUpdate) -> None:
        if update.error is not None:
            self.typewriter.cancel()
            await self._emit({"type": "error", **update.error.to_dict()})
            return

        record = update.record
        if record is not None and record.latest_fragment:
            key = (record.latest_fragment, record.latest_fragment_timestamp)
            if key != self._fragment_key:
                self._fragment_key = key
                await self._emit(
                    {
                        "type": "fragment",
                        "fragment": record.latest_fragment,
                        "timestamp": (
                            record.latest_fragment_timestamp.isoformat()
                            if record.latest_fragment_timestamp
                            else None
                        ),
                    }
                )
                if not self._closed:
                    self.typewriter.start(record.latest_fragment)

        await self._emit(
            {
                "type": "transcript",
                "transcript": update.transcript,
                "changed": update.changed,
                "status": update.status.value if update.status else None,
                "sharedContext": record.shared_context if record is not None else {},
            }
        )
        if update.changed:
            await self._pin(TRANSCRIPT_PANEL)

    async def _pin(self, panel: str) -> None:
        if self.scrollers[panel].on_content_added() and self.viewports[panel].take_pin_request():
            await self._emit({"type": "autoscroll", "panel": panel})

    async def _send_frame(self, text: str) -> None:
        typing = len(text) < len(self.typewriter.text)
        await self._emit({"type": "typewriter", "text": text, "typing": typing})
        await self._pin(FRAGMENT_PANEL)
