import asyncio
import contextlib
import logging
from typing import AsyncIterator, Awaitable, Callable

logger = logging.getLogger(__name__)

DEFAULT_STARTUP_DELAY_MS = 100

Sleep = Callable[[float], Awaitable[None]]
FrameSink = Callable[[str], Awaitable[None]]
TypingSink = Callable[[bool], Awaitable[None]]


async def typewriter_frames(
    text: str,
    speed_ms: float,
    startup_delay_ms: float = DEFAULT_STARTUP_DELAY_MS,
    sleep: Sleep = asyncio.sleep,
) -> AsyncIterator[str]:
    """Yield growing prefixes of text: "" at once, then one more character per step.

    The first character follows a fixed startup delay; each later one follows
    ``speed_ms``. ``"abc"`` yields ``"", "a", "ab", "abc"``.
    """
    yield ""
    if not text:
        return
    await sleep(startup_delay_ms / 1000)
    for end in range(1, len(text) + 1):
        if end > 1:
            await sleep(speed_ms / 1000)
        yield text[:end]


class TypewriterRenderer:
    """Animates the latest fragment for display, one animation at a time.

    ``start`` cancels whatever animation is running, so frames of a replaced
    fragment are never delivered after the new one begins. The renderer only
    paces display; it has no access to the transcript.
    """

    def __init__(
        self,
        on_frame: FrameSink,
        speed_ms: float = 20,
        startup_delay_ms: float = DEFAULT_STARTUP_DELAY_MS,
        on_typing_change: TypingSink | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._on_frame = on_frame
        self._on_typing_change = on_typing_change
        self._speed_ms = speed_ms
        self._startup_delay_ms = startup_delay_ms
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._generation = 0
        self.text = ""

    @property
    def is_typing(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, text: str) -> asyncio.Task[None]:
        """Restart the animation for a new fragment."""
        self.cancel()
        self._generation += 1
        self.text = text
        self._task = asyncio.create_task(self._run(text, self._generation))
        return self._task

    def cancel(self) -> None:
        """Stop the running animation; its pending frames are dropped."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def wait(self) -> None:
        """Wait for the current animation to finish (returns at once if none runs)."""
        task = self._task
        if task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def aclose(self) -> None:
        task = self._task
        self._generation += 1
        self.cancel()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self, text: str, generation: int) -> None:
        # A failing sink (display gone) ends this animation only.
        try:
            if text and self._on_typing_change is not None:
                await self._on_typing_change(True)
            async for frame in typewriter_frames(
                text, self._speed_ms, self._startup_delay_ms, sleep=self._sleep
            ):
                if generation != self._generation:
                    return
                await self._on_frame(frame)
            if generation == self._generation and self._on_typing_change is not None:
                await self._on_typing_change(False)
        except Exception as e:
            logger.warning("Typewriter animation stopped: %s", e)
