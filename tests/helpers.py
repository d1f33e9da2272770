import asyncio
from typing import AsyncIterator, Callable, Iterable


class FakeCompletionSource:
    """Completion source replaying fixed fragments, optionally failing afterwards."""

    def __init__(self, fragments: Iterable[str] = (), error: BaseException | None = None) -> None:
        self.fragments = list(fragments)
        self.error = error
        self.prompts: list[str] = []

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        self.prompts.append(prompt)
        for fragment in self.fragments:
            yield fragment
        if self.error is not None:
            raise self.error


class GatedSleep:
    """Stand-in for asyncio.sleep whose calls finish only when released."""

    def __init__(self) -> None:
        self.calls: list[float] = []
        self._gates: list[asyncio.Future[None]] = []

    async def __call__(self, seconds: float) -> None:
        gate: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self.calls.append(seconds)
        self._gates.append(gate)
        await gate

    @property
    def pending(self) -> int:
        return sum(1 for gate in self._gates if not gate.done())

    def release(self) -> None:
        for gate in self._gates:
            if not gate.done():
                gate.set_result(None)
                return


async def settle(rounds: int = 10) -> None:
    """Let scheduled tasks run until they block again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
