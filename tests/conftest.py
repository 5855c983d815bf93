import asyncio
import pathlib
import sys
from typing import AsyncIterator, Optional

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


class FakeSynthesizer:
    """In-memory speech synthesizer.

    Yields ``chunks`` for every markup. When ``gate`` is given, the stream
    waits for it before each chunk so a test can hold a request in flight.
    """

    def __init__(
        self,
        voice=None,
        chunks: tuple[bytes, ...] = (b"chunk-1", b"chunk-2"),
        *,
        gate: Optional[asyncio.Event] = None,
        error: Optional[Exception] = None,
    ):
        self.voice = voice
        self.chunks = chunks
        self.gate = gate
        self.error = error
        self.markups: list[str] = []
        self.cancel_calls = 0
        self.closed = False

    async def synthesize(self, markup: str) -> AsyncIterator[bytes]:
        self.markups.append(markup)
        if self.error is not None:
            raise self.error
        for chunk in self.chunks:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            yield chunk

    def cancel(self) -> None:
        self.cancel_calls += 1

    async def aclose(self) -> None:
        self.closed = True
