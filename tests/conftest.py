"""Shared fakes for the runner tests: a scripted engine CLI and an in-memory child transport."""

import io
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import anyio
import pytest

sys.path.insert(0, str(Path(__file__).parents[1]))

from mcp_stdio_runner import CommandResult, ContainerEngine  # noqa: E402

OK = CommandResult(0, "", "")


def failed(stderr: str = "boom", code: int = 125) -> CommandResult:
    return CommandResult(code, "", stderr)


class FakeEngineRunner:
    """Replays scripted results per argument tuple; the last result repeats."""

    def __init__(self, script: Optional[Dict[Tuple[str, ...], List[CommandResult]]] = None) -> None:
        self.script = {key: list(results) for key, results in (script or {}).items()}
        self.calls: List[Tuple[str, ...]] = []

    async def __call__(self, argv: Sequence[str], timeout: float) -> CommandResult:
        args = tuple(argv[1:])
        self.calls.append(args)
        queue = self.script.get(args)
        if not queue:
            return OK
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def count(self, *args: str) -> int:
        return self.calls.count(tuple(args))


class FakeTransport:
    def __init__(self, params, *, close_during_start=False, start_error=None) -> None:
        self.params = params
        self.close_during_start = close_during_start
        self.start_error = start_error
        self.on_message = None
        self.on_close = None
        self.on_error = None
        self.sent = []
        self.closed = 0

    async def start(self, task_group) -> None:
        if self.start_error is not None:
            raise self.start_error
        if self.close_during_start:
            await self.on_close()

    async def send(self, message) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed += 1
        await anyio.sleep(0)


class TransportFactory:
    """Callable transport factory that remembers what it built."""

    def __init__(self, **options) -> None:
        self.options = options
        self.created: List[FakeTransport] = []

    def __call__(self, params) -> FakeTransport:
        transport = FakeTransport(params, **self.options)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


class ChunkedSource:
    """Parent stdin stand-in that returns pre-split byte chunks, then EOF."""

    def __init__(self, chunks: Sequence[bytes]) -> None:
        self._chunks = list(chunks)

    async def read1(self, size: int = -1) -> bytes:
        await anyio.sleep(0)
        return self._chunks.pop(0) if self._chunks else b""


class BlockingSource:
    """Parent stdin that never delivers data or EOF."""

    async def read1(self, size: int = -1) -> bytes:
        await anyio.sleep_forever()
        return b""


def output_buffer():
    return anyio.wrap_file(io.StringIO())


@pytest.fixture
def engine_runner():
    return FakeEngineRunner()


@pytest.fixture
def engine(engine_runner):
    return ContainerEngine("podman", runner=engine_runner)


@pytest.fixture
def transport_factory():
    return TransportFactory()


class QueueSource:
    """Parent stdin fed by the test; closing it delivers EOF."""

    def __init__(self) -> None:
        self._send, self._receive = anyio.create_memory_object_stream(16)

    async def push(self, data: bytes) -> None:
        await self._send.send(data)

    def close(self) -> None:
        self._send.close()

    async def read1(self, size: int = -1) -> bytes:
        try:
            return await self._receive.receive()
        except anyio.EndOfStream:
            return b""
