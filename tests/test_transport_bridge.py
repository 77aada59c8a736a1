import json
import logging
import sys
from pathlib import Path

import anyio
import pytest
from mcp.types import JSONRPCMessage

sys.path.insert(0, str(Path(__file__).parents[1]))
from conftest import ChunkedSource, TransportFactory, output_buffer
from mcp_stdio_runner import (
    CHANNEL_ERROR_HINTS,
    ConnectionDescriptor,
    RuntimeState,
    TransportBridge,
    TransportNotReadyError,
    build_server_parameters,
    classify_channel_error,
)

LINES = [
    '{"jsonrpc":"2.0","id":1,"method":"initialize","params":{"protocolVersion":"2025-03-26",'
    '"capabilities":{},"clientInfo":{"name":"café ☕","version":"1.0"}}}',
    '{"jsonrpc":"2.0","method":"notifications/initialized"}',
    '{"jsonrpc":"2.0","id":2,"method":"tools/list"}',
]
DESCRIPTOR = ConnectionDescriptor(command="server", args=["--stdio"], env={"TOKEN": "t"})


class ExitRecorder:
    def __init__(self):
        self.codes = []

    def __call__(self, code):
        self.codes.append(code)


async def _started_bridge(factory=None, output=None):
    state = RuntimeState()
    exits = ExitRecorder()
    factory = factory or TransportFactory()
    bridge = TransportBridge(
        state, request_exit=exits, output=output or output_buffer(), transport_factory=factory
    )
    async with anyio.create_task_group() as task_group:
        await bridge.start(DESCRIPTOR, task_group)
    return bridge, state, exits, factory


def _expected(lines):
    return [JSONRPCMessage.model_validate_json(line) for line in lines]


@pytest.mark.asyncio
async def test_start_marks_ready_and_overlays_env(monkeypatch):
    monkeypatch.setattr(
        "mcp_stdio_runner.get_default_environment", lambda: {"PATH": "/bin", "TOKEN": "default"}
    )
    bridge, state, exits, factory = await _started_bridge()

    assert state.ready
    assert state.transport is factory.last
    params = factory.last.params
    assert params.command == "server"
    assert params.args == ["--stdio"]
    assert params.env == {"PATH": "/bin", "TOKEN": "t"}
    assert exits.codes == []


def test_build_server_parameters_keeps_declared_values():
    params = build_server_parameters(DESCRIPTOR)
    assert params.env["TOKEN"] == "t"


@pytest.mark.asyncio
async def test_complete_lines_are_forwarded_in_order():
    bridge, _, _, factory = await _started_bridge()
    await bridge.feed("\n".join(LINES) + "\n")
    assert factory.last.sent == _expected(LINES)


@pytest.mark.asyncio
@pytest.mark.parametrize("offset", [1, 17, 60, 140, 141, 142, 160, 200])
async def test_framing_survives_arbitrary_byte_splits(offset):
    data = ("\n".join(LINES) + "\n").encode("utf-8")
    chunks = [data[:offset], data[offset:offset + 3], data[offset + 3:]]
    bridge, _, _, factory = await _started_bridge()

    await bridge.relay_input(ChunkedSource(chunks))

    assert factory.last.sent == _expected(LINES)
    assert bridge.state.inbound_buffer == ""


@pytest.mark.asyncio
async def test_single_byte_chunks():
    data = ("\r\n".join(LINES) + "\r\n").encode("utf-8")
    bridge, _, _, factory = await _started_bridge()

    await bridge.relay_input(ChunkedSource([data[i:i + 1] for i in range(len(data))]))

    assert factory.last.sent == _expected(LINES)


@pytest.mark.asyncio
async def test_incomplete_fragment_waits_for_next_chunk():
    bridge, state, _, factory = await _started_bridge()
    await bridge.feed(LINES[0] + "\n" + LINES[1][:10])

    assert factory.last.sent == _expected(LINES[:1])
    assert state.inbound_buffer == LINES[1][:10]

    await bridge.feed(LINES[1][10:] + "\r\n")
    assert factory.last.sent == _expected(LINES[:2])


@pytest.mark.asyncio
async def test_malformed_line_is_dropped_and_stream_continues(caplog):
    bridge, _, exits, factory = await _started_bridge()
    await bridge.feed("\n".join([LINES[0], "{not json", "", LINES[2]]) + "\n")

    assert factory.last.sent == _expected([LINES[0], LINES[2]])
    assert exits.codes == []
    assert "Dropping malformed message" in caplog.text


@pytest.mark.asyncio
async def test_input_is_buffered_until_ready():
    state = RuntimeState()
    factory = TransportFactory()
    bridge = TransportBridge(
        state, request_exit=ExitRecorder(), output=output_buffer(), transport_factory=factory
    )
    await bridge.feed(LINES[0] + "\n")
    assert state.inbound_buffer == LINES[0] + "\n"

    async with anyio.create_task_group() as task_group:
        await bridge.start(DESCRIPTOR, task_group)
    await bridge.feed(LINES[1] + "\n")
    assert factory.last.sent == _expected(LINES[:2])


@pytest.mark.asyncio
async def test_send_before_ready_raises():
    bridge = TransportBridge(RuntimeState(), request_exit=ExitRecorder(), output=output_buffer())
    with pytest.raises(TransportNotReadyError):
        await bridge.send(_expected(LINES[:1])[0])


@pytest.mark.asyncio
async def test_send_after_teardown_is_logged_not_raised(caplog):
    bridge, state, _, factory = await _started_bridge()
    state.transport = None

    await bridge.feed(LINES[2] + "\n")
    assert factory.last.sent == []
    assert "Failed to send message to child process" in caplog.text


@pytest.mark.asyncio
async def test_outbound_messages_are_written_one_per_line():
    output = output_buffer()
    bridge, _, _, _ = await _started_bridge(output=output)
    response = {"jsonrpc": "2.0", "id": 1, "result": {"tools": []}}
    notification = {"jsonrpc": "2.0", "method": "notifications/progress", "params": {"progress": 1}}

    await bridge.handle_message(JSONRPCMessage.model_validate(response))
    await bridge.handle_message(JSONRPCMessage.model_validate(notification))

    written = output.wrapped.getvalue()
    assert written.endswith("\n")
    assert [json.loads(line) for line in written.splitlines()] == [response, notification]


@pytest.mark.asyncio
async def test_method_not_found_errors_are_forwarded_quietly(caplog):
    caplog.set_level(logging.WARNING, logger="mcp-stdio-runner")
    output = output_buffer()
    bridge, _, exits, _ = await _started_bridge(output=output)
    error = {"jsonrpc": "2.0", "id": 3, "error": {"code": -32601, "message": "Method not found"}}

    await bridge.handle_message(JSONRPCMessage.model_validate(error))

    assert json.loads(output.wrapped.getvalue()) == error
    assert "Child process error" not in caplog.text
    assert exits.codes == []


@pytest.mark.asyncio
async def test_other_error_envelopes_are_logged_and_forwarded(caplog):
    caplog.set_level(logging.WARNING, logger="mcp-stdio-runner")
    output = output_buffer()
    bridge, _, exits, _ = await _started_bridge(output=output)
    error = {"jsonrpc": "2.0", "id": 4, "error": {"code": -32603, "message": "kaboom"}}

    await bridge.handle_message(JSONRPCMessage.model_validate(error))

    assert json.loads(output.wrapped.getvalue()) == error
    assert "kaboom" in caplog.text
    assert exits.codes == []


@pytest.mark.asyncio
async def test_close_before_ready_exits_zero():
    bridge, state, exits, _ = await _started_bridge(TransportFactory(close_during_start=True))
    assert exits.codes == [0]


@pytest.mark.asyncio
async def test_close_while_ready_exits_non_zero():
    bridge, state, exits, _ = await _started_bridge()
    await bridge.handle_close()
    assert exits.codes == [1]


@pytest.mark.asyncio
async def test_close_after_cleanup_cleared_handle_is_ignored():
    bridge, state, exits, _ = await _started_bridge()
    state.transport = None
    await bridge.handle_close()
    assert exits.codes == []


@pytest.mark.asyncio
async def test_spawn_failure_exits_non_zero_with_hint(caplog):
    factory = TransportFactory(start_error=FileNotFoundError(2, "No such file or directory"))
    bridge, state, exits, _ = await _started_bridge(factory)

    assert exits.codes == [1]
    assert state.transport is None
    assert not state.ready
    assert "check if the command exists" in caplog.text


@pytest.mark.asyncio
async def test_channel_error_exits_non_zero(caplog):
    bridge, _, exits, _ = await _started_bridge()
    await bridge.handle_error(PermissionError("permission denied: /usr/local/bin/server"))

    assert exits.codes == [1]
    assert "Permission error" in caplog.text


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("spawn npx ENOENT", CHANNEL_ERROR_HINTS[0][1]),
        ("spawn server: [Errno 13] Permission denied", CHANNEL_ERROR_HINTS[0][1]),
        ("EACCES: Permission denied", CHANNEL_ERROR_HINTS[1][1]),
        ("Invalid JSON: expected value at line 1", None),
    ],
)
def test_classify_channel_error(text, expected):
    assert classify_channel_error(text) == expected
