#!/usr/bin/env python3
"""Stdio runner for MCP servers, with container VM provisioning for image-based servers."""

from __future__ import annotations

import argparse
import codecs
import json
import logging
import os
import re
import signal
import subprocess
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from io import TextIOWrapper
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Literal,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

import anyio
import anyio.to_thread
from anyio.abc import TaskGroup
from mcp.client.stdio import (
    StdioServerParameters,
    get_default_environment,
    stdio_client,
)
from mcp.shared.message import SessionMessage
from mcp.types import METHOD_NOT_FOUND, JSONRPCError, JSONRPCMessage
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

logger = logging.getLogger("mcp-stdio-runner")

RUNNER_NAME = "mcp-stdio-runner"
DEFAULT_ENGINE = os.environ.get("MCP_RUNNER_ENGINE", "podman")
DEFAULT_MACHINE_NAME = os.environ.get("MCP_RUNNER_MACHINE", "mcp-runner-vm")
DEFAULT_REGISTRY = os.environ.get("MCP_RUNNER_REGISTRY", "docker.io")
VERIFY_ATTEMPTS = int(os.environ.get("MCP_RUNNER_VERIFY_ATTEMPTS", "5"))
VERIFY_DELAY = float(os.environ.get("MCP_RUNNER_VERIFY_DELAY", "2"))
ENGINE_COMMAND_TIMEOUT = float(os.environ.get("MCP_RUNNER_COMMAND_TIMEOUT", "600"))
DEFAULT_LOG_LEVEL = os.environ.get("MCP_RUNNER_LOG_LEVEL", "INFO")

# Commands that mean "this server ships as a container image".
CONTAINER_COMMANDS = frozenset({"docker", "podman"})

# Engine options that take the following token as their value.
OPTIONS_WITH_VALUES = frozenset(
    {"--mount", "-v", "--volume", "-e", "--env", "-p", "--publish", "--name"}
)

# Fragments of --mount values that a naive scan could mistake for an image.
_MOUNT_FRAGMENTS = ("type=bind", "src=")

# Substring -> diagnostic hint for child channel errors, checked in order.
CHANNEL_ERROR_HINTS: Tuple[Tuple[str, str], ...] = (
    (
        "spawn",
        "Failed to spawn child process - check if the command exists and is executable",
    ),
    ("permission", "Permission error when running child process"),
)

_PODMAN_PULL_PREFIXES: Tuple[str, ...] = (
    'Resolved "',
    "Trying to pull",
    "Getting image source signatures",
    "Copying blob",
    "Copying config",
    "Extracting",
    "Writing manifest",
    "Storing signatures",
)

_LINE_BREAK = re.compile(r"\r?\n")
_READ_CHUNK_SIZE = 65536

_IS_LINUX = sys.platform.startswith("linux")

T = TypeVar("T")


class RunnerError(RuntimeError):
    """Base class for errors raised to the runner's caller."""


class ConfigurationError(RunnerError):
    """Raised when the connection descriptor or CLI input is unusable."""


class EngineCommandError(RunnerError):
    """Raised when a container engine command exits non-zero."""

    def __init__(self, message: str, *, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr


class BootstrapError(EngineCommandError):
    """Raised when the container VM cannot be prepared or reached."""


class RetryExhaustedError(RunnerError):
    """Raised by retry_until when no attempt satisfied the predicate."""

    def __init__(self, message: str, *, attempts: int, last_result: Any) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_result = last_result


class TransportNotReadyError(RunnerError):
    """Raised when sending to a child channel that is not (or no longer) ready."""


class ConnectionDescriptor(BaseModel):
    """Fully-resolved command line for one MCP server."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    command: str = Field(min_length=1, description="Executable that starts the server.")
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)

    @field_validator("args", "env", mode="before")
    @classmethod
    def _default_when_absent(cls, value: Any, info: Any) -> Any:
        if value is None:
            return [] if info.field_name == "args" else {}
        return value

    @classmethod
    def parse(
        cls, value: Union["ConnectionDescriptor", Mapping[str, Any], str, bytes]
    ) -> "ConnectionDescriptor":
        if isinstance(value, cls):
            return value
        try:
            if isinstance(value, (str, bytes)):
                return cls.model_validate_json(value)
            return cls.model_validate(value)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid connection descriptor: {exc}") from exc


class MachineDescriptor(BaseModel):
    """One entry of ``machine list --format json``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(alias="Name")
    running: bool = Field(default=False, alias="Running")

    @field_validator("name")
    @classmethod
    def _strip_default_marker(cls, value: str) -> str:
        # Older podman releases flag the default machine with a trailing '*'.
        return value.rstrip("*")


_MACHINE_LIST = TypeAdapter(List[MachineDescriptor])


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single container engine invocation."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error_text(self) -> str:
        return (self.stderr.strip() or self.stdout.strip()) or f"exit code {self.returncode}"


PullStrategy = Literal["direct", "anonymous", "logout"]


@dataclass(frozen=True)
class PullOutcome:
    """Tagged result of the pull fallback chain: succeeded or exhausted."""

    succeeded: bool
    strategy: Optional[PullStrategy] = None
    error: str = ""
    attempts: Tuple[PullStrategy, ...] = ()


@dataclass
class RuntimeState:
    """Mutable state shared by the transport bridge and lifecycle controller."""

    transport: Optional["ChildTransport"] = None
    ready: bool = False
    inbound_buffer: str = ""


EngineRunner = Callable[[Sequence[str], float], Awaitable[CommandResult]]


async def run_engine_process(argv: Sequence[str], timeout: float) -> CommandResult:
    """Run an engine command and capture its output.

    stdin is bound to /dev/null: the runner's own stdin carries the protocol
    stream and must never be inherited by helper commands.
    """

    try:
        with anyio.fail_after(timeout):
            completed = await anyio.run_process(
                list(argv), stdin=subprocess.DEVNULL, check=False
            )
    except TimeoutError:
        logger.error("Engine command timed out after %ss: %s", timeout, list(argv))
        return CommandResult(-1, "", f"Timeout waiting for command: {' '.join(argv)}")
    except OSError as exc:
        logger.error("Engine command failed to start: %s: %s", list(argv), exc)
        return CommandResult(-1, "", str(exc))

    return CommandResult(
        completed.returncode,
        completed.stdout.decode(errors="replace"),
        completed.stderr.decode(errors="replace"),
    )


class ContainerEngine:
    """Thin async wrapper over a container engine CLI."""

    def __init__(
        self,
        command: str = DEFAULT_ENGINE,
        *,
        runner: Optional[EngineRunner] = None,
        timeout: float = ENGINE_COMMAND_TIMEOUT,
    ) -> None:
        self.command = command
        self.timeout = timeout
        self._runner = runner or run_engine_process

    def __repr__(self) -> str:
        return f"ContainerEngine({self.command!r})"

    @property
    def needs_machine(self) -> bool:
        return "podman" in os.path.basename(self.command).lower()

    async def run(self, *args: str) -> CommandResult:
        argv = [self.command, *args]
        logger.debug("Running engine command: %s", argv)
        return await self._runner(argv, self.timeout)

    async def check(self, *args: str) -> CommandResult:
        result = await self.run(*args)
        if not result.ok:
            raise EngineCommandError(
                f"`{self.command} {' '.join(args)}` failed: {filter_pull_chatter(result.error_text)}",
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result


def filter_pull_chatter(text: str) -> str:
    """Strip podman pull progress lines so failures log only the useful part."""

    filtered_lines: List[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if stripped and any(
            stripped.startswith(prefix) for prefix in _PODMAN_PULL_PREFIXES
        ):
            continue
        filtered_lines.append(line)
    return "\n".join(filtered_lines).strip("\n")


# ---------------------------------------------------------------------------
# Image resolution
# ---------------------------------------------------------------------------


def find_anchor(args: Sequence[str]) -> Optional[str]:
    """Return whichever of ``pull``/``run`` appears first in ``args``."""

    for token in args:
        if token in ("pull", "run"):
            return token
    return None


def locate_image(args: Sequence[str], anchor: str) -> Optional[int]:
    """Return the index of the image reference following ``anchor``, or None.

    Tokens starting with ``-`` are options; options listed in
    OPTIONS_WITH_VALUES also consume the token after them.
    """

    if anchor not in args:
        return None

    skip_next = False
    for index in range(args.index(anchor) + 1, len(args)):
        if skip_next:
            skip_next = False
            continue
        token = args[index]
        if token.startswith("-"):
            if token in OPTIONS_WITH_VALUES:
                skip_next = True
            continue
        return index
    return None


def looks_like_mount_option(token: str) -> bool:
    return any(fragment in token for fragment in _MOUNT_FRAGMENTS)


def normalize_image(reference: str, registry: str = DEFAULT_REGISTRY) -> str:
    """Prefix unqualified image references with the default registry."""

    if "/" not in reference or (
        "." not in reference
        and ":" not in reference
        and len(reference.split("/")) < 3
    ):
        return f"{registry}/{reference}"
    return reference


def apply_registry_override(
    args: Sequence[str], registry: str = DEFAULT_REGISTRY
) -> List[str]:
    """Rewrite the image argument of a pull/run invocation to a qualified reference."""

    result = list(args)
    anchor = find_anchor(result)
    if anchor is None:
        logger.debug("No registry override needed for this command")
        return result

    index = locate_image(result, anchor)
    if index is None:
        logger.warning("No image argument found after %s command", anchor)
        return result

    image = result[index]
    if looks_like_mount_option(image):
        return result

    qualified = normalize_image(image, registry)
    if qualified != image:
        logger.info("Overriding registry: prefixing image %s with %s/", image, registry)
        result[index] = qualified
    else:
        logger.debug("Image %s already has a registry specified", image)
    return result


# ---------------------------------------------------------------------------
# Pull fallback chain
# ---------------------------------------------------------------------------


def containers_config_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / "containers"


def configure_anonymous_credentials(
    registry: str = DEFAULT_REGISTRY, config_dir: Optional[Path] = None
) -> bool:
    """Write an auth.json that disables credential helpers and the credential store."""

    target_dir = config_dir or containers_config_dir()
    auth_config = {
        "auths": {registry: {"auth": ""}},
        "credHelpers": {},
        "credsStore": "",
    }
    auth_path = target_dir / "auth.json"
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        auth_path.write_text(json.dumps(auth_config, indent=2), encoding="utf-8")
    except OSError as exc:
        logger.warning("Failed to configure container credentials at %s: %s", auth_path, exc)
        return False

    logger.info("Container credentials configured for anonymous pulls at %s", auth_path)
    return True


async def pull_image(
    engine: ContainerEngine,
    image: str,
    *,
    registry: str = DEFAULT_REGISTRY,
    config_dir: Optional[Path] = None,
) -> PullOutcome:
    """Pull ``image`` with escalating strategies; never raises on engine failures."""

    attempts: List[PullStrategy] = ["direct"]
    logger.info("Attempting to pull image: %s", image)
    result = await engine.run("pull", image)
    if result.ok:
        logger.info("Successfully pulled image: %s", image)
        return PullOutcome(True, "direct", attempts=tuple(attempts))
    logger.warning(
        "Error pulling image with existing credentials: %s",
        filter_pull_chatter(result.error_text),
    )

    attempts.append("anonymous")
    logger.info("Attempting anonymous pull...")
    configure_anonymous_credentials(registry, config_dir)
    result = await engine.run("pull", image)
    if result.ok:
        logger.info("Successfully pulled image anonymously: %s", image)
        return PullOutcome(True, "anonymous", attempts=tuple(attempts))
    logger.warning("Anonymous pull also failed: %s", filter_pull_chatter(result.error_text))

    attempts.append("logout")
    logger.info("Trying explicit logout from %s and pull...", registry)
    logout = await engine.run("logout", registry)
    if logout.ok:
        logger.info("Logged out from %s", registry)
    else:
        logger.info("Logout from %s failed: %s", registry, logout.error_text)
    result = await engine.run("pull", image)
    if result.ok:
        logger.info("Successfully pulled image after logout: %s", image)
        return PullOutcome(True, "logout", attempts=tuple(attempts))

    error = filter_pull_chatter(result.error_text)
    logger.warning("Pull after logout also failed: %s", error)
    return PullOutcome(False, error=error, attempts=tuple(attempts))


async def handle_container_pull(
    engine: ContainerEngine,
    args: Sequence[str],
    *,
    registry: str = DEFAULT_REGISTRY,
    config_dir: Optional[Path] = None,
) -> List[str]:
    """Pre-pull the image referenced by a pull/run invocation.

    The arguments are always returned unchanged; an exhausted pull is logged and
    left for the engine itself to retry when the command runs.
    """

    anchor = find_anchor(args)
    if anchor is None:
        return list(args)

    index = locate_image(args, anchor)
    if index is None:
        logger.warning("Could not identify image in command arguments")
        return list(args)

    image = args[index]
    logger.info("Found image name: %s", image)
    if looks_like_mount_option(image):
        logger.info("Skipping pull for what appears to be a mount option, not an image")
        return list(args)

    outcome = await pull_image(
        engine, normalize_image(image, registry), registry=registry, config_dir=config_dir
    )
    if not outcome.succeeded:
        logger.error(
            "All pull strategies failed for %s; continuing so `%s` can retry: %s",
            image,
            anchor,
            outcome.error,
        )
    return list(args)


# ---------------------------------------------------------------------------
# VM bootstrap
# ---------------------------------------------------------------------------


async def retry_until(
    operation: Callable[[], Awaitable[T]],
    succeeded: Callable[[T], bool],
    *,
    attempts: int,
    delay: float,
    sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
    on_retry: Optional[Callable[[int, T], None]] = None,
) -> T:
    """Call ``operation`` until ``succeeded`` accepts its result.

    Makes at most ``attempts`` calls with a fixed ``delay`` between them and
    raises RetryExhaustedError carrying the last result when all fail.
    """

    def _before_sleep(retry_state: RetryCallState) -> None:
        if on_retry is not None and retry_state.outcome is not None:
            on_retry(retry_state.attempt_number, retry_state.outcome.result())

    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay),
        retry=retry_if_result(lambda result: not succeeded(result)),
        before_sleep=_before_sleep,
        sleep=sleep,
    )
    # tenacity only awaits coroutine functions; a lambda returning a coroutine is not one.
    async def _attempt() -> T:
        return await operation()

    try:
        return await retrying(_attempt)
    except RetryError as exc:
        raise RetryExhaustedError(
            f"Gave up after {attempts} attempts",
            attempts=attempts,
            last_result=exc.last_attempt.result(),
        ) from exc


def machine_required(engine: ContainerEngine, platform: Optional[str] = None) -> bool:
    """Return True when ``engine`` runs containers inside a VM on this platform."""

    on_linux = _IS_LINUX if platform is None else platform.startswith("linux")
    return engine.needs_machine and not on_linux


async def list_machines(engine: ContainerEngine) -> List[MachineDescriptor]:
    result = await engine.check("machine", "list", "--format", "json")
    payload = result.stdout.strip()
    if not payload or payload == "null":
        return []
    try:
        return _MACHINE_LIST.validate_json(payload)
    except ValidationError as exc:
        raise EngineCommandError(
            f"Unexpected output from `{engine.command} machine list`: {exc}",
            stdout=result.stdout,
            stderr=result.stderr,
        ) from exc


async def ensure_machine_running(
    engine: ContainerEngine,
    machine_name: str = DEFAULT_MACHINE_NAME,
    *,
    attempts: int = VERIFY_ATTEMPTS,
    delay: float = VERIFY_DELAY,
    sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
    platform: Optional[str] = None,
) -> None:
    """Make ``machine_name`` exist, run, and be the engine's default connection.

    Raises BootstrapError if any machine command fails or the machine is still
    unreachable after ``attempts`` connectivity checks.
    """

    if not machine_required(engine, platform):
        return

    try:
        machines = await list_machines(engine)
        machine = next((m for m in machines if m.name == machine_name), None)
        if machine is None:
            logger.info("Initializing new %s machine '%s'...", engine.command, machine_name)
            await engine.check("machine", "init", machine_name)
            logger.info("Starting new %s machine '%s'...", engine.command, machine_name)
            await engine.check("machine", "start", machine_name)
            logger.info("Machine '%s' initialized and started", machine_name)
        elif not machine.running:
            logger.info("Starting %s machine '%s'...", engine.command, machine_name)
            await engine.check("machine", "start", machine_name)
            logger.info("Machine '%s' started", machine_name)

        logger.info("Setting '%s' as the active %s connection...", machine_name, engine.command)
        await engine.check("system", "connection", "default", machine_name)
    except EngineCommandError as exc:
        raise BootstrapError(
            f"Failed to ensure {engine.command} machine '{machine_name}' is running: {exc}",
            stdout=exc.stdout,
            stderr=exc.stderr,
        ) from exc

    def _log_wait(attempt: int, result: CommandResult) -> None:
        logger.info(
            "Waiting for connection to '%s' (attempt %d/%d)...",
            machine_name,
            attempt,
            attempts,
        )
        logger.debug("Connectivity check output: %s", result.error_text)

    logger.info("Verifying %s machine connection...", engine.command)
    try:
        await retry_until(
            lambda: engine.run("--connection", machine_name, "info"),
            lambda result: result.ok,
            attempts=attempts,
            delay=delay,
            sleep=sleep,
            on_retry=_log_wait,
        )
    except RetryExhaustedError as exc:
        last: CommandResult = exc.last_result
        raise BootstrapError(
            f"Failed to connect to {engine.command} machine '{machine_name}' "
            f"after {attempts} attempts",
            stdout=last.stdout,
            stderr=last.stderr,
        ) from exc
    logger.info("Connected to %s machine '%s'", engine.command, machine_name)


async def prepare_connection(
    descriptor: ConnectionDescriptor,
    *,
    engine: Optional[ContainerEngine] = None,
    machine_name: str = DEFAULT_MACHINE_NAME,
    registry: str = DEFAULT_REGISTRY,
) -> ConnectionDescriptor:
    """Provision the container backend for docker/podman servers.

    Other commands are returned untouched.
    """

    if descriptor.command not in CONTAINER_COMMANDS:
        return descriptor

    engine = engine or ContainerEngine()
    if engine.command != descriptor.command:
        logger.info("Using %s in place of %s", engine.command, descriptor.command)

    await ensure_machine_running(engine, machine_name)

    args = await handle_container_pull(engine, descriptor.args, registry=registry)
    args = apply_registry_override(args, registry)
    return descriptor.model_copy(update={"command": engine.command, "args": args})


# ---------------------------------------------------------------------------
# Child transport
# ---------------------------------------------------------------------------


MessageHandler = Callable[[JSONRPCMessage], Awaitable[None]]
CloseHandler = Callable[[], Awaitable[None]]
ErrorHandler = Callable[[BaseException], Awaitable[None]]


class ChildTransport(Protocol):
    on_message: Optional[MessageHandler]
    on_close: Optional[CloseHandler]
    on_error: Optional[ErrorHandler]

    async def start(self, task_group: TaskGroup) -> None:  # pragma: no cover - typing only
        ...

    async def send(self, message: JSONRPCMessage) -> None:  # pragma: no cover - typing only
        ...

    async def close(self) -> None:  # pragma: no cover - typing only
        ...


def _is_blank_line_noise(exc: BaseException) -> bool:
    message = str(exc)
    return "Invalid JSON" in message and "EOF while parsing a value" in message


class StdioChildTransport:
    """Child process speaking line-delimited JSON-RPC on its stdio."""

    def __init__(self, params: StdioServerParameters, *, errlog: Any = None) -> None:
        self.params = params
        self.errlog = errlog if errlog is not None else sys.stderr
        self.on_message: Optional[MessageHandler] = None
        self.on_close: Optional[CloseHandler] = None
        self.on_error: Optional[ErrorHandler] = None
        self._write_stream: Any = None
        self._reader_scope: Optional[anyio.CancelScope] = None
        self._done = anyio.Event()

    async def start(self, task_group: TaskGroup) -> None:
        await task_group.start(self._run)

    async def _run(self, *, task_status: Any = anyio.TASK_STATUS_IGNORED) -> None:
        closed_by_child = False
        try:
            async with stdio_client(self.params, errlog=self.errlog) as (
                read_stream,
                write_stream,
            ):
                self._write_stream = write_stream
                task_status.started()
                with anyio.CancelScope() as scope:
                    self._reader_scope = scope
                    async for item in read_stream:
                        if isinstance(item, Exception):
                            if _is_blank_line_noise(item):
                                continue
                            if self.on_error is not None:
                                await self.on_error(item)
                            continue
                        if self.on_message is not None:
                            await self.on_message(item.message)
                    closed_by_child = True
        finally:
            self._write_stream = None
            self._done.set()

        if closed_by_child and self.on_close is not None:
            await self.on_close()

    async def send(self, message: JSONRPCMessage) -> None:
        if self._write_stream is None:
            raise TransportNotReadyError("Transport not ready")
        await self._write_stream.send(SessionMessage(message))

    async def close(self) -> None:
        if self._reader_scope is not None:
            self._reader_scope.cancel()
        await self._done.wait()


def build_server_parameters(descriptor: ConnectionDescriptor) -> StdioServerParameters:
    """Declared env wins over the platform default environment."""

    return StdioServerParameters(
        command=descriptor.command,
        args=list(descriptor.args),
        env={**get_default_environment(), **descriptor.env},
    )


TransportFactory = Callable[[StdioServerParameters], ChildTransport]


def classify_channel_error(text: str) -> Optional[str]:
    lowered = text.lower()
    for needle, hint in CHANNEL_ERROR_HINTS:
        if needle in lowered:
            return hint
    return None


def _default_output() -> Any:
    return anyio.wrap_file(TextIOWrapper(sys.stdout.buffer, encoding="utf-8"))


class ThreadedByteReader:
    """Blocking binary stream read in a worker thread.

    A cancelled read abandons its thread instead of waiting for it, so a parent
    that keeps stdin open cannot hold the runner past its exit decision.
    """

    def __init__(self, stream: Any) -> None:
        self._stream = stream

    async def read1(self, size: int = -1) -> bytes:
        return await anyio.to_thread.run_sync(
            self._stream.read1, size, abandon_on_cancel=True
        )


def _default_input() -> Any:
    return ThreadedByteReader(sys.stdin.buffer)


# ---------------------------------------------------------------------------
# Transport bridge
# ---------------------------------------------------------------------------


class TransportBridge:
    """Relay JSON-RPC lines between the parent's stdio and the child transport."""

    def __init__(
        self,
        state: RuntimeState,
        *,
        request_exit: Callable[[int], None],
        output: Any = None,
        transport_factory: TransportFactory = StdioChildTransport,
    ) -> None:
        self.state = state
        self._request_exit = request_exit
        self._output = output if output is not None else _default_output()
        self._transport_factory = transport_factory

    async def start(
        self, descriptor: ConnectionDescriptor, task_group: TaskGroup
    ) -> Optional[ChildTransport]:
        transport = self._transport_factory(build_server_parameters(descriptor))
        transport.on_message = self.handle_message
        transport.on_close = self.handle_close
        transport.on_error = self.handle_error
        self.state.transport = transport

        try:
            await transport.start(task_group)
        except Exception as exc:
            logger.debug("Child process failed to start", exc_info=True)
            self.state.transport = None
            self._report_channel_error(f"spawn {descriptor.command}: {exc}")
            return None

        if self.state.transport is transport:
            self.state.ready = True
        return transport

    async def send(self, message: JSONRPCMessage) -> None:
        transport = self.state.transport
        if transport is None or not self.state.ready:
            raise TransportNotReadyError("Transport not ready")
        await transport.send(message)

    async def feed(self, chunk: str) -> None:
        """Buffer parent input and forward every complete line as one message."""

        self.state.inbound_buffer += chunk
        if not self.state.ready:
            return

        lines = _LINE_BREAK.split(self.state.inbound_buffer)
        self.state.inbound_buffer = lines.pop()

        for line in lines:
            if not line:
                continue
            try:
                message = JSONRPCMessage.model_validate_json(line)
            except ValidationError as exc:
                logger.error("Dropping malformed message from parent: %s", exc)
                continue
            try:
                await self.send(message)
            except (
                TransportNotReadyError,
                anyio.ClosedResourceError,
                anyio.BrokenResourceError,
            ) as exc:
                logger.error("Failed to send message to child process: %r", exc)

    async def relay_input(self, source: Any) -> None:
        """Feed parent input until EOF; the UTF-8 decoder tolerates split characters."""

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await source.read1(_READ_CHUNK_SIZE)
            if not chunk:
                break
            await self.feed(decoder.decode(chunk))
        tail = decoder.decode(b"", final=True)
        if tail:
            await self.feed(tail)

    async def handle_message(self, message: JSONRPCMessage) -> None:
        try:
            root = message.root
            if isinstance(root, JSONRPCError) and root.error.code != METHOD_NOT_FOUND:
                logger.warning(
                    "Child process error: code=%s message=%s",
                    root.error.code,
                    root.error.message,
                )
            await self._output.write(
                message.model_dump_json(by_alias=True, exclude_none=True) + "\n"
            )
            await self._output.flush()
        except Exception:
            logger.exception("Error handling message from child process")

    async def handle_close(self) -> None:
        if self.state.transport is None:
            # Closed by cleanup.
            return
        logger.info("Child process terminated")
        if self.state.ready:
            logger.error("Process terminated unexpectedly while running")
            self._request_exit(1)
            return
        self._request_exit(0)

    async def handle_error(self, exc: BaseException) -> None:
        self._report_channel_error(str(exc))

    def _report_channel_error(self, text: str) -> None:
        logger.error("Child process error: %s", text)
        hint = classify_channel_error(text)
        if hint:
            logger.error(hint)
        self._request_exit(1)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class LifecycleController:
    """Single exit-coordination point for one runner instance."""

    def __init__(self, state: RuntimeState) -> None:
        self.state = state
        self.exit_code: Optional[int] = None
        self._exit_requested = anyio.Event()

    def request_exit(self, code: int) -> None:
        if self.exit_code is not None:
            logger.debug("Ignoring exit request %s; already exiting with %s", code, self.exit_code)
            return
        self.exit_code = code
        self._exit_requested.set()

    async def cleanup(self) -> None:
        # Take the handle before awaiting so a concurrent caller sees it cleared.
        transport, self.state.transport = self.state.transport, None
        if transport is not None:
            logger.info("Starting cleanup...")
            await transport.close()
            logger.info("Cleanup completed")
        self.request_exit(0)

    async def wait(self) -> int:
        await self._exit_requested.wait()
        assert self.exit_code is not None
        return self.exit_code

    async def watch_signals(self, *signums: int) -> None:
        # Stays open until the runner exits; repeated signals land here rather
        # than in the default handlers.
        with anyio.open_signal_receiver(*signums) as received:
            async for signum in received:
                name = signal.Signals(signum).name
                if self.exit_code is not None or self.state.transport is None:
                    logger.info("Received %s; already shutting down", name)
                    continue
                logger.info("Received %s", name)
                await self.cleanup()


@dataclass
class Runner:
    """Handle to a live runner: send to the child, clean up, or await the exit code."""

    state: RuntimeState
    bridge: TransportBridge
    lifecycle: LifecycleController
    descriptor: ConnectionDescriptor

    async def send(self, message: JSONRPCMessage) -> None:
        await self.bridge.send(message)

    async def cleanup(self) -> None:
        await self.lifecycle.cleanup()

    async def wait(self) -> int:
        return await self.lifecycle.wait()


@asynccontextmanager
async def create_runner(
    connection: Union[ConnectionDescriptor, Mapping[str, Any], str],
    *,
    engine: Optional[ContainerEngine] = None,
    transport_factory: TransportFactory = StdioChildTransport,
    input_stream: Any = None,
    output_stream: Any = None,
    handle_signals: bool = True,
) -> AsyncIterator[Runner]:
    """Start the child for ``connection`` and relay stdio until the runner exits.

    Configuration and bootstrap errors are raised before anything is spawned.
    After that, failures only ever decide the exit code returned by
    ``Runner.wait()``.
    """

    descriptor = ConnectionDescriptor.parse(connection)
    descriptor = await prepare_connection(descriptor, engine=engine)
    logger.info("Executing: command=%s args=%s", descriptor.command, descriptor.args)

    state = RuntimeState()
    lifecycle = LifecycleController(state)
    bridge = TransportBridge(
        state,
        request_exit=lifecycle.request_exit,
        output=output_stream,
        transport_factory=transport_factory,
    )

    async def _relay_parent_input() -> None:
        await bridge.relay_input(input_stream if input_stream is not None else _default_input())
        logger.info("Parent closed stdin")
        await lifecycle.cleanup()

    async with anyio.create_task_group() as task_group:
        if handle_signals and sys.platform != "win32":
            task_group.start_soon(lifecycle.watch_signals, signal.SIGINT, signal.SIGTERM)

        logger.info("Starting child process...")
        await bridge.start(descriptor, task_group)
        if state.ready and lifecycle.exit_code is None:
            task_group.start_soon(_relay_parent_input)

        try:
            yield Runner(state, bridge, lifecycle, descriptor)
        finally:
            with anyio.CancelScope(shield=True):
                await lifecycle.cleanup()
            task_group.cancel_scope.cancel()


async def run_connection(
    connection: Union[ConnectionDescriptor, Mapping[str, Any], str],
    **kwargs: Any,
) -> int:
    """Run until signalled or the child exits; return the process exit code."""

    async with create_runner(connection, **kwargs) as runner:
        return await runner.wait()


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog=RUNNER_NAME,
        description="Run an MCP server over stdio, provisioning a container VM when needed",
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--connection",
        help='Connection descriptor as JSON, e.g. \'{"command": "npx", "args": ["-y", "pkg"]}\'',
    )
    source.add_argument(
        "--connection-file",
        type=Path,
        help="Path to a JSON file holding the connection descriptor",
    )
    parser.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra environment variable for the server (repeatable)",
    )
    parser.add_argument(
        "--log-level",
        default=DEFAULT_LOG_LEVEL,
        help="Logging level (default: %(default)s)",
    )
    parser.add_argument("command", nargs="?", help="Server executable")
    parser.add_argument("args", nargs=argparse.REMAINDER, help="Server arguments")
    return parser.parse_args(argv)


def _parse_env_overrides(entries: Sequence[str]) -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"Invalid --env value {entry!r}; expected KEY=VALUE")
        overrides[key] = value
    return overrides


def load_connection(namespace: argparse.Namespace) -> ConnectionDescriptor:
    """Build the connection descriptor from parsed command-line arguments."""

    raw: Optional[str] = None
    if namespace.connection_file is not None:
        try:
            raw = namespace.connection_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigurationError(
                f"Cannot read connection file {namespace.connection_file}: {exc}"
            ) from exc
    elif namespace.connection is not None:
        raw = namespace.connection

    if raw is not None and namespace.command:
        raise ConfigurationError("Pass either a connection descriptor or a command, not both")

    data: Dict[str, Any]
    if raw is not None:
        try:
            loaded = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON configuration: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigurationError("Connection descriptor must be a JSON object")
        data = loaded
    elif namespace.command:
        args = list(namespace.args)
        if args[:1] == ["--"]:
            args = args[1:]
        data = {"command": namespace.command, "args": args}
    else:
        raise ConfigurationError(
            "Missing server command; pass --connection, --connection-file or a command"
        )

    overrides = _parse_env_overrides(namespace.env)
    if overrides:
        data = {**data, "env": {**(data.get("env") or {}), **overrides}}
    return ConnectionDescriptor.parse(data)


def main(argv: Optional[Sequence[str]] = None) -> int:
    namespace = _parse_args(argv)
    logging.basicConfig(
        level=str(namespace.log_level).upper(),
        format="[%(name)s] %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    try:
        connection = load_connection(namespace)
        logger.info("Server connection details: command=%s", connection.command)
        if connection.args:
            logger.info("- Arguments: %s", " ".join(connection.args))
        if connection.env:
            logger.info("- Environment variables: %s", ", ".join(connection.env))
        return anyio.run(run_connection, connection)
    except BootstrapError as exc:
        logger.error("Failed to run server: %s", exc)
        if exc.stderr:
            logger.debug("Engine stderr:\n%s", exc.stderr)
        return 1
    except RunnerError as exc:
        logger.error("Failed to run server: %s", exc)
        return 1
    except KeyboardInterrupt:
        return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
