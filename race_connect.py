"""Connect to the first reachable host and relay stdin/stdout over it.

Every candidate host is dialed at once on the same port. The first attempt to
connect wins the race and starts relaying right away; connections that succeed
after that are closed and discarded. The session then runs until it is
cancelled (SIGINT/SIGTERM from the command line).
"""

import argparse
import enum
import logging
import os
import select
import signal
import socket
import stat
import sys
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Sequence

import anyio
from anyio.abc import ByteReceiveStream, ByteSendStream, SocketStream, TaskGroup
from anyio.lowlevel import checkpoint

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30.0
BUFFER_SIZE = 512

STDIN_FILENO = 0
STDOUT_FILENO = 1


class RaceConnectError(Exception):
    pass


class DialFailure(RaceConnectError):
    """A single connection attempt failed."""

    def __init__(self, target: "Target", cause: BaseException):
        self.target = target
        self.cause = cause
        super().__init__(f"Connection to {target} failed: {cause}")


class AllUnreachable(RaceConnectError):
    """No candidate host accepted a connection."""

    def __init__(self, failures: Iterable[DialFailure] = ()):
        self.failures = tuple(failures)
        super().__init__("Host(s) unavailable")


def resolve_port(port: str) -> int:
    """Turn a numeric port or a TCP service name ("https") into a port number.

    Raises:
        ValueError: numeric port outside 1-65535
        OSError: unknown service name
    """
    if port.isdigit():
        number = int(port)
        if not 0 < number < 65536:
            raise ValueError(f"port out of range: {port}")
        return number
    return socket.getservbyname(port, "tcp")


@dataclass(frozen=True)
class Target:
    host: str
    port: str

    @property
    def port_number(self) -> int:
        return resolve_port(self.port)

    def __str__(self):
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def make_targets(port: str, hosts: Iterable[str]) -> tuple[Target, ...]:
    return tuple(Target(host, port) for host in hosts)


@dataclass
class ConnectOutcome:
    """Result of one attempt.

    A dial fills in exactly one of ``stream`` and ``error``. A straggler
    (connected after the race was already won) reports both as ``None``.
    """

    stream: Optional[SocketStream] = None
    error: Optional[DialFailure] = None


class ExclusivityGuard:
    """One-shot flag deciding the single winner of a race."""

    def __init__(self):
        self._claimed = False

    @property
    def claimed(self) -> bool:
        return self._claimed

    def claim(self) -> bool:
        # No checkpoint between the test and the set: atomic for anyio tasks.
        if self._claimed:
            return False
        self._claimed = True
        return True


@dataclass
class Settings:
    """Runtime settings, read from ``RACE_CONNECT_*`` environment variables."""

    connect_timeout: float = field(default=CONNECT_TIMEOUT)
    buffer_size: int = field(default=BUFFER_SIZE)
    log_level: str = field(default="INFO")
    half_close: bool = field(default=False)

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            connect_timeout=cls._get_number("RACE_CONNECT_TIMEOUT", float, CONNECT_TIMEOUT),
            buffer_size=cls._get_number("RACE_CONNECT_BUFFER_SIZE", int, BUFFER_SIZE),
            log_level=cls._get_log_level("RACE_CONNECT_LOG_LEVEL", "INFO"),
            half_close=cls._get_bool("RACE_CONNECT_HALF_CLOSE", False),
        )

    @staticmethod
    def _get_number(key: str, kind, default):
        value = os.getenv(key)
        if value is None:
            return default

        try:
            number = kind(value)
        except ValueError:
            logger.warning("Invalid value for %s: %s, using default %s", key, value, default)
            return default

        if number <= 0:
            logger.warning("%s must be positive, got %s, using default %s", key, value, default)
            return default
        return number

    @staticmethod
    def _get_bool(key: str, default: bool) -> bool:
        value = os.getenv(key)
        if value is None:
            return default
        return value.lower() in ("1", "true", "yes", "on")

    @staticmethod
    def _get_log_level(key: str, default: str) -> str:
        value = os.getenv(key, default).upper()
        if not isinstance(logging.getLevelName(value), int):
            logger.warning("Unknown log level for %s: %s, using %s", key, value, default)
            return default
        return value


def configure_logging(level: str = "INFO") -> None:
    """Send diagnostics to stderr so they never mix with relayed data."""
    logging.basicConfig(level=level, stream=sys.stderr, format="%(message)s")


def _is_pollable(fd: int) -> bool:
    # Regular files and devices such as /dev/null are always ready and cannot
    # be registered with epoll.
    mode = os.fstat(fd).st_mode
    return stat.S_ISFIFO(mode) or stat.S_ISSOCK(mode) or os.isatty(fd)


class FileDescriptorReceiveStream(ByteReceiveStream):
    """Byte stream reading from a raw file descriptor (standard input)."""

    def __init__(self, fd: int):
        self.fd = fd
        self._pollable = _is_pollable(fd)
        self._closed = False

    async def receive(self, max_bytes: int = 65536) -> bytes:
        if self._closed:
            raise anyio.ClosedResourceError
        if self._pollable:
            await anyio.wait_readable(self.fd)
        else:
            await checkpoint()

        data = os.read(self.fd, max_bytes)
        if not data:
            raise anyio.EndOfStream
        return data

    async def aclose(self) -> None:
        # The descriptor belongs to the process, only this stream is closed.
        self._closed = True


class FileDescriptorSendStream(ByteSendStream):
    """Byte stream writing to a raw file descriptor (standard output)."""

    def __init__(self, fd: int):
        self.fd = fd
        self._pollable = _is_pollable(fd)
        self._closed = False

    async def send(self, item: bytes) -> None:
        view = memoryview(item)
        while view:
            if self._closed:
                raise anyio.ClosedResourceError
            if self._pollable:
                # Writable guarantees room for PIPE_BUF bytes, so the write
                # on the blocking descriptor returns without waiting.
                await anyio.wait_writable(self.fd)
                written = os.write(self.fd, view[:select.PIPE_BUF])
            else:
                await checkpoint()
                written = os.write(self.fd, view)
            view = view[written:]

    async def aclose(self) -> None:
        self._closed = True


async def dial(target: Target, timeout: float = CONNECT_TIMEOUT) -> ConnectOutcome:
    """Make one TCP connection attempt to ``target``.

    Failures of any kind (timeout, refusal, resolution, bad port) come back in
    the outcome instead of being raised. Cancellation of the surrounding scope
    is not a failure and propagates as usual.
    """
    try:
        with anyio.fail_after(timeout):
            stream = await anyio.connect_tcp(target.host, target.port_number)
    except (OSError, ValueError) as exc:
        return ConnectOutcome(error=DialFailure(target, exc))
    return ConnectOutcome(stream=stream)


async def race(
    targets: Sequence[Target],
    *,
    timeout: float = CONNECT_TIMEOUT,
    on_win: Optional[Callable[[SocketStream], None]] = None,
) -> SocketStream:
    """Dial every target concurrently and return the first connection made.

    ``on_win`` is called with the winning stream as soon as it is chosen, while
    slower attempts may still be in flight. The race itself returns only after
    every attempt has reported.

    Raises:
        AllUnreachable: no attempt connected (or there were no targets)
    """
    if not targets:
        raise AllUnreachable()

    guard = ExclusivityGuard()
    winning_stream = None
    send_outcome, receive_outcome = anyio.create_memory_object_stream(len(targets))

    async def attempt(target: Target):
        nonlocal winning_stream
        logger.debug("Trying %s", target)
        outcome = await dial(target, timeout)
        if outcome.error is not None:
            logger.debug("%s", outcome.error)
        elif guard.claim():
            winning_stream = outcome.stream
            logger.info("Connected to %s", target.host)
            if on_win is not None:
                on_win(outcome.stream)
        else:
            logger.debug("Discarding late connection to %s", target)
            await outcome.stream.aclose()
            outcome = ConnectOutcome()

        # The buffer holds one outcome per target, so this never blocks.
        await send_outcome.send(outcome)

    failures = []
    try:
        async with send_outcome, receive_outcome, anyio.create_task_group() as tg:
            for target in targets:
                tg.start_soon(attempt, target, name=f"dial {target}")

            for _ in targets:
                outcome = await receive_outcome.receive()
                if outcome.error is not None:
                    failures.append(outcome.error)
    except BaseException:
        if winning_stream is not None:
            await anyio.aclose_forcefully(winning_stream)
        raise

    if winning_stream is None:
        raise AllUnreachable(failures)
    return winning_stream


async def pump(source: ByteReceiveStream, sink: ByteSendStream, buffer_size: int = BUFFER_SIZE) -> int:
    """Copy ``source`` into ``sink`` until either side ends; return the byte count."""
    transferred = 0
    try:
        while True:
            data = await source.receive(buffer_size)
            await sink.send(data)
            transferred += len(data)
    except (anyio.EndOfStream, anyio.ClosedResourceError, anyio.BrokenResourceError, OSError) as exc:
        logger.debug("Relay loop finished after %d bytes (%s)", transferred, type(exc).__name__)
    return transferred


async def _send_upstream(
    local_input: ByteReceiveStream, connection: SocketStream, buffer_size: int, half_close: bool
):
    await pump(local_input, connection, buffer_size)
    if not half_close:
        return

    # Let the peer see local end of input while the other direction keeps running.
    try:
        await connection.send_eof()
    except (anyio.ClosedResourceError, anyio.BrokenResourceError, OSError):
        pass


def start_relay(
    connection: SocketStream,
    task_group: TaskGroup,
    local_input: ByteReceiveStream,
    local_output: ByteSendStream,
    buffer_size: int = BUFFER_SIZE,
    half_close: bool = False,
) -> None:
    """Start both relay directions as independent tasks in ``task_group``.

    With ``half_close`` the connection is shut down for writing once local
    input ends; otherwise it is left alone until the session closes it.
    """
    task_group.start_soon(
        _send_upstream, local_input, connection, buffer_size, half_close, name="relay local->remote"
    )
    task_group.start_soon(pump, connection, local_output, buffer_size, name="relay remote->local")


async def relay(
    connection: SocketStream,
    local_input: ByteReceiveStream,
    local_output: ByteSendStream,
    buffer_size: int = BUFFER_SIZE,
    half_close: bool = False,
) -> None:
    """Relay in both directions and return once both have finished."""
    async with anyio.create_task_group() as tg:
        start_relay(connection, tg, local_input, local_output, buffer_size, half_close)


class SessionState(enum.Enum):
    IDLE = "idle"
    RACING = "racing"
    RELAYING = "relaying"
    CLOSING = "closing"
    DONE = "done"


class Session:
    """Races the targets, relays over the winner, and closes it on cancel()."""

    def __init__(
        self,
        targets: Sequence[Target],
        local_input: ByteReceiveStream,
        local_output: ByteSendStream,
        settings: Optional[Settings] = None,
    ):
        self.targets = tuple(targets)
        self.local_input = local_input
        self.local_output = local_output
        self.settings = settings or Settings()
        self.state = SessionState.IDLE
        self.connection: Optional[SocketStream] = None
        self._cancel_scope = anyio.CancelScope()
        self._relay_group: Optional[TaskGroup] = None
        self._won = False

    def cancel(self) -> None:
        """Abort in-flight dials, or end relaying. Safe to call at any time."""
        self._cancel_scope.cancel()

    async def run(self) -> None:
        """Run the session until cancelled.

        Raises:
            AllUnreachable: no host accepted a connection, including when
                cancelled before one did
        """
        failure = None
        async with anyio.create_task_group() as relay_group:
            self._relay_group = relay_group
            with self._cancel_scope:
                self.state = SessionState.RACING
                try:
                    self.connection = await race(
                        self.targets,
                        timeout=self.settings.connect_timeout,
                        on_win=self._start_relay,
                    )
                except AllUnreachable as exc:
                    failure = exc
                else:
                    self.state = SessionState.RELAYING
                    await anyio.sleep_forever()

            if failure is None and not self._won:
                # Interrupted before any host accepted.
                failure = AllUnreachable()

            if self.connection is not None:
                self.state = SessionState.CLOSING
                await self.close()

            # Closing the connection is enough notice; the loops are not awaited.
            relay_group.cancel_scope.cancel()

        self.state = SessionState.DONE
        if failure is not None:
            raise failure

    async def close(self) -> None:
        connection, self.connection = self.connection, None
        if connection is not None:
            logger.debug("Closing connection")
            await connection.aclose()

    def _start_relay(self, connection: SocketStream) -> None:
        self._won = True
        start_relay(
            connection,
            self._relay_group,
            self.local_input,
            self.local_output,
            self.settings.buffer_size,
            self.settings.half_close,
        )


def _port_argument(value: str) -> str:
    try:
        resolve_port(value)
    except (ValueError, OSError):
        raise argparse.ArgumentTypeError(f"invalid port: {value!r}")
    return value


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="race-connect",
        description="Connect to the first reachable host and relay stdin/stdout over it.",
    )
    parser.add_argument("port", type=_port_argument, help="TCP port or service name shared by all hosts")
    parser.add_argument("hosts", nargs="+", metavar="host", help="candidate host; the first to accept wins")
    return parser.parse_args(argv)


async def _cancel_on_signal(session: Session):
    with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            logger.debug("Received %s, closing session", signal.Signals(signum).name)
            session.cancel()


async def serve(port: str, hosts: Sequence[str], settings: Settings) -> int:
    """Run one session on the process's standard streams; return the exit status."""
    session = Session(
        make_targets(port, hosts),
        FileDescriptorReceiveStream(STDIN_FILENO),
        FileDescriptorSendStream(STDOUT_FILENO),
        settings,
    )
    status = 0
    async with anyio.create_task_group() as tg:
        tg.start_soon(_cancel_on_signal, session)
        try:
            await session.run()
        except AllUnreachable as exc:
            logger.error("%s", exc)
            status = 1
        tg.cancel_scope.cancel()
    return status


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    sys.exit(anyio.run(serve, args.port, args.hosts, settings))


if __name__ == "__main__":
    main()
