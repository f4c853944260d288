"""AsyncSSH-based transport for machine setup.

Service class pattern - connection policy bound at construction,
host and key passed per connect.

Example:
    >>> transport = SSHTransport(user="ec2-user")
    >>> session = await transport.connect("ec2-1-2-3-4.compute.amazonaws.com", Path("key1.pem"))
    >>> print(await session.run("cat /etc/hostname"))
    >>> await session.close()
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from pathlib import Path

import asyncssh
from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from tsunami.exceptions import (
    ChannelError,
    CommandFailedError,
    CommandIncompleteError,
    ConnectError,
    OutputReadError,
)

log = logger.bind(component="ssh")


def _preview(command: str) -> str:
    return command[:80] + "..." if len(command) > 80 else command


class SSHSession:
    """An authenticated SSH connection to one host."""

    __slots__ = ("_conn", "host", "command_timeout")

    def __init__(
        self,
        conn: asyncssh.SSHClientConnection,
        host: str,
        command_timeout: float | None = None,
    ) -> None:
        self._conn = conn
        self.host = host
        self.command_timeout = command_timeout

    def __repr__(self) -> str:
        return f"SSHSession(host={self.host!r}, open={self.is_open})"

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _require_connection(self) -> asyncssh.SSHClientConnection:
        if self._conn is None:
            raise RuntimeError(f"Session to {self.host} is closed")
        return self._conn

    async def run(self, command: str, *, check: bool = False) -> str:
        """Execute ``command`` and return its full stdout.

        Output is drained completely before the command is reported done.

        Raises:
            ChannelError: The session channel could not be opened.
            OutputReadError: The command started but its output could not be read.
            CommandIncompleteError: The command never reported an exit status,
                or did not finish within ``command_timeout``.
            CommandFailedError: ``check`` is set and the exit status is non-zero.
        """
        conn = self._require_connection()
        log.debug("{host}: running {cmd}", host=self.host, cmd=_preview(command))

        try:
            proc = await conn.create_process(command)
        except (asyncssh.Error, OSError) as e:
            raise ChannelError(
                f"failed to create ssh channel for command '{command}': {e}",
                command, address=self.host,
            ) from e

        try:
            async with asyncio.timeout(self.command_timeout):
                completed, stdout, stderr = await self._collect(proc, command)
        except TimeoutError as e:
            raise CommandIncompleteError(
                f"command '{command}' did not complete within {self.command_timeout}s",
                command, address=self.host,
            ) from e
        finally:
            proc.close()

        if completed.exit_signal is not None or completed.exit_status is None:
            raise CommandIncompleteError(
                f"command '{command}' never completed (signal={completed.exit_signal})",
                command, address=self.host,
            )

        log.debug("{host}: exit_status={code}", host=self.host, code=completed.exit_status)
        if check and completed.exit_status != 0:
            raise CommandFailedError(command, completed.exit_status, str(stderr), address=self.host)
        return str(stdout)

    async def _collect(
        self, proc: asyncssh.SSHClientProcess, command: str,
    ) -> tuple[asyncssh.SSHCompletedProcess, object, object]:
        try:
            stdout, stderr = await asyncio.gather(proc.stdout.read(), proc.stderr.read())
        except (asyncssh.Error, OSError) as e:
            raise OutputReadError(
                f"failed to read results of command '{command}': {e}",
                command, address=self.host,
            ) from e

        try:
            completed = await proc.wait()
        except (asyncssh.Error, asyncssh.ProcessError, OSError) as e:
            raise CommandIncompleteError(
                f"command '{command}' never completed: {e}",
                command, address=self.host,
            ) from e
        return completed, stdout, stderr

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        conn.close()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(conn.wait_closed(), timeout=5.0)

    async def __aenter__(self) -> SSHSession:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    host = state.args[0] if state.args else "?"
    log.warning(
        "{host}: connect attempt {n} failed ({err}), retrying in {delay:.0f}s",
        host=host,
        n=state.attempt_number,
        err=exc,
        delay=state.next_action.sleep if state.next_action else 0,
    )


@dataclass(frozen=True, slots=True)
class SSHTransport:
    """Opens SSH sessions with key-file authentication.

    TCP-level failures (refused, unreachable, timed out) are retried
    ``connect_retries`` times, ``connect_retry_delay`` seconds apart.
    Authentication failures are never retried.

    Args:
        user: Login user. ``ec2-user`` is the default admin account on
            Amazon Linux images.
        connect_timeout: Timeout for a single TCP connect + handshake.
        connect_retries: Extra attempts after the first TCP failure.
        connect_retry_delay: Seconds between attempts.
        command_timeout: Timeout for each command, None for unbounded.
    """

    user: str = "ec2-user"
    connect_timeout: float = 30.0
    connect_retries: int = 1
    connect_retry_delay: float = 10.0
    command_timeout: float | None = None

    async def connect(self, host: str, key_path: Path, *, port: int = 22) -> SSHSession:
        if not key_path.is_file():
            raise ConnectError(f"SSH key file not found: {key_path}", address=host)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.connect_retries + 1),
            wait=wait_fixed(self.connect_retry_delay),
            retry=retry_if_exception_type(OSError),
            before_sleep=_log_retry,
            reraise=True,
        )

        log.debug(
            "Connecting to {host}:{port} as {user} with {key}",
            host=host, port=port, user=self.user, key=key_path,
        )
        try:
            conn = await retrying(self._open, host, port, key_path)
        except asyncssh.PermissionDenied as e:
            raise ConnectError(
                f"failed to authenticate ssh session as {self.user}: {e}", address=host,
            ) from e
        except OSError as e:
            raise ConnectError(f"failed to connect to ssh port {port}: {e}", address=host) from e
        except (asyncssh.Error, asyncssh.KeyImportError) as e:
            raise ConnectError(f"failed to perform ssh handshake: {e}", address=host) from e

        log.debug("Connected to {host}", host=host)
        return SSHSession(conn, host, self.command_timeout)

    async def _open(self, host: str, port: int, key_path: Path) -> asyncssh.SSHClientConnection:
        return await asyncssh.connect(
            host,
            port=port,
            username=self.user,
            client_keys=[str(key_path)],
            known_hosts=None,
            connect_timeout=self.connect_timeout,
        )
