"""SSH command execution on rented instances."""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

import asyncssh
from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_fixed

from trainyard.types import ExecResult

_log = logger.bind(component="ssh")

CONNECT_ERRORS = (OSError, asyncssh.Error, TimeoutError)


async def is_reachable(host: str, port: int, timeout: float = 5.0) -> bool:
    """Whether a TCP connection to ``host:port`` opens within ``timeout``."""
    try:
        async with asyncio.timeout(timeout):
            _, writer = await asyncio.open_connection(host, port)
    except (OSError, TimeoutError, ValueError):
        _log.debug("{host}:{port} not accepting connections", host=host, port=port)
        return False
    writer.close()
    with contextlib.suppress(OSError, TimeoutError):
        async with asyncio.timeout(timeout):
            await writer.wait_closed()
    return True


class SSHTransport:
    """One SSH connection to an instance, opened on ``async with``.

    ``connect`` makes up to ``connect_attempts`` tries, ``connect_delay``
    seconds apart, before giving up with the last error.
    """

    def __init__(
        self,
        host: str,
        user: str,
        key_path: str,
        port: int = 22,
        *,
        connect_timeout: float = 30.0,
        connect_attempts: int = 3,
        connect_delay: float = 2.0,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.key_path = key_path
        self.connect_timeout = connect_timeout
        self.connect_attempts = connect_attempts
        self.connect_delay = connect_delay
        self._conn: asyncssh.SSHClientConnection | None = None

    def __repr__(self) -> str:
        return f"SSHTransport({self.user}@{self.host}:{self.port})"

    def _log_retry(self, state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        _log.debug(
            "SSH connect to {target} failed (attempt {n}): {error}",
            target=f"{self.host}:{self.port}", n=state.attempt_number, error=error,
        )

    async def connect(self) -> None:
        if self._conn is not None:
            return
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.connect_attempts),
            wait=wait_fixed(self.connect_delay),
            retry=retry_if_exception_type(CONNECT_ERRORS),
            before_sleep=self._log_retry,
            reraise=True,
        )
        self._conn = await retrying(
            asyncssh.connect,
            self.host,
            port=self.port,
            username=self.user,
            client_keys=[Path(self.key_path).expanduser()],
            known_hosts=None,
            connect_timeout=self.connect_timeout,
        )

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        conn.close()
        with contextlib.suppress(TimeoutError):
            async with asyncio.timeout(5.0):
                await conn.wait_closed()

    async def __aenter__(self) -> SSHTransport:
        await self.connect()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def run(self, command: str, *, timeout: float | None = None) -> ExecResult:
        """Run ``command`` to completion. A non-zero exit comes back in the result."""
        if self._conn is None:
            raise RuntimeError(f"{self!r} is not connected")
        _log.debug("{target} $ {cmd}", target=f"{self.host}:{self.port}", cmd=command[:200])
        completed = await self._conn.run(command, timeout=timeout, check=False)
        return ExecResult(
            stdout=str(completed.stdout or ""),
            stderr=str(completed.stderr or ""),
            exit_code=-1 if completed.exit_status is None else completed.exit_status,
        )


__all__ = ["CONNECT_ERRORS", "SSHTransport", "is_reachable"]
