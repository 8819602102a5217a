"""
Supervision of the external ALFA language server process.

The supervisor spawns the server with piped stdio, binds a
``LanguageServerConnection`` to it and tears both down again. It never
restarts a process on its own; that decision belongs to whoever owns the
orchestrator.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from alfa_service.core.errors import SpawnError
from alfa_service.lsp.connection import LanguageServerConnection, server_logger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LanguageServerConfig:
    """How to launch the language server."""

    command: str
    args: list[str] = field(default_factory=list)
    cwd: Path = field(default_factory=Path.cwd)
    env: dict[str, str] = field(default_factory=dict)
    required_files: tuple[Path, ...] = ()

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass
class ProcessHandle:
    """A running language server process and the connection bound to it."""

    config: LanguageServerConfig
    process: asyncio.subprocess.Process
    connection: LanguageServerConnection
    stderr_task: asyncio.Task[None] | None = None
    stopped: bool = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return not self.stopped and self.process.returncode is None


async def _drain_stderr(stream: asyncio.StreamReader) -> None:
    # An undrained stderr pipe eventually blocks the server
    while True:
        line = await stream.readline()
        if not line:
            return
        server_logger.debug(line.decode("utf-8", errors="replace").rstrip())


class ProcessSupervisor:
    """Starts and stops language server processes."""

    def __init__(self, request_timeout: float = 30.0, shutdown_timeout: float = 5.0) -> None:
        self.request_timeout = request_timeout
        self.shutdown_timeout = shutdown_timeout

    async def start(self, config: LanguageServerConfig) -> ProcessHandle:
        """
        Spawn the language server and start listening on its stdout.

        Raises:
            SpawnError: If a required file is missing, the executable cannot
                be launched, or the process has no usable stdio streams.
        """
        for required in config.required_files:
            if not Path(required).is_file():
                raise SpawnError(
                    f"Required language server file not found at: {required}",
                    details={"path": str(required)},
                )

        logger.info(
            f"Starting language server with command: {' '.join(config.argv)}",
            extra={"cwd": str(config.cwd)},
        )
        try:
            process = await asyncio.create_subprocess_exec(
                config.command,
                *config.args,
                cwd=str(config.cwd),
                env={**os.environ, **config.env},
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise SpawnError(
                f"Failed to start language server '{config.command}': {exc}",
                details={"command": config.argv},
            ) from exc

        if process.stdin is None or process.stdout is None:
            process.kill()
            await process.wait()
            raise SpawnError("Failed to create language server process streams")

        connection = LanguageServerConnection(
            process.stdout, process.stdin, request_timeout=self.request_timeout
        )
        connection.listen()

        stderr_task = None
        if process.stderr is not None:
            stderr_task = asyncio.create_task(_drain_stderr(process.stderr), name="lsp-stderr")

        logger.info(f"Language server started (pid {process.pid})")
        return ProcessHandle(
            config=config, process=process, connection=connection, stderr_task=stderr_task
        )

    async def stop(self, handle: ProcessHandle) -> None:
        """
        Shut the language server down. Best-effort; never raises.

        Sends shutdown and exit, closes the connection, then waits for the
        process, terminating and finally killing it when it lingers.
        """
        if handle.stopped:
            return
        handle.stopped = True
        connection = handle.connection

        if handle.process.returncode is None and not connection.is_closed:
            await connection.send_shutdown(timeout=self.shutdown_timeout)
            await connection.send_exit()
        await connection.close()

        await self._wait_for_exit(handle.process)

        if handle.stderr_task is not None:
            handle.stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await handle.stderr_task

        logger.info(
            "Language server stopped",
            extra={"pid": handle.pid, "returncode": handle.process.returncode},
        )

    async def _wait_for_exit(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            await asyncio.wait_for(process.wait(), self.shutdown_timeout)
            return
        except TimeoutError:
            logger.warning(f"Language server (pid {process.pid}) did not exit; terminating")

        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), self.shutdown_timeout)
            return
        except TimeoutError:
            logger.warning(f"Language server (pid {process.pid}) ignored SIGTERM; killing")

        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
