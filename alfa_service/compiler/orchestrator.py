"""
Compile orchestration on top of the ALFA language server.

The language server exposes no "compile" request. Compilation is triggered
by telling it that source files changed; it then pushes diagnostics and,
when the sources are valid, writes XACML artifacts into the output
directory. Neither event is correlated with the notification that caused
it, so a compile cycle is:

1. validate the inputs
2. clear diagnostics and the output directory
3. notify the change (one batch for all inputs)
4. wait a fixed settle delay
5. fail on error diagnostics, otherwise read and clear the output

The diagnostics map and the output directory are shared by every cycle,
so cycles run one at a time under a lock.
"""

import asyncio
import logging
import os
import time
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

from lsprotocol import types

from alfa_service.compiler.output import CompilationOutputReader, CompiledFile
from alfa_service.core.config import Settings
from alfa_service.core.errors import (
    AlfaServiceError,
    CleanupError,
    CompilationError,
    CompileTimeoutError,
    ConnectionClosedError,
    HandshakeFailedError,
    InputNotFoundError,
    NotReadyError,
)
from alfa_service.core.observability import metrics
from alfa_service.lsp.diagnostics import DiagnosticRecord, DiagnosticsCollector
from alfa_service.lsp.process import LanguageServerConfig, ProcessHandle, ProcessSupervisor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CycleState(str, Enum):
    """Compile cycle states."""

    IDLE = "idle"
    CLEARED = "cleared"
    NOTIFIED_CHANGE = "notified_change"
    SETTLED = "settled"
    SUCCESS = "success"
    FAILED = "failed"


class CompileOrchestrator:
    """
    Owns one language server process and runs compile cycles against it.

    Args:
        config: How to launch the language server
        output_dir: Directory the server writes artifacts into
        workspace_root: Workspace root announced during the handshake
        compile_settle_seconds: Wait between the change notification and
            reading diagnostics
        initialize_settle_seconds: Wait after the handshake before the
            server is trusted with compile traffic
        compile_timeout_seconds: End-to-end bound of one cycle
        request_timeout_seconds: Bound of the initialize request
    """

    def __init__(
        self,
        config: LanguageServerConfig,
        *,
        output_dir: Path,
        workspace_root: Path,
        compile_settle_seconds: float = 1.0,
        initialize_settle_seconds: float = 2.0,
        compile_timeout_seconds: float = 30.0,
        request_timeout_seconds: float = 30.0,
        supervisor: ProcessSupervisor | None = None,
        output_reader: CompilationOutputReader | None = None,
        collector: DiagnosticsCollector | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.output_dir = Path(output_dir)
        self.workspace_root = Path(workspace_root)
        self.compile_settle_seconds = compile_settle_seconds
        self.initialize_settle_seconds = initialize_settle_seconds
        self.compile_timeout_seconds = compile_timeout_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self.supervisor = supervisor or ProcessSupervisor(request_timeout=request_timeout_seconds)
        self.output_reader = output_reader or CompilationOutputReader()
        self.diagnostics = collector or DiagnosticsCollector()
        self._sleep = sleep
        self._handle: ProcessHandle | None = None
        self._lock = asyncio.Lock()
        self._state = CycleState.IDLE
        self._filesystem_work: asyncio.Future[Any] | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "CompileOrchestrator":
        argv = settings.language_server_argv
        config = LanguageServerConfig(
            command=argv[0],
            args=argv[1:],
            cwd=settings.workspace_path,
            required_files=settings.language_server_required_files,
        )
        return cls(
            config,
            output_dir=settings.output_path,
            workspace_root=settings.workspace_path,
            compile_settle_seconds=settings.compile_settle_seconds,
            initialize_settle_seconds=settings.initialize_settle_seconds,
            compile_timeout_seconds=settings.compile_timeout_seconds,
            request_timeout_seconds=settings.request_timeout_seconds,
            supervisor=ProcessSupervisor(
                request_timeout=settings.request_timeout_seconds,
                shutdown_timeout=settings.shutdown_timeout_seconds,
            ),
            output_reader=CompilationOutputReader(
                indent=settings.xml_indent,
                read_retries=settings.output_read_retries,
            ),
        )

    @property
    def state(self) -> CycleState:
        return self._state

    def is_ready(self) -> bool:
        """True while the process is alive and the handshake has completed."""
        return (
            self._handle is not None
            and self._handle.is_alive
            and self._handle.connection.is_initialized
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Spawn the language server and complete the handshake.

        Raises:
            SpawnError: The process could not be started
            HandshakeFailedError: The handshake failed; the process is stopped
        """
        if self.is_ready():
            return
        if self._handle is not None:
            await self.stop()

        await asyncio.to_thread(self.output_reader.clear, self.output_dir)
        handle = await self.supervisor.start(self.config)
        connection = handle.connection
        connection.on_diagnostics(self._record_diagnostics)
        connection.on_error(self._on_connection_error)
        connection.on_close(self._on_connection_closed)
        self._handle = handle

        try:
            await connection.initialize(self.workspace_root, timeout=self.request_timeout_seconds)
        except HandshakeFailedError:
            await self.stop()
            raise

        # The server keeps setting up after acknowledging initialize
        await self._sleep(self.initialize_settle_seconds)
        if not self.is_ready():
            await self.stop()
            raise HandshakeFailedError("Language server connection closed after initialization")

        metrics.language_server_up.set(1)
        logger.info("ALFA compiler ready")

    async def stop(self) -> None:
        """Stop the language server. Idempotent and best-effort."""
        handle, self._handle = self._handle, None
        self.diagnostics.clear()
        metrics.language_server_up.set(0)
        if handle is not None:
            await self.supervisor.stop(handle)

    # ------------------------------------------------------------------
    # Compile cycles
    # ------------------------------------------------------------------

    async def compile_file(self, path: str | os.PathLike) -> list[CompiledFile]:
        """Compile one ALFA file."""
        return await self._compile([Path(path)], mode="single")

    async def compile_files(self, paths: Iterable[str | os.PathLike]) -> list[CompiledFile]:
        """Compile several ALFA files as one batch (they may reference each other)."""
        return await self._compile([Path(p) for p in paths], mode="multiple")

    async def notify_deleted(self, paths: Iterable[str | os.PathLike]) -> None:
        """Tell the language server that files were deleted. Best-effort."""
        paths = [Path(p) for p in paths]
        if not paths:
            return
        async with self._lock:
            if not self.is_ready():
                logger.debug("Skipping deletion notice: language server is not ready")
                return
            try:
                await self._handle.connection.notify_file_changed(
                    paths, types.FileChangeType.Deleted
                )
            except ConnectionClosedError as exc:
                logger.warning(f"Could not notify deleted files: {exc.message}")

    async def _compile(self, paths: list[Path], mode: str) -> list[CompiledFile]:
        if not paths:
            raise InputNotFoundError("No input files given")

        async with self._lock:
            self._filesystem_work = None
            timeout = self.compile_timeout_seconds
            start_time = time.time()
            status = "error"
            try:
                files = await asyncio.wait_for(self._run_cycle(paths), timeout)
                status = "success"
                metrics.compile_output_files.observe(len(files))
                return files
            except TimeoutError:
                self._state = CycleState.FAILED
                status = "timeout"
                # The lock stays held until a cancelled cycle's thread has
                # stopped touching the output directory
                await self._finish_filesystem_work()
                raise CompileTimeoutError(
                    f"Compilation did not finish within {timeout}s",
                    details={"inputs": [str(p) for p in paths]},
                ) from None
            except CompilationError:
                status = "failed"
                raise
            except AlfaServiceError:
                self._state = CycleState.FAILED
                raise
            finally:
                duration = time.time() - start_time
                metrics.compile_cycles_total.labels(mode=mode, status=status).inc()
                metrics.compile_cycle_duration_seconds.labels(mode=mode).observe(duration)
                logger.info(
                    f"Compile cycle finished: {status}",
                    extra={
                        "mode": mode,
                        "inputs": [p.name for p in paths],
                        "duration_seconds": round(duration, 3),
                    },
                )

    async def _in_thread(self, func: Callable[..., T], *args: Any) -> T:
        """Run blocking output directory work in a thread that outlives cancellation."""
        work = asyncio.ensure_future(asyncio.to_thread(func, *args))
        self._filesystem_work = work
        return await asyncio.shield(work)

    async def _finish_filesystem_work(self) -> None:
        work, self._filesystem_work = self._filesystem_work, None
        if work is None or work.done():
            return
        logger.warning("Waiting for output directory work of a timed-out compile cycle")
        try:
            await work
        except AlfaServiceError as exc:
            logger.warning(
                f"Output directory work of a timed-out cycle failed: {exc.message}",
                extra=exc.details,
            )

    async def _run_cycle(self, paths: list[Path]) -> list[CompiledFile]:
        self._state = CycleState.IDLE
        if not self.is_ready():
            raise NotReadyError(
                "Language server is not initialized. Please call initialize() before compiling."
            )

        # Validation happens before any shared state is touched
        inputs = [_validated_input(p) for p in paths]

        self.diagnostics.clear()
        await self._in_thread(self.output_reader.clear, self.output_dir)
        self._state = CycleState.CLEARED

        logger.info(f"Compiling ALFA file(s): {', '.join(str(p) for p in inputs)}")
        await self._handle.connection.notify_file_changed(inputs, types.FileChangeType.Changed)
        self._state = CycleState.NOTIFIED_CHANGE

        await self._sleep(self.compile_settle_seconds)
        self._state = CycleState.SETTLED
        logger.debug(f"Diagnostics received for {len(self.diagnostics)} document(s)")

        if not self.is_ready():
            self._state = CycleState.FAILED
            raise ConnectionClosedError(
                "Language server connection closed during compilation",
                details={"inputs": [str(p) for p in inputs]},
            )

        errors = self.diagnostics.errors()
        if errors:
            self._state = CycleState.FAILED
            raise CompilationError(
                "Compilation failed with errors:\n" + "\n".join(d.describe() for d in errors),
                details={
                    "documents": self.diagnostics.documents(),
                    "diagnostics": [d.to_dict() for d in errors],
                },
            )

        files = await self._in_thread(self.output_reader.read_all, self.output_dir)
        try:
            await self._in_thread(self.output_reader.clear, self.output_dir)
        except CleanupError as exc:
            # The next cycle's pre-clear refuses to run on a dirty directory
            logger.error(f"Post-read cleanup failed: {exc.message}", extra=exc.details)

        self._state = CycleState.SUCCESS
        logger.debug(f"Compiled {len(files)} artifact(s): {[f.file_name for f in files]}")
        return files

    # ------------------------------------------------------------------
    # Connection events
    # ------------------------------------------------------------------

    def _record_diagnostics(self, uri: str, diagnostics: list[types.Diagnostic]) -> None:
        records = [DiagnosticRecord.from_lsp(uri, d) for d in diagnostics]
        self.diagnostics.record(uri, records)
        for record in records:
            metrics.language_server_diagnostics_total.labels(
                severity=record.severity_name
            ).inc()

    def _on_connection_error(self, error: Exception) -> None:
        logger.error(f"Language server connection error: {error}")

    def _on_connection_closed(self) -> None:
        metrics.language_server_up.set(0)
        if self._handle is not None and not self._handle.stopped:
            logger.error(
                "Language server connection closed unexpectedly",
                extra={"returncode": self._handle.process.returncode},
            )


def _validated_input(path: Path) -> Path:
    resolved = path.expanduser().resolve()
    if not resolved.exists():
        raise InputNotFoundError(
            f"Input file not found: {path}", details={"path": str(path)}
        )
    if not resolved.is_file():
        raise InputNotFoundError(
            f"Input path is not a file: {path}", details={"path": str(path)}
        )
    return resolved
