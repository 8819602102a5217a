"""
JSON-RPC connection to the ALFA language server.

Messages are framed the LSP way (``Content-Length`` header, blank line,
UTF-8 JSON body) over the server process's stdin/stdout. The connection
correlates responses with pending requests, answers the handful of
requests a server sends to its client, and hands
``textDocument/publishDiagnostics`` pushes to a single registered handler.

Only the messages needed to drive compilation are implemented:
``initialize``/``initialized``, ``workspace/didChangeWatchedFiles``,
``shutdown`` and ``exit``.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import os
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, Protocol

from lsprotocol import types
from lsprotocol.converters import get_converter

from alfa_service.core.errors import (
    AlfaServiceError,
    AlreadyInitializedError,
    ConnectionClosedError,
    HandshakeFailedError,
    ProtocolError,
    RequestTimeoutError,
    ResponseError,
)

logger = logging.getLogger(__name__)

# Messages the language server itself logs (window/logMessage, stderr)
server_logger = logging.getLogger("alfa_service.lsp.server")

JSONRPC_VERSION = "2.0"
METHOD_NOT_FOUND = -32601

# Server-to-client requests that are acknowledged with a null result
_NULL_RESULT_REQUESTS = frozenset(
    {
        types.CLIENT_REGISTER_CAPABILITY,
        types.CLIENT_UNREGISTER_CAPABILITY,
        types.WINDOW_WORK_DONE_PROGRESS_CREATE,
        types.WINDOW_SHOW_MESSAGE_REQUEST,
    }
)

_MESSAGE_TYPE_LEVELS = {
    types.MessageType.Error: logging.ERROR,
    types.MessageType.Warning: logging.WARNING,
    types.MessageType.Info: logging.INFO,
    types.MessageType.Log: logging.DEBUG,
}

_converter = get_converter()

DiagnosticsHandler = Callable[[str, list[types.Diagnostic]], None]
ErrorHandler = Callable[[Exception], None]
CloseHandler = Callable[[], None]


class MessageWriter(Protocol):
    def write(self, data: bytes) -> None: ...

    async def drain(self) -> None: ...

    def close(self) -> None: ...

    async def wait_closed(self) -> None: ...


async def read_message(reader: asyncio.StreamReader) -> dict[str, Any] | None:
    """
    Read one framed JSON-RPC message.

    Returns:
        The decoded message, or None once the stream is exhausted.

    Raises:
        ProtocolError: If the header block or the body is malformed.
    """
    content_length: int | None = None
    saw_header = False
    while True:
        try:
            line = await reader.readline()
        except ValueError as exc:
            raise ProtocolError("LSP header line exceeds the stream limit") from exc
        if not line or not line.endswith(b"\n"):
            return None
        header = line.rstrip(b"\r\n")
        if not header:
            if not saw_header:
                continue
            break
        saw_header = True
        name, sep, value = header.partition(b":")
        if not sep:
            raise ProtocolError(
                "Malformed LSP header line",
                details={"line": header.decode("utf-8", errors="replace")},
            )
        if name.strip().lower() == b"content-length":
            try:
                content_length = int(value.strip())
            except ValueError as exc:
                raise ProtocolError("Invalid LSP Content-Length") from exc

    if content_length is None or content_length <= 0:
        raise ProtocolError("Missing or invalid LSP Content-Length")

    try:
        body = await reader.readexactly(content_length)
    except asyncio.IncompleteReadError:
        return None

    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError("Invalid LSP message body") from exc
    if not isinstance(message, dict):
        raise ProtocolError("Invalid LSP message payload")
    return message


async def write_message(writer: MessageWriter, message: dict[str, Any]) -> None:
    """Frame and write one JSON-RPC message."""
    payload = json.dumps(message).encode("utf-8")
    header = f"Content-Length: {len(payload)}\r\n\r\n".encode("utf-8")
    writer.write(header + payload)
    await writer.drain()


def client_capabilities() -> types.ClientCapabilities:
    """Capabilities announced to the language server during the handshake."""
    return types.ClientCapabilities(
        text_document=types.TextDocumentClientCapabilities(
            synchronization=types.TextDocumentSyncClientCapabilities(
                dynamic_registration=False,
                will_save=True,
                will_save_wait_until=True,
                did_save=True,
            ),
            diagnostic=types.DiagnosticClientCapabilities(
                dynamic_registration=True,
                related_document_support=True,
            ),
            publish_diagnostics=types.PublishDiagnosticsClientCapabilities(
                related_information=True,
            ),
        ),
        workspace=types.WorkspaceClientCapabilities(
            workspace_folders=True,
            configuration=True,
            did_change_watched_files=types.DidChangeWatchedFilesClientCapabilities(
                dynamic_registration=False,
            ),
        ),
    )


def build_initialize_params(root: Path) -> dict[str, Any]:
    """Wire form of the initialize request for a workspace rooted at ``root``."""
    root_uri = root.as_uri()
    params = types.InitializeParams(
        process_id=os.getpid(),
        capabilities=client_capabilities(),
        root_uri=root_uri,
        root_path=str(root),
        workspace_folders=[types.WorkspaceFolder(uri=root_uri, name="workspace")],
    )
    return _converter.unstructure(params)


def _as_path_list(paths: str | os.PathLike | Iterable[str | os.PathLike]) -> list[Path]:
    if isinstance(paths, (str, os.PathLike)):
        return [Path(paths)]
    return [Path(p) for p in paths]


class LanguageServerConnection:
    """
    Duplex JSON-RPC channel bound to one language server process.

    The connection starts reading as soon as ``listen()`` is called. It is
    unusable for compile traffic until ``initialize()`` has completed, and
    it never reopens once closed.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: MessageWriter,
        *,
        request_timeout: float = 30.0,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._request_timeout = request_timeout
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._listen_task: asyncio.Task[None] | None = None
        self._initialized = False
        self._initializing = False
        self._closed = False
        self._diagnostics_handler: DiagnosticsHandler | None = None
        self._error_handler: ErrorHandler | None = None
        self._close_handler: CloseHandler | None = None
        self.capabilities: dict[str, Any] = {}

    @property
    def is_initialized(self) -> bool:
        return self._initialized and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_diagnostics(self, callback: DiagnosticsHandler) -> None:
        """Register the handler for diagnostics pushes (replaces any previous one)."""
        self._diagnostics_handler = callback

    def on_error(self, callback: ErrorHandler) -> None:
        self._error_handler = callback

    def on_close(self, callback: CloseHandler) -> None:
        self._close_handler = callback

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def listen(self) -> None:
        """Start the background read loop."""
        if self._listen_task is None:
            self._listen_task = asyncio.create_task(self._read_loop(), name="lsp-read-loop")

    async def initialize(
        self, root_path: str | os.PathLike, timeout: float | None = None
    ) -> dict[str, Any]:
        """
        Perform the initialize/initialized handshake.

        Args:
            root_path: Workspace root announced to the server
            timeout: Bound for the initialize response (defaults to the request timeout)

        Returns:
            The server capabilities from the initialize result

        Raises:
            AlreadyInitializedError: If the handshake already ran or is running
            HandshakeFailedError: If the server rejects it, closes, or does not answer
        """
        if self._initialized or self._initializing:
            raise AlreadyInitializedError("Language server is already initialized")

        root = Path(root_path).resolve()
        self._initializing = True
        logger.info("Initializing language server", extra={"workspace_root": str(root)})
        try:
            result = await self.send_request(
                types.INITIALIZE, build_initialize_params(root), timeout=timeout
            )
            capabilities = result.get("capabilities") if isinstance(result, dict) else None
            self.capabilities = dict(capabilities or {})
            self._initialized = True
            await self.send_notification(types.INITIALIZED, {})
        except (ResponseError, ConnectionClosedError, RequestTimeoutError) as exc:
            self._initialized = False
            raise HandshakeFailedError(
                f"Failed to initialize language server: {exc.message}",
                details={"cause": type(exc).__name__},
            ) from exc
        finally:
            self._initializing = False

        logger.info(
            "Language server initialized",
            extra={"capabilities": sorted(self.capabilities)},
        )
        return self.capabilities

    async def send_shutdown(self, timeout: float | None = None) -> bool:
        """Send the shutdown request. Best-effort; returns whether it was acknowledged."""
        if self._closed:
            return False
        try:
            await self.send_request(types.SHUTDOWN, None, timeout=timeout)
        except AlfaServiceError as exc:
            logger.debug(f"Shutdown request not acknowledged: {exc.message}")
            return False
        return True

    async def send_exit(self) -> None:
        """Send the exit notification. Best-effort."""
        if self._closed:
            return
        try:
            await self.send_notification(types.EXIT)
        except ConnectionClosedError:
            logger.debug("Exit notification not delivered: connection already closed")

    async def close(self) -> None:
        """Stop reading, close the server's stdin and fail pending requests."""
        if self._listen_task is not None and not self._listen_task.done():
            self._listen_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listen_task
        for task in list(self._tasks):
            task.cancel()
        try:
            self._writer.close()
            await self._writer.wait_closed()
        except OSError as exc:
            logger.debug(f"Ignoring error while closing language server stdin: {exc}")
        self._mark_closed()

    # ------------------------------------------------------------------
    # Outgoing messages
    # ------------------------------------------------------------------

    async def send_request(
        self, method: str, params: Any = None, timeout: float | None = None
    ) -> Any:
        """
        Send a request and wait for its response.

        Raises:
            ResponseError: The server answered with a JSON-RPC error
            ConnectionClosedError: The channel closed before the response
            RequestTimeoutError: No response within the timeout
        """
        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        bound = timeout if timeout is not None else self._request_timeout
        try:
            await self._write(message)
            return await asyncio.wait_for(future, bound)
        except TimeoutError:
            raise RequestTimeoutError(
                f"Language server did not answer '{method}' within {bound}s",
                details={"method": method, "timeout_seconds": bound},
            ) from None
        finally:
            self._pending.pop(request_id, None)

    async def send_notification(self, method: str, params: Any = None) -> None:
        message: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": method}
        if params is not None:
            message["params"] = params
        await self._write(message)

    async def notify_file_changed(
        self,
        paths: str | os.PathLike | Iterable[str | os.PathLike],
        change_kind: types.FileChangeType = types.FileChangeType.Changed,
    ) -> None:
        """
        Send one ``workspace/didChangeWatchedFiles`` notification for all paths.

        The server sees the paths as a single batch.
        """
        changes = [
            types.FileEvent(uri=path.resolve().as_uri(), type=change_kind)
            for path in _as_path_list(paths)
        ]
        if not changes:
            return
        params = types.DidChangeWatchedFilesParams(changes=changes)
        logger.debug(
            f"Notifying {len(changes)} watched file change(s)",
            extra={"change_kind": change_kind.name, "uris": [c.uri for c in changes]},
        )
        await self.send_notification(
            types.WORKSPACE_DID_CHANGE_WATCHED_FILES, _converter.unstructure(params)
        )

    async def _write(self, message: dict[str, Any]) -> None:
        if self._closed:
            raise ConnectionClosedError("Language server connection is closed")
        try:
            await write_message(self._writer, message)
        except OSError as exc:
            raise ConnectionClosedError(
                "Language server connection is closed",
                details={"error": str(exc)},
            ) from exc

    # ------------------------------------------------------------------
    # Incoming messages
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    message = await read_message(self._reader)
                except ProtocolError as exc:
                    self._report_error(exc)
                    break
                except OSError as exc:
                    self._report_error(
                        ConnectionClosedError(
                            "Language server stream failed", details={"error": str(exc)}
                        )
                    )
                    break
                if message is None:
                    break
                try:
                    self._dispatch(message)
                except Exception as exc:
                    # A single bad message is dropped; the framing is still intact
                    self._report_error(
                        ProtocolError(
                            "Malformed message from language server",
                            details={"error": f"{type(exc).__name__}: {exc}"},
                        )
                    )
        finally:
            self._mark_closed()

    def _dispatch(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        if method is None:
            self._handle_response(message)
        elif "id" in message:
            task = asyncio.create_task(self._handle_server_request(message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        else:
            self._handle_notification(method, message.get("params"))

    def _handle_response(self, message: dict[str, Any]) -> None:
        future = self._pending.get(message.get("id"))
        if future is None or future.done():
            logger.debug(f"Dropping response for unknown request id {message.get('id')!r}")
            return
        error = message.get("error")
        if error is not None:
            error = error if isinstance(error, dict) else {"message": str(error)}
            future.set_exception(
                ResponseError(
                    str(error.get("message") or "Unknown language server error"),
                    code=error.get("code"),
                    details={"data": error.get("data")},
                )
            )
        else:
            future.set_result(message.get("result"))

    def _handle_notification(self, method: str, params: Any) -> None:
        if method == types.TEXT_DOCUMENT_PUBLISH_DIAGNOSTICS:
            self._handle_diagnostics(params)
        elif method in (types.WINDOW_LOG_MESSAGE, types.WINDOW_SHOW_MESSAGE):
            params = params if isinstance(params, dict) else {}
            try:
                level = _MESSAGE_TYPE_LEVELS[types.MessageType(params.get("type"))]
            except (KeyError, ValueError):
                level = logging.INFO
            server_logger.log(level, str(params.get("message", "")))
        else:
            logger.debug(f"Ignoring notification {method}")

    def _handle_diagnostics(self, params: Any) -> None:
        try:
            published = _converter.structure(params, types.PublishDiagnosticsParams)
        except Exception as exc:
            self._report_error(
                ProtocolError(
                    "Malformed publishDiagnostics payload", details={"error": str(exc)}
                )
            )
            return
        diagnostics = list(published.diagnostics)
        logger.info(f"Received {len(diagnostics)} diagnostics for {published.uri}")
        if self._diagnostics_handler is None:
            return
        try:
            self._diagnostics_handler(published.uri, diagnostics)
        except Exception:
            logger.exception("Diagnostics handler failed")

    async def _handle_server_request(self, message: dict[str, Any]) -> None:
        method = message["method"]
        params = message.get("params") or {}
        response: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": message["id"]}
        if method == types.WORKSPACE_CONFIGURATION:
            items = params.get("items") if isinstance(params, dict) else None
            response["result"] = [None] * len(items or [])
        elif method in _NULL_RESULT_REQUESTS:
            response["result"] = None
        else:
            logger.debug(f"Rejecting unsupported server request {method}")
            response["error"] = {
                "code": METHOD_NOT_FOUND,
                "message": f"Unhandled method {method}",
            }
        try:
            await self._write(response)
        except ConnectionClosedError:
            logger.debug(f"Could not answer server request {method}: connection closed")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _report_error(self, error: Exception) -> None:
        logger.error(f"Language server error: {error}")
        if self._error_handler is None:
            return
        try:
            self._error_handler(error)
        except Exception:
            logger.exception("Error handler failed")

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._initialized = False
        for future in self._pending.values():
            if not future.done():
                future.set_exception(ConnectionClosedError("Language server connection closed"))
        self._pending.clear()
        logger.info("Language server connection closed")
        if self._close_handler is None:
            return
        try:
            self._close_handler()
        except Exception:
            logger.exception("Close handler failed")
