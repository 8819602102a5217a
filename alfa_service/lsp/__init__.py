"""
Bridge to the external ALFA language server.

Key Components:
- process: spawning and stopping the server process
- connection: JSON-RPC over the server's stdio (LSP framing)
- diagnostics: latest diagnostics per document
"""

from alfa_service.lsp.connection import LanguageServerConnection
from alfa_service.lsp.diagnostics import DiagnosticRecord, DiagnosticsCollector
from alfa_service.lsp.process import LanguageServerConfig, ProcessHandle, ProcessSupervisor

__all__ = [
    "DiagnosticRecord",
    "DiagnosticsCollector",
    "LanguageServerConfig",
    "LanguageServerConnection",
    "ProcessHandle",
    "ProcessSupervisor",
]
